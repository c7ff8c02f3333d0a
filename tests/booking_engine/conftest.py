import os
from datetime import date, time

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')
os.environ.setdefault('RATE_LIMIT_STORAGE', 'memory')
os.environ.setdefault('NOTIFIER_BACKEND', 'log')

from booking_engine.database import Base, build_engine, configure_sqlite_engine  # noqa: E402
from booking_engine.engine import BookingEngine  # noqa: E402
from booking_engine.models import admission_guard, availability, policy, user  # noqa: E402,F401
from booking_engine.models.appointment import PENDING, Appointment  # noqa: E402
from booking_engine.services.notifications import RecordingNotifier  # noqa: E402


@pytest.fixture
def db_session():
    engine = configure_sqlite_engine(create_engine('sqlite:///:memory:'))
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    db = testing_session_local()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def file_session_factory(tmp_path):
    engine = build_engine(f'sqlite:///{tmp_path / "booking.db"}')
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        engine.dispose()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def facade(notifier) -> BookingEngine:
    return BookingEngine(notifier=notifier)


@pytest.fixture
def make_appointment(db_session):
    def _make_appointment(
        user_id: int = 1,
        booking_date: date = date(2024, 6, 3),
        start_time: time = time(9, 0),
        end_time: time = time(10, 0),
        status: str = PENDING,
        **fields,
    ) -> Appointment:
        appointment = Appointment(
            user_id=user_id,
            date=booking_date,
            start_time=start_time,
            end_time=end_time,
            status=status,
            **fields,
        )
        db_session.add(appointment)
        db_session.commit()
        db_session.refresh(appointment)
        return appointment

    return _make_appointment
