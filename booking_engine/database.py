from contextlib import contextmanager
from datetime import datetime, timezone
from threading import Lock
from typing import Iterator

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from booking_engine.core import config

# SQLite error text for lock contention; PostgreSQL SQLSTATEs for serialization failure and deadlock
_SQLITE_LOCK_MESSAGES = ('database is locked', 'database table is locked')
_CONFLICT_SQLSTATES = {'40001', '40P01', '55P03'}


def configure_sqlite_engine(engine: Engine) -> Engine:
    """Make every SQLite transaction start with BEGIN IMMEDIATE.

    pysqlite defers BEGIN until the first write and does not support SAVEPOINT
    reliably in that mode. Taking the write lock up front serializes admission
    attempts the same way row locks do on PostgreSQL.
    """

    @event.listens_for(engine, 'connect')
    def _disable_pysqlite_transactions(dbapi_connection, _connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def _begin_immediate(connection):
        connection.exec_driver_sql('BEGIN IMMEDIATE')

    return engine


def build_engine(url: str) -> Engine:
    if url.startswith('sqlite'):
        engine = create_engine(url, connect_args={'check_same_thread': False, 'timeout': 30})
        return configure_sqlite_engine(engine)
    return create_engine(url, pool_pre_ping=True)


engine = build_engine(config.DATABASE_URL)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


_schema_lock = Lock()
_booking_schema_checked = False


def ensure_booking_schema() -> None:
    global _booking_schema_checked

    if _booking_schema_checked:
        return

    with _schema_lock:
        if _booking_schema_checked:
            return

        inspector = inspect(engine)
        table_names = inspector.get_table_names()

        if 'appointments' not in table_names:
            _booking_schema_checked = True
            return

        with engine.begin() as connection:
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_appointments_user_date ON appointments(user_id, date, status)')
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_appointments_slot ON appointments(date, start_time, end_time, status)')
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_blackout_windows_date ON blackout_windows(date)')
            )

            if 'admission_guards' in table_names:
                guard_columns = {column['name'] for column in inspector.get_columns('admission_guards')}
                if 'guard_date' not in guard_columns:
                    connection.execute(text('ALTER TABLE admission_guards ADD COLUMN guard_date DATE'))
                connection.execute(
                    text('CREATE INDEX IF NOT EXISTS ix_admission_guards_guard_date ON admission_guards(guard_date)')
                )

        _booking_schema_checked = True


def is_concurrency_conflict(exc: OperationalError) -> bool:
    message = str(exc.orig).lower() if exc.orig is not None else str(exc).lower()
    if any(marker in message for marker in _SQLITE_LOCK_MESSAGES):
        return True
    sqlstate = getattr(exc.orig, 'pgcode', None) or getattr(exc.orig, 'sqlstate', None)
    return sqlstate in _CONFLICT_SQLSTATES


@contextmanager
def transaction_scope(db: Session) -> Iterator[Session]:
    """Commit on success, roll back on any exception including request cancellation."""
    try:
        yield db
        db.commit()
    except BaseException:
        db.rollback()
        raise


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
