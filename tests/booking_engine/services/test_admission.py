import sqlite3
from datetime import date, time

import pytest
from sqlalchemy.exc import OperationalError

from booking_engine.core.errors import (
    BlackoutDate,
    ConcurrencyConflict,
    DailyLimitReached,
    InvalidBookingRequest,
    PersistenceUnavailable,
    SlotFull,
)
from booking_engine.models.admission_guard import AdmissionGuard
from booking_engine.models.appointment import CANCELLED, PENDING, Appointment, AppointmentStatusEvent
from booking_engine.models.availability import BlackoutWindow, SlotCapacityRule
from booking_engine.schemas import BookingDetails, PolicySnapshot
from booking_engine.services.admission import (
    AdmissionController,
    next_booking_day_label,
    purge_stale_guards,
    slot_guard_key,
    user_guard_key,
)
from booking_engine.services.policy_store import PolicyStore

BOOKING_DAY = date(2024, 6, 1)


class RequestAborted(BaseException):
    pass


def hourly_slot(hour: int) -> tuple[time, time]:
    return time(hour, 0), time(hour + 1, 0)


def set_limit(db, limit: int, active: bool = True) -> None:
    PolicyStore().update_policy(db, limit, active=active)


def test_guard_keys_are_stable() -> None:
    assert user_guard_key(7, BOOKING_DAY) == 'user:7:2024-06-01'
    assert slot_guard_key(BOOKING_DAY, time(9, 0), time(10, 0)) == 'slot:2024-06-01:09:00:00-10:00:00'


def test_admit_creates_pending_appointment_with_details(db_session) -> None:
    controller = AdmissionController()
    details = BookingDetails(service_id=4, staff_id=9, purpose=' Checkup ', notes='First visit')

    appointment = controller.admit(db_session, 1, BOOKING_DAY, time(9, 0), time(10, 0), details)

    assert appointment.id is not None
    assert appointment.status == PENDING
    assert appointment.service_id == 4
    assert appointment.staff_id == 9
    assert appointment.purpose == 'Checkup'

    event = db_session.query(AppointmentStatusEvent).one()
    assert (event.from_status, event.to_status, event.reason) == (None, PENDING, 'created')
    assert db_session.query(AdmissionGuard).count() == 2


def test_daily_limit_rejects_fourth_booking(db_session) -> None:
    set_limit(db_session, 3)
    controller = AdmissionController()

    for hour in (9, 10, 11):
        controller.admit(db_session, 1, BOOKING_DAY, *hourly_slot(hour))

    with pytest.raises(DailyLimitReached) as exception_info:
        controller.admit(db_session, 1, BOOKING_DAY, *hourly_slot(12))

    assert exception_info.value.code == 'daily_limit_reached'
    assert db_session.query(Appointment).count() == 3


def test_cancelling_frees_a_daily_booking(db_session) -> None:
    set_limit(db_session, 3)
    controller = AdmissionController()
    booked = [controller.admit(db_session, 1, BOOKING_DAY, *hourly_slot(hour)) for hour in (9, 10, 11)]

    booked[0].status = CANCELLED
    db_session.commit()

    appointment = controller.admit(db_session, 1, BOOKING_DAY, *hourly_slot(12))

    assert appointment.status == PENDING
    assert controller.remaining_bookings(db_session, 1, BOOKING_DAY) == 0


def test_daily_limit_is_per_user_and_per_day(db_session) -> None:
    set_limit(db_session, 1)
    controller = AdmissionController()

    controller.admit(db_session, 1, BOOKING_DAY, *hourly_slot(9))
    controller.admit(db_session, 2, BOOKING_DAY, *hourly_slot(9))
    controller.admit(db_session, 1, date(2024, 6, 2), *hourly_slot(9))

    assert db_session.query(Appointment).count() == 3


def test_zero_limit_blocks_every_booking(db_session) -> None:
    set_limit(db_session, 0)

    with pytest.raises(DailyLimitReached):
        AdmissionController().admit(db_session, 1, BOOKING_DAY, *hourly_slot(9))


def test_inactive_policy_disables_daily_limit(db_session) -> None:
    set_limit(db_session, 1, active=False)
    controller = AdmissionController()

    for hour in (9, 10, 11):
        controller.admit(db_session, 1, BOOKING_DAY, *hourly_slot(hour))

    assert controller.remaining_bookings(db_session, 1, BOOKING_DAY) is None
    usage = controller.daily_usage(db_session, 1, BOOKING_DAY)
    assert usage.limit is None
    assert usage.used == 3
    assert usage.has_reached_limit is False


def test_policy_snapshot_overrides_stored_policy(db_session) -> None:
    set_limit(db_session, 5)
    controller = AdmissionController()
    controller.admit(db_session, 1, BOOKING_DAY, *hourly_slot(9))

    with pytest.raises(DailyLimitReached):
        controller.admit(
            db_session,
            1,
            BOOKING_DAY,
            *hourly_slot(10),
            policy=PolicySnapshot(daily_limit_per_user=1, is_active=True),
        )


def test_slot_capacity_rejects_extra_booking(db_session) -> None:
    db_session.add(
        SlotCapacityRule(start_time=time(9, 0), end_time=time(17, 0), max_appointments_per_slot=2, is_active=True)
    )
    db_session.commit()
    controller = AdmissionController()

    controller.admit(db_session, 1, BOOKING_DAY, *hourly_slot(9))
    controller.admit(db_session, 2, BOOKING_DAY, *hourly_slot(9))

    with pytest.raises(SlotFull):
        controller.admit(db_session, 3, BOOKING_DAY, *hourly_slot(9))

    assert controller.admit(db_session, 3, BOOKING_DAY, *hourly_slot(10)).status == PENDING


def test_blackout_rejects_booking(db_session) -> None:
    db_session.add(BlackoutWindow(date=BOOKING_DAY, reason='Holiday', is_active=True))
    db_session.commit()

    with pytest.raises(BlackoutDate) as exception_info:
        AdmissionController().admit(db_session, 1, BOOKING_DAY, *hourly_slot(9))

    assert exception_info.value.message == 'All-day blackout: Holiday'
    assert db_session.query(Appointment).count() == 0


def test_daily_limit_is_checked_before_availability(db_session) -> None:
    set_limit(db_session, 1)
    controller = AdmissionController()
    controller.admit(db_session, 1, BOOKING_DAY, *hourly_slot(9))
    db_session.add(BlackoutWindow(date=BOOKING_DAY, reason='Holiday', is_active=True))
    db_session.commit()

    with pytest.raises(DailyLimitReached):
        controller.admit(db_session, 1, BOOKING_DAY, *hourly_slot(10))


def test_admit_rejects_inverted_time_range(db_session) -> None:
    with pytest.raises(InvalidBookingRequest):
        AdmissionController().admit(db_session, 1, BOOKING_DAY, time(10, 0), time(9, 0))


def test_daily_usage_reports_limit_message(db_session) -> None:
    set_limit(db_session, 2)
    controller = AdmissionController()
    for hour in (11, 9):
        controller.admit(db_session, 1, BOOKING_DAY, *hourly_slot(hour))

    usage = controller.daily_usage(db_session, 1, BOOKING_DAY, today=BOOKING_DAY)

    assert usage.limit == 2
    assert usage.used == 2
    assert usage.remaining == 0
    assert usage.has_reached_limit is True
    assert [booking.start_time for booking in usage.bookings] == [time(9, 0), time(11, 0)]
    assert usage.message == (
        'You have reached your daily booking limit of 2 appointments. You can book again tomorrow (Jun 02).'
    )


@pytest.mark.parametrize(
    ('booking_date', 'today', 'label'),
    [
        (date(2024, 6, 1), date(2024, 6, 1), 'tomorrow (Jun 02)'),
        (date(2024, 6, 10), date(2024, 6, 1), 'on Jun 11'),
        (date(2024, 5, 30), date(2024, 6, 1), 'tomorrow'),
    ],
)
def test_next_booking_day_label(booking_date: date, today: date, label: str) -> None:
    assert next_booking_day_label(booking_date, today) == label


def test_admit_retries_lock_conflicts(db_session, monkeypatch) -> None:
    controller = AdmissionController(max_retries=3)
    real_admit_once = controller._admit_once
    attempts = []

    def flaky_admit_once(*args, **kwargs):
        attempts.append(1)
        if len(attempts) < 3:
            raise OperationalError('BEGIN IMMEDIATE', {}, sqlite3.OperationalError('database is locked'))
        return real_admit_once(*args, **kwargs)

    monkeypatch.setattr(controller, '_admit_once', flaky_admit_once)

    appointment = controller.admit(db_session, 1, BOOKING_DAY, *hourly_slot(9))

    assert len(attempts) == 3
    assert appointment.status == PENDING


def test_admit_gives_up_after_max_retries(db_session, monkeypatch) -> None:
    controller = AdmissionController(max_retries=2)

    def locked(*args, **kwargs):
        raise OperationalError('BEGIN IMMEDIATE', {}, sqlite3.OperationalError('database is locked'))

    monkeypatch.setattr(controller, '_admit_once', locked)

    with pytest.raises(ConcurrencyConflict):
        controller.admit(db_session, 1, BOOKING_DAY, *hourly_slot(9))


def test_admit_wraps_other_database_errors(db_session, monkeypatch) -> None:
    controller = AdmissionController()

    def broken(*args, **kwargs):
        raise OperationalError('SELECT 1', {}, sqlite3.OperationalError('disk I/O error'))

    monkeypatch.setattr(controller, '_admit_once', broken)

    with pytest.raises(PersistenceUnavailable) as exception_info:
        controller.admit(db_session, 1, BOOKING_DAY, *hourly_slot(9))

    assert isinstance(exception_info.value.cause, OperationalError)


def test_aborted_admission_leaves_no_trace(db_session, monkeypatch) -> None:
    controller = AdmissionController()
    real_admit_once = controller._admit_once

    def abort_after_insert(*args, **kwargs):
        real_admit_once(*args, **kwargs)
        raise RequestAborted()

    monkeypatch.setattr(controller, '_admit_once', abort_after_insert)

    with pytest.raises(RequestAborted):
        controller.admit(db_session, 1, BOOKING_DAY, *hourly_slot(9))

    assert db_session.query(Appointment).count() == 0
    assert db_session.query(AppointmentStatusEvent).count() == 0
    assert db_session.query(AdmissionGuard).count() == 0


def test_guards_record_booking_day(db_session) -> None:
    AdmissionController().admit(db_session, 1, BOOKING_DAY, *hourly_slot(9))

    assert {guard.guard_date for guard in db_session.query(AdmissionGuard).all()} == {BOOKING_DAY}


def test_purge_stale_guards_keeps_current_days(db_session) -> None:
    controller = AdmissionController()
    next_day = date(2024, 6, 2)
    controller.admit(db_session, 1, BOOKING_DAY, *hourly_slot(9))
    controller.admit(db_session, 1, next_day, *hourly_slot(9))
    db_session.add(AdmissionGuard(key='user:9:legacy', version=4))
    db_session.commit()

    removed = purge_stale_guards(db_session, next_day)

    assert removed == 3
    remaining = db_session.query(AdmissionGuard).all()
    assert {guard.key for guard in remaining} == {
        user_guard_key(1, next_day),
        slot_guard_key(next_day, *hourly_slot(9)),
    }


def test_admission_after_purge_recreates_guards(db_session) -> None:
    set_limit(db_session, 1)
    controller = AdmissionController()
    controller.admit(db_session, 1, BOOKING_DAY, *hourly_slot(9))

    purge_stale_guards(db_session, date(2024, 6, 2))
    assert db_session.query(AdmissionGuard).count() == 0

    with pytest.raises(DailyLimitReached):
        controller.admit(db_session, 1, BOOKING_DAY, *hourly_slot(10))

    controller.admit(db_session, 2, BOOKING_DAY, *hourly_slot(10))
    assert db_session.query(AdmissionGuard).count() == 2
