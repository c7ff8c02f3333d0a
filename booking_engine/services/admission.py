"""Booking admission control.

Every admission takes the guard rows for ``(user, date)`` and ``(date, start, end)``
before counting, so two concurrent attempts on the same key cannot both pass the
count check. Guards are always locked in sorted key order.
"""

import logging
from datetime import date, time, timedelta

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from booking_engine.core import config
from booking_engine.core.errors import (
    BlackoutDate,
    ConcurrencyConflict,
    DailyLimitReached,
    InvalidBookingRequest,
    PersistenceUnavailable,
    SlotFull,
)
from booking_engine.database import is_concurrency_conflict, transaction_scope
from booking_engine.models.admission_guard import AdmissionGuard
from booking_engine.models.appointment import CANCELLED, PENDING, Appointment, AppointmentStatusEvent
from booking_engine.schemas import AppointmentResponse, BookingDetails, DailyUsage, PolicySnapshot
from booking_engine.services.availability import BLACKOUT_REASON, SLOT_FULL_REASON, AvailabilityEngine
from booking_engine.services.policy_store import PolicyStore

logger = logging.getLogger(__name__)

_REJECTIONS = {
    BLACKOUT_REASON: BlackoutDate,
    SLOT_FULL_REASON: SlotFull,
}


def user_guard_key(user_id: int, booking_date: date) -> str:
    return f'user:{user_id}:{booking_date.isoformat()}'


def slot_guard_key(booking_date: date, start_time: time, end_time: time) -> str:
    return f'slot:{booking_date.isoformat()}:{start_time.isoformat()}-{end_time.isoformat()}'


def acquire_guards(db: Session, keys: list[str], guard_date: date | None = None) -> None:
    for key in sorted(set(keys)):
        bumped = db.execute(
            update(AdmissionGuard)
            .where(AdmissionGuard.key == key)
            .values(version=AdmissionGuard.version + 1)
        ).rowcount
        if bumped:
            continue

        try:
            with db.begin_nested():
                db.add(AdmissionGuard(key=key, version=1, guard_date=guard_date))
        except IntegrityError:
            # Another attempt created the guard first; lock the existing row instead.
            db.execute(
                update(AdmissionGuard)
                .where(AdmissionGuard.key == key)
                .values(version=AdmissionGuard.version + 1)
            )


def purge_stale_guards(db: Session, before: date) -> int:
    """Delete guard rows for booking days before ``before``.

    A guard only matters while admissions for its day can still race; a deleted
    guard is recreated by the next ``acquire_guards`` call for that key.
    Rows written before guard dates were recorded are removed too.
    """
    with transaction_scope(db):
        removed = db.query(AdmissionGuard).filter(
            or_(AdmissionGuard.guard_date < before, AdmissionGuard.guard_date.is_(None)),
        ).delete(synchronize_session=False)

    logger.info('Purged %s admission guards older than %s', removed, before)
    return removed


def user_bookings_query(db: Session, user_id: int, booking_date: date):
    return db.query(Appointment).filter(
        Appointment.user_id == user_id,
        Appointment.date == booking_date,
        Appointment.status != CANCELLED,
        Appointment.deleted_at.is_(None),
    )


def count_user_bookings(db: Session, user_id: int, booking_date: date) -> int:
    return user_bookings_query(db, user_id, booking_date).count()


class AdmissionController:
    def __init__(
        self,
        policy_store: PolicyStore | None = None,
        availability: AvailabilityEngine | None = None,
        max_retries: int = config.ADMISSION_MAX_RETRIES,
    ):
        self.policy_store = policy_store or PolicyStore()
        self.availability = availability or AvailabilityEngine()
        self.max_retries = max(1, max_retries)

    def admit(
        self,
        db: Session,
        user_id: int,
        booking_date: date,
        start_time: time,
        end_time: time,
        details: BookingDetails | None = None,
        policy: PolicySnapshot | None = None,
    ) -> Appointment:
        if end_time <= start_time:
            raise InvalidBookingRequest('End time must be after start time.')

        details = details or BookingDetails()

        for attempt in range(1, self.max_retries + 1):
            try:
                with transaction_scope(db):
                    appointment = self._admit_once(db, user_id, booking_date, start_time, end_time, details, policy)
                db.refresh(appointment)
                logger.info(
                    'Admitted appointment %s for user %s on %s %s-%s',
                    appointment.id,
                    user_id,
                    booking_date,
                    start_time,
                    end_time,
                )
                return appointment
            except OperationalError as exc:
                if not is_concurrency_conflict(exc):
                    logger.exception('Admission failed for user %s on %s', user_id, booking_date)
                    raise PersistenceUnavailable('Booking could not be saved.', cause=exc) from exc
                logger.warning(
                    'Admission conflict for user %s on %s (attempt %s/%s)',
                    user_id,
                    booking_date,
                    attempt,
                    self.max_retries,
                )
            except SQLAlchemyError as exc:
                logger.exception('Admission failed for user %s on %s', user_id, booking_date)
                raise PersistenceUnavailable('Booking could not be saved.', cause=exc) from exc

        raise ConcurrencyConflict('The booking could not be completed because of concurrent requests. Please retry.')

    def _admit_once(
        self,
        db: Session,
        user_id: int,
        booking_date: date,
        start_time: time,
        end_time: time,
        details: BookingDetails,
        policy: PolicySnapshot | None,
    ) -> Appointment:
        acquire_guards(
            db,
            [user_guard_key(user_id, booking_date), slot_guard_key(booking_date, start_time, end_time)],
            booking_date,
        )

        policy = policy or self.policy_store.snapshot(db)

        if policy.is_active:
            booked_today = count_user_bookings(db, user_id, booking_date)
            if booked_today >= policy.daily_limit_per_user:
                logger.info(
                    'User %s reached daily limit %s on %s',
                    user_id,
                    policy.daily_limit_per_user,
                    booking_date,
                )
                raise DailyLimitReached(
                    f'You have reached your daily booking limit of {policy.daily_limit_per_user} '
                    'appointments for this day.'
                )

        decision = self.availability.is_bookable(db, booking_date, start_time, end_time)
        if not decision.allowed:
            raise _REJECTIONS[decision.reason](decision.message or 'This time slot is not available.')

        appointment = Appointment(
            user_id=user_id,
            staff_id=details.staff_id,
            service_id=details.service_id,
            date=booking_date,
            start_time=start_time,
            end_time=end_time,
            status=PENDING,
            purpose=details.purpose,
            notes=details.notes,
        )
        db.add(appointment)
        db.flush()
        db.add(
            AppointmentStatusEvent(
                appointment_id=appointment.id,
                from_status=None,
                to_status=PENDING,
                actor_id=user_id,
                reason='created',
            )
        )
        return appointment

    def remaining_bookings(self, db: Session, user_id: int, booking_date: date) -> int | None:
        policy = self.policy_store.get_active_policy(db)
        if not policy.is_active:
            return None

        booked_today = count_user_bookings(db, user_id, booking_date)
        return max(0, policy.daily_limit_per_user - booked_today)

    def daily_usage(self, db: Session, user_id: int, booking_date: date, today: date | None = None) -> DailyUsage:
        policy = self.policy_store.get_active_policy(db)
        bookings = user_bookings_query(db, user_id, booking_date).order_by(Appointment.start_time.asc()).all()
        responses = [AppointmentResponse.model_validate(appointment) for appointment in bookings]

        if not policy.is_active:
            return DailyUsage(
                date=booking_date,
                limit=None,
                used=len(bookings),
                remaining=None,
                has_reached_limit=False,
                bookings=responses,
            )

        limit = policy.daily_limit_per_user
        remaining = max(0, limit - len(bookings))
        has_reached_limit = len(bookings) >= limit
        message = None
        if has_reached_limit:
            message = (
                f'You have reached your daily booking limit of {limit} appointments. '
                f'You can book again {next_booking_day_label(booking_date, today or date.today())}.'
            )

        return DailyUsage(
            date=booking_date,
            limit=limit,
            used=len(bookings),
            remaining=remaining,
            has_reached_limit=has_reached_limit,
            bookings=responses,
            message=message,
        )


def next_booking_day_label(booking_date: date, today: date) -> str:
    next_day = booking_date + timedelta(days=1)
    if booking_date == today:
        return f'tomorrow ({next_day:%b %d})'
    if booking_date > today:
        return f'on {next_day:%b %d}'
    return 'tomorrow'
