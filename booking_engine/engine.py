"""Facade exposing the booking core to the HTTP layer.

Booking rejections and caller errors come back as typed result objects.
Persistence and concurrency failures still raise, so the boundary can map
them to a generic failure.
"""

from datetime import date, time
from functools import lru_cache

from sqlalchemy.orm import Session

from booking_engine.core.errors import AppointmentNotFound, BookingRejected, InvalidTransition
from booking_engine.models.appointment import Appointment
from booking_engine.schemas import (
    AdmissionResult,
    AppointmentResponse,
    BatchOptions,
    BatchResult,
    BookingDetails,
    DailyUsage,
    PolicySnapshot,
    TransitionResult,
)
from booking_engine.services.admission import AdmissionController
from booking_engine.services.availability import AvailabilityEngine
from booking_engine.services.lifecycle import AppointmentLifecycle
from booking_engine.services.notifications import Notifier, build_notifier
from booking_engine.services.policy_store import PolicyStore, PolicyUpdate
from booking_engine.services.rate_limiter import TierAssignment, classify_request


class BookingEngine:
    def __init__(self, notifier: Notifier | None = None):
        self.notifier = notifier or build_notifier()
        self.policy_store = PolicyStore(self.notifier)
        self.availability = AvailabilityEngine()
        self.admission = AdmissionController(self.policy_store, self.availability)
        self.lifecycle = AppointmentLifecycle(self.notifier)

    def check_admission(
        self,
        db: Session,
        user_id: int,
        booking_date: date,
        start_time: time,
        end_time: time,
        details: BookingDetails | None = None,
        policy: PolicySnapshot | None = None,
    ) -> AdmissionResult:
        try:
            appointment = self.admission.admit(db, user_id, booking_date, start_time, end_time, details, policy)
        except BookingRejected as exc:
            return AdmissionResult(admitted=False, reason=exc.code, message=exc.message)

        return AdmissionResult(admitted=True, appointment=AppointmentResponse.model_validate(appointment))

    def remaining_bookings(self, db: Session, user_id: int, booking_date: date) -> int | None:
        return self.admission.remaining_bookings(db, user_id, booking_date)

    def daily_usage(self, db: Session, user_id: int, booking_date: date) -> DailyUsage:
        return self.admission.daily_usage(db, user_id, booking_date)

    def appointment_owner(self, db: Session, appointment_id: int) -> int | None:
        appointment = db.get(Appointment, appointment_id)
        if appointment is None or appointment.deleted_at is not None:
            return None
        return appointment.user_id

    def transition_appointment(
        self,
        db: Session,
        appointment_id: int,
        target_status: str,
        actor_id: int | None,
        reason: str | None = None,
    ) -> TransitionResult:
        try:
            appointment = self.lifecycle.transition(db, appointment_id, target_status, actor_id, reason)
        except (InvalidTransition, AppointmentNotFound) as exc:
            return TransitionResult(ok=False, reason=exc.code, message=exc.message)

        return TransitionResult(ok=True, appointment=AppointmentResponse.model_validate(appointment))

    def complete_appointment(
        self,
        db: Session,
        appointment_id: int,
        completed_by: int | None,
        notes: str | None = None,
    ) -> TransitionResult:
        try:
            appointment = self.lifecycle.complete_appointment(db, appointment_id, completed_by, notes)
        except (InvalidTransition, AppointmentNotFound) as exc:
            return TransitionResult(ok=False, reason=exc.code, message=exc.message)

        return TransitionResult(ok=True, appointment=AppointmentResponse.model_validate(appointment))

    def batch_transition(
        self,
        db: Session,
        appointment_ids,
        target_status: str,
        actor_id: int | None,
        reason: str | None = None,
        options: BatchOptions | None = None,
    ) -> BatchResult:
        return self.lifecycle.batch_transition(db, appointment_ids, target_status, actor_id, reason, options)

    def get_active_policy(self, db: Session):
        return self.policy_store.get_active_policy(db)

    def update_policy(
        self,
        db: Session,
        new_limit: int,
        active: bool = True,
        description: str | None = None,
        updated_by: int | None = None,
    ) -> PolicyUpdate:
        return self.policy_store.update_policy(db, new_limit, active, description, updated_by)

    def classify_request(self, path: str, method: str | None, ip: str, user_id: int | None = None) -> TierAssignment:
        return classify_request(path, method, ip, user_id)


@lru_cache
def get_engine() -> BookingEngine:
    return BookingEngine()
