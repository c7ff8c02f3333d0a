import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from booking_engine.core import config
from booking_engine.core.errors import (
    AlreadyCompleted,
    AppointmentNotFound,
    BatchTooLarge,
    BookingEngineError,
    InvalidTransition,
    PersistenceUnavailable,
)
from booking_engine.database import transaction_scope, utc_now
from booking_engine.models.appointment import (
    APPOINTMENT_STATUSES,
    APPROVED,
    CANCELLED,
    COMPLETED,
    NO_SHOW,
    PENDING,
    TERMINAL_STATUSES,
    Appointment,
    AppointmentStatusEvent,
)
from booking_engine.schemas import BatchFailure, BatchOptions, BatchResult
from booking_engine.services.notifications import (
    APPOINTMENT_STATUS_CHANGED,
    LoggingNotifier,
    Notifier,
    publish_analytics_updated,
    publish_safely,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    PENDING: frozenset({APPROVED, CANCELLED, NO_SHOW}),
    APPROVED: frozenset({COMPLETED, CANCELLED, NO_SHOW}),
    **{status: frozenset() for status in TERMINAL_STATUSES},
}


def can_transition(current_status: str, target_status: str) -> bool:
    return target_status in ALLOWED_TRANSITIONS.get(current_status, frozenset())


class AppointmentLifecycle:
    """Sole writer of appointment status and completion fields."""

    def __init__(self, notifier: Notifier | None = None, batch_max_size: int = config.BATCH_MAX_SIZE):
        self._notifier = notifier or LoggingNotifier()
        self.batch_max_size = batch_max_size

    def _load_for_update(self, db: Session, appointment_id: int) -> Appointment:
        appointment = db.query(Appointment).filter(
            Appointment.id == appointment_id,
            Appointment.deleted_at.is_(None),
        ).with_for_update().first()

        if appointment is None:
            raise AppointmentNotFound(f'Appointment {appointment_id} not found.')
        return appointment

    def _apply(
        self,
        db: Session,
        appointment_id: int,
        target_status: str,
        actor_id: int | None,
        reason: str | None = None,
        completion_notes: str | None = None,
    ) -> Appointment:
        if target_status not in APPOINTMENT_STATUSES:
            raise InvalidTransition(f'Unknown appointment status: {target_status}.', target_status=target_status)

        appointment = self._load_for_update(db, appointment_id)
        current_status = appointment.status

        if target_status == COMPLETED and (current_status == COMPLETED or appointment.completed_at is not None):
            raise AlreadyCompleted(
                'This appointment has already been completed.',
                current_status=current_status,
                target_status=target_status,
            )

        if not can_transition(current_status, target_status):
            raise InvalidTransition(
                f'Cannot change appointment status from {current_status} to {target_status}.',
                current_status=current_status,
                target_status=target_status,
            )

        appointment.status = target_status
        if reason is not None:
            appointment.status_reason = reason

        if target_status == APPROVED and appointment.staff_id is None:
            appointment.staff_id = actor_id

        if target_status == COMPLETED:
            appointment.completed_at = utc_now()
            appointment.completed_by = actor_id
            appointment.completion_notes = completion_notes

        db.add(
            AppointmentStatusEvent(
                appointment_id=appointment.id,
                from_status=current_status,
                to_status=target_status,
                actor_id=actor_id,
                reason=reason,
            )
        )
        db.flush()
        return appointment

    def transition(
        self,
        db: Session,
        appointment_id: int,
        target_status: str,
        actor_id: int | None,
        reason: str | None = None,
        completion_notes: str | None = None,
    ) -> Appointment:
        try:
            with transaction_scope(db):
                appointment = self._apply(db, appointment_id, target_status, actor_id, reason, completion_notes)
        except SQLAlchemyError as exc:
            logger.exception('Failed to transition appointment %s to %s', appointment_id, target_status)
            raise PersistenceUnavailable('Appointment status could not be updated.', cause=exc) from exc

        db.refresh(appointment)
        logger.info('Appointment %s moved to %s by %s', appointment_id, target_status, actor_id)
        publish_analytics_updated(self._notifier, db)
        return appointment

    def complete_appointment(
        self,
        db: Session,
        appointment_id: int,
        completed_by: int | None,
        notes: str | None = None,
    ) -> Appointment:
        return self.transition(db, appointment_id, COMPLETED, completed_by, completion_notes=notes)

    def batch_transition(
        self,
        db: Session,
        appointment_ids,
        target_status: str,
        actor_id: int | None,
        reason: str | None = None,
        options: BatchOptions | None = None,
    ) -> BatchResult:
        options = options or BatchOptions()
        appointment_ids = list(appointment_ids)

        # The cap counts the ids as submitted, duplicates included.
        if len(appointment_ids) > self.batch_max_size:
            raise BatchTooLarge(f'Cannot process more than {self.batch_max_size} appointments at once.')

        unique_ids = list(dict.fromkeys(appointment_ids))
        result = BatchResult(target_status=target_status)
        if not unique_ids:
            return result

        try:
            with transaction_scope(db):
                for appointment_id in unique_ids:
                    try:
                        with db.begin_nested():
                            self._apply(db, appointment_id, target_status, actor_id, reason)
                    except BookingEngineError as exc:
                        result.failed.append(
                            BatchFailure(appointment_id=appointment_id, reason=exc.code, message=exc.message)
                        )
                        continue
                    result.succeeded.append(appointment_id)
        except SQLAlchemyError as exc:
            logger.exception('Batch transition to %s failed', target_status)
            raise PersistenceUnavailable('Batch update could not be saved.', cause=exc) from exc

        logger.info(
            'Batch transition to %s by %s: %s succeeded, %s failed',
            target_status,
            actor_id,
            len(result.succeeded),
            len(result.failed),
        )

        if options.notify:
            for appointment_id in result.succeeded:
                payload = {
                    'appointment_id': appointment_id,
                    'status': target_status,
                    'actor_id': actor_id,
                    'timestamp': utc_now(),
                }
                if options.include_reason and reason:
                    payload['reason'] = reason
                publish_safely(self._notifier, APPOINTMENT_STATUS_CHANGED, payload)

        if result.succeeded:
            publish_analytics_updated(self._notifier, db)
        return result

    def soft_delete(self, db: Session, appointment_id: int, actor_id: int | None) -> Appointment:
        try:
            with transaction_scope(db):
                appointment = self._load_for_update(db, appointment_id)
                appointment.deleted_at = utc_now()
                db.add(
                    AppointmentStatusEvent(
                        appointment_id=appointment.id,
                        from_status=appointment.status,
                        to_status=appointment.status,
                        actor_id=actor_id,
                        reason='archived',
                    )
                )
        except SQLAlchemyError as exc:
            logger.exception('Failed to archive appointment %s', appointment_id)
            raise PersistenceUnavailable('Appointment could not be archived.', cause=exc) from exc

        logger.info('Appointment %s archived by %s', appointment_id, actor_id)
        publish_analytics_updated(self._notifier, db)
        return appointment

    def restore(self, db: Session, appointment_id: int, actor_id: int | None) -> Appointment:
        """Bring back an archived appointment. Capacity is not re-checked."""
        try:
            with transaction_scope(db):
                appointment = db.query(Appointment).filter(
                    Appointment.id == appointment_id,
                    Appointment.deleted_at.is_not(None),
                ).with_for_update().first()

                if appointment is None:
                    raise AppointmentNotFound(f'Archived appointment {appointment_id} not found.')

                appointment.deleted_at = None
                db.add(
                    AppointmentStatusEvent(
                        appointment_id=appointment.id,
                        from_status=appointment.status,
                        to_status=appointment.status,
                        actor_id=actor_id,
                        reason='restored',
                    )
                )
        except SQLAlchemyError as exc:
            logger.exception('Failed to restore appointment %s', appointment_id)
            raise PersistenceUnavailable('Appointment could not be restored.', cause=exc) from exc

        logger.info('Appointment %s restored by %s', appointment_id, actor_id)
        publish_analytics_updated(self._notifier, db)
        return appointment

    def status_history(self, db: Session, appointment_id: int) -> list[AppointmentStatusEvent]:
        return db.query(AppointmentStatusEvent).filter(
            AppointmentStatusEvent.appointment_id == appointment_id,
        ).order_by(AppointmentStatusEvent.id.asc()).all()
