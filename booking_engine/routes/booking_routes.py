from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from booking_engine.auth.dependencies import Identity, get_current_identity, require_staff
from booking_engine.core.errors import AppointmentNotFound, BatchTooLarge
from booking_engine.database import ensure_booking_schema, get_db
from booking_engine.engine import BookingEngine, get_engine
from booking_engine.schemas import (
    AppointmentResponse,
    BatchResult,
    BatchTransitionRequest,
    CompleteAppointmentRequest,
    CreateAppointmentRequest,
    DailyUsage,
    StatusEventResponse,
    TransitionRequest,
)

router = APIRouter(tags=['appointments'])


def ensure_database_ready() -> None:
    try:
        ensure_booking_schema()
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail='Database unavailable. Verify DATABASE_URL.',
        ) from exc


def _rejection(reason: str | None, message: str | None) -> HTTPException:
    if reason == AppointmentNotFound.code:
        status_code = status.HTTP_404_NOT_FOUND
    else:
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    return HTTPException(status_code=status_code, detail={'code': reason, 'message': message})


@router.post('/appointments', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def create_appointment(
    data: CreateAppointmentRequest,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    engine: BookingEngine = Depends(get_engine),
):
    ensure_database_ready()

    result = engine.check_admission(db, identity.user_id, data.date, data.start_time, data.end_time, details=data)
    if not result.admitted:
        raise _rejection(result.reason, result.message)

    return result.appointment


@router.get('/appointments/remaining')
def get_remaining_bookings(
    booking_date: date | None = Query(default=None, alias='date'),
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    engine: BookingEngine = Depends(get_engine),
):
    ensure_database_ready()
    booking_date = booking_date or date.today()

    return {
        'date': booking_date,
        'remaining': engine.remaining_bookings(db, identity.user_id, booking_date),
    }


@router.get('/appointments/usage', response_model=DailyUsage)
def get_daily_usage(
    booking_date: date | None = Query(default=None, alias='date'),
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    engine: BookingEngine = Depends(get_engine),
):
    ensure_database_ready()
    booking_date = booking_date or date.today()

    return engine.daily_usage(db, identity.user_id, booking_date)


@router.post('/appointments/batch/transition', response_model=BatchResult)
def batch_transition_appointments(
    data: BatchTransitionRequest,
    identity: Identity = Depends(require_staff),
    db: Session = Depends(get_db),
    engine: BookingEngine = Depends(get_engine),
):
    ensure_database_ready()

    try:
        return engine.batch_transition(
            db,
            data.appointment_ids,
            data.target_status,
            identity.user_id,
            reason=data.reason,
            options=data.options(),
        )
    except BatchTooLarge as exc:
        raise _rejection(exc.code, exc.message) from exc


@router.post('/appointments/{appointment_id}/transition', response_model=AppointmentResponse)
def transition_appointment(
    appointment_id: int,
    data: TransitionRequest,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    engine: BookingEngine = Depends(get_engine),
):
    ensure_database_ready()

    # Clients may only cancel their own appointments; every other change is a staff action.
    if not identity.is_staff:
        if data.target_status != 'cancelled':
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail='Only staff can change appointment status.',
            )
        owned = engine.appointment_owner(db, appointment_id)
        if owned is not None and owned != identity.user_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail='Only the user who booked this appointment can cancel it.',
            )

    result = engine.transition_appointment(db, appointment_id, data.target_status, identity.user_id, data.reason)
    if not result.ok:
        raise _rejection(result.reason, result.message)

    return result.appointment


@router.post('/appointments/{appointment_id}/complete', response_model=AppointmentResponse)
def complete_appointment(
    appointment_id: int,
    data: CompleteAppointmentRequest,
    identity: Identity = Depends(require_staff),
    db: Session = Depends(get_db),
    engine: BookingEngine = Depends(get_engine),
):
    ensure_database_ready()

    result = engine.complete_appointment(db, appointment_id, identity.user_id, data.completion_notes)
    if not result.ok:
        raise _rejection(result.reason, result.message)

    return result.appointment


@router.delete('/appointments/{appointment_id}', status_code=status.HTTP_204_NO_CONTENT)
def archive_appointment(
    appointment_id: int,
    identity: Identity = Depends(require_staff),
    db: Session = Depends(get_db),
    engine: BookingEngine = Depends(get_engine),
):
    ensure_database_ready()

    try:
        engine.lifecycle.soft_delete(db, appointment_id, identity.user_id)
    except AppointmentNotFound as exc:
        raise _rejection(exc.code, exc.message) from exc


@router.post('/appointments/{appointment_id}/restore', response_model=AppointmentResponse)
def restore_appointment(
    appointment_id: int,
    identity: Identity = Depends(require_staff),
    db: Session = Depends(get_db),
    engine: BookingEngine = Depends(get_engine),
):
    ensure_database_ready()

    try:
        return engine.lifecycle.restore(db, appointment_id, identity.user_id)
    except AppointmentNotFound as exc:
        raise _rejection(exc.code, exc.message) from exc


@router.get('/appointments/{appointment_id}/history', response_model=list[StatusEventResponse])
def get_status_history(
    appointment_id: int,
    identity: Identity = Depends(require_staff),
    db: Session = Depends(get_db),
    engine: BookingEngine = Depends(get_engine),
):
    del identity
    ensure_database_ready()

    return engine.lifecycle.status_history(db, appointment_id)
