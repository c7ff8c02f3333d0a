from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from booking_engine.auth.dependencies import Identity, require_admin, require_staff
from booking_engine.core.errors import InvalidPolicy
from booking_engine.database import get_db
from booking_engine.engine import BookingEngine, get_engine
from booking_engine.models.availability import BlackoutWindow, SlotCapacityRule
from booking_engine.routes.booking_routes import ensure_database_ready
from booking_engine.schemas import (
    BlackedOutDay,
    BlackoutResponse,
    CreateBlackoutRequest,
    CreateSlotCapacityRequest,
    PolicyChangeResponse,
    PolicyResponse,
    PolicyUpdateResult,
    SlotCapacityResponse,
    UpdateBlackoutRequest,
    UpdatePolicyRequest,
    UpdateSlotCapacityRequest,
)

router = APIRouter(tags=['policy'])

MAX_BLACKOUT_RANGE_DAYS = 366


def _database_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail='Database unavailable. Verify DATABASE_URL.',
    )


def find_overlapping_rule(
    db: Session,
    data: CreateSlotCapacityRequest,
    exclude_id: int | None = None,
) -> SlotCapacityRule | None:
    """Active rules for the same weekday (or the every-day bucket) must not overlap."""
    day_filter = (
        SlotCapacityRule.day_of_week.is_(None)
        if data.day_of_week is None
        else SlotCapacityRule.day_of_week == data.day_of_week
    )
    query = db.query(SlotCapacityRule).filter(
        SlotCapacityRule.is_active.is_(True),
        day_filter,
        SlotCapacityRule.start_time < data.end_time,
        SlotCapacityRule.end_time > data.start_time,
    )
    if exclude_id is not None:
        query = query.filter(SlotCapacityRule.id != exclude_id)
    return query.first()


def _overlap_conflict() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail='This time range overlaps an existing slot capacity rule.',
    )


@router.get('', response_model=PolicyResponse)
def get_policy(
    identity: Identity = Depends(require_staff),
    db: Session = Depends(get_db),
    engine: BookingEngine = Depends(get_engine),
):
    del identity
    ensure_database_ready()

    return engine.get_active_policy(db)


@router.put('', response_model=PolicyUpdateResult)
def update_policy(
    data: UpdatePolicyRequest,
    identity: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
    engine: BookingEngine = Depends(get_engine),
):
    ensure_database_ready()

    try:
        update = engine.update_policy(
            db,
            data.daily_limit_per_user,
            active=data.is_active,
            description=data.description,
            updated_by=identity.user_id,
        )
    except InvalidPolicy as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={'code': exc.code, 'message': exc.message},
        ) from exc

    return PolicyUpdateResult(old_limit=update.old_limit, policy=PolicyResponse.model_validate(update.policy))


@router.get('/history', response_model=list[PolicyChangeResponse])
def get_policy_history(
    limit: int = Query(default=50, ge=1, le=200),
    identity: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
    engine: BookingEngine = Depends(get_engine),
):
    del identity
    ensure_database_ready()

    return engine.policy_store.policy_history(db, limit=limit)


@router.get('/slot-capacities', response_model=list[SlotCapacityResponse])
def list_slot_capacities(
    day_of_week: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        query = db.query(SlotCapacityRule)
        if day_of_week:
            query = query.filter(
                or_(SlotCapacityRule.day_of_week.is_(None), SlotCapacityRule.day_of_week == day_of_week.strip().lower())
            )
        return query.order_by(SlotCapacityRule.start_time.asc()).all()
    except SQLAlchemyError as exc:
        raise _database_unavailable() from exc


@router.post('/slot-capacities', response_model=SlotCapacityResponse, status_code=status.HTTP_201_CREATED)
def create_slot_capacity(
    data: CreateSlotCapacityRequest,
    identity: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
):
    del identity
    ensure_database_ready()

    try:
        if find_overlapping_rule(db, data):
            raise _overlap_conflict()

        rule = SlotCapacityRule(
            day_of_week=data.day_of_week,
            start_time=data.start_time,
            end_time=data.end_time,
            max_appointments_per_slot=data.max_appointments_per_slot,
            is_active=True,
            description=data.description,
        )
        db.add(rule)
        db.commit()
        db.refresh(rule)

        return rule
    except IntegrityError as exc:
        db.rollback()
        raise _overlap_conflict() from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise _database_unavailable() from exc


def _get_slot_capacity_or_404(db: Session, rule_id: int) -> SlotCapacityRule:
    rule = db.query(SlotCapacityRule).filter(SlotCapacityRule.id == rule_id).first()
    if not rule:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='Slot capacity rule not found.',
        )
    return rule


@router.put('/slot-capacities/{rule_id}', response_model=SlotCapacityResponse)
def update_slot_capacity(
    rule_id: int,
    data: UpdateSlotCapacityRequest,
    identity: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
):
    del identity
    ensure_database_ready()

    try:
        rule = _get_slot_capacity_or_404(db, rule_id)

        if data.is_active and find_overlapping_rule(db, data, exclude_id=rule.id):
            raise _overlap_conflict()

        rule.day_of_week = data.day_of_week
        rule.start_time = data.start_time
        rule.end_time = data.end_time
        rule.max_appointments_per_slot = data.max_appointments_per_slot
        rule.is_active = data.is_active
        rule.description = data.description
        db.commit()
        db.refresh(rule)

        return rule
    except IntegrityError as exc:
        db.rollback()
        raise _overlap_conflict() from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise _database_unavailable() from exc


@router.delete('/slot-capacities/{rule_id}', status_code=status.HTTP_204_NO_CONTENT)
def remove_slot_capacity(
    rule_id: int,
    identity: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
):
    del identity
    ensure_database_ready()

    try:
        db.delete(_get_slot_capacity_or_404(db, rule_id))
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise _database_unavailable() from exc


@router.get('/blackouts', response_model=list[BlackoutResponse])
def list_blackouts(db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return db.query(BlackoutWindow).filter(
            BlackoutWindow.is_active.is_(True),
        ).order_by(BlackoutWindow.date.asc(), BlackoutWindow.id.asc()).all()
    except SQLAlchemyError as exc:
        raise _database_unavailable() from exc


@router.get('/blackouts/range', response_model=list[BlackedOutDay])
def list_blacked_out_days(
    start_date: date = Query(...),
    end_date: date = Query(...),
    db: Session = Depends(get_db),
    engine: BookingEngine = Depends(get_engine),
):
    if (end_date - start_date).days > MAX_BLACKOUT_RANGE_DAYS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f'Date range cannot exceed {MAX_BLACKOUT_RANGE_DAYS} days.',
        )

    ensure_database_ready()

    try:
        return engine.availability.blackouts_for_range(db, start_date, end_date)
    except SQLAlchemyError as exc:
        raise _database_unavailable() from exc


@router.post('/blackouts', response_model=BlackoutResponse, status_code=status.HTTP_201_CREATED)
def create_blackout(
    data: CreateBlackoutRequest,
    identity: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
):
    del identity
    ensure_database_ready()

    try:
        blackout = BlackoutWindow(
            date=data.date,
            reason=data.reason,
            start_time=data.start_time,
            end_time=data.end_time,
            is_recurring=data.is_recurring,
            recurring_days=data.recurring_days if data.is_recurring else None,
            is_active=True,
        )
        db.add(blackout)
        db.commit()
        db.refresh(blackout)

        return blackout
    except SQLAlchemyError as exc:
        db.rollback()
        raise _database_unavailable() from exc


@router.put('/blackouts/{blackout_id}', response_model=BlackoutResponse)
def update_blackout(
    blackout_id: int,
    data: UpdateBlackoutRequest,
    identity: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
):
    del identity
    ensure_database_ready()

    try:
        blackout = db.query(BlackoutWindow).filter(BlackoutWindow.id == blackout_id).first()

        if not blackout:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail='Blackout not found.',
            )

        blackout.date = data.date
        blackout.reason = data.reason
        blackout.start_time = data.start_time
        blackout.end_time = data.end_time
        blackout.is_recurring = data.is_recurring
        blackout.recurring_days = data.recurring_days if data.is_recurring else None
        blackout.is_active = data.is_active
        db.commit()
        db.refresh(blackout)

        return blackout
    except SQLAlchemyError as exc:
        db.rollback()
        raise _database_unavailable() from exc


@router.delete('/blackouts/{blackout_id}', status_code=status.HTTP_204_NO_CONTENT)
def remove_blackout(
    blackout_id: int,
    identity: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
):
    del identity
    ensure_database_ready()

    try:
        blackout = db.query(BlackoutWindow).filter(BlackoutWindow.id == blackout_id).first()

        if not blackout:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail='Blackout not found.',
            )

        db.delete(blackout)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise _database_unavailable() from exc
