import logging
from datetime import date, time, timedelta

from sqlalchemy import or_
from sqlalchemy.orm import Session

from booking_engine.models.appointment import CANCELLED, Appointment
from booking_engine.models.availability import WEEKDAYS, BlackoutWindow, SlotCapacityRule
from booking_engine.schemas import AvailabilityDecision, BlackedOutDay

logger = logging.getLogger(__name__)

DAY_START = time.min
DAY_END = time.max

BLACKOUT_REASON = 'blackout_date'
SLOT_FULL_REASON = 'slot_full'


def weekday_name(value: date) -> str:
    return WEEKDAYS[value.weekday()]


def blackout_matches_date(window: BlackoutWindow, value: date) -> bool:
    if window.date == value:
        return True
    return bool(window.is_recurring) and weekday_name(value) in (window.recurring_days or [])


def blackout_covers(window: BlackoutWindow, start_time: time, end_time: time) -> bool:
    """A whole-day window covers everything; a timed window covers overlapping requests."""
    if window.is_all_day:
        return True

    window_start = window.start_time or DAY_START
    window_end = window.end_time or DAY_END
    return start_time < window_end and end_time > window_start


def count_slot_bookings(db: Session, slot_date: date, start_time: time, end_time: time) -> int:
    return db.query(Appointment).filter(
        Appointment.date == slot_date,
        Appointment.start_time == start_time,
        Appointment.end_time == end_time,
        Appointment.status != CANCELLED,
        Appointment.deleted_at.is_(None),
    ).count()


class AvailabilityEngine:
    """Answers whether a (date, start, end) slot can take another booking."""

    def active_blackouts_for(self, db: Session, slot_date: date) -> list[BlackoutWindow]:
        candidates = db.query(BlackoutWindow).filter(
            BlackoutWindow.is_active.is_(True),
            or_(BlackoutWindow.date == slot_date, BlackoutWindow.is_recurring.is_(True)),
        ).order_by(BlackoutWindow.id.asc()).all()

        matching = [window for window in candidates if blackout_matches_date(window, slot_date)]
        # Exact-date windows are checked before recurring ones.
        return sorted(matching, key=lambda window: 0 if window.date == slot_date else 1)

    def find_blocking_blackout(
        self,
        db: Session,
        slot_date: date,
        start_time: time,
        end_time: time,
    ) -> BlackoutWindow | None:
        for window in self.active_blackouts_for(db, slot_date):
            if blackout_covers(window, start_time, end_time):
                return window
        return None

    def find_capacity_rule(
        self,
        db: Session,
        slot_date: date,
        start_time: time,
        end_time: time,
    ) -> SlotCapacityRule | None:
        rules = db.query(SlotCapacityRule).filter(
            SlotCapacityRule.is_active.is_(True),
            or_(SlotCapacityRule.day_of_week == weekday_name(slot_date), SlotCapacityRule.day_of_week.is_(None)),
            SlotCapacityRule.start_time <= start_time,
            SlotCapacityRule.end_time >= end_time,
        ).all()

        if not rules:
            return None

        # Weekday-specific rules win over every-day rules.
        rules.sort(key=lambda rule: (rule.day_of_week is None, rule.id))
        return rules[0]

    def is_bookable(self, db: Session, slot_date: date, start_time: time, end_time: time) -> AvailabilityDecision:
        blackout = self.find_blocking_blackout(db, slot_date, start_time, end_time)
        if blackout is not None:
            if blackout.is_all_day:
                message = f'All-day blackout: {blackout.reason or "unavailable"}'
            else:
                message = f'Time slot is blocked: {blackout.reason or "unavailable"}'
            return AvailabilityDecision(allowed=False, reason=BLACKOUT_REASON, message=message)

        rule = self.find_capacity_rule(db, slot_date, start_time, end_time)
        if rule is None:
            return AvailabilityDecision(allowed=True)

        booked = count_slot_bookings(db, slot_date, start_time, end_time)
        if booked >= rule.max_appointments_per_slot:
            logger.info(
                'Slot %s %s-%s is full (%s/%s)',
                slot_date,
                start_time,
                end_time,
                booked,
                rule.max_appointments_per_slot,
            )
            return AvailabilityDecision(
                allowed=False,
                reason=SLOT_FULL_REASON,
                message='This time slot is at full capacity. Please select another time.',
            )

        return AvailabilityDecision(allowed=True)

    def blackouts_for_range(self, db: Session, start_date: date, end_date: date) -> list[BlackedOutDay]:
        if end_date < start_date:
            return []

        windows = db.query(BlackoutWindow).filter(
            BlackoutWindow.is_active.is_(True),
            or_(
                BlackoutWindow.date.between(start_date, end_date),
                BlackoutWindow.is_recurring.is_(True),
            ),
        ).order_by(BlackoutWindow.id.asc()).all()

        days: list[BlackedOutDay] = []
        current_day = start_date
        while current_day <= end_date:
            for window in windows:
                if blackout_matches_date(window, current_day):
                    days.append(
                        BlackedOutDay(
                            date=current_day,
                            reason=window.reason,
                            start_time=window.start_time,
                            end_time=window.end_time,
                            all_day=window.is_all_day,
                        )
                    )
            current_day += timedelta(days=1)

        return days
