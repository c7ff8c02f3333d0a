"""Slot capacity and blackout window model definitions."""

from sqlalchemy import JSON, Boolean, Column, Date, Integer, String, Text, Time, UniqueConstraint
from booking_engine.database import Base

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class SlotCapacityRule(Base):
    """Caps how many appointments one (date, start, end) slot may hold."""
    __tablename__ = "slot_capacity_rules"
    __table_args__ = (UniqueConstraint("day_of_week", "start_time", "end_time"),)

    id = Column(Integer, primary_key=True)
    day_of_week = Column(String, nullable=True)  # NULL applies to every day
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    max_appointments_per_slot = Column(Integer, nullable=False, default=3)
    is_active = Column(Boolean, default=True)
    description = Column(Text)


class BlackoutWindow(Base):
    """A date, or a set of recurring weekdays, closed to bookings."""
    __tablename__ = "blackout_windows"

    id = Column(Integer, primary_key=True)
    date = Column(Date, nullable=True)
    reason = Column(String)
    start_time = Column(Time, nullable=True)
    end_time = Column(Time, nullable=True)
    is_recurring = Column(Boolean, default=False)
    recurring_days = Column(JSON, nullable=True)
    is_active = Column(Boolean, default=True)

    @property
    def is_all_day(self) -> bool:
        return self.start_time is None and self.end_time is None
