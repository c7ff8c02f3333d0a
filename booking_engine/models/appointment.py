"""Appointment model definitions."""

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, String, Text, Time
from booking_engine.database import Base, utc_now

PENDING = "pending"
APPROVED = "approved"
COMPLETED = "completed"
CANCELLED = "cancelled"
NO_SHOW = "no_show"

APPOINTMENT_STATUSES = (PENDING, APPROVED, COMPLETED, CANCELLED, NO_SHOW)
TERMINAL_STATUSES = frozenset({COMPLETED, CANCELLED, NO_SHOW})


class Appointment(Base):
    """Represents a booked appointment. Rows are soft-deleted via deleted_at."""
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    staff_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    service_id = Column(Integer, nullable=True)
    date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    status = Column(String, nullable=False, default=PENDING)
    purpose = Column(String)
    notes = Column(Text)
    staff_notes = Column(Text)
    status_reason = Column(String)
    completed_at = Column(DateTime(timezone=True))
    completion_notes = Column(Text)
    completed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
    deleted_at = Column(DateTime(timezone=True))


class AppointmentStatusEvent(Base):
    """Append-only record of every status change."""
    __tablename__ = "appointment_status_events"

    id = Column(Integer, primary_key=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, index=True)
    from_status = Column(String)
    to_status = Column(String, nullable=False)
    actor_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    reason = Column(String)
    created_at = Column(DateTime(timezone=True), default=utc_now)
