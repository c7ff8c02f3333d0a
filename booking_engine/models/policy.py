"""Capacity policy model definitions."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from booking_engine.database import Base, utc_now


class CapacityPolicy(Base):
    """The single booking policy row for the organization."""
    __tablename__ = "capacity_policies"

    id = Column(Integer, primary_key=True)
    daily_limit_per_user = Column(Integer, nullable=False, default=3)
    is_active = Column(Boolean, nullable=False, default=True)
    description = Column(Text)
    last_updated_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class CapacityPolicyChange(Base):
    __tablename__ = "capacity_policy_changes"

    id = Column(Integer, primary_key=True)
    policy_id = Column(Integer, ForeignKey("capacity_policies.id"), nullable=False, index=True)
    old_limit = Column(Integer, nullable=False)
    new_limit = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False)
    description = Column(String)
    updated_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    changed_at = Column(DateTime(timezone=True), default=utc_now)
