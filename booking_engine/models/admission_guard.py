"""Admission guard rows used to serialize count-then-insert per key."""

from sqlalchemy import Column, Date, Integer, String
from booking_engine.database import Base


class AdmissionGuard(Base):
    __tablename__ = "admission_guards"

    key = Column(String, primary_key=True)
    version = Column(Integer, nullable=False, default=0)
    guard_date = Column(Date, nullable=True, index=True)
