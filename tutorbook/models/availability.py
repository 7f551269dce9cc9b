"""Availability model definitions."""

from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Time,
    UniqueConstraint,
)
from tutorbook.database import Base


class RecurringAvailabilityRule(Base):
    """A weekly-repeating block of open hours for one tutor.

    ``day_of_week`` counts from Sunday (0) to Saturday (6). Times are
    wall-clock values; rendering them in a timezone is left to the caller.
    """
    __tablename__ = "availability_rules"
    __table_args__ = (
        CheckConstraint("day_of_week BETWEEN 0 AND 6", name="ck_availability_rules_day_of_week"),
        CheckConstraint("start_time < end_time", name="ck_availability_rules_time_order"),
        Index("idx_availability_rules_tutor_day", "tutor_id", "day_of_week", "is_active"),
    )

    id = Column(Integer, primary_key=True)
    tutor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    slot_duration_minutes = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    valid_from = Column(Date, nullable=True)
    valid_until = Column(Date, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)


class AvailabilityException(Base):
    """A one-off open/closed override for a single calendar date."""
    __tablename__ = "availability_exceptions"
    __table_args__ = (
        UniqueConstraint("tutor_id", "date", name="uq_availability_exceptions_tutor_date"),
    )

    id = Column(Integer, primary_key=True)
    tutor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    date = Column(Date, nullable=False)
    is_available = Column(Boolean, nullable=False)
    start_time = Column(Time, nullable=True)
    end_time = Column(Time, nullable=True)
    reason = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)
