"""Appointment model definitions."""

import enum
from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    text,
)
from tutorbook.database import Base


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "SCHEDULED"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


class CancellationReason(str, enum.Enum):
    STUDENT_REQUEST = "student_request"
    TUTOR_REQUEST = "tutor_request"
    ADMIN_ACTION = "admin_action"
    RESCHEDULED = "rescheduled"
    SYSTEM = "system"


ACTIVE_APPOINTMENT = text("status != 'CANCELLED'")


class Appointment(Base):
    """A booked session between one tutor and one student.

    Rows are never deleted; cancellation is a status change. ``version`` is
    bumped on every update so concurrent writers cannot overwrite each other.
    """
    __tablename__ = "appointments"
    __table_args__ = (
        CheckConstraint("start_time < end_time", name="ck_appointments_time_order"),
        Index("idx_appointments_tutor_range", "tutor_id", "start_time", "end_time"),
        Index("idx_appointments_student_range", "student_id", "start_time", "end_time"),
        Index(
            "uq_appointments_tutor_start_active",
            "tutor_id",
            "start_time",
            unique=True,
            sqlite_where=ACTIVE_APPOINTMENT,
            postgresql_where=ACTIVE_APPOINTMENT,
        ),
        Index(
            "uq_appointments_student_start_active",
            "student_id",
            "start_time",
            unique=True,
            sqlite_where=ACTIVE_APPOINTMENT,
            postgresql_where=ACTIVE_APPOINTMENT,
        ),
    )

    id = Column(Integer, primary_key=True)
    tutor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    student_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    subject = Column(String, nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    status = Column(
        Enum(AppointmentStatus, native_enum=False, length=16),
        nullable=False,
        default=AppointmentStatus.SCHEDULED,
    )
    notes = Column(String, nullable=True)
    cancellation_reason = Column(Enum(CancellationReason, native_enum=False, length=32), nullable=True)
    cancellation_note = Column(String, nullable=True)
    cancelled_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    rescheduled_from_id = Column(Integer, ForeignKey("appointments.id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    confirmed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    @property
    def duration_minutes(self) -> int:
        return int((self.end_time - self.start_time).total_seconds() // 60)


class ReservationLock(Base):
    """One row per tutor or student, touched to serialise reservations."""
    __tablename__ = "reservation_locks"

    scope = Column(String(16), primary_key=True)
    owner_id = Column(Integer, primary_key=True)
    version = Column(Integer, nullable=False, default=0)
