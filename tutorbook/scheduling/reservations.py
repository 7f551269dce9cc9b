"""
Reservation engine: the single gate through which appointments are created.

The check-then-insert runs inside one transaction that first takes the
store-level locks for the tutor and the student (see
``store.acquire_reservation_locks``). Concurrent reservations for the same
tutor or student are therefore serialised by the database, and whichever
transaction commits first wins.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import TYPE_CHECKING, Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tutorbook.core import config
from tutorbook.errors import (
    InvalidInterval,
    NotFound,
    ReservationConflict,
    SlotAlreadyBooked,
    SlotNoLongerAvailable,
    StudentDoubleBooked,
)
from tutorbook.models.appointment import Appointment, AppointmentStatus
from tutorbook.models.user import UserRole
from tutorbook.scheduling import store

if TYPE_CHECKING:
    from tutorbook.scheduling.lifecycle import LifecycleManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReservationRequest:
    tutor_id: int
    student_id: int
    start_at: datetime
    end_at: datetime
    subject: str
    notes: Optional[str]

    def details(self) -> dict:
        return {
            'tutor_id': self.tutor_id,
            'student_id': self.student_id,
            'start_time': self.start_at.isoformat(),
            'end_time': self.end_at.isoformat(),
        }


def build_request(
    tutor_id: int,
    student_id: int,
    slot_date: date,
    start_time: time,
    end_time: time,
    subject: str,
    notes: Optional[str],
    now: datetime,
) -> ReservationRequest:
    start_at = datetime.combine(slot_date, start_time).replace(second=0, microsecond=0)
    end_at = datetime.combine(slot_date, end_time).replace(second=0, microsecond=0)

    if start_at >= end_at:
        raise InvalidInterval('Start time must be before end time.')

    if start_at <= now:
        raise InvalidInterval('Appointments must be scheduled in the future.')

    if tutor_id == student_id:
        raise InvalidInterval('A tutor cannot book a session with themselves.')

    normalized_subject = (subject or '').strip()
    if not normalized_subject:
        raise InvalidInterval('Subject is required.')
    if len(normalized_subject) > config.MAX_SUBJECT_LENGTH:
        raise InvalidInterval(f'Subject must be {config.MAX_SUBJECT_LENGTH} characters or fewer.')

    normalized_notes = notes.strip() if notes else None
    if normalized_notes and len(normalized_notes) > config.MAX_APPOINTMENT_NOTES_LENGTH:
        raise InvalidInterval(f'Notes must be {config.MAX_APPOINTMENT_NOTES_LENGTH} characters or fewer.')

    return ReservationRequest(
        tutor_id=tutor_id,
        student_id=student_id,
        start_at=start_at,
        end_at=end_at,
        subject=normalized_subject,
        notes=normalized_notes or None,
    )


def require_participants(db: Session, tutor_id: int, student_id: int) -> None:
    if not store.has_role(db, tutor_id, UserRole.TUTOR):
        raise NotFound('Tutor not found.')
    if not store.has_role(db, student_id, UserRole.STUDENT):
        raise NotFound('Student not found.')


def _conflict_from_integrity_error(exc: IntegrityError, request: ReservationRequest) -> ReservationConflict:
    message = str(getattr(exc, 'orig', exc)).lower()
    if 'student' in message:
        return StudentDoubleBooked('You already have a session at this time.', details=request.details())
    return SlotAlreadyBooked('This time is no longer available, please pick another.', details=request.details())


def place_appointment(
    db: Session,
    request: ReservationRequest,
    now: datetime,
    rescheduled_from_id: Optional[int] = None,
) -> Appointment:
    """
    Check the interval and insert the appointment.

    The caller must already hold the reservation locks for the request's
    tutor and student, and owns the commit.
    """
    if not store.interval_is_published(db, request.tutor_id, request.start_at, request.end_at):
        raise SlotNoLongerAvailable(
            'This time is no longer available, please pick another.',
            details=request.details(),
        )

    if store.find_overlapping_appointment(db, request.start_at, request.end_at, tutor_id=request.tutor_id):
        raise SlotAlreadyBooked(
            'This time is no longer available, please pick another.',
            details=request.details(),
        )

    if store.find_overlapping_appointment(db, request.start_at, request.end_at, student_id=request.student_id):
        raise StudentDoubleBooked(
            'You already have a session at this time.',
            details=request.details(),
        )

    appointment = Appointment(
        tutor_id=request.tutor_id,
        student_id=request.student_id,
        subject=request.subject,
        notes=request.notes,
        start_time=request.start_at,
        end_time=request.end_at,
        status=AppointmentStatus.SCHEDULED,
        rescheduled_from_id=rescheduled_from_id,
        created_at=now,
    )
    db.add(appointment)

    try:
        db.flush()
    except IntegrityError as exc:
        raise _conflict_from_integrity_error(exc, request) from exc

    return appointment


class ReservationEngine:
    def __init__(
        self,
        db: Session,
        lifecycle: 'LifecycleManager',
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.db = db
        self.lifecycle = lifecycle
        self.clock = clock

    def reserve(
        self,
        tutor_id: int,
        student_id: int,
        slot_date: date,
        start_time: time,
        end_time: time,
        subject: str,
        notes: Optional[str] = None,
        actor_id: Optional[int] = None,
    ) -> Appointment:
        """
        Atomically book [start_time, end_time) on ``slot_date``.

        Raises:
            InvalidInterval: Malformed or past-dated request
            NotFound: Unknown tutor or student
            SlotNoLongerAvailable: Interval outside the tutor's current availability
            SlotAlreadyBooked: The tutor already has an overlapping appointment
            StudentDoubleBooked: The student already has an overlapping appointment
            StoreUnavailable: The database failed
        """
        now = self.clock()
        request = build_request(tutor_id, student_id, slot_date, start_time, end_time, subject, notes, now)

        try:
            with store.store_errors(self.db, 'reserve'):
                require_participants(self.db, tutor_id, student_id)
                store.acquire_reservation_locks(self.db, tutor_id, student_id)
                appointment = place_appointment(self.db, request, now)
                self.db.commit()
                self.db.refresh(appointment)
        except ReservationConflict as exc:
            logger.info('Reservation rejected (%s): %s', exc.code, request.details())
            raise

        logger.info(
            'Reserved appointment %s for tutor %s and student %s at %s',
            appointment.id,
            tutor_id,
            student_id,
            request.start_at.isoformat(),
        )
        self.lifecycle.record_booked(appointment, actor_id if actor_id is not None else student_id)
        return appointment
