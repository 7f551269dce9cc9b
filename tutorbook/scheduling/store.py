"""Data-access helpers shared by the slot generator, reservations and lifecycle."""

import logging
from contextlib import contextmanager
from datetime import date, datetime, time, timedelta
from typing import Iterator, Optional

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from tutorbook.errors import SchedulingError, classify_store_error
from tutorbook.models.appointment import Appointment, AppointmentStatus, ReservationLock
from tutorbook.models.availability import AvailabilityException, RecurringAvailabilityRule
from tutorbook.models.user import User, UserRole

logger = logging.getLogger(__name__)

TUTOR_LOCK_SCOPE = 'tutor'
STUDENT_LOCK_SCOPE = 'student'


def day_of_week(value: date) -> int:
    """Sunday-based weekday index (Sunday = 0 ... Saturday = 6)."""
    return (value.weekday() + 1) % 7


def combine(value: date, clock_time: time) -> datetime:
    return datetime.combine(value, clock_time)


def rule_applies_on(rule: RecurringAvailabilityRule, value: date) -> bool:
    if not rule.is_active or rule.day_of_week != day_of_week(value):
        return False
    if rule.valid_from and value < rule.valid_from:
        return False
    if rule.valid_until and value > rule.valid_until:
        return False
    return True


@contextmanager
def store_errors(db: Session, operation: str) -> Iterator[None]:
    """Roll back and translate store failures raised inside the block."""
    try:
        yield
    except SchedulingError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        error = classify_store_error(exc)
        if error.retryable:
            logger.warning('%s hit a concurrent update: %s', operation, exc)
        else:
            logger.exception('%s failed against the store', operation)
        raise error from exc


def get_user(db: Session, user_id: int) -> Optional[User]:
    return db.get(User, user_id)


def has_role(db: Session, user_id: int, role: UserRole) -> bool:
    user = get_user(db, user_id)
    return user is not None and UserRole(user.role) == role


def _insert_lock_row(db: Session, scope: str, owner_id: int) -> None:
    dialect = db.get_bind().dialect.name
    values = {'scope': scope, 'owner_id': owner_id, 'version': 0}

    if dialect == 'postgresql':
        db.execute(postgresql.insert(ReservationLock).values(**values).on_conflict_do_nothing())
        return
    if dialect == 'sqlite':
        db.execute(sqlite.insert(ReservationLock).values(**values).on_conflict_do_nothing())
        return

    existing = db.execute(
        select(ReservationLock.scope).where(
            ReservationLock.scope == scope,
            ReservationLock.owner_id == owner_id,
        )
    ).first()
    if existing is None:
        try:
            with db.begin_nested():
                db.execute(ReservationLock.__table__.insert().values(**values))
        except IntegrityError:
            logger.debug('Lock row %s:%s created concurrently', scope, owner_id)


def acquire_reservation_locks(db: Session, tutor_id: int, student_id: int) -> None:
    """
    Take the store-level reservation locks for a tutor and a student.

    Each lock is a row in ``reservation_locks`` that is updated inside the
    caller's transaction, so it is held until that transaction commits or
    rolls back. Keys are locked in a fixed order to avoid deadlocks between
    reservations that share a tutor or a student.
    """
    keys = sorted({(TUTOR_LOCK_SCOPE, tutor_id), (STUDENT_LOCK_SCOPE, student_id)})

    for scope, owner_id in keys:
        _insert_lock_row(db, scope, owner_id)
        db.execute(
            update(ReservationLock)
            .where(ReservationLock.scope == scope, ReservationLock.owner_id == owner_id)
            .values(version=ReservationLock.version + 1)
        )


def find_overlapping_appointment(
    db: Session,
    start_time: datetime,
    end_time: datetime,
    tutor_id: Optional[int] = None,
    student_id: Optional[int] = None,
) -> Optional[Appointment]:
    query = db.query(Appointment).filter(
        Appointment.status != AppointmentStatus.CANCELLED,
        Appointment.start_time < end_time,
        Appointment.end_time > start_time,
    )
    if tutor_id is not None:
        query = query.filter(Appointment.tutor_id == tutor_id)
    if student_id is not None:
        query = query.filter(Appointment.student_id == student_id)

    return query.order_by(Appointment.start_time.asc()).first()


def load_active_rules(db: Session, tutor_id: int) -> list[RecurringAvailabilityRule]:
    return db.query(RecurringAvailabilityRule).filter(
        RecurringAvailabilityRule.tutor_id == tutor_id,
        RecurringAvailabilityRule.is_active.is_(True),
    ).order_by(
        RecurringAvailabilityRule.day_of_week.asc(),
        RecurringAvailabilityRule.start_time.asc(),
        RecurringAvailabilityRule.id.asc(),
    ).all()


def load_exceptions(db: Session, tutor_id: int, range_start: date, range_end: date) -> dict[date, AvailabilityException]:
    exceptions = db.query(AvailabilityException).filter(
        AvailabilityException.tutor_id == tutor_id,
        AvailabilityException.date >= range_start,
        AvailabilityException.date <= range_end,
    ).all()
    return {exception.date: exception for exception in exceptions}


def load_busy_intervals(
    db: Session,
    tutor_id: int,
    range_start: date,
    range_end: date,
) -> list[tuple[datetime, datetime]]:
    window_start = combine(range_start, time.min)
    window_end = combine(range_end + timedelta(days=1), time.min)
    rows = db.query(Appointment.start_time, Appointment.end_time).filter(
        Appointment.tutor_id == tutor_id,
        Appointment.status != AppointmentStatus.CANCELLED,
        Appointment.start_time < window_end,
        Appointment.end_time > window_start,
    ).order_by(Appointment.start_time.asc()).all()
    return [(start_time, end_time) for start_time, end_time in rows]


def interval_is_published(
    db: Session,
    tutor_id: int,
    start_time: datetime,
    end_time: datetime,
) -> bool:
    """True when [start_time, end_time) lies inside an open window on its date."""
    # Availability windows never cross midnight.
    if start_time.date() != end_time.date():
        return False

    slot_date = start_time.date()
    clock_start = start_time.time()
    clock_end = end_time.time()

    exception = db.query(AvailabilityException).filter(
        AvailabilityException.tutor_id == tutor_id,
        AvailabilityException.date == slot_date,
    ).first()

    if exception is not None and not exception.is_available:
        return False

    if exception is not None and exception.start_time and exception.end_time:
        if exception.start_time <= clock_start and clock_end <= exception.end_time:
            return True

    for rule in load_active_rules(db, tutor_id):
        if rule_applies_on(rule, slot_date) and rule.start_time <= clock_start and clock_end <= rule.end_time:
            return True

    return False
