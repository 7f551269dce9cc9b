"""
Appointment lifecycle.

    SCHEDULED --confirm--> CONFIRMED --complete--> COMPLETED
    SCHEDULED|CONFIRMED --cancel--> CANCELLED
    SCHEDULED|CONFIRMED --reschedule--> CANCELLED + new SCHEDULED record

COMPLETED and CANCELLED are terminal. This module is the only writer of
``Appointment.status``; every successful change emits one notification.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Callable, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from tutorbook.core import config
from tutorbook.errors import InvalidTransition, NotFound, ReservationConflict, Unauthorized
from tutorbook.models.appointment import Appointment, AppointmentStatus, CancellationReason
from tutorbook.models.user import Actor, UserRole
from tutorbook.scheduling import reservations, store
from tutorbook.scheduling.notifications import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    NotificationEvent,
    dispatch_safely,
)

logger = logging.getLogger(__name__)


class LifecycleEvent(str, enum.Enum):
    CONFIRM = "confirm"
    COMPLETE = "complete"
    CANCEL = "cancel"
    RESCHEDULE = "reschedule"


TRANSITIONS: dict[tuple[AppointmentStatus, LifecycleEvent], AppointmentStatus] = {
    (AppointmentStatus.SCHEDULED, LifecycleEvent.CONFIRM): AppointmentStatus.CONFIRMED,
    (AppointmentStatus.CONFIRMED, LifecycleEvent.COMPLETE): AppointmentStatus.COMPLETED,
    (AppointmentStatus.SCHEDULED, LifecycleEvent.CANCEL): AppointmentStatus.CANCELLED,
    (AppointmentStatus.CONFIRMED, LifecycleEvent.CANCEL): AppointmentStatus.CANCELLED,
    (AppointmentStatus.SCHEDULED, LifecycleEvent.RESCHEDULE): AppointmentStatus.CANCELLED,
    (AppointmentStatus.CONFIRMED, LifecycleEvent.RESCHEDULE): AppointmentStatus.CANCELLED,
}

ALLOWED_PARTIES: dict[LifecycleEvent, frozenset[UserRole]] = {
    LifecycleEvent.CONFIRM: frozenset({UserRole.TUTOR, UserRole.ADMIN}),
    LifecycleEvent.COMPLETE: frozenset({UserRole.TUTOR, UserRole.ADMIN}),
    LifecycleEvent.CANCEL: frozenset({UserRole.TUTOR, UserRole.STUDENT, UserRole.ADMIN}),
    LifecycleEvent.RESCHEDULE: frozenset({UserRole.TUTOR, UserRole.STUDENT, UserRole.ADMIN}),
}

DEFAULT_CANCELLATION_REASONS = {
    UserRole.STUDENT: CancellationReason.STUDENT_REQUEST,
    UserRole.TUTOR: CancellationReason.TUTOR_REQUEST,
    UserRole.ADMIN: CancellationReason.ADMIN_ACTION,
}


PARTY_CANCELLATION_REASONS: dict[UserRole, frozenset[CancellationReason]] = {
    UserRole.STUDENT: frozenset({CancellationReason.STUDENT_REQUEST}),
    UserRole.TUTOR: frozenset({CancellationReason.TUTOR_REQUEST}),
    UserRole.ADMIN: frozenset(CancellationReason) - {CancellationReason.RESCHEDULED},
}


def parse_event(value) -> LifecycleEvent:
    try:
        return LifecycleEvent(value)
    except ValueError as exc:
        raise InvalidTransition(
            f'Unknown lifecycle event: {value}.',
            details={'event': str(value)},
        ) from exc


def next_status(current: AppointmentStatus, event: LifecycleEvent) -> AppointmentStatus:
    target = TRANSITIONS.get((current, event))
    if target is None:
        raise InvalidTransition(
            f'Cannot {event.value} an appointment that is {current.value}.',
            details={'status': current.value, 'event': event.value},
        )
    return target


@dataclass(frozen=True)
class RescheduleTarget:
    date: date
    start_time: time
    end_time: time
    subject: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class RescheduleResult:
    cancelled: Appointment
    replacement: Appointment


class LifecycleManager:
    def __init__(
        self,
        db: Session,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.db = db
        self.dispatcher = dispatcher or LoggingNotificationDispatcher()
        self.clock = clock

    # Queries

    def _load(self, appointment_id: int) -> Appointment:
        appointment = self.db.get(Appointment, appointment_id)
        if appointment is None:
            raise NotFound('Not found.')
        return appointment

    def party_of(self, appointment: Appointment, actor: Actor) -> UserRole:
        """Which side of the appointment the actor is on."""
        if actor.is_admin:
            return UserRole.ADMIN
        if actor.user_id == appointment.tutor_id:
            return UserRole.TUTOR
        if actor.user_id == appointment.student_id:
            return UserRole.STUDENT
        raise Unauthorized('Actor has no relationship to this appointment.', details={'appointment_id': appointment.id})

    def get_appointment(self, appointment_id: int, actor: Actor) -> Appointment:
        with store.store_errors(self.db, 'get_appointment'):
            appointment = self._load(appointment_id)
            self.party_of(appointment, actor)
            return appointment

    def list_appointments(
        self,
        actor: Actor,
        status: Optional[AppointmentStatus] = None,
        range_start: Optional[datetime] = None,
        range_end: Optional[datetime] = None,
    ) -> list[Appointment]:
        with store.store_errors(self.db, 'list_appointments'):
            query = self.db.query(Appointment)
            if not actor.is_admin:
                query = query.filter(
                    or_(Appointment.tutor_id == actor.user_id, Appointment.student_id == actor.user_id)
                )
            if status is not None:
                query = query.filter(Appointment.status == status)
            if range_start is not None:
                query = query.filter(Appointment.end_time > range_start)
            if range_end is not None:
                query = query.filter(Appointment.start_time < range_end)
            return query.order_by(Appointment.start_time.asc(), Appointment.id.asc()).all()

    # Transitions

    def record_booked(self, appointment: Appointment, actor_id: int) -> None:
        """Emit the ``booked`` event for a freshly reserved appointment."""
        self._emit(appointment, None, actor_id)

    def transition(
        self,
        appointment_id: int,
        event: LifecycleEvent,
        actor: Actor,
        reason: Optional[CancellationReason] = None,
        note: Optional[str] = None,
        target: Optional[RescheduleTarget] = None,
    ) -> Appointment:
        """
        Apply ``event`` to an appointment.

        Returns the updated appointment, or the replacement record for
        ``reschedule``.

        Raises:
            NotFound: No such appointment
            Unauthorized: Actor is not the tutor, the student or an admin
            InvalidTransition: Event not legal from the current state or for this actor
            Conflict: Another request changed the appointment first; safe to retry
        """
        now = self.clock()
        with store.store_errors(self.db, 'transition'):
            appointment = self._load(appointment_id)
            party = self.party_of(appointment, actor)
            event = parse_event(event)
            if event == LifecycleEvent.RESCHEDULE and target is None:
                raise InvalidTransition('Rescheduling needs a new date and time.')

        if event == LifecycleEvent.RESCHEDULE:
            return self.reschedule(appointment_id, actor, target).replacement

        with store.store_errors(self.db, f'transition:{event.value}'):
            old_status = AppointmentStatus(appointment.status)
            new_status = next_status(old_status, event)
            self._check_preconditions(appointment, event, party, now, note, reason)

            appointment.status = new_status
            if new_status == AppointmentStatus.CONFIRMED:
                appointment.confirmed_at = now
            elif new_status == AppointmentStatus.COMPLETED:
                appointment.completed_at = now
            elif new_status == AppointmentStatus.CANCELLED:
                self._mark_cancelled(appointment, actor, reason or DEFAULT_CANCELLATION_REASONS[party], note, now)

            self.db.commit()
            self.db.refresh(appointment)

        logger.info(
            'Appointment %s moved %s -> %s by user %s',
            appointment.id,
            old_status.value,
            new_status.value,
            actor.user_id,
        )
        self._emit(appointment, old_status, actor.user_id, now)
        return appointment

    def confirm(self, appointment_id: int, actor: Actor) -> Appointment:
        return self.transition(appointment_id, LifecycleEvent.CONFIRM, actor)

    def complete(self, appointment_id: int, actor: Actor) -> Appointment:
        return self.transition(appointment_id, LifecycleEvent.COMPLETE, actor)

    def cancel(
        self,
        appointment_id: int,
        actor: Actor,
        reason: Optional[CancellationReason] = None,
        note: Optional[str] = None,
    ) -> Appointment:
        return self.transition(appointment_id, LifecycleEvent.CANCEL, actor, reason=reason, note=note)

    def reschedule(self, appointment_id: int, actor: Actor, target: RescheduleTarget) -> RescheduleResult:
        """
        Cancel the appointment and reserve ``target`` in one transaction.

        If the new interval cannot be reserved nothing changes: the original
        keeps its status and the reservation error is raised.
        """
        now = self.clock()
        with store.store_errors(self.db, 'reschedule'):
            original = self._load(appointment_id)
            party = self.party_of(original, actor)
            next_status(AppointmentStatus(original.status), LifecycleEvent.RESCHEDULE)
            self._check_preconditions(original, LifecycleEvent.RESCHEDULE, party, now, None)

            request = reservations.build_request(
                original.tutor_id,
                original.student_id,
                target.date,
                target.start_time,
                target.end_time,
                target.subject or original.subject,
                target.notes if target.notes is not None else original.notes,
                now,
            )

            store.acquire_reservation_locks(self.db, original.tutor_id, original.student_id)
            self.db.refresh(original)
            old_status = AppointmentStatus(original.status)
            next_status(old_status, LifecycleEvent.RESCHEDULE)

            self._mark_cancelled(original, actor, CancellationReason.RESCHEDULED, None, now)
            self.db.flush()

            try:
                replacement = reservations.place_appointment(self.db, request, now, rescheduled_from_id=original.id)
            except ReservationConflict as exc:
                logger.info('Reschedule of appointment %s rejected (%s)', appointment_id, exc.code)
                raise

            self.db.commit()
            self.db.refresh(original)
            self.db.refresh(replacement)

        logger.info(
            'Appointment %s rescheduled to %s (new appointment %s) by user %s',
            original.id,
            replacement.start_time.isoformat(),
            replacement.id,
            actor.user_id,
        )
        self._emit(original, old_status, actor.user_id, now)
        self._emit(replacement, None, actor.user_id, now)
        return RescheduleResult(cancelled=original, replacement=replacement)

    def _check_preconditions(
        self,
        appointment: Appointment,
        event: LifecycleEvent,
        party: UserRole,
        now: datetime,
        note: Optional[str],
        reason: Optional[CancellationReason] = None,
    ) -> None:
        if party not in ALLOWED_PARTIES[event]:
            raise InvalidTransition(
                f'A {party.value} cannot {event.value} this appointment.',
                details={'event': event.value, 'party': party.value},
            )

        if event == LifecycleEvent.COMPLETE and now < appointment.start_time:
            raise InvalidTransition('An appointment cannot be completed before it starts.')

        if reason is not None and reason not in PARTY_CANCELLATION_REASONS[party]:
            reason_value = getattr(reason, 'value', reason)
            raise InvalidTransition(
                f'A {party.value} cannot record the cancellation reason {reason_value}.',
                details={'reason': reason_value, 'party': party.value},
            )

        if note and len(note.strip()) > config.MAX_CANCELLATION_NOTE_LENGTH:
            raise InvalidTransition(
                f'Cancellation notes must be {config.MAX_CANCELLATION_NOTE_LENGTH} characters or fewer.'
            )

    def _mark_cancelled(
        self,
        appointment: Appointment,
        actor: Actor,
        reason: CancellationReason,
        note: Optional[str],
        now: datetime,
    ) -> None:
        appointment.status = AppointmentStatus.CANCELLED
        appointment.cancelled_at = now
        appointment.cancelled_by_id = actor.user_id
        appointment.cancellation_reason = reason
        appointment.cancellation_note = note.strip() if note and note.strip() else None

    def _emit(
        self,
        appointment: Appointment,
        old_status: Optional[AppointmentStatus],
        actor_id: int,
        timestamp: Optional[datetime] = None,
    ) -> None:
        event = NotificationEvent.for_appointment(appointment, old_status, actor_id, timestamp or self.clock())
        dispatch_safely(self.dispatcher, event)
