from datetime import date, datetime, time

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator, model_validator
from sqlalchemy.orm import Session

from tutorbook.auth.dependencies import get_current_actor
from tutorbook.core import config
from tutorbook.database import get_db
from tutorbook.errors import retry_on_conflict
from tutorbook.models.appointment import AppointmentStatus, CancellationReason
from tutorbook.models.user import Actor, UserRole
from tutorbook.scheduling.lifecycle import LifecycleEvent, LifecycleManager, RescheduleTarget
from tutorbook.scheduling.notifications import LoggingNotificationDispatcher, NotificationDispatcher
from tutorbook.scheduling.reservations import ReservationEngine

router = APIRouter(tags=['appointments'])


def _normalize_optional_text(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


class CreateAppointmentRequest(BaseModel):
    tutor_id: int
    student_id: int | None = None
    date: date
    start_time: time
    end_time: time
    subject: str
    notes: str | None = None

    @field_validator('subject')
    @classmethod
    def validate_subject(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Subject is required.')
        if len(normalized) > config.MAX_SUBJECT_LENGTH:
            raise ValueError(f'Subject must be {config.MAX_SUBJECT_LENGTH} characters or fewer.')
        return normalized

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        normalized = _normalize_optional_text(value)
        if normalized and len(normalized) > config.MAX_APPOINTMENT_NOTES_LENGTH:
            raise ValueError(f'Notes must be {config.MAX_APPOINTMENT_NOTES_LENGTH} characters or fewer.')
        return normalized


class CancelAppointmentRequest(BaseModel):
    reason: CancellationReason | None = None
    note: str | None = None

    @field_validator('note')
    @classmethod
    def validate_note(cls, value: str | None) -> str | None:
        normalized = _normalize_optional_text(value)
        if normalized and len(normalized) > config.MAX_CANCELLATION_NOTE_LENGTH:
            raise ValueError(f'Notes must be {config.MAX_CANCELLATION_NOTE_LENGTH} characters or fewer.')
        return normalized

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: CancellationReason | None) -> CancellationReason | None:
        if value == CancellationReason.RESCHEDULED:
            raise ValueError('Use the reschedule endpoint to move an appointment.')
        return value


class RescheduleAppointmentRequest(BaseModel):
    date: date
    start_time: time
    end_time: time
    subject: str | None = None
    notes: str | None = None

    @model_validator(mode='after')
    def validate_time_order(self) -> 'RescheduleAppointmentRequest':
        if self.start_time >= self.end_time:
            raise ValueError('Start time must be before end time.')
        return self


class AppointmentResponse(BaseModel):
    id: int
    tutor_id: int
    student_id: int
    subject: str
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    status: AppointmentStatus
    notes: str | None = None
    cancellation_reason: CancellationReason | None = None
    cancellation_note: str | None = None
    rescheduled_from_id: int | None = None
    created_at: datetime
    confirmed_at: datetime | None = None
    cancelled_at: datetime | None = None
    completed_at: datetime | None = None

    class Config:
        from_attributes = True


class RescheduleResponse(BaseModel):
    cancelled: AppointmentResponse
    replacement: AppointmentResponse


def get_dispatcher() -> NotificationDispatcher:
    return LoggingNotificationDispatcher()


def get_lifecycle(
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> LifecycleManager:
    return LifecycleManager(db, dispatcher)


def get_reservation_engine(
    db: Session = Depends(get_db),
    lifecycle: LifecycleManager = Depends(get_lifecycle),
) -> ReservationEngine:
    return ReservationEngine(db, lifecycle)


def resolve_participants(data: CreateAppointmentRequest, actor: Actor) -> tuple[int, int]:
    if actor.role == UserRole.STUDENT:
        if data.student_id is not None and data.student_id != actor.user_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail='Students can only book sessions for themselves.',
            )
        return data.tutor_id, actor.user_id

    if data.student_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Student is required.',
        )

    if actor.role == UserRole.TUTOR and data.tutor_id != actor.user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail='Tutors can only book sessions on their own calendar.',
        )

    return data.tutor_id, data.student_id


@router.post('', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def create_appointment(
    data: CreateAppointmentRequest,
    actor: Actor = Depends(get_current_actor),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    tutor_id, student_id = resolve_participants(data, actor)
    return engine.reserve(
        tutor_id,
        student_id,
        data.date,
        data.start_time,
        data.end_time,
        data.subject,
        notes=data.notes,
        actor_id=actor.user_id,
    )


@router.get('', response_model=list[AppointmentResponse])
def list_appointments(
    appointment_status: AppointmentStatus | None = Query(default=None, alias='status'),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    actor: Actor = Depends(get_current_actor),
    lifecycle: LifecycleManager = Depends(get_lifecycle),
):
    return lifecycle.list_appointments(actor, status=appointment_status, range_start=start, range_end=end)


@router.get('/{appointment_id}', response_model=AppointmentResponse)
def get_appointment(
    appointment_id: int,
    actor: Actor = Depends(get_current_actor),
    lifecycle: LifecycleManager = Depends(get_lifecycle),
):
    return lifecycle.get_appointment(appointment_id, actor)


@router.post('/{appointment_id}/confirm', response_model=AppointmentResponse)
def confirm_appointment(
    appointment_id: int,
    actor: Actor = Depends(get_current_actor),
    lifecycle: LifecycleManager = Depends(get_lifecycle),
):
    return retry_on_conflict()(lifecycle.transition)(appointment_id, LifecycleEvent.CONFIRM, actor)


@router.post('/{appointment_id}/complete', response_model=AppointmentResponse)
def complete_appointment(
    appointment_id: int,
    actor: Actor = Depends(get_current_actor),
    lifecycle: LifecycleManager = Depends(get_lifecycle),
):
    return retry_on_conflict()(lifecycle.transition)(appointment_id, LifecycleEvent.COMPLETE, actor)


@router.post('/{appointment_id}/cancel', response_model=AppointmentResponse)
def cancel_appointment(
    appointment_id: int,
    data: CancelAppointmentRequest | None = None,
    actor: Actor = Depends(get_current_actor),
    lifecycle: LifecycleManager = Depends(get_lifecycle),
):
    data = data or CancelAppointmentRequest()
    return retry_on_conflict()(lifecycle.transition)(
        appointment_id,
        LifecycleEvent.CANCEL,
        actor,
        reason=data.reason,
        note=data.note,
    )


@router.post('/{appointment_id}/reschedule', response_model=RescheduleResponse)
def reschedule_appointment(
    appointment_id: int,
    data: RescheduleAppointmentRequest,
    actor: Actor = Depends(get_current_actor),
    lifecycle: LifecycleManager = Depends(get_lifecycle),
):
    target = RescheduleTarget(
        date=data.date,
        start_time=data.start_time,
        end_time=data.end_time,
        subject=data.subject,
        notes=data.notes,
    )
    result = retry_on_conflict()(lifecycle.reschedule)(appointment_id, actor, target)
    return RescheduleResponse(
        cancelled=AppointmentResponse.model_validate(result.cancelled),
        replacement=AppointmentResponse.model_validate(result.replacement),
    )
