from datetime import date, datetime, time

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, field_validator, model_validator
from sqlalchemy.orm import Session

from tutorbook.auth.dependencies import get_current_actor, require_role
from tutorbook.database import get_db
from tutorbook.models.user import Actor, UserRole
from tutorbook.scheduling.availability import AvailabilityStore
from tutorbook.scheduling.slots import SlotGenerator

router = APIRouter(tags=['availability'])

MAX_EXCEPTION_REASON_LENGTH = 200


class CreateRuleRequest(BaseModel):
    day_of_week: int
    start_time: time
    end_time: time
    slot_duration_minutes: int | None = None
    valid_from: date | None = None
    valid_until: date | None = None

    @field_validator('day_of_week')
    @classmethod
    def validate_day_of_week(cls, value: int) -> int:
        if not 0 <= value <= 6:
            raise ValueError('Day of week must be between 0 (Sunday) and 6 (Saturday).')
        return value

    @model_validator(mode='after')
    def validate_time_order(self) -> 'CreateRuleRequest':
        if self.start_time >= self.end_time:
            raise ValueError('Start time must be before end time.')
        return self


class RuleResponse(BaseModel):
    id: int
    tutor_id: int
    day_of_week: int
    start_time: time
    end_time: time
    slot_duration_minutes: int | None = None
    is_active: bool
    valid_from: date | None = None
    valid_until: date | None = None

    class Config:
        from_attributes = True


class SetExceptionRequest(BaseModel):
    is_available: bool
    start_time: time | None = None
    end_time: time | None = None
    reason: str | None = None

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str | None) -> str | None:
        if value is None:
            return None

        normalized = value.strip()
        if not normalized:
            return None

        if len(normalized) > MAX_EXCEPTION_REASON_LENGTH:
            raise ValueError(f'Reason must be {MAX_EXCEPTION_REASON_LENGTH} characters or fewer.')

        return normalized


class ExceptionResponse(BaseModel):
    id: int
    tutor_id: int
    date: date
    is_available: bool
    start_time: time | None = None
    end_time: time | None = None
    reason: str | None = None

    class Config:
        from_attributes = True


class SlotResponse(BaseModel):
    tutor_id: int
    date: date
    start_time: time
    end_time: time
    duration_minutes: int
    start_at: datetime
    end_at: datetime

    class Config:
        from_attributes = True


def get_availability_store(db: Session = Depends(get_db)) -> AvailabilityStore:
    return AvailabilityStore(db)


def get_slot_generator(db: Session = Depends(get_db)) -> SlotGenerator:
    return SlotGenerator(db)


@router.post('/tutors/{tutor_id}/rules', response_model=RuleResponse, status_code=status.HTTP_201_CREATED)
def create_rule(
    tutor_id: int,
    data: CreateRuleRequest,
    actor: Actor = Depends(require_role(UserRole.TUTOR, UserRole.ADMIN)),
    availability: AvailabilityStore = Depends(get_availability_store),
):
    return availability.add_rule(
        actor,
        tutor_id,
        data.day_of_week,
        data.start_time,
        data.end_time,
        slot_duration_minutes=data.slot_duration_minutes,
        valid_from=data.valid_from,
        valid_until=data.valid_until,
    )


@router.get('/tutors/{tutor_id}/rules', response_model=list[RuleResponse], dependencies=[Depends(get_current_actor)])
def list_rules(
    tutor_id: int,
    include_inactive: bool = Query(default=False),
    availability: AvailabilityStore = Depends(get_availability_store),
):
    return availability.list_rules(tutor_id, include_inactive=include_inactive)


@router.post('/tutors/{tutor_id}/rules/{rule_id}/deactivate', response_model=RuleResponse)
def deactivate_rule(
    tutor_id: int,
    rule_id: int,
    actor: Actor = Depends(require_role(UserRole.TUTOR, UserRole.ADMIN)),
    availability: AvailabilityStore = Depends(get_availability_store),
):
    return availability.deactivate_rule(actor, tutor_id, rule_id)


@router.post('/tutors/{tutor_id}/rules/{rule_id}/reactivate', response_model=RuleResponse)
def reactivate_rule(
    tutor_id: int,
    rule_id: int,
    actor: Actor = Depends(require_role(UserRole.TUTOR, UserRole.ADMIN)),
    availability: AvailabilityStore = Depends(get_availability_store),
):
    return availability.reactivate_rule(actor, tutor_id, rule_id)


@router.put('/tutors/{tutor_id}/exceptions/{exception_date}', response_model=ExceptionResponse)
def set_exception(
    tutor_id: int,
    exception_date: date,
    data: SetExceptionRequest,
    actor: Actor = Depends(require_role(UserRole.TUTOR, UserRole.ADMIN)),
    availability: AvailabilityStore = Depends(get_availability_store),
):
    return availability.set_exception(
        actor,
        tutor_id,
        exception_date,
        data.is_available,
        start_time=data.start_time,
        end_time=data.end_time,
        reason=data.reason,
    )


@router.get('/tutors/{tutor_id}/exceptions', response_model=list[ExceptionResponse], dependencies=[Depends(get_current_actor)])
def list_exceptions(
    tutor_id: int,
    start: date | None = Query(default=None),
    end: date | None = Query(default=None),
    availability: AvailabilityStore = Depends(get_availability_store),
):
    return availability.list_exceptions(tutor_id, range_start=start, range_end=end)


@router.delete('/tutors/{tutor_id}/exceptions/{exception_date}', status_code=status.HTTP_204_NO_CONTENT)
def remove_exception(
    tutor_id: int,
    exception_date: date,
    actor: Actor = Depends(require_role(UserRole.TUTOR, UserRole.ADMIN)),
    availability: AvailabilityStore = Depends(get_availability_store),
):
    availability.remove_exception(actor, tutor_id, exception_date)


@router.get('/tutors/{tutor_id}/slots', response_model=list[SlotResponse], dependencies=[Depends(get_current_actor)])
def list_slots(
    tutor_id: int,
    start: date = Query(...),
    end: date = Query(...),
    generator: SlotGenerator = Depends(get_slot_generator),
):
    return [
        SlotResponse(
            tutor_id=slot.tutor_id,
            date=slot.date,
            start_time=slot.start_time,
            end_time=slot.end_time,
            duration_minutes=slot.duration_minutes,
            start_at=slot.start_at,
            end_at=slot.end_at,
        )
        for slot in generator.generate_slots(tutor_id, start, end)
    ]
