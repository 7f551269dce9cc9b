"""Tutor-owned availability: weekly rules and per-date exceptions."""

import logging
from datetime import date, datetime, time
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tutorbook.errors import InvalidInterval, NotFound, Unauthorized
from tutorbook.models.availability import AvailabilityException, RecurringAvailabilityRule
from tutorbook.models.user import Actor, UserRole
from tutorbook.scheduling import store

logger = logging.getLogger(__name__)


def validate_rule_fields(
    day_of_week: int,
    start_time: time,
    end_time: time,
    slot_duration_minutes: Optional[int],
    valid_from: Optional[date],
    valid_until: Optional[date],
) -> None:
    if not 0 <= day_of_week <= 6:
        raise InvalidInterval('Day of week must be between 0 (Sunday) and 6 (Saturday).')
    if start_time >= end_time:
        raise InvalidInterval('Start time must be before end time.')
    if slot_duration_minutes is not None and slot_duration_minutes <= 0:
        raise InvalidInterval('Slot duration must be a positive number of minutes.')
    if valid_from and valid_until and valid_from > valid_until:
        raise InvalidInterval('Validity window start must not be after its end.')


class AvailabilityStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    def _require_owner(self, actor: Actor, tutor_id: int) -> None:
        if not store.has_role(self.db, tutor_id, UserRole.TUTOR):
            raise NotFound('Tutor not found.')
        if actor.is_admin:
            return
        if actor.role != UserRole.TUTOR or actor.user_id != tutor_id:
            raise Unauthorized('Only the tutor can change their availability.')

    def _get_rule(self, tutor_id: int, rule_id: int) -> RecurringAvailabilityRule:
        rule = self.db.query(RecurringAvailabilityRule).filter(
            RecurringAvailabilityRule.id == rule_id,
            RecurringAvailabilityRule.tutor_id == tutor_id,
        ).first()
        if rule is None:
            raise NotFound('Availability rule not found.')
        return rule

    def add_rule(
        self,
        actor: Actor,
        tutor_id: int,
        day_of_week: int,
        start_time: time,
        end_time: time,
        slot_duration_minutes: Optional[int] = None,
        valid_from: Optional[date] = None,
        valid_until: Optional[date] = None,
    ) -> RecurringAvailabilityRule:
        validate_rule_fields(day_of_week, start_time, end_time, slot_duration_minutes, valid_from, valid_until)

        with store.store_errors(self.db, 'add_rule'):
            self._require_owner(actor, tutor_id)
            rule = RecurringAvailabilityRule(
                tutor_id=tutor_id,
                day_of_week=day_of_week,
                start_time=start_time,
                end_time=end_time,
                slot_duration_minutes=slot_duration_minutes,
                is_active=True,
                valid_from=valid_from,
                valid_until=valid_until,
            )
            self.db.add(rule)
            self.db.commit()
            self.db.refresh(rule)

        logger.info('Tutor %s added availability rule %s (day %s, %s-%s)', tutor_id, rule.id, day_of_week, start_time, end_time)
        return rule

    def list_rules(self, tutor_id: int, include_inactive: bool = False) -> list[RecurringAvailabilityRule]:
        with store.store_errors(self.db, 'list_rules'):
            if not include_inactive:
                return store.load_active_rules(self.db, tutor_id)
            return self.db.query(RecurringAvailabilityRule).filter(
                RecurringAvailabilityRule.tutor_id == tutor_id,
            ).order_by(
                RecurringAvailabilityRule.day_of_week.asc(),
                RecurringAvailabilityRule.start_time.asc(),
            ).all()

    def set_rule_active(self, actor: Actor, tutor_id: int, rule_id: int, is_active: bool) -> RecurringAvailabilityRule:
        with store.store_errors(self.db, 'set_rule_active'):
            self._require_owner(actor, tutor_id)
            rule = self._get_rule(tutor_id, rule_id)
            rule.is_active = is_active
            self.db.commit()
            self.db.refresh(rule)

        logger.info('Tutor %s %s availability rule %s', tutor_id, 'reactivated' if is_active else 'deactivated', rule_id)
        return rule

    def deactivate_rule(self, actor: Actor, tutor_id: int, rule_id: int) -> RecurringAvailabilityRule:
        return self.set_rule_active(actor, tutor_id, rule_id, is_active=False)

    def reactivate_rule(self, actor: Actor, tutor_id: int, rule_id: int) -> RecurringAvailabilityRule:
        return self.set_rule_active(actor, tutor_id, rule_id, is_active=True)

    def set_exception(
        self,
        actor: Actor,
        tutor_id: int,
        exception_date: date,
        is_available: bool,
        start_time: Optional[time] = None,
        end_time: Optional[time] = None,
        reason: Optional[str] = None,
    ) -> AvailabilityException:
        if (start_time is None) != (end_time is None):
            raise InvalidInterval('Exception windows need both a start and an end time.')
        if start_time is not None and start_time >= end_time:
            raise InvalidInterval('Start time must be before end time.')
        if not is_available and start_time is not None:
            raise InvalidInterval('A closed date cannot carry an open window.')

        with store.store_errors(self.db, 'set_exception'):
            self._require_owner(actor, tutor_id)
            try:
                exception = self._upsert_exception(tutor_id, exception_date, is_available, start_time, end_time, reason)
            except IntegrityError:
                # Lost an insert race for the same date; the other row is now ours to overwrite.
                self.db.rollback()
                exception = self._upsert_exception(tutor_id, exception_date, is_available, start_time, end_time, reason)

        logger.info(
            'Tutor %s marked %s as %s',
            tutor_id,
            exception_date,
            'available' if is_available else 'unavailable',
        )
        return exception

    def _upsert_exception(
        self,
        tutor_id: int,
        exception_date: date,
        is_available: bool,
        start_time: Optional[time],
        end_time: Optional[time],
        reason: Optional[str],
    ) -> AvailabilityException:
        exception = self.db.query(AvailabilityException).filter(
            AvailabilityException.tutor_id == tutor_id,
            AvailabilityException.date == exception_date,
        ).first()

        if exception is None:
            exception = AvailabilityException(tutor_id=tutor_id, date=exception_date)
            self.db.add(exception)

        exception.is_available = is_available
        exception.start_time = start_time
        exception.end_time = end_time
        exception.reason = reason
        exception.updated_at = datetime.now()
        self.db.commit()
        self.db.refresh(exception)
        return exception

    def list_exceptions(
        self,
        tutor_id: int,
        range_start: Optional[date] = None,
        range_end: Optional[date] = None,
    ) -> list[AvailabilityException]:
        with store.store_errors(self.db, 'list_exceptions'):
            query = self.db.query(AvailabilityException).filter(AvailabilityException.tutor_id == tutor_id)
            if range_start is not None:
                query = query.filter(AvailabilityException.date >= range_start)
            if range_end is not None:
                query = query.filter(AvailabilityException.date <= range_end)
            return query.order_by(AvailabilityException.date.asc()).all()

    def remove_exception(self, actor: Actor, tutor_id: int, exception_date: date) -> None:
        with store.store_errors(self.db, 'remove_exception'):
            self._require_owner(actor, tutor_id)
            exception = self.db.query(AvailabilityException).filter(
                AvailabilityException.tutor_id == tutor_id,
                AvailabilityException.date == exception_date,
            ).first()
            if exception is None:
                raise NotFound('Availability exception not found.')

            self.db.delete(exception)
            self.db.commit()

        logger.info('Tutor %s removed the exception for %s', tutor_id, exception_date)
