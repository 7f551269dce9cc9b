"""
Slot generation.

Expands a tutor's weekly rules, bounded by a date range, into concrete
fixed-length slots:

1. Walk each active rule from the first matching weekday, one week at a time
2. Drop dates closed by an exception; add windows from open exceptions
3. Cut each window into ``duration`` pieces, dropping a short tail
4. De-duplicate by (date, start) and hide slots that overlap an appointment

The result is advisory. Reservation re-checks everything under a lock.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Callable, Iterable, Iterator, Mapping, Optional, Sequence

from sqlalchemy.orm import Session

from tutorbook.core import config
from tutorbook.errors import InvalidInterval
from tutorbook.models.availability import AvailabilityException, RecurringAvailabilityRule
from tutorbook.scheduling import store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Slot:
    tutor_id: int
    date: date
    start_time: time
    end_time: time
    duration_minutes: int

    @property
    def start_at(self) -> datetime:
        return datetime.combine(self.date, self.start_time)

    @property
    def end_at(self) -> datetime:
        return datetime.combine(self.date, self.end_time)


@dataclass(frozen=True)
class OpenWindow:
    start_time: time
    end_time: time
    duration_minutes: int


def iter_weekday_dates(weekday: int, range_start: date, range_end: date) -> Iterator[date]:
    """Dates in [range_start, range_end] whose Sunday-based weekday is ``weekday``."""
    current = range_start
    while current <= range_end and store.day_of_week(current) != weekday:
        current += timedelta(days=1)

    while current <= range_end:
        yield current
        current += timedelta(days=7)


def collect_open_windows(
    rules: Iterable[RecurringAvailabilityRule],
    exceptions: Mapping[date, AvailabilityException],
    range_start: date,
    range_end: date,
    default_duration_minutes: int,
) -> dict[date, list[OpenWindow]]:
    windows: dict[date, list[OpenWindow]] = {}

    for rule in rules:
        if not rule.is_active or rule.start_time >= rule.end_time:
            continue

        duration = rule.slot_duration_minutes or default_duration_minutes
        for rule_date in iter_weekday_dates(rule.day_of_week, range_start, range_end):
            if not store.rule_applies_on(rule, rule_date):
                continue
            windows.setdefault(rule_date, []).append(OpenWindow(rule.start_time, rule.end_time, duration))

    for exception_date, exception in exceptions.items():
        if not range_start <= exception_date <= range_end:
            continue
        if not exception.is_available:
            windows.pop(exception_date, None)
            continue
        if exception.start_time and exception.end_time and exception.start_time < exception.end_time:
            windows.setdefault(exception_date, []).append(
                OpenWindow(exception.start_time, exception.end_time, default_duration_minutes)
            )

    return windows


def _overlaps_busy(start_at: datetime, end_at: datetime, busy: Sequence[tuple[datetime, datetime]]) -> bool:
    return any(busy_start < end_at and busy_end > start_at for busy_start, busy_end in busy)


def expand_slots(
    tutor_id: int,
    rules: Iterable[RecurringAvailabilityRule],
    exceptions: Mapping[date, AvailabilityException],
    busy: Sequence[tuple[datetime, datetime]],
    range_start: date,
    range_end: date,
    default_duration_minutes: int,
    not_before: Optional[datetime] = None,
) -> Iterator[Slot]:
    """Yield slots ordered by (date, start_time). Pure: reads only its arguments."""
    windows = collect_open_windows(rules, exceptions, range_start, range_end, default_duration_minutes)

    for slot_date in sorted(windows):
        candidates: dict[time, Slot] = {}

        for window in windows[slot_date]:
            step = timedelta(minutes=window.duration_minutes)
            current = datetime.combine(slot_date, window.start_time)
            window_end = datetime.combine(slot_date, window.end_time)

            while current + step <= window_end:
                slot_end = current + step
                if current.time() not in candidates:
                    candidates[current.time()] = Slot(
                        tutor_id=tutor_id,
                        date=slot_date,
                        start_time=current.time(),
                        end_time=slot_end.time(),
                        duration_minutes=window.duration_minutes,
                    )
                current = slot_end

        for start_time in sorted(candidates):
            slot = candidates[start_time]
            if not_before is not None and slot.start_at <= not_before:
                continue
            if _overlaps_busy(slot.start_at, slot.end_at, busy):
                continue
            yield slot


class SlotSequence:
    """Restartable view of a tutor's open slots; every iteration re-reads the store."""

    def __init__(
        self,
        db: Session,
        tutor_id: int,
        range_start: date,
        range_end: date,
        clock: Callable[[], datetime],
        default_duration_minutes: int,
    ) -> None:
        self.db = db
        self.tutor_id = tutor_id
        self.range_start = range_start
        self.range_end = range_end
        self.clock = clock
        self.default_duration_minutes = default_duration_minutes

    def __iter__(self) -> Iterator[Slot]:
        with store.store_errors(self.db, 'generate_slots'):
            rules = store.load_active_rules(self.db, self.tutor_id)
            exceptions = store.load_exceptions(self.db, self.tutor_id, self.range_start, self.range_end)
            busy = store.load_busy_intervals(self.db, self.tutor_id, self.range_start, self.range_end)

        return expand_slots(
            self.tutor_id,
            rules,
            exceptions,
            busy,
            self.range_start,
            self.range_end,
            self.default_duration_minutes,
            not_before=self.clock(),
        )


class SlotGenerator:
    def __init__(
        self,
        db: Session,
        clock: Callable[[], datetime] = datetime.now,
        max_range_days: Optional[int] = None,
        default_duration_minutes: Optional[int] = None,
    ) -> None:
        self.db = db
        self.clock = clock
        self.max_range_days = max_range_days or config.MAX_SLOT_RANGE_DAYS
        self.default_duration_minutes = default_duration_minutes or config.DEFAULT_SLOT_DURATION_MINUTES

    def generate_slots(self, tutor_id: int, range_start: date, range_end: date) -> SlotSequence:
        if range_start > range_end:
            raise InvalidInterval(
                'Range start must not be after range end.',
                details={'range_start': range_start.isoformat(), 'range_end': range_end.isoformat()},
            )

        capped_end = range_start + timedelta(days=self.max_range_days - 1)
        if range_end > capped_end:
            logger.debug(
                'Clamping slot range for tutor %s from %s to %s (max %s days)',
                tutor_id,
                range_end,
                capped_end,
                self.max_range_days,
            )
            range_end = capped_end

        return SlotSequence(
            self.db,
            tutor_id,
            range_start,
            range_end,
            self.clock,
            self.default_duration_minutes,
        )
