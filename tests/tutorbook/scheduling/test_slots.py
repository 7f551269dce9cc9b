from datetime import date, datetime, time

import pytest

from tutorbook.models.availability import AvailabilityException, RecurringAvailabilityRule
from tutorbook.scheduling.slots import collect_open_windows, expand_slots, iter_weekday_dates
from tutorbook.scheduling.store import day_of_week

MONDAY = 1
TUTOR_ID = 7


def make_rule(day: int, start: time, end: time, duration: int | None = None, **extra) -> RecurringAvailabilityRule:
    return RecurringAvailabilityRule(
        tutor_id=TUTOR_ID,
        day_of_week=day,
        start_time=start,
        end_time=end,
        slot_duration_minutes=duration,
        is_active=extra.pop('is_active', True),
        valid_from=extra.pop('valid_from', None),
        valid_until=extra.pop('valid_until', None),
    )


def make_exception(exception_date: date, is_available: bool, start: time | None = None, end: time | None = None) -> AvailabilityException:
    return AvailabilityException(
        tutor_id=TUTOR_ID,
        date=exception_date,
        is_available=is_available,
        start_time=start,
        end_time=end,
    )


def slots_by_date(slots) -> dict[date, list]:
    grouped: dict[date, list] = {}
    for slot in slots:
        grouped.setdefault(slot.date, []).append(slot)
    return grouped


@pytest.mark.parametrize(
    ('value', 'expected'),
    [
        (date(2030, 1, 6), 0),
        (date(2030, 1, 7), 1),
        (date(2030, 1, 12), 6),
    ],
)
def test_day_of_week_counts_from_sunday(value: date, expected: int) -> None:
    assert day_of_week(value) == expected


def test_iter_weekday_dates_walks_to_first_match_then_steps_weekly() -> None:
    dates = list(iter_weekday_dates(MONDAY, date(2030, 1, 1), date(2030, 1, 28)))

    assert dates == [date(2030, 1, 7), date(2030, 1, 14), date(2030, 1, 21), date(2030, 1, 28)]


def test_iter_weekday_dates_is_empty_when_range_misses_the_weekday() -> None:
    assert list(iter_weekday_dates(MONDAY, date(2030, 1, 1), date(2030, 1, 6))) == []


def test_closed_exception_removes_every_slot_on_that_date() -> None:
    rule = make_rule(MONDAY, time(9, 0), time(17, 0))
    exceptions = {date(2030, 1, 14): make_exception(date(2030, 1, 14), is_available=False)}

    slots = list(
        expand_slots(TUTOR_ID, [rule], exceptions, [], date(2030, 1, 6), date(2030, 1, 21), default_duration_minutes=60)
    )
    grouped = slots_by_date(slots)

    assert date(2030, 1, 14) not in grouped
    assert len(grouped[date(2030, 1, 7)]) == 8
    assert len(grouped[date(2030, 1, 21)]) == 8


def test_slots_are_cut_to_duration_and_drop_partial_tail() -> None:
    rule = make_rule(MONDAY, time(9, 0), time(11, 30))

    slots = list(expand_slots(TUTOR_ID, [rule], {}, [], date(2030, 1, 7), date(2030, 1, 7), default_duration_minutes=60))

    assert [(slot.start_time, slot.end_time) for slot in slots] == [
        (time(9, 0), time(10, 0)),
        (time(10, 0), time(11, 0)),
    ]
    assert all(slot.duration_minutes == 60 for slot in slots)


def test_rule_duration_overrides_default() -> None:
    rule = make_rule(MONDAY, time(9, 0), time(10, 0), duration=30)

    slots = list(expand_slots(TUTOR_ID, [rule], {}, [], date(2030, 1, 7), date(2030, 1, 7), default_duration_minutes=60))

    assert [slot.start_time for slot in slots] == [time(9, 0), time(9, 30)]


def test_overlapping_rules_do_not_duplicate_slots() -> None:
    rules = [
        make_rule(MONDAY, time(9, 0), time(12, 0)),
        make_rule(MONDAY, time(10, 0), time(13, 0)),
    ]

    slots = list(expand_slots(TUTOR_ID, rules, {}, [], date(2030, 1, 7), date(2030, 1, 7), default_duration_minutes=60))

    assert [slot.start_time for slot in slots] == [time(9, 0), time(10, 0), time(11, 0), time(12, 0)]


@pytest.mark.parametrize(
    ('start', 'end'),
    [
        (time(9, 0), time(9, 0)),
        (time(12, 0), time(9, 0)),
    ],
)
def test_empty_or_inverted_rule_yields_no_slots(start: time, end: time) -> None:
    rule = make_rule(MONDAY, start, end)

    assert list(expand_slots(TUTOR_ID, [rule], {}, [], date(2030, 1, 7), date(2030, 1, 7), 60)) == []


def test_inactive_rule_and_validity_window_are_respected() -> None:
    rules = [
        make_rule(MONDAY, time(9, 0), time(10, 0), is_active=False),
        make_rule(MONDAY, time(14, 0), time(15, 0), valid_from=date(2030, 1, 14), valid_until=date(2030, 1, 14)),
    ]

    slots = list(expand_slots(TUTOR_ID, rules, {}, [], date(2030, 1, 7), date(2030, 1, 21), 60))

    assert [(slot.date, slot.start_time) for slot in slots] == [(date(2030, 1, 14), time(14, 0))]


def test_busy_intervals_hide_overlapping_slots() -> None:
    rule = make_rule(MONDAY, time(9, 0), time(12, 0))
    busy = [(datetime(2030, 1, 7, 9, 30), datetime(2030, 1, 7, 10, 30))]

    slots = list(expand_slots(TUTOR_ID, [rule], {}, busy, date(2030, 1, 7), date(2030, 1, 7), 60))

    assert [slot.start_time for slot in slots] == [time(11, 0)]


def test_not_before_hides_slots_starting_at_or_before_it() -> None:
    rule = make_rule(MONDAY, time(9, 0), time(12, 0))

    slots = list(
        expand_slots(
            TUTOR_ID,
            [rule],
            {},
            [],
            date(2030, 1, 7),
            date(2030, 1, 7),
            60,
            not_before=datetime(2030, 1, 7, 10, 0),
        )
    )

    assert [slot.start_time for slot in slots] == [time(11, 0)]


def test_open_exception_window_adds_slots_on_a_date_without_rules() -> None:
    wednesday = date(2030, 1, 9)
    exceptions = {wednesday: make_exception(wednesday, is_available=True, start=time(18, 0), end=time(20, 0))}

    slots = list(expand_slots(TUTOR_ID, [], exceptions, [], date(2030, 1, 7), date(2030, 1, 13), 60))

    assert [(slot.date, slot.start_time) for slot in slots] == [(wednesday, time(18, 0)), (wednesday, time(19, 0))]


def test_open_exception_without_window_keeps_the_weekly_pattern() -> None:
    rule = make_rule(MONDAY, time(9, 0), time(11, 0))
    exceptions = {date(2030, 1, 7): make_exception(date(2030, 1, 7), is_available=True)}

    windows = collect_open_windows([rule], exceptions, date(2030, 1, 7), date(2030, 1, 7), 60)

    assert len(windows[date(2030, 1, 7)]) == 1


def test_output_is_ordered_and_restartable() -> None:
    rules = [
        make_rule(3, time(9, 0), time(10, 0)),
        make_rule(MONDAY, time(15, 0), time(16, 0)),
        make_rule(MONDAY, time(9, 0), time(10, 0)),
    ]

    first = list(expand_slots(TUTOR_ID, rules, {}, [], date(2030, 1, 7), date(2030, 1, 9), 60))
    second = list(expand_slots(TUTOR_ID, rules, {}, [], date(2030, 1, 7), date(2030, 1, 9), 60))

    assert first == second
    assert [slot.start_at for slot in first] == [
        datetime(2030, 1, 7, 9, 0),
        datetime(2030, 1, 7, 15, 0),
        datetime(2030, 1, 9, 9, 0),
    ]
