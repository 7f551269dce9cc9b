from datetime import date, datetime, time

import pytest

from tutorbook.errors import InvalidInterval
from tutorbook.scheduling.availability import AvailabilityStore
from tutorbook.scheduling.lifecycle import LifecycleManager
from tutorbook.scheduling.reservations import ReservationEngine
from tutorbook.scheduling.slots import SlotGenerator, SlotSequence

MONDAY = 1


@pytest.fixture
def monday_rule(db, people):
    tutor = people['tutor']
    return AvailabilityStore(db).add_rule(tutor, tutor.user_id, MONDAY, time(9, 0), time(12, 0))


def test_generate_slots_returns_restartable_sequence(db, people, clock, monday_rule) -> None:
    generator = SlotGenerator(db, clock=clock)

    sequence = generator.generate_slots(people['tutor'].user_id, date(2030, 1, 7), date(2030, 1, 14))

    assert isinstance(sequence, SlotSequence)
    assert list(sequence) == list(sequence)
    assert len(list(sequence)) == 6


def test_sequence_reflects_exceptions_written_after_it_was_created(db, people, clock, monday_rule) -> None:
    tutor = people['tutor']
    sequence = SlotGenerator(db, clock=clock).generate_slots(tutor.user_id, date(2030, 1, 7), date(2030, 1, 14))
    assert len(list(sequence)) == 6

    AvailabilityStore(db).set_exception(tutor, tutor.user_id, date(2030, 1, 14), is_available=False)

    assert {slot.date for slot in sequence} == {date(2030, 1, 7)}


def test_generate_slots_rejects_inverted_range(db, people, clock) -> None:
    generator = SlotGenerator(db, clock=clock)

    with pytest.raises(InvalidInterval):
        generator.generate_slots(people['tutor'].user_id, date(2030, 1, 14), date(2030, 1, 7))


def test_generate_slots_clamps_range_to_configured_maximum(db, people, clock, monday_rule) -> None:
    generator = SlotGenerator(db, clock=clock, max_range_days=7)

    sequence = generator.generate_slots(people['tutor'].user_id, date(2030, 1, 7), date(2030, 3, 31))

    assert sequence.range_end == date(2030, 1, 13)
    assert {slot.date for slot in sequence} == {date(2030, 1, 7)}


def test_slots_before_now_are_omitted(db, people, monday_rule) -> None:
    generator = SlotGenerator(db, clock=lambda: datetime(2030, 1, 7, 10, 30))

    slots = list(generator.generate_slots(people['tutor'].user_id, date(2030, 1, 7), date(2030, 1, 7)))

    assert [slot.start_time for slot in slots] == [time(11, 0)]


def test_every_listed_slot_can_be_booked_when_now_is_on_a_boundary(db, people, dispatcher, monday_rule) -> None:
    now = datetime(2030, 1, 7, 10, 0)
    clock = lambda: now
    tutor_id = people['tutor'].user_id
    engine = ReservationEngine(db, LifecycleManager(db, dispatcher, clock=clock), clock=clock)

    slots = list(SlotGenerator(db, clock=clock).generate_slots(tutor_id, date(2030, 1, 7), date(2030, 1, 7)))

    assert [slot.start_time for slot in slots] == [time(11, 0)]
    booked = engine.reserve(tutor_id, people['student'].user_id, slots[0].date, slots[0].start_time, slots[0].end_time, 'Algebra')
    assert booked.start_time == datetime(2030, 1, 7, 11, 0)


def test_reserved_slot_disappears_from_next_generation(db, people, clock, dispatcher, monday_rule) -> None:
    tutor_id = people['tutor'].user_id
    generator = SlotGenerator(db, clock=clock)
    engine = ReservationEngine(db, LifecycleManager(db, dispatcher, clock=clock), clock=clock)

    before = list(generator.generate_slots(tutor_id, date(2030, 1, 7), date(2030, 1, 7)))
    chosen = before[1]

    engine.reserve(
        tutor_id,
        people['student'].user_id,
        chosen.date,
        chosen.start_time,
        chosen.end_time,
        'Algebra',
    )

    after = list(generator.generate_slots(tutor_id, date(2030, 1, 7), date(2030, 1, 7)))

    assert chosen in before
    assert chosen not in after
    assert len(after) == len(before) - 1
