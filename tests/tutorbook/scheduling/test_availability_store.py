from datetime import date, time

import pytest

from tutorbook.errors import InvalidInterval, NotFound, Unauthorized
from tutorbook.models.availability import AvailabilityException, RecurringAvailabilityRule
from tutorbook.scheduling.availability import AvailabilityStore


def test_add_rule_persists_active_rule(db, people) -> None:
    tutor = people['tutor']

    rule = AvailabilityStore(db).add_rule(tutor, tutor.user_id, 1, time(9, 0), time(17, 0), slot_duration_minutes=45)

    assert rule.id is not None
    assert rule.is_active is True
    assert rule.slot_duration_minutes == 45


@pytest.mark.parametrize(
    ('day', 'start', 'end', 'duration'),
    [
        (7, time(9, 0), time(10, 0), None),
        (-1, time(9, 0), time(10, 0), None),
        (1, time(10, 0), time(10, 0), None),
        (1, time(11, 0), time(10, 0), None),
        (1, time(9, 0), time(10, 0), 0),
    ],
)
def test_add_rule_rejects_malformed_rules(db, people, day: int, start: time, end: time, duration) -> None:
    tutor = people['tutor']

    with pytest.raises(InvalidInterval):
        AvailabilityStore(db).add_rule(tutor, tutor.user_id, day, start, end, slot_duration_minutes=duration)


def test_add_rule_rejects_inverted_validity_window(db, people) -> None:
    tutor = people['tutor']

    with pytest.raises(InvalidInterval):
        AvailabilityStore(db).add_rule(
            tutor,
            tutor.user_id,
            1,
            time(9, 0),
            time(10, 0),
            valid_from=date(2030, 2, 1),
            valid_until=date(2030, 1, 1),
        )


def test_only_the_owning_tutor_or_admin_can_edit(db, people) -> None:
    store = AvailabilityStore(db)
    tutor_id = people['tutor'].user_id

    with pytest.raises(Unauthorized):
        store.add_rule(people['other_tutor'], tutor_id, 1, time(9, 0), time(10, 0))
    with pytest.raises(Unauthorized):
        store.add_rule(people['student'], tutor_id, 1, time(9, 0), time(10, 0))

    rule = store.add_rule(people['admin'], tutor_id, 1, time(9, 0), time(10, 0))
    assert rule.tutor_id == tutor_id


def test_editing_an_unknown_tutor_is_not_found(db, people) -> None:
    with pytest.raises(NotFound):
        AvailabilityStore(db).add_rule(people['admin'], people['student'].user_id, 1, time(9, 0), time(10, 0))


def test_deactivate_rule_is_soft(db, people) -> None:
    tutor = people['tutor']
    store = AvailabilityStore(db)
    rule = store.add_rule(tutor, tutor.user_id, 1, time(9, 0), time(10, 0))

    store.deactivate_rule(tutor, tutor.user_id, rule.id)

    assert store.list_rules(tutor.user_id) == []
    assert [r.id for r in store.list_rules(tutor.user_id, include_inactive=True)] == [rule.id]
    assert db.query(RecurringAvailabilityRule).count() == 1

    store.reactivate_rule(tutor, tutor.user_id, rule.id)
    assert [r.id for r in store.list_rules(tutor.user_id)] == [rule.id]


def test_deactivating_another_tutors_rule_is_not_found(db, people) -> None:
    store = AvailabilityStore(db)
    tutor = people['tutor']
    other = people['other_tutor']
    rule = store.add_rule(tutor, tutor.user_id, 1, time(9, 0), time(10, 0))

    with pytest.raises(NotFound):
        store.deactivate_rule(other, other.user_id, rule.id)


def test_set_exception_is_last_write_wins(db, people) -> None:
    tutor = people['tutor']
    store = AvailabilityStore(db)

    store.set_exception(tutor, tutor.user_id, date(2030, 1, 14), is_available=False, reason='Holiday')
    updated = store.set_exception(
        tutor,
        tutor.user_id,
        date(2030, 1, 14),
        is_available=True,
        start_time=time(13, 0),
        end_time=time(15, 0),
    )

    assert db.query(AvailabilityException).count() == 1
    assert updated.is_available is True
    assert updated.start_time == time(13, 0)
    assert updated.reason is None


@pytest.mark.parametrize(
    ('is_available', 'start', 'end'),
    [
        (True, time(13, 0), None),
        (True, time(15, 0), time(13, 0)),
        (False, time(13, 0), time(15, 0)),
    ],
)
def test_set_exception_rejects_malformed_windows(db, people, is_available: bool, start, end) -> None:
    tutor = people['tutor']

    with pytest.raises(InvalidInterval):
        AvailabilityStore(db).set_exception(tutor, tutor.user_id, date(2030, 1, 14), is_available, start, end)


def test_list_and_remove_exceptions(db, people) -> None:
    tutor = people['tutor']
    store = AvailabilityStore(db)
    store.set_exception(tutor, tutor.user_id, date(2030, 1, 14), is_available=False)
    store.set_exception(tutor, tutor.user_id, date(2030, 2, 4), is_available=False)

    january = store.list_exceptions(tutor.user_id, range_start=date(2030, 1, 1), range_end=date(2030, 1, 31))
    assert [exception.date for exception in january] == [date(2030, 1, 14)]

    store.remove_exception(tutor, tutor.user_id, date(2030, 1, 14))
    assert [exception.date for exception in store.list_exceptions(tutor.user_id)] == [date(2030, 2, 4)]

    with pytest.raises(NotFound):
        store.remove_exception(tutor, tutor.user_id, date(2030, 1, 14))
