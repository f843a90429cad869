import pytest

from shop_queue.errors import InvalidStatus, InvalidTransition
from shop_queue.models import EntryStatus
from shop_queue.status import can_transition, check_transition, parse_status


def test_parse_accepts_both_spellings():
    assert parse_status("in_progress") is EntryStatus.in_progress
    assert parse_status("In-Progress") is EntryStatus.in_progress
    assert parse_status(EntryStatus.completed) is EntryStatus.completed
    with pytest.raises(InvalidStatus):
        parse_status("done")


@pytest.mark.parametrize(
    "current,target,ok",
    [
        (EntryStatus.pending, EntryStatus.in_progress, True),
        (EntryStatus.pending, EntryStatus.completed, True),
        (EntryStatus.pending, EntryStatus.cancelled, True),
        (EntryStatus.in_progress, EntryStatus.completed, True),
        (EntryStatus.in_progress, EntryStatus.cancelled, True),
        (EntryStatus.in_progress, EntryStatus.pending, False),
        (EntryStatus.completed, EntryStatus.cancelled, False),
        (EntryStatus.cancelled, EntryStatus.pending, False),
        (EntryStatus.pending, EntryStatus.pending, False),
    ],
)
def test_transitions(current, target, ok):
    assert can_transition(current, target) is ok


def test_check_transition_raises_conflict():
    with pytest.raises(InvalidTransition) as exc:
        check_transition(EntryStatus.completed, EntryStatus.in_progress)
    assert exc.value.to_response().kind == "conflict"
