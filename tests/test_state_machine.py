"""
Round state machine tests
"""

from datetime import datetime

import pytest

from models import Round, RoundStatus
from core.exceptions import InvalidStateTransition
from core.state_machine import RoundStateMachine


def make_round(status):
    return Round(mode_id="blitz", period_number=100, status=status)


def test_forward_transitions_stamp_times():
    round_obj = make_round(RoundStatus.OPEN)
    locked_at = datetime(2026, 1, 1, 12, 0, 25)

    RoundStateMachine.transition(round_obj, RoundStatus.LOCKED, locked_at)
    assert round_obj.status == RoundStatus.LOCKED
    assert round_obj.locked_at == locked_at

    RoundStateMachine.transition(round_obj, RoundStatus.CLOSED, locked_at)
    assert round_obj.status == RoundStatus.CLOSED
    assert round_obj.closed_at == locked_at


@pytest.mark.parametrize("current,target", [
    (RoundStatus.OPEN, RoundStatus.CLOSED),
    (RoundStatus.LOCKED, RoundStatus.OPEN),
    (RoundStatus.CLOSED, RoundStatus.OPEN),
    (RoundStatus.CLOSED, RoundStatus.LOCKED),
])
def test_illegal_transitions(current, target):
    round_obj = make_round(current)
    with pytest.raises(InvalidStateTransition):
        RoundStateMachine.transition(round_obj, target)
    assert round_obj.status == current
