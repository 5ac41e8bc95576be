import pytest

from thebox.services.daily.errors import InvalidPosition, InvalidTransition
from thebox.services.daily.positions import (
    PositionStatus,
    can_transition,
    next_open_position,
    status_after_wrong_guess,
    status_on_visit,
    transition,
)


def test_transition_table():
    assert can_transition('not_visited', 'in_progress')
    assert not can_transition('not_visited', 'correct')
    assert can_transition('in_progress', 'skipped')
    assert can_transition('skipped', 'correct')
    assert not can_transition('skipped', 'in_progress')
    assert not can_transition('correct', 'in_progress')


def test_not_visited_passes_through_in_progress():
    assert transition('not_visited', 'correct') is PositionStatus.CORRECT
    assert transition('not_visited', 'skipped') is PositionStatus.SKIPPED


def test_correct_is_terminal():
    for target in PositionStatus:
        with pytest.raises(InvalidTransition):
            transition('correct', target)


def test_invalid_transition_is_an_invalid_position():
    with pytest.raises(InvalidPosition):
        transition('skipped', 'in_progress')


def test_wrong_guess_keeps_skipped_positions_skipped():
    assert status_after_wrong_guess('skipped') is PositionStatus.SKIPPED
    assert status_after_wrong_guess('not_visited') is PositionStatus.IN_PROGRESS
    assert status_after_wrong_guess('in_progress') is PositionStatus.IN_PROGRESS


def test_visit():
    assert status_on_visit('not_visited') is PositionStatus.IN_PROGRESS
    assert status_on_visit('skipped') is PositionStatus.SKIPPED
    with pytest.raises(InvalidTransition):
        status_on_visit('correct')


def test_next_open_position_wraps_and_skips_correct():
    statuses = {1: 'correct', 2: 'in_progress', 3: 'correct', 4: 'skipped'}
    assert next_open_position(statuses, after=2) == 4
    assert next_open_position(statuses, after=4) == 2


def test_next_open_position_exclude_only_when_alternatives_exist():
    statuses = {1: 'correct', 2: 'skipped', 3: 'correct'}
    assert next_open_position(statuses, after=2, exclude=2) == 2
    assert next_open_position({1: 'correct', 2: 'correct'}, after=1) is None
