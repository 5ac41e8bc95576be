from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from .errors import InvalidTransition


class PositionStatus(str, Enum):
    NOT_VISITED = 'not_visited'
    IN_PROGRESS = 'in_progress'
    SKIPPED = 'skipped'
    CORRECT = 'correct'


TRANSITIONS: Dict[PositionStatus, FrozenSet[PositionStatus]] = {
    PositionStatus.NOT_VISITED: frozenset({PositionStatus.IN_PROGRESS}),
    PositionStatus.IN_PROGRESS: frozenset({PositionStatus.IN_PROGRESS, PositionStatus.SKIPPED, PositionStatus.CORRECT}),
    PositionStatus.SKIPPED: frozenset({PositionStatus.SKIPPED, PositionStatus.CORRECT}),
    PositionStatus.CORRECT: frozenset(),
}


def can_transition(current, target) -> bool:
    return PositionStatus(target) in TRANSITIONS[PositionStatus(current)]


def transition(current, target) -> PositionStatus:
    """Validate ``current -> target`` and return the resulting status.

    A position that was never visited is entered first (``in_progress``)
    so acting on it directly (guess, skip) is legal.
    """
    current = PositionStatus(current)
    target = PositionStatus(target)
    if current is PositionStatus.NOT_VISITED and target is not PositionStatus.IN_PROGRESS:
        current = transition(current, PositionStatus.IN_PROGRESS)
    if target not in TRANSITIONS[current]:
        raise InvalidTransition(f"Position cannot move from {current.value} to {target.value}")
    return target


def status_after_wrong_guess(current) -> PositionStatus:
    current = PositionStatus(current)
    if current is PositionStatus.SKIPPED:
        return transition(current, PositionStatus.SKIPPED)
    return transition(current, PositionStatus.IN_PROGRESS)


def status_on_visit(current) -> PositionStatus:
    """Moving the cursor onto a position: fresh ones start, others keep their status."""
    current = PositionStatus(current)
    if current is PositionStatus.NOT_VISITED:
        return transition(current, PositionStatus.IN_PROGRESS)
    if current is PositionStatus.CORRECT:
        raise InvalidTransition('Position already identified')
    return current


def next_open_position(statuses: Dict[int, str], after: int, exclude: Optional[int] = None) -> Optional[int]:
    """First position after ``after`` (wrapping) that is not correct.

    ``exclude`` is only honoured while another open position exists, so a
    lone skipped position keeps the cursor.
    """
    ordered: List[int] = sorted(statuses)
    if not ordered:
        return None
    rotated = [p for p in ordered if p > after] + [p for p in ordered if p <= after]
    open_positions = [p for p in rotated if PositionStatus(statuses[p]) is not PositionStatus.CORRECT]
    if not open_positions:
        return None
    preferred = [p for p in open_positions if p != exclude]
    return (preferred or open_positions)[0]
