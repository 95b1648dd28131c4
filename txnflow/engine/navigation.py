"""Step navigation rules: pure functions over indices."""
from __future__ import annotations

from collections.abc import Collection, Mapping
from typing import TYPE_CHECKING

from txnflow.engine.validator import are_mandatory_fields_filled

if TYPE_CHECKING:
    from txnflow.types import StepDefinition


def can_proceed_to_next(
    steps: list[StepDefinition],
    current_step: int,
    form_data: Mapping[str, str],
) -> bool:
    if not 0 <= current_step < len(steps):
        return False
    return are_mandatory_fields_filled(steps[current_step], form_data)


def next_step(current_step: int, total_steps: int) -> int | None:
    nxt = current_step + 1
    return nxt if nxt < total_steps else None


def previous_step(current_step: int, locked_steps: Collection[int] = ()) -> int | None:
    """The step before `current_step`, or None at the start or when it is locked."""
    prev = current_step - 1
    if prev < 0 or prev in locked_steps:
        return None
    return prev


def can_jump_to_step(
    target: int,
    current_step: int,
    total_steps: int,
    completed_steps: Collection[int],
    locked_steps: Collection[int] = (),
) -> bool:
    """Backwards or onto a completed step, never into a locked one."""
    if not 0 <= target < total_steps:
        return False
    if target in locked_steps:
        return False
    return target <= current_step or target in completed_steps


def resume_step(last_completed_step: int, total_steps: int) -> int:
    """First step after the last completed one, clamped to the step range."""
    if total_steps <= 0:
        return 0
    return max(0, min(last_completed_step + 1, total_steps - 1))
