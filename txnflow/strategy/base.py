"""Per-transaction-type strategy contract."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from txnflow.engine.validator import validate_step as validate_step_fields
from txnflow.types import NoAction

if TYPE_CHECKING:
    from collections.abc import Callable

    from txnflow.strategy.eligibility import EligibilityRules
    from txnflow.types import FieldFocusResult, StepDefinition, StepOutcome, SubmitOutcome

logger = logging.getLogger(__name__)


class TransactionStrategy(ABC):
    """Everything the engine needs from one transaction type.

    The strategy produces three callbacks (`on_steps_need_rebuild`,
    `on_lookup_started`, `on_lookup_completed`); the engine is their only
    subscriber and assigns them after construction.
    """

    def __init__(self):
        self.on_steps_need_rebuild: Callable[[], None] | None = None
        self.on_lookup_started: Callable[[str], None] | None = None
        self.on_lookup_completed: Callable[[str, list[str], bool], None] | None = None

    @abstractmethod
    def get_steps(self, accumulated: dict[str, str] | None = None) -> list[StepDefinition]:
        """Build the step list. Must be pure and idempotent."""

    async def load_dynamic_options(self) -> dict[str, list[str]]:
        return {}

    def handle_field_change(self, field_id: str, value: str, form_data: dict[str, str]) -> dict[str, str]:
        return form_data

    async def on_field_focus_lost(self, field_id: str, value: str) -> FieldFocusResult:
        return NoAction()

    @abstractmethod
    async def process_step_data(self, step_index: int, step_data: dict[str, str]) -> StepOutcome:
        """Consume a step's data. Advance, Block, or Reroute(index)."""

    def validate_step(self, step_index: int, form_data: dict[str, str]) -> tuple[bool, dict[str, str]]:
        steps = self.get_steps(form_data)
        if not 0 <= step_index < len(steps):
            return True, {}
        return validate_step_fields(steps[step_index], form_data)

    @abstractmethod
    async def submit(self, form_data: dict[str, str]) -> SubmitOutcome:
        """Final submission, called on the terminal step only."""

    async def on_step_opened(self, step_index: int) -> None:
        return None

    def get_form_data(self) -> dict[str, str]:
        """Diagnostic data to merge into the engine's form data after a Block."""
        return {}

    def update_accumulated_data(self, data: dict[str, str]) -> None:
        return None

    async def clear_loaded_entities(self) -> None:
        return None

    def eligibility_rules(self) -> EligibilityRules | None:
        """Optional capability: async eligibility check on entity selection."""
        return None

    # ─── Callback helpers ───

    def notify_steps_need_rebuild(self) -> None:
        if self.on_steps_need_rebuild:
            self.on_steps_need_rebuild()

    def notify_lookup_started(self, key: str) -> None:
        if self.on_lookup_started:
            self.on_lookup_started(key)

    def notify_lookup_completed(self, key: str, data: list[str], success: bool) -> None:
        if self.on_lookup_completed:
            self.on_lookup_completed(key, data, success)


class BaseTransactionStrategy(TransactionStrategy):
    """Adds accumulated data and draft tracking.

    A step already posted with identical data can be skipped on re-entry,
    and a step posted before is updated rather than created.
    """

    def __init__(self):
        super().__init__()
        self.accumulated: dict[str, str] = {}
        self.diagnostics: dict[str, str] = {}
        self.posted_steps: set[str] = set()
        self.step_snapshots: dict[str, dict[str, Any]] = {}

    def update_accumulated_data(self, data: dict[str, str]) -> None:
        self.accumulated.update(data)

    def get_form_data(self) -> dict[str, str]:
        return dict(self.diagnostics)

    def set_diagnostic(self, key: str, value: str) -> None:
        self.diagnostics[key] = value

    def clear_diagnostics(self) -> None:
        self.diagnostics.clear()

    # ─── Draft tracking ───

    def initialize_posted_steps(self, step_keys: set[str]) -> None:
        self.posted_steps = set(step_keys)
        logger.debug("Posted steps initialized: %s", sorted(self.posted_steps))

    def is_step_posted(self, step_key: str) -> bool:
        return step_key in self.posted_steps

    def has_data_changed(self, step_key: str, data: dict[str, Any]) -> bool:
        snapshot = self.step_snapshots.get(step_key)
        return snapshot is None or snapshot != data

    def mark_step_posted(self, step_key: str, data: dict[str, Any]) -> None:
        self.posted_steps.add(step_key)
        self.step_snapshots[step_key] = dict(data)

    def clear_draft_state(self) -> None:
        self.posted_steps.clear()
        self.step_snapshots.clear()
