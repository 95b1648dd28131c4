"""Shared fixtures for txnflow scenario tests."""
from __future__ import annotations

import asyncio
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from txnflow.engine import NavigationResult, WorkflowEngine
from txnflow.engine.events import ShowInterrupt, Toast
from txnflow.store.drafts import DraftStore
from txnflow.strategy.base import BaseTransactionStrategy
from txnflow.types import (
    Advance,
    CheckBox,
    NoAction,
    StepDefinition,
    StepKind,
    SubmitSuccess,
    TextField,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from txnflow.engine.resume import ResumeRecord
    from txnflow.strategy.eligibility import EligibilityRules

DEFINITIONS_DIR = Path(__file__).parent / "definitions"


# ─── Scripted strategy ───

def simple_steps(n: int, *, mandatory_first: bool = False) -> list[StepDefinition]:
    """n plain steps, one optional text field each (`f0`, `f1`, ...)."""
    steps = []
    for i in range(n):
        steps.append(StepDefinition(
            title=f"Step {i}",
            name=f"step_{i}",
            fields=[TextField(id=f"f{i}", label=f"Field {i}", mandatory=mandatory_first and i == 0)],
        ))
    return steps


class ScriptedStrategy(BaseTransactionStrategy):
    """Strategy whose answers are scripted per test.

    - `steps`: a list, or a callable taking the accumulated data
    - `outcomes`: step index -> list of StepOutcome (or exceptions) returned in order
    - `gate`: when set, process_step_data waits on it before answering
    """

    def __init__(
        self,
        steps: list[StepDefinition] | Callable[[dict[str, str]], list[StepDefinition]],
        *,
        outcomes: dict[int, list] | None = None,
        focus_results: dict[str, object] | None = None,
        submit_result=None,
        rules: EligibilityRules | None = None,
        lookups: dict[str, list[str]] | None = None,
        diagnostics: dict[str, str] | None = None,
    ):
        super().__init__()
        self._steps = steps
        self.outcomes = {k: list(v) for k, v in (outcomes or {}).items()}
        self.focus_results = focus_results or {}
        self.submit_result = submit_result
        self.rules = rules
        self.lookups = lookups or {}
        self.block_diagnostics = diagnostics or {}
        self.gate: asyncio.Event | None = None

        self.processed: list[tuple[int, dict[str, str]]] = []
        self.opened: list[int] = []
        self.submitted: list[dict[str, str]] = []
        self.cleared_entities = 0

    def get_steps(self, accumulated=None):
        if callable(self._steps):
            return self._steps({**self.accumulated, **(accumulated or {})})
        return list(self._steps)

    async def load_dynamic_options(self):
        for key, data in self.lookups.items():
            self.notify_lookup_started(key)
            self.notify_lookup_completed(key, data, True)
        return dict(self.lookups)

    async def on_field_focus_lost(self, field_id, value):
        result = self.focus_results.get(field_id, NoAction())
        if isinstance(result, Exception):
            raise result
        return result

    async def process_step_data(self, step_index, step_data):
        self.processed.append((step_index, dict(step_data)))
        if self.gate is not None:
            await self.gate.wait()
        self.accumulated.update(step_data)
        queue = self.outcomes.get(step_index)
        outcome = queue.pop(0) if queue else Advance()
        if isinstance(outcome, Exception):
            raise outcome
        if self.block_diagnostics:
            self.diagnostics.update(self.block_diagnostics)
        return outcome

    async def submit(self, form_data):
        self.submitted.append(dict(form_data))
        if isinstance(self.submit_result, Exception):
            raise self.submit_result
        return self.submit_result or SubmitSuccess({"requestNumber": "R-1"})

    async def on_step_opened(self, step_index):
        self.opened.append(step_index)

    async def clear_loaded_entities(self):
        self.cleared_entities += 1

    def eligibility_rules(self):
        return self.rules


# ─── Harness ───

class EngineHarness:
    """Drives one WorkflowEngine over a registry of scripted strategies.

    Each harness owns a temp directory with its own drafts database, which
    serves as both progress sink and resume source.
    """

    def __init__(self, strategies: dict[str, Callable[[], BaseTransactionStrategy]], user_id: str = "user-1"):
        self.tmp = Path(tempfile.mkdtemp())
        self.drafts = DraftStore(self.tmp / "drafts.db")
        self.strategies = strategies
        self.created: list[BaseTransactionStrategy] = []
        self.engine = WorkflowEngine(
            self._create, progress_sink=self.drafts, resume_source=self.drafts, user_id=user_id,
        )

    def _create(self, transaction_type: str):
        if transaction_type not in self.strategies:
            raise KeyError(f"Unknown transaction type {transaction_type!r}")
        strategy = self.strategies[transaction_type]()
        self.created.append(strategy)
        return strategy

    @property
    def strategy(self):
        return self.engine.strategy

    @property
    def state(self):
        return self.engine.state

    @property
    def step(self) -> int:
        return self.engine.state.current_step

    @property
    def title(self) -> str:
        return self.engine.state.current.title

    @property
    def form(self) -> dict[str, str]:
        return dict(self.engine.state.form_data)

    async def start(self, transaction_type: str = "test") -> NavigationResult:
        return await self.engine.initialize(transaction_type)

    def set(self, field_id: str, value: str) -> NavigationResult:
        return self.engine.on_field_value_change(field_id, value)

    def fill(self, values: dict[str, str]) -> None:
        for field_id, value in values.items():
            self.set(field_id, value)

    async def next(self) -> NavigationResult:
        return await self.engine.next()

    async def previous(self) -> NavigationResult:
        return await self.engine.previous()

    async def goto(self, index: int) -> NavigationResult:
        return await self.engine.go_to_step(index)

    async def submit(self) -> NavigationResult:
        return await self.engine.submit()

    async def resume(self, record: ResumeRecord) -> NavigationResult:
        return await self.engine.resume(record)

    async def resume_request(self, request_id: str) -> NavigationResult:
        return await self.engine.resume_request(request_id)

    async def advance_to(self, target: int, values: dict[str, str] | None = None):
        """Press Next until reaching `target`, filling `values` on the way."""
        if values:
            self.fill(values)
        for _ in range(len(self.state.steps) + 1):
            if self.step == target:
                return
            r = await self.next()
            if not r:
                break
        if self.step != target:
            raise RuntimeError(f"Could not advance to {target}, stuck at {self.step}")

    def events(self) -> list:
        return self.engine.events.drain()

    def toasts(self) -> list[str]:
        return [e.message for e in self.events() if isinstance(e, Toast)]

    def interrupts(self) -> list[ShowInterrupt]:
        return [e for e in self.events() if isinstance(e, ShowInterrupt)]

    def close(self):
        self.engine.clear_for_new_transaction()
        self.drafts.close()
        shutil.rmtree(self.tmp, ignore_errors=True)

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


@pytest.fixture
def harness_factory():
    """Factory fixture that creates EngineHarness instances and cleans up after test."""
    created: list[EngineHarness] = []

    def _make(strategy_or_factory, **kwargs) -> EngineHarness:
        if isinstance(strategy_or_factory, dict):
            strategies = strategy_or_factory
        else:
            strategies = {"test": strategy_or_factory}
        h = EngineHarness(strategies, **kwargs)
        created.append(h)
        return h

    yield _make

    for h in created:
        h.close()


@pytest.fixture
def tmp_store(tmp_path):
    store = DraftStore(tmp_path / "drafts.db")
    yield store
    store.close()


# ─── Step templates for tests ───

def company_steps(data: dict[str, str]) -> list[StepDefinition]:
    """Applicant -> [Company, when isCompany] -> Details -> Review."""
    steps = [
        StepDefinition(
            title="Applicant",
            name="applicant",
            step_kind=StepKind.PERSON_TYPE,
            fields=[
                TextField(id="fullName", label="Full name", mandatory=True),
                CheckBox(id="isCompany", label="Company", rebuild_on_change=True, clears=["crNumber"]),
            ],
        ),
    ]
    if data.get("isCompany") == "true":
        steps.append(StepDefinition(
            title="Company",
            name="company",
            step_kind=StepKind.COMMERCIAL_REGISTRATION,
            fields=[TextField(id="crNumber", label="CR number", mandatory=True, input_type="numeric")],
        ))
    steps.append(StepDefinition(title="Details", name="details", fields=[TextField(id="notes", label="Notes")]))
    steps.append(StepDefinition(
        title="Review",
        name="review",
        step_kind=StepKind.REVIEW,
        fields=[CheckBox(id="confirm", label="Confirm", mandatory=True)],
    ))
    return steps
