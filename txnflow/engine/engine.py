"""Workflow engine: drives a TransactionStrategy over a single TransactionState.

Every public operation returns a NavigationResult; strategy failures are
converted to the error taxonomy, surfaced on the state and the event channel,
and never raised to the caller.
"""
from __future__ import annotations

import inspect
import logging
import mimetypes
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from txnflow.engine import navigation
from txnflow.engine.events import EventChannel, OpenFilePicker, RemoveFile, ShowInterrupt, Toast, ViewFile
from txnflow.engine.expression import is_truthy
from txnflow.engine.resume import PENDING, REJECTED, DraftRecord, ResumeRecord
from txnflow.errors import (
    ApiError,
    EligibilityRejected,
    FieldValidationError,
    StepBlocked,
    StepLocked,
    TransactionError,
    UnknownError,
    to_transaction_error,
)
from txnflow.strategy.eligibility import (
    EligibilityError,
    EligibilitySuccess,
    EligibilityTracker,
    ProceedToNextStep,
    RouteToConditionalStep,
    ShowComplianceDetailScreen,
)
from txnflow.types import (
    API_ERROR_CODE_KEY,
    API_ERROR_KEY,
    REBUILD_MARKER,
    REQUEST_ID_KEY,
    RESUMED_MARKER,
    Advance,
    Block,
    FieldError,
    FileUpload,
    LookupState,
    NoAction,
    Reroute,
    StepKind,
    SubmissionState,
    SubmitFailure,
    SubmitSuccess,
    TransactionState,
    UpdateFields,
    find_field,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from txnflow.engine.resume import ProgressSink, ResumeSource
    from txnflow.strategy.base import TransactionStrategy
    from txnflow.strategy.eligibility import EligibilityRules, Entity
    from txnflow.types import TransactionSnapshot

logger = logging.getLogger(__name__)


# ─── Result type ───

class NavigationResult:
    def __init__(self, success: bool, message: str, new_step: int | None = None):
        self.success = success
        self.message = message
        self.new_step = new_step

    def __bool__(self) -> bool:
        return self.success

    def __repr__(self) -> str:
        return f"NavigationResult({self.success!r}, {self.message!r}, {self.new_step!r})"

    def to_dict(self) -> dict:
        return {"success": self.success, "message": self.message, "new_step": self.new_step}


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


# ─── Engine ───

class WorkflowEngine:
    def __init__(
        self,
        strategy_factory: Callable[[str], TransactionStrategy],
        *,
        progress_sink: ProgressSink | None = None,
        resume_source: ResumeSource | None = None,
        user_id: str = "",
    ):
        self.strategy_factory = strategy_factory
        self.progress_sink = progress_sink
        self.resume_source = resume_source
        self.user_id = user_id

        self.strategy: TransactionStrategy | None = None
        self.events = EventChannel()
        self.eligibility = EligibilityTracker()
        self.lookups: dict[str, LookupState] = {}
        self.history: list[dict[str, Any]] = []
        self.submission_state = SubmissionState.EMPTY
        self.submission_data: dict[str, Any] = {}
        self.last_error: TransactionError | None = None

        self._state = TransactionState()
        self._field_loading: set[str] = set()
        self._processing_next = False
        self._generation = 0

    # ─── Read side ───

    @property
    def state(self) -> TransactionSnapshot:
        return self._state.snapshot()

    @property
    def field_loading(self) -> frozenset[str]:
        return frozenset(self._field_loading)

    @property
    def lookup_loading(self) -> dict[str, bool]:
        return {key: entry.loading for key, entry in self.lookups.items()}

    @property
    def is_processing(self) -> bool:
        return self._processing_next

    def get_status(self) -> dict[str, Any]:
        st = self._state
        if not st.is_initialized:
            return {"initialized": False, "summary": "No active transaction"}

        step = st.steps[st.current_step] if st.steps else None
        last_action = self.history[-1] if self.history else None
        result: dict[str, Any] = {
            "initialized": True,
            "transaction_type": st.transaction_type,
            "current_step": st.current_step,
            "step_title": step.title if step else "",
            "step_kind": step.step_kind.value if step else "",
            "total_steps": len(st.steps),
            "completed_steps": sorted(st.completed_steps),
            "locked_steps": sorted(st.locked_steps),
            "is_resumed_transaction": st.is_resumed_transaction,
            "can_proceed_to_next": st.can_proceed_to_next,
            "field_errors": dict(st.field_errors),
            "api_error": st.api_error,
            "last_error": type(self.last_error).__name__ if self.last_error else None,
            "submission_state": self.submission_state.value,
            "loading_fields": sorted(self._field_loading),
            "loading_lookups": sorted(k for k, v in self.lookups.items() if v.loading),
            "last_action": last_action,
            "form_data": dict(st.form_data),
        }

        summary_parts = [f"{st.transaction_type} > step {st.current_step + 1}/{len(st.steps)}"]
        if step:
            summary_parts[0] += f" ({step.title})"
        if st.is_resumed_transaction:
            summary_parts.append("resumed")
        if st.field_errors:
            summary_parts.append(f"{len(st.field_errors)} field error(s)")
        if st.api_error:
            summary_parts.append(f"error: {st.api_error}")
        if last_action:
            summary_parts.append(f"last: {last_action['action']}")
        result["summary"] = ", ".join(summary_parts)
        return result

    # ─── Lifecycle ───

    async def initialize(self, transaction_type: str) -> NavigationResult:
        self.clear_for_new_transaction()
        gen = self._generation
        st = self._state
        st.transaction_type = transaction_type
        st.is_loading = True

        try:
            strategy = self.strategy_factory(transaction_type)
        except Exception as e:
            st.is_loading = False
            return self._fail(e, "initialize")
        self._wire(strategy, gen)
        self.strategy = strategy

        try:
            await strategy.load_dynamic_options()
        except Exception as e:
            if self._is_stale(gen):
                return self._discarded()
            st.is_loading = False
            return self._fail(e, "initialize")
        if self._is_stale(gen):
            return self._discarded()

        try:
            self._rebuild_steps()
        except Exception as e:
            st.is_loading = False
            return self._fail(e, "initialize")
        if not st.steps:
            st.is_loading = False
            return self._fail(TransactionError(f'Transaction "{transaction_type}" has no steps'), "initialize")

        st.current_step = 0
        st.is_initialized = True
        st.is_loading = False
        self._record("initialize", f"{len(st.steps)} steps")
        await self._open_step(0, gen)
        self._refresh()
        return NavigationResult(True, f'Transaction "{transaction_type}" started with {len(st.steps)} steps', 0)

    def clear_for_new_transaction(self) -> None:
        """Drop all session state; results of in-flight calls are discarded."""
        self._generation += 1
        if self.strategy is not None:
            self.strategy.on_steps_need_rebuild = None
            self.strategy.on_lookup_started = None
            self.strategy.on_lookup_completed = None
        self.strategy = None
        self._state = TransactionState()
        self.lookups.clear()
        self._field_loading.clear()
        self._processing_next = False
        self.events.clear()
        self.eligibility.reset()
        self.history.clear()
        self.last_error = None
        self.submission_state = SubmissionState.EMPTY
        self.submission_data = {}

    # ─── Field events ───

    def on_field_value_change(self, field_id: str, value: str) -> NavigationResult:
        st = self._state
        if not self._ready():
            return NavigationResult(False, "No active transaction")
        if st.is_resumed_transaction:
            owners = {i for i, step in enumerate(st.steps) if field_id in step.field_ids()}
            if owners and owners <= st.locked_steps:
                err = FieldValidationError(field_id, f'"{field_id}" belongs to a locked step and cannot be changed')
                self.last_error = err
                self._record("field_locked", field_id)
                return NavigationResult(False, err.user_message, st.current_step)

        st.form_data[field_id] = value
        st.field_errors.pop(field_id, None)
        try:
            updated = dict(self.strategy.handle_field_change(field_id, value, dict(st.form_data)))
            rebuild = is_truthy(updated.pop(REBUILD_MARKER, None))
            st.form_data = updated

            fld = find_field(st.steps, field_id)
            if fld is not None:
                for dependent in fld.clears:
                    st.form_data.pop(dependent, None)
                    st.field_errors.pop(dependent, None)
                rebuild = rebuild or fld.rebuild_on_change

            self.strategy.update_accumulated_data(dict(st.form_data))
            if rebuild:
                self._rebuild_steps()

            rules = self.strategy.eligibility_rules()
            if rules is not None and field_id == rules.selection_field:
                self.eligibility.reset()
        except Exception as e:
            result = self._fail(e, "field_change")
            self._refresh()
            return result

        self._refresh()
        return NavigationResult(True, f'Field "{field_id}" updated', st.current_step)

    async def on_field_focus_lost(self, field_id: str, value: str) -> NavigationResult:
        st = self._state
        if not self._ready():
            return NavigationResult(False, "No active transaction")

        gen = self._generation
        self._field_loading.add(field_id)
        try:
            result = await self.strategy.on_field_focus_lost(field_id, value)
            if self._is_stale(gen):
                return self._discarded()
            match result:
                case UpdateFields(updates=updates):
                    st.form_data.update(updates)
                    for key in updates:
                        st.field_errors.pop(key, None)
                    self.strategy.update_accumulated_data(dict(st.form_data))
                    self._rebuild_steps()
                case FieldError(field_id=target, message=message):
                    st.field_errors[target] = message
                case NoAction():
                    pass
        except Exception as e:
            if self._is_stale(gen):
                return self._discarded()
            err = to_transaction_error(e)
            self.last_error = err
            logger.warning("Focus-lost check failed for %s: %s", field_id, err.message)
            st.field_errors[field_id] = err.user_message
        finally:
            if not self._is_stale(gen):
                self._field_loading.discard(field_id)

        self._refresh()
        ok = field_id not in st.field_errors
        return NavigationResult(ok, st.field_errors.get(field_id, f'Field "{field_id}" checked'), st.current_step)

    # ─── Navigation ───

    async def next(self) -> NavigationResult:
        if self._processing_next:
            return NavigationResult(False, "A step transition is already in progress")
        if not self._ready():
            return NavigationResult(False, "No active transaction")

        self._processing_next = True
        gen = self._generation
        try:
            return await self._next(gen)
        finally:
            if not self._is_stale(gen):
                self._processing_next = False

    async def _next(self, gen: int) -> NavigationResult:
        st = self._state
        strategy = self.strategy
        index = st.current_step
        step = st.steps[index]
        st.api_error = None
        st.api_error_code = None

        form = dict(st.form_data)
        try:
            is_valid, errors = strategy.validate_step(index, form)
        except Exception as e:
            return self._fail(e, "next")
        if not is_valid:
            st.field_errors = dict(errors)
            self._record("validation_failed", ", ".join(errors))
            self._refresh()
            return NavigationResult(False, f"{len(errors)} field(s) need attention", index)

        route_target: int | None = None
        rules = strategy.eligibility_rules() if step.step_kind == StepKind.ENTITY_SELECTION else None
        if rules is not None:
            blocked, route_target = await self._run_eligibility(rules, gen)
            if self._is_stale(gen):
                return self._discarded()
            if blocked is not None:
                return blocked
            form = dict(st.form_data)

        step_data = {fid: form[fid] for fid in step.field_ids() if fid in form}
        try:
            outcome = await strategy.process_step_data(index, step_data)
        except Exception as e:
            if self._is_stale(gen):
                return self._discarded()
            return self._fail(e, "next")
        if self._is_stale(gen):
            return self._discarded()

        match outcome:
            case Block(reason=reason):
                diagnostics = strategy.get_form_data()
                st.form_data.update(diagnostics)
                message = diagnostics.get(API_ERROR_KEY) or reason or "The step could not be processed"
                result = self._fail(StepBlocked(message, diagnostics), "block")
                code = diagnostics.get(API_ERROR_CODE_KEY, "")
                st.api_error_code = int(code) if str(code).isdigit() else None
                self._refresh()
                return result
            case Reroute(index=target):
                pass
            case Advance():
                target = route_target
            case _:
                return self._fail(UnknownError(TypeError(f"Unexpected step outcome: {outcome!r}")), "next")

        try:
            self._rebuild_steps()
        except Exception as e:
            return self._fail(e, "next")
        if target is None:
            target = navigation.next_step(index, len(st.steps))
        if target is None:
            st.completed_steps.add(index)
            self._refresh()
            return NavigationResult(True, "Last step reached, ready to submit", index)
        if not 0 <= target < len(st.steps):
            return self._fail(UnknownError(IndexError(f"Step index {target} out of range")), "next")
        if st.is_resumed_transaction and target in st.locked_steps:
            return self._fail(StepLocked(target, f"Cannot route back to locked step {target}"), "next")

        st.completed_steps.add(index)
        st.current_step = target
        st.field_errors.clear()
        self._record("reroute" if target != index + 1 else "next", st.steps[target].title)
        await self._open_step(target, gen)
        if self._is_stale(gen):
            return self._discarded()
        self._refresh()
        return NavigationResult(True, f'Advanced to: {st.steps[st.current_step].title}', st.current_step)

    async def previous(self) -> NavigationResult:
        st = self._state
        if not self._ready():
            return NavigationResult(False, "No active transaction")
        if self._processing_next:
            return NavigationResult(False, "A step transition is already in progress")

        index = st.current_step
        locked = st.locked_steps if st.is_resumed_transaction else set()
        target = navigation.previous_step(index, locked)
        if target is None:
            if index - 1 in locked:
                return NavigationResult(False, "Earlier steps of a resumed transaction cannot be edited", index)
            return NavigationResult(False, "Already at the first step", index)

        gen = self._generation
        if st.steps[index].step_kind == StepKind.ENTITY_SELECTION:
            try:
                await self.strategy.clear_loaded_entities()
            except Exception as e:
                if self._is_stale(gen):
                    return self._discarded()
                return self._fail(e, "previous")
            if self._is_stale(gen):
                return self._discarded()
            self.eligibility.reset()

        st.current_step = target
        st.field_errors.clear()
        self._record("previous", st.steps[target].title)
        self._refresh()
        return NavigationResult(True, f"Moved back to: {st.steps[target].title}", target)

    async def go_to_step(self, target: int) -> NavigationResult:
        st = self._state
        if not self._ready():
            return NavigationResult(False, "No active transaction")
        if self._processing_next:
            return NavigationResult(False, "A step transition is already in progress")

        locked = st.locked_steps if st.is_resumed_transaction else set()
        if target in locked:
            return NavigationResult(False, f"Step {target} is locked", st.current_step)
        if not navigation.can_jump_to_step(target, st.current_step, len(st.steps), st.completed_steps, locked):
            return NavigationResult(False, f"Cannot jump to step {target}", st.current_step)

        gen = self._generation
        st.current_step = target
        st.field_errors.clear()
        self._record("goto", st.steps[target].title)
        await self._open_step(target, gen)
        if self._is_stale(gen):
            return self._discarded()
        self._refresh()
        return NavigationResult(True, f"Jumped to: {st.steps[target].title}", target)

    # ─── Submission ───

    async def submit(self) -> NavigationResult:
        st = self._state
        if not self._ready():
            return NavigationResult(False, "No active transaction")
        if self.submission_state == SubmissionState.LOADING:
            return NavigationResult(False, "Submission already in progress")
        if st.current_step != len(st.steps) - 1:
            return NavigationResult(False, "Submit is only available on the last step", st.current_step)

        gen = self._generation
        self.submission_state = SubmissionState.LOADING
        try:
            outcome = await self.strategy.submit(dict(st.form_data))
        except Exception as e:
            outcome = SubmitFailure(e)
        if self._is_stale(gen):
            return self._discarded()

        match outcome:
            case SubmitSuccess(data=data):
                self.submission_state = SubmissionState.SUCCESS
                self.submission_data = dict(data)
                st.completed_steps.add(st.current_step)
                self._record("submit")
                return NavigationResult(True, "Transaction submitted", st.current_step)
            case SubmitFailure(error=error):
                self.submission_state = SubmissionState.FAILURE
                return self._fail(error, "submit")
        self.submission_state = SubmissionState.FAILURE
        return self._fail(UnknownError(TypeError(f"Unexpected submit outcome: {outcome!r}")), "submit")

    def reset_submission_state(self) -> None:
        self.submission_state = SubmissionState.EMPTY
        self.submission_data = {}

    # ─── Resume ───

    async def resume(self, record: ResumeRecord) -> NavigationResult:
        """Rebuild a saved transaction; steps before the resume point are locked."""
        result = await self.initialize(record.transaction_type)
        if not result:
            return result

        st = self._state
        gen = self._generation
        hydrate = {**record.form_data, RESUMED_MARKER: "true"}
        try:
            outcome = await self.strategy.process_step_data(0, hydrate)
        except Exception as e:
            if self._is_stale(gen):
                return self._discarded()
            return self._fail(e, "resume")
        if self._is_stale(gen):
            return self._discarded()
        if isinstance(outcome, Block):
            logger.info("Hydration of %s returned Block (%s); continuing", record.transaction_type, outcome.reason)

        st.form_data.update(record.form_data)
        try:
            self.strategy.update_accumulated_data(dict(st.form_data))
            self._rebuild_steps()
        except Exception as e:
            return self._fail(e, "resume")

        start = navigation.resume_step(record.last_completed_step, len(st.steps))
        st.completed_steps = set(range(start))
        st.locked_steps = set(range(start))
        st.is_resumed_transaction = True
        st.current_step = start
        st.field_errors.clear()
        self._record("resume", f"at step {start}")
        await self._open_step(start, gen)
        if self._is_stale(gen):
            return self._discarded()
        self._refresh()
        return NavigationResult(True, f"Resumed at: {st.steps[start].title}", start)

    async def resume_request(self, request_id: str) -> NavigationResult:
        """Resume from the resume source; only VERIFIED requests proceed."""
        if self.resume_source is None:
            return NavigationResult(False, "No resume source configured")
        try:
            record = await _maybe_await(self.resume_source.get_request_status(request_id))
        except Exception as e:
            return self._fail(e, "resume")
        if record is None:
            return NavigationResult(False, f'Request "{request_id}" not found')

        if not record.is_resumable:
            interrupt = ShowInterrupt(
                title=record.interrupt_title(),
                reason=record.rejection_reason or "",
                status=record.status,
                data={"requestId": record.id, "transactionType": record.transaction_type},
            )
            self._state.interrupt = interrupt
            self.events.emit(interrupt)
            return NavigationResult(False, f'Request "{request_id}" is {record.status}, cannot resume')

        result = await self.resume(record.to_resume_record())
        if result:
            self._state.form_data[REQUEST_ID_KEY] = record.id
        return result

    # ─── Files ───

    def open_file_picker(self, field_id: str) -> NavigationResult:
        fld = find_field(self._state.steps, field_id)
        if not isinstance(fld, FileUpload):
            return NavigationResult(False, f'"{field_id}" is not a file field')
        self.events.emit(OpenFilePicker(field_id, tuple(fld.allowed_types)))
        return NavigationResult(True, "File picker requested", self._state.current_step)

    def on_file_selected(self, field_id: str, uri: str) -> NavigationResult:
        return self.on_field_value_change(field_id, uri)

    def view_file(self, field_id: str) -> NavigationResult:
        uri = self._state.form_data.get(field_id, "")
        if not uri:
            return NavigationResult(False, f'No file attached to "{field_id}"')
        mime_type, _ = mimetypes.guess_type(uri)
        self.events.emit(ViewFile(uri, mime_type or "application/octet-stream"))
        return NavigationResult(True, "File view requested", self._state.current_step)

    def on_file_removed(self, field_id: str) -> NavigationResult:
        return self.on_field_value_change(field_id, "")

    def remove_file(self, field_id: str) -> NavigationResult:
        self.events.emit(RemoveFile(field_id))
        return self.on_file_removed(field_id)

    # ─── Private ───

    def _ready(self) -> bool:
        return self.strategy is not None and self._state.is_initialized

    def _is_stale(self, gen: int) -> bool:
        return gen != self._generation

    def _discarded(self) -> NavigationResult:
        logger.debug("Discarding result from a previous transaction")
        return NavigationResult(False, "Transaction was reset; result discarded")

    def _wire(self, strategy: TransactionStrategy, gen: int) -> None:
        def steps_need_rebuild() -> None:
            if self._is_stale(gen) or not self._state.is_initialized:
                return
            self._rebuild_steps()
            self._refresh()

        def lookup_started(key: str) -> None:
            if self._is_stale(gen):
                return
            previous = self.lookups.get(key)
            self.lookups[key] = LookupState(loading=True, data=previous.data if previous else [])

        def lookup_completed(key: str, data: list[str], success: bool) -> None:
            if self._is_stale(gen):
                return
            self.lookups[key] = LookupState(loading=False, data=list(data), success=success)
            if not success:
                self.events.emit(Toast(f'Could not load "{key}"'))
            if self._state.is_initialized:
                self._rebuild_steps()
                self._refresh()

        strategy.on_steps_need_rebuild = steps_need_rebuild
        strategy.on_lookup_started = lookup_started
        strategy.on_lookup_completed = lookup_completed

    def _rebuild_steps(self) -> None:
        st = self._state
        st.steps = list(self.strategy.get_steps(dict(st.form_data)))
        if st.steps and st.current_step >= len(st.steps):
            st.current_step = len(st.steps) - 1
        if st.is_resumed_transaction and st.current_step in st.locked_steps:
            unlocked = [i for i in range(len(st.steps)) if i not in st.locked_steps]
            if unlocked:
                st.current_step = unlocked[0]

    def _refresh(self) -> None:
        st = self._state
        st.can_proceed_to_next = navigation.can_proceed_to_next(st.steps, st.current_step, st.form_data)

    async def _open_step(self, index: int, gen: int) -> None:
        try:
            await self.strategy.on_step_opened(index)
        except Exception as e:
            if not self._is_stale(gen):
                self._fail(e, "open_step")
            return
        if not self._is_stale(gen):
            self._rebuild_steps()

    async def _run_eligibility(
        self, rules: EligibilityRules, gen: int,
    ) -> tuple[NavigationResult | None, int | None]:
        """Run (or reuse) the eligibility check; returns (blocked_result, route_target)."""
        st = self._state
        selection = st.form_data.get(rules.selection_field, "")
        result = self.eligibility.cached(selection)
        if result is None:
            self.eligibility.begin(selection)
            result = await rules.check(selection, self.user_id)
            if self._is_stale(gen):
                return None, None
            self.eligibility.finish(result)

        match result:
            case EligibilityError(message=message):
                st.api_error = message
                self.events.emit(Toast(message))
                self._record("eligibility_error", message)
                self._refresh()
                return NavigationResult(False, message, st.current_step), None
            case EligibilitySuccess(action=ProceedToNextStep(extra_data=extra)):
                self._merge(extra)
                return None, None
            case EligibilitySuccess(action=RouteToConditionalStep(target_index=target, condition_data=extra)):
                self._merge(extra)
                return None, target
            case EligibilitySuccess(action=ShowComplianceDetailScreen() as action):
                interrupt = ShowInterrupt(
                    title=action.title,
                    reason=action.reason,
                    status=PENDING if action.pending else REJECTED,
                    issues=tuple(action.issues),
                    data={"entity": action.entity.to_dict()},
                )
                st.interrupt = interrupt
                self.events.emit(interrupt)
                self.last_error = EligibilityRejected(f"{action.title}: {action.reason}", action)
                if action.pending and REQUEST_ID_KEY not in st.form_data:
                    await self._save_pending_draft(action.entity, gen)
                self._record("eligibility_rejected", action.title)
                self._refresh()
                return NavigationResult(False, f"{action.title}: {action.reason}", st.current_step), None
        return self._fail(UnknownError(TypeError(f"Unexpected eligibility result: {result!r}")), "next"), None

    async def _save_pending_draft(self, entity: Entity, gen: int) -> None:
        if self.progress_sink is None:
            return
        st = self._state
        draft = DraftRecord(
            user_id=self.user_id,
            transaction_type=st.transaction_type,
            entity=entity.to_dict(),
            form_data=dict(st.form_data),
            last_completed_step=st.current_step,
            status=PENDING,
        )
        try:
            request_id = await _maybe_await(self.progress_sink.save_draft(draft))
        except Exception as e:
            if not self._is_stale(gen):
                self._fail(e, "save_draft")
            return
        if self._is_stale(gen):
            return
        st.form_data[REQUEST_ID_KEY] = str(request_id)
        self.events.emit(Toast(f"Progress saved as request {request_id}", is_error=False))
        self._record("save_draft", str(request_id))

    def _merge(self, data: dict[str, Any]) -> None:
        if not data:
            return
        self._state.form_data.update({k: str(v) for k, v in data.items()})
        self.strategy.update_accumulated_data(dict(self._state.form_data))

    def _fail(self, exc: BaseException, action: str) -> NavigationResult:
        st = self._state
        err = to_transaction_error(exc)
        self.last_error = err
        if isinstance(err, UnknownError):
            logger.error("%s failed: %s", action, err.message, exc_info=err.cause)
        else:
            logger.warning("%s failed: %s", action, err.message)
        st.api_error = err.user_message
        st.api_error_code = err.code if isinstance(err, ApiError) else None
        self.events.emit(Toast(err.user_message))
        self._record(f"{action}_failed", err.message)
        return NavigationResult(False, err.user_message, st.current_step)

    def _record(self, action: str, detail: str | None = None) -> None:
        self.history.append({
            "action": action,
            "step": self._state.current_step,
            "detail": detail,
            "timestamp": datetime.now(tz=UTC).strftime("%Y-%m-%d %H:%M:%S"),
        })
