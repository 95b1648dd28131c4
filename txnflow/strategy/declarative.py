"""Strategy driven by a YAML transaction definition."""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import re
from typing import TYPE_CHECKING, Any, Protocol

from txnflow.engine.expression import evaluate_condition
from txnflow.errors import ApiError
from txnflow.strategy.base import BaseTransactionStrategy
from txnflow.strategy.eligibility import InspectionStatusRules
from txnflow.types import (
    API_ERROR_CODE_KEY,
    API_ERROR_KEY,
    REBUILD_MARKER,
    RESUMED_MARKER,
    Advance,
    Block,
    DropDown,
    FieldError,
    MultiSelect,
    NoAction,
    Reroute,
    StepDefinition,
    SubmitFailure,
    SubmitSuccess,
    UpdateFields,
)

if TYPE_CHECKING:
    from txnflow.strategy.eligibility import EligibilityRules, Entity
    from txnflow.types import (
        FieldDefinition,
        FieldFocusResult,
        StepOutcome,
        StepSpec,
        SubmitOutcome,
        TransactionDefinition,
    )

logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")


class TransactionService(Protocol):
    async def fetch_lookup(self, endpoint: str) -> list[str]: ...

    async def fetch(self, endpoint: str) -> dict[str, Any]: ...

    async def post_step(self, endpoint: str, data: dict[str, str], update: bool = False) -> dict[str, Any]: ...

    async def submit(self, endpoint: str, data: dict[str, str]) -> dict[str, Any]: ...


def render_endpoint(template: str, data: dict[str, Any]) -> str:
    """Fill `{key}` placeholders; unknown keys are left as-is."""
    return _PLACEHOLDER_RE.sub(lambda m: str(data.get(m.group(1), m.group(0))), template)


def _form_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class DeclarativeStrategy(BaseTransactionStrategy):
    def __init__(self, definition: TransactionDefinition, service: TransactionService | None = None):
        super().__init__()
        self.definition = definition
        self.service = service
        self.loaded_lookups: dict[str, list[str]] = {}
        self._specs = {s.name: s for s in definition.steps}
        self._condition_refs = self._collect_condition_refs()
        self._rules = self._build_rules()

    # ─── Steps ───

    def get_steps(self, accumulated: dict[str, str] | None = None) -> list[StepDefinition]:
        data = {**self.accumulated, **(accumulated or {})}
        steps: list[StepDefinition] = []
        for spec in self.definition.steps:
            if not evaluate_condition(spec.when, data):
                continue
            fields = [self._resolve_field(f) for f in spec.fields if evaluate_condition(f.when, data)]
            steps.append(StepDefinition(
                title=spec.title,
                fields=fields,
                step_kind=spec.kind,
                description=spec.description,
                required_lookups=list(spec.lookups),
                name=spec.name,
                routes=list(spec.routes),
                checks=list(spec.checks),
            ))
        return steps

    def _resolve_field(self, fld: FieldDefinition) -> FieldDefinition:
        if isinstance(fld, (DropDown, MultiSelect)) and fld.lookup in self.loaded_lookups:
            return dataclasses.replace(fld, options=list(self.loaded_lookups[fld.lookup]))
        return fld

    def _collect_condition_refs(self) -> set[str]:
        exprs = [s.when for s in self.definition.steps if s.when]
        exprs += [f.when for s in self.definition.steps for f in s.fields if f.when]
        refs: set[str] = set()
        for expr in exprs:
            refs.update(re.findall(r"[A-Za-z_]\w*", expr))
        return refs - {"and", "or", "true", "false"}

    def handle_field_change(self, field_id: str, value: str, form_data: dict[str, str]) -> dict[str, str]:
        if field_id in self._condition_refs:
            return {**form_data, REBUILD_MARKER: "true"}
        return form_data

    async def on_field_focus_lost(self, field_id: str, value: str) -> FieldFocusResult:
        """Run the field's `verify` endpoint; response values fill other fields."""
        endpoint = next(
            (f.verify_endpoint for s in self.definition.steps for f in s.fields
             if f.id == field_id and f.verify_endpoint),
            None,
        )
        if not endpoint or self.service is None or not value.strip():
            return NoAction()

        data = {**self.accumulated, field_id: value}
        try:
            response = await self.service.fetch(render_endpoint(endpoint, data))
        except ApiError as e:
            return FieldError(field_id, e.user_message)
        updates = {
            k: _form_value(v) for k, v in (response or {}).items()
            if isinstance(v, (str, int, float, bool)) and k != field_id
        }
        if not updates:
            return NoAction()
        self.accumulated.update(updates)
        return UpdateFields(updates)

    # ─── Lookups ───

    async def load_dynamic_options(self) -> dict[str, list[str]]:
        keys = [k for k, spec in self.definition.lookups.items() if spec.preload or not spec.endpoint]
        results = await asyncio.gather(*(self._load_lookup(k) for k in keys))
        return dict(zip(keys, results, strict=True))

    async def _load_lookup(self, key: str) -> list[str]:
        spec = self.definition.lookups.get(key)
        if spec is None:
            logger.warning("Step requires undeclared lookup %r", key)
            self.notify_lookup_completed(key, [], False)
            return []

        self.notify_lookup_started(key)
        if not spec.endpoint or self.service is None:
            data, success = list(spec.options), True
        else:
            try:
                data, success = list(await self.service.fetch_lookup(spec.endpoint)), True
            except Exception as e:
                logger.warning("Lookup %r failed: %s", key, e)
                data, success = list(spec.options), False
        if success:
            self.loaded_lookups[key] = data
        self.notify_lookup_completed(key, data, success)
        return data

    async def on_step_opened(self, step_index: int) -> None:
        steps = self.get_steps()
        if not 0 <= step_index < len(steps):
            return
        keys = steps[step_index].required_lookups
        if not keys:
            return

        missing = [k for k in keys if k not in self.loaded_lookups]
        for key in keys:
            if key in self.loaded_lookups:
                self.notify_lookup_completed(key, self.loaded_lookups[key], True)
        if missing:
            await asyncio.gather(*(self._load_lookup(k) for k in missing))
        self.notify_steps_need_rebuild()

    # ─── Step processing ───

    async def process_step_data(self, step_index: int, step_data: dict[str, str]) -> StepOutcome:
        self.clear_diagnostics()
        if step_data.get(RESUMED_MARKER) == "true":
            return self._hydrate(step_data)

        self.accumulated.update(step_data)
        steps = self.get_steps()
        if not 0 <= step_index < len(steps):
            return Advance()
        step = steps[step_index]
        spec = self._specs[step.name]

        if spec.endpoint and self.service is not None:
            if self.is_step_posted(spec.name) and not self.has_data_changed(spec.name, step_data):
                logger.debug("Step %s unchanged since last post, skipping", spec.name)
            else:
                endpoint = render_endpoint(spec.endpoint, self.accumulated)
                try:
                    response = await self.service.post_step(
                        endpoint, step_data, update=self.is_step_posted(spec.name)
                    )
                except ApiError as e:
                    self.set_diagnostic(API_ERROR_CODE_KEY, str(e.code))
                    self.set_diagnostic(API_ERROR_KEY, e.user_message)
                    return Block(e.user_message)
                self.accumulated.update({
                    k: _form_value(v) for k, v in (response or {}).items()
                    if isinstance(v, (str, int, float, bool))
                })
                self.mark_step_posted(spec.name, step_data)

        return self._route(spec, steps)

    def _route(self, spec: StepSpec, steps: list[StepDefinition]) -> StepOutcome:
        names = [s.name for s in steps]
        for route in spec.routes:
            if route.target in names and evaluate_condition(route.condition, self.accumulated):
                return Reroute(names.index(route.target))
        return Advance()

    def _hydrate(self, data: dict[str, str]) -> StepOutcome:
        saved = {k: v for k, v in data.items() if k != RESUMED_MARKER}
        self.accumulated.update(saved)
        self.clear_draft_state()

        posted: dict[str, dict[str, str]] = {}
        for step in self.get_steps():
            spec = self._specs[step.name]
            ids = step.field_ids()
            if spec.endpoint and ids and all(fid in saved for fid in ids):
                posted[spec.name] = {fid: saved[fid] for fid in ids}
        self.initialize_posted_steps(set(posted))
        self.step_snapshots.update(posted)
        logger.debug("Hydrated %s with %d values", self.definition.name, len(saved))
        return Advance()

    async def submit(self, form_data: dict[str, str]) -> SubmitOutcome:
        if not self.definition.submit_endpoint or self.service is None:
            return SubmitSuccess(dict(form_data))
        endpoint = render_endpoint(self.definition.submit_endpoint, {**self.accumulated, **form_data})
        try:
            response = await self.service.submit(endpoint, form_data)
        except Exception as e:
            return SubmitFailure(e)
        return SubmitSuccess(dict(response or {}))

    # ─── Eligibility ───

    def eligibility_rules(self) -> EligibilityRules | None:
        return self._rules

    def _build_rules(self) -> EligibilityRules | None:
        spec = next((s.eligibility for s in self.definition.steps if s.eligibility), None)
        if spec is None:
            return None

        async def fetch_status(entity: Entity) -> dict[str, Any]:
            if self.service is None:
                raise ApiError(0, "No service configured for eligibility checks")
            return await self.service.fetch(render_endpoint(spec.endpoint, {**self.accumulated, **entity.to_dict()}))

        def route(extra: dict[str, str]) -> int | None:
            data = {**self.accumulated, **extra}
            names = [s.name for s in self.get_steps(data)]
            for r in spec.routes:
                if r.target in names and evaluate_condition(r.condition, data):
                    return names.index(r.target)
            return None

        return InspectionStatusRules(fetch_status, route=route, selection_field=spec.selection_field)

    async def clear_loaded_entities(self) -> None:
        if self._rules is not None:
            self.accumulated.pop(self._rules.selection_field, None)
