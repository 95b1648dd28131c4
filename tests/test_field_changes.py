"""Field events: value changes, structural rebuilds, focus-lost checks, files and lookups.

Covers:
- Rebuild trigger: "is company" adds/removes a step and clears dependents
- Strategy-set rebuild marker is consumed, never stored
- Scenario E: focus-lost error marks the field without mutating values
- Focus-lost updates, failures and the per-field loading set
- File commands on the event channel
- Lookup callbacks feeding the lookup loading map
"""
from __future__ import annotations

import asyncio

import pytest

from conftest import ScriptedStrategy, company_steps, simple_steps
from txnflow.engine.events import (
    EVENT_BUFFER_SIZE,
    EventChannel,
    OpenFilePicker,
    RemoveFile,
    Toast,
    ViewFile,
)
from txnflow.errors import ApiError
from txnflow.types import (
    REBUILD_MARKER,
    DropDown,
    FieldError,
    FileUpload,
    StepDefinition,
    TextField,
    UpdateFields,
)


# ═══════════════════════════════════════════════════════
# Rebuild trigger
# ═══════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_company_checkbox_adds_step_and_clears_dependents(harness_factory):
    h = harness_factory(lambda: ScriptedStrategy(company_steps))
    await h.start()
    assert len(h.state.steps) == 3

    h.set("isCompany", "true")
    assert [s.name for s in h.state.steps] == ["applicant", "company", "details", "review"]

    h.set("crNumber", "1234567890")
    assert h.form["crNumber"] == "1234567890"

    h.set("isCompany", "false")
    assert len(h.state.steps) == 3
    assert "crNumber" not in h.form


@pytest.mark.asyncio
async def test_get_steps_is_idempotent(harness_factory):
    h = harness_factory(lambda: ScriptedStrategy(company_steps))
    await h.start()
    h.set("isCompany", "true")
    first = h.strategy.get_steps(h.form)
    second = h.strategy.get_steps(h.form)
    assert first == second


@pytest.mark.asyncio
async def test_company_path_walkthrough(harness_factory):
    h = harness_factory(lambda: ScriptedStrategy(company_steps))
    await h.start()
    h.fill({"fullName": "Acme Marine", "isCompany": "true"})
    await h.next()
    assert h.title == "Company"

    h.set("crNumber", "12ab")
    r = await h.next()
    assert not r
    assert h.state.field_errors == {"crNumber": "Must contain digits only"}

    h.set("crNumber", "1234567890")
    await h.next()
    assert h.title == "Details"


class MarkerStrategy(ScriptedStrategy):
    def handle_field_change(self, field_id, value, form_data):
        if field_id == "mode":
            return {**form_data, "derived": value.upper(), REBUILD_MARKER: "true"}
        return form_data


@pytest.mark.asyncio
async def test_rebuild_marker_is_consumed(harness_factory):
    def steps(data):
        base = [StepDefinition(title="Mode", fields=[TextField(id="mode")])]
        if data.get("derived") == "FULL":
            base.append(StepDefinition(title="Extra", fields=[TextField(id="extra")]))
        base.append(StepDefinition(title="End"))
        return base

    h = harness_factory(lambda: MarkerStrategy(steps))
    await h.start()
    h.set("mode", "full")

    assert h.form["derived"] == "FULL"
    assert REBUILD_MARKER not in h.form
    assert [s.title for s in h.state.steps] == ["Mode", "Extra", "End"]


@pytest.mark.asyncio
async def test_field_change_failure_is_caught(harness_factory):
    class Broken(ScriptedStrategy):
        def handle_field_change(self, field_id, value, form_data):
            raise ValueError("bad transform")

    h = harness_factory(lambda: Broken(simple_steps(2)))
    await h.start()
    r = h.set("f0", "x")
    assert not r
    assert h.state.api_error
    assert h.engine.history[-1]["action"] == "field_change_failed"


# ═══════════════════════════════════════════════════════
# Scenario E: focus lost
# ═══════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_scenario_e_focus_lost_error(harness_factory):
    h = harness_factory(lambda: ScriptedStrategy(
        simple_steps(2), focus_results={"f0": FieldError("f0", "invalid")},
    ))
    await h.start()
    h.fill({"f0": "123", "f1": "abc"})
    before = h.form

    r = await h.engine.on_field_focus_lost("f0", "123")
    assert not r
    assert h.state.field_errors["f0"] == "invalid"
    assert h.form == before
    assert h.engine.field_loading == frozenset()


@pytest.mark.asyncio
async def test_focus_lost_updates_fields(harness_factory):
    h = harness_factory(lambda: ScriptedStrategy(
        simple_steps(2), focus_results={"f0": UpdateFields({"f1": "Acme Marine LLC"})},
    ))
    await h.start()
    h.set("f0", "1234567890")
    r = await h.engine.on_field_focus_lost("f0", "1234567890")
    assert r
    assert h.form["f1"] == "Acme Marine LLC"
    assert h.strategy.accumulated["f1"] == "Acme Marine LLC"


@pytest.mark.asyncio
async def test_focus_lost_failure_becomes_field_error(harness_factory):
    h = harness_factory(lambda: ScriptedStrategy(
        simple_steps(2), focus_results={"f0": ApiError(404, "Registration not found")},
    ))
    await h.start()
    r = await h.engine.on_field_focus_lost("f0", "999")
    assert not r
    assert h.state.field_errors["f0"] == "Registration not found"
    # Not a fatal error
    assert h.state.api_error is None


@pytest.mark.asyncio
async def test_field_loading_during_focus_check(harness_factory):
    gate = asyncio.Event()

    class Slow(ScriptedStrategy):
        async def on_field_focus_lost(self, field_id, value):
            await gate.wait()
            return UpdateFields({})

    h = harness_factory(lambda: Slow(simple_steps(2)))
    await h.start()
    task = asyncio.create_task(h.engine.on_field_focus_lost("f0", "x"))
    await asyncio.sleep(0)
    assert h.engine.field_loading == {"f0"}

    # Typing is not blocked while the check runs
    assert h.set("f1", "typed")
    gate.set()
    await task
    assert h.engine.field_loading == frozenset()
    assert h.form["f1"] == "typed"


# ═══════════════════════════════════════════════════════
# Files
# ═══════════════════════════════════════════════════════

def _doc_steps():
    return [StepDefinition(title="Docs", fields=[FileUpload(id="contract", allowed_types=["pdf"])])]


@pytest.mark.asyncio
async def test_file_commands(harness_factory):
    h = harness_factory(lambda: ScriptedStrategy(_doc_steps()))
    await h.start()

    assert h.engine.open_file_picker("contract")
    assert h.engine.on_file_selected("contract", "content://files/contract.pdf")
    assert h.engine.view_file("contract")
    assert h.engine.remove_file("contract")

    events = h.events()
    assert events == [
        OpenFilePicker("contract", ("pdf",)),
        ViewFile("content://files/contract.pdf", "application/pdf"),
        RemoveFile("contract"),
    ]
    assert h.form["contract"] == ""
    # Each event is handed out once
    assert h.events() == []

    h.engine.on_file_selected("contract", "content://files/v2.pdf")
    assert h.engine.on_file_removed("contract")
    assert h.form["contract"] == ""
    assert h.events() == []


@pytest.mark.asyncio
async def test_file_picker_rejects_non_file_field(harness_factory):
    h = harness_factory(lambda: ScriptedStrategy(simple_steps(1)))
    await h.start()
    assert not h.engine.open_file_picker("f0")
    assert not h.engine.view_file("f0")


def test_event_channel_drops_oldest_when_full():
    channel = EventChannel()
    for i in range(EVENT_BUFFER_SIZE + 50):
        channel.emit(Toast(str(i)))

    assert len(channel) == EVENT_BUFFER_SIZE
    assert channel.pop() == Toast("50")
    assert channel.drain()[-1] == Toast(str(EVENT_BUFFER_SIZE + 49))
    assert len(channel) == 0


# ═══════════════════════════════════════════════════════
# Lookups
# ═══════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_lookup_callbacks_fill_lookup_state(harness_factory):
    def steps(data):
        return [StepDefinition(title="Port", fields=[DropDown(id="port", options=list(data.get("_ports", [])))])]

    h = harness_factory(lambda: ScriptedStrategy(steps, lookups={"ports": ["Shuwaikh", "Shuaiba"]}))
    await h.start()

    assert h.engine.lookup_loading == {"ports": False}
    assert h.engine.lookups["ports"].data == ["Shuwaikh", "Shuaiba"]
    assert h.engine.lookups["ports"].success


@pytest.mark.asyncio
async def test_failed_lookup_emits_toast(harness_factory):
    class FailingLookup(ScriptedStrategy):
        async def load_dynamic_options(self):
            self.notify_lookup_started("ports")
            self.notify_lookup_completed("ports", [], False)
            return {}

    h = harness_factory(lambda: FailingLookup(simple_steps(1)))
    assert await h.start()
    assert not h.engine.lookups["ports"].success
    assert any(isinstance(e, Toast) and "ports" in e.message for e in h.events())
