"""Submission, session reset, strategy modules and the outer surfaces.

Scenarios:
  - Submit only from the last step; success, failure and crash paths
  - A second submit while one is in flight is refused
  - clear_for_new_transaction discards in-flight next() and submit() results
  - Python strategy modules registered with @transaction
  - txn drafts / status / verify / reset commands and the CLI router
  - MCP tools driving an engine
"""
from __future__ import annotations

import asyncio
import json
import sys
import textwrap
from types import SimpleNamespace

import pytest

from conftest import ScriptedStrategy, simple_steps
from txnflow import cli
from txnflow.commands.drafts import cmd_drafts, cmd_status, cmd_verify
from txnflow.commands.reset import cmd_reset
from txnflow.engine.events import Toast
from txnflow.engine.resume import DraftRecord
from txnflow.errors import ApiError
from txnflow.integrations import mcp_server
from txnflow.settings import settings
from txnflow.store.drafts import DraftStore
from txnflow.strategy.registry import StrategyRegistry
from txnflow.types import SubmissionState, SubmitFailure


class GatedSubmitStrategy(ScriptedStrategy):
    async def submit(self, form_data):
        if self.gate is not None:
            await self.gate.wait()
        return await super().submit(form_data)


# ═══════════════════════════════════════════════════════
# Submit
# ═══════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_submit_only_from_last_step(harness_factory):
    h = harness_factory(lambda: ScriptedStrategy(simple_steps(3)))
    await h.start()

    r = await h.submit()
    assert not r
    assert r.message == "Submit is only available on the last step"
    assert h.strategy.submitted == []
    assert h.engine.submission_state == SubmissionState.EMPTY


@pytest.mark.asyncio
async def test_submit_success_and_reset_state(harness_factory):
    h = harness_factory(lambda: ScriptedStrategy(simple_steps(3)))
    await h.start()
    await h.advance_to(2, {"f0": "a"})

    r = await h.submit()
    assert r
    assert h.engine.submission_state == SubmissionState.SUCCESS
    assert h.engine.submission_data == {"requestNumber": "R-1"}
    assert 2 in h.state.completed_steps
    assert h.strategy.submitted[0]["f0"] == "a"

    h.engine.reset_submission_state()
    assert h.engine.submission_state == SubmissionState.EMPTY
    assert h.engine.submission_data == {}


@pytest.mark.asyncio
async def test_submit_failure_outcome(harness_factory):
    h = harness_factory(lambda: ScriptedStrategy(
        simple_steps(2), submit_result=SubmitFailure(ApiError(502, "Payment gateway unavailable")),
    ))
    await h.start()
    await h.advance_to(1)

    r = await h.submit()
    assert not r
    assert h.engine.submission_state == SubmissionState.FAILURE
    assert h.state.api_error == "Payment gateway unavailable"
    assert "Payment gateway unavailable" in h.toasts()


@pytest.mark.asyncio
async def test_submit_crash_becomes_unknown_error(harness_factory):
    h = harness_factory(lambda: ScriptedStrategy(simple_steps(1), submit_result=RuntimeError("boom")))
    await h.start()

    r = await h.submit()
    assert not r
    assert r.message == "Something went wrong, please try again."
    assert h.engine.submission_state == SubmissionState.FAILURE
    assert h.engine.history[-1]["action"] == "submit_failed"


@pytest.mark.asyncio
async def test_second_submit_refused_while_loading(harness_factory):
    h = harness_factory(lambda: GatedSubmitStrategy(simple_steps(1)))
    await h.start()
    gate = asyncio.Event()
    h.strategy.gate = gate

    first = asyncio.create_task(h.submit())
    await asyncio.sleep(0)
    assert h.engine.submission_state == SubmissionState.LOADING

    second = await h.submit()
    assert not second
    assert second.message == "Submission already in progress"

    gate.set()
    assert await first
    assert len(h.strategy.submitted) == 1


# ═══════════════════════════════════════════════════════
# Reset while work is in flight
# ═══════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_reset_discards_in_flight_next(harness_factory):
    h = harness_factory(lambda: ScriptedStrategy(simple_steps(3)))
    await h.start()
    gate = asyncio.Event()
    h.strategy.gate = gate

    task = asyncio.create_task(h.next())
    await asyncio.sleep(0)
    assert h.engine.is_processing

    h.engine.clear_for_new_transaction()
    gate.set()
    r = await task

    assert not r
    assert r.message == "Transaction was reset; result discarded"
    assert not h.state.is_initialized
    assert h.step == 0
    assert not h.engine.is_processing
    assert h.engine.history == []

    # The engine is usable again
    assert await h.start()
    assert h.step == 0


@pytest.mark.asyncio
async def test_reset_discards_in_flight_submit(harness_factory):
    h = harness_factory(lambda: GatedSubmitStrategy(simple_steps(1)))
    await h.start()
    gate = asyncio.Event()
    h.strategy.gate = gate

    task = asyncio.create_task(h.submit())
    await asyncio.sleep(0)
    h.engine.clear_for_new_transaction()
    gate.set()

    r = await task
    assert r.message == "Transaction was reset; result discarded"
    assert h.engine.submission_state == SubmissionState.EMPTY
    assert h.engine.submission_data == {}


@pytest.mark.asyncio
async def test_initialize_without_steps_fails(harness_factory):
    h = harness_factory(lambda: ScriptedStrategy([]))
    r = await h.start()
    assert not r
    assert r.message == 'Transaction "test" has no steps'
    assert not h.state.is_initialized
    assert not (await h.next())


@pytest.mark.asyncio
async def test_initialize_unknown_type(harness_factory):
    h = harness_factory(lambda: ScriptedStrategy(simple_steps(1)))
    r = await h.start("nope")
    assert not r
    assert h.engine.strategy is None
    assert h.engine.history[-1]["action"] == "initialize_failed"


# ═══════════════════════════════════════════════════════
# Strategy modules
# ═══════════════════════════════════════════════════════

STRATEGY_MODULE = '''
from txnflow.strategy import BaseTransactionStrategy, transaction
from txnflow.types import Advance, StepDefinition, SubmitSuccess, TextField


@transaction("ship_name_change")
class ShipNameChange(BaseTransactionStrategy):
    def get_steps(self, accumulated=None):
        return [StepDefinition(title="New name", name="new_name",
                               fields=[TextField(id="newName", mandatory=True)])]

    async def process_step_data(self, step_index, step_data):
        self.accumulated.update(step_data)
        return Advance()

    async def submit(self, form_data):
        return SubmitSuccess({"newName": form_data["newName"]})


class Helper:
    pass
'''


@pytest.mark.asyncio
async def test_strategy_module_registration(tmp_path, harness_factory):
    (tmp_path / "name_change.py").write_text(textwrap.dedent(STRATEGY_MODULE), encoding="utf-8")
    (tmp_path / "broken.py").write_text("raise RuntimeError('import failed')\n", encoding="utf-8")

    registry = StrategyRegistry()
    assert registry.load_modules(tmp_path) == ["ship_name_change"]
    assert registry.types() == ["ship_name_change"]
    with pytest.raises(KeyError, match="Available: ship_name_change"):
        registry.create("other")

    h = harness_factory({"ship_name_change": lambda: registry.create("ship_name_change")})
    assert await h.start("ship_name_change")
    assert not (await h.next())
    assert "newName" in h.state.field_errors

    h.set("newName", "Sea Falcon")
    assert await h.next()
    assert await h.submit()
    assert h.engine.submission_data == {"newName": "Sea Falcon"}


# ═══════════════════════════════════════════════════════
# Commands and CLI
# ═══════════════════════════════════════════════════════

@pytest.fixture
def drafts_db(tmp_path, monkeypatch):
    path = tmp_path / "drafts.db"
    monkeypatch.setattr(settings, "DRAFTS_DB", str(path))
    return path


def test_commands_without_database(drafts_db, capsys):
    with pytest.raises(SystemExit):
        cmd_drafts()
    assert "No drafts database found." in capsys.readouterr().err

    cmd_reset()
    assert "Nothing to reset" in capsys.readouterr().out


def test_draft_commands(drafts_db, capsys):
    store = DraftStore(drafts_db)
    request_id = store.save_draft(DraftRecord("user-1", "mortgage_certificate", None, {"a": "1"}, 2))
    store.close()

    cmd_drafts("user-1")
    out = capsys.readouterr().out
    assert request_id in out
    assert "PENDING" in out
    assert "step 3" in out

    cmd_drafts("someone-else")
    assert "No saved drafts." in capsys.readouterr().out

    cmd_verify(request_id, "rejected", "Expired inspection")
    assert f"Request {request_id} is now REJECTED." in capsys.readouterr().out

    cmd_status(request_id)
    out = capsys.readouterr().out
    assert f"{request_id}: mortgage_certificate is REJECTED" in out
    assert "Reason: Expired inspection" in out
    assert "PENDING  saved" in out

    with pytest.raises(SystemExit):
        cmd_verify(request_id, "approved")
    assert "Unknown status 'APPROVED'" in capsys.readouterr().err

    with pytest.raises(SystemExit):
        cmd_verify("missing")

    cmd_reset()
    assert "Deleted 1 draft(s)." in capsys.readouterr().out


def test_cli_routes_to_commands(drafts_db, capsys, monkeypatch):
    DraftStore(drafts_db).close()

    monkeypatch.setattr(sys, "argv", ["txn", "drafts"])
    cli.main()
    assert "No saved drafts." in capsys.readouterr().out

    monkeypatch.setattr(sys, "argv", ["txn"])
    cli.main()
    assert "Usage:" in capsys.readouterr().out

    monkeypatch.setattr(sys, "argv", ["txn", "status"])
    with pytest.raises(SystemExit):
        cli.main()

    monkeypatch.setattr(sys, "argv", ["txn", "frobnicate"])
    with pytest.raises(SystemExit):
        cli.main()
    assert "Unknown command: frobnicate" in capsys.readouterr().err


def test_cli_configures_logging_first(drafts_db, capsys, monkeypatch):
    from txnflow import session

    DraftStore(drafts_db).close()
    calls = []
    monkeypatch.setattr(session, "configure_logging", lambda level=None: calls.append(level))
    monkeypatch.setattr(sys, "argv", ["txn", "drafts"])
    cli.main()
    assert calls == [None]
    assert "No saved drafts." in capsys.readouterr().out


def test_usage_lists_verify_reason():
    assert "txn verify <request-id> [status] [reason]" in cli.USAGE


# ═══════════════════════════════════════════════════════
# MCP tools
# ═══════════════════════════════════════════════════════

@pytest.fixture
def mcp_session(harness_factory, monkeypatch):
    h = harness_factory(lambda: ScriptedStrategy(simple_steps(2, mandatory_first=True)))
    registry = StrategyRegistry()
    registry.register("test", lambda: ScriptedStrategy(simple_steps(2)))
    monkeypatch.setattr(mcp_server, "_session", SimpleNamespace(engine=h.engine, registry=registry))
    return h


@pytest.mark.asyncio
async def test_mcp_tools_drive_engine(mcp_session):
    assert json.loads(mcp_server.txn_list_types()) == ["test"]

    started = json.loads(await mcp_server.txn_start("test"))
    assert started["success"]
    assert started["reminder"].startswith("test > step 1/2 (Step 0)")

    status = json.loads(mcp_server.txn_get_status())
    assert status["step"]["title"] == "Step 0"
    assert status["step"]["fields"][0]["id"] == "f0"
    assert status["step"]["fields"][0]["type"] == "text"

    blocked = json.loads(await mcp_server.txn_next())
    assert not blocked["success"]
    assert "1 field error(s)" in blocked["reminder"]

    assert json.loads(mcp_server.txn_set_field("f0", "hello"))["success"]
    moved = json.loads(await mcp_server.txn_next())
    assert moved["success"]
    assert moved["new_step"] == 1
    assert json.loads(await mcp_server.txn_next())["message"] == "Last step reached, ready to submit"

    back = json.loads(await mcp_server.txn_previous())
    assert back["new_step"] == 0
    assert json.loads(await mcp_server.txn_goto(1))["success"]

    submitted = json.loads(await mcp_server.txn_submit())
    assert submitted["success"]
    assert json.loads(mcp_server.txn_events()) == []


@pytest.mark.asyncio
async def test_mcp_events_and_resume(mcp_session):
    resumed = json.loads(await mcp_server.txn_resume("missing"))
    assert not resumed["success"]
    assert resumed["message"] == 'Request "missing" not found'

    await mcp_server.txn_start("test")
    mcp_session.engine.events.emit(Toast("hi"))
    events = json.loads(mcp_server.txn_events())
    assert events == [{"type": "Toast", "message": "hi", "is_error": True}]
