"""MCP Server — exposes txn_* tools that drive a transaction engine."""
from __future__ import annotations

import dataclasses
import json
from typing import Any

from mcp.server.fastmcp import FastMCP

from txnflow.session import TransactionSession, configure_logging

mcp = FastMCP("txnflow")

_session: TransactionSession | None = None


def _get_session() -> TransactionSession:
    global _session
    if _session is None:
        _session = TransactionSession()
    return _session


def _dump(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, indent=2, default=str)


def _result(result) -> str:
    engine = _get_session().engine
    payload = result.to_dict()
    payload["reminder"] = engine.get_status()["summary"]
    return _dump(payload)


def _step_view(engine) -> dict[str, Any]:
    st = engine.state
    step = st.current
    if step is None:
        return {}
    return {
        "title": step.title,
        "kind": step.step_kind.value,
        "description": step.description,
        "fields": [
            {"type": f.kind, **{k: v for k, v in dataclasses.asdict(f).items() if v not in (None, [], "", False)}}
            for f in step.fields
        ],
    }


@mcp.tool()
def txn_list_types() -> str:
    """List the transaction types that can be started."""
    try:
        return _dump(_get_session().registry.types())
    except Exception as e:
        return _dump({"error": str(e)})


@mcp.tool()
async def txn_start(transaction_type: str) -> str:
    """Start a new transaction of the given type."""
    try:
        return _result(await _get_session().engine.initialize(transaction_type))
    except Exception as e:
        return f"Start failed: {e}"


@mcp.tool()
async def txn_resume(request_id: str) -> str:
    """Resume a saved request; only verified requests can continue."""
    try:
        return _result(await _get_session().engine.resume_request(request_id))
    except Exception as e:
        return f"Resume failed: {e}"


@mcp.tool()
def txn_get_status() -> str:
    """Get the current transaction status, step and its fields."""
    try:
        engine = _get_session().engine
        st = engine.get_status()
        st["step"] = _step_view(engine)
        st["reminder"] = st["summary"]
        return _dump(st)
    except Exception as e:
        return _dump({"error": str(e)})


@mcp.tool()
def txn_set_field(field_id: str, value: str) -> str:
    """Set a field value on the current transaction."""
    try:
        return _result(_get_session().engine.on_field_value_change(field_id, value))
    except Exception as e:
        return f"Set field failed: {e}"


@mcp.tool()
async def txn_focus_lost(field_id: str, value: str) -> str:
    """Run the remote check bound to a field once editing is done."""
    try:
        return _result(await _get_session().engine.on_field_focus_lost(field_id, value))
    except Exception as e:
        return f"Field check failed: {e}"


@mcp.tool()
async def txn_next() -> str:
    """Validate and process the current step, then move forward."""
    try:
        return _result(await _get_session().engine.next())
    except Exception as e:
        return f"Next failed: {e}"


@mcp.tool()
async def txn_previous() -> str:
    """Go back one step."""
    try:
        return _result(await _get_session().engine.previous())
    except Exception as e:
        return f"Previous failed: {e}"


@mcp.tool()
async def txn_goto(step_index: int) -> str:
    """Jump to an earlier or already completed step by index."""
    try:
        return _result(await _get_session().engine.go_to_step(step_index))
    except Exception as e:
        return f"Goto failed: {e}"


@mcp.tool()
async def txn_submit() -> str:
    """Submit the transaction from its last step."""
    try:
        return _result(await _get_session().engine.submit())
    except Exception as e:
        return f"Submit failed: {e}"


@mcp.tool()
def txn_events() -> str:
    """Drain pending UI events (toasts, file commands, interrupts)."""
    try:
        events = _get_session().engine.events.drain()
        return _dump([{"type": type(e).__name__, **dataclasses.asdict(e)} for e in events])
    except Exception as e:
        return _dump({"error": str(e)})


def run_server():
    configure_logging()
    mcp.run(transport="stdio")
