"""txn drafts / status / verify — inspect and update saved requests."""
from __future__ import annotations

import sys
from pathlib import Path

from txnflow.engine.resume import VERIFIED
from txnflow.settings import settings
from txnflow.store.drafts import DraftStore


def _open_store() -> DraftStore:
    db_path = Path(settings.DRAFTS_DB)
    if not db_path.exists():
        print("No drafts database found.", file=sys.stderr)
        sys.exit(1)
    return DraftStore(db_path)


def cmd_drafts(user_id: str | None = None):
    store = _open_store()
    try:
        drafts = store.list_drafts(user_id)
        if not drafts:
            print("No saved drafts.")
            return
        for d in drafts:
            print(f'{d["request_id"]}  {d["status"]:<12} {d["transaction_type"]:<28} '
                  f'step {d["last_completed_step"] + 1}  ({d["updated_at"]})')
    finally:
        store.close()


def cmd_status(request_id: str):
    store = _open_store()
    try:
        record = store.get_request_status(request_id)
        if record is None:
            print(f'Request "{request_id}" not found.', file=sys.stderr)
            sys.exit(1)
        print(f"{record.id}: {record.transaction_type} is {record.status}")
        if record.rejection_reason:
            print(f"Reason: {record.rejection_reason}")
        for entry in store.get_history(request_id):
            print(f'  {entry["timestamp"]}  {entry["status"]}  {entry["note"] or ""}')
    finally:
        store.close()


def cmd_verify(request_id: str, status: str = VERIFIED, reason: str | None = None):
    store = _open_store()
    try:
        if not store.update_status(request_id, status.upper(), reason):
            print(f'Request "{request_id}" not found.', file=sys.stderr)
            sys.exit(1)
        print(f"Request {request_id} is now {status.upper()}.")
    except ValueError as e:
        print(e, file=sys.stderr)
        sys.exit(1)
    finally:
        store.close()
