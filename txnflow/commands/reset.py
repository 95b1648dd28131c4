"""txn reset — delete all saved drafts."""
from __future__ import annotations

from pathlib import Path

from txnflow.settings import settings
from txnflow.store.drafts import DraftStore


def cmd_reset():
    db_path = Path(settings.DRAFTS_DB)
    if not db_path.exists():
        print("Nothing to reset — no drafts database found.")
        return

    store = DraftStore(db_path)
    try:
        count = len(store.list_drafts())
        store.reset()
    finally:
        store.close()
    print(f"Deleted {count} draft(s).")
