"""Wire settings, registry, draft store and engine together."""
from __future__ import annotations

import logging
from pathlib import Path

from txnflow.client.http import HttpTransactionService, ServiceClient
from txnflow.engine import WorkflowEngine
from txnflow.settings import settings
from txnflow.store.drafts import DraftStore
from txnflow.strategy.registry import StrategyRegistry

logger = logging.getLogger(__name__)

BUILTIN_DEFINITIONS = Path(__file__).parent / "definitions"


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_registry(service=None, definitions_dir: str | Path | None = None,
                   strategies_dir: str | Path | None = None) -> StrategyRegistry:
    registry = StrategyRegistry(service)
    registry.load_definitions(BUILTIN_DEFINITIONS)
    registry.load_definitions(definitions_dir or settings.DEFINITIONS_DIR)
    registry.load_modules(strategies_dir or settings.STRATEGIES_DIR)
    logger.info("Registered transaction types: %s", ", ".join(registry.types()) or "none")
    return registry


class TransactionSession:
    """One engine plus the collaborators it needs, built from settings."""

    def __init__(self, drafts_db: str | Path | None = None, user_id: str | None = None):
        db_path = Path(drafts_db or settings.DRAFTS_DB)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.drafts = DraftStore(db_path)
        self.client = ServiceClient()
        self.registry = build_registry(HttpTransactionService(self.client))
        self.engine = WorkflowEngine(
            self.registry.create,
            progress_sink=self.drafts,
            resume_source=self.drafts,
            user_id=user_id if user_id is not None else settings.USER_ID,
        )

    async def close(self) -> None:
        self.engine.clear_for_new_transaction()
        await self.client.aclose()
        self.drafts.close()
