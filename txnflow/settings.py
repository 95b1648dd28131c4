"""Environment-driven configuration."""
from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv()


class Settings:
    API_BASE_URL: str = os.getenv("TXN_API_BASE_URL", "http://localhost:8000")
    API_TIMEOUT_SEC: float = float(os.getenv("TXN_API_TIMEOUT_SEC", "30"))

    DRAFTS_DB: str = os.getenv("TXN_DRAFTS_DB", ".txnflow/drafts.db")
    DEFINITIONS_DIR: str = os.getenv("TXN_DEFINITIONS_DIR", ".txnflow/transactions")
    STRATEGIES_DIR: str = os.getenv("TXN_STRATEGIES_DIR", ".txnflow/strategies")

    USER_ID: str = os.getenv("TXN_USER_ID", "")
    LOG_LEVEL: str = os.getenv("TXN_LOG_LEVEL", "INFO")


settings = Settings()
