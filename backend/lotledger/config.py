# backend/lotledger/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/lotledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///lotledger.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Strict allocation is the default; backorder replicates the legacy
    # behaviour of leaving sale lines partially matched.
    LEDGER_ALLOW_BACKORDER = _env_bool("LEDGER_ALLOW_BACKORDER", False)

    # Bounded retry for lock contention / optimistic version conflicts
    LEDGER_RETRY_ATTEMPTS = int(os.environ.get("LEDGER_RETRY_ATTEMPTS", "3"))
    LEDGER_RETRY_BACKOFF = float(os.environ.get("LEDGER_RETRY_BACKOFF", "0.1"))
    LEDGER_LOCK_TIMEOUT_MS = int(os.environ.get("LEDGER_LOCK_TIMEOUT_MS", "5000"))

    LEDGER_RECONCILE_ON_STARTUP = _env_bool("LEDGER_RECONCILE_ON_STARTUP", False)
    LEDGER_DEFAULT_ACTOR = os.environ.get("LEDGER_DEFAULT_ACTOR", "system")
