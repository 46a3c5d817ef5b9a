from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

ZERO_BUDGET_POLICIES = {"zero", "error"}
DEFAULT_DATABASE_URL = "sqlite:///./finbook.db"
DEFAULT_FRONTEND_ORIGIN = "http://localhost:3000"
DEFAULT_STORE_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    frontend_origin: str = DEFAULT_FRONTEND_ORIGIN
    store_timeout_seconds: Optional[float] = DEFAULT_STORE_TIMEOUT_SECONDS
    zero_budget_policy: str = "zero"
    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
            frontend_origin=os.getenv("FRONTEND_ORIGIN", DEFAULT_FRONTEND_ORIGIN),
            store_timeout_seconds=get_store_timeout(),
            zero_budget_policy=get_zero_budget_policy(),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
            log_json=os.getenv("LOG_JSON", "false").strip().lower() in {"1", "true", "yes"},
        )


def get_store_timeout() -> Optional[float]:
    raw = os.getenv("STORE_TIMEOUT_SECONDS")
    if raw is None:
        return DEFAULT_STORE_TIMEOUT_SECONDS
    try:
        value = float(raw)
    except ValueError:
        return DEFAULT_STORE_TIMEOUT_SECONDS
    if value <= 0:
        return None
    return value


def get_zero_budget_policy() -> str:
    raw = os.getenv("ZERO_BUDGET_POLICY", "zero")
    normalized = raw.strip().lower()
    if normalized not in ZERO_BUDGET_POLICIES:
        return "zero"
    return normalized
