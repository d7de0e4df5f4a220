"""Process settings read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_DATABASE_URL = "sqlite:///discounts.db"

_TRUE = frozenset({"1", "true", "yes", "on"})


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    log_level: str = "INFO"
    policy_file: Path | None = None
    sql_echo: bool = False

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ
        policy_file = env.get("DISCOUNT_POLICY_FILE")
        return cls(
            database_url=env.get("DISCOUNT_DATABASE_URL") or DEFAULT_DATABASE_URL,
            log_level=(env.get("DISCOUNT_LOG_LEVEL") or "INFO").upper(),
            policy_file=Path(policy_file) if policy_file else None,
            sql_echo=(env.get("DISCOUNT_SQL_ECHO") or "").strip().lower() in _TRUE,
        )
