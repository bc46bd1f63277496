from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    db_path: Path
    timezone: str
    testing_mode: bool
    log_level: str


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def load_settings() -> Settings:
    return Settings(
        db_path=Path(os.getenv("MEALQUEST_DB_PATH", str(PROJECT_ROOT / "data.sqlite3"))),
        timezone=os.getenv("MEALQUEST_TIMEZONE", "UTC").strip() or "UTC",
        testing_mode=_env_flag("MEALQUEST_TESTING_MODE"),
        log_level=os.getenv("MEALQUEST_LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
