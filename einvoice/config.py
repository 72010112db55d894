"""Runtime settings read from the environment (overridable by CLI flags)."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


DEFAULT_DB_PATH = Path("data/invoices/einvoice.db")


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number, got {raw!r}") from None


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from None


def sqlite_url(path: Path) -> str:
    return f"sqlite:///{path.expanduser()}"


@dataclass(frozen=True)
class Settings:
    database_url: str
    capture_cooldown_seconds: float
    list_limit: int


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("EINVOICE_DB_URL", "").strip() or sqlite_url(DEFAULT_DB_PATH),
        capture_cooldown_seconds=_float_env("EINVOICE_CAPTURE_COOLDOWN_SECONDS", 0.6),
        list_limit=_int_env("EINVOICE_LIST_LIMIT", 200),
    )
