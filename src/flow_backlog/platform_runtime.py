"""Run-scoped path helpers shared by the consolidation components."""

from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path

RUNS_ROOT = Path("runs/flow-backlog")
ACTIVE_RUN_ID_PATH = RUNS_ROOT / "ACTIVE_RUN_ID"


def resolve_run_id(*, create_if_missing: bool) -> str | None:
    env_value = (os.getenv("BACKLOG_RUN_ID") or "").strip()
    if env_value:
        return env_value
    if ACTIVE_RUN_ID_PATH.exists():
        value = ACTIVE_RUN_ID_PATH.read_text(encoding="utf-8").strip()
        if value:
            return value
    if not create_if_missing:
        return None
    run_id = _new_run_id()
    RUNS_ROOT.mkdir(parents=True, exist_ok=True)
    ACTIVE_RUN_ID_PATH.write_text(run_id + "\n", encoding="utf-8")
    return run_id


def run_root(run_id: str) -> Path:
    return RUNS_ROOT / run_id


def resolve_run_scoped_path(path: str | None, *, run_id: str, suffix: str) -> str:
    """Default a missing locator to a file under the run root."""
    text = str(path or "").strip()
    if not text:
        return str(run_root(run_id) / suffix)
    return text


def is_postgres_dsn(value: str | None) -> bool:
    if not value:
        return False
    return value.startswith("postgres://") or value.startswith("postgresql://")


def sqlite_path(locator: str) -> str:
    text = str(locator or "").strip()
    if text.startswith("sqlite:///"):
        return text[len("sqlite:///") :]
    if text.startswith("sqlite://"):
        return text[len("sqlite://") :]
    return text


def _new_run_id() -> str:
    return "backlog_" + datetime.now(tz=timezone.utc).strftime("%Y%m%dT%H%M%SZ")
