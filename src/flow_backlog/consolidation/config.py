"""Consolidation profile loader."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
import re
from typing import Any, Mapping

import yaml

from flow_backlog.platform_runtime import resolve_run_id, resolve_run_scoped_path

from .contracts import ConsolidationError
from .partitions import PartitionsCatalog, default_catalog, status_catalog


_ENV_PATTERN = re.compile(r"^\$\{([^}:]+)(?::-([^}]*))?\}$")

CATALOGS = {
    "default": default_catalog,
    "status": status_catalog,
}
EVENTS_SOURCE_KINDS = ("stored", "file")


class ConsolidationConfigError(ConsolidationError):
    def __init__(self, detail: str) -> None:
        super().__init__("CONSOLIDATION_CONFIG_INVALID", detail)


@dataclass(frozen=True)
class ConsolidationConfig:
    profile_path: Path
    stream_id: str
    run_id: str
    catalog_name: str
    events_source_kind: str
    events_dsn: str | None
    events_table: str
    events_file: str | None
    page_size: int
    poll_sleep_seconds: float
    retry_attempts: int
    retry_base_delay_seconds: float
    retry_max_delay_seconds: float
    photo_store_dsn: str | None
    photo_every_events: int
    starting_serial: int | None
    irregular_report_limit: int
    log_level: str

    def build_catalog(self) -> PartitionsCatalog:
        return CATALOGS[self.catalog_name]()


def load_config(profile_path: Path) -> ConsolidationConfig:
    try:
        payload = yaml.safe_load(Path(profile_path).read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConsolidationConfigError(f"cannot read profile {profile_path}: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise ConsolidationConfigError("profile must be a mapping")
    root = payload.get("consolidation")
    if not isinstance(root, Mapping):
        raise ConsolidationConfigError("profile missing 'consolidation' mapping")
    policy = root.get("policy") if isinstance(root.get("policy"), Mapping) else {}
    wiring = root.get("wiring") if isinstance(root.get("wiring"), Mapping) else {}

    run_id = _none_if_blank(_env(wiring.get("run_id"))) or resolve_run_id(create_if_missing=True)
    assert run_id is not None

    catalog_name = str(_env(policy.get("catalog") or "default")).strip().lower()
    if catalog_name not in CATALOGS:
        raise ConsolidationConfigError(f"unknown partition catalog: {catalog_name}")

    events_source_kind = str(_env(wiring.get("events_source_kind") or "stored")).strip().lower()
    if events_source_kind not in EVENTS_SOURCE_KINDS:
        raise ConsolidationConfigError(f"unsupported events_source_kind: {events_source_kind}")
    events_dsn = _none_if_blank(_env(wiring.get("events_dsn")))
    events_file = _none_if_blank(_env(wiring.get("events_file")))
    if events_source_kind == "stored" and not events_dsn:
        raise ConsolidationConfigError("events_dsn is required for the stored events source")
    if events_source_kind == "file" and not events_file:
        raise ConsolidationConfigError("events_file is required for the file events source")

    photo_store_dsn = _none_if_blank(_env(wiring.get("photo_store_dsn")))
    if photo_store_dsn == "run":
        photo_store_dsn = resolve_run_scoped_path(None, run_id=run_id, suffix="consolidation/photos.sqlite")

    starting_serial_raw = _none_if_blank(_env(policy.get("starting_serial")))

    return ConsolidationConfig(
        profile_path=Path(profile_path),
        stream_id=str(_env(policy.get("stream_id") or "consolidation.v0")).strip(),
        run_id=run_id,
        catalog_name=catalog_name,
        events_source_kind=events_source_kind,
        events_dsn=events_dsn,
        events_table=str(_env(wiring.get("events_table") or "incoming_events")).strip(),
        events_file=events_file,
        page_size=_positive_int(wiring.get("page_size"), 10000, "page_size"),
        poll_sleep_seconds=max(0.05, _float(wiring.get("poll_sleep_seconds"), 1.0, "poll_sleep_seconds")),
        retry_attempts=_positive_int(wiring.get("retry_attempts"), 5, "retry_attempts"),
        retry_base_delay_seconds=_float(wiring.get("retry_base_delay_seconds"), 0.5, "retry_base_delay_seconds"),
        retry_max_delay_seconds=_float(wiring.get("retry_max_delay_seconds"), 30.0, "retry_max_delay_seconds"),
        photo_store_dsn=photo_store_dsn,
        photo_every_events=max(0, _int(policy.get("photo_every_events"), 0, "photo_every_events")),
        starting_serial=_int(starting_serial_raw, 0, "starting_serial") if starting_serial_raw else None,
        irregular_report_limit=_positive_int(policy.get("irregular_report_limit"), 200, "irregular_report_limit"),
        log_level=str(_env(root.get("log_level") or "INFO")).strip().upper(),
    )


def _env(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    token = value.strip()
    match = _ENV_PATTERN.fullmatch(token)
    if not match:
        return value
    return os.getenv(match.group(1), match.group(2) or "")


def _none_if_blank(value: Any) -> str | None:
    text = str(value if value is not None else "").strip()
    return text or None


def _int(value: Any, default: int, field_name: str) -> int:
    value = _env(value)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConsolidationConfigError(f"{field_name} must be an integer") from exc


def _positive_int(value: Any, default: int, field_name: str) -> int:
    parsed = _int(value, default, field_name)
    if parsed <= 0:
        raise ConsolidationConfigError(f"{field_name} must be > 0")
    return parsed


def _float(value: Any, default: float, field_name: str) -> float:
    value = _env(value)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConsolidationConfigError(f"{field_name} must be a number") from exc
