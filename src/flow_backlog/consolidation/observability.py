"""Consolidation observability: run counters, health payloads, irregular-trajectory reports."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
from pathlib import Path
from typing import Any, Mapping

from flow_backlog.platform_runtime import run_root

from .backlog import BacklogCounters, IrregularTrajectory


@dataclass
class ConsolidationRunMetrics:
    run_id: str
    counters: dict[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.run_id = _required(self.run_id, "run_id")
        for key in _REQUIRED_COUNTERS:
            self.counters.setdefault(key, 0)

    def bump(self, key: str, delta: int = 1) -> None:
        if key not in self.counters:
            raise ValueError(f"unsupported metric counter: {key}")
        self.counters[key] = int(self.counters.get(key, 0)) + int(delta)

    def absorb(self, backlog_counters: BacklogCounters) -> None:
        """Mirror the engine's cumulative counters into the run counters."""
        self.counters["created_total"] = backlog_counters.created
        self.counters["terminated_total"] = backlog_counters.terminated_successfully
        self.counters["discarded_total"] = backlog_counters.discarded_events
        self.counters["irregular_total"] = backlog_counters.irregular_trajectories
        self.counters["added_when_present_total"] = backlog_counters.added_when_already_present
        self.counters["removed_when_absent_total"] = backlog_counters.removed_when_absent

    def snapshot(self) -> dict[str, Any]:
        return {
            "generated_at_utc": _utc_now(),
            "run_id": self.run_id,
            "metrics": dict(self.counters),
        }

    def export(self) -> dict[str, Any]:
        payload = self.snapshot()
        _write_json(run_root(self.run_id) / "consolidation" / "metrics" / "last_metrics.json", payload)
        return payload


@dataclass
class IrregularTrajectoryLog:
    run_id: str
    limit: int = 200
    records: list[dict[str, Any]] = field(default_factory=list)
    total: int = 0

    def add(self, irregular: IrregularTrajectory) -> None:
        self.total += 1
        self.records.append(irregular.as_dict())
        if len(self.records) > self.limit:
            del self.records[: len(self.records) - self.limit]

    def summary(self) -> dict[str, Any]:
        return {
            "generated_at_utc": _utc_now(),
            "run_id": self.run_id,
            "irregular_total": self.total,
            "retained": len(self.records),
            "records": list(self.records),
        }

    def export(self) -> dict[str, Any]:
        payload = self.summary()
        _write_json(run_root(self.run_id) / "consolidation" / "irregular" / "irregular_trajectories.json", payload)
        return payload


def build_health_payload(
    *,
    run_id: str,
    counters: Mapping[str, Any],
    last_serial: int,
    replay_from_serial: int | None = None,
) -> dict[str, Any]:
    health_state = "GREEN"
    reasons: list[str] = []
    if int(counters.get("irregular_total", 0)) > 0:
        health_state = "AMBER"
        reasons.append("IRREGULAR_TRAJECTORIES_NONZERO")
    mismatches = int(counters.get("added_when_present_total", 0)) + int(counters.get("removed_when_absent_total", 0))
    if mismatches > 0:
        health_state = "AMBER"
        reasons.append("CELL_PRESENCE_MISMATCH_NONZERO")
    if int(counters.get("decode_failure_total", 0)) > 0:
        health_state = "RED"
        reasons.append("DECODE_FAILURE_NONZERO")
    return {
        "generated_at_utc": _utc_now(),
        "run_id": _required(run_id, "run_id"),
        "health_state": health_state,
        "health_reasons": sorted(set(reasons)),
        "last_event_arrival_serial_number": int(last_serial),
        "replay_from_serial": replay_from_serial,
        "metrics": dict(counters),
    }


def export_health(*, run_id: str, payload: Mapping[str, Any]) -> dict[str, Any]:
    body = dict(payload)
    _write_json(run_root(run_id) / "consolidation" / "health" / "last_health.json", body)
    return body


def _write_json(path: Path, payload: Mapping[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(payload, sort_keys=True, ensure_ascii=True, indent=2, default=str) + "\n",
        encoding="utf-8",
    )


def _required(value: Any, field_name: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValueError(f"{field_name} is required")
    return text


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


_REQUIRED_COUNTERS: tuple[str, ...] = (
    "seen_total",
    "merged_total",
    "decode_failure_total",
    "discarded_total",
    "created_total",
    "terminated_total",
    "irregular_total",
    "added_when_present_total",
    "removed_when_absent_total",
)
