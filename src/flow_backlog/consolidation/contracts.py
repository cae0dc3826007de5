"""Consolidation contracts: entity states, transition events and raw event records."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
from typing import Any, Mapping


class ConsolidationError(RuntimeError):
    """Stable error surfaced as a reason code."""

    def __init__(self, code: str, detail: str | None = None) -> None:
        self.code = code
        self.detail = detail
        message = f"{code}:{detail}" if detail else code
        super().__init__(message)


class SerialOrderViolation(ConsolidationError):
    """Raised when the event source breaks the strictly increasing serial contract."""

    def __init__(self, *, serial: int, last_serial: int) -> None:
        self.serial = int(serial)
        self.last_serial = int(last_serial)
        super().__init__(
            "SERIAL_ORDER_VIOLATION",
            f"arrival serial {self.serial} is not greater than last merged serial {self.last_serial}",
        )


class EventDecodeError(ConsolidationError):
    """Raised when a raw event record cannot be turned into a transition event."""

    def __init__(self, detail: str, *, code: str = "EVENT_DECODE_FAILED") -> None:
        super().__init__(code, detail)


class UnsupportedStructureVersion(EventDecodeError):
    def __init__(self, entity_type: str, struct_version: int) -> None:
        self.entity_type = entity_type
        self.struct_version = struct_version
        super().__init__(
            f"entityType:{entity_type}, version:{struct_version}",
            code="UNSUPPORTED_STRUCTURE_VERSION",
        )


def reason_code(exc: BaseException) -> str:
    if isinstance(exc, ConsolidationError):
        return exc.code
    text = str(exc or "").strip()
    if text.isupper():
        return text
    if ":" in text:
        head = text.split(":", 1)[0].strip()
        if head.isupper():
            return head
    return "INTERNAL_ERROR"


@dataclass(frozen=True)
class EntityState:
    """Snapshot of one entity's attributes at one point in time.

    ``ultimate`` means the entity never transitions again once in this state.
    """

    logistic_center: str | None
    workflow: str | None
    status: str | None
    area: str | None = None
    deadline: datetime | None = None
    date_in: datetime | None = None
    ultimate: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "logistic_center": self.logistic_center,
            "workflow": self.workflow,
            "status": self.status,
            "area": self.area,
            "deadline": _iso(self.deadline),
            "date_in": _iso(self.date_in),
            "ultimate": self.ultimate,
        }

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "EntityState":
        return cls(
            logistic_center=payload.get("logistic_center"),
            workflow=payload.get("workflow"),
            status=payload.get("status"),
            area=payload.get("area"),
            deadline=_parse_datetime(payload.get("deadline")),
            date_in=_parse_datetime(payload.get("date_in")),
            ultimate=bool(payload.get("ultimate", False)),
        )


@dataclass(frozen=True)
class TransitionEvent:
    entity_id: str
    arrival_serial_number: int
    old_state: EntityState | None
    new_state: EntityState | None
    event_id: int | None = None
    arrival_date: datetime | None = None

    @property
    def is_creation(self) -> bool:
        return self.old_state is None

    @property
    def is_retirement(self) -> bool:
        return self.new_state is None or self.new_state.ultimate

    def as_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "arrival_serial_number": self.arrival_serial_number,
            "event_id": self.event_id,
            "arrival_date": _iso(self.arrival_date),
            "old_state": self.old_state.as_dict() if self.old_state is not None else None,
            "new_state": self.new_state.as_dict() if self.new_state is not None else None,
        }

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "TransitionEvent":
        """Inverse of ``as_dict``; used when restoring persisted trajectories."""
        old_state = payload.get("old_state")
        new_state = payload.get("new_state")
        event_id = payload.get("event_id")
        return cls(
            entity_id=str(payload["entity_id"]),
            arrival_serial_number=int(payload["arrival_serial_number"]),
            old_state=EntityState.from_mapping(old_state) if old_state is not None else None,
            new_state=EntityState.from_mapping(new_state) if new_state is not None else None,
            event_id=int(event_id) if event_id is not None else None,
            arrival_date=_parse_datetime(payload.get("arrival_date")),
        )

    def __str__(self) -> str:
        old = _state_label(self.old_state)
        new = _state_label(self.new_state)
        return f"#{self.arrival_serial_number} {self.entity_id}: {old} -> {new}"


@dataclass(frozen=True)
class EventRecord:
    """A transition event as stored in the incoming events log, still undecoded."""

    arrival_serial_number: int
    entity_id: str
    entity_type: str
    struct_version: int
    new_state_raw_json: str | None
    old_state_raw_json: str | None
    event_id: int | None = None
    arrival_date: datetime | None = None

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "EventRecord":
        if not isinstance(payload, Mapping):
            raise EventDecodeError("event record must be a mapping")
        try:
            serial = int(payload["arrival_serial_number"])
            struct_version = int(payload.get("struct_version") or 0)
        except (KeyError, TypeError, ValueError) as exc:
            raise EventDecodeError(f"event record serial/version invalid: {exc}") from exc
        entity_id = str(payload.get("entity_id") or "").strip()
        if not entity_id:
            raise EventDecodeError(f"event record {serial} has no entity_id")
        event_id = payload.get("event_id")
        return cls(
            arrival_serial_number=serial,
            entity_id=entity_id,
            entity_type=str(payload.get("entity_type") or "").strip(),
            struct_version=struct_version,
            new_state_raw_json=_raw_json(payload.get("new_state")),
            old_state_raw_json=_raw_json(payload.get("old_state")),
            event_id=int(event_id) if event_id is not None else None,
            arrival_date=_parse_datetime(payload.get("arrival_date")),
        )

    @classmethod
    def from_row(cls, row: tuple[Any, ...]) -> "EventRecord":
        """Build from ``(id, entity_id, entity_type, struct_version, new_state, old_state[, arrival_date])``."""
        arrival_date = _parse_datetime(row[6]) if len(row) > 6 else None
        return cls(
            arrival_serial_number=int(row[0]),
            entity_id=str(row[1]),
            entity_type=str(row[2] or ""),
            struct_version=int(row[3] or 0),
            new_state_raw_json=_raw_json(row[4]),
            old_state_raw_json=_raw_json(row[5]),
            event_id=int(row[0]),
            arrival_date=arrival_date,
        )


def _raw_json(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, ensure_ascii=True)


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise EventDecodeError(f"invalid timestamp: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _state_label(state: EntityState | None) -> str:
    if state is None:
        return "-"
    label = f"{state.logistic_center}/{state.workflow}/{state.area or 'N/A'}/{state.status}"
    if state.ultimate:
        label += "!"
    return label
