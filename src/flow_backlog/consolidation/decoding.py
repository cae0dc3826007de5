"""Versioned decoding of raw event records into transition events."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
from typing import ClassVar, Mapping

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .contracts import (
    EntityState,
    EventDecodeError,
    EventRecord,
    TransitionEvent,
    UnsupportedStructureVersion,
)


class StateStructure(BaseModel):
    """Base for the JSON shapes an entity state has taken across versions."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    def to_state(self) -> EntityState:
        raise NotImplementedError


class OutboundUnitStateV0(StateStructure):
    ULTIMATE_STATUSES: ClassVar[frozenset[str]] = frozenset({"SHIPPED", "CANCELED"})

    warehouse_id: str | None = None
    group_type: str | None = None
    status: str | None = None
    storage_id: str | None = None
    estimated_time_departure: datetime | None = None
    date_in: datetime | None = None

    @field_validator("estimated_time_departure", "date_in")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def to_state(self) -> EntityState:
        return EntityState(
            logistic_center=self.warehouse_id,
            workflow=f"OUTBOUND-{self.group_type}S",
            status=self.status,
            area=self._area(),
            deadline=self.estimated_time_departure,
            date_in=self.date_in,
            ultimate=self.status in self.ULTIMATE_STATUSES,
        )

    def _area(self) -> str | None:
        if not self.storage_id:
            return None
        fields = self.storage_id.split("-")
        return fields[0] if len(fields) > 1 else None


@dataclass(frozen=True)
class VersionedStructure:
    starting_version: int
    structure: type[StateStructure]


@dataclass(frozen=True)
class EntityType:
    id: str
    versioned_structures: tuple[VersionedStructure, ...]

    def __post_init__(self) -> None:
        ordered = tuple(sorted(self.versioned_structures, key=lambda vs: -vs.starting_version))
        object.__setattr__(self, "versioned_structures", ordered)

    def structure_for(self, version: int) -> type[StateStructure] | None:
        for versioned in self.versioned_structures:
            if versioned.starting_version <= version:
                return versioned.structure
        return None


ENTITY_TYPES: dict[str, EntityType] = {
    entity_type.id: entity_type
    for entity_type in (
        EntityType("outbound-unit", (VersionedStructure(0, OutboundUnitStateV0),)),
    )
}


def determine_structure(
    entity_type: str,
    version: int,
    *,
    registry: Mapping[str, EntityType] | None = None,
) -> type[StateStructure]:
    """Pick the structure with the greatest starting version not above ``version``."""
    known = ENTITY_TYPES if registry is None else registry
    candidate = known.get(entity_type)
    structure = candidate.structure_for(version) if candidate is not None else None
    if structure is None:
        raise UnsupportedStructureVersion(entity_type, version)
    return structure


class EventRecordParser:
    def __init__(self, registry: Mapping[str, EntityType] | None = None) -> None:
        self.registry = dict(ENTITY_TYPES if registry is None else registry)

    def parse(self, record: EventRecord) -> TransitionEvent:
        structure = determine_structure(record.entity_type, record.struct_version, registry=self.registry)
        return TransitionEvent(
            entity_id=record.entity_id,
            arrival_serial_number=record.arrival_serial_number,
            old_state=_decode_state(structure, record.old_state_raw_json, side="old_state"),
            new_state=_decode_state(structure, record.new_state_raw_json, side="new_state"),
            event_id=record.event_id,
            arrival_date=record.arrival_date,
        )


def _decode_state(structure: type[StateStructure], raw_json: str | None, *, side: str) -> EntityState | None:
    text = (raw_json or "").strip()
    if not text or text == "null":
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise EventDecodeError(f"{side} is not valid JSON: {exc}") from exc
    if payload is None:
        return None
    if not isinstance(payload, dict):
        raise EventDecodeError(f"{side} must be a JSON object")
    try:
        return structure.model_validate(payload).to_state()
    except ValidationError as exc:
        raise EventDecodeError(f"{side} does not match {structure.__name__}: {exc.error_count()} errors") from exc
