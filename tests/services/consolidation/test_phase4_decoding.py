from __future__ import annotations

from datetime import datetime, timezone
import json

import pytest

from flow_backlog.consolidation.contracts import (
    EventDecodeError,
    EventRecord,
    UnsupportedStructureVersion,
    reason_code,
)
from flow_backlog.consolidation.decoding import (
    EntityType,
    EventRecordParser,
    OutboundUnitStateV0,
    VersionedStructure,
    determine_structure,
)


def _unit(status: str, **overrides) -> dict:
    payload = {
        "warehouse_id": "ARBA01",
        "group_type": "ORDER",
        "status": status,
        "storage_id": "MZ-1-020-1",
        "estimated_time_departure": "2026-03-01T12:00:00Z",
        "date_in": "2026-02-28T09:00:00",
    }
    payload.update(overrides)
    return payload


def _record(serial: int, new_state, old_state=None, **overrides) -> EventRecord:
    payload = {
        "arrival_serial_number": serial,
        "entity_id": "U1",
        "entity_type": "outbound-unit",
        "struct_version": 0,
        "new_state": new_state,
        "old_state": old_state,
    }
    payload.update(overrides)
    return EventRecord.from_mapping(payload)


def test_outbound_unit_payload_maps_to_entity_state() -> None:
    event = EventRecordParser().parse(_record(7, _unit("PICKING"), None))
    state = event.new_state
    assert event.is_creation
    assert not event.is_retirement
    assert state is not None
    assert state.logistic_center == "ARBA01"
    assert state.workflow == "OUTBOUND-ORDERS"
    assert state.area == "MZ"
    assert state.status == "PICKING"
    assert state.deadline == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    assert state.date_in == datetime(2026, 2, 28, 9, 0, tzinfo=timezone.utc)
    assert state.ultimate is False


def test_storage_without_area_prefix_has_no_area() -> None:
    event = EventRecordParser().parse(_record(1, _unit("PICKING", storage_id="RACK7")))
    assert event.new_state is not None
    assert event.new_state.area is None


@pytest.mark.parametrize("status", ["SHIPPED", "CANCELED"])
def test_ultimate_statuses_retire_the_entity(status: str) -> None:
    event = EventRecordParser().parse(_record(2, _unit(status), _unit("PACKING")))
    assert event.new_state is not None and event.new_state.ultimate
    assert event.is_retirement


def test_null_state_json_decodes_to_none() -> None:
    event = EventRecordParser().parse(_record(3, "null", json.dumps(_unit("PACKING"))))
    assert event.new_state is None
    assert event.is_retirement


def test_malformed_json_raises_decode_error() -> None:
    with pytest.raises(EventDecodeError) as excinfo:
        EventRecordParser().parse(_record(4, "{not json"))
    assert reason_code(excinfo.value) == "EVENT_DECODE_FAILED"


def test_invalid_field_type_raises_decode_error() -> None:
    with pytest.raises(EventDecodeError):
        EventRecordParser().parse(_record(5, _unit("PICKING", estimated_time_departure="soon")))


def test_unknown_entity_type_is_unsupported() -> None:
    with pytest.raises(UnsupportedStructureVersion) as excinfo:
        EventRecordParser().parse(_record(6, _unit("PICKING"), entity_type="inbound-unit"))
    assert excinfo.value.code == "UNSUPPORTED_STRUCTURE_VERSION"


def test_structure_is_chosen_by_greatest_starting_version() -> None:
    class OutboundUnitStateV3(OutboundUnitStateV0):
        pass

    registry = {
        "outbound-unit": EntityType(
            "outbound-unit",
            (VersionedStructure(0, OutboundUnitStateV0), VersionedStructure(3, OutboundUnitStateV3)),
        )
    }
    assert determine_structure("outbound-unit", 2, registry=registry) is OutboundUnitStateV0
    assert determine_structure("outbound-unit", 3, registry=registry) is OutboundUnitStateV3
    assert determine_structure("outbound-unit", 9, registry=registry) is OutboundUnitStateV3
    with pytest.raises(UnsupportedStructureVersion):
        determine_structure("outbound-unit", -1, registry=registry)


def test_record_from_mapping_requires_entity_and_serial() -> None:
    with pytest.raises(EventDecodeError):
        EventRecord.from_mapping({"entity_id": "U1"})
    with pytest.raises(EventDecodeError):
        EventRecord.from_mapping({"arrival_serial_number": 1, "entity_id": " "})


def test_record_from_row_keeps_serial_as_event_id() -> None:
    record = EventRecord.from_row((42, "U1", "outbound-unit", 0, b'{"status": "PICKING"}', None))
    assert record.arrival_serial_number == 42
    assert record.event_id == 42
    assert record.new_state_raw_json == '{"status": "PICKING"}'
    assert record.old_state_raw_json is None
