from __future__ import annotations

from datetime import datetime, timezone

import pytest

from flow_backlog.consolidation.cells import CellStore
from flow_backlog.consolidation.contracts import EntityState
from flow_backlog.consolidation.partitions import (
    NOT_AVAILABLE,
    Partition,
    PartitionCatalogError,
    PartitionsCatalog,
    coordinate_comparator,
    default_catalog,
    status_catalog,
)


def _state(status: str, **overrides) -> EntityState:
    fields = {"logistic_center": "ARBA01", "workflow": "OUTBOUND-ORDERS", "status": status}
    fields.update(overrides)
    return EntityState(**fields)


def test_default_catalog_places_state_with_sentinels() -> None:
    catalog = default_catalog()
    deadline = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    assert catalog.column_names() == ("logistic_center_id", "workflow", "area", "status", "date_out")
    assert catalog.coordinate_of(_state("PICKING", area="MZ", deadline=deadline)) == (
        "ARBA01",
        "OUTBOUND-ORDERS",
        "MZ",
        "PICKING",
        deadline,
    )
    assert catalog.coordinate_of(_state("PICKING")) == (
        "ARBA01",
        "OUTBOUND-ORDERS",
        NOT_AVAILABLE,
        "PICKING",
        NOT_AVAILABLE,
    )


def test_catalog_restores_persisted_deadline_text() -> None:
    catalog = default_catalog()
    restored = catalog.restore_coordinate(("ARBA01", "OUTBOUND-ORDERS", "N/A", "PICKING", "2026-03-01T12:00:00Z"))
    assert restored[4] == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    assert catalog.restore_coordinate(("a", "b", "c", "d", "N/A"))[4] == NOT_AVAILABLE
    with pytest.raises(PartitionCatalogError):
        catalog.restore_coordinate(("too", "short"))


def test_catalog_rejects_gapped_ordinals_and_duplicate_columns() -> None:
    with pytest.raises(PartitionCatalogError):
        PartitionsCatalog(partitions=(Partition(1, "status", lambda s: s.status),))
    with pytest.raises(PartitionCatalogError):
        PartitionsCatalog(
            partitions=(
                Partition(0, "status", lambda s: s.status),
                Partition(1, "status", lambda s: s.workflow),
            )
        )


def test_catalog_sorts_partitions_by_ordinal() -> None:
    catalog = PartitionsCatalog(
        partitions=(
            Partition(1, "workflow", lambda s: s.workflow),
            Partition(0, "status", lambda s: s.status),
        )
    )
    assert catalog.column_names() == ("status", "workflow")
    assert catalog.ordinal_of("workflow") == 1
    assert catalog.project(("A", "W"), [1]) == ("W",)


def test_coordinate_comparator_looks_only_at_selected_partitions() -> None:
    catalog = default_catalog()
    same_status = coordinate_comparator(catalog, [catalog.ordinal_of("status")])
    assert same_status(_state("PICKING", area="MZ"), _state("PICKING", area="RS"))
    assert not same_status(_state("PICKING"), _state("PACKING"))
    assert not same_status(None, _state("PICKING"))


def test_cell_store_evicts_and_recreates_fresh() -> None:
    store = CellStore()
    coordinate = ("A",)
    assert store.increment(coordinate, "E1") is False
    assert store.increment(coordinate, "E3") is False
    assert store.decrement(coordinate, "E1") is False
    assert store.decrement(coordinate, "E3") is True
    store.evict(coordinate)
    assert coordinate not in store
    assert store.evicted == 1

    store.increment(coordinate, "E2")
    cell = store.get(coordinate)
    assert cell is not None
    assert cell.population == 1
    assert cell.variation == 1
    assert cell.accumulated_population == 1
    assert cell.added_when_already_present == 0
    assert cell.removed_when_absent == 0


def test_cell_store_counts_duplicate_arrival() -> None:
    store = CellStore()
    store.increment(("A",), "E1")
    store.increment(("A",), "E1")
    assert store.added_when_already_present == 1
    cell = store.get(("A",))
    assert cell.population == 2
    assert cell.present == {"E1"}


def test_late_arrival_cancels_earlier_departure() -> None:
    store = CellStore()
    coordinate = ("B",)
    assert store.decrement(coordinate, "E1") is False
    cell = store.get(coordinate)
    assert cell.population == -1
    assert cell.pending_removal == {"E1"}
    assert store.removed_when_absent == 1

    assert store.increment(coordinate, "E1") is True
    assert cell.population == 0
    assert cell.present == set()
    assert cell.pending_removal == set()
    assert store.added_when_already_present == 0


def test_cell_store_counts_removal_of_absent_entity() -> None:
    store = CellStore()
    store.increment(("A",), "E1")
    assert store.decrement(("A",), "E9") is False
    assert store.removed_when_absent == 1
    assert store.get(("A",)).population == 0
    assert list(store.views()) == []


def test_loaded_cells_report_population_without_presence() -> None:
    store = CellStore()
    store.load(("B",), 3, accumulated_population=10)
    views = list(store.views())
    assert len(views) == 1
    assert views[0].population == 3
    assert views[0].accumulated_population == 10
    assert store.total_population() == 3
    assert len(status_catalog()) == 1
