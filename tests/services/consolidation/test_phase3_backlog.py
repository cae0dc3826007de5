from __future__ import annotations

from datetime import datetime, timezone
import logging

import pytest

from flow_backlog.consolidation.backlog import Backlog, IrregularTrajectory
from flow_backlog.consolidation.contracts import EntityState, SerialOrderViolation, TransitionEvent
from flow_backlog.consolidation.partitions import status_catalog
from flow_backlog.consolidation.trajectory import Broken, Complete


def _state(status: str, *, ultimate: bool = False) -> EntityState:
    return EntityState("ARBA01", "OUTBOUND-ORDERS", status, ultimate=ultimate)


def _event(serial: int, entity_id: str, old: str | None, new: str | None, **kwargs) -> TransitionEvent:
    return TransitionEvent(
        entity_id=entity_id,
        arrival_serial_number=serial,
        old_state=_state(old) if old is not None else None,
        new_state=_state(new, ultimate=kwargs.get("ultimate", False)) if new is not None else None,
        arrival_date=kwargs.get("arrival_date"),
    )


def _populations(backlog: Backlog) -> dict[str, int]:
    return {cell.coordinate[0]: cell.population for cell in backlog.iter_cells()}


def test_three_entity_scenario_settles_populations_and_counters() -> None:
    backlog = Backlog(status_catalog())
    backlog.merge_all(
        [
            _event(1, "E1", None, "A"),
            _event(2, "E2", None, "A"),
            _event(3, "E1", "A", "B"),
            _event(4, "E2", "A", None),
            _event(5, "E3", None, "B"),
        ]
    )
    assert backlog.population(("A",)) == 0
    assert backlog.population(("B",)) == 2
    assert ("A",) not in backlog.cells
    counters = backlog.counters()
    assert counters.created == 3
    assert counters.terminated_successfully == 1
    assert counters.discarded_events == 0
    assert counters.irregular_trajectories == 0
    assert backlog.last_event_arrival_serial_number == 5
    assert sorted(entity_id for entity_id, _ in backlog.iter_trajectories()) == ["E1", "E3"]


def test_population_sum_matches_live_entities() -> None:
    backlog = Backlog(status_catalog())
    statuses = ["PENDING", "PICKING", "PACKING"]
    serial = 0
    for index in range(6):
        serial += 1
        backlog.merge(_event(serial, f"U{index}", None, statuses[0]))
    for index in range(4):
        for old, new in zip(statuses, statuses[1:]):
            serial += 1
            backlog.merge(_event(serial, f"U{index}", old, new))
    serial += 1
    backlog.merge(_event(serial, "U0", "PACKING", "SHIPPED", ultimate=True))

    assert sum(cell.population for cell in backlog.iter_cells()) == 5
    assert _populations(backlog) == {"PENDING": 2, "PACKING": 3}
    assert ("SHIPPED",) not in backlog.cells
    assert backlog.counters().terminated_successfully == 1


def test_unknown_entity_with_old_state_is_discarded() -> None:
    backlog = Backlog(status_catalog())
    backlog.merge(_event(1, "E1", None, "A"))
    before = _populations(backlog)
    backlog.merge(_event(2, "E9", "A", "B"))
    assert backlog.counters().discarded_events == 1
    assert _populations(backlog) == before
    assert backlog.last_event_arrival_serial_number == 2
    assert backlog.outcome_of("E9") is None


def test_non_increasing_serial_is_fatal() -> None:
    backlog = Backlog(status_catalog(), last_event_arrival_serial_number=10)
    with pytest.raises(SerialOrderViolation) as excinfo:
        backlog.merge(_event(10, "E1", None, "A"))
    assert excinfo.value.code == "SERIAL_ORDER_VIOLATION"
    assert backlog.number_of_cells == 0


def test_broken_trajectory_is_reported_and_dropped(caplog) -> None:
    reported: list[IrregularTrajectory] = []
    backlog = Backlog(status_catalog(), on_irregular=reported.append)
    backlog.merge(_event(1, "E1", None, "S1"))
    backlog.merge(_event(2, "E1", "S2", "S3"))
    with caplog.at_level(logging.WARNING, logger="flow_backlog.consolidation.backlog"):
        backlog.merge(_event(3, "E1", "S3", "S4", ultimate=True))

    assert backlog.counters().irregular_trajectories == 1
    assert backlog.counters().terminated_successfully == 0
    assert backlog.outcome_of("E1") is None
    assert len(reported) == 1
    outcome = reported[0].outcome
    assert isinstance(outcome, Broken)
    assert outcome.newer_side == _state("S1")
    assert outcome.older_side is None
    assert [event.arrival_serial_number for event in outcome.loose_links] == [2, 3]
    assert reported[0].as_dict()["entity_id"] == "E1"
    assert "Irregular trajectory #1 entity=E1" in caplog.text
    assert "completed:True" in caplog.text


def test_out_of_order_transitions_still_terminate_successfully() -> None:
    backlog = Backlog(status_catalog())
    backlog.merge(_event(1, "E1", None, "S1"))
    backlog.merge(_event(2, "E1", "S2", "S3"))
    backlog.merge(_event(3, "E1", "S1", "S2"))
    assert backlog.outcome_of("E1") == Complete(state=_state("S3"), origin=None)
    assert backlog.number_of_cells == 1
    backlog.merge(_event(4, "E1", "S3", None))
    counters = backlog.counters()
    assert counters.terminated_successfully == 1
    assert counters.irregular_trajectories == 0
    # S2 was decremented before it was incremented.
    assert counters.removed_when_absent == 1
    assert counters.added_when_already_present == 0
    assert backlog.number_of_cells == 0


def test_bootstrap_resumes_from_persisted_cells() -> None:
    arrival = datetime(2026, 2, 1, tzinfo=timezone.utc)
    backlog = Backlog.bootstrap(
        status_catalog(),
        [(("A",), 4), (("B",), 0)],
        last_event_arrival_serial_number=100,
        last_event_arrival_date=arrival,
    )
    assert backlog.population(("A",)) == 4
    assert ("B",) not in backlog.cells
    assert backlog.last_event_arrival_date == arrival

    backlog.merge(_event(101, "N1", None, "A"))
    assert backlog.population(("A",)) == 5
    with pytest.raises(ValueError):
        backlog.load_cell(("A", "extra"), 1)


def test_restored_trajectory_keeps_transitions_mergeable() -> None:
    source = Backlog(status_catalog())
    source.merge_all([_event(1, "E1", None, "A"), _event(2, "E1", "A", "B")])
    snapshot = source.snapshot()

    backlog = Backlog(status_catalog(), last_event_arrival_serial_number=2)
    for cell in snapshot.cells:
        backlog.load_cell(cell.coordinate, cell.population)
    for entity_id, events in snapshot.trajectories.items():
        backlog.load_trajectory(entity_id, events)
    backlog.restore_counters(snapshot.counters.as_dict())

    backlog.merge(_event(3, "E1", "B", None))
    counters = backlog.counters()
    assert counters.discarded_events == 0
    assert counters.removed_when_absent == 0
    assert counters.created == 1
    assert counters.terminated_successfully == 1
    assert backlog.number_of_cells == 0


def test_snapshot_is_detached_from_later_merges() -> None:
    backlog = Backlog(status_catalog())
    backlog.merge(_event(1, "E1", None, "A"))
    snapshot = backlog.snapshot()
    backlog.merge(_event(2, "E1", "A", "B"))

    assert snapshot.population(("A",)) == 1
    assert snapshot.population(("B",)) == 0
    assert len(snapshot.trajectories["E1"]) == 1
    assert snapshot.counters.created == 1
    with pytest.raises(TypeError):
        snapshot.trajectories["E2"] = ()  # type: ignore[index]


def test_arrival_date_tracks_last_merged_event() -> None:
    when = datetime(2026, 2, 2, 8, 30, tzinfo=timezone.utc)
    backlog = Backlog(status_catalog())
    backlog.merge(_event(1, "E1", None, "A", arrival_date=when))
    backlog.merge(_event(2, "E1", "A", "B"))
    assert backlog.last_event_arrival_date == when
