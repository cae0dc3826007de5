from __future__ import annotations

import pytest

from flow_backlog.consolidation.contracts import EntityState, TransitionEvent
from flow_backlog.consolidation.partitions import coordinate_comparator, default_catalog
from flow_backlog.consolidation.trajectory import Broken, Complete, Trajectory, reconstruct


S1 = EntityState("ARBA01", "OUTBOUND-ORDERS", "PENDING")
S2 = EntityState("ARBA01", "OUTBOUND-ORDERS", "PICKING")
S3 = EntityState("ARBA01", "OUTBOUND-ORDERS", "PACKING")
S4 = EntityState("ARBA01", "OUTBOUND-ORDERS", "SHIPPED", ultimate=True)


def _event(serial: int, old: EntityState | None, new: EntityState | None, entity_id: str = "U1") -> TransitionEvent:
    return TransitionEvent(entity_id=entity_id, arrival_serial_number=serial, old_state=old, new_state=new)


def test_chained_events_take_the_sequential_result() -> None:
    events = [_event(1, None, S1), _event(2, S1, S2), _event(3, S2, S3)]
    outcome = reconstruct(events)
    assert outcome == Complete(state=S3, origin=None)


def test_shuffled_events_are_rechained_to_the_newest_state() -> None:
    a = _event(1, None, S1)
    b = _event(2, S1, S2)
    c = _event(3, S3, S4)
    d = _event(4, S2, S3)
    outcome = reconstruct([a, c, b, d])
    assert isinstance(outcome, Complete)
    assert outcome.state == S4
    assert outcome.origin is None


def test_edges_may_attach_at_the_older_end() -> None:
    outcome = reconstruct([_event(3, S2, S3), _event(1, None, S1), _event(2, S1, S2)])
    assert outcome == Complete(state=S3, origin=None)


def test_orphaned_chain_is_reported_broken() -> None:
    a = _event(1, None, S1)
    b = _event(2, S2, S3)
    terminal = _event(3, S3, S4)
    outcome = reconstruct([a, b, terminal])
    assert isinstance(outcome, Broken)
    assert outcome.newer_side == S1
    assert outcome.older_side is None
    assert outcome.last_event == terminal
    assert outcome.loose_links == (b, terminal)


def test_null_ends_never_link_to_each_other() -> None:
    # A creation followed by a bare retirement must not be glued through None.
    outcome = reconstruct([_event(1, None, S1), _event(2, None, None)])
    assert isinstance(outcome, Broken)
    assert outcome.newer_side == S1


def test_single_event_is_complete() -> None:
    assert reconstruct([_event(1, None, S1)]) == Complete(state=S1, origin=None)


def test_empty_trajectory_is_rejected() -> None:
    with pytest.raises(ValueError):
        reconstruct([])


def test_pluggable_comparator_links_states_by_selected_partitions() -> None:
    catalog = default_catalog()
    by_status = coordinate_comparator(catalog, [catalog.ordinal_of("status")])
    moved = EntityState("ARBA01", "OUTBOUND-ORDERS", "PENDING", area="MZ")
    events = [_event(1, None, S1), _event(2, moved, S2)]
    assert isinstance(reconstruct(events), Broken)
    assert reconstruct(events, same_state=by_status) == Complete(state=S2, origin=None)


def test_trajectory_renders_its_events() -> None:
    trajectory = Trajectory()
    trajectory.append(_event(1, None, S1))
    trajectory.append(_event(2, S1, S4))
    text = str(trajectory)
    assert "#1 U1: - -> ARBA01/OUTBOUND-ORDERS/N/A/PENDING" in text
    assert "SHIPPED!" in text
    assert trajectory.outcome() == Complete(state=S4, origin=None)
