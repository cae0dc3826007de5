"""Backlog: the consolidation engine merging transition events into a live census.

A backlog counts how many tracked entities sit in each cell of the
partitioned state space and keeps the trajectory of every in-flight entity.
It is single-writer: ``merge`` must be driven by one thread in strictly
increasing arrival serial order. Readers on other threads go through
``snapshot`` taken between merges.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
import operator
from types import MappingProxyType
from typing import Callable, Iterable, Iterator, Mapping, Sequence

from .cells import CellStore, CellView
from .contracts import SerialOrderViolation, TransitionEvent
from .partitions import Coordinate, PartitionsCatalog, StateComparator
from .trajectory import Broken, Complete, Trajectory, TrajectoryOutcome, reconstruct


logger = logging.getLogger("flow_backlog.consolidation.backlog")


@dataclass(frozen=True)
class IrregularTrajectory:
    ordinal: int
    entity_id: str
    arrival_serial_number: int
    events: tuple[TransitionEvent, ...]
    outcome: Broken

    def as_dict(self) -> dict[str, object]:
        return {
            "ordinal": self.ordinal,
            "entity_id": self.entity_id,
            "arrival_serial_number": self.arrival_serial_number,
            "events": [event.as_dict() for event in self.events],
            **self.outcome.as_dict(),
        }


@dataclass(frozen=True)
class BacklogCounters:
    created: int
    terminated_successfully: int
    discarded_events: int
    irregular_trajectories: int
    added_when_already_present: int
    removed_when_absent: int

    def as_dict(self) -> dict[str, int]:
        return {
            "created": self.created,
            "terminated_successfully": self.terminated_successfully,
            "discarded_events": self.discarded_events,
            "irregular_trajectories": self.irregular_trajectories,
            "added_when_already_present": self.added_when_already_present,
            "removed_when_absent": self.removed_when_absent,
        }


@dataclass(frozen=True)
class BacklogSnapshot:
    last_event_arrival_serial_number: int
    last_event_arrival_date: datetime | None
    cells: tuple[CellView, ...]
    trajectories: Mapping[str, tuple[TransitionEvent, ...]]
    counters: BacklogCounters

    def population(self, coordinate: Coordinate) -> int:
        for cell in self.cells:
            if cell.coordinate == coordinate:
                return cell.population
        return 0


class Backlog:
    def __init__(
        self,
        catalog: PartitionsCatalog,
        *,
        last_event_arrival_serial_number: int = 0,
        last_event_arrival_date: datetime | None = None,
        same_state: StateComparator = operator.eq,
        on_irregular: Callable[[IrregularTrajectory], None] | None = None,
    ) -> None:
        self.catalog = catalog
        self.last_event_arrival_serial_number = int(last_event_arrival_serial_number)
        self.last_event_arrival_date = last_event_arrival_date
        self.cells = CellStore()
        self.trajectories: dict[str, Trajectory] = {}
        self.same_state = same_state
        self.on_irregular = on_irregular
        self.created = 0
        self.terminated_successfully = 0
        self.discarded_events = 0
        self.irregular_trajectories = 0

    @classmethod
    def bootstrap(
        cls,
        catalog: PartitionsCatalog,
        cells: Iterable[tuple[Coordinate, int]],
        *,
        last_event_arrival_serial_number: int,
        last_event_arrival_date: datetime | None = None,
        same_state: StateComparator = operator.eq,
        on_irregular: Callable[[IrregularTrajectory], None] | None = None,
    ) -> "Backlog":
        """Resume from a persisted census instead of replaying the log from zero."""
        backlog = cls(
            catalog,
            last_event_arrival_serial_number=last_event_arrival_serial_number,
            last_event_arrival_date=last_event_arrival_date,
            same_state=same_state,
            on_irregular=on_irregular,
        )
        for coordinate, population in cells:
            backlog.load_cell(coordinate, population)
        return backlog

    def load_cell(self, coordinate: Coordinate, population: int, *, accumulated_population: int = 0) -> None:
        if len(coordinate) != len(self.catalog):
            raise ValueError(f"coordinate {coordinate!r} does not match catalog arity {len(self.catalog)}")
        if population <= 0:
            return
        self.cells.load(tuple(coordinate), population, accumulated_population=accumulated_population)

    def load_trajectory(self, entity_id: str, events: Sequence[TransitionEvent]) -> None:
        """Restore an in-flight trajectory; call after the cells it lives in are loaded."""
        if not events:
            return
        trajectory = Trajectory(events=list(events))
        self.trajectories[entity_id] = trajectory
        outcome = trajectory.outcome(self.same_state)
        if isinstance(outcome, Complete) and outcome.state is not None:
            self.cells.mark_present(self.catalog.coordinate_of(outcome.state), entity_id)

    def restore_counters(self, counters: Mapping[str, int]) -> None:
        self.created = int(counters.get("created", 0))
        self.terminated_successfully = int(counters.get("terminated_successfully", 0))
        self.discarded_events = int(counters.get("discarded_events", 0))
        self.irregular_trajectories = int(counters.get("irregular_trajectories", 0))
        self.cells.added_when_already_present = int(counters.get("added_when_already_present", 0))
        self.cells.removed_when_absent = int(counters.get("removed_when_absent", 0))

    def merge(self, event: TransitionEvent) -> None:
        if event.arrival_serial_number <= self.last_event_arrival_serial_number:
            raise SerialOrderViolation(
                serial=event.arrival_serial_number,
                last_serial=self.last_event_arrival_serial_number,
            )
        self.last_event_arrival_serial_number = event.arrival_serial_number
        if event.arrival_date is not None:
            self.last_event_arrival_date = event.arrival_date

        trajectory = self.trajectories.get(event.entity_id)
        if trajectory is None:
            if event.old_state is not None:
                # Its predecessor was never merged here; applying it would
                # decrement a cell this entity was never counted in.
                self.discarded_events += 1
                return
            trajectory = Trajectory()
            self.trajectories[event.entity_id] = trajectory
            self.created += 1
        trajectory.append(event)

        if event.old_state is not None:
            origin = self.catalog.coordinate_of(event.old_state)
            if self.cells.decrement(origin, event.entity_id):
                self.cells.evict(origin)

        if not event.is_retirement:
            assert event.new_state is not None
            destination = self.catalog.coordinate_of(event.new_state)
            # A late arrival can cancel a departure merged before it.
            if self.cells.increment(destination, event.entity_id):
                self.cells.evict(destination)
            return

        # Marks the retirement in the irregular-trajectory log line.
        trajectory.completed = True
        outcome = reconstruct(trajectory.events, same_state=self.same_state)
        if isinstance(outcome, Broken):
            self._report_irregular(event, trajectory, outcome)
        else:
            self.terminated_successfully += 1
        del self.trajectories[event.entity_id]

    def merge_all(self, events: Iterable[TransitionEvent]) -> int:
        merged = 0
        for event in events:
            self.merge(event)
            merged += 1
        return merged

    def outcome_of(self, entity_id: str) -> TrajectoryOutcome | None:
        trajectory = self.trajectories.get(entity_id)
        if trajectory is None:
            return None
        return trajectory.outcome(self.same_state)

    def population(self, coordinate: Coordinate) -> int:
        cell = self.cells.get(tuple(coordinate))
        return cell.population if cell is not None else 0

    def iter_cells(self) -> Iterator[CellView]:
        return self.cells.views()

    def iter_trajectories(self) -> Iterator[tuple[str, Trajectory]]:
        return iter(self.trajectories.items())

    @property
    def number_of_cells(self) -> int:
        return len(self.cells)

    def counters(self) -> BacklogCounters:
        return BacklogCounters(
            created=self.created,
            terminated_successfully=self.terminated_successfully,
            discarded_events=self.discarded_events,
            irregular_trajectories=self.irregular_trajectories,
            added_when_already_present=self.cells.added_when_already_present,
            removed_when_absent=self.cells.removed_when_absent,
        )

    def snapshot(self) -> BacklogSnapshot:
        return BacklogSnapshot(
            last_event_arrival_serial_number=self.last_event_arrival_serial_number,
            last_event_arrival_date=self.last_event_arrival_date,
            cells=tuple(self.cells.views()),
            trajectories=MappingProxyType(
                {entity_id: tuple(t.events) for entity_id, t in self.trajectories.items()}
            ),
            counters=self.counters(),
        )

    def _report_irregular(self, event: TransitionEvent, trajectory: Trajectory, outcome: Broken) -> None:
        self.irregular_trajectories += 1
        record = IrregularTrajectory(
            ordinal=self.irregular_trajectories,
            entity_id=event.entity_id,
            arrival_serial_number=event.arrival_serial_number,
            events=tuple(trajectory.events),
            outcome=outcome,
        )
        logger.warning(
            "Irregular trajectory #%s entity=%s: %s",
            self.irregular_trajectories,
            event.entity_id,
            trajectory,
        )
        if self.on_irregular is not None:
            self.on_irregular(record)
