"""Read-side groupings over a backlog snapshot."""

from __future__ import annotations

import operator
from typing import Callable, Iterable, Sequence

from .backlog import BacklogSnapshot
from .cells import CellView
from .contracts import EntityState, TransitionEvent
from .partitions import Coordinate, PartitionsCatalog, StateComparator
from .trajectory import Broken, Complete, reconstruct


TrajectoryEvents = tuple[TransitionEvent, ...]


class BacklogQueries:
    """Groupings consumed by reporting; always works on an immutable snapshot."""

    def __init__(self, snapshot: BacklogSnapshot, catalog: PartitionsCatalog) -> None:
        self.snapshot = snapshot
        self.catalog = catalog

    def cell_population_grouped(
        self,
        group_by: Sequence[int],
        *,
        coordinate_filter: Callable[[Coordinate], bool] | None = None,
        content_filter: Callable[[CellView], bool] | None = None,
    ) -> dict[Coordinate, int]:
        grouped: dict[Coordinate, int] = {}
        for cell in self.snapshot.cells:
            if coordinate_filter is not None and not coordinate_filter(cell.coordinate):
                continue
            if content_filter is not None and not content_filter(cell):
                continue
            key = self.catalog.project(cell.coordinate, group_by)
            grouped[key] = grouped.get(key, 0) + cell.population
        return _sorted_by_key_text(grouped)

    def healthy_trajectory_grouping(
        self,
        group_by: Sequence[int],
        *,
        trajectory_filter: Callable[[TrajectoryEvents], bool] | None = None,
        same_state: StateComparator = operator.eq,
    ) -> dict[Coordinate, list[TrajectoryEvents]]:
        grouped: dict[Coordinate, list[TrajectoryEvents]] = {}
        for events in self.snapshot.trajectories.values():
            if trajectory_filter is not None and not trajectory_filter(events):
                continue
            outcome = reconstruct(events, same_state=same_state)
            if isinstance(outcome, Complete) and outcome.state is not None:
                self._add(grouped, outcome.state, group_by, events)
        return _sorted_by_key_text(grouped)

    def broken_trajectories_grouping(
        self,
        group_by: Sequence[int],
        *,
        broken_filter: Callable[[Broken], bool] | None = None,
        same_state: StateComparator = operator.eq,
        by_newer_side: bool = True,
    ) -> dict[Coordinate, list[TrajectoryEvents]]:
        grouped: dict[Coordinate, list[TrajectoryEvents]] = {}
        for events in self.snapshot.trajectories.values():
            outcome = reconstruct(events, same_state=same_state)
            if not isinstance(outcome, Broken):
                continue
            if broken_filter is not None and not broken_filter(outcome):
                continue
            side = outcome.newer_side if by_newer_side and outcome.newer_side is not None else outcome.older_side
            if side is None:
                side = outcome.newer_side
            if side is None:
                continue
            self._add(grouped, side, group_by, events)
        return _sorted_by_key_text(grouped)

    def _add(
        self,
        grouped: dict[Coordinate, list[TrajectoryEvents]],
        state: EntityState,
        group_by: Iterable[int],
        events: TrajectoryEvents,
    ) -> None:
        key = self.catalog.project(self.catalog.coordinate_of(state), group_by)
        grouped.setdefault(key, []).append(events)


def _sorted_by_key_text(grouped: dict) -> dict:
    return dict(sorted(grouped.items(), key=lambda item: repr(item[0])))
