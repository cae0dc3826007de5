"""Sparse cell store: population counters keyed by coordinate."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator

from .partitions import Coordinate


@dataclass
class Cell:
    """Mutable population register of one coordinate.

    ``population`` tracks ``len(present)`` unless upstream events were lost,
    duplicated or reordered; such divergence is counted, never raised. A
    departure seen before its arrival leaves the entity in ``pending_removal``
    so the late arrival cancels it instead of marking the entity present.
    """

    population: int = 0
    variation: int = 0
    accumulated_population: int = 0
    present: set[str] = field(default_factory=set)
    pending_removal: set[str] = field(default_factory=set)
    added_when_already_present: int = 0
    removed_when_absent: int = 0

    def increment(self, entity_id: str) -> bool:
        self.population += 1
        self.variation += 1
        self.accumulated_population += 1
        if entity_id in self.pending_removal:
            self.pending_removal.discard(entity_id)
        elif entity_id in self.present:
            self.added_when_already_present += 1
        else:
            self.present.add(entity_id)
        return self.is_empty

    def decrement(self, entity_id: str) -> bool:
        self.population -= 1
        self.variation -= 1
        if entity_id in self.present:
            self.present.discard(entity_id)
        else:
            self.removed_when_absent += 1
            self.pending_removal.add(entity_id)
        return self.is_empty

    @property
    def is_empty(self) -> bool:
        return self.population == 0 and not self.present and not self.pending_removal


@dataclass(frozen=True)
class CellView:
    coordinate: Coordinate
    population: int
    variation: int
    accumulated_population: int


class CellStore:
    def __init__(self) -> None:
        self._cells: dict[Coordinate, Cell] = {}
        self.added_when_already_present = 0
        self.removed_when_absent = 0
        self.evicted = 0

    def __len__(self) -> int:
        return len(self._cells)

    def __contains__(self, coordinate: object) -> bool:
        return coordinate in self._cells

    def get(self, coordinate: Coordinate) -> Cell | None:
        return self._cells.get(coordinate)

    def get_or_create(self, coordinate: Coordinate) -> Cell:
        cell = self._cells.get(coordinate)
        if cell is None:
            cell = Cell()
            self._cells[coordinate] = cell
        return cell

    def load(self, coordinate: Coordinate, population: int, *, accumulated_population: int = 0) -> Cell:
        """Seed a cell from a persisted census; presence is unknown for seeded entities."""
        cell = self.get_or_create(coordinate)
        cell.population += int(population)
        cell.accumulated_population += int(accumulated_population)
        return cell

    def mark_present(self, coordinate: Coordinate, entity_id: str) -> None:
        cell = self._cells.get(coordinate)
        if cell is not None:
            cell.present.add(entity_id)

    def increment(self, coordinate: Coordinate, entity_id: str) -> bool:
        cell = self.get_or_create(coordinate)
        before = cell.added_when_already_present
        emptied = cell.increment(entity_id)
        self.added_when_already_present += cell.added_when_already_present - before
        return emptied

    def decrement(self, coordinate: Coordinate, entity_id: str) -> bool:
        cell = self.get_or_create(coordinate)
        before = cell.removed_when_absent
        emptied = cell.decrement(entity_id)
        self.removed_when_absent += cell.removed_when_absent - before
        return emptied

    def evict(self, coordinate: Coordinate) -> None:
        if self._cells.pop(coordinate, None) is not None:
            self.evicted += 1

    def items(self) -> Iterator[tuple[Coordinate, Cell]]:
        return iter(self._cells.items())

    def views(self) -> Iterator[CellView]:
        for coordinate, cell in self._cells.items():
            if cell.population == 0:
                continue
            yield CellView(
                coordinate=coordinate,
                population=cell.population,
                variation=cell.variation,
                accumulated_population=cell.accumulated_population,
            )

    def total_population(self) -> int:
        return sum(cell.population for cell in self._cells.values())
