"""Partition catalog: the discrete coordinate space entity states are counted in."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Sequence

from .contracts import ConsolidationError, EntityState


NOT_AVAILABLE = "N/A"

Coordinate = tuple[Any, ...]
StateComparator = Callable[[EntityState | None, EntityState | None], bool]


class PartitionCatalogError(ConsolidationError):
    def __init__(self, detail: str) -> None:
        super().__init__("PARTITION_CATALOG_INVALID", detail)


def _identity(value: Any) -> Any:
    return value


@dataclass(frozen=True)
class Partition:
    """One dimension of the state space.

    ``discriminator`` must be total over every state the decoder can produce.
    ``restore`` turns a persisted column value back into the discriminator's domain.
    """

    ordinal: int
    column_name: str
    discriminator: Callable[[EntityState], Any] = field(compare=False)
    restore: Callable[[Any], Any] = field(default=_identity, compare=False)


@dataclass(frozen=True)
class PartitionsCatalog:
    partitions: tuple[Partition, ...]

    def __post_init__(self) -> None:
        if not self.partitions:
            raise PartitionCatalogError("at least one partition is required")
        ordered = tuple(sorted(self.partitions, key=lambda p: p.ordinal))
        if [p.ordinal for p in ordered] != list(range(len(ordered))):
            raise PartitionCatalogError("partition ordinals must be 0..n-1 without gaps")
        names = [p.column_name for p in ordered]
        if len(set(names)) != len(names):
            raise PartitionCatalogError("partition column names must be unique")
        object.__setattr__(self, "partitions", ordered)

    def __len__(self) -> int:
        return len(self.partitions)

    def coordinate_of(self, state: EntityState) -> Coordinate:
        return tuple(partition.discriminator(state) for partition in self.partitions)

    def column_names(self) -> tuple[str, ...]:
        return tuple(p.column_name for p in self.partitions)

    def ordinal_of(self, column_name: str) -> int:
        for partition in self.partitions:
            if partition.column_name == column_name:
                return partition.ordinal
        raise PartitionCatalogError(f"unknown partition column: {column_name}")

    def restore_coordinate(self, values: Sequence[Any]) -> Coordinate:
        if len(values) != len(self.partitions):
            raise PartitionCatalogError(
                f"coordinate arity {len(values)} does not match catalog arity {len(self.partitions)}"
            )
        return tuple(p.restore(value) for p, value in zip(self.partitions, values))

    def project(self, coordinate: Coordinate, ordinals: Iterable[int]) -> Coordinate:
        return tuple(coordinate[ordinal] for ordinal in ordinals)


def coordinate_comparator(catalog: PartitionsCatalog, ordinals: Iterable[int]) -> StateComparator:
    """Compare two states only by the selected partitions."""
    selected = tuple(catalog.partitions[ordinal] for ordinal in ordinals)

    def same_state(a: EntityState | None, b: EntityState | None) -> bool:
        if a is b:
            return True
        if a is None or b is None:
            return False
        return all(p.discriminator(a) == p.discriminator(b) for p in selected)

    return same_state


def default_catalog() -> PartitionsCatalog:
    return PartitionsCatalog(
        partitions=(
            Partition(0, "logistic_center_id", lambda s: _or_na(s.logistic_center)),
            Partition(1, "workflow", lambda s: _or_na(s.workflow)),
            Partition(2, "area", lambda s: _or_na(s.area)),
            Partition(3, "status", lambda s: _or_na(s.status)),
            Partition(4, "date_out", lambda s: s.deadline if s.deadline is not None else NOT_AVAILABLE, _restore_deadline),
        )
    )


def status_catalog() -> PartitionsCatalog:
    return PartitionsCatalog(partitions=(Partition(0, "status", lambda s: _or_na(s.status)),))


def _or_na(value: Any) -> Any:
    return value if value is not None else NOT_AVAILABLE


def _restore_deadline(value: Any) -> Any:
    if value is None or value == NOT_AVAILABLE:
        return NOT_AVAILABLE
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
