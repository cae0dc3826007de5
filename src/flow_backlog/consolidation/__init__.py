"""Backlog consolidation: merges entity transition events into a live census."""

from .backlog import Backlog, BacklogCounters, BacklogSnapshot, IrregularTrajectory
from .cells import Cell, CellStore, CellView
from .contracts import (
    ConsolidationError,
    EntityState,
    EventDecodeError,
    EventRecord,
    SerialOrderViolation,
    TransitionEvent,
    UnsupportedStructureVersion,
)
from .decoding import EventRecordParser, determine_structure
from .partitions import Partition, PartitionsCatalog, coordinate_comparator, default_catalog, status_catalog
from .queries import BacklogQueries
from .trajectory import Broken, Complete, Trajectory, TrajectoryOutcome, reconstruct

__all__ = [
    "Backlog",
    "BacklogCounters",
    "BacklogQueries",
    "BacklogSnapshot",
    "Broken",
    "Cell",
    "CellStore",
    "CellView",
    "Complete",
    "ConsolidationError",
    "EntityState",
    "EventDecodeError",
    "EventRecord",
    "EventRecordParser",
    "IrregularTrajectory",
    "Partition",
    "PartitionsCatalog",
    "SerialOrderViolation",
    "Trajectory",
    "TrajectoryOutcome",
    "TransitionEvent",
    "UnsupportedStructureVersion",
    "coordinate_comparator",
    "default_catalog",
    "determine_structure",
    "reconstruct",
    "status_catalog",
]
