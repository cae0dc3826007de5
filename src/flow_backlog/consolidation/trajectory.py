"""Per-entity trajectories and their reconstruction into one ordered history.

Events of a trajectory arrive in arrival order, which transport reordering
may have shuffled. Each event is an edge ``old_state -> new_state``.
Reconstruction first checks whether arrival order already chains; if not it
grows a chain from the first event by repeatedly attaching pool edges at
either end, taking the first match in arrival order. A ``None`` state is a
sealed end (creation or retirement) and never links.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import operator
from typing import Any, Sequence, Union

from .contracts import EntityState, TransitionEvent
from .partitions import StateComparator


@dataclass
class Trajectory:
    """Events of one in-flight entity.

    ``completed`` is set when a retiring event is appended, just before the
    trajectory leaves the live map; it only surfaces in ``__str__`` for the
    irregular-trajectory log line.
    """

    events: list[TransitionEvent] = field(default_factory=list)
    completed: bool = False

    def append(self, event: TransitionEvent) -> None:
        self.events.append(event)

    def outcome(self, same_state: StateComparator = operator.eq) -> "TrajectoryOutcome":
        return reconstruct(self.events, same_state=same_state)

    def __str__(self) -> str:
        body = "\n\t".join(str(event) for event in self.events)
        return f"{{completed:{self.completed}, events:[\n\t{body}]}}"


@dataclass(frozen=True)
class Complete:
    """A consistent history; ``state`` is its newest end, ``origin`` its oldest."""

    state: EntityState | None
    origin: EntityState | None = None


@dataclass(frozen=True)
class Broken:
    newer_side: EntityState | None
    older_side: EntityState | None
    last_event: TransitionEvent
    loose_links: tuple[TransitionEvent, ...]

    def as_dict(self) -> dict[str, Any]:
        return {
            "newer_side": self.newer_side.as_dict() if self.newer_side is not None else None,
            "older_side": self.older_side.as_dict() if self.older_side is not None else None,
            "last_event": self.last_event.as_dict(),
            "loose_links": [event.as_dict() for event in self.loose_links],
        }


TrajectoryOutcome = Union[Complete, Broken]


def reconstruct(
    events: Sequence[TransitionEvent],
    *,
    same_state: StateComparator = operator.eq,
) -> TrajectoryOutcome:
    if not events:
        raise ValueError("cannot reconstruct an empty trajectory")

    def links(a: EntityState | None, b: EntityState | None) -> bool:
        return a is not None and b is not None and same_state(a, b)

    for previous, current in zip(events, events[1:]):
        if not links(current.old_state, previous.new_state):
            return _reconstruct_from_pool(events, links)
    return Complete(state=events[-1].new_state, origin=events[0].old_state)


def _reconstruct_from_pool(events: Sequence[TransitionEvent], links: StateComparator) -> TrajectoryOutcome:
    first, *pool = events
    newer_side = first.new_state
    older_side = first.old_state
    while pool:
        for index, link in enumerate(pool):
            if links(link.old_state, newer_side):
                newer_side = link.new_state
                break
            if links(link.new_state, older_side):
                older_side = link.old_state
                break
        else:
            return Broken(
                newer_side=newer_side,
                older_side=older_side,
                last_event=pool[-1],
                loose_links=tuple(pool),
            )
        del pool[index]
    return Complete(state=newer_side, origin=older_side)
