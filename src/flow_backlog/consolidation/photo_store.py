"""Backlog photo store: persisted census snapshots used to resume consolidation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
import re
import sqlite3
from typing import Any, Iterable
import uuid

from flow_backlog.platform_runtime import is_postgres_dsn, sqlite_path
from flow_backlog.postgres_runtime import postgres_threadlocal_connection

from .backlog import BacklogSnapshot
from .contracts import TransitionEvent
from .partitions import Coordinate, PartitionsCatalog


_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")
_PLACEHOLDER_PATTERN = re.compile(r"\{p(\d+)\}")


@dataclass(frozen=True)
class PhotoCell:
    coordinate: Coordinate
    population: int
    variation: int
    accumulated_population: int


@dataclass(frozen=True)
class BacklogPhoto:
    photo_id: str
    stream_id: str
    last_event_arrival_serial_number: int
    last_event_arrival_date: datetime | None
    taken_at_utc: str
    counters: dict[str, int]
    cells: tuple[PhotoCell, ...]
    trajectories: dict[str, tuple[TransitionEvent, ...]]


class BacklogPhotoStore:
    """Stores census photos in ``backlog_photo``, ``backlog_photo_cell`` and ``backlog_photo_trajectory``."""

    def __init__(self, *, locator: str, stream_id: str, catalog: PartitionsCatalog) -> None:
        self.locator = str(locator or "").strip()
        self.stream_id = str(stream_id or "").strip()
        if not self.locator:
            raise ValueError("photo store locator is required")
        if not self.stream_id:
            raise ValueError("photo store stream_id is required")
        for column in catalog.column_names():
            if not _IDENTIFIER.fullmatch(column):
                raise ValueError(f"partition column name is not a safe identifier: {column!r}")
        self.catalog = catalog
        self.backend = "postgres" if is_postgres_dsn(self.locator) else "sqlite"
        self._ensure_schema()

    def save_photo(self, snapshot: BacklogSnapshot) -> str:
        photo_id = uuid.uuid4().hex
        counters = snapshot.counters
        columns = self.catalog.column_names()
        cell_sql = (
            "INSERT INTO backlog_photo_cell (photo_id, "
            + ", ".join(columns)
            + ", population, variation, accumulated_population) VALUES ("
            + ", ".join("{p%d}" % (index + 1) for index in range(len(columns) + 4))
            + ")"
        )
        with self._connect() as conn:
            conn.execute(
                *self._sql_with_params(
                    """
                    INSERT INTO backlog_photo (
                        photo_id, stream_id, last_event_arrival_serial_number, last_event_arrival_date,
                        taken_at_utc, created, terminated_successfully, discarded_events, irregular_trajectories,
                        added_when_already_present, removed_when_absent
                    ) VALUES ({p1}, {p2}, {p3}, {p4}, {p5}, {p6}, {p7}, {p8}, {p9}, {p10}, {p11})
                    """,
                    (
                        photo_id,
                        self.stream_id,
                        int(snapshot.last_event_arrival_serial_number),
                        _encode_value(snapshot.last_event_arrival_date),
                        _utc_now(),
                        counters.created,
                        counters.terminated_successfully,
                        counters.discarded_events,
                        counters.irregular_trajectories,
                        counters.added_when_already_present,
                        counters.removed_when_absent,
                    ),
                )
            )
            for cell in snapshot.cells:
                conn.execute(
                    *self._sql_with_params(
                        cell_sql,
                        (
                            photo_id,
                            *(_encode_value(value) for value in cell.coordinate),
                            int(cell.population),
                            int(cell.variation),
                            int(cell.accumulated_population),
                        ),
                    )
                )
            for entity_id, events in snapshot.trajectories.items():
                for position, event in enumerate(events):
                    conn.execute(
                        *self._sql_with_params(
                            """
                            INSERT INTO backlog_photo_trajectory (photo_id, entity_id, position, event_json)
                            VALUES ({p1}, {p2}, {p3}, {p4})
                            """,
                            (
                                photo_id,
                                entity_id,
                                position,
                                json.dumps(event.as_dict(), sort_keys=True, ensure_ascii=True),
                            ),
                        )
                    )
        return photo_id

    def load_latest_photo(self) -> BacklogPhoto | None:
        with self._connect() as conn:
            row = conn.execute(
                *self._sql_with_params(
                    """
                    SELECT photo_id, last_event_arrival_serial_number, last_event_arrival_date, taken_at_utc,
                           created, terminated_successfully, discarded_events, irregular_trajectories,
                           added_when_already_present, removed_when_absent
                    FROM backlog_photo
                    WHERE stream_id = {p1}
                    ORDER BY last_event_arrival_serial_number DESC, taken_at_utc DESC
                    LIMIT 1
                    """,
                    (self.stream_id,),
                )
            ).fetchone()
            if row is None:
                return None
            photo_id = str(row[0])
            columns = self.catalog.column_names()
            cell_rows = conn.execute(
                *self._sql_with_params(
                    "SELECT "
                    + ", ".join(columns)
                    + ", population, variation, accumulated_population "
                    + "FROM backlog_photo_cell WHERE photo_id = {p1}",
                    (photo_id,),
                )
            ).fetchall()
            trajectory_rows = conn.execute(
                *self._sql_with_params(
                    """
                    SELECT entity_id, event_json FROM backlog_photo_trajectory
                    WHERE photo_id = {p1}
                    ORDER BY entity_id ASC, position ASC
                    """,
                    (photo_id,),
                )
            ).fetchall()
        trajectories: dict[str, list[TransitionEvent]] = {}
        for entity_id, event_json in trajectory_rows:
            trajectories.setdefault(str(entity_id), []).append(TransitionEvent.from_mapping(json.loads(event_json)))
        arity = len(columns)
        cells = tuple(
            PhotoCell(
                coordinate=self.catalog.restore_coordinate(tuple(cell_row[:arity])),
                population=int(cell_row[arity]),
                variation=int(cell_row[arity + 1]),
                accumulated_population=int(cell_row[arity + 2]),
            )
            for cell_row in cell_rows
        )
        return BacklogPhoto(
            photo_id=photo_id,
            stream_id=self.stream_id,
            last_event_arrival_serial_number=int(row[1]),
            last_event_arrival_date=_decode_datetime(row[2]),
            taken_at_utc=str(row[3]),
            counters={
                "created": int(row[4]),
                "terminated_successfully": int(row[5]),
                "discarded_events": int(row[6]),
                "irregular_trajectories": int(row[7]),
                "added_when_already_present": int(row[8]),
                "removed_when_absent": int(row[9]),
            },
            cells=cells,
            trajectories={entity_id: tuple(events) for entity_id, events in trajectories.items()},
        )

    def _connect(self) -> Any:
        if self.backend == "postgres":
            return postgres_threadlocal_connection(self.locator)
        return sqlite3.connect(sqlite_path(self.locator))

    def _ensure_schema(self) -> None:
        partition_columns = "".join(f"{column} TEXT,\n" for column in self.catalog.column_names())
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS backlog_photo (
                    photo_id TEXT PRIMARY KEY,
                    stream_id TEXT NOT NULL,
                    last_event_arrival_serial_number BIGINT NOT NULL,
                    last_event_arrival_date TEXT,
                    taken_at_utc TEXT NOT NULL,
                    created BIGINT NOT NULL,
                    terminated_successfully BIGINT NOT NULL,
                    discarded_events BIGINT NOT NULL,
                    irregular_trajectories BIGINT NOT NULL,
                    added_when_already_present BIGINT NOT NULL,
                    removed_when_absent BIGINT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE TABLE IF NOT EXISTS backlog_photo_cell (\n"
                "photo_id TEXT NOT NULL,\n"
                + partition_columns
                + "population BIGINT NOT NULL,\n"
                "variation BIGINT NOT NULL,\n"
                "accumulated_population BIGINT NOT NULL\n"
                ")"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS backlog_photo_trajectory (
                    photo_id TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    event_json TEXT NOT NULL,
                    PRIMARY KEY (photo_id, entity_id, position)
                )
                """
            )

    def _sql_with_params(self, sql: str, params: Iterable[Any]) -> tuple[str, tuple[Any, ...]]:
        values = tuple(params)
        ordered: list[Any] = []
        for token in _PLACEHOLDER_PATTERN.findall(sql):
            idx = int(token) - 1
            if idx < 0 or idx >= len(values):
                raise ValueError(f"placeholder index out of range: p{token}")
            ordered.append(values[idx])
        marker = "%s" if self.backend == "postgres" else "?"
        return _PLACEHOLDER_PATTERN.sub(marker, sql), tuple(ordered)


def _encode_value(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _decode_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()
