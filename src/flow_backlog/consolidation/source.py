"""Event sources pushing raw event records to a sink in arrival serial order."""

from __future__ import annotations

import json
import logging
from pathlib import Path
import sqlite3
import time
from typing import Any, Callable, Protocol

import psycopg

from flow_backlog.platform_runtime import is_postgres_dsn, sqlite_path
from flow_backlog.postgres_runtime import postgres_threadlocal_connection
from flow_backlog.retry import with_retry

from .contracts import EventDecodeError, EventRecord


logger = logging.getLogger("flow_backlog.consolidation.source")

Sink = Callable[[EventRecord], bool]
ContinuePredicate = Callable[[], bool]

DEFAULT_PAGE_SIZE = 10000
_TABLE_NAME_CHARS = set("abcdefghijklmnopqrstuvwxyz0123456789_.")


class EventsSource(Protocol):
    def provide_while(
        self,
        starting_serial_exclusive: int,
        should_continue: ContinuePredicate,
        sink: Sink,
    ) -> int:
        """Push events after ``starting_serial_exclusive`` until told to stop.

        Returns the serial of the last event handed to the sink.
        """
        ...


class StoredEventsSource:
    """Pages through the ``incoming_events`` log table on sqlite or Postgres."""

    def __init__(
        self,
        *,
        locator: str,
        table: str = "incoming_events",
        page_size: int = DEFAULT_PAGE_SIZE,
        retry_attempts: int = 5,
        retry_base_delay_seconds: float = 0.5,
        retry_max_delay_seconds: float = 30.0,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.locator = str(locator or "").strip()
        if not self.locator:
            raise ValueError("events source locator is required")
        if not set(table.lower()) <= _TABLE_NAME_CHARS:
            raise ValueError(f"invalid events table name: {table!r}")
        self.table = table
        self.page_size = max(1, int(page_size))
        self.backend = "postgres" if is_postgres_dsn(self.locator) else "sqlite"
        self.retry_attempts = max(1, int(retry_attempts))
        self.retry_base_delay_seconds = float(retry_base_delay_seconds)
        self.retry_max_delay_seconds = float(retry_max_delay_seconds)
        self._sleep = sleep or time.sleep

    def provide_while(
        self,
        starting_serial_exclusive: int,
        should_continue: ContinuePredicate,
        sink: Sink,
    ) -> int:
        last_provided = int(starting_serial_exclusive)
        while should_continue():
            page_start = last_provided
            rows = self._fetch_page_with_retry(page_start)
            for row in rows:
                if not should_continue():
                    break
                record = EventRecord.from_row(row)
                last_provided = record.arrival_serial_number
                if not sink(record):
                    logger.info("Events source stopped by sink at serial %s", last_provided)
                    return last_provided
            logger.info(
                "The events whose arrival serial is between %s and %s were provided",
                page_start,
                last_provided,
            )
            if last_provided == page_start:
                break
        return last_provided

    def _fetch_page_with_retry(self, after_serial: int) -> list[tuple[Any, ...]]:
        return with_retry(
            lambda: self._fetch_page(after_serial),
            attempts=self.retry_attempts,
            base_delay_seconds=self.retry_base_delay_seconds,
            max_delay_seconds=self.retry_max_delay_seconds,
            retry_on=_transient_errors(self.backend),
            on_retry=lambda attempt, delay, exc: logger.warning(
                "Events page after serial %s failed (attempt %s): %s; retrying in %.2fs",
                after_serial,
                attempt,
                exc,
                delay,
            ),
            sleep=self._sleep,
        )

    def _fetch_page(self, after_serial: int) -> list[tuple[Any, ...]]:
        placeholder = "%s" if self.backend == "postgres" else "?"
        sql = (
            "SELECT id, entity_id, entity_type, struct_version, new_state, old_state "
            f"FROM {self.table} "
            f"WHERE id > {placeholder} "
            "ORDER BY id ASC "
            f"LIMIT {self.page_size}"
        )
        if self.backend == "postgres":
            with postgres_threadlocal_connection(self.locator) as conn:
                return [tuple(row) for row in conn.execute(sql, (int(after_serial),)).fetchall()]
        conn = sqlite3.connect(sqlite_path(self.locator))
        try:
            return [tuple(row) for row in conn.execute(sql, (int(after_serial),)).fetchall()]
        finally:
            conn.close()


class FileEventsSource:
    """Replays event records from a JSONL file, one record per line."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def provide_while(
        self,
        starting_serial_exclusive: int,
        should_continue: ContinuePredicate,
        sink: Sink,
    ) -> int:
        last_provided = int(starting_serial_exclusive)
        if not self.path.exists():
            return last_provided
        with self.path.open("r", encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, start=1):
                if not should_continue():
                    break
                if not line.strip():
                    continue
                try:
                    record = EventRecord.from_mapping(json.loads(line))
                except (json.JSONDecodeError, EventDecodeError) as exc:
                    logger.error("Skipped unreadable event record %s:%s: %s", self.path, line_number, exc)
                    continue
                if record.arrival_serial_number <= int(starting_serial_exclusive):
                    continue
                last_provided = record.arrival_serial_number
                if not sink(record):
                    break
        return last_provided


def _transient_errors(backend: str) -> tuple[type[BaseException], ...]:
    if backend == "postgres":
        return (psycopg.OperationalError,)
    return (sqlite3.OperationalError,)
