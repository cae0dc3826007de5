"""Consolidation worker: drives an events source into a backlog."""

from __future__ import annotations

import argparse
from dataclasses import replace
import logging
from pathlib import Path
import signal
import threading
from typing import Any

from flow_backlog.logging_utils import configure_logging
from flow_backlog.platform_runtime import run_root

from .backlog import Backlog, BacklogSnapshot, IrregularTrajectory
from .config import ConsolidationConfig, load_config
from .contracts import EventDecodeError, EventRecord, reason_code
from .decoding import EventRecordParser
from .observability import (
    ConsolidationRunMetrics,
    IrregularTrajectoryLog,
    build_health_payload,
    export_health,
)
from .photo_store import BacklogPhotoStore
from .source import EventsSource, FileEventsSource, StoredEventsSource


logger = logging.getLogger("flow_backlog.consolidation.worker")


class ConsolidationWorker:
    def __init__(
        self,
        config: ConsolidationConfig,
        *,
        source: EventsSource | None = None,
        parser: EventRecordParser | None = None,
    ) -> None:
        self.config = config
        self.catalog = config.build_catalog()
        self.parser = parser or EventRecordParser()
        self.source = source or _build_source(config)
        self.photo_store = (
            BacklogPhotoStore(locator=config.photo_store_dsn, stream_id=config.stream_id, catalog=self.catalog)
            if config.photo_store_dsn
            else None
        )
        self._metrics = ConsolidationRunMetrics(run_id=config.run_id)
        self._irregular = IrregularTrajectoryLog(run_id=config.run_id, limit=config.irregular_report_limit)
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._merged_since_photo = 0
        self.backlog = self._open_backlog()
        self.last_good_serial = self.backlog.last_event_arrival_serial_number
        self.position = self.last_good_serial
        self.replay_from_serial: int | None = None

    def run_once(self) -> int:
        merged_before = self._metrics.counters["merged_total"]
        self.source.provide_while(
            self.position,
            lambda: not self._stop.is_set(),
            self._consolidate,
        )
        self._export()
        return self._metrics.counters["merged_total"] - merged_before

    def run_forever(self) -> None:
        logger.info("Consolidation starting stream_id=%s from serial %s", self.config.stream_id, self.last_good_serial)
        try:
            while not self._stop.is_set():
                merged = self.run_once()
                if merged == 0:
                    self._stop.wait(self.config.poll_sleep_seconds)
        finally:
            self.take_photo()
            logger.info("Consolidation finished at serial %s", self.backlog.last_event_arrival_serial_number)

    def stop(self) -> None:
        self._stop.set()

    def snapshot(self) -> BacklogSnapshot:
        with self._lock:
            return self.backlog.snapshot()

    def take_photo(self) -> str | None:
        if self.photo_store is None:
            return None
        snapshot = self.snapshot()
        photo_id = self.photo_store.save_photo(snapshot)
        self._merged_since_photo = 0
        logger.info(
            "Backlog photo %s saved at serial %s with %s cells",
            photo_id,
            snapshot.last_event_arrival_serial_number,
            len(snapshot.cells),
        )
        return photo_id

    def _consolidate(self, record: EventRecord) -> bool:
        self._metrics.bump("seen_total")
        self.position = record.arrival_serial_number
        try:
            event = self.parser.parse(record)
        except EventDecodeError as exc:
            self._metrics.bump("decode_failure_total")
            if self.replay_from_serial is None:
                self.replay_from_serial = self.last_good_serial
            logger.error(
                "The incoming event with arrival serial number %s was discarded because its decoding failed "
                "(%s). The census under construction may be corrupted; the last event merged before the first "
                "decoding failure has serial %s.",
                record.arrival_serial_number,
                reason_code(exc),
                self.replay_from_serial,
                exc_info=exc,
            )
            return not self._stop.is_set()
        with self._lock:
            self.backlog.merge(event)
        self.last_good_serial = event.arrival_serial_number
        self._metrics.bump("merged_total")
        self._merged_since_photo += 1
        if self.config.photo_every_events and self._merged_since_photo >= self.config.photo_every_events:
            self.take_photo()
        return not self._stop.is_set()

    def _open_backlog(self) -> Backlog:
        photo = self.photo_store.load_latest_photo() if self.photo_store is not None else None
        if photo is not None and self.config.starting_serial is None:
            backlog = Backlog(
                self.catalog,
                last_event_arrival_serial_number=photo.last_event_arrival_serial_number,
                last_event_arrival_date=photo.last_event_arrival_date,
                on_irregular=self._on_irregular,
            )
            for cell in photo.cells:
                backlog.load_cell(cell.coordinate, cell.population, accumulated_population=cell.accumulated_population)
            for entity_id, events in photo.trajectories.items():
                backlog.load_trajectory(entity_id, events)
            backlog.restore_counters(photo.counters)
            logger.info(
                "Resuming from backlog photo %s at serial %s (%s cells, %s trajectories)",
                photo.photo_id,
                photo.last_event_arrival_serial_number,
                len(photo.cells),
                len(photo.trajectories),
            )
            return backlog
        return Backlog(
            self.catalog,
            last_event_arrival_serial_number=self.config.starting_serial or 0,
            on_irregular=self._on_irregular,
        )

    def _on_irregular(self, irregular: IrregularTrajectory) -> None:
        self._irregular.add(irregular)

    def _export(self) -> None:
        with self._lock:
            counters = self.backlog.counters()
            last_serial = self.backlog.last_event_arrival_serial_number
            number_of_cells = self.backlog.number_of_cells
        self._metrics.absorb(counters)
        metrics = self._metrics.export()
        self._irregular.export()
        health = build_health_payload(
            run_id=self.config.run_id,
            counters=metrics["metrics"],
            last_serial=last_serial,
            replay_from_serial=self.replay_from_serial,
        )
        export_health(run_id=self.config.run_id, payload=health)
        logger.info(
            "Consolidation counters serial=%s cells=%s %s",
            last_serial,
            number_of_cells,
            counters.as_dict(),
        )


def _build_source(config: ConsolidationConfig) -> EventsSource:
    if config.events_source_kind == "file":
        assert config.events_file is not None
        return FileEventsSource(Path(config.events_file))
    assert config.events_dsn is not None
    return StoredEventsSource(
        locator=config.events_dsn,
        table=config.events_table,
        page_size=config.page_size,
        retry_attempts=config.retry_attempts,
        retry_base_delay_seconds=config.retry_base_delay_seconds,
        retry_max_delay_seconds=config.retry_max_delay_seconds,
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Backlog consolidation worker")
    parser.add_argument("--profile", required=True, help="Path to consolidation profile YAML")
    parser.add_argument("--once", action="store_true", help="Drain available events once and exit")
    parser.add_argument("--from-serial", type=int, default=None, help="Ignore photos and start after this serial")
    parser.add_argument("--poll-seconds", type=float, default=None, help="Override poll sleep seconds")
    args = parser.parse_args()

    config = load_config(Path(args.profile))
    if args.from_serial is not None:
        config = replace(config, starting_serial=int(args.from_serial))
    if args.poll_seconds is not None and args.poll_seconds > 0:
        config = replace(config, poll_sleep_seconds=float(args.poll_seconds))
    configure_logging(config.log_level, [str(run_root(config.run_id) / "consolidation" / "consolidation.log")])

    worker = ConsolidationWorker(config)

    def _request_stop(signum: int, _frame: Any) -> None:
        logger.info("Signal %s received; stopping after the current event", signum)
        worker.stop()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)
    if args.once:
        worker.run_once()
        worker.take_photo()
        return
    worker.run_forever()


if __name__ == "__main__":
    main()
