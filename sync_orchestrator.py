"""
Runs one sync for one source:

    IDLE -> FETCHING_WATERMARK -> FIRST_SYNC | INCREMENTAL
         -> INGESTING -> AGGREGATING -> COMMITTING_WATERMARK -> DONE

AGGREGATING and COMMITTING_WATERMARK share one transaction. Any failure
(including the wall-clock deadline) lands in FAILED and leaves the
watermark exactly where it was. Each run gets a row in ``sync_runs``.
"""
import logging
import os
import time
import uuid
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional, Sequence

import duckdb

from aggregator import IncrementalAggregator, SyncMode
from clock import utc_now
from event_source import EventSource
from ingestor import IngestResult, RawEventIngestor
from logging_utils import attach_source_log
from watermark_store import Watermark, WatermarkStore
from windowed_metrics import cohort_user_ids, refresh_cohort_metrics


class SyncState(str, Enum):
    IDLE = "IDLE"
    FETCHING_WATERMARK = "FETCHING_WATERMARK"
    FIRST_SYNC = "FIRST_SYNC"
    INCREMENTAL = "INCREMENTAL"
    INGESTING = "INGESTING"
    AGGREGATING = "AGGREGATING"
    COMMITTING_WATERMARK = "COMMITTING_WATERMARK"
    DONE = "DONE"
    FAILED = "FAILED"


class DeadlineExceeded(Exception):
    pass


@dataclass(frozen=True)
class SyncSettings:
    lookback_days: int = 30
    overlap_hours: float = 2.0
    max_page_retries: int = 3
    retry_backoff_seconds: float = 1.0
    max_rate_limit_sleep_seconds: float = 60.0
    rate_limit_delay_seconds: float = 0.0
    write_batch_size: int = 1000
    deadline_seconds: Optional[float] = None
    dead_letter_dir: Optional[str] = None
    log_dir: Optional[str] = None


@dataclass(frozen=True)
class SourceConfig:
    """
    name:        watermark key and sync_runs.source
    raw_table:   raw event table the source is ingested into
    aggregation: "summary" (user_event_metrics) or "windowed" (cohort metrics)
    user_filter: None for every user, "cohort" to restrict to the windowed cohort
    """

    name: str
    raw_table: str
    aggregation: str = "summary"
    user_filter: Optional[str] = None
    event_names: Sequence[str] = ()


@dataclass
class SyncResult:
    run_id: str
    source: str
    state: SyncState = SyncState.IDLE
    mode: Optional[SyncMode] = None
    range_start: Optional[datetime] = None
    range_end: Optional[datetime] = None
    ingest: Optional[IngestResult] = None
    entities_aggregated: int = 0
    rows_aggregated: int = 0
    watermark: Optional[Watermark] = None
    error: Optional[str] = None
    transitions: List[SyncState] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == SyncState.DONE


class SyncOrchestrator:
    def __init__(
        self,
        con: duckdb.DuckDBPyConnection,
        settings: SyncSettings,
        logger: logging.Logger = None,
        clock: Callable[[], datetime] = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.con = con
        self.settings = settings
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock or utc_now
        self.sleep = sleep
        self.monotonic = monotonic
        self.watermarks = WatermarkStore(con, self.logger)

    # --- Helpers ------------------------------------------------------------------

    def _transition(self, result: SyncResult, state: SyncState):
        self.logger.info(f"[{result.source}] {result.state.value} -> {state.value}")
        result.state = state
        result.transitions.append(state)

    def _deadline_check(self, started: float, result: SyncResult) -> Callable[[], None]:
        def check():
            limit = self.settings.deadline_seconds
            if limit is None:
                return
            elapsed = self.monotonic() - started
            if elapsed > limit:
                raise DeadlineExceeded(
                    f"[{result.source}] deadline of {limit}s exceeded in {result.state.value} after {elapsed:.1f}s"
                )

        return check

    def _record_start(self, result: SyncResult):
        self.con.execute(
            """
            INSERT INTO sync_runs (run_id, source, status, started_at)
            VALUES (?, ?, 'in_progress', ?)
            """,
            [result.run_id, result.source, self.clock()],
        )

    def _record_finish(self, result: SyncResult):
        ingest = result.ingest or IngestResult()
        status = "completed" if result.succeeded else "failed"
        try:
            self.con.execute(
                """
                UPDATE sync_runs SET
                    mode = ?, status = ?, final_state = ?, range_start = ?, range_end = ?,
                    events_observed = ?, rows_inserted = ?, events_rejected = ?,
                    entities_aggregated = ?, error_message = ?, completed_at = ?
                WHERE run_id = ?
                """,
                [
                    result.mode.value if result.mode else None,
                    status,
                    result.state.value,
                    result.range_start,
                    result.range_end,
                    ingest.events_observed,
                    ingest.rows_inserted,
                    ingest.events_rejected,
                    result.entities_aggregated,
                    result.error,
                    self.clock(),
                    result.run_id,
                ],
            )
        except duckdb.Error as e:
            self.logger.error(f"[{result.source}] could not record run {result.run_id} as {status}: {e}")

    def _aggregate(self, source_config: SourceConfig, result: SyncResult, before_commit: Callable[[int], None]) -> int:
        if source_config.aggregation == "windowed":
            metrics = refresh_cohort_metrics(
                self.con, source_config.raw_table, self.logger, before_commit=before_commit
            )
            return metrics.cohort_size
        if source_config.aggregation == "summary":
            return IncrementalAggregator(self.con, logger=self.logger).aggregate_pending(
                source_config.raw_table,
                result.mode,
                result.range_start,
                result.range_end,
                before_commit=before_commit,
            )
        raise ValueError(f"Unknown aggregation {source_config.aggregation!r} for {source_config.name}")

    def _commit_watermark(
        self, source: str, previous: Optional[Watermark], ingest: IngestResult, events_delta: int
    ) -> Optional[Watermark]:
        if ingest.max_event_time is not None:
            return self.watermarks.set(source, ingest.max_event_time, events_delta)
        if previous is not None:
            # Nothing observed: keep the position, refresh updated_at
            return self.watermarks.set(source, previous.last_event_time, events_delta)
        self.logger.warning(f"[{source}] first sync observed no events; no watermark created")
        return None

    # --- Public -------------------------------------------------------------------

    def run(self, source_config: SourceConfig, event_source: EventSource) -> SyncResult:
        now = self.clock()
        result = SyncResult(
            run_id=f"{source_config.name}-{now:%Y%m%d%H%M%S}-{uuid.uuid4().hex[:8]}",
            source=source_config.name,
        )
        check_deadline = self._deadline_check(self.monotonic(), result)

        if self.settings.log_dir:
            log_path = os.path.join(self.settings.log_dir, f"sync_{source_config.name}_{now:%Y%m%d_%H%M%S}.log")
            source_log = attach_source_log(self.logger, log_path)
        else:
            source_log = nullcontext()

        with source_log:
            try:
                self._record_start(result)
                self._run_phases(source_config, event_source, result, check_deadline)
            except Exception as e:
                result.error = f"{type(e).__name__}: {e}"
                self.logger.error(
                    f"[{result.source}] sync failed in {result.state.value}: {result.error}", exc_info=True
                )
                self._transition(result, SyncState.FAILED)
            finally:
                self._record_finish(result)
                ingest = result.ingest or IngestResult()
                self.logger.info(
                    f"[{result.source}] run {result.run_id} finished state={result.state.value} "
                    f"mode={result.mode.value if result.mode else None} observed={ingest.events_observed} "
                    f"inserted={ingest.rows_inserted} rejected={ingest.events_rejected} "
                    f"aggregated={result.entities_aggregated} rows_aggregated={result.rows_aggregated}"
                )
        return result

    def _run_phases(self, source_config: SourceConfig, event_source: EventSource, result: SyncResult, check_deadline):
        source = source_config.name

        # --- Watermark and range ---
        self._transition(result, SyncState.FETCHING_WATERMARK)
        previous = self.watermarks.get(source)
        now = self.clock()
        if previous is None:
            self._transition(result, SyncState.FIRST_SYNC)
            result.mode = SyncMode.REPLACE
            result.range_start = now - timedelta(days=self.settings.lookback_days)
        else:
            self._transition(result, SyncState.INCREMENTAL)
            result.mode = SyncMode.ADD
            result.range_start = min(previous.last_event_time - timedelta(hours=self.settings.overlap_hours), now)
        result.range_end = now
        self.logger.info(
            f"[{source}] mode={result.mode.value} range=[{result.range_start}, {result.range_end}] "
            f"watermark={previous.last_event_time if previous else None}"
        )
        check_deadline()

        # --- Ingest ---
        self._transition(result, SyncState.INGESTING)
        user_ids = None
        if source_config.user_filter == "cohort":
            user_ids = cohort_user_ids(self.con)
            self.logger.info(f"[{source}] restricting fetch to {len(user_ids)} cohort users")
        dead_letter_path = None
        if self.settings.dead_letter_dir:
            dead_letter_path = os.path.join(self.settings.dead_letter_dir, f"{result.run_id}.jsonl")
        ingestor = RawEventIngestor(
            self.con,
            source_config.raw_table,
            write_batch_size=self.settings.write_batch_size,
            max_page_retries=self.settings.max_page_retries,
            retry_backoff_seconds=self.settings.retry_backoff_seconds,
            max_rate_limit_sleep_seconds=self.settings.max_rate_limit_sleep_seconds,
            rate_limit_delay_seconds=self.settings.rate_limit_delay_seconds,
            dead_letter_path=dead_letter_path,
            logger=self.logger,
            sleep=self.sleep,
        )
        result.ingest = ingestor.ingest(
            event_source,
            result.range_start,
            result.range_end,
            user_ids=user_ids,
            run_id=result.run_id,
            check_deadline=check_deadline,
        )
        check_deadline()

        # --- Aggregate and commit watermark ---
        # The watermark is written inside the aggregation transaction, with the
        # number of raw rows that transaction consumed.
        self._transition(result, SyncState.AGGREGATING)
        committed = {}

        def commit_watermark(rows_consumed: int):
            check_deadline()
            self._transition(result, SyncState.COMMITTING_WATERMARK)
            committed["watermark"] = self._commit_watermark(source, previous, result.ingest, rows_consumed)
            committed["rows_consumed"] = rows_consumed

        result.entities_aggregated = self._aggregate(source_config, result, commit_watermark)
        result.rows_aggregated = committed["rows_consumed"]
        result.watermark = committed["watermark"]
        self._transition(result, SyncState.DONE)
