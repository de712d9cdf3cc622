import json
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

import duckdb
import pandas as pd

from clock import utc_now
from event_source import EventPage, EventSource, RawEvent, call_with_retry
from relational_store import RelationalStore
from setup_database import RAW_EVENT_TABLES

RAW_COLUMNS = [
    "user_id",
    "event_name",
    "event_time",
    "secondary_key",
    "properties",
    "sync_run_id",
    "ingested_at",
]


def append_dead_letters(records: List[Dict], dlq_path: str):
    if not records or not dlq_path:
        return
    dlq_dir = os.path.dirname(dlq_path)
    if dlq_dir:
        os.makedirs(dlq_dir, exist_ok=True)
    with open(dlq_path, "a") as dlq:
        for rec in records:
            dlq.write(json.dumps(rec, default=str) + "\n")


@dataclass
class IngestResult:
    events_observed: int = 0
    rows_inserted: int = 0
    events_rejected: int = 0
    pages_fetched: int = 0
    max_event_time: Optional[datetime] = None

    @property
    def duplicates_skipped(self) -> int:
        return self.events_observed - self.rows_inserted


class RawEventIngestor:
    """
    Pulls pages from an EventSource and appends them to a raw event table.

    Uniqueness is the table's job: every write goes through
    ``upsert_ignore_duplicates``, so re-ingesting an overlapping range only
    inserts rows whose natural key is new. Pages are fetched through
    ``call_with_retry``; a page that still fails after ``max_page_retries`` aborts the range
    (rows already written stay written).
    """

    def __init__(
        self,
        con: duckdb.DuckDBPyConnection,
        table: str,
        natural_key: Sequence[str] = None,
        write_batch_size: int = 1000,
        max_page_retries: int = 3,
        retry_backoff_seconds: float = 1.0,
        max_rate_limit_sleep_seconds: float = 60.0,
        rate_limit_delay_seconds: float = 0.0,
        dead_letter_path: str = None,
        logger: logging.Logger = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if write_batch_size < 1:
            raise ValueError(f"write_batch_size must be >= 1, got {write_batch_size}")
        self.table = table
        self.natural_key = tuple(natural_key or RAW_EVENT_TABLES[table])
        self.write_batch_size = write_batch_size
        self.max_page_retries = max_page_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self.max_rate_limit_sleep_seconds = max_rate_limit_sleep_seconds
        self.rate_limit_delay_seconds = rate_limit_delay_seconds
        self.dead_letter_path = dead_letter_path
        self.logger = logger or logging.getLogger(__name__)
        self.sleep = sleep
        self.store = RelationalStore(con, self.logger)

    # --- Fetching ---------------------------------------------------------------

    def _fetch_with_retry(self, source: EventSource, date_from, date_to, cursor, user_ids) -> EventPage:
        return call_with_retry(
            lambda: source.fetch_page(date_from, date_to, cursor=cursor, user_ids=user_ids),
            f"page cursor={cursor}",
            max_retries=self.max_page_retries,
            backoff_seconds=self.retry_backoff_seconds,
            max_rate_limit_sleep_seconds=self.max_rate_limit_sleep_seconds,
            sleep=self.sleep,
            log=self.logger,
        )

    # --- Writing ----------------------------------------------------------------

    def _to_frame(self, events: List[RawEvent], run_id: str) -> pd.DataFrame:
        ingested_at = utc_now()
        df = pd.DataFrame(
            {
                "user_id": [e.user_id for e in events],
                "event_name": [e.event_name for e in events],
                "event_time": pd.to_datetime([e.event_time for e in events]),
                "secondary_key": [e.secondary_key for e in events],
                "properties": [json.dumps(e.properties, default=str) for e in events],
            }
        )
        df["sync_run_id"] = run_id
        df["ingested_at"] = ingested_at
        return df[RAW_COLUMNS]

    def _flush(self, buffer: List[RawEvent], run_id: str) -> int:
        if not buffer:
            return 0
        inserted = self.store.upsert_ignore_duplicates(
            self.table, self._to_frame(buffer, run_id), self.natural_key, RAW_COLUMNS
        )
        self.logger.info(
            f"Wrote batch to {self.table}: rows={len(buffer)} inserted={inserted} "
            f"duplicates={len(buffer) - inserted}"
        )
        return inserted

    # --- Public -----------------------------------------------------------------

    def ingest(
        self,
        event_source: EventSource,
        date_from: datetime,
        date_to: datetime,
        user_ids: Optional[Sequence[str]] = None,
        run_id: str = None,
        check_deadline: Callable[[], None] = None,
    ) -> IngestResult:
        """
        Ingest every event the source yields for [date_from, date_to].

        ``check_deadline`` is called before each page fetch and may raise to
        stop the range.
        """
        result = IngestResult()
        buffer: List[RawEvent] = []
        cursor = None

        self.logger.info(
            f"Ingesting {event_source.name} -> {self.table} range=[{date_from}, {date_to}] "
            f"user_filter={'none' if user_ids is None else len(user_ids)}"
        )
        while True:
            if check_deadline:
                check_deadline()

            page = self._fetch_with_retry(event_source, date_from, date_to, cursor, user_ids)
            result.pages_fetched += 1
            result.events_observed += len(page.events)
            result.events_rejected += len(page.rejected)
            append_dead_letters(page.rejected, self.dead_letter_path)

            for event in page.events:
                if result.max_event_time is None or event.event_time > result.max_event_time:
                    result.max_event_time = event.event_time
            buffer.extend(page.events)

            while len(buffer) >= self.write_batch_size:
                batch, buffer = buffer[: self.write_batch_size], buffer[self.write_batch_size :]
                result.rows_inserted += self._flush(batch, run_id)

            if page.next_cursor is None:
                break
            cursor = page.next_cursor
            if self.rate_limit_delay_seconds > 0:
                self.sleep(self.rate_limit_delay_seconds)

        result.rows_inserted += self._flush(buffer, run_id)
        self.logger.info(
            f"Ingest done: pages={result.pages_fetched} observed={result.events_observed} "
            f"inserted={result.rows_inserted} duplicates={result.duplicates_skipped} "
            f"rejected={result.events_rejected} max_event_time={result.max_event_time}"
        )
        return result
