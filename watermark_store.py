import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import duckdb

from clock import utc_now


@dataclass(frozen=True)
class Watermark:
    source: str
    last_event_time: datetime
    total_events_synced: int
    updated_at: Optional[datetime] = None


class WatermarkStore:
    """
    Durable per-source high-watermark.

    ``set`` is a single upsert: the stored time only moves forward and the
    counter only grows. It must be called after the batch it describes is
    durably written; a store failure propagates so the caller fails the run.
    """

    def __init__(self, con: duckdb.DuckDBPyConnection, logger: logging.Logger = None):
        self.con = con
        self.logger = logger or logging.getLogger(__name__)

    def get(self, source: str) -> Optional[Watermark]:
        row = self.con.execute(
            """
            SELECT source, last_event_time, total_events_synced, updated_at
            FROM sync_watermarks
            WHERE source = ?
            """,
            [source],
        ).fetchone()
        if row is None:
            return None
        return Watermark(*row)

    def set(self, source: str, last_event_time: datetime, events_delta: int) -> Watermark:
        if events_delta < 0:
            raise ValueError(f"events_delta must be non-negative, got {events_delta}")
        if last_event_time is None:
            raise ValueError("last_event_time is required")

        now = utc_now()
        self.con.execute(
            """
            INSERT INTO sync_watermarks (source, last_event_time, total_events_synced, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (source) DO UPDATE SET
                last_event_time = GREATEST(last_event_time, EXCLUDED.last_event_time),
                total_events_synced = total_events_synced + EXCLUDED.total_events_synced,
                updated_at = EXCLUDED.updated_at
            """,
            [source, last_event_time, events_delta, now, now],
        )
        watermark = self.get(source)
        self.logger.info(
            f"Watermark[{source}] -> last_event_time={watermark.last_event_time}, "
            f"total_events_synced={watermark.total_events_synced} (+{events_delta})"
        )
        return watermark
