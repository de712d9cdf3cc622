"""
Windowed event-sequence metrics: how many distinct portfolios a user viewed
between KYC approval (inclusive) and their first copy (exclusive).

Cohort = users in ``user_window_boundaries`` with both timestamps and
window_start <= window_end. Everyone else is left out rather than raising.
"""
import logging
import math
from dataclasses import dataclass
from typing import Callable, List

import duckdb
import pandas as pd

from clock import utc_now
from relational_store import MergeStrategy, RelationalStore

KYC_APPROVED_EVENT = "Approved KYC"
FIRST_COPY_EVENT = "DubAutoCopyInitiated"
PORTFOLIO_VIEW_EVENT = "Viewed Portfolio Details"

BOUNDARY_TABLE = "user_window_boundaries"
COHORT_METRICS_TABLE = "event_sequence_metrics"

_COHORT_CTE = f"""
    cohort AS (
        SELECT user_id, window_start, window_end
        FROM {BOUNDARY_TABLE}
        WHERE window_start IS NOT NULL
          AND window_end IS NOT NULL
          AND window_start <= window_end
    )
"""


@dataclass(frozen=True)
class CohortMetrics:
    mean: float
    median: float
    cohort_size: int

    @property
    def is_valid(self) -> bool:
        return self.cohort_size > 0


# --- Window boundaries -----------------------------------------------------------


def refresh_window_boundaries(
    con: duckdb.DuckDBPyConnection,
    raw_table: str = "user_events_raw",
    start_event: str = KYC_APPROVED_EVENT,
    end_event: str = FIRST_COPY_EVENT,
    logger: logging.Logger = None,
) -> int:
    """Derive each user's first start/end event times from raw events; earliest value wins."""
    logger = logger or logging.getLogger(__name__)
    rows = con.execute(
        f"""
        SELECT
            user_id,
            MIN(event_time) FILTER (WHERE event_name = ?) AS window_start,
            MIN(event_time) FILTER (WHERE event_name = ?) AS window_end
        FROM {raw_table}
        WHERE event_name IN (?, ?)
        GROUP BY user_id
        """,
        [start_event, end_event, start_event, end_event],
    ).df()
    if rows.empty:
        logger.info(f"No {start_event!r}/{end_event!r} events in {raw_table}; boundaries unchanged")
        return 0
    rows["updated_at"] = utc_now()

    RelationalStore(con, logger).upsert_merge(
        BOUNDARY_TABLE,
        rows,
        ["user_id"],
        {"window_start": MergeStrategy.LEAST, "window_end": MergeStrategy.LEAST},
    )
    logger.info(f"Refreshed window boundaries for {len(rows)} users from {raw_table}")
    return len(rows)


def upsert_window_boundaries(con: duckdb.DuckDBPyConnection, rows: pd.DataFrame, logger: logging.Logger = None) -> int:
    """Bulk upsert boundaries from an upstream feed (user_id, window_start, window_end)."""
    logger = logger or logging.getLogger(__name__)
    if rows.empty:
        return 0
    df = rows[["user_id", "window_start", "window_end"]].drop_duplicates(subset=["user_id"], keep="last").copy()
    df["window_start"] = pd.to_datetime(df["window_start"])
    df["window_end"] = pd.to_datetime(df["window_end"])
    df["updated_at"] = utc_now()
    RelationalStore(con, logger).upsert_merge(
        BOUNDARY_TABLE,
        df,
        ["user_id"],
        {"window_start": MergeStrategy.COALESCE, "window_end": MergeStrategy.COALESCE},
    )
    logger.info(f"Upserted window boundaries for {len(df)} users")
    return len(df)


def cohort_user_ids(con: duckdb.DuckDBPyConnection) -> List[str]:
    rows = con.execute(f"WITH {_COHORT_CTE} SELECT user_id FROM cohort ORDER BY user_id").fetchall()
    return [r[0] for r in rows]


# --- Metrics ---------------------------------------------------------------------


def per_user_distinct_counts(
    con: duckdb.DuckDBPyConnection,
    raw_table: str = "portfolio_sequences_raw",
    event_name: str = PORTFOLIO_VIEW_EVENT,
) -> pd.DataFrame:
    """Distinct secondary keys per cohort user inside [window_start, window_end)."""
    return con.execute(
        f"""
        WITH {_COHORT_CTE}
        SELECT c.user_id, COUNT(DISTINCT e.secondary_key) AS distinct_count
        FROM cohort c
        LEFT JOIN {raw_table} e
          ON e.user_id = c.user_id
         AND e.event_name = ?
         AND e.event_time >= c.window_start
         AND e.event_time < c.window_end
        GROUP BY c.user_id
        ORDER BY c.user_id
        """,
        [event_name],
    ).df()


def compute_cohort_metrics(
    con: duckdb.DuckDBPyConnection,
    raw_table: str = "portfolio_sequences_raw",
    event_name: str = PORTFOLIO_VIEW_EVENT,
) -> CohortMetrics:
    """
    Mean and median (linear interpolation) of the per-user distinct counts.

    Users with no events in their window count as 0. An empty cohort returns
    NaN for both statistics and cohort_size 0.
    """
    mean, median, cohort_size = con.execute(
        f"""
        WITH {_COHORT_CTE},
        per_user AS (
            SELECT c.user_id, COUNT(DISTINCT e.secondary_key) AS n
            FROM cohort c
            LEFT JOIN {raw_table} e
              ON e.user_id = c.user_id
             AND e.event_name = ?
             AND e.event_time >= c.window_start
             AND e.event_time < c.window_end
            GROUP BY c.user_id
        )
        SELECT AVG(n), quantile_cont(n, 0.5), COUNT(*)
        FROM per_user
        """,
        [event_name],
    ).fetchone()

    if not cohort_size:
        return CohortMetrics(mean=math.nan, median=math.nan, cohort_size=0)
    return CohortMetrics(mean=float(mean), median=float(median), cohort_size=int(cohort_size))


def top_viewed_in_window(
    con: duckdb.DuckDBPyConnection,
    limit: int = 10,
    raw_table: str = "portfolio_sequences_raw",
    event_name: str = PORTFOLIO_VIEW_EVENT,
) -> pd.DataFrame:
    """Most viewed secondary keys inside the window, ranked by share of the cohort."""
    return con.execute(
        f"""
        WITH {_COHORT_CTE},
        cohort_size AS (SELECT COUNT(*) AS n FROM cohort),
        windowed AS (
            SELECT e.user_id, e.secondary_key
            FROM {raw_table} e
            JOIN cohort c ON e.user_id = c.user_id
            WHERE e.event_name = ?
              AND e.event_time >= c.window_start
              AND e.event_time < c.window_end
        )
        SELECT
            w.secondary_key AS portfolio_ticker,
            COUNT(DISTINCT w.user_id) AS converter_count,
            ROUND(COUNT(DISTINCT w.user_id) * 100.0 / ANY_VALUE(s.n), 2) AS pct_of_converters
        FROM windowed w, cohort_size s
        GROUP BY w.secondary_key
        ORDER BY pct_of_converters DESC, converter_count DESC, portfolio_ticker
        LIMIT ?
        """,
        [event_name, limit],
    ).df()


def store_cohort_metrics(con: duckdb.DuckDBPyConnection, metrics: CohortMetrics):
    """Persist to the single-row ``event_sequence_metrics`` table (NaN stored as NULL)."""
    mean = None if math.isnan(metrics.mean) else metrics.mean
    median = None if math.isnan(metrics.median) else metrics.median
    con.execute(
        f"""
        INSERT INTO {COHORT_METRICS_TABLE} (id, mean_unique_portfolios, median_unique_portfolios, cohort_size, calculated_at)
        VALUES (1, ?, ?, ?, ?)
        ON CONFLICT (id) DO UPDATE SET
            mean_unique_portfolios = EXCLUDED.mean_unique_portfolios,
            median_unique_portfolios = EXCLUDED.median_unique_portfolios,
            cohort_size = EXCLUDED.cohort_size,
            calculated_at = EXCLUDED.calculated_at
        """,
        [mean, median, metrics.cohort_size, utc_now()],
    )


def refresh_cohort_metrics(
    con: duckdb.DuckDBPyConnection,
    raw_table: str = "portfolio_sequences_raw",
    logger: logging.Logger = None,
    before_commit: Callable[[int], None] = None,
) -> CohortMetrics:
    """
    Recompute, persist and stamp pending raw rows in one transaction.

    ``before_commit`` gets the number of raw rows stamped and runs before the
    commit; an exception from it rolls everything back.
    """
    logger = logger or logging.getLogger(__name__)
    store = RelationalStore(con, logger)
    with store.transaction():
        metrics = compute_cohort_metrics(con, raw_table)
        store_cohort_metrics(con, metrics)
        stamped = con.execute(
            f"UPDATE {raw_table} SET aggregated_at = ? WHERE aggregated_at IS NULL", [utc_now()]
        ).fetchone()[0]
        if before_commit is not None:
            before_commit(stamped)
    if metrics.is_valid:
        logger.info(
            f"Cohort metrics: size={metrics.cohort_size} mean={metrics.mean:.2f} median={metrics.median:.2f} "
            f"rows_stamped={stamped}"
        )
    else:
        logger.warning(f"Cohort is empty; stored NULL mean/median (rows_stamped={stamped})")
    return metrics
