# tests/test_windowed_metrics.py
"""
Windowed distinct counts between KYC approval and first copy:
start inclusive, end exclusive, incomplete windows excluded from the cohort.
"""
import json
import math
from datetime import datetime, timedelta

import duckdb
import pandas as pd
import pytest

import setup_database as db_setup
from relational_store import RelationalStore
from windowed_metrics import (
    CohortMetrics,
    cohort_user_ids,
    compute_cohort_metrics,
    per_user_distinct_counts,
    refresh_cohort_metrics,
    refresh_window_boundaries,
    store_cohort_metrics,
    top_viewed_in_window,
    upsert_window_boundaries,
)

T0 = datetime(2025, 5, 1, 10, 0, 0)


@pytest.fixture()
def temp_duckdb(tmp_path):
    """Create a fresh test database."""
    db_path = tmp_path / "test_windows.db"
    db_setup.setup_database(str(db_path))
    con = duckdb.connect(str(db_path), read_only=False)
    try:
        yield con
    finally:
        con.close()


def _views(con, rows, event_name="Viewed Portfolio Details"):
    """rows: (user_id, seconds_after_T0, ticker)"""
    df = pd.DataFrame(
        {
            "user_id": [r[0] for r in rows],
            "event_name": [event_name] * len(rows),
            "event_time": [T0 + timedelta(seconds=r[1]) for r in rows],
            "secondary_key": [r[2] for r in rows],
            "properties": [json.dumps({"portfolioTicker": r[2]}) for r in rows],
        }
    )
    RelationalStore(con).upsert_ignore_duplicates(
        "portfolio_sequences_raw", df, db_setup.RAW_EVENT_TABLES["portfolio_sequences_raw"]
    )


def _windows(con, rows):
    """rows: (user_id, start_offset_seconds | None, end_offset_seconds | None)"""
    upsert_window_boundaries(
        con,
        pd.DataFrame(
            {
                "user_id": [r[0] for r in rows],
                "window_start": [T0 + timedelta(seconds=r[1]) if r[1] is not None else None for r in rows],
                "window_end": [T0 + timedelta(seconds=r[2]) if r[2] is not None else None for r in rows],
            }
        ),
    )


def test_end_exclusive_start_inclusive(temp_duckdb):
    # window [10:00:00, 10:05:00)
    _windows(temp_duckdb, [("u1", 0, 300)])
    _views(temp_duckdb, [("u1", 0, "AT_START"), ("u1", 150, "MIDDLE"), ("u1", 300, "AT_END")])

    counts = per_user_distinct_counts(temp_duckdb)
    assert counts.set_index("user_id").loc["u1", "distinct_count"] == 2


def test_before_window_not_counted(temp_duckdb):
    _windows(temp_duckdb, [("u1", 60, 300)])
    _views(temp_duckdb, [("u1", 59, "EARLY"), ("u1", 61, "IN")])
    assert compute_cohort_metrics(temp_duckdb).mean == 1.0


def test_distinct_not_total(temp_duckdb):
    _windows(temp_duckdb, [("u1", 0, 600)])
    _views(temp_duckdb, [("u1", 10, "AAPL"), ("u1", 20, "AAPL"), ("u1", 30, "TSLA")])
    metrics = compute_cohort_metrics(temp_duckdb)
    assert metrics.mean == 2.0
    assert metrics.cohort_size == 1


def test_incomplete_or_inverted_windows_are_excluded(temp_duckdb):
    _windows(
        temp_duckdb,
        [
            ("only_start", 0, None),
            ("only_end", None, 300),
            ("inverted", 300, 0),
            ("ok", 0, 300),
        ],
    )
    _views(temp_duckdb, [("only_start", s, f"T{s}") for s in range(1, 50)])

    assert cohort_user_ids(temp_duckdb) == ["ok"]
    metrics = compute_cohort_metrics(temp_duckdb)
    assert metrics.cohort_size == 1
    assert metrics.mean == 0.0


def test_zero_event_users_count_and_median_interpolates(temp_duckdb):
    _windows(temp_duckdb, [("a", 0, 1000), ("b", 0, 1000), ("c", 0, 1000), ("d", 0, 1000)])
    _views(
        temp_duckdb,
        [("b", 1, "X")]
        + [("c", 1, "X"), ("c", 2, "Y")]
        + [("d", i, f"T{i}") for i in range(1, 6)],
    )

    metrics = compute_cohort_metrics(temp_duckdb)
    # per-user counts 0, 1, 2, 5
    assert metrics.cohort_size == 4
    assert metrics.mean == pytest.approx(2.0)
    assert metrics.median == pytest.approx(1.5)
    assert metrics.is_valid


def test_other_event_names_ignored(temp_duckdb):
    _windows(temp_duckdb, [("u1", 0, 300)])
    _views(temp_duckdb, [("u1", 10, "X")], event_name="Viewed Creator Profile")
    assert compute_cohort_metrics(temp_duckdb).mean == 0.0


def test_empty_cohort_is_nan_and_invalid(temp_duckdb):
    metrics = compute_cohort_metrics(temp_duckdb)
    assert metrics.cohort_size == 0
    assert math.isnan(metrics.mean)
    assert math.isnan(metrics.median)
    assert not metrics.is_valid


def test_refresh_boundaries_keeps_earliest_times(temp_duckdb):
    def raw(rows):
        df = pd.DataFrame(
            {
                "user_id": [r[0] for r in rows],
                "event_name": [r[1] for r in rows],
                "event_time": [T0 + timedelta(hours=r[2]) for r in rows],
                "secondary_key": [""] * len(rows),
                "properties": ["{}"] * len(rows),
            }
        )
        RelationalStore(temp_duckdb).upsert_ignore_duplicates(
            "user_events_raw", df, db_setup.RAW_EVENT_TABLES["user_events_raw"]
        )

    raw([("u1", "Approved KYC", 1), ("u1", "DubAutoCopyInitiated", 5), ("u2", "Approved KYC", 2)])
    assert refresh_window_boundaries(temp_duckdb) == 2

    raw([("u1", "DubAutoCopyInitiated", 9), ("u2", "DubAutoCopyInitiated", 3)])
    refresh_window_boundaries(temp_duckdb)

    rows = dict(
        (r[0], (r[1], r[2]))
        for r in temp_duckdb.execute(
            "SELECT user_id, window_start, window_end FROM user_window_boundaries"
        ).fetchall()
    )
    assert rows["u1"] == (T0 + timedelta(hours=1), T0 + timedelta(hours=5))
    assert rows["u2"] == (T0 + timedelta(hours=2), T0 + timedelta(hours=3))
    assert cohort_user_ids(temp_duckdb) == ["u1", "u2"]


def test_top_viewed_in_window_ranks_by_share_of_cohort(temp_duckdb):
    _windows(temp_duckdb, [("a", 0, 100), ("b", 0, 100), ("c", 0, 100), ("d", 0, 100)])
    _views(
        temp_duckdb,
        [("a", 1, "AAPL"), ("b", 1, "AAPL"), ("c", 1, "AAPL"), ("a", 2, "TSLA"), ("b", 200, "TSLA")],
    )

    top = top_viewed_in_window(temp_duckdb, limit=5)
    assert list(top["portfolio_ticker"]) == ["AAPL", "TSLA"]
    assert list(top["converter_count"]) == [3, 1]
    assert list(top["pct_of_converters"]) == [75.0, 25.0]


def test_store_cohort_metrics_single_row_and_nan_as_null(temp_duckdb):
    store_cohort_metrics(temp_duckdb, CohortMetrics(mean=2.5, median=2.0, cohort_size=10))
    store_cohort_metrics(temp_duckdb, CohortMetrics(mean=math.nan, median=math.nan, cohort_size=0))

    rows = temp_duckdb.execute(
        "SELECT id, mean_unique_portfolios, median_unique_portfolios, cohort_size FROM event_sequence_metrics"
    ).fetchall()
    assert rows == [(1, None, None, 0)]


def test_refresh_cohort_metrics_stamps_pending_rows(temp_duckdb):
    _windows(temp_duckdb, [("u1", 0, 300)])
    _views(temp_duckdb, [("u1", 10, "X"), ("u1", 20, "Y")])

    metrics = refresh_cohort_metrics(temp_duckdb)

    assert metrics.mean == 2.0
    pending = temp_duckdb.execute(
        "SELECT COUNT(*) FROM portfolio_sequences_raw WHERE aggregated_at IS NULL"
    ).fetchone()[0]
    assert pending == 0
    stored = temp_duckdb.execute("SELECT cohort_size FROM event_sequence_metrics").fetchone()[0]
    assert stored == 1


def test_refresh_cohort_metrics_rolls_back_when_hook_fails(temp_duckdb):
    _windows(temp_duckdb, [("u1", 0, 300)])
    _views(temp_duckdb, [("u1", 10, "X"), ("u1", 20, "Y")])
    seen = []

    def hook(stamped):
        seen.append(stamped)
        raise RuntimeError("watermark write failed")

    with pytest.raises(RuntimeError):
        refresh_cohort_metrics(temp_duckdb, before_commit=hook)

    assert seen == [2]
    pending = temp_duckdb.execute(
        "SELECT COUNT(*) FROM portfolio_sequences_raw WHERE aggregated_at IS NULL"
    ).fetchone()[0]
    assert pending == 2
    assert temp_duckdb.execute("SELECT COUNT(*) FROM event_sequence_metrics").fetchone()[0] == 0
