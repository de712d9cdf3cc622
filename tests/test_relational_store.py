# tests/test_relational_store.py
from datetime import datetime

import duckdb
import pandas as pd
import pytest

import setup_database as db_setup
from relational_store import MergeStrategy, RelationalStore


@pytest.fixture()
def temp_duckdb(tmp_path):
    """Create a fresh test database."""
    db_path = tmp_path / "test_store.db"
    db_setup.setup_database(str(db_path))
    con = duckdb.connect(str(db_path), read_only=False)
    try:
        yield con
    finally:
        con.close()


def test_merge_strategies_in_one_statement(temp_duckdb):
    store = RelationalStore(temp_duckdb)
    strategy = {
        "total_copies": MergeStrategy.ADD,
        "linked_bank_account": MergeStrategy.BOOL_OR,
        "income": MergeStrategy.COALESCE,
        "first_event_time": MergeStrategy.LEAST,
        "last_event_time": MergeStrategy.GREATEST,
    }
    first = pd.DataFrame(
        {
            "user_id": ["u1", "u2"],
            "total_copies": [1, 5],
            "linked_bank_account": [True, False],
            "income": ["50k", None],
            "first_event_time": [datetime(2025, 1, 5), datetime(2025, 1, 5)],
            "last_event_time": [datetime(2025, 1, 5), datetime(2025, 1, 5)],
        }
    )
    second = pd.DataFrame(
        {
            "user_id": ["u1", "u3"],
            "total_copies": [2, 1],
            "linked_bank_account": [False, True],
            "income": [None, "10k"],
            "first_event_time": [datetime(2025, 1, 1), datetime(2025, 1, 2)],
            "last_event_time": [datetime(2025, 1, 2), datetime(2025, 1, 9)],
        }
    )
    store.upsert_merge("user_event_metrics", first, ["user_id"], strategy)
    store.upsert_merge("user_event_metrics", second, ["user_id"], strategy)

    rows = {
        r[0]: r[1:]
        for r in temp_duckdb.execute(
            """
            SELECT user_id, total_copies, linked_bank_account, income, first_event_time, last_event_time
            FROM user_event_metrics
            """
        ).fetchall()
    }
    assert rows["u1"] == (3, True, "50k", datetime(2025, 1, 1), datetime(2025, 1, 5))
    assert rows["u2"] == (5, False, None, datetime(2025, 1, 5), datetime(2025, 1, 5))
    assert rows["u3"] == (1, True, "10k", datetime(2025, 1, 2), datetime(2025, 1, 9))


def test_merge_strategy_for_unknown_column_rejected(temp_duckdb):
    df = pd.DataFrame({"user_id": ["u1"], "total_copies": [1]})
    with pytest.raises(ValueError):
        RelationalStore(temp_duckdb).upsert_merge(
            "user_event_metrics", df, ["user_id"], {"paywall_views": MergeStrategy.ADD}
        )


def test_empty_batches_are_no_ops(temp_duckdb):
    store = RelationalStore(temp_duckdb)
    empty = pd.DataFrame(columns=["user_id", "event_name", "event_time", "secondary_key"])
    assert store.upsert_ignore_duplicates("user_events_raw", empty, ("user_id", "event_name", "event_time", "secondary_key")) == 0
    store.upsert_merge("user_event_metrics", pd.DataFrame(columns=["user_id"]), ["user_id"], {})
    assert store.count("user_event_metrics") == 0


def test_transaction_rolls_back_on_error(temp_duckdb):
    store = RelationalStore(temp_duckdb)
    with pytest.raises(RuntimeError):
        with store.transaction() as con:
            con.execute("INSERT INTO user_window_boundaries (user_id) VALUES ('u1')")
            raise RuntimeError("boom")
    assert store.count("user_window_boundaries") == 0
