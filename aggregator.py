"""
Per-user summary maintenance for ``user_event_metrics``.

Two update semantics:

    ADD      stored counter + delta, where the delta only covers raw rows that
             no aggregation has consumed yet (aggregated_at IS NULL)
    REPLACE  stored counter = total recomputed over the lookback window

Non-counter columns merge the same way in both modes: latest non-null value
wins for profile attributes, "ever true" for flags, LEAST/GREATEST for the
first/last event times.
"""
import logging
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Union

import duckdb
import pandas as pd

from clock import utc_now
from relational_store import MergeStrategy, RelationalStore

SUMMARY_TABLE = "user_event_metrics"

# Mixpanel event name -> counter column
EVENT_COUNTERS = {
    "DubAutoCopyInitiated": "total_copies",
    "Viewed Portfolio Details": "total_pdp_views",
    "Viewed Creator Profile": "total_creator_profile_views",
    "AchTransferInitiated": "total_ach_transfers",
    "Viewed Creator Paywall": "paywall_views",
    "SubscriptionCreated": "total_subscriptions",
    "$ae_session": "app_sessions",
    "Viewed Discover Tab": "discover_tab_views",
    "Viewed Stripe Modal": "stripe_modal_views",
    "Tapped Creator Card": "creator_card_taps",
    "Tapped Portfolio Card": "portfolio_card_taps",
}

# Mixpanel event name -> flag column that stays true once set
EVENT_FLAGS = {
    "BankAccountLinked": "linked_bank_account",
}

# Event property -> attribute column (latest non-null value wins)
EVENT_ATTRIBUTES = {
    "income": "income",
    "netWorth": "net_worth",
    "investingObjective": "investing_objective",
    "investmentType": "investment_type",
}

COUNTER_COLUMNS = list(EVENT_COUNTERS.values()) + ["events_processed"]
SUMMARY_COLUMNS = (
    ["user_id"]
    + COUNTER_COLUMNS
    + list(EVENT_FLAGS.values())
    + list(EVENT_ATTRIBUTES.values())
    + ["first_event_time", "last_event_time", "updated_at"]
)


class SyncMode(str, Enum):
    ADD = "ADD"
    REPLACE = "REPLACE"


def merge_strategy_for(mode: SyncMode) -> Dict[str, MergeStrategy]:
    counter = MergeStrategy.ADD if SyncMode(mode) == SyncMode.ADD else MergeStrategy.REPLACE
    strategy = {col: counter for col in COUNTER_COLUMNS}
    strategy.update({col: MergeStrategy.BOOL_OR for col in EVENT_FLAGS.values()})
    strategy.update({col: MergeStrategy.COALESCE for col in EVENT_ATTRIBUTES.values()})
    strategy["first_event_time"] = MergeStrategy.LEAST
    strategy["last_event_time"] = MergeStrategy.GREATEST
    strategy["updated_at"] = MergeStrategy.REPLACE
    return strategy


def _literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _timestamp_literal(value: datetime) -> str:
    return f"TIMESTAMP '{value:%Y-%m-%d %H:%M:%S.%f}'"


def _delta_select_sql(raw_table: str, where: str, updated_at: datetime) -> str:
    """One row per user summarizing the raw rows matched by ``where``."""
    counters = [
        f"COUNT(*) FILTER (WHERE event_name = {_literal(name)}) AS {col}"
        for name, col in EVENT_COUNTERS.items()
    ]
    flags = [f"BOOL_OR(event_name = {_literal(name)}) AS {col}" for name, col in EVENT_FLAGS.items()]
    attributes = []
    for prop, col in EVENT_ATTRIBUTES.items():
        value = f"NULLIF(json_extract_string(properties, {_literal('$.' + prop)}), '')"
        attributes.append(f"arg_max({value}, event_time) FILTER (WHERE {value} IS NOT NULL) AS {col}")

    select_list = ",\n        ".join(
        ["user_id"]
        + counters
        + ["COUNT(*) AS events_processed"]
        + flags
        + attributes
        + [
            "MIN(event_time) AS first_event_time",
            "MAX(event_time) AS last_event_time",
            f"{_timestamp_literal(updated_at)} AS updated_at",
        ]
    )
    return f"""
    SELECT
        {select_list}
    FROM {raw_table}
    WHERE {where}
    GROUP BY user_id
    """


class IncrementalAggregator:
    def __init__(self, con: duckdb.DuckDBPyConnection, table: str = SUMMARY_TABLE, logger: logging.Logger = None):
        self.con = con
        self.table = table
        self.logger = logger or logging.getLogger(__name__)
        self.store = RelationalStore(con, self.logger)

    def apply(self, deltas: Union[pd.DataFrame, str], mode: SyncMode, columns: List[str] = None) -> None:
        """
        Merge a per-user delta batch into the summary table in one statement.

        ``deltas`` is a DataFrame or the name of a relation; it must hold at
        most one row per user_id. Users not yet in the table are inserted.
        """
        if isinstance(deltas, pd.DataFrame):
            if deltas["user_id"].duplicated().any():
                raise ValueError("delta batch has more than one row per user_id")
            columns = columns or list(deltas.columns)
        columns = columns or SUMMARY_COLUMNS
        strategy = {col: how for col, how in merge_strategy_for(mode).items() if col in columns}
        self.store.upsert_merge(self.table, deltas, ["user_id"], strategy, columns)

    def aggregate_pending(
        self,
        raw_table: str,
        mode: SyncMode,
        window_start: datetime = None,
        window_end: datetime = None,
        before_commit: Callable[[int], None] = None,
    ) -> int:
        """
        Fold raw rows into the summary table and stamp them as aggregated.

        ADD reads only unaggregated rows. REPLACE recomputes totals over
        [window_start, window_end]. The summary upsert and the stamp commit
        together, so a failed run leaves its rows pending for the next one.

        ``before_commit`` is called inside the transaction with the number of
        raw rows stamped; if it raises, nothing is committed.

        Returns:
            Number of users whose summary row was written.
        """
        mode = SyncMode(mode)
        if mode == SyncMode.REPLACE:
            if window_start is None or window_end is None:
                raise ValueError("REPLACE aggregation needs a window")
            where = (
                f"event_time BETWEEN {_timestamp_literal(window_start)} AND {_timestamp_literal(window_end)}"
            )
        else:
            where = "aggregated_at IS NULL"

        now = utc_now()
        with self.store.transaction():
            self.con.execute(
                "CREATE OR REPLACE TEMP TABLE _user_metric_deltas AS " + _delta_select_sql(raw_table, where, now)
            )
            entities = self.con.execute("SELECT COUNT(*) FROM _user_metric_deltas").fetchone()[0]
            self.apply("_user_metric_deltas", mode, SUMMARY_COLUMNS)
            stamped = self.con.execute(
                f"UPDATE {raw_table} SET aggregated_at = ? WHERE aggregated_at IS NULL", [now]
            ).fetchone()[0]
            self.con.execute("DROP TABLE IF EXISTS _user_metric_deltas")
            if before_commit is not None:
                before_commit(stamped)

        self.logger.info(
            f"Aggregated {raw_table} -> {self.table} mode={mode.value}: users={entities} rows_stamped={stamped}"
        )
        return entities
