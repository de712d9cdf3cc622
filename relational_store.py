"""
Set-based write primitives over a DuckDB connection.

Both primitives issue exactly one INSERT statement per call, whatever the
batch size. Rows arrive either as a pandas DataFrame (registered as a
temporary relation for the duration of the statement) or as the name of a
relation that already lives in the database (a temp table or view).
"""
import logging
from contextlib import contextmanager
from enum import Enum
from typing import Dict, Sequence, Union

import duckdb
import pandas as pd

Rows = Union[pd.DataFrame, str]


class MergeStrategy(str, Enum):
    """How a conflicting row's column is combined with the stored value."""

    ADD = "add"
    REPLACE = "replace"
    COALESCE = "coalesce"
    BOOL_OR = "bool_or"
    LEAST = "least"
    GREATEST = "greatest"


# Bare column names refer to the stored row, EXCLUDED.* to the incoming one.
_MERGE_SQL = {
    MergeStrategy.ADD: "COALESCE({col}, 0) + COALESCE(EXCLUDED.{col}, 0)",
    MergeStrategy.REPLACE: "EXCLUDED.{col}",
    MergeStrategy.COALESCE: "COALESCE(EXCLUDED.{col}, {col})",
    MergeStrategy.BOOL_OR: "COALESCE({col}, FALSE) OR COALESCE(EXCLUDED.{col}, FALSE)",
    MergeStrategy.LEAST: "LEAST(COALESCE({col}, EXCLUDED.{col}), COALESCE(EXCLUDED.{col}, {col}))",
    MergeStrategy.GREATEST: "GREATEST(COALESCE({col}, EXCLUDED.{col}), COALESCE(EXCLUDED.{col}, {col}))",
}


class RelationalStore:
    def __init__(self, con: duckdb.DuckDBPyConnection, logger: logging.Logger = None):
        self.con = con
        self.logger = logger or logging.getLogger(__name__)

    @contextmanager
    def transaction(self):
        """BEGIN/COMMIT around the block, ROLLBACK and re-raise on any error."""
        self.con.begin()
        try:
            yield self.con
        except Exception:
            self.con.rollback()
            raise
        else:
            self.con.commit()

    @contextmanager
    def _relation(self, rows: Rows, alias: str):
        if isinstance(rows, str):
            yield rows
            return
        self.con.register(alias, rows)
        try:
            yield alias
        finally:
            self.con.unregister(alias)

    def count(self, table: str) -> int:
        return self.con.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def upsert_ignore_duplicates(
        self, table: str, rows: Rows, natural_key: Sequence[str], columns: Sequence[str] = None
    ) -> int:
        """
        Insert rows, silently skipping any whose natural key already exists.

        Duplicates inside the batch are collapsed by the same statement
        (DISTINCT ON the natural key); duplicates against stored rows are
        rejected by the table's UNIQUE constraint via ON CONFLICT DO NOTHING.

        Returns:
            Number of rows actually inserted.
        """
        if isinstance(rows, pd.DataFrame):
            if rows.empty:
                return 0
            columns = columns or list(rows.columns)
        if not columns:
            raise ValueError("columns are required when rows is a relation name")

        col_list = ", ".join(columns)
        key_list = ", ".join(natural_key)

        before = self.count(table)
        with self._relation(rows, "_upsert_ignore_rows") as rel:
            self.con.execute(
                f"""
                INSERT INTO {table} ({col_list})
                SELECT DISTINCT ON ({key_list}) {col_list}
                FROM {rel}
                ON CONFLICT ({key_list}) DO NOTHING
                """
            )
        inserted = self.count(table) - before
        self.logger.debug(f"upsert_ignore_duplicates {table}: inserted={inserted}")
        return inserted

    def upsert_merge(
        self,
        table: str,
        rows: Rows,
        conflict_columns: Sequence[str],
        merge_strategy: Dict[str, MergeStrategy],
        columns: Sequence[str] = None,
    ) -> None:
        """
        Insert-or-update in one statement.

        Columns without an entry in ``merge_strategy`` are replaced by the
        incoming value. Incoming rows must be unique on ``conflict_columns``.
        """
        if isinstance(rows, pd.DataFrame):
            if rows.empty:
                return
            columns = columns or list(rows.columns)
        if not columns:
            raise ValueError("columns are required when rows is a relation name")

        unknown = set(merge_strategy) - set(columns)
        if unknown:
            raise ValueError(f"merge strategy names columns not in the batch: {sorted(unknown)}")

        col_list = ", ".join(columns)
        set_clauses = [
            f"{col} = " + _MERGE_SQL[MergeStrategy(merge_strategy.get(col, MergeStrategy.REPLACE))].format(col=col)
            for col in columns
            if col not in conflict_columns
        ]

        with self._relation(rows, "_upsert_merge_rows") as rel:
            sql = f"""
                INSERT INTO {table} ({col_list})
                SELECT {col_list} FROM {rel}
                ON CONFLICT ({", ".join(conflict_columns)})
            """
            if set_clauses:
                sql += " DO UPDATE SET " + ",\n    ".join(set_clauses)
            else:
                sql += " DO NOTHING"
            self.con.execute(sql)
