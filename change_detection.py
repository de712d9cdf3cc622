"""
Skip writes that wouldn't change anything.

Comparison rules for a tracked field:
- '' and None (and NaN/NaT coming back from a DataFrame) are the same "missing" value
- numbers compare by value: 1 == 1.0 == Decimal("1") == "1"
- booleans only equal booleans: True != 1
- everything else uses plain equality
"""
import logging
import math
import numbers
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, List, Mapping, Optional

import duckdb
import pandas as pd

IGNORED_FIELDS = ("updated_at",)


def _is_missing(value) -> bool:
    if value is None or value is pd.NaT or value is pd.NA:
        return True
    if isinstance(value, str):
        return value == ""
    if isinstance(value, float):
        return math.isnan(value)
    return False


def _is_number(value) -> bool:
    return isinstance(value, numbers.Number) and not isinstance(value, bool)


def _as_number(value) -> Optional[Decimal]:
    if _is_number(value):
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation:
            return None
    return None


def _is_bool(value) -> bool:
    return pd.api.types.is_bool(value)


def values_equal(a, b) -> bool:
    if _is_missing(a) or _is_missing(b):
        return _is_missing(a) and _is_missing(b)
    if _is_bool(a) or _is_bool(b):
        return _is_bool(a) and _is_bool(b) and bool(a) == bool(b)
    if _is_number(a) or _is_number(b):
        a_num, b_num = _as_number(a), _as_number(b)
        if a_num is not None and b_num is not None:
            return a_num == b_num
    return a == b


def has_changed(existing: Optional[Mapping], incoming: Mapping, fields: Iterable[str] = None) -> bool:
    """
    True when ``existing`` is absent or any tracked field differs.

    ``fields`` defaults to every key of ``incoming`` except bookkeeping
    columns such as updated_at.
    """
    if existing is None:
        return True
    if fields is None:
        fields = [f for f in incoming if f not in IGNORED_FIELDS]
    return any(not values_equal(existing.get(f), incoming.get(f)) for f in fields)


def filter_changed(
    con: duckdb.DuckDBPyConnection,
    table: str,
    rows: List[Dict],
    key: str = "user_id",
    fields: Iterable[str] = None,
    logger: logging.Logger = None,
) -> List[Dict]:
    """
    Return the subset of ``rows`` that is new or differs from what ``table`` holds.

    Existing rows are fetched in one query. If that query fails the filter
    fails open: every incoming row is returned and the write goes ahead.
    """
    logger = logger or logging.getLogger(__name__)
    if not rows:
        return []
    fields = list(fields) if fields is not None else None

    keys = pd.DataFrame({key: [r[key] for r in rows]}).drop_duplicates()
    try:
        con.register("_change_detection_keys", keys)
        try:
            existing_df = con.execute(
                f"SELECT t.* FROM {table} t JOIN _change_detection_keys k ON t.{key} = k.{key}"
            ).df()
        finally:
            con.unregister("_change_detection_keys")
    except duckdb.Error as e:
        logger.warning(f"Change detection lookup on {table} failed, writing all {len(rows)} rows: {e}")
        return list(rows)

    existing = {r[key]: r for r in existing_df.to_dict(orient="records")}
    changed = [r for r in rows if has_changed(existing.get(r[key]), r, fields)]
    logger.info(f"Change detection on {table}: incoming={len(rows)} changed={len(changed)}")
    return changed
