import logging
from typing import Dict, Iterable, Optional, Tuple

import duckdb
import pandas as pd

from change_detection import filter_changed
from clock import utc_now
from relational_store import MergeStrategy, RelationalStore

PROPERTIES_TABLE = "user_properties"

# Mixpanel profile property -> user_properties column
PROFILE_PROPERTY_MAP = {
    "income": "income",
    "netWorth": "net_worth",
    "investingActivity": "investing_activity",
    "investingExperienceYears": "investing_experience_years",
    "investingObjective": "investing_objective",
    "investmentType": "investment_type",
    "acquisitionSurvey": "acquisition_survey",
    "hasLinkedBank": "linked_bank_account",
    "availableCopyCredits": "available_copy_credits",
    "buyingPower": "buying_power",
    "totalDeposits": "total_deposits",
    "totalDepositCount": "total_deposit_count",
    "totalWithdrawals": "total_withdrawals",
    "totalWithdrawalCount": "total_withdrawal_count",
    "activeCreatedPortfolios": "active_created_portfolios",
    "lifetimeCreatedPortfolios": "lifetime_created_portfolios",
}

NUMERIC_COLUMNS = {
    "available_copy_credits",
    "buying_power",
    "total_deposits",
    "total_deposit_count",
    "total_withdrawals",
    "total_withdrawal_count",
    "active_created_portfolios",
    "lifetime_created_portfolios",
}
BOOLEAN_COLUMNS = {"linked_bank_account"}

PROPERTY_COLUMNS = list(PROFILE_PROPERTY_MAP.values())

# Placeholder strings Mixpanel hands back for unset properties
INVALID_VALUES = {"undefined", "null", "n/a", "not set"}


def _is_invalid(value) -> bool:
    return value is None or (isinstance(value, str) and value.strip().lower() in INVALID_VALUES | {""})


def _to_float(value) -> float:
    if isinstance(value, bool):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def normalize_profile(record: Dict) -> Optional[Dict]:
    """
    Map one Engage API record to a user_properties row.

    Only properties the profile actually carries end up in the row, so a
    sparse profile never blanks out values stored by an earlier sync.
    Numeric placeholders become 0, text/boolean placeholders are dropped.
    """
    user_id = record.get("$distinct_id")
    if not user_id:
        return None
    props = record.get("$properties") or {}

    row = {"user_id": str(user_id)}
    for prop, column in PROFILE_PROPERTY_MAP.items():
        if prop not in props:
            continue
        value = props[prop]
        if column in NUMERIC_COLUMNS:
            row[column] = 0.0 if _is_invalid(value) else _to_float(value)
        elif column in BOOLEAN_COLUMNS:
            if not _is_invalid(value):
                row[column] = value is True or str(value).strip().lower() == "true"
        elif not _is_invalid(value):
            row[column] = str(value)
    return row


def sync_user_properties(
    con: duckdb.DuckDBPyConnection,
    profiles: Iterable[Dict],
    logger: logging.Logger = None,
) -> Tuple[int, int]:
    """
    Write changed profiles to ``user_properties``.

    Returns:
        (profiles_seen, rows_written)
    """
    logger = logger or logging.getLogger(__name__)
    seen = 0
    by_user: Dict[str, Dict] = {}
    for record in profiles:
        seen += 1
        row = normalize_profile(record)
        if row is None:
            continue
        by_user.setdefault(row["user_id"], {}).update(row)

    changed = filter_changed(con, PROPERTIES_TABLE, list(by_user.values()), key="user_id", logger=logger)
    if not changed:
        logger.info(f"User properties: seen={seen} unchanged, nothing to write")
        return seen, 0

    df = pd.DataFrame(changed, columns=["user_id"] + PROPERTY_COLUMNS).astype(object)
    df = df.where(pd.notna(df), None)
    df["updated_at"] = utc_now()
    RelationalStore(con, logger).upsert_merge(
        PROPERTIES_TABLE,
        df,
        ["user_id"],
        {col: MergeStrategy.COALESCE for col in PROPERTY_COLUMNS},
    )
    logger.info(f"User properties: seen={seen} written={len(df)}")
    return seen, len(df)
