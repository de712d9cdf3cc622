import logging
import time

import duckdb

# --- Configuration ---
DB_FILE = "dub_analysis.db"

# Natural keys are enforced by the storage layer, never recomputed in Python.
RAW_EVENT_TABLES = {
    # Mixed event types, so the event name is part of the key
    "user_events_raw": ("user_id", "event_name", "event_time", "secondary_key"),
    # Only "Viewed Portfolio Details"; secondary_key is the portfolio ticker
    "portfolio_sequences_raw": ("user_id", "event_time", "secondary_key"),
}


def connect_database(db_file: str = None, logger: logging.Logger = None, attempts: int = 3):
    """
    Open a DuckDB connection, retrying only transient file lock / permission errors.

    Any other failure (corruption, catalog errors, bad path) is raised immediately.
    """
    logger = logger or logging.getLogger(__name__)
    db_file = db_file or DB_FILE
    last_err = None

    for attempt in range(attempts):
        try:
            return duckdb.connect(database=db_file, read_only=False)
        except (IOError, OSError) as e:
            error_msg = str(e).lower()
            if "lock" not in error_msg and "permission" not in error_msg:
                logger.error(f"DuckDB connect failed with non-retryable IO error: {e}")
                raise
            last_err = e
            logger.warning(f"DuckDB connect failed (attempt {attempt+1}/{attempts}): {e}")
            if attempt < attempts - 1:
                time.sleep(0.5 * (2**attempt))

    raise last_err


def create_raw_event_table(con: duckdb.DuckDBPyConnection, table: str, natural_key: tuple):
    """Append-only raw event table with a storage-enforced natural key."""
    con.execute(
        f"""
    CREATE TABLE IF NOT EXISTS {table} (
        user_id VARCHAR NOT NULL,
        event_name VARCHAR NOT NULL,
        event_time TIMESTAMP NOT NULL,
        secondary_key VARCHAR NOT NULL,     -- ticker, creator, $insert_id or ''
        properties JSON,

        -- Audit
        sync_run_id VARCHAR,                -- run that inserted the row
        ingested_at TIMESTAMP,
        aggregated_at TIMESTAMP,            -- NULL until an aggregation consumed it
        UNIQUE ({", ".join(natural_key)})
    );
    """
    )
    con.execute(
        f"CREATE INDEX IF NOT EXISTS idx_{table}_user_time ON {table} (user_id, event_time);"
    )


def create_schema(con: duckdb.DuckDBPyConnection):
    """Create every table the sync core reads or writes. Safe to run repeatedly."""

    # Watermarks: one row per source, advanced only after a successful sync
    con.execute(
        """
    CREATE TABLE IF NOT EXISTS sync_watermarks (
        source VARCHAR PRIMARY KEY,
        last_event_time TIMESTAMP NOT NULL,
        total_events_synced BIGINT NOT NULL DEFAULT 0,
        created_at TIMESTAMP,
        updated_at TIMESTAMP
    );
    """
    )

    # Run history (one row per sync invocation)
    con.execute(
        """
    CREATE TABLE IF NOT EXISTS sync_runs (
        run_id VARCHAR PRIMARY KEY,
        source VARCHAR NOT NULL,
        mode VARCHAR,                       -- ADD | REPLACE
        status VARCHAR NOT NULL,            -- in_progress | completed | failed
        final_state VARCHAR,
        range_start TIMESTAMP,
        range_end TIMESTAMP,
        events_observed BIGINT,
        rows_inserted BIGINT,
        events_rejected BIGINT,
        entities_aggregated BIGINT,
        error_message VARCHAR,
        started_at TIMESTAMP,
        completed_at TIMESTAMP
    );
    """
    )
    con.execute("CREATE INDEX IF NOT EXISTS idx_sync_runs_source ON sync_runs (source, started_at);")

    for table, natural_key in RAW_EVENT_TABLES.items():
        create_raw_event_table(con, table, natural_key)
    logging.info(f"Raw event tables are set up: {', '.join(RAW_EVENT_TABLES)}")

    # Per-user window boundaries (KYC approval -> first copy)
    con.execute(
        """
    CREATE TABLE IF NOT EXISTS user_window_boundaries (
        user_id VARCHAR PRIMARY KEY,
        window_start TIMESTAMP,             -- KYC approved
        window_end TIMESTAMP,               -- first copy
        updated_at TIMESTAMP
    );
    """
    )

    # Per-user summary counters
    con.execute(
        """
    CREATE TABLE IF NOT EXISTS user_event_metrics (
        user_id VARCHAR PRIMARY KEY,

        -- Event-counted metrics
        total_copies BIGINT,
        total_pdp_views BIGINT,
        total_creator_profile_views BIGINT,
        total_ach_transfers BIGINT,
        paywall_views BIGINT,
        total_subscriptions BIGINT,
        app_sessions BIGINT,
        discover_tab_views BIGINT,
        stripe_modal_views BIGINT,
        creator_card_taps BIGINT,
        portfolio_card_taps BIGINT,
        events_processed BIGINT,

        -- Once true, stays true
        linked_bank_account BOOLEAN,

        -- Latest non-null value wins
        income VARCHAR,
        net_worth VARCHAR,
        investing_objective VARCHAR,
        investment_type VARCHAR,

        first_event_time TIMESTAMP,
        last_event_time TIMESTAMP,
        updated_at TIMESTAMP
    );
    """
    )

    # Profile properties, written only when something changed
    con.execute(
        """
    CREATE TABLE IF NOT EXISTS user_properties (
        user_id VARCHAR PRIMARY KEY,
        income VARCHAR,
        net_worth VARCHAR,
        investing_activity VARCHAR,
        investing_experience_years VARCHAR,
        investing_objective VARCHAR,
        investment_type VARCHAR,
        acquisition_survey VARCHAR,
        linked_bank_account BOOLEAN,
        available_copy_credits DOUBLE,
        buying_power DOUBLE,
        total_deposits DOUBLE,
        total_deposit_count DOUBLE,
        total_withdrawals DOUBLE,
        total_withdrawal_count DOUBLE,
        active_created_portfolios DOUBLE,
        lifetime_created_portfolios DOUBLE,
        updated_at TIMESTAMP
    );
    """
    )

    # Windowed cohort metrics (single row)
    con.execute(
        """
    CREATE TABLE IF NOT EXISTS event_sequence_metrics (
        id INTEGER PRIMARY KEY DEFAULT 1 CHECK (id = 1),
        mean_unique_portfolios DOUBLE,
        median_unique_portfolios DOUBLE,
        cohort_size INTEGER,
        calculated_at TIMESTAMP
    );
    """
    )

    # Durable completion record for each stage of a chained run
    con.execute(
        """
    CREATE TABLE IF NOT EXISTS sync_stage_log (
        chain_key VARCHAR NOT NULL,
        stage VARCHAR NOT NULL,
        status VARCHAR NOT NULL,            -- completed | failed
        detail VARCHAR,
        completed_at TIMESTAMP,
        PRIMARY KEY (chain_key, stage)
    );
    """
    )
    logging.info("Summary, boundary and bookkeeping tables are set up.")


def setup_database(db_file: str = None):
    """
    Connects to the DuckDB database and creates the necessary tables
    if they don't exist.
    """
    db_file = db_file or DB_FILE
    con = duckdb.connect(db_file)
    logging.info(f"Successfully connected to DuckDB database: {db_file}")
    try:
        create_schema(con)
    finally:
        con.close()
    logging.info("Database setup complete. Connection closed.")


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    logging.info("--- Starting Database Setup ---")
    setup_database()
    logging.info("--- Database Setup Finished ---")
