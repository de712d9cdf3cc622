"""
Daily sync chain.

Stages run in order; each completion is written to ``sync_stage_log`` under
the chain key. Re-running a chain key skips the completed stages and resumes
at the first one that didn't finish. A failing stage stops the chain.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import duckdb

from clock import utc_now
from event_source import EventSource, MixpanelProfileSource
from properties_sync import sync_user_properties
from sync_orchestrator import SourceConfig, SyncOrchestrator, SyncSettings
from windowed_metrics import refresh_window_boundaries


@dataclass
class StageContext:
    con: duckdb.DuckDBPyConnection
    settings: Dict[str, Tuple[SyncSettings, SourceConfig]]
    event_sources: Dict[str, EventSource]
    profile_source: Optional[MixpanelProfileSource] = None
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("pipeline"))


@dataclass(frozen=True)
class Stage:
    name: str
    run: Callable[[StageContext], str]


class StageFailed(Exception):
    pass


# --- Stage bodies ----------------------------------------------------------------


def sync_source_stage(source: str) -> Callable[[StageContext], str]:
    def run(ctx: StageContext) -> str:
        settings, source_config = ctx.settings[source]
        result = SyncOrchestrator(ctx.con, settings, logger=ctx.logger).run(source_config, ctx.event_sources[source])
        if not result.succeeded:
            raise StageFailed(f"{source} sync failed: {result.error}")
        return (
            f"mode={result.mode.value} inserted={result.ingest.rows_inserted} "
            f"aggregated={result.entities_aggregated}"
        )

    return run


def window_boundaries_stage(ctx: StageContext) -> str:
    users = refresh_window_boundaries(ctx.con, logger=ctx.logger)
    return f"users={users}"


def user_properties_stage(ctx: StageContext) -> str:
    if ctx.profile_source is None:
        return "skipped: no profile source"
    seen, written = sync_user_properties(ctx.con, ctx.profile_source.iter_profiles(), logger=ctx.logger)
    return f"seen={seen} written={written}"


DAILY_STAGES: List[Stage] = [
    Stage("mixpanel_user_events", sync_source_stage("mixpanel_user_events")),
    Stage("window_boundaries", window_boundaries_stage),
    Stage("mixpanel_portfolio_sequences", sync_source_stage("mixpanel_portfolio_sequences")),
    Stage("user_properties", user_properties_stage),
]


# --- Chain runner ----------------------------------------------------------------


def completed_stages(con: duckdb.DuckDBPyConnection, chain_key: str) -> set:
    rows = con.execute(
        "SELECT stage FROM sync_stage_log WHERE chain_key = ? AND status = 'completed'",
        [chain_key],
    ).fetchall()
    return {r[0] for r in rows}


def _record_stage(con: duckdb.DuckDBPyConnection, chain_key: str, stage: str, status: str, detail: str):
    con.execute(
        """
        INSERT INTO sync_stage_log (chain_key, stage, status, detail, completed_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT (chain_key, stage) DO UPDATE SET
            status = EXCLUDED.status,
            detail = EXCLUDED.detail,
            completed_at = EXCLUDED.completed_at
        """,
        [chain_key, stage, status, detail, utc_now()],
    )


def run_chain(
    con: duckdb.DuckDBPyConnection,
    chain_key: str,
    stages: Sequence[Stage],
    ctx: StageContext,
) -> bool:
    """Run ``stages`` in order under ``chain_key``. Returns True when every stage is complete."""
    logger = ctx.logger
    done = completed_stages(con, chain_key)
    logger.info(f"--- Starting chain {chain_key}: {len(stages)} stages, {len(done & {s.name for s in stages})} already done ---")

    for stage in stages:
        if stage.name in done:
            logger.info(f"[{chain_key}] stage {stage.name} already completed, skipping")
            continue
        logger.info(f"[{chain_key}] running stage {stage.name}")
        try:
            detail = stage.run(ctx)
        except Exception as e:
            logger.error(f"[{chain_key}] stage {stage.name} failed: {e}", exc_info=True)
            _record_stage(con, chain_key, stage.name, "failed", f"{type(e).__name__}: {e}")
            return False
        _record_stage(con, chain_key, stage.name, "completed", detail)
        logger.info(f"[{chain_key}] stage {stage.name} completed: {detail}")

    logger.info(f"--- Chain {chain_key} finished ---")
    return True
