import argparse
import logging
import sys
from datetime import datetime

from dotenv import load_dotenv

from clock import utc_now
from config_loader import ConfigLoader, load_config
from event_source import EventSource, JsonlFileEventSource, MixpanelExportSource, MixpanelProfileSource
from logging_utils import configure_logging
from pipeline import DAILY_STAGES, StageContext, run_chain
from setup_database import connect_database, create_schema
from sync_orchestrator import SyncOrchestrator


def build_event_source(cfg: ConfigLoader, source: str, replay_dir: str = None) -> EventSource:
    """Mixpanel export for ``source``, or a replay of JSONL dumps when ``replay_dir`` is given."""
    _, source_config = cfg.sync_settings(source)
    if replay_dir:
        return JsonlFileEventSource(replay_dir, event_names=source_config.event_names)
    return MixpanelExportSource(
        username=cfg.get_env_value("mixpanel.username_env"),
        secret=cfg.get_env_value("mixpanel.secret_env"),
        project_id=cfg.get_env_value("mixpanel.project_id_env"),
        event_names=source_config.event_names,
        export_base=cfg.get("mixpanel.export_base", "https://data.mixpanel.com/api/2.0"),
        timeout_seconds=cfg.get("mixpanel.timeout_seconds", 240),
        max_user_ids_per_request=cfg.get("mixpanel.max_user_ids_per_request", 200),
    )


def build_profile_source(cfg: ConfigLoader) -> MixpanelProfileSource:
    return MixpanelProfileSource(
        username=cfg.get_env_value("mixpanel.username_env"),
        secret=cfg.get_env_value("mixpanel.secret_env"),
        project_id=cfg.get_env_value("mixpanel.project_id_env"),
        api_base=cfg.get("mixpanel.api_base", "https://mixpanel.com/api/2.0"),
        timeout_seconds=cfg.get("mixpanel.timeout_seconds", 240),
        max_page_retries=cfg.get("sync.max_page_retries", 3),
        retry_backoff_seconds=cfg.get("sync.retry_backoff_seconds", 1.0),
        max_rate_limit_sleep_seconds=cfg.get("sync.max_rate_limit_sleep_seconds", 60.0),
    )


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Sync Mixpanel events into the analysis database.")
    parser.add_argument("--config", default=None, help="Path to config JSON (default: $SYNC_CONFIG or config.json)")
    parser.add_argument("--source", default=None, help="Run a single source instead of the daily chain")
    parser.add_argument(
        "--replay-dir",
        default=None,
        help="Backfill --source from downloaded Mixpanel export dumps (*.jsonl) instead of the API",
    )
    parser.add_argument("--chain-key", default=None, help="Resume key for the daily chain (default: daily-<UTC date>)")
    parser.add_argument("--init-db", action="store_true", help="Create tables before syncing")
    args = parser.parse_args(argv)
    if args.replay_dir and not args.source:
        parser.error("--replay-dir requires --source")
    return args


def main(argv=None) -> int:
    args = parse_args(argv)
    load_dotenv()
    cfg = load_config(args.config)

    run_ts = datetime.now().strftime(cfg.get("run_ts_format", "%Y%m%d_%H%M%S"))
    logger, _fmt = configure_logging(f"{cfg.get('paths.logs_dir', 'logs')}/sync_{run_ts}.log", logger_name="sync")
    logger.info("--- Starting Sync ---")

    con = connect_database(cfg.get("database_path"), logger)
    try:
        if args.init_db:
            create_schema(con)

        if args.source:
            settings, source_config = cfg.sync_settings(args.source)
            if args.replay_dir:
                logger.info(f"Replaying {args.source} from {args.replay_dir}")
            result = SyncOrchestrator(con, settings, logger=logger).run(
                source_config, build_event_source(cfg, args.source, args.replay_dir)
            )
            ok = result.succeeded
        else:
            chain_key = args.chain_key or f"daily-{utc_now():%Y-%m-%d}"
            ctx = StageContext(
                con=con,
                settings={name: cfg.sync_settings(name) for name in cfg.source_names()},
                event_sources={name: build_event_source(cfg, name) for name in cfg.source_names()},
                profile_source=build_profile_source(cfg),
                logger=logger,
            )
            ok = run_chain(con, chain_key, DAILY_STAGES, ctx)
    finally:
        con.close()
        logger.info("--- Sync Finished ---")

    return 0 if ok else 1


if __name__ == "__main__":
    try:
        sys.exit(main())
    except Exception as e:
        logging.error(f"Sync aborted: {e}", exc_info=True)
        sys.exit(1)
