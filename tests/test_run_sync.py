# tests/test_run_sync.py
"""
Command line entry point: backfilling a single source from JSONL export dumps.
"""
import json
from datetime import datetime, timedelta, timezone

import duckdb
import pytest

import run_sync
from event_source import JsonlFileEventSource


def _config(tmp_path):
    cfg = {
        "database_path": str(tmp_path / "sync.db"),
        "paths": {"logs_dir": str(tmp_path / "logs"), "dead_letter_dir": str(tmp_path / "dead_letter")},
        "mixpanel": {
            "username_env": "TEST_MP_USER",
            "secret_env": "TEST_MP_SECRET",
            "project_id_env": "TEST_MP_PROJECT",
        },
        "sync": {"lookback_days": 30, "overlap_hours": 2},
        "sources": {
            "mixpanel_user_events": {
                "raw_table": "user_events_raw",
                "event_names": ["SubscriptionCreated", "DubAutoCopyInitiated"],
            },
        },
    }
    path = tmp_path / "config.json"
    path.write_text(json.dumps(cfg))
    return str(path)


def _dump_line(user, event, when, insert_id):
    epoch = int(when.replace(tzinfo=timezone.utc).timestamp())
    return json.dumps({"event": event, "properties": {"$user_id": user, "time": epoch, "$insert_id": insert_id}})


def test_replay_dir_builds_file_source_without_credentials(tmp_path, monkeypatch):
    monkeypatch.delenv("TEST_MP_USER", raising=False)
    cfg = run_sync.load_config(_config(tmp_path))

    source = run_sync.build_event_source(cfg, "mixpanel_user_events", str(tmp_path))

    assert isinstance(source, JsonlFileEventSource)
    assert source.event_names == {"SubscriptionCreated", "DubAutoCopyInitiated"}


def test_replay_dir_requires_source():
    with pytest.raises(SystemExit):
        run_sync.parse_args(["--replay-dir", "dumps"])


def test_backfill_single_source_from_dumps(tmp_path, monkeypatch):
    monkeypatch.delenv("TEST_MP_USER", raising=False)
    monkeypatch.delenv("TEST_MP_SECRET", raising=False)
    config_path = _config(tmp_path)
    dumps = tmp_path / "dumps"
    dumps.mkdir()
    recent = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(hours=1)
    (dumps / "2025-01-01.jsonl").write_text(
        "\n".join(
            [
                _dump_line("u1", "SubscriptionCreated", recent, "i1"),
                _dump_line("u1", "DubAutoCopyInitiated", recent + timedelta(minutes=1), "i2"),
                _dump_line("u2", "Viewed Stripe Modal", recent, "i3"),
            ]
        )
        + "\n"
    )

    exit_code = run_sync.main(
        ["--config", config_path, "--source", "mixpanel_user_events", "--replay-dir", str(dumps), "--init-db"]
    )

    assert exit_code == 0
    con = duckdb.connect(str(tmp_path / "sync.db"))
    try:
        assert con.execute("SELECT COUNT(*) FROM user_events_raw").fetchone()[0] == 2
        subs, copies = con.execute(
            "SELECT total_subscriptions, total_copies FROM user_event_metrics WHERE user_id = 'u1'"
        ).fetchone()
        assert (subs, copies) == (1, 1)
        synced = con.execute(
            "SELECT total_events_synced FROM sync_watermarks WHERE source = 'mixpanel_user_events'"
        ).fetchone()[0]
        assert synced == 2
    finally:
        con.close()
