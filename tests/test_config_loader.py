# tests/test_config_loader.py
import json

import pytest

from config_loader import ConfigLoader, load_config
from sync_orchestrator import SyncSettings


def _base_config():
    return {
        "database_path": "test.db",
        "paths": {"logs_dir": "logs", "dead_letter_dir": "dead_letter"},
        "mixpanel": {
            "username_env": "TEST_MP_USER",
            "secret_env": "TEST_MP_SECRET",
            "project_id_env": "TEST_MP_PROJECT",
        },
        "sync": {"lookback_days": 30, "overlap_hours": 2, "write_batch_size": 500},
        "sources": {
            "mixpanel_user_events": {"raw_table": "user_events_raw", "event_names": ["A", "B"]},
            "mixpanel_portfolio_sequences": {
                "raw_table": "portfolio_sequences_raw",
                "aggregation": "windowed",
                "user_filter": "cohort",
                "sync": {"lookback_days": 90},
            },
        },
    }


def _write(tmp_path, cfg):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(cfg))
    return str(path)


def test_sync_settings_merge_source_overrides(tmp_path):
    cfg = load_config(_write(tmp_path, _base_config()))

    settings, source = cfg.sync_settings("mixpanel_portfolio_sequences")

    assert isinstance(settings, SyncSettings)
    assert settings.lookback_days == 90
    assert settings.overlap_hours == 2
    assert settings.write_batch_size == 500
    assert settings.dead_letter_dir == "dead_letter"
    assert source.raw_table == "portfolio_sequences_raw"
    assert source.aggregation == "windowed"
    assert source.user_filter == "cohort"

    settings, source = cfg.sync_settings("mixpanel_user_events")
    assert settings.lookback_days == 30
    assert source.aggregation == "summary"
    assert source.event_names == ("A", "B")


def test_loaders_are_independent(tmp_path):
    first = _base_config()
    second = _base_config()
    second["database_path"] = "other.db"
    (tmp_path / "a").mkdir()
    (tmp_path / "b").mkdir()

    a = ConfigLoader(_write(tmp_path / "a", first))
    b = ConfigLoader(_write(tmp_path / "b", second))

    assert a.get("database_path") == "test.db"
    assert b.get("database_path") == "other.db"


def test_dot_notation_get_with_default(tmp_path):
    cfg = load_config(_write(tmp_path, _base_config()))
    assert cfg.get("sync.lookback_days") == 30
    assert cfg.get("sync.missing", 7) == 7


def test_missing_section_rejected(tmp_path):
    raw = _base_config()
    del raw["sources"]
    with pytest.raises(ValueError, match="sources"):
        load_config(_write(tmp_path, raw))


@pytest.mark.parametrize(
    "key, value",
    [
        ("lookback_days", 0),
        ("overlap_hours", -1),
        ("write_batch_size", 0),
        ("max_page_retries", -2),
        ("rate_limit_delay_seconds", "fast"),
    ],
)
def test_out_of_range_values_rejected(tmp_path, key, value):
    raw = _base_config()
    raw["sync"][key] = value
    with pytest.raises(ValueError, match=key):
        load_config(_write(tmp_path, raw))


def test_unknown_aggregation_rejected(tmp_path):
    raw = _base_config()
    raw["sources"]["mixpanel_user_events"]["aggregation"] = "sum"
    with pytest.raises(ValueError, match="aggregation"):
        load_config(_write(tmp_path, raw))


def test_unknown_source_raises_key_error(tmp_path):
    cfg = load_config(_write(tmp_path, _base_config()))
    with pytest.raises(KeyError):
        cfg.sync_settings("stripe")


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "nope.json"))


def test_env_values_come_from_environment(tmp_path, monkeypatch):
    cfg = load_config(_write(tmp_path, _base_config()))
    monkeypatch.setenv("TEST_MP_USER", "svc-user")
    monkeypatch.delenv("TEST_MP_SECRET", raising=False)

    assert cfg.get_env_value("mixpanel.username_env") == "svc-user"
    with pytest.raises(ValueError, match="TEST_MP_SECRET"):
        cfg.get_env_value("mixpanel.secret_env")
