"""
Configuration loader for the sync pipeline.
Loads config from JSON file and provides validation.
"""
import json
import os
from pathlib import Path
from typing import Any, Dict, Tuple

from sync_orchestrator import SourceConfig, SyncSettings

AGGREGATIONS = ("summary", "windowed")
USER_FILTERS = (None, "cohort")


class ConfigLoader:
    """Configuration loader with validation. One instance per config file."""

    def __init__(self, config_path: str = None):
        self.config_path = config_path or os.getenv("SYNC_CONFIG", "config.json")
        self._config: Dict[str, Any] = {}
        self._load_config(self.config_path)
        self._validate()

    def _load_config(self, config_path: str):
        """Load and parse the configuration file."""
        config_file = Path(config_path)

        if not config_file.exists():
            raise FileNotFoundError(
                f"Configuration file not found: {config_path}. "
                "Please create it from config.json or set SYNC_CONFIG env var."
            )

        with open(config_file, "r") as f:
            self._config = json.load(f)

    def _validate(self):
        """Validate required sections and value ranges."""
        # Required sections
        required_sections = [
            "database_path",
            "paths",
            "mixpanel",
            "sync",
            "sources",
        ]
        missing = [s for s in required_sections if s not in self._config]
        if missing:
            raise ValueError(f"Missing required config sections: {missing}")

        self._validate_sync_section("sync", self._config["sync"])

        sources = self._config.get("sources")
        if not isinstance(sources, dict) or not sources:
            raise ValueError("sources must be a non-empty object keyed by source name")
        for name, source in sources.items():
            if not source.get("raw_table"):
                raise ValueError(f"sources.{name}.raw_table is required")
            if source.get("aggregation", "summary") not in AGGREGATIONS:
                raise ValueError(
                    f"sources.{name}.aggregation must be one of {AGGREGATIONS}, got {source.get('aggregation')}"
                )
            if source.get("user_filter") not in USER_FILTERS:
                raise ValueError(
                    f"sources.{name}.user_filter must be one of {USER_FILTERS}, got {source.get('user_filter')}"
                )
            self._validate_sync_section(f"sources.{name}.sync", source.get("sync", {}))

    @staticmethod
    def _validate_sync_section(prefix: str, section: Dict[str, Any]):
        checks = {
            "lookback_days": lambda v: v > 0,
            "overlap_hours": lambda v: v >= 0,
            "max_page_retries": lambda v: v >= 0,
            "retry_backoff_seconds": lambda v: v >= 0,
            "max_rate_limit_sleep_seconds": lambda v: v >= 0,
            "rate_limit_delay_seconds": lambda v: v >= 0,
            "write_batch_size": lambda v: v >= 1,
            "deadline_seconds": lambda v: v > 0,
        }
        for key, ok in checks.items():
            if key not in section or (key == "deadline_seconds" and section[key] is None):
                continue
            value = section[key]
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not ok(value):
                raise ValueError(f"{prefix}.{key} has an invalid value: {value!r}")

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key_path: Dot-separated path like 'database_path' or 'sync.lookback_days'
            default: Default value if key not found

        Returns:
            Configuration value or default

        Example:
            config.get('database_path')
            config.get('sync.write_batch_size', 1000)
        """
        keys = key_path.split(".")
        value = self._config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    def get_env_value(self, config_key: str, required: bool = True) -> str:
        """
        Get environment variable name from config and read its value.

        Example:
            # config has: "mixpanel": {"username_env": "MIXPANEL_SERVICE_USERNAME"}
            username = config.get_env_value('mixpanel.username_env')
        """
        env_var_name = self.get(config_key)
        if not env_var_name:
            raise ValueError(f"Config key '{config_key}' not found")

        value = os.getenv(env_var_name)
        if required and not value:
            raise ValueError(
                f"Environment variable '{env_var_name}' (from config key '{config_key}') is not set. "
                f"Please set it in your .env file."
            )
        return value

    def source_names(self):
        return list(self._config["sources"])

    def sync_settings(self, source: str) -> Tuple[SyncSettings, SourceConfig]:
        """
        Build the settings for one source: global ``sync`` values overridden
        by ``sources.<source>.sync``.
        """
        if source not in self._config["sources"]:
            raise KeyError(f"Unknown source {source!r}; configured: {self.source_names()}")
        source_cfg = self._config["sources"][source]

        merged = dict(self._config["sync"])
        merged.update(source_cfg.get("sync", {}))
        known = set(SyncSettings.__dataclass_fields__) - {"dead_letter_dir", "log_dir"}
        settings = SyncSettings(
            **{k: v for k, v in merged.items() if k in known},
            dead_letter_dir=self.get("paths.dead_letter_dir"),
            log_dir=self.get("paths.logs_dir"),
        )
        source_config = SourceConfig(
            name=source,
            raw_table=source_cfg["raw_table"],
            aggregation=source_cfg.get("aggregation", "summary"),
            user_filter=source_cfg.get("user_filter"),
            event_names=tuple(source_cfg.get("event_names", ())),
        )
        return settings, source_config


def load_config(config_path: str = None) -> ConfigLoader:
    """Load and validate a configuration file."""
    return ConfigLoader(config_path)
