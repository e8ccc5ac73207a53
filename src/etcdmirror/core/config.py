"""Configuration loader for etcdmirror."""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml

log = logging.getLogger(__name__)

DEFAULTS: dict = {
    # Local directory mirrored to etcd
    "folder": None,
    # Root key used as the store prefix; "" synchronizes the whole key space
    "key": "",
    "log_level": "info",
    "log_file": None,
    "etcd": {
        "endpoints": ["http://127.0.0.1:2379"],
        "dial_timeout": 5.0,
        "request_timeout": 10.0,
        "max_retries": 3,
        "initial_backoff": 0.5,
        "max_backoff": 10.0,
    },
    "poll": {
        "interval_seconds": 15,
        # names matching these are never uploaded, e.g. ["*.swp"]
        "ignore_patterns": [".tmp_*"],
    },
    "watch": {
        # 0 = reconnect forever
        "max_reconnects": 10,
        "initial_backoff": 1.0,
        "max_backoff": 30.0,
    },
    "api": {
        "enabled": True,
        "host": "0.0.0.0",
        "port": 3000,
    },
}


def config_path() -> Path:
    """Return the config file path: $ETCDMIRROR_CONFIG > ~/.etcdmirror/config.yaml."""
    env_path = os.environ.get("ETCDMIRROR_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    return Path("~/.etcdmirror/config.yaml").expanduser()


def load_config(path: Path | None = None) -> dict:
    """Load config.yaml and merge with defaults.

    Args:
        path: Explicit path to config.yaml. If None, uses default location.

    Returns:
        Merged configuration dict.
    """
    if path is None:
        path = config_path()

    user_config: dict = {}
    if path.exists():
        try:
            raw = path.read_text(encoding="utf-8")
            user_config = yaml.safe_load(raw) or {}
        except Exception:
            log.warning("Failed to read config at %s, using defaults", path, exc_info=True)

    if not isinstance(user_config, dict):
        log.warning("Config at %s is not a mapping, using defaults", path)
        user_config = {}

    merged = _deep_merge(DEFAULTS, user_config)

    if merged.get("folder"):
        merged["folder"] = str(Path(merged["folder"]).expanduser().resolve())
    merged["key"] = merged.get("key") or ""

    return merged


def apply_overrides(config: dict, overrides: dict) -> dict:
    """Merge non-None overrides (e.g. CLI flags) into config."""
    cleaned = _drop_none(overrides)
    merged = _deep_merge(config, cleaned)
    if cleaned.get("folder"):
        merged["folder"] = str(Path(merged["folder"]).expanduser().resolve())
    return merged


def _drop_none(values: dict) -> dict:
    result: dict = {}
    for key, value in values.items():
        if isinstance(value, dict):
            nested = _drop_none(value)
            if nested:
                result[key] = nested
        elif value is not None:
            result[key] = value
    return result


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base, returning a new dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result
