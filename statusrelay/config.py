"""
YAML configuration loader.

Reads config.yaml and produces a typed RelaySettings object.
Falls back to sensible defaults if the config file is missing, and lets
secrets come from the environment instead of the file.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict

import yaml

from statusrelay import notifier
from statusrelay.models import RelaySettings

# Default path: config.yaml next to the project root
_DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config.yaml"

_NUMERIC_KEYS = {
    "poll_interval": float,
    "request_timeout": float,
    "page_check_timeout": float,
    "stale_after_hours": float,
    "fresh_window_hours": float,
    "backfill_limit": int,
    "port": int,
    "push_settle_seconds": float,
}

_TEXT_KEYS = ("log_level", "database", "api_base", "bot_token", "auth_token", "host")


def load_config(path: str | Path | None = None) -> RelaySettings:
    """
    Load and parse the YAML configuration file.

    The path comes from the argument, then ``STATUSRELAY_CONFIG``, then
    ``config.yaml`` at the project root.
    """
    env_path = os.environ.get("STATUSRELAY_CONFIG")
    config_path = Path(path or env_path or _DEFAULT_CONFIG_PATH)

    raw: Dict[str, Any] = {}
    if config_path.exists():
        with open(config_path, "r") as fh:
            raw = yaml.safe_load(fh) or {}
    else:
        notifier.print_warning(f"Config file not found at {config_path}, using defaults.")

    raw_settings = raw.get("settings") or {}
    settings = RelaySettings()
    for key, cast in _NUMERIC_KEYS.items():
        if key in raw_settings:
            setattr(settings, key, cast(raw_settings[key]))
    for key in _TEXT_KEYS:
        if raw_settings.get(key) is not None:
            setattr(settings, key, str(raw_settings[key]))
    settings.log_level = settings.log_level.upper()

    # Pages to validate at startup, with or without destinations
    settings.sources = [str(url) for url in raw.get("sources") or []]

    # Secrets and deployment overrides
    settings.bot_token = os.environ.get("DISCORD_BOT_TOKEN", settings.bot_token)
    settings.auth_token = os.environ.get("STATUSRELAY_AUTH_TOKEN", settings.auth_token)
    if "PORT" in os.environ:
        settings.port = int(os.environ["PORT"])

    return settings
