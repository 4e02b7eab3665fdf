"""Canonical filesystem paths for clutch configuration and state."""

from __future__ import annotations

import os
from pathlib import Path

CLUTCH_CONFIG_DIR = Path.home() / ".config" / "clutch"

CONFIG_PATH = CLUTCH_CONFIG_DIR / "config.toml"

_env_db = os.environ.get("CLUTCH_DB_PATH")
DEFAULT_DB_PATH = Path(_env_db).expanduser() if _env_db else CLUTCH_CONFIG_DIR / "clutch.db"
