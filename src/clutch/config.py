"""Runtime configuration loaded from config.toml and CLUTCH_* environment variables."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from clutch.errors import ValidationError
from clutch.paths import CONFIG_PATH


@dataclass(frozen=True)
class ClutchConfig:
    # [work_loop]
    cycle_interval_ms: int = 30_000
    max_agents_per_project: int = 2
    max_agents_global: int = 5
    stale_task_minutes: int = 15
    stale_review_minutes: int = 30
    # [recovery]
    max_retries: int = 3
    retry_cooldown_ms: int = 60_000
    stuck_message_minutes: int = 5
    stuck_signal_minutes: int = 30
    # [runtime]
    gateway_url: str = "http://127.0.0.1:18789/rpc"
    gateway_token: str | None = None
    gateway_timeout_seconds: float = 30.0


# field name -> (toml section, toml key, env var)
_SOURCES: dict[str, tuple[str, str, str]] = {
    "cycle_interval_ms": ("work_loop", "cycle_interval_ms", "CLUTCH_WORK_LOOP_CYCLE_INTERVAL_MS"),
    "max_agents_per_project": (
        "work_loop",
        "max_agents_per_project",
        "CLUTCH_WORK_LOOP_MAX_AGENTS_PER_PROJECT",
    ),
    "max_agents_global": ("work_loop", "max_agents_global", "CLUTCH_WORK_LOOP_MAX_AGENTS_GLOBAL"),
    "stale_task_minutes": (
        "work_loop",
        "stale_task_minutes",
        "CLUTCH_WORK_LOOP_STALE_TASK_MINUTES",
    ),
    "stale_review_minutes": (
        "work_loop",
        "stale_review_minutes",
        "CLUTCH_WORK_LOOP_STALE_REVIEW_MINUTES",
    ),
    "max_retries": ("recovery", "max_retries", "CLUTCH_MAX_RETRIES"),
    "retry_cooldown_ms": ("recovery", "retry_cooldown_ms", "CLUTCH_RETRY_COOLDOWN_MS"),
    "stuck_message_minutes": ("recovery", "stuck_message_minutes", "CLUTCH_STUCK_MESSAGE_MINUTES"),
    "stuck_signal_minutes": ("recovery", "stuck_signal_minutes", "CLUTCH_STUCK_SIGNAL_MINUTES"),
    "gateway_url": ("runtime", "url", "CLUTCH_GATEWAY_URL"),
    "gateway_token": ("runtime", "token", "CLUTCH_GATEWAY_TOKEN"),
    "gateway_timeout_seconds": ("runtime", "timeout_seconds", "CLUTCH_GATEWAY_TIMEOUT_SECONDS"),
}


def _read_toml_file(path: Path) -> dict[str, Any]:
    """Read a TOML file, returning an empty dict when it is missing or unreadable."""
    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except (FileNotFoundError, OSError, tomllib.TOMLDecodeError):
        return {}
    return raw if isinstance(raw, dict) else {}


def _coerce(name: str, raw: object, default: object) -> object:
    if isinstance(default, int):
        try:
            value = int(raw)  # type: ignore[arg-type]
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Config '{name}' must be an integer, got {raw!r}") from exc
        if value < 0:
            raise ValidationError(f"Config '{name}' must be >= 0")
        return value
    if isinstance(default, float):
        try:
            value = float(raw)  # type: ignore[arg-type]
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Config '{name}' must be a number, got {raw!r}") from exc
        if value <= 0:
            raise ValidationError(f"Config '{name}' must be > 0")
        return value
    return str(raw) if raw is not None else None


def load_config(path: Path | None = None, env: dict[str, str] | None = None) -> ClutchConfig:
    """Build a ClutchConfig from defaults, then the TOML file, then the environment."""
    document = _read_toml_file(path or CONFIG_PATH)
    environ = os.environ if env is None else env
    defaults = ClutchConfig()
    values: dict[str, object] = {}
    for f in fields(ClutchConfig):
        section, key, env_var = _SOURCES[f.name]
        default = getattr(defaults, f.name)
        raw: object = None
        table = document.get(section)
        if isinstance(table, dict) and key in table:
            raw = table[key]
        if environ.get(env_var):
            raw = environ[env_var]
        if raw is None:
            continue
        values[f.name] = _coerce(f.name, raw, default)
    return ClutchConfig(**values)  # type: ignore[arg-type]
