"""Job functions executed by rq workers."""

from __future__ import annotations

import logging

from clutch.config import load_config
from clutch.db import connect, now_ms
from clutch.events import FanoutSink
from clutch.queue import RedisStreamSink
from clutch.services import build_services, default_runtime
from clutch.store import SqliteStore

log = logging.getLogger(__name__)

RECOVERY_KINDS = ("messages", "signals")


def run_work_cycle(project_id: str) -> dict:
    config = load_config()
    with connect() as conn, default_runtime(config) as runtime:
        store = SqliteStore(conn)
        services = build_services(
            conn,
            config=config,
            runtime=runtime,
            events=FanoutSink([store.events, RedisStreamSink()]),
        )
        result = services.work_loop.run_cycle(project_id)
    log.info("Work cycle for %s finished: %s", project_id, result.get("ok", "skipped"))
    return result


def on_work_cycle_failure(job, _connection, _exc_type, exc_value, _traceback):
    """Callback when a cycle job crashes outside a phase. Marks the loop errored."""
    project_id = job.args[0] if job.args else None
    if not project_id:
        return
    with connect() as conn:
        repo = SqliteStore(conn).work_loop
        state = repo.get_state(project_id)
        if not state:
            log.warning("Cycle failure callback skipped: no loop state for %s", project_id)
            return
        repo.upsert_state(
            project_id,
            {"status": "error", "current_phase": "error", "error_message": str(exc_value)},
            now_ms(),
        )


def run_recovery(kind: str, age_threshold_minutes: int, action: str) -> dict:
    if kind not in RECOVERY_KINDS:
        raise ValueError(f"Unknown recovery kind '{kind}'")
    config = load_config()
    with connect() as conn, default_runtime(config) as runtime:
        services = build_services(conn, config=config, runtime=runtime)
        if kind == "messages":
            return services.messages.recover(age_threshold_minutes, action)
        return services.signals.recover(age_threshold_minutes, action)


def on_recovery_failure(job, _connection, _exc_type, exc_value, _traceback):
    log.error("Recovery job %s failed: %s", job.id, exc_value)
