"""Per-project work loop: state machine, append-only run log, and cycle driver.

The loop never schedules itself. An external trigger (cron, an rq job from
``clutch.queue.enqueue_work_cycle``, the CLI) calls ``run_cycle``.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from typing import Any

from clutch.config import ClutchConfig
from clutch.db import (
    VALID_LOOP_PHASES,
    VALID_LOOP_STATUSES,
    WorkLoopRunRow,
    WorkLoopStateRow,
    new_id,
    now_ms,
)
from clutch.dispatch import Dispatcher
from clutch.errors import (
    Conflict,
    DependencyBlocked,
    NotFound,
    ValidationError,
    require_choice,
    require_text,
)
from clutch.messages import MessageDeliveryTracker
from clutch.repository import WorkLoopRepository
from clutch.signals import SignalChannel
from clutch.tasks import TaskStore

log = logging.getLogger(__name__)

DAY_MS = 86_400_000
DEFAULT_RUNS_LIMIT = 50
MAX_RUNS_LIMIT = 500
CYCLE_PHASES = ("cleanup", "review", "work", "analyze")
PRIORITY_ORDER = {"urgent": 0, "high": 1, "medium": 2, "low": 3}
IN_FLIGHT_STATUSES = ("spawning", "active")

PhaseFn = Callable[[str, int], dict[str, Any]]


def run_to_dict(run: WorkLoopRunRow) -> dict[str, Any]:
    data: dict[str, Any] = dict(run)
    data["details"] = json.loads(run["details"]) if run["details"] else None
    return data


def start_of_utc_day(ts_ms: int) -> int:
    return ts_ms - ts_ms % DAY_MS


def default_agent_for_role(role: str | None) -> str:
    """Agent id used when the loop dispatches an unassigned task."""
    return role if role not in (None, "any") else "dev"


class WorkLoopSupervisor:
    def __init__(
        self,
        repo: WorkLoopRepository,
        *,
        store: TaskStore | None = None,
        dispatcher: Dispatcher | None = None,
        signals: SignalChannel | None = None,
        messages: MessageDeliveryTracker | None = None,
        config: ClutchConfig | None = None,
        clock: Callable[[], int] = now_ms,
        timer: Callable[[], float] = time.perf_counter,
    ):
        self.repo = repo
        self.store = store
        self.dispatcher = dispatcher
        self.signals = signals
        self.messages = messages
        self.config = config or ClutchConfig()
        self.clock = clock
        self.timer = timer

    # -- state --

    def get_state(self, project_id: str) -> WorkLoopStateRow | None:
        return self.repo.get_state(project_id)

    def upsert_state(self, project_id: str, **fields: Any) -> WorkLoopStateRow:
        """Create or update the project's loop state, validating every field."""
        allowed = {
            "status",
            "current_phase",
            "current_cycle",
            "active_agents",
            "max_agents",
            "last_cycle_at",
            "error_message",
        }
        unknown = set(fields) - allowed
        if unknown:
            raise ValidationError(f"Unknown state fields: {', '.join(sorted(unknown))}")
        if "status" in fields:
            require_choice(fields["status"], VALID_LOOP_STATUSES, "status")
        if fields.get("current_phase") is not None:
            require_choice(fields["current_phase"], VALID_LOOP_PHASES, "phase")
        for key in ("current_cycle", "active_agents", "max_agents", "last_cycle_at"):
            value = fields.get(key)
            if value is not None and (not isinstance(value, int) or value < 0):
                raise ValidationError(f"{key} must be a non-negative integer")

        existing = self.repo.get_state(project_id)
        values = dict(fields)
        if existing is None and "max_agents" not in values:
            values["max_agents"] = self.config.max_agents_per_project
        active = values.get("active_agents", existing["active_agents"] if existing else 0)
        maximum = values.get("max_agents", existing["max_agents"] if existing else 0)
        if active > maximum:
            raise ValidationError(f"active_agents ({active}) exceeds max_agents ({maximum})")

        self.repo.upsert_state(project_id, values, self.clock())
        state = self.repo.get_state(project_id)
        assert state is not None
        return state

    def set_status(self, project_id: str, status: str) -> WorkLoopStateRow:
        fields: dict[str, Any] = {"status": status}
        if status == "running":
            fields["error_message"] = None
        return self.upsert_state(project_id, **fields)

    def acquire_agent_slot(self, project_id: str) -> bool:
        if self.repo.get_state(project_id) is None:
            raise NotFound(f"No work loop state for project '{project_id}'")
        return self.repo.try_acquire_slot(project_id, self.clock())

    def release_agent_slot(self, project_id: str) -> bool:
        return self.repo.release_slot(project_id, self.clock())

    # -- runs --

    def log_run(
        self,
        project_id: str,
        cycle: int,
        phase: str,
        action: str,
        *,
        task_id: str | None = None,
        session_key: str | None = None,
        details: dict[str, Any] | None = None,
        duration_ms: int | None = None,
    ) -> WorkLoopRunRow:
        require_choice(phase, VALID_LOOP_PHASES, "phase")
        require_text(action, "action")
        if details is not None and not isinstance(details, dict):
            raise ValidationError("details must be an object")
        row: WorkLoopRunRow = {
            "id": new_id(),
            "project_id": project_id,
            "cycle": cycle,
            "phase": phase,
            "action": action,
            "task_id": task_id,
            "session_key": session_key,
            "details": json.dumps(details, default=str) if details is not None else None,
            "duration_ms": duration_ms,
            "created_at": self.clock(),
        }
        self.repo.insert_run(row)
        return row

    def list_runs(
        self, project_id: str, limit: int = DEFAULT_RUNS_LIMIT, before: int | None = None
    ) -> list[WorkLoopRunRow]:
        """Newest first; *before* is a created_at cursor (exclusive)."""
        if limit <= 0 or limit > MAX_RUNS_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_RUNS_LIMIT}")
        return self.repo.list_runs(project_id, limit, before)

    def get_stats(self, project_id: str) -> dict[str, Any]:
        raw = self.repo.stats_since(project_id, start_of_utc_day(self.clock()))
        avg = raw.get("avg_duration")
        return {
            "actions_today": int(raw.get("actions") or 0),
            "errors_today": int(raw.get("errors") or 0),
            "avg_cycle_time": round(avg) if avg is not None else None,
        }

    def clear_runs(self, project_id: str, older_than_days: int) -> dict[str, int]:
        if not isinstance(older_than_days, int) or older_than_days < 0:
            raise ValidationError("older_than_days must be a non-negative integer")
        cutoff = self.clock() - older_than_days * DAY_MS
        deleted = self.repo.delete_runs_before(project_id, cutoff)
        log.info("Cleared %d work loop runs for %s", deleted, project_id)
        return {"deleted": deleted}

    # -- cycle --

    def run_phase(self, project_id: str, cycle: int, phase: str, fn: PhaseFn) -> dict[str, Any]:
        """Run one phase, logging start/complete/error with its duration."""
        self.upsert_state(project_id, current_phase=phase)
        self.log_run(project_id, cycle, phase, "phase_start")
        started = self.timer()
        try:
            result = fn(project_id, cycle)
        except Exception as exc:
            duration = int((self.timer() - started) * 1000)
            log.exception("Work loop phase %s failed for %s", phase, project_id)
            self.log_run(
                project_id,
                cycle,
                "error",
                "phase_error",
                details={"phase": phase, "error": str(exc)},
                duration_ms=duration,
            )
            self.upsert_state(
                project_id, status="error", current_phase="error", error_message=str(exc)
            )
            return {"ok": False, "error": str(exc)}
        duration = int((self.timer() - started) * 1000)
        action = "phase_failed" if result.get("error") else "phase_complete"
        self.log_run(project_id, cycle, phase, action, details=result, duration_ms=duration)
        return {"ok": True, **result}

    def run_cycle(self, project_id: str) -> dict[str, Any]:
        state = self.repo.get_state(project_id)
        if state and state["status"] in ("paused", "stopped"):
            self.log_run(
                project_id,
                state["current_cycle"],
                "idle",
                "skipped",
                details={"status": state["status"]},
            )
            return {"skipped": True, "status": state["status"], "cycle": state["current_cycle"]}

        cycle = (state["current_cycle"] if state else 0) + 1
        self.upsert_state(project_id, status="running", current_cycle=cycle, error_message=None)
        phases: dict[str, PhaseFn] = {
            "cleanup": self._cleanup_phase,
            "review": self._review_phase,
            "work": self._work_phase,
            "analyze": self._analyze_phase,
        }
        results: dict[str, Any] = {}
        for phase in CYCLE_PHASES:
            results[phase] = self.run_phase(project_id, cycle, phase, phases[phase])
            if not results[phase]["ok"]:
                return {"skipped": False, "cycle": cycle, "ok": False, "phases": results}

        self.upsert_state(project_id, current_phase="idle", last_cycle_at=self.clock())
        return {"skipped": False, "cycle": cycle, "ok": True, "phases": results}

    def _cleanup_phase(self, project_id: str, cycle: int) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.messages is not None:
            result["messages"] = self.messages.recover(self.config.stuck_message_minutes, "retry")
        if self.signals is not None:
            result["signals"] = self.signals.recover(self.config.stuck_signal_minutes, "retry")
            result["redelivered"] = self.signals.redeliver_failed_responses()
        return result

    def _review_phase(self, project_id: str, cycle: int) -> dict[str, Any]:
        if self.store is None:
            return {}
        in_review = self.store.list(project_id, "in_review")
        cutoff = self.clock() - self.config.stale_review_minutes * 60_000
        stale = [t["id"] for t in in_review if t["updated_at"] < cutoff]
        return {"in_review": len(in_review), "stale": stale}

    def _work_phase(self, project_id: str, cycle: int) -> dict[str, Any]:
        if self.store is None or self.dispatcher is None:
            return {}
        state = self.repo.get_state(project_id)
        assert state is not None
        capacity = state["max_agents"] - state["active_agents"]
        running_global = len(self.store.tasks.list_by_dispatch_status(IN_FLIGHT_STATUSES))
        capacity = min(capacity, self.config.max_agents_global - running_global)

        ready = sorted(
            self.store.list(project_id, "ready"),
            key=lambda t: (PRIORITY_ORDER.get(t["priority"], 9), t["position"]),
        )
        spawned = failed = blocked = 0
        for task in ready:
            if capacity <= 0:
                break
            if task["dispatch_status"] in IN_FLIGHT_STATUSES:
                continue
            if self.store.graph.incomplete_prerequisites(task["id"]):
                blocked += 1
                continue
            # a pending task was requested by someone else; spawn it as requested
            if task["dispatch_status"] == "pending":
                agent = task["assignee"]
            else:
                agent = task["assignee"] or default_agent_for_role(task["role"])
                self.dispatcher.request_dispatch(task["id"], agent, requested_by="work_loop")
            try:
                outcome = self.dispatcher.dispatch(task["id"])
            except (DependencyBlocked, Conflict) as exc:
                blocked += 1
                self.log_run(
                    project_id,
                    cycle,
                    "spawning",
                    "spawn_skipped",
                    task_id=task["id"],
                    details={"error": exc.message, "code": exc.code},
                )
                continue
            claimed = outcome["task"]
            self.log_run(
                project_id,
                cycle,
                "spawning",
                "spawned" if outcome["ok"] else "spawn_failed",
                task_id=task["id"],
                session_key=claimed["session_key"],
                details={"agent_id": agent, "error": outcome["error"]},
            )
            if outcome["ok"]:
                spawned += 1
                capacity -= 1
            else:
                failed += 1
        return {"ready": len(ready), "spawned": spawned, "spawn_failed": failed, "blocked": blocked}

    def _analyze_phase(self, project_id: str, cycle: int) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.store is not None:
            cutoff = self.clock() - self.config.stale_task_minutes * 60_000
            in_progress = self.store.list(project_id, "in_progress")
            result["stale_tasks"] = [t["id"] for t in in_progress if t["updated_at"] < cutoff]
        if self.signals is not None:
            result["pending_signals"] = self.signals.signals.pending_count()
        return result
