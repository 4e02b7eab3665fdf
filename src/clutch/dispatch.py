"""Dispatch tasks to the external agent runtime.

A dispatch goes pending -> spawning -> active (or failed). Each step is a
compare-and-set on ``dispatch_status`` so two dispatchers cannot spawn the
same task twice. Runtime failures are recorded on the task, not raised.
The task only moves to in_progress once the runtime accepted it, so a
failed spawn leaves it ready and the next work cycle retries it.
"""

from __future__ import annotations

import contextlib
import logging
import sqlite3
from collections.abc import Callable, Iterator
from typing import Any

from clutch.context import DispatchContextBuilder, build_task_label
from clutch.db import DISPATCH_ACTIVE_STATUSES, TaskRow, add_task_log, now_ms
from clutch.errors import (
    Conflict,
    DependencyBlocked,
    NotFound,
    UpstreamUnavailable,
    ValidationError,
    require_text,
)
from clutch.events import (
    DispatchFailed,
    DispatchStarted,
    EventSink,
    NullSink,
    TaskAssigned,
    TaskCompleted,
    TaskDiscarded,
)
from clutch.repository import ProjectRepository, WorkLoopRepository
from clutch.runtime import AgentRuntime
from clutch.tasks import TaskStore

log = logging.getLogger(__name__)

CONTEXT_COMMENT_LIMIT = 10
REDISPATCHABLE = (None, "completed", "failed")


class TaskLogHandler(logging.Handler):
    """Logging handler that persists log records to the task_logs table.

    Only records tagged with this handler's ``task_id`` are written, so several
    handlers can share one logger while dispatches run on other threads.
    """

    def __init__(self, conn: sqlite3.Connection, task_id: str, *, source: str = "dispatch"):
        super().__init__()
        self.conn = conn
        self.task_id = task_id
        self.source = source
        self.addFilter(self._is_own_record)

    def _is_own_record(self, record: logging.LogRecord) -> bool:
        return getattr(record, "task_id", None) == self.task_id

    def emit(self, record: logging.LogRecord) -> None:
        try:
            add_task_log(
                self.conn,
                task_id=self.task_id,
                level=record.levelname,
                message=self.format(record),
                source=self.source,
            )
        except Exception:
            self.handleError(record)


def build_session_key(agent_id: str, task: TaskRow) -> str:
    return f"agent:{agent_id}:{build_task_label(task)}"


class Dispatcher:
    def __init__(
        self,
        store: TaskStore,
        projects: ProjectRepository,
        runtime: AgentRuntime | None = None,
        *,
        builder: DispatchContextBuilder | None = None,
        work_loop: WorkLoopRepository | None = None,
        log_conn: sqlite3.Connection | None = None,
        events: EventSink | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.projects = projects
        self.runtime = runtime
        self.builder = builder or DispatchContextBuilder()
        self.work_loop = work_loop
        self.log_conn = log_conn
        self.events = events or NullSink()
        self.clock = clock

    @contextlib.contextmanager
    def _task_log(self, task_id: str) -> Iterator[logging.LoggerAdapter]:
        """Yield an adapter on the module logger that also writes to task_logs."""
        handler = None
        if self.log_conn is not None:
            handler = TaskLogHandler(self.log_conn, task_id)
            log.addHandler(handler)
        try:
            yield logging.LoggerAdapter(log, {"task_id": task_id})
        finally:
            if handler is not None:
                log.removeHandler(handler)

    # -- agent slots --

    def _acquire_slot(self, project_id: str) -> bool:
        """Take a lease when the project has work-loop state. False = untracked."""
        if self.work_loop is None or self.work_loop.get_state(project_id) is None:
            return False
        if not self.work_loop.try_acquire_slot(project_id, self.clock()):
            raise Conflict(f"No agent slot available for project '{project_id}'")
        return True

    def _release_slot(self, project_id: str) -> None:
        if self.work_loop is not None and self.work_loop.get_state(project_id) is not None:
            self.work_loop.release_slot(project_id, self.clock())

    # -- operations --

    def request_dispatch(
        self, task_id: str, agent_id: str | None = None, requested_by: str = "human"
    ) -> TaskRow:
        """Mark a task pending for an agent. Conflict if a dispatch is already live."""
        task = self.store.get(task_id)
        agent = agent_id or task["assignee"]
        if not agent:
            raise ValidationError("agent_id is required (task has no assignee)")
        if task["dispatch_status"] in DISPATCH_ACTIVE_STATUSES:
            raise Conflict(f"Task already has active dispatch ({task['dispatch_status']})")
        now = self.clock()
        ok = self.store.tasks.compare_and_set_dispatch(
            task_id,
            REDISPATCHABLE,
            {
                "dispatch_status": "pending",
                "dispatch_requested_at": now,
                "dispatch_requested_by": requested_by,
                "dispatch_error": None,
                "assignee": agent,
                "updated_at": now,
            },
        )
        if not ok:
            raise Conflict("Task already has active dispatch")
        self.events.emit(
            TaskAssigned(
                task_id=task_id, project_id=task["project_id"], actor=requested_by, agent_id=agent
            )
        )
        log.info("Dispatch requested for task %s -> %s", task_id, agent)
        return self.store.get(task_id)

    def list_pending(self, project_id: str | None = None) -> list[TaskRow]:
        return self.store.tasks.list_by_dispatch_status(["pending"], project_id)

    def preview_context(self, task_id: str, agent_id: str | None = None) -> dict[str, Any]:
        task = self.store.get(task_id)
        project = self.projects.get(task["project_id"])
        if not project:
            raise NotFound(f"Project '{task['project_id']}' not found")
        agent = agent_id or task["assignee"] or "agent"
        comments = self.store.list_comments(task_id, CONTEXT_COMMENT_LIMIT)
        return {
            "label": build_task_label(task),
            "context": self.builder.build_task_context(task, project, agent, comments),
        }

    def dispatch(
        self, task_id: str, *, model: str | None = None, timeout_seconds: float | None = None
    ) -> dict[str, Any]:
        """Spawn the agent for a pending task.

        Checks prerequisites, claims the dispatch (pending -> spawning), builds
        the context and calls the runtime. The task moves to in_progress only
        after a successful spawn. Returns ``{"ok", "task", "error"}``; runtime
        failures leave the task in place with dispatch_status ``failed``.
        """
        task = self.store.get(task_id)
        if task["dispatch_status"] != "pending":
            raise Conflict(
                f"Task '{task_id}' is not pending dispatch ({task['dispatch_status']})"
            )
        project = self.projects.get(task["project_id"])
        if not project:
            raise NotFound(f"Project '{task['project_id']}' not found")
        agent = task["assignee"] or "agent"
        claims_task = task["status"] in ("backlog", "ready")

        with self._task_log(task_id) as task_log:
            if claims_task:
                blocking = self.store.graph.incomplete_prerequisites(task_id)
                if blocking:
                    blocked = DependencyBlocked(task_id, blocking)
                    self._fail(task, agent, str(blocked), task_log)
                    raise blocked

            try:
                leased = self._acquire_slot(task["project_id"])
            except Conflict as exc:
                self._fail(task, agent, exc.message, task_log)
                raise

            if not self.store.tasks.compare_and_set_dispatch(
                task_id, ["pending"], {"dispatch_status": "spawning", "updated_at": self.clock()}
            ):
                if leased:
                    self._release_slot(task["project_id"])
                raise Conflict(f"Task '{task_id}' was claimed by another dispatcher")

            comments = self.store.list_comments(task_id, CONTEXT_COMMENT_LIMIT)
            context = self.builder.build_task_context(task, project, agent, comments)
            session_key = build_session_key(agent, task)
            task_log.info("Spawning %s for task %s (session %s)", agent, task_id, session_key)
            try:
                if self.runtime is None:
                    raise UpstreamUnavailable("No agent runtime configured")
                run_id = self.runtime.spawn(agent, context, session_key, model, timeout_seconds)
            except UpstreamUnavailable as exc:
                self._fail(task, agent, str(exc), task_log)
                if leased:
                    self._release_slot(task["project_id"])
                return {"ok": False, "task": self.store.get(task_id), "error": str(exc)}

            if claims_task:
                try:
                    task = self.store.move(task_id, "in_progress", actor=agent)
                except DependencyBlocked as exc:
                    # a prerequisite was added while the agent was spawning
                    self._end_session(session_key, task_log)
                    self._fail(task, agent, str(exc), task_log)
                    if leased:
                        self._release_slot(task["project_id"])
                    raise

            self.store.tasks.compare_and_set_dispatch(
                task_id,
                ["spawning"],
                {
                    "dispatch_status": "active",
                    "session_key": session_key,
                    "run_id": run_id,
                    "dispatch_error": None,
                    "updated_at": self.clock(),
                },
            )
            task_log.info("Agent %s running task %s (run %s)", agent, task_id, run_id)
            self.events.emit(
                DispatchStarted(
                    task_id=task_id,
                    project_id=task["project_id"],
                    actor=agent,
                    agent_id=agent,
                    session_key=session_key,
                    run_id=run_id,
                )
            )
            return {"ok": True, "task": self.store.get(task_id), "error": None}

    def _end_session(self, session_key: str, task_log: logging.LoggerAdapter) -> None:
        if self.runtime is None:
            return
        try:
            self.runtime.delete_session(session_key)
        except UpstreamUnavailable as exc:
            task_log.warning("Could not end session %s: %s", session_key, exc)

    def _fail(
        self, task: TaskRow, agent: str, error: str, task_log: logging.LoggerAdapter
    ) -> None:
        task_log.warning("Dispatch of task %s failed: %s", task["id"], error)
        self.store.tasks.compare_and_set_dispatch(
            task["id"],
            ["pending", "spawning"],
            {"dispatch_status": "failed", "dispatch_error": error, "updated_at": self.clock()},
        )
        self.events.emit(
            DispatchFailed(
                task_id=task["id"],
                project_id=task["project_id"],
                actor=agent,
                agent_id=agent,
                error=error,
            )
        )

    def complete(
        self,
        task_id: str,
        summary: str,
        *,
        pr_url: str | None = None,
        notes: str | None = None,
        agent: str | None = None,
    ) -> TaskRow:
        """Record an agent's completion: in_review when a PR is open, else done."""
        require_text(summary, "summary")
        task = self.store.get(task_id)
        author = agent or task["assignee"] or "agent"
        content = f"## Task Completed\n\n{summary}"
        if pr_url:
            content += f"\n\n**Pull Request**: {pr_url}"
        if notes:
            content += f"\n\n**Notes**: {notes}"
        self.store.add_comment(
            task_id, author, content, author_type="agent", comment_type="completion"
        )

        new_status = "in_review" if pr_url else "done"
        if task["status"] != new_status:
            self.store.move(task_id, new_status, actor=author)
        was_active = task["dispatch_status"] == "active"
        self.store.tasks.update_fields(
            task_id, {"dispatch_status": "completed", "updated_at": self.clock()}
        )
        if was_active:
            self._release_slot(task["project_id"])
        self.events.emit(
            TaskCompleted(
                task_id=task_id,
                project_id=task["project_id"],
                actor=author,
                status=new_status,
                pr_url=pr_url,
            )
        )
        return self.store.get(task_id)

    def abort(self, task_id: str, triggered_by: str = "human") -> dict[str, Any]:
        """Stop an in-progress task: end its session best-effort and discard it."""
        task = self.store.get(task_id)
        if task["status"] != "in_progress":
            raise ValidationError(f"Task is not in_progress (current status: {task['status']})")

        errors: list[str] = []
        session_killed = False
        if task["session_key"]:
            if self.runtime is None:
                errors.append("No agent runtime configured; session may still be running")
            else:
                try:
                    self.runtime.delete_session(task["session_key"])
                    session_killed = True
                except UpstreamUnavailable as exc:
                    errors.append(f"Failed to kill session: {exc}")

        was_active = task["dispatch_status"] in ("spawning", "active")
        self.store.tasks.update_fields(
            task_id,
            {
                "dispatch_status": None,
                "session_key": None,
                "run_id": None,
                "updated_at": self.clock(),
            },
        )
        self.store.move(task_id, "done", actor=triggered_by)
        if was_active:
            self._release_slot(task["project_id"])
        self.events.emit(
            TaskDiscarded(
                task_id=task_id,
                project_id=task["project_id"],
                actor=triggered_by,
                session_key=task["session_key"],
                session_killed=session_killed,
            )
        )
        log.info("Aborted task %s (session killed: %s)", task_id, session_killed)
        return {"success": True, "session_killed": session_killed, "errors": errors}
