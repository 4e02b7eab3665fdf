"""Agent-to-human signals: escalation, single response, and stuck recovery.

Response persistence and delivery to the agent are decoupled. ``respond``
commits the answer first; the runtime notification outcome is recorded on
the signal afterwards and never rolls the answer back. Failed deliveries
are healed by the recovery sweep, not by inline retries.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from clutch.db import (
    NON_BLOCKING_SIGNAL_KINDS,
    VALID_RECOVERY_ACTIONS,
    VALID_SIGNAL_KINDS,
    VALID_SIGNAL_SEVERITIES,
    NotificationRow,
    SignalRow,
    new_id,
    now_ms,
)
from clutch.errors import (
    Conflict,
    NotFound,
    UpstreamUnavailable,
    ValidationError,
    require_choice,
    require_text,
)
from clutch.events import EventSink, NullSink, SignalCreated, SignalResponded
from clutch.repository import NotificationRepository, SignalRepository, TaskRepository
from clutch.runtime import AgentRuntime

log = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50
DEFAULT_STUCK_LIMIT = 100
DEFAULT_MAX_RETRIES = 3
ESCALATING_SEVERITIES = {"high", "critical"}


def is_blocking(kind: str) -> bool:
    return kind not in NON_BLOCKING_SIGNAL_KINDS


def signal_to_dict(signal: SignalRow) -> dict[str, Any]:
    data: dict[str, Any] = dict(signal)
    data["blocking"] = bool(signal["blocking"])
    return data


def format_response_message(signal: SignalRow, response: str) -> str:
    return (
        f"[Signal response] Your {signal['kind']} on task {signal['task_id'][:8]} "
        f"was answered:\n\n{response}"
    )


class SignalChannel:
    def __init__(
        self,
        signals: SignalRepository,
        tasks: TaskRepository,
        notifications: NotificationRepository,
        runtime: AgentRuntime | None = None,
        *,
        events: EventSink | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        clock: Callable[[], int] = now_ms,
    ):
        self.signals = signals
        self.tasks = tasks
        self.notifications = notifications
        self.runtime = runtime
        self.events = events or NullSink()
        self.max_retries = max_retries
        self.clock = clock

    def get(self, signal_id: str) -> SignalRow:
        signal = self.signals.get(signal_id)
        if not signal:
            raise NotFound(f"Signal '{signal_id}' not found")
        return signal

    def create_signal(
        self,
        task_id: str,
        session_key: str,
        agent_id: str,
        kind: str,
        message: str,
        severity: str = "normal",
    ) -> SignalRow:
        """Record a signal from an agent. ``blocking`` is derived from *kind*."""
        require_text(message, "message")
        require_text(session_key, "session_key")
        require_text(agent_id, "agent_id")
        require_choice(kind, VALID_SIGNAL_KINDS, "kind")
        require_choice(severity, VALID_SIGNAL_SEVERITIES, "severity")
        task = self.tasks.get(task_id)
        if not task:
            raise NotFound(f"Task '{task_id}' not found")

        blocking = is_blocking(kind)
        row: SignalRow = {
            "id": new_id(),
            "task_id": task_id,
            "session_key": session_key,
            "agent_id": agent_id,
            "kind": kind,
            "severity": severity,
            "message": message,
            "blocking": int(blocking),
            "response": None,
            "responded_at": None,
            "responded_by": None,
            "notification_status": None,
            "notification_error": None,
            "delivered_at": None,
            "retry_count": 0,
            "last_escalated_at": None,
            "failed_at": None,
            "failure_reason": None,
            "created_at": self.clock(),
        }
        self.signals.insert(row)
        if blocking and severity in ESCALATING_SEVERITIES:
            self._notify(
                task["project_id"],
                task_id,
                "escalation",
                f"{severity.title()} {kind} from {agent_id}",
                message,
                severity=severity,
            )
        self.events.emit(
            SignalCreated(
                task_id=task_id,
                project_id=task["project_id"],
                actor=agent_id,
                signal_id=row["id"],
                kind=kind,
                severity=severity,
                blocking=blocking,
            )
        )
        log.info("Signal %s (%s, blocking=%s) on task %s", row["id"], kind, blocking, task_id)
        return row

    def _deliver(self, signal: SignalRow, response: str) -> bool:
        """Push a response to the originating session and record the outcome."""
        if self.runtime is None:
            self.signals.record_notification(
                signal["id"], "failed", "No agent runtime configured", None
            )
            return False
        try:
            self.runtime.send_message(
                signal["session_key"], format_response_message(signal, response)
            )
        except UpstreamUnavailable as exc:
            log.warning("Signal %s response not delivered: %s", signal["id"], exc)
            self.signals.record_notification(signal["id"], "failed", str(exc), None)
            return False
        self.signals.record_notification(signal["id"], "sent", None, self.clock())
        return True

    def respond(self, signal_id: str, response: str, responder: str = "human") -> dict[str, Any]:
        """Answer a signal exactly once and notify the agent best-effort.

        Returns ``{"signal": ..., "notification_sent": bool}``. A second
        answer raises Conflict and leaves the first one untouched.
        """
        require_text(response, "response")
        signal = self.get(signal_id)
        if signal["responded_at"] is not None:
            raise Conflict("Signal has already been responded to")
        if not self.signals.try_respond(signal_id, response, responder, self.clock()):
            raise Conflict("Signal has already been responded to")

        notification_sent = self._deliver(signal, response)
        task = self.tasks.get(signal["task_id"])
        if task:
            self.events.emit(
                SignalResponded(
                    task_id=signal["task_id"],
                    project_id=task["project_id"],
                    actor=responder,
                    signal_id=signal_id,
                    notification_sent=notification_sent,
                )
            )
        return {"signal": self.get(signal_id), "notification_sent": notification_sent}

    def list(
        self,
        *,
        task_id: str | None = None,
        kind: str | None = None,
        only_blocking: bool = False,
        only_unresponded: bool = False,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> dict[str, Any]:
        if kind is not None:
            require_choice(kind, VALID_SIGNAL_KINDS, "kind")
        if limit <= 0:
            raise ValidationError("limit must be positive")
        rows = self.signals.list(
            task_id=task_id,
            kind=kind,
            only_blocking=only_blocking,
            only_unresponded=only_unresponded,
            limit=limit,
        )
        return {"signals": rows, "pending_count": self.signals.pending_count(task_id)}

    def get_stuck_signals(
        self, age_threshold_ms: int, limit: int = DEFAULT_STUCK_LIMIT
    ) -> list[SignalRow]:
        """Blocking signals still unanswered past the threshold, oldest first."""
        if age_threshold_ms < 0:
            raise ValidationError("age threshold must be >= 0")
        return self.signals.stuck(self.clock() - age_threshold_ms, limit)

    def retry_signal(self, signal: SignalRow) -> None:
        """Re-escalate one unanswered signal, up to ``max_retries`` times."""
        if signal["retry_count"] >= self.max_retries:
            raise Conflict("Maximum retry attempts exceeded")
        task = self.tasks.get(signal["task_id"])
        self.signals.record_escalation(signal["id"], self.clock())
        self._notify(
            task["project_id"] if task else None,
            signal["task_id"],
            "escalation",
            f"Still waiting: {signal['kind']} from {signal['agent_id']}",
            signal["message"],
            severity=signal["severity"],
        )

    def recover(self, age_threshold_minutes: int, action: str) -> dict[str, Any]:
        """Resolve stuck signals. Safe to re-run: resolved items drop out of the query."""
        require_choice(action, VALID_RECOVERY_ACTIONS, "action")
        if age_threshold_minutes < 0:
            raise ValidationError("age threshold must be >= 0")
        stuck = self.get_stuck_signals(age_threshold_minutes * 60_000)
        processed = 0
        failed = 0

        if action == "mark_failed":
            reason = f"No response after {age_threshold_minutes}+ minutes"
            processed = self.signals.mark_failed([s["id"] for s in stuck], reason, self.clock())
            by_task: dict[str, list[SignalRow]] = {}
            for signal in stuck:
                by_task.setdefault(signal["task_id"], []).append(signal)
            for task_id, items in by_task.items():
                task = self.tasks.get(task_id)
                self._notify(
                    task["project_id"] if task else None,
                    task_id,
                    "signal_failed",
                    f"{len(items)} signal(s) marked failed",
                    reason,
                )
        else:
            for signal in stuck:
                try:
                    self.retry_signal(signal)
                    processed += 1
                except Exception as exc:
                    log.warning("Retry failed for signal %s: %s", signal["id"], exc)
                    failed += 1

        log.info("Signal recovery (%s): processed=%d failed=%d", action, processed, failed)
        return {"action": action, "processed": processed, "failed": failed}

    def redeliver_failed_responses(self, limit: int = DEFAULT_STUCK_LIMIT) -> dict[str, int]:
        """Resend answers whose notification to the agent failed earlier."""
        processed = 0
        failed = 0
        for signal in self.signals.failed_notifications(limit):
            if self._deliver(signal, signal["response"] or ""):
                processed += 1
            else:
                failed += 1
        return {"processed": processed, "failed": failed}

    def _notify(
        self,
        project_id: str | None,
        task_id: str | None,
        notification_type: str,
        title: str,
        message: str,
        *,
        severity: str = "normal",
    ) -> NotificationRow:
        row: NotificationRow = {
            "id": new_id(),
            "project_id": project_id,
            "task_id": task_id,
            "type": notification_type,
            "severity": severity,
            "title": title,
            "message": message,
            "read_at": None,
            "created_at": self.clock(),
        }
        self.notifications.insert(row)
        return row
