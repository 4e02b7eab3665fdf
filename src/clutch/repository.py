"""Storage-agnostic repository interfaces, one per entity.

Services receive these through their constructors. ``clutch.store`` provides
the SQLite implementations; tests may substitute their own doubles.
"""

from __future__ import annotations

from collections.abc import Sequence
from contextlib import AbstractContextManager
from typing import Any, Protocol

from clutch.db import (
    ChatMessageRow,
    CommentRow,
    DependencyRow,
    NotificationRow,
    ProjectRow,
    SignalRow,
    TaskRow,
    WorkLoopRunRow,
    WorkLoopStateRow,
)


class ProjectRepository(Protocol):
    def get(self, project_id: str) -> ProjectRow | None: ...


class TaskRepository(Protocol):
    def atomic(self) -> AbstractContextManager[Any]: ...

    def get(self, task_id: str) -> TaskRow | None: ...

    def list_bucket(self, project_id: str, status: str) -> list[TaskRow]: ...

    def list_for_project(self, project_id: str, status: str | None = None) -> list[TaskRow]: ...

    def list_by_dispatch_status(
        self, statuses: Sequence[str], project_id: str | None = None
    ) -> list[TaskRow]: ...

    def insert(self, row: TaskRow) -> None: ...

    def update_fields(self, task_id: str, values: dict[str, Any]) -> None: ...

    def set_positions(self, positions: Sequence[tuple[str, int]]) -> None: ...

    def compare_and_set_dispatch(
        self,
        task_id: str,
        expected: Sequence[str | None],
        values: dict[str, Any],
    ) -> bool: ...

    def delete(self, task_id: str) -> None: ...


class DependencyRepository(Protocol):
    def get(self, edge_id: str) -> DependencyRow | None: ...

    def find(self, task_id: str, depends_on_id: str) -> DependencyRow | None: ...

    def insert(self, row: DependencyRow) -> None: ...

    def delete(self, edge_id: str) -> bool: ...

    def depends_on_ids(self, task_id: str) -> list[str]: ...

    def prerequisites(self, task_id: str) -> list[dict[str, Any]]: ...

    def dependents(self, task_id: str) -> list[dict[str, Any]]: ...

    def delete_for_task(self, task_id: str) -> int: ...


class CommentRepository(Protocol):
    def insert(self, row: CommentRow) -> None: ...

    def list_for_task(self, task_id: str, limit: int | None = None) -> list[CommentRow]: ...

    def delete_for_task(self, task_id: str) -> int: ...


class SignalRepository(Protocol):
    def insert(self, row: SignalRow) -> None: ...

    def get(self, signal_id: str) -> SignalRow | None: ...

    def try_respond(self, signal_id: str, response: str, responder: str, now: int) -> bool: ...

    def record_notification(
        self, signal_id: str, status: str, error: str | None, delivered_at: int | None
    ) -> None: ...

    def list(
        self,
        *,
        task_id: str | None = None,
        kind: str | None = None,
        only_blocking: bool = False,
        only_unresponded: bool = False,
        limit: int = 50,
    ) -> list[SignalRow]: ...

    def pending_count(self, task_id: str | None = None) -> int: ...

    def stuck(self, cutoff: int, limit: int) -> list[SignalRow]: ...

    def failed_notifications(self, limit: int) -> list[SignalRow]: ...

    def mark_failed(self, signal_ids: Sequence[str], reason: str, now: int) -> int: ...

    def record_escalation(self, signal_id: str, now: int) -> None: ...

    def delete_for_task(self, task_id: str) -> int: ...


class MessageRepository(Protocol):
    def insert(self, row: ChatMessageRow) -> None: ...

    def get(self, message_id: str) -> ChatMessageRow | None: ...

    def update_status(
        self, message_id: str, status: str, changed_at: int, failure_reason: str | None
    ) -> None: ...

    def stuck(self, cutoff: int, now: int, limit: int) -> list[ChatMessageRow]: ...

    def mark_failed(self, message_ids: Sequence[str], reason: str, now: int) -> int: ...

    def reset_for_retry(self, message_id: str, now: int, cooldown_until: int) -> None: ...

    def chat_exists(self, chat_id: str) -> bool: ...


class NotificationRepository(Protocol):
    def insert(self, row: NotificationRow) -> None: ...

    def list(self, *, unread_only: bool = False, limit: int = 50) -> list[NotificationRow]: ...


class WorkLoopRepository(Protocol):
    def get_state(self, project_id: str) -> WorkLoopStateRow | None: ...

    def upsert_state(self, project_id: str, values: dict[str, Any], now: int) -> None: ...

    def insert_run(self, row: WorkLoopRunRow) -> None: ...

    def list_runs(
        self, project_id: str, limit: int, before: int | None = None
    ) -> list[WorkLoopRunRow]: ...

    def stats_since(self, project_id: str, since: int) -> dict[str, Any]: ...

    def delete_runs_before(self, project_id: str, cutoff: int) -> int: ...

    def try_acquire_slot(self, project_id: str, now: int) -> bool: ...

    def release_slot(self, project_id: str, now: int) -> bool: ...
