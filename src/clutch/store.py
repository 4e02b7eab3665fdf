"""SQLite implementations of the repository interfaces.

All repositories of one ``SqliteStore`` share a connection. Writes commit
immediately unless they run inside ``SqliteStore.atomic()``, in which case
the outermost block commits (or rolls back) once.
"""

from __future__ import annotations

import contextlib
import json
import sqlite3
from collections.abc import Iterator, Sequence
from typing import Any, cast

from clutch.db import (
    ChatMessageRow,
    CommentRow,
    DependencyRow,
    NotificationRow,
    ProjectRow,
    SignalRow,
    TaskEventRow,
    TaskRow,
    WorkLoopRunRow,
    WorkLoopStateRow,
    get_project,
    new_id,
    now_ms,
    transaction,
)
from clutch.events import DomainEvent

_TASK_MUTABLE_COLUMNS = {
    "title",
    "description",
    "status",
    "priority",
    "role",
    "assignee",
    "tags",
    "position",
    "dispatch_status",
    "dispatch_requested_at",
    "dispatch_requested_by",
    "dispatch_error",
    "session_key",
    "run_id",
    "updated_at",
    "completed_at",
}

_LOOP_STATE_COLUMNS = {
    "status",
    "current_phase",
    "current_cycle",
    "active_agents",
    "max_agents",
    "last_cycle_at",
    "error_message",
}

_STATUS_ORDER_SQL = (
    "CASE status WHEN 'backlog' THEN 0 WHEN 'ready' THEN 1 WHEN 'in_progress' THEN 2 "
    "WHEN 'in_review' THEN 3 ELSE 4 END"
)

_SEVERITY_ORDER_SQL = "CASE severity WHEN 'critical' THEN 0 WHEN 'high' THEN 1 ELSE 2 END"


def _placeholders(values: Sequence[object]) -> str:
    return ", ".join("?" for _ in values)


def _set_clause(values: dict[str, Any], allowed: set[str]) -> str:
    unknown = set(values) - allowed
    if unknown:
        raise ValueError(f"Unknown columns: {', '.join(sorted(unknown))}")
    return ", ".join(f"{column} = ?" for column in values)


class SqliteStore:
    """One SQLite connection exposed as the full set of repositories."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self._depth = 0
        self.projects = SqliteProjectRepository(self)
        self.tasks = SqliteTaskRepository(self)
        self.dependencies = SqliteDependencyRepository(self)
        self.comments = SqliteCommentRepository(self)
        self.signals = SqliteSignalRepository(self)
        self.messages = SqliteMessageRepository(self)
        self.notifications = SqliteNotificationRepository(self)
        self.work_loop = SqliteWorkLoopRepository(self)
        self.events = SqliteEventLog(self)

    @contextlib.contextmanager
    def atomic(self) -> Iterator[sqlite3.Connection]:
        if self._depth:
            self._depth += 1
            try:
                yield self.conn
            finally:
                self._depth -= 1
            return
        self._depth = 1
        try:
            with transaction(self.conn):
                yield self.conn
        finally:
            self._depth = 0

    def commit(self) -> None:
        if not self._depth:
            self.conn.commit()


class _SqliteRepository:
    def __init__(self, store: SqliteStore):
        self.store = store
        self.conn = store.conn

    def atomic(self) -> contextlib.AbstractContextManager[sqlite3.Connection]:
        return self.store.atomic()


class SqliteProjectRepository(_SqliteRepository):
    def get(self, project_id: str) -> ProjectRow | None:
        return get_project(self.conn, project_id)


class SqliteTaskRepository(_SqliteRepository):
    def get(self, task_id: str) -> TaskRow | None:
        row = self.conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return cast(TaskRow, dict(row)) if row else None

    def list_bucket(self, project_id: str, status: str) -> list[TaskRow]:
        rows = self.conn.execute(
            "SELECT * FROM tasks WHERE project_id = ? AND status = ? "
            "ORDER BY position, created_at, id",
            (project_id, status),
        ).fetchall()
        return [cast(TaskRow, dict(row)) for row in rows]

    def list_for_project(self, project_id: str, status: str | None = None) -> list[TaskRow]:
        query = "SELECT * FROM tasks WHERE project_id = ?"
        params: list[object] = [project_id]
        if status:
            query += " AND status = ?"
            params.append(status)
        query += f" ORDER BY {_STATUS_ORDER_SQL}, position, created_at"
        return [cast(TaskRow, dict(row)) for row in self.conn.execute(query, params).fetchall()]

    def list_by_dispatch_status(
        self, statuses: Sequence[str], project_id: str | None = None
    ) -> list[TaskRow]:
        query = f"SELECT * FROM tasks WHERE dispatch_status IN ({_placeholders(statuses)})"
        params: list[object] = list(statuses)
        if project_id:
            query += " AND project_id = ?"
            params.append(project_id)
        query += " ORDER BY dispatch_requested_at, created_at"
        return [cast(TaskRow, dict(row)) for row in self.conn.execute(query, params).fetchall()]

    def insert(self, row: TaskRow) -> None:
        columns = list(row)
        self.conn.execute(
            f"INSERT INTO tasks ({', '.join(columns)}) VALUES ({_placeholders(columns)})",
            [row[c] for c in columns],  # type: ignore[literal-required]
        )
        self.store.commit()

    def update_fields(self, task_id: str, values: dict[str, Any]) -> None:
        if not values:
            return
        self.conn.execute(
            f"UPDATE tasks SET {_set_clause(values, _TASK_MUTABLE_COLUMNS)} WHERE id = ?",
            [*values.values(), task_id],
        )
        self.store.commit()

    def set_positions(self, positions: Sequence[tuple[str, int]]) -> None:
        self.conn.executemany(
            "UPDATE tasks SET position = ? WHERE id = ?",
            [(position, task_id) for task_id, position in positions],
        )
        self.store.commit()

    def compare_and_set_dispatch(
        self,
        task_id: str,
        expected: Sequence[str | None],
        values: dict[str, Any],
    ) -> bool:
        """Apply *values* only while dispatch_status is one of *expected*."""
        named = [s for s in expected if s is not None]
        clauses = []
        if named:
            clauses.append(f"dispatch_status IN ({_placeholders(named)})")
        if None in expected:
            clauses.append("dispatch_status IS NULL")
        where = " OR ".join(clauses) or "0"
        cursor = self.conn.execute(
            f"UPDATE tasks SET {_set_clause(values, _TASK_MUTABLE_COLUMNS)} "
            f"WHERE id = ? AND ({where})",
            [*values.values(), task_id, *named],
        )
        self.store.commit()
        return cursor.rowcount > 0

    def delete(self, task_id: str) -> None:
        self.conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        self.store.commit()


class SqliteDependencyRepository(_SqliteRepository):
    def get(self, edge_id: str) -> DependencyRow | None:
        row = self.conn.execute(
            "SELECT * FROM task_dependencies WHERE id = ?", (edge_id,)
        ).fetchone()
        return cast(DependencyRow, dict(row)) if row else None

    def find(self, task_id: str, depends_on_id: str) -> DependencyRow | None:
        row = self.conn.execute(
            "SELECT * FROM task_dependencies WHERE task_id = ? AND depends_on_id = ?",
            (task_id, depends_on_id),
        ).fetchone()
        return cast(DependencyRow, dict(row)) if row else None

    def insert(self, row: DependencyRow) -> None:
        self.conn.execute(
            "INSERT INTO task_dependencies (id, task_id, depends_on_id, created_at) "
            "VALUES (?, ?, ?, ?)",
            (row["id"], row["task_id"], row["depends_on_id"], row["created_at"]),
        )
        self.store.commit()

    def delete(self, edge_id: str) -> bool:
        cursor = self.conn.execute("DELETE FROM task_dependencies WHERE id = ?", (edge_id,))
        self.store.commit()
        return cursor.rowcount > 0

    def depends_on_ids(self, task_id: str) -> list[str]:
        rows = self.conn.execute(
            "SELECT depends_on_id FROM task_dependencies WHERE task_id = ? "
            "ORDER BY created_at, rowid",
            (task_id,),
        ).fetchall()
        return [row["depends_on_id"] for row in rows]

    def prerequisites(self, task_id: str) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT d.id AS edge_id, d.depends_on_id AS task_id, t.title, t.status, "
            "d.created_at FROM task_dependencies d "
            "JOIN tasks t ON t.id = d.depends_on_id "
            "WHERE d.task_id = ? ORDER BY d.created_at, d.rowid",
            (task_id,),
        ).fetchall()
        return [dict(row) for row in rows]

    def dependents(self, task_id: str) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT d.id AS edge_id, d.task_id AS task_id, t.title, t.status, "
            "d.created_at FROM task_dependencies d "
            "JOIN tasks t ON t.id = d.task_id "
            "WHERE d.depends_on_id = ? ORDER BY d.created_at, d.rowid",
            (task_id,),
        ).fetchall()
        return [dict(row) for row in rows]

    def delete_for_task(self, task_id: str) -> int:
        cursor = self.conn.execute(
            "DELETE FROM task_dependencies WHERE task_id = ? OR depends_on_id = ?",
            (task_id, task_id),
        )
        self.store.commit()
        return cursor.rowcount


class SqliteCommentRepository(_SqliteRepository):
    def insert(self, row: CommentRow) -> None:
        self.conn.execute(
            "INSERT INTO comments (id, task_id, author, author_type, content, type, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                row["id"],
                row["task_id"],
                row["author"],
                row["author_type"],
                row["content"],
                row["type"],
                row["created_at"],
            ),
        )
        self.store.commit()

    def list_for_task(self, task_id: str, limit: int | None = None) -> list[CommentRow]:
        """Newest comments first; *limit* keeps the most recent ones."""
        query = "SELECT * FROM comments WHERE task_id = ? ORDER BY created_at DESC, rowid DESC"
        params: list[object] = [task_id]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        return [cast(CommentRow, dict(row)) for row in self.conn.execute(query, params).fetchall()]

    def delete_for_task(self, task_id: str) -> int:
        cursor = self.conn.execute("DELETE FROM comments WHERE task_id = ?", (task_id,))
        self.store.commit()
        return cursor.rowcount


class SqliteSignalRepository(_SqliteRepository):
    def insert(self, row: SignalRow) -> None:
        columns = list(row)
        self.conn.execute(
            f"INSERT INTO signals ({', '.join(columns)}) VALUES ({_placeholders(columns)})",
            [row[c] for c in columns],  # type: ignore[literal-required]
        )
        self.store.commit()

    def get(self, signal_id: str) -> SignalRow | None:
        row = self.conn.execute("SELECT * FROM signals WHERE id = ?", (signal_id,)).fetchone()
        return cast(SignalRow, dict(row)) if row else None

    def try_respond(self, signal_id: str, response: str, responder: str, now: int) -> bool:
        """Set the response only if nobody answered first."""
        cursor = self.conn.execute(
            "UPDATE signals SET response = ?, responded_at = ?, responded_by = ? "
            "WHERE id = ? AND responded_at IS NULL",
            (response, now, responder, signal_id),
        )
        self.store.commit()
        return cursor.rowcount > 0

    def record_notification(
        self, signal_id: str, status: str, error: str | None, delivered_at: int | None
    ) -> None:
        self.conn.execute(
            "UPDATE signals SET notification_status = ?, notification_error = ?, "
            "delivered_at = COALESCE(?, delivered_at) WHERE id = ?",
            (status, error, delivered_at, signal_id),
        )
        self.store.commit()

    def list(
        self,
        *,
        task_id: str | None = None,
        kind: str | None = None,
        only_blocking: bool = False,
        only_unresponded: bool = False,
        limit: int = 50,
    ) -> list[SignalRow]:
        clauses: list[str] = []
        params: list[object] = []
        if task_id:
            clauses.append("task_id = ?")
            params.append(task_id)
        if kind:
            clauses.append("kind = ?")
            params.append(kind)
        if only_blocking:
            clauses.append("blocking = 1")
        if only_unresponded:
            clauses.append("responded_at IS NULL")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.conn.execute(
            f"SELECT * FROM signals {where} "
            f"ORDER BY {_SEVERITY_ORDER_SQL}, created_at DESC, rowid DESC LIMIT ?",
            [*params, limit],
        ).fetchall()
        return [cast(SignalRow, dict(row)) for row in rows]

    def pending_count(self, task_id: str | None = None) -> int:
        query = (
            "SELECT COUNT(*) FROM signals WHERE blocking = 1 AND responded_at IS NULL "
            "AND failed_at IS NULL"
        )
        params: list[object] = []
        if task_id:
            query += " AND task_id = ?"
            params.append(task_id)
        return int(self.conn.execute(query, params).fetchone()[0])

    def stuck(self, cutoff: int, limit: int) -> list[SignalRow]:
        rows = self.conn.execute(
            "SELECT * FROM signals WHERE blocking = 1 AND responded_at IS NULL "
            "AND failed_at IS NULL AND COALESCE(last_escalated_at, created_at) < ? "
            "ORDER BY created_at, rowid LIMIT ?",
            (cutoff, limit),
        ).fetchall()
        return [cast(SignalRow, dict(row)) for row in rows]

    def failed_notifications(self, limit: int) -> list[SignalRow]:
        rows = self.conn.execute(
            "SELECT * FROM signals WHERE responded_at IS NOT NULL "
            "AND notification_status = 'failed' ORDER BY responded_at, rowid LIMIT ?",
            (limit,),
        ).fetchall()
        return [cast(SignalRow, dict(row)) for row in rows]

    def mark_failed(self, signal_ids: Sequence[str], reason: str, now: int) -> int:
        if not signal_ids:
            return 0
        cursor = self.conn.execute(
            "UPDATE signals SET failed_at = ?, failure_reason = ? "
            f"WHERE id IN ({_placeholders(signal_ids)}) "
            "AND responded_at IS NULL AND failed_at IS NULL",
            [now, reason, *signal_ids],
        )
        self.store.commit()
        return cursor.rowcount

    def record_escalation(self, signal_id: str, now: int) -> None:
        self.conn.execute(
            "UPDATE signals SET retry_count = retry_count + 1, last_escalated_at = ? "
            "WHERE id = ? AND responded_at IS NULL AND failed_at IS NULL",
            (now, signal_id),
        )
        self.store.commit()

    def delete_for_task(self, task_id: str) -> int:
        cursor = self.conn.execute("DELETE FROM signals WHERE task_id = ?", (task_id,))
        self.store.commit()
        return cursor.rowcount


class SqliteMessageRepository(_SqliteRepository):
    def insert(self, row: ChatMessageRow) -> None:
        columns = list(row)
        self.conn.execute(
            f"INSERT INTO chat_messages ({', '.join(columns)}) VALUES ({_placeholders(columns)})",
            [row[c] for c in columns],  # type: ignore[literal-required]
        )
        self.store.commit()

    def get(self, message_id: str) -> ChatMessageRow | None:
        row = self.conn.execute(
            "SELECT * FROM chat_messages WHERE id = ?", (message_id,)
        ).fetchone()
        return cast(ChatMessageRow, dict(row)) if row else None

    def update_status(
        self, message_id: str, status: str, changed_at: int, failure_reason: str | None
    ) -> None:
        self.conn.execute(
            "UPDATE chat_messages SET delivery_status = ?, status_changed_at = ?, "
            "failure_reason = ? WHERE id = ?",
            (status, changed_at, failure_reason, message_id),
        )
        self.store.commit()

    def stuck(self, cutoff: int, now: int, limit: int) -> list[ChatMessageRow]:
        rows = self.conn.execute(
            "SELECT m.* FROM chat_messages m JOIN chats c ON c.id = m.chat_id "
            "WHERE m.delivery_status IN ('sent', 'delivered', 'processing') "
            "AND m.is_automated = 0 AND m.author NOT IN ('agent', 'system') "
            "AND (c.agent_id IS NULL OR m.author != c.agent_id) "
            "AND m.status_changed_at < ? "
            "AND (m.cooldown_until IS NULL OR m.cooldown_until <= ?) "
            "ORDER BY m.created_at, m.rowid LIMIT ?",
            (cutoff, now, limit),
        ).fetchall()
        return [cast(ChatMessageRow, dict(row)) for row in rows]

    def mark_failed(self, message_ids: Sequence[str], reason: str, now: int) -> int:
        if not message_ids:
            return 0
        cursor = self.conn.execute(
            "UPDATE chat_messages SET delivery_status = 'failed', failure_reason = ?, "
            f"status_changed_at = ? WHERE id IN ({_placeholders(message_ids)}) "
            "AND delivery_status NOT IN ('failed', 'responded')",
            [reason, now, *message_ids],
        )
        self.store.commit()
        return cursor.rowcount

    def reset_for_retry(self, message_id: str, now: int, cooldown_until: int) -> None:
        self.conn.execute(
            "UPDATE chat_messages SET delivery_status = 'sent', retry_count = retry_count + 1, "
            "status_changed_at = ?, cooldown_until = ?, failure_reason = NULL WHERE id = ?",
            (now, cooldown_until, message_id),
        )
        self.store.commit()

    def chat_exists(self, chat_id: str) -> bool:
        row = self.conn.execute("SELECT 1 FROM chats WHERE id = ?", (chat_id,)).fetchone()
        return row is not None


class SqliteNotificationRepository(_SqliteRepository):
    def insert(self, row: NotificationRow) -> None:
        columns = list(row)
        self.conn.execute(
            f"INSERT INTO notifications ({', '.join(columns)}) VALUES ({_placeholders(columns)})",
            [row[c] for c in columns],  # type: ignore[literal-required]
        )
        self.store.commit()

    def list(self, *, unread_only: bool = False, limit: int = 50) -> list[NotificationRow]:
        where = "WHERE read_at IS NULL" if unread_only else ""
        rows = self.conn.execute(
            f"SELECT * FROM notifications {where} ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [cast(NotificationRow, dict(row)) for row in rows]


class SqliteWorkLoopRepository(_SqliteRepository):
    def get_state(self, project_id: str) -> WorkLoopStateRow | None:
        row = self.conn.execute(
            "SELECT * FROM work_loop_state WHERE project_id = ?", (project_id,)
        ).fetchone()
        return cast(WorkLoopStateRow, dict(row)) if row else None

    def upsert_state(self, project_id: str, values: dict[str, Any], now: int) -> None:
        unknown = set(values) - _LOOP_STATE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown columns: {', '.join(sorted(unknown))}")
        columns = [*values, "updated_at"]
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns)
        self.conn.execute(
            f"INSERT INTO work_loop_state (project_id, {', '.join(columns)}) "
            f"VALUES (?, {_placeholders(columns)}) "
            f"ON CONFLICT(project_id) DO UPDATE SET {updates}",
            [project_id, *values.values(), now],
        )
        self.store.commit()

    def insert_run(self, row: WorkLoopRunRow) -> None:
        columns = list(row)
        self.conn.execute(
            f"INSERT INTO work_loop_runs ({', '.join(columns)}) VALUES ({_placeholders(columns)})",
            [row[c] for c in columns],  # type: ignore[literal-required]
        )
        self.store.commit()

    def list_runs(
        self, project_id: str, limit: int, before: int | None = None
    ) -> list[WorkLoopRunRow]:
        query = "SELECT * FROM work_loop_runs WHERE project_id = ?"
        params: list[object] = [project_id]
        if before is not None:
            query += " AND created_at < ?"
            params.append(before)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        return [
            cast(WorkLoopRunRow, dict(row)) for row in self.conn.execute(query, params).fetchall()
        ]

    def stats_since(self, project_id: str, since: int) -> dict[str, Any]:
        row = self.conn.execute(
            "SELECT COUNT(*) AS actions, "
            "COALESCE(SUM(CASE WHEN phase = 'error' THEN 1 ELSE 0 END), 0) AS errors, "
            "AVG(CASE WHEN duration_ms > 0 THEN duration_ms END) AS avg_duration "
            "FROM work_loop_runs WHERE project_id = ? AND created_at >= ?",
            (project_id, since),
        ).fetchone()
        return dict(row)

    def delete_runs_before(self, project_id: str, cutoff: int) -> int:
        cursor = self.conn.execute(
            "DELETE FROM work_loop_runs WHERE project_id = ? AND created_at < ?",
            (project_id, cutoff),
        )
        self.store.commit()
        return cursor.rowcount

    def try_acquire_slot(self, project_id: str, now: int) -> bool:
        cursor = self.conn.execute(
            "UPDATE work_loop_state SET active_agents = active_agents + 1, updated_at = ? "
            "WHERE project_id = ? AND active_agents < max_agents",
            (now, project_id),
        )
        self.store.commit()
        return cursor.rowcount > 0

    def release_slot(self, project_id: str, now: int) -> bool:
        cursor = self.conn.execute(
            "UPDATE work_loop_state SET active_agents = active_agents - 1, updated_at = ? "
            "WHERE project_id = ? AND active_agents > 0",
            (now, project_id),
        )
        self.store.commit()
        return cursor.rowcount > 0


class SqliteEventLog(_SqliteRepository):
    """EventSink that appends events to task_events with a per-task ordinal."""

    def emit(self, event: DomainEvent) -> None:
        with self.store.atomic():
            ordinal = self.conn.execute(
                "SELECT COALESCE(MAX(ordinal), 0) + 1 FROM task_events WHERE task_id = ?",
                (event.task_id,),
            ).fetchone()[0]
            self.conn.execute(
                "INSERT INTO task_events "
                "(id, task_id, project_id, ordinal, type, actor, data, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    new_id(),
                    event.task_id,
                    event.project_id,
                    ordinal,
                    event.type,
                    event.actor,
                    json.dumps(event.payload()),
                    now_ms(),
                ),
            )

    def list_events(self, task_id: str) -> list[TaskEventRow]:
        rows = self.conn.execute(
            "SELECT * FROM task_events WHERE task_id = ? ORDER BY ordinal", (task_id,)
        ).fetchall()
        return [cast(TaskEventRow, dict(row)) for row in rows]
