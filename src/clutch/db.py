"""SQLite database for clutch state."""

from __future__ import annotations

import contextlib
import sqlite3
import time
import uuid
from collections.abc import Iterator
from pathlib import Path
from typing import TypedDict, cast

from clutch.errors import NotFound, ValidationError, require_text
from clutch.paths import DEFAULT_DB_PATH

VALID_TASK_STATUSES = ("backlog", "ready", "in_progress", "in_review", "done")
VALID_TASK_PRIORITIES = {"low", "medium", "high", "urgent"}
VALID_TASK_ROLES = {"any", "pm", "dev", "qa", "research", "security"}
VALID_DISPATCH_STATUSES = {"pending", "spawning", "active", "completed", "failed"}
DISPATCH_ACTIVE_STATUSES = {"pending", "spawning", "active"}

VALID_SIGNAL_KINDS = {"question", "blocker", "alert", "fyi"}
VALID_SIGNAL_SEVERITIES = {"normal", "high", "critical"}
NON_BLOCKING_SIGNAL_KINDS = {"fyi"}

VALID_DELIVERY_STATUSES = {"sent", "delivered", "processing", "responded", "failed"}
DELIVERY_TERMINAL_STATUSES = {"responded", "failed"}

VALID_COMMENT_AUTHOR_TYPES = {"human", "agent", "system"}
VALID_COMMENT_TYPES = {"comment", "status_change", "completion", "system"}
VALID_NOTIFICATION_TYPES = {"escalation", "signal_failed", "system"}

VALID_LOOP_STATUSES = {"running", "paused", "stopped", "error"}
VALID_LOOP_PHASES = {
    "cleanup",
    "review",
    "work",
    "analyze",
    "idle",
    "error",
    "notify",
    "triage",
    "spawning",
}

VALID_RECOVERY_ACTIONS = {"mark_failed", "retry"}

TASK_TITLE_MAX_LENGTH = 200


def now_ms() -> int:
    """Current time as integer epoch milliseconds."""
    return int(time.time() * 1000)


def new_id() -> str:
    return uuid.uuid4().hex[:12]


# Bump when adding migrations. 0 = fresh file.
SCHEMA_VERSION = 3

SCHEMA = """\
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT UNIQUE NOT NULL,
    dir TEXT NOT NULL,
    repo_url TEXT,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'backlog',
    priority TEXT NOT NULL DEFAULT 'medium',
    role TEXT,
    assignee TEXT,
    tags TEXT NOT NULL DEFAULT '[]',
    position INTEGER NOT NULL DEFAULT 0,
    dispatch_status TEXT,
    dispatch_requested_at INTEGER,
    dispatch_requested_by TEXT,
    dispatch_error TEXT,
    session_key TEXT,
    run_id TEXT,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    completed_at INTEGER
);

CREATE TABLE IF NOT EXISTS task_dependencies (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    depends_on_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    created_at INTEGER NOT NULL,
    UNIQUE (task_id, depends_on_id),
    CHECK (task_id != depends_on_id)
);

CREATE TABLE IF NOT EXISTS comments (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    author TEXT NOT NULL,
    author_type TEXT NOT NULL DEFAULT 'human',
    content TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT 'comment',
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS signals (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    session_key TEXT NOT NULL,
    agent_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    severity TEXT NOT NULL DEFAULT 'normal',
    message TEXT NOT NULL,
    blocking INTEGER NOT NULL,
    response TEXT,
    responded_at INTEGER,
    responded_by TEXT,
    notification_status TEXT,
    notification_error TEXT,
    delivered_at INTEGER,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS chats (
    id TEXT PRIMARY KEY,
    project_id TEXT REFERENCES projects(id) ON DELETE CASCADE,
    title TEXT NOT NULL DEFAULT '',
    agent_id TEXT,
    session_key TEXT,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS chat_messages (
    id TEXT PRIMARY KEY,
    chat_id TEXT NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
    author TEXT NOT NULL,
    content TEXT NOT NULL,
    delivery_status TEXT NOT NULL DEFAULT 'sent',
    status_changed_at INTEGER NOT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    failure_reason TEXT,
    is_automated INTEGER NOT NULL DEFAULT 0,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS notifications (
    id TEXT PRIMARY KEY,
    project_id TEXT,
    task_id TEXT,
    type TEXT NOT NULL,
    severity TEXT NOT NULL DEFAULT 'normal',
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    read_at INTEGER,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS task_events (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL,
    project_id TEXT NOT NULL,
    ordinal INTEGER NOT NULL,
    type TEXT NOT NULL,
    actor TEXT NOT NULL,
    data TEXT NOT NULL DEFAULT '{}',
    created_at INTEGER NOT NULL,
    UNIQUE (task_id, ordinal)
);

CREATE TABLE IF NOT EXISTS task_logs (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL,
    level TEXT NOT NULL,
    message TEXT NOT NULL,
    source TEXT NOT NULL DEFAULT 'dispatch',
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS work_loop_state (
    project_id TEXT PRIMARY KEY REFERENCES projects(id) ON DELETE CASCADE,
    status TEXT NOT NULL DEFAULT 'stopped',
    current_phase TEXT,
    current_cycle INTEGER NOT NULL DEFAULT 0,
    active_agents INTEGER NOT NULL DEFAULT 0,
    max_agents INTEGER NOT NULL DEFAULT 2,
    last_cycle_at INTEGER,
    error_message TEXT,
    updated_at INTEGER NOT NULL,
    CHECK (active_agents >= 0 AND active_agents <= max_agents)
);

CREATE TABLE IF NOT EXISTS work_loop_runs (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    cycle INTEGER NOT NULL,
    phase TEXT NOT NULL,
    action TEXT NOT NULL,
    task_id TEXT,
    session_key TEXT,
    details TEXT,
    duration_ms INTEGER,
    created_at INTEGER NOT NULL
);
"""


class ProjectRow(TypedDict):
    id: str
    name: str
    dir: str
    repo_url: str | None
    created_at: int


class TaskRow(TypedDict):
    id: str
    project_id: str
    title: str
    description: str
    status: str
    priority: str
    role: str | None
    assignee: str | None
    tags: str
    position: int
    dispatch_status: str | None
    dispatch_requested_at: int | None
    dispatch_requested_by: str | None
    dispatch_error: str | None
    session_key: str | None
    run_id: str | None
    created_at: int
    updated_at: int
    completed_at: int | None


class DependencyRow(TypedDict):
    id: str
    task_id: str
    depends_on_id: str
    created_at: int


class CommentRow(TypedDict):
    id: str
    task_id: str
    author: str
    author_type: str
    content: str
    type: str
    created_at: int


class SignalRow(TypedDict):
    id: str
    task_id: str
    session_key: str
    agent_id: str
    kind: str
    severity: str
    message: str
    blocking: int
    response: str | None
    responded_at: int | None
    responded_by: str | None
    notification_status: str | None
    notification_error: str | None
    delivered_at: int | None
    retry_count: int
    last_escalated_at: int | None
    failed_at: int | None
    failure_reason: str | None
    created_at: int


class ChatMessageRow(TypedDict):
    id: str
    chat_id: str
    author: str
    content: str
    delivery_status: str
    status_changed_at: int
    retry_count: int
    cooldown_until: int | None
    failure_reason: str | None
    is_automated: int
    created_at: int


class NotificationRow(TypedDict):
    id: str
    project_id: str | None
    task_id: str | None
    type: str
    severity: str
    title: str
    message: str
    read_at: int | None
    created_at: int


class TaskEventRow(TypedDict):
    id: str
    task_id: str
    project_id: str
    ordinal: int
    type: str
    actor: str
    data: str
    created_at: int


class TaskLogRow(TypedDict):
    id: str
    task_id: str
    level: str
    message: str
    source: str
    created_at: int


class WorkLoopStateRow(TypedDict):
    project_id: str
    status: str
    current_phase: str | None
    current_cycle: int
    active_agents: int
    max_agents: int
    last_cycle_at: int | None
    error_message: str | None
    updated_at: int


class WorkLoopRunRow(TypedDict):
    id: str
    project_id: str
    cycle: int
    phase: str
    action: str
    task_id: str | None
    session_key: str | None
    details: str | None
    duration_ms: int | None
    created_at: int


def get_connection(db_path: Path = DEFAULT_DB_PATH) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=10000")
    conn.executescript(SCHEMA)

    current_version = conn.execute("PRAGMA user_version").fetchone()[0]
    if current_version < SCHEMA_VERSION:
        _migrate(conn, current_version)
        _create_indexes(conn)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        conn.commit()
    return conn


@contextlib.contextmanager
def connect(db_path: Path = DEFAULT_DB_PATH):
    """Context manager wrapper for get_connection().

    Usage:
        with connect() as conn:
            do_stuff(conn)
    # conn.close() is guaranteed even on exceptions.
    """
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


@contextlib.contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the block inside one ``BEGIN IMMEDIATE`` write transaction.

    IMMEDIATE takes the database write lock up front, so two writers touching
    the same task bucket serialize instead of interleaving their reads.
    Nested use joins the outer transaction.
    """
    if conn.in_transaction:
        yield conn
        return
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    conn.commit()


def _table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def _add_column_if_missing(
    conn: sqlite3.Connection, table: str, column: str, col_def: str, cols: set[str]
) -> None:
    if column not in cols:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_def}")


def _migrate_to_v1(conn: sqlite3.Connection) -> None:
    """v1: initial schema, nothing to alter."""


def _migrate_to_v2(conn: sqlite3.Connection) -> None:
    """v2: signal escalation and recovery bookkeeping."""
    cols = _table_columns(conn, "signals")
    _add_column_if_missing(conn, "signals", "retry_count", "INTEGER NOT NULL DEFAULT 0", cols)
    _add_column_if_missing(conn, "signals", "last_escalated_at", "INTEGER", cols)
    _add_column_if_missing(conn, "signals", "failed_at", "INTEGER", cols)
    _add_column_if_missing(conn, "signals", "failure_reason", "TEXT", cols)


def _migrate_to_v3(conn: sqlite3.Connection) -> None:
    """v3: retry cooldown on chat messages."""
    cols = _table_columns(conn, "chat_messages")
    _add_column_if_missing(conn, "chat_messages", "cooldown_until", "INTEGER", cols)


_MIGRATIONS = [
    (1, _migrate_to_v1),
    (2, _migrate_to_v2),
    (3, _migrate_to_v3),
]


def _migrate(conn: sqlite3.Connection, from_version: int) -> None:
    """Run schema migrations from from_version to SCHEMA_VERSION.

    Each migration checks column existence first, so it is safe on both old
    files and fresh ones. Commit is handled by the caller.
    """
    for version, migration_fn in _MIGRATIONS:
        if from_version < version:
            migration_fn(conn)


def _create_indexes(conn: sqlite3.Connection) -> None:
    """Create non-PK indexes for common query patterns. Idempotent."""
    conn.executescript("""
        CREATE INDEX IF NOT EXISTS idx_tasks_bucket ON tasks(project_id, status, position);
        CREATE INDEX IF NOT EXISTS idx_tasks_dispatch ON tasks(dispatch_status);
        CREATE INDEX IF NOT EXISTS idx_deps_task ON task_dependencies(task_id);
        CREATE INDEX IF NOT EXISTS idx_deps_depends_on ON task_dependencies(depends_on_id);
        CREATE INDEX IF NOT EXISTS idx_comments_task ON comments(task_id, created_at);
        CREATE INDEX IF NOT EXISTS idx_signals_task ON signals(task_id);
        CREATE INDEX IF NOT EXISTS idx_signals_pending ON signals(blocking, responded_at);
        CREATE INDEX IF NOT EXISTS idx_chat_messages_status
            ON chat_messages(delivery_status, status_changed_at);
        CREATE INDEX IF NOT EXISTS idx_task_events_task ON task_events(task_id, ordinal);
        CREATE INDEX IF NOT EXISTS idx_task_logs_task ON task_logs(task_id);
        CREATE INDEX IF NOT EXISTS idx_runs_project_created
            ON work_loop_runs(project_id, created_at);
    """)


# -- projects --


def add_project(
    conn: sqlite3.Connection, name: str, directory: str, repo_url: str | None = None
) -> ProjectRow:
    require_text(name, "Project name")
    require_text(directory, "Project directory")
    if get_project(conn, name):
        raise ValidationError(f"Project '{name}' already exists")
    row: ProjectRow = {
        "id": new_id(),
        "name": name,
        "dir": directory,
        "repo_url": repo_url,
        "created_at": now_ms(),
    }
    conn.execute(
        "INSERT INTO projects (id, name, dir, repo_url, created_at) VALUES (?, ?, ?, ?, ?)",
        (row["id"], row["name"], row["dir"], row["repo_url"], row["created_at"]),
    )
    conn.commit()
    return row


def list_projects(conn: sqlite3.Connection) -> list[ProjectRow]:
    rows = conn.execute("SELECT * FROM projects ORDER BY created_at").fetchall()
    return [cast(ProjectRow, dict(row)) for row in rows]


def get_project(conn: sqlite3.Connection, name_or_id: str) -> ProjectRow | None:
    row = conn.execute(
        "SELECT * FROM projects WHERE id = ? OR name = ?",
        (name_or_id, name_or_id),
    ).fetchone()
    return cast(ProjectRow, dict(row)) if row else None


def require_project(conn: sqlite3.Connection, name_or_id: str) -> ProjectRow:
    project = get_project(conn, name_or_id)
    if not project:
        raise NotFound(f"Project '{name_or_id}' not found")
    return project


# -- chats --


def create_chat(
    conn: sqlite3.Connection,
    *,
    project_id: str | None = None,
    title: str = "",
    agent_id: str | None = None,
    session_key: str | None = None,
) -> dict:
    chat_id = new_id()
    created_at = now_ms()
    conn.execute(
        "INSERT INTO chats (id, project_id, title, agent_id, session_key, created_at) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        (chat_id, project_id, title, agent_id, session_key, created_at),
    )
    conn.commit()
    return {
        "id": chat_id,
        "project_id": project_id,
        "title": title,
        "agent_id": agent_id,
        "session_key": session_key,
        "created_at": created_at,
    }


# -- task logs --


_INSERT_TASK_LOG = (
    "INSERT INTO task_logs (id, task_id, level, message, source, created_at) "
    "VALUES (?, ?, ?, ?, ?, ?)"
)


def add_task_log(
    conn: sqlite3.Connection,
    *,
    task_id: str,
    level: str,
    message: str,
    source: str = "dispatch",
) -> None:
    conn.execute(_INSERT_TASK_LOG, (new_id(), task_id, level, message, source, now_ms()))
    conn.commit()


def list_task_logs(
    conn: sqlite3.Connection, task_id: str, *, level: str | None = None
) -> list[TaskLogRow]:
    query = "SELECT * FROM task_logs WHERE task_id = ?"
    params: list[object] = [task_id]
    if level:
        query += " AND level = ?"
        params.append(level.upper())
    query += " ORDER BY created_at, rowid"
    return [cast(TaskLogRow, dict(row)) for row in conn.execute(query, params).fetchall()]
