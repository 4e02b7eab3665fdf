"""Task lifecycle: creation, ordered columns, and dependency-gated moves."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Sequence
from typing import Any

from clutch.db import (
    TASK_TITLE_MAX_LENGTH,
    VALID_COMMENT_AUTHOR_TYPES,
    VALID_COMMENT_TYPES,
    VALID_TASK_PRIORITIES,
    VALID_TASK_ROLES,
    VALID_TASK_STATUSES,
    CommentRow,
    TaskRow,
    new_id,
    now_ms,
)
from clutch.dependencies import DependencyGraph
from clutch.errors import (
    DependencyBlocked,
    NotFound,
    ValidationError,
    require_choice,
    require_text,
)
from clutch.events import (
    EventSink,
    NullSink,
    TaskCreated,
    TaskDeleted,
    TaskMoved,
    TaskUpdated,
)
from clutch.repository import (
    CommentRepository,
    DependencyRepository,
    ProjectRepository,
    SignalRepository,
    TaskRepository,
)

log = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("title", "description", "priority", "role", "assignee", "tags")

# Entering these statuses requires every prerequisite to be done.
GATED_STATUSES = {"in_progress"}


def _validate_title(title: object) -> str:
    text = require_text(title, "Task title").strip()
    if len(text) > TASK_TITLE_MAX_LENGTH:
        raise ValidationError(f"Task title must be {TASK_TITLE_MAX_LENGTH} characters or less")
    return text


def _validate_role(role: object) -> str | None:
    if role is None:
        return None
    return require_choice(role, VALID_TASK_ROLES, "role")


def _encode_tags(tags: object) -> str:
    if tags is None:
        return "[]"
    if not isinstance(tags, (list, tuple)):
        raise ValidationError("tags must be a list of strings")
    cleaned: list[str] = []
    for tag in tags:
        if not isinstance(tag, str) or not tag.strip():
            raise ValidationError("tags must be a list of non-empty strings")
        if tag.strip() not in cleaned:
            cleaned.append(tag.strip())
    return json.dumps(cleaned)


def decode_tags(raw: str | None) -> list[str]:
    if not raw:
        return []
    value = json.loads(raw)
    return [t for t in value if isinstance(t, str)] if isinstance(value, list) else []


def task_to_dict(task: TaskRow) -> dict[str, Any]:
    """JSON-ready view of a task row with tags decoded."""
    data: dict[str, Any] = dict(task)
    data["tags"] = decode_tags(task["tags"])
    return data


def place_in_bucket(
    bucket: Sequence[TaskRow], task_id: str, target_index: int | None
) -> list[tuple[str, int]]:
    """Return (id, position) pairs for *bucket* with *task_id* at *target_index*.

    *bucket* must not already contain the task. The index is clamped to the
    bucket bounds; ``None`` appends. Positions come out as 0..n-1.
    """
    ids = [t["id"] for t in bucket if t["id"] != task_id]
    index = len(ids) if target_index is None else max(0, min(int(target_index), len(ids)))
    ids.insert(index, task_id)
    return [(tid, position) for position, tid in enumerate(ids)]


def compact_bucket(bucket: Sequence[TaskRow], exclude: str | None = None) -> list[tuple[str, int]]:
    ids = [t["id"] for t in bucket if t["id"] != exclude]
    return [(tid, position) for position, tid in enumerate(ids)]


class TaskStore:
    """Owns tasks and the backlog -> ready -> in_progress -> in_review -> done machine.

    Bucket reindexing and the dependency gate for a move run inside one
    repository transaction, so concurrent moves cannot leave duplicate or
    missing positions in a (project, status) bucket.
    """

    def __init__(
        self,
        tasks: TaskRepository,
        dependencies: DependencyRepository,
        comments: CommentRepository,
        projects: ProjectRepository,
        signals: SignalRepository | None = None,
        *,
        events: EventSink | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.tasks = tasks
        self.dependencies = dependencies
        self.graph = DependencyGraph(dependencies, tasks, clock=clock)
        self.comments = comments
        self.projects = projects
        self.signals = signals
        self.events = events or NullSink()
        self.clock = clock

    def get(self, task_id: str) -> TaskRow:
        task = self.tasks.get(task_id)
        if not task:
            raise NotFound(f"Task '{task_id}' not found")
        return task

    def list(self, project_id: str, status: str | None = None) -> list[TaskRow]:
        if status is not None:
            require_choice(status, set(VALID_TASK_STATUSES), "status")
        return self.tasks.list_for_project(project_id, status)

    def create(
        self,
        project_id: str,
        title: str,
        *,
        description: str = "",
        priority: str = "medium",
        role: str | None = None,
        assignee: str | None = None,
        tags: list[str] | None = None,
        status: str = "backlog",
        actor: str = "human",
    ) -> TaskRow:
        clean_title = _validate_title(title)
        require_choice(priority, VALID_TASK_PRIORITIES, "priority")
        require_choice(status, set(VALID_TASK_STATUSES), "status")
        clean_role = _validate_role(role)
        encoded_tags = _encode_tags(tags)
        if not self.projects.get(project_id):
            raise NotFound(f"Project '{project_id}' not found")

        now = self.clock()
        with self.tasks.atomic():
            bucket = self.tasks.list_bucket(project_id, status)
            row: TaskRow = {
                "id": new_id(),
                "project_id": project_id,
                "title": clean_title,
                "description": description or "",
                "status": status,
                "priority": priority,
                "role": clean_role,
                "assignee": assignee,
                "tags": encoded_tags,
                "position": len(bucket),
                "dispatch_status": None,
                "dispatch_requested_at": None,
                "dispatch_requested_by": None,
                "dispatch_error": None,
                "session_key": None,
                "run_id": None,
                "created_at": now,
                "updated_at": now,
                "completed_at": now if status == "done" else None,
            }
            self.tasks.insert(row)
            self.tasks.set_positions(compact_bucket([*bucket, row]))
            self.events.emit(
                TaskCreated(
                    task_id=row["id"],
                    project_id=project_id,
                    actor=actor,
                    title=clean_title,
                    status=status,
                    position=row["position"],
                )
            )
        log.info("Created task %s in %s/%s", row["id"], project_id, status)
        return row

    def update(self, task_id: str, fields: dict[str, Any], *, actor: str = "human") -> TaskRow:
        if not fields:
            raise ValidationError("No fields to update")
        if "status" in fields:
            raise ValidationError("Use move to change a task's status")
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown task fields: {', '.join(sorted(unknown))}")

        values: dict[str, Any] = {}
        for key, value in fields.items():
            if key == "title":
                values["title"] = _validate_title(value)
            elif key == "priority":
                values["priority"] = require_choice(value, VALID_TASK_PRIORITIES, "priority")
            elif key == "role":
                values["role"] = _validate_role(value)
            elif key == "tags":
                values["tags"] = _encode_tags(value)
            elif key == "description":
                values["description"] = value or ""
            else:
                values[key] = value

        with self.tasks.atomic():
            task = self.get(task_id)
            values["updated_at"] = self.clock()
            self.tasks.update_fields(task_id, values)
            self.events.emit(
                TaskUpdated(
                    task_id=task_id,
                    project_id=task["project_id"],
                    actor=actor,
                    changed=sorted(fields),
                )
            )
        return self.get(task_id)

    def move(
        self,
        task_id: str,
        new_status: str,
        target_index: int | None = None,
        *,
        actor: str = "system",
    ) -> TaskRow:
        """Move a task to *new_status* at *target_index* (default: end of column).

        Raises NotFound, ValidationError for an unknown status, and
        DependencyBlocked when entering in_progress with unfinished
        prerequisites. Dependents are never promoted automatically.
        """
        require_choice(new_status, set(VALID_TASK_STATUSES), "status")
        if target_index is not None and (not isinstance(target_index, int) or target_index < 0):
            raise ValidationError("target_index must be a non-negative integer")

        with self.tasks.atomic():
            task = self.get(task_id)
            if new_status in GATED_STATUSES and task["status"] != new_status:
                blocking = self.graph.incomplete_prerequisites(task_id)
                if blocking:
                    raise DependencyBlocked(task_id, blocking)

            project_id = task["project_id"]
            old_status = task["status"]
            destination = self.tasks.list_bucket(project_id, new_status)
            positions = place_in_bucket(destination, task_id, target_index)
            if old_status != new_status:
                source = self.tasks.list_bucket(project_id, old_status)
                positions = compact_bucket(source, exclude=task_id) + positions

            now = self.clock()
            values: dict[str, Any] = {"status": new_status, "updated_at": now}
            if new_status == "done" and task["completed_at"] is None:
                values["completed_at"] = now
            self.tasks.update_fields(task_id, values)
            self.tasks.set_positions(positions)

            new_position = dict(positions)[task_id]
            self.events.emit(
                TaskMoved(
                    task_id=task_id,
                    project_id=project_id,
                    actor=actor,
                    from_status=old_status,
                    to_status=new_status,
                    from_position=task["position"],
                    to_position=new_position,
                )
            )
        log.info("Moved task %s %s -> %s", task_id, old_status, new_status)
        return self.get(task_id)

    def reorder(self, task_id: str, target_index: int, *, actor: str = "human") -> TaskRow:
        task = self.get(task_id)
        return self.move(task_id, task["status"], target_index, actor=actor)

    def delete(self, task_id: str, *, actor: str = "human") -> TaskRow:
        with self.tasks.atomic():
            task = self.get(task_id)
            self.dependencies.delete_for_task(task_id)
            self.comments.delete_for_task(task_id)
            if self.signals is not None:
                self.signals.delete_for_task(task_id)
            self.tasks.delete(task_id)
            bucket = self.tasks.list_bucket(task["project_id"], task["status"])
            self.tasks.set_positions(compact_bucket(bucket))
            self.events.emit(
                TaskDeleted(
                    task_id=task_id,
                    project_id=task["project_id"],
                    actor=actor,
                    title=task["title"],
                    status=task["status"],
                )
            )
        log.info("Deleted task %s", task_id)
        return task

    # -- comments --

    def add_comment(
        self,
        task_id: str,
        author: str,
        content: str,
        *,
        author_type: str = "human",
        comment_type: str = "comment",
    ) -> CommentRow:
        self.get(task_id)
        require_text(author, "author")
        require_text(content, "content")
        require_choice(author_type, VALID_COMMENT_AUTHOR_TYPES, "author_type")
        require_choice(comment_type, VALID_COMMENT_TYPES, "comment type")
        row: CommentRow = {
            "id": new_id(),
            "task_id": task_id,
            "author": author,
            "author_type": author_type,
            "content": content,
            "type": comment_type,
            "created_at": self.clock(),
        }
        self.comments.insert(row)
        return row

    def list_comments(self, task_id: str, limit: int | None = None) -> list[CommentRow]:
        """Comments oldest first (the most recent *limit* when given)."""
        self.get(task_id)
        rows = self.comments.list_for_task(task_id, limit)
        return sorted(rows, key=lambda c: (c["created_at"], c["id"]))
