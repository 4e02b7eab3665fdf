"""Assemble the text handed to an agent when it is dispatched onto a task."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from clutch.agents_config import load_role_instructions
from clutch.db import CommentRow, ProjectRow, TaskRow

log = logging.getLogger(__name__)

# Checked in priority order.
KEY_FILES = (
    "AGENTS.md",
    "README.md",
    "CONTRIBUTING.md",
    "ARCHITECTURE.md",
    ".cursorrules",
    ".clinerules",
    "docs/OVERVIEW.md",
)
MAX_FILE_CHARS = 50 * 1024
MAX_TOTAL_CHARS = 200 * 1024
TRUNCATION_MARKER = "\n\n... [truncated]"

MAX_CONTEXT_COMMENTS = 10
TASK_LABEL_PREFIX = "clutch-task-"
SHORT_ID_LENGTH = 8

PRIORITY_LABELS = {
    "low": "Low",
    "medium": "Medium",
    "high": "High",
    "urgent": "URGENT",
}


@dataclass
class ContextFile:
    path: str
    content: str
    truncated: bool


@dataclass
class ProjectContext:
    name: str
    working_directory: str | None
    repo_url: str | None
    files: list[ContextFile] = field(default_factory=list)

    @property
    def size(self) -> int:
        return sum(len(f.content) for f in self.files)


def _read_capped(path: Path, max_chars: int) -> ContextFile | None:
    try:
        if not path.is_file():
            return None
        content = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None
    if len(content) > max_chars:
        return ContextFile(str(path), content[:max_chars] + TRUNCATION_MARKER, True)
    return ContextFile(str(path), content, False)


def short_id(entity_id: str) -> str:
    return entity_id[:SHORT_ID_LENGTH]


def build_task_label(task: TaskRow) -> str:
    """Stable correlation label for a task's dispatch/session."""
    return f"{TASK_LABEL_PREFIX}{short_id(task['id'])}"


def order_comments(comments: Sequence[CommentRow]) -> list[CommentRow]:
    """Oldest first, ties broken by id, whatever order they arrived in."""
    return sorted(comments, key=lambda c: (c["created_at"], c["id"]))


class DispatchContextBuilder:
    def __init__(
        self,
        *,
        max_file_chars: int = MAX_FILE_CHARS,
        max_total_chars: int = MAX_TOTAL_CHARS,
        max_comments: int = MAX_CONTEXT_COMMENTS,
    ):
        self.max_file_chars = max_file_chars
        self.max_total_chars = max_total_chars
        self.max_comments = max_comments

    def build_project_context(self, project: ProjectRow) -> ProjectContext:
        context = ProjectContext(
            name=project["name"],
            working_directory=project.get("dir"),
            repo_url=project.get("repo_url"),
        )
        root = Path(project["dir"]) if project.get("dir") else None
        if root is None or not root.is_dir():
            return context

        total = 0
        for name in KEY_FILES:
            if total >= self.max_total_chars:
                break
            budget = min(self.max_file_chars, self.max_total_chars - total)
            read = _read_capped(root / name, budget)
            if read is None:
                continue
            read.path = name
            context.files.append(read)
            total += len(read.content)
        if any(f.truncated for f in context.files):
            log.info("Project context for %s truncated at %d chars", project["name"], total)
        return context

    @staticmethod
    def format_project_context(context: ProjectContext) -> str:
        parts = [f"## Project: {context.name}", ""]
        metadata = []
        if context.working_directory:
            metadata.append(f"- **Working Directory:** `{context.working_directory}`")
        if context.repo_url:
            metadata.append(f"- **Repository:** {context.repo_url}")
        if metadata:
            parts.extend([*metadata, ""])
        if context.files:
            parts.extend(["### Project Files", ""])
            for f in context.files:
                parts.append(f"#### {f.path}{' (truncated)' if f.truncated else ''}")
                parts.extend(["```", f.content, "```", ""])
        return "\n".join(parts)

    def build_task_context(
        self,
        task: TaskRow,
        project: ProjectRow,
        agent_id: str,
        comments: Sequence[CommentRow] = (),
    ) -> str:
        """Render the full dispatch context. Output depends only on the inputs
        and the key files on disk, never on the order comments were fetched in.
        """
        header = [
            "# Task Assignment",
            "",
            "## Task",
            f"- **ID**: {short_id(task['id'])}",
            f"- **Title**: {task['title']}",
            f"- **Priority**: {PRIORITY_LABELS.get(task['priority'], task['priority'])}",
            f"- **Status**: {task['status']}",
            f"- **Project**: {project['name']}",
        ]
        if project.get("repo_url"):
            header.append(f"- **Repository**: {project['repo_url']}")
        if project.get("dir"):
            header.append(f"- **Working Directory**: `{project['dir']}`")
        sections = ["\n".join(header)]
        sections.append(f"## Description\n{task['description'] or '_No description provided_'}")

        # Keep the most recent comments, then read them chronologically.
        recent = order_comments(comments)[-self.max_comments :]
        if recent:
            lines = ["## Previous Comments"]
            for comment in recent:
                day = datetime.fromtimestamp(comment["created_at"] / 1000, UTC).strftime("%Y-%m-%d")
                lines.append(
                    f"\n**[{comment['author_type']}] {comment['author']}** ({day}):\n"
                    f"{comment['content']}"
                )
            sections.append("\n".join(lines))

        project_context = self.build_project_context(project)
        if project_context.files or project_context.working_directory:
            sections.append(f"---\n\n{self.format_project_context(project_context)}")
        else:
            sections.append(f"## Project Context\nProject: {project['name']}")

        instructions = load_role_instructions(project.get("dir"), task.get("role"))
        sections.append(
            f"## Instructions\nYou are **{agent_id}** working on this task.\n\n"
            f"Work in the project directory: `cd {project.get('dir') or '.'}`\n\n"
            f"{instructions}\n\n"
            "Work systematically. Start by understanding the task, "
            "then plan your approach, then execute."
        )
        return "\n\n".join(sections) + "\n"
