"""Task dependency graph.

Edges read "task_id depends on depends_on_id". The graph is kept acyclic on
every insert; transitive closures are computed on demand, never stored.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from typing import Any

from clutch.db import DependencyRow, new_id, now_ms
from clutch.errors import Conflict, CycleDetected, NotFound, ValidationError
from clutch.repository import DependencyRepository, TaskRepository

log = logging.getLogger(__name__)


class DependencyGraph:
    def __init__(
        self,
        dependencies: DependencyRepository,
        tasks: TaskRepository,
        *,
        clock: Callable[[], int] = now_ms,
    ):
        self.dependencies = dependencies
        self.tasks = tasks
        self.clock = clock

    def _require_task(self, task_id: str, label: str = "Task") -> None:
        if not self.tasks.get(task_id):
            raise NotFound(f"{label} '{task_id}' not found")

    def _reaches(self, start: str, target: str) -> bool:
        """BFS along depends-on edges from *start*; True if *target* is reachable."""
        visited = {start}
        queue = deque([start])
        while queue:
            current = queue.popleft()
            if current == target:
                return True
            for nxt in self.dependencies.depends_on_ids(current):
                if nxt not in visited:
                    visited.add(nxt)
                    queue.append(nxt)
        return False

    def would_create_cycle(self, task_id: str, depends_on_id: str) -> bool:
        """True if adding ``task_id -> depends_on_id`` would break acyclicity."""
        if task_id == depends_on_id:
            return True
        return self._reaches(depends_on_id, task_id)

    def add_dependency(self, task_id: str, depends_on_id: str) -> DependencyRow:
        if task_id == depends_on_id:
            raise ValidationError("Task cannot depend on itself")
        with self.tasks.atomic():
            self._require_task(task_id)
            self._require_task(depends_on_id, "Dependency task")
            if self.dependencies.find(task_id, depends_on_id):
                raise Conflict("Dependency already exists")
            if self._reaches(depends_on_id, task_id):
                raise CycleDetected(
                    f"Adding dependency {task_id} -> {depends_on_id} "
                    "would create a circular dependency"
                )
            row: DependencyRow = {
                "id": new_id(),
                "task_id": task_id,
                "depends_on_id": depends_on_id,
                "created_at": self.clock(),
            }
            self.dependencies.insert(row)
        log.info("Added dependency %s -> %s", task_id, depends_on_id)
        return row

    def remove_dependency(self, edge_id: str) -> bool:
        """Delete an edge by id. Returns False when it does not exist."""
        removed = self.dependencies.delete(edge_id)
        if removed:
            log.info("Removed dependency %s", edge_id)
        return removed

    def remove_edge(self, task_id: str, depends_on_id: str) -> bool:
        edge = self.dependencies.find(task_id, depends_on_id)
        if not edge:
            return False
        return self.remove_dependency(edge["id"])

    def list_dependencies(self, task_id: str) -> list[dict[str, Any]]:
        self._require_task(task_id)
        return self.dependencies.prerequisites(task_id)

    def list_dependents(self, task_id: str) -> list[dict[str, Any]]:
        self._require_task(task_id)
        return self.dependencies.dependents(task_id)

    def incomplete_prerequisites(self, task_id: str) -> list[str]:
        return [
            dep["task_id"]
            for dep in self.dependencies.prerequisites(task_id)
            if dep["status"] != "done"
        ]

    def get_dependency_chain(self, task_id: str) -> list[dict[str, Any]]:
        """Every transitive prerequisite of *task_id*, nearest first.

        Each entry carries ``depth`` (1 = direct prerequisite) and
        ``required_by`` (the task whose edge reached it first).
        """
        self._require_task(task_id)
        chain: list[dict[str, Any]] = []
        visited = {task_id}
        queue: deque[tuple[str, int]] = deque([(task_id, 0)])
        while queue:
            current, depth = queue.popleft()
            for dep in self.dependencies.prerequisites(current):
                ancestor = dep["task_id"]
                if ancestor in visited:
                    continue
                visited.add(ancestor)
                chain.append(
                    {
                        "task_id": ancestor,
                        "title": dep["title"],
                        "status": dep["status"],
                        "depth": depth + 1,
                        "required_by": current,
                    }
                )
                queue.append((ancestor, depth + 1))
        return chain
