"""Error taxonomy shared by every clutch service.

Each error carries a stable ``code`` so the JSON API and the CLI can surface
it as ``{"error": ..., "code": ...}`` without string matching on messages.
"""

from __future__ import annotations

from collections.abc import Sequence


class ClutchError(Exception):
    """Base class for errors raised by clutch services."""

    code = "INTERNAL"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict:
        return {"error": self.message, "code": self.code}


class NotFound(ClutchError):
    code = "NOT_FOUND"


class ValidationError(ClutchError):
    code = "VALIDATION"


class Conflict(ClutchError):
    code = "CONFLICT"


class DependencyBlocked(ClutchError):
    """Raised when a transition is denied by incomplete prerequisites."""

    code = "DEPENDENCY_BLOCKED"

    def __init__(self, task_id: str, blocking_ids: Sequence[str]):
        self.task_id = task_id
        self.blocking_ids = list(blocking_ids)
        super().__init__(
            f"Task '{task_id}' is blocked by incomplete dependencies: "
            f"{', '.join(self.blocking_ids)}"
        )

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload["blocking_ids"] = self.blocking_ids
        return payload


class CycleDetected(ClutchError):
    code = "CYCLE_DETECTED"


class UpstreamUnavailable(ClutchError):
    """The agent runtime could not be reached or answered with an error."""

    code = "UPSTREAM_UNAVAILABLE"


def require_choice(value: object, allowed: set[str] | frozenset[str], field: str) -> str:
    """Validate a closed string enum value, raising ValidationError otherwise."""
    if not isinstance(value, str) or value not in allowed:
        raise ValidationError(
            f"Invalid {field} '{value}'. Valid: {', '.join(sorted(allowed))}"
        )
    return value


def require_text(value: object, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required")
    return value
