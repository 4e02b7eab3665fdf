"""JSON stdin/stdout dispatch layer for dashboards (and any non-CLI consumer).

Protocol:
    stdin:  {"method": "task.move", "params": {"id": "abc123", "status": "ready"}}
    stdout: {"ok": true, "data": {...}}
    stdout: {"ok": false, "error": "Task 'abc123' not found", "code": "NOT_FOUND"}

Always exits 0. Always returns JSON on stdout.
Entry point: ``clutch-api`` console script (pyproject.toml).
"""

from __future__ import annotations

import contextlib
import json
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

from clutch.config import load_config
from clutch.db import (
    add_project,
    connect,
    create_chat,
    get_project,
    list_projects,
    list_task_logs,
)
from clutch.errors import ClutchError
from clutch.events import decode_event
from clutch.runtime import AgentRuntime
from clutch.services import Services, build_services, default_runtime
from clutch.signals import signal_to_dict
from clutch.tasks import task_to_dict
from clutch.workloop import run_to_dict

# ---------------------------------------------------------------------------
# Error codes (ClutchError subclasses carry their own)
# ---------------------------------------------------------------------------

NOT_FOUND = "NOT_FOUND"
INVALID_PARAMS = "INVALID_PARAMS"
INVALID_METHOD = "INVALID_METHOD"
INTERNAL = "INTERNAL"


class ApiError(Exception):
    """Raised by handlers to produce a structured error response."""

    def __init__(self, message: str, code: str = INTERNAL):
        super().__init__(message)
        self.code = code


def _require(params: dict, key: str) -> str:
    """Extract a required string param, raising ApiError if missing."""
    val = params.get(key)
    if not val:
        raise ApiError(f"Missing required param: {key}", INVALID_PARAMS)
    return str(val)


def _optional(params: dict, key: str) -> str | None:
    val = params.get(key)
    return str(val) if val is not None else None


def _optional_bool(params: dict, key: str, default: bool = False) -> bool:
    val = params.get(key)
    if val is None:
        return default
    return bool(val)


def _optional_non_negative_int(params: dict, key: str, default: int | None) -> int | None:
    val = params.get(key)
    if val is None:
        return default
    try:
        parsed = int(val)
    except (TypeError, ValueError) as exc:
        raise ApiError(f"Param '{key}' must be an integer", INVALID_PARAMS) from exc
    if parsed < 0:
        raise ApiError(f"Param '{key}' must be >= 0", INVALID_PARAMS)
    return parsed


def _optional_positive_int(params: dict, key: str, default: int) -> int:
    parsed = _optional_non_negative_int(params, key, default)
    if not parsed:
        raise ApiError(f"Param '{key}' must be >= 1", INVALID_PARAMS)
    return parsed


def _require_non_negative_int(params: dict, key: str) -> int:
    if params.get(key) is None:
        raise ApiError(f"Missing required param: {key}", INVALID_PARAMS)
    value = _optional_non_negative_int(params, key, None)
    assert value is not None
    return value


def _resolve_project_id(svc: Services, params: dict, *, required: bool = True) -> str | None:
    """Resolve ``project_id`` or ``project`` (name) to a project id."""
    ref = _optional(params, "project_id") or _optional(params, "project")
    if not ref:
        if required:
            raise ApiError("Missing required param: project", INVALID_PARAMS)
        return None
    proj = get_project(svc.store.conn, ref)
    if not proj:
        raise ApiError(f"Project '{ref}' not found", NOT_FOUND)
    return proj["id"]


# ---------------------------------------------------------------------------
# Handlers: each takes (services, params) and returns JSON-serializable data
# ---------------------------------------------------------------------------

# -- projects --


def _handle_project_list(svc, _params):
    return list_projects(svc.store.conn)


def _handle_project_show(svc, params):
    ref = _require(params, "id")
    proj = get_project(svc.store.conn, ref)
    if not proj:
        raise ApiError(f"Project '{ref}' not found", NOT_FOUND)
    return proj


def _handle_project_add(svc, params):
    return add_project(
        svc.store.conn,
        _require(params, "name"),
        _require(params, "dir"),
        _optional(params, "repo_url"),
    )


# -- tasks --


def _handle_task_create(svc, params):
    task = svc.tasks.create(
        _resolve_project_id(svc, params),
        _require(params, "title"),
        description=params.get("description") or "",
        priority=params.get("priority") or "medium",
        role=params.get("role"),
        assignee=params.get("assignee"),
        tags=params.get("tags"),
        status=params.get("status") or "backlog",
        actor=params.get("actor") or "human",
    )
    return task_to_dict(task)


def _handle_task_show(svc, params):
    task_id = _require(params, "id")
    data = task_to_dict(svc.tasks.get(task_id))
    data["dependencies"] = svc.graph.list_dependencies(task_id)
    data["dependents"] = svc.graph.list_dependents(task_id)
    return data


def _handle_task_list(svc, params):
    project_id = _resolve_project_id(svc, params)
    return [task_to_dict(t) for t in svc.tasks.list(project_id, _optional(params, "status"))]


def _handle_task_update(svc, params):
    fields = params.get("fields")
    if not isinstance(fields, dict):
        raise ApiError("Param 'fields' must be an object", INVALID_PARAMS)
    task = svc.tasks.update(_require(params, "id"), fields, actor=params.get("actor") or "human")
    return task_to_dict(task)


def _handle_task_move(svc, params):
    task = svc.tasks.move(
        _require(params, "id"),
        _require(params, "status"),
        _optional_non_negative_int(params, "index", None),
        actor=params.get("actor") or "human",
    )
    return task_to_dict(task)


def _handle_task_reorder(svc, params):
    task = svc.tasks.reorder(
        _require(params, "id"),
        _require_non_negative_int(params, "index"),
        actor=params.get("actor") or "human",
    )
    return task_to_dict(task)


def _handle_task_delete(svc, params):
    task = svc.tasks.delete(_require(params, "id"), actor=params.get("actor") or "human")
    return {"deleted": task["id"]}


def _handle_task_comment(svc, params):
    return svc.tasks.add_comment(
        _require(params, "id"),
        _require(params, "author"),
        _require(params, "content"),
        author_type=params.get("author_type") or "human",
        comment_type=params.get("type") or "comment",
    )


def _handle_task_comments(svc, params):
    return svc.tasks.list_comments(
        _require(params, "id"), _optional_non_negative_int(params, "limit", None)
    )


def _handle_task_events(svc, params):
    task_id = _require(params, "id")
    events = []
    for row in svc.store.events.list_events(task_id):
        event = decode_event(
            row["type"], row["task_id"], row["project_id"], row["actor"], row["data"]
        )
        events.append(
            {
                "ordinal": row["ordinal"],
                "type": event.type,
                "actor": event.actor,
                "data": event.payload(),
                "created_at": row["created_at"],
            }
        )
    return events


def _handle_task_logs(svc, params):
    return list_task_logs(svc.store.conn, _require(params, "id"), level=_optional(params, "level"))


# -- dependencies --


def _handle_dep_add(svc, params):
    return svc.graph.add_dependency(_require(params, "task_id"), _require(params, "depends_on_id"))


def _handle_dep_remove(svc, params):
    edge_id = _optional(params, "id")
    if edge_id:
        removed = svc.graph.remove_dependency(edge_id)
    else:
        removed = svc.graph.remove_edge(
            _require(params, "task_id"), _require(params, "depends_on_id")
        )
    if not removed:
        raise ApiError("Dependency not found", NOT_FOUND)
    return {"removed": True}


def _handle_dep_list(svc, params):
    task_id = _require(params, "task_id")
    return {
        "depends_on": svc.graph.list_dependencies(task_id),
        "dependents": svc.graph.list_dependents(task_id),
    }


def _handle_dep_chain(svc, params):
    return svc.graph.get_dependency_chain(_require(params, "task_id"))


def _handle_dep_check(svc, params):
    return {
        "would_create_cycle": svc.graph.would_create_cycle(
            _require(params, "task_id"), _require(params, "depends_on_id")
        )
    }


# -- signals --


def _handle_signal_create(svc, params):
    signal = svc.signals.create_signal(
        _require(params, "task_id"),
        _require(params, "session_key"),
        _require(params, "agent_id"),
        _require(params, "kind"),
        _require(params, "message"),
        params.get("severity") or "normal",
    )
    return {
        "signal_id": signal["id"],
        "blocking": bool(signal["blocking"]),
        "signal": signal_to_dict(signal),
    }


def _handle_signal_respond(svc, params):
    result = svc.signals.respond(
        _require(params, "id"), _require(params, "response"), params.get("responder") or "human"
    )
    return {
        "signal": signal_to_dict(result["signal"]),
        "notification_sent": result["notification_sent"],
    }


def _handle_signal_show(svc, params):
    return signal_to_dict(svc.signals.get(_require(params, "id")))


def _handle_signal_list(svc, params):
    result = svc.signals.list(
        task_id=_optional(params, "task_id"),
        kind=_optional(params, "kind"),
        only_blocking=_optional_bool(params, "blocking"),
        only_unresponded=_optional_bool(params, "unresponded"),
        limit=_optional_positive_int(params, "limit", 50),
    )
    return {
        "signals": [signal_to_dict(s) for s in result["signals"]],
        "pending_count": result["pending_count"],
    }


def _handle_signal_stuck(svc, params):
    minutes = _optional_non_negative_int(params, "age_minutes", svc.config.stuck_signal_minutes)
    return [signal_to_dict(s) for s in svc.signals.get_stuck_signals(minutes * 60_000)]


def _handle_signal_recover(svc, params):
    return svc.signals.recover(
        _optional_non_negative_int(params, "age_minutes", svc.config.stuck_signal_minutes),
        params.get("action") or "mark_failed",
    )


def _handle_signal_redeliver(svc, _params):
    return svc.signals.redeliver_failed_responses()


# -- messages --


def _handle_chat_create(svc, params):
    return create_chat(
        svc.store.conn,
        project_id=_resolve_project_id(svc, params, required=False),
        title=params.get("title") or "",
        agent_id=_optional(params, "agent_id"),
        session_key=_optional(params, "session_key"),
    )


def _handle_message_post(svc, params):
    return svc.messages.post_message(
        _require(params, "chat_id"),
        _require(params, "author"),
        _require(params, "content"),
        is_automated=_optional_bool(params, "automated"),
    )


def _handle_message_status(svc, params):
    return svc.messages.update_delivery_status(
        _require(params, "id"), _require(params, "status"), _optional(params, "reason")
    )


def _handle_message_stuck(svc, params):
    minutes = _optional_non_negative_int(params, "age_minutes", svc.config.stuck_message_minutes)
    return svc.messages.get_stuck_messages(minutes * 60_000)


def _handle_message_retry(svc, params):
    return svc.messages.retry_message(_require(params, "id"))


def _handle_message_recover(svc, params):
    return svc.messages.recover(
        _optional_non_negative_int(params, "age_minutes", svc.config.stuck_message_minutes),
        params.get("action") or "mark_failed",
    )


def _handle_notification_list(svc, params):
    return svc.store.notifications.list(
        unread_only=_optional_bool(params, "unread"),
        limit=_optional_positive_int(params, "limit", 50),
    )


# -- work loop --


def _handle_loop_state(svc, params):
    return svc.work_loop.get_state(_resolve_project_id(svc, params))


def _handle_loop_update(svc, params):
    fields = params.get("fields")
    if not isinstance(fields, dict):
        raise ApiError("Param 'fields' must be an object", INVALID_PARAMS)
    return svc.work_loop.upsert_state(_resolve_project_id(svc, params), **fields)


def _handle_loop_log(svc, params):
    details = params.get("details")
    run = svc.work_loop.log_run(
        _resolve_project_id(svc, params),
        _require_non_negative_int(params, "cycle"),
        _require(params, "phase"),
        _require(params, "action"),
        task_id=_optional(params, "task_id"),
        session_key=_optional(params, "session_key"),
        details=details,
        duration_ms=_optional_non_negative_int(params, "duration_ms", None),
    )
    return run_to_dict(run)


def _handle_loop_runs(svc, params):
    runs = svc.work_loop.list_runs(
        _resolve_project_id(svc, params),
        _optional_positive_int(params, "limit", 50),
        _optional_non_negative_int(params, "before", None),
    )
    return [run_to_dict(r) for r in runs]


def _handle_loop_stats(svc, params):
    return svc.work_loop.get_stats(_resolve_project_id(svc, params))


def _handle_loop_clear(svc, params):
    return svc.work_loop.clear_runs(
        _resolve_project_id(svc, params), _require_non_negative_int(params, "older_than_days")
    )


def _handle_loop_cycle(svc, params):
    return svc.work_loop.run_cycle(_resolve_project_id(svc, params))


def _handle_loop_acquire(svc, params):
    return {"acquired": svc.work_loop.acquire_agent_slot(_resolve_project_id(svc, params))}


def _handle_loop_release(svc, params):
    return {"released": svc.work_loop.release_agent_slot(_resolve_project_id(svc, params))}


# -- dispatch --


def _handle_dispatch_request(svc, params):
    task = svc.dispatcher.request_dispatch(
        _require(params, "task_id"),
        _optional(params, "agent_id"),
        params.get("requested_by") or "human",
    )
    return task_to_dict(task)


def _handle_dispatch_run(svc, params):
    timeout = params.get("timeout_seconds")
    result = svc.dispatcher.dispatch(
        _require(params, "task_id"),
        model=_optional(params, "model"),
        timeout_seconds=float(timeout) if timeout is not None else None,
    )
    return {**result, "task": task_to_dict(result["task"])}


def _handle_dispatch_complete(svc, params):
    task = svc.dispatcher.complete(
        _require(params, "task_id"),
        _require(params, "summary"),
        pr_url=_optional(params, "pr_url"),
        notes=_optional(params, "notes"),
        agent=_optional(params, "agent"),
    )
    return task_to_dict(task)


def _handle_dispatch_abort(svc, params):
    return svc.dispatcher.abort(_require(params, "task_id"), params.get("triggered_by") or "human")


def _handle_dispatch_pending(svc, params):
    project_id = _resolve_project_id(svc, params, required=False)
    return [task_to_dict(t) for t in svc.dispatcher.list_pending(project_id)]


def _handle_dispatch_context(svc, params):
    return svc.dispatcher.preview_context(
        _require(params, "task_id"), _optional(params, "agent_id")
    )


METHODS: dict[str, Callable[[Services, dict], Any]] = {
    # projects
    "project.list": _handle_project_list,
    "project.show": _handle_project_show,
    "project.add": _handle_project_add,
    # tasks
    "task.create": _handle_task_create,
    "task.show": _handle_task_show,
    "task.list": _handle_task_list,
    "task.update": _handle_task_update,
    "task.move": _handle_task_move,
    "task.reorder": _handle_task_reorder,
    "task.delete": _handle_task_delete,
    "task.comment": _handle_task_comment,
    "task.comments": _handle_task_comments,
    "task.events": _handle_task_events,
    "task.logs": _handle_task_logs,
    # dependencies
    "dep.add": _handle_dep_add,
    "dep.remove": _handle_dep_remove,
    "dep.list": _handle_dep_list,
    "dep.chain": _handle_dep_chain,
    "dep.check": _handle_dep_check,
    # signals
    "signal.create": _handle_signal_create,
    "signal.respond": _handle_signal_respond,
    "signal.show": _handle_signal_show,
    "signal.list": _handle_signal_list,
    "signal.stuck": _handle_signal_stuck,
    "signal.recover": _handle_signal_recover,
    "signal.redeliver": _handle_signal_redeliver,
    # messages
    "chat.create": _handle_chat_create,
    "message.post": _handle_message_post,
    "message.status": _handle_message_status,
    "message.stuck": _handle_message_stuck,
    "message.retry": _handle_message_retry,
    "message.recover": _handle_message_recover,
    "notification.list": _handle_notification_list,
    # work loop
    "loop.state": _handle_loop_state,
    "loop.update": _handle_loop_update,
    "loop.log": _handle_loop_log,
    "loop.runs": _handle_loop_runs,
    "loop.stats": _handle_loop_stats,
    "loop.clear": _handle_loop_clear,
    "loop.cycle": _handle_loop_cycle,
    "loop.acquire_slot": _handle_loop_acquire,
    "loop.release_slot": _handle_loop_release,
    # dispatch
    "dispatch.request": _handle_dispatch_request,
    "dispatch.run": _handle_dispatch_run,
    "dispatch.complete": _handle_dispatch_complete,
    "dispatch.abort": _handle_dispatch_abort,
    "dispatch.pending": _handle_dispatch_pending,
    "dispatch.context": _handle_dispatch_context,
}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def dispatch(
    request: dict, *, db_path: Path | None = None, runtime: AgentRuntime | None = None
) -> dict:
    """Process a single API request and return the response dict.

    Args:
        request: ``{"method": "...", "params": {...}}``
        db_path: Override the default database path (``CLUTCH_DB_PATH``).
        runtime: Agent runtime to use; defaults to a gateway client built
            from the loaded config.
    """
    method = request.get("method")
    if not method or not isinstance(method, str):
        return {"ok": False, "error": "Missing or invalid 'method'", "code": INVALID_METHOD}

    handler = METHODS.get(method)
    if not handler:
        return {"ok": False, "error": f"Unknown method: {method}", "code": INVALID_METHOD}

    params = request.get("params") or {}
    if not isinstance(params, dict):
        return {"ok": False, "error": "'params' must be an object", "code": INVALID_PARAMS}

    try:
        config = load_config()
        with contextlib.ExitStack() as stack:
            conn = stack.enter_context(connect(db_path) if db_path else connect())
            if runtime is None:
                runtime = stack.enter_context(default_runtime(config))
            svc = build_services(conn, config=config, runtime=runtime)
            data = handler(svc, params)
        return {"ok": True, "data": data}
    except ApiError as exc:
        return {"ok": False, "error": str(exc), "code": exc.code}
    except ClutchError as exc:
        return {"ok": False, **exc.to_payload()}
    except Exception as exc:
        return {"ok": False, "error": str(exc), "code": INTERNAL}


def main() -> None:
    """Read JSON request from stdin, dispatch, write JSON response to stdout."""
    try:
        raw = sys.stdin.read()
        if not raw.strip():
            response = {"ok": False, "error": "Empty request", "code": INVALID_PARAMS}
        else:
            request = json.loads(raw)
            if not isinstance(request, dict):
                response = {
                    "ok": False,
                    "error": "Request must be an object",
                    "code": INVALID_PARAMS,
                }
            else:
                response = dispatch(request)
    except json.JSONDecodeError as exc:
        response = {"ok": False, "error": f"Invalid JSON: {exc}", "code": INVALID_PARAMS}
    except Exception as exc:
        response = {"ok": False, "error": str(exc), "code": INTERNAL}

    sys.stdout.write(json.dumps(response, default=str))
    sys.stdout.write("\n")
    sys.stdout.flush()


if __name__ == "__main__":
    main()
