"""Tests for clutch.api: JSON dispatch layer."""

import io
import json
from unittest.mock import patch

import pytest
from jsonschema import validate

from clutch.api import METHODS, dispatch, main
from clutch.config import ClutchConfig

RESPONSE_SCHEMA = {
    "oneOf": [
        {
            "type": "object",
            "properties": {"ok": {"const": True}, "data": {}},
            "required": ["ok", "data"],
            "additionalProperties": False,
        },
        {
            "type": "object",
            "properties": {
                "ok": {"const": False},
                "error": {"type": "string", "minLength": 1},
                "code": {"type": "string", "pattern": "^[A-Z_]+$"},
                "blocking_ids": {"type": "array", "items": {"type": "string"}},
            },
            "required": ["ok", "error", "code"],
            "additionalProperties": False,
        },
    ]
}


@pytest.fixture()
def call(db_conn_path, runtime):
    """Dispatch one method against the per-test DB and validate the envelope."""
    _conn, db_path = db_conn_path

    def _call(method, **params):
        with patch("clutch.api.load_config", return_value=ClutchConfig()):
            response = dispatch(
                {"method": method, "params": params}, db_path=db_path, runtime=runtime
            )
        validate(instance=json.loads(json.dumps(response, default=str)), schema=RESPONSE_SCHEMA)
        return response

    return _call


def _data(response):
    assert response["ok"] is True, response
    return response["data"]


# ---------------------------------------------------------------------------
# Dispatch protocol
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("request_body", [{}, {"method": ""}, {"method": 42}])
def test_missing_method(db_conn_path, request_body):
    _conn, db_path = db_conn_path
    response = dispatch(request_body, db_path=db_path)
    assert response == {
        "ok": False,
        "error": "Missing or invalid 'method'",
        "code": "INVALID_METHOD",
    }


def test_unknown_method(call):
    response = call("task.explode")
    assert response["code"] == "INVALID_METHOD"
    assert "task.explode" in response["error"]


def test_params_must_be_object(db_conn_path):
    _conn, db_path = db_conn_path
    response = dispatch({"method": "project.list", "params": [1, 2]}, db_path=db_path)
    assert response["code"] == "INVALID_PARAMS"


def test_missing_param(call):
    response = call("task.show")
    assert response["code"] == "INVALID_PARAMS"
    assert response["error"] == "Missing required param: id"


def test_negative_index_is_invalid(call):
    task = _data(call("task.create", project="testproj", title="A"))
    response = call("task.reorder", id=task["id"], index=-1)
    assert response["code"] == "INVALID_PARAMS"


@pytest.mark.parametrize(
    "method, extra",
    [("signal.list", {}), ("notification.list", {}), ("loop.runs", {"project": "testproj"})],
)
def test_zero_limit_is_invalid(call, method, extra):
    response = call(method, limit=0, **extra)
    assert response == {
        "ok": False,
        "error": "Param 'limit' must be >= 1",
        "code": "INVALID_PARAMS",
    }
    assert call(method, limit=1, **extra)["ok"] is True


def test_unexpected_exception_is_internal(call):
    def _boom(_svc, _params):
        raise RuntimeError("disk on fire")

    with patch.dict(METHODS, {"project.list": _boom}):
        response = call("project.list")
    assert response == {"ok": False, "error": "disk on fire", "code": "INTERNAL"}


# ---------------------------------------------------------------------------
# Projects and tasks
# ---------------------------------------------------------------------------


def test_project_list_and_show(call):
    projects = _data(call("project.list"))
    assert [p["name"] for p in projects] == ["testproj"]
    assert _data(call("project.show", id="testproj"))["id"] == projects[0]["id"]


def test_unknown_project_is_not_found(call):
    response = call("task.list", project="ghost")
    assert response == {"ok": False, "error": "Project 'ghost' not found", "code": "NOT_FOUND"}


def test_unknown_task_is_not_found(call):
    assert call("task.show", id="nope")["code"] == "NOT_FOUND"


def test_task_create_move_and_list(call):
    first = _data(call("task.create", project="testproj", title="First", tags=["ui"]))
    second = _data(call("task.create", project="testproj", title="Second"))
    assert (first["position"], second["position"]) == (0, 1)
    assert first["tags"] == ["ui"]

    moved = _data(call("task.move", id=second["id"], status="ready"))
    assert (moved["status"], moved["position"]) == ("ready", 0)

    backlog = _data(call("task.list", project="testproj", status="backlog"))
    assert [(t["title"], t["position"]) for t in backlog] == [("First", 0)]


def test_invalid_status_is_validation_error(call):
    task = _data(call("task.create", project="testproj", title="A"))
    response = call("task.move", id=task["id"], status="archived")
    assert response["code"] == "VALIDATION"


def test_task_update_requires_fields_object(call):
    task = _data(call("task.create", project="testproj", title="A"))
    assert call("task.update", id=task["id"], fields="title=B")["code"] == "INVALID_PARAMS"
    updated = _data(call("task.update", id=task["id"], fields={"title": "B"}))
    assert updated["title"] == "B"


def test_task_events_are_decoded(call):
    task = _data(call("task.create", project="testproj", title="A"))
    call("task.move", id=task["id"], status="ready")

    events = _data(call("task.events", id=task["id"]))

    assert [e["type"] for e in events] == ["task_created", "task_moved"]
    assert events[1]["data"]["to_status"] == "ready"
    assert events[0]["ordinal"] < events[1]["ordinal"]


def test_comments_round_trip(call):
    task = _data(call("task.create", project="testproj", title="A"))
    call("task.comment", id=task["id"], author="alice", content="first")
    call("task.comment", id=task["id"], author="dev", content="second", author_type="agent")

    comments = _data(call("task.comments", id=task["id"]))

    assert [c["content"] for c in comments] == ["first", "second"]
    assert comments[1]["author_type"] == "agent"


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def test_dependency_cycle_is_reported(call):
    a = _data(call("task.create", project="testproj", title="A"))
    b = _data(call("task.create", project="testproj", title="B"))
    _data(call("dep.add", task_id=a["id"], depends_on_id=b["id"]))

    response = call("dep.add", task_id=b["id"], depends_on_id=a["id"])

    assert response["code"] == "CYCLE_DETECTED"
    check = _data(call("dep.check", task_id=b["id"], depends_on_id=a["id"]))
    assert check == {"would_create_cycle": True}


def test_duplicate_dependency_is_conflict(call):
    a = _data(call("task.create", project="testproj", title="A"))
    b = _data(call("task.create", project="testproj", title="B"))
    call("dep.add", task_id=a["id"], depends_on_id=b["id"])
    assert call("dep.add", task_id=a["id"], depends_on_id=b["id"])["code"] == "CONFLICT"


def test_blocked_move_reports_blocking_ids(call):
    a = _data(call("task.create", project="testproj", title="A"))
    b = _data(call("task.create", project="testproj", title="B"))
    call("dep.add", task_id=a["id"], depends_on_id=b["id"])

    response = call("task.move", id=a["id"], status="in_progress")

    assert response["code"] == "DEPENDENCY_BLOCKED"
    assert response["blocking_ids"] == [b["id"]]


def test_dep_remove_by_id_and_pair(call):
    a = _data(call("task.create", project="testproj", title="A"))
    b = _data(call("task.create", project="testproj", title="B"))
    edge = _data(call("dep.add", task_id=a["id"], depends_on_id=b["id"]))

    assert _data(call("dep.remove", id=edge["id"])) == {"removed": True}
    assert call("dep.remove", task_id=a["id"], depends_on_id=b["id"])["code"] == "NOT_FOUND"


def test_dep_list_and_chain(call):
    a = _data(call("task.create", project="testproj", title="A"))
    b = _data(call("task.create", project="testproj", title="B"))
    c = _data(call("task.create", project="testproj", title="C"))
    call("dep.add", task_id=a["id"], depends_on_id=b["id"])
    call("dep.add", task_id=b["id"], depends_on_id=c["id"])

    listing = _data(call("dep.list", task_id=b["id"]))
    assert [d["task_id"] for d in listing["depends_on"]] == [c["id"]]
    assert [d["task_id"] for d in listing["dependents"]] == [a["id"]]

    chain = _data(call("dep.chain", task_id=a["id"]))
    assert [(link["task_id"], link["depth"]) for link in chain] == [(b["id"], 1), (c["id"], 2)]


# ---------------------------------------------------------------------------
# Signals, messages and dispatch
# ---------------------------------------------------------------------------


def test_signal_create_and_single_respond(call, runtime):
    task = _data(call("task.create", project="testproj", title="A", status="in_progress"))
    created = _data(
        call(
            "signal.create",
            task_id=task["id"],
            session_key="agent:dev:a",
            agent_id="dev",
            kind="question",
            message="Which branch?",
        )
    )
    assert created["blocking"] is True

    answered = _data(call("signal.respond", id=created["signal_id"], response="main"))
    assert answered["notification_sent"] is True
    assert runtime.sent[0][0] == "agent:dev:a"

    again = call("signal.respond", id=created["signal_id"], response="develop")
    assert again["code"] == "CONFLICT"
    assert _data(call("signal.show", id=created["signal_id"]))["response"] == "main"
    assert _data(call("signal.list", unresponded=True))["pending_count"] == 0


def test_message_post_and_status(call):
    chat = _data(call("chat.create", project="testproj", agent_id="pm", session_key="agent:pm:c"))
    message = _data(call("message.post", chat_id=chat["id"], author="alice", content="hi"))
    assert message["delivery_status"] == "sent"

    failed = _data(call("message.status", id=message["id"], status="failed", reason="timeout"))
    assert failed["delivery_status"] == "failed"


def test_dispatch_request_and_pending(call):
    task = _data(
        call("task.create", project="testproj", title="A", status="ready", assignee="dev")
    )
    requested = _data(call("dispatch.request", task_id=task["id"], requested_by="alice"))
    assert requested["dispatch_status"] == "pending"

    pending = _data(call("dispatch.pending", project="testproj"))
    assert [t["id"] for t in pending] == [task["id"]]


def test_loop_slot_lease(call):
    call("loop.update", project="testproj", fields={"max_agents": 1})
    assert _data(call("loop.acquire_slot", project="testproj")) == {"acquired": True}
    assert _data(call("loop.acquire_slot", project="testproj")) == {"acquired": False}
    assert _data(call("loop.release_slot", project="testproj")) == {"released": True}


# ---------------------------------------------------------------------------
# stdin/stdout entry point
# ---------------------------------------------------------------------------


def _run_main(raw: str) -> dict:
    out = io.StringIO()
    with patch("sys.stdin", io.StringIO(raw)), patch("sys.stdout", out):
        main()
    return json.loads(out.getvalue())


def test_main_empty_input():
    assert _run_main("  \n")["code"] == "INVALID_PARAMS"


def test_main_invalid_json():
    response = _run_main("{not json")
    assert response["code"] == "INVALID_PARAMS"
    assert response["error"].startswith("Invalid JSON")


def test_main_non_object_request():
    assert _run_main("[1, 2]")["error"] == "Request must be an object"


def test_main_dispatches_request():
    with patch("clutch.api.dispatch", return_value={"ok": True, "data": []}) as mock_dispatch:
        response = _run_main('{"method": "project.list"}')
    assert response == {"ok": True, "data": []}
    mock_dispatch.assert_called_once_with({"method": "project.list"})
