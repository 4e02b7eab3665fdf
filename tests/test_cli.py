"""Tests for the CLI commands."""

from __future__ import annotations

import json
from contextlib import contextmanager
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from clutch import __version__
from clutch.cli import main
from clutch.config import ClutchConfig
from clutch.db import get_connection


@contextmanager
def _cli_env(db_path, runtime):
    with (
        patch("clutch.db.get_connection", side_effect=lambda *_: get_connection(db_path)),
        patch("clutch.cli.default_runtime", return_value=runtime),
        patch("clutch.cli.load_config", return_value=ClutchConfig()),
    ):
        yield


@pytest.fixture()
def invoke(db_conn_path, runtime):
    _conn, db_path = db_conn_path
    runner = CliRunner()

    def _invoke(*args):
        with _cli_env(db_path, runtime):
            return runner.invoke(main, list(args))

    return _invoke


def _json(result):
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


def _error(result):
    assert result.exit_code != 0
    payload = json.loads(result.output)
    assert payload["ok"] is False
    return payload


# ---------------------------------------------------------------------------
# JSON error handling (group-level)
# ---------------------------------------------------------------------------


def test_unknown_option_is_json_usage_error():
    result = CliRunner().invoke(main, ["project", "list", "--no-such-flag"])
    payload = _error(result)
    assert payload["code"] == "USAGE"
    assert "no-such-flag" in payload["error"].lower() or "no such option" in payload["error"]


def test_unknown_command_suggests_close_match():
    payload = _error(CliRunner().invoke(main, ["taks"]))
    assert payload["code"] == "USAGE"
    assert "Did you mean: task" in payload["error"]


def test_missing_argument_is_json(invoke):
    payload = _error(invoke("task", "show"))
    assert "task_id" in payload["error"].lower() or "missing" in payload["error"].lower()


def test_version():
    result = CliRunner().invoke(main, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


# ---------------------------------------------------------------------------
# project / task
# ---------------------------------------------------------------------------


def test_project_list(invoke):
    projects = _json(invoke("project", "list"))
    assert [p["name"] for p in projects] == ["testproj"]


def test_project_add_resolves_dir(invoke, tmp_path):
    target = tmp_path / "webapp"
    target.mkdir()
    created = _json(invoke("project", "add", "webapp", "--dir", str(target)))
    assert created["dir"] == str(target.resolve())
    assert _json(invoke("project", "show", "webapp"))["id"] == created["id"]


def test_unknown_project_is_not_found(invoke):
    payload = _error(invoke("task", "list", "-p", "ghost"))
    assert payload["code"] == "NOT_FOUND"


def test_task_create_and_move(invoke):
    first = _json(invoke("task", "create", "Fix login", "-p", "testproj", "--tag", "auth"))
    second = _json(invoke("task", "create", "Add logout", "-p", "testproj"))
    assert (first["status"], first["position"], first["tags"]) == ("backlog", 0, ["auth"])
    assert second["position"] == 1

    moved = _json(invoke("task", "move", first["id"], "ready"))
    assert (moved["status"], moved["position"]) == ("ready", 0)

    backlog = _json(invoke("task", "list", "-p", "testproj", "--status", "backlog"))
    assert [(t["title"], t["position"]) for t in backlog] == [("Add logout", 0)]


def test_task_move_rejects_unknown_status(invoke):
    task = _json(invoke("task", "create", "A", "-p", "testproj"))
    payload = _error(invoke("task", "move", task["id"], "archived"))
    assert payload["code"] == "USAGE"


def test_task_update_and_events(invoke):
    task = _json(invoke("task", "create", "A", "-p", "testproj"))
    updated = _json(invoke("task", "update", task["id"], "--title", "B", "--priority", "high"))
    assert (updated["title"], updated["priority"]) == ("B", "high")

    events = _json(invoke("task", "events", task["id"]))
    assert [e["type"] for e in events] == ["task_created", "task_updated"]


def test_task_delete(invoke):
    task = _json(invoke("task", "create", "A", "-p", "testproj"))
    assert _json(invoke("task", "delete", task["id"])) == {"deleted": task["id"]}
    assert _error(invoke("task", "show", task["id"]))["code"] == "NOT_FOUND"


# ---------------------------------------------------------------------------
# dep
# ---------------------------------------------------------------------------


def test_dep_cycle_is_json_error(invoke):
    a = _json(invoke("task", "create", "A", "-p", "testproj"))
    b = _json(invoke("task", "create", "B", "-p", "testproj"))
    _json(invoke("dep", "add", a["id"], b["id"]))

    payload = _error(invoke("dep", "add", b["id"], a["id"]))

    assert payload["code"] == "CYCLE_DETECTED"


def test_blocked_move_lists_blockers(invoke):
    a = _json(invoke("task", "create", "A", "-p", "testproj"))
    b = _json(invoke("task", "create", "B", "-p", "testproj"))
    _json(invoke("dep", "add", a["id"], b["id"]))

    payload = _error(invoke("task", "move", a["id"], "in_progress"))

    assert payload["code"] == "DEPENDENCY_BLOCKED"
    assert payload["blocking_ids"] == [b["id"]]


def test_dep_remove_missing_edge(invoke):
    a = _json(invoke("task", "create", "A", "-p", "testproj"))
    b = _json(invoke("task", "create", "B", "-p", "testproj"))
    payload = _error(invoke("dep", "remove", a["id"], b["id"]))
    assert "No dependency" in payload["error"]


# ---------------------------------------------------------------------------
# signal / message
# ---------------------------------------------------------------------------


def test_signal_create_and_respond(invoke, runtime):
    task = _json(invoke("task", "create", "A", "-p", "testproj", "--status", "in_progress"))
    created = _json(
        invoke(
            "signal",
            "create",
            task["id"],
            "Which DB?",
            "--kind",
            "question",
            "--session-key",
            "agent:dev:a",
            "--agent",
            "dev",
        )
    )
    assert created["blocking"] is True

    answered = _json(invoke("signal", "respond", created["signal_id"], "Postgres"))
    assert answered["notification_sent"] is True
    assert runtime.sent[0][0] == "agent:dev:a"

    assert _error(invoke("signal", "respond", created["signal_id"], "MySQL"))["code"] == "CONFLICT"


def test_message_chat_post_and_retry(invoke):
    chat = _json(invoke("message", "chat", "-p", "testproj", "--agent", "pm"))
    posted = _json(invoke("message", "post", chat["id"], "status?"))
    _json(invoke("message", "status", posted["id"], "failed", "--reason", "timeout"))

    retried = _json(invoke("message", "retry", posted["id"]))

    assert retried["delivery_status"] == "sent"
    assert retried["retry_count"] == 1


# ---------------------------------------------------------------------------
# loop / dispatch / agents
# ---------------------------------------------------------------------------


def test_loop_start_and_status(invoke):
    _json(invoke("loop", "start", "-p", "testproj"))
    status = _json(invoke("loop", "status", "-p", "testproj"))
    assert status["state"]["status"] == "running"
    assert status["stats"]["errors_today"] == 0


def test_loop_cycle_enqueue(invoke):
    with patch("clutch.queue.enqueue_work_cycle", return_value=MagicMock(id="cycle-x")) as enq:
        result = _json(invoke("loop", "cycle", "-p", "testproj", "--enqueue"))
    assert result == {"enqueued": True, "job_id": "cycle-x"}
    enq.assert_called_once()


def test_dispatch_request_and_pending(invoke):
    task = _json(
        invoke("task", "create", "A", "-p", "testproj", "--status", "ready", "--assignee", "dev")
    )
    requested = _json(invoke("dispatch", "request", task["id"]))
    assert requested["dispatch_status"] == "pending"
    pending = _json(invoke("dispatch", "pending", "-p", "testproj"))
    assert [t["id"] for t in pending] == [task["id"]]


def test_agents_scaffold():
    result = _json(CliRunner().invoke(main, ["agents", "scaffold", "--role", "dev"]))
    assert "[dev]" in result["toml"]


def test_watch_once_prints_events():
    event = {"type": "task_moved", "id": "t1", "project": "p1"}
    with patch("clutch.queue.EventSubscriber", return_value=iter([event, None])) as sub:
        result = CliRunner().invoke(main, ["watch", "--task", "t1", "--once", "--timeout", "1"])
    assert result.exit_code == 0, result.output
    assert json.loads(result.output.strip()) == event
    sub.assert_called_once_with(task_id="t1", project=None, timeout=1.0)
