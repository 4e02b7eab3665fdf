"""Tests for the rq queue layer, the Redis event stream and job functions."""

import json
import subprocess
from unittest.mock import ANY, MagicMock, patch

import pytest
from redis.exceptions import RedisError

from clutch.db import get_connection
from clutch.events import TaskMoved
from clutch.queue import (
    EVENTS_STREAM,
    EVENTS_STREAM_MAXLEN,
    QUEUE_RECOVERY,
    QUEUE_WORK_LOOP,
    EventSubscriber,
    RedisStreamSink,
    enqueue_recovery,
    enqueue_work_cycle,
    get_queue_counts,
    publish_event,
)

# -- publish / sink --


def test_publish_event_best_effort():
    """publish_event swallows Redis transport errors so callers are never affected."""
    with patch("clutch.queue.get_redis", side_effect=RedisError("Redis down")):
        publish_event("task_moved", "task-123", project="proj")


def test_publish_event_non_redis_exception_propagates():
    with (
        patch("clutch.queue.get_redis", side_effect=ValueError("boom")),
        pytest.raises(ValueError, match="boom"),
    ):
        publish_event("task_moved", "task-123", project="proj")


def test_publish_event_payload_shape():
    mock_redis = MagicMock()
    with patch("clutch.queue.get_redis", return_value=mock_redis):
        publish_event("task_moved", "task-abc", project="proj", actor="dev", extra={"x": 1})

    mock_redis.xadd.assert_called_once()
    call_args = mock_redis.xadd.call_args
    assert call_args[0][0] == EVENTS_STREAM
    payload = json.loads(call_args[0][1]["data"])
    assert payload["type"] == "task_moved"
    assert payload["id"] == "task-abc"
    assert payload["project"] == "proj"
    assert payload["actor"] == "dev"
    assert payload["source"] == "worker"
    assert payload["x"] == 1
    assert payload["v"] == 1
    assert "ts" in payload
    assert call_args[1]["maxlen"] == EVENTS_STREAM_MAXLEN
    assert call_args[1]["approximate"] is True


def test_redis_stream_sink_flattens_domain_event():
    event = TaskMoved(
        task_id="t1",
        project_id="p1",
        actor="alice",
        from_status="backlog",
        to_status="ready",
        from_position=2,
        to_position=0,
    )
    with patch("clutch.queue.publish_event") as mock_publish:
        RedisStreamSink(source="cli").emit(event)

    mock_publish.assert_called_once_with(
        "task_moved",
        "t1",
        project="p1",
        actor="alice",
        source="cli",
        extra={
            "from_status": "backlog",
            "to_status": "ready",
            "from_position": 2,
            "to_position": 0,
        },
    )


# -- EventSubscriber --


def _make_stream_entry(event_data: dict, entry_id: str = "1-0") -> list:
    return [[EVENTS_STREAM, [(entry_id, {"data": json.dumps(event_data)})]]]


def test_event_subscriber_returns_matching_event():
    mock_redis = MagicMock()
    mock_redis.xread.return_value = _make_stream_entry(
        {"type": "task_moved", "id": "task-1", "project": "p1"}
    )

    with patch("clutch.queue.get_redis", return_value=mock_redis):
        sub = EventSubscriber(task_id="task-1", timeout=1.0)
        result = next(sub)

    assert result["id"] == "task-1"
    assert result["_stream_id"] == "1-0"
    assert sub._cursor == "1-0"


def test_event_subscriber_filters_by_project():
    wrong = _make_stream_entry({"type": "task_moved", "id": "task-1", "project": "other"})
    mock_redis = MagicMock()
    mock_redis.xread.side_effect = [wrong, []]

    with patch("clutch.queue.get_redis", return_value=mock_redis):
        result = next(EventSubscriber(project="p1", timeout=0.01))

    assert result is None


def test_event_subscriber_skips_malformed_and_decodes_bytes():
    entries = [
        [
            EVENTS_STREAM,
            [
                ("1-0", {"data": "not-json{"}),
                (b"2-0", {b"data": json.dumps({"type": "x", "id": "t"}).encode()}),
            ],
        ]
    ]
    mock_redis = MagicMock()
    mock_redis.xread.return_value = entries

    with patch("clutch.queue.get_redis", return_value=mock_redis):
        result = next(EventSubscriber(timeout=0.01))

    assert result["_stream_id"] == "2-0"


def test_event_subscriber_graceful_redis_unavailable():
    with patch("clutch.queue.get_redis", side_effect=RedisError("down")):
        sub = EventSubscriber(timeout=0.01)
        assert sub._redis is None
        assert next(sub) is None


# -- enqueue --


def test_enqueue_work_cycle_calls_rq():
    with (
        patch("clutch.queue.get_queue") as mock_get_queue,
        patch("clutch.queue._spawn_worker") as mock_spawn,
    ):
        mock_queue = MagicMock()
        mock_get_queue.return_value = mock_queue
        enqueue_work_cycle("proj-1")

    mock_get_queue.assert_called_once_with(QUEUE_WORK_LOOP)
    mock_queue.enqueue.assert_called_once_with(
        ANY,
        "proj-1",
        job_id="cycle-proj-1",
        on_failure=ANY,
        failure_ttl=ANY,
        description="Work loop cycle for proj-1",
    )
    assert mock_queue.enqueue.call_args[0][0].__name__ == "run_work_cycle"
    mock_spawn.assert_called_once_with(QUEUE_WORK_LOOP, single=True, job_id="cycle-proj-1")


def test_enqueue_recovery_calls_rq():
    with (
        patch("clutch.queue.get_queue") as mock_get_queue,
        patch("clutch.queue._spawn_worker") as mock_spawn,
    ):
        mock_queue = MagicMock()
        mock_get_queue.return_value = mock_queue
        enqueue_recovery("signals", 30, "retry")

    mock_get_queue.assert_called_once_with(QUEUE_RECOVERY)
    args = mock_queue.enqueue.call_args[0]
    assert args[1:] == ("signals", 30, "retry")
    assert mock_queue.enqueue.call_args[1]["job_id"] == "recover-signals-retry"
    mock_spawn.assert_called_once_with(QUEUE_RECOVERY, job_id="recover-signals-retry")


def test_get_queue_counts():
    queue = MagicMock()
    queue.__len__ = MagicMock(return_value=3)
    running = MagicMock()
    running.__len__ = MagicMock(return_value=1)
    failed = MagicMock()
    failed.__len__ = MagicMock(return_value=0)
    with (
        patch("clutch.queue.get_queue", return_value=queue),
        patch("clutch.queue.StartedJobRegistry", return_value=running),
        patch("clutch.queue.FailedJobRegistry", return_value=failed),
    ):
        counts = get_queue_counts()

    assert counts == {
        QUEUE_WORK_LOOP: {"queued": 3, "running": 1, "failed": 0},
        QUEUE_RECOVERY: {"queued": 3, "running": 1, "failed": 0},
    }


# -- _spawn_worker --


def test_spawn_worker_single_skips_when_active():
    """_spawn_worker(single=True) should skip if a worker is already running."""
    with (
        patch("clutch.queue.get_redis") as mock_redis,
        patch("clutch.queue.Queue") as MockQueue,
        patch("clutch.queue.StartedJobRegistry") as MockStarted,
        patch("clutch.queue.subprocess") as mock_subprocess,
    ):
        mock_redis.return_value = MagicMock()
        MockQueue.return_value = MagicMock()
        mock_started = MagicMock()
        mock_started.__len__ = MagicMock(return_value=1)
        MockStarted.return_value = mock_started

        from clutch.queue import _spawn_worker

        _spawn_worker(QUEUE_WORK_LOOP, single=True)

    mock_subprocess.Popen.assert_not_called()


def test_spawn_worker_single_spawns_when_idle():
    """_spawn_worker(single=True) should spawn if no worker is running and lock is free."""
    with (
        patch("clutch.queue.get_redis") as mock_redis,
        patch("clutch.queue.Queue") as MockQueue,
        patch("clutch.queue.StartedJobRegistry") as MockStarted,
        patch("clutch.queue.subprocess") as mock_subprocess,
    ):
        mock_conn = MagicMock()
        mock_conn.set.return_value = True
        mock_redis.return_value = mock_conn
        MockQueue.return_value = MagicMock()
        mock_started = MagicMock()
        mock_started.__len__ = MagicMock(return_value=0)
        MockStarted.return_value = mock_started
        mock_proc = MagicMock()
        mock_proc.pid = 12345
        mock_subprocess.Popen.return_value = mock_proc
        mock_subprocess.DEVNULL = subprocess.DEVNULL

        from clutch.queue import _spawn_worker

        _spawn_worker(QUEUE_WORK_LOOP, single=True)

    mock_subprocess.Popen.assert_called_once()
    mock_conn.set.assert_called_once_with(
        "clutch:worker-lock:clutch:work-loop", "1", nx=True, ex=300
    )


def test_spawn_worker_single_skips_when_lock_held():
    with (
        patch("clutch.queue.get_redis") as mock_redis,
        patch("clutch.queue.Queue") as MockQueue,
        patch("clutch.queue.StartedJobRegistry") as MockStarted,
        patch("clutch.queue.subprocess") as mock_subprocess,
    ):
        mock_conn = MagicMock()
        mock_conn.set.return_value = False
        mock_redis.return_value = mock_conn
        MockQueue.return_value = MagicMock()
        mock_started = MagicMock()
        mock_started.__len__ = MagicMock(return_value=0)
        MockStarted.return_value = mock_started

        from clutch.queue import _spawn_worker

        _spawn_worker(QUEUE_WORK_LOOP, single=True)

    mock_subprocess.Popen.assert_not_called()


def test_spawn_worker_writes_job_log(tmp_path):
    with (
        patch("clutch.queue.subprocess") as mock_subprocess,
        patch("clutch.queue.LOG_DIR", tmp_path / "logs"),
    ):
        mock_subprocess.Popen.return_value = MagicMock(pid=1)
        from clutch.queue import _spawn_worker

        _spawn_worker(QUEUE_RECOVERY, job_id="recover-signals-retry")

    assert (tmp_path / "logs" / "recover-signals-retry.log").exists()
    cmd = mock_subprocess.Popen.call_args[0][0]
    assert cmd[-1] == QUEUE_RECOVERY
    assert "--burst" in cmd


# -- jobs --


def _patched_db(db_path):
    return patch("clutch.db.get_connection", side_effect=lambda *_: get_connection(db_path))


def test_run_work_cycle_mirrors_events_to_stream(db_conn_path, project_id, runtime):
    from clutch.jobs import run_work_cycle
    from clutch.services import build_services

    conn, db_path = db_conn_path
    build_services(conn).tasks.create(project_id, "Ready", status="ready", assignee="dev")

    with (
        _patched_db(db_path),
        patch("clutch.jobs.default_runtime", return_value=runtime),
        patch("clutch.jobs.load_config") as mock_config,
        patch("clutch.queue.publish_event") as mock_publish,
    ):
        from clutch.config import ClutchConfig

        mock_config.return_value = ClutchConfig()
        result = run_work_cycle(project_id)

    assert result["ok"] is True
    assert result["phases"]["work"]["spawned"] == 1
    published = [c.args[0] for c in mock_publish.call_args_list]
    assert "task_assigned" in published
    assert "dispatch_started" in published


def test_on_work_cycle_failure_marks_loop_errored(db_conn_path, project_id):
    from clutch.jobs import on_work_cycle_failure
    from clutch.services import build_services

    conn, db_path = db_conn_path
    build_services(conn).work_loop.set_status(project_id, "running")

    job = MagicMock()
    job.args = (project_id,)
    with _patched_db(db_path):
        on_work_cycle_failure(job, None, RuntimeError, RuntimeError("worker died"), None)

    state = build_services(conn).work_loop.get_state(project_id)
    assert state["status"] == "error"
    assert state["error_message"] == "worker died"


def test_run_recovery_rejects_unknown_kind():
    from clutch.jobs import run_recovery

    with pytest.raises(ValueError, match="Unknown recovery kind"):
        run_recovery("tasks", 5, "retry")
