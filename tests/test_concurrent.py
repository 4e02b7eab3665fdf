"""Deterministic concurrent SQLite tests."""

from __future__ import annotations

import threading
from pathlib import Path

from clutch.db import add_project, get_connection
from clutch.errors import Conflict, CycleDetected
from clutch.services import build_services


class _NullRuntime:
    def spawn(self, agent_id, task, session_key, model=None, timeout_seconds=None):
        return "run-1"

    def delete_session(self, key):
        return None

    def send_message(self, session_key, text):
        return None


def _create_project_db(tmp_path: Path) -> tuple[Path, str]:
    db_path = tmp_path / "concurrent.sqlite3"
    conn = get_connection(db_path)
    try:
        project = add_project(conn, "testproj", str(tmp_path / "testproj"))
        return db_path, project["id"]
    finally:
        conn.close()


def _join_threads(threads: list[threading.Thread]) -> None:
    for thread in threads:
        thread.join(timeout=15)
        assert not thread.is_alive(), f"Thread {thread.name} did not finish"


def _run_concurrently(db_path: Path, calls: list) -> tuple[list, list[BaseException]]:
    """Run each ``call(services)`` on its own thread and connection, released together."""
    barrier = threading.Barrier(len(calls))
    results: list = []
    errors: list[BaseException] = []

    def _worker(call) -> None:
        worker_conn = get_connection(db_path)
        try:
            svc = build_services(worker_conn, runtime=_NullRuntime())
            barrier.wait(timeout=5)
            results.append(call(svc))
        except BaseException as exc:  # pragma: no cover - assertion helper path
            errors.append(exc)
        finally:
            worker_conn.close()

    threads = [
        threading.Thread(target=_worker, args=(call,), name=f"worker-{i}")
        for i, call in enumerate(calls)
    ]
    for thread in threads:
        thread.start()
    _join_threads(threads)
    return results, errors


def test_concurrent_moves_keep_buckets_gap_free(tmp_path: Path):
    db_path, project_id = _create_project_db(tmp_path)
    conn = get_connection(db_path)
    try:
        svc = build_services(conn)
        task_ids = [svc.tasks.create(project_id, f"Task {i}")["id"] for i in range(6)]
    finally:
        conn.close()

    movers = task_ids[::2]
    _results, errors = _run_concurrently(
        db_path,
        [lambda s, tid=tid: s.tasks.move(tid, "ready", 0, actor="human") for tid in movers],
    )
    assert errors == []

    conn = get_connection(db_path)
    try:
        svc = build_services(conn)
        ready = svc.tasks.list(project_id, "ready")
        backlog = svc.tasks.list(project_id, "backlog")
    finally:
        conn.close()

    assert sorted(t["id"] for t in ready) == sorted(movers)
    assert [t["position"] for t in ready] == [0, 1, 2]
    assert [t["id"] for t in backlog] == task_ids[1::2]
    assert [t["position"] for t in backlog] == [0, 1, 2]


def test_concurrent_responds_accept_exactly_one(tmp_path: Path):
    db_path, project_id = _create_project_db(tmp_path)
    conn = get_connection(db_path)
    try:
        svc = build_services(conn, runtime=_NullRuntime())
        task = svc.tasks.create(project_id, "Needs answer", status="in_progress")
        signal = svc.signals.create_signal(
            task["id"], "agent:dev:x", "dev", "question", "Which region?"
        )
    finally:
        conn.close()

    answers = ["us-east", "eu-west", "ap-south"]
    results, errors = _run_concurrently(
        db_path,
        [lambda s, a=a: s.signals.respond(signal["id"], a, "human") for a in answers],
    )

    assert len(results) == 1
    assert len(errors) == 2
    assert all(isinstance(e, Conflict) for e in errors)

    conn = get_connection(db_path)
    try:
        stored = build_services(conn).signals.get(signal["id"])
    finally:
        conn.close()
    assert stored["response"] == results[0]["signal"]["response"]


def test_concurrent_opposite_edges_never_form_a_cycle(tmp_path: Path):
    db_path, project_id = _create_project_db(tmp_path)
    conn = get_connection(db_path)
    try:
        svc = build_services(conn)
        a = svc.tasks.create(project_id, "A")["id"]
        b = svc.tasks.create(project_id, "B")["id"]
    finally:
        conn.close()

    results, errors = _run_concurrently(
        db_path,
        [
            lambda s: s.graph.add_dependency(a, b),
            lambda s: s.graph.add_dependency(b, a),
        ],
    )

    assert len(results) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], CycleDetected)

    conn = get_connection(db_path)
    try:
        count = conn.execute("SELECT COUNT(*) FROM task_dependencies").fetchone()[0]
    finally:
        conn.close()
    assert count == 1
