"""Shared test fixtures: template DB for fast per-test isolation, fake clock and runtime."""

import shutil
import sqlite3
import tempfile
from pathlib import Path

import pytest

from clutch.db import add_project, get_connection, get_project
from clutch.errors import UpstreamUnavailable
from clutch.services import build_services

# 2025-10-09T08:53:20Z, well away from a UTC day boundary.
T0 = 1_760_000_000_000


class FakeClock:
    """Epoch-ms clock that ticks 1 ms per read so orderings are deterministic."""

    def __init__(self, start: int = T0, step: int = 1):
        self.now = start
        self.step = step

    def __call__(self) -> int:
        self.now += self.step
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms

    def advance_minutes(self, minutes: float) -> None:
        self.now += int(minutes * 60_000)


class FakeRuntime:
    """In-memory AgentRuntime recording every call."""

    def __init__(self):
        self.spawned: list[dict] = []
        self.deleted: list[str] = []
        self.sent: list[tuple[str, str]] = []
        self.fail_spawn = False
        self.fail_send = False
        self.fail_delete = False

    def spawn(self, agent_id, task, session_key, model=None, timeout_seconds=None):
        if self.fail_spawn:
            raise UpstreamUnavailable("gateway down")
        self.spawned.append(
            {
                "agent_id": agent_id,
                "task": task,
                "session_key": session_key,
                "model": model,
                "timeout_seconds": timeout_seconds,
            }
        )
        return f"run-{len(self.spawned)}"

    def delete_session(self, key):
        if self.fail_delete:
            raise UpstreamUnavailable("gateway down")
        self.deleted.append(key)

    def send_message(self, session_key, text):
        if self.fail_send:
            raise UpstreamUnavailable("gateway down")
        self.sent.append((session_key, text))

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return None


@pytest.fixture(scope="session")
def _db_template_path() -> Path:
    """Create a single template DB with full schema + a default project.

    Copying this file is far cheaper than running the schema and every
    migration in each test function.
    """
    fd, path_str = tempfile.mkstemp(suffix=".db")
    path = Path(path_str)
    try:
        conn = get_connection(path)
        add_project(conn, "testproj", "/tmp/clutch-testproj")
        conn.close()
        yield path
    finally:
        path.unlink(missing_ok=True)


@pytest.fixture()
def db_conn(tmp_path: Path, _db_template_path: Path) -> sqlite3.Connection:
    """Per-test DB connection with schema + testproj pre-loaded."""
    db_path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, db_path)
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture()
def db_conn_path(tmp_path: Path, _db_template_path: Path) -> tuple[sqlite3.Connection, Path]:
    """Per-test DB connection + path (for tests that re-open the DB)."""
    db_path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, db_path)
    conn = get_connection(db_path)
    try:
        yield conn, db_path
    finally:
        conn.close()


@pytest.fixture()
def project_id(db_conn: sqlite3.Connection) -> str:
    project = get_project(db_conn, "testproj")
    assert project is not None
    return project["id"]


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture()
def services(db_conn, runtime, clock):
    return build_services(db_conn, runtime=runtime, clock=clock)
