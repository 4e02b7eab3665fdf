"""rq job queue and Redis event stream for clutch.

Work-loop cycles and recovery sweeps are enqueued here by the CLI or an
external scheduler. Domain events can be mirrored to a Redis Stream so
dashboards can follow task activity without polling SQLite.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import sys
import time
import uuid
from datetime import UTC, datetime

from redis import ConnectionPool, Redis
from redis.exceptions import RedisError
from rq import Callback, Queue
from rq.job import Job
from rq.registry import FailedJobRegistry, StartedJobRegistry

from clutch.events import DomainEvent
from clutch.paths import CLUTCH_CONFIG_DIR

log = logging.getLogger(__name__)

REDIS_URL = os.environ.get("CLUTCH_REDIS_URL", "redis://localhost:6379/0")

QUEUE_WORK_LOOP = "clutch:work-loop"
QUEUE_RECOVERY = "clutch:recovery"
CLUTCH_QUEUE_NAMES = (QUEUE_WORK_LOOP, QUEUE_RECOVERY)

FAILURE_TTL = 7 * 24 * 3600  # failed jobs expire from Redis after 7 days

EVENTS_STREAM = "clutch:events:stream"
EVENTS_STREAM_MAXLEN = int(os.environ.get("CLUTCH_EVENTS_STREAM_MAXLEN", "1000"))
EVENT_VERSION = 1

LOG_DIR = CLUTCH_CONFIG_DIR / "logs"


_pool = ConnectionPool.from_url(REDIS_URL)


def get_redis() -> Redis:
    return Redis(connection_pool=_pool)


def get_queue(name: str = QUEUE_WORK_LOOP) -> Queue:
    # Jobs own their timeouts (gateway timeouts); -1 disables rq's.
    return Queue(name, connection=get_redis(), default_timeout=-1)


def publish_event(
    event_type: str,
    entity_id: str,
    *,
    project: str,
    actor: str = "system",
    source: str = "worker",
    extra: dict | None = None,
) -> None:
    """Publish an event to the Redis Stream. Best-effort, never raises."""
    event: dict = {
        "event_id": str(uuid.uuid4()),
        "type": event_type,
        "id": entity_id,
        "project": project,
        "actor": actor,
        "source": source,
        "v": EVENT_VERSION,
        "ts": datetime.now(UTC).isoformat(),
    }
    if extra:
        event.update(extra)
    payload = json.dumps(event, default=str)
    try:
        get_redis().xadd(
            EVENTS_STREAM, {"data": payload}, maxlen=EVENTS_STREAM_MAXLEN, approximate=True
        )
    except RedisError:
        log.warning("Event publish failed (Redis unavailable): %s %s", event_type, entity_id)


class RedisStreamSink:
    """EventSink that mirrors domain events onto the Redis Stream."""

    def __init__(self, source: str = "worker"):
        self.source = source

    def emit(self, event: DomainEvent) -> None:
        publish_event(
            event.type,
            event.task_id,
            project=event.project_id,
            actor=event.actor,
            source=self.source,
            extra=event.payload(),
        )


class EventSubscriber:
    """Iterator over stream events, optionally filtered by task or project.

    ``__next__`` blocks up to ``timeout`` seconds and returns ``None`` when
    nothing arrived. Without Redis it sleeps for ``timeout`` and returns
    ``None``.
    """

    def __init__(
        self,
        *,
        task_id: str | None = None,
        project: str | None = None,
        timeout: float = 30.0,
        cursor: str = "$",
    ):
        self.task_id = task_id
        self.project = project
        self.timeout = timeout
        self._cursor = cursor
        self._redis: Redis | None
        try:
            self._redis = get_redis()
            self._redis.ping()
        except RedisError:
            self._redis = None

    def __iter__(self):
        return self

    @staticmethod
    def _decode_stream_event(entry_id, fields) -> dict | None:
        data = fields.get("data") or fields.get(b"data")
        if not data:
            return None
        if isinstance(data, bytes):
            data = data.decode()
        try:
            event = json.loads(data)
        except (json.JSONDecodeError, TypeError):
            return None
        if not isinstance(event, dict):
            return None
        event["_stream_id"] = entry_id.decode() if isinstance(entry_id, bytes) else entry_id
        return event

    def _matches_filters(self, event: dict) -> bool:
        if self.task_id and event.get("id") != self.task_id:
            return False
        return not (self.project and event.get("project") != self.project)

    def __next__(self) -> dict | None:
        if self._redis is None:
            time.sleep(self.timeout)
            return None
        while True:
            result = self._redis.xread(
                {EVENTS_STREAM: self._cursor}, block=int(self.timeout * 1000), count=10
            )
            if not result:
                return None
            for _stream_name, entries in result:  # type: ignore[union-attr]
                for entry_id, fields in entries:
                    self._cursor = entry_id
                    event = self._decode_stream_event(entry_id, fields)
                    if event is not None and self._matches_filters(event):
                        return event


def enqueue_work_cycle(project_id: str) -> Job:
    """Enqueue one work-loop cycle for a project and ensure a worker runs it.

    Cycles share one queue and a single worker, so two cycles never overlap.
    """
    from clutch.jobs import run_work_cycle

    q = get_queue(QUEUE_WORK_LOOP)
    job_id = f"cycle-{project_id}"
    job = q.enqueue(
        run_work_cycle,
        project_id,
        job_id=job_id,
        on_failure=Callback("clutch.jobs.on_work_cycle_failure"),
        failure_ttl=FAILURE_TTL,
        description=f"Work loop cycle for {project_id}",
    )
    _spawn_worker(QUEUE_WORK_LOOP, single=True, job_id=job_id)
    return job


def enqueue_recovery(kind: str, age_threshold_minutes: int, action: str) -> Job:
    """Enqueue a recovery sweep over stuck ``messages`` or ``signals``."""
    from clutch.jobs import run_recovery

    q = get_queue(QUEUE_RECOVERY)
    job_id = f"recover-{kind}-{action}"
    job = q.enqueue(
        run_recovery,
        kind,
        age_threshold_minutes,
        action,
        job_id=job_id,
        on_failure=Callback("clutch.jobs.on_recovery_failure"),
        failure_ttl=FAILURE_TTL,
        description=f"Recover stuck {kind} ({action})",
    )
    _spawn_worker(QUEUE_RECOVERY, job_id=job_id)
    return job


def get_queue_counts() -> dict[str, dict[str, int]]:
    """Queued/running/failed job counts per clutch queue."""
    counts: dict[str, dict[str, int]] = {}
    for name in CLUTCH_QUEUE_NAMES:
        q = get_queue(name)
        counts[name] = {
            "queued": len(q),
            "running": len(StartedJobRegistry(queue=q)),
            "failed": len(FailedJobRegistry(queue=q)),
        }
    return counts


def _spawn_worker(
    queue_name: str = QUEUE_WORK_LOOP, *, single: bool = False, job_id: str | None = None
) -> None:
    """Spawn a burst rq worker for *queue_name*.

    With ``single=True`` no second worker starts while one is busy; the
    running worker picks the new job up when it finishes. When *job_id* is
    given, worker output goes to ``LOG_DIR/{job_id}.log``.
    """
    if single:
        redis = get_redis()
        q = Queue(queue_name, connection=redis)
        lock_key = f"clutch:worker-lock:{queue_name}"
        if len(StartedJobRegistry(queue=q)) > 0:
            log.info("Worker already active for %s, skipping spawn", queue_name)
            return
        # Registry empty: any leftover lock is stale.
        redis.delete(lock_key)
        if not redis.set(lock_key, "1", nx=True, ex=300):
            log.info("Spawn lock held for %s, skipping spawn", queue_name)
            return
    cmd = [sys.executable, "-m", "rq.cli", "worker", "--burst", "--url", REDIS_URL, queue_name]

    log_fh = None
    try:
        if job_id:
            LOG_DIR.mkdir(parents=True, exist_ok=True, mode=0o700)
            log_fh = open(LOG_DIR / f"{job_id}.log", "w")  # noqa: SIM115
            stdout_target = log_fh
            stderr_target = subprocess.STDOUT
        else:
            stdout_target = subprocess.DEVNULL
            stderr_target = subprocess.DEVNULL
        proc = subprocess.Popen(
            cmd,
            stdout=stdout_target,
            stderr=stderr_target,
            start_new_session=True,
        )
    finally:
        if log_fh is not None:
            log_fh.close()  # child keeps its own handle

    log.info("Spawned worker pid=%d for %s", proc.pid, queue_name)
