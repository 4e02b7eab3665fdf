"""Wire repositories, the runtime client and services for one connection."""

from __future__ import annotations

import sqlite3
from collections.abc import Callable
from dataclasses import dataclass

from clutch.config import ClutchConfig
from clutch.context import DispatchContextBuilder
from clutch.db import now_ms
from clutch.dependencies import DependencyGraph
from clutch.dispatch import Dispatcher
from clutch.events import EventSink
from clutch.messages import MessageDeliveryTracker
from clutch.runtime import AgentRuntime, GatewayClient
from clutch.signals import SignalChannel
from clutch.store import SqliteStore
from clutch.tasks import TaskStore
from clutch.workloop import WorkLoopSupervisor


@dataclass
class Services:
    store: SqliteStore
    config: ClutchConfig
    tasks: TaskStore
    graph: DependencyGraph
    signals: SignalChannel
    messages: MessageDeliveryTracker
    dispatcher: Dispatcher
    work_loop: WorkLoopSupervisor


def default_runtime(config: ClutchConfig) -> GatewayClient:
    return GatewayClient(
        config.gateway_url,
        token=config.gateway_token,
        timeout_seconds=config.gateway_timeout_seconds,
    )


def build_services(
    conn: sqlite3.Connection,
    *,
    config: ClutchConfig | None = None,
    runtime: AgentRuntime | None = None,
    events: EventSink | None = None,
    clock: Callable[[], int] = now_ms,
) -> Services:
    """Build every service over *conn*.

    Events go to the task_events table unless *events* is given. A missing
    *runtime* is allowed: dispatches then fail and signal answers are
    recorded with a failed notification, to be redelivered later.
    """
    config = config or ClutchConfig()
    store = SqliteStore(conn)
    sink = events if events is not None else store.events

    tasks = TaskStore(
        store.tasks,
        store.dependencies,
        store.comments,
        store.projects,
        store.signals,
        events=sink,
        clock=clock,
    )
    signals = SignalChannel(
        store.signals,
        store.tasks,
        store.notifications,
        runtime,
        events=sink,
        max_retries=config.max_retries,
        clock=clock,
    )
    messages = MessageDeliveryTracker(
        store.messages,
        max_retries=config.max_retries,
        retry_cooldown_ms=config.retry_cooldown_ms,
        clock=clock,
    )
    dispatcher = Dispatcher(
        tasks,
        store.projects,
        runtime,
        builder=DispatchContextBuilder(),
        work_loop=store.work_loop,
        log_conn=conn,
        events=sink,
        clock=clock,
    )
    work_loop = WorkLoopSupervisor(
        store.work_loop,
        store=tasks,
        dispatcher=dispatcher,
        signals=signals,
        messages=messages,
        config=config,
        clock=clock,
    )
    return Services(
        store=store,
        config=config,
        tasks=tasks,
        graph=tasks.graph,
        signals=signals,
        messages=messages,
        dispatcher=dispatcher,
        work_loop=work_loop,
    )
