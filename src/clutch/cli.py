from __future__ import annotations

import contextlib
import json
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import click

from clutch import __version__
from clutch.agents_config import SUPPORTED_ROLES, build_agents_toml_scaffold
from clutch.config import load_config
from clutch.db import (
    VALID_DELIVERY_STATUSES,
    VALID_RECOVERY_ACTIONS,
    VALID_SIGNAL_KINDS,
    VALID_SIGNAL_SEVERITIES,
    VALID_TASK_PRIORITIES,
    VALID_TASK_ROLES,
    VALID_TASK_STATUSES,
    add_project,
    connect,
    create_chat,
    list_projects,
    list_task_logs,
    require_project,
)
from clutch.errors import ClutchError
from clutch.services import Services, build_services, default_runtime
from clutch.signals import signal_to_dict
from clutch.tasks import task_to_dict
from clutch.workloop import run_to_dict

log = logging.getLogger(__name__)


class ClutchCommandError(click.ClickException):
    """ClickException carrying a ClutchError's JSON payload."""

    def __init__(self, error: ClutchError):
        super().__init__(error.message)
        self.payload = error.to_payload()


class _JsonAwareGroup(click.Group):
    """Group that always outputs JSON errors with command suggestions.

    Click normally writes plain-text usage errors to stderr. Every clutch
    command prints JSON, so this subclass intercepts Click exceptions and
    emits a JSON error object on stdout. Unknown commands get fuzzy-matched
    suggestions via ``difflib.get_close_matches``.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except click.ClickException as e:
            payload = getattr(e, "payload", None) or {
                "error": e.format_message(),
                "code": "USAGE" if isinstance(e, click.UsageError) else "ERROR",
            }
            click.echo(json.dumps({"ok": False, **payload}))
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


def _emit(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@contextlib.contextmanager
def _services() -> Iterator[Services]:
    """Open the database and runtime client; turn ClutchErrors into JSON errors."""
    try:
        config = load_config()
        with connect() as conn, default_runtime(config) as runtime:
            yield build_services(conn, config=config, runtime=runtime)
    except ClutchError as exc:
        raise ClutchCommandError(exc) from exc


def _project_id(svc: Services, ref: str) -> str:
    return require_project(svc.store.conn, ref)["id"]


_STATUS_CHOICE = click.Choice(VALID_TASK_STATUSES)
_PRIORITY_CHOICE = click.Choice(sorted(VALID_TASK_PRIORITIES))
_ROLE_CHOICE = click.Choice(sorted(VALID_TASK_ROLES))
_ACTION_CHOICE = click.Choice(sorted(VALID_RECOVERY_ACTIONS))


def _project_option(required: bool = True):
    return click.option(
        "--project", "-p", "project_ref", required=required, help="Project name or ID."
    )


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Log to stderr at INFO level.")
def main(verbose: bool):
    """Track tasks for AI agents and dispatch them to an agent runtime.

    \b
    Quick start:
      clutch project add NAME --dir PATH          Register a project
      clutch task create "Fix login" -p NAME      Add a task to the backlog
      clutch task move TASK_ID ready              Move it through the board
      clutch loop start -p NAME                   Let the work loop dispatch it
      clutch loop cycle -p NAME                   Run one cycle now

    \b
    Key concepts:
      task      A unit of work on a backlog/ready/in_progress/in_review/done board
      signal    An agent's question, blocker, alert or fyi for a human
      dispatch  Handing a task to an agent session on the runtime gateway
    """
    if verbose:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")


# -- project --


@main.group()
def project():
    """Register and inspect projects."""


@project.command("add")
@click.argument("name")
@click.option("--dir", "-d", "directory", required=True, type=click.Path(exists=True))
@click.option("--repo-url", default=None, help="Repository URL shown to agents.")
def project_add(name: str, directory: str, repo_url: str | None):
    """Register a project."""
    with _services() as svc:
        _emit(add_project(svc.store.conn, name, str(Path(directory).resolve()), repo_url))


@project.command("list")
def project_list():
    """List registered projects."""
    with _services() as svc:
        _emit(list_projects(svc.store.conn))


@project.command("show")
@click.argument("ref")
def project_show(ref: str):
    """Show a project by name or ID."""
    with _services() as svc:
        _emit(require_project(svc.store.conn, ref))


# -- task --


@main.group()
def task():
    """Create, move and inspect tasks."""


@task.command("create")
@click.argument("title")
@_project_option()
@click.option("--description", "-d", default="", help="Task description (markdown).")
@click.option("--priority", default="medium", type=_PRIORITY_CHOICE)
@click.option("--role", default=None, type=_ROLE_CHOICE)
@click.option("--assignee", default=None, help="Agent ID to assign.")
@click.option("--tag", "tags", multiple=True, help="Tag (repeatable).")
@click.option("--status", default="backlog", type=_STATUS_CHOICE)
def task_create(
    title: str,
    project_ref: str,
    description: str,
    priority: str,
    role: str | None,
    assignee: str | None,
    tags: tuple[str, ...],
    status: str,
):
    """Create a task at the end of its column."""
    with _services() as svc:
        created = svc.tasks.create(
            _project_id(svc, project_ref),
            title,
            description=description,
            priority=priority,
            role=role,
            assignee=assignee,
            tags=list(tags),
            status=status,
        )
        _emit(task_to_dict(created))


@task.command("show")
@click.argument("task_id")
def task_show(task_id: str):
    """Show a task with its dependencies."""
    with _services() as svc:
        data = task_to_dict(svc.tasks.get(task_id))
        data["dependencies"] = svc.graph.list_dependencies(task_id)
        data["dependents"] = svc.graph.list_dependents(task_id)
        _emit(data)


@task.command("list")
@_project_option()
@click.option("--status", default=None, type=_STATUS_CHOICE)
def task_list(project_ref: str, status: str | None):
    """List tasks in board order."""
    with _services() as svc:
        _emit([task_to_dict(t) for t in svc.tasks.list(_project_id(svc, project_ref), status)])


@task.command("update")
@click.argument("task_id")
@click.option("--title", default=None)
@click.option("--description", default=None)
@click.option("--priority", default=None, type=_PRIORITY_CHOICE)
@click.option("--role", default=None, type=_ROLE_CHOICE)
@click.option("--assignee", default=None)
@click.option("--tag", "tags", multiple=True, help="Replace tags (repeatable).")
def task_update(
    task_id: str,
    title: str | None,
    description: str | None,
    priority: str | None,
    role: str | None,
    assignee: str | None,
    tags: tuple[str, ...],
):
    """Update task fields. Status changes go through `task move`."""
    fields: dict[str, Any] = {
        key: value
        for key, value in (
            ("title", title),
            ("description", description),
            ("priority", priority),
            ("role", role),
            ("assignee", assignee),
        )
        if value is not None
    }
    if tags:
        fields["tags"] = list(tags)
    with _services() as svc:
        _emit(task_to_dict(svc.tasks.update(task_id, fields)))


@task.command("move")
@click.argument("task_id")
@click.argument("status", type=_STATUS_CHOICE)
@click.option("--index", type=click.IntRange(min=0), default=None, help="Target position.")
def task_move(task_id: str, status: str, index: int | None):
    """Move a task to STATUS (end of column unless --index)."""
    with _services() as svc:
        _emit(task_to_dict(svc.tasks.move(task_id, status, index, actor="human")))


@task.command("reorder")
@click.argument("task_id")
@click.argument("index", type=click.IntRange(min=0))
def task_reorder(task_id: str, index: int):
    """Move a task within its column."""
    with _services() as svc:
        _emit(task_to_dict(svc.tasks.reorder(task_id, index)))


@task.command("delete")
@click.argument("task_id")
def task_delete(task_id: str):
    """Delete a task with its edges, comments and signals."""
    with _services() as svc:
        deleted = svc.tasks.delete(task_id)
        _emit({"deleted": deleted["id"]})


@task.command("comment")
@click.argument("task_id")
@click.argument("content")
@click.option("--author", default="human")
@click.option("--author-type", default="human", type=click.Choice(["human", "agent", "system"]))
def task_comment(task_id: str, content: str, author: str, author_type: str):
    """Add a comment to a task."""
    with _services() as svc:
        _emit(svc.tasks.add_comment(task_id, author, content, author_type=author_type))


@task.command("comments")
@click.argument("task_id")
@click.option("--limit", type=click.IntRange(min=1), default=None)
def task_comments(task_id: str, limit: int | None):
    """List comments, oldest first."""
    with _services() as svc:
        _emit(svc.tasks.list_comments(task_id, limit))


@task.command("events")
@click.argument("task_id")
def task_events(task_id: str):
    """Show the task's event history in order."""
    with _services() as svc:
        svc.tasks.get(task_id)
        _emit(svc.store.events.list_events(task_id))


@task.command("logs")
@click.argument("task_id")
@click.option("--level", default=None, help="Filter by level (INFO, WARNING, ...).")
def task_logs(task_id: str, level: str | None):
    """Show dispatch logs for a task."""
    with _services() as svc:
        _emit(list_task_logs(svc.store.conn, task_id, level=level))


@main.command("watch")
@click.option("--task", "task_id", default=None, help="Only events for this task.")
@click.option("--project", "project_ref", default=None, help="Only events for this project.")
@click.option("--timeout", type=float, default=30.0, help="Seconds to wait per read.")
@click.option("--once", is_flag=True, help="Stop after the first read window.")
def watch(task_id: str | None, project_ref: str | None, timeout: float, once: bool):
    """Follow domain events from the Redis stream as JSON lines."""
    from clutch.queue import EventSubscriber

    project_id = None
    if project_ref:
        with _services() as svc:
            project_id = _project_id(svc, project_ref)
    for event in EventSubscriber(task_id=task_id, project=project_id, timeout=timeout):
        if event is not None:
            click.echo(json.dumps(event, default=str))
        elif once:
            break


# -- dep --


@main.group()
def dep():
    """Manage task dependencies."""


@dep.command("add")
@click.argument("task_id")
@click.argument("depends_on_id")
def dep_add(task_id: str, depends_on_id: str):
    """Make TASK_ID depend on DEPENDS_ON_ID."""
    with _services() as svc:
        _emit(svc.graph.add_dependency(task_id, depends_on_id))


@dep.command("remove")
@click.argument("task_id")
@click.argument("depends_on_id")
def dep_remove(task_id: str, depends_on_id: str):
    """Remove the TASK_ID -> DEPENDS_ON_ID edge."""
    with _services() as svc:
        if not svc.graph.remove_edge(task_id, depends_on_id):
            raise click.ClickException(f"No dependency {task_id} -> {depends_on_id}")
        _emit({"removed": True})


@dep.command("list")
@click.argument("task_id")
def dep_list(task_id: str):
    """Show direct prerequisites and dependents."""
    with _services() as svc:
        _emit(
            {
                "depends_on": svc.graph.list_dependencies(task_id),
                "dependents": svc.graph.list_dependents(task_id),
            }
        )


@dep.command("chain")
@click.argument("task_id")
def dep_chain(task_id: str):
    """Show every transitive prerequisite, nearest first."""
    with _services() as svc:
        _emit(svc.graph.get_dependency_chain(task_id))


# -- signal --


@main.group()
def signal():
    """Raise, answer and recover agent signals."""


@signal.command("create")
@click.argument("task_id")
@click.argument("message")
@click.option("--kind", required=True, type=click.Choice(sorted(VALID_SIGNAL_KINDS)))
@click.option("--severity", default="normal", type=click.Choice(sorted(VALID_SIGNAL_SEVERITIES)))
@click.option("--session-key", required=True)
@click.option("--agent", "agent_id", required=True)
def signal_create(
    task_id: str, message: str, kind: str, severity: str, session_key: str, agent_id: str
):
    """Record a signal from an agent session."""
    with _services() as svc:
        created = svc.signals.create_signal(task_id, session_key, agent_id, kind, message, severity)
        _emit(
            {
                "signal_id": created["id"],
                "blocking": bool(created["blocking"]),
                "signal": signal_to_dict(created),
            }
        )


@signal.command("respond")
@click.argument("signal_id")
@click.argument("response")
@click.option("--by", "responder", default="human")
def signal_respond(signal_id: str, response: str, responder: str):
    """Answer a signal (once) and notify the agent."""
    with _services() as svc:
        result = svc.signals.respond(signal_id, response, responder)
        _emit(
            {
                "signal": signal_to_dict(result["signal"]),
                "notification_sent": result["notification_sent"],
            }
        )


@signal.command("list")
@click.option("--task", "task_id", default=None)
@click.option("--kind", default=None, type=click.Choice(sorted(VALID_SIGNAL_KINDS)))
@click.option("--blocking", is_flag=True, help="Only blocking signals.")
@click.option("--unresponded", is_flag=True, help="Only unanswered signals.")
@click.option("--limit", type=click.IntRange(min=1), default=50)
def signal_list(
    task_id: str | None, kind: str | None, blocking: bool, unresponded: bool, limit: int
):
    """List signals, most severe first."""
    with _services() as svc:
        result = svc.signals.list(
            task_id=task_id,
            kind=kind,
            only_blocking=blocking,
            only_unresponded=unresponded,
            limit=limit,
        )
        _emit(
            {
                "signals": [signal_to_dict(s) for s in result["signals"]],
                "pending_count": result["pending_count"],
            }
        )


@signal.command("stuck")
@click.option("--age-minutes", type=click.IntRange(min=0), default=None)
def signal_stuck(age_minutes: int | None):
    """List blocking signals left unanswered."""
    with _services() as svc:
        minutes = svc.config.stuck_signal_minutes if age_minutes is None else age_minutes
        _emit([signal_to_dict(s) for s in svc.signals.get_stuck_signals(minutes * 60_000)])


@signal.command("recover")
@click.option("--age-minutes", type=click.IntRange(min=0), default=None)
@click.option("--action", default="mark_failed", type=_ACTION_CHOICE)
def signal_recover(age_minutes: int | None, action: str):
    """Mark stuck signals failed, or re-escalate them."""
    with _services() as svc:
        minutes = svc.config.stuck_signal_minutes if age_minutes is None else age_minutes
        _emit(svc.signals.recover(minutes, action))


@signal.command("redeliver")
def signal_redeliver():
    """Resend answers whose delivery to the agent failed."""
    with _services() as svc:
        _emit(svc.signals.redeliver_failed_responses())


# -- message --


@main.group()
def message():
    """Track delivery of chat messages to agents."""


@message.command("chat")
@_project_option(required=False)
@click.option("--title", default="")
@click.option("--agent", "agent_id", default=None)
@click.option("--session-key", default=None)
def message_chat(
    project_ref: str | None, title: str, agent_id: str | None, session_key: str | None
):
    """Open a chat with an agent session."""
    with _services() as svc:
        project_id = _project_id(svc, project_ref) if project_ref else None
        _emit(
            create_chat(
                svc.store.conn,
                project_id=project_id,
                title=title,
                agent_id=agent_id,
                session_key=session_key,
            )
        )


@message.command("post")
@click.argument("chat_id")
@click.argument("content")
@click.option("--author", default="human")
def message_post(chat_id: str, content: str, author: str):
    """Post a message to a chat."""
    with _services() as svc:
        _emit(svc.messages.post_message(chat_id, author, content))


@message.command("status")
@click.argument("message_id")
@click.argument("status", type=click.Choice(sorted(VALID_DELIVERY_STATUSES)))
@click.option("--reason", default=None, help="Failure reason (status failed).")
def message_status(message_id: str, status: str, reason: str | None):
    """Record a delivery status change."""
    with _services() as svc:
        _emit(svc.messages.update_delivery_status(message_id, status, reason))


@message.command("stuck")
@click.option("--age-minutes", type=click.IntRange(min=0), default=None)
def message_stuck(age_minutes: int | None):
    """List human messages whose delivery stalled."""
    with _services() as svc:
        minutes = svc.config.stuck_message_minutes if age_minutes is None else age_minutes
        _emit(svc.messages.get_stuck_messages(minutes * 60_000))


@message.command("retry")
@click.argument("message_id")
def message_retry(message_id: str):
    """Reset a message for another delivery attempt."""
    with _services() as svc:
        _emit(svc.messages.retry_message(message_id))


@message.command("recover")
@click.option("--age-minutes", type=click.IntRange(min=0), default=None)
@click.option("--action", default="mark_failed", type=_ACTION_CHOICE)
def message_recover(age_minutes: int | None, action: str):
    """Mark stuck messages failed, or retry them."""
    with _services() as svc:
        minutes = svc.config.stuck_message_minutes if age_minutes is None else age_minutes
        _emit(svc.messages.recover(minutes, action))


# -- loop --


@main.group()
def loop():
    """Control and inspect the per-project work loop."""


@loop.command("status")
@_project_option()
def loop_status(project_ref: str):
    """Show loop state and today's stats."""
    with _services() as svc:
        project_id = _project_id(svc, project_ref)
        _emit(
            {
                "state": svc.work_loop.get_state(project_id),
                "stats": svc.work_loop.get_stats(project_id),
            }
        )


def _set_loop_status(project_ref: str, status: str) -> None:
    with _services() as svc:
        _emit(svc.work_loop.set_status(_project_id(svc, project_ref), status))


@loop.command("start")
@_project_option()
def loop_start(project_ref: str):
    """Mark the loop running."""
    _set_loop_status(project_ref, "running")


@loop.command("pause")
@_project_option()
def loop_pause(project_ref: str):
    """Pause the loop; cycles are skipped until started again."""
    _set_loop_status(project_ref, "paused")


@loop.command("stop")
@_project_option()
def loop_stop(project_ref: str):
    """Stop the loop."""
    _set_loop_status(project_ref, "stopped")


@loop.command("set")
@_project_option()
@click.option("--max-agents", type=click.IntRange(min=0), required=True)
def loop_set(project_ref: str, max_agents: int):
    """Change the project's concurrent agent limit."""
    with _services() as svc:
        _emit(svc.work_loop.upsert_state(_project_id(svc, project_ref), max_agents=max_agents))


@loop.command("runs")
@_project_option()
@click.option("--limit", type=click.IntRange(min=1, max=500), default=50)
@click.option("--before", type=int, default=None, help="created_at cursor (epoch ms).")
def loop_runs(project_ref: str, limit: int, before: int | None):
    """List loop runs, newest first."""
    with _services() as svc:
        runs = svc.work_loop.list_runs(_project_id(svc, project_ref), limit, before)
        _emit([run_to_dict(r) for r in runs])


@loop.command("clear")
@_project_option()
@click.option("--older-than-days", type=click.IntRange(min=0), required=True)
def loop_clear(project_ref: str, older_than_days: int):
    """Delete runs older than N days."""
    with _services() as svc:
        _emit(svc.work_loop.clear_runs(_project_id(svc, project_ref), older_than_days))


@loop.command("cycle")
@_project_option()
@click.option("--enqueue", is_flag=True, help="Run in a background rq worker.")
def loop_cycle(project_ref: str, enqueue: bool):
    """Run one work-loop cycle now (or enqueue it)."""
    with _services() as svc:
        project_id = _project_id(svc, project_ref)
        if not enqueue:
            _emit(svc.work_loop.run_cycle(project_id))
            return
    from clutch.queue import enqueue_work_cycle

    job = enqueue_work_cycle(project_id)
    _emit({"enqueued": True, "job_id": job.id})


@loop.command("recover")
@click.argument("kind", type=click.Choice(["messages", "signals"]))
@click.option("--age-minutes", type=click.IntRange(min=0), required=True)
@click.option("--action", default="mark_failed", type=_ACTION_CHOICE)
def loop_recover(kind: str, age_minutes: int, action: str):
    """Enqueue a background recovery sweep."""
    from clutch.queue import enqueue_recovery

    job = enqueue_recovery(kind, age_minutes, action)
    _emit({"enqueued": True, "job_id": job.id})


@loop.command("queue")
def loop_queue():
    """Show job counts for clutch queues."""
    from clutch.queue import get_queue_counts

    _emit(get_queue_counts())


# -- dispatch --


@main.group()
def dispatch():
    """Hand tasks to agents on the runtime gateway."""


@dispatch.command("request")
@click.argument("task_id")
@click.option("--agent", "agent_id", default=None, help="Agent ID (default: task assignee).")
def dispatch_request(task_id: str, agent_id: str | None):
    """Mark a task pending dispatch."""
    with _services() as svc:
        _emit(task_to_dict(svc.dispatcher.request_dispatch(task_id, agent_id)))


@dispatch.command("run")
@click.argument("task_id")
@click.option("--model", default=None)
@click.option("--timeout", "timeout_seconds", type=float, default=None)
def dispatch_run(task_id: str, model: str | None, timeout_seconds: float | None):
    """Spawn the agent for a pending task."""
    with _services() as svc:
        result = svc.dispatcher.dispatch(task_id, model=model, timeout_seconds=timeout_seconds)
        _emit({**result, "task": task_to_dict(result["task"])})


@dispatch.command("complete")
@click.argument("task_id")
@click.argument("summary")
@click.option("--pr-url", default=None)
@click.option("--notes", default=None)
@click.option("--agent", default=None)
def dispatch_complete(
    task_id: str, summary: str, pr_url: str | None, notes: str | None, agent: str | None
):
    """Record that the agent finished the task."""
    with _services() as svc:
        done = svc.dispatcher.complete(task_id, summary, pr_url=pr_url, notes=notes, agent=agent)
        _emit(task_to_dict(done))


@dispatch.command("abort")
@click.argument("task_id")
def dispatch_abort(task_id: str):
    """Stop an in-progress task and end its session."""
    with _services() as svc:
        _emit(svc.dispatcher.abort(task_id))


@dispatch.command("pending")
@_project_option(required=False)
def dispatch_pending(project_ref: str | None):
    """List tasks awaiting spawn."""
    with _services() as svc:
        project_id = _project_id(svc, project_ref) if project_ref else None
        _emit([task_to_dict(t) for t in svc.dispatcher.list_pending(project_id)])


@dispatch.command("context")
@click.argument("task_id")
@click.option("--agent", "agent_id", default=None)
def dispatch_context(task_id: str, agent_id: str | None):
    """Preview the context an agent would receive."""
    with _services() as svc:
        _emit(svc.dispatcher.preview_context(task_id, agent_id))


# -- agents --


@main.group()
def agents():
    """Per-role agent instruction templates."""


@agents.command("scaffold")
@click.option("--role", default=None, type=click.Choice(SUPPORTED_ROLES))
def agents_scaffold(role: str | None):
    """Print an agents.toml scaffold."""
    _emit({"toml": build_agents_toml_scaffold(role)})
