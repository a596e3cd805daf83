"""CLI entry point for the OpenSprint orchestrator."""

import json
import logging
import signal
import sys
import threading

import click

from opensprint.config import get_config
from opensprint.core import projects as projects_mod
from opensprint.core import tasks as tasks_mod
from opensprint.core.tasks import MAX_PRIORITY_BEFORE_BLOCK, MIN_PRIORITY
from opensprint.db.engine import get_db
from opensprint.db.models import InvalidStateTransition, TaskStatus

logger = logging.getLogger(__name__)


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@click.group()
def main():
    """opensprint - agent task orchestrator"""
    pass


# ── Project Commands ──────────────────────────────────────────────────────────


@main.command("init")
@click.argument("project_name")
@click.option("--repo-path", default=".", help="Path to the git repository")
@click.option("--branch", default="main", help="Default branch name")
@click.option("--slack-channel", default=None, help="Slack channel for notifications")
def init_project(project_name, repo_path, branch, slack_channel):
    """Initialize a new project."""
    import os

    repo_path = os.path.abspath(repo_path)
    project_id = tasks_mod.slugify(project_name)

    with _get_db() as db:
        if projects_mod.get_project(db, project_id):
            click.echo(f"Project already exists: {project_id}", err=True)
            sys.exit(1)
        project = projects_mod.create_project(
            db, project_id, project_name, repo_path, branch, slack_channel
        )
        click.echo(f"Project created: {project.id} ({project.name})")
        click.echo(f"  Repo: {project.repo_path}")
        click.echo(f"  Branch: {project.default_branch}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--project", default="default", help="Project ID")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--depends-on", default=None, help="Comma-separated task IDs this depends on")
@click.option(
    "--priority", "-p", default=2,
    type=click.IntRange(MIN_PRIORITY, MAX_PRIORITY_BEFORE_BLOCK),
    help="Priority 0 (most urgent) to 4",
)
def task_add(title, project, description, depends_on, priority):
    """Create a new task."""
    deps = [d.strip() for d in depends_on.split(",")] if depends_on else None

    config = get_config()
    with _get_db() as db:
        if project == "default":
            projects_mod.ensure_default_project(db, str(config.repo_path))
        elif not projects_mod.get_project(db, project):
            click.echo(f"Project not found: {project}", err=True)
            sys.exit(1)
        task = tasks_mod.create_task(db, title, project, description, depends_on=deps, priority=priority)
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: P{task.priority}")
        click.echo(f"  Status: {task.status.value}")
        if task.depends_on:
            click.echo(f"  Depends on: {', '.join(task.depends_on)}")


@task_group.command("list")
@click.option("--project", default="default", help="Project ID")
@click.option(
    "--status", default=None,
    type=click.Choice([s.value for s in TaskStatus]),
    help="Filter by status",
)
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(project, status, json_output):
    """List tasks in dispatch order."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, project, status=status)

    if json_output:
        click.echo(json.dumps([_task_dict(t) for t in tasks], indent=2))
        return

    if not tasks:
        click.echo("No tasks found.")
        return

    status_icons = {
        "open": "○",
        "ready": "◌",
        "in_progress": "●",
        "in_review": "◐",
        "done": "✓",
        "blocked": "✗",
    }

    for task in tasks:
        icon = status_icons.get(task.status.value, "?")
        deps = f" [depends: {', '.join(task.depends_on)}]" if task.depends_on else ""
        agent = f" [agent: {task.assignee}]" if task.assignee else ""
        click.echo(f"  {icon} P{task.priority} {task.id}: {task.title} ({task.status.value}){deps}{agent}")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details, attempts and history."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: P{task.priority}")
        click.echo(f"  Status: {task.status.value}")
        click.echo(f"  Project: {task.project_id}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.assignee:
            click.echo(f"  Assignee: {task.assignee}")
        if task.failure_count:
            click.echo(f"  Consecutive failures: {task.failure_count}")
        if task.block_reason:
            click.echo(f"  Blocked: {task.block_reason}")
        if task.depends_on:
            click.echo(f"  Depends on: {', '.join(task.depends_on)}")
        if task.created_at:
            click.echo(f"  Created: {task.created_at}")

        attempts = tasks_mod.list_execution_attempts(db, task_id)
        if attempts:
            click.echo("  Attempts:")
            for a in attempts:
                failure = f" [{a['failureType']}]" if a.get("failureType") else ""
                click.echo(f"    #{a['attempt']} {a['outcome']}{failure}: {a['summary']}")

        events = tasks_mod.get_task_events(db, task_id)
        if events:
            click.echo("  History:")
            for e in events:
                click.echo(f"    [{e.created_at}] {e.event_type}: {e.old_value} -> {e.new_value}")


@task_group.command("unblock")
@click.argument("task_id")
def task_unblock(task_id):
    """Reopen a blocked task and reset its failure counter."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        try:
            tasks_mod.update_task(
                db, task_id, status=TaskStatus.OPEN, failure_count=0, block_reason=None
            )
        except InvalidStateTransition as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Unblocked task: {task_id}")


# ── Orchestrator Commands ─────────────────────────────────────────────────────


@main.command("recover")
@click.option("--project", default="default", help="Project ID")
def recover_command(project):
    """Reset in-progress tasks whose agent is gone.

    Run this while no orchestrator is running for the project: a fresh process
    tracks no agents, so every assigned in-progress task counts as orphaned.
    """
    from opensprint.core.branches import BranchManager
    from opensprint.core.processes import AgentProcessRegistry
    from opensprint.core.recovery import OrphanRecoveryService
    from opensprint.core.store import SqliteTaskStore, StoreUnavailableError

    config = get_config()
    _setup_logging(config.log_level)
    store = SqliteTaskStore(config.db_path)
    try:
        proj = store.get_project(project)
        if not proj:
            click.echo(f"Project not found: {project}", err=True)
            sys.exit(1)
        service = OrphanRecoveryService(
            store,
            BranchManager(
                default_branch=proj.default_branch,
                lock_retries=config.git_lock_retries,
                lock_delay=config.git_lock_delay,
            ),
            AgentProcessRegistry(),
        )
        recovered = service.recover_orphaned_tasks(proj.id, proj.repo_path)
    except StoreUnavailableError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if not recovered:
        click.echo("No orphaned tasks found.")
        return
    click.echo(f"Recovered {len(recovered)} task(s):")
    for task_id in recovered:
        click.echo(f"  {task_id}")


@main.command("run")
@click.argument("project")
def run_command(project):
    """Run the orchestrator for a project in the foreground until interrupted."""
    from opensprint.core.orchestrator import Orchestrator
    from opensprint.core.store import SqliteTaskStore
    from opensprint.integrations.events import EventBus
    from opensprint.integrations.slack import SlackNotifier

    config = get_config()
    _setup_logging(config.log_level)

    store = SqliteTaskStore(config.db_path)
    events = EventBus()
    notifier = SlackNotifier(config.slack_bot_token, store)
    if notifier.enabled:
        events.subscribe(notifier)
    orchestrator = Orchestrator.from_config(config, store, events=events)

    stop = threading.Event()

    def _request_stop(signum, frame):
        logger.info("Received signal %s, shutting down", signum)
        stop.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    try:
        status = orchestrator.start(project)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Orchestrator running for {project} ({status.queue_depth} task(s) ready)")

    try:
        while not stop.wait(1.0):
            pass
    finally:
        orchestrator.shutdown()
    click.echo("Orchestrator stopped.")


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from opensprint.mcp.server import mcp

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_dict(task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "status": task.status.value,
        "priority": task.priority,
        "project": task.project_id,
        "description": task.description,
        "assignee": task.assignee,
        "failure_count": task.failure_count,
        "block_reason": task.block_reason,
        "depends_on": task.depends_on,
    }


if __name__ == "__main__":
    main()
