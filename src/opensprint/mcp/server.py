"""MCP server exposing the orchestrator and task tools."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from opensprint.config import Config, get_config
from opensprint.core import projects as projects_mod
from opensprint.core import tasks as tasks_mod
from opensprint.core.orchestrator import Orchestrator
from opensprint.core.store import SqliteTaskStore, StoreUnavailableError
from opensprint.db.engine import get_db
from opensprint.db.models import InvalidStateTransition, TaskStatus
from opensprint.integrations.events import EventBus
from opensprint.integrations.slack import SlackNotifier


@dataclass
class AppContext:
    config: Config
    store: SqliteTaskStore
    events: EventBus
    orchestrator: Orchestrator


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Build the orchestrator on startup; stop it and its agents on shutdown."""
    config = get_config()
    store = SqliteTaskStore(config.db_path)
    events = EventBus()
    notifier = SlackNotifier(config.slack_bot_token, store)
    if notifier.enabled:
        events.subscribe(notifier)
    orchestrator = Orchestrator.from_config(config, store, events=events)

    try:
        yield AppContext(config=config, store=store, events=events, orchestrator=orchestrator)
    finally:
        orchestrator.shutdown()


mcp = FastMCP("opensprint", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


# ── Orchestrator Tools ────────────────────────────────────────────────────────


@mcp.tool()
def start_orchestrator(ctx: Context, project: str = "default") -> dict:
    """Start dispatching ready tasks of a project to coding agents."""
    app = _ctx(ctx)
    try:
        return app.orchestrator.start(project).to_dict()
    except (ValueError, StoreUnavailableError) as e:
        return {"error": str(e)}


@mcp.tool()
def pause_orchestrator(ctx: Context, project: str = "default") -> dict:
    """Stop claiming new tasks. Agents already running are not affected."""
    app = _ctx(ctx)
    try:
        return app.orchestrator.pause(project).to_dict()
    except StoreUnavailableError as e:
        return {"error": str(e)}


@mcp.tool()
def nudge(ctx: Context, project: str = "default") -> dict:
    """Ask the orchestrator to look for ready tasks now."""
    app = _ctx(ctx)
    started = app.orchestrator.nudge(project)
    return {"project": project, "cycle_started": started}


@mcp.tool()
def orchestrator_status(ctx: Context, project: str = "default") -> dict:
    """Orchestrator state, queue depth and running agents for a project."""
    app = _ctx(ctx)
    try:
        return app.orchestrator.get_status(project).to_dict()
    except StoreUnavailableError as e:
        return {"error": str(e)}


@mcp.tool()
def list_active_agents(ctx: Context, project: str = "default") -> list[dict]:
    """List the coding agents currently running for a project."""
    app = _ctx(ctx)
    return app.orchestrator.get_active_agents(project)


@mcp.tool()
def kill_agent(ctx: Context, agent_id: str, project: str = "default") -> dict:
    """Terminate a running agent. Its task is requeued without counting a failure."""
    app = _ctx(ctx)
    if not app.orchestrator.kill_agent(project, agent_id):
        return {"error": f"Agent not killable: {agent_id}"}
    return {"agent_id": agent_id, "killed": True}


@mcp.tool()
def recover_orphans(ctx: Context, project: str = "default") -> dict:
    """Reset in-progress tasks whose agent is no longer running."""
    app = _ctx(ctx)
    try:
        recovered = app.orchestrator.recover_orphans(project)
    except (ValueError, StoreUnavailableError) as e:
        return {"error": str(e)}
    return {"project": project, "recovered": recovered}


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def create_task(
    ctx: Context,
    title: str,
    project: str = "default",
    description: str = "",
    depends_on: list[str] | None = None,
    priority: int = 2,
) -> dict:
    """Create a new task. Priority: 0 (most urgent) to 4, default 2."""
    app = _ctx(ctx)
    with get_db(app.config.db_path) as db:
        if project == "default":
            projects_mod.ensure_default_project(db, str(app.config.repo_path))
        elif not projects_mod.get_project(db, project):
            return {"error": f"Project not found: {project}"}
        task = tasks_mod.create_task(
            db, title, project, description, depends_on=depends_on, priority=priority
        )
    app.orchestrator.nudge(project)
    return _task_to_dict(task)


@mcp.tool()
def list_tasks(
    ctx: Context,
    project: str = "default",
    status: str | None = None,
) -> list[dict]:
    """List tasks in dispatch order, optionally filtered by status."""
    app = _ctx(ctx)
    with get_db(app.config.db_path) as db:
        tasks = tasks_mod.list_tasks(db, project, status=status)
    return [_task_to_dict(t) for t in tasks]


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get full details of a task including its execution attempts."""
    app = _ctx(ctx)
    with get_db(app.config.db_path) as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            return {"error": f"Task not found: {task_id}"}
        d = _task_to_dict(task)
        d["attempts"] = tasks_mod.list_execution_attempts(db, task_id)
    return d


@mcp.tool()
def unblock_task(ctx: Context, task_id: str) -> dict:
    """Reopen a blocked task and reset its failure counter."""
    app = _ctx(ctx)
    with get_db(app.config.db_path) as db:
        try:
            task = tasks_mod.update_task(
                db, task_id, status=TaskStatus.OPEN, failure_count=0, block_reason=None
            )
        except InvalidStateTransition as e:
            return {"error": str(e)}
    if not task:
        return {"error": f"Task not found: {task_id}"}
    app.orchestrator.nudge(task.project_id)
    return _task_to_dict(task)


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_to_dict(task) -> dict:
    d = {
        "id": task.id,
        "title": task.title,
        "status": task.status.value,
        "priority": task.priority,
        "project": task.project_id,
        "description": task.description,
    }
    if task.assignee:
        d["assignee"] = task.assignee
    if task.failure_count:
        d["failure_count"] = task.failure_count
    if task.block_reason:
        d["block_reason"] = task.block_reason
    if task.depends_on:
        d["depends_on"] = task.depends_on
    last = task.extra.get("last_execution_summary") if task.extra else None
    if last:
        d["last_execution_summary"] = last
    return d
