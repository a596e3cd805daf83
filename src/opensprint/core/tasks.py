"""Task management operations."""

import json
import re
import sqlite3
from datetime import datetime

from opensprint.db.models import (
    CLAIMABLE_STATUSES,
    InvalidStateTransition,
    Task,
    TaskEvent,
    TaskStatus,
    can_transition,
)

MIN_PRIORITY = 0
MAX_PRIORITY_BEFORE_BLOCK = 4

_UPDATABLE_FIELDS = {
    "title",
    "description",
    "status",
    "priority",
    "assignee",
    "failure_count",
    "block_reason",
    "extra",
}

_CLAIMABLE_SQL = ", ".join(f"'{s.value}'" for s in sorted(CLAIMABLE_STATUSES, key=lambda s: s.value))


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60]


def clamp_priority(priority: int) -> int:
    return max(MIN_PRIORITY, min(MAX_PRIORITY_BEFORE_BLOCK, priority))


def _unique_id(db: sqlite3.Connection, base_slug: str) -> str:
    """Generate a unique task ID from a slug, appending a number if needed."""
    existing = db.execute(
        "SELECT id FROM tasks WHERE id = ?", (base_slug,)
    ).fetchone()
    if not existing:
        return base_slug

    i = 2
    while True:
        candidate = f"{base_slug}-{i}"
        existing = db.execute(
            "SELECT id FROM tasks WHERE id = ?", (candidate,)
        ).fetchone()
        if not existing:
            return candidate
        i += 1


def create_task(
    db: sqlite3.Connection,
    title: str,
    project_id: str = "default",
    description: str = "",
    depends_on: list[str] | None = None,
    priority: int = 2,
    task_id: str | None = None,
) -> Task:
    """Create a new task. Without an explicit task_id the title is slugified."""
    if task_id is None:
        task_id = _unique_id(db, slugify(title))
    elif get_task(db, task_id):
        raise ValueError(f"Task already exists: {task_id}")
    priority = clamp_priority(priority)

    db.execute(
        """INSERT INTO tasks (id, project_id, title, description, priority)
           VALUES (?, ?, ?, ?, ?)""",
        (task_id, project_id, title, description, priority),
    )

    if depends_on:
        for dep_id in depends_on:
            db.execute(
                "INSERT INTO task_dependencies (task_id, depends_on_task_id) VALUES (?, ?)",
                (task_id, dep_id),
            )

    _log_event(db, task_id, "created", None, TaskStatus.OPEN.value)
    db.commit()
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID with its dependencies."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    task = _row_to_task(row)
    task.depends_on = _dependencies(db, task_id)
    return task


def list_tasks(
    db: sqlite3.Connection,
    project_id: str = "default",
    status: TaskStatus | str | None = None,
) -> list[Task]:
    """List tasks in dispatch order: most urgent first, then oldest first."""
    query = "SELECT * FROM tasks WHERE project_id = ?"
    params: list = [project_id]

    if status:
        query += " AND status = ?"
        params.append(TaskStatus(status).value)

    query += " ORDER BY priority ASC, created_at ASC, rowid ASC"
    rows = db.execute(query, params).fetchall()
    tasks = []
    for row in rows:
        task = _row_to_task(row)
        task.depends_on = _dependencies(db, task.id)
        tasks.append(task)
    return tasks


def list_ready_tasks(db: sqlite3.Connection, project_id: str = "default") -> list[Task]:
    """Get claimable tasks whose dependencies are all done, in dispatch order."""
    done = {
        r["id"]
        for r in db.execute(
            "SELECT id FROM tasks WHERE status = ? AND project_id = ?",
            (TaskStatus.DONE.value, project_id),
        ).fetchall()
    }
    ready = []
    for task in list_tasks(db, project_id):
        if not task.is_claimable:
            continue
        if all(dep_id in done for dep_id in task.depends_on):
            ready.append(task)
    return ready


def list_in_progress_with_agent_assignee(
    db: sqlite3.Connection, project_id: str = "default"
) -> list[Task]:
    """Tasks marked in progress that still name an agent as assignee."""
    return [
        t
        for t in list_tasks(db, project_id, status=TaskStatus.IN_PROGRESS)
        if t.assignee
    ]


def claim_task(db: sqlite3.Connection, task_id: str, assignee: str) -> bool:
    """Atomically move a claimable task to in_progress.

    Returns False when the task is no longer claimable at update time, which
    is how concurrent claims on the same task lose the race.
    """
    cursor = db.execute(
        f"""UPDATE tasks
            SET status = ?, assignee = ?, updated_at = datetime('now')
            WHERE id = ? AND status IN ({_CLAIMABLE_SQL})""",
        (TaskStatus.IN_PROGRESS.value, assignee, task_id),
    )
    if cursor.rowcount != 1:
        db.rollback()
        return False
    _log_event(db, task_id, "claimed", None, assignee)
    db.commit()
    return True


def update_task(db: sqlite3.Connection, task_id: str, **fields) -> Task | None:
    """Update task fields. Status changes are checked against the transition table.

    ``extra`` is merged into the stored object rather than replacing it.
    """
    task = get_task(db, task_id)
    if not task:
        return None

    unknown = set(fields) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown task fields: {', '.join(sorted(unknown))}")

    updates: dict = {}
    if "status" in fields:
        new_status = TaskStatus(fields["status"])
        if not can_transition(task.status, new_status):
            raise InvalidStateTransition(task_id, task.status, new_status)
        if new_status != task.status:
            updates["status"] = new_status.value
            _log_event(db, task_id, "status_changed", task.status.value, new_status.value)
            if new_status == TaskStatus.DONE:
                updates["completed_at"] = datetime.now().isoformat()
    if "priority" in fields:
        priority = clamp_priority(int(fields["priority"]))
        if priority != task.priority:
            updates["priority"] = priority
            _log_event(db, task_id, "priority_changed", str(task.priority), str(priority))
    if "assignee" in fields:
        assignee = fields["assignee"] or ""
        if assignee != task.assignee:
            updates["assignee"] = assignee
            _log_event(db, task_id, "assignee_changed", task.assignee or None, assignee or None)
    if "extra" in fields:
        updates["extra"] = json.dumps({**task.extra, **(fields["extra"] or {})})
    for key in ("title", "description", "failure_count", "block_reason"):
        if key in fields:
            updates[key] = fields[key]

    if updates:
        set_parts = [f"{k} = ?" for k in updates]
        set_parts.append("updated_at = datetime('now')")
        db.execute(
            f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ?",
            list(updates.values()) + [task_id],
        )
    db.commit()
    return get_task(db, task_id)


def delete_task(db: sqlite3.Connection, task_id: str) -> bool:
    """Delete a task and its history."""
    if not get_task(db, task_id):
        return False
    db.execute(
        "DELETE FROM task_dependencies WHERE task_id = ? OR depends_on_task_id = ?",
        (task_id, task_id),
    )
    db.execute("DELETE FROM execution_attempts WHERE task_id = ?", (task_id,))
    db.execute("DELETE FROM task_events WHERE task_id = ?", (task_id,))
    db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    db.commit()
    return True


def next_attempt_number(db: sqlite3.Connection, task_id: str) -> int:
    row = db.execute(
        "SELECT COALESCE(MAX(attempt), 0) AS n FROM execution_attempts WHERE task_id = ?",
        (task_id,),
    ).fetchone()
    return row["n"] + 1


def add_execution_attempt(db: sqlite3.Connection, task_id: str, summary: dict) -> None:
    """Append an attempt record. Rows in execution_attempts are never updated."""
    db.execute(
        """INSERT INTO execution_attempts
           (task_id, attempt, phase, outcome, summary, failure_type, block_reason, at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            task_id,
            summary["attempt"],
            summary["phase"],
            summary["outcome"],
            summary["summary"],
            summary.get("failureType"),
            summary.get("blockReason"),
            summary["at"],
        ),
    )
    db.commit()


def list_execution_attempts(db: sqlite3.Connection, task_id: str) -> list[dict]:
    rows = db.execute(
        "SELECT * FROM execution_attempts WHERE task_id = ? ORDER BY attempt, id",
        (task_id,),
    ).fetchall()
    return [
        {
            "at": r["at"],
            "attempt": r["attempt"],
            "outcome": r["outcome"],
            "phase": r["phase"],
            "summary": r["summary"],
            "failureType": r["failure_type"],
            "blockReason": r["block_reason"],
        }
        for r in rows
    ]


def get_task_events(db: sqlite3.Connection, task_id: str) -> list[TaskEvent]:
    """Get the event history for a task."""
    rows = db.execute(
        "SELECT * FROM task_events WHERE task_id = ? ORDER BY id",
        (task_id,),
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def _dependencies(db: sqlite3.Connection, task_id: str) -> list[str]:
    deps = db.execute(
        "SELECT depends_on_task_id FROM task_dependencies WHERE task_id = ?",
        (task_id,),
    ).fetchall()
    return [d["depends_on_task_id"] for d in deps]


def _log_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        "INSERT INTO task_events (task_id, event_type, old_value, new_value) VALUES (?, ?, ?, ?)",
        (task_id, event_type, old_value, new_value),
    )


def _row_to_task(row: sqlite3.Row) -> Task:
    try:
        extra = json.loads(row["extra"] or "{}")
    except json.JSONDecodeError:
        extra = {}
    return Task(
        id=row["id"],
        project_id=row["project_id"],
        title=row["title"],
        description=row["description"] or "",
        status=TaskStatus(row["status"]),
        priority=row["priority"] if row["priority"] is not None else 2,
        assignee=row["assignee"] or "",
        failure_count=row["failure_count"] or 0,
        block_reason=row["block_reason"],
        extra=extra if isinstance(extra, dict) else {},
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        completed_at=_parse_dt(row["completed_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
