"""Task store used by the orchestrator.

The orchestrator only needs a handful of operations from the task store. This
module provides them on top of the SQLite task tables, opening a short-lived
connection per call so the dispatcher, the monitor thread and recovery can use
the store concurrently.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path

from opensprint.core import projects as projects_mod
from opensprint.core import tasks as tasks_mod
from opensprint.db.engine import get_db
from opensprint.db.models import Project, Task


class StoreUnavailableError(Exception):
    """Raised when the task store cannot be reached."""


class SqliteTaskStore:
    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    @contextmanager
    def _db(self):
        try:
            with get_db(self.db_path) as db:
                yield db
        except sqlite3.IntegrityError:
            raise
        except sqlite3.DatabaseError as e:
            raise StoreUnavailableError(f"Task store unavailable: {e}") from e

    def get_project(self, project_id: str) -> Project | None:
        with self._db() as db:
            return projects_mod.get_project(db, project_id)

    def get(self, project_id: str, task_id: str) -> Task | None:
        with self._db() as db:
            task = tasks_mod.get_task(db, task_id)
        if task and task.project_id != project_id:
            return None
        return task

    def list_tasks(self, project_id: str, status: str | None = None) -> list[Task]:
        with self._db() as db:
            return tasks_mod.list_tasks(db, project_id, status=status)

    def list_ready(self, project_id: str) -> list[Task]:
        with self._db() as db:
            return tasks_mod.list_ready_tasks(db, project_id)

    def list_in_progress_with_agent_assignee(self, project_id: str) -> list[Task]:
        with self._db() as db:
            return tasks_mod.list_in_progress_with_agent_assignee(db, project_id)

    def claim(self, project_id: str, task_id: str, assignee: str) -> bool:
        with self._db() as db:
            return tasks_mod.claim_task(db, task_id, assignee)

    def update(self, project_id: str, task_id: str, **fields) -> Task | None:
        with self._db() as db:
            return tasks_mod.update_task(db, task_id, **fields)

    def next_attempt(self, project_id: str, task_id: str) -> int:
        with self._db() as db:
            return tasks_mod.next_attempt_number(db, task_id)

    def record_attempt(self, project_id: str, task_id: str, summary: dict) -> None:
        """Append an attempt and mirror it as the task's last execution summary."""
        with self._db() as db:
            tasks_mod.add_execution_attempt(db, task_id, summary)
            tasks_mod.update_task(db, task_id, extra={"last_execution_summary": summary})
