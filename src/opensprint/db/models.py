"""Data models for the OpenSprint orchestrator."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class TaskStatus(str, Enum):
    OPEN = "open"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    IN_REVIEW = "in_review"
    BLOCKED = "blocked"
    DONE = "done"


# Every status change must appear here; anything else is rejected.
TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.OPEN: frozenset({TaskStatus.READY, TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED}),
    TaskStatus.READY: frozenset({TaskStatus.OPEN, TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED}),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.OPEN, TaskStatus.IN_REVIEW, TaskStatus.DONE, TaskStatus.BLOCKED}
    ),
    TaskStatus.IN_REVIEW: frozenset({TaskStatus.OPEN, TaskStatus.DONE, TaskStatus.BLOCKED}),
    TaskStatus.BLOCKED: frozenset({TaskStatus.OPEN}),
    TaskStatus.DONE: frozenset(),
}

CLAIMABLE_STATUSES = frozenset({TaskStatus.OPEN, TaskStatus.READY})


class InvalidStateTransition(ValueError):
    """Raised when a task status change is not in the transition table."""

    def __init__(self, task_id: str, old: TaskStatus, new: TaskStatus):
        super().__init__(f"Task '{task_id}' cannot move from {old.value} to {new.value}")
        self.task_id = task_id
        self.old = old
        self.new = new


def can_transition(old: TaskStatus, new: TaskStatus) -> bool:
    return old == new or new in TRANSITIONS[old]


@dataclass
class Project:
    id: str
    name: str
    repo_path: str
    default_branch: str = "main"
    slack_channel: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Task:
    id: str
    project_id: str
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.OPEN
    # 0 is the most urgent; larger numbers are less urgent.
    priority: int = 2
    assignee: str = ""
    failure_count: int = 0
    block_reason: str | None = None
    extra: dict = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    depends_on: list[str] = field(default_factory=list)

    @property
    def is_claimable(self) -> bool:
        return self.status in CLAIMABLE_STATUSES


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None
