"""Execution summaries and the failure backoff policy.

Priority numbers run the "wrong" way: 0 is the most urgent task. Demoting a
task therefore increases its number. Once a task at MAX_PRIORITY_BEFORE_BLOCK
reaches the failure threshold again it is blocked instead of demoted further.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone

from opensprint.core.tasks import MAX_PRIORITY_BEFORE_BLOCK, clamp_priority
from opensprint.db.models import TaskStatus

BACKOFF_FAILURE_THRESHOLD = 3
SUMMARY_CHAR_LIMIT = 500
BLOCK_REASON_CODING_FAILURE = "Coding Failure"

OUTCOMES = ("success", "failed", "requeued", "demoted", "blocked")


def compact_text(text: str | None, limit: int = SUMMARY_CHAR_LIMIT) -> str:
    """Collapse whitespace and truncate to limit characters with an ellipsis."""
    if not text:
        return ""
    compact = re.sub(r"\s+", " ", text).strip()
    if len(compact) <= limit:
        return compact
    return compact[: max(0, limit - 3)].rstrip() + "..."


@dataclass(frozen=True)
class ExecutionSummary:
    at: str
    attempt: int
    outcome: str
    phase: str
    summary: str
    failure_type: str | None = None
    block_reason: str | None = None

    def to_dict(self) -> dict:
        return {
            "at": self.at,
            "attempt": self.attempt,
            "outcome": self.outcome,
            "phase": self.phase,
            "summary": self.summary,
            "failureType": self.failure_type,
            "blockReason": self.block_reason,
        }

    @classmethod
    def from_dict(cls, value) -> "ExecutionSummary | None":
        """Parse a stored summary; returns None for anything malformed."""
        if not isinstance(value, dict):
            return None
        if not (
            isinstance(value.get("at"), str)
            and isinstance(value.get("attempt"), int)
            and isinstance(value.get("outcome"), str)
            and isinstance(value.get("phase"), str)
            and isinstance(value.get("summary"), str)
        ):
            return None
        failure_type = value.get("failureType")
        block_reason = value.get("blockReason")
        return cls(
            at=value["at"],
            attempt=value["attempt"],
            outcome=value["outcome"],
            phase=value["phase"],
            summary=value["summary"],
            failure_type=failure_type if isinstance(failure_type, str) else None,
            block_reason=block_reason if isinstance(block_reason, str) else None,
        )


def build_execution_summary(
    attempt: int,
    outcome: str,
    summary: str,
    phase: str = "coding",
    failure_type: str | None = None,
    block_reason: str | None = None,
    at: str | None = None,
    limit: int = SUMMARY_CHAR_LIMIT,
) -> ExecutionSummary:
    if outcome not in OUTCOMES:
        raise ValueError(f"Unknown outcome: {outcome}")
    return ExecutionSummary(
        at=at or datetime.now(timezone.utc).isoformat(),
        attempt=attempt,
        outcome=outcome,
        phase=phase,
        summary=compact_text(summary, limit),
        failure_type=failure_type,
        block_reason=block_reason,
    )


@dataclass(frozen=True)
class BackoffDecision:
    """What happens to a task after a failed attempt."""

    outcome: str
    status: TaskStatus
    priority: int
    failure_count: int
    block_reason: str | None = None

    def task_fields(self) -> dict:
        return {
            "status": self.status,
            "priority": self.priority,
            "failure_count": self.failure_count,
            "block_reason": self.block_reason,
            "assignee": "",
        }


def evaluate_failure(priority: int, failure_count: int) -> BackoffDecision:
    """Apply the backoff policy to a task that just failed.

    failure_count is the number of consecutive failures before this one.
    """
    priority = clamp_priority(priority)
    count = failure_count + 1
    if count < BACKOFF_FAILURE_THRESHOLD:
        return BackoffDecision("requeued", TaskStatus.OPEN, priority, count)
    if priority < MAX_PRIORITY_BEFORE_BLOCK:
        return BackoffDecision("demoted", TaskStatus.OPEN, priority + 1, 0)
    return BackoffDecision(
        "blocked", TaskStatus.BLOCKED, priority, 0, BLOCK_REASON_CODING_FAILURE
    )


def describe_decision(decision: BackoffDecision, attempt: int) -> str:
    if decision.outcome == "blocked":
        return f"Blocked after {attempt} failed attempts"
    if decision.outcome == "demoted":
        return f"Demoted to priority {decision.priority}"
    return f"Requeued ({decision.failure_count}/{BACKOFF_FAILURE_THRESHOLD} consecutive failures)"
