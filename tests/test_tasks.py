"""Tests for task management operations."""

import pytest

from opensprint.core import projects as projects_mod
from opensprint.core import tasks as tasks_mod
from opensprint.db.models import InvalidStateTransition, TaskStatus, can_transition


class TestSlugify:
    def test_basic(self):
        assert tasks_mod.slugify("Hello World") == "hello-world"

    def test_special_chars(self):
        assert tasks_mod.slugify("Auth: Login & Signup!") == "auth-login-signup"

    def test_multiple_spaces(self):
        assert tasks_mod.slugify("  too   many   spaces  ") == "too-many-spaces"

    def test_truncation(self):
        long_title = "a" * 100
        assert len(tasks_mod.slugify(long_title)) <= 60


class TestTaskCRUD:
    def test_create_task(self, db):
        task = tasks_mod.create_task(db, "Build login page", "test")
        assert task.id == "build-login-page"
        assert task.title == "Build login page"
        assert task.status == TaskStatus.OPEN
        assert task.project_id == "test"
        assert task.assignee == ""
        assert task.failure_count == 0

    def test_create_duplicate_gets_suffix(self, db):
        t1 = tasks_mod.create_task(db, "Build login page", "test")
        t2 = tasks_mod.create_task(db, "Build login page", "test")
        assert t1.id == "build-login-page"
        assert t2.id == "build-login-page-2"

    def test_create_with_explicit_id(self, db):
        task = tasks_mod.create_task(db, "Partial work", "test", task_id="os-42")
        assert task.id == "os-42"

    def test_explicit_id_must_be_unique(self, db):
        tasks_mod.create_task(db, "First", "test", task_id="os-1")
        with pytest.raises(ValueError, match="already exists"):
            tasks_mod.create_task(db, "Second", "test", task_id="os-1")

    def test_get_nonexistent_task(self, db):
        assert tasks_mod.get_task(db, "nonexistent") is None

    def test_list_tasks_by_status(self, db):
        tasks_mod.create_task(db, "Task A", "test")
        tasks_mod.create_task(db, "Task B", "test")
        tasks_mod.update_task(db, "task-a", status=TaskStatus.BLOCKED)
        open_tasks = tasks_mod.list_tasks(db, "test", status="open")
        assert [t.id for t in open_tasks] == ["task-b"]

    def test_delete_task(self, db):
        tasks_mod.create_task(db, "Temp task", "test")
        assert tasks_mod.delete_task(db, "temp-task") is True
        assert tasks_mod.get_task(db, "temp-task") is None

    def test_delete_nonexistent(self, db):
        assert tasks_mod.delete_task(db, "nope") is False


class TestTransitions:
    def test_table(self):
        assert can_transition(TaskStatus.OPEN, TaskStatus.IN_PROGRESS)
        assert can_transition(TaskStatus.IN_PROGRESS, TaskStatus.DONE)
        assert can_transition(TaskStatus.BLOCKED, TaskStatus.OPEN)
        assert not can_transition(TaskStatus.BLOCKED, TaskStatus.IN_PROGRESS)
        assert not can_transition(TaskStatus.DONE, TaskStatus.OPEN)

    def test_invalid_transition_rejected(self, db):
        tasks_mod.create_task(db, "Finished", "test")
        tasks_mod.update_task(db, "finished", status=TaskStatus.IN_PROGRESS)
        tasks_mod.update_task(db, "finished", status=TaskStatus.DONE)
        with pytest.raises(InvalidStateTransition):
            tasks_mod.update_task(db, "finished", status=TaskStatus.OPEN)
        assert tasks_mod.get_task(db, "finished").status == TaskStatus.DONE

    def test_done_sets_completed_at(self, db):
        tasks_mod.create_task(db, "Done test", "test")
        tasks_mod.update_task(db, "done-test", status="in_progress")
        task = tasks_mod.update_task(db, "done-test", status="done")
        assert task.completed_at is not None

    def test_events_logged(self, db):
        tasks_mod.create_task(db, "Event test", "test")
        tasks_mod.update_task(db, "event-test", status="in_progress")
        events = tasks_mod.get_task_events(db, "event-test")
        assert [e.event_type for e in events] == ["created", "status_changed"]
        assert events[1].old_value == "open"
        assert events[1].new_value == "in_progress"

    def test_unknown_field_rejected(self, db):
        tasks_mod.create_task(db, "Strict", "test")
        with pytest.raises(ValueError, match="Unknown task fields"):
            tasks_mod.update_task(db, "strict", worktree_path="/tmp")

    def test_update_missing_task(self, db):
        assert tasks_mod.update_task(db, "ghost", status="done") is None

    def test_extra_is_merged(self, db):
        tasks_mod.create_task(db, "Extra", "test")
        tasks_mod.update_task(db, "extra", extra={"a": 1})
        task = tasks_mod.update_task(db, "extra", extra={"b": 2})
        assert task.extra == {"a": 1, "b": 2}


class TestClaim:
    def test_claim_open_task(self, db):
        tasks_mod.create_task(db, "Claim me", "test")
        assert tasks_mod.claim_task(db, "claim-me", "opensprint-coder") is True
        task = tasks_mod.get_task(db, "claim-me")
        assert task.status == TaskStatus.IN_PROGRESS
        assert task.assignee == "opensprint-coder"

    def test_second_claim_loses(self, db):
        tasks_mod.create_task(db, "Contested", "test")
        assert tasks_mod.claim_task(db, "contested", "agent-a") is True
        assert tasks_mod.claim_task(db, "contested", "agent-b") is False
        assert tasks_mod.get_task(db, "contested").assignee == "agent-a"

    def test_blocked_not_claimable(self, db):
        tasks_mod.create_task(db, "Stuck", "test")
        tasks_mod.update_task(db, "stuck", status="blocked", block_reason="Coding Failure")
        assert tasks_mod.claim_task(db, "stuck", "agent") is False

    def test_in_progress_with_agent_assignee(self, db):
        tasks_mod.create_task(db, "Assigned", "test")
        tasks_mod.create_task(db, "Manual", "test")
        tasks_mod.claim_task(db, "assigned", "opensprint-coder")
        tasks_mod.update_task(db, "manual", status="in_progress")
        found = tasks_mod.list_in_progress_with_agent_assignee(db, "test")
        assert [t.id for t in found] == ["assigned"]


class TestReadyTasks:
    def test_dependencies_gate_readiness(self, db):
        tasks_mod.create_task(db, "Base", "test")
        tasks_mod.create_task(db, "Dependent", "test", depends_on=["base"])
        tasks_mod.create_task(db, "Independent", "test")

        ids = [t.id for t in tasks_mod.list_ready_tasks(db, "test")]
        assert "base" in ids
        assert "independent" in ids
        assert "dependent" not in ids

    def test_ready_after_dep_done(self, db):
        tasks_mod.create_task(db, "Prereq", "test")
        tasks_mod.create_task(db, "Followup", "test", depends_on=["prereq"])
        tasks_mod.update_task(db, "prereq", status="in_progress")
        tasks_mod.update_task(db, "prereq", status="done")

        ids = [t.id for t in tasks_mod.list_ready_tasks(db, "test")]
        assert ids == ["followup"]

    def test_priority_then_fifo(self, db):
        tasks_mod.create_task(db, "Later", "test", priority=3)
        tasks_mod.create_task(db, "First urgent", "test", priority=1)
        tasks_mod.create_task(db, "Second urgent", "test", priority=1)
        ids = [t.id for t in tasks_mod.list_ready_tasks(db, "test")]
        assert ids == ["first-urgent", "second-urgent", "later"]

    def test_in_progress_not_ready(self, db):
        tasks_mod.create_task(db, "Busy", "test")
        tasks_mod.claim_task(db, "busy", "agent")
        assert tasks_mod.list_ready_tasks(db, "test") == []

    def test_dependency_done_in_another_project_does_not_count(self, db, git_repo):
        projects_mod.create_project(db, "other", "Other Project", git_repo)
        tasks_mod.create_task(db, "Upstream", "other")
        tasks_mod.update_task(db, "upstream", status="in_progress")
        tasks_mod.update_task(db, "upstream", status="done")
        tasks_mod.create_task(db, "Downstream", "test", depends_on=["upstream"])

        assert tasks_mod.list_ready_tasks(db, "test") == []


class TestPriority:
    def test_default_priority(self, db):
        assert tasks_mod.create_task(db, "Default prio", "test").priority == 2

    def test_priority_clamped(self, db):
        assert tasks_mod.create_task(db, "Too high", "test", priority=99).priority == 4
        assert tasks_mod.create_task(db, "Too low", "test", priority=-5).priority == 0

    def test_update_priority_logged(self, db):
        tasks_mod.create_task(db, "Prio event", "test")
        tasks_mod.update_task(db, "prio-event", priority=0)
        events = tasks_mod.get_task_events(db, "prio-event")
        prio_events = [e for e in events if e.event_type == "priority_changed"]
        assert len(prio_events) == 1
        assert prio_events[0].old_value == "2"
        assert prio_events[0].new_value == "0"


class TestExecutionAttempts:
    def test_attempts_append(self, db):
        tasks_mod.create_task(db, "Retry me", "test")
        assert tasks_mod.next_attempt_number(db, "retry-me") == 1
        for n, outcome in [(1, "requeued"), (2, "success")]:
            tasks_mod.add_execution_attempt(
                db,
                "retry-me",
                {"at": "2026-01-01T00:00:00", "attempt": n, "phase": "coding",
                 "outcome": outcome, "summary": f"attempt {n}"},
            )
        assert tasks_mod.next_attempt_number(db, "retry-me") == 3
        attempts = tasks_mod.list_execution_attempts(db, "retry-me")
        assert [a["outcome"] for a in attempts] == ["requeued", "success"]
        assert attempts[0]["failureType"] is None
