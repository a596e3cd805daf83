"""Tests for orphan recovery."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from opensprint.core import tasks as tasks_mod
from opensprint.core.branches import BranchManager
from opensprint.core.processes import AgentProcessRegistry
from opensprint.core.recovery import OrphanRecoveryService
from opensprint.db.models import TaskStatus
from opensprint.integrations.events import EventBus
from opensprint.integrations.git import GitBusyError, GitError, branch_exists


@pytest.fixture
def branches():
    return BranchManager(lock_retries=2, lock_delay=0.01)


@pytest.fixture
def registry():
    return AgentProcessRegistry()


def _claimed(db, title, task_id, priority=2):
    tasks_mod.create_task(db, title, "test", priority=priority, task_id=task_id)
    assert tasks_mod.claim_task(db, task_id, "opensprint-coder")


class TestPartialWorkScenario:
    def test_os_42(self, db, store, branches, registry, git_repo, git):
        _claimed(db, "Partial work", "os-42", priority=1)
        branches.checkout(git_repo, "opensprint/os-42")
        partial = Path(git_repo) / "src" / "partial.ts"
        partial.parent.mkdir()
        partial.write_text("export const half = true;\n")

        events = []
        bus = EventBus()
        bus.subscribe(lambda project_id, event: events.append(event))
        service = OrphanRecoveryService(store, branches, registry, bus)

        assert service.recover_orphaned_tasks("test", git_repo) == ["os-42"]

        assert git(git_repo, "log", "-1", "--format=%s", "opensprint/os-42") == "WIP: os-42"
        committed = git(git_repo, "show", "--name-only", "--format=", "opensprint/os-42")
        assert committed == "src/partial.ts"
        assert branches.current_branch(git_repo) == "main"

        task = store.get("test", "os-42")
        assert task.status == TaskStatus.OPEN
        assert task.assignee == ""
        assert task.priority == 1
        assert events == [
            {
                "type": "task.updated",
                "taskId": "os-42",
                "status": "open",
                "assignee": "",
                "reason": "orphan_recovered",
            }
        ]


class TestOrphanDetection:
    def test_tracked_tasks_are_not_orphans(self, db, store, branches, registry):
        _claimed(db, "Live", "os-1")
        _claimed(db, "Dead", "os-2")
        registry.register(4242, process_group=True, task_id="os-1")
        service = OrphanRecoveryService(store, branches, registry)
        assert [t.id for t in service.find_orphans("test")] == ["os-2"]

    def test_unassigned_in_progress_ignored(self, db, store, branches, registry):
        tasks_mod.create_task(db, "Manual", "test")
        tasks_mod.update_task(db, "manual", status="in_progress")
        service = OrphanRecoveryService(store, branches, registry)
        assert service.find_orphans("test") == []

    def test_exclude_task_id(self, db, store, branches, registry, git_repo):
        _claimed(db, "Elsewhere", "os-1")
        _claimed(db, "Here", "os-2")
        service = OrphanRecoveryService(store, branches, registry)
        assert service.recover_orphaned_tasks("test", git_repo, exclude_task_id="os-1") == ["os-2"]
        assert store.get("test", "os-1").status == TaskStatus.IN_PROGRESS


class TestConvergence:
    def test_all_orphans_reopened_when_some_branches_missing(
        self, db, store, branches, registry, git_repo
    ):
        _claimed(db, "Has branch", "os-1")
        _claimed(db, "No branch", "os-2")
        _claimed(db, "Also no branch", "os-3")
        branches.checkout(git_repo, "opensprint/os-1")
        (Path(git_repo) / "wip.txt").write_text("half done")
        branches.ensure_on_main(git_repo)

        service = OrphanRecoveryService(store, branches, registry)
        recovered = service.recover_orphaned_tasks("test", git_repo)

        assert sorted(recovered) == ["os-1", "os-2", "os-3"]
        for task_id in recovered:
            task = store.get("test", task_id)
            assert task.status == TaskStatus.OPEN
            assert task.assignee == ""
        assert not branch_exists(git_repo, "opensprint/os-2")
        assert branches.current_branch(git_repo) == "main"

    def test_missing_branch_commits_nothing(self, db, store, branches, registry, git_repo, git):
        _claimed(db, "Never branched", "os-7")
        (Path(git_repo) / "stray.txt").write_text("not os-7's work")

        service = OrphanRecoveryService(store, branches, registry)
        assert service.recover_orphaned_tasks("test", git_repo) == ["os-7"]

        assert git(git_repo, "log", "-1", "--format=%s", "main") == "init"
        assert "?? stray.txt" in git(git_repo, "status", "--porcelain")

    def test_second_pass_is_noop(self, db, store, branches, registry, git_repo):
        _claimed(db, "Once", "os-1")
        service = OrphanRecoveryService(store, branches, registry)
        assert service.recover_orphaned_tasks("test", git_repo) == ["os-1"]
        assert service.recover_orphaned_tasks("test", git_repo) == []


class TestFailureIsolation:
    def test_one_failure_does_not_stop_the_batch(self, db, store, registry, git_repo):
        _claimed(db, "Unlucky", "os-1", priority=0)
        _claimed(db, "Lucky", "os-2", priority=1)
        branches = MagicMock()
        branches.wait_for_git_ready.side_effect = [GitBusyError("busy"), None]

        service = OrphanRecoveryService(store, branches, registry)
        assert service.recover_orphaned_tasks("test", git_repo) == ["os-2"]
        assert store.get("test", "os-1").status == TaskStatus.IN_PROGRESS
        assert store.get("test", "os-2").status == TaskStatus.OPEN

    def test_checkout_error_still_returns_to_main(self, db, store, registry, git_repo):
        _claimed(db, "Broken checkout", "os-1")
        branches = MagicMock()
        branches.checkout.side_effect = GitError("checkout failed")

        service = OrphanRecoveryService(store, branches, registry)
        assert service.recover_orphaned_tasks("test", git_repo) == ["os-1"]
        branches.commit_wip.assert_not_called()
        branches.ensure_on_main.assert_called_once_with(git_repo, None)

    def test_ensure_on_main_failure_tolerated(self, db, store, registry, git_repo):
        _claimed(db, "Stuck on branch", "os-1")
        branches = MagicMock()
        branches.ensure_on_main.side_effect = GitError("cannot switch")

        service = OrphanRecoveryService(store, branches, registry)
        assert service.recover_orphaned_tasks("test", git_repo) == ["os-1"]
        branches.commit_wip.assert_called_once_with(git_repo, "os-1")
        assert store.get("test", "os-1").assignee == ""
