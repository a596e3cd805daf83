"""Orphan recovery: reset abandoned in-progress tasks.

A task is orphaned when it is in progress with an agent assignee but no agent
process is tracked for it, which happens when the orchestrator or the agent
dies without the exit being observed. Recovery saves any uncommitted work on
the task branch as a WIP commit, puts the working tree back on the default
branch and reopens the task so it is dispatched again. While a live agent owns
the working tree, recovery only reopens the task.
"""

import logging

from opensprint.core.branches import BranchManager, task_branch
from opensprint.core.processes import AgentProcessRegistry
from opensprint.db.models import Task, TaskStatus
from opensprint.integrations.git import BranchNotFoundError, GitError

logger = logging.getLogger(__name__)


class OrphanRecoveryService:
    def __init__(self, store, branch_manager: BranchManager, registry: AgentProcessRegistry, events=None):
        self.store = store
        self.branches = branch_manager
        self.registry = registry
        self.events = events

    def find_orphans(self, project_id: str, exclude_task_id: str | None = None) -> list[Task]:
        tracked = self.registry.tracked_task_ids()
        return [
            t
            for t in self.store.list_in_progress_with_agent_assignee(project_id)
            if t.id not in tracked and t.id != exclude_task_id
        ]

    def recover_orphaned_tasks(
        self,
        project_id: str,
        repo_path: str,
        exclude_task_id: str | None = None,
        default_branch: str | None = None,
        touch_git: bool = True,
    ) -> list[str]:
        """Recover every orphan in the project. Returns the ids that were reset.

        exclude_task_id skips a task another code path is already recovering.
        With touch_git=False the working tree is left alone and only the task
        status is reset; callers pass it while a live agent owns the tree.
        A failure on one task is logged and does not stop the others.
        """
        recovered = []
        for task in self.find_orphans(project_id, exclude_task_id):
            try:
                if touch_git:
                    self._save_orphan_work(repo_path, task, default_branch)
                else:
                    logger.info(
                        "Working tree is in use, resetting orphaned task %s without git", task.id
                    )
                self._reopen(project_id, task)
                recovered.append(task.id)
            except Exception as e:
                logger.warning("Failed to recover orphaned task %s: %s", task.id, e)

        if recovered:
            logger.warning(
                "Recovered %d orphaned task(s): %s", len(recovered), ", ".join(recovered)
            )
        return recovered

    def _save_orphan_work(
        self, repo_path: str, task: Task, default_branch: str | None = None
    ) -> None:
        self.branches.wait_for_git_ready(repo_path)
        try:
            try:
                self.branches.checkout(repo_path, task_branch(task.id), create=False)
            except BranchNotFoundError:
                # Crashed before its branch existed. Whatever is uncommitted belongs to
                # the branch that is checked out, so no WIP commit is made.
                logger.info("No branch for orphaned task %s, resetting status only", task.id)
            except GitError as e:
                # Same rule: WIP is only committed on the task's own branch.
                logger.warning("Could not check out branch for %s: %s", task.id, e)
            else:
                try:
                    if self.branches.commit_wip(repo_path, task.id):
                        logger.info("Saved uncommitted work for orphaned task %s", task.id)
                except GitError as e:
                    logger.warning("WIP commit failed for %s: %s", task.id, e)
        finally:
            try:
                self.branches.ensure_on_main(repo_path, default_branch)
            except GitError as e:
                logger.warning("Could not return %s to the default branch: %s", repo_path, e)

    def _reopen(self, project_id: str, task: Task) -> None:
        self.store.update(project_id, task.id, status=TaskStatus.OPEN, assignee="")
        if self.events:
            self.events.publish(
                project_id,
                {
                    "type": "task.updated",
                    "taskId": task.id,
                    "status": TaskStatus.OPEN.value,
                    "assignee": "",
                    "reason": "orphan_recovered",
                },
            )
