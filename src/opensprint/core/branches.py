"""Per-task git branch lifecycle on a shared working tree.

Each task works on ``opensprint/<task-id>``. Agents share one checkout, so every
mutating git call for a repository goes through a per-path lock.
"""

import logging
import threading
import time
from contextlib import contextmanager
from pathlib import Path

from opensprint.integrations.git import (
    BranchNotFoundError,
    GitBusyError,
    GitError,
    branch_exists,
    busy_markers,
    commit,
    create_branch,
    delete_branch,
    get_current_branch,
    get_status,
    has_staged_changes,
    merge_branch,
    stage_all,
    switch_branch,
)

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "opensprint/"

# Runtime-only paths that must never end up in a WIP commit.
RUNTIME_EXCLUDE_FOR_WIP = [
    ".opensprint/active/",
    ".opensprint/sessions/",
]


def task_branch(task_id: str) -> str:
    return f"{BRANCH_PREFIX}{task_id}"


class BranchManager:
    """Git operations for the task lifecycle: checkout, WIP commits, merge back."""

    def __init__(
        self,
        default_branch: str = "main",
        lock_retries: int = 10,
        lock_delay: float = 0.5,
    ):
        self.default_branch = default_branch
        self.lock_retries = lock_retries
        self.lock_delay = lock_delay
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def repo_lock(self, repo_path: str | Path):
        """Hold the lock for one repository; other callers wait."""
        key = str(Path(repo_path).resolve())
        with self._locks_guard:
            lock = self._locks.setdefault(key, threading.RLock())
        with lock:
            yield

    def wait_for_git_ready(self, repo_path: str | Path) -> None:
        """Wait until no lock file or half-finished operation is present.

        Retries with a linearly growing delay and raises GitBusyError once the
        retry budget is spent.
        """
        for attempt in range(1, self.lock_retries + 1):
            markers = busy_markers(repo_path)
            if not markers:
                return
            delay = self.lock_delay * attempt
            logger.debug(
                "Repository %s busy (%s), retry %d/%d in %.1fs",
                repo_path, ", ".join(markers), attempt, self.lock_retries, delay,
            )
            time.sleep(delay)
        markers = busy_markers(repo_path)
        if markers:
            raise GitBusyError(
                f"Repository {repo_path} still busy after {self.lock_retries} retries: "
                f"{', '.join(markers)}"
            )

    def current_branch(self, repo_path: str | Path) -> str:
        return get_current_branch(repo_path)

    def checkout(
        self,
        repo_path: str | Path,
        branch: str,
        create: bool = True,
        default_branch: str | None = None,
    ) -> None:
        """Switch to branch, creating it from the default branch when missing.

        With create=False a missing branch raises BranchNotFoundError.
        """
        with self.repo_lock(repo_path):
            self.wait_for_git_ready(repo_path)
            if branch_exists(repo_path, branch):
                if get_current_branch(repo_path) != branch:
                    switch_branch(repo_path, branch)
                return
            if not create:
                raise BranchNotFoundError(f"Branch not found: {branch}")
            base = default_branch or self.default_branch
            create_branch(repo_path, branch, base)
            logger.info("Created branch %s from %s", branch, base)

    def commit_wip(self, repo_path: str | Path, task_id: str) -> bool:
        """Commit uncommitted work as ``WIP: <task_id>``.

        Returns True when a commit was made and False on a clean tree, so
        repeated calls are no-ops.
        """
        with self.repo_lock(repo_path):
            self.wait_for_git_ready(repo_path)
            if not get_status(repo_path):
                return False
            stage_all(repo_path, exclude=RUNTIME_EXCLUDE_FOR_WIP)
            if not has_staged_changes(repo_path):
                return False
            commit(repo_path, f"WIP: {task_id}")
            logger.info("Committed WIP for %s", task_id)
            return True

    def ensure_on_main(self, repo_path: str | Path, default_branch: str | None = None) -> None:
        """Switch back to the default branch. Never resets the working tree."""
        base = default_branch or self.default_branch
        with self.repo_lock(repo_path):
            self.wait_for_git_ready(repo_path)
            current = get_current_branch(repo_path)
            if current == base:
                return
            logger.warning("Expected %s but on %s, switching back", base, current or "(detached)")
            switch_branch(repo_path, base)

    def merge_to_main(
        self,
        repo_path: str | Path,
        branch: str,
        message: str | None = None,
        default_branch: str | None = None,
    ) -> None:
        """Merge branch into the default branch and delete it.

        Raises MergeConflictError (with the merge aborted) on conflicts.
        """
        with self.repo_lock(repo_path):
            self.ensure_on_main(repo_path, default_branch)
            merge_branch(repo_path, branch, message or f"Merge {branch}")
            self.delete_branch(repo_path, branch)

    def delete_branch(self, repo_path: str | Path, branch: str) -> bool:
        with self.repo_lock(repo_path):
            if not branch_exists(repo_path, branch):
                return False
            try:
                delete_branch(repo_path, branch, force=True)
            except GitError as e:
                logger.warning("Failed to delete branch %s: %s", branch, e)
                return False
            return True
