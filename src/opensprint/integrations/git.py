"""Git subprocess wrappers for branch and commit operations."""

import subprocess
from pathlib import Path


class GitError(Exception):
    """Raised when a git command fails."""


class GitBusyError(GitError):
    """Raised when the repository stays locked by another git operation."""


class BranchNotFoundError(GitError):
    """Raised when switching to a branch that does not exist."""


class MergeConflictError(GitError):
    """Raised when merging a branch produces conflicts. The merge is aborted."""

    def __init__(self, branch: str, conflicted_files: list[str]):
        super().__init__(
            f"Merge of {branch} conflicts in {len(conflicted_files)} file(s): "
            f"{', '.join(conflicted_files)}"
        )
        self.branch = branch
        self.conflicted_files = conflicted_files


def run_git(args: list[str], cwd: str | Path | None = None, timeout: float = 30) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        stderr = e.stderr.strip()
        if "index.lock" in stderr:
            raise GitBusyError(f"git {' '.join(args)} failed: {stderr}") from e
        raise GitError(f"git {' '.join(args)} failed: {stderr}") from e
    except subprocess.TimeoutExpired as e:
        raise GitError(f"git {' '.join(args)} timed out after {timeout}s") from e


def git_dir(repo_path: str | Path) -> Path:
    """Absolute path of the repository's .git directory."""
    out = run_git(["rev-parse", "--git-dir"], cwd=repo_path)
    path = Path(out)
    if not path.is_absolute():
        path = Path(repo_path) / path
    return path


def busy_markers(repo_path: str | Path) -> list[str]:
    """Names of lock files or in-flight operation markers present in the git dir."""
    gdir = git_dir(repo_path)
    markers = ["index.lock", "MERGE_HEAD", "rebase-merge", "rebase-apply", "CHERRY_PICK_HEAD"]
    return [m for m in markers if (gdir / m).exists()]


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    """Check if a branch exists."""
    try:
        run_git(["rev-parse", "--verify", f"refs/heads/{branch}"], cwd=repo_path)
        return True
    except GitError:
        return False


def create_branch(repo_path: str | Path, branch: str, base_branch: str = "main") -> str:
    """Create a branch from base_branch and switch to it."""
    return run_git(["checkout", "-b", branch, base_branch], cwd=repo_path)


def switch_branch(repo_path: str | Path, branch: str) -> str:
    return run_git(["checkout", branch], cwd=repo_path)


def delete_branch(repo_path: str | Path, branch: str, force: bool = False) -> str:
    """Delete a branch."""
    flag = "-D" if force else "-d"
    return run_git(["branch", flag, branch], cwd=repo_path)


def get_status(cwd: str | Path) -> str:
    """Porcelain status of a working directory; empty when clean."""
    return run_git(["status", "--porcelain"], cwd=cwd)


def get_current_branch(cwd: str | Path) -> str:
    """Get the current branch name."""
    return run_git(["branch", "--show-current"], cwd=cwd)


def stage_all(cwd: str | Path, exclude: list[str] | None = None) -> None:
    """Stage every change, then unstage the excluded paths."""
    run_git(["add", "-A"], cwd=cwd)
    for path in exclude or []:
        try:
            run_git(["reset", "-q", "HEAD", "--", path], cwd=cwd)
        except GitError:
            pass  # Path was not staged


def has_staged_changes(cwd: str | Path) -> bool:
    try:
        run_git(["diff", "--cached", "--quiet"], cwd=cwd)
        return False
    except GitBusyError:
        raise
    except GitError:
        return True


def commit(cwd: str | Path, message: str, skip_hooks: bool = True) -> str:
    """Commit staged changes."""
    args = ["-c", "core.hooksPath=/dev/null"] if skip_hooks else []
    return run_git(args + ["commit", "-m", message], cwd=cwd)


def conflicted_files(cwd: str | Path) -> list[str]:
    out = run_git(["diff", "--name-only", "--diff-filter=U"], cwd=cwd)
    return [line for line in out.split("\n") if line]


def merge_branch(cwd: str | Path, branch: str, message: str) -> str:
    """Merge branch into the current branch with a merge commit.

    On conflict the merge is aborted and MergeConflictError raised.
    """
    try:
        return run_git(
            ["-c", "core.hooksPath=/dev/null", "merge", "--no-ff", "-m", message, branch],
            cwd=cwd,
        )
    except GitBusyError:
        raise
    except GitError as e:
        files = conflicted_files(cwd)
        if not files:
            raise
        try:
            run_git(["merge", "--abort"], cwd=cwd)
        except GitError:
            pass  # Nothing to abort
        raise MergeConflictError(branch, files) from e
