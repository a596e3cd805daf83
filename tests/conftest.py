"""Shared fixtures: temporary git repositories and task databases."""

import os
import subprocess
import tempfile
from pathlib import Path

import pytest

from opensprint.core import projects as projects_mod
from opensprint.core.store import SqliteTaskStore
from opensprint.db.engine import init_db

GIT_ENV = {
    **os.environ,
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@test.com",
}


def _git(repo, *args) -> str:
    result = subprocess.run(
        ["git", *args], cwd=repo, capture_output=True, text=True, check=True, env=GIT_ENV
    )
    return result.stdout.strip()


@pytest.fixture
def git():
    """Run a git command in a repository and return its stdout."""
    return _git


@pytest.fixture
def git_repo():
    """Create a temporary git repo on main with an initial commit."""
    with tempfile.TemporaryDirectory() as tmp:
        repo = Path(tmp) / "repo"
        repo.mkdir()
        _git(repo, "init")
        _git(repo, "checkout", "-b", "main")
        # Commits made by the code under test use the repo config, not GIT_ENV.
        _git(repo, "config", "user.name", "Test")
        _git(repo, "config", "user.email", "test@test.com")
        (repo / "README.md").write_text("# Test\n")
        _git(repo, "add", ".")
        _git(repo, "commit", "-m", "init")
        yield str(repo)


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp) / "test.db"


@pytest.fixture
def db(db_path, git_repo):
    """A database with a 'test' project pointing at the temporary repo."""
    conn = init_db(db_path)
    projects_mod.create_project(conn, "test", "Test Project", git_repo)
    yield conn
    conn.close()


@pytest.fixture
def store(db, db_path):
    return SqliteTaskStore(db_path)
