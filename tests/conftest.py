# Copyright (c) Syntropy Systems
"""Pytest fixtures for polish tests."""

import os
import sqlite3
import subprocess
import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest

# Store original cwd at module load time
_original_cwd = Path.cwd()


def git(cwd: Path, *args: str) -> str:
    """Run git in `cwd` and return stdout."""
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout


def init_git_repo(path: Path) -> Path:
    """Create a git repository on `main` with one commit."""
    path.mkdir(parents=True, exist_ok=True)
    git(path, "init", "-q")
    git(path, "symbolic-ref", "HEAD", "refs/heads/main")
    git(path, "config", "user.email", "polish@example.com")
    git(path, "config", "user.name", "polish tests")
    git(path, "config", "commit.gpgsign", "false")
    (path / "README.md").write_text("# sample\n")
    (path / "score.txt").write_text("80\n")
    git(path, "add", "-A")
    git(path, "commit", "-q", "-m", "initial")
    return path


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir).resolve()


@pytest.fixture
def git_repo(temp_dir: Path) -> Path:
    """A git repository with an initial commit (score.txt holds 80)."""
    return init_git_repo(temp_dir / "repo")


@pytest.fixture
def worktree_root(temp_dir: Path) -> Path:
    """Directory for isolated worktrees, outside the repository."""
    return temp_dir / "worktrees"


@pytest.fixture
def polish_project(git_repo: Path, worktree_root: Path) -> Generator[Path, None, None]:
    """An initialized polish project inside a git repository.

    The config scores `score.txt` and keeps worktrees under `worktree_root`.
    """
    from polish.cli.init_cmd import exclude_from_git
    from polish.db import init_db

    polish_dir = git_repo / ".polish"
    polish_dir.mkdir()
    (polish_dir / "state").mkdir()
    (polish_dir / "config.yaml").write_text(
        f"""\
target: 95
max_iterations: 5
max_stalled: 2
worktree_root: {worktree_root}
metrics:
  - name: tests
    command: cat score.txt
    weight: 1
    target: 100
    higher_is_better: true
"""
    )
    init_db(polish_dir / "polish.db")
    exclude_from_git(git_repo)

    # Change to project directory
    os.chdir(git_repo)

    yield git_repo

    # Always return to original cwd
    os.chdir(_original_cwd)


@pytest.fixture
def db_connection(polish_project: Path) -> Generator[sqlite3.Connection, None, None]:
    """Get a database connection for the test project."""
    from polish.db import get_connection

    db_path = polish_project / ".polish" / "polish.db"
    conn = get_connection(db_path)
    yield conn
    conn.close()
