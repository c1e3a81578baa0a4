"""Fixtures for tests that need a real git repository."""

import subprocess
from pathlib import Path

import pytest


def git(cwd: Path, *args: str) -> str:
    """Run git synchronously and return stripped stdout."""
    result = subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


def commit_file(cwd: Path, name: str, content: str, message: str) -> None:
    """Write a file and commit it in the given checkout."""
    (cwd / name).write_text(content)
    git(cwd, "add", name)
    git(cwd, "commit", "-m", message)


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Create a temporary git repository on branch main."""
    repo_path = tmp_path / "test_repo"
    repo_path.mkdir()

    git(repo_path, "init")
    git(repo_path, "config", "user.email", "test@test.com")
    git(repo_path, "config", "user.name", "Test User")

    (repo_path / "README.md").write_text("# Test Repo")
    git(repo_path, "add", "README.md")
    git(repo_path, "commit", "-m", "Initial commit")
    git(repo_path, "branch", "-M", "main")

    return repo_path
