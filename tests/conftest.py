"""Shared fixtures: throwaway git repositories and a scratch directory outside them."""

import subprocess
import tempfile
from pathlib import Path

import pytest

GIT_IDENTITY = {
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@test.com",
}


@pytest.fixture(autouse=True)
def git_identity(monkeypatch):
    """Merges and agent commits run git in subprocesses that need an identity."""
    for key, value in GIT_IDENTITY.items():
        monkeypatch.setenv(key, value)


@pytest.fixture
def git_repo():
    """Create a temporary git repo on `main` with one commit."""
    with tempfile.TemporaryDirectory() as tmp:
        repo = Path(tmp) / "repo"
        repo.mkdir()
        subprocess.run(["git", "init"], cwd=repo, capture_output=True, check=True)
        subprocess.run(["git", "checkout", "-b", "main"], cwd=repo, capture_output=True, check=True)
        (repo / "README.md").write_text("# Test\n")
        subprocess.run(["git", "add", "."], cwd=repo, capture_output=True, check=True)
        subprocess.run(["git", "commit", "-m", "init"], cwd=repo, capture_output=True, check=True)
        yield repo


@pytest.fixture
def workdir():
    """Scratch directory for task files, logs and databases, outside any repo."""
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp)
