from pathlib import Path

import pytest

from fakes import git


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A repository on branch ``main`` with one commit."""
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q")
    git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    git(repo, "config", "user.email", "agent@example.com")
    git(repo, "config", "user.name", "Agent Fleet Tests")
    git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("# demo\n")
    (repo / "src").mkdir()
    (repo / "src" / "app.py").write_text("print('hello')\n")
    git(repo, "add", "-A")
    git(repo, "commit", "-q", "-m", "initial")
    return repo
