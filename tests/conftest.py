"""Shared fixtures: temporary git repositories and in-memory stores."""

import os
import subprocess
import tempfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from swarm_orchestrator.config import Config
from swarm_orchestrator.core import projects as projects_mod
from swarm_orchestrator.core.knowledge import KnowledgeStore
from swarm_orchestrator.db.engine import MEMORY_DB

GIT_ENV = {
    **os.environ,
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@test.com",
}


def git(args, cwd):
    return subprocess.run(
        ["git"] + args, cwd=cwd, capture_output=True, check=True, text=True, env=GIT_ENV
    ).stdout.strip()


@pytest.fixture
def git_repo():
    """Create a temporary git repo with an initial commit on main."""
    with tempfile.TemporaryDirectory() as tmp:
        repo = Path(tmp) / "repo"
        repo.mkdir()
        git(["init"], repo)
        git(["checkout", "-b", "main"], repo)
        (repo / "README.md").write_text("# Test")
        git(["add", "."], repo)
        git(["commit", "-m", "init"], repo)
        yield str(repo)


@pytest.fixture
def store():
    s = KnowledgeStore.open(MEMORY_DB, sleep=lambda _: None)
    yield s
    s.close()


@pytest.fixture
def project(store, git_repo):
    return store.write(projects_mod.create_project, "demo", "Demo", git_repo)


@pytest.fixture
def config(git_repo):
    with tempfile.TemporaryDirectory() as out:
        yield Config(
            db_path=MEMORY_DB,
            repo_path=Path(git_repo),
            output_dir=str(Path(out) / "outputs"),
            snapshot_dir=str(Path(out) / "snapshots"),
            agent_command="claude",
            poll_interval=0.01,
            max_concurrent_tasks=2,
        )


@pytest.fixture
def mock_popen():
    """Patch worker process creation. Set `proc.poll.return_value` to finish workers."""
    with patch("swarm_orchestrator.core.sessions.Popen") as popen:
        proc = MagicMock()
        proc.pid = 12345
        proc.poll.return_value = None
        popen.return_value = proc
        yield popen
