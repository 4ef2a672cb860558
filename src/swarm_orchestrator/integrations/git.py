"""Git plumbing for worker workspaces: worktrees, branches, commits, merges."""

import os
import subprocess
from pathlib import Path

# Identity used for orchestrator commits when git has none configured
_DEFAULT_IDENTITY = {
    "GIT_AUTHOR_NAME": "swarm-orchestrator",
    "GIT_AUTHOR_EMAIL": "swarm-orchestrator@localhost",
    "GIT_COMMITTER_NAME": "swarm-orchestrator",
    "GIT_COMMITTER_EMAIL": "swarm-orchestrator@localhost",
}


class GitError(Exception):
    """A git command exited non-zero."""

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message)
        self.stderr = stderr


def run_git(
    args: list[str],
    cwd: str | Path | None = None,
    env: dict | None = None,
    strip: bool = True,
) -> str:
    proc = subprocess.run(["git", *args], cwd=cwd, env=env, capture_output=True, text=True)
    if proc.returncode != 0:
        stderr = proc.stderr.strip()
        raise GitError(f"git {' '.join(args)} failed: {stderr}", stderr)
    return proc.stdout.strip() if strip else proc.stdout


def _git_succeeds(args: list[str], cwd: str | Path) -> bool:
    return subprocess.run(["git", *args], cwd=cwd, capture_output=True).returncode == 0


def _commit_env() -> dict:
    return {**_DEFAULT_IDENTITY, **os.environ}


# ── Worktrees ────────────────────────────────────────────────────────────────


def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    base_branch: str = "main",
    create_branch: bool = True,
) -> str:
    """Check out `branch` in a new worktree, forking it from `base_branch` if asked."""
    if create_branch:
        return run_git(["worktree", "add", "-b", branch, str(worktree_path), base_branch], cwd=repo_path)
    return run_git(["worktree", "add", str(worktree_path), branch], cwd=repo_path)


def worktree_list(repo_path: str | Path) -> list[dict]:
    """Registered worktrees as {"path", "branch", "head"} dicts.

    Porcelain output is one blank-line separated block per worktree.
    """
    output = run_git(["worktree", "list", "--porcelain"], cwd=repo_path)
    entries = []
    for block in output.split("\n\n"):
        attrs = dict(
            line.split(" ", 1) if " " in line else (line, "")
            for line in block.splitlines()
        )
        if "worktree" not in attrs:
            continue
        entries.append({
            "path": attrs["worktree"],
            "branch": attrs.get("branch", "").removeprefix("refs/heads/"),
            "head": attrs.get("HEAD", ""),
        })
    return entries


def worktree_remove(repo_path: str | Path, worktree_path: str | Path, force: bool = False) -> str:
    args = ["worktree", "remove", str(worktree_path)]
    return run_git(args + ["--force"] if force else args, cwd=repo_path)


def worktree_prune(repo_path: str | Path) -> str:
    """Drop administrative entries for worktrees whose directories are gone."""
    return run_git(["worktree", "prune"], cwd=repo_path)


# ── Branches and commits ─────────────────────────────────────────────────────


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    return _git_succeeds(["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], repo_path)


def delete_branch(repo_path: str | Path, branch: str, force: bool = False) -> str:
    return run_git(["branch", "-D" if force else "-d", branch], cwd=repo_path)


def current_branch(cwd: str | Path) -> str:
    return run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)


def changed_files(cwd: str | Path) -> list[str]:
    """Paths with uncommitted changes, including untracked files."""
    output = run_git(["status", "--porcelain"], cwd=cwd, strip=False)
    files = []
    for line in output.splitlines():
        if len(line) > 3:
            # Renames read "old -> new"
            files.append(line[3:].split(" -> ")[-1])
    return files


def commit_all(cwd: str | Path, message: str) -> str | None:
    """Stage and commit everything. Returns the new HEAD, or None if clean."""
    if not changed_files(cwd):
        return None
    run_git(["add", "-A"], cwd=cwd)
    run_git(["commit", "-m", message], cwd=cwd, env=_commit_env())
    return run_git(["rev-parse", "HEAD"], cwd=cwd)


def merge_branch(repo_path: str | Path, branch: str, message: str | None = None) -> str:
    """Merge `branch` into the currently checked-out branch with a merge commit."""
    args = ["merge", "--no-ff", branch]
    if message:
        args += ["-m", message]
    return run_git(args, cwd=repo_path, env=_commit_env())
