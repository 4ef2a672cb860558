"""Git worktree workspaces for workers.

A workspace is identified by a key: the task id for a task's own worker,
or "<task id>--<role>" for a helper worker. Task ids are slugs and never
contain "--", so the owning task is always recoverable from a key.
Workspaces are not recorded in the store; they are rediscovered from
`git worktree list`.
"""

import logging
from pathlib import Path

from swarm_orchestrator.integrations.git import (
    GitError,
    branch_exists,
    changed_files,
    commit_all,
    delete_branch,
    worktree_add,
    worktree_list,
    worktree_prune,
    worktree_remove,
)

logger = logging.getLogger(__name__)

HELPER_SEPARATOR = "--"


def workspace_path(repo_path: str | Path, key: str, worktree_dir: str = ".worktrees") -> Path:
    return Path(repo_path) / worktree_dir / key


def helper_key(task_id: str, role: str) -> str:
    return f"{task_id}{HELPER_SEPARATOR}{role}"


def workspace_owner(key: str) -> str:
    """Task id owning a workspace key."""
    return key.split(HELPER_SEPARATOR, 1)[0]


def workspace_branch(key: str) -> str:
    return f"task/{key}"


def create_workspace(
    repo_path: str | Path,
    key: str,
    worktree_dir: str = ".worktrees",
    base_branch: str = "main",
) -> dict:
    """Create a git worktree for a key. Returns worktree info dict."""
    repo = Path(repo_path)
    wt_path = workspace_path(repo, key, worktree_dir)
    branch = workspace_branch(key)

    if wt_path.exists():
        return {
            "key": key,
            "worktree_path": str(wt_path),
            "branch": branch,
            "already_existed": True,
            "new_branch": False,
        }

    # A directory removed by hand leaves a stale registration behind
    worktree_prune(repo)
    create_branch = not branch_exists(repo, branch)
    worktree_add(repo, wt_path, branch, base_branch, create_branch=create_branch)
    logger.info("Created workspace %s on %s", wt_path, branch)

    return {
        "key": key,
        "worktree_path": str(wt_path),
        "branch": branch,
        "already_existed": False,
        "new_branch": create_branch,
    }


def remove_workspace(
    repo_path: str | Path,
    key: str,
    worktree_dir: str = ".worktrees",
    force: bool = False,
    delete_branch_after: bool = False,
) -> dict:
    """Remove the worktree for a key.

    A missing worktree is not an error. A dirty worktree is left in place
    unless force is set.
    """
    repo = Path(repo_path)
    wt_path = workspace_path(repo, key, worktree_dir)
    branch = workspace_branch(key)

    if not wt_path.exists():
        return {"key": key, "removed": False, "reason": "No workspace"}

    if not force:
        dirty = changed_files(wt_path)
        if dirty:
            return {
                "key": key,
                "removed": False,
                "reason": f"Uncommitted changes: {', '.join(dirty[:5])}",
            }

    try:
        worktree_remove(repo, wt_path, force=force)
    except GitError as e:
        if not force:
            return {"key": key, "removed": False, "reason": str(e)}
        raise

    if delete_branch_after and branch_exists(repo, branch):
        try:
            delete_branch(repo, branch, force=force)
        except GitError:
            logger.warning("Could not delete branch %s", branch)

    logger.info("Removed workspace %s", wt_path)
    return {"key": key, "removed": True, "path": str(wt_path)}


def commit_workspace(
    repo_path: str | Path,
    key: str,
    message: str,
    worktree_dir: str = ".worktrees",
) -> str | None:
    """Commit all changes in a workspace. Returns the commit sha, or None."""
    wt_path = workspace_path(repo_path, key, worktree_dir)
    if not wt_path.exists():
        return None
    sha = commit_all(wt_path, message)
    if sha:
        logger.info("Committed workspace %s at %s", key, sha[:10])
    return sha


def workspace_status(
    repo_path: str | Path,
    key: str,
    worktree_dir: str = ".worktrees",
) -> dict:
    """Clean/dirty status and changed files of a workspace."""
    wt_path = workspace_path(repo_path, key, worktree_dir)
    if not wt_path.exists():
        return {
            "key": key,
            "exists": False,
            "clean": True,
            "changed_files": [],
            "branch": workspace_branch(key),
        }
    files = changed_files(wt_path)
    return {
        "key": key,
        "exists": True,
        "worktree_path": str(wt_path),
        "clean": not files,
        "changed_files": files,
        "branch": workspace_branch(key),
    }


def list_workspaces(
    repo_path: str | Path,
    worktree_dir: str = ".worktrees",
) -> list[dict]:
    """Worktrees living under the workspace directory."""
    base = (Path(repo_path) / worktree_dir).resolve()
    result = []
    for wt in worktree_list(repo_path):
        path = Path(wt["path"]).resolve()
        if path.parent != base:
            continue
        result.append({
            "key": path.name,
            "path": str(path),
            "task_id": workspace_owner(path.name),
            "branch": wt["branch"],
            "head": wt["head"],
        })
    return result
