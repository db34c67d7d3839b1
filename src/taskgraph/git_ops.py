"""Git worktree and branch operations for task isolation.

Each started task may get its own worktree at ``.taskgraph/worktrees/<hash_id>``
on branch ``tg/<hash_id>``. Functions raise ``GitError`` on failure so the
command layer can decide whether to surface or log it.
"""

from __future__ import annotations

import contextlib
import logging
import shutil
import subprocess
import tempfile
from pathlib import Path

from taskgraph.paths import worktree_path

log = logging.getLogger(__name__)


class GitError(RuntimeError):
    """A git subprocess failed."""


def _git(args: list[str], cwd: str | Path, *, check: bool = True) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(
            ["git", *args],
            cwd=str(cwd),
            check=check,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError as exc:
        raise GitError("git executable not found") from exc
    except subprocess.CalledProcessError as e:
        raise GitError(f"git {args[0]} failed: {e.stderr.strip()}") from None


def worktree_branch_name(hash_id: str) -> str:
    return f"tg/{hash_id}"


def create_worktree(
    repo_root: str | Path, hash_id: str, base_branch: str = "main"
) -> tuple[str, str]:
    """Create ``tg/<hash_id>`` and its worktree off ``base_branch``.

    Returns ``(branch, path)``. An existing worktree directory is reused.
    """
    branch = worktree_branch_name(hash_id)
    path = worktree_path(Path(repo_root), hash_id)
    if path.exists():
        return branch, str(path)

    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    try:
        _git(["worktree", "add", "-b", branch, str(path), base_branch], repo_root)
    except GitError as e:
        raise GitError(f"Failed to create worktree: {e}") from None
    return branch, str(path)


def remove_worktree(repo_root: str | Path, path: str | Path, branch: str | None = None) -> None:
    """Remove a worktree and optionally its branch. Best-effort, logs warnings on failure."""
    try:
        _git(["worktree", "remove", "--force", str(path)], repo_root)
    except GitError as exc:
        log.warning("Failed to remove worktree %s: %s", path, exc)

    if branch:
        try:
            delete_branch(repo_root, branch)
        except GitError as exc:
            log.warning("Failed to delete branch %s: %s", branch, exc)

    with contextlib.suppress(GitError):
        _git(["worktree", "prune"], repo_root)


def delete_branch(repo_root: str | Path, branch: str, *, force: bool = True) -> None:
    _git(["branch", "-D" if force else "-d", branch], repo_root)


def commits_ahead(repo_root: str | Path, branch: str, base_branch: str = "main") -> int:
    out = _git(["rev-list", "--count", f"{base_branch}..{branch}"], repo_root).stdout.strip()
    return int(out or 0)


def merge_worktree_branch(
    repo_root: str | Path,
    branch: str,
    base_branch: str = "main",
    message: str | None = None,
) -> str:
    """Merge ``branch`` into ``base_branch`` via a temporary detached worktree.

    Never touches the user's checkout unless it is clean relative to the
    old base, in which case its files are synced to the new commit. Returns
    the merge commit SHA.
    """
    base_sha = _git(["rev-parse", base_branch], repo_root).stdout.strip()
    if commits_ahead(repo_root, branch, base_branch) == 0:
        raise GitError(f"Branch '{branch}' has no commits ahead of {base_branch}; nothing to merge")

    tmp = tempfile.mkdtemp(prefix="tg-merge-")
    try:
        _git(["worktree", "add", "--detach", tmp, base_sha], repo_root)
        try:
            _git(["merge", "--no-ff", branch, "-m", message or f"Merge {branch}"], tmp)
        except GitError as e:
            with contextlib.suppress(GitError):
                _git(["merge", "--abort"], tmp)
            raise GitError(f"Merge conflict: {e}") from None

        new_sha = _git(["rev-parse", "HEAD"], tmp).stdout.strip()
        _git(["update-ref", f"refs/heads/{base_branch}", new_sha, base_sha], repo_root)

        # update-ref only moves the ref; sync the checkout if it sat on the old base untouched.
        head = _git(["symbolic-ref", "--quiet", "--short", "HEAD"], repo_root, check=False)
        clean = _git(["diff", "--quiet", base_sha], repo_root, check=False)
        if head.stdout.strip() == base_branch and clean.returncode == 0:
            _git(["reset", "--hard", new_sha], repo_root)
    finally:
        with contextlib.suppress(GitError):
            _git(["worktree", "remove", "--force", tmp], repo_root)
        shutil.rmtree(tmp, ignore_errors=True)
    return new_sha
