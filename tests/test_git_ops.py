"""Tests for git worktree handling, run against real repositories."""

import shutil
import subprocess
from pathlib import Path

import pytest

from taskgraph.config import Config
from taskgraph.git_ops import (
    GitError,
    commits_ahead,
    create_worktree,
    merge_worktree_branch,
    remove_worktree,
    worktree_branch_name,
)
from taskgraph.tasks import create_task, done_task, start_task

pytestmark = [
    pytest.mark.slow,
    pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed"),
]


@pytest.fixture(autouse=True)
def git_identity_env(monkeypatch):
    """Ensure commits succeed without relying on global git config."""
    monkeypatch.setenv("GIT_AUTHOR_NAME", "tg-tests")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "tg-tests@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "tg-tests")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "tg-tests@example.com")


def _run(args, cwd):
    return subprocess.run(args, cwd=str(cwd), check=True, capture_output=True, text=True)


@pytest.fixture()
def repo(tmp_path):
    project = tmp_path / "project"
    project.mkdir()
    _run(["git", "init", "-b", "main"], project)
    (project / "README.md").write_text("hello\n")
    _run(["git", "add", "README.md"], project)
    _run(["git", "commit", "-m", "init"], project)
    return project


def _commit_in(path, name, content):
    (path / name).write_text(content)
    _run(["git", "add", name], path)
    _run(["git", "commit", "-m", f"add {name}"], path)


def test_branch_name():
    assert worktree_branch_name("tg-abc123") == "tg/tg-abc123"


def test_create_worktree(repo):
    branch, path = create_worktree(repo, "tg-abc123")
    assert branch == "tg/tg-abc123"
    assert path == str(repo / ".taskgraph" / "worktrees" / "tg-abc123")
    assert (repo / ".taskgraph" / "worktrees" / "tg-abc123" / "README.md").exists()
    branches = _run(["git", "branch", "--list", branch], repo).stdout
    assert branch in branches


def test_create_worktree_reuses_existing(repo):
    first = create_worktree(repo, "tg-abc123")
    assert create_worktree(repo, "tg-abc123") == first


def test_create_worktree_bad_base(repo):
    with pytest.raises(GitError, match="Failed to create worktree"):
        create_worktree(repo, "tg-abc123", "no-such-branch")


def test_remove_worktree_deletes_branch(repo):
    branch, path = create_worktree(repo, "tg-abc123")
    remove_worktree(repo, path, branch)
    assert not (repo / ".taskgraph" / "worktrees" / "tg-abc123").exists()
    assert _run(["git", "branch", "--list", branch], repo).stdout.strip() == ""


def test_remove_worktree_is_best_effort(repo, caplog):
    remove_worktree(repo, repo / "nowhere", "tg/missing")
    assert "Failed to remove worktree" in caplog.text
    assert "Failed to delete branch" in caplog.text


def test_commits_ahead(repo):
    branch, path = create_worktree(repo, "tg-abc123")
    assert commits_ahead(repo, branch) == 0
    _commit_in(Path(path), "feature.txt", "x\n")
    assert commits_ahead(repo, branch) == 1


def test_merge_worktree_branch(repo):
    branch, path = create_worktree(repo, "tg-abc123")
    _commit_in(Path(path), "feature.txt", "x\n")

    sha = merge_worktree_branch(repo, branch, "main", "Merge task")
    assert _run(["git", "rev-parse", "main"], repo).stdout.strip() == sha
    # The clean main checkout is synced to the merge commit.
    assert (repo / "feature.txt").read_text() == "x\n"
    assert commits_ahead(repo, branch) == 0


def test_merge_leaves_dirty_checkout_alone(repo):
    branch, path = create_worktree(repo, "tg-abc123")
    _commit_in(Path(path), "feature.txt", "x\n")
    (repo / "README.md").write_text("local edit\n")

    merge_worktree_branch(repo, branch)
    assert (repo / "README.md").read_text() == "local edit\n"
    assert not (repo / "feature.txt").exists()
    assert "feature.txt" in _run(["git", "ls-tree", "--name-only", "main"], repo).stdout


def test_merge_nothing_ahead(repo):
    branch, _ = create_worktree(repo, "tg-abc123")
    with pytest.raises(GitError, match="no commits ahead"):
        merge_worktree_branch(repo, branch)


def test_merge_conflict_keeps_main(repo):
    branch, path = create_worktree(repo, "tg-abc123")
    _commit_in(Path(path), "README.md", "branch\n")
    _commit_in(repo, "README.md", "main\n")
    before = _run(["git", "rev-parse", "main"], repo).stdout.strip()

    with pytest.raises(GitError, match="Merge conflict"):
        merge_worktree_branch(repo, branch)
    assert _run(["git", "rev-parse", "main"], repo).stdout.strip() == before


# -- task lifecycle with worktrees --


def test_start_and_done_with_worktree(repo, store, plan_id):
    config = Config(project_root=repo, db_path=repo.parent / "test.db")
    task = create_task(store, plan_id, "isolated")
    started = start_task(store, config, task["task_id"], "alice", worktree=True)
    path = Path(started["worktree_path"])
    assert started["worktree_branch"] == f"tg/{task['hash_id']}"
    assert path.is_dir()

    _commit_in(path, "feature.txt", "x\n")
    result = done_task(store, config, task["task_id"], "built it")
    assert result["worktree_removed"] is True
    assert "merge_sha" in result
    assert not path.exists()
    assert (repo / "feature.txt").exists()


def test_done_without_merge_keeps_branch(repo, store, plan_id):
    config = Config(project_root=repo, db_path=repo.parent / "test.db")
    task = create_task(store, plan_id, "isolated")
    started = start_task(store, config, task["task_id"], "alice", worktree=True)
    _commit_in(Path(started["worktree_path"]), "feature.txt", "x\n")

    result = done_task(store, config, task["task_id"], merge=False)
    assert result["worktree_removed"] is True
    assert "merge_sha" not in result
    branches = _run(["git", "branch", "--list", started["worktree_branch"]], repo).stdout
    assert started["worktree_branch"] in branches
    assert not (repo / "feature.txt").exists()


def test_failed_merge_leaves_worktree(repo, store, plan_id):
    config = Config(project_root=repo, db_path=repo.parent / "test.db")
    task = create_task(store, plan_id, "conflicting")
    started = start_task(store, config, task["task_id"], "alice", worktree=True)
    _commit_in(Path(started["worktree_path"]), "README.md", "branch\n")
    _commit_in(repo, "README.md", "main\n")

    result = done_task(store, config, task["task_id"])
    assert result["status"] == "done"
    assert "Merge conflict" in result["merge_error"]
    assert "worktree_removed" not in result
    assert Path(started["worktree_path"]).is_dir()
