"""Tests for diffs.py -- the git-backed diff source."""

import shutil
import subprocess
from pathlib import Path

import pytest

from diffs import DiffUnavailableError, GitDiffSource

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def _git(repo: Path, *args: str) -> None:
    subprocess.run(
        ["git", "-c", "user.name=Test", "-c", "user.email=test@example.com", *args],
        cwd=repo,
        check=True,
        capture_output=True,
    )


@pytest.fixture()
def repo(tmp_path: Path) -> Path:
    """A repository with ``main`` and a workflow branch that edits one file."""
    _git(tmp_path, "init", "-q")
    _git(tmp_path, "checkout", "-q", "-b", "main")
    (tmp_path / "app.py").write_text("VALUE = 1\n")
    (tmp_path / "other.py").write_text("OTHER = 1\n")
    _git(tmp_path, "add", ".")
    _git(tmp_path, "commit", "-q", "-m", "initial")
    _git(tmp_path, "checkout", "-q", "-b", "work/wf_test")
    (tmp_path / "app.py").write_text("VALUE = 2\n")
    _git(tmp_path, "commit", "-q", "-am", "change")
    return tmp_path


async def test_missing_git_binary(tmp_path: Path) -> None:
    source = GitDiffSource(git_binary="git-does-not-exist")
    with pytest.raises(DiffUnavailableError, match="git binary not found"):
        await source.get_diff(str(tmp_path), "main", "work/wf_test")


@requires_git
async def test_branch_diff(repo: Path) -> None:
    diff = await GitDiffSource().get_diff(str(repo), "main", "work/wf_test")
    assert "diff --git a/app.py b/app.py" in diff
    assert "+VALUE = 2" in diff
    assert "other.py" not in diff


@requires_git
async def test_identical_branches_give_empty_diff(repo: Path) -> None:
    assert await GitDiffSource().get_diff(str(repo), "main", "main") == ""


@requires_git
async def test_unknown_branch(repo: Path) -> None:
    with pytest.raises(DiffUnavailableError, match="git diff exited with"):
        await GitDiffSource().get_diff(str(repo), "main", "no-such-branch")
