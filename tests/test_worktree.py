"""Tests for per-session git worktrees, with git calls stubbed out."""

from __future__ import annotations

import os
import subprocess
from datetime import datetime
from typing import List

import pytest

from stepgate.runtime import worktree
from stepgate.runtime.errors import WorktreeError
from stepgate.runtime.worktree import generate_branch_name, setup_worktree


class FakeGit:
    """Answers the git plumbing calls setup_worktree makes."""

    def __init__(self, repo_root, current_branch="main"):
        self.repo_root = repo_root
        self.current_branch = current_branch
        self.calls: List[List[str]] = []

    def __call__(self, args, cwd=None):
        self.calls.append(list(args))
        if args[:2] == ["rev-parse", "--abbrev-ref"]:
            return self.current_branch
        if args[:2] == ["rev-parse", "--show-toplevel"]:
            return str(self.repo_root)
        if args[:2] == ["worktree", "add"]:
            # git creates the directory
            path = args[4]
            os.makedirs(path)
            return ""
        raise AssertionError(f"unexpected git call: {args}")


@pytest.fixture
def fake_git(tmp_path, monkeypatch):
    repo = tmp_path / "repo"
    repo.mkdir()
    fake = FakeGit(repo)
    monkeypatch.setattr(worktree, "_run_git", fake)
    return fake


class TestBranchNames:
    def test_timestamp_suffix(self):
        assert generate_branch_name("iterator/issue-42", datetime(2026, 3, 4, 5, 6, 7)) == (
            "iterator/issue-42-20260304-050607"
        )


class TestSetupWorktree:
    def test_creates_worktree_for_explicit_branch(self, fake_git, tmp_path):
        setup = setup_worktree(tmp_path / "worktrees", branch="fix/docs")

        assert setup.created is True
        assert setup.branch == "fix/docs"
        assert setup.base_branch == "main"
        assert setup.path == (tmp_path / "worktrees" / "fix-docs").resolve()
        assert ["worktree", "add", "-b", "fix/docs", str(setup.path), "main"] in fake_git.calls

    def test_generated_branch_from_base_name(self, fake_git, tmp_path):
        setup = setup_worktree(tmp_path / "worktrees", branch_base_name="iterator/issue-7")

        assert setup.branch.startswith("iterator/issue-7-")
        assert setup.path.is_dir()

    def test_existing_directory_is_reused(self, fake_git, tmp_path):
        first = setup_worktree(tmp_path / "worktrees", branch="fix/docs")
        second = setup_worktree(tmp_path / "worktrees", branch="fix/docs")

        assert second.created is False
        assert second.path == first.path
        assert sum(1 for call in fake_git.calls if call[:2] == ["worktree", "add"]) == 1

    def test_relative_root_resolves_against_repo(self, fake_git):
        setup = setup_worktree("../worktree", branch="feature")

        assert setup.path == (fake_git.repo_root / ".." / "worktree" / "feature").resolve()


class TestGitFailures:
    def test_git_error_becomes_worktree_error(self, monkeypatch):
        def fake_run(cmd, **kwargs):
            return subprocess.CompletedProcess(cmd, 128, stdout="", stderr="fatal: not a git repository")

        monkeypatch.setattr(subprocess, "run", fake_run)

        with pytest.raises(WorktreeError, match="not a git repository"):
            worktree.get_current_branch()

    def test_missing_git(self, monkeypatch):
        def fake_run(cmd, **kwargs):
            raise FileNotFoundError("git")

        monkeypatch.setattr(subprocess, "run", fake_run)

        with pytest.raises(WorktreeError, match="git executable not found"):
            worktree.get_repo_root()
