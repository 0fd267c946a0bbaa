"""Tests for repository root detection and subprocess discipline."""
from __future__ import annotations

import pytest

from safepatch.utils import find_repo_root, run_subprocess


class TestFindRepoRoot:
    def test_state_dir_marker(self, plain_repo):
        (plain_repo / ".safepatch").mkdir()
        sub = plain_repo / "pkg" / "deep"
        sub.mkdir(parents=True)
        assert find_repo_root(sub) == plain_repo.resolve()

    def test_git_marker(self, git_repo):
        sub = git_repo / "pkg"
        sub.mkdir()
        assert find_repo_root(sub) == git_repo.resolve()

    def test_no_marker_returns_start(self, plain_repo):
        assert find_repo_root(plain_repo) == plain_repo.resolve()


class TestRunSubprocess:
    def test_rejects_shell_string(self):
        with pytest.raises(TypeError, match="list of args"):
            run_subprocess("git status")
