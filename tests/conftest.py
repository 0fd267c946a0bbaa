"""Pytest configuration and fixtures for safepatch tests."""
from __future__ import annotations

import shlex
import shutil
import subprocess
import sys
from pathlib import Path

import pytest

from safepatch.models import ChangeUnit, Finding, Severity, TestResult

MODULE_A = "def add(a, b):\n    return a + b\n"
MODULE_B = "def mul(a, b):\n    return a * b\n"
TEST_MODULES = """\
from module_a import add
from module_b import mul


def test_add():
    assert add(2, 3) == 5


def test_mul():
    assert mul(2, 3) == 6
"""

PYTEST_CMD = f"{shlex.quote(sys.executable)} -m pytest -q -rfE -p no:cacheprovider"


def _git(repo: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", "-C", str(repo), *args],
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout


@pytest.fixture
def plain_repo(tmp_path):
    """A small project (two modules and their tests) outside version control."""
    repo = tmp_path / "repo"
    repo.mkdir()
    (repo / "module_a.py").write_text(MODULE_A)
    (repo / "module_b.py").write_text(MODULE_B)
    (repo / "test_modules.py").write_text(TEST_MODULES)
    return repo


@pytest.fixture
def git_repo(plain_repo):
    """The same project committed to a fresh git repository."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    _git(plain_repo, "init", "-q")
    _git(plain_repo, "config", "user.email", "tests@example.com")
    _git(plain_repo, "config", "user.name", "safepatch tests")
    _git(plain_repo, "config", "commit.gpgsign", "false")
    _git(plain_repo, "add", "-A")
    _git(plain_repo, "commit", "-q", "-m", "initial")
    return plain_repo


@pytest.fixture
def git():
    """Run git in a repository: git(repo, 'status')."""
    return _git


class FunctionOracle:
    """Oracle whose verdict is a pure function of the workspace content."""

    def __init__(self, root: Path, check, total: int = 10):
        self.root = Path(root)
        self.check = check
        self.total = total
        self.runs = 0

    def run(self) -> TestResult:
        self.runs += 1
        failed = tuple(self.check(self.root))
        return TestResult(
            passed=not failed,
            total=self.total,
            failed=failed,
            raw_output=f"{self.total - len(failed)} passed, {len(failed)} failed",
        )


class ScriptedOracle:
    """Returns prepared results in order; repeats the last one when exhausted."""

    def __init__(self, results):
        self.results = list(results)
        self.runs = 0

    def run(self) -> TestResult:
        result = self.results[min(self.runs, len(self.results) - 1)]
        self.runs += 1
        return result


def module_checks(root: Path) -> list[str]:
    """Content rules standing in for the project's test suite."""
    failed = []
    a = (root / "module_a.py").read_text() if (root / "module_a.py").exists() else ""
    b = (root / "module_b.py").read_text() if (root / "module_b.py").exists() else ""
    if "return a + b" not in a:
        failed.append("test_modules.py::test_add")
    if "return a * b" not in b:
        failed.append("test_modules.py::test_mul")
    if "LIMIT = 1" in a and "LIMIT = 1" in b:
        failed.append("test_modules.py::test_limits_differ")
    return failed


@pytest.fixture
def content_oracle(plain_repo):
    """Oracle judging plain_repo by module_checks."""
    return FunctionOracle(plain_repo, module_checks)


@pytest.fixture
def scripted_oracle():
    return ScriptedOracle


@pytest.fixture
def function_oracle():
    return FunctionOracle


@pytest.fixture
def oracle_cmd():
    """Test command running the real pytest on a temporary project."""
    return PYTEST_CMD


@pytest.fixture
def passing_result():
    return TestResult(passed=True, total=10, raw_output="10 passed in 0.01s")


@pytest.fixture
def make_finding():
    def _make(finding_id: str, severity: str = "medium", location: str = "module_a.py:1") -> Finding:
        return Finding(
            finding_id=finding_id,
            severity=Severity.parse(severity),
            description=f"finding {finding_id}",
            location=location,
        )

    return _make


@pytest.fixture
def edit_unit():
    """Build a single-edit ChangeUnit: edit_unit('U1', 'module_a.py', old, new, ['F1'])."""

    def _make(unit_id: str, path: str, search: str, replace: str, finding_ids=(), severity: str = "medium"):
        return ChangeUnit(
            unit_id=unit_id,
            title=f"edit {path}",
            severity=severity,
            target_files=(path,),
            payload={"kind": "edit", "edits": [{"path": path, "search": search, "replace": replace}]},
            finding_ids=tuple(finding_ids),
        )

    return _make
