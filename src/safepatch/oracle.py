"""Test oracle adapter: run the project's test command, report a TestResult.

The adapter never retries. A flaky failure is reported exactly as observed.
Every run is bounded by a timeout; on timeout the result fails with the
synthetic test id ``TIMEOUT_TEST_ID`` instead of blocking the caller.

Output formats:
    pytest      parse the summary line and the ``FAILED``/``ERROR`` lines of
                the short test summary (run pytest with ``-rfE``)
    junit       read a JUnit XML report the command writes to ``junit_path``
    exit_code   exit status only (0 passes)
"""
from __future__ import annotations

import os
import re
import subprocess
import time
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Protocol

from .config import split_test_command
from .models import TestResult
from .utils import run_subprocess

TIMEOUT_TEST_ID = "<timeout>"
ORACLE_ERROR_TEST_ID = "<oracle-error>"

# pytest exit code for "no tests collected"
PYTEST_NO_TESTS = 5

_SUMMARY_COUNT = re.compile(
    r"(\d+) (passed|failed|errors?|skipped|xfailed|xpassed|deselected|warnings?)"
)
_SUMMARY_LINE = re.compile(r"^=*\s*(?:\d+ \w+(?:, )?)+.* in [\d.]+s")
_FAILED_LINE = re.compile(r"^(FAILED|ERROR) (\S+)")


class Oracle(Protocol):
    """Anything that can judge the current workspace."""

    def run(self) -> TestResult: ...


class TestOracle:
    """Run an external test command in the repository."""

    __test__ = False

    def __init__(
        self,
        command: list[str] | str,
        cwd: Path,
        timeout: float = 600.0,
        output_format: str = "pytest",
        junit_path: Path | str | None = None,
        env: dict | None = None,
    ):
        self.command = split_test_command(command)
        self.cwd = Path(cwd)
        self.timeout = float(timeout)
        self.output_format = output_format
        self.junit_path = Path(junit_path) if junit_path else None
        if self.junit_path is not None and not self.junit_path.is_absolute():
            self.junit_path = self.cwd / self.junit_path
        if output_format == "junit" and self.junit_path is None:
            raise ValueError("junit output format requires junit_path")
        self.env = env
        self.runs = 0

    @classmethod
    def from_config(cls, config: dict, cwd: Path) -> "TestOracle":
        return cls(
            command=config["test_cmd"],
            cwd=cwd,
            timeout=config["test_timeout"],
            output_format=config["test_format"],
            junit_path=config.get("junit_path"),
        )

    def _environment(self) -> dict:
        # Fixed hash seed and no bytecode files keep runs content-deterministic.
        env = {**os.environ, "PYTHONHASHSEED": "0", "PYTHONDONTWRITEBYTECODE": "1"}
        if self.env:
            env.update(self.env)
        return env

    def run(self) -> TestResult:
        self.runs += 1
        if self.junit_path is not None and self.junit_path.exists():
            self.junit_path.unlink()

        start = time.time()
        try:
            proc = run_subprocess(
                self.command,
                timeout=self.timeout,
                cwd=str(self.cwd),
                env=self._environment(),
            )
        except subprocess.TimeoutExpired as e:
            partial = _decode(e.stdout) + _decode(e.stderr)
            return TestResult(
                passed=False,
                total=0,
                failed=(TIMEOUT_TEST_ID,),
                raw_output=partial + f"\n[safepatch] test command timed out after {self.timeout:g}s",
                duration_ms=int((time.time() - start) * 1000),
                timed_out=True,
            )
        except OSError as e:
            return TestResult(
                passed=False,
                total=0,
                failed=(ORACLE_ERROR_TEST_ID,),
                raw_output=f"[safepatch] could not run {self.command[0]}: {e}",
                duration_ms=int((time.time() - start) * 1000),
            )

        duration_ms = int((time.time() - start) * 1000)
        output = (proc.stdout or "") + (proc.stderr or "")

        if self.output_format == "junit":
            return parse_junit(self.junit_path, proc.returncode, output, duration_ms)
        if self.output_format == "exit_code":
            return parse_exit_code(proc.returncode, output, duration_ms)
        return parse_pytest_output(output, proc.returncode, duration_ms)


def _decode(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def _unique(items) -> tuple[str, ...]:
    seen: set[str] = set()
    out = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return tuple(out)


def parse_exit_code(returncode: int, output: str, duration_ms: int = 0) -> TestResult:
    passed = returncode == 0
    return TestResult(
        passed=passed,
        total=1,
        failed=() if passed else (f"<exit:{returncode}>",),
        raw_output=output,
        duration_ms=duration_ms,
    )


def parse_pytest_output(output: str, returncode: int, duration_ms: int = 0) -> TestResult:
    """Build a TestResult from pytest terminal output.

    Pass/fail follows the exit status; counts come from the final summary
    line; failing ids come from the short test summary. A non-zero exit with
    no recognizable failing ids yields a synthetic ``<exit:N>`` id so a
    failure is never reported with an empty list.
    """
    counts: dict[str, int] = {}
    for line in output.splitlines():
        stripped = line.strip()
        if _SUMMARY_LINE.match(stripped) or (stripped.startswith("=") and " in " in stripped):
            found = _SUMMARY_COUNT.findall(stripped)
            if found:
                counts = {}
                for n, label in found:
                    key = label.rstrip("s") if label.startswith(("error", "warning")) else label
                    counts[key] = int(n)

    failed_ids = []
    for line in output.splitlines():
        m = _FAILED_LINE.match(line.strip())
        if m:
            failed_ids.append(m.group(2))
    failed = _unique(failed_ids)

    n_failed = counts.get("failed", 0) + counts.get("error", 0)
    total = counts.get("passed", 0) + n_failed + counts.get("xpassed", 0) + counts.get("xfailed", 0)

    passed = returncode == 0 or (returncode == PYTEST_NO_TESTS and not failed)
    if not passed and not failed:
        failed = (f"<exit:{returncode}>",)
    if passed:
        failed = ()
    total = max(total, len(failed))

    return TestResult(
        passed=passed,
        total=total,
        failed=failed,
        raw_output=output,
        duration_ms=duration_ms,
    )


def parse_junit(path: Path | None, returncode: int, output: str, duration_ms: int = 0) -> TestResult:
    """Build a TestResult from a JUnit XML report."""
    if path is None or not path.exists():
        return TestResult(
            passed=False,
            total=0,
            failed=(ORACLE_ERROR_TEST_ID,),
            raw_output=output + f"\n[safepatch] JUnit report {path} was not written",
            duration_ms=duration_ms,
        )
    try:
        root = ET.parse(path).getroot()
    except ET.ParseError as e:
        return TestResult(
            passed=False,
            total=0,
            failed=(ORACLE_ERROR_TEST_ID,),
            raw_output=output + f"\n[safepatch] JUnit report unreadable: {e}",
            duration_ms=duration_ms,
        )

    total = 0
    failed_ids = []
    for case in root.iter("testcase"):
        if case.find("skipped") is not None:
            continue
        total += 1
        if case.find("failure") is not None or case.find("error") is not None:
            classname = case.get("classname", "")
            name = case.get("name", "")
            failed_ids.append(f"{classname}::{name}" if classname else name)

    failed = _unique(failed_ids)
    passed = returncode == 0 and not failed
    if not passed and not failed:
        failed = (f"<exit:{returncode}>",)
    return TestResult(
        passed=passed,
        total=max(total, len(failed)),
        failed=failed,
        raw_output=output,
        duration_ms=duration_ms,
    )


__all__ = [
    "TIMEOUT_TEST_ID",
    "ORACLE_ERROR_TEST_ID",
    "Oracle",
    "TestOracle",
    "parse_exit_code",
    "parse_pytest_output",
    "parse_junit",
]
