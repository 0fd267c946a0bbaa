"""Common utilities - repository root detection, subprocess discipline."""
from __future__ import annotations

import subprocess
from pathlib import Path


def find_repo_root(start_path: Path | str | None = None) -> Path:
    """Find the repository root that safepatch should operate on.

    Searches upward from start_path (or cwd if None) for marker directories.
    Falls back to start_path itself if no markers are found.

    Markers checked (in order):
        1. .safepatch/ directory (workspace already initialized)
        2. .git/ directory (repo root)
    """
    if start_path is None:
        start = Path.cwd().resolve()
    else:
        start = Path(start_path).expanduser().resolve()

    for parent in [start] + list(start.parents):
        if (parent / ".safepatch").is_dir():
            return parent
        if (parent / ".git").exists():
            return parent

    return start


def run_subprocess(
    cmd: list[str],
    timeout: float = 60.0,
    capture_output: bool = True,
    text: bool = True,
    check: bool = False,
    **kwargs,
) -> "subprocess.CompletedProcess[str]":
    """Run subprocess with default timeout and error handling.

    - Enforces argv discipline (list only, no shell strings)
    - Applies a default timeout (60s)
    - Captures output by default

    Raises:
        TypeError: If cmd is not a list
        subprocess.TimeoutExpired: If timeout exceeded
        subprocess.CalledProcessError: If check=True and non-zero exit
    """
    if isinstance(cmd, (str, bytes)):
        raise TypeError(
            "cmd must be a list of args, not a shell string. "
            "Pass ['git', 'status'] not 'git status'"
        )

    return subprocess.run(
        cmd,
        timeout=timeout,
        capture_output=capture_output,
        text=text,
        check=check,
        **kwargs,
    )


__all__ = ["find_repo_root", "run_subprocess"]
