"""Shared CLI plumbing: config, backends, run directory lookup, error output."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import click

from ..checkpoint import STATE_DIR, CheckpointStore, open_store
from ..config import load_config, validate_config
from ..errors import SafePatchError
from ..oracle import TestOracle
from .exit_codes import ExitCode, exit_code_for


def load_cli_config(
    repo: Path,
    config_path: Optional[str] = None,
    test_cmd: Optional[str] = None,
    timeout: Optional[float] = None,
    backend: Optional[str] = None,
) -> dict:
    """Layered config with command-line flags applied last."""
    config = load_config(Path(config_path) if config_path else None, workspace=repo)
    if test_cmd:
        config["test_cmd"] = test_cmd
    if timeout is not None:
        config["test_timeout"] = timeout
    if backend:
        config["checkpoint_backend"] = backend
    return validate_config(config)


def runs_dir_for(repo: Path, config: dict) -> Path:
    runs_dir = Path(config["runs_dir"])
    return runs_dir if runs_dir.is_absolute() else repo / runs_dir


def build_store(repo: Path, config: dict) -> CheckpointStore:
    """Checkpoint backend with the run artifacts kept out of the tracked set."""
    ignore = list(config.get("ignore") or [])
    extra = [runs_dir_for(repo, config)]
    if config.get("junit_path"):
        junit = Path(config["junit_path"])
        extra.append(junit if junit.is_absolute() else repo / junit)
    for path in extra:
        try:
            rel = path.resolve().relative_to(repo.resolve()).as_posix()
        except ValueError:
            continue
        if not rel.startswith(STATE_DIR + "/"):
            ignore.extend([rel, f"{rel}/*"])
    return open_store(repo, backend=config["checkpoint_backend"], ignore=ignore)


def build_oracle(repo: Path, config: dict) -> TestOracle:
    return TestOracle.from_config(config, cwd=repo)


def resolve_run_dir(repo: Path, config: dict, run: Optional[str]) -> Path:
    """A run is named by directory path, by run id, or defaults to ``latest``."""
    if run:
        candidate = Path(run)
        if candidate.is_dir():
            return candidate
    runs_dir = runs_dir_for(repo, config)
    run_dir = runs_dir / (run or "latest")
    if not run_dir.exists():
        click.echo(f"Error: no run '{run or 'latest'}' under {runs_dir}", err=True)
        raise SystemExit(ExitCode.USAGE.value)
    return run_dir.resolve()


def fail(error: SafePatchError, output_json: bool = False, extra: Optional[dict] = None) -> None:
    """Print an error the way every command does and exit with its code."""
    code = exit_code_for(error)
    if output_json:
        payload = {"error": error.to_dict(), "exit_code": code.value}
        payload.update(extra or {})
        click.echo(json.dumps(payload, indent=2))
    else:
        click.echo(f"Error [{error.kind}]: {error.message}", err=True)
    raise SystemExit(code.value)


__all__ = [
    "load_cli_config",
    "runs_dir_for",
    "build_store",
    "build_oracle",
    "resolve_run_dir",
    "fail",
]
