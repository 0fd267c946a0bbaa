"""safepatch log - inspect and verify execution logs.

Usage:
    safepatch log show              # Entries of the latest run
    safepatch log show RUN --json
    safepatch log verify            # Check the hash chain of the latest run
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import click

from ..errors import SafePatchError
from ..execution_log import ExecutionLog
from ..models import Baseline
from ..utils import find_repo_root
from .common import fail, load_cli_config, resolve_run_dir
from .exit_codes import ExitCode


def _load(path: str, run: Optional[str], config_path: Optional[str]) -> tuple[Path, ExecutionLog]:
    repo = find_repo_root(path)
    config = load_cli_config(repo, config_path)
    run_dir = resolve_run_dir(repo, config, run)
    return run_dir, ExecutionLog.load(run_dir / "execution_log.jsonl")


@click.group("log")
def log_group() -> None:
    """Execution log commands."""


@log_group.command("show")
@click.argument("run", required=False)
@click.option("--path", "path", type=click.Path(exists=True, file_okay=False), default=".",
              help="Repository root")
@click.option("--at", "prefix", type=int, default=None,
              help="Also show workspace hashes and test outcome after the first N entries")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None)
@click.option("--json", "output_json", is_flag=True, help="Output JSON")
def show_command(run: Optional[str], path: str, prefix: Optional[int], config_path: Optional[str],
                 output_json: bool) -> None:
    """Show the entries of a run's execution log."""
    try:
        run_dir, log = _load(path, run, config_path)
    except SafePatchError as e:
        fail(e, output_json)

    state = None
    if prefix is not None:
        baseline_path = run_dir / "baseline.json"
        if not baseline_path.exists():
            click.echo(f"Error: {baseline_path} not found", err=True)
            raise SystemExit(ExitCode.MALFORMED.value)
        if prefix < 0 or prefix > len(log):
            click.echo(f"Error: --at must be between 0 and {len(log)}", err=True)
            raise SystemExit(ExitCode.USAGE.value)
        baseline = Baseline.from_dict(json.loads(baseline_path.read_text()))
        state = {
            "entries": prefix,
            "file_hashes": log.state_at(prefix, baseline.file_hashes),
            "test": log.test_outcome_at(prefix, baseline.test_result),
        }

    if output_json:
        payload = {"run_dir": str(run_dir), "entries": [e.to_dict() for e in log]}
        if state is not None:
            payload["state"] = state
        click.echo(json.dumps(payload, indent=2))
        return

    click.echo(f"Run: {run_dir.name} ({len(log)} entries)")
    for entry in log:
        test = entry.test or {}
        tests = f"{test.get('passed_count', 0)}/{test.get('total', 0)}" if test else "-"
        resumed = " (resumed)" if entry.resumed else ""
        click.echo(f"  {entry.seq:>3}  {entry.action:<9} {entry.unit_id:<12} tests {tests:<8} {entry.timestamp}{resumed}")
        if entry.reason:
            click.echo(f"       {entry.reason}")
    if state is not None:
        test = state["test"]
        click.echo(f"\nAfter {prefix} entries: tests {test.get('passed_count', 0)}/{test.get('total', 0)} "
                   f"{'passed' if test.get('passed') else 'failed'}")
        for rel, digest in sorted(state["file_hashes"].items()):
            click.echo(f"  {(digest or 'absent')[:16]}  {rel}")


@log_group.command("verify")
@click.argument("run", required=False)
@click.option("--path", "path", type=click.Path(exists=True, file_okay=False), default=".",
              help="Repository root")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None)
@click.option("--json", "output_json", is_flag=True, help="Output JSON")
def verify_command(run: Optional[str], path: str, config_path: Optional[str], output_json: bool) -> None:
    """Verify a run's log hash chain."""
    try:
        run_dir, log = _load(path, run, config_path)
    except SafePatchError as e:
        fail(e, output_json)

    ok, errors = log.verify_chain()
    if output_json:
        click.echo(json.dumps({"run_dir": str(run_dir), "entries": len(log), "valid": ok, "errors": errors},
                              indent=2))
    elif ok:
        click.echo(f"✓ {len(log)} entries, hash chain intact ({run_dir.name})")
    else:
        click.echo(f"✗ hash chain broken ({run_dir.name})")
        for error in errors:
            click.echo(f"  {error}")
    if not ok:
        raise SystemExit(ExitCode.MALFORMED.value)


__all__ = ["log_group"]
