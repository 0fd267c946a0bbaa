"""safepatch baseline - check that a repository is safe to start from.

Usage:
    safepatch baseline .            # Dirty check + test run
    safepatch baseline . --json     # CI-friendly JSON
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import click

from ..errors import SafePatchError
from ..workspace import WorkspaceGuard
from .common import build_oracle, build_store, fail, load_cli_config


@click.command("baseline")
@click.argument("path", type=click.Path(exists=True, file_okay=False), default=".")
@click.option("--test-cmd", default=None, help="Test command (overrides config)")
@click.option("--timeout", type=float, default=None, help="Test timeout in seconds")
@click.option("--backend", type=click.Choice(["auto", "git", "snapshot"]), default=None,
              help="Checkpoint backend")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Global config file")
@click.option("--json", "output_json", is_flag=True, help="Output JSON")
def baseline_command(
    path: str,
    test_cmd: Optional[str],
    timeout: Optional[float],
    backend: Optional[str],
    config_path: Optional[str],
    output_json: bool,
) -> None:
    """Verify a clean working copy and a passing test suite.

    Records the checkpoint later runs compare against. Never modifies
    tracked files.
    """
    repo = Path(path).resolve()
    try:
        config = load_cli_config(repo, config_path, test_cmd=test_cmd, timeout=timeout, backend=backend)
        store = build_store(repo, config)
        guard = WorkspaceGuard(store, build_oracle(repo, config),
                               store_blobs=bool(config.get("baseline_blobs", True)))
        baseline = guard.establish_baseline()
        guard.state.close()
    except SafePatchError as e:
        fail(e, output_json)

    result = baseline.test_result
    if output_json:
        payload = baseline.to_dict()
        payload["backend"] = store.name
        payload["file_hashes"] = len(baseline.file_hashes)
        click.echo(json.dumps(payload, indent=2))
        return

    click.echo("SAFEPATCH BASELINE")
    click.echo(f"  Repo:        {repo}")
    click.echo(f"  Backend:     {store.name}")
    click.echo(f"  Files:       {len(baseline.file_hashes)}")
    click.echo(f"  Tests:       {result.passed_count}/{result.total} passed ({result.duration_ms} ms)")
    click.echo(f"  Checkpoint:  {baseline.checkpoint_id}")
