"""safepatch report - show the final report of a run.

Usage:
    safepatch report                # Rich terminal output for the latest run
    safepatch report RUN --json     # CI-friendly JSON
    safepatch report --print        # Plain text to stdout
"""
from __future__ import annotations

import json
from typing import Optional

import click

from ..errors import MalformedInputError, SafePatchError
from ..report import RunReport, render_rich
from ..utils import find_repo_root
from .common import fail, load_cli_config, resolve_run_dir
from .exit_codes import ExitCode


@click.command("report")
@click.argument("run", required=False)
@click.option("--path", "path", type=click.Path(exists=True, file_okay=False), default=".",
              help="Repository root")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None)
@click.option("--json", "output_json", is_flag=True, help="Output JSON for CI integration")
@click.option("--print", "print_output", is_flag=True, help="Print plain text to stdout")
def report_command(run: Optional[str], path: str, config_path: Optional[str], output_json: bool,
                   print_output: bool) -> None:
    """Show what happened to every unit of a run.

    \b
    Examples:
        safepatch report               # Latest run, rich output
        safepatch report --json        # JSON for CI pipelines
        safepatch report --print       # Plain text output
    """
    try:
        repo = find_repo_root(path)
        config = load_cli_config(repo, config_path)
        run_dir = resolve_run_dir(repo, config, run)
        report_path = run_dir / "report.json"
        try:
            report = RunReport.load(report_path)
        except (OSError, json.JSONDecodeError, KeyError, TypeError) as e:
            raise MalformedInputError(str(report_path), f"unreadable report: {e}") from e
    except SafePatchError as e:
        fail(e, output_json)

    if output_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    elif print_output:
        _print_text_report(report)
    else:
        render_rich(report)

    if report.state != "done":
        raise SystemExit(ExitCode.ABORTED.value)
    if not report.ok:
        raise SystemExit(ExitCode.UNITS_NOT_VERIFIED.value)


def _print_text_report(report: RunReport) -> None:
    click.echo(f"SAFEPATCH RUN {report.run_id}")
    click.echo(f"  State:    {report.state}")
    click.echo(f"  Findings: {report.findings_count}")
    if report.error:
        click.echo(f"  Error:    {report.error.get('kind')}: {report.error.get('message', '')}")
    click.echo()
    for line in report.lines():
        click.echo(f"  {line}")
    counts = report.counts
    click.echo()
    click.echo(
        f"  {counts['verified']} verified, {counts['reverted']} reverted, "
        f"{counts['failed']} failed, {counts['not attempted']} not attempted"
    )
