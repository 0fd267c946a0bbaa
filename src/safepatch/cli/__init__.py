"""safepatch CLI - apply approved changes under a test-verified safety net.

Commands:
    run       - Baseline, propose, approve, apply, verify
    baseline  - Check the working copy is clean and the tests pass
    log       - Show or verify a run's execution log
    report    - Show the final report of a run
"""
from __future__ import annotations

import click

from .baseline_cmd import baseline_command
from .exit_codes import ExitCode
from .log_cmd import log_group
from .report_cmd import report_command
from .run_cmd import run_command


@click.group()
@click.version_option(version="0.1.0", prog_name="safepatch")
def cli() -> None:
    """safepatch - apply approved code changes, revert anything that breaks tests

    \b
    Quick start:
      safepatch baseline .                                   Check clean + green
      safepatch run . --findings f.json --plan p.json -i     Review and apply
      safepatch report                                       What happened
      safepatch log verify                                   Check the audit log
    """


cli.add_command(run_command, name="run")
cli.add_command(baseline_command, name="baseline")
cli.add_command(log_group, name="log")
cli.add_command(report_command, name="report")


def main() -> None:
    """CLI entry point."""
    cli(prog_name="safepatch")


__all__ = ["cli", "main", "ExitCode"]


if __name__ == "__main__":
    main()
