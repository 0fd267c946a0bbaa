"""safepatch run - apply approved change units under baseline testing and rollback.

Usage:
    safepatch run . --findings findings.json --plan plan.json --approve U1 --approve U3
    safepatch run . --findings semgrep.json --plan plan.json --decisions decisions.json
    safepatch run . --findings findings.json --plan plan.json --interactive
    safepatch run . --findings findings.json --plan plan.json --approve-all --json
"""
from __future__ import annotations

import json
import signal
from pathlib import Path
from typing import Optional

import click

from ..approval import ApprovalGate, chain_sources, file_decisions, static_decisions
from ..approval import approve_all as approve_everything
from ..collaborators import FindingsFileAssessor, PlanFileProposer
from ..errors import SafePatchError
from ..execution_log import ExecutionLog
from ..models import ChangeUnit, Decision
from ..orchestrator import CancelToken, Orchestrator
from ..report import render_rich
from .common import build_oracle, build_store, fail, load_cli_config, resolve_run_dir, runs_dir_for
from .exit_codes import ExitCode, exit_code_for


def _interactive_source(console):
    """Ask on the terminal. Ctrl-D or Ctrl-C at the prompt means no answer."""

    def source(unit: ChangeUnit):
        console.print(
            f"\n[bold]{unit.unit_id}[/bold] [{unit.severity.value}] {unit.title}\n"
            f"  files: {', '.join(unit.target_files)}"
        )
        if unit.rationale:
            console.print(f"  [dim]{unit.rationale}[/dim]")
        try:
            answer = click.prompt(
                "  Decision",
                type=click.Choice(["approve", "reject", "defer"]),
                default="reject",
            )
        except (click.Abort, EOFError):
            return None
        return Decision.parse(answer), "interactive"

    return source


def _event_printer(console):
    def on_event(event_type: str, data: dict) -> None:
        if event_type == "baseline":
            console.print(f"[cyan]Baseline[/cyan] {data['passed_count']}/{data['total']} passed, "
                          f"{data['files']} files checkpointed")
        elif event_type == "findings":
            console.print(f"[cyan]Findings[/cyan] {data['count']}")
        elif event_type == "proposal":
            console.print(f"[cyan]Proposal[/cyan] {len(data['units'])} unit(s), "
                          f"{len(data['deferrals'])} deferred finding(s)")
        elif event_type == "unit_started":
            console.print(f"  applying {data['unit_id']} ({', '.join(data['target_files'])})")
        elif event_type == "unit_finished":
            style = {"verified": "green", "reverted": "yellow"}.get(data["status"], "red")
            detail = f" - {data['reason']}" if data["reason"] else ""
            console.print(f"  [{style}]{data['status']}[/{style}] {data['unit_id']}{detail}")
        elif event_type == "unit_resumed":
            console.print(f"  [dim]{data['status']} {data['unit_id']} (resumed)[/dim]")
        elif event_type == "cumulative" and not data.get("skipped"):
            style = "green" if data["passed"] else "red"
            console.print(f"[cyan]Cumulative[/cyan] [{style}]{'passed' if data['passed'] else 'failed'}[/{style}]")

    return on_event


@click.command("run")
@click.argument("path", type=click.Path(exists=True, file_okay=False), default=".")
@click.option("--findings", "findings_path", type=click.Path(exists=True, dir_okay=False), required=True,
              help="Findings file (safepatch JSON, semgrep JSON, or SARIF)")
@click.option("--findings-format", type=click.Choice(FindingsFileAssessor.FORMATS), default="auto",
              help="Findings file format (default: auto-detect)")
@click.option("--plan", "plan_path", type=click.Path(exists=True, dir_okay=False), required=True,
              help="JSON plan of change units and deferrals")
@click.option("--approve", "approve_ids", multiple=True, help="Approve a unit id (repeatable)")
@click.option("--reject", "reject_ids", multiple=True, help="Reject a unit id (repeatable)")
@click.option("--defer", "defer_ids", multiple=True, help="Defer a unit id (repeatable)")
@click.option("--decisions", "decisions_path", type=click.Path(exists=True, dir_okay=False), default=None,
              help="JSON decisions file")
@click.option("--approve-all", is_flag=True, help="Approve every unit without asking")
@click.option("--interactive", "-i", is_flag=True, help="Ask for each undecided unit")
@click.option("--test-cmd", default=None, help="Test command (overrides config)")
@click.option("--timeout", type=float, default=None, help="Test timeout in seconds")
@click.option("--backend", type=click.Choice(["auto", "git", "snapshot"]), default=None,
              help="Checkpoint backend")
@click.option("--resume", "resume_run", default=None,
              help="Carry finalized outcomes from an earlier run (run id, path, or 'latest')")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Global config file")
@click.option("--json", "output_json", is_flag=True, help="Output the run report as JSON")
def run_command(
    path: str,
    findings_path: str,
    findings_format: str,
    plan_path: str,
    approve_ids: tuple,
    reject_ids: tuple,
    defer_ids: tuple,
    decisions_path: Optional[str],
    approve_all: bool,
    interactive: bool,
    test_cmd: Optional[str],
    timeout: Optional[float],
    backend: Optional[str],
    resume_run: Optional[str],
    config_path: Optional[str],
    output_json: bool,
) -> None:
    """Apply approved change units, verifying each against the test suite.

    Every unit that breaks a test is reverted bit-for-bit. Units without an
    explicit approval are never applied.

    \b
    Decision sources, first answer wins:
        --approve/--reject/--defer   per-unit flags
        --decisions FILE             {"U1": "approved", "U2": "rejected"}
        --interactive                prompt on the terminal
        --approve-all                approve whatever is left

    \b
    Exit codes:
        0  done, all attempted units verified
        10 dirty workspace    11 baseline tests fail
        12 incomplete plan    13 cumulative regression
        14 aborted            15 some units reverted or failed
        20 malformed input
    """
    from rich.console import Console

    repo = Path(path).resolve()
    console = Console(stderr=output_json, quiet=output_json)

    overlap = set(approve_ids) & (set(reject_ids) | set(defer_ids))
    if overlap:
        click.echo(f"Error: conflicting decisions for {', '.join(sorted(overlap))}", err=True)
        raise SystemExit(ExitCode.USAGE.value)

    try:
        config = load_cli_config(repo, config_path, test_cmd=test_cmd, timeout=timeout, backend=backend)
        resume_log = None
        if resume_run:
            resume_log = ExecutionLog.load(resolve_run_dir(repo, config, resume_run) / "execution_log.jsonl")

        flags = {uid: Decision.APPROVED for uid in approve_ids}
        flags.update({uid: Decision.REJECTED for uid in reject_ids})
        flags.update({uid: Decision.DEFERRED for uid in defer_ids})
        gate = ApprovalGate(chain_sources(
            static_decisions(flags) if flags else None,
            file_decisions(Path(decisions_path)) if decisions_path else None,
            _interactive_source(console) if interactive and not output_json else None,
            approve_everything if approve_all else None,
        ))

        orchestrator = Orchestrator(
            repo_root=repo,
            assessor=FindingsFileAssessor(Path(findings_path), fmt=findings_format),
            proposer=PlanFileProposer(Path(plan_path)),
            approval=gate,
            oracle=build_oracle(repo, config),
            store=build_store(repo, config),
            runs_dir=runs_dir_for(repo, config),
            cancel=CancelToken(),
            on_event=_event_printer(console),
            store_blobs=bool(config.get("baseline_blobs", True)),
        )
    except SafePatchError as e:
        fail(e, output_json)

    def _on_sigint(signum, frame):
        orchestrator.cancel.cancel("interrupted")
        console.print("\n[yellow]Interrupt received; stopping after the current step.[/yellow]")

    previous = signal.signal(signal.SIGINT, _on_sigint)
    error = None
    try:
        orchestrator.run(resume_log=resume_log)
    except SafePatchError as e:
        error = e
    finally:
        signal.signal(signal.SIGINT, previous)

    report = orchestrator.report
    if output_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        render_rich(report, console=console)
        if error is not None:
            click.echo(f"Error [{error.kind}]: {error.message}", err=True)
        if orchestrator.run_dir is not None:
            click.echo(f"Run artifacts: {orchestrator.run_dir}")

    if error is not None:
        raise SystemExit(exit_code_for(error).value)
    if not report.ok:
        raise SystemExit(ExitCode.UNITS_NOT_VERIFIED.value)
