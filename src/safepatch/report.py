"""RunReport - the final account of one orchestration run.

Every queued unit appears exactly once, as one of:

    verified
    reverted (reason; failing: test ids)
    failed (reason)
    not attempted (rejected | deferred | not approved | aborted before reach)
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from .models import ApprovalStatus, Baseline, ChangeUnit, ExecutionOutcome, ExecutionStatus, TestResult, utc_now

REPORT_SCHEMA = "safepatch_report_v1"

VERIFIED = "verified"
REVERTED = "reverted"
FAILED = "failed"
NOT_ATTEMPTED = "not attempted"

OUTCOME_STYLES = {
    VERIFIED: "green",
    REVERTED: "yellow",
    FAILED: "red",
    NOT_ATTEMPTED: "dim",
}


@dataclass(frozen=True)
class UnitReport:
    unit_id: str
    title: str
    severity: str
    target_files: tuple[str, ...]
    approval: str
    outcome: str  # verified, reverted, failed, not attempted
    reason: str = ""
    failed_tests: tuple[str, ...] = ()
    resumed: bool = False

    @property
    def detail(self) -> str:
        if self.outcome == VERIFIED:
            return ""
        if self.outcome == REVERTED:
            failing = ", ".join(self.failed_tests[:10])
            return f"{self.reason}; failing: {failing}" if failing else self.reason
        return self.reason

    @property
    def line(self) -> str:
        detail = self.detail
        return f"{self.outcome} ({detail})" if detail else self.outcome

    def to_dict(self) -> dict:
        return {
            "unit_id": self.unit_id,
            "title": self.title,
            "severity": self.severity,
            "target_files": list(self.target_files),
            "approval": self.approval,
            "outcome": self.outcome,
            "reason": self.reason,
            "failed_tests": list(self.failed_tests),
            "resumed": self.resumed,
            "line": self.line,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "UnitReport":
        return cls(
            unit_id=d["unit_id"],
            title=d.get("title", ""),
            severity=d.get("severity", "low"),
            target_files=tuple(d.get("target_files") or ()),
            approval=d.get("approval", "pending"),
            outcome=d["outcome"],
            reason=d.get("reason", ""),
            failed_tests=tuple(d.get("failed_tests") or ()),
            resumed=bool(d.get("resumed", False)),
        )


@dataclass
class RunReport:
    run_id: str
    repo_root: str
    state: str
    units: list[UnitReport] = field(default_factory=list)
    findings_count: int = 0
    deferrals: dict = field(default_factory=dict)
    baseline: Optional[dict] = None
    cumulative: Optional[dict] = None
    error: Optional[dict] = None
    started_at: str = ""
    finished_at: str = field(default_factory=utc_now)

    @property
    def counts(self) -> dict:
        counts = {VERIFIED: 0, REVERTED: 0, FAILED: 0, NOT_ATTEMPTED: 0}
        for unit in self.units:
            counts[unit.outcome] += 1
        return counts

    @property
    def ok(self) -> bool:
        """Run reached DONE and nothing was reverted or failed."""
        counts = self.counts
        return self.state == "done" and counts[REVERTED] == 0 and counts[FAILED] == 0

    def unit(self, unit_id: str) -> Optional[UnitReport]:
        for unit in self.units:
            if unit.unit_id == unit_id:
                return unit
        return None

    def lines(self) -> list[str]:
        width = max((len(u.unit_id) for u in self.units), default=0)
        return [f"{u.unit_id.ljust(width)}  {u.line}" for u in self.units]

    def to_dict(self) -> dict:
        return {
            "schema": REPORT_SCHEMA,
            "run_id": self.run_id,
            "repo_root": self.repo_root,
            "state": self.state,
            "ok": self.ok,
            "counts": self.counts,
            "findings_count": self.findings_count,
            "deferrals": dict(self.deferrals),
            "baseline": self.baseline,
            "cumulative": self.cumulative,
            "error": self.error,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "units": [u.to_dict() for u in self.units],
        }

    @classmethod
    def from_dict(cls, d: dict) -> "RunReport":
        return cls(
            run_id=d["run_id"],
            repo_root=d.get("repo_root", ""),
            state=d["state"],
            units=[UnitReport.from_dict(u) for u in d.get("units", [])],
            findings_count=int(d.get("findings_count", 0)),
            deferrals=dict(d.get("deferrals") or {}),
            baseline=d.get("baseline"),
            cumulative=d.get("cumulative"),
            error=d.get("error"),
            started_at=d.get("started_at", ""),
            finished_at=d.get("finished_at", ""),
        )

    def write(self, path: Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2))
        return path

    @classmethod
    def load(cls, path: Path) -> "RunReport":
        return cls.from_dict(json.loads(Path(path).read_text()))


def _not_attempted_reason(unit: ChangeUnit, aborted: bool) -> str:
    if unit.approval is ApprovalStatus.REJECTED:
        return "rejected"
    if unit.approval is ApprovalStatus.DEFERRED:
        return "deferred"
    if unit.approval is ApprovalStatus.APPROVED and aborted:
        return "aborted before reach"
    return "not approved"


def build_report(
    run_id: str,
    repo_root: Path,
    state: str,
    units: Iterable[ChangeUnit],
    outcomes: dict[str, ExecutionOutcome],
    findings_count: int = 0,
    deferrals: Optional[dict] = None,
    baseline: Optional[Baseline] = None,
    cumulative: Optional[TestResult] = None,
    error: Optional[dict] = None,
    started_at: str = "",
    resumed: Iterable[str] = (),
) -> RunReport:
    """Assemble a RunReport from the queue and the outcomes reported for it."""
    resumed = set(resumed)
    aborted = state == "aborted"
    reports = []
    for unit in units:
        outcome = outcomes.get(unit.unit_id)
        if outcome is None:
            kind, reason, failed = NOT_ATTEMPTED, _not_attempted_reason(unit, aborted), ()
        elif outcome.status is ExecutionStatus.VERIFIED:
            kind, reason, failed = VERIFIED, "", ()
        elif outcome.status is ExecutionStatus.REVERTED:
            kind, reason, failed = REVERTED, outcome.reason, tuple(outcome.failed_tests)
        else:
            kind, reason, failed = FAILED, outcome.reason, ()
        reports.append(UnitReport(
            unit_id=unit.unit_id,
            title=unit.title,
            severity=unit.severity.value,
            target_files=tuple(unit.target_files),
            approval=unit.approval.value,
            outcome=kind,
            reason=reason,
            failed_tests=failed,
            resumed=unit.unit_id in resumed,
        ))

    return RunReport(
        run_id=run_id,
        repo_root=str(repo_root),
        state=state,
        units=reports,
        findings_count=findings_count,
        deferrals=dict(deferrals or {}),
        baseline=baseline.test_result.summary() if baseline else None,
        cumulative=cumulative.summary() if cumulative else None,
        error=error,
        started_at=started_at,
    )


def render_rich(report: RunReport, console=None) -> None:
    """Print the report using Rich."""
    from rich.box import ROUNDED
    from rich.console import Console
    from rich.panel import Panel
    from rich.table import Table

    console = console or Console()

    state_style = "green" if report.state == "done" else "red"
    header = (
        f"  Run:      {report.run_id}\n"
        f"  Repo:     {report.repo_root}\n"
        f"  State:    [{state_style}]{report.state.upper()}[/{state_style}]\n"
        f"  Findings: {report.findings_count}, units: {len(report.units)}, "
        f"deferred findings: {len(report.deferrals)}"
    )
    if report.baseline:
        b = report.baseline
        header += f"\n  Baseline: {b['passed_count']}/{b['total']} passed"
    console.print()
    console.print(Panel(
        header,
        title="[bold cyan]═══ SAFEPATCH RUN REPORT ═══[/bold cyan]",
        border_style="cyan",
        padding=(1, 1),
        expand=False,
    ))

    if report.error:
        console.print(f"\n  [red bold]{report.error.get('kind')}[/red bold]: {report.error.get('message', '')}")

    if report.units:
        table = Table(
            title="CHANGE UNITS",
            box=ROUNDED,
            border_style="cyan",
            show_header=True,
            header_style="bold",
        )
        table.add_column("Unit", style="white", min_width=8)
        table.add_column("Severity", min_width=8)
        table.add_column("Files", min_width=16)
        table.add_column("Outcome", min_width=12)
        table.add_column("Detail", min_width=24)

        for u in report.units:
            style = OUTCOME_STYLES[u.outcome]
            outcome = u.outcome + (" (resumed)" if u.resumed else "")
            table.add_row(
                u.unit_id,
                u.severity,
                ", ".join(u.target_files),
                f"[{style}]{outcome}[/{style}]",
                u.detail,
            )
        console.print()
        console.print(table)

    counts = report.counts
    console.print(
        f"\n  [green]{counts[VERIFIED]} verified[/green], "
        f"[yellow]{counts[REVERTED]} reverted[/yellow], "
        f"[red]{counts[FAILED]} failed[/red], "
        f"[dim]{counts[NOT_ATTEMPTED]} not attempted[/dim]\n"
    )


__all__ = [
    "REPORT_SCHEMA",
    "VERIFIED",
    "REVERTED",
    "FAILED",
    "NOT_ATTEMPTED",
    "UnitReport",
    "RunReport",
    "build_report",
    "render_rich",
]
