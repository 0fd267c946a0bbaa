"""Orchestrator - sequences assess, propose, approve, execute and validate.

    ASSESSING -> AWAITING_PROPOSAL -> AWAITING_APPROVAL -> EXECUTING -> VALIDATING -> DONE
         \\______________ any state -> ABORTED ______________________________/
    ASSESSING -> DONE when the assessor reports nothing

The orchestrator owns the unit queue and the ExecutionLog. Only the
ChangeExecutor touches the workspace; the orchestrator receives outcomes by
value and settles the queued units from them.

Usage:
    orch = Orchestrator(
        repo_root=Path("."),
        assessor=FindingsFileAssessor(Path("findings.json")),
        proposer=PlanFileProposer(Path("plan.json")),
        approval=ApprovalGate(file_decisions(Path("decisions.json"))),
        oracle=TestOracle(["python", "-m", "pytest", "-q", "-rfE"], cwd=Path(".")),
        runs_dir=Path(".safepatch/runs"),
    )
    report = orch.run()

``run()`` raises the aborting error after moving to ABORTED; the report is
still available as ``orch.report``.
"""
from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from .appliers import Applier
from .approval import ApprovalGate
from .checkpoint import CheckpointStore, open_store
from .collaborators import Assessor, Proposal, Proposer
from .errors import CumulativeRegressionError, OrchestrationCancelledError, SafePatchError
from .execution_log import ExecutionLog, LogEntry
from .executor import ChangeExecutor
from .models import (
    ApprovalStatus,
    Baseline,
    ChangeUnit,
    ExecutionOutcome,
    ExecutionStatus,
    Finding,
    TestResult,
    utc_now,
)
from .oracle import Oracle
from .report import RunReport, build_report
from .workspace import WorkspaceGuard


class OrchestratorState(Enum):
    ASSESSING = "assessing"
    AWAITING_PROPOSAL = "awaiting_proposal"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    VALIDATING = "validating"
    DONE = "done"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (OrchestratorState.DONE, OrchestratorState.ABORTED)


_ABORTED = OrchestratorState.ABORTED

_TRANSITIONS = {
    OrchestratorState.ASSESSING: {OrchestratorState.AWAITING_PROPOSAL, OrchestratorState.DONE, _ABORTED},
    OrchestratorState.AWAITING_PROPOSAL: {OrchestratorState.AWAITING_APPROVAL, _ABORTED},
    OrchestratorState.AWAITING_APPROVAL: {OrchestratorState.EXECUTING, _ABORTED},
    OrchestratorState.EXECUTING: {OrchestratorState.VALIDATING, _ABORTED},
    OrchestratorState.VALIDATING: {OrchestratorState.DONE, _ABORTED},
    OrchestratorState.DONE: set(),
    _ABORTED: set(),
}


class CancelToken:
    """Cooperative cancellation. Checked between steps, never inside one."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self, state: OrchestratorState) -> None:
        if self.cancelled:
            raise OrchestrationCancelledError(self.reason, state.value)


EventCallback = Callable[[str, dict], Any]


def new_run_id() -> str:
    return f"run_{datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:8]}"


def _error_dict(error: BaseException) -> dict:
    if isinstance(error, SafePatchError):
        return error.to_dict()
    return {"kind": type(error).__name__, "message": str(error)}


class Orchestrator:
    """Drives one change-application run over a repository."""

    def __init__(
        self,
        repo_root: Path,
        assessor: Assessor,
        proposer: Proposer,
        approval: Optional[ApprovalGate],
        oracle: Oracle,
        store: Optional[CheckpointStore] = None,
        runs_dir: Optional[Path] = None,
        cancel: Optional[CancelToken] = None,
        on_event: Optional[EventCallback] = None,
        appliers: Optional[dict[str, Applier]] = None,
        store_blobs: bool = True,
    ):
        """Initialize the orchestrator.

        Args:
            repo_root: Repository the run operates on
            assessor: Finding producer
            proposer: Change unit author
            approval: Decision channel; None rejects every unit
            oracle: Test oracle used for baseline, per-unit and final runs
            store: Checkpoint backend (defaults to open_store(repo_root))
            runs_dir: Where run artifacts go; None keeps everything in memory
            cancel: Cooperative cancel token
            on_event: Called as on_event(event_type, data) on every transition
                      and unit outcome
            appliers: Payload applier registry override
            store_blobs: Keep baseline file content for full log reconstruction
        """
        self.repo_root = Path(repo_root).resolve()
        self.assessor = assessor
        self.proposer = proposer
        self.approval = approval if approval is not None else ApprovalGate()
        self.oracle = oracle
        self.store = store if store is not None else open_store(self.repo_root)
        self.cancel = cancel or CancelToken()
        self.on_event = on_event
        self.appliers = appliers
        self.store_blobs = store_blobs

        self.run_id = new_run_id()
        self.run_dir = Path(runs_dir) / self.run_id if runs_dir else None

        self.state = OrchestratorState.ASSESSING
        self.history: list[OrchestratorState] = [self.state]
        self.events: list[dict] = []
        self.findings: list[Finding] = []
        self.proposal: Optional[Proposal] = None
        self.queue: list[ChangeUnit] = []
        self.outcomes: dict[str, ExecutionOutcome] = {}
        self.resumed: list[str] = []
        self.baseline: Optional[Baseline] = None
        self.cumulative: Optional[TestResult] = None
        self.error: Optional[BaseException] = None
        self.log = ExecutionLog()
        self.report: Optional[RunReport] = None
        self.started_at = ""
        self._ran = False

    # ── events and transitions ───────────────────────────────────────

    def _emit(self, event_type: str, **data: Any) -> None:
        event = {"type": event_type, "timestamp": utc_now(), "data": data}
        self.events.append(event)
        if self.on_event is not None:
            self.on_event(event_type, data)

    def _transition(self, target: OrchestratorState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise ValueError(f"Illegal orchestrator transition {self.state.value} -> {target.value}")
        previous = self.state
        self.state = target
        self.history.append(target)
        self._emit("state", previous=previous.value, state=target.value)

    def _check_cancel(self) -> None:
        self.cancel.check(self.state)

    # ── run artifacts ────────────────────────────────────────────────

    def _open_run_dir(self) -> None:
        if self.run_dir is None:
            return
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self.log = ExecutionLog(self.run_dir / "execution_log.jsonl")
        latest = self.run_dir.parent / "latest"
        if latest.is_symlink() or latest.exists():
            latest.unlink()
        latest.symlink_to(self.run_dir.name)

    def _write_artifact(self, name: str, payload: dict) -> None:
        if self.run_dir is not None:
            (self.run_dir / name).write_text(json.dumps(payload, indent=2))

    def _record(self, outcome: ExecutionOutcome, checkpoint_id: Optional[str]) -> None:
        self.log.append(outcome, checkpoint_id=checkpoint_id)

    # ── run ──────────────────────────────────────────────────────────

    def run(self, resume_log: ExecutionLog | Path | None = None) -> RunReport:
        """Run every phase to DONE.

        Raises:
            DirtyWorkspaceError, BaselineTestFailureError, IncompleteProposalError,
            CumulativeRegressionError, OrchestrationCancelledError: after the run
            has moved to ABORTED.
        """
        if self._ran:
            raise RuntimeError("Orchestrator.run() may only be called once")
        self._ran = True
        if resume_log is not None and not isinstance(resume_log, ExecutionLog):
            resume_log = ExecutionLog.load(Path(resume_log))

        self.started_at = utc_now()
        self._open_run_dir()
        self._emit("run_started", run_id=self.run_id, repo_root=str(self.repo_root))

        guard = WorkspaceGuard(self.store, self.oracle, store_blobs=self.store_blobs)
        try:
            self._assess(guard)
            if self.state is OrchestratorState.DONE:
                return self._finish()
            self._propose()
            self._approve()
            self._execute(guard, resume_log)
            self._validate()
            self._transition(OrchestratorState.DONE)
        except BaseException as e:
            self.error = e
            if not self.state.is_terminal:
                self._transition(OrchestratorState.ABORTED)
            self._emit("aborted", **_error_dict(e))
            raise
        finally:
            if guard.state is not None:
                guard.state.close()
            self._finish()
        return self.report

    def _finish(self) -> RunReport:
        if self.report is None or self.report.state != self.state.value:
            self.report = build_report(
                run_id=self.run_id,
                repo_root=self.repo_root,
                state=self.state.value,
                units=self.queue,
                outcomes=self.outcomes,
                findings_count=len(self.findings),
                deferrals=self.proposal.deferrals if self.proposal else {},
                baseline=self.baseline,
                cumulative=self.cumulative,
                error=_error_dict(self.error) if self.error is not None else None,
                started_at=self.started_at,
                resumed=self.resumed,
            )
            self._write_artifact("report.json", self.report.to_dict())
            self._emit("run_finished", state=self.state.value, counts=self.report.counts)
        return self.report

    # ── phases ───────────────────────────────────────────────────────

    def _assess(self, guard: WorkspaceGuard) -> None:
        self._check_cancel()
        self.baseline = guard.establish_baseline()
        self._write_artifact("baseline.json", self.baseline.to_dict())
        self._emit(
            "baseline",
            checkpoint_id=self.baseline.checkpoint_id,
            files=len(self.baseline.file_hashes),
            passed_count=self.baseline.test_result.passed_count,
            total=self.baseline.test_result.total,
        )

        self._check_cancel()
        self.findings = list(self.assessor.scan(self.repo_root))
        self._emit("findings", count=len(self.findings), finding_ids=[f.finding_id for f in self.findings])
        if not self.findings:
            self._transition(OrchestratorState.DONE)
            return
        self._transition(OrchestratorState.AWAITING_PROPOSAL)

    def _propose(self) -> None:
        self._check_cancel()
        proposal = self.proposer.draft(list(self.findings))
        proposal.check_coverage(self.findings)
        self.proposal = proposal
        self.queue = list(proposal.units)
        self._emit(
            "proposal",
            units=[u.unit_id for u in self.queue],
            deferrals=dict(proposal.deferrals),
        )
        self._transition(OrchestratorState.AWAITING_APPROVAL)

    def _approve(self) -> None:
        self._check_cancel()
        decisions = self.approval.decide_all(self.queue)
        self._emit("decisions", decisions={uid: d.value for uid, d in decisions.items()})
        self._transition(OrchestratorState.EXECUTING)

    def _execute(self, guard: WorkspaceGuard, resume_log: Optional[ExecutionLog]) -> None:
        executor = ChangeExecutor(guard.state, record=self._record, appliers=self.appliers)
        for unit in self.queue:
            if unit.approval is not ApprovalStatus.APPROVED:
                continue
            self._check_cancel()

            prior = resume_log.find(unit.unit_id) if resume_log is not None else None
            if prior is not None and self._carry(unit, prior):
                continue

            self._emit("unit_started", unit_id=unit.unit_id, target_files=list(unit.target_files))
            outcome = executor.apply(unit, self.oracle)
            unit.settle(outcome)
            self.outcomes[unit.unit_id] = outcome
            self._emit(
                "unit_finished",
                unit_id=unit.unit_id,
                status=outcome.status.value,
                reason=outcome.reason,
                failed_tests=list(outcome.failed_tests),
            )
        self._transition(OrchestratorState.VALIDATING)

    def _carry(self, unit: ChangeUnit, prior: LogEntry) -> bool:
        """Adopt a prior run's outcome if the workspace still shows its result."""
        current = self.store.current_hashes(prior.target_files)
        if current != prior.post_hashes:
            return False
        outcome = ExecutionOutcome(
            unit_id=unit.unit_id,
            status=ExecutionStatus(prior.action),
            applied=prior.action != ExecutionStatus.FAILED.value,
            test_result=TestResult.from_dict(prior.test) if prior.test else None,
            reason=prior.reason,
            error_kind=prior.error_kind,
            target_files=tuple(prior.target_files),
            pre_hashes=dict(prior.pre_hashes),
            post_hashes=dict(prior.post_hashes),
        )
        self.log.carry(prior)
        unit.settle(outcome)
        self.outcomes[unit.unit_id] = outcome
        self.resumed.append(unit.unit_id)
        self._emit("unit_resumed", unit_id=unit.unit_id, status=outcome.status.value)
        return True

    def _validate(self) -> None:
        self._check_cancel()
        # Resumed units were already in place when the baseline passed.
        applied = [
            unit.unit_id for unit in self.queue
            if unit.execution is ExecutionStatus.VERIFIED and unit.unit_id not in self.resumed
        ]
        if not applied:
            # Workspace is byte-identical to the baseline.
            self.cumulative = self.baseline.test_result
            self._emit("cumulative", passed=True, skipped=True)
            return

        result = self.oracle.run()
        self.cumulative = result
        self._emit("cumulative", passed=result.passed, failed=list(result.failed))
        if not result.passed:
            raise CumulativeRegressionError(applied, list(result.failed))


__all__ = [
    "OrchestratorState",
    "CancelToken",
    "Orchestrator",
    "new_run_id",
]
