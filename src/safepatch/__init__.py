"""safepatch - apply approved code changes under a test-verified safety net.

Submodules:
    workspace     - Baseline guard and the single live workspace checkpoint
    oracle        - Test command adapter (pytest, JUnit XML, exit code)
    approval      - Typed per-unit decision channel
    executor      - Apply one unit, verify, commit or revert
    orchestrator  - Phase state machine over the unit queue
    execution_log - Hash-chained append-only outcome log
    cli           - Command-line interface

Public API:
    from safepatch import Orchestrator, ApprovalGate, TestOracle
    from safepatch import FindingsFileAssessor, PlanFileProposer
"""
from __future__ import annotations

from safepatch.approval import ApprovalGate, approve_all, file_decisions, static_decisions
from safepatch.checkpoint import GitCheckpointStore, SnapshotCheckpointStore, open_store
from safepatch.collaborators import (
    Assessor,
    FindingsFileAssessor,
    PlanFileProposer,
    Proposal,
    Proposer,
    StaticAssessor,
    StaticProposer,
)
from safepatch.errors import SafePatchError
from safepatch.execution_log import ExecutionLog, LogEntry
from safepatch.executor import ChangeExecutor
from safepatch.models import (
    ApprovalStatus,
    Baseline,
    ChangeUnit,
    Decision,
    ExecutionOutcome,
    ExecutionStatus,
    Finding,
    Severity,
    TestResult,
)
from safepatch.oracle import TestOracle
from safepatch.orchestrator import CancelToken, Orchestrator, OrchestratorState
from safepatch.report import RunReport
from safepatch.workspace import WorkspaceGuard, WorkspaceState

__version__ = "0.1.0"

__all__ = [
    # Orchestration
    "Orchestrator",
    "OrchestratorState",
    "CancelToken",
    "ChangeExecutor",
    "WorkspaceGuard",
    "WorkspaceState",
    "RunReport",
    # Collaborators
    "Assessor",
    "Proposer",
    "Proposal",
    "StaticAssessor",
    "StaticProposer",
    "FindingsFileAssessor",
    "PlanFileProposer",
    # Approval
    "ApprovalGate",
    "approve_all",
    "file_decisions",
    "static_decisions",
    # Oracle and checkpoints
    "TestOracle",
    "GitCheckpointStore",
    "SnapshotCheckpointStore",
    "open_store",
    # Records
    "ExecutionLog",
    "LogEntry",
    "Finding",
    "ChangeUnit",
    "Severity",
    "Decision",
    "ApprovalStatus",
    "ExecutionStatus",
    "ExecutionOutcome",
    "TestResult",
    "Baseline",
    "SafePatchError",
]
