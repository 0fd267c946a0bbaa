"""Core records: findings, change units, test results, baselines, outcomes.

ChangeUnit is the only mutable record. Its two status fields move only
along the transitions below; everything the executor hands back to the
orchestrator is a frozen value.

    approval:   pending -> approved | rejected | deferred
    execution:  not_started -> applied -> verified | reverted | failed
                not_started -> failed          (payload rejected before writing)
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .errors import NotApprovedError


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Severity(Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def parse(cls, value: Any) -> "Severity":
        if isinstance(value, Severity):
            return value
        text = str(value or "").strip().lower()
        aliases = {
            "error": "high",
            "warning": "medium",
            "warn": "medium",
            "info": "low",
            "note": "low",
            "none": "low",
        }
        text = aliases.get(text, text)
        try:
            return cls(text)
        except ValueError:
            raise ValueError(
                f"Invalid severity '{value}'. Must be one of: "
                f"{', '.join(s.value for s in cls)}"
            ) from None


class ApprovalStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    DEFERRED = "deferred"


class Decision(Enum):
    """What the approval gate records for one unit."""

    APPROVED = "approved"
    REJECTED = "rejected"
    DEFERRED = "deferred"

    @classmethod
    def parse(cls, value: Any) -> "Decision":
        if isinstance(value, Decision):
            return value
        if value is True:
            return cls.APPROVED
        if value is False:
            return cls.REJECTED
        text = str(value or "").strip().lower()
        aliases = {"approve": "approved", "yes": "approved", "y": "approved",
                   "reject": "rejected", "no": "rejected", "n": "rejected",
                   "defer": "deferred", "skip": "deferred"}
        text = aliases.get(text, text)
        try:
            return cls(text)
        except ValueError:
            raise ValueError(
                f"Invalid decision '{value}'. Must be one of: approved, rejected, deferred"
            ) from None

    def as_approval(self) -> ApprovalStatus:
        return ApprovalStatus(self.value)


class ExecutionStatus(Enum):
    NOT_STARTED = "not_started"
    APPLIED = "applied"
    VERIFIED = "verified"
    REVERTED = "reverted"
    FAILED = "failed"

    @property
    def is_final(self) -> bool:
        return self in (ExecutionStatus.VERIFIED, ExecutionStatus.REVERTED, ExecutionStatus.FAILED)


_EXECUTION_TRANSITIONS = {
    ExecutionStatus.NOT_STARTED: {ExecutionStatus.APPLIED, ExecutionStatus.FAILED},
    ExecutionStatus.APPLIED: {ExecutionStatus.VERIFIED, ExecutionStatus.REVERTED, ExecutionStatus.FAILED},
    ExecutionStatus.VERIFIED: set(),
    ExecutionStatus.REVERTED: set(),
    ExecutionStatus.FAILED: set(),
}


@dataclass(frozen=True)
class Finding:
    """One structured finding from an assessor."""

    finding_id: str
    severity: Severity
    description: str
    location: str = ""
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "finding_id": self.finding_id,
            "severity": self.severity.value,
            "description": self.description,
            "location": self.location,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Finding":
        return cls(
            finding_id=str(d.get("finding_id") or d["id"]),
            severity=Severity.parse(d.get("severity", "low")),
            description=str(d.get("description", "")),
            location=str(d.get("location", "")),
            metadata=dict(d.get("metadata") or {}),
        )


@dataclass
class ChangeUnit:
    """One atomic, independently verifiable proposed mutation.

    ``payload`` is opaque here; the applier registered for
    ``payload["kind"]`` interprets it.
    """

    unit_id: str
    title: str
    severity: Severity
    target_files: tuple[str, ...]
    payload: dict
    finding_ids: tuple[str, ...] = ()
    rationale: str = ""
    approval: ApprovalStatus = ApprovalStatus.PENDING
    execution: ExecutionStatus = ExecutionStatus.NOT_STARTED

    def __post_init__(self) -> None:
        if not self.unit_id:
            raise ValueError("ChangeUnit requires a unit_id")
        self.severity = Severity.parse(self.severity)
        self.target_files = tuple(str(p) for p in self.target_files)
        self.finding_ids = tuple(str(f) for f in self.finding_ids)
        if not self.target_files:
            raise ValueError(f"ChangeUnit {self.unit_id} lists no target files")
        if len(set(self.target_files)) != len(self.target_files):
            raise ValueError(f"ChangeUnit {self.unit_id} lists a target file twice")

    def record_decision(self, decision: Decision) -> None:
        if self.approval is not ApprovalStatus.PENDING:
            raise ValueError(f"Unit {self.unit_id} already {self.approval.value}")
        self.approval = decision.as_approval()

    def advance(self, status: ExecutionStatus) -> None:
        """Move execution status forward, enforcing the transition table."""
        if status is ExecutionStatus.APPLIED and self.approval is not ApprovalStatus.APPROVED:
            raise NotApprovedError(self.unit_id, self.approval.value)
        if status not in _EXECUTION_TRANSITIONS[self.execution]:
            raise ValueError(
                f"Unit {self.unit_id}: illegal transition {self.execution.value} -> {status.value}"
            )
        if status is ExecutionStatus.FAILED and self.approval is not ApprovalStatus.APPROVED:
            raise NotApprovedError(self.unit_id, self.approval.value)
        self.execution = status

    def settle(self, outcome: "ExecutionOutcome") -> None:
        """Adopt an executor outcome reported by value."""
        if outcome.unit_id != self.unit_id:
            raise ValueError(f"Outcome for {outcome.unit_id} applied to unit {self.unit_id}")
        if outcome.applied:
            self.advance(ExecutionStatus.APPLIED)
        self.advance(outcome.status)

    def to_dict(self) -> dict:
        return {
            "unit_id": self.unit_id,
            "title": self.title,
            "severity": self.severity.value,
            "target_files": list(self.target_files),
            "payload": self.payload,
            "finding_ids": list(self.finding_ids),
            "rationale": self.rationale,
            "approval": self.approval.value,
            "execution": self.execution.value,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "ChangeUnit":
        finding_ids = d.get("finding_ids")
        if finding_ids is None and d.get("finding_id"):
            finding_ids = [d["finding_id"]]
        return cls(
            unit_id=str(d.get("unit_id") or d["id"]),
            title=str(d.get("title", "")),
            severity=Severity.parse(d.get("severity", "low")),
            target_files=tuple(d.get("target_files") or ()),
            payload=dict(d.get("payload") or {}),
            finding_ids=tuple(finding_ids or ()),
            rationale=str(d.get("rationale", "")),
        )


@dataclass(frozen=True)
class TestResult:
    """What one test oracle run reported."""

    __test__ = False

    passed: bool
    total: int
    failed: tuple[str, ...] = ()
    raw_output: str = ""
    duration_ms: int = 0
    timed_out: bool = False

    @property
    def passed_count(self) -> int:
        return max(self.total - len(self.failed), 0)

    def summary(self) -> dict:
        """Result without the raw output, for logs and reports."""
        return {
            "passed": self.passed,
            "total": self.total,
            "passed_count": self.passed_count,
            "failed": list(self.failed),
            "duration_ms": self.duration_ms,
            "timed_out": self.timed_out,
        }

    def to_dict(self, output_tail: int = 2000) -> dict:
        d = self.summary()
        output = self.raw_output
        d["raw_output"] = output[-output_tail:] if len(output) > output_tail else output
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "TestResult":
        return cls(
            passed=bool(d["passed"]),
            total=int(d.get("total", 0)),
            failed=tuple(d.get("failed") or ()),
            raw_output=str(d.get("raw_output", "")),
            duration_ms=int(d.get("duration_ms", 0)),
            timed_out=bool(d.get("timed_out", False)),
        )


@dataclass(frozen=True)
class Baseline:
    """Verified pre-mutation state of the workspace."""

    file_hashes: dict
    test_result: TestResult
    checkpoint_id: str
    created_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "schema": "safepatch_baseline_v1",
            "checkpoint_id": self.checkpoint_id,
            "created_at": self.created_at,
            "file_hashes": dict(sorted(self.file_hashes.items())),
            "test_result": self.test_result.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Baseline":
        return cls(
            file_hashes=dict(d.get("file_hashes") or {}),
            test_result=TestResult.from_dict(d["test_result"]),
            checkpoint_id=str(d["checkpoint_id"]),
            created_at=str(d.get("created_at", "")),
        )


@dataclass(frozen=True)
class ExecutionOutcome:
    """What the executor reports for one unit, by value."""

    unit_id: str
    status: ExecutionStatus
    applied: bool
    test_result: TestResult | None = None
    reason: str = ""
    error_kind: str | None = None
    target_files: tuple[str, ...] = ()
    pre_hashes: dict = field(default_factory=dict)
    post_hashes: dict = field(default_factory=dict)

    @property
    def failed_tests(self) -> tuple[str, ...]:
        return self.test_result.failed if self.test_result else ()


__all__ = [
    "utc_now",
    "Severity",
    "ApprovalStatus",
    "Decision",
    "ExecutionStatus",
    "Finding",
    "ChangeUnit",
    "TestResult",
    "Baseline",
    "ExecutionOutcome",
]
