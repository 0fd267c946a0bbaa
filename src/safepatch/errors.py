"""Error taxonomy for safepatch.

Every error carries a ``kind`` (the name operators see in reports) and
enough context to act on: which unit, which files, which failing tests.

Recoverable per unit (handled by the ChangeExecutor, never abort a run):
    NotApprovedError, ApplierError

Abort the whole orchestration:
    DirtyWorkspaceError, BaselineTestFailureError, IncompleteProposalError,
    CumulativeRegressionError, OrchestrationCancelledError
"""
from __future__ import annotations

from typing import Any


class SafePatchError(Exception):
    """Base class for all safepatch errors."""

    kind = "SafePatchError"

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context = context
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "message": self.message,
            **{k: _plain(v) for k, v in self.context.items()},
        }


def _plain(value: Any) -> Any:
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    return value


class ConfigError(SafePatchError):
    """Invalid configuration value."""

    kind = "ConfigError"


class MalformedInputError(SafePatchError):
    """A findings, plan or decisions file could not be parsed."""

    kind = "MalformedInput"

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}", path=path, reason=reason)


class CheckpointError(SafePatchError):
    """The checkpoint backend failed or a restore did not round-trip."""

    kind = "CheckpointError"


class WorkspaceBusyError(SafePatchError):
    """The workspace state is already held by another apply."""

    kind = "WorkspaceBusy"


class DirtyWorkspaceError(SafePatchError):
    """Working copy has modifications relative to its last checkpoint."""

    kind = "DirtyWorkspace"

    def __init__(self, paths: list[str]):
        self.paths = list(paths)
        preview = ", ".join(self.paths[:5])
        if len(self.paths) > 5:
            preview += f", ... (+{len(self.paths) - 5} more)"
        super().__init__(
            f"Working copy has {len(self.paths)} uncommitted change(s): {preview}",
            paths=self.paths,
        )


class BaselineTestFailureError(SafePatchError):
    """The test oracle does not pass on the untouched workspace."""

    kind = "BaselineTestFailure"

    def __init__(self, passed_count: int, total: int, failed: list[str], raw_output: str = ""):
        self.passed_count = passed_count
        self.total = total
        self.failed = list(failed)
        self.raw_output = raw_output
        super().__init__(
            f"Baseline tests failing: {passed_count}/{total} passed, "
            f"{len(self.failed)} failing ({', '.join(self.failed[:5])})",
            passed_count=passed_count,
            total=total,
            failed=self.failed,
        )


class IncompleteProposalError(SafePatchError):
    """Some finding maps to no change unit and no deferral, or to several."""

    kind = "IncompleteProposal"

    def __init__(
        self,
        missing: list[str],
        duplicated: list[str] | None = None,
        unknown: list[str] | None = None,
        orphan_units: list[str] | None = None,
        duplicate_unit_ids: list[str] | None = None,
    ):
        self.missing = list(missing)
        self.duplicated = list(duplicated or [])
        self.unknown = list(unknown or [])
        self.orphan_units = list(orphan_units or [])
        self.duplicate_unit_ids = list(duplicate_unit_ids or [])
        parts = []
        if self.missing:
            parts.append(f"uncovered findings: {', '.join(self.missing)}")
        if self.duplicated:
            parts.append(f"findings covered more than once: {', '.join(self.duplicated)}")
        if self.unknown:
            parts.append(f"units reference unknown findings: {', '.join(self.unknown)}")
        if self.orphan_units:
            parts.append(f"units with no finding: {', '.join(self.orphan_units)}")
        if self.duplicate_unit_ids:
            parts.append(f"duplicate unit ids: {', '.join(self.duplicate_unit_ids)}")
        super().__init__(
            "Incomplete proposal: " + "; ".join(parts),
            missing=self.missing,
            duplicated=self.duplicated,
            unknown=self.unknown,
            orphan_units=self.orphan_units,
            duplicate_unit_ids=self.duplicate_unit_ids,
        )


class NotApprovedError(SafePatchError):
    """A change unit reached the executor without approval."""

    kind = "NotApproved"

    def __init__(self, unit_id: str, approval: str):
        self.unit_id = unit_id
        self.approval = approval
        super().__init__(
            f"Unit {unit_id} is {approval}, not approved",
            unit_id=unit_id,
            approval=approval,
        )


class ApplierError(SafePatchError):
    """A mutation payload cannot be applied cleanly."""

    kind = "ApplierError"

    def __init__(self, unit_id: str, reason: str, path: str | None = None):
        self.unit_id = unit_id
        self.reason = reason
        self.path = path
        where = f" ({path})" if path else ""
        super().__init__(
            f"Cannot apply unit {unit_id}{where}: {reason}",
            unit_id=unit_id,
            path=path,
            reason=reason,
        )


class DecisionConflictError(SafePatchError):
    """A recorded approval decision was asked to change."""

    kind = "DecisionConflict"

    def __init__(self, unit_id: str, recorded: str, requested: str):
        self.unit_id = unit_id
        super().__init__(
            f"Unit {unit_id} already {recorded}; open a new unit instead of changing it to {requested}",
            unit_id=unit_id,
            recorded=recorded,
            requested=requested,
        )


class CumulativeRegressionError(SafePatchError):
    """Individually verified units fail the suite when combined."""

    kind = "CumulativeRegression"

    def __init__(self, implicated: list[str], failed: list[str]):
        self.implicated = list(implicated)
        self.failed = list(failed)
        super().__init__(
            f"Cumulative test run failed after units {', '.join(self.implicated) or '(none)'}; "
            f"failing: {', '.join(self.failed[:5])}",
            implicated=self.implicated,
            failed=self.failed,
        )


class OrchestrationCancelledError(SafePatchError):
    """An external cancel signal stopped the run between steps."""

    kind = "Cancelled"

    def __init__(self, reason: str, state: str):
        self.reason = reason
        self.state = state
        super().__init__(f"Cancelled during {state}: {reason}", reason=reason, state=state)


# Errors that move the orchestrator to ABORTED.
ABORTING_ERRORS = (
    DirtyWorkspaceError,
    BaselineTestFailureError,
    IncompleteProposalError,
    CumulativeRegressionError,
    OrchestrationCancelledError,
)


__all__ = [
    "SafePatchError",
    "ConfigError",
    "MalformedInputError",
    "CheckpointError",
    "WorkspaceBusyError",
    "DirtyWorkspaceError",
    "BaselineTestFailureError",
    "IncompleteProposalError",
    "NotApprovedError",
    "ApplierError",
    "DecisionConflictError",
    "CumulativeRegressionError",
    "OrchestrationCancelledError",
    "ABORTING_ERRORS",
]
