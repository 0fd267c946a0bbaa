"""ChangeExecutor - apply one approved unit, verify it, commit or revert.

    1. unit must be approved                  (else NotApprovedError)
    2. snapshot exactly unit.target_files
    3. applier.check() then applier.apply()   (ApplierError -> failed, nothing kept)
    4. run the oracle
    5. pass -> commit the checkpoint, outcome "verified"
       fail -> restore the touched files,  outcome "reverted"
       any fault in 2-4 -> restore,        outcome "failed"

The executor is the only code that moves WorkspaceState. It reports back by
value (ExecutionOutcome) and hands every finalized outcome to the ``record``
sink before returning, so the caller never sees an unlogged outcome.
"""
from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

from .appliers import Applier, get_applier
from .errors import ApplierError, NotApprovedError, SafePatchError
from .models import ApprovalStatus, ChangeUnit, ExecutionOutcome, ExecutionStatus, TestResult
from .oracle import TIMEOUT_TEST_ID, Oracle
from .workspace import WorkspaceHandle, WorkspaceState

OutcomeSink = Callable[[ExecutionOutcome, Optional[str]], object]


def _failure_reason(result: TestResult) -> str:
    if result.timed_out:
        return "test run timed out"
    failing = [t for t in result.failed if t != TIMEOUT_TEST_ID]
    return f"{len(failing)} failing test(s): {', '.join(failing[:5])}"


class ChangeExecutor:
    """Applies approved change units against the live WorkspaceState."""

    def __init__(
        self,
        state: WorkspaceState,
        record: Optional[OutcomeSink] = None,
        appliers: Optional[dict[str, Applier]] = None,
    ):
        self.state = state
        self.record = record
        self.appliers = appliers

    @property
    def repo_root(self) -> Path:
        return self.state.store.repo_root

    def apply(self, unit: ChangeUnit, oracle: Oracle) -> ExecutionOutcome:
        """Apply ``unit``, validate with ``oracle``, and keep or undo the change.

        Raises:
            NotApprovedError: If the unit was not explicitly approved.
            CheckpointError: If restoring the touched files did not round-trip.
        """
        if unit.approval is not ApprovalStatus.APPROVED:
            raise NotApprovedError(unit.unit_id, unit.approval.value)
        if unit.execution is not ExecutionStatus.NOT_STARTED:
            raise ValueError(f"Unit {unit.unit_id} already {unit.execution.value}")

        checkpoint_id = None
        with self.state.acquire() as handle:
            outcome = self._run(unit, oracle, handle)
            if outcome.status is ExecutionStatus.VERIFIED:
                checkpoint_id = self.state.checkpoint_id

        if self.record is not None:
            self.record(outcome, checkpoint_id)
        return outcome

    def _run(self, unit: ChangeUnit, oracle: Oracle, handle: WorkspaceHandle) -> ExecutionOutcome:
        root = self.repo_root
        paths = tuple(unit.target_files)

        def finish(status, applied, result=None, reason="", error_kind=None, pre=None):
            return ExecutionOutcome(
                unit_id=unit.unit_id,
                status=status,
                applied=applied,
                test_result=result,
                reason=reason,
                error_kind=error_kind,
                target_files=paths,
                pre_hashes=dict(pre or {}),
                post_hashes=handle.current_hashes(paths) if pre is not None else {},
            )

        try:
            snapshot = handle.snapshot(paths)
        except SafePatchError as e:
            return finish(ExecutionStatus.FAILED, False, reason=e.message, error_kind=e.kind)
        except OSError as e:
            return finish(ExecutionStatus.FAILED, False, reason=str(e), error_kind=type(e).__name__)
        pre = dict(snapshot.files)

        applied = False
        try:
            applier = get_applier(unit, self.appliers)
            applier.check(unit, root)
            applied = True
            applier.apply(unit, root)
            result = oracle.run()
        except ApplierError as e:
            handle.restore()
            return finish(ExecutionStatus.FAILED, applied, reason=e.reason, error_kind=e.kind, pre=pre)
        except Exception as e:  # noqa: BLE001 - any fault becomes a failed unit
            handle.restore()
            return finish(
                ExecutionStatus.FAILED,
                applied,
                reason=f"{type(e).__name__}: {e}",
                error_kind=getattr(e, "kind", type(e).__name__),
                pre=pre,
            )

        if result.passed:
            handle.commit()
            return finish(ExecutionStatus.VERIFIED, True, result, pre=pre)

        handle.restore()
        return finish(
            ExecutionStatus.REVERTED,
            True,
            result,
            reason=_failure_reason(result),
            error_kind="Timeout" if result.timed_out else None,
            pre=pre,
        )


__all__ = ["ChangeExecutor", "OutcomeSink"]
