"""Workspace guard and the single live workspace checkpoint.

WorkspaceGuard.establish_baseline() refuses to start on a dirty working copy
or a failing test suite, then creates the WorkspaceState every later revert
targets.

WorkspaceState is the only shared mutable resource. It is handed out by
``acquire()`` as an exclusive WorkspaceHandle for one apply; leaving the
``with`` block always ends in commit or restore:

    with state.acquire() as handle:
        handle.snapshot(["module_a.py"])
        ...write...
        handle.commit()      # or handle.restore()
    # an exception inside the block restores the pending snapshot
"""
from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .checkpoint import CheckpointStore, Snapshot
from .errors import BaselineTestFailureError, CheckpointError, DirtyWorkspaceError, WorkspaceBusyError
from .models import Baseline, TestResult
from .oracle import Oracle

# One live WorkspaceState per repository root in this process.
_LIVE_STATES: dict[Path, "WorkspaceState"] = {}
_LIVE_LOCK = threading.Lock()


def _new_checkpoint_id() -> str:
    return f"ckpt_{uuid.uuid4().hex[:12]}"


class WorkspaceHandle:
    """Exclusive access to the workspace for the duration of one apply."""

    def __init__(self, state: "WorkspaceState"):
        self._state = state
        self._pending: Snapshot | None = None
        self._released = False

    def _ensure_open(self) -> None:
        if self._released:
            raise CheckpointError("Workspace handle used after release")

    @property
    def pending(self) -> Snapshot | None:
        return self._pending

    def snapshot(self, paths) -> Snapshot:
        self._ensure_open()
        if self._pending is not None:
            raise CheckpointError("A snapshot is already pending on this handle")
        self._pending = self._state.store.snapshot(paths)
        return self._pending

    def current_hashes(self, paths) -> dict:
        return self._state.store.current_hashes(paths)

    def restore(self) -> Snapshot | None:
        """Put the pending snapshot's files back and verify they round-trip."""
        self._ensure_open()
        snapshot = self._pending
        if snapshot is None:
            return None
        store = self._state.store
        store.restore(snapshot)
        after = store.current_hashes(snapshot.paths)
        if after != snapshot.files:
            changed = sorted(p for p in snapshot.files if after.get(p) != snapshot.files[p])
            raise CheckpointError(
                f"Restore did not round-trip for {', '.join(changed)}",
                paths=changed,
            )
        self._pending = None
        return snapshot

    def commit(self) -> str:
        """Adopt the current content of the pending files as the new checkpoint."""
        self._ensure_open()
        if self._pending is None:
            raise CheckpointError("Nothing to commit: no pending snapshot")
        paths = self._pending.paths
        store = self._state.store
        current = store.snapshot(paths)
        self._pending = None
        return self._state._advance(current.files)

    def _release(self) -> None:
        try:
            if self._pending is not None:
                self.restore()
        finally:
            self._released = True


class WorkspaceState:
    """The current checkpoint: hashes of every tracked file as last committed."""

    def __init__(self, store: CheckpointStore, files: dict, checkpoint_id: str | None = None):
        self.store = store
        self._files = dict(files)
        self.checkpoint_id = checkpoint_id or _new_checkpoint_id()
        self.generation = 0
        self._lock = threading.Lock()
        self._closed = False

    @classmethod
    def open(cls, store: CheckpointStore, files: dict, checkpoint_id: str | None = None) -> "WorkspaceState":
        """Create the live state for ``store.repo_root`` and persist its manifest."""
        root = store.repo_root
        with _LIVE_LOCK:
            live = _LIVE_STATES.get(root)
            if live is not None and not live._closed:
                raise WorkspaceBusyError(f"A workspace state is already live for {root}", repo_root=str(root))
            state = cls(store, files, checkpoint_id)
            _LIVE_STATES[root] = state
        store.save_manifest(state.checkpoint_id, state._files)
        return state

    @property
    def files(self) -> dict:
        return dict(self._files)

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def close(self) -> None:
        with _LIVE_LOCK:
            if _LIVE_STATES.get(self.store.repo_root) is self:
                del _LIVE_STATES[self.store.repo_root]
        self._closed = True

    def __enter__(self) -> "WorkspaceState":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @contextmanager
    def acquire(self) -> Iterator[WorkspaceHandle]:
        if self._closed:
            raise CheckpointError("Workspace state is closed")
        if not self._lock.acquire(blocking=False):
            raise WorkspaceBusyError("Workspace state is held by another apply")
        handle = WorkspaceHandle(self)
        try:
            yield handle
        except BaseException:
            handle._release()
            raise
        else:
            handle._release()
        finally:
            self._lock.release()

    def _advance(self, files: dict) -> str:
        self._files.update(files)
        self.checkpoint_id = _new_checkpoint_id()
        self.generation += 1
        self.store.save_manifest(self.checkpoint_id, self._files)
        return self.checkpoint_id


class WorkspaceGuard:
    """Checks the working copy before any mutation and records the baseline."""

    def __init__(self, store: CheckpointStore, oracle: Oracle, store_blobs: bool = True):
        self.store = store
        self.oracle = oracle
        self.store_blobs = store_blobs
        self.state: WorkspaceState | None = None
        self.baseline: Baseline | None = None

    def check_clean(self) -> list[str]:
        dirty = self.store.dirty_paths()
        if dirty:
            raise DirtyWorkspaceError(dirty)
        return dirty

    def run_baseline_tests(self) -> TestResult:
        result = self.oracle.run()
        if not result.passed:
            raise BaselineTestFailureError(
                passed_count=result.passed_count,
                total=result.total,
                failed=list(result.failed),
                raw_output=result.raw_output,
            )
        return result

    def establish_baseline(self) -> Baseline:
        """Verify a clean, passing workspace and create the first checkpoint.

        Raises:
            DirtyWorkspaceError: uncommitted modifications since the last checkpoint
            BaselineTestFailureError: the oracle fails on the untouched workspace
        """
        self.check_clean()
        result = self.run_baseline_tests()

        # Tracked entries that are directories, such as submodule gitlinks, are not checkpointed.
        root = self.store.repo_root
        tracked = [p for p in self.store.tracked_files() if not (root / p).is_dir()]
        if self.store_blobs:
            files = self.store.snapshot(tracked).files
        else:
            files = self.store.current_hashes(tracked)

        self.state = WorkspaceState.open(self.store, files)
        self.baseline = Baseline(
            file_hashes=dict(files),
            test_result=result,
            checkpoint_id=self.state.checkpoint_id,
        )
        return self.baseline


__all__ = ["WorkspaceHandle", "WorkspaceState", "WorkspaceGuard"]
