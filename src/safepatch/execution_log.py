"""ExecutionLog - the append-only audit trail of unit outcomes.

One JSON line per finalized unit (verified, reverted or failed), in the order
the units ran. Entries are never rewritten. Each entry commits to its
predecessor through ``prev_hash`` so any edit to the file breaks the chain:

    entry_hash = sha256(canonical_json(entry without entry_hash))

Entries carry the content hashes of the touched files before and after the
unit, so together with the baseline manifest the log reconstructs the
workspace hashes (and, with the blob store, the content) after any prefix of
units. See ``state_at``.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Iterator

from .errors import MalformedInputError
from .hashing import sha256_json
from .models import ExecutionOutcome, ExecutionStatus, TestResult, utc_now

LOG_SCHEMA = "safepatch_execution_log_v1"

LOGGED_ACTIONS = frozenset({
    ExecutionStatus.VERIFIED.value,
    ExecutionStatus.REVERTED.value,
    ExecutionStatus.FAILED.value,
})


@dataclass(frozen=True)
class LogEntry:
    """One finalized unit outcome."""

    seq: int
    unit_id: str
    action: str  # verified, reverted, failed
    test: dict | None  # TestResult summary, None if the oracle never ran
    timestamp: str
    target_files: tuple[str, ...] = ()
    pre_hashes: dict = field(default_factory=dict)
    post_hashes: dict = field(default_factory=dict)
    reason: str = ""
    error_kind: str | None = None
    checkpoint_id: str | None = None
    resumed: bool = False
    prev_hash: str | None = None
    entry_hash: str = ""

    def __post_init__(self) -> None:
        if self.action not in LOGGED_ACTIONS:
            raise ValueError(
                f"Invalid log action '{self.action}'. Must be one of: {', '.join(sorted(LOGGED_ACTIONS))}"
            )

    @property
    def failed_tests(self) -> list[str]:
        return list((self.test or {}).get("failed", []))

    def body(self) -> dict:
        return {
            "schema": LOG_SCHEMA,
            "seq": self.seq,
            "unit_id": self.unit_id,
            "action": self.action,
            "test": self.test,
            "timestamp": self.timestamp,
            "target_files": list(self.target_files),
            "pre_hashes": dict(self.pre_hashes),
            "post_hashes": dict(self.post_hashes),
            "reason": self.reason,
            "error_kind": self.error_kind,
            "checkpoint_id": self.checkpoint_id,
            "resumed": self.resumed,
            "prev_hash": self.prev_hash,
        }

    def compute_hash(self) -> str:
        return sha256_json(self.body())

    def to_dict(self) -> dict:
        d = self.body()
        d["entry_hash"] = self.entry_hash
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "LogEntry":
        return cls(
            seq=int(d["seq"]),
            unit_id=str(d["unit_id"]),
            action=str(d["action"]),
            test=d.get("test"),
            timestamp=str(d["timestamp"]),
            target_files=tuple(d.get("target_files") or ()),
            pre_hashes=dict(d.get("pre_hashes") or {}),
            post_hashes=dict(d.get("post_hashes") or {}),
            reason=str(d.get("reason", "")),
            error_kind=d.get("error_kind"),
            checkpoint_id=d.get("checkpoint_id"),
            resumed=bool(d.get("resumed", False)),
            prev_hash=d.get("prev_hash"),
            entry_hash=str(d.get("entry_hash", "")),
        )


class ExecutionLog:
    """Ordered, append-only record of unit outcomes.

    With a ``path`` every append is also written to a JSONL file; without one
    the log lives in memory.
    """

    def __init__(self, path: Path | None = None):
        self.path = Path(path) if path else None
        self._entries: list[LogEntry] = []
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if self.path.exists() and self.path.read_text().strip():
                raise MalformedInputError(str(self.path), "log already exists; use ExecutionLog.load() to read it")
            self.path.touch()

    @classmethod
    def load(cls, path: Path) -> "ExecutionLog":
        """Read a log file without opening it for appends."""
        path = Path(path)
        log = cls()
        if not path.exists():
            raise MalformedInputError(str(path), "log file not found")
        for lineno, line in enumerate(path.read_text().splitlines(), 1):
            if not line.strip():
                continue
            try:
                log._entries.append(LogEntry.from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                raise MalformedInputError(str(path), f"line {lineno}: {e}") from e
        return log

    # ── read side ────────────────────────────────────────────────────

    @property
    def entries(self) -> tuple[LogEntry, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[LogEntry]:
        return iter(tuple(self._entries))

    @property
    def last_hash(self) -> str | None:
        return self._entries[-1].entry_hash if self._entries else None

    def find(self, unit_id: str) -> LogEntry | None:
        for entry in self._entries:
            if entry.unit_id == unit_id:
                return entry
        return None

    def unit_ids(self) -> list[str]:
        return [e.unit_id for e in self._entries]

    # ── write side ───────────────────────────────────────────────────

    def _append(self, entry: LogEntry) -> LogEntry:
        if self.find(entry.unit_id) is not None:
            raise ValueError(f"Unit {entry.unit_id} already has a finalized log entry")
        entry = replace(entry, seq=len(self._entries) + 1, prev_hash=self.last_hash, entry_hash="")
        entry = replace(entry, entry_hash=entry.compute_hash())
        self._entries.append(entry)
        if self.path is not None:
            with open(self.path, "a") as f:
                f.write(json.dumps(entry.to_dict()) + "\n")
        return entry

    def append(self, outcome: ExecutionOutcome, checkpoint_id: str | None = None) -> LogEntry:
        """Append a finalized executor outcome."""
        if not outcome.status.is_final:
            raise ValueError(f"Outcome for {outcome.unit_id} is not final ({outcome.status.value})")
        return self._append(LogEntry(
            seq=0,
            unit_id=outcome.unit_id,
            action=outcome.status.value,
            test=outcome.test_result.summary() if outcome.test_result else None,
            timestamp=utc_now(),
            target_files=tuple(outcome.target_files),
            pre_hashes=dict(outcome.pre_hashes),
            post_hashes=dict(outcome.post_hashes),
            reason=outcome.reason,
            error_kind=outcome.error_kind,
            checkpoint_id=checkpoint_id,
        ))

    def carry(self, entry: LogEntry) -> LogEntry:
        """Re-record an entry finalized by an earlier run (partial resume)."""
        return self._append(replace(entry, resumed=True, timestamp=utc_now()))

    # ── verification and reconstruction ──────────────────────────────

    def verify_chain(self) -> tuple[bool, list[str]]:
        """Check sequence numbers, hash links and entry hashes."""
        errors = []
        prev = None
        for i, entry in enumerate(self._entries, 1):
            if entry.seq != i:
                errors.append(f"entry {i}: seq is {entry.seq}")
            if entry.prev_hash != prev:
                errors.append(f"entry {i} ({entry.unit_id}): prev_hash does not link to entry {i - 1}")
            if entry.compute_hash() != entry.entry_hash:
                errors.append(f"entry {i} ({entry.unit_id}): entry_hash mismatch (modified after append)")
            prev = entry.entry_hash
        return not errors, errors

    def state_at(self, n: int, base_hashes: dict) -> dict:
        """Workspace file hashes after the first ``n`` entries.

        ``base_hashes`` is the baseline manifest. Reverted and failed entries
        leave their files at ``pre_hashes``; verified entries move them to
        ``post_hashes``.
        """
        if n < 0 or n > len(self._entries):
            raise IndexError(f"log has {len(self._entries)} entries, asked for prefix {n}")
        state = dict(base_hashes)
        for entry in self._entries[:n]:
            state.update(entry.post_hashes)
        return state

    def test_outcome_at(self, n: int, baseline_result: TestResult) -> dict:
        """Test outcome of the workspace after the first ``n`` entries.

        A reverted or failed unit leaves the workspace as it was, so the
        outcome is that of the last verified entry (or the baseline).
        """
        if n < 0 or n > len(self._entries):
            raise IndexError(f"log has {len(self._entries)} entries, asked for prefix {n}")
        outcome = baseline_result.summary()
        for entry in self._entries[:n]:
            if entry.action == ExecutionStatus.VERIFIED.value and entry.test is not None:
                outcome = entry.test
        return outcome


def reconstruct_files(state: dict, blobs, paths=None) -> dict:
    """Map path -> bytes (None if absent) for a ``state_at`` result."""
    wanted = state if paths is None else {p: state.get(p) for p in paths}
    return {path: (blobs.get(digest) if digest else None) for path, digest in wanted.items()}


__all__ = ["LOG_SCHEMA", "LogEntry", "ExecutionLog", "reconstruct_files"]
