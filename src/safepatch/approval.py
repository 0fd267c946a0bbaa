"""Approval gate - the typed decision channel between operator and orchestrator.

The orchestrator never prompts anyone. It asks the gate for a Decision per
unit; the gate asks its source (a mapping, a decisions file, a console
prompt, an API callback) and records the answer. Recording is the only
effect: nothing here touches the workspace.

Rules:
- "No answer" is recorded as rejected. Only an explicit approval applies.
- A recorded decision is final for the run. Asking to change it raises
  DecisionConflictError; the operator opens a new unit instead.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping, Optional, Union

from .errors import DecisionConflictError, MalformedInputError
from .models import ApprovalStatus, ChangeUnit, Decision, utc_now

NO_ANSWER_REASON = "no decision recorded"

DecisionAnswer = Union[Decision, str, bool, None, tuple]
DecisionSource = Callable[[ChangeUnit], DecisionAnswer]


@dataclass(frozen=True)
class DecisionRecord:
    unit_id: str
    decision: Decision
    reason: str = ""
    decided_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "unit_id": self.unit_id,
            "decision": self.decision.value,
            "reason": self.reason,
            "decided_at": self.decided_at,
        }


class ApprovalGate:
    """Records one immutable Decision per change unit."""

    def __init__(self, source: Optional[DecisionSource] = None):
        self._source = source
        self._records: dict[str, DecisionRecord] = {}

    @property
    def records(self) -> dict[str, DecisionRecord]:
        return dict(self._records)

    def decision_for(self, unit_id: str) -> Decision | None:
        record = self._records.get(unit_id)
        return record.decision if record else None

    def is_approved(self, unit_id: str) -> bool:
        return self.decision_for(unit_id) is Decision.APPROVED

    def record(self, unit_id: str, decision: Decision | str | bool, reason: str = "") -> DecisionRecord:
        decision = Decision.parse(decision)
        existing = self._records.get(unit_id)
        if existing is not None:
            if existing.decision is not decision:
                raise DecisionConflictError(unit_id, existing.decision.value, decision.value)
            return existing
        record = DecisionRecord(unit_id=unit_id, decision=decision, reason=reason)
        self._records[unit_id] = record
        return record

    def decide(self, unit: ChangeUnit) -> Decision:
        """Return the recorded decision for ``unit``, asking the source once."""
        existing = self._records.get(unit.unit_id)
        if existing is not None:
            return existing.decision

        answer = self._source(unit) if self._source is not None else None
        reason = ""
        if isinstance(answer, tuple):
            answer, reason = answer[0], str(answer[1]) if len(answer) > 1 else ""
        if answer is None:
            return self.record(unit.unit_id, Decision.REJECTED, NO_ANSWER_REASON).decision
        return self.record(unit.unit_id, answer, reason).decision

    def decide_all(self, units) -> dict[str, Decision]:
        """Decide every unit in queue order and mirror the result onto it."""
        decisions = {}
        for unit in units:
            decision = self.decide(unit)
            if unit.approval is ApprovalStatus.PENDING:
                unit.record_decision(decision)
            decisions[unit.unit_id] = decision
        return decisions


# ── Decision sources ────────────────────────────────────────────────────────


def static_decisions(mapping: Mapping[str, DecisionAnswer]) -> DecisionSource:
    """Answer from a fixed unit_id -> decision mapping; absent ids get no answer."""
    parsed = {str(k): v for k, v in mapping.items()}

    def source(unit: ChangeUnit) -> DecisionAnswer:
        return parsed.get(unit.unit_id)

    return source


def approve_all(unit: ChangeUnit) -> DecisionAnswer:
    return Decision.APPROVED, "approve-all"


def load_decisions_file(path: Path) -> dict[str, tuple]:
    """Read a decisions file.

    Accepted shapes::

        {"U1": "approved", "U2": "rejected"}
        {"decisions": [{"unit_id": "U1", "decision": "approved", "reason": "..."}]}
        [{"unit_id": "U1", "decision": "approved"}]
    """
    path = Path(path)
    try:
        data = json.loads(path.read_text())
    except (json.JSONDecodeError, OSError) as e:
        raise MalformedInputError(str(path), f"unreadable decisions file: {e}") from e

    if isinstance(data, dict) and "decisions" in data:
        data = data["decisions"]

    out: dict[str, tuple] = {}
    try:
        if isinstance(data, dict):
            for unit_id, value in data.items():
                out[str(unit_id)] = (Decision.parse(value), "")
        elif isinstance(data, list):
            for item in data:
                out[str(item["unit_id"])] = (Decision.parse(item["decision"]), str(item.get("reason", "")))
        else:
            raise MalformedInputError(str(path), "expected an object or a list of decisions")
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedInputError(str(path), f"bad decision entry: {e}") from e
    return out


def file_decisions(path: Path) -> DecisionSource:
    return static_decisions(load_decisions_file(path))


def chain_sources(*sources: Optional[DecisionSource]) -> DecisionSource:
    """First source with an answer wins."""
    active = [s for s in sources if s is not None]

    def source(unit: ChangeUnit) -> DecisionAnswer:
        for candidate in active:
            answer = candidate(unit)
            if answer is not None:
                return answer
        return None

    return source


__all__ = [
    "NO_ANSWER_REASON",
    "DecisionRecord",
    "ApprovalGate",
    "static_decisions",
    "approve_all",
    "load_decisions_file",
    "file_decisions",
    "chain_sources",
]
