"""Assessor and Proposer - the external collaborators that feed the orchestrator.

safepatch does not analyze source code. An Assessor turns a repository into
structured findings; a Proposer turns findings into change units (or records
why a finding is deferred). Both are pluggable:

    class MyAssessor(Assessor):
        def scan(self, repository_path):
            return [Finding("F1", Severity.HIGH, "eval on user input", "app.py:12")]

File-backed implementations are provided for the common case where a scanner
and a patch author already ran and left their output on disk:

    FindingsFileAssessor   safepatch findings JSON, semgrep JSON, or SARIF 2.1.0
    PlanFileProposer       JSON plan of change units and deferrals
"""
from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable

from .errors import IncompleteProposalError, MalformedInputError
from .models import ChangeUnit, Finding, Severity


@dataclass
class Proposal:
    """What a Proposer returns: change units plus deferred findings.

    ``deferrals`` maps finding_id to the reason it gets no unit this run.
    """

    units: list[ChangeUnit]
    deferrals: dict[str, str] = field(default_factory=dict)

    def check_coverage(self, findings: Iterable[Finding]) -> None:
        """Every finding maps to exactly one unit or one deferral reason.

        Raises:
            IncompleteProposalError: listing uncovered, doubly covered and
                unknown findings, units with no finding, and duplicate unit ids.
        """
        finding_ids = [f.finding_id for f in findings]
        known = set(finding_ids)

        covered: Counter = Counter()
        for unit in self.units:
            covered.update(set(unit.finding_ids))
        for finding_id, reason in self.deferrals.items():
            if str(reason or "").strip():
                covered[finding_id] += 1

        missing = [fid for fid in finding_ids if covered[fid] == 0]
        duplicated = [fid for fid in finding_ids if covered[fid] > 1]
        unknown = sorted(fid for fid in covered if fid not in known)
        orphan_units = [u.unit_id for u in self.units if not u.finding_ids]
        unit_counts = Counter(u.unit_id for u in self.units)
        duplicate_unit_ids = sorted(uid for uid, n in unit_counts.items() if n > 1)

        if missing or duplicated or unknown or orphan_units or duplicate_unit_ids:
            raise IncompleteProposalError(
                missing=missing,
                duplicated=duplicated,
                unknown=unknown,
                orphan_units=orphan_units,
                duplicate_unit_ids=duplicate_unit_ids,
            )

    def to_dict(self) -> dict:
        return {
            "units": [u.to_dict() for u in self.units],
            "deferrals": dict(self.deferrals),
        }


class Assessor(ABC):
    """Interface for finding producers.

    Methods to implement:
        scan(repository_path) -> list[Finding]

    ``scan`` must not modify the repository.
    """

    @abstractmethod
    def scan(self, repository_path: Path) -> list[Finding]:
        """Return the findings for the repository at ``repository_path``."""
        ...


class Proposer(ABC):
    """Interface for change authors.

    Methods to implement:
        draft(findings) -> Proposal
    """

    @abstractmethod
    def draft(self, findings: list[Finding]) -> Proposal:
        """Return one unit or one deferral per finding."""
        ...


class StaticAssessor(Assessor):
    """Returns a fixed list of findings."""

    def __init__(self, findings: Iterable[Finding] = ()):
        self.findings = list(findings)
        self.scans = 0

    def scan(self, repository_path: Path) -> list[Finding]:
        self.scans += 1
        return list(self.findings)


class StaticProposer(Proposer):
    """Returns a fixed proposal, or calls ``build(findings)`` for one."""

    def __init__(
        self,
        units: Iterable[ChangeUnit] = (),
        deferrals: dict[str, str] | None = None,
        build: Callable[[list[Finding]], Proposal] | None = None,
    ):
        self.units = list(units)
        self.deferrals = dict(deferrals or {})
        self.build = build
        self.drafts = 0

    def draft(self, findings: list[Finding]) -> Proposal:
        self.drafts += 1
        if self.build is not None:
            return self.build(findings)
        return Proposal(units=list(self.units), deferrals=dict(self.deferrals))


# ── File-backed collaborators ───────────────────────────────────────────────


def _load_json(path: Path):
    try:
        return json.loads(Path(path).read_text())
    except FileNotFoundError:
        raise MalformedInputError(str(path), "file not found") from None
    except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
        raise MalformedInputError(str(path), f"not valid JSON: {e}") from e


def detect_findings_format(data) -> str:
    """Guess the findings format of a parsed JSON document."""
    if isinstance(data, dict):
        if "runs" in data and str(data.get("version", "")).startswith("2."):
            return "sarif"
        if "results" in data and isinstance(data["results"], list):
            first = data["results"][0] if data["results"] else {}
            if not first or "check_id" in first:
                return "semgrep"
        if "findings" in data:
            return "safepatch"
    if isinstance(data, list):
        return "safepatch"
    return "unknown"


def parse_safepatch_findings(data) -> list[Finding]:
    items = data["findings"] if isinstance(data, dict) else data
    if not isinstance(items, list):
        raise ValueError("'findings' must be a list")
    return [Finding.from_dict(item) for item in items]


def _relative(path: str, root: Path | None) -> str:
    if root is None or not Path(path).is_absolute():
        return path
    try:
        return Path(path).resolve().relative_to(root.resolve()).as_posix()
    except ValueError:
        return path


def parse_semgrep_findings(data: dict, root: Path | None = None) -> list[Finding]:
    findings = []
    for result in data.get("results", []):
        check_id = result.get("check_id", "unknown")
        path = _relative(result.get("path", ""), root)
        line = (result.get("start") or {}).get("line", 0)
        extra = result.get("extra") or {}
        findings.append(Finding(
            finding_id=f"{check_id}:{path}:{line}",
            severity=Severity.parse(extra.get("severity", "warning")),
            description=extra.get("message", check_id),
            location=f"{path}:{line}",
            metadata={"check_id": check_id, "source": "semgrep"},
        ))
    return findings


def parse_sarif_findings(data: dict, root: Path | None = None) -> list[Finding]:
    findings = []
    for run in data.get("runs", []):
        tool = ((run.get("tool") or {}).get("driver") or {}).get("name", "sarif")
        for result in run.get("results", []):
            rule_id = result.get("ruleId", "unknown")
            uri, line = "", 0
            locations = result.get("locations") or []
            if locations:
                physical = locations[0].get("physicalLocation") or {}
                uri = (physical.get("artifactLocation") or {}).get("uri", "")
                line = (physical.get("region") or {}).get("startLine", 0)
            uri = _relative(uri.removeprefix("file://"), root)
            findings.append(Finding(
                finding_id=result.get("guid") or f"{rule_id}:{uri}:{line}",
                severity=Severity.parse(result.get("level", "warning")),
                description=(result.get("message") or {}).get("text", rule_id),
                location=f"{uri}:{line}",
                metadata={"rule_id": rule_id, "source": tool},
            ))
    return findings


class FindingsFileAssessor(Assessor):
    """Reads findings a scanner already wrote to disk.

    ``fmt`` is one of ``auto``, ``safepatch``, ``semgrep``, ``sarif``.
    """

    FORMATS = ("auto", "safepatch", "semgrep", "sarif")

    def __init__(self, path: Path, fmt: str = "auto"):
        if fmt not in self.FORMATS:
            raise ValueError(f"Unknown findings format '{fmt}'. Must be one of: {', '.join(self.FORMATS)}")
        self.path = Path(path)
        self.fmt = fmt

    def scan(self, repository_path: Path) -> list[Finding]:
        data = _load_json(self.path)
        fmt = detect_findings_format(data) if self.fmt == "auto" else self.fmt
        root = Path(repository_path)
        try:
            if fmt == "safepatch":
                findings = parse_safepatch_findings(data)
            elif fmt == "semgrep":
                findings = parse_semgrep_findings(data, root)
            elif fmt == "sarif":
                findings = parse_sarif_findings(data, root)
            else:
                raise ValueError("unrecognized findings format")
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise MalformedInputError(str(self.path), f"bad {fmt} findings: {e}") from e

        duplicates = sorted(fid for fid, n in Counter(f.finding_id for f in findings).items() if n > 1)
        if duplicates:
            raise MalformedInputError(str(self.path), f"duplicate finding ids: {', '.join(duplicates)}")
        return findings


class PlanFileProposer(Proposer):
    """Reads a JSON plan of change units.

    Plan shape::

        {
          "units": [
            {"unit_id": "U1", "title": "...", "severity": "high",
             "finding_ids": ["F1"], "target_files": ["app.py"],
             "payload": {"kind": "edit", "edits": [...]}}
          ],
          "deferrals": {"F2": "needs an API change"}
        }

    A ``diff`` payload may name ``diff_file`` (relative to the plan file)
    instead of carrying the diff inline.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def _payload(self, payload: dict) -> dict:
        payload = dict(payload)
        diff_file = payload.pop("diff_file", None)
        if diff_file is not None and "diff" not in payload:
            diff_path = (self.path.parent / diff_file)
            try:
                payload["diff"] = diff_path.read_text()
            except OSError as e:
                raise MalformedInputError(str(self.path), f"cannot read diff_file {diff_file}: {e}") from e
            payload.setdefault("kind", "diff")
        return payload

    def load(self) -> Proposal:
        data = _load_json(self.path)
        if not isinstance(data, dict):
            raise MalformedInputError(str(self.path), "plan must be a JSON object")

        units = []
        try:
            for item in data.get("units", []):
                item = dict(item)
                item["payload"] = self._payload(item.get("payload") or {})
                units.append(ChangeUnit.from_dict(item))

            raw = data.get("deferrals") or {}
            if isinstance(raw, list):
                deferrals = {str(d["finding_id"]): str(d.get("reason", "")) for d in raw}
            elif isinstance(raw, dict):
                deferrals = {str(k): str(v) for k, v in raw.items()}
            else:
                raise TypeError("'deferrals' must be an object or a list")
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedInputError(str(self.path), f"bad plan entry: {e}") from e
        return Proposal(units=units, deferrals=deferrals)

    def draft(self, findings: list[Finding]) -> Proposal:
        return self.load()


__all__ = [
    "Proposal",
    "Assessor",
    "Proposer",
    "StaticAssessor",
    "StaticProposer",
    "detect_findings_format",
    "parse_safepatch_findings",
    "parse_semgrep_findings",
    "parse_sarif_findings",
    "FindingsFileAssessor",
    "PlanFileProposer",
]
