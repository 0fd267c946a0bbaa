"""Tests for proposals, coverage checks and the file-backed collaborators."""
from __future__ import annotations

import json

import pytest

from safepatch.collaborators import (
    FindingsFileAssessor,
    PlanFileProposer,
    Proposal,
    detect_findings_format,
    parse_sarif_findings,
    parse_semgrep_findings,
)
from safepatch.errors import IncompleteProposalError, MalformedInputError
from safepatch.models import Severity

SEMGREP_OUTPUT = {
    "results": [
        {
            "check_id": "python.lang.security.eval",
            "path": "app/views.py",
            "start": {"line": 12},
            "extra": {"severity": "ERROR", "message": "eval on request data"},
        },
    ],
    "errors": [],
}

SARIF_OUTPUT = {
    "version": "2.1.0",
    "runs": [
        {
            "tool": {"driver": {"name": "bandit"}},
            "results": [
                {
                    "ruleId": "B602",
                    "level": "error",
                    "message": {"text": "subprocess with shell=True"},
                    "locations": [{"physicalLocation": {
                        "artifactLocation": {"uri": "tools/run.py"},
                        "region": {"startLine": 7},
                    }}],
                },
                {"ruleId": "B101", "level": "note", "guid": "g-1", "message": {"text": "assert used"}},
            ],
        },
    ],
}


class TestCoverage:
    """Each finding maps to exactly one unit or one deferral."""

    def test_complete(self, make_finding, edit_unit):
        findings = [make_finding("F1"), make_finding("F2"), make_finding("F3")]
        proposal = Proposal(
            units=[edit_unit("U1", "module_a.py", "a", "b", ["F1", "F2"])],
            deferrals={"F3": "needs an API change"},
        )
        proposal.check_coverage(findings)

    def test_missing(self, make_finding, edit_unit):
        proposal = Proposal(units=[edit_unit("U1", "module_a.py", "a", "b", ["F1"])])
        with pytest.raises(IncompleteProposalError) as exc_info:
            proposal.check_coverage([make_finding("F1"), make_finding("F2")])
        assert exc_info.value.missing == ["F2"]

    def test_blank_deferral_reason_does_not_cover(self, make_finding):
        proposal = Proposal(units=[], deferrals={"F1": "   "})
        with pytest.raises(IncompleteProposalError) as exc_info:
            proposal.check_coverage([make_finding("F1")])
        assert exc_info.value.missing == ["F1"]

    def test_duplicated(self, make_finding, edit_unit):
        proposal = Proposal(
            units=[edit_unit("U1", "module_a.py", "a", "b", ["F1"])],
            deferrals={"F1": "also deferred"},
        )
        with pytest.raises(IncompleteProposalError) as exc_info:
            proposal.check_coverage([make_finding("F1")])
        assert exc_info.value.duplicated == ["F1"]

    def test_unknown_orphan_and_duplicate_ids(self, make_finding, edit_unit):
        proposal = Proposal(units=[
            edit_unit("U1", "module_a.py", "a", "b", ["F1"]),
            edit_unit("U1", "module_b.py", "a", "b", ["F9"]),
            edit_unit("U2", "module_b.py", "a", "b", []),
        ])
        with pytest.raises(IncompleteProposalError) as exc_info:
            proposal.check_coverage([make_finding("F1")])
        error = exc_info.value
        assert error.unknown == ["F9"]
        assert error.orphan_units == ["U2"]
        assert error.duplicate_unit_ids == ["U1"]
        assert "units with no finding: U2" in error.message


class TestFindingsFormats:
    def test_detect(self):
        assert detect_findings_format(SEMGREP_OUTPUT) == "semgrep"
        assert detect_findings_format(SARIF_OUTPUT) == "sarif"
        assert detect_findings_format({"findings": []}) == "safepatch"
        assert detect_findings_format([]) == "safepatch"
        assert detect_findings_format("text") == "unknown"

    def test_semgrep(self):
        (finding,) = parse_semgrep_findings(SEMGREP_OUTPUT)
        assert finding.finding_id == "python.lang.security.eval:app/views.py:12"
        assert finding.severity is Severity.HIGH
        assert finding.location == "app/views.py:12"

    def test_semgrep_absolute_paths(self, tmp_path):
        data = json.loads(json.dumps(SEMGREP_OUTPUT))
        data["results"][0]["path"] = str(tmp_path / "app" / "views.py")
        (finding,) = parse_semgrep_findings(data, tmp_path)
        assert finding.location == "app/views.py:12"

    def test_sarif(self):
        first, second = parse_sarif_findings(SARIF_OUTPUT)
        assert first.finding_id == "B602:tools/run.py:7"
        assert first.severity is Severity.HIGH
        assert first.metadata["source"] == "bandit"
        assert second.finding_id == "g-1"
        assert second.severity is Severity.LOW


class TestFindingsFileAssessor:
    def test_scan_safepatch_file(self, tmp_path):
        path = tmp_path / "findings.json"
        path.write_text(json.dumps({"findings": [
            {"id": "F1", "severity": "high", "description": "eval", "location": "app.py:3"},
        ]}))
        (finding,) = FindingsFileAssessor(path).scan(tmp_path)
        assert finding.finding_id == "F1"

    def test_duplicate_ids(self, tmp_path):
        path = tmp_path / "findings.json"
        path.write_text(json.dumps([{"id": "F1"}, {"id": "F1"}]))
        with pytest.raises(MalformedInputError, match="duplicate finding ids: F1"):
            FindingsFileAssessor(path).scan(tmp_path)

    def test_missing_and_invalid(self, tmp_path):
        with pytest.raises(MalformedInputError, match="not found"):
            FindingsFileAssessor(tmp_path / "none.json").scan(tmp_path)
        bad = tmp_path / "bad.json"
        bad.write_text("{")
        with pytest.raises(MalformedInputError):
            FindingsFileAssessor(bad).scan(tmp_path)

    def test_forced_format_mismatch(self, tmp_path):
        path = tmp_path / "findings.json"
        path.write_text(json.dumps({"findings": "oops"}))
        with pytest.raises(MalformedInputError, match="bad safepatch findings"):
            FindingsFileAssessor(path, fmt="safepatch").scan(tmp_path)

    def test_unknown_format_name(self, tmp_path):
        with pytest.raises(ValueError):
            FindingsFileAssessor(tmp_path / "f.json", fmt="csv")


class TestPlanFileProposer:
    def test_load(self, tmp_path):
        (tmp_path / "patches").mkdir()
        (tmp_path / "patches" / "u2.diff").write_text("--- a/x.py\n+++ b/x.py\n")
        plan = tmp_path / "plan.json"
        plan.write_text(json.dumps({
            "units": [
                {
                    "unit_id": "U1",
                    "title": "quote shell args",
                    "severity": "high",
                    "finding_ids": ["F1"],
                    "target_files": ["tools/run.py"],
                    "payload": {"kind": "edit", "edits": []},
                },
                {
                    "unit_id": "U2",
                    "finding_id": "F2",
                    "target_files": ["x.py"],
                    "payload": {"diff_file": "patches/u2.diff"},
                },
            ],
            "deferrals": [{"finding_id": "F3", "reason": "vendored code"}],
        }))

        proposal = PlanFileProposer(plan).draft([])

        assert [u.unit_id for u in proposal.units] == ["U1", "U2"]
        assert proposal.units[1].payload["kind"] == "diff"
        assert proposal.units[1].payload["diff"].startswith("--- a/x.py")
        assert proposal.deferrals == {"F3": "vendored code"}

    def test_bad_unit(self, tmp_path):
        plan = tmp_path / "plan.json"
        plan.write_text(json.dumps({"units": [{"unit_id": "U1", "target_files": []}]}))
        with pytest.raises(MalformedInputError, match="bad plan entry"):
            PlanFileProposer(plan).load()

    def test_missing_diff_file(self, tmp_path):
        plan = tmp_path / "plan.json"
        plan.write_text(json.dumps({"units": [
            {"unit_id": "U1", "target_files": ["x.py"], "payload": {"diff_file": "nope.diff"}},
        ]}))
        with pytest.raises(MalformedInputError, match="cannot read diff_file"):
            PlanFileProposer(plan).load()

    def test_not_an_object(self, tmp_path):
        plan = tmp_path / "plan.json"
        plan.write_text("[]")
        with pytest.raises(MalformedInputError, match="JSON object"):
            PlanFileProposer(plan).load()
