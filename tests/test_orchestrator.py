"""End-to-end orchestration tests on a small temporary project."""
from __future__ import annotations

import json

import pytest

from safepatch.approval import ApprovalGate, approve_all, static_decisions
from safepatch.checkpoint import SnapshotCheckpointStore
from safepatch.collaborators import StaticAssessor, StaticProposer
from safepatch.errors import (
    BaselineTestFailureError,
    CumulativeRegressionError,
    DirtyWorkspaceError,
    IncompleteProposalError,
    OrchestrationCancelledError,
)
from safepatch.execution_log import ExecutionLog
from safepatch.models import ExecutionStatus, TestResult
from safepatch.orchestrator import CancelToken, Orchestrator, OrchestratorState

S = OrchestratorState

SAFE_A = ("module_a.py", "return a + b", "return a + b  # checked")
SAFE_B = ("module_b.py", "return a * b", "return a * b  # checked")
BREAK_B = ("module_b.py", "return a * b", "return a - b")


def _orchestrator(repo, oracle, findings, units, deferrals=None, decisions=None, **kwargs):
    source = static_decisions(decisions) if decisions is not None else approve_all
    return Orchestrator(
        repo_root=repo,
        assessor=StaticAssessor(findings),
        proposer=StaticProposer(units, deferrals),
        approval=ApprovalGate(source),
        oracle=oracle,
        store=kwargs.pop("store", SnapshotCheckpointStore(repo)),
        **kwargs,
    )


class TestHappyPaths:
    """One safe and one breaking unit; rejected and deferred units."""

    def test_verified_and_reverted(self, plain_repo, content_oracle, make_finding, edit_unit):
        original_b = (plain_repo / "module_b.py").read_bytes()
        orch = _orchestrator(
            plain_repo,
            content_oracle,
            [make_finding("F1"), make_finding("F2")],
            [edit_unit("U1", *SAFE_A, ["F1"]), edit_unit("U2", *BREAK_B, ["F2"])],
        )

        report = orch.run()

        assert orch.history == [
            S.ASSESSING, S.AWAITING_PROPOSAL, S.AWAITING_APPROVAL, S.EXECUTING, S.VALIDATING, S.DONE,
        ]
        assert report.unit("U1").outcome == "verified"
        assert report.unit("U2").outcome == "reverted"
        assert report.unit("U2").failed_tests == ("test_modules.py::test_mul",)
        assert not report.ok
        assert "# checked" in (plain_repo / "module_a.py").read_text()
        assert (plain_repo / "module_b.py").read_bytes() == original_b
        assert orch.log.unit_ids() == ["U1", "U2"]
        assert orch.cumulative.passed
        # baseline, U1, U2, cumulative
        assert content_oracle.runs == 4

    def test_only_approved_units_touch_the_workspace(self, plain_repo, content_oracle, make_finding, edit_unit):
        before = {p.name: p.read_bytes() for p in plain_repo.iterdir() if p.is_file()}
        orch = _orchestrator(
            plain_repo,
            content_oracle,
            [make_finding("F1"), make_finding("F2"), make_finding("F3")],
            [
                edit_unit("U1", *SAFE_A, ["F1"]),
                edit_unit("U2", *SAFE_B, ["F2"]),
                edit_unit("U3", "module_a.py", "def add", "def plus", ["F3"]),
            ],
            decisions={"U1": "rejected", "U2": "deferred"},
        )

        report = orch.run()

        assert [report.unit(u).line for u in ("U1", "U2", "U3")] == [
            "not attempted (rejected)",
            "not attempted (deferred)",
            "not attempted (rejected)",
        ]
        assert len(orch.log) == 0
        (cumulative,) = [e for e in orch.events if e["type"] == "cumulative"]
        assert cumulative["data"]["skipped"] is True
        assert {p.name: p.read_bytes() for p in plain_repo.iterdir() if p.is_file()} == before
        # No unit applied: the cumulative run is skipped.
        assert content_oracle.runs == 1
        assert report.ok

    def test_no_findings(self, plain_repo, content_oracle):
        orch = _orchestrator(plain_repo, content_oracle, [], [])
        report = orch.run()
        assert orch.history == [S.ASSESSING, S.DONE]
        assert orch.proposer.drafts == 0
        assert report.units == []
        assert report.ok

    def test_deferred_findings(self, plain_repo, content_oracle, make_finding, edit_unit):
        orch = _orchestrator(
            plain_repo,
            content_oracle,
            [make_finding("F1"), make_finding("F2")],
            [edit_unit("U1", *SAFE_A, ["F1"])],
            deferrals={"F2": "needs an API change"},
        )
        report = orch.run()
        assert report.deferrals == {"F2": "needs an API change"}
        assert report.unit("U1").outcome == "verified"

    def test_same_file_in_two_units(self, plain_repo, content_oracle, make_finding, edit_unit):
        """Later units see the committed result of earlier ones."""
        orch = _orchestrator(
            plain_repo,
            content_oracle,
            [make_finding("F1"), make_finding("F2")],
            [
                edit_unit("U1", *SAFE_A, ["F1"]),
                edit_unit("U2", "module_a.py", "# checked", "# checked twice", ["F2"]),
            ],
        )
        report = orch.run()
        assert report.counts["verified"] == 2
        assert "# checked twice" in (plain_repo / "module_a.py").read_text()

    def test_failed_unit_does_not_stop_the_run(self, plain_repo, content_oracle, make_finding, edit_unit):
        orch = _orchestrator(
            plain_repo,
            content_oracle,
            [make_finding("F1"), make_finding("F2")],
            [
                edit_unit("U1", "module_a.py", "not in file", "x", ["F1"]),
                edit_unit("U2", *SAFE_B, ["F2"]),
            ],
        )
        report = orch.run()
        assert report.unit("U1").outcome == "failed"
        assert "not found" in report.unit("U1").reason
        assert report.unit("U2").outcome == "verified"
        assert orch.state is S.DONE

    def test_second_run_is_clean(self, plain_repo, content_oracle, make_finding, edit_unit):
        """A verified change becomes the next run's baseline; nothing left dirty."""
        store = SnapshotCheckpointStore(plain_repo)
        _orchestrator(
            plain_repo, content_oracle, [make_finding("F1")], [edit_unit("U1", *SAFE_A, ["F1"])], store=store,
        ).run()
        after_first = (plain_repo / "module_a.py").read_bytes()

        orch = _orchestrator(plain_repo, content_oracle, [], [], store=store)
        orch.run()

        assert orch.state is S.DONE
        assert (plain_repo / "module_a.py").read_bytes() == after_first
        assert store.dirty_paths() == []

    def test_run_only_once(self, plain_repo, content_oracle):
        orch = _orchestrator(plain_repo, content_oracle, [], [])
        orch.run()
        with pytest.raises(RuntimeError):
            orch.run()


class TestAborts:
    """Runs that end in ABORTED."""

    def test_dirty_workspace(self, plain_repo, content_oracle, make_finding):
        store = SnapshotCheckpointStore(plain_repo)
        store.save_manifest("ckpt_0", store.current_hashes(store.tracked_files()))
        (plain_repo / "module_a.py").write_text("edited by hand\n")
        orch = _orchestrator(plain_repo, content_oracle, [make_finding("F1")], [], store=store)

        with pytest.raises(DirtyWorkspaceError):
            orch.run()

        assert orch.state is S.ABORTED
        assert orch.assessor.scans == 0
        assert content_oracle.runs == 0
        assert orch.report.state == "aborted"
        assert orch.report.error["kind"] == "DirtyWorkspace"

    def test_failing_baseline(self, plain_repo, scripted_oracle, make_finding, edit_unit):
        """Two of ten tests fail before any change: abort with both ids, draft nothing."""
        failing = ("tests/test_io.py::test_read", "tests/test_io.py::test_write")
        oracle = scripted_oracle([TestResult(passed=False, total=10, failed=failing)])
        orch = _orchestrator(plain_repo, oracle, [make_finding("F1")], [edit_unit("U1", *SAFE_A, ["F1"])])

        with pytest.raises(BaselineTestFailureError) as exc_info:
            orch.run()

        assert exc_info.value.failed == list(failing)
        assert exc_info.value.passed_count == 8
        assert exc_info.value.total == 10
        assert orch.history == [S.ASSESSING, S.ABORTED]
        assert orch.assessor.scans == 0
        assert orch.proposer.drafts == 0
        assert oracle.runs == 1
        assert orch.report.error["failed"] == list(failing)

    def test_incomplete_proposal(self, plain_repo, content_oracle, make_finding, edit_unit):
        before = (plain_repo / "module_a.py").read_bytes()
        orch = _orchestrator(
            plain_repo,
            content_oracle,
            [make_finding("F1"), make_finding("F2")],
            [edit_unit("U1", *SAFE_A, ["F1"])],
        )

        with pytest.raises(IncompleteProposalError) as exc_info:
            orch.run()

        assert exc_info.value.missing == ["F2"]
        assert orch.history[-2:] == [S.AWAITING_PROPOSAL, S.ABORTED]
        assert (plain_repo / "module_a.py").read_bytes() == before
        assert content_oracle.runs == 1

    def test_cumulative_regression(self, plain_repo, scripted_oracle, make_finding, edit_unit):
        """Units pass one at a time but the final run fails: abort, keep the commits."""
        ok = TestResult(passed=True, total=2)
        oracle = scripted_oracle([ok, ok, ok, TestResult(passed=False, total=2, failed=("t::flaky",))])
        orch = _orchestrator(
            plain_repo,
            oracle,
            [make_finding("F1"), make_finding("F2")],
            [edit_unit("U1", *SAFE_A, ["F1"]), edit_unit("U2", *SAFE_B, ["F2"])],
        )

        with pytest.raises(CumulativeRegressionError) as exc_info:
            orch.run()

        assert exc_info.value.implicated == ["U1", "U2"]
        assert exc_info.value.failed == ["t::flaky"]
        assert orch.history[-2:] == [S.VALIDATING, S.ABORTED]
        assert "# checked" in (plain_repo / "module_a.py").read_text()
        assert orch.report.cumulative["failed"] == ["t::flaky"]

    def test_cancel_between_units(self, plain_repo, content_oracle, make_finding, edit_unit):
        cancel = CancelToken()

        def on_event(event_type, data):
            if event_type == "unit_finished" and data["unit_id"] == "U1":
                cancel.cancel("operator stop")

        orch = _orchestrator(
            plain_repo,
            content_oracle,
            [make_finding("F1"), make_finding("F2")],
            [edit_unit("U1", *SAFE_A, ["F1"]), edit_unit("U2", *SAFE_B, ["F2"])],
            cancel=cancel,
            on_event=on_event,
        )

        with pytest.raises(OrchestrationCancelledError) as exc_info:
            orch.run()

        assert exc_info.value.state == "executing"
        assert orch.state is S.ABORTED
        assert orch.report.unit("U1").outcome == "verified"
        assert orch.report.unit("U2").line == "not attempted (aborted before reach)"
        assert "# checked" not in (plain_repo / "module_b.py").read_text()

    def test_cancel_before_start(self, plain_repo, content_oracle, make_finding):
        cancel = CancelToken()
        cancel.cancel()
        orch = _orchestrator(plain_repo, content_oracle, [make_finding("F1")], [], cancel=cancel)
        with pytest.raises(OrchestrationCancelledError):
            orch.run()
        assert content_oracle.runs == 0


class TestArtifactsAndResume:
    def test_run_directory(self, plain_repo, content_oracle, make_finding, edit_unit, tmp_path):
        runs_dir = tmp_path / "runs"
        orch = _orchestrator(
            plain_repo,
            content_oracle,
            [make_finding("F1")],
            [edit_unit("U1", *SAFE_A, ["F1"])],
            runs_dir=runs_dir,
        )
        orch.run()

        run_dir = orch.run_dir
        assert run_dir.parent == runs_dir
        assert (runs_dir / "latest").resolve() == run_dir.resolve()
        baseline = json.loads((run_dir / "baseline.json").read_text())
        assert baseline["schema"] == "safepatch_baseline_v1"
        report = json.loads((run_dir / "report.json").read_text())
        assert report["state"] == "done"
        assert report["units"][0]["line"] == "verified"
        log = ExecutionLog.load(run_dir / "execution_log.jsonl")
        assert log.unit_ids() == ["U1"]
        assert log.verify_chain()[0]

    def test_log_reconstructs_workspace(self, plain_repo, content_oracle, make_finding, edit_unit, tmp_path):
        store = SnapshotCheckpointStore(plain_repo)
        orch = _orchestrator(
            plain_repo,
            content_oracle,
            [make_finding("F1"), make_finding("F2")],
            [edit_unit("U1", *SAFE_A, ["F1"]), edit_unit("U2", *BREAK_B, ["F2"])],
            store=store,
        )
        orch.run()

        state = orch.log.state_at(len(orch.log), orch.baseline.file_hashes)
        assert state == store.current_hashes(store.tracked_files())
        assert store.blobs.get(state["module_a.py"]) == (plain_repo / "module_a.py").read_bytes()
        assert orch.log.test_outcome_at(2, orch.baseline.test_result)["passed"] is True

    def test_resume_after_cancel(self, plain_repo, content_oracle, make_finding, edit_unit, tmp_path):
        runs_dir = tmp_path / "runs"
        store = SnapshotCheckpointStore(plain_repo)
        findings = [make_finding("F1"), make_finding("F2")]
        cancel = CancelToken()

        def stop_after_first(event_type, data):
            if event_type == "unit_finished":
                cancel.cancel("interrupted")

        first = _orchestrator(
            plain_repo,
            content_oracle,
            findings,
            [edit_unit("U1", *SAFE_A, ["F1"]), edit_unit("U2", *SAFE_B, ["F2"])],
            store=store,
            runs_dir=runs_dir,
            cancel=cancel,
            on_event=stop_after_first,
        )
        with pytest.raises(OrchestrationCancelledError):
            first.run()

        second = _orchestrator(
            plain_repo,
            content_oracle,
            findings,
            [edit_unit("U1", *SAFE_A, ["F1"]), edit_unit("U2", *SAFE_B, ["F2"])],
            store=store,
            runs_dir=runs_dir,
        )
        report = second.run(resume_log=first.run_dir / "execution_log.jsonl")

        assert second.resumed == ["U1"]
        assert report.unit("U1").resumed
        assert report.unit("U2").outcome == "verified"
        assert report.ok
        assert second.log.entries[0].resumed
        assert second.log.entries[1].unit_id == "U2"
        assert (plain_repo / "module_a.py").read_text().count("# checked") == 1
        assert second.queue[0].execution is ExecutionStatus.VERIFIED

    def test_resume_ignores_stale_entries(self, plain_repo, content_oracle, make_finding, edit_unit):
        """A prior entry whose result is no longer in the workspace is re-run."""
        store = SnapshotCheckpointStore(plain_repo)
        first = _orchestrator(
            plain_repo, content_oracle, [make_finding("F1")], [edit_unit("U1", *SAFE_A, ["F1"])], store=store,
        )
        first.run()
        (plain_repo / "module_a.py").write_text("def add(a, b):\n    return a + b\n")
        store.save_manifest("ckpt_reset", store.current_hashes(store.tracked_files()))

        second = _orchestrator(
            plain_repo, content_oracle, [make_finding("F1")], [edit_unit("U1", *SAFE_A, ["F1"])], store=store,
        )
        second.run(resume_log=first.log)

        assert second.resumed == []
        assert second.report.unit("U1").outcome == "verified"
        assert not second.log.entries[0].resumed

    def test_events(self, plain_repo, content_oracle, make_finding, edit_unit):
        seen = []
        orch = _orchestrator(
            plain_repo,
            content_oracle,
            [make_finding("F1")],
            [edit_unit("U1", *SAFE_A, ["F1"])],
            on_event=lambda event_type, data: seen.append(event_type),
        )
        orch.run()
        assert seen[0] == "run_started"
        assert seen[-1] == "run_finished"
        assert seen.index("baseline") < seen.index("findings") < seen.index("proposal")
        assert seen.index("unit_started") < seen.index("unit_finished") < seen.index("cumulative")
        assert [e["type"] for e in orch.events] == seen
