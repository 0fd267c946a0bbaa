"""Tests for the hash-chained execution log."""
from __future__ import annotations

import json

import pytest

from safepatch.checkpoint import BlobStore
from safepatch.errors import MalformedInputError
from safepatch.execution_log import ExecutionLog, LogEntry, reconstruct_files
from safepatch.models import ExecutionOutcome, ExecutionStatus, TestResult


def _outcome(unit_id, status, pre, post, failed=()):
    result = TestResult(passed=not failed, total=4, failed=tuple(failed))
    return ExecutionOutcome(
        unit_id=unit_id,
        status=status,
        applied=True,
        test_result=result,
        reason="" if not failed else "1 failing test(s)",
        target_files=tuple(pre),
        pre_hashes=pre,
        post_hashes=post,
    )


@pytest.fixture
def three_units():
    """U1 verified (a: A0->A1), U2 reverted (b stays B0), U3 verified (b: B0->B1)."""
    return [
        _outcome("U1", ExecutionStatus.VERIFIED, {"a.py": "A0"}, {"a.py": "A1"}),
        _outcome("U2", ExecutionStatus.REVERTED, {"b.py": "B0"}, {"b.py": "B0"}, failed=["t::mul"]),
        _outcome("U3", ExecutionStatus.VERIFIED, {"b.py": "B0"}, {"b.py": "B1"}),
    ]


class TestAppend:
    def test_chain_links(self, three_units):
        log = ExecutionLog()
        for outcome in three_units:
            log.append(outcome)

        assert [e.seq for e in log] == [1, 2, 3]
        assert log.entries[0].prev_hash is None
        assert log.entries[1].prev_hash == log.entries[0].entry_hash
        assert log.verify_chain() == (True, [])

    def test_one_entry_per_unit(self, three_units):
        log = ExecutionLog()
        log.append(three_units[0])
        with pytest.raises(ValueError, match="already has"):
            log.append(three_units[0])

    def test_non_final_rejected(self):
        log = ExecutionLog()
        pending = ExecutionOutcome(unit_id="U1", status=ExecutionStatus.APPLIED, applied=True)
        with pytest.raises(ValueError, match="not final"):
            log.append(pending)

    def test_invalid_action(self):
        with pytest.raises(ValueError, match="Invalid log action"):
            LogEntry(seq=1, unit_id="U1", action="applied", test=None, timestamp="t")

    def test_carry_marks_resumed(self, three_units):
        earlier = ExecutionLog()
        entry = earlier.append(three_units[0], checkpoint_id="ckpt_a")

        log = ExecutionLog()
        carried = log.carry(entry)

        assert carried.resumed
        assert carried.checkpoint_id == "ckpt_a"
        assert carried.prev_hash is None
        assert log.verify_chain()[0]


class TestPersistence:
    def test_jsonl_file(self, tmp_path, three_units):
        path = tmp_path / "run" / "execution_log.jsonl"
        log = ExecutionLog(path)
        for outcome in three_units:
            log.append(outcome)

        lines = path.read_text().splitlines()
        assert len(lines) == 3
        assert json.loads(lines[1])["action"] == "reverted"

        loaded = ExecutionLog.load(path)
        assert loaded.unit_ids() == ["U1", "U2", "U3"]
        assert loaded.find("U2").failed_tests == ["t::mul"]
        assert loaded.verify_chain() == (True, [])

    def test_refuses_existing_file(self, tmp_path, three_units):
        path = tmp_path / "execution_log.jsonl"
        ExecutionLog(path).append(three_units[0])
        with pytest.raises(MalformedInputError, match="already exists"):
            ExecutionLog(path)

    def test_tampering_detected(self, tmp_path, three_units):
        path = tmp_path / "execution_log.jsonl"
        log = ExecutionLog(path)
        for outcome in three_units:
            log.append(outcome)

        lines = path.read_text().splitlines()
        entry = json.loads(lines[1])
        entry["action"] = "verified"
        lines[1] = json.dumps(entry)
        path.write_text("\n".join(lines) + "\n")

        ok, errors = ExecutionLog.load(path).verify_chain()
        assert not ok
        assert any("entry 2" in e for e in errors)

    def test_dropped_entry_detected(self, tmp_path, three_units):
        path = tmp_path / "execution_log.jsonl"
        log = ExecutionLog(path)
        for outcome in three_units:
            log.append(outcome)
        lines = path.read_text().splitlines()
        path.write_text(lines[0] + "\n" + lines[2] + "\n")

        ok, _ = ExecutionLog.load(path).verify_chain()
        assert not ok

    def test_load_bad_line(self, tmp_path):
        path = tmp_path / "execution_log.jsonl"
        path.write_text("{not json}\n")
        with pytest.raises(MalformedInputError, match="line 1"):
            ExecutionLog.load(path)

    def test_load_missing(self, tmp_path):
        with pytest.raises(MalformedInputError, match="not found"):
            ExecutionLog.load(tmp_path / "missing.jsonl")


class TestReconstruction:
    """Replaying a prefix of the log from the baseline manifest."""

    def test_state_at(self, three_units):
        log = ExecutionLog()
        for outcome in three_units:
            log.append(outcome)
        base = {"a.py": "A0", "b.py": "B0"}

        assert log.state_at(0, base) == base
        assert log.state_at(1, base) == {"a.py": "A1", "b.py": "B0"}
        assert log.state_at(2, base) == {"a.py": "A1", "b.py": "B0"}
        assert log.state_at(3, base) == {"a.py": "A1", "b.py": "B1"}
        with pytest.raises(IndexError):
            log.state_at(4, base)

    def test_test_outcome_at(self, three_units):
        log = ExecutionLog()
        for outcome in three_units:
            log.append(outcome)
        baseline = TestResult(passed=True, total=4)

        assert log.test_outcome_at(0, baseline) == baseline.summary()
        # A reverted unit leaves the previous verified outcome in force.
        assert log.test_outcome_at(2, baseline)["passed"] is True
        assert log.test_outcome_at(2, baseline) == log.entries[0].test

    def test_reconstruct_files(self, tmp_path):
        blobs = BlobStore(tmp_path / "blobs")
        digest = blobs.put(b"LIMIT = 1\n")
        files = reconstruct_files({"a.py": digest, "gone.py": None}, blobs)
        assert files == {"a.py": b"LIMIT = 1\n", "gone.py": None}
