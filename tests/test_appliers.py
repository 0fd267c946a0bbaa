"""Tests for payload appliers."""
from __future__ import annotations

import shutil

import pytest

from safepatch.appliers import (
    APPLIERS,
    Applier,
    diff_paths,
    get_applier,
    register_applier,
)
from safepatch.errors import ApplierError
from safepatch.hashing import hash_bytes
from safepatch.models import ChangeUnit

MUL_FIX_DIFF = """\
--- a/module_b.py
+++ b/module_b.py
@@ -1,2 +1,3 @@
 def mul(a, b):
+    # checked
     return a * b
"""


def _unit(kind: str, target_files, **payload) -> ChangeUnit:
    return ChangeUnit(
        unit_id="U1",
        title=kind,
        severity="low",
        target_files=tuple(target_files),
        payload={"kind": kind, **payload},
    )


class TestEditApplier:
    def test_apply(self, plain_repo, edit_unit):
        unit = edit_unit("U1", "module_a.py", "return a + b", "return b + a")
        applier = get_applier(unit)
        applier.check(unit, plain_repo)
        applier.apply(unit, plain_repo)
        assert "return b + a" in (plain_repo / "module_a.py").read_text()

    def test_search_not_found(self, plain_repo, edit_unit):
        unit = edit_unit("U1", "module_a.py", "return a - b", "x")
        with pytest.raises(ApplierError, match="not found"):
            get_applier(unit).check(unit, plain_repo)

    def test_search_ambiguous(self, plain_repo, edit_unit):
        unit = edit_unit("U1", "module_a.py", "a", "x")
        with pytest.raises(ApplierError, match="found"):
            get_applier(unit).check(unit, plain_repo)

    def test_path_must_be_target(self, plain_repo):
        unit = _unit(
            "edit",
            ["module_a.py"],
            edits=[{"path": "module_b.py", "search": "return a * b", "replace": "return 0"}],
        )
        with pytest.raises(ApplierError, match="not a listed target"):
            get_applier(unit).check(unit, plain_repo)

    def test_path_escape(self, plain_repo):
        unit = _unit("edit", ["../x.py"], edits=[{"path": "../x.py", "search": "a", "replace": "b"}])
        with pytest.raises(ApplierError, match="escapes"):
            get_applier(unit).check(unit, plain_repo)

    def test_check_writes_nothing(self, plain_repo):
        before = (plain_repo / "module_a.py").read_bytes()
        unit = _unit(
            "edit",
            ["module_a.py"],
            edits=[
                {"path": "module_a.py", "search": "return a + b", "replace": "return 0"},
                {"path": "module_a.py", "search": "missing", "replace": "x"},
            ],
        )
        with pytest.raises(ApplierError):
            get_applier(unit).check(unit, plain_repo)
        assert (plain_repo / "module_a.py").read_bytes() == before


class TestReplaceCreateDelete:
    def test_replace_with_expected_hash(self, plain_repo):
        digest = hash_bytes((plain_repo / "module_a.py").read_bytes())
        unit = _unit("replace", ["module_a.py"], files={
            "module_a.py": {"content": "def add(a, b):\n    return sum((a, b))\n", "expected_sha256": digest},
        })
        applier = get_applier(unit)
        applier.check(unit, plain_repo)
        applier.apply(unit, plain_repo)
        assert "sum((a, b))" in (plain_repo / "module_a.py").read_text()

    def test_replace_stale_hash(self, plain_repo):
        unit = _unit("replace", ["module_a.py"], files={
            "module_a.py": {"content": "x", "expected_sha256": "0" * 64},
        })
        with pytest.raises(ApplierError, match="changed since"):
            get_applier(unit).check(unit, plain_repo)

    def test_create(self, plain_repo):
        unit = _unit("create", ["pkg/limits.py"], files={"pkg/limits.py": "LIMIT = 1\n"})
        applier = get_applier(unit)
        applier.check(unit, plain_repo)
        applier.apply(unit, plain_repo)
        assert (plain_repo / "pkg" / "limits.py").read_text() == "LIMIT = 1\n"

    def test_create_existing(self, plain_repo):
        unit = _unit("create", ["module_a.py"], files={"module_a.py": "x"})
        with pytest.raises(ApplierError, match="already exists"):
            get_applier(unit).check(unit, plain_repo)

    def test_delete(self, plain_repo):
        unit = _unit("delete", ["module_b.py"])
        applier = get_applier(unit)
        applier.check(unit, plain_repo)
        applier.apply(unit, plain_repo)
        assert not (plain_repo / "module_b.py").exists()

    def test_delete_missing(self, plain_repo):
        unit = _unit("delete", ["gone.py"])
        with pytest.raises(ApplierError, match="does not exist"):
            get_applier(unit).check(unit, plain_repo)


class TestDiffApplier:
    def test_diff_paths(self):
        assert diff_paths(MUL_FIX_DIFF) == ["module_b.py"]
        assert diff_paths("--- /dev/null\n+++ b/new.py\n") == ["new.py"]

    def test_apply_diff(self, git_repo):
        unit = _unit("diff", ["module_b.py"], diff=MUL_FIX_DIFF)
        applier = get_applier(unit)
        applier.check(unit, git_repo)
        applier.apply(unit, git_repo)
        assert "# checked" in (git_repo / "module_b.py").read_text()

    def test_diff_outside_targets(self, git_repo):
        unit = _unit("diff", ["module_a.py"], diff=MUL_FIX_DIFF)
        with pytest.raises(ApplierError, match="not a listed target"):
            get_applier(unit).check(unit, git_repo)

    def test_diff_does_not_fit(self, plain_repo):
        if shutil.which("git") is None:
            pytest.skip("git not installed")
        (plain_repo / "module_b.py").write_text("def mul(x, y):\n    return x * y\n")
        unit = _unit("diff", ["module_b.py"], diff=MUL_FIX_DIFF)
        with pytest.raises(ApplierError, match="rejected"):
            get_applier(unit).check(unit, plain_repo)


class TestRegistry:
    def test_unknown_kind(self):
        unit = _unit("rewrite", ["module_a.py"])
        with pytest.raises(ApplierError, match="unknown payload kind"):
            get_applier(unit)

    def test_register_custom(self, plain_repo):
        class TouchApplier(Applier):
            kind = "touch"

            def check(self, unit, root):
                pass

            def apply(self, unit, root):
                for rel in unit.target_files:
                    self.target(unit, root, rel).touch()

        register_applier(TouchApplier())
        try:
            unit = _unit("touch", ["marker"])
            get_applier(unit).apply(unit, plain_repo)
            assert (plain_repo / "marker").exists()
        finally:
            del APPLIERS["touch"]
