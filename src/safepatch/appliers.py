"""Appliers interpret a ChangeUnit's payload and write it to the workspace.

Each applier has two steps:
    check(unit, root)   side-effect free; raises ApplierError when the payload
                        cannot be applied cleanly to the files as they are now
    apply(unit, root)   writes the change

The executor always checks before it applies, so a payload that does not fit
is rejected before any byte is written. Every path an applier touches must be
one of ``unit.target_files``.

Payload kinds::

    {"kind": "replace", "files": {"a.py": {"content": "...", "expected_sha256": "..."}}}
    {"kind": "edit", "edits": [{"path": "a.py", "search": "old", "replace": "new"}]}
    {"kind": "diff", "diff": "<unified diff>"}
    {"kind": "create", "files": {"new.py": "..."}}
    {"kind": "delete", "expected_sha256": {"old.py": "..."}}
"""
from __future__ import annotations

import re
from abc import ABC, abstractmethod
from pathlib import Path

from .checkpoint import normalize_relpath
from .errors import ApplierError, CheckpointError
from .hashing import hash_bytes
from .models import ChangeUnit
from .utils import run_subprocess


class Applier(ABC):
    kind = "abstract"

    @abstractmethod
    def check(self, unit: ChangeUnit, root: Path) -> None:
        """Raise ApplierError if ``unit`` cannot be applied cleanly."""

    @abstractmethod
    def apply(self, unit: ChangeUnit, root: Path) -> None:
        """Write the change. Only called after check() succeeded."""

    # ── helpers ──────────────────────────────────────────────────────

    @staticmethod
    def target(unit: ChangeUnit, root: Path, rel: str) -> Path:
        try:
            clean = normalize_relpath(root, rel)
        except CheckpointError:
            raise ApplierError(unit.unit_id, "path escapes the repository", path=rel) from None
        allowed = {normalize_relpath(root, p) for p in unit.target_files}
        if clean not in allowed:
            raise ApplierError(unit.unit_id, "path is not a listed target file", path=rel)
        return root / clean

    @staticmethod
    def read_text(unit: ChangeUnit, path: Path, rel: str) -> str:
        if not path.is_file():
            raise ApplierError(unit.unit_id, "target file does not exist", path=rel)
        try:
            return path.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            raise ApplierError(unit.unit_id, "target file is not UTF-8 text", path=rel) from None

    @staticmethod
    def write_text(path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8", newline="") as f:
            f.write(content)


class ReplaceApplier(Applier):
    """Replace whole files, optionally guarded by the expected current hash."""

    kind = "replace"

    def _files(self, unit: ChangeUnit) -> dict:
        files = unit.payload.get("files")
        if not isinstance(files, dict) or not files:
            raise ApplierError(unit.unit_id, "replace payload needs a non-empty 'files' mapping")
        return files

    def check(self, unit: ChangeUnit, root: Path) -> None:
        for rel, entry in self._files(unit).items():
            path = self.target(unit, root, rel)
            if isinstance(entry, str):
                entry = {"content": entry}
            if not isinstance(entry, dict) or not isinstance(entry.get("content"), str):
                raise ApplierError(unit.unit_id, "replacement needs string 'content'", path=rel)
            expected = entry.get("expected_sha256")
            if expected:
                if not path.is_file():
                    raise ApplierError(unit.unit_id, "target file does not exist", path=rel)
                actual = hash_bytes(path.read_bytes())
                if actual != expected:
                    raise ApplierError(
                        unit.unit_id,
                        f"file changed since the payload was authored (sha256 {actual[:12]} != {expected[:12]})",
                        path=rel,
                    )
            elif not path.is_file():
                raise ApplierError(unit.unit_id, "target file does not exist", path=rel)

    def apply(self, unit: ChangeUnit, root: Path) -> None:
        for rel, entry in self._files(unit).items():
            content = entry if isinstance(entry, str) else entry["content"]
            self.write_text(self.target(unit, root, rel), content)


class EditApplier(Applier):
    """Exact search/replace blocks. Each search text must occur exactly once."""

    kind = "edit"

    def _plan(self, unit: ChangeUnit, root: Path) -> dict[Path, str]:
        edits = unit.payload.get("edits")
        if not isinstance(edits, list) or not edits:
            raise ApplierError(unit.unit_id, "edit payload needs a non-empty 'edits' list")

        contents: dict[Path, str] = {}
        for i, edit in enumerate(edits):
            if not isinstance(edit, dict):
                raise ApplierError(unit.unit_id, f"edit #{i} is not an object")
            rel = edit.get("path")
            search = edit.get("search")
            replace = edit.get("replace")
            if not isinstance(rel, str) or not isinstance(search, str) or not isinstance(replace, str):
                raise ApplierError(unit.unit_id, f"edit #{i} needs string path, search and replace")
            if not search:
                raise ApplierError(unit.unit_id, f"edit #{i} has an empty search block", path=rel)
            path = self.target(unit, root, rel)
            if path not in contents:
                contents[path] = self.read_text(unit, path, rel)
            count = contents[path].count(search)
            if count != 1:
                found = "not found" if count == 0 else f"found {count} times"
                raise ApplierError(unit.unit_id, f"edit #{i} search block {found}", path=rel)
            contents[path] = contents[path].replace(search, replace, 1)
        return contents

    def check(self, unit: ChangeUnit, root: Path) -> None:
        self._plan(unit, root)

    def apply(self, unit: ChangeUnit, root: Path) -> None:
        for path, content in self._plan(unit, root).items():
            self.write_text(path, content)


_DIFF_PATH = re.compile(r"^(?:---|\+\+\+) (?:[ab]/)?(.+?)(?:\t.*)?$")


def diff_paths(diff_text: str) -> list[str]:
    """Paths named in the ---/+++ headers of a unified diff."""
    paths = []
    for line in diff_text.splitlines():
        m = _DIFF_PATH.match(line)
        if m and m.group(1) != "/dev/null":
            if m.group(1) not in paths:
                paths.append(m.group(1))
    return paths


class DiffApplier(Applier):
    """Unified diff applied with ``git apply`` (works outside git repos too)."""

    kind = "diff"
    timeout = 60.0

    def _diff(self, unit: ChangeUnit) -> str:
        diff_text = unit.payload.get("diff")
        if not isinstance(diff_text, str) or not diff_text.strip():
            raise ApplierError(unit.unit_id, "diff payload needs non-empty 'diff' text")
        if not diff_text.endswith("\n"):
            diff_text += "\n"
        return diff_text

    def _git_apply(self, unit: ChangeUnit, root: Path, *flags: str) -> None:
        try:
            result = run_subprocess(
                ["git", "apply", "--whitespace=nowarn", *flags, "-"],
                input=self._diff(unit),
                cwd=str(root),
                timeout=self.timeout,
            )
        except FileNotFoundError:
            raise ApplierError(unit.unit_id, "git executable not found") from None
        if result.returncode != 0:
            raise ApplierError(unit.unit_id, f"git apply rejected the diff: {result.stderr.strip()[:300]}")

    def check(self, unit: ChangeUnit, root: Path) -> None:
        paths = diff_paths(self._diff(unit))
        if not paths:
            raise ApplierError(unit.unit_id, "diff names no files")
        for rel in paths:
            self.target(unit, root, rel)
        self._git_apply(unit, root, "--check")

    def apply(self, unit: ChangeUnit, root: Path) -> None:
        self._git_apply(unit, root)


class CreateApplier(Applier):
    """Create new files. Fails if any already exists."""

    kind = "create"

    def _files(self, unit: ChangeUnit) -> dict:
        files = unit.payload.get("files")
        if not isinstance(files, dict) or not files:
            raise ApplierError(unit.unit_id, "create payload needs a non-empty 'files' mapping")
        return files

    def check(self, unit: ChangeUnit, root: Path) -> None:
        for rel, content in self._files(unit).items():
            path = self.target(unit, root, rel)
            if not isinstance(content, str):
                raise ApplierError(unit.unit_id, "file content must be a string", path=rel)
            if path.exists():
                raise ApplierError(unit.unit_id, "file already exists", path=rel)

    def apply(self, unit: ChangeUnit, root: Path) -> None:
        for rel, content in self._files(unit).items():
            self.write_text(self.target(unit, root, rel), content)


class DeleteApplier(Applier):
    """Delete every target file, optionally guarded by expected hashes."""

    kind = "delete"

    def check(self, unit: ChangeUnit, root: Path) -> None:
        expected = unit.payload.get("expected_sha256") or {}
        for rel in unit.target_files:
            path = self.target(unit, root, rel)
            if not path.is_file():
                raise ApplierError(unit.unit_id, "target file does not exist", path=rel)
            if rel in expected and hash_bytes(path.read_bytes()) != expected[rel]:
                raise ApplierError(unit.unit_id, "file changed since the payload was authored", path=rel)

    def apply(self, unit: ChangeUnit, root: Path) -> None:
        for rel in unit.target_files:
            self.target(unit, root, rel).unlink()


APPLIERS: dict[str, Applier] = {
    a.kind: a
    for a in (ReplaceApplier(), EditApplier(), DiffApplier(), CreateApplier(), DeleteApplier())
}


def register_applier(applier: Applier) -> None:
    APPLIERS[applier.kind] = applier


def get_applier(unit: ChangeUnit, registry: dict[str, Applier] | None = None) -> Applier:
    registry = APPLIERS if registry is None else registry
    kind = unit.payload.get("kind")
    if kind not in registry:
        raise ApplierError(
            unit.unit_id,
            f"unknown payload kind {kind!r} (known: {', '.join(sorted(registry))})",
        )
    return registry[kind]


__all__ = [
    "Applier",
    "ReplaceApplier",
    "EditApplier",
    "DiffApplier",
    "CreateApplier",
    "DeleteApplier",
    "APPLIERS",
    "register_applier",
    "get_applier",
    "diff_paths",
]
