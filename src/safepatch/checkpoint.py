"""Checkpoint backends: snapshot, restore, and dirty detection.

Three primitives are all the rest of safepatch needs from version control:

    snapshot(paths)      record the exact bytes of a named set of files
    restore(snapshot)    put those files back bit-for-bit (absent stays absent)
    dirty_paths()        files changed relative to the last committed checkpoint

File content lives in a content-addressed BlobStore under
``.safepatch/blobs`` so any snapshot can be restored and any logged state
reconstructed. The last committed checkpoint is a hash manifest in
``.safepatch/checkpoint.json``.

Backends:
    GitCheckpointStore       tracked set from ``git ls-files``, dirtiness from
                             ``git status --porcelain`` filtered by the manifest
    SnapshotCheckpointStore  tracked set from a directory walk, dirtiness from
                             the manifest alone
"""
from __future__ import annotations

import fnmatch
import json
import os
import shutil
import stat
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from .errors import CheckpointError
from .hashing import hash_bytes, hash_path_or_none
from .models import utc_now
from .utils import run_subprocess

STATE_DIR = ".safepatch"

DEFAULT_IGNORE = [
    ".git",
    ".git/*",
    STATE_DIR,
    f"{STATE_DIR}/*",
    "*/__pycache__/*",
    "__pycache__/*",
    "*.pyc",
    ".pytest_cache/*",
    "*/.pytest_cache/*",
    ".venv/*",
    "venv/*",
    "node_modules/*",
    "*.egg-info/*",
    ".mypy_cache/*",
    ".ruff_cache/*",
    ".tox/*",
]


@dataclass(frozen=True)
class Snapshot:
    """Exact content of a named set of files at one moment.

    ``files`` maps relative path to blob hash; None means the file was absent.
    ``modes`` holds the permission bits of each file that existed.
    """

    snapshot_id: str
    files: dict
    created_at: str = field(default_factory=utc_now)
    modes: dict = field(default_factory=dict)

    @property
    def paths(self) -> tuple[str, ...]:
        return tuple(self.files)


class BlobStore:
    """Content-addressed file store (sha256 -> bytes)."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _path(self, digest: str) -> Path:
        return self.root / digest[:2] / digest[2:]

    def put(self, data: bytes) -> str:
        digest = hash_bytes(data)
        path = self._path(digest)
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(f".tmp{os.getpid()}")
            tmp.write_bytes(data)
            tmp.replace(path)
        return digest

    def get(self, digest: str) -> bytes:
        path = self._path(digest)
        if not path.exists():
            raise CheckpointError(f"Blob {digest[:12]} missing from {self.root}", digest=digest)
        return path.read_bytes()

    def has(self, digest: str) -> bool:
        return self._path(digest).exists()


def normalize_relpath(root: Path, rel: str) -> str:
    """Return ``rel`` as a clean POSIX path inside ``root``.

    Raises:
        CheckpointError: If the path escapes the repository root.
    """
    rel_path = Path(rel)
    if rel_path.is_absolute():
        try:
            rel_path = rel_path.resolve().relative_to(root.resolve())
        except ValueError:
            raise CheckpointError(f"Path {rel} is outside {root}", path=rel) from None
    resolved = (root / rel_path).resolve()
    try:
        clean = resolved.relative_to(root.resolve())
    except ValueError:
        raise CheckpointError(f"Path {rel} is outside {root}", path=rel) from None
    return clean.as_posix()


class CheckpointStore(ABC):
    """Versioned-storage backend for one repository."""

    name = "abstract"

    def __init__(self, repo_root: Path, state_dir: Path | None = None):
        self.repo_root = Path(repo_root).resolve()
        self.state_dir = Path(state_dir) if state_dir else self.repo_root / STATE_DIR
        self.blobs = BlobStore(self.state_dir / "blobs")
        self._manifest_path = self.state_dir / "checkpoint.json"

    # ── backend-specific ─────────────────────────────────────────────

    @abstractmethod
    def tracked_files(self) -> list[str]:
        """Relative POSIX paths of every file under version control."""

    @abstractmethod
    def _candidate_dirty_paths(self) -> list[str]:
        """Paths the backend believes changed, before manifest filtering."""

    # ── primitives ───────────────────────────────────────────────────

    def snapshot(self, paths) -> Snapshot:
        files: dict[str, str | None] = {}
        modes: dict[str, int] = {}
        for rel in paths:
            rel = normalize_relpath(self.repo_root, rel)
            target = self.repo_root / rel
            if target.is_file():
                files[rel] = self.blobs.put(target.read_bytes())
                modes[rel] = stat.S_IMODE(target.stat().st_mode)
            elif target.exists():
                raise CheckpointError(f"{rel} is not a regular file", path=rel)
            else:
                files[rel] = None
        return Snapshot(snapshot_id=f"snap_{uuid.uuid4().hex[:12]}", files=files, modes=modes)

    def restore(self, snapshot: Snapshot) -> None:
        for rel, digest in snapshot.files.items():
            target = self.repo_root / rel
            if digest is None:
                if target.is_file() or target.is_symlink():
                    target.unlink()
                elif target.is_dir():
                    shutil.rmtree(target)
                continue
            data = self.blobs.get(digest)
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_name(f".{target.name}.safepatch-restore")
            tmp.write_bytes(data)
            if rel in snapshot.modes:
                os.chmod(tmp, snapshot.modes[rel])
            tmp.replace(target)

    def current_hashes(self, paths) -> dict:
        return {
            normalize_relpath(self.repo_root, rel): hash_path_or_none(
                self.repo_root / normalize_relpath(self.repo_root, rel)
            )
            for rel in paths
        }

    def dirty_paths(self) -> list[str]:
        """Files modified relative to the last committed checkpoint."""
        manifest = self.load_manifest()
        candidates = self._candidate_dirty_paths()
        if manifest is None:
            return sorted(candidates)
        recorded = manifest["files"]
        dirty = set()
        for rel in candidates:
            if rel not in recorded or recorded[rel] != hash_path_or_none(self.repo_root / rel):
                dirty.add(rel)
        return sorted(dirty)

    # ── committed checkpoint manifest ────────────────────────────────

    def load_manifest(self) -> dict | None:
        if not self._manifest_path.exists():
            return None
        try:
            data = json.loads(self._manifest_path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            raise CheckpointError(f"Unreadable checkpoint manifest: {e}") from e
        if not isinstance(data, dict) or not isinstance(data.get("files"), dict):
            raise CheckpointError("Malformed checkpoint manifest")
        return data

    def save_manifest(self, checkpoint_id: str, files: dict) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        payload = {
            "schema": "safepatch_checkpoint_v1",
            "backend": self.name,
            "checkpoint_id": checkpoint_id,
            "updated_at": utc_now(),
            "files": dict(sorted(files.items())),
        }
        tmp = self._manifest_path.with_suffix(".tmp")
        tmp.write_text(json.dumps(payload, indent=2))
        tmp.replace(self._manifest_path)


class SnapshotCheckpointStore(CheckpointStore):
    """Plain-directory backend: every non-ignored file is tracked."""

    name = "snapshot"

    def __init__(self, repo_root: Path, state_dir: Path | None = None, ignore: list[str] | None = None):
        super().__init__(repo_root, state_dir)
        self.ignore = list(DEFAULT_IGNORE) + list(ignore or [])

    def _ignored(self, rel: str) -> bool:
        return any(fnmatch.fnmatch(rel, pattern) for pattern in self.ignore)

    def tracked_files(self) -> list[str]:
        files = []
        for dirpath, dirnames, filenames in os.walk(self.repo_root):
            rel_dir = Path(dirpath).relative_to(self.repo_root).as_posix()
            rel_dir = "" if rel_dir == "." else rel_dir + "/"
            dirnames[:] = sorted(
                d for d in dirnames
                if not self._ignored(rel_dir + d) and not self._ignored(rel_dir + d + "/x")
            )
            for name in sorted(filenames):
                rel = rel_dir + name
                if not self._ignored(rel):
                    files.append(rel)
        return files

    def _candidate_dirty_paths(self) -> list[str]:
        manifest = self.load_manifest()
        if manifest is None:
            return []
        current = set(self.tracked_files())
        return sorted(current | set(manifest["files"]))


class GitCheckpointStore(CheckpointStore):
    """Git-backed store. Never writes to the index or history."""

    name = "git"

    def __init__(self, repo_root: Path, state_dir: Path | None = None, timeout: float = 60.0):
        super().__init__(repo_root, state_dir)
        self.timeout = timeout
        self._prefix: str | None = None

    def git(self, *args: str) -> str:
        try:
            result = run_subprocess(["git", "-C", str(self.repo_root), *args], timeout=self.timeout)
        except FileNotFoundError as e:
            raise CheckpointError("git executable not found") from e
        if result.returncode != 0:
            raise CheckpointError(
                f"git {' '.join(args)} failed: {result.stderr.strip()[:200]}",
                returncode=result.returncode,
            )
        return result.stdout

    @staticmethod
    def is_repository(path: Path) -> bool:
        try:
            result = run_subprocess(["git", "-C", str(path), "rev-parse", "--is-inside-work-tree"], timeout=10)
        except (FileNotFoundError, OSError):
            return False
        return result.returncode == 0 and result.stdout.strip() == "true"

    def tracked_files(self) -> list[str]:
        out = self.git("ls-files", "-z")
        return sorted(p for p in out.split("\0") if p)

    @property
    def prefix(self) -> str:
        """Path of repo_root inside the enclosing git work tree, "" at the top."""
        if self._prefix is None:
            self._prefix = self.git("rev-parse", "--show-prefix").strip()
        return self._prefix

    def _candidate_dirty_paths(self) -> list[str]:
        out = self.git("status", "--porcelain", "-z", "--untracked-files=no", "--", ".")
        paths = []
        entries = out.split("\0")
        i = 0
        while i < len(entries):
            entry = entries[i]
            i += 1
            if not entry:
                continue
            status, rel = entry[:2], entry[3:]
            if status.startswith("R") or status.startswith("C"):
                # Renames carry the source path as the next NUL field.
                i += 1
            # Porcelain paths are relative to the top of the work tree.
            if not rel.startswith(self.prefix):
                continue
            rel = rel[len(self.prefix):]
            if not rel.startswith(STATE_DIR + "/"):
                paths.append(rel)
        return sorted(set(paths))


def open_store(repo_root: Path, backend: str = "auto", ignore: list[str] | None = None) -> CheckpointStore:
    """Pick a checkpoint backend for ``repo_root``."""
    repo_root = Path(repo_root).resolve()
    if backend == "auto":
        backend = "git" if GitCheckpointStore.is_repository(repo_root) else "snapshot"
    if backend == "git":
        return GitCheckpointStore(repo_root)
    if backend == "snapshot":
        return SnapshotCheckpointStore(repo_root, ignore=ignore)
    raise CheckpointError(f"Unknown checkpoint backend '{backend}'", backend=backend)


__all__ = [
    "STATE_DIR",
    "DEFAULT_IGNORE",
    "Snapshot",
    "BlobStore",
    "normalize_relpath",
    "CheckpointStore",
    "SnapshotCheckpointStore",
    "GitCheckpointStore",
    "open_store",
]
