# loader.py — Reads repository snapshots into in-memory file trees.
# Provides snapshot readers (in-memory, checkout directory, git revision),
# content hashing, and parsing of the per-version metadata and definition files.

from __future__ import annotations

import hashlib
import io
import json
import logging
import subprocess
import tarfile
from pathlib import Path
from typing import Any, Mapping, Protocol

import yaml

from policyrelease.errors import SnapshotReadError

logger = logging.getLogger(__name__)

FileTree = dict[str, bytes]

_SKIPPED_DIRS = frozenset({".git", "__pycache__"})

GIT_TIMEOUT_SECONDS = 120.0


# ---------------------------------------------------------------------------
# Snapshot reader protocol
# ---------------------------------------------------------------------------


class SnapshotReader(Protocol):
    """Resolves an opaque snapshot reference to a file tree.

    ``read_tree`` returns every file at *ref* keyed by its POSIX path relative
    to the repository root.  ``diff_trees`` returns the paths that were added,
    removed, or modified between two references.
    """

    def read_tree(self, ref: str) -> FileTree: ...

    def diff_trees(self, a: str, b: str) -> set[str]: ...


def diff_file_trees(before: Mapping[str, bytes], after: Mapping[str, bytes]) -> set[str]:
    """Return paths added, removed, or changed between two file trees."""
    changed = set(before.keys() ^ after.keys())
    for path in before.keys() & after.keys():
        if before[path] != after[path]:
            changed.add(path)
    return changed


# ---------------------------------------------------------------------------
# Implementations
# ---------------------------------------------------------------------------


class InMemorySnapshotReader:
    """Snapshot reader backed by a dict of ``ref -> file tree``.

    Args:
        snapshots: Initial snapshots.  Unknown references raise
            :class:`SnapshotReadError`.
    """

    def __init__(self, snapshots: Mapping[str, Mapping[str, bytes]] | None = None) -> None:
        self._snapshots: dict[str, FileTree] = {
            ref: dict(tree) for ref, tree in (snapshots or {}).items()
        }

    def add(self, ref: str, tree: Mapping[str, bytes]) -> None:
        self._snapshots[ref] = dict(tree)

    def read_tree(self, ref: str) -> FileTree:
        try:
            return dict(self._snapshots[ref])
        except KeyError:
            raise SnapshotReadError(f"Unknown snapshot reference: {ref!r}") from None

    def diff_trees(self, a: str, b: str) -> set[str]:
        return diff_file_trees(self.read_tree(a), self.read_tree(b))


class DirectorySnapshotReader:
    """Snapshot reader where each reference is a checked-out directory.

    Relative references are resolved against *base_dir* (the current working
    directory when omitted).  ``.git`` and ``__pycache__`` directories are
    skipped.
    """

    def __init__(self, base_dir: str | Path | None = None) -> None:
        self._base = Path(base_dir) if base_dir is not None else None

    def _resolve(self, ref: str) -> Path:
        path = Path(ref)
        if self._base is not None and not path.is_absolute():
            path = self._base / path
        return path

    def read_tree(self, ref: str) -> FileTree:
        root = self._resolve(ref)
        if not root.is_dir():
            raise SnapshotReadError(f"Snapshot directory not found: {root}")

        tree: FileTree = {}
        try:
            for file_path in sorted(root.rglob("*")):
                relative = file_path.relative_to(root)
                if any(part in _SKIPPED_DIRS for part in relative.parts):
                    continue
                if file_path.is_file():
                    tree[relative.as_posix()] = file_path.read_bytes()
        except OSError as exc:
            raise SnapshotReadError(f"Cannot read snapshot {root}: {exc}") from exc

        logger.debug("Read %d files from %s", len(tree), root)
        return tree

    def diff_trees(self, a: str, b: str) -> set[str]:
        return diff_file_trees(self.read_tree(a), self.read_tree(b))


class GitSnapshotReader:
    """Snapshot reader where each reference is a git revision (commit, tag, branch).

    Trees are read with ``git archive`` and diffs with ``git diff --name-only``,
    both run inside *repo_dir*.
    """

    def __init__(
        self,
        repo_dir: str | Path,
        *,
        git: str = "git",
        timeout: float = GIT_TIMEOUT_SECONDS,
    ) -> None:
        self._repo = Path(repo_dir)
        self._git = git
        self._timeout = timeout

    def _run(self, args: list[str]) -> bytes:
        cmd = [self._git, *args]
        try:
            proc = subprocess.run(
                cmd,
                cwd=self._repo,
                capture_output=True,
                timeout=self._timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise SnapshotReadError(f"{' '.join(cmd)} failed: {exc}") from exc

        if proc.returncode != 0:
            stderr = proc.stderr.decode("utf-8", errors="replace").strip()
            raise SnapshotReadError(
                f"{' '.join(cmd)} failed (exit {proc.returncode}): {stderr}"
            )
        return proc.stdout

    def read_tree(self, ref: str) -> FileTree:
        archive = self._run(["archive", "--format=tar", ref])
        tree: FileTree = {}
        try:
            with tarfile.open(fileobj=io.BytesIO(archive), mode="r:", encoding="utf-8") as tar:
                for member in tar.getmembers():
                    if not member.isfile():
                        continue
                    # Undecodable names come back with surrogate escapes.
                    member.name.encode("utf-8")
                    handle = tar.extractfile(member)
                    if handle is not None:
                        tree[member.name] = handle.read()
        except tarfile.TarError as exc:
            raise SnapshotReadError(f"Unreadable archive for {ref!r}: {exc}") from exc
        except UnicodeError as exc:
            raise SnapshotReadError(f"Path in {ref!r} is not valid UTF-8: {exc}") from exc
        return tree

    def diff_trees(self, a: str, b: str) -> set[str]:
        output = self._run(["diff", "--name-only", "-z", a, b])
        try:
            names = output.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SnapshotReadError(f"Changed path in {a!r}..{b!r} is not valid UTF-8: {exc}") from exc
        return {p for p in names.split("\0") if p}


# ---------------------------------------------------------------------------
# Hashing and subtree extraction
# ---------------------------------------------------------------------------


def compute_content_hash(files: Mapping[str, bytes]) -> str:
    """Content-addressed sha256 digest of a file tree.

    Stable under reordering: paths are hashed in sorted order, each followed
    by the sha256 of its bytes.
    """
    digest = hashlib.sha256()
    for path in sorted(files):
        digest.update(path.encode("utf-8"))
        digest.update(b"\0")
        digest.update(hashlib.sha256(files[path]).digest())
    return digest.hexdigest()


def subtree(tree: Mapping[str, bytes], prefix: str) -> FileTree:
    """Return the files under *prefix*, with paths relative to it."""
    prefix = prefix.strip("/")
    if not prefix:
        return dict(tree)
    marker = prefix + "/"
    return {path[len(marker):]: data for path, data in tree.items() if path.startswith(marker)}


def read_directory_files(path: str | Path) -> FileTree:
    """Load every file under a single policy version directory."""
    return DirectorySnapshotReader().read_tree(str(path))


# ---------------------------------------------------------------------------
# Per-version documents
# ---------------------------------------------------------------------------


class DocumentParseError(ValueError):
    """Raised when a metadata or definition file is missing or malformed."""


def load_metadata(files: Mapping[str, bytes], filename: str = "metadata.json") -> dict[str, Any]:
    """Parse a version's metadata JSON file into a dict.

    Raises:
        DocumentParseError: If the file is missing, not valid JSON, or its
            root is not an object.
    """
    raw = files.get(filename)
    if raw is None:
        raise DocumentParseError(f"{filename} not found")

    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DocumentParseError(f"{filename}: malformed JSON — {exc}") from exc

    if not isinstance(data, dict):
        raise DocumentParseError(
            f"{filename}: expected a JSON object at root, got {type(data).__name__}"
        )
    return data


def load_policy_definition(
    files: Mapping[str, bytes], filename: str = "policy-definition.yaml"
) -> dict[str, Any]:
    """Parse a version's policy definition YAML into a dict.

    Raises:
        DocumentParseError: If the file is missing, malformed YAML, or its
            root is not a mapping.
    """
    raw = files.get(filename)
    if raw is None:
        raise DocumentParseError(f"{filename} not found")

    try:
        data = yaml.safe_load(raw.decode("utf-8"))
    except (UnicodeDecodeError, yaml.YAMLError) as exc:
        raise DocumentParseError(f"{filename}: malformed YAML — {exc}") from exc

    if not isinstance(data, dict):
        raise DocumentParseError(
            f"{filename}: expected a YAML mapping at root, got {type(data).__name__}"
        )
    return data
