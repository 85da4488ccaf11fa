# test_loader.py — Tests for snapshot readers, content hashing, and document parsing.

from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path

import pytest

from policyrelease.errors import ResolutionError, SnapshotReadError
from policyrelease.loader import (
    DirectorySnapshotReader,
    DocumentParseError,
    GitSnapshotReader,
    InMemorySnapshotReader,
    compute_content_hash,
    diff_file_trees,
    load_metadata,
    load_policy_definition,
    read_directory_files,
    subtree,
)
from policyrelease.resolver import VersionSetResolver

# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def _write_tree(root: Path, files: dict[str, str]) -> Path:
    """Write *files* (relative path -> text) under *root* and return it."""
    for relative, text in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    return root


def _git(repo: Path, *args: str) -> None:
    subprocess.run(
        ["git", "-c", "user.name=Test", "-c", "user.email=test@example.com", *args],
        cwd=repo,
        check=True,
        capture_output=True,
    )


# ---------------------------------------------------------------------------
# Content hashing
# ---------------------------------------------------------------------------


class TestComputeContentHash:
    """Content-addressed digests of file trees."""

    def test_independent_of_insertion_order(self) -> None:
        a = {"x.txt": b"1", "y.txt": b"2"}
        b = {"y.txt": b"2", "x.txt": b"1"}
        assert compute_content_hash(a) == compute_content_hash(b)

    def test_changes_with_content(self) -> None:
        assert compute_content_hash({"x": b"1"}) != compute_content_hash({"x": b"2"})

    def test_changes_with_path(self) -> None:
        """Renaming a file changes the digest even if bytes are identical."""
        assert compute_content_hash({"x": b"1"}) != compute_content_hash({"y": b"1"})

    def test_is_sha256_hex(self) -> None:
        digest = compute_content_hash({})
        assert len(digest) == 64
        int(digest, 16)


class TestTreeHelpers:
    """diff_file_trees and subtree."""

    def test_diff_reports_added_removed_and_modified(self) -> None:
        before = {"keep": b"1", "gone": b"1", "edit": b"1"}
        after = {"keep": b"1", "new": b"1", "edit": b"2"}
        assert diff_file_trees(before, after) == {"gone", "new", "edit"}

    def test_subtree_strips_prefix(self) -> None:
        tree = {"policies/a/v1.0.0/x": b"1", "other/y": b"2"}
        assert subtree(tree, "policies/a") == {"v1.0.0/x": b"1"}

    def test_subtree_of_empty_prefix_is_whole_tree(self) -> None:
        tree = {"a": b"1"}
        assert subtree(tree, "") == tree


# ---------------------------------------------------------------------------
# Snapshot readers
# ---------------------------------------------------------------------------


class TestInMemorySnapshotReader:
    """Dict-backed snapshots."""

    def test_read_and_diff(self) -> None:
        reader = InMemorySnapshotReader({"a": {"f": b"1"}})
        reader.add("b", {"f": b"2", "g": b"3"})
        assert reader.read_tree("b") == {"f": b"2", "g": b"3"}
        assert reader.diff_trees("a", "b") == {"f", "g"}

    def test_unknown_ref_raises(self) -> None:
        with pytest.raises(SnapshotReadError, match="Unknown snapshot"):
            InMemorySnapshotReader().read_tree("missing")

    def test_returned_tree_is_a_copy(self) -> None:
        reader = InMemorySnapshotReader({"a": {"f": b"1"}})
        reader.read_tree("a")["f"] = b"changed"
        assert reader.read_tree("a") == {"f": b"1"}


class TestDirectorySnapshotReader:
    """Checkout directories as snapshots."""

    def test_reads_posix_relative_paths(self, tmp_path: Path) -> None:
        _write_tree(tmp_path / "snap", {"policies/a/v1.0.0/metadata.json": "{}"})
        tree = DirectorySnapshotReader().read_tree(str(tmp_path / "snap"))
        assert tree == {"policies/a/v1.0.0/metadata.json": b"{}"}

    def test_relative_refs_use_base_dir(self, tmp_path: Path) -> None:
        _write_tree(tmp_path / "snap", {"f.txt": "x"})
        assert DirectorySnapshotReader(tmp_path).read_tree("snap") == {"f.txt": b"x"}

    def test_skips_git_and_pycache(self, tmp_path: Path) -> None:
        _write_tree(
            tmp_path,
            {".git/HEAD": "ref", "__pycache__/m.pyc": "x", "keep.txt": "y"},
        )
        assert set(DirectorySnapshotReader().read_tree(str(tmp_path))) == {"keep.txt"}

    def test_missing_directory_raises(self, tmp_path: Path) -> None:
        with pytest.raises(SnapshotReadError, match="not found"):
            DirectorySnapshotReader().read_tree(str(tmp_path / "nope"))

    def test_diff_between_directories(self, tmp_path: Path) -> None:
        _write_tree(tmp_path / "a", {"f": "1"})
        _write_tree(tmp_path / "b", {"f": "1", "g": "2"})
        reader = DirectorySnapshotReader(tmp_path)
        assert reader.diff_trees("a", "b") == {"g"}

    def test_read_directory_files(self, tmp_path: Path) -> None:
        _write_tree(tmp_path, {"docs/README.md": "# hi"})
        assert read_directory_files(tmp_path) == {"docs/README.md": b"# hi"}


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
class TestGitSnapshotReader:
    """Git revisions as snapshots."""

    def _repo(self, tmp_path: Path) -> Path:
        repo = tmp_path / "repo"
        repo.mkdir()
        _git(repo, "init", "-q")
        _write_tree(repo, {"policies/a/v1.0.0/metadata.json": "{}"})
        _git(repo, "add", ".")
        _git(repo, "commit", "-q", "-m", "first")
        _git(repo, "tag", "r1")
        _write_tree(repo, {"policies/b/v1.0.0/metadata.json": "{}"})
        _git(repo, "add", ".")
        _git(repo, "commit", "-q", "-m", "second")
        _git(repo, "tag", "r2")
        return repo

    def test_read_tree_at_revision(self, tmp_path: Path) -> None:
        reader = GitSnapshotReader(self._repo(tmp_path))
        assert set(reader.read_tree("r1")) == {"policies/a/v1.0.0/metadata.json"}
        assert "policies/b/v1.0.0/metadata.json" in reader.read_tree("r2")

    def test_diff_trees(self, tmp_path: Path) -> None:
        reader = GitSnapshotReader(self._repo(tmp_path))
        assert reader.diff_trees("r1", "r2") == {"policies/b/v1.0.0/metadata.json"}

    def test_unknown_revision_raises(self, tmp_path: Path) -> None:
        reader = GitSnapshotReader(self._repo(tmp_path))
        with pytest.raises(SnapshotReadError, match="failed"):
            reader.read_tree("no-such-tag")

    def _repo_with_undecodable_path(self, tmp_path: Path) -> Path:
        repo = self._repo(tmp_path)
        bad = repo / "policies" / "b" / "v1.0.0" / os.fsdecode(b"bad\xff.md")
        bad.write_bytes(b"# bad name\n")
        _git(repo, "add", ".")
        _git(repo, "commit", "-q", "-m", "third")
        _git(repo, "tag", "r3")
        return repo

    def test_non_utf8_path_in_tree_raises(self, tmp_path: Path) -> None:
        reader = GitSnapshotReader(self._repo_with_undecodable_path(tmp_path))
        with pytest.raises(SnapshotReadError, match="not valid UTF-8"):
            reader.read_tree("r3")

    def test_non_utf8_path_in_diff_raises(self, tmp_path: Path) -> None:
        reader = GitSnapshotReader(self._repo_with_undecodable_path(tmp_path))
        with pytest.raises(SnapshotReadError, match="not valid UTF-8"):
            reader.diff_trees("r2", "r3")

    def test_non_utf8_path_is_a_resolution_error(self, tmp_path: Path) -> None:
        """An unreadable snapshot surfaces as ResolutionError, never a decode error."""
        resolver = VersionSetResolver(GitSnapshotReader(self._repo_with_undecodable_path(tmp_path)))
        with pytest.raises(ResolutionError):
            resolver.resolve("r2", "r3")


# ---------------------------------------------------------------------------
# Per-version documents
# ---------------------------------------------------------------------------


class TestLoadMetadata:
    """Parsing metadata.json."""

    def test_valid_object(self) -> None:
        assert load_metadata({"metadata.json": b'{"name": "a"}'}) == {"name": "a"}

    def test_missing_file(self) -> None:
        with pytest.raises(DocumentParseError, match="not found"):
            load_metadata({})

    def test_malformed_json(self) -> None:
        with pytest.raises(DocumentParseError, match="malformed JSON"):
            load_metadata({"metadata.json": b"{nope"})

    def test_non_object_root(self) -> None:
        with pytest.raises(DocumentParseError, match="expected a JSON object"):
            load_metadata({"metadata.json": b"[1, 2]"})


class TestLoadPolicyDefinition:
    """Parsing policy-definition.yaml."""

    def test_valid_mapping(self) -> None:
        files = {"policy-definition.yaml": b"rules:\n  - deny: all\n"}
        assert load_policy_definition(files) == {"rules": [{"deny": "all"}]}

    def test_malformed_yaml(self) -> None:
        with pytest.raises(DocumentParseError, match="malformed YAML"):
            load_policy_definition({"policy-definition.yaml": b"key: [unclosed"})

    def test_scalar_root_rejected(self) -> None:
        with pytest.raises(DocumentParseError, match="expected a YAML mapping"):
            load_policy_definition({"policy-definition.yaml": b"just text"})
