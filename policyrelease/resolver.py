# resolver.py — Computes which policy versions are new or changed between two snapshots.

from __future__ import annotations

import logging
from collections import defaultdict

from policyrelease.errors import ResolutionError, SnapshotReadError
from policyrelease.loader import FileTree, SnapshotReader, compute_content_hash
from policyrelease.models import Candidate, PolicyVersionRef, is_semver_dir

logger = logging.getLogger(__name__)


class VersionSetResolver:
    """Diffs two repository snapshots into an ordered list of release candidates.

    Policy versions live at ``<policies_root>/<name>/<vX.Y.Z>/...``.  A version
    is a candidate when the diff touches it, it exists in the current
    snapshot, and it is either absent from the previous snapshot or its
    content hash changed.

    Args:
        reader:        Snapshot reader used to load trees and diffs.
        policies_root: Directory holding the policy tree, relative to the
            repository root.  Empty string means the repository root.
    """

    def __init__(self, reader: SnapshotReader, policies_root: str = "policies") -> None:
        self._reader = reader
        self._root = policies_root.strip("/")

    def resolve(self, previous_ref: str, current_ref: str) -> list[PolicyVersionRef]:
        """Return the candidate refs, sorted by (name, version) ascending.

        Raises:
            ResolutionError: If either snapshot or their diff cannot be read.
        """
        return [c.ref for c in self.resolve_candidates(previous_ref, current_ref)]

    def resolve_candidates(self, previous_ref: str, current_ref: str) -> list[Candidate]:
        """Like :meth:`resolve`, but each candidate carries its file tree."""
        try:
            previous_tree = self._reader.read_tree(previous_ref)
            current_tree = self._reader.read_tree(current_ref)
            changed_paths = self._reader.diff_trees(previous_ref, current_ref)
        except SnapshotReadError as exc:
            raise ResolutionError(
                f"Cannot resolve {previous_ref!r}..{current_ref!r}: {exc}"
            ) from exc

        previous_versions = self._group_versions(previous_tree)
        current_versions = self._group_versions(current_tree, warn=True)
        touched = {key for path in changed_paths if (key := self._version_of(path)) is not None}

        candidates: list[Candidate] = []
        for key in touched:
            files = current_versions.get(key)
            if files is None:
                # Removed in the current snapshot; nothing to publish.
                continue
            content_hash = compute_content_hash(files)
            old_files = previous_versions.get(key)
            if old_files is not None and compute_content_hash(old_files) == content_hash:
                continue
            name, version = key
            candidates.append(
                Candidate(
                    ref=PolicyVersionRef(name=name, version=version, content_hash=content_hash),
                    files=files,
                )
            )

        candidates.sort(key=lambda c: c.ref.sort_key())
        logger.info(
            "Resolved %d candidate(s) between %s and %s",
            len(candidates),
            previous_ref,
            current_ref,
        )
        return candidates

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _split(self, path: str) -> list[str] | None:
        """Strip the policies root; ``None`` when *path* lies outside it."""
        if self._root:
            marker = self._root + "/"
            if not path.startswith(marker):
                return None
            path = path[len(marker):]
        return path.split("/")

    def _version_of(self, path: str) -> tuple[str, str] | None:
        parts = self._split(path)
        if parts is None or len(parts) < 3 or not is_semver_dir(parts[1]):
            return None
        return parts[0], parts[1]

    def _group_versions(
        self, tree: FileTree, *, warn: bool = False
    ) -> dict[tuple[str, str], FileTree]:
        grouped: dict[tuple[str, str], FileTree] = defaultdict(dict)
        ignored: set[str] = set()

        for path, data in tree.items():
            parts = self._split(path)
            if parts is None or len(parts) < 3:
                continue
            name, version, rest = parts[0], parts[1], "/".join(parts[2:])
            if not is_semver_dir(version):
                ignored.add(f"{name}/{version}")
                continue
            grouped[(name, version)][rest] = data

        for directory in sorted(ignored) if warn else ():
            logger.warning(
                "Ignoring %s: version directory is not vMAJOR.MINOR.PATCH", directory
            )
        return dict(grouped)
