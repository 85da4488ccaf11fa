# registry.py — Publish backend adapters for policy artifacts.
# One abstract capability set (lookup / upload / delete) with an in-memory,
# a filesystem artifact-store, and an HTTP registry-API implementation.

from __future__ import annotations

import asyncio
import gzip
import io
import logging
import os
import tarfile
from abc import ABC, abstractmethod
from collections import deque
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

from policyrelease.errors import (
    PublishError,
    RetryablePublishError,
    RollbackFailure,
    TerminalPublishError,
)
from policyrelease.models import (
    Candidate,
    PolicyVersionRef,
    PublishAttempt,
    PublishOutcome,
    PublishTarget,
)

if TYPE_CHECKING:
    from policyrelease.config import TargetConfig

logger = logging.getLogger(__name__)

ARTIFACT_MEDIA_TYPE = "application/gzip"
CONTENT_HASH_HEADER = "X-Content-Hash"

# HTTP statuses worth another attempt; every other 4xx/5xx is terminal.
_RETRYABLE_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})


# ---------------------------------------------------------------------------
# Artifact packaging
# ---------------------------------------------------------------------------


def build_artifact(candidate: Candidate) -> bytes:
    """Pack a candidate's files into a deterministic ``.tar.gz``.

    Entries are sorted and every timestamp is zeroed, so the same tree always
    yields the same bytes.
    """
    buffer = io.BytesIO()
    with gzip.GzipFile(fileobj=buffer, mode="wb", mtime=0) as gz:
        with tarfile.open(fileobj=gz, mode="w") as tar:
            prefix = f"{candidate.ref.name}/{candidate.ref.version}"
            for relative in sorted(candidate.files):
                data = candidate.files[relative]
                info = tarfile.TarInfo(name=f"{prefix}/{relative}")
                info.size = len(data)
                info.mtime = 0
                info.mode = 0o644
                tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


# ---------------------------------------------------------------------------
# Abstract backend
# ---------------------------------------------------------------------------


class PublishBackend(ABC):
    """Adapter pushing validated artifacts to one storage or registry target.

    Subclasses implement the primitive capabilities; :meth:`publish` and
    :meth:`rollback` layer the idempotency and classification rules on top:

    * a second publish of identical content finds the artifact via
      :meth:`lookup` and succeeds without side effects;
    * a version already published with different content is a terminal
      failure (published versions are immutable);
    * rollback of an absent artifact is a no-op success.
    """

    def __init__(self, target: PublishTarget) -> None:
        self.target = target

    @property
    def name(self) -> str:
        return self.target.name

    # -- capabilities ---------------------------------------------------

    @abstractmethod
    async def lookup(self, ref: PolicyVersionRef) -> str | None:
        """Return the stored content hash for *ref*, or ``None`` if absent."""

    @abstractmethod
    async def upload(self, candidate: Candidate, artifact: bytes) -> None:
        """Store *artifact* for *candidate*; raise :class:`PublishError` on failure."""

    async def delete(self, ref: PolicyVersionRef) -> None:
        """Remove the artifact for *ref*.  Only called when rollback is supported."""
        raise TerminalPublishError(f"{self.name} cannot delete artifacts")

    async def idempotency_check(self, ref: PolicyVersionRef) -> bool:
        """``True`` when exactly this content is already published."""
        return await self.lookup(ref) == ref.content_hash

    # -- template operations --------------------------------------------

    async def publish(self, candidate: Candidate, *, attempt_number: int = 1) -> PublishAttempt:
        """Publish *candidate* and describe the outcome as a :class:`PublishAttempt`.

        Never raises for backend problems: they come back as a failure
        attempt with ``retryable`` set from the error classification.
        """
        ref = candidate.ref
        try:
            existing = await self.lookup(ref)
            if existing == ref.content_hash:
                logger.info("%s already present on %s; nothing to do", ref.key, self.name)
                return self._attempt(ref, attempt_number, PublishOutcome.SUCCESS, created=False)
            if existing is not None:
                raise TerminalPublishError(
                    f"{ref.key} is already published on {self.name} with different "
                    f"content ({existing[:12]} != {ref.content_hash[:12]})"
                )
            await self.upload(candidate, build_artifact(candidate))
        except PublishError as exc:
            level = logging.WARNING if exc.retryable else logging.ERROR
            logger.log(
                level,
                "Publishing %s to %s failed (attempt %d, %s): %s",
                ref.key,
                self.name,
                attempt_number,
                "retryable" if exc.retryable else "terminal",
                exc,
            )
            return self._attempt(
                ref,
                attempt_number,
                PublishOutcome.FAILURE,
                error=str(exc),
                retryable=exc.retryable,
            )

        logger.info("Published %s to %s", ref.key, self.name)
        return self._attempt(ref, attempt_number, PublishOutcome.SUCCESS, created=True)

    async def rollback(self, ref: PolicyVersionRef) -> None:
        """Reverse a prior publish of *ref*.

        Raises:
            RollbackFailure: If the target does not support rollback, the
                stored content is not the one this release published, or the
                backend fails.
        """
        if not self.target.supports_rollback:
            raise RollbackFailure(f"{self.name} does not support rollback")
        try:
            existing = await self.lookup(ref)
            if existing is None:
                logger.info("%s already absent from %s; rollback is a no-op", ref.key, self.name)
                return
            if existing != ref.content_hash:
                raise RollbackFailure(
                    f"{ref.key} on {self.name} holds different content "
                    f"({existing[:12]}); refusing to delete it"
                )
            await self.delete(ref)
        except PublishError as exc:
            raise RollbackFailure(f"Rolling back {ref.key} on {self.name} failed: {exc}") from exc
        logger.info("Rolled back %s on %s", ref.key, self.name)

    def _attempt(
        self,
        ref: PolicyVersionRef,
        attempt_number: int,
        outcome: PublishOutcome,
        *,
        error: str | None = None,
        retryable: bool | None = None,
        created: bool = False,
    ) -> PublishAttempt:
        return PublishAttempt(
            ref=ref,
            target=self.name,
            attempt_number=attempt_number,
            outcome=outcome,
            error=error,
            retryable=retryable,
            created=created,
        )


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryBackend(PublishBackend):
    """Process-local backend, with optional fault injection.

    Args:
        target:        Target identity.
        faults:        Errors raised by successive ``upload`` calls, in order;
                       once exhausted uploads succeed.
        always_fail:   Error raised by every ``upload`` call.
        delete_error:  Error raised by every ``delete`` call.
        latency:       Seconds each capability call sleeps.
    """

    def __init__(
        self,
        target: PublishTarget,
        *,
        faults: list[PublishError] | None = None,
        always_fail: PublishError | None = None,
        delete_error: PublishError | None = None,
        latency: float = 0.0,
    ) -> None:
        super().__init__(target)
        self.artifacts: dict[str, tuple[str, bytes]] = {}
        self.upload_calls = 0
        self.delete_calls = 0
        self._faults = deque(faults or [])
        self._always_fail = always_fail
        self._delete_error = delete_error
        self._latency = latency

    async def _pause(self) -> None:
        await asyncio.sleep(self._latency)

    async def lookup(self, ref: PolicyVersionRef) -> str | None:
        await self._pause()
        stored = self.artifacts.get(ref.key)
        return stored[0] if stored is not None else None

    async def upload(self, candidate: Candidate, artifact: bytes) -> None:
        self.upload_calls += 1
        await self._pause()
        if self._always_fail is not None:
            raise self._always_fail
        if self._faults:
            raise self._faults.popleft()
        self.artifacts[candidate.ref.key] = (candidate.ref.content_hash, artifact)

    async def delete(self, ref: PolicyVersionRef) -> None:
        self.delete_calls += 1
        await self._pause()
        if self._delete_error is not None:
            raise self._delete_error
        self.artifacts.pop(ref.key, None)


# ---------------------------------------------------------------------------
# Filesystem artifact store
# ---------------------------------------------------------------------------


class FileSystemArtifactStore(PublishBackend):
    """Artifact store laid out as ``<base>/<name>/<version>.tar.gz``.

    A ``.sha256`` sidecar next to each archive holds the content hash used for
    idempotency checks.  Blocking file I/O runs in worker threads.
    """

    def __init__(self, target: PublishTarget, base_path: str | Path) -> None:
        super().__init__(target)
        self.base_path = Path(base_path)

    def _archive(self, ref: PolicyVersionRef) -> Path:
        return self.base_path / ref.name / f"{ref.version}.tar.gz"

    def _sidecar(self, ref: PolicyVersionRef) -> Path:
        return self.base_path / ref.name / f"{ref.version}.sha256"

    @staticmethod
    def _classify(exc: OSError) -> PublishError:
        if isinstance(exc, PermissionError):
            return TerminalPublishError(f"permission denied: {exc}")
        return RetryablePublishError(f"I/O error: {exc}")

    async def lookup(self, ref: PolicyVersionRef) -> str | None:
        def _read() -> str | None:
            sidecar = self._sidecar(ref)
            if not sidecar.exists() or not self._archive(ref).exists():
                return None
            return sidecar.read_text(encoding="utf-8").strip()

        try:
            return await asyncio.to_thread(_read)
        except OSError as exc:
            raise self._classify(exc) from exc

    async def upload(self, candidate: Candidate, artifact: bytes) -> None:
        ref = candidate.ref

        def _write() -> None:
            archive = self._archive(ref)
            archive.parent.mkdir(parents=True, exist_ok=True)
            partial = archive.with_suffix(".partial")
            partial.write_bytes(artifact)
            partial.replace(archive)
            self._sidecar(ref).write_text(ref.content_hash + "\n", encoding="utf-8")

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            raise self._classify(exc) from exc

    async def delete(self, ref: PolicyVersionRef) -> None:
        def _remove() -> None:
            self._sidecar(ref).unlink(missing_ok=True)
            self._archive(ref).unlink(missing_ok=True)

        try:
            await asyncio.to_thread(_remove)
        except OSError as exc:
            raise self._classify(exc) from exc


# ---------------------------------------------------------------------------
# HTTP registry API
# ---------------------------------------------------------------------------


class RegistryApiBackend(PublishBackend):
    """Policy registry reached over HTTP.

    Endpoints, relative to *base_url*:

    * ``GET /policies/{name}/versions/{version}`` → 200 with
      ``{"content_hash": ...}`` or 404;
    * ``PUT`` on the same path with the gzip artifact as body;
    * ``DELETE`` on the same path (404 counts as already absent).

    Timeouts, transport errors, 408/425/429 and 5xx are retryable; any other
    error status (auth, permission, malformed, conflict) is terminal.

    Args:
        target:     Target identity.
        base_url:   Registry root URL.
        token:      Optional bearer token.
        timeout:    Per-request timeout in seconds.
        transport:  Optional httpx transport (used by tests).
    """

    def __init__(
        self,
        target: PublishTarget,
        base_url: str,
        *,
        token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(target)
        self.base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    @staticmethod
    def _path(ref: PolicyVersionRef) -> str:
        return f"/policies/{ref.name}/versions/{ref.version}"

    async def _request(self, method: str, ref: PolicyVersionRef, **kwargs) -> httpx.Response:
        try:
            async with self._client() as client:
                return await client.request(method, self._path(ref), **kwargs)
        except httpx.TimeoutException as exc:
            raise RetryablePublishError(f"{method} {self._path(ref)} timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise RetryablePublishError(f"{method} {self._path(ref)} network error: {exc}") from exc

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.is_success:
            return
        detail = f"{response.request.method} {response.request.url.path} -> HTTP {response.status_code}"
        body = response.text.strip()
        if body:
            detail = f"{detail}: {body[:200]}"
        if response.status_code in _RETRYABLE_STATUSES:
            raise RetryablePublishError(detail)
        raise TerminalPublishError(detail)

    async def lookup(self, ref: PolicyVersionRef) -> str | None:
        response = await self._request("GET", ref)
        if response.status_code == 404:
            return None
        self._raise_for_status(response)
        try:
            payload = response.json()
        except ValueError as exc:
            raise RetryablePublishError(f"registry returned non-JSON lookup body: {exc}") from exc
        content_hash = payload.get("content_hash") if isinstance(payload, dict) else None
        if not isinstance(content_hash, str):
            raise TerminalPublishError("registry lookup response lacks 'content_hash'")
        return content_hash

    async def upload(self, candidate: Candidate, artifact: bytes) -> None:
        response = await self._request(
            "PUT",
            candidate.ref,
            content=artifact,
            headers={
                "Content-Type": ARTIFACT_MEDIA_TYPE,
                CONTENT_HASH_HEADER: candidate.ref.content_hash,
            },
        )
        self._raise_for_status(response)

    async def delete(self, ref: PolicyVersionRef) -> None:
        response = await self._request("DELETE", ref)
        if response.status_code == 404:
            return
        self._raise_for_status(response)


# ---------------------------------------------------------------------------
# Configuration-driven construction
# ---------------------------------------------------------------------------


def build_backend(config: TargetConfig) -> PublishBackend:
    """Instantiate the backend described by a target configuration entry."""
    target = PublishTarget(name=config.name, supports_rollback=config.supports_rollback)

    if config.kind == "memory":
        return InMemoryBackend(target)
    if config.kind == "filesystem":
        return FileSystemArtifactStore(target, config.path or "artifacts")
    if config.kind == "registry":
        token = os.environ.get(config.token_env) if config.token_env else None
        return RegistryApiBackend(
            target,
            config.url or "",
            token=token,
            timeout=config.timeout_seconds,
        )
    raise ValueError(f"Unknown backend kind: {config.kind!r}")
