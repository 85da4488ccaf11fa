# errors.py — Exception taxonomy for the policy release engine.
# Fatal run errors, per-unit publish errors, and rollback failures.

from __future__ import annotations


class PolicyReleaseError(Exception):
    """Base class for every error raised by policyrelease."""


# ---------------------------------------------------------------------------
# Run-level errors (abort a release)
# ---------------------------------------------------------------------------


class SnapshotReadError(PolicyReleaseError):
    """Raised by a snapshot reader when a reference cannot be read."""


class ResolutionError(PolicyReleaseError):
    """Raised when the set of candidate versions cannot be computed.

    Always fatal for the run: without a reliable candidate set there is
    nothing safe to validate or publish.
    """


class IntegrityError(PolicyReleaseError):
    """Raised when the same (name, version) shows up with two content hashes."""


class InvariantViolation(PolicyReleaseError):
    """Raised when release state would be driven into an illegal shape."""


class ConfigLoadError(PolicyReleaseError):
    """Raised when a configuration file cannot be read or validated.

    When the cause is a parse or ``ValidationError`` it is chained via
    ``__cause__`` and the message includes the originating filename.
    """


class BuildOracleError(PolicyReleaseError):
    """Raised when the build oracle itself cannot run."""


# ---------------------------------------------------------------------------
# Per-unit errors (captured and recorded, never escape the orchestrator)
# ---------------------------------------------------------------------------


class PublishError(PolicyReleaseError):
    """A backend could not complete a publish-side operation.

    Attributes:
        retryable: ``True`` for transient infrastructure problems (network,
            timeouts, throttling) that may succeed on a later attempt.
    """

    retryable: bool = False

    def __init__(self, message: str, *, retryable: bool | None = None) -> None:
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class RetryablePublishError(PublishError):
    """Transient failure: network error, timeout, 5xx, rate limiting."""

    retryable = True


class TerminalPublishError(PublishError):
    """Non-retryable failure: malformed artifact, auth or permission, conflict."""

    retryable = False


class RollbackFailure(PolicyReleaseError):
    """A compensating rollback did not complete.

    The most severe outcome of a run: the published state no longer matches
    what the release intended and someone has to fix it by hand.
    """
