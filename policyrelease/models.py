# models.py — Pydantic v2 models for candidates, verdicts, attempts, and reports.
# Central data definitions shared across the policy release engine, plus the
# mutable ReleaseState owned by a single orchestrator run.

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel

from policyrelease.errors import IntegrityError, InvariantViolation

SEMVER_DIR_PATTERN = r"^v(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)$"
_SEMVER_DIR_RE = re.compile(SEMVER_DIR_PATTERN)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ValidationStatus(str, Enum):
    """Overall verdict of the validation pipeline for one candidate."""

    PASSED = "passed"
    FAILED = "failed"


class PublishOutcome(str, Enum):
    """Outcome of a single publish attempt.

    - **success**: the artifact is present on the target.
    - **retrying**: the attempt failed transiently and another one follows.
    - **failure**: the last attempt for the pair failed.
    """

    SUCCESS = "success"
    FAILURE = "failure"
    RETRYING = "retrying"


class ReleasePhase(str, Enum):
    """Release state machine.

    ``resolving → validating → publishing → reconciling`` followed by one of
    the terminal phases.
    """

    RESOLVING = "resolving"
    VALIDATING = "validating"
    PUBLISHING = "publishing"
    RECONCILING = "reconciling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PARTIALLY_SUCCEEDED = "partially_succeeded"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_PHASES


_TERMINAL_PHASES = frozenset(
    {ReleasePhase.SUCCEEDED, ReleasePhase.FAILED, ReleasePhase.PARTIALLY_SUCCEEDED}
)

_PHASE_ORDER = {
    ReleasePhase.RESOLVING: 0,
    ReleasePhase.VALIDATING: 1,
    ReleasePhase.PUBLISHING: 2,
    ReleasePhase.RECONCILING: 3,
    ReleasePhase.SUCCEEDED: 4,
    ReleasePhase.FAILED: 4,
    ReleasePhase.PARTIALLY_SUCCEEDED: 4,
}


class ReleaseStrategy(str, Enum):
    """How failures of one candidate affect the rest of the release.

    - **atomic**: every candidate succeeds or nothing stays published.
    - **best_effort**: candidates succeed or fail independently.
    """

    ATOMIC = "atomic"
    BEST_EFFORT = "best_effort"


class RecoveryStrategy(str, Enum):
    """Who acts on failures once publishing is over.

    - **manual**: nothing automatic; a recovery report is produced for humans.
    - **automatic**: transient failures are retried and partial releases are
      rolled back without human involvement.
    - **hybrid**: transient failures are retried automatically, rollback is
      left to humans.
    """

    MANUAL = "manual"
    AUTOMATIC = "automatic"
    HYBRID = "hybrid"


class VerdictStatus(str, Enum):
    """Final per-(candidate, target) status shown in a release report."""

    PUBLISHED = "published"
    ALREADY_PUBLISHED = "already_published"
    FAILED = "failed"
    SKIPPED = "skipped"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"


# ---------------------------------------------------------------------------
# Helpers for default factories
# ---------------------------------------------------------------------------


def _release_id() -> str:
    """Return a short unique release identifier."""
    return f"rel-{uuid.uuid4().hex[:12]}"


def _utc_now() -> datetime:
    """Return the current UTC timestamp for use as a field default factory."""
    return datetime.now(timezone.utc)


def semver_key(version: str) -> tuple[int, int, int]:
    """Sort key for a ``vMAJOR.MINOR.PATCH`` string."""
    match = _SEMVER_DIR_RE.match(version)
    if match is None:
        raise ValueError(f"not a vMAJOR.MINOR.PATCH version: {version!r}")
    return int(match.group(1)), int(match.group(2)), int(match.group(3))


def is_semver_dir(name: str) -> bool:
    return _SEMVER_DIR_RE.match(name) is not None


# ---------------------------------------------------------------------------
# Candidates
# ---------------------------------------------------------------------------


class PolicyVersionRef(BaseModel):
    """Identity of one policy version proposed for release.

    Attributes:
        name:          Contributor directory name of the policy.
        version:       Version directory name (``vMAJOR.MINOR.PATCH``).
        content_hash:  sha256 digest of the version's file tree.
    """

    model_config = {"frozen": True}

    name: str = Field(..., min_length=1, examples=["policy-x"])
    version: str = Field(..., pattern=SEMVER_DIR_PATTERN, examples=["v1.0.0"])
    content_hash: str = Field(..., min_length=1)

    @property
    def key(self) -> str:
        """``name/version``, unique within a release."""
        return f"{self.name}/{self.version}"

    def sort_key(self) -> tuple[str, tuple[int, int, int]]:
        return self.name, semver_key(self.version)


class Candidate(BaseModel):
    """A policy version together with its file tree.

    ``files`` maps paths relative to the version directory (POSIX separators)
    to raw bytes.
    """

    model_config = {"frozen": True}

    ref: PolicyVersionRef
    files: dict[str, bytes] = Field(default_factory=dict)

    def has_dir(self, directory: str) -> bool:
        prefix = directory.strip("/") + "/"
        return any(path.startswith(prefix) for path in self.files)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class CheckResult(BaseModel):
    """Outcome of one validation check.

    Attributes:
        check_name: Name of the check as declared in the pipeline.
        passed:     ``True`` when the check found nothing wrong.
        message:    Human-readable detail (what is missing or malformed).
        required:   Whether a failure of this check blocks the candidate.
    """

    check_name: str
    passed: bool
    message: str = ""
    required: bool = True


class ValidationResult(BaseModel):
    """Outcome of running the validation pipeline over one candidate.

    Attributes:
        ref:      The candidate that was validated.
        status:   ``failed`` when at least one required check failed.
        checks:   Check results in pipeline declaration order.
        warnings: Failures of non-required checks (permissive mode).
    """

    ref: PolicyVersionRef
    status: ValidationStatus
    checks: list[CheckResult] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.status is ValidationStatus.PASSED

    @property
    def failed_checks(self) -> list[CheckResult]:
        return [check for check in self.checks if not check.passed]


# ---------------------------------------------------------------------------
# Publishing
# ---------------------------------------------------------------------------


class PublishTarget(BaseModel):
    """One storage or registry backend identity."""

    model_config = {"frozen": True}

    name: str = Field(..., min_length=1, examples=["artifact-store"])
    supports_rollback: bool = True


class PublishAttempt(BaseModel):
    """One call to a backend's publish operation.

    Attributes:
        ref:            Candidate being published.
        target:         Name of the backend target.
        attempt_number: 1 for the initial attempt, incremented per retry.
        outcome:        success / failure / retrying.
        error:          Failure detail, if any.
        retryable:      Classification of the failure; ``None`` on success.
        created:        ``True`` when this attempt wrote a new artifact,
                        ``False`` when it found the artifact already there.
        recorded_at:    UTC timestamp of the attempt.
    """

    ref: PolicyVersionRef
    target: str
    attempt_number: int = Field(..., ge=1)
    outcome: PublishOutcome
    error: str | None = None
    retryable: bool | None = None
    created: bool = False
    recorded_at: datetime = Field(default_factory=_utc_now)


class RollbackRecord(BaseModel):
    """Result of one compensating rollback call."""

    ref: PolicyVersionRef
    target: str
    succeeded: bool
    error: str | None = None
    recorded_at: datetime = Field(default_factory=_utc_now)


# ---------------------------------------------------------------------------
# Configuration models
# ---------------------------------------------------------------------------


class RecoveryPolicy(BaseModel):
    """How the orchestrator reacts to failures after (and while) publishing.

    Attributes:
        strategy:                     manual / automatic / hybrid.
        rollback_on_partial_failure:  Roll back successful publishes when a
                                      release ends up partially published.
        retry_failed_policies:        Allow automatic retry of transient
                                      publish failures.
        max_retry_attempts:           Retries after the initial attempt.
        rollback_timeout:             Seconds allowed per rollback call.
    """

    model_config = {"alias_generator": to_camel, "populate_by_name": True}

    strategy: RecoveryStrategy = RecoveryStrategy.AUTOMATIC
    rollback_on_partial_failure: bool = True
    retry_failed_policies: bool = True
    max_retry_attempts: int = Field(default=3, ge=0)
    rollback_timeout: float = Field(default=300.0, gt=0)

    @property
    def allows_automatic_retry(self) -> bool:
        return self.retry_failed_policies and self.strategy is not RecoveryStrategy.MANUAL

    @property
    def allows_automatic_rollback(self) -> bool:
        return (
            self.rollback_on_partial_failure
            and self.strategy is RecoveryStrategy.AUTOMATIC
        )

    @property
    def max_attempts(self) -> int:
        """Upper bound on attempts for one (candidate, target) pair."""
        return self.max_retry_attempts + 1


_DEFAULT_METADATA_TYPES: dict[str, str] = {
    "name": "string",
    "version": "string",
    "description": "string",
    "author": "string",
    "tags": "array",
}

PRIMITIVE_TYPES = frozenset({"string", "integer", "number", "boolean", "array", "object"})


class ValidationConfig(BaseModel):
    """Runtime rules interpreted by the validation pipeline.

    Rules are data, not code: changing them needs no redeploy.
    """

    model_config = {"alias_generator": to_camel, "populate_by_name": True}

    required_files: set[str] = Field(
        default_factory=lambda: {"metadata.json", "policy-definition.yaml"}
    )
    required_dirs: set[str] = Field(default_factory=lambda: {"docs"})
    required_docs_files: set[str] = Field(default_factory=lambda: {"docs/README.md"})
    required_metadata_fields: set[str] = Field(
        default_factory=lambda: {"name", "version", "description", "author"}
    )
    metadata_field_types: dict[str, str] = Field(
        default_factory=lambda: dict(_DEFAULT_METADATA_TYPES)
    )
    strict_validation: bool = True
    enable_go_build_validation: bool = False
    max_parallel_jobs: int = Field(default=4, ge=1)
    metadata_file: str = "metadata.json"
    policy_definition_file: str = "policy-definition.yaml"
    policy_schema_path: str | None = None

    @field_validator("metadata_field_types")
    @classmethod
    def _known_types(cls, value: dict[str, str]) -> dict[str, str]:
        unknown = {t for t in value.values() if t not in PRIMITIVE_TYPES}
        if unknown:
            raise ValueError(
                f"unknown metadata field type(s): {', '.join(sorted(unknown))}; "
                f"expected one of {', '.join(sorted(PRIMITIVE_TYPES))}"
            )
        return value


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


class RecoveryItem(BaseModel):
    """One line of a recovery report."""

    policy: str = Field(..., description="``name/version`` of the candidate.")
    target: str | None = None
    reason: str = ""


class RecoveryReport(BaseModel):
    """What reconciliation did and what is left for humans.

    ``rollback_failures`` is the most severe bucket: those targets are in an
    inconsistent published state and need urgent attention.
    """

    strategy: RecoveryStrategy
    published: list[str] = Field(default_factory=list)
    rolled_back: list[RecoveryItem] = Field(default_factory=list)
    needs_manual_retry: list[RecoveryItem] = Field(default_factory=list)
    manual_rollback_required: list[RecoveryItem] = Field(default_factory=list)
    rollback_failures: list[RecoveryItem] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)

    @property
    def requires_manual_intervention(self) -> bool:
        return bool(
            self.needs_manual_retry
            or self.manual_rollback_required
            or self.rollback_failures
        )


class PublishVerdict(BaseModel):
    """Final status of one (candidate, target) pair."""

    ref: PolicyVersionRef
    target: str
    status: VerdictStatus
    attempts: int = 0
    retryable: bool | None = None
    error: str | None = None


_EXIT_CODES = {
    ReleasePhase.SUCCEEDED: 0,
    ReleasePhase.FAILED: 1,
    ReleasePhase.PARTIALLY_SUCCEEDED: 2,
}


class ReleaseReport(BaseModel):
    """Structured summary of one release run, consumed by outcome reporters."""

    release_id: str
    previous_ref: str
    current_ref: str
    strategy: ReleaseStrategy
    phase: ReleasePhase
    candidates: list[PolicyVersionRef] = Field(default_factory=list)
    validation: list[ValidationResult] = Field(default_factory=list)
    publish: list[PublishVerdict] = Field(default_factory=list)
    attempts: list[PublishAttempt] = Field(default_factory=list)
    recovery: RecoveryReport | None = None
    cancelled: bool = False
    error: str | None = None
    started_at: datetime = Field(default_factory=_utc_now)
    finished_at: datetime = Field(default_factory=_utc_now)

    def exit_code(self) -> int:
        """0 for succeeded, 1 for failed, 2 for partially succeeded."""
        return _EXIT_CODES.get(self.phase, 1)

    def verdicts_for(self, ref: PolicyVersionRef) -> list[PublishVerdict]:
        return [v for v in self.publish if v.ref.key == ref.key]


# ---------------------------------------------------------------------------
# Release state
# ---------------------------------------------------------------------------

PairKey = tuple[str, str]


class ReleaseState:
    """Mutable aggregate for one release run.

    Owned by exactly one orchestrator for a given ``release_id``; workers
    append attempts but only one worker ever handles a given
    (candidate, target) pair at a time.

    Args:
        strategy:       Atomic or best-effort release semantics.
        release_id:     Identifier for the run; generated when omitted.
        max_attempts:   Upper bound on attempts per (candidate, target).
    """

    def __init__(
        self,
        strategy: ReleaseStrategy,
        release_id: str | None = None,
        *,
        max_attempts: int | None = None,
    ) -> None:
        self.release_id = release_id or _release_id()
        self.strategy = strategy
        self.max_attempts = max_attempts
        self.phase = ReleasePhase.RESOLVING
        self.cancelled = False
        self.error: str | None = None
        self.started_at = _utc_now()
        self._candidates: dict[str, Candidate] = {}
        self._validation: dict[str, ValidationResult] = {}
        self._attempts: list[PublishAttempt] = []
        self._latest: dict[PairKey, PublishAttempt] = {}
        self._rollbacks: dict[PairKey, RollbackRecord] = {}
        self._targets: dict[str, PublishTarget] = {}

    # ------------------------------------------------------------------
    # Phase machine
    # ------------------------------------------------------------------

    def advance(self, phase: ReleasePhase) -> None:
        """Move to *phase*; phases never go backwards and terminals are final."""
        if self.phase.is_terminal:
            raise InvariantViolation(
                f"release {self.release_id} already finished in phase {self.phase.value}"
            )
        if _PHASE_ORDER[phase] < _PHASE_ORDER[self.phase]:
            raise InvariantViolation(
                f"release {self.release_id} cannot move from "
                f"{self.phase.value} back to {phase.value}"
            )
        self.phase = phase

    # ------------------------------------------------------------------
    # Candidates and validation
    # ------------------------------------------------------------------

    def add_candidate(self, candidate: Candidate) -> None:
        ref = candidate.ref
        existing = self._candidates.get(ref.key)
        if existing is not None:
            if existing.ref.content_hash != ref.content_hash:
                raise IntegrityError(
                    f"{ref.key} seen with two content hashes: "
                    f"{existing.ref.content_hash[:12]} and {ref.content_hash[:12]}"
                )
            return
        self._candidates[ref.key] = candidate

    @property
    def candidates(self) -> list[Candidate]:
        return sorted(self._candidates.values(), key=lambda c: c.ref.sort_key())

    @property
    def refs(self) -> list[PolicyVersionRef]:
        return [c.ref for c in self.candidates]

    def record_validation(self, result: ValidationResult) -> None:
        if result.ref.key not in self._candidates:
            raise InvariantViolation(f"validation result for unknown candidate {result.ref.key}")
        self._validation[result.ref.key] = result

    def validation_for(self, ref: PolicyVersionRef) -> ValidationResult | None:
        return self._validation.get(ref.key)

    @property
    def validation_results(self) -> list[ValidationResult]:
        return [self._validation[r.key] for r in self.refs if r.key in self._validation]

    @property
    def valid_candidates(self) -> list[Candidate]:
        return [
            c for c in self.candidates
            if (result := self._validation.get(c.ref.key)) is not None and result.passed
        ]

    @property
    def invalid_candidates(self) -> list[Candidate]:
        return [
            c for c in self.candidates
            if (result := self._validation.get(c.ref.key)) is not None and not result.passed
        ]

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def register_targets(self, targets: list[PublishTarget]) -> None:
        self._targets = {t.name: t for t in targets}

    @property
    def targets(self) -> list[str]:
        return list(self._targets)

    def target(self, name: str) -> PublishTarget:
        return self._targets[name]

    def unattempted_pairs(self) -> list[tuple[PolicyVersionRef, str]]:
        """Valid (candidate, target) pairs with no recorded attempt."""
        return [
            (c.ref, target)
            for c in self.valid_candidates
            for target in self._targets
            if (c.ref.key, target) not in self._latest
        ]

    def record_attempt(self, attempt: PublishAttempt) -> None:
        """Append *attempt* to the log and make it the latest for its pair."""
        result = self._validation.get(attempt.ref.key)
        if result is None or not result.passed:
            raise InvariantViolation(
                f"{attempt.ref.key} cannot be published before it passes validation"
            )
        if self.max_attempts is not None and attempt.attempt_number > self.max_attempts:
            raise InvariantViolation(
                f"{attempt.ref.key} on {attempt.target}: attempt "
                f"{attempt.attempt_number} exceeds the limit of {self.max_attempts}"
            )
        self._attempts.append(attempt)
        self._latest[(attempt.ref.key, attempt.target)] = attempt

    def attempt_count(self, ref: PolicyVersionRef, target: str) -> int:
        latest = self._latest.get((ref.key, target))
        return latest.attempt_number if latest is not None else 0

    def latest_attempt(self, ref: PolicyVersionRef, target: str) -> PublishAttempt | None:
        return self._latest.get((ref.key, target))

    @property
    def attempts(self) -> list[PublishAttempt]:
        return list(self._attempts)

    def attempts_for(self, ref: PolicyVersionRef, target: str) -> list[PublishAttempt]:
        return [a for a in self._attempts if a.ref.key == ref.key and a.target == target]

    def failed_pairs(self) -> list[PublishAttempt]:
        """Latest attempts that ended in failure, in candidate/target order."""
        return [
            a for a in self._ordered_latest() if a.outcome is PublishOutcome.FAILURE
        ]

    def successful_pairs(self) -> list[PublishAttempt]:
        return [
            a for a in self._ordered_latest() if a.outcome is PublishOutcome.SUCCESS
        ]

    def _ordered_latest(self) -> list[PublishAttempt]:
        ordered = []
        for ref in self.refs:
            for target in self._targets:
                attempt = self._latest.get((ref.key, target))
                if attempt is not None:
                    ordered.append(attempt)
        return ordered

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def record_rollback(self, record: RollbackRecord) -> None:
        self._rollbacks[(record.ref.key, record.target)] = record

    def rollback_for(self, ref: PolicyVersionRef, target: str) -> RollbackRecord | None:
        return self._rollbacks.get((ref.key, target))

    @property
    def rollbacks(self) -> list[RollbackRecord]:
        return list(self._rollbacks.values())

    @property
    def rollback_failures(self) -> list[RollbackRecord]:
        return [r for r in self._rollbacks.values() if not r.succeeded]
