# engine.py — Release orchestration engine.
# Resolves candidates, validates them in a bounded pool, publishes them to every
# configured backend under the release strategy, and reconciles failures.

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Sequence

from policyrelease.config import BackoffSettings, ReleaseConfig
from policyrelease.errors import InvariantViolation, ResolutionError, RollbackFailure
from policyrelease.loader import SnapshotReader
from policyrelease.models import (
    Candidate,
    CheckResult,
    PublishAttempt,
    PublishOutcome,
    PublishVerdict,
    RecoveryPolicy,
    RecoveryReport,
    ReleasePhase,
    ReleaseReport,
    ReleaseState,
    ReleaseStrategy,
    RollbackRecord,
    ValidationResult,
    ValidationStatus,
    VerdictStatus,
)
from policyrelease.recovery import RecoveryAction, RecoveryManager
from policyrelease.registry import PublishBackend, build_backend
from policyrelease.resolver import VersionSetResolver
from policyrelease.scheduler import CancellationToken, WorkerPool
from policyrelease.validator import BuildOracle, ValidationPipeline

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class ReleaseOrchestrator:
    """Drives one release from snapshot diff to terminal phase.

    The orchestrator owns the :class:`ReleaseState` of each run it executes.
    Validation and publish failures are captured per unit and aggregated;
    the run always reaches a terminal phase and a report.  Only
    :class:`IntegrityError` and :class:`InvariantViolation` escape.

    Args:
        resolver:          Computes the candidate set.
        pipeline:          Validates each candidate.
        backends:          Publish targets; names must be unique.
        strategy:          Atomic or best-effort release semantics.
        recovery_policy:   Retry and rollback rules.
        backoff:           Delay schedule between publish retries.
        max_parallel_jobs: Bound on concurrent validation and best-effort
                           publish units.  Defaults to the pipeline's
                           ``max_parallel_jobs``.
        recovery_manager:  Plans reconciliation; a default one when omitted.
        sleep:             Coroutine used for backoff delays.
    """

    def __init__(
        self,
        resolver: VersionSetResolver,
        pipeline: ValidationPipeline,
        backends: Sequence[PublishBackend],
        *,
        strategy: ReleaseStrategy = ReleaseStrategy.ATOMIC,
        recovery_policy: RecoveryPolicy | None = None,
        backoff: BackoffSettings | None = None,
        max_parallel_jobs: int | None = None,
        recovery_manager: RecoveryManager | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        names = [b.name for b in backends]
        if len(names) != len(set(names)):
            raise ValueError(f"backend names must be unique, got {names}")

        self._resolver = resolver
        self._pipeline = pipeline
        self._backends = list(backends)
        self._backends_by_name = {b.name: b for b in backends}
        self.strategy = strategy
        self.policy = recovery_policy or RecoveryPolicy()
        self._backoff = backoff or BackoffSettings()
        self._max_parallel_jobs = max_parallel_jobs or pipeline.config.max_parallel_jobs
        self._recovery = recovery_manager or RecoveryManager()
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        config: ReleaseConfig,
        reader: SnapshotReader,
        *,
        backends: Sequence[PublishBackend] | None = None,
        build_oracle: BuildOracle | None = None,
    ) -> ReleaseOrchestrator:
        """Build an orchestrator whose backends are selected by *config*."""
        if backends is None:
            backends = [build_backend(target) for target in config.targets]
        return cls(
            VersionSetResolver(reader, config.policies_root),
            ValidationPipeline(config.validation, build_oracle=build_oracle),
            backends,
            strategy=config.strategy,
            recovery_policy=config.recovery,
            backoff=config.backoff,
            max_parallel_jobs=config.validation.max_parallel_jobs,
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def execute(
        self,
        previous_ref: str,
        current_ref: str,
        *,
        release_id: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> ReleaseReport:
        """Synchronous wrapper around :meth:`run`."""
        return asyncio.run(
            self.run(previous_ref, current_ref, release_id=release_id, cancel=cancel)
        )

    async def run(
        self,
        previous_ref: str,
        current_ref: str,
        *,
        release_id: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> ReleaseReport:
        """Run one release between two snapshot references.

        Returns:
            The :class:`ReleaseReport` for the terminal phase reached.

        Raises:
            IntegrityError: If a (name, version) appears with two hashes.
            InvariantViolation: If release state would become inconsistent.
        """
        cancel = cancel or CancellationToken()
        state = ReleaseState(self.strategy, release_id, max_attempts=self.policy.max_attempts)
        state.register_targets([b.target for b in self._backends])
        logger.info(
            "Release %s (%s): resolving %s..%s",
            state.release_id,
            self.strategy.value,
            previous_ref,
            current_ref,
        )

        # -- resolving -------------------------------------------------
        try:
            candidates = await asyncio.to_thread(
                self._resolver.resolve_candidates, previous_ref, current_ref
            )
        except ResolutionError as exc:
            logger.error("Release %s: %s", state.release_id, exc)
            state.error = str(exc)
            return self._finish(state, ReleasePhase.FAILED, previous_ref, current_ref)

        for candidate in candidates:
            state.add_candidate(candidate)
        if not candidates:
            logger.info("Release %s: no new policy versions; nothing to do", state.release_id)
            return self._finish(state, ReleasePhase.SUCCEEDED, previous_ref, current_ref)

        # -- validating ------------------------------------------------
        state.advance(ReleasePhase.VALIDATING)
        await self._validate(state, cancel)
        if state.cancelled:
            return self._finish_cancelled(state, previous_ref, current_ref)

        invalid = state.invalid_candidates
        if invalid and self.strategy is ReleaseStrategy.ATOMIC:
            logger.warning(
                "Release %s: %d candidate(s) failed validation; atomic release aborted "
                "before publishing: %s",
                state.release_id,
                len(invalid),
                ", ".join(c.ref.key for c in invalid),
            )
            return self._finish(state, ReleasePhase.FAILED, previous_ref, current_ref)
        if not state.valid_candidates:
            logger.warning("Release %s: no candidate passed validation", state.release_id)
            return self._finish(state, ReleasePhase.FAILED, previous_ref, current_ref)

        # -- publishing ------------------------------------------------
        state.advance(ReleasePhase.PUBLISHING)
        await self._publish(state, cancel)

        # -- reconciling -----------------------------------------------
        state.advance(ReleasePhase.RECONCILING)
        recovery = await self._reconcile(state, cancel)
        phase = self._final_phase(state)
        return self._finish(state, phase, previous_ref, current_ref, recovery=recovery)

    # ------------------------------------------------------------------
    # Validating
    # ------------------------------------------------------------------

    async def _validate(self, state: ReleaseState, cancel: CancellationToken) -> None:
        pool: WorkerPool[Candidate, ValidationResult] = WorkerPool(
            self._max_parallel_jobs, cancel=cancel, name="validate"
        )
        candidates = state.candidates
        results = await pool.map(self._validate_one, candidates)
        for result in results:
            if result is None:
                state.cancelled = True
            else:
                state.record_validation(result)
        logger.info(
            "Release %s: %d of %d candidate(s) passed validation",
            state.release_id,
            len(state.valid_candidates),
            len(candidates),
        )

    async def _validate_one(self, candidate: Candidate) -> ValidationResult:
        try:
            return await asyncio.to_thread(self._pipeline.validate, candidate)
        except Exception as exc:
            logger.exception("Validation of %s raised", candidate.ref.key)
            return ValidationResult(
                ref=candidate.ref,
                status=ValidationStatus.FAILED,
                checks=[
                    CheckResult(
                        check_name="validation",
                        passed=False,
                        message=f"validation raised {exc!r}",
                    )
                ],
            )

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def _publish(self, state: ReleaseState, cancel: CancellationToken) -> None:
        pairs = [(c, b) for c in state.valid_candidates for b in self._backends]

        if self.strategy is ReleaseStrategy.ATOMIC:
            # Serialized and fail-fast.
            for candidate, backend in pairs:
                if cancel.cancelled:
                    state.cancelled = True
                    break
                attempt = await self._publish_pair(state, candidate, backend, cancel)
                if attempt.outcome is PublishOutcome.FAILURE:
                    logger.warning(
                        "Release %s: %s failed on %s; aborting remaining publishes",
                        state.release_id,
                        candidate.ref.key,
                        backend.name,
                    )
                    break
            return

        pool: WorkerPool[tuple[Candidate, PublishBackend], PublishAttempt] = WorkerPool(
            self._max_parallel_jobs, cancel=cancel, name="publish"
        )
        results = await pool.map(
            lambda pair: self._publish_pair(state, pair[0], pair[1], cancel), pairs
        )
        if any(result is None for result in results):
            state.cancelled = True

    async def _publish_pair(
        self,
        state: ReleaseState,
        candidate: Candidate,
        backend: PublishBackend,
        cancel: CancellationToken,
    ) -> PublishAttempt:
        """Publish one (candidate, target) pair, retrying transient failures."""
        ref = candidate.ref
        attempt_number = state.attempt_count(ref, backend.name)
        if self.policy.allows_automatic_retry:
            limit = self.policy.max_attempts
        else:
            limit = attempt_number + 1

        while True:
            attempt_number += 1
            attempt = await self._attempt(candidate, backend, attempt_number)
            will_retry = (
                attempt.outcome is PublishOutcome.FAILURE
                and bool(attempt.retryable)
                and attempt_number < limit
                and not cancel.cancelled
            )
            if will_retry:
                attempt = attempt.model_copy(update={"outcome": PublishOutcome.RETRYING})
            state.record_attempt(attempt)
            if not will_retry:
                return attempt

            delay = self._backoff.delay_for(attempt_number)
            logger.warning(
                "Retrying %s on %s in %.1fs (attempt %d of %d failed: %s)",
                ref.key,
                backend.name,
                delay,
                attempt_number,
                limit,
                attempt.error,
            )
            await self._sleep(delay)

    async def _attempt(
        self, candidate: Candidate, backend: PublishBackend, attempt_number: int
    ) -> PublishAttempt:
        try:
            return await backend.publish(candidate, attempt_number=attempt_number)
        except Exception as exc:
            logger.exception(
                "Backend %s raised while publishing %s", backend.name, candidate.ref.key
            )
            return PublishAttempt(
                ref=candidate.ref,
                target=backend.name,
                attempt_number=attempt_number,
                outcome=PublishOutcome.FAILURE,
                error=f"unexpected backend error: {exc!r}",
                retryable=False,
            )

    # ------------------------------------------------------------------
    # Reconciling
    # ------------------------------------------------------------------

    async def _reconcile(self, state: ReleaseState, cancel: CancellationToken) -> RecoveryReport:
        plan = self._recovery.plan(state, self.policy)

        if plan.retries:
            candidates = {c.ref.key: c for c in state.candidates}
            for action in plan.retries:
                if cancel.cancelled:
                    state.cancelled = True
                    break
                logger.info(
                    "Release %s: retrying %s on %s", state.release_id, action.ref.key, action.target
                )
                await self._publish_pair(
                    state,
                    candidates[action.ref.key],
                    self._backends_by_name[action.target],
                    cancel,
                )
            plan = self._recovery.plan(state, self.policy)

        for action in plan.rollbacks:
            if cancel.cancelled:
                state.cancelled = True
                break
            await self._rollback(state, action)

        report = self._recovery.reconcile(state, self.policy)
        for item in report.rollback_failures:
            logger.error(
                "Release %s: rollback of %s on %s FAILED (%s); manual repair required",
                state.release_id,
                item.policy,
                item.target,
                item.reason,
            )
        return report

    async def _rollback(self, state: ReleaseState, action: RecoveryAction) -> None:
        backend = self._backends_by_name[action.target]
        error: str | None = None
        try:
            await asyncio.wait_for(
                backend.rollback(action.ref), timeout=self.policy.rollback_timeout
            )
        except RollbackFailure as exc:
            error = str(exc)
        except asyncio.TimeoutError:
            error = f"rollback timed out after {self.policy.rollback_timeout:g}s"
        except Exception as exc:
            logger.exception("Backend %s raised during rollback", backend.name)
            error = f"unexpected backend error: {exc!r}"

        state.record_rollback(
            RollbackRecord(
                ref=action.ref,
                target=action.target,
                succeeded=error is None,
                error=error,
            )
        )

    # ------------------------------------------------------------------
    # Finishing
    # ------------------------------------------------------------------

    @staticmethod
    def _final_phase(state: ReleaseState) -> ReleasePhase:
        if state.cancelled or state.rollback_failures:
            return ReleasePhase.FAILED

        has_failures = bool(
            state.invalid_candidates or state.failed_pairs() or state.unattempted_pairs()
        )
        if not has_failures:
            return ReleasePhase.SUCCEEDED
        if state.strategy is ReleaseStrategy.ATOMIC:
            return ReleasePhase.FAILED

        surviving = [
            a for a in state.successful_pairs() if state.rollback_for(a.ref, a.target) is None
        ]
        return ReleasePhase.PARTIALLY_SUCCEEDED if surviving else ReleasePhase.FAILED

    def _finish_cancelled(
        self, state: ReleaseState, previous_ref: str, current_ref: str
    ) -> ReleaseReport:
        logger.warning("Release %s cancelled; manual recovery required", state.release_id)
        recovery = self._recovery.reconcile(state, self.policy)
        return self._finish(state, ReleasePhase.FAILED, previous_ref, current_ref, recovery=recovery)

    def _finish(
        self,
        state: ReleaseState,
        phase: ReleasePhase,
        previous_ref: str,
        current_ref: str,
        *,
        recovery: RecoveryReport | None = None,
    ) -> ReleaseReport:
        if not phase.is_terminal:
            raise InvariantViolation(f"{phase.value} is not a terminal phase")

        published = state.phase in (ReleasePhase.PUBLISHING, ReleasePhase.RECONCILING)
        verdicts = self._verdicts(state) if published else []
        state.advance(phase)

        logger.info("Release %s finished: %s", state.release_id, phase.value)
        return ReleaseReport(
            release_id=state.release_id,
            previous_ref=previous_ref,
            current_ref=current_ref,
            strategy=state.strategy,
            phase=phase,
            candidates=state.refs,
            validation=state.validation_results,
            publish=verdicts,
            attempts=state.attempts,
            recovery=recovery,
            cancelled=state.cancelled,
            error=state.error,
            started_at=state.started_at,
        )

    @staticmethod
    def _verdicts(state: ReleaseState) -> list[PublishVerdict]:
        verdicts: list[PublishVerdict] = []
        for candidate in state.valid_candidates:
            ref = candidate.ref
            for target in state.targets:
                latest = state.latest_attempt(ref, target)
                rollback = state.rollback_for(ref, target)
                if latest is None:
                    verdicts.append(PublishVerdict(ref=ref, target=target, status=VerdictStatus.SKIPPED))
                    continue

                if rollback is not None:
                    status = (
                        VerdictStatus.ROLLED_BACK if rollback.succeeded
                        else VerdictStatus.ROLLBACK_FAILED
                    )
                    error = rollback.error
                elif latest.outcome is PublishOutcome.SUCCESS:
                    status = (
                        VerdictStatus.PUBLISHED if latest.created
                        else VerdictStatus.ALREADY_PUBLISHED
                    )
                    error = None
                else:
                    status = VerdictStatus.FAILED
                    error = latest.error

                verdicts.append(
                    PublishVerdict(
                        ref=ref,
                        target=target,
                        status=status,
                        attempts=latest.attempt_number,
                        retryable=latest.retryable,
                        error=error,
                    )
                )
        return verdicts
