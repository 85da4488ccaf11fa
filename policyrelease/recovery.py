# recovery.py — Decides retry / rollback / manual action after publishing.
# Pure functions over a ReleaseState; the orchestrator executes the plan.

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from policyrelease.models import (
    PolicyVersionRef,
    PublishAttempt,
    PublishOutcome,
    RecoveryItem,
    RecoveryPolicy,
    RecoveryReport,
    RecoveryStrategy,
    ReleaseState,
    ReleaseStrategy,
)

logger = logging.getLogger(__name__)


class ActionKind(str, Enum):
    RETRY = "retry"
    ROLLBACK = "rollback"


@dataclass(frozen=True)
class RecoveryAction:
    """One automatic step the orchestrator should take."""

    kind: ActionKind
    ref: PolicyVersionRef
    target: str


@dataclass
class RecoveryPlan:
    """Automatic actions plus the items left for humans."""

    retries: list[RecoveryAction] = field(default_factory=list)
    rollbacks: list[RecoveryAction] = field(default_factory=list)
    manual_retries: list[RecoveryItem] = field(default_factory=list)
    manual_rollbacks: list[RecoveryItem] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.retries or self.rollbacks or self.manual_retries or self.manual_rollbacks)


class RecoveryManager:
    """Interprets publishing outcomes under a :class:`RecoveryPolicy`.

    Rollback scope:

    * **atomic** releases roll back every artifact this run created as soon
      as any (candidate, target) pair failed or was left unattempted;
    * **best_effort** releases roll back only the artifacts of candidates
      that did not reach every target, and only when
      ``rollback_on_partial_failure`` is set.

    Artifacts found already published before the run (idempotent successes)
    are never rolled back.  The ``manual`` strategy never acts on its own,
    whatever ``rollback_on_partial_failure`` says.
    """

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan(self, state: ReleaseState, policy: RecoveryPolicy) -> RecoveryPlan:
        """Decide the next automatic actions for *state*."""
        plan = RecoveryPlan()

        for attempt in state.failed_pairs():
            if self._can_retry(state, policy, attempt):
                plan.retries.append(RecoveryAction(ActionKind.RETRY, attempt.ref, attempt.target))
            else:
                plan.manual_retries.append(self._retry_item(state, policy, attempt))

        for ref, target in state.unattempted_pairs():
            plan.manual_retries.append(self._unattempted_item(state, ref, target))

        for attempt in self._rollback_scope(state, policy):
            if state.rollback_for(attempt.ref, attempt.target) is not None:
                continue
            reason = self._manual_rollback_reason(state, policy, attempt.target)
            if reason is None:
                plan.rollbacks.append(
                    RecoveryAction(ActionKind.ROLLBACK, attempt.ref, attempt.target)
                )
            else:
                plan.manual_rollbacks.append(
                    RecoveryItem(policy=attempt.ref.key, target=attempt.target, reason=reason)
                )

        logger.debug(
            "Recovery plan for %s: %d retry, %d rollback, %d manual retry, %d manual rollback",
            state.release_id,
            len(plan.retries),
            len(plan.rollbacks),
            len(plan.manual_retries),
            len(plan.manual_rollbacks),
        )
        return plan

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def reconcile(self, state: ReleaseState, policy: RecoveryPolicy) -> RecoveryReport:
        """Summarise the final publishing outcome of *state*.

        Pure: reads the state, never calls a backend or re-runs validation.
        """
        plan = self.plan(state, policy)
        report = RecoveryReport(strategy=policy.strategy)

        rolled_back_keys: set[str] = set()
        for record in state.rollbacks:
            item = RecoveryItem(
                policy=record.ref.key,
                target=record.target,
                reason=record.error or "rolled back",
            )
            if record.succeeded:
                report.rolled_back.append(item)
            else:
                report.rollback_failures.append(item)
            rolled_back_keys.add(record.ref.key)

        for candidate in state.valid_candidates:
            ref = candidate.ref
            attempts = [state.latest_attempt(ref, t) for t in state.targets]
            if (
                attempts
                and all(a is not None and a.outcome is PublishOutcome.SUCCESS for a in attempts)
                and ref.key not in rolled_back_keys
            ):
                report.published.append(ref.key)

        # Pending retries were not executed if reconcile runs on its own.
        report.needs_manual_retry.extend(
            RecoveryItem(
                policy=action.ref.key,
                target=action.target,
                reason="eligible for automatic retry",
            )
            for action in plan.retries
        )
        report.needs_manual_retry.extend(plan.manual_retries)
        report.manual_rollback_required.extend(
            RecoveryItem(
                policy=action.ref.key,
                target=action.target,
                reason="rollback planned but not executed",
            )
            for action in plan.rollbacks
        )
        report.manual_rollback_required.extend(plan.manual_rollbacks)

        kept = [a for a in state.successful_pairs() if not a.created]
        if kept and (state.failed_pairs() or state.unattempted_pairs()):
            report.notes.append(
                f"{len(kept)} artifact(s) were already published before this release "
                "and were left in place"
            )
        if state.cancelled:
            report.notes.append("release was cancelled; published artifacts were left in place")
        if report.rollback_failures:
            report.notes.append(
                f"URGENT: {len(report.rollback_failures)} rollback(s) failed; "
                "published state is inconsistent and needs manual repair"
            )
        return report

    # ------------------------------------------------------------------
    # Internal decision helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _can_retry(state: ReleaseState, policy: RecoveryPolicy, attempt: PublishAttempt) -> bool:
        return (
            bool(attempt.retryable)
            and not state.cancelled
            and policy.allows_automatic_retry
            and attempt.attempt_number < policy.max_attempts
        )

    @staticmethod
    def _retry_item(
        state: ReleaseState, policy: RecoveryPolicy, attempt: PublishAttempt
    ) -> RecoveryItem:
        if not attempt.retryable:
            reason = f"terminal failure: {attempt.error}"
        elif state.cancelled:
            reason = f"release cancelled after retryable failure: {attempt.error}"
        elif not policy.allows_automatic_retry:
            reason = f"automatic retry disabled; last error: {attempt.error}"
        else:
            reason = (
                f"retries exhausted after {attempt.attempt_number} attempt(s); "
                f"last error: {attempt.error}"
            )
        return RecoveryItem(policy=attempt.ref.key, target=attempt.target, reason=reason)

    @staticmethod
    def _unattempted_item(state: ReleaseState, ref: PolicyVersionRef, target: str) -> RecoveryItem:
        if state.cancelled:
            reason = "not attempted: release was cancelled"
        else:
            reason = "not attempted: release aborted after an earlier failure"
        return RecoveryItem(policy=ref.key, target=target, reason=reason)

    @staticmethod
    def _rollback_scope(state: ReleaseState, policy: RecoveryPolicy) -> list[PublishAttempt]:
        incomplete = {a.ref.key for a in state.failed_pairs()}
        incomplete.update(ref.key for ref, _ in state.unattempted_pairs())
        if not incomplete:
            return []

        created = [a for a in state.successful_pairs() if a.created]
        if state.strategy is ReleaseStrategy.ATOMIC:
            return created
        if not policy.rollback_on_partial_failure:
            return []
        return [a for a in created if a.ref.key in incomplete]

    @staticmethod
    def _manual_rollback_reason(
        state: ReleaseState, policy: RecoveryPolicy, target: str
    ) -> str | None:
        if state.cancelled:
            return "release cancelled; artifact left in place"
        if policy.strategy is RecoveryStrategy.MANUAL:
            return "manual recovery strategy; roll back by hand"
        if policy.strategy is RecoveryStrategy.HYBRID:
            return "hybrid recovery strategy leaves rollback to an operator"
        if not policy.rollback_on_partial_failure:
            return "rollback_on_partial_failure is disabled; artifact left published"
        if not state.target(target).supports_rollback:
            return f"target {target} does not support rollback"
        return None
