"""Attempt state machine and dispatch outcome resolution."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from .clock import Clock, SystemClock
from .contracts import (
    TERMINAL_STATUSES,
    ActionAttempt,
    AttemptStatus,
    DispatchOutcome,
    DispatchResult,
)
from .errors import AttemptNotFound, Conflict, IllegalTransition, RetryBudgetExceeded
from .persistence import ActionLogStore
from .utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[AttemptStatus, set[AttemptStatus]] = {
    AttemptStatus.PENDING: {AttemptStatus.CLAIMED, AttemptStatus.STOPPED},
    AttemptStatus.CLAIMED: {
        AttemptStatus.DISPATCHING,
        AttemptStatus.PENDING,
        AttemptStatus.STOPPED,
    },
    AttemptStatus.DISPATCHING: {
        AttemptStatus.COMPLETED,
        AttemptStatus.FAILED,
        AttemptStatus.PENDING,
        AttemptStatus.STOPPED,
    },
    # Operator retry is the only way out of a terminal state.
    AttemptStatus.FAILED: {AttemptStatus.PENDING},
    AttemptStatus.COMPLETED: set(),
    AttemptStatus.STOPPED: set(),
}

# Statuses a collaborator may report through the status callback.
_REPORTED_OUTCOMES = {
    AttemptStatus.COMPLETED: DispatchOutcome.SUCCESS,
    AttemptStatus.FAILED: DispatchOutcome.FATAL,
    AttemptStatus.PENDING: DispatchOutcome.RETRYABLE,
}


def ensure_transition(current: AttemptStatus, target: AttemptStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise IllegalTransition(f"Cannot move attempt from {current.value} to {target.value}")


@dataclass(frozen=True)
class Transition:
    status: AttemptStatus
    fields: Dict[str, Any] = field(default_factory=dict)


def plan_transition(
    attempt: ActionAttempt,
    outcome: DispatchOutcome,
    now: datetime,
    policy: RetryPolicy,
    error: Optional[str] = None,
) -> Transition:
    """Decide where a ``dispatching`` attempt goes after ``outcome``."""
    if attempt.status != AttemptStatus.DISPATCHING:
        raise IllegalTransition(
            f"Only dispatching attempts can be resolved, {attempt.id} is {attempt.status.value}"
        )

    if outcome == DispatchOutcome.SUCCESS:
        return Transition(
            AttemptStatus.COMPLETED, {"completed_at": now, "claimed_at": None}
        )

    if outcome == DispatchOutcome.FATAL:
        return Transition(
            AttemptStatus.FAILED,
            {
                "completed_at": now,
                "claimed_at": None,
                "last_error": error or "Fatal dispatch failure",
            },
        )

    if policy.exhausted(attempt.attempt_count):
        exceeded = RetryBudgetExceeded(
            f"Retry budget of {policy.max_retries} exhausted"
            + (f": {error}" if error else "")
        )
        return Transition(
            AttemptStatus.FAILED,
            {"completed_at": now, "claimed_at": None, "last_error": str(exceeded)},
        )

    return Transition(
        AttemptStatus.PENDING,
        {
            "attempt_count": attempt.attempt_count + 1,
            "scheduled_at": now + policy.delay_for(attempt.attempt_count),
            "claimed_at": None,
            "last_error": error or "Retryable dispatch failure",
        },
    )


class OutcomeResolver:
    """Applies state transitions to the store with compare-and-swap."""

    def __init__(
        self,
        store: ActionLogStore,
        policy: Optional[RetryPolicy] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._store = store
        self._policy = policy or RetryPolicy()
        self._clock = clock or SystemClock()

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def _require(self, attempt_id: str) -> ActionAttempt:
        attempt = await self._store.get(attempt_id)
        if attempt is None:
            raise AttemptNotFound(f"Unknown attempt {attempt_id}")
        return attempt

    async def resolve(self, result: DispatchResult) -> ActionAttempt | None:
        """Record a dispatcher result.

        Returns ``None`` when the attempt was already moved on (by a status
        callback, a stop or a reclaim); the dispatcher's view is provisional.
        """
        attempt = result.attempt
        transition = plan_transition(
            attempt, result.outcome, self._clock.now(), self._policy, result.error
        )
        try:
            updated = await self._store.update_status(
                attempt.id,
                AttemptStatus.DISPATCHING,
                transition.status,
                transition.fields,
                expected_token=attempt.claim_token,
            )
        except Conflict as exc:
            logger.info(f"Dispatch result for {attempt.id} superseded: {exc}")
            return None
        if updated.status == AttemptStatus.PENDING:
            logger.info(
                f"Attempt {updated.id} will retry at {updated.scheduled_at} "
                f"(retry {updated.attempt_count}/{self._policy.max_retries})"
            )
        else:
            logger.info(f"Attempt {updated.id} resolved as {updated.status.value}")
        return updated

    async def report(
        self,
        attempt_id: str,
        status: AttemptStatus,
        error: Optional[str] = None,
    ) -> ActionAttempt:
        """Status callback from the collaborator that performed the side effect.

        Applies only while the attempt is ``dispatching``; anything else
        raises ``Conflict`` so a reclaimed attempt is never overwritten.
        """
        if status not in _REPORTED_OUTCOMES:
            raise IllegalTransition(f"Collaborators cannot report status {status.value}")
        attempt = await self._require(attempt_id)
        if attempt.status != AttemptStatus.DISPATCHING:
            raise Conflict(attempt_id, AttemptStatus.DISPATCHING.value, attempt.status.value)
        transition = plan_transition(
            attempt, _REPORTED_OUTCOMES[status], self._clock.now(), self._policy, error
        )
        return await self._store.update_status(
            attempt_id,
            AttemptStatus.DISPATCHING,
            transition.status,
            transition.fields,
        )

    async def stop(self, attempt_id: str, reason: Optional[str] = None) -> ActionAttempt:
        """Cancel a non-terminal attempt."""
        attempt = await self._require(attempt_id)
        while True:
            ensure_transition(attempt.status, AttemptStatus.STOPPED)
            fields: Dict[str, Any] = {"completed_at": self._clock.now(), "claimed_at": None}
            if reason:
                fields["last_error"] = reason
            try:
                stopped = await self._store.update_status(
                    attempt_id, attempt.status, AttemptStatus.STOPPED, fields
                )
            except Conflict:
                # Moved under us; re-evaluate against the fresh row.
                attempt = await self._require(attempt_id)
                continue
            logger.info(f"Stopped attempt {attempt_id}")
            return stopped

    async def retry(self, attempt_id: str) -> ActionAttempt:
        """Operator retry: put a failed attempt back to ``pending`` now.

        ``attempt_count`` is kept, so an attempt that failed on an exhausted
        budget gets exactly one more dispatch.
        """
        attempt = await self._require(attempt_id)
        if attempt.status != AttemptStatus.FAILED:
            raise IllegalTransition(
                f"Only failed attempts can be retried, {attempt_id} is {attempt.status.value}"
            )
        retried = await self._store.update_status(
            attempt_id,
            AttemptStatus.FAILED,
            AttemptStatus.PENDING,
            {"scheduled_at": self._clock.now(), "completed_at": None, "last_error": None},
        )
        logger.info(f"Attempt {attempt_id} manually re-queued")
        return retried

    async def record_error(self, attempt: ActionAttempt, message: str) -> None:
        """Store ``message`` as ``last_error`` without changing status."""
        current = await self._store.get(attempt.id)
        if current is None or current.status in TERMINAL_STATUSES:
            return
        try:
            await self._store.update_status(
                attempt.id,
                current.status,
                current.status,
                {"last_error": message},
                expected_token=current.claim_token,
            )
        except Conflict:
            logger.debug(f"Could not record error on {attempt.id}; it moved on")
