"""Action log store contract and the shared claim protocol."""

from __future__ import annotations

import abc
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional, Protocol

from ..contracts import (
    LEASED_STATUSES,
    ActionAttempt,
    AttemptFilter,
    AttemptStatus,
)
from ..errors import Conflict

logger = logging.getLogger(__name__)

# Columns ``update_status`` may touch besides ``status``.
MUTABLE_FIELDS = frozenset(
    {
        "scheduled_at",
        "claimed_at",
        "claim_token",
        "started_at",
        "completed_at",
        "attempt_count",
        "last_error",
    }
)


class _AnyToken:
    """Marker telling ``update_status`` not to compare the claim token."""

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return "ANY_TOKEN"


# ``claim_token`` is replaced on every claim and never cleared, so it doubles as
# a row version: a CAS that names the token it observed fails once the row has
# been claimed again in between.
ANY_TOKEN: Any = _AnyToken()


def check_fields(fields: Mapping[str, Any] | None) -> dict[str, Any]:
    fields = dict(fields or {})
    unknown = set(fields) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields not updatable: {sorted(unknown)}")
    return fields


class ActionLogStore(Protocol):
    """Protocol for durable action attempt storage."""

    async def insert(self, attempt: ActionAttempt) -> ActionAttempt:
        """Persist a new attempt. Raises ``DuplicateActiveAttempt``."""

    async def get(self, attempt_id: str) -> ActionAttempt | None:
        """Return the attempt with ``attempt_id`` if it exists."""

    async def delete_pending(self, attempt_id: str) -> bool:
        """Delete ``attempt_id`` if it is still ``pending``; return whether it was."""

    async def claim_batch(
        self,
        now: datetime,
        limit: int,
        *,
        lease_timeout: timedelta,
        owner: str,
    ) -> list[ActionAttempt]:
        """Claim up to ``limit`` eligible attempts for ``owner``."""

    async def update_status(
        self,
        attempt_id: str,
        expected_status: AttemptStatus,
        new_status: AttemptStatus,
        fields: Mapping[str, Any] | None = None,
        *,
        expected_token: Any = ANY_TOKEN,
    ) -> ActionAttempt:
        """Compare-and-swap the status of one attempt. Raises ``Conflict``."""

    async def list_by_correlation(
        self, kind: str, entity_id: str
    ) -> list[ActionAttempt]:
        """Return attempts tied to the given correlation."""

    async def list_by_status(
        self, status: AttemptStatus, filters: AttemptFilter | None = None
    ) -> list[ActionAttempt]:
        """Return attempts in ``status`` ordered by ``scheduled_at``."""

    async def count_by_status(
        self, workflow_id: Optional[str] = None
    ) -> dict[AttemptStatus, int]:
        """Return attempt counts per status."""

    async def purge_terminal(self, before: datetime) -> int:
        """Delete completed/stopped attempts finished before ``before``."""


class BaseActionLogStore(abc.ABC):
    """Shared claim logic built on a backend's read and compare-and-swap."""

    @abc.abstractmethod
    async def list_claimable(
        self, now: datetime, lease_cutoff: datetime, limit: int
    ) -> list[ActionAttempt]:
        """Pending rows due at ``now`` plus leased rows claimed at or before
        ``lease_cutoff``, ordered by ``scheduled_at`` then ``id``."""
        raise NotImplementedError

    @abc.abstractmethod
    async def update_status(
        self,
        attempt_id: str,
        expected_status: AttemptStatus,
        new_status: AttemptStatus,
        fields: Mapping[str, Any] | None = None,
        *,
        expected_token: Any = ANY_TOKEN,
    ) -> ActionAttempt:
        raise NotImplementedError

    async def claim_batch(
        self,
        now: datetime,
        limit: int,
        *,
        lease_timeout: timedelta,
        owner: str,
    ) -> list[ActionAttempt]:
        candidates = await self.list_claimable(now, now - lease_timeout, limit)
        claimed: list[ActionAttempt] = []
        for attempt in candidates:
            try:
                if attempt.status in LEASED_STATUSES:
                    attempt = await self._release_orphan(attempt)
                claimed.append(await self._claim(attempt, now, owner))
            except Conflict as exc:
                logger.debug(f"Skipping attempt raced by another poller: {exc}")
        return claimed

    async def _release_orphan(self, attempt: ActionAttempt) -> ActionAttempt:
        released = await self.update_status(
            attempt.id,
            attempt.status,
            AttemptStatus.PENDING,
            {"claimed_at": None},
            expected_token=attempt.claim_token,
        )
        logger.warning(
            f"Reclaimed orphaned attempt {attempt.id} "
            f"(was {attempt.status.value} since {attempt.claimed_at})"
        )
        return released

    async def _claim(
        self, attempt: ActionAttempt, now: datetime, owner: str
    ) -> ActionAttempt:
        token = f"{owner}:{uuid.uuid4().hex}"
        return await self.update_status(
            attempt.id,
            AttemptStatus.PENDING,
            AttemptStatus.CLAIMED,
            {"claimed_at": now, "claim_token": token},
            expected_token=attempt.claim_token,
        )
