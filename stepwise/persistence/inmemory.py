"""In-memory implementation of the action log store."""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from ..contracts import (
    ACTIVE_STATUSES,
    LEASED_STATUSES,
    ActionAttempt,
    AttemptFilter,
    AttemptStatus,
)
from ..errors import Conflict, DuplicateActiveAttempt
from .filters import matches_filter
from .store import ANY_TOKEN, BaseActionLogStore, check_fields


class InMemoryActionLogStore(BaseActionLogStore):
    """Store action attempts in local memory.

    Useful for tests or single-process deployments. Data is not persisted
    across process restarts.
    """

    def __init__(self) -> None:
        self._attempts: Dict[str, ActionAttempt] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def insert(self, attempt: ActionAttempt) -> ActionAttempt:
        async with self._lock:
            if attempt.id in self._attempts:
                raise ValueError(f"Attempt {attempt.id} already exists")
            if attempt.status in ACTIVE_STATUSES:
                self._check_no_active(attempt)
            self._attempts[attempt.id] = attempt.model_copy(deep=True)
        return attempt

    def _check_no_active(self, attempt: ActionAttempt) -> None:
        key = attempt.dedupe_key()
        for existing in self._attempts.values():
            if (
                existing.id != attempt.id
                and existing.status in ACTIVE_STATUSES
                and existing.dedupe_key() == key
            ):
                raise DuplicateActiveAttempt(*key)

    async def get(self, attempt_id: str) -> ActionAttempt | None:
        attempt = self._attempts.get(attempt_id)
        return attempt.model_copy(deep=True) if attempt else None

    async def delete_pending(self, attempt_id: str) -> bool:
        async with self._lock:
            attempt = self._attempts.get(attempt_id)
            if attempt is None or attempt.status != AttemptStatus.PENDING:
                return False
            del self._attempts[attempt_id]
        return True

    async def list_claimable(
        self, now: datetime, lease_cutoff: datetime, limit: int
    ) -> list[ActionAttempt]:
        async with self._lock:
            due = [
                a
                for a in self._attempts.values()
                if (a.status == AttemptStatus.PENDING and a.scheduled_at <= now)
                or (
                    a.status in LEASED_STATUSES
                    and a.claimed_at is not None
                    and a.claimed_at <= lease_cutoff
                )
            ]
        due.sort(key=lambda a: (a.scheduled_at, a.id))
        return [a.model_copy(deep=True) for a in due[:limit]]

    async def update_status(
        self,
        attempt_id: str,
        expected_status: AttemptStatus,
        new_status: AttemptStatus,
        fields: Mapping[str, Any] | None = None,
        *,
        expected_token: Any = ANY_TOKEN,
    ) -> ActionAttempt:
        changes = check_fields(fields)
        async with self._lock:
            current = self._attempts.get(attempt_id)
            if current is None:
                raise Conflict(attempt_id, expected_status.value)
            if current.status != expected_status:
                raise Conflict(attempt_id, expected_status.value, current.status.value)
            if expected_token is not ANY_TOKEN and current.claim_token != expected_token:
                raise Conflict(attempt_id, expected_status.value, "reclaimed")
            if current.status not in ACTIVE_STATUSES and new_status in ACTIVE_STATUSES:
                self._check_no_active(current)
            updated = current.model_copy(update={**changes, "status": new_status}, deep=True)
            self._attempts[attempt_id] = updated
        return updated.model_copy(deep=True)

    async def list_by_correlation(
        self, kind: str, entity_id: str
    ) -> list[ActionAttempt]:
        rows = [
            a.model_copy(deep=True)
            for a in self._attempts.values()
            if a.related_entity_kind == kind and a.related_entity_id == entity_id
        ]
        rows.sort(key=lambda a: (a.created_at, a.order, a.id))
        return rows

    async def list_by_status(
        self, status: AttemptStatus, filters: AttemptFilter | None = None
    ) -> list[ActionAttempt]:
        filters = filters or AttemptFilter()
        rows = [
            a.model_copy(deep=True)
            for a in self._attempts.values()
            if a.status == status and matches_filter(a, filters)
        ]
        rows.sort(key=lambda a: (a.scheduled_at, a.id))
        if filters.limit is not None:
            rows = rows[: filters.limit]
        return rows

    async def count_by_status(
        self, workflow_id: Optional[str] = None
    ) -> dict[AttemptStatus, int]:
        counts = Counter(
            a.status
            for a in self._attempts.values()
            if workflow_id is None or a.workflow_id == workflow_id
        )
        return {status: counts.get(status, 0) for status in AttemptStatus}

    async def purge_terminal(self, before: datetime) -> int:
        async with self._lock:
            doomed = [
                a.id
                for a in self._attempts.values()
                if a.status in (AttemptStatus.COMPLETED, AttemptStatus.STOPPED)
                and a.completed_at is not None
                and a.completed_at < before
            ]
            for attempt_id in doomed:
                del self._attempts[attempt_id]
        return len(doomed)
