"""SQLite implementation of the action log store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Optional

from ..contracts import ActionAttempt, AttemptFilter, AttemptStatus
from ..errors import Conflict, DuplicateActiveAttempt, StoreUnavailable
from .store import ANY_TOKEN, BaseActionLogStore, check_fields

_COLUMNS = (
    "id, workflow_id, action_id, action_order, related_entity_kind, "
    "related_entity_id, meta, status, scheduled_at, claimed_at, claim_token, "
    "started_at, completed_at, attempt_count, last_error, created_at"
)


def _ts(value: Optional[datetime]) -> Optional[str]:
    # Fixed-width UTC text so lexical order matches time order.
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_attempt(row: sqlite3.Row) -> ActionAttempt:
    return ActionAttempt(
        id=row["id"],
        workflow_id=row["workflow_id"],
        action_id=row["action_id"],
        order=row["action_order"],
        related_entity_kind=row["related_entity_kind"],
        related_entity_id=row["related_entity_id"],
        meta=json.loads(row["meta"]) if row["meta"] else {},
        status=AttemptStatus(row["status"]),
        scheduled_at=_parse_ts(row["scheduled_at"]),
        claimed_at=_parse_ts(row["claimed_at"]),
        claim_token=row["claim_token"],
        started_at=_parse_ts(row["started_at"]),
        completed_at=_parse_ts(row["completed_at"]),
        attempt_count=row["attempt_count"],
        last_error=row["last_error"],
        created_at=_parse_ts(row["created_at"]),
    )


def _to_column(value: Any) -> Any:
    if isinstance(value, datetime):
        return _ts(value)
    return value


class SQLiteActionLogStore(BaseActionLogStore):
    """Persist action attempts using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        try:
            self._conn = sqlite3.connect(
                self.db_path, timeout=30, check_same_thread=False
            )
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"Cannot open SQLite store {self.db_path}: {exc}") from exc
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS action_attempts (
                    id TEXT PRIMARY KEY,
                    workflow_id TEXT NOT NULL,
                    action_id TEXT NOT NULL,
                    action_order INTEGER NOT NULL DEFAULT 1,
                    related_entity_kind TEXT NOT NULL,
                    related_entity_id TEXT NOT NULL,
                    meta TEXT,
                    status TEXT NOT NULL,
                    scheduled_at TEXT NOT NULL,
                    claimed_at TEXT,
                    claim_token TEXT,
                    started_at TEXT,
                    completed_at TEXT,
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            self._conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS action_attempts_one_active
                ON action_attempts (workflow_id, action_id, related_entity_id)
                WHERE status IN ('pending', 'claimed', 'dispatching')
                """
            )
            self._conn.execute(
                """
                CREATE INDEX IF NOT EXISTS action_attempts_due
                ON action_attempts (status, scheduled_at, id)
                """
            )
            self._conn.execute(
                """
                CREATE INDEX IF NOT EXISTS action_attempts_correlation
                ON action_attempts (related_entity_kind, related_entity_id)
                """
            )

    # ------------------------------------------------------------------
    # Helper methods
    async def _run(self, fn, *args: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.OperationalError as exc:
            raise StoreUnavailable(f"SQLite store {self.db_path} failed: {exc}") from exc

    def _execute(self, query: str, *params: Any) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute(query, params)
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(query, params).fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(query, params).fetchall()

    def _compare_and_swap(
        self,
        attempt_id: str,
        expected_status: AttemptStatus,
        new_status: AttemptStatus,
        changes: dict[str, Any],
        expected_token: Any,
    ) -> sqlite3.Row | None:
        assignments = ["status = ?"] + [f"{column} = ?" for column in changes]
        params: list[Any] = [new_status.value]
        params += [_to_column(value) for value in changes.values()]
        where = "id = ? AND status = ?"
        params += [attempt_id, expected_status.value]
        if expected_token is not ANY_TOKEN:
            where += " AND claim_token IS ?"
            params.append(expected_token)
        with self._lock, self._conn:
            cur = self._conn.execute(
                f"UPDATE action_attempts SET {', '.join(assignments)} WHERE {where}",
                params,
            )
            if cur.rowcount != 1:
                return None
            return self._conn.execute(
                f"SELECT {_COLUMNS} FROM action_attempts WHERE id = ?", (attempt_id,)
            ).fetchone()

    # ------------------------------------------------------------------
    # Store API
    async def insert(self, attempt: ActionAttempt) -> ActionAttempt:
        try:
            await self._run(
                self._execute,
                f"INSERT INTO action_attempts ({_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                attempt.id,
                attempt.workflow_id,
                attempt.action_id,
                attempt.order,
                attempt.related_entity_kind,
                attempt.related_entity_id,
                json.dumps(attempt.meta),
                attempt.status.value,
                _ts(attempt.scheduled_at),
                _ts(attempt.claimed_at),
                attempt.claim_token,
                _ts(attempt.started_at),
                _ts(attempt.completed_at),
                attempt.attempt_count,
                attempt.last_error,
                _ts(attempt.created_at),
            )
        except sqlite3.IntegrityError as exc:
            if "action_attempts.id" in str(exc):
                raise ValueError(f"Attempt {attempt.id} already exists") from exc
            raise DuplicateActiveAttempt(*attempt.dedupe_key()) from exc
        return attempt

    async def get(self, attempt_id: str) -> ActionAttempt | None:
        row = await self._run(
            self._fetchone,
            f"SELECT {_COLUMNS} FROM action_attempts WHERE id = ?",
            attempt_id,
        )
        return _row_to_attempt(row) if row else None

    async def delete_pending(self, attempt_id: str) -> bool:
        removed = await self._run(
            self._execute,
            "DELETE FROM action_attempts WHERE id = ? AND status = 'pending'",
            attempt_id,
        )
        return removed > 0

    async def list_claimable(
        self, now: datetime, lease_cutoff: datetime, limit: int
    ) -> list[ActionAttempt]:
        rows = await self._run(
            self._fetchall,
            f"""
            SELECT {_COLUMNS} FROM action_attempts
            WHERE (status = 'pending' AND scheduled_at <= ?)
               OR (status IN ('claimed', 'dispatching') AND claimed_at <= ?)
            ORDER BY scheduled_at, id
            LIMIT ?
            """,
            _ts(now),
            _ts(lease_cutoff),
            limit,
        )
        return [_row_to_attempt(r) for r in rows]

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
        try:
            row = await self._run(
                self._compare_and_swap,
                attempt_id,
                expected_status,
                new_status,
                changes,
                expected_token,
            )
        except sqlite3.IntegrityError as exc:
            current = await self.get(attempt_id)
            if current is None:
                raise
            raise DuplicateActiveAttempt(*current.dedupe_key()) from exc
        if row is None:
            current = await self.get(attempt_id)
            raise Conflict(
                attempt_id,
                expected_status.value,
                current.status.value if current else None,
            )
        return _row_to_attempt(row)

    async def list_by_correlation(
        self, kind: str, entity_id: str
    ) -> list[ActionAttempt]:
        rows = await self._run(
            self._fetchall,
            f"""
            SELECT {_COLUMNS} FROM action_attempts
            WHERE related_entity_kind = ? AND related_entity_id = ?
            ORDER BY created_at, action_order, id
            """,
            kind,
            entity_id,
        )
        return [_row_to_attempt(r) for r in rows]

    async def list_by_status(
        self, status: AttemptStatus, filters: AttemptFilter | None = None
    ) -> list[ActionAttempt]:
        filters = filters or AttemptFilter()
        clauses = ["status = ?"]
        params: list[Any] = [status.value]
        if filters.workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(filters.workflow_id)
        if filters.related_entity_kind is not None:
            clauses.append("related_entity_kind = ?")
            params.append(filters.related_entity_kind)
        if filters.min_attempt_count is not None:
            clauses.append("attempt_count >= ?")
            params.append(filters.min_attempt_count)
        if filters.scheduled_before is not None:
            clauses.append("scheduled_at <= ?")
            params.append(_ts(filters.scheduled_before))
        query = (
            f"SELECT {_COLUMNS} FROM action_attempts WHERE {' AND '.join(clauses)} "
            "ORDER BY scheduled_at, id"
        )
        if filters.limit is not None:
            query += " LIMIT ?"
            params.append(filters.limit)
        rows = await self._run(self._fetchall, query, *params)
        return [_row_to_attempt(r) for r in rows]

    async def count_by_status(
        self, workflow_id: Optional[str] = None
    ) -> dict[AttemptStatus, int]:
        if workflow_id is None:
            rows = await self._run(
                self._fetchall,
                "SELECT status, COUNT(*) AS n FROM action_attempts GROUP BY status",
            )
        else:
            rows = await self._run(
                self._fetchall,
                "SELECT status, COUNT(*) AS n FROM action_attempts "
                "WHERE workflow_id = ? GROUP BY status",
                workflow_id,
            )
        counts = {AttemptStatus(r["status"]): r["n"] for r in rows}
        return {status: counts.get(status, 0) for status in AttemptStatus}

    async def purge_terminal(self, before: datetime) -> int:
        return await self._run(
            self._execute,
            """
            DELETE FROM action_attempts
            WHERE status IN ('completed', 'stopped') AND completed_at < ?
            """,
            _ts(before),
        )

    def close(self) -> None:
        self._conn.close()
