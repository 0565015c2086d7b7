"""PostgreSQL implementation of the action log store."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from datetime import datetime
from typing import Any, AsyncIterator, Mapping, Optional

import asyncpg

from ..contracts import ActionAttempt, AttemptFilter, AttemptStatus
from ..errors import Conflict, DuplicateActiveAttempt, StoreUnavailable
from .store import ANY_TOKEN, BaseActionLogStore, check_fields

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id, workflow_id, action_id, action_order, related_entity_kind, "
    "related_entity_id, meta, status, scheduled_at, claimed_at, claim_token, "
    "started_at, completed_at, attempt_count, last_error, created_at"
)
_ONE_ACTIVE_INDEX = "action_attempts_one_active"

# Driver errors meaning the server or the connection went away.
_CONNECTION_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    asyncpg.CannotConnectNowError,
)


def _row_to_attempt(row: asyncpg.Record) -> ActionAttempt:
    meta = row["meta"]
    if isinstance(meta, str):
        meta = json.loads(meta)
    return ActionAttempt(
        id=row["id"],
        workflow_id=row["workflow_id"],
        action_id=row["action_id"],
        order=row["action_order"],
        related_entity_kind=row["related_entity_kind"],
        related_entity_id=row["related_entity_id"],
        meta=meta or {},
        status=AttemptStatus(row["status"]),
        scheduled_at=row["scheduled_at"],
        claimed_at=row["claimed_at"],
        claim_token=row["claim_token"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        attempt_count=row["attempt_count"],
        last_error=row["last_error"],
        created_at=row["created_at"],
    )


class PostgresActionLogStore(BaseActionLogStore):
    """Persist action attempts using PostgreSQL."""

    def __init__(self, dsn: str, connect_timeout: float = 10.0):
        self._dsn = dsn
        self._connect_timeout = connect_timeout
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        try:
            conn = await asyncpg.connect(self._dsn, timeout=self._connect_timeout)
        except (*_CONNECTION_ERRORS, asyncpg.PostgresError) as exc:
            raise StoreUnavailable(f"Cannot connect to PostgreSQL store: {exc}") from exc
        if not self._initialized:
            try:
                await self._ensure_schema(conn)
            except _CONNECTION_ERRORS as exc:
                conn.terminate()
                raise StoreUnavailable(f"PostgreSQL store failed: {exc}") from exc
            self._initialized = True
        return conn

    @contextlib.asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        """Yield a fresh connection; connection loss becomes ``StoreUnavailable``."""
        conn = await self._connect()
        try:
            yield conn
        except _CONNECTION_ERRORS as exc:
            raise StoreUnavailable(f"PostgreSQL store failed: {exc}") from exc
        finally:
            await self._close(conn)

    async def _close(self, conn: asyncpg.Connection) -> None:
        try:
            await conn.close(timeout=self._connect_timeout)
        except _CONNECTION_ERRORS as exc:
            logger.debug(f"Dropping broken PostgreSQL connection: {exc}")
            conn.terminate()

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS action_attempts (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                action_id TEXT NOT NULL,
                action_order INTEGER NOT NULL DEFAULT 1,
                related_entity_kind TEXT NOT NULL,
                related_entity_id TEXT NOT NULL,
                meta JSONB,
                status TEXT NOT NULL,
                scheduled_at TIMESTAMPTZ NOT NULL,
                claimed_at TIMESTAMPTZ,
                claim_token TEXT,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                attempt_count INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """
        )
        await conn.execute(
            f"""
            CREATE UNIQUE INDEX IF NOT EXISTS {_ONE_ACTIVE_INDEX}
            ON action_attempts (workflow_id, action_id, related_entity_id)
            WHERE status IN ('pending', 'claimed', 'dispatching')
            """
        )
        await conn.execute(
            """
            CREATE INDEX IF NOT EXISTS action_attempts_due
            ON action_attempts (status, scheduled_at, id)
            """
        )

    # ------------------------------------------------------------------
    async def insert(self, attempt: ActionAttempt) -> ActionAttempt:
        async with self._connection() as conn:
            try:
                await conn.execute(
                    f"INSERT INTO action_attempts ({_COLUMNS}) VALUES "
                    "($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)",
                    attempt.id,
                    attempt.workflow_id,
                    attempt.action_id,
                    attempt.order,
                    attempt.related_entity_kind,
                    attempt.related_entity_id,
                    json.dumps(attempt.meta),
                    attempt.status.value,
                    attempt.scheduled_at,
                    attempt.claimed_at,
                    attempt.claim_token,
                    attempt.started_at,
                    attempt.completed_at,
                    attempt.attempt_count,
                    attempt.last_error,
                    attempt.created_at,
                )
            except asyncpg.UniqueViolationError as exc:
                if exc.constraint_name == _ONE_ACTIVE_INDEX:
                    raise DuplicateActiveAttempt(*attempt.dedupe_key()) from exc
                raise ValueError(f"Attempt {attempt.id} already exists") from exc
        return attempt

    async def get(self, attempt_id: str) -> ActionAttempt | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM action_attempts WHERE id = $1", attempt_id
            )
        return _row_to_attempt(row) if row else None

    async def delete_pending(self, attempt_id: str) -> bool:
        async with self._connection() as conn:
            result = await conn.execute(
                "DELETE FROM action_attempts WHERE id = $1 AND status = 'pending'",
                attempt_id,
            )
        return result.split()[-1] != "0"

    async def list_claimable(
        self, now: datetime, lease_cutoff: datetime, limit: int
    ) -> list[ActionAttempt]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_COLUMNS} FROM action_attempts
                WHERE (status = 'pending' AND scheduled_at <= $1)
                   OR (status IN ('claimed', 'dispatching') AND claimed_at <= $2)
                ORDER BY scheduled_at, id
                LIMIT $3
                """,
                now,
                lease_cutoff,
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
        params: list[Any] = [new_status.value]
        assignments = ["status = $1"]
        for column, value in changes.items():
            params.append(value)
            assignments.append(f"{column} = ${len(params)}")
        params += [attempt_id, expected_status.value]
        where = f"id = ${len(params) - 1} AND status = ${len(params)}"
        if expected_token is not ANY_TOKEN:
            params.append(expected_token)
            where += f" AND claim_token IS NOT DISTINCT FROM ${len(params)}::text"

        async with self._connection() as conn:
            try:
                row = await conn.fetchrow(
                    f"UPDATE action_attempts SET {', '.join(assignments)} "
                    f"WHERE {where} RETURNING {_COLUMNS}",
                    *params,
                )
            except asyncpg.UniqueViolationError as exc:
                current = await conn.fetchrow(
                    f"SELECT {_COLUMNS} FROM action_attempts WHERE id = $1", attempt_id
                )
                raise DuplicateActiveAttempt(*_row_to_attempt(current).dedupe_key()) from exc
            if row is None:
                actual = await conn.fetchval(
                    "SELECT status FROM action_attempts WHERE id = $1", attempt_id
                )
                raise Conflict(attempt_id, expected_status.value, actual)
        return _row_to_attempt(row)

    async def list_by_correlation(
        self, kind: str, entity_id: str
    ) -> list[ActionAttempt]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_COLUMNS} FROM action_attempts
                WHERE related_entity_kind = $1 AND related_entity_id = $2
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
        params: list[Any] = [status.value]
        clauses = ["status = $1"]
        if filters.workflow_id is not None:
            params.append(filters.workflow_id)
            clauses.append(f"workflow_id = ${len(params)}")
        if filters.related_entity_kind is not None:
            params.append(filters.related_entity_kind)
            clauses.append(f"related_entity_kind = ${len(params)}")
        if filters.min_attempt_count is not None:
            params.append(filters.min_attempt_count)
            clauses.append(f"attempt_count >= ${len(params)}")
        if filters.scheduled_before is not None:
            params.append(filters.scheduled_before)
            clauses.append(f"scheduled_at <= ${len(params)}")
        query = (
            f"SELECT {_COLUMNS} FROM action_attempts WHERE {' AND '.join(clauses)} "
            "ORDER BY scheduled_at, id"
        )
        if filters.limit is not None:
            params.append(filters.limit)
            query += f" LIMIT ${len(params)}"
        async with self._connection() as conn:
            rows = await conn.fetch(query, *params)
        return [_row_to_attempt(r) for r in rows]

    async def count_by_status(
        self, workflow_id: Optional[str] = None
    ) -> dict[AttemptStatus, int]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT status, COUNT(*) AS n FROM action_attempts
                WHERE $1::text IS NULL OR workflow_id = $1
                GROUP BY status
                """,
                workflow_id,
            )
        counts = {AttemptStatus(r["status"]): r["n"] for r in rows}
        return {status: counts.get(status, 0) for status in AttemptStatus}

    async def purge_terminal(self, before: datetime) -> int:
        async with self._connection() as conn:
            result = await conn.execute(
                """
                DELETE FROM action_attempts
                WHERE status IN ('completed', 'stopped') AND completed_at < $1
                """,
                before,
            )
        # asyncpg returns the command tag, e.g. "DELETE 3".
        return int(result.split()[-1])
