"""Polling claim scheduler."""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from .clock import Clock, SystemClock
from .config import SchedulerConfig
from .contracts import ActionAttempt, AttemptStatus
from .dispatch import Dispatcher
from .errors import Conflict, StoreUnavailable
from .persistence import ActionLogStore
from .resolver import OutcomeResolver

logger = logging.getLogger(__name__)


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


@dataclass
class CycleReport:
    """Counters for one polling cycle."""

    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    superseded: int = 0
    errors: int = 0
    released: int = 0
    store_error: Optional[str] = None

    def summary(self) -> str:
        return (
            f"claimed={self.claimed} completed={self.completed} retried={self.retried} "
            f"failed={self.failed} superseded={self.superseded} errors={self.errors} "
            f"released={self.released}"
        )


class ClaimScheduler:
    """Claims due attempts on a fixed period and drives them through dispatch.

    Pollers share nothing in process; any number of them may run against the
    same store because every state change is a compare-and-swap.
    """

    def __init__(
        self,
        store: ActionLogStore,
        dispatcher: Dispatcher,
        resolver: OutcomeResolver,
        *,
        clock: Optional[Clock] = None,
        period_seconds: float = 60,
        batch_size: int = 100,
        lease_timeout: timedelta = timedelta(minutes=5),
        owner: Optional[str] = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self._store = store
        self._dispatcher = dispatcher
        self._resolver = resolver
        self._clock = clock or SystemClock()
        self.period_seconds = period_seconds
        self.batch_size = batch_size
        self.lease_timeout = lease_timeout
        self.owner = owner or default_owner()
        self._stop = asyncio.Event()

    @classmethod
    def from_config(
        cls,
        config: SchedulerConfig,
        store: ActionLogStore,
        dispatcher: Dispatcher,
        resolver: OutcomeResolver,
        *,
        clock: Optional[Clock] = None,
        owner: Optional[str] = None,
    ) -> "ClaimScheduler":
        return cls(
            store,
            dispatcher,
            resolver,
            clock=clock,
            period_seconds=config.period_seconds,
            batch_size=config.batch_size,
            lease_timeout=config.lease_timeout,
            owner=owner,
        )

    # ------------------------------------------------------------------
    def request_stop(self) -> None:
        """Ask the loop to exit after the attempt currently in flight."""
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def claim(self) -> list[ActionAttempt]:
        """Claim the next batch of due or orphaned attempts."""
        return await self._store.claim_batch(
            self._clock.now(),
            self.batch_size,
            lease_timeout=self.lease_timeout,
            owner=self.owner,
        )

    async def run_cycle(self) -> CycleReport:
        """Claim one batch and dispatch it in ``scheduled_at`` order."""
        report = CycleReport()
        try:
            batch = await self.claim()
            report.claimed = len(batch)
            for index, attempt in enumerate(batch):
                if self.stopping:
                    for leftover in batch[index:]:
                        await self._release(leftover, report)
                    break
                await self._process(attempt, report)
        except StoreUnavailable as exc:
            logger.error(f"Action log store unavailable; cycle aborted: {exc}")
            report.store_error = str(exc)
        return report

    async def _process(self, attempt: ActionAttempt, report: CycleReport) -> None:
        try:
            result = await self._dispatcher.dispatch(attempt)
            resolved = await self._resolver.resolve(result)
        except Conflict as exc:
            logger.info(f"Attempt {attempt.id} moved on before dispatch: {exc}")
            report.superseded += 1
            return
        except StoreUnavailable:
            raise
        except Exception as exc:
            report.errors += 1
            logger.exception(f"Unexpected error while processing attempt {attempt.id}")
            await self._resolver.record_error(attempt, f"{type(exc).__name__}: {exc}")
            return

        if resolved is None:
            report.superseded += 1
        elif resolved.status == AttemptStatus.COMPLETED:
            report.completed += 1
        elif resolved.status == AttemptStatus.PENDING:
            report.retried += 1
        elif resolved.status == AttemptStatus.FAILED:
            report.failed += 1

    async def _release(self, attempt: ActionAttempt, report: CycleReport) -> None:
        # Hand an undispatched claim back instead of waiting for the lease.
        try:
            await self._store.update_status(
                attempt.id,
                AttemptStatus.CLAIMED,
                AttemptStatus.PENDING,
                {"claimed_at": None},
                expected_token=attempt.claim_token,
            )
        except Conflict:
            return
        report.released += 1

    async def run(
        self,
        *,
        max_cycles: Optional[int] = None,
        lifespan: Optional[float] = None,
    ) -> None:
        """Poll until stopped.

        Args:
            max_cycles: Exit after this many cycles. Runs indefinitely if None.
            lifespan: Maximum time in seconds to keep polling. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        cycles = 0
        logger.info(
            f"Scheduler {self.owner} started (period={self.period_seconds}s, "
            f"batch={self.batch_size}, lease={self.lease_timeout})"
        )
        while not self.stopping:
            cycles += 1
            try:
                report = await self.run_cycle()
            except Exception:
                logger.exception(f"Cycle {cycles} aborted; retrying next period")
            else:
                if report.claimed or report.store_error:
                    logger.info(f"Cycle {cycles}: {report.summary()}")
            if max_cycles is not None and cycles >= max_cycles:
                break

            timeout = self.period_seconds
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                timeout = min(timeout, remaining)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass
        logger.info(f"Scheduler {self.owner} stopped after {cycles} cycle(s)")
