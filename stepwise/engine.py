"""Wiring of store, registry and engine components from configuration."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

import httpx

from .clock import Clock, SystemClock
from .config import StepwiseConfig, load_config
from .contracts import AttemptStatus
from .dispatch import Dispatcher
from .expand import WorkflowExpander
from .persistence import ActionLogStore, get_store
from .registry import WorkflowRegistry, registry_from_config
from .resolver import OutcomeResolver
from .scheduler import ClaimScheduler
from .utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


class Engine:
    """All engine components sharing one store, registry and clock."""

    def __init__(
        self,
        config: Optional[StepwiseConfig] = None,
        *,
        store: Optional[ActionLogStore] = None,
        registry: Optional[WorkflowRegistry] = None,
        clock: Optional[Clock] = None,
        client: Optional[httpx.AsyncClient] = None,
        owner: Optional[str] = None,
    ) -> None:
        self.config = config or load_config()
        self.clock = clock or SystemClock()
        self.store = store or get_store(config=self.config)
        self.registry = registry or registry_from_config(self.config)
        self.policy = RetryPolicy.from_config(self.config.retry)

        self.expander = WorkflowExpander(self.registry, self.store, self.clock)
        self.resolver = OutcomeResolver(self.store, self.policy, self.clock)
        self.dispatcher = Dispatcher.from_config(
            self.config.dispatch, self.store, self.registry, client=client, clock=self.clock
        )
        self.scheduler = ClaimScheduler.from_config(
            self.config.scheduler,
            self.store,
            self.dispatcher,
            self.resolver,
            clock=self.clock,
            owner=owner,
        )

    async def purge_expired(self, retention_days: Optional[int] = None) -> int:
        """Delete completed/stopped attempts older than the retention window."""
        days = self.config.retention_days if retention_days is None else retention_days
        before = self.clock.now() - timedelta(days=days)
        removed = await self.store.purge_terminal(before)
        logger.info(f"Purged {removed} finished attempt(s) completed before {before}")
        return removed

    async def statistics(self, workflow_id: Optional[str] = None) -> dict[str, int]:
        counts = await self.store.count_by_status(workflow_id)
        stats = {"total": sum(counts.values())}
        stats.update({status.value: counts[status] for status in AttemptStatus})
        return stats

    async def aclose(self) -> None:
        await self.dispatcher.aclose()

    async def __aenter__(self) -> "Engine":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
