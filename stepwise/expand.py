"""Materialize action attempts from trigger events."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .clock import Clock, SystemClock, ensure_utc
from .contracts import (
    ACTIVE_STATUSES,
    ActionAttempt,
    Correlation,
    Phase,
    WorkflowDefinition,
)
from .errors import DuplicateActiveAttempt, InactiveWorkflow, WorkflowNotFound
from .persistence import ActionLogStore
from .registry import WorkflowRegistry

logger = logging.getLogger(__name__)


def compute_base_time(
    phase: Phase, interval_minutes: float, event_time: datetime
) -> datetime:
    """Return when a workflow's actions become due relative to ``event_time``."""
    interval = timedelta(minutes=interval_minutes)
    if phase == Phase.AFTER:
        return event_time + interval
    if phase == Phase.BEFORE:
        return event_time - interval
    return event_time


class WorkflowExpander:
    """Turns a trigger event into one pending attempt per workflow action."""

    def __init__(
        self,
        registry: WorkflowRegistry,
        store: ActionLogStore,
        clock: Clock | None = None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._clock = clock or SystemClock()

    def _resolve(
        self, workflow_id: Optional[str], trigger: Optional[str]
    ) -> List[WorkflowDefinition]:
        if (workflow_id is None) == (trigger is None):
            raise ValueError("Exactly one of workflow_id or trigger is required")
        if workflow_id is not None:
            workflow = self._registry.get(workflow_id)
            if not workflow.is_runnable:
                raise InactiveWorkflow(_inactive_reason(workflow))
            return [workflow]

        matches = self._registry.by_trigger(trigger)
        if not matches:
            raise WorkflowNotFound(f"No workflow listens to trigger {trigger}")
        runnable = [w for w in matches if w.is_runnable]
        if not runnable:
            raise InactiveWorkflow(
                "; ".join(_inactive_reason(w) for w in matches)
            )
        return runnable

    async def expand(
        self,
        correlation: Correlation,
        *,
        workflow_id: Optional[str] = None,
        trigger: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
        event_time: Optional[datetime] = None,
    ) -> List[ActionAttempt]:
        """Insert pending attempts for the matching workflow(s).

        Args:
            correlation: Entity the trigger event concerns.
            workflow_id: Expand this workflow. Mutually exclusive with ``trigger``.
            trigger: Expand every runnable workflow listening to this event.
            meta: Free-form data passed through to each callback.
            event_time: When the event happened; defaults to the clock's now.

        Returns:
            The inserted attempts in action order.

        Raises:
            WorkflowNotFound: No workflow matches.
            InactiveWorkflow: The workflow is deactivated or paused.
            DuplicateActiveAttempt: An unresolved attempt already exists for
                one of the actions and this correlation.
        """
        workflows = self._resolve(workflow_id, trigger)
        event_time = ensure_utc(event_time) if event_time else self._clock.now()

        attempts: List[ActionAttempt] = []
        for workflow in workflows:
            base_time = compute_base_time(
                workflow.phase, workflow.interval_minutes, event_time
            )
            for action in workflow.actions:
                attempts.append(
                    ActionAttempt(
                        workflow_id=workflow.id,
                        action_id=action.id,
                        order=action.order,
                        related_entity_kind=correlation.kind,
                        related_entity_id=correlation.id,
                        meta=dict(meta or {}),
                        scheduled_at=base_time + timedelta(minutes=action.delay_minutes),
                        created_at=self._clock.now(),
                    )
                )

        await self._reject_duplicates(correlation, attempts)
        inserted: List[ActionAttempt] = []
        try:
            for attempt in attempts:
                await self._store.insert(attempt)
                inserted.append(attempt)
        except DuplicateActiveAttempt:
            # A concurrent trigger won the unique index; undo this call's rows.
            for attempt in inserted:
                await self._store.delete_pending(attempt.id)
            logger.warning(
                f"Rolled back {len(inserted)} attempt(s) for "
                f"{correlation.kind}:{correlation.id} after a concurrent trigger"
            )
            raise
        logger.info(
            f"Expanded {len(attempts)} attempt(s) for {correlation.kind}:{correlation.id} "
            f"from workflow(s) {[w.id for w in workflows]}"
        )
        return attempts

    async def _reject_duplicates(
        self, correlation: Correlation, attempts: List[ActionAttempt]
    ) -> None:
        # A rejected trigger inserts nothing. Concurrent triggers are caught by
        # the store's uniqueness check instead.
        existing = await self._store.list_by_correlation(correlation.kind, correlation.id)
        active = {a.dedupe_key() for a in existing if a.status in ACTIVE_STATUSES}
        for attempt in attempts:
            if attempt.dedupe_key() in active:
                raise DuplicateActiveAttempt(*attempt.dedupe_key())
            active.add(attempt.dedupe_key())


def _inactive_reason(workflow: WorkflowDefinition) -> str:
    state = "inactive" if not workflow.is_active else "paused"
    return f"Workflow {workflow.id} is {state}"
