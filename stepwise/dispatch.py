"""Callback dispatcher for claimed action attempts."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

import httpx

from .clock import Clock, SystemClock
from .config import DispatchConfig
from .contracts import (
    ActionAttempt,
    ActionDefinition,
    AttemptStatus,
    CallbackPayload,
    DispatchOutcome,
    DispatchResult,
)
from .errors import DispatchError, FatalDispatchError, TransientDispatchError
from .persistence import ActionLogStore
from .registry import WorkflowRegistry
from .security import CallbackSigner

logger = logging.getLogger(__name__)


def classify_status(status_code: int) -> DispatchOutcome:
    """Map a callback's HTTP status onto a dispatch outcome."""
    if 200 <= status_code < 300:
        return DispatchOutcome.SUCCESS
    if status_code == 429 or 500 <= status_code < 600:
        return DispatchOutcome.RETRYABLE
    return DispatchOutcome.FATAL


class Dispatcher:
    """Moves a claimed attempt to ``dispatching`` and performs one callback.

    Never retries in process; retries are rescheduled through the store by
    the outcome resolver.
    """

    def __init__(
        self,
        store: ActionLogStore,
        registry: WorkflowRegistry,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        default_endpoint: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        signer: Optional[CallbackSigner] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()
        self._timeout = timeout
        self._default_endpoint = default_endpoint
        self._headers = dict(headers or {})
        self._signer = signer
        self._clock = clock or SystemClock()

    @classmethod
    def from_config(
        cls,
        config: DispatchConfig,
        store: ActionLogStore,
        registry: WorkflowRegistry,
        *,
        client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Clock] = None,
    ) -> "Dispatcher":
        return cls(
            store,
            registry,
            client=client,
            timeout=config.timeout_seconds,
            default_endpoint=config.default_endpoint,
            headers=config.headers,
            signer=CallbackSigner.from_config(config),
            clock=clock,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "Dispatcher":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    def compose(self, attempt: ActionAttempt, action: ActionDefinition) -> CallbackPayload:
        """Build the callback body: the action's payload template overlaid with
        the attempt's metadata."""
        return CallbackPayload(
            attempt_id=attempt.id,
            workflow_id=attempt.workflow_id,
            action_id=attempt.action_id,
            attempt_count=attempt.attempt_count,
            payload={**action.payload, **attempt.meta},
            related_entity_kind=attempt.related_entity_kind,
            related_entity_id=attempt.related_entity_id,
            meta=attempt.meta,
        )

    async def begin(self, attempt: ActionAttempt) -> ActionAttempt:
        """Compare-and-swap ``claimed -> dispatching``. Raises ``Conflict``
        when the claim was lost to a reclaim or a stop."""
        return await self._store.update_status(
            attempt.id,
            AttemptStatus.CLAIMED,
            AttemptStatus.DISPATCHING,
            {"started_at": self._clock.now()},
            expected_token=attempt.claim_token,
        )

    async def dispatch(self, attempt: ActionAttempt) -> DispatchResult:
        """Dispatch one claimed attempt and report what happened."""
        started = await self.begin(attempt)
        try:
            endpoint, body = self._prepare(started)
            status_code = await self._invoke(endpoint, started.id, body)
        except DispatchError as exc:
            outcome = DispatchOutcome.RETRYABLE if exc.retryable else DispatchOutcome.FATAL
            logger.warning(
                f"Dispatch of attempt {started.id} failed ({outcome.value}): {exc}"
            )
            return DispatchResult(
                attempt=started,
                outcome=outcome,
                status_code=exc.status_code,
                error=str(exc),
            )
        logger.info(f"Dispatched attempt {started.id} -> HTTP {status_code}")
        return DispatchResult(
            attempt=started, outcome=DispatchOutcome.SUCCESS, status_code=status_code
        )

    def _prepare(self, attempt: ActionAttempt) -> tuple[str, bytes]:
        action = self._registry.get_action(attempt.workflow_id, attempt.action_id)
        if action is None:
            raise FatalDispatchError(
                f"No action definition {attempt.action_id} in workflow {attempt.workflow_id}"
            )
        endpoint = action.target_endpoint or self._default_endpoint
        if not endpoint:
            raise FatalDispatchError(f"Action {action.id} has no target endpoint")
        try:
            body = self.compose(attempt, action).model_dump_json().encode()
        except (TypeError, ValueError) as exc:
            raise FatalDispatchError(f"Malformed payload: {exc}") from exc
        return endpoint, body

    async def _invoke(self, endpoint: str, attempt_id: str, body: bytes) -> int:
        headers = {**self._headers, "Content-Type": "application/json"}
        if self._signer is not None:
            headers["Authorization"] = f"Bearer {self._signer.sign(attempt_id, body)}"
        try:
            response = await asyncio.wait_for(
                self._client.post(
                    endpoint, content=body, headers=headers, timeout=self._timeout
                ),
                timeout=self._timeout,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
            raise TransientDispatchError(
                f"Callback to {endpoint} timed out after {self._timeout}s"
            ) from exc
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as exc:
            raise FatalDispatchError(f"Invalid endpoint {endpoint}: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientDispatchError(f"Callback to {endpoint} failed: {exc}") from exc

        outcome = classify_status(response.status_code)
        if outcome == DispatchOutcome.RETRYABLE:
            raise TransientDispatchError(
                f"Callback returned HTTP {response.status_code}", response.status_code
            )
        if outcome == DispatchOutcome.FATAL:
            raise FatalDispatchError(
                f"Callback returned HTTP {response.status_code}", response.status_code
            )
        return response.status_code
