"""Callback dispatcher tests against a mocked HTTP transport."""

import json
from datetime import timedelta

import httpx
import pytest

from stepwise.contracts import ActionAttempt, AttemptStatus, DispatchOutcome
from stepwise.dispatch import Dispatcher, classify_status
from stepwise.errors import Conflict
from stepwise.security import CallbackSigner

SECRET = "test-callback-signing-secret-0123456789"


@pytest.mark.parametrize(
    "code,outcome",
    [
        (200, DispatchOutcome.SUCCESS),
        (204, DispatchOutcome.SUCCESS),
        (429, DispatchOutcome.RETRYABLE),
        (500, DispatchOutcome.RETRYABLE),
        (503, DispatchOutcome.RETRYABLE),
        (400, DispatchOutcome.FATAL),
        (404, DispatchOutcome.FATAL),
        (301, DispatchOutcome.FATAL),
    ],
)
def test_classify_status(code, outcome):
    assert classify_status(code) == outcome


async def _claimed(store, t0, workflow_id="booking-reminders", action_id="send-email"):
    attempt = await store.insert(
        ActionAttempt(
            workflow_id=workflow_id,
            action_id=action_id,
            related_entity_kind="bookings",
            related_entity_id="42",
            meta={"email": "guest@example.test"},
            scheduled_at=t0,
            created_at=t0,
        )
    )
    [claimed] = await store.claim_batch(
        t0, 1, lease_timeout=timedelta(minutes=5), owner="test"
    )
    assert claimed.id == attempt.id
    return claimed


def _dispatcher(store, registry, clock, handler, **kwargs) -> Dispatcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return Dispatcher(store, registry, client=client, clock=clock, **kwargs)


@pytest.mark.asyncio
async def test_success_posts_composed_body(store, registry, clock, t0):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    attempt = await _claimed(store, t0)
    dispatcher = _dispatcher(store, registry, clock, handler, headers={"X-Source": "tests"})

    result = await dispatcher.dispatch(attempt)

    assert result.outcome == DispatchOutcome.SUCCESS
    assert result.status_code == 200
    assert result.attempt.status == AttemptStatus.DISPATCHING
    assert result.attempt.started_at == t0

    [request] = seen
    assert str(request.url) == "https://hooks.example.test/email"
    assert request.headers["X-Source"] == "tests"
    assert "Authorization" not in request.headers
    body = json.loads(request.content)
    assert body["attempt_id"] == attempt.id
    assert body["attempt_count"] == 0
    assert body["payload"] == {"template": "reminder", "email": "guest@example.test"}
    assert body["meta"] == {"email": "guest@example.test"}
    assert body["related_entity_kind"] == "bookings"

    stored = await store.get(attempt.id)
    assert stored.status == AttemptStatus.DISPATCHING


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "code,outcome",
    [(503, DispatchOutcome.RETRYABLE), (429, DispatchOutcome.RETRYABLE), (422, DispatchOutcome.FATAL)],
)
async def test_error_statuses(store, registry, clock, t0, code, outcome):
    attempt = await _claimed(store, t0)
    dispatcher = _dispatcher(store, registry, clock, lambda request: httpx.Response(code))

    result = await dispatcher.dispatch(attempt)

    assert result.outcome == outcome
    assert result.status_code == code
    assert str(code) in result.error


@pytest.mark.asyncio
@pytest.mark.parametrize("exc_type", [httpx.ReadTimeout, httpx.ConnectError])
async def test_transport_failures_are_retryable(store, registry, clock, t0, exc_type):
    def handler(request: httpx.Request) -> httpx.Response:
        raise exc_type("boom", request=request)

    attempt = await _claimed(store, t0)
    dispatcher = _dispatcher(store, registry, clock, handler)

    result = await dispatcher.dispatch(attempt)

    assert result.outcome == DispatchOutcome.RETRYABLE
    assert result.status_code is None


@pytest.mark.asyncio
async def test_missing_endpoint_is_fatal_without_call(store, clock, t0):
    from stepwise.contracts import WorkflowDefinition
    from stepwise.registry import WorkflowRegistry

    registry = WorkflowRegistry(
        [WorkflowDefinition(id="bare", trigger="bare", actions=[{"id": "noop"}])]
    )
    calls = []
    attempt = await _claimed(store, t0, workflow_id="bare", action_id="noop")
    dispatcher = _dispatcher(
        store, registry, clock, lambda request: calls.append(request) or httpx.Response(200)
    )

    result = await dispatcher.dispatch(attempt)

    assert result.outcome == DispatchOutcome.FATAL
    assert "no target endpoint" in result.error
    assert calls == []


@pytest.mark.asyncio
async def test_default_endpoint_used_when_action_has_none(store, clock, t0):
    from stepwise.contracts import WorkflowDefinition
    from stepwise.registry import WorkflowRegistry

    registry = WorkflowRegistry(
        [WorkflowDefinition(id="bare", trigger="bare", actions=[{"id": "noop"}])]
    )
    urls = []

    def handler(request: httpx.Request) -> httpx.Response:
        urls.append(str(request.url))
        return httpx.Response(204)

    attempt = await _claimed(store, t0, workflow_id="bare", action_id="noop")
    dispatcher = _dispatcher(
        store, registry, clock, handler, default_endpoint="https://fallback.example.test/hook"
    )

    result = await dispatcher.dispatch(attempt)

    assert result.outcome == DispatchOutcome.SUCCESS
    assert urls == ["https://fallback.example.test/hook"]


@pytest.mark.asyncio
async def test_unknown_action_is_fatal(store, registry, clock, t0):
    attempt = await _claimed(store, t0, workflow_id="retired", action_id="gone")
    dispatcher = _dispatcher(store, registry, clock, lambda request: httpx.Response(200))

    result = await dispatcher.dispatch(attempt)

    assert result.outcome == DispatchOutcome.FATAL


@pytest.mark.asyncio
async def test_lost_claim_raises_conflict(store, registry, clock, t0):
    calls = []
    attempt = await _claimed(store, t0)
    await store.update_status(
        attempt.id, AttemptStatus.CLAIMED, AttemptStatus.STOPPED, {"completed_at": t0}
    )
    dispatcher = _dispatcher(
        store, registry, clock, lambda request: calls.append(request) or httpx.Response(200)
    )

    with pytest.raises(Conflict):
        await dispatcher.dispatch(attempt)
    assert calls == []


@pytest.mark.asyncio
async def test_signed_callback_verifies(store, registry, clock, t0):
    signer = CallbackSigner(SECRET)
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200)

    attempt = await _claimed(store, t0)
    dispatcher = _dispatcher(store, registry, clock, handler, signer=signer)

    await dispatcher.dispatch(attempt)

    [request] = seen
    scheme, token = request.headers["Authorization"].split(" ", 1)
    assert scheme == "Bearer"
    claims = signer.verify(token, request.content)
    assert claims["sub"] == attempt.id
