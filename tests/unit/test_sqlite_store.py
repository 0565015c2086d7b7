import asyncio
from datetime import timedelta

import pytest

from stepwise.contracts import ActionAttempt, AttemptStatus
from stepwise.errors import StoreUnavailable
from stepwise.persistence import SQLiteActionLogStore


def _attempt(t0, entity: str) -> ActionAttempt:
    return ActionAttempt(
        workflow_id="ping",
        action_id="hook",
        related_entity_kind="pings",
        related_entity_id=entity,
        scheduled_at=t0,
        created_at=t0,
    )


@pytest.mark.asyncio
async def test_rows_survive_reopen(tmp_path, t0):
    path = tmp_path / "actions.db"
    store = SQLiteActionLogStore(path)
    attempt = await store.insert(_attempt(t0, "1"))
    store.close()

    reopened = SQLiteActionLogStore(path)
    loaded = await reopened.get(attempt.id)
    reopened.close()
    assert loaded is not None
    assert loaded.status == AttemptStatus.PENDING
    assert loaded.scheduled_at == t0


@pytest.mark.asyncio
async def test_two_pollers_on_one_database_never_share_a_claim(tmp_path, t0):
    path = tmp_path / "shared.db"
    first = SQLiteActionLogStore(path)
    second = SQLiteActionLogStore(path)
    for n in range(30):
        await first.insert(_attempt(t0, str(n)))

    batches = await asyncio.gather(
        first.claim_batch(t0, 30, lease_timeout=timedelta(minutes=5), owner="a"),
        second.claim_batch(t0, 30, lease_timeout=timedelta(minutes=5), owner="b"),
    )
    first.close()
    second.close()

    ids = [a.id for batch in batches for a in batch]
    assert len(ids) == 30
    assert len(set(ids)) == 30


def test_unopenable_path_is_unavailable(tmp_path):
    with pytest.raises(StoreUnavailable):
        SQLiteActionLogStore(tmp_path / "missing-dir" / "actions.db")
