from datetime import datetime, timezone

import pytest

from stepwise.clock import ManualClock
from stepwise.contracts import Correlation, WorkflowDefinition
from stepwise.persistence import InMemoryActionLogStore
from stepwise.registry import WorkflowRegistry

T0 = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def t0() -> datetime:
    return T0


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(T0)


@pytest.fixture
def reminder_workflow() -> WorkflowDefinition:
    return WorkflowDefinition(
        id="booking-reminders",
        name="Booking reminders",
        trigger="booking_created",
        phase="after",
        interval_minutes=1440,
        actions=[
            {
                "id": "send-email",
                "action_type": "email",
                "payload": {"template": "reminder"},
                "target_endpoint": "https://hooks.example.test/email",
            },
            {
                "id": "sync-crm",
                "action_type": "crm",
                "target_endpoint": "https://hooks.example.test/crm",
                "delay_minutes": 30,
            },
        ],
    )


@pytest.fixture
def ping_workflow() -> WorkflowDefinition:
    return WorkflowDefinition(
        id="ping",
        trigger="ping",
        phase="now",
        actions=[{"id": "hook", "target_endpoint": "https://hooks.example.test/ping"}],
    )


@pytest.fixture
def registry(reminder_workflow, ping_workflow) -> WorkflowRegistry:
    return WorkflowRegistry([reminder_workflow, ping_workflow])


@pytest.fixture
def store() -> InMemoryActionLogStore:
    return InMemoryActionLogStore()


@pytest.fixture
def booking() -> Correlation:
    return Correlation(kind="bookings", id="42")
