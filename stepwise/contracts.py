"""Core data contracts for the action engine."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .clock import ensure_utc


class Phase(str, Enum):
    """When a workflow fires relative to its trigger event."""

    BEFORE = "before"
    AFTER = "after"
    NOW = "now"


class AttemptStatus(str, Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    DISPATCHING = "dispatching"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


TERMINAL_STATUSES = frozenset(
    {AttemptStatus.COMPLETED, AttemptStatus.FAILED, AttemptStatus.STOPPED}
)
LEASED_STATUSES = frozenset({AttemptStatus.CLAIMED, AttemptStatus.DISPATCHING})
ACTIVE_STATUSES = frozenset(AttemptStatus) - TERMINAL_STATUSES


class DispatchOutcome(str, Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    FATAL = "fatal"


class Correlation(BaseModel):
    """The business entity an attempt is tied to."""

    model_config = ConfigDict(frozen=True)

    kind: str
    id: str


class ActionDefinition(BaseModel):
    """One immutable step of a workflow."""

    model_config = ConfigDict(frozen=True)

    id: str
    workflow_id: str
    order: int = 1
    action_type: str = "callback"
    payload: Dict[str, Any] = Field(default_factory=dict)
    condition: Optional[Dict[str, Any]] = None
    target_endpoint: Optional[str] = None
    delay_minutes: float = 0


class WorkflowDefinition(BaseModel):
    """Immutable workflow template, read-only to the engine."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    description: Optional[str] = None
    trigger: str
    phase: Phase = Phase.NOW
    interval_minutes: float = 0
    is_active: bool = True
    is_paused: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)
    actions: List[ActionDefinition] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _fill_action_defaults(cls, data: Any) -> Any:
        # Actions declared inline inherit the workflow id and their position.
        if not isinstance(data, dict):
            return data
        actions = data.get("actions")
        if not actions:
            return data
        filled = []
        for index, action in enumerate(actions):
            if isinstance(action, dict):
                action = dict(action)
                action.setdefault("workflow_id", data.get("id"))
                if action.get("order") is None:
                    action["order"] = index + 1
            filled.append(action)
        return {**data, "actions": filled}

    @model_validator(mode="after")
    def _check_action_ownership(self) -> "WorkflowDefinition":
        seen = set()
        for action in self.actions:
            if action.workflow_id != self.id:
                raise ValueError(
                    f"Action {action.id} belongs to workflow {action.workflow_id}, not {self.id}"
                )
            if action.id in seen:
                raise ValueError(f"Duplicate action id {action.id} in workflow {self.id}")
            seen.add(action.id)
        return self

    @property
    def is_runnable(self) -> bool:
        return self.is_active and not self.is_paused

    def get_action(self, action_id: str) -> Optional[ActionDefinition]:
        return next((a for a in self.actions if a.id == action_id), None)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActionAttempt(BaseModel):
    """One scheduled execution of a workflow action (an action log row)."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    action_id: str
    order: int = 1
    related_entity_kind: str
    related_entity_id: str
    meta: Dict[str, Any] = Field(default_factory=dict)
    status: AttemptStatus = AttemptStatus.PENDING
    scheduled_at: datetime
    claimed_at: Optional[datetime] = None
    claim_token: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    attempt_count: int = 0
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator(
        "scheduled_at", "claimed_at", "started_at", "completed_at", "created_at"
    )
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @property
    def correlation(self) -> Correlation:
        return Correlation(kind=self.related_entity_kind, id=self.related_entity_id)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def dedupe_key(self) -> tuple[str, str, str]:
        return (self.workflow_id, self.action_id, self.related_entity_id)


class AttemptFilter(BaseModel):
    """Optional narrowing for status listings."""

    workflow_id: Optional[str] = None
    related_entity_kind: Optional[str] = None
    min_attempt_count: Optional[int] = None
    scheduled_before: Optional[datetime] = None
    limit: Optional[int] = None

    @field_validator("scheduled_before")
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None


class CallbackPayload(BaseModel):
    """JSON body posted to an action's target endpoint."""

    attempt_id: str
    workflow_id: str
    action_id: str
    attempt_count: int
    payload: Dict[str, Any] = Field(default_factory=dict)
    related_entity_kind: str
    related_entity_id: str
    meta: Dict[str, Any] = Field(default_factory=dict)


class DispatchResult(BaseModel):
    """What the dispatcher observed for one attempt."""

    attempt: ActionAttempt
    outcome: DispatchOutcome
    status_code: Optional[int] = None
    error: Optional[str] = None
