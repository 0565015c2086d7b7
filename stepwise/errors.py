"""Exception taxonomy for the action engine."""

from __future__ import annotations

from typing import Optional


class StepwiseError(Exception):
    """Base class for all engine errors."""


class DispatchError(StepwiseError):
    """Raised when a callback invocation does not succeed."""

    retryable: bool = False

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientDispatchError(DispatchError):
    """Timeout, transport failure, 5xx or 429. Retried per backoff policy."""

    retryable = True


class FatalDispatchError(DispatchError):
    """4xx other than 429, malformed payload or missing target. Not retried."""


class RetryBudgetExceeded(FatalDispatchError):
    """A retryable failure arrived after the retry budget was used up."""


class Conflict(StepwiseError):
    """Compare-and-swap mismatch on an attempt row."""

    def __init__(
        self,
        attempt_id: str,
        expected: str,
        actual: Optional[str] = None,
    ) -> None:
        detail = f" (found {actual})" if actual is not None else ""
        super().__init__(
            f"Attempt {attempt_id} is no longer in status {expected}{detail}"
        )
        self.attempt_id = attempt_id
        self.expected = expected
        self.actual = actual


class DuplicateActiveAttempt(StepwiseError):
    """An unresolved attempt already exists for the same triple."""

    def __init__(self, workflow_id: str, action_id: str, related_entity_id: str) -> None:
        super().__init__(
            f"Active attempt already exists for workflow={workflow_id} "
            f"action={action_id} entity={related_entity_id}"
        )
        self.workflow_id = workflow_id
        self.action_id = action_id
        self.related_entity_id = related_entity_id


class InactiveWorkflow(StepwiseError):
    """The workflow is deactivated or paused."""


class WorkflowNotFound(StepwiseError, LookupError):
    """No workflow matches the requested id or trigger."""


class AttemptNotFound(StepwiseError, LookupError):
    """No attempt exists with the requested id."""


class IllegalTransition(StepwiseError, ValueError):
    """The requested status change is not part of the state machine."""


class StoreUnavailable(StepwiseError):
    """The action log store cannot be reached or is misconfigured."""
