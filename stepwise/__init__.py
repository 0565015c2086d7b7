"""Stepwise: durable, time-delayed workflow actions with exactly-once-in-effect delivery."""

from .clock import Clock, ManualClock, SystemClock
from .config import StepwiseConfig, load_config
from .contracts import (
    ActionAttempt,
    ActionDefinition,
    AttemptFilter,
    AttemptStatus,
    Correlation,
    DispatchOutcome,
    Phase,
    WorkflowDefinition,
)
from .dispatch import Dispatcher
from .engine import Engine
from .expand import WorkflowExpander
from .persistence import get_store
from .registry import WorkflowRegistry
from .resolver import OutcomeResolver
from .scheduler import ClaimScheduler
from .utils.retry import RetryPolicy, compute_backoff

__version__ = "0.1.0"
__all__ = [
    "ActionAttempt",
    "ActionDefinition",
    "AttemptFilter",
    "AttemptStatus",
    "ClaimScheduler",
    "Clock",
    "Correlation",
    "Dispatcher",
    "DispatchOutcome",
    "Engine",
    "ManualClock",
    "OutcomeResolver",
    "Phase",
    "RetryPolicy",
    "StepwiseConfig",
    "SystemClock",
    "WorkflowDefinition",
    "WorkflowExpander",
    "WorkflowRegistry",
    "compute_backoff",
    "get_store",
    "load_config",
]
