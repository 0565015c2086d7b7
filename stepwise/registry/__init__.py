"""Workflow definition registry."""

from __future__ import annotations

from ..config import StepwiseConfig
from .workflows import WorkflowRegistry


def registry_from_config(config: StepwiseConfig) -> WorkflowRegistry:
    """Build a registry holding the workflows declared in ``config``."""

    return WorkflowRegistry(config.workflows)


__all__ = ["WorkflowRegistry", "registry_from_config"]
