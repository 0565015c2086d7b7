"""In-process registry of workflow definitions."""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from ..contracts import ActionDefinition, WorkflowDefinition
from ..errors import WorkflowNotFound


class WorkflowRegistry:
    """Holds immutable workflow definitions keyed by id.

    Flag changes (pause, resume, deactivate) replace the stored definition
    with an updated copy; definitions themselves are never mutated.
    """

    def __init__(self, workflows: Iterable[WorkflowDefinition] = ()) -> None:
        self._workflows: Dict[str, WorkflowDefinition] = {}
        for workflow in workflows:
            self.register(workflow)

    def register(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        if workflow.id in self._workflows:
            raise ValueError(f"Workflow {workflow.id} is already registered")
        self._workflows[workflow.id] = workflow
        return workflow

    def get(self, workflow_id: str) -> WorkflowDefinition:
        try:
            return self._workflows[workflow_id]
        except KeyError:
            raise WorkflowNotFound(f"Unknown workflow {workflow_id}") from None

    def find(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        return self._workflows.get(workflow_id)

    def list(self) -> List[WorkflowDefinition]:
        return list(self._workflows.values())

    def by_trigger(self, trigger: str) -> List[WorkflowDefinition]:
        return [w for w in self._workflows.values() if w.trigger == trigger]

    def get_action(self, workflow_id: str, action_id: str) -> Optional[ActionDefinition]:
        workflow = self._workflows.get(workflow_id)
        return workflow.get_action(action_id) if workflow else None

    def _replace(self, workflow_id: str, **flags: bool) -> WorkflowDefinition:
        updated = self.get(workflow_id).model_copy(update=flags)
        self._workflows[workflow_id] = updated
        return updated

    def pause(self, workflow_id: str) -> WorkflowDefinition:
        return self._replace(workflow_id, is_paused=True)

    def resume(self, workflow_id: str) -> WorkflowDefinition:
        return self._replace(workflow_id, is_paused=False)

    def deactivate(self, workflow_id: str) -> WorkflowDefinition:
        return self._replace(workflow_id, is_active=False)
