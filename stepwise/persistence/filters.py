from __future__ import annotations

from ..contracts import ActionAttempt, AttemptFilter


def matches_filter(attempt: ActionAttempt, filters: AttemptFilter) -> bool:
    if filters.workflow_id is not None and attempt.workflow_id != filters.workflow_id:
        return False
    if (
        filters.related_entity_kind is not None
        and attempt.related_entity_kind != filters.related_entity_kind
    ):
        return False
    if (
        filters.min_attempt_count is not None
        and attempt.attempt_count < filters.min_attempt_count
    ):
        return False
    if filters.scheduled_before is not None and attempt.scheduled_at > filters.scheduled_before:
        return False
    return True
