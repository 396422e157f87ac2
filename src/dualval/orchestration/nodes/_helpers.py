"""
Orchestration Helpers

Shared by the graph nodes and the orchestrator: terminal learning events
and the scoring context handed to the analyzers.
"""

from __future__ import annotations

from typing import Any

from dualval.core.enums import EventSourceType, LearningEventType, WorkflowStatus
from dualval.core.schemas import LearningEvent, ValidationWorkflow
from dualval.learning.engine import ContinuousLearningEngine

# Terminal status -> (event type, learning category)
OUTCOME_EVENTS = {
    WorkflowStatus.APPROVED: (LearningEventType.SUCCESS, "approved"),
    WorkflowStatus.REJECTED: (LearningEventType.FAILURE, "rejected"),
    WorkflowStatus.ESCALATED: (LearningEventType.FAILURE, "escalated"),
    WorkflowStatus.CANCELLED: (LearningEventType.CANCELLATION, "cancelled"),
}

ESCALATION_IMPACT = -0.5
CANCELLATION_IMPACT = -0.2
TIMEOUT_IMPACT = -0.3


def outcome_impact(workflow: ValidationWorkflow) -> float:
    """
    Learning impact of a terminal workflow.

    Approval is worth more the earlier it happens; rejection costs more the
    further the final confidence is from 100. A rejection without any scored
    iteration (malformed artifact) is the worst case.
    """
    status = workflow.status
    confidence = workflow.final_confidence
    if status == WorkflowStatus.APPROVED:
        return round((confidence or 0.0) / 100.0 / workflow.current_iteration, 4)
    if status == WorkflowStatus.REJECTED:
        if confidence is None:
            return -1.0
        return round(-max(0.1, 1.0 - confidence / 100.0), 4)
    if status == WorkflowStatus.ESCALATED:
        return ESCALATION_IMPACT
    if status == WorkflowStatus.CANCELLED:
        return CANCELLATION_IMPACT
    raise ValueError(f"Workflow status '{status.value}' is not terminal")


def emit_outcome(
    learning: ContinuousLearningEngine,
    workflow: ValidationWorkflow,
    event_type: LearningEventType | None = None,
    category: str | None = None,
    impact: float | None = None,
) -> LearningEvent:
    """Record the single learning event of a terminal transition."""
    default_type, default_category = OUTCOME_EVENTS[workflow.status]
    return learning.emit(
        event_type or default_type,
        EventSourceType.WORKFLOW,
        workflow.workflow_id,
        outcome_impact(workflow) if impact is None else impact,
        category=category or default_category,
        data={
            "status": workflow.status.value,
            "iteration": workflow.current_iteration,
            "final_confidence": workflow.final_confidence,
            "reason": workflow.status_reason,
            "artifact_kind": workflow.artifact_kind.value,
        },
    )


def scoring_context(artifact: dict[str, Any], context: dict[str, Any] | None) -> dict[str, Any]:
    """Caller context, with the artifact's own source data as a fallback."""
    merged = dict(context or {})
    if isinstance(artifact, dict) and artifact.get("source_data") and "source_data" not in merged:
        merged["source_data"] = artifact["source_data"]
    return merged
