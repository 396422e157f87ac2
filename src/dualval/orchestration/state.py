"""
Pass State

LangGraph state for one validation pass (one iteration of one workflow).
The durable state between passes is the WorkflowSnapshot in the store.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from dualval.core.enums import ArtifactKind
from dualval.core.schemas import (
    FeedbackPlan,
    Node,
    NodeScore,
    RevalidationResult,
    ValidationWorkflow,
)

PassMode = Literal["start", "revision"]
Outcome = Literal["approve", "request_revision", "arbitrate", "reject", "escalate", "failed"]


class PassState(BaseModel):
    """State threaded through the validation graph."""

    model_config = ConfigDict(validate_assignment=True, arbitrary_types_allowed=True)

    workflow: ValidationWorkflow
    mode: PassMode = "start"
    artifact: dict[str, Any] = Field(default_factory=dict)
    artifact_kind: ArtifactKind
    context: dict[str, Any] = Field(default_factory=dict)

    # Previous iteration (revision passes only)
    previous_nodes: list[Node] = Field(default_factory=list)
    previous_scores: dict[str, NodeScore] = Field(default_factory=dict)

    # Current iteration
    nodes: list[Node] = Field(default_factory=list)
    scores: dict[str, NodeScore] = Field(default_factory=dict)
    revalidation: RevalidationResult | None = None
    feedback_plans: list[FeedbackPlan] = Field(default_factory=list)
    disagreement_ids: list[str] = Field(default_factory=list)

    outcome: Outcome | None = None
    error: str | None = None

    def nodes_by_id(self) -> dict[str, Node]:
        return {node.node_id: node for node in self.nodes}

    def failing_scores(self) -> list[NodeScore]:
        return [s for _, s in sorted(self.scores.items()) if not s.passed]
