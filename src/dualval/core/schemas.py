"""
DualVal Core Schemas

This module defines all Pydantic models (schemas) used throughout the DualVal system.
These schemas represent the domain model and enforce invariants via validators.

Key Design Principles:
1. Scoring records, issues and learning events are immutable (frozen=True)
2. Aggregates that move through a state machine (workflow, disagreement) validate on assignment
3. Every issue carries concrete evidence
4. Every resolution carries an explanation
"""

from __future__ import annotations

import hashlib
import json
import math
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from dualval.core.enums import (
    ArtifactKind,
    ConfidenceFactor,
    DisagreementStatus,
    DisagreementTrigger,
    DisagreementType,
    EventSourceType,
    FeedbackTimeline,
    ImpactLevel,
    LearningEventType,
    NodeType,
    ResolutionMethod,
    RetrainingPriority,
    Severity,
    WorkflowStatus,
)


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


# =============================================================================
# NODES
# =============================================================================


class Node(BaseModel):
    """
    A discrete, independently scorable unit of an artifact.

    Nodes are never mutated; a revision re-creates the node with the same id
    and a new content hash.
    """

    model_config = ConfigDict(frozen=True)

    node_id: str = Field(..., min_length=1)
    node_type: NodeType
    content: Any
    depends_on: tuple[str, ...] = Field(default_factory=tuple)
    content_hash: str = Field(..., min_length=1)
    importance: int = Field(default=5, ge=1, le=10)
    generator_confidence: float | None = Field(default=None, ge=0.0, le=1.0)

    @field_validator("depends_on", mode="before")
    @classmethod
    def sort_dependencies(cls, v: Any) -> tuple[str, ...]:
        """Dependencies are stored sorted so equal sets compare equal."""
        return tuple(sorted(set(v or ())))

    @classmethod
    def compute_hash(cls, node_type: NodeType | str, content: Any) -> str:
        """Compute content hash over the canonical JSON of type and content."""
        node_type_value = node_type.value if isinstance(node_type, NodeType) else node_type
        canonical = json.dumps(
            {"type": node_type_value, "content": content}, sort_keys=True, default=str
        )
        return hashlib.sha256(canonical.encode()).hexdigest()[:32]


# =============================================================================
# SCORING
# =============================================================================


class ConfidenceFactors(BaseModel):
    """Five sub-scores (0-100) for one node at one iteration."""

    model_config = ConfigDict(frozen=True)

    accuracy: float = Field(..., ge=0.0, le=100.0)
    bias: float = Field(..., ge=0.0, le=100.0)
    clarity: float = Field(..., ge=0.0, le=100.0)
    consistency: float = Field(..., ge=0.0, le=100.0)
    compliance: float = Field(..., ge=0.0, le=100.0)

    def get(self, factor: ConfidenceFactor | str) -> float:
        """Score for one factor."""
        name = factor.value if isinstance(factor, ConfidenceFactor) else factor
        return float(getattr(self, name))

    def as_dict(self) -> dict[str, float]:
        return {f.value: self.get(f) for f in ConfidenceFactor}

    def overall(self, weights: dict[str, float]) -> float:
        """Weighted sum of the factors."""
        return round(sum(weights[name] * score for name, score in self.as_dict().items()), 4)


class Issue(BaseModel):
    """A factor scoring below its target on one node."""

    model_config = ConfigDict(frozen=True)

    issue_id: str
    node_id: str
    category: ConfidenceFactor
    severity: Severity
    description: str
    evidence: list[str] = Field(..., min_length=1)
    score: float = Field(..., ge=0.0, le=100.0)
    target: float
    floor: float
    floor_violation: bool = False
    priority_rank: int = Field(default=1, ge=1)

    @property
    def gap(self) -> float:
        """Distance below target."""
        return max(0.0, self.target - self.score)


class NodeScore(BaseModel):
    """
    Immutable scoring record for (workflow, node, iteration).

    `reused_from_iteration` is set when the re-evaluation engine carried the
    record forward because neither the node nor its dependency closure changed.
    """

    model_config = ConfigDict(frozen=True)

    workflow_id: str
    node_id: str
    node_type: NodeType
    iteration: int = Field(..., ge=1)
    content_hash: str
    factors: ConfidenceFactors
    overall: float = Field(..., ge=0.0, le=100.0)
    passed: bool
    floor_violations: list[ConfidenceFactor] = Field(default_factory=list)
    issues: list[Issue] = Field(default_factory=list)
    importance: int = Field(default=5, ge=1, le=10)
    reused_from_iteration: int | None = None
    scored_at: datetime = Field(default_factory=utcnow)

    @property
    def severity(self) -> Severity | None:
        """Most severe issue on the node (None when there are no issues)."""
        if not self.issues:
            return None
        return max((i.severity for i in self.issues), key=lambda s: s.rank)

    @property
    def confidence(self) -> float:
        """Overall confidence on a 0-1 scale."""
        return self.overall / 100.0


# =============================================================================
# FEEDBACK
# =============================================================================


class FeedbackItem(BaseModel):
    """One actionable improvement for one issue."""

    model_config = ConfigDict(frozen=True)

    item_id: str
    node_id: str
    issue: Issue
    suggested_action: str
    before_example: str | None = None
    after_example: str | None = None
    expected_confidence_delta: float = Field(..., ge=0.0)
    priority_score: float = Field(..., ge=1.0, le=10.0)
    timeline: FeedbackTimeline
    implementation_steps: list[str] = Field(default_factory=list)

    @property
    def severity(self) -> Severity:
        return self.issue.severity

    @property
    def blocking(self) -> bool:
        """Critical items must be addressed before re-submission."""
        return self.issue.severity == Severity.CRITICAL


class FeedbackPlan(BaseModel):
    """Ordered improvement plan for a single failing node."""

    model_config = ConfigDict(frozen=True)

    workflow_id: str
    node_id: str
    iteration: int = Field(..., ge=1)
    severity: Severity
    current_confidence: float
    projected_confidence: float
    items: list[FeedbackItem] = Field(..., min_length=1)

    @property
    def blocking_items(self) -> list[FeedbackItem]:
        return [item for item in self.items if item.blocking]

    def unaddressed_blocking(self, addressed: set[str] | frozenset[str]) -> list[str]:
        """Ids of critical items not in `addressed`."""
        return [item.item_id for item in self.blocking_items if item.item_id not in addressed]


# =============================================================================
# RE-EVALUATION
# =============================================================================


class Regression(BaseModel):
    """A node whose score would differ from the trusted (cached or prior) score."""

    model_config = ConfigDict(frozen=True)

    node_id: str
    iteration: int
    previous_overall: float
    current_overall: float
    factor: ConfidenceFactor | None = None
    reason: str
    requires_manual_review: bool = True


class RevalidationResult(BaseModel):
    """Outcome of selectively re-evaluating a revised artifact."""

    model_config = ConfigDict(frozen=True)

    workflow_id: str
    iteration: int
    node_scores: dict[str, NodeScore]
    changed_ids: list[str] = Field(default_factory=list)
    added_ids: list[str] = Field(default_factory=list)
    removed_ids: list[str] = Field(default_factory=list)
    impact_set: list[str] = Field(default_factory=list)
    rescored_ids: list[str] = Field(default_factory=list)
    reused_ids: list[str] = Field(default_factory=list)
    regressions: list[Regression] = Field(default_factory=list)
    resolved_issue_count: int = 0
    new_issue_count: int = 0
    previous_confidence: float | None = None
    current_confidence: float
    full_sweep: bool = False

    @property
    def confidence_delta(self) -> float:
        if self.previous_confidence is None:
            return 0.0
        return round(self.current_confidence - self.previous_confidence, 4)

    @property
    def cost_savings(self) -> float:
        """Fraction of nodes whose scoring was skipped."""
        total = len(self.node_scores)
        if total == 0:
            return 0.0
        return round(len(self.reused_ids) / total, 4)

    @property
    def feedback_effectiveness(self) -> float:
        """Share of previously open issues that the revision resolved."""
        denominator = self.resolved_issue_count + self.new_issue_count
        if denominator == 0:
            return 1.0
        return round(self.resolved_issue_count / denominator, 4)


# =============================================================================
# DISAGREEMENTS
# =============================================================================


class Position(BaseModel):
    """One side's position in a disagreement."""

    model_config = ConfigDict(frozen=True)

    source: Literal["generator", "validator"]
    confidence: float = Field(..., ge=0.0, le=1.0)
    content: Any = None
    rationale: str = ""
    issues: list[str] = Field(default_factory=list)


class Resolution(BaseModel):
    """How a disagreement was closed. The explanation is mandatory."""

    model_config = ConfigDict(frozen=True)

    method: ResolutionMethod
    final_content: Any = None
    explanation: str = Field(..., min_length=1)
    approver: str = "system"
    learning_notes: list[str] = Field(default_factory=list)
    resolved_at: datetime = Field(default_factory=utcnow)

    @field_validator("explanation")
    @classmethod
    def explanation_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Resolution explanation must not be blank")
        return v.strip()

    @property
    def accepts_content(self) -> bool:
        """True when the resolution keeps the generated content."""
        return self.method != ResolutionMethod.ACCEPT_VALIDATOR


class Disagreement(BaseModel):
    """Divergence between generator and validator on one node."""

    # Allow mutation for state transitions
    model_config = ConfigDict(validate_assignment=True)

    disagreement_id: str
    workflow_id: str
    node_id: str
    disagreement_type: DisagreementType
    severity: Severity
    triggers: list[DisagreementTrigger] = Field(..., min_length=1)
    generator_position: Position
    validator_position: Position
    evidence: list[str] = Field(default_factory=list)
    status: DisagreementStatus = DisagreementStatus.DETECTED
    escalation_reason: str | None = None
    review_priority: int = Field(default=4, ge=1)
    resolution: Resolution | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class DisagreementFilter(BaseModel):
    """Operator-facing query over disagreements."""

    model_config = ConfigDict(frozen=True)

    status: DisagreementStatus | None = None
    severity: Severity | None = None
    disagreement_type: DisagreementType | None = None
    workflow_id: str | None = None
    since: datetime | None = None
    until: datetime | None = None
    limit: int = Field(default=100, ge=1, le=1000)


class ReviewItem(BaseModel):
    """Self-explanatory record pushed to the human-review queue."""

    model_config = ConfigDict(frozen=True)

    disagreement_id: str
    workflow_id: str
    node_id: str
    severity: Severity
    disagreement_type: DisagreementType
    priority: int = Field(..., ge=1)
    reason: str
    generator_position: Position
    validator_position: Position
    evidence: list[str] = Field(default_factory=list)
    enqueued_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# LEARNING
# =============================================================================


_EVENT_TYPE_BOOST = {
    LearningEventType.DISAGREEMENT: 3,
    LearningEventType.CORRECTION: 2,
    LearningEventType.FAILURE: 2,
    LearningEventType.TIMEOUT: 1,
    LearningEventType.CANCELLATION: 1,
    LearningEventType.FEEDBACK: 1,
    LearningEventType.SUCCESS: 0,
}


class LearningEvent(BaseModel):
    """Immutable validation or disagreement outcome."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: LearningEventType
    source_type: EventSourceType
    source_id: str
    category: str = "general"
    data: dict[str, Any] = Field(default_factory=dict)
    impact: float = Field(..., ge=-1.0, le=1.0)
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("impact")
    @classmethod
    def impact_is_finite(cls, v: float) -> float:
        if math.isnan(v):
            raise ValueError("impact must be a number")
        return v

    @property
    def processing_priority(self) -> float:
        """Higher magnitude and more actionable types are processed first."""
        return abs(self.impact) * 10 + _EVENT_TYPE_BOOST[self.event_type]


class LearningInsight(BaseModel):
    """Aggregate pattern derived from a cluster of learning events."""

    model_config = ConfigDict(frozen=True)

    insight_id: str
    source_type: EventSourceType
    category: str
    event_count: int = Field(..., ge=1)
    average_impact: float = Field(..., ge=-1.0, le=1.0)
    impact_level: ImpactLevel
    confidence: float = Field(..., ge=0.0, le=1.0)
    recommended_action: str
    description: str
    event_ids: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def score(self) -> float:
        weight = {ImpactLevel.HIGH: 3, ImpactLevel.MEDIUM: 2, ImpactLevel.LOW: 1}
        return weight[self.impact_level] * self.confidence


class BatchResult(BaseModel):
    """Summary of one processed learning batch."""

    model_config = ConfigDict(frozen=True)

    processed: int = 0
    insights_generated: int = 0
    errors: int = 0
    next_batch_at: datetime
    insights: list[LearningInsight] = Field(default_factory=list)


class RetrainingOptions(BaseModel):
    """Options for an explicit retraining request."""

    model_config = ConfigDict(frozen=True)

    priority: RetrainingPriority = RetrainingPriority.NORMAL
    validation_split: float = Field(default=0.2, gt=0.0, lt=0.5)
    epochs: int = Field(default=10, ge=1)
    reason: str = "manual"


class RetrainingRequest(BaseModel):
    """Recorded retraining request; execution is delegated."""

    model_config = ConfigDict(frozen=True)

    request_id: str
    target_model: str
    options: RetrainingOptions
    status: Literal["queued", "submitted"] = "queued"
    external_job_id: str | None = None
    training_event_count: int = 0
    requested_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# WORKFLOW
# =============================================================================


class ValidationWorkflow(BaseModel):
    """
    Aggregate root for one artifact moving through validation.

    The confidence history is append-only: one full mapping of node id to
    factors per completed iteration.
    """

    # Allow mutation for state transitions
    model_config = ConfigDict(validate_assignment=True)

    workflow_id: str
    artifact_id: str
    artifact_kind: ArtifactKind
    status: WorkflowStatus = WorkflowStatus.IN_PROGRESS
    current_iteration: int = Field(default=1, ge=1)
    max_iterations: int = Field(default=3, ge=1)

    confidence_history: dict[int, dict[str, ConfidenceFactors]] = Field(default_factory=dict)
    iteration_confidence: dict[int, float] = Field(default_factory=dict)
    final_confidence: float | None = None

    status_reason: str | None = None
    issues: list[Issue] = Field(default_factory=list)
    feedback_plans: list[FeedbackPlan] = Field(default_factory=list)
    disagreement_ids: list[str] = Field(default_factory=list)
    regressions: list[Regression] = Field(default_factory=list)
    failed_iterations: list[int] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None

    @model_validator(mode="after")
    def iteration_within_bounds(self) -> "ValidationWorkflow":
        if self.current_iteration > self.max_iterations:
            raise ValueError(
                f"current_iteration {self.current_iteration} exceeds "
                f"max_iterations {self.max_iterations}"
            )
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def confidence_trend(self) -> Literal["improving", "declining", "stable"]:
        """Direction of overall confidence across completed iterations."""
        values = [self.iteration_confidence[i] for i in sorted(self.iteration_confidence)]
        if len(values) < 2:
            return "stable"
        delta = values[-1] - values[0]
        if delta > 1.0:
            return "improving"
        if delta < -1.0:
            return "declining"
        return "stable"

    @property
    def stability_score(self) -> float:
        """1 - variance/100 of the iteration confidences, clamped to [0, 1]."""
        values = list(self.iteration_confidence.values())
        if len(values) < 2:
            return 1.0
        mean = sum(values) / len(values)
        variance = sum((v - mean) ** 2 for v in values) / len(values)
        return max(0.0, min(1.0, 1.0 - variance / 100.0))


class WorkflowSnapshot(BaseModel):
    """Durable state written before every suspension point."""

    model_config = ConfigDict(frozen=True)

    workflow: ValidationWorkflow
    artifact: dict[str, Any]
    nodes: list[Node]
    scores: dict[str, NodeScore] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)
