"""
DualVal Core Enumerations

This module defines all enumerations used throughout the DualVal system.
These are critical for maintaining type safety and consistent vocabulary.
"""

from enum import Enum


class ArtifactKind(str, Enum):
    """Kind of generated assessment artifact."""

    INDIVIDUAL = "individual"
    EXECUTIVE = "executive"
    ORGANIZATIONAL = "organizational"


class NodeType(str, Enum):
    """Type of an independently validatable node."""

    SCORING = "scoring"
    INSIGHT = "insight"
    RECOMMENDATION = "recommendation"
    SUMMARY = "summary"
    CONTEXT = "context"

    @property
    def importance(self) -> int:
        """Relative importance used to weight workflow confidence (1-10)."""
        return _NODE_IMPORTANCE[self]


_NODE_IMPORTANCE = {
    NodeType.SCORING: 10,
    NodeType.RECOMMENDATION: 9,
    NodeType.INSIGHT: 8,
    NodeType.SUMMARY: 7,
    NodeType.CONTEXT: 5,
}


class ConfidenceFactor(str, Enum):
    """The five independently weighted confidence factors."""

    ACCURACY = "accuracy"
    BIAS = "bias"
    CLARITY = "clarity"
    CONSISTENCY = "consistency"
    COMPLIANCE = "compliance"


class Severity(str, Enum):
    """Issue and disagreement severity, ordered low < critical."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Numeric rank (low=1 ... critical=4)."""
        return _SEVERITY_RANK[self]

    def escalate(self) -> "Severity":
        """Return the next severity level (critical stays critical)."""
        order = list(Severity)
        return order[min(order.index(self) + 1, len(order) - 1)]


_SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class WorkflowStatus(str, Enum):
    """Validation workflow status."""

    IN_PROGRESS = "in_progress"
    APPROVED = "approved"
    REQUIRES_REVISION = "requires_revision"
    ESCALATED = "escalated"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            WorkflowStatus.APPROVED,
            WorkflowStatus.ESCALATED,
            WorkflowStatus.REJECTED,
            WorkflowStatus.CANCELLED,
        )


class DisagreementStatus(str, Enum):
    """Disagreement lifecycle state."""

    DETECTED = "detected"
    PENDING = "pending"
    RESOLVED = "resolved"
    ESCALATED = "escalated"


class DisagreementType(str, Enum):
    """Category of a disagreement, derived from the leading issue."""

    ETHICS = "ethics"
    BIAS = "bias"
    ACCURACY = "accuracy"
    CONTENT = "content"
    STYLE = "style"


class DisagreementTrigger(str, Enum):
    """The only conditions that open a disagreement."""

    CONFIDENCE_DELTA = "confidence_delta"
    SEVERITY = "severity"
    ISSUE_COUNT = "issue_count"


class ResolutionMethod(str, Enum):
    """How a disagreement was resolved."""

    ACCEPT_GENERATOR = "accept_generator"
    ACCEPT_VALIDATOR = "accept_validator"
    MERGED = "merged"
    MANUAL_OVERRIDE = "manual_override"


class LearningEventType(str, Enum):
    """Learning event types consumed by the learning engine."""

    DISAGREEMENT = "disagreement"
    FEEDBACK = "feedback"
    CORRECTION = "correction"
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLATION = "cancellation"
    TIMEOUT = "timeout"


class EventSourceType(str, Enum):
    """What produced a learning event."""

    WORKFLOW = "workflow"
    DISAGREEMENT = "disagreement"


class RetrainingPriority(str, Enum):
    """Priority of a retraining request."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class ImpactLevel(str, Enum):
    """Impact level of a learning insight."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class FeedbackTimeline(str, Enum):
    """When a feedback item should be addressed."""

    IMMEDIATE = "immediate"
    SHORT_TERM = "short_term"
    LONG_TERM = "long_term"


class GraphNode(str, Enum):
    """LangGraph node names for one validation pass."""

    EXTRACT = "extract"
    SCORE = "score"
    REEVALUATE = "reevaluate"
    GATE = "gate"
    APPROVE = "approve"
    REQUEST_REVISION = "request_revision"
    ARBITRATE = "arbitrate"
    REJECT = "reject"
    FINALIZE = "finalize"
