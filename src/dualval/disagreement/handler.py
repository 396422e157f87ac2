"""
Disagreement Handler

Tracks divergence between the generator's stated position and the
validator's computed position on a node.

State machine:
    detected -> pending            automatic, when a trigger fires
    pending  -> resolved           explicit resolution (explanation mandatory)
    pending  -> escalated          critical severity, overdue, or explicit call
    escalated -> resolved          explicit resolution only

Only three conditions open a disagreement: a confidence delta above policy,
node severity at or above the severity threshold, and an issue count above
the issue count threshold.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable

from dualval.config import DisagreementSettings, get_settings
from dualval.core.enums import (
    ConfidenceFactor,
    DisagreementStatus,
    DisagreementTrigger,
    DisagreementType,
    EventSourceType,
    LearningEventType,
    ResolutionMethod,
    Severity,
)
from dualval.core.exceptions import (
    DisagreementNotFoundError,
    DisagreementStateError,
    MissingCollaboratorError,
)
from dualval.core.schemas import (
    Disagreement,
    DisagreementFilter,
    Node,
    NodeScore,
    Position,
    Resolution,
    ReviewItem,
    utcnow,
)
from dualval.disagreement.review_queue import ReviewQueue
from dualval.learning.engine import ContinuousLearningEngine
from dualval.observability.metrics import DualValMetrics, get_metrics
from dualval.storage.workflow_store import WorkflowStore

logger = logging.getLogger(__name__)

SEVERITY_PRIORITY = {
    Severity.CRITICAL: 1,
    Severity.HIGH: 2,
    Severity.MEDIUM: 3,
    Severity.LOW: 4,
}

TYPE_BOOST = {
    DisagreementType.ETHICS: 0,
    DisagreementType.BIAS: 1,
    DisagreementType.ACCURACY: 2,
    DisagreementType.CONTENT: 3,
    DisagreementType.STYLE: 4,
}

SEVERITY_SCORE = {
    Severity.LOW: 0.2,
    Severity.MEDIUM: 0.5,
    Severity.HIGH: 0.8,
    Severity.CRITICAL: 1.0,
}

TYPE_WEIGHT = {
    DisagreementType.ETHICS: 1.0,
    DisagreementType.BIAS: 0.9,
    DisagreementType.ACCURACY: 0.8,
    DisagreementType.CONTENT: 0.6,
    DisagreementType.STYLE: 0.4,
}

RESOLUTION_IMPACT = 0.7

# Resolutions that keep generated content cannot override these floors
PROTECTED_FACTORS = frozenset({ConfidenceFactor.BIAS, ConfidenceFactor.COMPLIANCE})


def review_priority(severity: Severity, disagreement_type: DisagreementType) -> int:
    """Lower is more urgent: severity rank (critical 1) plus type boost."""
    return SEVERITY_PRIORITY[severity] + TYPE_BOOST[disagreement_type]


def learning_impact(severity: Severity, disagreement_type: DisagreementType) -> float:
    return round(SEVERITY_SCORE[severity] * TYPE_WEIGHT[disagreement_type], 4)


def classify(node_score: NodeScore) -> DisagreementType:
    """Disagreement type from the leading issue on the node."""
    if not node_score.issues:
        return DisagreementType.STYLE
    leading = min(node_score.issues, key=lambda i: i.priority_rank)
    if leading.category == ConfidenceFactor.COMPLIANCE:
        if any("Ethical guideline" in e for e in leading.evidence):
            return DisagreementType.ETHICS
        return DisagreementType.ACCURACY
    return {
        ConfidenceFactor.BIAS: DisagreementType.BIAS,
        ConfidenceFactor.ACCURACY: DisagreementType.ACCURACY,
        ConfidenceFactor.CONSISTENCY: DisagreementType.CONTENT,
        ConfidenceFactor.CLARITY: DisagreementType.STYLE,
    }[leading.category]


class DisagreementHandler:
    """
    Open, resolve and escalate disagreements.

    Usage:
        handler = DisagreementHandler(learning_engine, StoreReviewQueue(store), store)
        triggers = handler.evaluate_triggers(node, node_score)
        if triggers:
            disagreement = handler.handle("wf-1", node, node_score, triggers)
    """

    def __init__(
        self,
        learning_engine: ContinuousLearningEngine | None,
        review_queue: ReviewQueue | None,
        store: WorkflowStore,
        settings: DisagreementSettings | None = None,
        metrics: DualValMetrics | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if learning_engine is None:
            raise MissingCollaboratorError("DisagreementHandler", "ContinuousLearningEngine")
        if review_queue is None:
            raise MissingCollaboratorError("DisagreementHandler", "ReviewQueue")
        self._learning = learning_engine
        self._queue = review_queue
        self._store = store
        self._settings = settings or get_settings().disagreement
        self._metrics = metrics or get_metrics()
        self._clock = clock

    # ---- triggers ----

    def evaluate_triggers(self, node: Node, node_score: NodeScore) -> list[DisagreementTrigger]:
        """The documented trigger conditions that hold for this node, and no others."""
        settings = self._settings
        triggers: list[DisagreementTrigger] = []
        if node.generator_confidence is not None:
            delta = abs(node.generator_confidence - node_score.confidence)
            if delta > settings.confidence_delta:
                triggers.append(DisagreementTrigger.CONFIDENCE_DELTA)
        severity = node_score.severity
        if severity is not None and severity.rank >= Severity(settings.severity_threshold).rank:
            triggers.append(DisagreementTrigger.SEVERITY)
        if len(node_score.issues) > settings.issue_count_threshold:
            triggers.append(DisagreementTrigger.ISSUE_COUNT)
        return triggers

    # ---- lifecycle ----

    def open(
        self,
        workflow_id: str,
        node: Node,
        node_score: NodeScore,
        triggers: list[DisagreementTrigger],
        threshold: float = 85.0,
    ) -> Disagreement:
        """
        Record a detected disagreement and move it to pending.

        Critical severity escalates immediately, without a grace period.
        """
        severity = node_score.severity or Severity.LOW
        disagreement_type = classify(node_score)
        # A node without a stated confidence is taken to claim the pass threshold
        generator_confidence = (
            node.generator_confidence
            if node.generator_confidence is not None
            else threshold / 100.0
        )
        evidence = [e for issue in node_score.issues for e in issue.evidence]
        now = self._clock()
        disagreement = Disagreement(
            disagreement_id=f"dis-{uuid.uuid4().hex[:12]}",
            workflow_id=workflow_id,
            node_id=node.node_id,
            disagreement_type=disagreement_type,
            severity=severity,
            triggers=triggers,
            generator_position=Position(
                source="generator",
                confidence=generator_confidence,
                content=node.content,
                rationale="Generated content is presented as final",
            ),
            validator_position=Position(
                source="validator",
                confidence=round(node_score.confidence, 4),
                rationale=f"Node scored {node_score.overall:.1f} with "
                f"{len(node_score.issues)} issues",
                issues=[i.description for i in node_score.issues],
            ),
            evidence=evidence,
            review_priority=review_priority(severity, disagreement_type),
            created_at=now,
            updated_at=now,
        )
        self._store.save_disagreement(disagreement)
        self._learning.emit(
            LearningEventType.DISAGREEMENT,
            EventSourceType.DISAGREEMENT,
            disagreement.disagreement_id,
            learning_impact(severity, disagreement_type),
            category=disagreement_type.value,
            data={
                "workflow_id": workflow_id,
                "node_id": node.node_id,
                "severity": severity.value,
                "triggers": [t.value for t in triggers],
            },
        )

        disagreement.status = DisagreementStatus.PENDING
        disagreement.updated_at = self._clock()
        self._store.save_disagreement(disagreement)
        self._metrics.disagreements.inc(labels={"status": DisagreementStatus.PENDING.value})
        logger.info(
            "Disagreement %s on %s/%s (%s, %s, triggers=%s)",
            disagreement.disagreement_id,
            workflow_id,
            node.node_id,
            disagreement_type.value,
            severity.value,
            ",".join(t.value for t in triggers),
        )

        if severity == Severity.CRITICAL:
            return self._escalate(disagreement, "Critical severity escalates immediately")
        return disagreement

    def handle(
        self,
        workflow_id: str,
        node: Node,
        node_score: NodeScore,
        triggers: list[DisagreementTrigger],
        threshold: float = 85.0,
    ) -> Disagreement:
        """Open a disagreement and apply the automatic strategy when enabled."""
        disagreement = self.open(workflow_id, node, node_score, triggers, threshold)
        if disagreement.status != DisagreementStatus.PENDING:
            return disagreement
        if not self._settings.enable_automatic_resolution:
            return disagreement
        resolution = self.automatic_resolution(disagreement, node_score)
        if resolution is None:
            return self._escalate(
                disagreement,
                "Automatic resolution inconclusive: confidences within margin",
            )
        return self.resolve(disagreement.disagreement_id, resolution)

    def automatic_resolution(
        self, disagreement: Disagreement, node_score: NodeScore
    ) -> Resolution | None:
        """
        Confidence-margin strategy for a node that still fails.

        A broken bias or compliance floor, or a confidence gap wider than the
        margin in either direction, keeps the validator's verdict: the generator
        either overstated content the validator rates far lower, or stated less
        confidence than the failing score itself. Inside the margin the outcome is
        undecided and None is returned so a reviewer can decide.
        """
        margin = self._settings.automatic_resolution_margin
        generator = disagreement.generator_position.confidence
        validator = disagreement.validator_position.confidence
        protected = [f for f in node_score.floor_violations if f in PROTECTED_FACTORS]

        if protected:
            reason = f"{', '.join(f.value for f in protected)} below floor"
        elif validator < generator - margin:
            reason = f"validator confidence {validator:.2f} is below generator {generator:.2f}"
        elif generator < validator - margin:
            reason = f"generator confidence {generator:.2f} is below validator {validator:.2f}"
        else:
            return None
        return Resolution(
            method=ResolutionMethod.ACCEPT_VALIDATOR,
            explanation=f"Automatic: {reason}",
            learning_notes=[
                "Generator needs improvement in this area",
                *disagreement.validator_position.issues,
            ],
            resolved_at=self._clock(),
        )

    def resolve(self, disagreement_id: str, resolution: Resolution) -> Disagreement:
        """
        Close a pending or escalated disagreement with an explicit resolution.

        Raises:
            DisagreementNotFoundError: unknown id.
            DisagreementStateError: already resolved or not yet pending.
        """
        disagreement = self.get(disagreement_id)
        if disagreement.status not in (DisagreementStatus.PENDING, DisagreementStatus.ESCALATED):
            raise DisagreementStateError(
                disagreement_id, disagreement.status.value, DisagreementStatus.RESOLVED.value
            )
        was_escalated = disagreement.status == DisagreementStatus.ESCALATED
        disagreement.resolution = resolution
        disagreement.status = DisagreementStatus.RESOLVED
        disagreement.updated_at = self._clock()
        self._store.save_disagreement(disagreement)
        if was_escalated:
            self._queue.acknowledge(disagreement_id)

        self._metrics.disagreements.inc(labels={"status": DisagreementStatus.RESOLVED.value})
        self._learning.emit(
            LearningEventType.CORRECTION,
            EventSourceType.DISAGREEMENT,
            disagreement_id,
            RESOLUTION_IMPACT,
            category=disagreement.disagreement_type.value,
            data={
                "workflow_id": disagreement.workflow_id,
                "node_id": disagreement.node_id,
                "method": resolution.method.value,
                "approver": resolution.approver,
                "explanation": resolution.explanation,
                "learning_notes": resolution.learning_notes,
            },
        )
        logger.info(
            "Disagreement %s resolved by %s (%s)",
            disagreement_id,
            resolution.approver,
            resolution.method.value,
        )
        return disagreement

    def escalate(self, disagreement_id: str, reason: str) -> Disagreement:
        """
        Escalate a pending disagreement to human review.

        Raises:
            ValueError: if the reason is blank.
            DisagreementStateError: if the disagreement is not pending.
        """
        if not reason or not reason.strip():
            raise ValueError("An escalation reason is required")
        disagreement = self.get(disagreement_id)
        if disagreement.status != DisagreementStatus.PENDING:
            raise DisagreementStateError(
                disagreement_id, disagreement.status.value, DisagreementStatus.ESCALATED.value
            )
        return self._escalate(disagreement, reason.strip())

    def _escalate(self, disagreement: Disagreement, reason: str) -> Disagreement:
        disagreement.status = DisagreementStatus.ESCALATED
        disagreement.escalation_reason = reason
        disagreement.updated_at = self._clock()
        self._store.save_disagreement(disagreement)
        self._queue.push(
            ReviewItem(
                disagreement_id=disagreement.disagreement_id,
                workflow_id=disagreement.workflow_id,
                node_id=disagreement.node_id,
                severity=disagreement.severity,
                disagreement_type=disagreement.disagreement_type,
                priority=disagreement.review_priority,
                reason=reason,
                generator_position=disagreement.generator_position,
                validator_position=disagreement.validator_position,
                evidence=disagreement.evidence,
                enqueued_at=disagreement.updated_at,
            )
        )
        self._metrics.disagreements.inc(labels={"status": DisagreementStatus.ESCALATED.value})
        logger.warning(
            "Disagreement %s escalated (priority %d): %s",
            disagreement.disagreement_id,
            disagreement.review_priority,
            reason,
        )
        return disagreement

    def escalate_overdue(self, now: datetime | None = None) -> list[Disagreement]:
        """Escalate pending disagreements older than the resolution timeout."""
        now = now or self._clock()
        timeout = timedelta(seconds=self._settings.resolution_timeout_seconds)
        escalated = []
        pending = self.list(DisagreementFilter(status=DisagreementStatus.PENDING, limit=1000))
        for disagreement in pending:
            if now - disagreement.updated_at >= timeout:
                escalated.append(
                    self._escalate(
                        disagreement,
                        f"No resolution within {self._settings.resolution_timeout_seconds:.0f}s",
                    )
                )
        return escalated

    # ---- queries ----

    def get(self, disagreement_id: str) -> Disagreement:
        disagreement = self._store.get_disagreement(disagreement_id)
        if disagreement is None:
            raise DisagreementNotFoundError(disagreement_id)
        return disagreement

    def list(self, query: DisagreementFilter | None = None, **filters: Any) -> list[Disagreement]:
        """Disagreements by status, severity, type, workflow and time range."""
        if query is None:
            query = DisagreementFilter(**filters)
        return self._store.list_disagreements(query)
