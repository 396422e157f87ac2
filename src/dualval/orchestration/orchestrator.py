"""
Workflow Orchestrator

Drives a validation workflow through iterations. Each iteration is one run
of the validation graph; between iterations the workflow is suspended in the
store, so a revision may arrive arbitrarily late or in another process.

State machine:
    in_progress(n) -> approved | requires_revision(n+1) | escalated | rejected
    requires_revision -> in_progress (revision) | cancelled | escalated (timeout)
    escalated -> approved | rejected (last open disagreement resolved)
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Iterable

from dualval.config import Settings, get_settings
from dualval.core.enums import (
    ArtifactKind,
    DisagreementStatus,
    LearningEventType,
    WorkflowStatus,
)
from dualval.core.exceptions import (
    FeedbackNotAddressedError,
    GenerationUnavailable,
    MalformedArtifact,
    MissingCollaboratorError,
    RevisionTimeout,
    WorkflowNotFoundError,
    WorkflowStateError,
)
from dualval.core.schemas import (
    Disagreement,
    Resolution,
    ValidationWorkflow,
    WorkflowSnapshot,
    utcnow,
)
from dualval.disagreement.handler import DisagreementHandler
from dualval.disagreement.review_queue import StoreReviewQueue
from dualval.extraction.extractor import NodeExtractor
from dualval.feedback.generator import FeedbackGenerator
from dualval.learning.engine import ContinuousLearningEngine
from dualval.observability.metrics import DualValMetrics, get_metrics
from dualval.observability.tracer import SpanKind, get_tracer
from dualval.orchestration.graph import build_validation_graph
from dualval.orchestration.nodes._helpers import TIMEOUT_IMPACT, emit_outcome, scoring_context
from dualval.orchestration.state import PassState
from dualval.providers.gateway import ProviderGateway
from dualval.reevaluation.engine import ReEvaluationEngine
from dualval.scoring.scorer import ConfidenceScorer
from dualval.storage.cache import ConfidenceCache
from dualval.storage.workflow_store import WorkflowStore

logger = logging.getLogger(__name__)


class WorkflowOrchestrator:
    """
    Run artifacts through iterative dual validation.

    Usage:
        orchestrator = WorkflowOrchestrator(WorkflowStore())
        workflow = await orchestrator.start(artifact, ArtifactKind.EXECUTIVE)
        if workflow.status == WorkflowStatus.REQUIRES_REVISION:
            workflow = await orchestrator.submit_revision(workflow.workflow_id, revised)

    Collaborators not supplied are built from settings and share one
    confidence cache and one learning engine.
    """

    def __init__(
        self,
        store: WorkflowStore | None,
        extractor: NodeExtractor | None = None,
        scorer: ConfidenceScorer | None = None,
        feedback: FeedbackGenerator | None = None,
        reevaluation: ReEvaluationEngine | None = None,
        disagreements: DisagreementHandler | None = None,
        learning: ContinuousLearningEngine | None = None,
        gateway: ProviderGateway | None = None,
        cache: ConfidenceCache | None = None,
        settings: Settings | None = None,
        metrics: DualValMetrics | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if store is None:
            raise MissingCollaboratorError("WorkflowOrchestrator", "WorkflowStore")
        self._store = store
        self._settings = settings or get_settings()
        self._metrics = metrics or get_metrics()
        self._clock = clock
        self._gateway = gateway
        self._cache = cache or ConfidenceCache(self._settings.storage.cache_max_size)

        self._extractor = extractor or NodeExtractor()
        self._scorer = scorer or ConfidenceScorer(
            self._settings.scoring,
            gateway=gateway,
            cache=self._cache,
            workflow_settings=self._settings.workflow,
            metrics=self._metrics,
        )
        self._feedback = feedback or FeedbackGenerator(self._settings.scoring)
        self._reevaluation = reevaluation or ReEvaluationEngine(
            self._scorer, self._cache, self._settings.workflow, self._metrics
        )
        self._learning = learning or ContinuousLearningEngine(
            store, self._settings.learning, metrics=self._metrics, clock=clock
        )
        self._disagreements = disagreements or DisagreementHandler(
            self._learning,
            StoreReviewQueue(store),
            store,
            self._settings.disagreement,
            self._metrics,
            clock,
        )
        self._graph = build_validation_graph()
        self._tracer = get_tracer("dualval.orchestrator")

    @property
    def store(self) -> WorkflowStore:
        return self._store

    @property
    def learning(self) -> ContinuousLearningEngine:
        return self._learning

    @property
    def disagreements(self) -> DisagreementHandler:
        return self._disagreements

    # ==================== Passes ====================

    def _configurable(self) -> dict[str, Any]:
        return {
            "extractor": self._extractor,
            "scorer": self._scorer,
            "reevaluation": self._reevaluation,
            "feedback": self._feedback,
            "disagreements": self._disagreements,
            "learning": self._learning,
            "store": self._store,
            "settings": self._settings,
            "metrics": self._metrics,
            "clock": self._clock,
        }

    async def _run_pass(self, state: PassState) -> ValidationWorkflow:
        workflow = state.workflow
        with self._tracer.span(
            "pass",
            SpanKind.WORKFLOW,
            attributes={
                "workflow_id": workflow.workflow_id,
                "iteration": workflow.current_iteration,
                "mode": state.mode,
            },
        ) as span:
            result = await self._graph.ainvoke(state, config={"configurable": self._configurable()})

            # LangGraph returns a dict, convert to PassState
            if isinstance(result, dict):
                final_state = PassState.model_validate(result)
            else:
                final_state = result
            span.set_attribute("status", final_state.workflow.status.value)
        return final_state.workflow

    # ==================== Lifecycle ====================

    async def start(
        self,
        artifact: dict[str, Any],
        artifact_kind: ArtifactKind | str,
        context: dict[str, Any] | None = None,
    ) -> ValidationWorkflow:
        """
        Validate a new artifact (iteration 1).

        Structural problems of the artifact produce a rejected workflow.

        Raises:
            MalformedArtifact: the artifact is not a mapping or the kind is
                unknown, so no workflow can be recorded.
        """
        if not isinstance(artifact, dict):
            raise MalformedArtifact(f"Artifact must be a mapping, got {type(artifact).__name__}")
        try:
            kind = ArtifactKind(artifact_kind)
        except ValueError as e:
            raise MalformedArtifact(
                f"Unknown artifact kind: {artifact_kind!r}",
                allowed=[k.value for k in ArtifactKind],
            ) from e

        now = self._clock()
        workflow = ValidationWorkflow(
            workflow_id=f"wf-{uuid.uuid4().hex[:12]}",
            artifact_id=str(artifact.get("artifact_id") or NodeExtractor.artifact_hash(artifact)),
            artifact_kind=kind,
            max_iterations=self._settings.workflow.max_iterations,
            created_at=now,
            updated_at=now,
        )
        self._store.save_workflow(workflow)
        self._metrics.workflows.inc(labels={"status": WorkflowStatus.IN_PROGRESS.value})
        logger.info(
            "Started workflow %s for artifact %s (%s)",
            workflow.workflow_id,
            workflow.artifact_id,
            kind.value,
        )
        return await self._run_pass(
            PassState(
                workflow=workflow,
                mode="start",
                artifact=artifact,
                artifact_kind=kind,
                context=scoring_context(artifact, context),
            )
        )

    async def submit_revision(
        self,
        workflow_id: str,
        revised_artifact: dict[str, Any],
        addressed_feedback: Iterable[str] | None = None,
    ) -> ValidationWorkflow:
        """
        Resume a suspended workflow with revised content.

        The next iteration re-scores only the nodes the revision can have
        affected. A resubmission after a failed iteration retries that
        iteration instead of starting a new one.

        Raises:
            WorkflowNotFoundError: unknown workflow.
            WorkflowStateError: the workflow is not awaiting a revision.
            RevisionTimeout: the revision arrived after the policy timeout;
                the workflow is escalated.
            FeedbackNotAddressedError: critical feedback items were not
                addressed (strict feedback mode).
            MalformedArtifact: the revised artifact is not a mapping.
        """
        workflow = self.get_workflow(workflow_id)
        if workflow.status != WorkflowStatus.REQUIRES_REVISION:
            raise WorkflowStateError(workflow_id, workflow.status.value, "submit a revision to")

        now = self._clock()
        waited = (now - workflow.updated_at).total_seconds()
        if waited > self._settings.workflow.revision_timeout_seconds:
            self._expire(workflow, now, waited)
            raise RevisionTimeout(workflow_id, waited)

        if not isinstance(revised_artifact, dict):
            raise MalformedArtifact(
                f"Revised artifact must be a mapping, got {type(revised_artifact).__name__}"
            )
        if self._settings.features.strict_feedback:
            addressed = set(addressed_feedback or ())
            missing = [
                item_id
                for plan in workflow.feedback_plans
                for item_id in plan.unaddressed_blocking(addressed)
            ]
            if missing:
                raise FeedbackNotAddressedError(workflow_id, missing)

        snapshot = self._require_snapshot(workflow)
        retry = (
            workflow.current_iteration in workflow.failed_iterations
            and workflow.current_iteration not in workflow.confidence_history
        )
        if not retry:
            workflow.current_iteration += 1
        workflow.status = WorkflowStatus.IN_PROGRESS
        workflow.status_reason = None
        workflow.updated_at = now
        # Persisted before scoring so a concurrent submit fails the status check
        self._store.save_workflow(workflow)
        self._metrics.workflows_suspended.dec()
        logger.info(
            "Revision for workflow %s: %s iteration %d",
            workflow_id,
            "retrying" if retry else "starting",
            workflow.current_iteration,
        )
        return await self._run_pass(
            PassState(
                workflow=workflow,
                mode="revision",
                artifact=revised_artifact,
                artifact_kind=workflow.artifact_kind,
                context=scoring_context(revised_artifact, snapshot.context),
                previous_nodes=snapshot.nodes,
                previous_scores=snapshot.scores,
            )
        )

    async def revise_with_generator(self, workflow_id: str) -> ValidationWorkflow:
        """
        Ask the content generator to apply the feedback plans, then resubmit.

        When the generator stays unavailable after retries, the workflow
        remains in requires_revision with the reason recorded.
        """
        gateway = self._require_generator("revise_with_generator")
        workflow = self.get_workflow(workflow_id)
        if workflow.status != WorkflowStatus.REQUIRES_REVISION:
            raise WorkflowStateError(workflow_id, workflow.status.value, "revise")
        snapshot = self._require_snapshot(workflow)

        try:
            revised = await gateway.apply_feedback(snapshot.artifact, workflow.feedback_plans)
        except GenerationUnavailable as e:
            logger.error("Generator unavailable for workflow %s: %s", workflow_id, e)
            workflow.status_reason = f"Generation unavailable: {e.message}"
            self._store.save_workflow(workflow)
            return workflow

        addressed = [item.item_id for plan in workflow.feedback_plans for item in plan.items]
        return await self.submit_revision(workflow_id, revised, addressed)

    async def run(
        self,
        artifact: dict[str, Any],
        artifact_kind: ArtifactKind | str,
        context: dict[str, Any] | None = None,
    ) -> ValidationWorkflow:
        """
        Validate an artifact end to end, letting the generator revise it.

        Stops at a terminal status, or when a revision makes no progress
        (generator or evaluator unavailable), leaving the workflow resumable.
        """
        self._require_generator("run")
        workflow = await self.start(artifact, artifact_kind, context)
        while workflow.status == WorkflowStatus.REQUIRES_REVISION:
            before = (workflow.current_iteration, len(workflow.failed_iterations))
            workflow = await self.revise_with_generator(workflow.workflow_id)
            progress = (workflow.current_iteration, len(workflow.failed_iterations))
            if workflow.status == WorkflowStatus.REQUIRES_REVISION and progress == before:
                logger.warning(
                    "Workflow %s made no progress; leaving it in requires_revision",
                    workflow.workflow_id,
                )
                break
        return workflow

    def cancel(self, workflow_id: str, reason: str) -> ValidationWorkflow:
        """
        Cancel a workflow between iterations.

        Raises:
            ValueError: blank reason.
            WorkflowStateError: the workflow is not awaiting a revision.
        """
        if not reason or not reason.strip():
            raise ValueError("Cancellation requires a reason")
        workflow = self.get_workflow(workflow_id)
        if workflow.status != WorkflowStatus.REQUIRES_REVISION:
            raise WorkflowStateError(workflow_id, workflow.status.value, "cancel")

        now = self._clock()
        workflow.status = WorkflowStatus.CANCELLED
        workflow.status_reason = reason.strip()
        workflow.final_confidence = self._latest_confidence(workflow)
        workflow.updated_at = now
        workflow.completed_at = now
        self._persist_transition(workflow)
        emit_outcome(self._learning, workflow)
        self._metrics.workflows.inc(labels={"status": workflow.status.value})
        self._metrics.workflows_suspended.dec()
        logger.info("Cancelled workflow %s: %s", workflow_id, workflow.status_reason)
        return workflow

    def expire_revisions(self, now: datetime | None = None) -> list[ValidationWorkflow]:
        """Escalate every suspended workflow whose revision is overdue."""
        now = now or self._clock()
        timeout = self._settings.workflow.revision_timeout_seconds
        expired: list[ValidationWorkflow] = []
        for workflow in self._store.list_workflows(
            status=WorkflowStatus.REQUIRES_REVISION, limit=1000
        ):
            waited = (now - workflow.updated_at).total_seconds()
            if waited > timeout:
                expired.append(self._expire(workflow, now, waited))
        return expired

    def _expire(
        self, workflow: ValidationWorkflow, now: datetime, waited: float
    ) -> ValidationWorkflow:
        workflow.status = WorkflowStatus.ESCALATED
        workflow.status_reason = (
            f"Revision timeout: no revised content within "
            f"{self._settings.workflow.revision_timeout_seconds:.0f}s "
            f"(waited {waited:.0f}s)"
        )
        workflow.final_confidence = self._latest_confidence(workflow)
        workflow.updated_at = now
        workflow.completed_at = now
        self._persist_transition(workflow)
        emit_outcome(
            self._learning,
            workflow,
            event_type=LearningEventType.TIMEOUT,
            category="timeout",
            impact=TIMEOUT_IMPACT,
        )
        self._metrics.workflows.inc(labels={"status": workflow.status.value})
        self._metrics.workflows_suspended.dec()
        logger.warning("Workflow %s escalated: %s", workflow.workflow_id, workflow.status_reason)
        return workflow

    # ==================== Disagreements ====================

    def resolve_disagreement(self, disagreement_id: str, resolution: Resolution) -> Disagreement:
        """
        Apply a (human) resolution to a disagreement.

        When this closes the last open disagreement of an escalated workflow,
        the workflow is finalized: approved when every node still failing has
        a resolution accepting its content, rejected otherwise.
        """
        disagreement = self._disagreements.resolve(disagreement_id, resolution)
        workflow = self._store.get_workflow(disagreement.workflow_id)
        if workflow is None or workflow.status != WorkflowStatus.ESCALATED:
            return disagreement

        related = [self._disagreements.get(d_id) for d_id in workflow.disagreement_ids]
        if not related or any(d.status != DisagreementStatus.RESOLVED for d in related):
            return disagreement

        snapshot = self._require_snapshot(workflow)
        failing = {node_id for node_id, score in snapshot.scores.items() if not score.passed}
        accepted = {
            d.node_id for d in related if d.resolution is not None and d.resolution.accepts_content
        }
        now = self._clock()
        if failing <= accepted:
            workflow.status = WorkflowStatus.APPROVED
            workflow.status_reason = "All escalated disagreements resolved accepting content"
        else:
            workflow.status = WorkflowStatus.REJECTED
            workflow.status_reason = (
                f"Review kept the validator's position for: {', '.join(sorted(failing - accepted))}"
            )
        workflow.updated_at = now
        workflow.completed_at = now
        self._persist_transition(workflow)
        emit_outcome(self._learning, workflow)
        self._metrics.workflows.inc(labels={"status": workflow.status.value})
        if workflow.final_confidence is not None:
            self._metrics.final_confidence.observe(workflow.final_confidence)
        logger.info(
            "Workflow %s finalized after review: %s", workflow.workflow_id, workflow.status.value
        )
        return disagreement

    # ==================== Queries ====================

    def get_workflow(self, workflow_id: str) -> ValidationWorkflow:
        """Get a workflow; raises WorkflowNotFoundError when unknown."""
        workflow = self._store.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    def get_snapshot(self, workflow_id: str) -> WorkflowSnapshot:
        """Latest persisted snapshot (artifact, nodes and scores) of a workflow."""
        return self._require_snapshot(self.get_workflow(workflow_id))

    # ==================== Helpers ====================

    def _require_snapshot(self, workflow: ValidationWorkflow) -> WorkflowSnapshot:
        snapshot = self._store.get_latest_snapshot(workflow.workflow_id)
        if snapshot is None:
            raise WorkflowStateError(workflow.workflow_id, workflow.status.value, "resume")
        return snapshot

    def _require_generator(self, operation: str) -> ProviderGateway:
        if self._gateway is None or not self._gateway.has_generator:
            raise MissingCollaboratorError(
                f"WorkflowOrchestrator.{operation}", "ContentGenerator"
            )
        return self._gateway

    def _persist_transition(self, workflow: ValidationWorkflow) -> None:
        snapshot = self._store.get_latest_snapshot(workflow.workflow_id)
        if snapshot is None:
            self._store.save_workflow(workflow)
            return
        self._store.save_snapshot(snapshot.model_copy(update={"workflow": workflow}))

    @staticmethod
    def _latest_confidence(workflow: ValidationWorkflow) -> float | None:
        if not workflow.iteration_confidence:
            return None
        return workflow.iteration_confidence[max(workflow.iteration_confidence)]
