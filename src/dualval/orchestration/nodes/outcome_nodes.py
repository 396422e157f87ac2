"""
DualVal Outcome Nodes

Node functions that turn a gated iteration into a workflow transition:
approve, request_revision, arbitrate, reject and finalize.
"""

from __future__ import annotations

import logging

from langchain_core.runnables import RunnableConfig

from dualval.config import get_settings
from dualval.core.enums import DisagreementStatus, WorkflowStatus
from dualval.core.schemas import Disagreement, WorkflowSnapshot, utcnow
from dualval.disagreement.handler import DisagreementHandler
from dualval.feedback.generator import FeedbackGenerator
from dualval.learning.engine import ContinuousLearningEngine
from dualval.observability.metrics import get_metrics
from dualval.observability.tracer import SpanKind, get_tracer
from dualval.orchestration.nodes._helpers import emit_outcome
from dualval.orchestration.state import PassState
from dualval.storage.workflow_store import WorkflowStore

logger = logging.getLogger(__name__)

_tracer = get_tracer("dualval.orchestration")


def _latest_confidence(state: PassState) -> float | None:
    history = state.workflow.iteration_confidence
    if not history:
        return None
    return history[max(history)]


async def approve_node(state: PassState, config: RunnableConfig) -> dict:
    """Mark the workflow approved with its final confidence.

    Node: APPROVE
    Input: workflow, scores
    Output: workflow
    """
    workflow = state.workflow.model_copy(deep=True)
    workflow.status = WorkflowStatus.APPROVED
    workflow.final_confidence = _latest_confidence(state)
    workflow.status_reason = (
        f"All {len(state.scores)} nodes passed at iteration {workflow.current_iteration}"
    )
    return {"workflow": workflow}


async def request_revision_node(state: PassState, config: RunnableConfig) -> dict:
    """Build feedback plans for failing nodes and suspend for revision.

    Node: REQUEST_REVISION
    Input: nodes, scores
    Output: workflow (requires_revision), feedback_plans
    """
    feedback: FeedbackGenerator = config.get("configurable", {})["feedback"]
    plans = feedback.plan_many(state.nodes_by_id(), state.failing_scores())

    workflow = state.workflow.model_copy(deep=True)
    workflow.feedback_plans = plans
    workflow.status = WorkflowStatus.REQUIRES_REVISION
    workflow.status_reason = (
        f"{len(plans)} nodes below threshold at iteration {workflow.current_iteration}; "
        "awaiting revised content"
    )
    logger.info(
        "Workflow %s requires revision: %d plans, %d blocking items",
        workflow.workflow_id,
        len(plans),
        sum(len(p.blocking_items) for p in plans),
    )
    return {"workflow": workflow, "feedback_plans": plans}


async def arbitrate_node(state: PassState, config: RunnableConfig) -> dict:
    """Hand the nodes still failing at the last iteration to the disagreement handler.

    Node: ARBITRATE
    Input: nodes, scores (final iteration)
    Output: workflow, disagreement_ids, outcome

    Outcome:
    - escalate: any disagreement was escalated for human review
    - reject: otherwise; a failing node either met no trigger or its disagreement was
      resolved automatically for the validator

    Content that still fails is never approved here. Only a reviewer resolving the
    escalated disagreements can accept it.
    """
    configurable = config.get("configurable", {})
    handler: DisagreementHandler = configurable["disagreements"]
    settings = configurable.get("settings") or get_settings()
    threshold = settings.scoring.confidence_threshold

    workflow = state.workflow.model_copy(deep=True)
    nodes = state.nodes_by_id()
    opened: list[Disagreement] = []
    untriggered: list[str] = []

    with _tracer.span(
        "node.arbitrate", SpanKind.GRAPH_NODE, {"workflow_id": workflow.workflow_id}
    ) as span:
        for score in state.failing_scores():
            node = nodes[score.node_id]
            triggers = handler.evaluate_triggers(node, score)
            if not triggers:
                untriggered.append(node.node_id)
                continue
            disagreement = handler.handle(workflow.workflow_id, node, score, triggers, threshold)
            if disagreement.status == DisagreementStatus.PENDING:
                disagreement = handler.escalate(
                    disagreement.disagreement_id,
                    "Automatic resolution disabled; a reviewer must decide",
                )
            opened.append(disagreement)
        span.set_attribute("disagreements", len(opened))
        span.set_attribute("untriggered", len(untriggered))

    ids = [d.disagreement_id for d in opened]
    workflow.disagreement_ids = [*workflow.disagreement_ids, *ids]
    escalated = [d for d in opened if d.status == DisagreementStatus.ESCALATED]
    resolved = [d.node_id for d in opened if d.status == DisagreementStatus.RESOLVED]

    if escalated:
        workflow.status = WorkflowStatus.ESCALATED
        workflow.final_confidence = _latest_confidence(state)
        workflow.status_reason = (
            f"{len(escalated)} disagreements escalated for human review after "
            f"{workflow.current_iteration} iterations"
        )
        outcome = "escalate"
    else:
        blocking = sorted([*untriggered, *resolved])
        workflow.status_reason = (
            f"Nodes still below threshold after {workflow.current_iteration} iterations: "
            f"{', '.join(blocking)}"
        )
        outcome = "reject"

    logger.info(
        "Arbitration for workflow %s: %d disagreements, %d escalated, %d without trigger -> %s",
        workflow.workflow_id,
        len(opened),
        len(escalated),
        len(untriggered),
        outcome,
    )
    return {"workflow": workflow, "disagreement_ids": ids, "outcome": outcome}


async def reject_node(state: PassState, config: RunnableConfig) -> dict:
    """Mark the workflow rejected with a clear reason.

    Node: REJECT
    Input: workflow, error (extraction failures)
    Output: workflow
    """
    workflow = state.workflow.model_copy(deep=True)
    workflow.status = WorkflowStatus.REJECTED
    workflow.final_confidence = _latest_confidence(state)
    workflow.status_reason = (
        state.error
        or workflow.status_reason
        or f"Nodes still below threshold after {workflow.current_iteration} iterations"
    )
    return {"workflow": workflow}


async def finalize_node(state: PassState, config: RunnableConfig) -> dict:
    """Persist the pass and emit the terminal learning event.

    Node: FINALIZE
    Input: workflow, outcome
    Output: workflow

    A failed pass (evaluator unavailable) records the iteration as failed and
    leaves the workflow awaiting a resubmission that retries it.
    """
    configurable = config.get("configurable", {})
    store: WorkflowStore = configurable["store"]
    learning: ContinuousLearningEngine = configurable["learning"]
    metrics = configurable.get("metrics") or get_metrics()
    clock = configurable.get("clock") or utcnow

    workflow = state.workflow.model_copy(deep=True)
    now = clock()
    workflow.updated_at = now

    if state.outcome == "failed":
        iteration = workflow.current_iteration
        if iteration not in workflow.failed_iterations:
            workflow.failed_iterations = [*workflow.failed_iterations, iteration]
        workflow.status = WorkflowStatus.REQUIRES_REVISION
        workflow.status_reason = f"Iteration {iteration} failed: {state.error}"

    if state.scores:
        nodes, scores = state.nodes, state.scores
    else:
        nodes, scores = state.previous_nodes or state.nodes, state.previous_scores

    if workflow.is_terminal:
        workflow.completed_at = now

    store.save_snapshot(
        WorkflowSnapshot(
            workflow=workflow,
            artifact=state.artifact,
            nodes=nodes,
            scores=scores,
            context=state.context,
        )
    )

    metrics.workflows.inc(labels={"status": workflow.status.value})
    if workflow.is_terminal:
        emit_outcome(learning, workflow)
        if workflow.final_confidence is not None:
            metrics.final_confidence.observe(workflow.final_confidence)
    elif workflow.status == WorkflowStatus.REQUIRES_REVISION:
        metrics.workflows_suspended.inc()

    logger.info(
        "Workflow %s -> %s (iteration %d): %s",
        workflow.workflow_id,
        workflow.status.value,
        workflow.current_iteration,
        workflow.status_reason,
    )
    return {"workflow": workflow}
