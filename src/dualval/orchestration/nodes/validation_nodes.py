"""
DualVal Validation Nodes

Node functions that produce the node scores of one iteration:
extract, reevaluate, score and the threshold gate.
"""

from __future__ import annotations

import logging

from langchain_core.runnables import RunnableConfig

from dualval.core.exceptions import EvaluationUnavailable, ExtractionError
from dualval.core.schemas import utcnow
from dualval.extraction.extractor import NodeExtractor
from dualval.extraction.graph import DependencyGraph
from dualval.observability.metrics import get_metrics
from dualval.observability.tracer import SpanKind, get_tracer
from dualval.orchestration.state import PassState
from dualval.reevaluation.engine import ReEvaluationEngine
from dualval.scoring.scorer import ConfidenceScorer, workflow_confidence
from dualval.storage.workflow_store import WorkflowStore

logger = logging.getLogger(__name__)

_tracer = get_tracer("dualval.orchestration")


async def extract_node(state: PassState, config: RunnableConfig) -> dict:
    """Extract nodes from a newly submitted artifact.

    Node: EXTRACT
    Input: artifact, artifact_kind
    Output: nodes, or outcome=reject with the extraction error
    """
    extractor: NodeExtractor = config.get("configurable", {})["extractor"]
    workflow_id = state.workflow.workflow_id
    with _tracer.span("node.extract", SpanKind.GRAPH_NODE, {"workflow_id": workflow_id}) as span:
        try:
            result = extractor.extract(state.artifact, state.artifact_kind)
        except ExtractionError as e:
            logger.warning("Extraction failed for workflow %s: %s", workflow_id, e)
            span.set_attribute("error", e.message)
            return {"outcome": "reject", "error": f"Extraction failed: {e.message}"}
        span.set_attribute("nodes", len(result.nodes))
    return {"nodes": list(result.nodes)}


async def reevaluate_node(state: PassState, config: RunnableConfig) -> dict:
    """Extract the revised artifact and re-score only its impact set.

    Node: REEVALUATE
    Input: artifact (revised), previous_nodes, previous_scores
    Output: nodes, revalidation; outcome=reject on extraction errors,
            outcome=failed when the evaluator is unavailable
    """
    configurable = config.get("configurable", {})
    extractor: NodeExtractor = configurable["extractor"]
    engine: ReEvaluationEngine = configurable["reevaluation"]
    workflow = state.workflow

    with _tracer.span(
        "node.reevaluate",
        SpanKind.GRAPH_NODE,
        attributes={"workflow_id": workflow.workflow_id, "iteration": workflow.current_iteration},
    ) as span:
        try:
            result = extractor.extract(state.artifact, state.artifact_kind)
            revalidation = await engine.reevaluate(
                workflow.workflow_id,
                state.previous_nodes,
                result.nodes,
                state.previous_scores,
                workflow.current_iteration,
                state.context,
                full_sweep=engine.is_sweep_iteration(
                    workflow.current_iteration, workflow.max_iterations
                ),
            )
        except ExtractionError as e:
            logger.warning("Revision of workflow %s is malformed: %s", workflow.workflow_id, e)
            span.set_attribute("error", e.message)
            return {"outcome": "reject", "error": f"Revision rejected: {e.message}"}
        except EvaluationUnavailable as e:
            logger.error(
                "Evaluation unavailable for workflow %s iteration %d: %s",
                workflow.workflow_id,
                workflow.current_iteration,
                e,
            )
            span.set_attribute("error", e.message)
            return {"outcome": "failed", "error": e.message}

        span.set_attribute("rescored", len(revalidation.rescored_ids))
        span.set_attribute("reused", len(revalidation.reused_ids))
    return {"nodes": list(result.nodes), "revalidation": revalidation}


async def score_node(state: PassState, config: RunnableConfig) -> dict:
    """Score every node of the iteration.

    Node: SCORE
    Input: nodes, revalidation (revision passes)
    Output: scores, or outcome=failed when the evaluator is unavailable
    """
    if state.revalidation is not None:
        return {"scores": dict(state.revalidation.node_scores)}

    scorer: ConfidenceScorer = config.get("configurable", {})["scorer"]
    workflow = state.workflow
    nodes = state.nodes_by_id()
    try:
        scores = await scorer.assess_many(
            workflow.workflow_id,
            nodes,
            DependencyGraph.from_nodes(nodes.values()),
            workflow.current_iteration,
            state.context,
        )
    except EvaluationUnavailable as e:
        logger.error(
            "Evaluation unavailable for workflow %s iteration %d: %s",
            workflow.workflow_id,
            workflow.current_iteration,
            e,
        )
        return {"outcome": "failed", "error": e.message}
    return {"scores": scores}


async def gate_node(state: PassState, config: RunnableConfig) -> dict:
    """Record the iteration and decide where the workflow goes next.

    Node: GATE
    Input: scores
    Output: workflow (history appended, iteration published), outcome

    The iteration's node scores and the workflow are published in one
    transaction, so readers never observe a partial iteration.
    """
    configurable = config.get("configurable", {})
    store: WorkflowStore = configurable["store"]
    metrics = configurable.get("metrics") or get_metrics()
    clock = configurable.get("clock") or utcnow

    workflow = state.workflow.model_copy(deep=True)
    iteration = workflow.current_iteration
    confidence = workflow_confidence(state.scores.values())
    failing = state.failing_scores()

    workflow.confidence_history = {
        **workflow.confidence_history,
        iteration: {node_id: score.factors for node_id, score in sorted(state.scores.items())},
    }
    workflow.iteration_confidence = {**workflow.iteration_confidence, iteration: confidence}
    workflow.issues = [issue for score in failing for issue in score.issues]
    if state.revalidation is not None and state.revalidation.regressions:
        workflow.regressions = [*workflow.regressions, *state.revalidation.regressions]
    workflow.updated_at = clock()

    if not failing:
        outcome = "approve"
    elif iteration < workflow.max_iterations:
        outcome = "request_revision"
    else:
        outcome = "arbitrate"

    store.publish_iteration(workflow, iteration, state.scores, confidence)
    metrics.iterations.inc(labels={"outcome": outcome})
    logger.info(
        "Workflow %s iteration %d/%d: confidence %.2f, %d/%d nodes failing -> %s",
        workflow.workflow_id,
        iteration,
        workflow.max_iterations,
        confidence,
        len(failing),
        len(state.scores),
        outcome,
    )
    return {"workflow": workflow, "outcome": outcome}
