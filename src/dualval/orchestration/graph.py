"""
DualVal Validation Graph

LangGraph state graph for one validation pass (one iteration of one
workflow). A pass starts either from a new artifact (extract) or from a
revised one (reevaluate), and always ends in finalize, which persists the
workflow snapshot before control returns to the caller.
"""

from __future__ import annotations

from typing import Literal

from langgraph.graph import END, START, StateGraph
from langgraph.graph.state import CompiledStateGraph

from dualval.core.enums import GraphNode
from dualval.orchestration.nodes import (
    approve_node,
    arbitrate_node,
    extract_node,
    finalize_node,
    gate_node,
    reevaluate_node,
    reject_node,
    request_revision_node,
    score_node,
)
from dualval.orchestration.state import PassState

# =============================================================================
# CONDITIONAL EDGES
# =============================================================================


def route_entry(state: PassState) -> Literal["extract", "reevaluate"]:
    """New artifacts are extracted; revisions are re-evaluated selectively."""
    if state.mode == "revision":
        return "reevaluate"
    return "extract"


def after_extraction(state: PassState) -> Literal["score", "reject"]:
    """Extraction errors reject the workflow immediately."""
    if state.outcome == "reject":
        return "reject"
    return "score"


def after_reevaluation(state: PassState) -> Literal["score", "reject", "finalize"]:
    """Malformed revisions reject; an unavailable evaluator fails only the iteration."""
    if state.outcome == "reject":
        return "reject"
    if state.outcome == "failed":
        return "finalize"
    return "score"


def after_scoring(state: PassState) -> Literal["gate", "finalize"]:
    if state.outcome == "failed":
        return "finalize"
    return "gate"


def after_gate(state: PassState) -> Literal["approve", "request_revision", "arbitrate"]:
    """All nodes passed, more iterations remain, or the iteration budget is spent."""
    if state.outcome == "approve":
        return "approve"
    if state.outcome == "request_revision":
        return "request_revision"
    return "arbitrate"


def after_arbitration(state: PassState) -> Literal["reject", "finalize"]:
    """Escalated workflows are already in their terminal status."""
    if state.outcome == "reject":
        return "reject"
    return "finalize"


# =============================================================================
# GRAPH BUILDER
# =============================================================================


def build_validation_graph() -> CompiledStateGraph:
    """Build the validation pass graph.

    Flow:
        START -> extract | reevaluate -> score -> gate
        gate -> approve | request_revision | arbitrate
        arbitrate -> reject | finalize
        approve, request_revision, reject -> finalize -> END
    """
    graph = StateGraph(PassState)

    graph.add_node(GraphNode.EXTRACT.value, extract_node)
    graph.add_node(GraphNode.REEVALUATE.value, reevaluate_node)
    graph.add_node(GraphNode.SCORE.value, score_node)
    graph.add_node(GraphNode.GATE.value, gate_node)
    graph.add_node(GraphNode.APPROVE.value, approve_node)
    graph.add_node(GraphNode.REQUEST_REVISION.value, request_revision_node)
    graph.add_node(GraphNode.ARBITRATE.value, arbitrate_node)
    graph.add_node(GraphNode.REJECT.value, reject_node)
    graph.add_node(GraphNode.FINALIZE.value, finalize_node)

    graph.add_conditional_edges(
        START,
        route_entry,
        {
            "extract": GraphNode.EXTRACT.value,
            "reevaluate": GraphNode.REEVALUATE.value,
        },
    )
    graph.add_conditional_edges(
        GraphNode.EXTRACT.value,
        after_extraction,
        {
            "score": GraphNode.SCORE.value,
            "reject": GraphNode.REJECT.value,
        },
    )
    graph.add_conditional_edges(
        GraphNode.REEVALUATE.value,
        after_reevaluation,
        {
            "score": GraphNode.SCORE.value,
            "reject": GraphNode.REJECT.value,
            "finalize": GraphNode.FINALIZE.value,
        },
    )
    graph.add_conditional_edges(
        GraphNode.SCORE.value,
        after_scoring,
        {
            "gate": GraphNode.GATE.value,
            "finalize": GraphNode.FINALIZE.value,
        },
    )
    graph.add_conditional_edges(
        GraphNode.GATE.value,
        after_gate,
        {
            "approve": GraphNode.APPROVE.value,
            "request_revision": GraphNode.REQUEST_REVISION.value,
            "arbitrate": GraphNode.ARBITRATE.value,
        },
    )
    graph.add_conditional_edges(
        GraphNode.ARBITRATE.value,
        after_arbitration,
        {
            "reject": GraphNode.REJECT.value,
            "finalize": GraphNode.FINALIZE.value,
        },
    )

    graph.add_edge(GraphNode.APPROVE.value, GraphNode.FINALIZE.value)
    graph.add_edge(GraphNode.REQUEST_REVISION.value, GraphNode.FINALIZE.value)
    graph.add_edge(GraphNode.REJECT.value, GraphNode.FINALIZE.value)
    graph.add_edge(GraphNode.FINALIZE.value, END)

    return graph.compile()
