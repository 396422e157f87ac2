"""
DualVal Orchestration Layer

LangGraph-based validation passes and the workflow orchestrator that
suspends and resumes them between iterations.

Node functions are organized in the `nodes/` package:
- validation_nodes: extract, reevaluate, score, gate
- outcome_nodes: approve, request_revision, arbitrate, reject, finalize
"""

from dualval.orchestration.graph import build_validation_graph
from dualval.orchestration.orchestrator import WorkflowOrchestrator
from dualval.orchestration.state import PassState

__all__ = ["WorkflowOrchestrator", "PassState", "build_validation_graph"]
