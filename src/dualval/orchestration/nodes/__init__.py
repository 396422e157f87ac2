"""DualVal Orchestration Nodes Package."""

from dualval.orchestration.nodes.outcome_nodes import (
    approve_node,
    arbitrate_node,
    finalize_node,
    reject_node,
    request_revision_node,
)
from dualval.orchestration.nodes.validation_nodes import (
    extract_node,
    gate_node,
    reevaluate_node,
    score_node,
)

__all__ = [
    "extract_node",
    "reevaluate_node",
    "score_node",
    "gate_node",
    "approve_node",
    "request_revision_node",
    "arbitrate_node",
    "reject_node",
    "finalize_node",
]
