"""
DualVal Storage Layer

Workflow persistence and the confidence cache.
"""

from dualval.storage.cache import ConfidenceCache
from dualval.storage.workflow_store import WorkflowStore

__all__ = ["WorkflowStore", "ConfidenceCache"]
