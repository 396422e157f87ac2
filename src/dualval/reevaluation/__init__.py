"""
DualVal Re-evaluation Layer

Selective re-scoring of revised artifacts.
"""

from dualval.reevaluation.engine import ReEvaluationEngine

__all__ = ["ReEvaluationEngine"]
