"""
DualVal Scoring Layer

Multi-factor confidence scoring for extracted nodes.
"""

from dualval.scoring.detectors import (
    BIAS_DETECTORS,
    AccuracyAnalyzer,
    BiasAnalyzer,
    BiasDetector,
    ClarityAnalyzer,
    ComplianceAnalyzer,
    ConsistencyAnalyzer,
    FactorAnalysis,
    Finding,
)
from dualval.scoring.scorer import ConfidenceScorer, severity_for_gap, workflow_confidence

__all__ = [
    "ConfidenceScorer",
    "severity_for_gap",
    "workflow_confidence",
    "AccuracyAnalyzer",
    "BiasAnalyzer",
    "BiasDetector",
    "BIAS_DETECTORS",
    "ClarityAnalyzer",
    "ComplianceAnalyzer",
    "ConsistencyAnalyzer",
    "FactorAnalysis",
    "Finding",
]
