"""
DualVal Learning Layer

Learning events, batch insights and retraining requests.
"""

from dualval.learning.engine import (
    RECOMMENDED_ACTIONS,
    ContinuousLearningEngine,
    TrainingSystem,
    impact_level,
)

__all__ = ["ContinuousLearningEngine", "TrainingSystem", "impact_level", "RECOMMENDED_ACTIONS"]
