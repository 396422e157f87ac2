"""
DualVal Disagreement Layer

Generator/validator disagreement state machine and the human-review queue.
"""

from dualval.disagreement.handler import (
    DisagreementHandler,
    classify,
    learning_impact,
    review_priority,
)
from dualval.disagreement.review_queue import ReviewQueue, StoreReviewQueue

__all__ = [
    "DisagreementHandler",
    "ReviewQueue",
    "StoreReviewQueue",
    "classify",
    "learning_impact",
    "review_priority",
]
