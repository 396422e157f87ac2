"""
DualVal Feedback Layer

Ranked improvement plans for nodes below the pass condition.
"""

from dualval.feedback.generator import FeedbackGenerator, timeline_for

__all__ = ["FeedbackGenerator", "timeline_for"]
