"""
DualVal Provider Layer

Interfaces and resilient access to external generation/evaluation providers.
"""

from dualval.providers.base import (
    ContentEvaluator,
    ContentGenerator,
    EvaluationResult,
    GenerationRequest,
    GenerationResult,
)
from dualval.providers.gateway import ProviderGateway
from dualval.providers.http import HTTPContentEvaluator, HTTPContentGenerator
from dualval.providers.rate_limit import (
    SlidingWindowRateLimiter,
    get_rate_limiter,
    reset_rate_limiter,
)

__all__ = [
    "ContentEvaluator",
    "ContentGenerator",
    "EvaluationResult",
    "GenerationRequest",
    "GenerationResult",
    "ProviderGateway",
    "HTTPContentEvaluator",
    "HTTPContentGenerator",
    "SlidingWindowRateLimiter",
    "get_rate_limiter",
    "reset_rate_limiter",
]
