"""
Provider Gateway

Wraps the injected generator and evaluator with the resilience policy every
external call goes through:

- bounded concurrency per operation (asyncio.Semaphore)
- the shared sliding window rate limiter
- a per-call timeout
- tenacity retries with exponential backoff and jitter for transient failures

After the retry budget is spent the failure is surfaced as
GenerationUnavailable / EvaluationUnavailable so that the caller can fail the
iteration instead of the whole workflow.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)
from tenacity.wait import wait_base

from dualval.config import ProviderSettings, get_settings
from dualval.core.exceptions import (
    EvaluationUnavailable,
    GenerationUnavailable,
    MissingCollaboratorError,
    ProviderError,
    TransientProviderError,
)
from dualval.observability.metrics import DualValMetrics, get_metrics
from dualval.observability.tracer import SpanKind, get_tracer
from dualval.providers.base import (
    ContentEvaluator,
    ContentGenerator,
    EvaluationResult,
    GenerationRequest,
    GenerationResult,
)
from dualval.providers.rate_limit import SlidingWindowRateLimiter, get_rate_limiter

if TYPE_CHECKING:
    from dualval.core.schemas import FeedbackPlan

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE = (TransientProviderError, asyncio.TimeoutError)


def retry_wait(settings: ProviderSettings) -> wait_base:
    """Exponential backoff from `retry_min_wait`, capped at `retry_max_wait`, plus jitter."""
    return wait_exponential(
        multiplier=settings.retry_min_wait, max=settings.retry_max_wait
    ) + wait_random(0, min(1.0, settings.retry_max_wait))


class ProviderGateway:
    """
    Resilient access to generation and evaluation providers.

    Usage:
        gateway = ProviderGateway(evaluator=my_evaluator)
        result = await gateway.evaluate("text", {"factor": "bias"})
    """

    def __init__(
        self,
        evaluator: ContentEvaluator | None = None,
        generator: ContentGenerator | None = None,
        settings: ProviderSettings | None = None,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        metrics: DualValMetrics | None = None,
    ) -> None:
        self._evaluator = evaluator
        self._generator = generator
        self._settings = settings or get_settings().providers
        self._limiter = rate_limiter or get_rate_limiter()
        self._metrics = metrics or get_metrics()
        self._tracer = get_tracer("dualval.providers")
        self._semaphores: dict[str, asyncio.Semaphore] = {}
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def has_evaluator(self) -> bool:
        return self._evaluator is not None

    @property
    def has_generator(self) -> bool:
        return self._generator is not None

    def _semaphore(self, operation: str) -> asyncio.Semaphore:
        """Per-operation semaphore, created lazily in the running loop."""
        loop = asyncio.get_running_loop()
        if loop is not self._loop:
            self._loop = loop
            self._semaphores = {}
        if operation not in self._semaphores:
            limit = (
                self._settings.generation_concurrency
                if operation in ("generate", "apply_feedback")
                else self._settings.evaluation_concurrency
            )
            self._semaphores[operation] = asyncio.Semaphore(limit)
        return self._semaphores[operation]

    async def evaluate(self, content: str, criteria: dict[str, Any]) -> EvaluationResult:
        """Evaluate content; raises EvaluationUnavailable after retries."""
        if self._evaluator is None:
            raise MissingCollaboratorError("ProviderGateway.evaluate", "ContentEvaluator")
        evaluator = self._evaluator
        return await self._call(
            "evaluate", lambda: evaluator.evaluate(content, criteria), EvaluationUnavailable
        )

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """Generate content; raises GenerationUnavailable after retries."""
        if self._generator is None:
            raise MissingCollaboratorError("ProviderGateway.generate", "ContentGenerator")
        generator = self._generator
        return await self._call(
            "generate", lambda: generator.generate(request), GenerationUnavailable
        )

    async def apply_feedback(self, content: Any, plans: list[FeedbackPlan]) -> Any:
        """Ask the generator to revise content; raises GenerationUnavailable after retries."""
        if self._generator is None:
            raise MissingCollaboratorError("ProviderGateway.apply_feedback", "ContentGenerator")
        generator = self._generator
        return await self._call(
            "apply_feedback",
            lambda: generator.apply_feedback(content, plans),
            GenerationUnavailable,
        )

    async def _call(
        self,
        operation: str,
        fn: Callable[[], Awaitable[T]],
        unavailable: type[ProviderError],
    ) -> T:
        with self._tracer.span(operation, SpanKind.PROVIDER):
            return await self._call_with_retries(
                operation, fn, unavailable, {"operation": operation}
            )

    async def _call_with_retries(
        self,
        operation: str,
        fn: Callable[[], Awaitable[T]],
        unavailable: type[ProviderError],
        labels: dict[str, str],
    ) -> T:
        settings = self._settings
        result: T
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(settings.max_retries),
                wait=retry_wait(settings),
                retry=retry_if_exception_type(RETRYABLE),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    await self._limiter.acquire()
                    async with self._semaphore(operation):
                        with self._metrics.provider_latency.time(labels=labels):
                            result = await asyncio.wait_for(
                                fn(), timeout=settings.call_timeout_seconds
                            )
        except RETRYABLE as e:
            self._metrics.provider_calls.inc(labels={**labels, "outcome": "unavailable"})
            logger.error(
                "[Provider] %s failed after %d attempts: %s", operation, settings.max_retries, e
            )
            raise unavailable(
                f"{operation} unavailable after {settings.max_retries} attempts",
                {"operation": operation, "cause": type(e).__name__},
            ) from e
        except ProviderError as e:
            self._metrics.provider_calls.inc(labels={**labels, "outcome": "failed"})
            if isinstance(e, unavailable):
                raise
            raise unavailable(
                f"{operation} failed: {e.message}", {"operation": operation}
            ) from e

        self._metrics.provider_calls.inc(labels={**labels, "outcome": "ok"})
        return result
