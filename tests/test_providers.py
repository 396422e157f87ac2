"""
Tests for provider adapters and the resilient gateway.

Tests:
1. Retries with backoff for transient failures, then *Unavailable
2. Per-call timeout
3. Sliding window rate limiting
4. httpx adapters (mocked transport)
"""

import asyncio
import json
import warnings
from types import SimpleNamespace

import httpx
import pytest

from dualval.config import ProviderSettings
from dualval.core.exceptions import (
    ConfigurationError,
    EvaluationUnavailable,
    GenerationUnavailable,
    MissingCollaboratorError,
    ProviderError,
    TransientProviderError,
)
from dualval.observability.metrics import get_metrics
from dualval.providers.base import EvaluationResult, GenerationRequest, GenerationResult
from dualval.providers.gateway import ProviderGateway, retry_wait
from dualval.providers.http import HTTPContentEvaluator, HTTPContentGenerator
from dualval.providers.rate_limit import (
    SlidingWindowRateLimiter,
    get_rate_limiter,
    reset_rate_limiter,
)


def fast_settings(**overrides):
    values = {"retry_min_wait": 0.0, "retry_max_wait": 0.0, "max_retries": 3}
    values.update(overrides)
    return ProviderSettings(**values)


class FlakyEvaluator:
    """Fails `failures` times with the given error, then succeeds."""

    def __init__(self, failures, error=None):
        self.failures = failures
        self.error = error or TransientProviderError("busy", status_code=503)
        self.calls = 0

    async def evaluate(self, content, criteria):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return EvaluationResult(score=88.0, issues=["minor"])


class SlowEvaluator:
    async def evaluate(self, content, criteria):
        await asyncio.sleep(1.0)
        return EvaluationResult(score=50.0)


class BrokenGenerator:
    async def generate(self, request):
        raise TransientProviderError("down")

    async def apply_feedback(self, content, plans):
        raise TransientProviderError("down")


def gateway_for(evaluator=None, generator=None, **settings):
    return ProviderGateway(
        evaluator=evaluator,
        generator=generator,
        settings=fast_settings(**settings),
        rate_limiter=SlidingWindowRateLimiter(1000, 60.0),
    )


class TestResults:
    def test_evaluation_score_range(self):
        with pytest.raises(ValueError):
            EvaluationResult(score=120.0)

    def test_generation_metadata(self):
        result = GenerationResult(content={}, metadata={"confidence": "0.7", "token_usage": 12})

        assert result.confidence == pytest.approx(0.7)
        assert result.token_usage == 12
        assert GenerationResult(content={}).confidence is None


class TestGateway:
    def test_transient_failures_are_retried(self):
        evaluator = FlakyEvaluator(failures=2)
        gateway = gateway_for(evaluator)

        result = asyncio.run(gateway.evaluate("text", {"factor": "bias"}))

        assert result.score == 88.0
        assert evaluator.calls == 3
        assert get_metrics().provider_calls.get(
            labels={"operation": "evaluate", "outcome": "ok"}
        ) == 1

    def test_exhausted_retries_raise_unavailable(self):
        evaluator = FlakyEvaluator(failures=10)
        gateway = gateway_for(evaluator, max_retries=2)

        with pytest.raises(EvaluationUnavailable) as exc_info:
            asyncio.run(gateway.evaluate("text", {}))

        assert evaluator.calls == 2
        assert exc_info.value.details["cause"] == "TransientProviderError"

    def test_hard_failure_is_not_retried(self):
        evaluator = FlakyEvaluator(failures=10, error=ProviderError("bad request"))
        gateway = gateway_for(evaluator)

        with pytest.raises(EvaluationUnavailable):
            asyncio.run(gateway.evaluate("text", {}))
        assert evaluator.calls == 1

    def test_call_timeout(self):
        gateway = gateway_for(SlowEvaluator(), call_timeout_seconds=0.01, max_retries=1)

        with pytest.raises(EvaluationUnavailable):
            asyncio.run(gateway.evaluate("text", {}))

    def test_generation_unavailable(self):
        gateway = gateway_for(generator=BrokenGenerator(), max_retries=1)

        with pytest.raises(GenerationUnavailable):
            asyncio.run(gateway.generate(GenerationRequest(prompt="write")))
        with pytest.raises(GenerationUnavailable):
            asyncio.run(gateway.apply_feedback({}, []))

    def test_missing_capability(self):
        gateway = gateway_for()

        assert not gateway.has_evaluator
        with pytest.raises(MissingCollaboratorError):
            asyncio.run(gateway.evaluate("text", {}))

    @pytest.mark.parametrize("attempt,low,high", [(1, 1.0, 2.0), (3, 4.0, 5.0), (10, 30.0, 31.0)])
    def test_backoff_grows_from_min_wait_and_is_capped(self, attempt, low, high):
        with warnings.catch_warnings():
            warnings.simplefilter("error", DeprecationWarning)
            wait = retry_wait(ProviderSettings(retry_min_wait=1.0, retry_max_wait=30.0))

        assert low <= wait(SimpleNamespace(attempt_number=attempt)) <= high


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestRateLimiter:
    def test_window_limits_calls(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(2, 10.0, clock=clock)

        assert limiter.try_acquire() == 0.0
        clock.now += 4
        assert limiter.try_acquire() == 0.0
        assert limiter.try_acquire() == pytest.approx(6.0)
        assert limiter.in_window == 2

        clock.now += 6
        assert limiter.in_window == 1
        assert limiter.try_acquire() == 0.0

    def test_invalid_limits(self):
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(0, 10.0)
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(5, 0)

    def test_shared_limiter_from_settings(self, monkeypatch):
        monkeypatch.setenv("DUALVAL_RATE_LIMIT_CALLS", "7")
        from dualval.config import reset_settings

        reset_settings()
        reset_rate_limiter()
        limiter = get_rate_limiter()

        assert limiter is get_rate_limiter()
        assert limiter._max_calls == 7


def mock_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestHTTPAdapters:
    def test_evaluator_posts_content_and_criteria(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"score": 91, "issues": ["tone"]})

        evaluator = HTTPContentEvaluator("http://eval.test/", client=mock_client(handler))
        result = asyncio.run(evaluator.evaluate("Some text", {"factor": "clarity"}))

        assert seen["url"] == "http://eval.test/evaluate"
        assert seen["body"] == {"content": "Some text", "criteria": {"factor": "clarity"}}
        assert result == EvaluationResult(score=91.0, issues=["tone"])

    @pytest.mark.parametrize("status", [429, 503])
    def test_retryable_status(self, status):
        evaluator = HTTPContentEvaluator(
            "http://eval.test", client=mock_client(lambda r: httpx.Response(status))
        )

        with pytest.raises(TransientProviderError):
            asyncio.run(evaluator.evaluate("x", {}))

    def test_client_error_is_hard_failure(self):
        evaluator = HTTPContentEvaluator(
            "http://eval.test", client=mock_client(lambda r: httpx.Response(400, text="no"))
        )

        with pytest.raises(EvaluationUnavailable) as exc_info:
            asyncio.run(evaluator.evaluate("x", {}))
        assert exc_info.value.details["status_code"] == 400

    def test_malformed_evaluation(self):
        evaluator = HTTPContentEvaluator(
            "http://eval.test", client=mock_client(lambda r: httpx.Response(200, json={}))
        )

        with pytest.raises(EvaluationUnavailable):
            asyncio.run(evaluator.evaluate("x", {}))

    def test_missing_url(self):
        with pytest.raises(ConfigurationError):
            HTTPContentEvaluator()

    def test_generator_round_trip(self):
        def handler(request):
            if request.url.path == "/generate":
                return httpx.Response(
                    200, json={"content": {"scores": {}}, "metadata": {"confidence": 0.8}}
                )
            body = json.loads(request.content)
            return httpx.Response(200, json={"content": {"revised": body["content"]}})

        generator = HTTPContentGenerator("http://gen.test", client=mock_client(handler))

        generated = asyncio.run(generator.generate(GenerationRequest(prompt="write")))
        revised = asyncio.run(generator.apply_feedback({"a": 1}, []))

        assert generated.confidence == pytest.approx(0.8)
        assert revised == {"revised": {"a": 1}}

    def test_gateway_retries_http_503(self):
        responses = iter([httpx.Response(503), httpx.Response(200, json={"score": 77})])
        evaluator = HTTPContentEvaluator(
            "http://eval.test", client=mock_client(lambda r: next(responses))
        )

        result = asyncio.run(gateway_for(evaluator).evaluate("x", {}))

        assert result.score == 77.0
