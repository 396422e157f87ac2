"""
HTTP Providers

httpx adapters for generation and evaluation services that expose a small
JSON API:

    POST {base}/generate         {"prompt", "context"}        -> {"content", "metadata"}
    POST {base}/apply-feedback   {"content", "feedback": [..]} -> {"content"}
    POST {base}/evaluate         {"content", "criteria"}      -> {"score", "issues"}

Retryable statuses (429, 5xx) and transport timeouts raise
TransientProviderError so that the gateway's retry policy applies. Anything
else is a hard failure for the call.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import httpx

from dualval.config import get_settings
from dualval.core.exceptions import (
    ConfigurationError,
    EvaluationUnavailable,
    GenerationUnavailable,
    ProviderError,
    TransientProviderError,
)
from dualval.providers.base import EvaluationResult, GenerationRequest, GenerationResult

if TYPE_CHECKING:
    from dualval.core.schemas import FeedbackPlan

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


class _JSONServiceClient:
    """Shared httpx plumbing."""

    def __init__(
        self,
        base_url: str | None,
        api_key: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
        failure: type[ProviderError] = ProviderError,
    ) -> None:
        if not base_url:
            raise ConfigurationError(f"{type(self).__name__} requires a base URL")
        settings = get_settings().providers
        headers = {"Content-Type": "application/json"}
        key = api_key or settings.api_key
        if key:
            headers["Authorization"] = f"Bearer {key}"
        self._base_url = base_url.rstrip("/")
        self._failure = failure
        self.client = client or httpx.AsyncClient(
            headers=headers, timeout=httpx.Timeout(timeout or settings.call_timeout_seconds)
        )

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            response = await self.client.post(url, json=payload)
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"Timeout calling {url}") from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"Transport error calling {url}: {e}") from e

        if response.status_code in RETRYABLE_STATUS:
            logger.warning("[HTTP] Retryable status %d from %s", response.status_code, url)
            raise TransientProviderError(
                f"Retryable error from {url}", status_code=response.status_code
            )
        if response.status_code >= 400:
            raise self._failure(
                f"HTTP {response.status_code} from {url}",
                {"status_code": response.status_code, "body": response.text[:500]},
            )
        try:
            data = response.json()
        except ValueError as e:
            raise self._failure(f"Invalid JSON from {url}") from e
        if not isinstance(data, dict):
            raise self._failure(f"Expected a JSON object from {url}")
        return data

    async def aclose(self) -> None:
        await self.client.aclose()


class HTTPContentEvaluator(_JSONServiceClient):
    """ContentEvaluator backed by an HTTP evaluation service."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(
            base_url or get_settings().providers.evaluator_url,
            api_key,
            timeout,
            client,
            failure=EvaluationUnavailable,
        )

    async def evaluate(self, content: str, criteria: dict[str, Any]) -> EvaluationResult:
        data = await self._post("/evaluate", {"content": content, "criteria": criteria})
        try:
            return EvaluationResult(
                score=float(data["score"]),
                issues=[str(i) for i in data.get("issues") or []],
            )
        except (KeyError, TypeError, ValueError) as e:
            raise EvaluationUnavailable(f"Malformed evaluation response: {e}") from e


class HTTPContentGenerator(_JSONServiceClient):
    """ContentGenerator backed by an HTTP generation service."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(
            base_url or get_settings().providers.generator_url,
            api_key,
            timeout,
            client,
            failure=GenerationUnavailable,
        )

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        payload: dict[str, Any] = {"prompt": request.prompt, "context": request.context}
        if request.max_tokens:
            payload["max_tokens"] = request.max_tokens
        data = await self._post("/generate", payload)
        if "content" not in data:
            raise GenerationUnavailable("Generation response has no content")
        return GenerationResult(content=data["content"], metadata=data.get("metadata") or {})

    async def apply_feedback(self, content: Any, plans: list[FeedbackPlan]) -> Any:
        data = await self._post(
            "/apply-feedback",
            {"content": content, "feedback": [p.model_dump(mode="json") for p in plans]},
        )
        if "content" not in data:
            raise GenerationUnavailable("Revision response has no content")
        return data["content"]
