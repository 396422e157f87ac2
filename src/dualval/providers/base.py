"""
Provider Interfaces

Boundary contracts for the external generation (A1) and evaluation (B1)
capabilities. Implementations are injected; nothing here talks to a network.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from dualval.core.schemas import FeedbackPlan


@dataclass(frozen=True)
class GenerationRequest:
    """Prompt plus structured context for the generator."""

    prompt: str
    context: dict[str, Any] = field(default_factory=dict)
    max_tokens: int | None = None


@dataclass
class GenerationResult:
    """Generated artifact content with generator metadata."""

    content: Any
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def confidence(self) -> float | None:
        """Generator-stated confidence (0-1), when reported."""
        value = self.metadata.get("confidence")
        return float(value) if value is not None else None

    @property
    def token_usage(self) -> int:
        return int(self.metadata.get("token_usage", 0) or 0)


@dataclass
class EvaluationResult:
    """Score (0-100) and issues reported by the evaluator for one criterion."""

    score: float
    issues: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not 0.0 <= self.score <= 100.0:
            raise ValueError(f"Evaluation score must be within 0-100, got {self.score}")


@runtime_checkable
class ContentGenerator(Protocol):
    """Content generation capability. Must be safe to retry."""

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """Generate an artifact."""
        ...

    async def apply_feedback(self, content: Any, plans: list[FeedbackPlan]) -> Any:
        """Return revised artifact content that addresses the feedback plans."""
        ...


@runtime_checkable
class ContentEvaluator(Protocol):
    """Content evaluation capability used by the confidence factor checks."""

    async def evaluate(self, content: str, criteria: dict[str, Any]) -> EvaluationResult:
        """Score content against the given criteria."""
        ...
