"""
DualVal Test Configuration

Shared fixtures and test utilities.
"""

import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Generator

import pytest

# Set test environment before any imports
os.environ.setdefault("LOG_LEVEL", "DEBUG")

# Use temp directories for storage during tests
_test_temp_dir = Path(tempfile.gettempdir()) / "dualval_test"
_test_temp_dir.mkdir(parents=True, exist_ok=True)
os.environ.setdefault("DUALVAL_DB_PATH", str(_test_temp_dir / "dualval_test.db"))
os.environ.setdefault("DUALVAL_TRACE_PATH", str(_test_temp_dir / "traces"))


@pytest.fixture(autouse=True)
def reset_globals() -> Generator[None, None, None]:
    """Reset settings, metrics, tracers and the shared rate limiter around each test."""
    from dualval.config import reset_settings
    from dualval.observability.metrics import reset_metrics
    from dualval.observability.tracer import reset_tracers
    from dualval.providers.rate_limit import reset_rate_limiter

    reset_settings()
    reset_metrics()
    reset_tracers()
    reset_rate_limiter()
    yield
    reset_settings()
    reset_metrics()
    reset_tracers()
    reset_rate_limiter()


@pytest.fixture
def store(tmp_path: Path):
    """WorkflowStore on a temporary database."""
    from dualval.storage.workflow_store import WorkflowStore

    return WorkflowStore(db_path=tmp_path / "dualval.db")


@pytest.fixture
def sample_artifact() -> dict:
    """Individual assessment artifact with three nodes."""
    return {
        "artifact_id": "art-001",
        "scores": {"openness": 72, "conscientiousness": 64},
        "insights": [
            {
                "id": "insight.openness",
                "text": "You enjoy exploring new ideas and unfamiliar situations.",
                "references": ["openness"],
            }
        ],
    }


@pytest.fixture
def executive_artifact() -> dict:
    """Executive assessment artifact with every section."""
    return {
        "artifact_id": "art-exec",
        "scores": {
            "ocean": {
                "openness": {"score": 72, "percentile": 80},
                "conscientiousness": 64,
                "neuroticism": 31,
            }
        },
        "insights": [
            {
                "text": "Openness is a clear strength for strategic planning.",
                "references": ["openness"],
            },
            "Conscientiousness supports reliable follow-through on commitments.",
        ],
        "recommendations": [
            {"text": "Lead one cross-team discovery project this quarter.", "based_on": [1]},
            {"text": "Share weekly progress notes with the team.", "based_on": [2]},
        ],
        "summary": "The profile shows strong openness and steady conscientiousness.",
        "metadata": {"confidence": 0.9},
    }


@pytest.fixture
def make_node() -> Callable[..., Any]:
    """Factory for Nodes with a computed content hash."""
    from dualval.core.enums import NodeType
    from dualval.core.schemas import Node

    def _make(
        node_id: str,
        node_type: NodeType = NodeType.INSIGHT,
        content: Any = "A clear and simple statement.",
        depends_on: tuple[str, ...] = (),
        generator_confidence: float | None = None,
    ) -> Node:
        return Node(
            node_id=node_id,
            node_type=node_type,
            content=content,
            depends_on=depends_on,
            content_hash=Node.compute_hash(node_type, content),
            importance=node_type.importance,
            generator_confidence=generator_confidence,
        )

    return _make


@pytest.fixture
def make_score() -> Callable[..., Any]:
    """Factory for NodeScores from explicit factor values (defaults 92)."""
    from dualval.core.schemas import ConfidenceFactors
    from dualval.scoring.scorer import ConfidenceScorer

    def _make(node, iteration: int = 1, workflow_id: str = "wf-test", **factors: float):
        values = {
            "accuracy": 92.0,
            "bias": 92.0,
            "clarity": 92.0,
            "consistency": 92.0,
            "compliance": 92.0,
            **factors,
        }
        return ConfidenceScorer().record(
            workflow_id, node, iteration, ConfidenceFactors(**values)
        )

    return _make
