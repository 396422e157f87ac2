"""
Unit Tests for Core Schemas

Tests validation rules and invariants defined in schemas.py.
"""

import pytest
from pydantic import ValidationError

from dualval.core.enums import (
    ArtifactKind,
    ConfidenceFactor,
    LearningEventType,
    NodeType,
    Severity,
    WorkflowStatus,
)
from dualval.core.schemas import (
    ConfidenceFactors,
    LearningEvent,
    Node,
    RevalidationResult,
    ValidationWorkflow,
)


class TestNode:
    """Tests for Node schema."""

    def test_node_immutable(self, make_node) -> None:
        node = make_node("insight.1")
        with pytest.raises(ValidationError):
            node.content = "changed"

    def test_dependencies_sorted_and_deduplicated(self, make_node) -> None:
        node = make_node("summary", NodeType.SUMMARY, depends_on=("b", "a", "b"))
        assert node.depends_on == ("a", "b")

    def test_hash_ignores_key_order(self) -> None:
        first = Node.compute_hash(NodeType.INSIGHT, {"text": "x", "references": ["a"]})
        second = Node.compute_hash(NodeType.INSIGHT, {"references": ["a"], "text": "x"})
        assert first == second

    def test_hash_depends_on_type(self) -> None:
        assert Node.compute_hash(NodeType.INSIGHT, "x") != Node.compute_hash(
            NodeType.SUMMARY, "x"
        )

    def test_generator_confidence_range(self) -> None:
        with pytest.raises(ValidationError):
            Node(
                node_id="n",
                node_type=NodeType.INSIGHT,
                content="x",
                content_hash="h",
                generator_confidence=1.5,
            )


class TestConfidenceFactors:
    """Tests for ConfidenceFactors schema."""

    def test_range_enforced(self) -> None:
        with pytest.raises(ValidationError):
            ConfidenceFactors(accuracy=101, bias=90, clarity=90, consistency=90, compliance=90)

    def test_weighted_overall(self) -> None:
        factors = ConfidenceFactors(
            accuracy=100, bias=80, clarity=60, consistency=40, compliance=20
        )
        weights = {
            "accuracy": 0.3,
            "bias": 0.25,
            "clarity": 0.2,
            "consistency": 0.15,
            "compliance": 0.1,
        }
        assert factors.overall(weights) == pytest.approx(30 + 20 + 12 + 6 + 2)
        assert factors.get(ConfidenceFactor.CLARITY) == 60.0


class TestNodeScore:
    """Tests for NodeScore derived properties."""

    def test_severity_is_most_severe_issue(self, make_node, make_score) -> None:
        score = make_score(make_node("n"), accuracy=80.0, bias=40.0)

        assert score.severity == Severity.CRITICAL
        assert score.confidence == pytest.approx(score.overall / 100)

    def test_passing_score_has_no_severity(self, make_node, make_score) -> None:
        assert make_score(make_node("n")).severity is None


class TestRevalidationResult:
    """Tests for re-evaluation summaries."""

    def test_savings_and_effectiveness(self, make_node, make_score) -> None:
        scores = {n: make_score(make_node(n)) for n in ("a", "b", "c", "d")}
        result = RevalidationResult(
            workflow_id="wf-1",
            iteration=2,
            node_scores=scores,
            reused_ids=["a", "b", "c"],
            resolved_issue_count=3,
            new_issue_count=1,
            previous_confidence=80.0,
            current_confidence=90.0,
        )

        assert result.cost_savings == 0.75
        assert result.feedback_effectiveness == 0.75
        assert result.confidence_delta == 10.0


class TestLearningEvent:
    """Tests for LearningEvent schema."""

    def test_impact_bounds(self) -> None:
        with pytest.raises(ValidationError):
            LearningEvent(
                event_id="e",
                event_type=LearningEventType.SUCCESS,
                source_type="workflow",
                source_id="wf-1",
                impact=1.5,
            )

    def test_nan_impact_rejected(self) -> None:
        with pytest.raises(ValidationError):
            LearningEvent(
                event_id="e",
                event_type=LearningEventType.SUCCESS,
                source_type="workflow",
                source_id="wf-1",
                impact=float("nan"),
            )


class TestValidationWorkflow:
    """Tests for the workflow aggregate."""

    def _workflow(self, **overrides) -> ValidationWorkflow:
        values = {
            "workflow_id": "wf-1",
            "artifact_id": "art-1",
            "artifact_kind": ArtifactKind.EXECUTIVE,
        }
        values.update(overrides)
        return ValidationWorkflow(**values)

    def test_iteration_bounded_by_max(self) -> None:
        with pytest.raises(ValidationError):
            self._workflow(current_iteration=4, max_iterations=3)

    def test_assignment_is_validated(self) -> None:
        workflow = self._workflow(max_iterations=2)
        workflow.current_iteration = 2
        with pytest.raises(ValidationError):
            workflow.current_iteration = 3

    @pytest.mark.parametrize(
        "history,trend",
        [
            ({1: 80.0}, "stable"),
            ({1: 80.0, 2: 88.0}, "improving"),
            ({1: 88.0, 2: 80.0}, "declining"),
            ({1: 85.0, 2: 85.5}, "stable"),
        ],
    )
    def test_confidence_trend(self, history, trend) -> None:
        assert self._workflow(iteration_confidence=history).confidence_trend == trend

    def test_stability_score(self) -> None:
        workflow = self._workflow(iteration_confidence={1: 80.0, 2: 90.0})
        assert workflow.stability_score == pytest.approx(0.75)

    def test_terminal_statuses(self) -> None:
        assert WorkflowStatus.APPROVED.is_terminal
        assert WorkflowStatus.CANCELLED.is_terminal
        assert not WorkflowStatus.REQUIRES_REVISION.is_terminal
        assert not WorkflowStatus.IN_PROGRESS.is_terminal
