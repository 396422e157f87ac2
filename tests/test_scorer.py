"""
Tests for the confidence scorer.

Tests:
1. Pass rule: weighted threshold AND per-factor floors
2. Monotonicity of overall confidence in each factor
3. Issue severity, floor escalation and ordering
4. Heuristic analyzers and evaluator blending
5. Layered scoring with the confidence cache
"""

import asyncio

import pytest

from dualval.config import ProviderSettings, ScoringSettings
from dualval.core.enums import ConfidenceFactor, NodeType, Severity
from dualval.core.schemas import ConfidenceFactors
from dualval.extraction.graph import DependencyGraph
from dualval.providers.base import EvaluationResult
from dualval.providers.gateway import ProviderGateway
from dualval.providers.rate_limit import SlidingWindowRateLimiter
from dualval.scoring.scorer import ConfidenceScorer, severity_for_gap, workflow_confidence
from dualval.storage.cache import ConfidenceCache


def factors(**overrides: float) -> ConfidenceFactors:
    values = {f.value: 92.0 for f in ConfidenceFactor}
    values.update(overrides)
    return ConfidenceFactors(**values)


class FixedEvaluator:
    """Evaluator returning one score for every criterion."""

    def __init__(self, score: float, issues: list[str] | None = None) -> None:
        self.score = score
        self.issues = issues or []
        self.calls: list[dict] = []

    async def evaluate(self, content, criteria):
        self.calls.append(criteria)
        return EvaluationResult(score=self.score, issues=list(self.issues))


class TestSeverity:
    @pytest.mark.parametrize(
        "gap,expected",
        [
            (5, Severity.LOW),
            (10, Severity.LOW),
            (20, Severity.MEDIUM),
            (40, Severity.HIGH),
            (50, Severity.CRITICAL),
        ],
    )
    def test_severity_for_gap(self, gap, expected):
        assert severity_for_gap(gap) == expected


class TestPassRule:
    """Overall threshold and hard floors are separate gates."""

    def test_all_high_factors_pass(self, make_node):
        scorer = ConfidenceScorer()
        record = scorer.record("wf-1", make_node("n1"), 1, factors())

        assert record.passed
        assert record.overall == pytest.approx(92.0)
        assert record.issues == []

    def test_floor_violation_fails_despite_average(self, make_node):
        """accuracy=95, bias=30 (floor 50): weighted average above 85 but the node fails."""
        settings = ScoringSettings(
            weight_accuracy=0.5,
            weight_bias=0.05,
            weight_clarity=0.2,
            weight_consistency=0.15,
            weight_compliance=0.1,
        )
        scorer = ConfidenceScorer(settings=settings)
        values = factors(accuracy=95, bias=30, clarity=95, consistency=95, compliance=95)

        record = scorer.record("wf-1", make_node("n1"), 1, values)

        assert record.overall > 85
        assert not record.passed
        assert record.floor_violations == [ConfidenceFactor.BIAS]
        assert record.severity == Severity.CRITICAL

    def test_below_threshold_without_floor_violation_fails(self, make_node):
        scorer = ConfidenceScorer()
        record = scorer.record("wf-1", make_node("n1"), 1, factors(accuracy=70, bias=70))

        assert record.overall < 85
        assert not record.passed
        assert record.floor_violations == []

    def test_weights_must_sum_to_one(self):
        with pytest.raises(ValueError):
            ScoringSettings(weight_accuracy=0.9)


class TestMonotonicity:
    """Raising any single factor never lowers overall confidence."""

    @pytest.mark.parametrize("factor", [f.value for f in ConfidenceFactor])
    def test_overall_is_monotonic(self, factor):
        scorer = ConfidenceScorer()
        previous = -1.0
        for value in range(0, 101, 10):
            current = scorer.overall(factors(**{factor: float(value)}))
            assert current >= previous
            previous = current


class TestIssues:
    def test_floor_violation_escalates_severity(self, make_node):
        scorer = ConfidenceScorer()
        record = scorer.record("wf-1", make_node("n1"), 1, factors(bias=48))

        (issue,) = record.issues
        assert issue.category == ConfidenceFactor.BIAS
        assert issue.floor_violation
        assert issue.severity == Severity.CRITICAL  # gap 37 is high, escalated once

    def test_issue_ids_and_evidence(self, make_node):
        scorer = ConfidenceScorer()
        record = scorer.record("wf-1", make_node("n1"), 1, factors(clarity=80))

        (issue,) = record.issues
        assert issue.issue_id == "n1:clarity"
        assert issue.evidence  # falls back to the score when no finding exists
        assert issue.gap == pytest.approx(5.0)

    def test_issues_ordered_by_severity_then_weight(self, make_node):
        scorer = ConfidenceScorer()
        record = scorer.record(
            "wf-1", make_node("n1"), 1, factors(clarity=80, compliance=80, accuracy=30)
        )

        categories = [i.category for i in record.issues]
        assert categories[0] == ConfidenceFactor.ACCURACY
        # Same severity: the heavier factor ranks first
        assert categories.index(ConfidenceFactor.CLARITY) < categories.index(
            ConfidenceFactor.COMPLIANCE
        )
        assert [i.priority_rank for i in record.issues] == [1, 2, 3]


class TestHeuristicScoring:
    def test_clean_insight_scores_full_marks(self, make_node):
        node = make_node("insight.1", content="You enjoy exploring new ideas.")
        result = asyncio.run(ConfidenceScorer().score(node, {}, []))

        assert result.as_dict() == {f.value: 100.0 for f in ConfidenceFactor}

    def test_bias_finding_carries_replacement(self, make_node):
        node = make_node("insight.1", content="The chairman is obviously right.")
        record = asyncio.run(ConfidenceScorer().assess("wf-1", node, 1, {}, []))

        bias = next(i for i in record.issues if i.category == ConfidenceFactor.BIAS)
        assert record.factors.bias == pytest.approx(84.0)
        assert any('suggest "chairperson"' in e for e in bias.evidence)

    def test_source_data_mismatch_lowers_accuracy(self, make_node):
        node = make_node(
            "score.openness", NodeType.SCORING, {"label": "openness", "score": 72}
        )
        context = {"source_data": {"openness": 40}}
        result = asyncio.run(ConfidenceScorer().score(node, context, []))

        assert result.accuracy == pytest.approx(50.0)

    def test_band_contradiction_lowers_consistency(self, make_node):
        score = make_node("score.openness", NodeType.SCORING, {"label": "openness", "score": 85})
        insight = make_node(
            "insight.1",
            content="Your openness is low compared to peers.",
            depends_on=("score.openness",),
        )
        result = asyncio.run(ConfidenceScorer().score(insight, {}, [score]))

        assert result.consistency == pytest.approx(60.0)


class TestEvaluatorBlending:
    def _gateway(self, evaluator):
        return ProviderGateway(
            evaluator=evaluator,
            settings=ProviderSettings(retry_min_wait=0.0, retry_max_wait=0.0),
            rate_limiter=SlidingWindowRateLimiter(1000, 60.0),
        )

    def test_blend_uses_evaluator_weight(self, make_node):
        evaluator = FixedEvaluator(50.0, issues=["tone is flat"])
        scorer = ConfidenceScorer(gateway=self._gateway(evaluator))
        node = make_node("insight.1", content="You enjoy exploring new ideas.")

        record = asyncio.run(scorer.assess("wf-1", node, 1, {}, []))

        assert record.factors.clarity == pytest.approx(75.0)
        assert len(evaluator.calls) == 5
        assert {c["factor"] for c in evaluator.calls} == {f.value for f in ConfidenceFactor}
        assert any("Evaluator: tone is flat" in e for i in record.issues for e in i.evidence)

    def test_gateway_without_evaluator_is_ignored(self, make_node):
        gateway = ProviderGateway(rate_limiter=SlidingWindowRateLimiter(1000, 60.0))
        node = make_node("insight.1", content="You enjoy exploring new ideas.")

        result = asyncio.run(ConfidenceScorer(gateway=gateway).score(node, {}, []))

        assert result.clarity == 100.0


class TestAssessMany:
    def test_scores_every_node_and_uses_cache(self, make_node):
        score = make_node("score.openness", NodeType.SCORING, {"label": "openness", "score": 72})
        insight = make_node(
            "insight.1", content="You enjoy new ideas.", depends_on=("score.openness",)
        )
        nodes = {n.node_id: n for n in (score, insight)}
        cache = ConfidenceCache(max_size=10)
        scorer = ConfidenceScorer(cache=cache)
        graph = DependencyGraph.from_nodes(nodes.values())

        first = asyncio.run(scorer.assess_many("wf-1", nodes, graph, 1, {}))
        second = asyncio.run(scorer.assess_many("wf-1", nodes, graph, 1, {}))

        assert set(first) == {"score.openness", "insight.1"}
        assert first == second
        assert cache.stats["hits"] == 2

    def test_subset(self, make_node):
        nodes = {n: make_node(n) for n in ("a", "b")}
        graph = DependencyGraph.from_nodes(nodes.values())

        result = asyncio.run(ConfidenceScorer().assess_many("wf-1", nodes, graph, 1, {}, ["b"]))

        assert list(result) == ["b"]


class TestWorkflowConfidence:
    def test_importance_weighted_mean(self, make_node, make_score):
        scoring = make_score(make_node("s", NodeType.SCORING, {"label": "x", "score": 1}))
        context = make_score(make_node("c", NodeType.CONTEXT, {"a": "b"}), accuracy=42.0)

        expected = (scoring.overall * 10 + context.overall * 5) / 15
        assert workflow_confidence([scoring, context]) == pytest.approx(expected, abs=0.01)

    def test_empty(self):
        assert workflow_confidence([]) == 0.0
