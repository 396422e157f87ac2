"""
Tests for selective re-evaluation.

Tests:
1. Impact set after a revision
2. Carried-over scores keep their factors
3. Removed nodes and dependency changes
4. Full consistency sweeps report regressions
"""

import asyncio

import pytest

from dualval.core.enums import ArtifactKind
from dualval.core.exceptions import DependencyCycle
from dualval.extraction.extractor import NodeExtractor
from dualval.extraction.graph import DependencyGraph
from dualval.reevaluation.engine import ReEvaluationEngine
from dualval.scoring.scorer import ConfidenceScorer


@pytest.fixture
def scorer():
    return ConfidenceScorer()


@pytest.fixture
def engine(scorer):
    return ReEvaluationEngine(scorer)


@pytest.fixture
def baseline(scorer, executive_artifact):
    """Nodes and first-iteration scores of the executive artifact."""
    nodes = NodeExtractor().extract(executive_artifact, ArtifactKind.EXECUTIVE).nodes
    by_id = {n.node_id: n for n in nodes}
    scores = asyncio.run(
        scorer.assess_many("wf-1", by_id, DependencyGraph.from_nodes(nodes), 1, {})
    )
    return nodes, scores


def revise(artifact, text):
    revised = {**artifact, "insights": list(artifact["insights"])}
    revised["insights"][0] = {**artifact["insights"][0], "text": text}
    return NodeExtractor().extract(revised, ArtifactKind.EXECUTIVE).nodes


class TestImpactSet:
    def test_only_revised_node_and_dependents_rescored(
        self, engine, baseline, executive_artifact
    ):
        previous_nodes, previous_scores = baseline
        revised = revise(executive_artifact, "Openness supports creative strategic planning.")

        result = asyncio.run(
            engine.reevaluate("wf-1", previous_nodes, revised, previous_scores, iteration=2)
        )

        assert result.changed_ids == ["insight.1"]
        assert result.rescored_ids == ["insight.1", "recommendation.1", "summary"]
        assert "insight.2" in result.reused_ids
        assert "score.ocean.openness" in result.reused_ids
        assert len(result.node_scores) == len(previous_nodes)
        assert result.cost_savings == pytest.approx(5 / 8)

    def test_unchanged_revision_reuses_everything(self, engine, baseline):
        previous_nodes, previous_scores = baseline

        result = asyncio.run(
            engine.reevaluate("wf-1", previous_nodes, previous_nodes, previous_scores, 2)
        )

        assert result.rescored_ids == []
        assert result.confidence_delta == 0.0

    def test_removed_recommendation_rescores_summary(
        self, engine, baseline, executive_artifact
    ):
        previous_nodes, previous_scores = baseline
        executive_artifact["recommendations"] = executive_artifact["recommendations"][:1]
        revised = NodeExtractor().extract(executive_artifact, ArtifactKind.EXECUTIVE).nodes

        result = asyncio.run(
            engine.reevaluate("wf-1", previous_nodes, revised, previous_scores, 2)
        )

        assert result.removed_ids == ["recommendation.2"]
        assert "summary" in result.rescored_ids
        assert "recommendation.2" not in result.node_scores

    def test_cycle_in_revision(self, engine, make_node):
        a = make_node("a", depends_on=("b",))
        b = make_node("b", depends_on=("a",))

        with pytest.raises(DependencyCycle):
            asyncio.run(engine.reevaluate("wf-1", [], [a, b], {}, 2))


class TestCarryForward:
    def test_carried_score_keeps_factors(self, engine, baseline, executive_artifact):
        previous_nodes, previous_scores = baseline
        revised = revise(executive_artifact, "Openness supports creative strategic planning.")

        result = asyncio.run(
            engine.reevaluate("wf-1", previous_nodes, revised, previous_scores, 2)
        )

        carried = result.node_scores["insight.2"]
        assert carried.iteration == 2
        assert carried.reused_from_iteration == 1
        assert carried.factors == previous_scores["insight.2"].factors
        assert carried.overall == previous_scores["insight.2"].overall

    def test_resolved_issues_counted(self, engine, make_node, make_score):
        before = make_node("insight.1", content="The chairman is obviously right.")
        after = make_node("insight.1", content="The chair decided after a review.")
        previous = {"insight.1": make_score(before, bias=40.0)}

        result = asyncio.run(engine.reevaluate("wf-test", [before], [after], previous, 2))

        assert result.resolved_issue_count == 1
        assert result.node_scores["insight.1"].passed


class TestConsistencySweep:
    @pytest.mark.parametrize(
        "iteration,expected", [(1, False), (2, True), (3, True)]
    )
    def test_sweep_schedule(self, engine, iteration, expected):
        assert engine.is_sweep_iteration(iteration, max_iterations=3) is expected

    def test_sweep_flags_stale_carried_score(
        self, engine, executive_artifact, make_score
    ):
        previous_nodes = NodeExtractor().extract(executive_artifact, "executive").nodes
        previous_scores = {n.node_id: make_score(n, workflow_id="wf-1") for n in previous_nodes}
        revised = revise(executive_artifact, "Openness supports creative strategic planning.")

        result = asyncio.run(
            engine.reevaluate(
                "wf-1", previous_nodes, revised, previous_scores, 2, full_sweep=True
            )
        )

        flagged = {r.node_id: r for r in result.regressions}
        assert "insight.2" in flagged
        assert flagged["insight.2"].requires_manual_review
        assert result.node_scores["insight.2"].overall == pytest.approx(92.0)
        assert result.full_sweep
