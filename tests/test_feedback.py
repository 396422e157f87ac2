"""
Tests for the feedback generator.
"""

import pytest

from dualval.core.enums import ConfidenceFactor, FeedbackTimeline, NodeType, Severity
from dualval.feedback.generator import FeedbackGenerator, timeline_for


@pytest.fixture
def generator():
    return FeedbackGenerator()


@pytest.fixture
def biased_node(make_node):
    return make_node("insight.1", content="The chairman is obviously right. Plans matter.")


class TestPlan:
    def test_bias_item_has_before_after_example(self, generator, biased_node, make_score):
        score = make_score(biased_node, bias=40.0)

        plan = generator.plan(biased_node, score)

        (item,) = plan.items
        assert item.issue.category == ConfidenceFactor.BIAS
        assert item.before_example == "The chairman is obviously right."
        assert item.after_example == "The chairperson is obviously right."
        assert "gender-neutral" in item.suggested_action
        assert item.item_id == "insight.1:bias:fb"

    def test_expected_delta_and_projection(self, generator, biased_node, make_score):
        score = make_score(biased_node, bias=40.0)

        plan = generator.plan(biased_node, score)

        assert plan.current_confidence == pytest.approx(79.0)
        assert plan.items[0].expected_confidence_delta == pytest.approx(11.25)
        assert plan.projected_confidence == pytest.approx(90.25)

    def test_critical_item_is_blocking_and_immediate(self, generator, biased_node, make_score):
        plan = generator.plan(biased_node, make_score(biased_node, bias=40.0))

        item = plan.items[0]
        assert item.severity == Severity.CRITICAL
        assert item.blocking
        assert item.timeline == FeedbackTimeline.IMMEDIATE
        assert plan.unaddressed_blocking(set()) == [item.item_id]
        assert plan.unaddressed_blocking({item.item_id}) == []
        assert item.priority_score == 8.0

    def test_every_item_has_evidence_and_steps(self, generator, make_node, make_score):
        node = make_node("summary", NodeType.SUMMARY, "A short summary.")
        plan = generator.plan(node, make_score(node, accuracy=60.0, clarity=70.0))

        assert [i.issue.category for i in plan.items] == [
            ConfidenceFactor.ACCURACY,
            ConfidenceFactor.CLARITY,
        ]
        assert all(item.issue.evidence for item in plan.items)
        assert all(item.implementation_steps for item in plan.items)

    def test_passing_node_has_no_plan(self, generator, make_node, make_score):
        node = make_node("insight.1")
        with pytest.raises(ValueError, match="passed"):
            generator.plan(node, make_score(node))

    def test_score_for_other_node(self, generator, make_node, make_score):
        with pytest.raises(ValueError, match="does not belong"):
            generator.plan(make_node("a"), make_score(make_node("b"), bias=10.0))


class TestPlanMany:
    def test_most_severe_node_first(self, generator, make_node, make_score):
        mild = make_node("insight.mild")
        severe = make_node("insight.severe")
        passing = make_node("insight.ok")
        scores = [
            make_score(mild, accuracy=70.0, bias=70.0),
            make_score(severe, bias=20.0),
            make_score(passing),
        ]
        nodes = {n.node_id: n for n in (mild, severe, passing)}

        plans = generator.plan_many(nodes, scores)

        assert [p.node_id for p in plans] == ["insight.severe", "insight.mild"]


class TestPriority:
    @pytest.mark.parametrize(
        "severity,gap,importance,expected",
        [
            (Severity.LOW, 0.0, 1, 1.0),
            (Severity.MEDIUM, 5.0, 10, 5.0),
            (Severity.HIGH, 30.0, 10, 10.0),
            (Severity.CRITICAL, 30.0, 5, 8.0),
        ],
    )
    def test_priority_score(self, severity, gap, importance, expected):
        assert FeedbackGenerator.priority_score(severity, gap, importance) == expected

    def test_timelines(self):
        assert timeline_for(Severity.CRITICAL) == FeedbackTimeline.IMMEDIATE
        assert timeline_for(Severity.MEDIUM) == FeedbackTimeline.SHORT_TERM
        assert timeline_for(Severity.LOW) == FeedbackTimeline.LONG_TERM
