"""
Feedback Generator

Turns the issues on a failing node into an ordered, actionable FeedbackPlan.

Each item keeps the evidence produced by the factor analyzers; bias items
also carry a before/after example built from the neutral replacements of the
detector that fired.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable

from dualval.config import ScoringSettings, get_settings
from dualval.core.enums import ConfidenceFactor, FeedbackTimeline, Severity
from dualval.core.schemas import FeedbackItem, FeedbackPlan, Issue, Node, NodeScore
from dualval.scoring.detectors import BiasAnalyzer, readable_text, sentences

logger = logging.getLogger(__name__)

SEVERITY_MULTIPLIER = {
    Severity.CRITICAL: 2.0,
    Severity.HIGH: 1.5,
    Severity.MEDIUM: 1.0,
    Severity.LOW: 0.5,
}

BASE_PRIORITY = 5.0

SUGGESTED_ACTIONS = {
    ConfidenceFactor.ACCURACY: "Correct the values and claims so they match the source data",
    ConfidenceFactor.BIAS: "Rewrite the flagged language in neutral, evidence-based terms",
    ConfidenceFactor.CLARITY: "Shorten sentences and replace jargon with plain language",
    ConfidenceFactor.CONSISTENCY: "Align the statement with the scores it is based on",
    ConfidenceFactor.COMPLIANCE: (
        "Add the required disclosures and remove regulated or personal content"
    ),
}

IMPLEMENTATION_STEPS = {
    ConfidenceFactor.ACCURACY: [
        "Review the content for factual accuracy",
        "Verify scores and percentiles against the source data",
        "Replace absolute claims with qualified statements",
        "Update the content with corrected values",
    ],
    ConfidenceFactor.BIAS: [
        "Identify the biased language or assumption",
        "Replace it with the suggested neutral wording",
        "Re-read the node for remaining bias indicators",
    ],
    ConfidenceFactor.CLARITY: [
        "Split sentences longer than 25 words",
        "Replace technical jargon with plain language",
        "Name the subject instead of opening with a pronoun",
        "Use a professional tone",
    ],
    ConfidenceFactor.CONSISTENCY: [
        "Compare the statement with the related scores",
        "Fix contradicting bands and cited numbers",
        "Keep terminology consistent across sections",
    ],
    ConfidenceFactor.COMPLIANCE: [
        "Add the missing disclosures",
        "Remove personal data and regulated advice",
        "Document the compliance changes made",
    ],
}


def timeline_for(severity: Severity) -> FeedbackTimeline:
    if severity in (Severity.CRITICAL, Severity.HIGH):
        return FeedbackTimeline.IMMEDIATE
    if severity == Severity.MEDIUM:
        return FeedbackTimeline.SHORT_TERM
    return FeedbackTimeline.LONG_TERM


class FeedbackGenerator:
    """
    Build ranked improvement plans for failing nodes.

    Usage:
        generator = FeedbackGenerator()
        plan = generator.plan(node, node_score)
    """

    def __init__(
        self,
        settings: ScoringSettings | None = None,
        bias_analyzer: BiasAnalyzer | None = None,
    ) -> None:
        self._settings = settings or get_settings().scoring
        self._bias = bias_analyzer or BiasAnalyzer()

    def plan(self, node: Node, node_score: NodeScore) -> FeedbackPlan:
        """
        Ordered FeedbackPlan for one failing node.

        Raises:
            ValueError: if the node passed or the score belongs to another node.
        """
        if node_score.node_id != node.node_id:
            raise ValueError(f"Score for {node_score.node_id} does not belong to {node.node_id}")
        if node_score.passed:
            raise ValueError(f"Node {node.node_id} passed; no feedback plan is produced")
        if not node_score.issues:
            raise ValueError(f"Node {node.node_id} failed without issues")

        node_gap = max(0.0, self._settings.confidence_threshold - node_score.overall)
        items = [self._item(node, issue, node_gap) for issue in self._ordered(node_score.issues)]

        projected = min(
            100.0,
            node_score.overall + sum(item.expected_confidence_delta for item in items),
        )
        plan = FeedbackPlan(
            workflow_id=node_score.workflow_id,
            node_id=node.node_id,
            iteration=node_score.iteration,
            severity=node_score.severity or Severity.LOW,
            current_confidence=node_score.overall,
            projected_confidence=round(projected, 2),
            items=items,
        )
        logger.debug(
            "Feedback plan for %s: %d items, %d blocking",
            node.node_id,
            len(items),
            len(plan.blocking_items),
        )
        return plan

    def plan_many(
        self, nodes: dict[str, Node], scores: Iterable[NodeScore]
    ) -> list[FeedbackPlan]:
        """Plans for every failing score, most severe node first."""
        plans = [
            self.plan(nodes[score.node_id], score)
            for score in scores
            if not score.passed and score.node_id in nodes
        ]
        plans.sort(key=lambda p: (-p.severity.rank, p.current_confidence, p.node_id))
        return plans

    # ---- helpers ----

    def _ordered(self, issues: list[Issue]) -> list[Issue]:
        weights = self._settings.weights
        return sorted(
            issues,
            key=lambda i: (
                -i.severity.rank,
                not i.floor_violation,
                -weights[i.category.value],
                -i.gap,
            ),
        )

    def _item(self, node: Node, issue: Issue, node_gap: float) -> FeedbackItem:
        before, after, action = self._examples(node, issue)
        weight = self._settings.weights[issue.category.value]
        return FeedbackItem(
            item_id=f"{issue.issue_id}:fb",
            node_id=node.node_id,
            issue=issue,
            suggested_action=action,
            before_example=before,
            after_example=after,
            expected_confidence_delta=round(weight * issue.gap, 2),
            priority_score=self.priority_score(issue.severity, node_gap, node.importance),
            timeline=timeline_for(issue.severity),
            implementation_steps=list(IMPLEMENTATION_STEPS[issue.category]),
        )

    @staticmethod
    def priority_score(severity: Severity, node_gap: float, importance: int) -> float:
        """Priority 1-10 from severity, confidence gap and node importance."""
        score = BASE_PRIORITY * SEVERITY_MULTIPLIER[severity]
        if node_gap > 20:
            score *= 1.5
        score *= importance / 10
        return float(round(min(10.0, max(1.0, score))))

    def _examples(self, node: Node, issue: Issue) -> tuple[str | None, str | None, str]:
        """(before, after, suggested action) for an issue."""
        action = SUGGESTED_ACTIONS[issue.category]
        if issue.category != ConfidenceFactor.BIAS:
            return self._offending_sentence(node, issue), None, action

        findings = self._bias.analyze(node).findings
        if not findings:
            return None, None, action
        first = findings[0]
        mitigation = self._bias.mitigation_for(first.check)
        if mitigation:
            action = f"{action}: {mitigation.lower()}"
        before = self._sentence_containing(node, first.matched)
        if before is None:
            return None, None, action
        after = before
        for finding in findings:
            if finding.replacement:
                after = re.sub(
                    re.escape(finding.matched), finding.replacement, after, flags=re.IGNORECASE
                )
        return before, (after if after != before else None), action

    def _offending_sentence(self, node: Node, issue: Issue) -> str | None:
        for evidence in issue.evidence:
            match = re.search(r'"([^"]+)"', evidence)
            if match:
                sentence = self._sentence_containing(node, match.group(1))
                if sentence:
                    return sentence
        return None

    @staticmethod
    def _sentence_containing(node: Node, fragment: str) -> str | None:
        if not fragment:
            return None
        lowered = fragment.lower()
        for sentence in sentences(readable_text(node)):
            if lowered in sentence.lower():
                return sentence
        return None
