"""
Confidence Scorer

Multi-factor confidence per node. Each factor is computed independently by a
deterministic analyzer and, when an evaluator is configured, blended with the
evaluator's score for the same criterion.

Pass rule: overall >= threshold AND no factor below its floor. A factor
below its floor fails the node whatever the weighted average.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable

from dualval.config import ScoringSettings, WorkflowSettings, get_settings
from dualval.core.enums import ConfidenceFactor, Severity
from dualval.core.schemas import ConfidenceFactors, Issue, Node, NodeScore
from dualval.extraction.graph import DependencyGraph
from dualval.observability.metrics import DualValMetrics, get_metrics
from dualval.observability.tracer import get_tracer
from dualval.providers.gateway import ProviderGateway
from dualval.scoring.detectors import (
    AccuracyAnalyzer,
    BiasAnalyzer,
    ClarityAnalyzer,
    ComplianceAnalyzer,
    ConsistencyAnalyzer,
    FactorAnalysis,
    Finding,
    readable_text,
)
from dualval.storage.cache import ConfidenceCache

logger = logging.getLogger(__name__)


def severity_for_gap(gap: float) -> Severity:
    """Base severity from the distance below target."""
    if gap <= 10:
        return Severity.LOW
    if gap <= 25:
        return Severity.MEDIUM
    if gap <= 45:
        return Severity.HIGH
    return Severity.CRITICAL


class ConfidenceScorer:
    """
    Score nodes on accuracy, bias, clarity, consistency and compliance.

    Usage:
        scorer = ConfidenceScorer()
        factors = await scorer.score(node, context, related_nodes)
        record = await scorer.assess("wf-1", node, 1, context, related_nodes)
    """

    def __init__(
        self,
        settings: ScoringSettings | None = None,
        gateway: ProviderGateway | None = None,
        cache: ConfidenceCache | None = None,
        workflow_settings: WorkflowSettings | None = None,
        metrics: DualValMetrics | None = None,
    ) -> None:
        self._settings = settings or get_settings().scoring
        self._workflow_settings = workflow_settings or get_settings().workflow
        self._gateway = gateway if gateway is not None and gateway.has_evaluator else None
        self._cache = cache
        self._metrics = metrics or get_metrics()
        self._tracer = get_tracer("dualval.scoring")

        tolerance = self._settings.numeric_tolerance
        self._accuracy = AccuracyAnalyzer(tolerance)
        self._bias = BiasAnalyzer()
        self._clarity = ClarityAnalyzer()
        self._consistency = ConsistencyAnalyzer(tolerance)
        self._compliance = ComplianceAnalyzer(self._settings.required_disclosures)

    @property
    def settings(self) -> ScoringSettings:
        return self._settings

    @property
    def threshold(self) -> float:
        return self._settings.confidence_threshold

    # ---- factor computation ----

    def analyze(
        self, node: Node, context: dict[str, Any], related_nodes: Iterable[Node]
    ) -> dict[ConfidenceFactor, FactorAnalysis]:
        """Run the deterministic analyzers for every factor."""
        return {
            ConfidenceFactor.ACCURACY: self._accuracy.analyze(node, context),
            ConfidenceFactor.BIAS: self._bias.analyze(node),
            ConfidenceFactor.CLARITY: self._clarity.analyze(node),
            ConfidenceFactor.CONSISTENCY: self._consistency.analyze(node, related_nodes, context),
            ConfidenceFactor.COMPLIANCE: self._compliance.analyze(node, context),
        }

    async def _blend_with_evaluator(
        self, node: Node, analyses: dict[ConfidenceFactor, FactorAnalysis]
    ) -> dict[ConfidenceFactor, float]:
        scores = {factor: analysis.score for factor, analysis in analyses.items()}
        if self._gateway is None:
            return scores

        text = readable_text(node)
        factors = list(analyses)
        results = await asyncio.gather(
            *(
                self._gateway.evaluate(
                    text,
                    {
                        "factor": factor.value,
                        "node_id": node.node_id,
                        "node_type": node.node_type.value,
                    },
                )
                for factor in factors
            )
        )
        weight = self._settings.evaluator_weight
        for factor, result in zip(factors, results):
            scores[factor] = round((1 - weight) * scores[factor] + weight * result.score, 2)
            for issue in result.issues:
                analyses[factor].add(Finding("evaluator", "", 0.0, f"Evaluator: {issue}"))
        return scores

    async def score(
        self, node: Node, context: dict[str, Any], related_nodes: Iterable[Node]
    ) -> ConfidenceFactors:
        """Compute the five factors for a node."""
        factors, _ = await self._score_with_analyses(node, context, list(related_nodes))
        return factors

    async def _score_with_analyses(
        self, node: Node, context: dict[str, Any], related_nodes: list[Node]
    ) -> tuple[ConfidenceFactors, dict[ConfidenceFactor, FactorAnalysis]]:
        analyses = self.analyze(node, context, related_nodes)
        scores = await self._blend_with_evaluator(node, analyses)
        factors = ConfidenceFactors(**{f.value: s for f, s in scores.items()})
        return factors, analyses

    # ---- pass rule ----

    def overall(self, factors: ConfidenceFactors) -> float:
        return factors.overall(self._settings.weights)

    def floor_violations(self, factors: ConfidenceFactors) -> list[ConfidenceFactor]:
        floors = self._settings.floors
        return [f for f in ConfidenceFactor if factors.get(f) < floors[f.value]]

    def build_issues(
        self,
        node: Node,
        factors: ConfidenceFactors,
        analyses: dict[ConfidenceFactor, FactorAnalysis] | None = None,
    ) -> list[Issue]:
        """
        One issue per factor below target, ordered and ranked.

        Severity comes from the gap below target and is escalated one level
        when the factor also breaks its floor.
        """
        floors = self._settings.floors
        weights = self._settings.weights
        target = self.threshold
        issues: list[Issue] = []
        for factor in ConfidenceFactor:
            value = factors.get(factor)
            if value >= target:
                continue
            floor = floors[factor.value]
            violation = value < floor
            severity = severity_for_gap(target - value)
            if violation:
                severity = severity.escalate()
            evidence = analyses[factor].evidence if analyses else []
            if not evidence:
                evidence = [f"{factor.value} scored {value:.1f} against target {target:.0f}"]
            description = f"{factor.value.capitalize()} {value:.1f} below target {target:.0f}"
            if violation:
                description += f" and floor {floor:.0f}"
            issues.append(
                Issue(
                    issue_id=f"{node.node_id}:{factor.value}",
                    node_id=node.node_id,
                    category=factor,
                    severity=severity,
                    description=description,
                    evidence=evidence,
                    score=value,
                    target=target,
                    floor=floor,
                    floor_violation=violation,
                )
            )

        issues.sort(
            key=lambda i: (
                -i.severity.rank,
                not i.floor_violation,
                -weights[i.category.value],
                -i.gap,
            )
        )
        return [i.model_copy(update={"priority_rank": rank}) for rank, i in enumerate(issues, 1)]

    # ---- records ----

    async def assess(
        self,
        workflow_id: str,
        node: Node,
        iteration: int,
        context: dict[str, Any],
        related_nodes: Iterable[Node],
    ) -> NodeScore:
        """Score a node into an immutable record for (workflow, node, iteration)."""
        if self._cache is not None:
            cached = self._cache.get(workflow_id, node.node_id, iteration, node.content_hash)
            if cached is not None:
                return cached

        factors, analyses = await self._score_with_analyses(node, context, list(related_nodes))
        record = self.record(workflow_id, node, iteration, factors, analyses)
        self._metrics.node_results.inc(
            labels={
                "result": "passed" if record.passed else "failed",
                "node_type": node.node_type.value,
            }
        )
        if self._cache is not None:
            self._cache.put(record)
        return record

    def record(
        self,
        workflow_id: str,
        node: Node,
        iteration: int,
        factors: ConfidenceFactors,
        analyses: dict[ConfidenceFactor, FactorAnalysis] | None = None,
    ) -> NodeScore:
        overall = self.overall(factors)
        violations = self.floor_violations(factors)
        return NodeScore(
            workflow_id=workflow_id,
            node_id=node.node_id,
            node_type=node.node_type,
            iteration=iteration,
            content_hash=node.content_hash,
            factors=factors,
            overall=overall,
            passed=overall >= self.threshold and not violations,
            floor_violations=violations,
            issues=self.build_issues(node, factors, analyses),
            importance=node.importance,
        )

    async def assess_many(
        self,
        workflow_id: str,
        nodes: dict[str, Node],
        graph: DependencyGraph,
        iteration: int,
        context: dict[str, Any],
        subset: Iterable[str] | None = None,
    ) -> dict[str, NodeScore]:
        """
        Score `subset` (all nodes by default) layer by layer.

        Nodes inside one topological layer are scored concurrently; a layer
        starts only after every node of the previous layer has been scored.
        """
        targets = list(nodes) if subset is None else [n for n in subset if n in nodes]
        layers = graph.topological_layers(targets)
        limit = asyncio.Semaphore(self._workflow_settings.scoring_concurrency)
        results: dict[str, NodeScore] = {}

        async def one(node_id: str) -> NodeScore:
            related = [nodes[d] for d in sorted(graph.closure(node_id)) if d in nodes]
            async with limit:
                return await self.assess(workflow_id, nodes[node_id], iteration, context, related)

        with self._tracer.span(
            "assess_many",
            attributes={"workflow_id": workflow_id, "iteration": iteration, "nodes": len(targets)},
        ) as span:
            for layer in layers:
                scored = await asyncio.gather(*(one(node_id) for node_id in layer))
                results.update({s.node_id: s for s in scored})
            span.set_attribute("failed", sum(1 for s in results.values() if not s.passed))
        logger.debug(
            "Scored %d nodes for workflow %s iteration %d in %d layers",
            len(results),
            workflow_id,
            iteration,
            len(layers),
        )
        return results


def workflow_confidence(scores: Iterable[NodeScore]) -> float:
    """Importance-weighted mean of node confidences."""
    scores = list(scores)
    total_weight = sum(s.importance for s in scores)
    if total_weight == 0:
        return 0.0
    return round(sum(s.overall * s.importance for s in scores) / total_weight, 2)
