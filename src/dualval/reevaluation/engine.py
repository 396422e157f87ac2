"""
Re-evaluation Engine

Selective re-scoring of a revised artifact. Only the impact set (changed and
added nodes, their transitive dependents and the dependents of removed
nodes) is scored again; every other node keeps its prior score unchanged.

Trusting the carried-over scores is verified by periodic full sweeps: the
out-of-impact nodes are scored again and any difference is reported as a
regression for manual review while the carried score is kept.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from dualval.config import WorkflowSettings, get_settings
from dualval.core.enums import ConfidenceFactor
from dualval.core.schemas import Node, NodeScore, Regression, RevalidationResult
from dualval.extraction.graph import DependencyGraph
from dualval.observability.metrics import DualValMetrics, get_metrics
from dualval.observability.tracer import get_tracer
from dualval.scoring.scorer import ConfidenceScorer, workflow_confidence
from dualval.storage.cache import ConfidenceCache

logger = logging.getLogger(__name__)


class ReEvaluationEngine:
    """
    Re-score only what a revision can have affected.

    Usage:
        engine = ReEvaluationEngine(scorer)
        result = await engine.reevaluate(
            "wf-1", previous_nodes, revised_nodes, previous_scores, iteration=2, context={}
        )
    """

    def __init__(
        self,
        scorer: ConfidenceScorer,
        cache: ConfidenceCache | None = None,
        settings: WorkflowSettings | None = None,
        metrics: DualValMetrics | None = None,
    ) -> None:
        self._scorer = scorer
        self._cache = cache
        self._settings = settings or get_settings().workflow
        self._metrics = metrics or get_metrics()
        self._tracer = get_tracer("dualval.reevaluation")

    def is_sweep_iteration(self, iteration: int, max_iterations: int) -> bool:
        """Full consistency sweeps run every N iterations and on the last one."""
        interval = self._settings.consistency_sweep_interval
        return iteration == max_iterations or iteration % interval == 0

    @staticmethod
    def diff(
        previous: dict[str, Node], revised: dict[str, Node]
    ) -> tuple[list[str], list[str], list[str]]:
        """(changed, added, removed) node ids by content hash."""
        changed = sorted(
            node_id
            for node_id in previous.keys() & revised.keys()
            if previous[node_id].content_hash != revised[node_id].content_hash
            or previous[node_id].depends_on != revised[node_id].depends_on
        )
        added = sorted(revised.keys() - previous.keys())
        removed = sorted(previous.keys() - revised.keys())
        return changed, added, removed

    async def reevaluate(
        self,
        workflow_id: str,
        previous_nodes: Iterable[Node],
        revised_nodes: Iterable[Node],
        previous_scores: dict[str, NodeScore],
        iteration: int,
        context: dict[str, Any] | None = None,
        full_sweep: bool = False,
    ) -> RevalidationResult:
        """
        Re-evaluate a revision.

        Raises:
            DependencyCycle: if the revised dependency graph is not a DAG.
        """
        context = context or {}
        previous = {n.node_id: n for n in previous_nodes}
        revised = {n.node_id: n for n in revised_nodes}

        graph = DependencyGraph.from_nodes(revised.values())
        graph.validate()
        previous_graph = DependencyGraph.from_nodes(previous.values())

        changed, added, removed = self.diff(previous, revised)
        impact = graph.impact_set([*changed, *added])
        impact |= previous_graph.transitive_dependents(removed) & revised.keys()
        impact |= {n for n in revised if n not in previous_scores}

        with self._tracer.span(
            "reevaluate",
            attributes={
                "workflow_id": workflow_id,
                "iteration": iteration,
                "changed": len(changed),
                "impact": len(impact),
            },
        ) as span:
            rescored = await self._scorer.assess_many(
                workflow_id, revised, graph, iteration, context, subset=impact
            )
            carried = self._carry_forward(
                workflow_id, revised, previous_scores, iteration, impact
            )

            regressions = self._consistency_drops(
                rescored, previous_scores, changed, added, iteration
            )
            if full_sweep:
                regressions.extend(
                    await self._sweep(workflow_id, revised, graph, carried, iteration, context)
                )
            span.set_attribute("regressions", len(regressions))

        node_scores = {**carried, **rescored}
        resolved, new = self._issue_delta(previous_scores, node_scores)
        result = RevalidationResult(
            workflow_id=workflow_id,
            iteration=iteration,
            node_scores=dict(sorted(node_scores.items())),
            changed_ids=changed,
            added_ids=added,
            removed_ids=removed,
            impact_set=sorted(impact),
            rescored_ids=sorted(rescored),
            reused_ids=sorted(carried),
            regressions=regressions,
            resolved_issue_count=resolved,
            new_issue_count=new,
            previous_confidence=(
                workflow_confidence(previous_scores.values()) if previous_scores else None
            ),
            current_confidence=workflow_confidence(node_scores.values()),
            full_sweep=full_sweep,
        )
        logger.info(
            "Re-evaluated %s iteration %d: %d rescored, %d reused (savings %.0f%%), %d regressions",
            workflow_id,
            iteration,
            len(rescored),
            len(carried),
            result.cost_savings * 100,
            len(regressions),
        )
        return result

    # ---- steps ----

    def _carry_forward(
        self,
        workflow_id: str,
        revised: dict[str, Node],
        previous_scores: dict[str, NodeScore],
        iteration: int,
        impact: set[str],
    ) -> dict[str, NodeScore]:
        """Prior scores re-keyed to this iteration, factors untouched."""
        carried: dict[str, NodeScore] = {}
        for node_id in sorted(revised.keys() - impact):
            prior = previous_scores[node_id]
            record = prior.model_copy(
                update={
                    "workflow_id": workflow_id,
                    "iteration": iteration,
                    "reused_from_iteration": prior.reused_from_iteration or prior.iteration,
                }
            )
            carried[node_id] = record
            if self._cache is not None:
                self._cache.put(record)
        if carried:
            self._metrics.nodes_reused.inc(len(carried))
        return carried

    def _consistency_drops(
        self,
        rescored: dict[str, NodeScore],
        previous_scores: dict[str, NodeScore],
        changed: list[str],
        added: list[str],
        iteration: int,
    ) -> list[Regression]:
        """Unchanged dependents whose consistency fell after a dependency was revised."""
        tolerance = self._settings.regression_tolerance
        directly_revised = set(changed) | set(added)
        regressions = []
        for node_id, score in sorted(rescored.items()):
            prior = previous_scores.get(node_id)
            if prior is None or node_id in directly_revised:
                continue
            before = prior.factors.consistency
            after = score.factors.consistency
            if before - after > tolerance:
                regressions.append(
                    Regression(
                        node_id=node_id,
                        iteration=iteration,
                        previous_overall=prior.overall,
                        current_overall=score.overall,
                        factor=ConfidenceFactor.CONSISTENCY,
                        reason=(
                            f"Consistency dropped from {before:.1f} to {after:.1f} "
                            "after a dependency was revised"
                        ),
                        requires_manual_review=False,
                    )
                )
        return regressions

    async def _sweep(
        self,
        workflow_id: str,
        revised: dict[str, Node],
        graph: DependencyGraph,
        carried: dict[str, NodeScore],
        iteration: int,
        context: dict[str, Any],
    ) -> list[Regression]:
        """Score carried nodes again without replacing their carried score."""
        tolerance = self._settings.regression_tolerance
        regressions = []
        for node_id, kept in sorted(carried.items()):
            related = [revised[d] for d in sorted(graph.closure(node_id)) if d in revised]
            fresh = await self._scorer.score(revised[node_id], context, related)
            current = self._scorer.overall(fresh)
            if abs(current - kept.overall) > tolerance:
                logger.warning(
                    "Regression on %s/%s: cached %.2f, current %.2f",
                    workflow_id,
                    node_id,
                    kept.overall,
                    current,
                )
                regressions.append(
                    Regression(
                        node_id=node_id,
                        iteration=iteration,
                        previous_overall=kept.overall,
                        current_overall=current,
                        reason="Full sweep score differs from the carried-over score",
                        requires_manual_review=True,
                    )
                )
        return regressions

    @staticmethod
    def _issue_delta(
        previous_scores: dict[str, NodeScore], current_scores: dict[str, NodeScore]
    ) -> tuple[int, int]:
        """(resolved, new) issue counts over nodes present in the revision."""
        before = {
            i.issue_id
            for node_id, s in previous_scores.items()
            if node_id in current_scores
            for i in s.issues
        }
        after = {i.issue_id for s in current_scores.values() for i in s.issues}
        return len(before - after), len(after - before)
