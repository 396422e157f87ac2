"""
Continuous Learning Engine

Accumulates validation and disagreement outcomes as learning events,
clusters them in batches into insights and records retraining requests.

Insights never change a model. Retraining is an explicit, rate-limited
request whose execution is delegated to an optional external TrainingSystem.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Protocol, runtime_checkable

from dualval.config import LearningSettings, get_settings
from dualval.core.enums import EventSourceType, ImpactLevel, LearningEventType
from dualval.core.exceptions import DualValError, LearningError, RetrainingRateLimited
from dualval.core.schemas import (
    BatchResult,
    LearningEvent,
    LearningInsight,
    RetrainingOptions,
    RetrainingRequest,
    utcnow,
)
from dualval.observability.metrics import DualValMetrics, get_metrics
from dualval.storage.workflow_store import WorkflowStore

logger = logging.getLogger(__name__)

RECOMMENDED_ACTIONS = {
    "ethics": "Update ethical guidelines and add ethics examples to generator prompts",
    "bias": "Add bias counter-examples to generator prompts and review detector lists",
    "accuracy": "Verify source data handling and numeric grounding in generation",
    "content": "Improve cross-section consistency checks in generation",
    "style": "Refine style guidelines and tone instructions",
    "clarity": "Shorten generated sentences and reduce jargon",
    "consistency": "Ground narrative sections on the scores they reference",
    "compliance": "Add required disclosures to generation templates",
    "approved": "Keep current generation settings for this category",
    "rejected": "Inspect rejected artifacts for recurring structural or scoring failures",
    "escalated": "Review escalated disagreements and tighten generation guidance",
    "timeout": "Review revision turnaround with content owners",
    "cancelled": "Review why revisions are abandoned",
}

_TERMINAL_WORKFLOW_EVENTS = frozenset(
    {
        LearningEventType.SUCCESS,
        LearningEventType.FAILURE,
        LearningEventType.TIMEOUT,
        LearningEventType.CANCELLATION,
    }
)


@runtime_checkable
class TrainingSystem(Protocol):
    """External system that executes retraining jobs."""

    async def submit(
        self, target_model: str, options: RetrainingOptions, events: list[LearningEvent]
    ) -> str:
        """Start a job and return its external id."""
        ...


def impact_level(average_impact: float) -> ImpactLevel:
    magnitude = abs(average_impact)
    if magnitude >= 0.75:
        return ImpactLevel.HIGH
    if magnitude >= 0.5:
        return ImpactLevel.MEDIUM
    return ImpactLevel.LOW


class ContinuousLearningEngine:
    """
    Batch learning over recorded events.

    Usage:
        engine = ContinuousLearningEngine(store)
        engine.emit(LearningEventType.SUCCESS, EventSourceType.WORKFLOW, "wf-1", 0.9)
        result = engine.process_batch()
    """

    def __init__(
        self,
        store: WorkflowStore,
        settings: LearningSettings | None = None,
        training_system: TrainingSystem | None = None,
        metrics: DualValMetrics | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings().learning
        self._training_system = training_system
        self._metrics = metrics or get_metrics()
        self._clock = clock
        self._last_batch_at: datetime | None = None
        self._task: asyncio.Task | None = None
        self._retraining_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def settings(self) -> LearningSettings:
        return self._settings

    # ---- events ----

    def record_event(self, event: LearningEvent) -> LearningEvent:
        """Persist an immutable learning event."""
        self._store.add_event(event)
        self._metrics.learning_events.inc(labels={"event_type": event.event_type.value})
        logger.debug(
            "Learning event %s (%s) from %s %s, impact %.2f",
            event.event_id,
            event.event_type.value,
            event.source_type.value,
            event.source_id,
            event.impact,
        )
        return event

    def emit(
        self,
        event_type: LearningEventType,
        source_type: EventSourceType,
        source_id: str,
        impact: float,
        category: str = "general",
        data: dict[str, Any] | None = None,
    ) -> LearningEvent:
        """Build and record an event; impact is clamped to [-1, 1]."""
        event = LearningEvent(
            event_id=f"evt-{uuid.uuid4().hex[:12]}",
            event_type=event_type,
            source_type=source_type,
            source_id=source_id,
            category=category,
            data=data or {},
            impact=max(-1.0, min(1.0, impact)),
            created_at=self._clock(),
        )
        return self.record_event(event)

    # ---- batches ----

    def due(self, now: datetime | None = None) -> bool:
        """True when the batch interval has elapsed since the last batch."""
        if self._last_batch_at is None:
            return True
        now = now or self._clock()
        return now - self._last_batch_at >= timedelta(seconds=self._settings.batch_interval_seconds)

    def process_batch(self) -> BatchResult:
        """
        Cluster the next batch of unprocessed events into insights.

        Events are taken by processing priority and clustered by
        (source type, category). A cluster yields an insight when both its
        event count and its average impact magnitude exceed
        `insight_min_events` and `insight_impact_threshold`.
        """
        settings = self._settings
        events = self._store.next_unprocessed_events(settings.batch_size)
        clusters: dict[tuple[EventSourceType, str], list[LearningEvent]] = defaultdict(list)
        for event in events:
            clusters[(event.source_type, event.category)].append(event)

        insights: list[LearningInsight] = []
        errors = 0
        for (source_type, category), members in sorted(
            clusters.items(), key=lambda kv: (kv[0][0].value, kv[0][1])
        ):
            try:
                insight = self._insight_for(source_type, category, members)
            except ValueError as e:
                errors += len(members)
                logger.warning("Skipping cluster %s/%s: %s", source_type.value, category, e)
                continue
            if insight is not None:
                insights.append(insight)

        insights.sort(key=lambda i: i.score, reverse=True)
        insights = insights[: settings.max_insights_per_batch]

        if insights:
            self._store.add_insights(insights)
        self._store.mark_events_processed(e.event_id for e in events)

        now = self._clock()
        self._last_batch_at = now
        self._metrics.learning_batches.inc(labels={"outcome": "ok" if not errors else "partial"})
        if insights:
            self._metrics.learning_insights.inc(len(insights))

        result = BatchResult(
            processed=len(events),
            insights_generated=len(insights),
            errors=errors,
            next_batch_at=now + timedelta(seconds=settings.batch_interval_seconds),
            insights=insights,
        )
        logger.info(
            "Learning batch: %d events, %d insights, %d errors",
            result.processed,
            result.insights_generated,
            result.errors,
        )
        return result

    def _insight_for(
        self, source_type: EventSourceType, category: str, members: list[LearningEvent]
    ) -> LearningInsight | None:
        settings = self._settings
        if len(members) <= settings.insight_min_events:
            return None
        average = sum(e.impact for e in members) / len(members)
        if abs(average) <= settings.insight_impact_threshold:
            return None
        confidence = min(0.95, len(members) / (len(members) + settings.insight_min_events))
        direction = "positive" if average > 0 else "negative"
        return LearningInsight(
            insight_id=f"ins-{uuid.uuid4().hex[:12]}",
            source_type=source_type,
            category=category,
            event_count=len(members),
            average_impact=round(average, 4),
            impact_level=impact_level(average),
            confidence=round(confidence, 4),
            recommended_action=RECOMMENDED_ACTIONS.get(
                category, f"Review recurring {category} outcomes"
            ),
            description=(
                f"{len(members)} {source_type.value} events in '{category}' "
                f"with {direction} average impact {average:.2f}"
            ),
            event_ids=[e.event_id for e in members],
            created_at=self._clock(),
        )

    @staticmethod
    def disagreement_rate(events: list[LearningEvent]) -> float:
        """Disagreements per completed workflow within a set of events."""
        opened = sum(1 for e in events if e.event_type == LearningEventType.DISAGREEMENT)
        finished = sum(
            1
            for e in events
            if e.source_type == EventSourceType.WORKFLOW
            and e.event_type in _TERMINAL_WORKFLOW_EVENTS
        )
        return opened / finished if finished else 0.0

    async def run_batch(self) -> BatchResult:
        """Process a batch and apply the automatic retraining trigger."""
        pending = self._store.next_unprocessed_events(self._settings.batch_size)
        rate = self.disagreement_rate(pending)
        result = self.process_batch()
        if self._settings.auto_retraining and rate > self._settings.disagreement_rate_trigger:
            target = self._settings.retraining_target_model
            logger.info(
                "Disagreement rate %.2f above %.2f, requesting retraining of %s",
                rate,
                self._settings.disagreement_rate_trigger,
                target,
            )
            try:
                await self.trigger_retraining(
                    target, RetrainingOptions(reason=f"disagreement rate {rate:.2f}")
                )
            except RetrainingRateLimited as e:
                logger.info("Automatic retraining skipped: %s", e.message)
        return result

    # ---- timer ----

    def start(self) -> None:
        """Start the periodic batch task in the running event loop."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._run_periodically())

    async def stop(self) -> None:
        """Cancel the periodic task. A task that already died is logged, not raised."""
        task, self._task = self._task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Periodic learning task had failed")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run_periodically(self) -> None:
        while True:
            await asyncio.sleep(self._settings.batch_interval_seconds)
            try:
                await self.run_batch()
            except DualValError:
                logger.exception("Learning batch failed, retrying next interval")

    # ---- insights & retraining ----

    def get_insights(self, category: str | None = None, limit: int = 100) -> list[LearningInsight]:
        """Stored insights ranked by impact level and confidence."""
        insights = self._store.list_insights(category=category, limit=limit)
        return sorted(insights, key=lambda i: i.score, reverse=True)

    async def trigger_retraining(
        self, target_model: str, options: RetrainingOptions | None = None
    ) -> RetrainingRequest:
        """
        Record a retraining request and hand it to the training system.

        Raises:
            LearningError: if the epoch count exceeds the configured maximum or the
                training system fails.
            RetrainingRateLimited: if the target model was retrained too recently.
        """
        options = options or RetrainingOptions()
        if not target_model:
            raise LearningError("Retraining requires a target model")
        if options.epochs > self._settings.max_epochs:
            raise LearningError(
                f"epochs {options.epochs} exceeds maximum {self._settings.max_epochs}",
                {"target_model": target_model},
            )

        # Check, submit and record form one step per model; a concurrent
        # request for the same model sees the recorded one and is rate limited.
        async with self._retraining_locks[target_model]:
            now = self._clock()
            last = self._store.get_last_retraining(target_model)
            if last is not None:
                elapsed = (now - last.requested_at).total_seconds()
                wait = self._settings.retraining_min_interval_seconds - elapsed
                if wait > 0:
                    raise RetrainingRateLimited(target_model, wait)

            events = self._store.list_events(processed=True, limit=10000)
            external_job_id = None
            if self._training_system is not None:
                try:
                    external_job_id = await self._training_system.submit(
                        target_model, options, events
                    )
                except Exception as e:
                    raise LearningError(
                        f"Training system rejected retraining of {target_model}: {e}",
                        {"target_model": target_model, "cause": type(e).__name__},
                    ) from e

            request = RetrainingRequest(
                request_id=f"rt-{uuid.uuid4().hex[:12]}",
                target_model=target_model,
                options=options,
                status="submitted" if external_job_id else "queued",
                external_job_id=external_job_id,
                training_event_count=len(events),
                requested_at=now,
            )
            self._store.add_retraining_request(request)
        self._metrics.emit(
            "dualval_retraining_requests_total",
            tags={"target_model": target_model, "priority": options.priority.value},
        )
        logger.info(
            "Retraining of %s recorded (%s, %d events)",
            target_model,
            request.status,
            request.training_event_count,
        )
        return request
