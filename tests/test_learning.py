"""
Tests for the continuous learning engine.

Tests:
1. Event recording and impact clamping
2. Batch clustering into insights
3. Rate-limited retraining requests
4. Automatic retraining on a high disagreement rate
"""

import asyncio
from datetime import timedelta

import pytest

from dualval.config import LearningSettings
from dualval.core.enums import EventSourceType, ImpactLevel, LearningEventType
from dualval.core.exceptions import LearningError, RetrainingRateLimited, StorageError
from dualval.core.schemas import RetrainingOptions, utcnow
from dualval.learning.engine import ContinuousLearningEngine, impact_level


class Clock:
    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now


class RecordingTrainingSystem:
    def __init__(self):
        self.calls = []

    async def submit(self, target_model, options, events):
        self.calls.append((target_model, options, len(events)))
        return "job-42"


class FailingTrainingSystem:
    async def submit(self, target_model, options, events):
        raise ConnectionError("training cluster unreachable")


class SlowTrainingSystem(RecordingTrainingSystem):
    async def submit(self, target_model, options, events):
        await asyncio.sleep(0.01)
        return await super().submit(target_model, options, events)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def engine(store, clock):
    return ContinuousLearningEngine(store, settings=LearningSettings(), clock=clock)


def emit_many(engine, count, category, impact, source=EventSourceType.DISAGREEMENT):
    event_type = (
        LearningEventType.DISAGREEMENT
        if source == EventSourceType.DISAGREEMENT
        else LearningEventType.SUCCESS
    )
    return [
        engine.emit(event_type, source, f"src-{category}-{i}", impact, category=category)
        for i in range(count)
    ]


class TestEvents:
    def test_emit_persists_event(self, engine, store):
        event = engine.emit(
            LearningEventType.SUCCESS, EventSourceType.WORKFLOW, "wf-1", 0.9, category="approved"
        )

        assert store.get_event(event.event_id) == event
        assert store.count_unprocessed_events() == 1

    def test_impact_is_clamped(self, engine):
        event = engine.emit(LearningEventType.FAILURE, EventSourceType.WORKFLOW, "wf-1", -3.0)

        assert event.impact == -1.0

    @pytest.mark.parametrize(
        "impact,expected",
        [(0.9, ImpactLevel.HIGH), (-0.6, ImpactLevel.MEDIUM), (0.2, ImpactLevel.LOW)],
    )
    def test_impact_level(self, impact, expected):
        assert impact_level(impact) == expected


class TestBatches:
    def test_cluster_becomes_insight(self, engine, store):
        emit_many(engine, 4, "bias", 0.8)
        emit_many(engine, 2, "style", 0.9)

        result = engine.process_batch()

        assert result.processed == 6
        assert result.insights_generated == 1
        (insight,) = result.insights
        assert insight.category == "bias"
        assert insight.impact_level == ImpactLevel.HIGH
        assert insight.confidence == pytest.approx(4 / 7, abs=1e-4)
        assert insight.recommended_action.startswith("Add bias counter-examples")
        assert store.count_unprocessed_events() == 0

    def test_weak_cluster_is_ignored(self, engine):
        emit_many(engine, 4, "clarity", 0.2)

        assert engine.process_batch().insights_generated == 0

    @pytest.mark.parametrize("count,impact", [(3, 0.9), (5, 0.5), (5, -0.5)])
    def test_thresholds_must_be_exceeded(self, engine, count, impact):
        emit_many(engine, count, "bias", impact)

        result = engine.process_batch()

        assert result.processed == count
        assert result.insights_generated == 0

    def test_unknown_category_gets_generic_action(self, engine):
        emit_many(engine, 4, "formatting", -0.9)

        (insight,) = engine.process_batch().insights
        assert insight.recommended_action == "Review recurring formatting outcomes"
        assert "negative" in insight.description

    def test_batch_interval(self, engine, clock):
        assert engine.due()
        engine.process_batch()

        assert not engine.due()
        assert engine.due(clock.now + timedelta(seconds=301))

    def test_insights_ranked(self, engine):
        emit_many(engine, 4, "bias", 0.8)
        emit_many(engine, 4, "accuracy", 0.55)
        engine.process_batch()

        assert [i.category for i in engine.get_insights()] == ["bias", "accuracy"]
        assert [i.category for i in engine.get_insights(category="accuracy")] == ["accuracy"]

    def test_disagreement_rate(self, engine):
        events = emit_many(engine, 1, "bias", 0.5) + emit_many(
            engine, 4, "approved", 0.9, source=EventSourceType.WORKFLOW
        )

        assert ContinuousLearningEngine.disagreement_rate(events) == pytest.approx(0.25)


class TestRetraining:
    def test_request_is_recorded(self, engine, store):
        request = asyncio.run(engine.trigger_retraining("validator"))

        assert request.status == "queued"
        assert store.get_last_retraining("validator").request_id == request.request_id

    def test_training_system_receives_job(self, store, clock):
        training = RecordingTrainingSystem()
        engine = ContinuousLearningEngine(store, training_system=training, clock=clock)

        request = asyncio.run(engine.trigger_retraining("generator", RetrainingOptions(epochs=5)))

        assert request.status == "submitted"
        assert request.external_job_id == "job-42"
        assert training.calls[0][0] == "generator"

    def test_rate_limited_per_model(self, engine, clock):
        asyncio.run(engine.trigger_retraining("validator"))

        with pytest.raises(RetrainingRateLimited):
            asyncio.run(engine.trigger_retraining("validator"))
        asyncio.run(engine.trigger_retraining("generator"))

        clock.now += timedelta(seconds=3601)
        asyncio.run(engine.trigger_retraining("validator"))

    def test_epochs_bounded(self, engine):
        with pytest.raises(LearningError):
            asyncio.run(engine.trigger_retraining("validator", RetrainingOptions(epochs=500)))

    def test_high_disagreement_rate_triggers_retraining(self, store, clock):
        engine = ContinuousLearningEngine(
            store, settings=LearningSettings(auto_retraining=True), clock=clock
        )
        emit_many(engine, 1, "bias", 0.5)
        emit_many(engine, 1, "approved", 0.9, source=EventSourceType.WORKFLOW)

        asyncio.run(engine.run_batch())

        (request,) = store.list_retraining_requests()
        assert request.target_model == "validator"
        assert request.options.reason == "disagreement rate 1.00"

    def test_periodic_task_starts_and_stops(self, engine):
        async def scenario():
            engine.start()
            assert engine.running
            await engine.stop()
            return engine.running

        assert asyncio.run(scenario()) is False

    def test_training_system_failure_is_a_learning_error(self, store, clock):
        engine = ContinuousLearningEngine(
            store, training_system=FailingTrainingSystem(), clock=clock
        )

        with pytest.raises(LearningError) as exc:
            asyncio.run(engine.trigger_retraining("generator"))

        assert exc.value.details["cause"] == "ConnectionError"
        assert store.list_retraining_requests() == []

    def test_concurrent_requests_for_one_model_are_rate_limited(self, store, clock):
        training = SlowTrainingSystem()
        engine = ContinuousLearningEngine(store, training_system=training, clock=clock)

        async def scenario():
            return await asyncio.gather(
                engine.trigger_retraining("generator"),
                engine.trigger_retraining("generator"),
                return_exceptions=True,
            )

        results = asyncio.run(scenario())

        assert sum(1 for r in results if isinstance(r, RetrainingRateLimited)) == 1
        assert len(training.calls) == 1
        assert len(store.list_retraining_requests()) == 1


class TestPeriodicTask:
    def test_storage_failure_does_not_stop_the_timer(self, store, clock, monkeypatch, caplog):
        engine = ContinuousLearningEngine(
            store, settings=LearningSettings(batch_interval_seconds=0.01), clock=clock
        )
        calls = []

        def failing_next(limit):
            calls.append(limit)
            raise StorageError("database is locked")

        monkeypatch.setattr(store, "next_unprocessed_events", failing_next)

        async def scenario():
            engine.start()
            await asyncio.sleep(0.1)
            still_running = engine.running
            await engine.stop()
            return still_running

        assert asyncio.run(scenario()) is True
        assert len(calls) >= 2
        assert not engine.running
        assert "Learning batch failed" in caplog.text

    def test_stop_after_task_died_does_not_raise(self, store, clock, monkeypatch, caplog):
        engine = ContinuousLearningEngine(
            store, settings=LearningSettings(batch_interval_seconds=0.01), clock=clock
        )

        def broken_next(limit):
            raise RuntimeError("unexpected")

        monkeypatch.setattr(store, "next_unprocessed_events", broken_next)

        async def scenario():
            engine.start()
            await asyncio.sleep(0.05)
            died = not engine.running
            await engine.stop()
            return died

        assert asyncio.run(scenario()) is True
        assert not engine.running
        assert "Periodic learning task had failed" in caplog.text
