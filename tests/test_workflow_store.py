"""
Tests for WorkflowStore persistence and the confidence cache.

Tests:
1. Workflow save/get/list
2. Snapshots written with their workflow
3. Atomic iteration publishing and node history
4. Review queue ordering and acknowledgement
5. Confidence cache keys, content hashes and LRU eviction
"""

import tempfile
from datetime import timedelta
from pathlib import Path

import pytest

from dualval.core.enums import (
    ArtifactKind,
    DisagreementType,
    Severity,
    WorkflowStatus,
)
from dualval.core.exceptions import StorageError
from dualval.core.schemas import (
    Position,
    ReviewItem,
    ValidationWorkflow,
    WorkflowSnapshot,
    utcnow,
)
from dualval.storage.cache import ConfidenceCache
from dualval.storage.workflow_store import WorkflowStore


def workflow(workflow_id="wf-1", **overrides):
    values = {
        "workflow_id": workflow_id,
        "artifact_id": "art-001",
        "artifact_kind": ArtifactKind.INDIVIDUAL,
    }
    values.update(overrides)
    return ValidationWorkflow(**values)


class TestStoreInit:
    def test_creates_parent_directories(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "nested" / "dir" / "dualval.db"
            WorkflowStore(db_path=db_path)
            assert db_path.exists()


class TestWorkflows:
    def test_save_and_get(self, store):
        wf = workflow(status=WorkflowStatus.REQUIRES_REVISION, status_reason="2 nodes failing")
        store.save_workflow(wf)

        loaded = store.get_workflow("wf-1")
        assert loaded.status == WorkflowStatus.REQUIRES_REVISION
        assert loaded.status_reason == "2 nodes failing"

    def test_missing_workflow(self, store):
        assert store.get_workflow("wf-missing") is None

    def test_update_keeps_single_row(self, store):
        wf = workflow()
        store.save_workflow(wf)
        wf.status = WorkflowStatus.APPROVED
        wf.final_confidence = 91.0
        store.save_workflow(wf)

        (only,) = store.list_workflows()
        assert only.status == WorkflowStatus.APPROVED
        assert only.final_confidence == 91.0

    def test_list_filters(self, store):
        now = utcnow()
        store.save_workflow(workflow("wf-old", created_at=now - timedelta(days=3)))
        store.save_workflow(workflow("wf-new", status=WorkflowStatus.APPROVED, created_at=now))

        assert [w.workflow_id for w in store.list_workflows()] == ["wf-new", "wf-old"]
        approved = store.list_workflows(status=WorkflowStatus.APPROVED)
        assert [w.workflow_id for w in approved] == ["wf-new"]
        recent = store.list_workflows(since=now - timedelta(days=1))
        assert [w.workflow_id for w in recent] == ["wf-new"]


class TestSnapshots:
    def test_latest_snapshot_wins(self, store, make_node, make_score):
        node = make_node("insight.1")
        wf = workflow(status=WorkflowStatus.REQUIRES_REVISION)
        store.save_snapshot(WorkflowSnapshot(workflow=wf, artifact={"v": 1}, nodes=[node]))
        wf.current_iteration = 2
        store.save_snapshot(
            WorkflowSnapshot(
                workflow=wf,
                artifact={"v": 2},
                nodes=[node],
                scores={"insight.1": make_score(node, iteration=2, workflow_id="wf-1")},
            )
        )

        latest = store.get_latest_snapshot("wf-1")
        assert latest.artifact == {"v": 2}
        assert latest.scores["insight.1"].iteration == 2
        assert store.count_snapshots("wf-1") == 2
        assert store.get_workflow("wf-1").current_iteration == 2


class TestIterations:
    def test_publish_and_read_back(self, store, make_node, make_score):
        a, b = make_node("insight.1"), make_node("insight.2")
        wf = workflow()
        store.publish_iteration(
            wf,
            1,
            {
                "insight.1": make_score(a, workflow_id="wf-1"),
                "insight.2": make_score(b, workflow_id="wf-1", bias=40.0),
            },
            confidence=85.5,
        )

        scores = store.get_node_scores("wf-1", 1)
        assert set(scores) == {"insight.1", "insight.2"}
        assert not scores["insight.2"].passed
        assert store.list_iterations("wf-1")[0]["node_count"] == 2

    def test_iteration_published_once(self, store, make_node, make_score):
        node = make_node("insight.1")
        wf = workflow()
        store.publish_iteration(wf, 1, {"insight.1": make_score(node)}, 92.0)

        with pytest.raises(StorageError):
            store.publish_iteration(wf, 1, {"insight.1": make_score(node)}, 92.0)

    def test_node_history(self, store, make_node, make_score):
        node = make_node("insight.1")
        wf = workflow()
        store.publish_iteration(wf, 1, {"insight.1": make_score(node, bias=40.0)}, 79.0)
        wf.current_iteration = 2
        store.publish_iteration(wf, 2, {"insight.1": make_score(node, iteration=2)}, 92.0)

        history = store.get_node_history("wf-1", "insight.1")
        assert [s.iteration for s in history] == [1, 2]
        assert [s.passed for s in history] == [False, True]


def review_item(disagreement_id, priority, enqueued_at):
    return ReviewItem(
        disagreement_id=disagreement_id,
        workflow_id="wf-1",
        node_id="insight.1",
        severity=Severity.HIGH,
        disagreement_type=DisagreementType.BIAS,
        priority=priority,
        reason="Needs a reviewer",
        generator_position=Position(source="generator", confidence=0.9),
        validator_position=Position(source="validator", confidence=0.6),
        enqueued_at=enqueued_at,
    )


class TestReviewQueue:
    def test_priority_then_age(self, store):
        now = utcnow()
        store.enqueue_review(review_item("dis-late", 2, now))
        store.enqueue_review(review_item("dis-early", 2, now - timedelta(minutes=5)))
        store.enqueue_review(review_item("dis-urgent", 1, now))

        ids = [i.disagreement_id for i in store.list_review_queue()]
        assert ids == ["dis-urgent", "dis-early", "dis-late"]

    def test_acknowledge(self, store):
        store.enqueue_review(review_item("dis-1", 3, utcnow()))

        assert store.mark_review_resolved("dis-1")
        assert not store.mark_review_resolved("dis-1")
        assert store.list_review_queue() == []
        assert len(store.list_review_queue(include_resolved=True)) == 1


class TestConfidenceCache:
    def test_keys_are_per_workflow_and_iteration(self, make_node, make_score):
        cache = ConfidenceCache(max_size=10)
        node = make_node("insight.1")
        cache.put(make_score(node, workflow_id="wf-a"))

        assert cache.get("wf-a", "insight.1", 1) is not None
        assert cache.get("wf-b", "insight.1", 1) is None
        assert cache.get("wf-a", "insight.1", 2) is None
        assert cache.stats["hits"] == 1
        assert cache.stats["misses"] == 2

    def test_changed_content_is_a_miss(self, make_node, make_score):
        cache = ConfidenceCache(max_size=10)
        cache.put(make_score(make_node("insight.1"), workflow_id="wf-a"))
        edited = make_node("insight.1", content="Edited text.")

        assert cache.get("wf-a", "insight.1", 1, edited.content_hash) is None

    def test_lru_eviction(self, make_node, make_score):
        cache = ConfidenceCache(max_size=2)
        for node_id in ("a", "b"):
            cache.put(make_score(make_node(node_id)))
        cache.get("wf-test", "a", 1)
        cache.put(make_score(make_node("c")))

        assert cache.size == 2
        assert cache.get("wf-test", "b", 1) is None
        assert cache.get("wf-test", "a", 1) is not None

    def test_invalidate_workflow(self, make_node, make_score):
        cache = ConfidenceCache(max_size=10)
        cache.put(make_score(make_node("a"), workflow_id="wf-a"))
        cache.put(make_score(make_node("b"), workflow_id="wf-b"))

        assert cache.invalidate_workflow("wf-a") == 1
        assert cache.size == 1
