"""
Human Review Queue

Escalated disagreements are pushed here as complete, self-explanatory
records. Resolutions arrive asynchronously through
DisagreementHandler.resolve, which acknowledges the queued item.
"""

from typing import Protocol, runtime_checkable

from dualval.core.schemas import ReviewItem
from dualval.storage.workflow_store import WorkflowStore


@runtime_checkable
class ReviewQueue(Protocol):
    """Destination for escalated disagreements."""

    def push(self, item: ReviewItem) -> None: ...

    def acknowledge(self, disagreement_id: str) -> None: ...


class StoreReviewQueue:
    """ReviewQueue backed by the workflow store's review_queue table."""

    def __init__(self, store: WorkflowStore) -> None:
        self._store = store

    def push(self, item: ReviewItem) -> None:
        self._store.enqueue_review(item)

    def acknowledge(self, disagreement_id: str) -> None:
        self._store.mark_review_resolved(disagreement_id)

    def pending(self, limit: int = 100) -> list[ReviewItem]:
        """Open items, highest priority first."""
        return self._store.list_review_queue(limit=limit)
