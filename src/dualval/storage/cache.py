"""
Confidence Cache

In-memory LRU of node scoring records keyed by (workflow id, node id,
iteration). Keys never collide across workflows or iterations, so concurrent
workflows share the cache without cross-workflow locking; the lock only guards
the LRU bookkeeping.
"""

from collections import OrderedDict
from threading import Lock
from typing import Any

from dualval.config import get_settings
from dualval.core.schemas import NodeScore

CacheKey = tuple[str, str, int]


class ConfidenceCache:
    """
    Thread-safe LRU of NodeScore records.

    Usage:
        cache = ConfidenceCache(max_size=1000)
        cache.put(score)
        cache.get("wf-1", "summary", 2)
    """

    def __init__(self, max_size: int | None = None) -> None:
        self._max_size = max_size or get_settings().storage.cache_max_size
        self._entries: OrderedDict[CacheKey, NodeScore] = OrderedDict()
        self._lock = Lock()
        self._hits = 0
        self._misses = 0

    @staticmethod
    def key(workflow_id: str, node_id: str, iteration: int) -> CacheKey:
        return (workflow_id, node_id, iteration)

    def get(
        self, workflow_id: str, node_id: str, iteration: int, content_hash: str | None = None
    ) -> NodeScore | None:
        """
        Cached record for the key, or None.

        When `content_hash` is given a record scored over different content
        counts as a miss.
        """
        key = self.key(workflow_id, node_id, iteration)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or (content_hash is not None and entry.content_hash != content_hash):
                self._misses += 1
                return None
            self._entries.move_to_end(key)
            self._hits += 1
            return entry

    def put(self, score: NodeScore) -> None:
        key = self.key(score.workflow_id, score.node_id, score.iteration)
        with self._lock:
            self._entries.pop(key, None)
            while len(self._entries) >= self._max_size:
                self._entries.popitem(last=False)
            self._entries[key] = score

    def invalidate_workflow(self, workflow_id: str) -> int:
        """Drop every entry of one workflow. Returns count removed."""
        with self._lock:
            keys = [k for k in self._entries if k[0] == workflow_id]
            for k in keys:
                del self._entries[k]
            return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._entries),
                "max_size": self._max_size,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / total if total > 0 else 0.0,
            }
