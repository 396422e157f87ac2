"""
Node Extractor

Decomposes a generated assessment artifact into independently validatable
nodes and the dependency graph between them.

Artifact layout (all sections optional unless required by the artifact kind):

    {
        "artifact_id": "...",
        "scores": {"ocean": {"openness": 72, "neuroticism": {"score": 31, "percentile": 40}}},
        "insights": ["...", {"id": "...", "text": "...", "references": ["openness"]}],
        "recommendations": [{"text": "...", "based_on": [1]}],
        "summary": "..." | {"text": "...", "references": [...]},
        "context": {...},
        "metadata": {"confidence": 0.9, "node_confidence": {"summary": 0.8}},
    }

Extraction is deterministic: the same artifact always yields the same node
ids and content hashes.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from dualval.core.enums import ArtifactKind, NodeType
from dualval.core.exceptions import MalformedArtifact
from dualval.core.schemas import Node
from dualval.extraction.graph import DependencyGraph

logger = logging.getLogger(__name__)


REQUIRED_SECTIONS: dict[ArtifactKind, tuple[str, ...]] = {
    ArtifactKind.INDIVIDUAL: ("scores", "insights"),
    ArtifactKind.EXECUTIVE: ("scores", "insights", "recommendations", "summary"),
    ArtifactKind.ORGANIZATIONAL: ("insights", "recommendations", "summary"),
}

SUMMARY_ID = "summary"
CONTEXT_ID = "context"


@dataclass(frozen=True)
class ExtractionResult:
    """Nodes of one artifact plus their validated dependency graph."""

    artifact_id: str
    artifact_kind: ArtifactKind
    nodes: tuple[Node, ...]
    graph: DependencyGraph

    def by_id(self) -> dict[str, Node]:
        return {node.node_id: node for node in self.nodes}


class NodeExtractor:
    """
    Extract nodes and dependencies from an artifact.

    Usage:
        extractor = NodeExtractor()
        result = extractor.extract(artifact, ArtifactKind.EXECUTIVE)
    """

    def extract(
        self, artifact: dict[str, Any], artifact_kind: ArtifactKind | str
    ) -> ExtractionResult:
        """
        Extract nodes from an artifact.

        Raises:
            MalformedArtifact: Required sections missing or malformed, or a
                reference does not resolve.
            DependencyCycle: Explicit references form a cycle.
        """
        kind = self._coerce_kind(artifact_kind)
        if not isinstance(artifact, dict):
            raise MalformedArtifact(
                f"Artifact must be a mapping, got {type(artifact).__name__}",
                missing_sections=list(REQUIRED_SECTIONS[kind]),
            )

        missing = [s for s in REQUIRED_SECTIONS[kind] if not artifact.get(s)]
        if missing:
            raise MalformedArtifact(
                f"Artifact of kind '{kind.value}' is missing required sections: "
                f"{', '.join(missing)}",
                missing_sections=missing,
            )

        metadata = artifact.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise MalformedArtifact("Section 'metadata' must be a mapping")

        builder = _NodeBuilder(metadata)
        builder.add_scores(artifact.get("scores") or {})
        insight_ids = builder.add_insights(artifact.get("insights") or [])
        recommendation_ids = builder.add_recommendations(
            artifact.get("recommendations") or [], insight_ids
        )
        if artifact.get("summary"):
            builder.add_summary(artifact["summary"], insight_ids + recommendation_ids)
        if artifact.get("context"):
            builder.add_context(artifact["context"])

        nodes = builder.build()
        graph = DependencyGraph.from_nodes(nodes)
        graph.validate()

        artifact_id = str(artifact.get("artifact_id") or self.artifact_hash(artifact))
        logger.debug(
            "Extracted %d nodes from artifact %s (%s)", len(nodes), artifact_id, kind.value
        )
        return ExtractionResult(
            artifact_id=artifact_id, artifact_kind=kind, nodes=tuple(nodes), graph=graph
        )

    @staticmethod
    def artifact_hash(artifact: dict[str, Any]) -> str:
        """Stable id for artifacts that do not carry one."""
        canonical = json.dumps(artifact, sort_keys=True, default=str)
        return hashlib.sha256(canonical.encode()).hexdigest()[:16]

    @staticmethod
    def _coerce_kind(artifact_kind: ArtifactKind | str) -> ArtifactKind:
        try:
            return ArtifactKind(artifact_kind)
        except ValueError as e:
            raise MalformedArtifact(
                f"Unknown artifact kind: {artifact_kind!r}",
                allowed=[k.value for k in ArtifactKind],
            ) from e


class _NodeBuilder:
    """Accumulates pending nodes, resolves references, then freezes nodes."""

    def __init__(self, metadata: dict[str, Any]) -> None:
        self._default_confidence = metadata.get("confidence")
        self._node_confidence = metadata.get("node_confidence") or {}
        self._pending: dict[str, dict[str, Any]] = {}
        self._labels: dict[str, str] = {}  # lower-case score label -> node id

    # ---- sections ----

    def add_scores(self, scores: Any) -> list[str]:
        if not isinstance(scores, dict):
            raise MalformedArtifact("Section 'scores' must be a mapping")
        ids: list[str] = []
        for key in sorted(scores):
            value = scores[key]
            if _is_score_value(value):
                ids.append(self._add_score(None, key, value))
            elif isinstance(value, dict) and value:
                for label in sorted(value):
                    if not _is_score_value(value[label]):
                        raise MalformedArtifact(
                            f"Score '{key}.{label}' must be a number or carry a 'score' field",
                            section="scores",
                        )
                    ids.append(self._add_score(key, label, value[label]))
            else:
                raise MalformedArtifact(
                    f"Score group '{key}' is empty or malformed", section="scores"
                )
        return ids

    def _add_score(self, group: str | None, label: str, value: Any) -> str:
        node_id = f"score.{group}.{label}" if group else f"score.{label}"
        content: dict[str, Any] = {"label": label}
        if group:
            content["group"] = group
        if isinstance(value, dict):
            content.update(value)
        else:
            content["score"] = value
        self._labels.setdefault(label.lower(), node_id)
        self._put(node_id, NodeType.SCORING, content, set())
        return node_id

    def add_insights(self, insights: Any) -> list[str]:
        items = self._as_list(insights, "insights")
        ids: list[str] = []
        for index, item in enumerate(items, start=1):
            node_id = self._item_id(item, f"insight.{index}")
            refs = item.get("references") if isinstance(item, dict) else None
            if refs is not None:
                deps = {self._resolve(ref) for ref in self._as_list(refs, node_id)}
            else:
                deps = self._mentioned_scores(_item_text(item))
            self._put(node_id, NodeType.INSIGHT, item, deps)
            ids.append(node_id)
        return ids

    def add_recommendations(self, recommendations: Any, insight_ids: list[str]) -> list[str]:
        items = self._as_list(recommendations, "recommendations")
        ids: list[str] = []
        for index, item in enumerate(items, start=1):
            node_id = self._item_id(item, f"recommendation.{index}")
            based_on = item.get("based_on") if isinstance(item, dict) else None
            if based_on is not None:
                deps = set()
                for ref in self._as_list(based_on, node_id):
                    if isinstance(ref, int) and not isinstance(ref, bool):
                        if not 1 <= ref <= len(insight_ids):
                            raise MalformedArtifact(
                                f"{node_id} is based on insight #{ref}, which does not exist",
                                node_id=node_id,
                            )
                        deps.add(insight_ids[ref - 1])
                    else:
                        deps.add(self._resolve(ref))
            else:
                deps = set(insight_ids)
            self._put(node_id, NodeType.RECOMMENDATION, item, deps)
            ids.append(node_id)
        return ids

    def add_summary(self, summary: Any, default_deps: list[str]) -> None:
        if not isinstance(summary, (str, dict)):
            raise MalformedArtifact("Section 'summary' must be text or a mapping")
        refs = summary.get("references") if isinstance(summary, dict) else None
        if refs is not None:
            deps = {self._resolve(ref) for ref in self._as_list(refs, SUMMARY_ID)}
        else:
            deps = set(default_deps)
        self._put(SUMMARY_ID, NodeType.SUMMARY, summary, deps)

    def add_context(self, context: Any) -> None:
        self._put(CONTEXT_ID, NodeType.CONTEXT, context, set())

    # ---- helpers ----

    def _put(self, node_id: str, node_type: NodeType, content: Any, deps: set[str]) -> None:
        if node_id in self._pending:
            raise MalformedArtifact(f"Duplicate node id: {node_id}", node_id=node_id)
        self._pending[node_id] = {"type": node_type, "content": content, "deps": deps}

    def _item_id(self, item: Any, default: str) -> str:
        if isinstance(item, str):
            if not item.strip():
                raise MalformedArtifact(f"{default} is empty", node_id=default)
            return default
        if isinstance(item, dict):
            if not _item_text(item):
                raise MalformedArtifact(f"{default} has no text", node_id=default)
            return str(item.get("id") or default)
        raise MalformedArtifact(f"{default} must be text or a mapping", node_id=default)

    def _resolve(self, ref: Any) -> str:
        ref_str = str(ref)
        if ref_str in self._pending:
            return ref_str
        label_match = self._labels.get(ref_str.lower())
        if label_match:
            return label_match
        # References may point forward to nodes declared later in the artifact;
        # those are checked once every node is known.
        return ref_str

    def _mentioned_scores(self, text: str) -> set[str]:
        lowered = text.lower()
        return {
            node_id
            for label, node_id in self._labels.items()
            if re.search(rf"\b{re.escape(label)}\b", lowered)
        }

    @staticmethod
    def _as_list(value: Any, section: str) -> list[Any]:
        if isinstance(value, (str, dict)) or not hasattr(value, "__iter__"):
            raise MalformedArtifact(f"'{section}' must be a list", section=section)
        return list(value)

    def _confidence_for(self, node_id: str, content: Any) -> float | None:
        value = self._node_confidence.get(node_id)
        if value is None and isinstance(content, dict):
            value = content.get("confidence")
        if value is None:
            value = self._default_confidence
        if value is None:
            return None
        if not isinstance(value, (int, float)) or not 0.0 <= float(value) <= 1.0:
            raise MalformedArtifact(
                f"Generator confidence for {node_id} must be between 0 and 1",
                node_id=node_id,
                value=value,
            )
        return float(value)

    def build(self) -> list[Node]:
        nodes: list[Node] = []
        for node_id, entry in self._pending.items():
            dangling = sorted(d for d in entry["deps"] if d not in self._pending)
            if dangling:
                raise MalformedArtifact(
                    f"{node_id} references unknown nodes: {', '.join(dangling)}",
                    node_id=node_id,
                    dangling=dangling,
                )
            node_type: NodeType = entry["type"]
            nodes.append(
                Node(
                    node_id=node_id,
                    node_type=node_type,
                    content=entry["content"],
                    depends_on=entry["deps"],
                    content_hash=Node.compute_hash(node_type, entry["content"]),
                    importance=node_type.importance,
                    generator_confidence=self._confidence_for(node_id, entry["content"]),
                )
            )
        return nodes


def _is_score_value(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    return isinstance(value, dict) and "score" in value


def _item_text(item: Any) -> str:
    if isinstance(item, str):
        return item
    if isinstance(item, dict):
        text = item.get("text") or item.get("description") or item.get("title") or ""
        return text if isinstance(text, str) else ""
    return ""
