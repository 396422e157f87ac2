"""
Tests for the node extractor.

Tests:
1. Node ids, types and dependencies per section
2. Deterministic extraction (idempotence)
3. Malformed artifacts and dependency cycles
4. Generator confidence from metadata
"""

import pytest

from dualval.core.enums import ArtifactKind, NodeType
from dualval.core.exceptions import DependencyCycle, MalformedArtifact
from dualval.extraction.extractor import NodeExtractor


@pytest.fixture
def extractor():
    return NodeExtractor()


class TestNodeExtraction:
    """Tests for decomposition of well-formed artifacts."""

    def test_individual_artifact_nodes(self, extractor, sample_artifact):
        result = extractor.extract(sample_artifact, ArtifactKind.INDIVIDUAL)
        nodes = result.by_id()

        assert set(nodes) == {"score.openness", "score.conscientiousness", "insight.openness"}
        assert nodes["score.openness"].node_type == NodeType.SCORING
        assert nodes["insight.openness"].depends_on == ("score.openness",)
        assert result.artifact_id == "art-001"

    def test_executive_artifact_dependencies(self, extractor, executive_artifact):
        result = extractor.extract(executive_artifact, "executive")
        nodes = result.by_id()

        assert "score.ocean.openness" in nodes
        assert nodes["insight.1"].depends_on == ("score.ocean.openness",)
        assert nodes["insight.2"].depends_on == ("score.ocean.conscientiousness",)
        assert nodes["recommendation.1"].depends_on == ("insight.1",)
        assert set(nodes["summary"].depends_on) == {
            "insight.1",
            "insight.2",
            "recommendation.1",
            "recommendation.2",
        }

    def test_importance_follows_node_type(self, extractor, executive_artifact):
        nodes = extractor.extract(executive_artifact, ArtifactKind.EXECUTIVE).by_id()

        assert nodes["score.ocean.neuroticism"].importance == 10
        assert nodes["recommendation.1"].importance == 9
        assert nodes["summary"].importance == 7

    def test_generator_confidence_from_metadata(self, extractor, executive_artifact):
        executive_artifact["metadata"]["node_confidence"] = {"summary": 0.6}
        nodes = extractor.extract(executive_artifact, ArtifactKind.EXECUTIVE).by_id()

        assert nodes["summary"].generator_confidence == 0.6
        assert nodes["insight.1"].generator_confidence == 0.9

    def test_context_section_becomes_node(self, extractor, sample_artifact):
        sample_artifact["context"] = {"audience": "team leads"}
        nodes = extractor.extract(sample_artifact, ArtifactKind.INDIVIDUAL).by_id()

        assert nodes["context"].node_type == NodeType.CONTEXT
        assert nodes["context"].depends_on == ()

    def test_artifact_id_defaults_to_hash(self, extractor, sample_artifact):
        del sample_artifact["artifact_id"]
        result = extractor.extract(sample_artifact, ArtifactKind.INDIVIDUAL)

        assert result.artifact_id == NodeExtractor.artifact_hash(sample_artifact)
        assert len(result.artifact_id) == 16


class TestIdempotence:
    """Re-extracting an unchanged artifact yields identical ids and hashes."""

    def test_same_ids_and_hashes(self, extractor, executive_artifact):
        first = extractor.extract(executive_artifact, ArtifactKind.EXECUTIVE)
        second = extractor.extract(executive_artifact, ArtifactKind.EXECUTIVE)

        assert [n.node_id for n in first.nodes] == [n.node_id for n in second.nodes]
        assert [n.content_hash for n in first.nodes] == [n.content_hash for n in second.nodes]

    def test_content_change_changes_only_that_hash(self, extractor, sample_artifact):
        before = extractor.extract(sample_artifact, ArtifactKind.INDIVIDUAL).by_id()
        sample_artifact["insights"][0]["text"] = "You like exploring new ideas."
        after = extractor.extract(sample_artifact, ArtifactKind.INDIVIDUAL).by_id()

        assert before["insight.openness"].content_hash != after["insight.openness"].content_hash
        assert before["score.openness"].content_hash == after["score.openness"].content_hash


class TestMalformedArtifacts:
    """Extraction errors are fatal and explicit."""

    def test_missing_required_sections(self, extractor, executive_artifact):
        del executive_artifact["summary"]

        with pytest.raises(MalformedArtifact) as exc_info:
            extractor.extract(executive_artifact, ArtifactKind.EXECUTIVE)

        assert exc_info.value.missing_sections == ["summary"]

    def test_not_a_mapping(self, extractor):
        with pytest.raises(MalformedArtifact):
            extractor.extract(["not", "a", "mapping"], ArtifactKind.INDIVIDUAL)

    def test_unknown_kind(self, extractor, sample_artifact):
        with pytest.raises(MalformedArtifact):
            extractor.extract(sample_artifact, "quarterly")

    def test_dangling_reference(self, extractor, sample_artifact):
        sample_artifact["insights"][0]["references"] = ["agreeableness"]

        with pytest.raises(MalformedArtifact, match="unknown nodes"):
            extractor.extract(sample_artifact, ArtifactKind.INDIVIDUAL)

    def test_recommendation_based_on_missing_insight(self, extractor, executive_artifact):
        executive_artifact["recommendations"][0]["based_on"] = [7]

        with pytest.raises(MalformedArtifact, match="does not exist"):
            extractor.extract(executive_artifact, ArtifactKind.EXECUTIVE)

    def test_generator_confidence_out_of_range(self, extractor, sample_artifact):
        sample_artifact["metadata"] = {"confidence": 1.5}

        with pytest.raises(MalformedArtifact):
            extractor.extract(sample_artifact, ArtifactKind.INDIVIDUAL)

    def test_dependency_cycle(self, extractor, sample_artifact):
        sample_artifact["insights"] = [
            {"id": "a", "text": "First insight.", "references": ["b"]},
            {"id": "b", "text": "Second insight.", "references": ["a"]},
        ]

        with pytest.raises(DependencyCycle) as exc_info:
            extractor.extract(sample_artifact, ArtifactKind.INDIVIDUAL)

        assert set(exc_info.value.cycle) == {"a", "b"}
