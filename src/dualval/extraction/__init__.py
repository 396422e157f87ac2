"""
DualVal Extraction Layer

Artifact decomposition into nodes and their dependency graph.
"""

from dualval.extraction.extractor import ExtractionResult, NodeExtractor
from dualval.extraction.graph import DependencyGraph

__all__ = ["NodeExtractor", "ExtractionResult", "DependencyGraph"]
