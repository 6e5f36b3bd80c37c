"""
Knowledge plane: graph analysis over the dependency store and failure-pattern memory.

Serves the scheduler (impact ranking), the run report (cycles, diffs) and the context
handed to workers (learned failure patterns).
"""

from autodispatch.knowledge_plane.failure_mining import (
    DEFAULT_RULES,
    ClassificationRule,
    FailureCategory,
    FailureMatch,
    classify_output,
    normalize_message,
)
from autodispatch.knowledge_plane.graph_analyzer import (
    BeadsViewerAnalyzer,
    GraphAnalyzer,
    GraphAnalyzerUnavailable,
    GraphDiff,
    LocalGraphAnalyzer,
)
from autodispatch.knowledge_plane.learning_store import LearningStore, LearningStoreError

__all__ = [
    "DEFAULT_RULES",
    "BeadsViewerAnalyzer",
    "ClassificationRule",
    "FailureCategory",
    "FailureMatch",
    "GraphAnalyzer",
    "GraphAnalyzerUnavailable",
    "GraphDiff",
    "LearningStore",
    "LearningStoreError",
    "LocalGraphAnalyzer",
    "classify_output",
    "normalize_message",
]
