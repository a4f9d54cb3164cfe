"""
Semantic Clustering Module.

Two-stage agglomerative clustering of embedded events into cluster nodes.
"""

from mnemo.clustering.clustering_engine import (
    SemanticClusteringEngine,
    quality_level,
)

__all__ = [
    "SemanticClusteringEngine",
    "quality_level",
]
