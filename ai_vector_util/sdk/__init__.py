"""
SDK for AI Vector Util.

Provides programmatic access to embedding generation and vector search.
"""

from .embedders import Embedder, OpenAIEmbedder
from .facade import (
    HealthStatus,
    SimilarityResult,
    VectorServiceFacade,
    build_facade,
    identity_from_environment,
)
from .stores import SQLiteVectorStore, VectorStore

__all__ = [
    "Embedder",
    "HealthStatus",
    "OpenAIEmbedder",
    "SQLiteVectorStore",
    "SimilarityResult",
    "VectorServiceFacade",
    "VectorStore",
    "build_facade",
    "identity_from_environment",
]
