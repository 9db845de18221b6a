"""Retrieval tools: vector store clients and search engines."""

from chat.tools.hybrid_search import HybridSearchEngine
from chat.tools.multi_stage_retrieval import MultiStageRetrieval
from chat.tools.vector_store import (
    EmbeddingClient,
    PineconeClient,
    PineconeSearchProvider,
    VectorSearchError,
    VectorSearchProvider,
)

__all__ = [
    "EmbeddingClient",
    "HybridSearchEngine",
    "MultiStageRetrieval",
    "PineconeClient",
    "PineconeSearchProvider",
    "VectorSearchError",
    "VectorSearchProvider",
]
