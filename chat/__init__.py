"""Career chat retrieval core.

This package contains the retrieval pipeline behind the "ask about my career"
chat feature of the portfolio site.

Main components:
- intent.py: Query intent classification and context size recommendation
- search_config.py: Intent-conditioned weights, metadata filters and boosts
- models.py: Pydantic models for chunks, search results and retrieval results
- tools/vector_store.py: Embedding and Pinecone vector search clients
- tools/hybrid_search.py: Semantic + lexical fusion with diversity re-ranking
- tools/multi_stage_retrieval.py: Coarse-to-fine staged retrieval
- evaluation/performance.py: Batch performance validation
"""

# Engines are built by the caller (chat handler composition root); nothing
# is instantiated at import time.
__all__ = []
