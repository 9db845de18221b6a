"""Pydantic models for the career chat retrieval core.

Chunks come back from the vector store with an open metadata map. The known
fields (content type, technologies, date, featured flag, source content id)
are typed; anything else the ingestion pipeline stored is kept as extra
fields on ``ChunkMetadata``.
"""

from __future__ import annotations

from datetime import date as date_type, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ChunkMetadata(BaseModel):
    """Metadata attached to an indexed knowledge-base chunk."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    content_type: Optional[str] = Field(
        default=None,
        alias="contentType",
        description="One of work, timeline, experiment, leadership, contact",
    )
    technologies: List[str] = Field(default_factory=list, description="Technology tags")
    date: Optional[str] = Field(default=None, description="ISO-8601 date of the source item")
    featured: bool = Field(default=False, description="Item is featured on the portfolio")
    content_id: Optional[str] = Field(default=None, alias="contentId", description="Source content id")
    chunk_index: Optional[int] = Field(default=None, alias="chunkIndex", description="Position within the source")

    @field_validator("technologies", mode="before")
    @classmethod
    def technologies_as_list(cls, v: Any) -> List[str]:
        """Anything that is not a list of tags counts as no tags."""
        if not isinstance(v, (list, tuple)):
            return []
        return [str(t) for t in v if t is not None]

    @field_validator("date", mode="before")
    @classmethod
    def date_as_iso(cls, v: Any) -> Optional[str]:
        if v is None or v == "":
            return None
        if isinstance(v, (datetime, date_type)):
            return v.isoformat()
        return str(v)

    @field_validator("featured", mode="before")
    @classmethod
    def featured_as_bool(cls, v: Any) -> bool:
        return bool(v)

    @property
    def extra(self) -> Dict[str, Any]:
        """Fields stored by the ingestion pipeline that have no typed slot."""
        return dict(self.model_extra or {})


class Chunk(BaseModel):
    """An indexed unit of knowledge-base text."""

    id: str = Field(description="Stable id: source content id + chunk index")
    text: str = Field(default="", description="Chunk text")
    embedding: List[float] = Field(default_factory=list, description="Not returned by search")
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)


class ScoredResult(BaseModel):
    """Output of a single retrieval call."""

    chunk: Chunk
    score: float = Field(description="Backend similarity score, not normalized across calls")


class SearchStage(str, Enum):
    """Which retrieval pass produced an enhanced result."""

    SEMANTIC = "SEMANTIC"
    LEXICAL = "LEXICAL"
    HYBRID = "HYBRID"


class RelevanceFactors(BaseModel):
    semantic: float = 0.0
    lexical: float = 0.0
    metadata: float = 0.0
    final: float = 0.0


class EnhancedSearchResult(ScoredResult):
    """A scored result annotated by the hybrid search engine."""

    search_stage: SearchStage
    relevance_factors: RelevanceFactors = Field(default_factory=RelevanceFactors)
    diversity_score: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="1 = maximally diverse relative to the result set it was computed against",
    )


class BoostFactors(BaseModel):
    recency: float = Field(ge=0.0)
    relevance: float = Field(ge=0.0)
    diversity: float = Field(ge=0.0)

    @property
    def total(self) -> float:
        return self.recency + self.relevance + self.diversity


class HybridSearchConfig(BaseModel):
    """Per-query configuration for the hybrid search engine.

    Rebuilt for every query; never cached.
    """

    semantic_weight: float
    lexical_weight: float
    top_k: int = Field(ge=1)
    metadata_filters: Dict[str, Any] = Field(default_factory=dict)
    boost_factors: BoostFactors
    query_expansion: bool = False
    diversity_threshold: float = 0.1


class RetrievalStage(str, Enum):
    """Escalation stages of the multi-stage pipeline, in escalation order."""

    COARSE = "COARSE"
    FINE = "FINE"
    SYNTHESIS = "SYNTHESIS"


class StageResult(BaseModel):
    """Outcome of one attempted retrieval stage."""

    stage: RetrievalStage
    chunks: List[ScoredResult] = Field(default_factory=list)
    total_found: int = 0
    relevance_score: float = Field(default=0.0, ge=0.0, le=1.0)
    processing_time: float = Field(default=0.0, description="Milliseconds")
    failed: bool = Field(default=False, description="The backend call for this stage raised")


class RetrievalResult(BaseModel):
    """Terminal output of the multi-stage pipeline for one query.

    Confidence below 0.5 signals a degraded or fallback answer.
    """

    best_stage: RetrievalStage
    stages: List[StageResult] = Field(default_factory=list)
    final_chunks: List[ScoredResult] = Field(default_factory=list)
    total_processing_time: float = Field(default=0.0, description="Milliseconds")
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    @property
    def degraded(self) -> bool:
        return self.confidence < 0.5


class HybridSearchMetrics(BaseModel):
    """Aggregate metrics from ``HybridSearchEngine.validate_performance``."""

    query_count: int = 0
    avg_hybrid_fraction: float = Field(default=0.0, description="Share of results tagged HYBRID")
    avg_high_quality_fraction: float = Field(default=0.0, description="Share of results with final > 0.7")
    avg_processing_time_ms: float = 0.0
    weight_distribution: Dict[str, float] = Field(
        default_factory=lambda: {"semantic": 0.0, "lexical": 0.0}
    )


class MultiStageMetrics(BaseModel):
    """Aggregate metrics from ``MultiStageRetrieval.validate_performance``."""

    query_count: int = 0
    avg_relevance_improvement: float = Field(
        default=0.0, description="Best stage relevance minus first stage relevance"
    )
    avg_best_relevance: float = 0.0
    avg_stages_used: float = 0.0
    avg_response_time_ms: float = 0.0
    avg_confidence: float = 0.0
