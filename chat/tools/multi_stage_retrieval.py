"""Coarse-to-fine multi-stage retrieval.

The query intent picks a plan of one to three escalating stages; each stage
is a plain semantic search with its own top_k and similarity floor. Every
planned stage runs (unless early stopping is switched on) and the stage with
the best relevance wins. Stage failures are recorded, never raised.
"""

from __future__ import annotations

import time
from typing import Dict, List, Optional, Sequence, Tuple

import structlog
from pydantic import BaseModel, Field

from chat.intent import (
    ContextSizer,
    IntentClassifier,
    QueryIntent,
    classify_intent,
    get_context_size_config,
)
from chat.models import (
    MultiStageMetrics,
    RetrievalResult,
    RetrievalStage,
    ScoredResult,
    StageResult,
)
from chat.tools.vector_store import VectorSearchProvider
from libs.common.settings import get_settings

logger = structlog.get_logger(__name__)


class StageConfig(BaseModel):
    """One step of a retrieval plan."""

    stage: RetrievalStage
    top_k: int = Field(ge=1)
    min_score: float = Field(ge=0.0, le=1.0)
    expansion_factors: List[str] = Field(default_factory=list)
    diversity_boost: bool = False


# Within a plan, later stages never ask for fewer candidates or a stricter floor.
STAGE_PLANS: Dict[QueryIntent, List[StageConfig]] = {
    QueryIntent.FACTUAL: [
        StageConfig(stage=RetrievalStage.FINE, top_k=3, min_score=0.75),
    ],
    QueryIntent.CASUAL: [
        StageConfig(stage=RetrievalStage.FINE, top_k=3, min_score=0.7),
    ],
    QueryIntent.EXPLORATION: [
        StageConfig(
            stage=RetrievalStage.COARSE, top_k=4, min_score=0.75,
            expansion_factors=["detailed", "process"], diversity_boost=True,
        ),
        StageConfig(
            stage=RetrievalStage.FINE, top_k=8, min_score=0.6,
            expansion_factors=["related", "context", "methodology"], diversity_boost=True,
        ),
    ],
    QueryIntent.COMPARISON: [
        StageConfig(
            stage=RetrievalStage.COARSE, top_k=5, min_score=0.7,
            expansion_factors=["contrast", "versus"], diversity_boost=True,
        ),
        StageConfig(
            stage=RetrievalStage.FINE, top_k=10, min_score=0.55,
            expansion_factors=["different", "similar", "between"], diversity_boost=True,
        ),
    ],
    QueryIntent.SYNTHESIS: [
        StageConfig(
            stage=RetrievalStage.COARSE, top_k=5, min_score=0.7,
            expansion_factors=["abilities", "competencies"],
        ),
        StageConfig(
            stage=RetrievalStage.FINE, top_k=10, min_score=0.5,
            expansion_factors=["achievements", "projects", "results"],
        ),
        StageConfig(
            stage=RetrievalStage.SYNTHESIS, top_k=20, min_score=0.3,
            expansion_factors=["background", "overview", "comprehensive"], diversity_boost=True,
        ),
    ],
}

# First synonym is used so expanded queries are reproducible.
EXPANSION_SYNONYMS: Dict[str, str] = {
    "related": "similar",
    "context": "background",
    "detailed": "specific",
    "process": "method",
    "methodology": "framework",
    "contrast": "difference",
    "versus": "compared to",
    "different": "distinct",
    "similar": "comparable",
    "between": "among",
    "abilities": "skills",
    "competencies": "expertise",
    "achievements": "accomplishments",
    "projects": "work",
    "results": "outcomes",
    "background": "history",
    "overview": "summary",
    "comprehensive": "complete",
}

FALLBACK_TOP_K = 5
FALLBACK_MIN_SCORE = 0.7
FALLBACK_CONFIDENCE = 0.3
RELEVANCE_TOP_N = 3
EARLY_STOP_MIN_HITS = 3


def get_stage_plan(intent: QueryIntent) -> List[StageConfig]:
    try:
        return STAGE_PLANS[QueryIntent(intent)]
    except (KeyError, ValueError):
        return STAGE_PLANS[QueryIntent.CASUAL]


def expand_query(query: str, expansion_factors: Sequence[str]) -> str:
    """Append one synonym per known expansion factor to ``query``."""
    synonyms = [EXPANSION_SYNONYMS[f] for f in expansion_factors if f in EXPANSION_SYNONYMS]
    if not synonyms:
        return query
    return " ".join([query, *synonyms])


def apply_diversity_ordering(chunks: List[ScoredResult]) -> List[ScoredResult]:
    """Put the best chunk of every distinct source first, keeping score order within each group."""
    if len(chunks) <= 1:
        return chunks

    leaders: List[ScoredResult] = []
    rest: List[ScoredResult] = []
    seen_sources = set()
    for chunk in chunks:
        source = chunk.chunk.metadata.content_id or chunk.chunk.id
        if source in seen_sources:
            rest.append(chunk)
        else:
            seen_sources.add(source)
            leaders.append(chunk)
    return leaders + rest


def relevance_score(chunks: Sequence[ScoredResult]) -> float:
    """Mean of the top scores, clamped to [0, 1]. Zero for no chunks."""
    if not chunks:
        return 0.0
    top = sorted((c.score for c in chunks), reverse=True)[:RELEVANCE_TOP_N]
    return max(0.0, min(1.0, sum(top) / len(top)))


def calculate_confidence(best: StageResult, top_k: int) -> float:
    """Blend best-stage relevance with how full its result list was."""
    if best.failed or best.total_found == 0:
        return 0.0
    coverage = min(1.0, best.total_found / max(1, top_k))
    return max(0.0, min(1.0, 0.8 * best.relevance_score + 0.2 * coverage))


class MultiStageRetrieval:
    """Intent-driven escalation from narrow to wide semantic retrieval."""

    def __init__(
        self,
        vector_search: VectorSearchProvider,
        classify: IntentClassifier = classify_intent,
        context_sizer: ContextSizer = get_context_size_config,
        early_stop: Optional[bool] = None,
        early_stop_relevance: Optional[float] = None,
    ):
        settings = get_settings()
        self.vector_search = vector_search
        self.classify = classify
        self.context_sizer = context_sizer
        self.early_stop = settings.multi_stage_early_stop if early_stop is None else early_stop
        self.early_stop_relevance = (
            settings.early_stop_relevance if early_stop_relevance is None else early_stop_relevance
        )

    def plan(self, query: str) -> List[StageConfig]:
        return get_stage_plan(self.classify(query))

    async def _execute_stage(self, query: str, config: StageConfig, expand: bool) -> StageResult:
        start_time = time.time()
        stage_query = expand_query(query, config.expansion_factors) if expand else query

        try:
            chunks = await self.vector_search.search(
                stage_query,
                top_k=config.top_k,
                min_score=config.min_score,
            )
        except Exception as e:
            elapsed_ms = (time.time() - start_time) * 1000
            logger.warning(
                "Retrieval stage failed",
                stage=config.stage.value,
                error=str(e),
                elapsed_ms=round(elapsed_ms, 2),
            )
            return StageResult(stage=config.stage, processing_time=elapsed_ms, failed=True)

        if config.diversity_boost:
            chunks = apply_diversity_ordering(chunks)

        result = StageResult(
            stage=config.stage,
            chunks=chunks,
            total_found=len(chunks),
            relevance_score=relevance_score(chunks),
            processing_time=(time.time() - start_time) * 1000,
        )
        logger.info(
            "Retrieval stage completed",
            stage=config.stage.value,
            top_k=config.top_k,
            min_score=config.min_score,
            total_found=result.total_found,
            relevance=round(result.relevance_score, 3),
            elapsed_ms=round(result.processing_time, 2),
        )
        return result

    async def _fallback_search(self, query: str) -> Tuple[StageResult, float]:
        start_time = time.time()
        try:
            chunks = await self.vector_search.search(
                query, top_k=FALLBACK_TOP_K, min_score=FALLBACK_MIN_SCORE
            )
        except Exception as e:
            logger.error("Fallback retrieval failed", error=str(e))
            return (
                StageResult(
                    stage=RetrievalStage.FINE,
                    processing_time=(time.time() - start_time) * 1000,
                    failed=True,
                ),
                0.0,
            )

        stage = StageResult(
            stage=RetrievalStage.FINE,
            chunks=chunks,
            total_found=len(chunks),
            relevance_score=relevance_score(chunks),
            processing_time=(time.time() - start_time) * 1000,
        )
        return stage, FALLBACK_CONFIDENCE

    async def search(self, query: str) -> RetrievalResult:
        """Run the stage plan for ``query`` and return the best stage's chunks.

        Never raises: failed stages are recorded with no chunks, and if every
        stage fails a single fallback search decides the result.
        """
        total_start = time.time()
        intent = self.classify(query)
        plan = get_stage_plan(intent)
        expand = self.context_sizer(query, intent).query_expansion

        stages: List[StageResult] = []
        for config in plan:
            result = await self._execute_stage(query, config, expand)
            stages.append(result)

            if (
                self.early_stop
                and result.relevance_score >= self.early_stop_relevance
                and result.total_found >= EARLY_STOP_MIN_HITS
            ):
                logger.info("Early stop after strong stage", stage=config.stage.value)
                break

        if all(s.failed for s in stages):
            logger.warning("All retrieval stages failed, using fallback search", intent=intent.value)
            fallback_stage, confidence = await self._fallback_search(query)
            return RetrievalResult(
                best_stage=fallback_stage.stage,
                stages=[fallback_stage],
                final_chunks=fallback_stage.chunks,
                total_processing_time=(time.time() - total_start) * 1000,
                confidence=confidence,
            )

        best_index = 0
        for i, stage in enumerate(stages):
            if stage.relevance_score > stages[best_index].relevance_score:
                best_index = i
        best = stages[best_index]

        confidence = calculate_confidence(best, plan[best_index].top_k)
        total_time = sum(s.processing_time for s in stages)

        logger.info(
            "Multi-stage retrieval completed",
            intent=intent.value,
            stages_run=len(stages),
            best_stage=best.stage.value,
            confidence=round(confidence, 3),
            total_found=best.total_found,
            elapsed_ms=round(total_time, 2),
        )
        return RetrievalResult(
            best_stage=best.stage,
            stages=stages,
            final_chunks=best.chunks,
            total_processing_time=total_time,
            confidence=confidence,
        )

    async def validate_performance(self, queries: Sequence[str]) -> MultiStageMetrics:
        """Run ``queries`` serially and average stage usage, relevance and latency.

        Relevance improvement is measured against the first stage of each
        plan, i.e. a single-stage baseline.
        """
        if not queries:
            return MultiStageMetrics()

        improvements = []
        best_relevances = []
        stages_used = []
        times_ms = []
        confidences = []

        for query in queries:
            result = await self.search(query)
            best_relevance = max((s.relevance_score for s in result.stages), default=0.0)
            baseline = result.stages[0].relevance_score if result.stages else 0.0

            improvements.append(best_relevance - baseline)
            best_relevances.append(best_relevance)
            stages_used.append(len(result.stages))
            times_ms.append(result.total_processing_time)
            confidences.append(result.confidence)

        count = len(queries)
        metrics = MultiStageMetrics(
            query_count=count,
            avg_relevance_improvement=sum(improvements) / count,
            avg_best_relevance=sum(best_relevances) / count,
            avg_stages_used=sum(stages_used) / count,
            avg_response_time_ms=sum(times_ms) / count,
            avg_confidence=sum(confidences) / count,
        )
        logger.info("Multi-stage validation completed", **metrics.model_dump())
        return metrics
