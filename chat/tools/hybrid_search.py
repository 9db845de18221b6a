"""Hybrid semantic + lexical search over the career knowledge base.

Two retrieval passes run concurrently against the same vector store: a
semantic pass scored by vector similarity and an over-fetched lexical pass
re-scored by query term overlap. Results are merged by chunk id, reordered to
prefer diverse items, boosted by metadata and diversity, then cut to top_k.
If anything in that path fails the engine falls back to one plain semantic
query.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

import structlog

from chat.intent import ContextSizer, IntentClassifier, classify_intent, get_context_size_config
from chat.models import (
    EnhancedSearchResult,
    HybridSearchConfig,
    HybridSearchMetrics,
    RelevanceFactors,
    ScoredResult,
    SearchStage,
)
from chat.search_config import build_search_config
from chat.tools.vector_store import VectorSearchProvider
from libs.common.settings import get_settings

logger = structlog.get_logger(__name__)

DAYS_PER_YEAR = 365
RECENCY_HORIZON_YEARS = 5
FEATURED_BONUS = 0.1
PHRASE_MATCH_BONUS = 0.3
HIGH_QUALITY_SCORE = 0.7
FALLBACK_DIVERSITY = 0.5


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def metadata_score(
    result: ScoredResult,
    config: HybridSearchConfig,
    now: Optional[datetime] = None,
) -> float:
    """Score a hit's metadata: recency, featured flag and technology tags.

    Missing fields contribute nothing. Result is clamped to [0, 1].
    """
    metadata = result.chunk.metadata
    score = 0.0

    published = _parse_date(metadata.date)
    if published is not None:
        now = now or datetime.now(timezone.utc)
        years = (now - published).total_seconds() / (86400 * DAYS_PER_YEAR)
        score += max(0.0, 1 - years / RECENCY_HORIZON_YEARS) * config.boost_factors.recency

    if metadata.featured:
        score += FEATURED_BONUS

    if metadata.technologies:
        score += min(0.2, len(metadata.technologies) * 0.05)

    return max(0.0, min(1.0, score))


def diversity_score(result: ScoredResult, result_set: Sequence[ScoredResult]) -> float:
    """How different ``result`` is from the rest of ``result_set`` (1 = fully)."""
    metadata = result.chunk.metadata
    score = 1.0

    same_type = sum(1 for r in result_set if r.chunk.metadata.content_type == metadata.content_type)
    if same_type > 1:
        score -= 0.1 * (same_type - 1)

    if metadata.technologies:
        own = set(metadata.technologies)
        overlap = sum(
            len(own.intersection(r.chunk.metadata.technologies))
            for r in result_set
            if r is not result
        )
        score -= min(0.3, overlap * 0.05)

    return max(0.0, min(1.0, score))


def lexical_score(query: str, text: str) -> float:
    """Share of query tokens present in ``text``, plus a bonus for the whole phrase."""
    query_lower = (query or "").lower()
    words = query_lower.split()
    if not words:
        return 0.0

    text_lower = (text or "").lower()
    score = sum(1 / len(words) for word in words if word in text_lower)
    if query_lower.strip() and query_lower in text_lower:
        score += PHRASE_MATCH_BONUS
    return score


def apply_diversity_filter(
    results: List[EnhancedSearchResult],
    threshold: float,
) -> List[EnhancedSearchResult]:
    """Move diverse results to the front without dropping any.

    First pass keeps results that bring a new content type or only unseen
    technologies, plus anything scoring above ``threshold``. Second pass
    appends everything else in its original order.
    """
    selected: List[EnhancedSearchResult] = []
    seen_types = set()
    seen_tech = set()

    for result in results:
        metadata = result.chunk.metadata
        new_type = metadata.content_type not in seen_types
        new_tech = not any(tech in seen_tech for tech in metadata.technologies)

        if new_type or new_tech:
            selected.append(result)
            seen_types.add(metadata.content_type)
            seen_tech.update(metadata.technologies)
        elif result.relevance_factors.final > threshold:
            selected.append(result)

    selected_ids = {id(r) for r in selected}
    remaining = [r for r in results if id(r) not in selected_ids]
    selected.extend(remaining[: len(results) - len(selected)])
    return selected


class HybridSearchEngine:
    """Fuses semantic and lexical retrieval into one ranked, diverse list.

    The engine holds no per-query state; one instance can serve concurrent
    searches.
    """

    def __init__(
        self,
        vector_search: VectorSearchProvider,
        classify: IntentClassifier = classify_intent,
        context_sizer: ContextSizer = get_context_size_config,
        semantic_min_score: Optional[float] = None,
        lexical_min_score: Optional[float] = None,
        fallback_min_score: Optional[float] = None,
    ):
        settings = get_settings()
        self.vector_search = vector_search
        self.classify = classify
        self.context_sizer = context_sizer
        self.semantic_min_score = (
            settings.semantic_min_score if semantic_min_score is None else semantic_min_score
        )
        self.lexical_min_score = (
            settings.lexical_min_score if lexical_min_score is None else lexical_min_score
        )
        self.fallback_min_score = (
            settings.fallback_min_score if fallback_min_score is None else fallback_min_score
        )

    def build_config(self, query: str, top_k: Optional[int] = None) -> HybridSearchConfig:
        return build_search_config(
            query,
            classify=self.classify,
            context_sizer=self.context_sizer,
            top_k=top_k,
        )

    async def _semantic_search(
        self,
        query: str,
        config: HybridSearchConfig,
        namespace: Optional[str],
    ) -> List[EnhancedSearchResult]:
        hits = await self.vector_search.search(
            query,
            top_k=config.top_k,
            filter=config.metadata_filters,
            min_score=self.semantic_min_score,
            namespace=namespace,
        )
        now = datetime.now(timezone.utc)
        return [
            EnhancedSearchResult(
                chunk=hit.chunk,
                score=hit.score,
                search_stage=SearchStage.SEMANTIC,
                relevance_factors=RelevanceFactors(
                    semantic=hit.score,
                    lexical=0.0,
                    metadata=metadata_score(hit, config, now),
                    final=hit.score * config.semantic_weight,
                ),
                diversity_score=diversity_score(hit, hits),
            )
            for hit in hits
        ]

    async def _lexical_search(
        self,
        query: str,
        config: HybridSearchConfig,
        namespace: Optional[str],
    ) -> List[EnhancedSearchResult]:
        # Over-fetch so term-overlap reranking has candidates to choose from
        hits = await self.vector_search.search(
            query,
            top_k=config.top_k * 2,
            filter=config.metadata_filters,
            min_score=self.lexical_min_score,
            namespace=namespace,
        )
        now = datetime.now(timezone.utc)
        results = []
        for hit in hits:
            lexical = lexical_score(query, hit.chunk.text)
            results.append(
                EnhancedSearchResult(
                    chunk=hit.chunk,
                    score=hit.score,
                    search_stage=SearchStage.LEXICAL,
                    relevance_factors=RelevanceFactors(
                        semantic=hit.score,
                        lexical=lexical,
                        metadata=metadata_score(hit, config, now),
                        final=lexical * config.lexical_weight,
                    ),
                    diversity_score=diversity_score(hit, hits),
                )
            )

        results.sort(key=lambda r: r.relevance_factors.lexical, reverse=True)
        return results[: config.top_k]

    def _merge_and_rank(
        self,
        semantic_results: List[EnhancedSearchResult],
        lexical_results: List[EnhancedSearchResult],
        config: HybridSearchConfig,
    ) -> List[EnhancedSearchResult]:
        merged: Dict[str, EnhancedSearchResult] = {}
        for result in semantic_results:
            merged.setdefault(result.chunk.id, result)

        for result in lexical_results:
            existing = merged.get(result.chunk.id)
            if existing is not None:
                factors = existing.relevance_factors
                factors.final = (
                    factors.semantic * config.semantic_weight
                    + result.relevance_factors.lexical * config.lexical_weight
                )
                factors.lexical = result.relevance_factors.lexical
                existing.search_stage = SearchStage.HYBRID
            else:
                result.search_stage = SearchStage.HYBRID
                result.relevance_factors.final = result.relevance_factors.lexical * config.lexical_weight
                merged[result.chunk.id] = result

        ranked = list(merged.values())
        if config.diversity_threshold > 0:
            ranked = apply_diversity_filter(ranked, config.diversity_threshold)

        boosts = config.boost_factors
        for result in ranked:
            result.relevance_factors.final += (
                result.relevance_factors.metadata * boosts.relevance
                + result.diversity_score * boosts.diversity
            )

        ranked.sort(key=lambda r: r.relevance_factors.final, reverse=True)
        return ranked[: config.top_k]

    async def search(
        self,
        query: str,
        top_k: Optional[int] = None,
        min_score: Optional[float] = None,
        namespace: Optional[str] = None,
    ) -> List[EnhancedSearchResult]:
        """Run a hybrid search for ``query``.

        Args:
            query: Raw user query
            top_k: Overrides the intent-derived result count
            min_score: Similarity floor for the fallback search only
            namespace: Vector store namespace for every backend call

        Returns:
            Results sorted by final score, unique by chunk id; empty when
            even the fallback fails
        """
        config = self.build_config(query, top_k=top_k)
        start_time = time.time()

        semantic_task = asyncio.create_task(self._semantic_search(query, config, namespace))
        lexical_task = asyncio.create_task(self._lexical_search(query, config, namespace))
        try:
            semantic_results, lexical_results = await asyncio.gather(semantic_task, lexical_task)

            final_results = self._merge_and_rank(semantic_results, lexical_results, config)

            logger.info(
                "Hybrid search completed",
                elapsed_ms=round((time.time() - start_time) * 1000, 2),
                query=query[:100],
                semantic_weight=config.semantic_weight,
                lexical_weight=config.lexical_weight,
                top_k=config.top_k,
                semantic_count=len(semantic_results),
                lexical_count=len(lexical_results),
                final_count=len(final_results),
            )
            return final_results

        except Exception as e:
            for task in (semantic_task, lexical_task):
                task.cancel()
            logger.warning("Hybrid search failed, falling back to semantic search", error=str(e))
            return await self._fallback_search(query, config, min_score, namespace, cause=e)

    async def _fallback_search(
        self,
        query: str,
        config: HybridSearchConfig,
        min_score: Optional[float],
        namespace: Optional[str],
        cause: Optional[Exception] = None,
    ) -> List[EnhancedSearchResult]:
        try:
            hits = await self.vector_search.search(
                query,
                top_k=config.top_k,
                min_score=self.fallback_min_score if min_score is None else min_score,
                namespace=namespace,
            )
        except Exception as e:
            logger.error(
                "Fallback semantic search failed",
                error=str(e),
                hybrid_error=str(cause) if cause is not None else None,
                query=query[:100],
            )
            return []

        return [
            EnhancedSearchResult(
                chunk=hit.chunk,
                score=hit.score,
                search_stage=SearchStage.SEMANTIC,
                relevance_factors=RelevanceFactors(
                    semantic=hit.score,
                    lexical=0.0,
                    metadata=0.0,
                    final=hit.score,
                ),
                diversity_score=FALLBACK_DIVERSITY,
            )
            for hit in hits
        ]

    async def validate_performance(self, queries: Sequence[str]) -> HybridSearchMetrics:
        """Run ``queries`` serially and average quality and latency metrics."""
        if not queries:
            return HybridSearchMetrics()

        hybrid_fractions = []
        high_quality_fractions = []
        times_ms = []
        semantic_weights = []
        lexical_weights = []

        for query in queries:
            start_time = time.time()
            results = await self.search(query)
            times_ms.append((time.time() - start_time) * 1000)

            if results:
                hybrid = sum(1 for r in results if r.search_stage == SearchStage.HYBRID)
                high_quality = sum(1 for r in results if r.relevance_factors.final > HIGH_QUALITY_SCORE)
                hybrid_fractions.append(hybrid / len(results))
                high_quality_fractions.append(high_quality / len(results))
            else:
                hybrid_fractions.append(0.0)
                high_quality_fractions.append(0.0)

            config = self.build_config(query)
            semantic_weights.append(config.semantic_weight)
            lexical_weights.append(config.lexical_weight)

        count = len(queries)
        metrics = HybridSearchMetrics(
            query_count=count,
            avg_hybrid_fraction=sum(hybrid_fractions) / count,
            avg_high_quality_fraction=sum(high_quality_fractions) / count,
            avg_processing_time_ms=sum(times_ms) / count,
            weight_distribution={
                "semantic": round(sum(semantic_weights) / count, 2),
                "lexical": round(sum(lexical_weights) / count, 2),
            },
        )
        logger.info("Hybrid search validation completed", **metrics.model_dump(exclude={"weight_distribution"}))
        return metrics
