"""
Tests for the hybrid semantic + lexical search engine.

Covers the scoring helpers, merge/rerank behaviour, the concurrent retrieval
passes, fallback on backend failure and the validation run.
"""

import asyncio
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from chat.intent import ContextSizeConfig, QueryIntent
from chat.models import (
    BoostFactors,
    EnhancedSearchResult,
    HybridSearchConfig,
    HybridSearchMetrics,
    RelevanceFactors,
    SearchStage,
)
from chat.tools.hybrid_search import (
    HybridSearchEngine,
    apply_diversity_filter,
    diversity_score,
    lexical_score,
    metadata_score,
)
from chat.tools.vector_store import VectorSearchError

NOW = datetime(2026, 10, 19, tzinfo=timezone.utc)


def _config(**overrides) -> HybridSearchConfig:
    values = dict(
        semantic_weight=0.6,
        lexical_weight=0.4,
        top_k=3,
        boost_factors=BoostFactors(recency=0.2, relevance=0.6, diversity=0.2),
    )
    values.update(overrides)
    return HybridSearchConfig(**values)


def _enhanced(result, final: float) -> EnhancedSearchResult:
    return EnhancedSearchResult(
        chunk=result.chunk,
        score=result.score,
        search_stage=SearchStage.SEMANTIC,
        relevance_factors=RelevanceFactors(semantic=result.score, final=final),
    )


@pytest.fixture
def engine_factory():
    """Engine with the intent and context size pinned so tests control top_k."""

    def build(provider, intent=QueryIntent.FACTUAL, chunk_count=3, diversity=False):
        return HybridSearchEngine(
            provider,
            classify=lambda q: intent,
            context_sizer=lambda q, intent=None: ContextSizeConfig(
                max_tokens=600, chunk_count=chunk_count, diversity_boost=diversity
            ),
        )

    return build


class TestMetadataScore:
    """Test recency/featured/technology scoring."""

    def test_combines_all_signals(self, result_factory):
        result = result_factory(
            "c", 0.9, date="2024-10-19", featured=True, technologies=["react", "typescript"]
        )

        # two years old: (1 - 2/5) * 0.2 recency, + 0.1 featured, + 2 * 0.05 technologies
        assert metadata_score(result, _config(), now=NOW) == pytest.approx(0.12 + 0.1 + 0.1, abs=1e-3)

    def test_missing_metadata_scores_zero(self, result_factory):
        result = result_factory("c", 0.9, content_type=None)
        assert metadata_score(result, _config(), now=NOW) == 0.0

    def test_technology_contribution_is_capped(self, result_factory):
        result = result_factory("c", 0.9, technologies=[f"t{i}" for i in range(10)])
        assert metadata_score(result, _config(), now=NOW) == pytest.approx(0.2)

    def test_unparseable_date_is_ignored(self, result_factory):
        result = result_factory("c", 0.9, date="sometime in spring")
        assert metadata_score(result, _config(), now=NOW) == 0.0

    def test_old_items_get_no_recency(self, result_factory):
        result = result_factory("c", 0.9, date="2015-01-01T00:00:00Z")
        assert metadata_score(result, _config(), now=NOW) == 0.0


class TestDiversityScore:
    """Test diversity scoring against a result set."""

    def test_penalizes_shared_type_and_technologies(self, result_factory):
        a = result_factory("a", 0.9, content_type="work", technologies=["react", "typescript"])
        b = result_factory("b", 0.8, content_type="work", technologies=["react"])
        c = result_factory("c", 0.7, content_type="work")

        # three of a kind: -0.2; one shared tag with b: -0.05
        assert diversity_score(a, [a, b, c]) == pytest.approx(0.75)

    def test_unique_result_is_fully_diverse(self, result_factory):
        a = result_factory("a", 0.9, content_type="work")
        b = result_factory("b", 0.8, content_type="timeline")
        assert diversity_score(a, [a, b]) == 1.0

    def test_clamped_at_zero(self, result_factory):
        results = [result_factory(str(i), 0.5, technologies=["react"]) for i in range(20)]
        for result in results:
            assert diversity_score(result, results) == 0.0


class TestLexicalScore:
    """Test term-overlap scoring."""

    def test_all_terms_present(self):
        assert lexical_score("react portal", "Dealer portal built with React") == pytest.approx(1.0)

    def test_phrase_bonus(self):
        assert lexical_score("dealer portal", "The Dealer Portal redesign") == pytest.approx(1.3)

    def test_partial_match(self):
        assert lexical_score("react vue", "React only") == pytest.approx(0.5)

    def test_empty_query(self):
        assert lexical_score("", "anything") == 0.0


class TestDiversityFilter:
    """Test diverse-first reordering."""

    def test_reorders_without_dropping(self, result_factory):
        a = _enhanced(result_factory("a", 0.9, content_type="work", technologies=["react"]), final=0.9)
        b = _enhanced(result_factory("b", 0.8, content_type="work", technologies=["react"]), final=0.05)
        c = _enhanced(result_factory("c", 0.7, content_type="timeline"), final=0.2)
        d = _enhanced(result_factory("d", 0.6, content_type="work", technologies=["react", "node"]), final=0.05)

        filtered = apply_diversity_filter([a, b, c, d], threshold=0.1)

        assert [r.chunk.id for r in filtered] == ["a", "c", "b", "d"]

    def test_high_scoring_repeats_kept_in_first_pass(self, result_factory):
        a = _enhanced(result_factory("a", 0.9, content_type="work", technologies=["react"]), final=0.9)
        b = _enhanced(result_factory("b", 0.8, content_type="work", technologies=["react"]), final=0.5)
        c = _enhanced(result_factory("c", 0.7, content_type="timeline"), final=0.2)

        filtered = apply_diversity_filter([a, b, c], threshold=0.3)

        assert [r.chunk.id for r in filtered] == ["a", "b", "c"]

    def test_empty_input(self):
        assert apply_diversity_filter([], threshold=0.3) == []


class TestHybridSearchEngine:
    """Test the full search path against an in-memory provider."""

    @pytest.mark.asyncio
    async def test_issues_semantic_and_lexical_passes(self, fake_search, engine_factory):
        engine = engine_factory(fake_search, chunk_count=3)

        await engine.search("dealer portal", namespace="career")

        assert len(fake_search.calls) == 2
        by_min_score = {call["min_score"]: call for call in fake_search.calls}
        assert by_min_score[0.5]["top_k"] == 3
        assert by_min_score[0.3]["top_k"] == 6
        assert all(call["namespace"] == "career" for call in fake_search.calls)
        assert all(call["filter"] == {"contentType": {"$in": ["work", "timeline"]}} for call in fake_search.calls)

    @pytest.mark.asyncio
    async def test_merges_passes_into_hybrid_results(self, fake_search, engine_factory):
        engine = engine_factory(fake_search, chunk_count=3)

        results = await engine.search("dealer portal")

        assert len(results) == 3
        top = results[0]
        assert top.chunk.id == "vw-portal-chunk-0"
        assert top.search_stage == SearchStage.HYBRID
        assert top.relevance_factors.semantic == pytest.approx(0.92)
        assert top.relevance_factors.lexical == pytest.approx(1.3)
        finals = [r.relevance_factors.final for r in results]
        assert finals == sorted(finals, reverse=True)

    @pytest.mark.asyncio
    async def test_lexical_only_hits_are_tagged_hybrid(self, search_factory, result_factory, engine_factory):
        provider = search_factory(
            [
                result_factory("sem-0", 0.9, text="alpha"),
                result_factory("lex-0", 0.4, text="mentored designers", content_type="leadership"),
            ]
        )
        engine = engine_factory(provider, chunk_count=1)

        results = await engine.search("mentored designers", top_k=2)

        stages = {r.chunk.id: r.search_stage for r in results}
        assert stages["lex-0"] == SearchStage.HYBRID
        assert results[[r.chunk.id for r in results].index("lex-0")].relevance_factors.lexical == pytest.approx(1.3)

    @pytest.mark.asyncio
    async def test_chunk_ids_are_unique(self, search_factory, result_factory, engine_factory):
        duplicated = [result_factory("same", 0.9, text="react"), result_factory("same", 0.8, text="react")]
        engine = engine_factory(search_factory(duplicated + [result_factory("other", 0.7)]), chunk_count=5)

        results = await engine.search("react")

        ids = [r.chunk.id for r in results]
        assert len(ids) == len(set(ids))

    @pytest.mark.asyncio
    async def test_diversity_scores_are_bounded(self, fake_search, engine_factory):
        engine = engine_factory(fake_search, intent=QueryIntent.SYNTHESIS, chunk_count=6, diversity=True)

        results = await engine.search("what can you do with react and design")

        assert results
        assert all(0.0 <= r.diversity_score <= 1.0 for r in results)

    @pytest.mark.asyncio
    async def test_top_k_override(self, fake_search, engine_factory):
        engine = engine_factory(fake_search, chunk_count=3)

        results = await engine.search("dealer portal", top_k=2)

        assert len(results) <= 2
        assert sorted(call["top_k"] for call in fake_search.calls) == [2, 4]

    @pytest.mark.asyncio
    async def test_empty_backend_returns_empty_list(self, search_factory, engine_factory):
        engine = engine_factory(search_factory([]))
        assert await engine.search("anything") == []

    @pytest.mark.asyncio
    async def test_empty_query_does_not_raise(self, fake_search, engine_factory):
        results = await engine_factory(fake_search).search("")
        assert isinstance(results, list)

    @pytest.mark.asyncio
    async def test_backend_failure_everywhere_resolves_to_empty(self, search_factory, engine_factory):
        provider = search_factory(error=VectorSearchError("pinecone down"))
        engine = engine_factory(provider)

        results = await engine.search("dealer portal")

        assert results == []
        # two fused passes plus the fallback
        assert len(provider.calls) == 3

    @pytest.mark.asyncio
    async def test_falls_back_to_plain_semantic(self, sample_results, search_factory, engine_factory):
        class FusedPathDown(search_factory):
            async def search(self, query, top_k, filter=None, min_score=None, namespace=None):
                if filter is not None:
                    self.calls.append({"top_k": top_k, "min_score": min_score, "filter": filter})
                    raise VectorSearchError("filtered query rejected")
                return await super().search(query, top_k, filter, min_score, namespace)

        provider = FusedPathDown(sample_results)
        engine = engine_factory(provider, chunk_count=3)

        results = await engine.search("dealer portal", min_score=0.8)

        assert [r.chunk.id for r in results] == ["vw-portal-chunk-0", "vw-portal-chunk-1"]
        for result in results:
            assert result.search_stage == SearchStage.SEMANTIC
            assert result.diversity_score == 0.5
            assert result.relevance_factors.final == result.score
            assert result.relevance_factors.lexical == 0.0
            assert result.relevance_factors.metadata == 0.0
        assert provider.calls[-1]["min_score"] == 0.8
        assert provider.calls[-1]["top_k"] == 3

    @pytest.mark.asyncio
    async def test_explicit_zero_fallback_min_score_is_kept(self, sample_results, search_factory, engine_factory):
        class FusedPathDown(search_factory):
            async def search(self, query, top_k, filter=None, min_score=None, namespace=None):
                if filter is not None:
                    raise VectorSearchError("filtered query rejected")
                return await super().search(query, top_k, filter, min_score, namespace)

        provider = FusedPathDown(sample_results)
        engine = engine_factory(provider, chunk_count=3)

        results = await engine.search("dealer portal", min_score=0.0)

        assert provider.calls[-1]["min_score"] == 0.0
        assert len(results) == 3

    @pytest.mark.asyncio
    async def test_double_failure_logs_both_errors(self, search_factory, engine_factory):
        class EverythingDown(search_factory):
            async def search(self, query, top_k, filter=None, min_score=None, namespace=None):
                if filter is not None:
                    raise VectorSearchError("filtered query rejected")
                raise VectorSearchError("index offline")

        engine = engine_factory(EverythingDown())

        with patch("chat.tools.hybrid_search.logger") as mock_logger:
            results = await engine.search("dealer portal")

        assert results == []
        mock_logger.error.assert_called_once()
        kwargs = mock_logger.error.call_args.kwargs
        assert kwargs["error"] == "index offline"
        assert kwargs["hybrid_error"] == "filtered query rejected"

    @pytest.mark.asyncio
    async def test_semantic_and_lexical_passes_run_concurrently(self, sample_results, search_factory, engine_factory):
        class GatedSearch(search_factory):
            """Holds every call until two are in flight at once."""

            def __init__(self, results):
                super().__init__(results)
                self.in_flight = 0
                self.both_started = asyncio.Event()

            async def search(self, query, top_k, filter=None, min_score=None, namespace=None):
                self.in_flight += 1
                if self.in_flight >= 2:
                    self.both_started.set()
                await self.both_started.wait()
                return await super().search(query, top_k, filter, min_score, namespace)

        provider = GatedSearch(sample_results)
        engine = engine_factory(provider, chunk_count=3)

        # Sequential passes would block on the first call until the timeout
        results = await asyncio.wait_for(engine.search("dealer portal"), timeout=2.0)

        assert len(provider.calls) == 2
        assert len(results) == 3
        assert all(r.search_stage == SearchStage.HYBRID for r in results)

    def test_context_sized_for_injected_intent(self, fake_search):
        engine = HybridSearchEngine(fake_search, classify=lambda q: QueryIntent.SYNTHESIS)

        config = engine.build_config("hello")

        assert config.diversity_threshold == 0.3
        assert config.top_k == 8
        assert config.query_expansion is True


class TestHybridValidatePerformance:
    """Test the validation run."""

    @pytest.mark.asyncio
    async def test_aggregates_metrics(self, fake_search, engine_factory):
        engine = engine_factory(fake_search, chunk_count=3)

        metrics = await engine.validate_performance(["dealer portal", "hello"])

        assert isinstance(metrics, HybridSearchMetrics)
        assert metrics.query_count == 2
        assert 0.0 <= metrics.avg_hybrid_fraction <= 1.0
        assert 0.0 <= metrics.avg_high_quality_fraction <= 1.0
        assert metrics.avg_processing_time_ms >= 0.0
        assert metrics.weight_distribution["semantic"] + metrics.weight_distribution["lexical"] == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_empty_results_count_as_zero(self, search_factory, engine_factory):
        engine = engine_factory(search_factory([]))

        metrics = await engine.validate_performance(["hello"])

        assert metrics.avg_hybrid_fraction == 0.0
        assert metrics.avg_high_quality_fraction == 0.0

    @pytest.mark.asyncio
    async def test_no_queries(self, fake_search, engine_factory):
        metrics = await engine_factory(fake_search).validate_performance([])
        assert metrics.query_count == 0
        assert fake_search.calls == []
