"""
Pytest configuration and fixtures for career chat tests.

Provides shared fixtures for:
- Test environment variables and a fresh settings cache
- Sample knowledge-base chunks
- A fake vector search provider with call recording
"""

from typing import Any, Dict, List, Optional

import pytest

from chat.models import Chunk, ChunkMetadata, ScoredResult
from chat.tools.vector_store import VectorSearchProvider
from libs.common.settings import get_settings


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("CAREER_CHAT_APP_ENV", "test")
    monkeypatch.setenv("CAREER_CHAT_LOG_JSON", "false")
    for name in ("PINECONE_API_KEY", "PINECONE_INDEX_HOST", "OPENAI_API_KEY", "OPENAI_EMBEDDING_MODEL"):
        monkeypatch.delenv(name, raising=False)

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def make_result(
    chunk_id: str,
    score: float,
    text: str = "",
    content_type: Optional[str] = "work",
    technologies: Optional[List[str]] = None,
    content_id: Optional[str] = None,
    **metadata: Any,
) -> ScoredResult:
    """Build a ScoredResult with the metadata fields the engines look at."""
    return ScoredResult(
        chunk=Chunk(
            id=chunk_id,
            text=text,
            metadata=ChunkMetadata(
                content_type=content_type,
                technologies=technologies or [],
                content_id=content_id,
                **metadata,
            ),
        ),
        score=score,
    )


class FakeVectorSearch(VectorSearchProvider):
    """In-memory provider: returns canned hits filtered by min_score and cut to top_k."""

    def __init__(self, results: Optional[List[ScoredResult]] = None, error: Optional[Exception] = None):
        self.results = list(results or [])
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def search(self, query, top_k, filter=None, min_score=None, namespace=None):
        self.calls.append(
            {"query": query, "top_k": top_k, "filter": filter, "min_score": min_score, "namespace": namespace}
        )
        if self.error is not None:
            raise self.error
        threshold = 0.0 if min_score is None else min_score
        hits = [r.model_copy(deep=True) for r in self.results if r.score >= threshold]
        return hits[:top_k]


@pytest.fixture
def sample_results() -> List[ScoredResult]:
    """A small knowledge base spanning several content types."""
    return [
        make_result(
            "vw-portal-chunk-0", 0.92,
            text="Led the redesign of the Volkswagen dealer portal with React and TypeScript",
            content_type="work", technologies=["react", "typescript"], content_id="vw-portal",
            date="2024-03-01", featured=True,
        ),
        make_result(
            "vw-portal-chunk-1", 0.81,
            text="Design system work for the dealer portal, built in Figma",
            content_type="work", technologies=["figma", "design"], content_id="vw-portal",
        ),
        make_result(
            "polsat-chunk-0", 0.77,
            text="Frontend lead at Polsat, streaming apps in React",
            content_type="timeline", technologies=["react"], content_id="polsat",
            date="2021-06-01",
        ),
        make_result(
            "mentoring-chunk-0", 0.66,
            text="Mentored a team of five designers and engineers",
            content_type="leadership", content_id="mentoring",
        ),
        make_result(
            "ai-lab-chunk-0", 0.58,
            text="Experiment: generative UI prototypes with node and aws",
            content_type="experiment", technologies=["node", "aws"], content_id="ai-lab",
        ),
        make_result(
            "contact-chunk-0", 0.41,
            text="Contact me by email",
            content_type="contact", content_id="contact",
        ),
    ]


@pytest.fixture
def fake_search(sample_results) -> FakeVectorSearch:
    return FakeVectorSearch(sample_results)


@pytest.fixture
def result_factory():
    """Expose ``make_result`` to test modules."""
    return make_result


@pytest.fixture
def search_factory():
    """Expose ``FakeVectorSearch`` to test modules."""
    return FakeVectorSearch
