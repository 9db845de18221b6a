"""Pinecone-backed vector search for the career chat.

Query text is embedded with OpenAI (text-embedding-3-large truncated to 1024
dimensions, matching the index) and sent to the Pinecone REST ``/query``
endpoint. Each request opens a short-lived httpx client, so the provider is
safe to share between concurrent searches.
"""

from __future__ import annotations

import os
import time
from typing import Any, Dict, List, Optional

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from chat.models import Chunk, ChunkMetadata, ScoredResult
from libs.common.settings import get_settings

logger = structlog.get_logger(__name__)

OPENAI_EMBEDDINGS_URL = "https://api.openai.com/v1/embeddings"
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-large"
PINECONE_API_VERSION = "2024-07"

# Filter keys Pinecone does not understand; applied after the query instead.
TEXT_FILTER_KEY = "$text"


class VectorSearchError(Exception):
    """The vector store (or its transport) failed to answer a query."""


class VectorSearchProvider:
    """Interface for anything that can answer a nearest-neighbour text query."""

    async def search(
        self,
        query: str,
        top_k: int,
        filter: Optional[Dict[str, Any]] = None,
        min_score: Optional[float] = None,
        namespace: Optional[str] = None,
    ) -> List[ScoredResult]:  # pragma: no cover
        raise NotImplementedError


def _default_wait():
    return wait_exponential(multiplier=1, min=1, max=10)


class EmbeddingClient:
    """OpenAI client for generating query embeddings."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        dimensions: Optional[int] = None,
        timeout: Optional[float] = None,
        max_attempts: int = 3,
        retry_wait=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY")
        self.model = model or os.environ.get("OPENAI_EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL)
        self.dimensions = dimensions or settings.embedding_dimensions
        self.timeout = timeout or settings.vector_search_timeout
        self.max_attempts = max_attempts
        self.retry_wait = retry_wait or _default_wait()
        self._transport = transport

    async def get_embedding(self, text: str) -> Optional[List[float]]:
        """Embed ``text``; returns None on any failure instead of raising."""
        if not self.api_key:
            logger.error("OpenAI API key not configured")
            return None

        start_time = time.time()
        try:
            embedding = await self._request_embedding(text)
        except Exception as e:
            logger.error("Embedding generation failed", error=str(e), model=self.model)
            return None

        logger.debug(
            "Embedding generated",
            model=self.model,
            input_length=len(text),
            embedding_dim=len(embedding),
            elapsed_ms=round((time.time() - start_time) * 1000, 2),
        )
        return embedding

    async def _request_embedding(self, text: str) -> List[float]:
        payload = {
            "model": self.model,
            "input": text[:8000],
            "dimensions": self.dimensions,
            "encoding_format": "float",
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout), transport=self._transport) as client:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=self.retry_wait,
                retry=retry_if_exception_type(httpx.TransportError),
                reraise=True,
            ):
                with attempt:
                    response = await client.post(OPENAI_EMBEDDINGS_URL, headers=headers, json=payload)
        response.raise_for_status()
        data = response.json()
        return data["data"][0]["embedding"]


class PineconeClient:
    """Thin REST client for a single Pinecone index."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        index_host: Optional[str] = None,
        timeout: Optional[float] = None,
        max_attempts: int = 2,
        retry_wait=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key or os.environ.get("PINECONE_API_KEY")
        host = index_host or os.environ.get("PINECONE_INDEX_HOST") or ""
        if host and not host.startswith(("http://", "https://")):
            host = f"https://{host}"
        self.base_url = host.rstrip("/")
        self.timeout = timeout or get_settings().vector_search_timeout
        self.max_attempts = max_attempts
        self.retry_wait = retry_wait or _default_wait()
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.base_url)

    async def query(
        self,
        vector: List[float],
        top_k: int,
        filter: Optional[Dict[str, Any]] = None,
        namespace: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Run a similarity query and return the raw ``matches`` list.

        Raises:
            VectorSearchError: transport failure, non-2xx status or a payload
                without ``matches``
        """
        if not self.configured:
            raise VectorSearchError("Pinecone credentials not configured")

        payload: Dict[str, Any] = {
            "vector": vector,
            "topK": top_k,
            "includeMetadata": True,
            "includeValues": False,
        }
        if namespace:
            payload["namespace"] = namespace
        if filter:
            payload["filter"] = filter

        headers = {
            "Api-Key": self.api_key,
            "Content-Type": "application/json",
            "X-Pinecone-API-Version": PINECONE_API_VERSION,
        }

        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout), transport=self._transport) as client:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(self.max_attempts),
                    wait=self.retry_wait,
                    retry=retry_if_exception_type(httpx.TransportError),
                    reraise=True,
                ):
                    with attempt:
                        response = await client.post(f"{self.base_url}/query", headers=headers, json=payload)
        except httpx.HTTPError as e:
            logger.error("Pinecone query failed", error=str(e))
            raise VectorSearchError(f"Pinecone query failed: {e}") from e

        if response.status_code != 200:
            logger.error("Pinecone query failed", status=response.status_code, response=response.text[:200])
            raise VectorSearchError(f"Pinecone query returned HTTP {response.status_code}")

        try:
            matches = response.json()["matches"]
        except (ValueError, KeyError, TypeError) as e:
            raise VectorSearchError("Malformed Pinecone response") from e
        return matches or []


def _matches_text_filter(text: str, text_filter: Dict[str, Any]) -> bool:
    terms = str(text_filter.get("$search", "")).lower().split()
    if not terms:
        return True
    text_lower = text.lower()
    return any(term in text_lower for term in terms)


def match_to_result(match: Dict[str, Any]) -> ScoredResult:
    """Convert a raw Pinecone match into a ScoredResult."""
    metadata = dict(match.get("metadata") or {})
    text = metadata.pop("text", "") or ""
    chunk = Chunk(
        id=str(match.get("id", "")),
        text=str(text),
        metadata=ChunkMetadata.model_validate(metadata),
    )
    return ScoredResult(chunk=chunk, score=float(match.get("score", 0.0)))


class PineconeSearchProvider(VectorSearchProvider):
    """Text-in, scored-chunks-out search over Pinecone.

    A failed embedding yields no results; a failed Pinecone query raises
    VectorSearchError so the engines can fall back.
    """

    def __init__(
        self,
        embedding_client: Optional[EmbeddingClient] = None,
        pinecone_client: Optional[PineconeClient] = None,
        namespace: Optional[str] = None,
    ):
        self.embedding_client = embedding_client or EmbeddingClient()
        self.pinecone_client = pinecone_client or PineconeClient()
        self.namespace = namespace or get_settings().pinecone_namespace

    async def search(
        self,
        query: str,
        top_k: int,
        filter: Optional[Dict[str, Any]] = None,
        min_score: Optional[float] = None,
        namespace: Optional[str] = None,
    ) -> List[ScoredResult]:
        start_time = time.time()

        embedding = await self.embedding_client.get_embedding(query)
        if not embedding:
            logger.warning("No embedding for query, returning no results", query_length=len(query))
            return []

        server_filter = dict(filter or {})
        text_filter = server_filter.pop(TEXT_FILTER_KEY, None)

        matches = await self.pinecone_client.query(
            embedding,
            top_k=top_k,
            filter=server_filter or None,
            namespace=namespace or self.namespace,
        )

        threshold = min_score if min_score is not None else 0.0
        results = [match_to_result(m) for m in matches]
        results = [r for r in results if r.score >= threshold]
        if text_filter:
            results = [r for r in results if _matches_text_filter(r.chunk.text, text_filter)]

        logger.info(
            "Vector search completed",
            results_count=len(results),
            raw_matches=len(matches),
            top_score=results[0].score if results else 0,
            elapsed_ms=round((time.time() - start_time) * 1000, 2),
        )
        return results
