"""Query intent classification and context size recommendation.

Heuristic, regex-based classification of chat questions (English and Polish)
into one of five intents, and the context budget each intent should get.
Both functions are pure and deterministic; the search engines take them as
injectable collaborators so tests can pin an intent.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Callable, Dict, Literal, Optional

from pydantic import BaseModel, Field


class QueryIntent(str, Enum):
    """What the visitor is trying to get out of the chat."""

    FACTUAL = "FACTUAL"
    CASUAL = "CASUAL"
    EXPLORATION = "EXPLORATION"
    COMPARISON = "COMPARISON"
    SYNTHESIS = "SYNTHESIS"


class ContextSizeConfig(BaseModel):
    """Recommended context budget for a query."""

    max_tokens: int = Field(ge=1)
    chunk_count: int = Field(ge=1)
    diversity_boost: bool = False
    query_expansion: bool = False


Complexity = Literal["LOW", "MEDIUM", "HIGH"]

IntentClassifier = Callable[[str], QueryIntent]
ContextSizer = Callable[[str, Optional[QueryIntent]], ContextSizeConfig]


# Checked in this order; the first family with a hit wins. Factual comes first
# because it is the most specific.
POLISH_PATTERNS: Dict[QueryIntent, re.Pattern] = {
    QueryIntent.FACTUAL: re.compile(
        r"ile(?!\s+razy)|kiedy|gdzie|kto|która|które|jakie(?!\s+są)|jaki(?!\s+sposób)|data|rok|"
        r"liczba|wiek|czas|długo|dużo|mało|konkretnie|dokładnie|precyzyjnie|faktycznie"
    ),
    QueryIntent.SYNTHESIS: re.compile(
        r"co potrafisz|jakie są.*umiejętności|analiz|syntez|umiejętności|kompetencj|przegląd|"
        r"podsumuj|oceń|jak wyglądają|przedstaw|scharakteryzuj"
    ),
    QueryIntent.EXPLORATION: re.compile(
        r"opowiedz|więcej|szczegół|jak.*proces|dlaczego|historia|metodologia|rozwin|wyjaśnij|"
        r"opisz|co się działo|jak to|w jaki sposób"
    ),
    QueryIntent.COMPARISON: re.compile(
        r"porównaj|versus|vs|różnic|lepsze|gorsze|wybór|alternatyw|zestawiaj|różnią się|podobne|inne"
    ),
}

ENGLISH_PATTERNS: Dict[QueryIntent, re.Pattern] = {
    QueryIntent.FACTUAL: re.compile(
        r"how\s+(much|many|long|old)|when|where|who|what(?!\s+are)|which|date|year|number|age|"
        r"time|specific|exact|precise|fact"
    ),
    QueryIntent.SYNTHESIS: re.compile(
        r"what.*(can|are|do)|competenc|skill|capabilit|overview|summariz|review|present|"
        r"characterize|analyz|assess|evaluat"
    ),
    QueryIntent.EXPLORATION: re.compile(
        r"tell.*more|detail|how.*(process|work)|why|history|methodology|explain|describe|expand|"
        r"elaborate|what.*happen"
    ),
    QueryIntent.COMPARISON: re.compile(
        r"versus|vs|differ|better|worse|choice|alternative|compare|contrast|similar|different|between"
    ),
}

CONTEXT_SIZE_TABLE: Dict[QueryIntent, ContextSizeConfig] = {
    QueryIntent.FACTUAL: ContextSizeConfig(max_tokens=600, chunk_count=3),
    QueryIntent.CASUAL: ContextSizeConfig(max_tokens=400, chunk_count=2),
    QueryIntent.EXPLORATION: ContextSizeConfig(
        max_tokens=1200, chunk_count=6, diversity_boost=True, query_expansion=True
    ),
    QueryIntent.COMPARISON: ContextSizeConfig(
        max_tokens=1800, chunk_count=8, diversity_boost=True, query_expansion=True
    ),
    QueryIntent.SYNTHESIS: ContextSizeConfig(
        max_tokens=2000, chunk_count=10, diversity_boost=True, query_expansion=True
    ),
}

MIN_MAX_TOKENS = 300
MIN_CHUNK_COUNT = 1

_CONJUNCTIONS = re.compile(r"\b(and|or|but|oraz|ale|czy|lub|i )\b", re.IGNORECASE)
_PRECISION_TERMS = re.compile(
    r"\b(specific|dokładnie|konkretnie|precyzyjnie|exactly|detailed|szczegółowo)\b", re.IGNORECASE
)
_COMPARISON_WORDS = re.compile(
    r"\b(versus|vs|compared|różnice|podobieństwa|lepsze|gorsze)\b", re.IGNORECASE
)
_TOPIC_WORDS = re.compile(
    r"\b(projekt|project|team|zespół|design|experience|doświadczenie)\b", re.IGNORECASE
)


def classify_intent(query: str) -> QueryIntent:
    """Classify a chat question into a ``QueryIntent``.

    Short greetings and anything without a recognizable pattern fall back to
    CASUAL.
    """
    text = (query or "").lower()
    for intent in (
        QueryIntent.FACTUAL,
        QueryIntent.SYNTHESIS,
        QueryIntent.EXPLORATION,
        QueryIntent.COMPARISON,
    ):
        if POLISH_PATTERNS[intent].search(text) or ENGLISH_PATTERNS[intent].search(text):
            return intent
    return QueryIntent.CASUAL


def calculate_query_complexity(query: str, query_length: int) -> Complexity:
    """Count complexity indicators: 3 or more is HIGH, at least one is MEDIUM."""
    indicators = [
        query.count("?") > 1,
        bool(_CONJUNCTIONS.search(query)),
        bool(_PRECISION_TERMS.search(query)),
        bool(_COMPARISON_WORDS.search(query)),
        query_length > 100,
        len(_TOPIC_WORDS.findall(query)) >= 2,
    ]
    score = sum(1 for hit in indicators if hit)
    if score >= 3:
        return "HIGH"
    if score >= 1:
        return "MEDIUM"
    return "LOW"


def get_context_size_config(
    query: str,
    intent: Optional[QueryIntent] = None,
    query_length: int = 0,
) -> ContextSizeConfig:
    """Recommend a token budget and chunk count for ``query``.

    Args:
        query: Raw user query
        intent: Intent already assigned by the caller; classified here when omitted
        query_length: Length override; defaults to ``len(query)``

    Returns:
        ContextSizeConfig scaled by query complexity
    """
    query = query or ""
    if intent is None:
        intent = classify_intent(query)
    base = CONTEXT_SIZE_TABLE.get(intent, CONTEXT_SIZE_TABLE[QueryIntent.CASUAL])
    max_tokens = base.max_tokens
    chunk_count = base.chunk_count

    complexity = calculate_query_complexity(query, query_length or len(query))
    if complexity == "HIGH":
        max_tokens = int(max_tokens * 1.5)
        chunk_count = int(chunk_count * 1.3)
    elif complexity == "LOW":
        max_tokens = int(max_tokens * 0.7)
        chunk_count = int(chunk_count * 0.8)

    return ContextSizeConfig(
        max_tokens=max(max_tokens, MIN_MAX_TOKENS),
        chunk_count=max(chunk_count, MIN_CHUNK_COUNT),
        diversity_boost=base.diversity_boost,
        query_expansion=base.query_expansion,
    )
