"""Per-query hybrid search configuration.

Weight, metadata filter and boost heuristics keyed off the query intent.
Everything here is a pure function of the query text (and the clock, for the
recency filter); the hybrid engine rebuilds the config for every query.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from chat.intent import (
    CONTEXT_SIZE_TABLE,
    ContextSizer,
    IntentClassifier,
    QueryIntent,
    classify_intent,
    get_context_size_config,
)
from chat.models import BoostFactors, HybridSearchConfig

# (semantic, lexical)
BASE_WEIGHTS: Dict[QueryIntent, Tuple[float, float]] = {
    QueryIntent.FACTUAL: (0.6, 0.4),
    QueryIntent.CASUAL: (0.5, 0.5),
    QueryIntent.EXPLORATION: (0.8, 0.2),
    QueryIntent.COMPARISON: (0.7, 0.3),
    QueryIntent.SYNTHESIS: (0.9, 0.1),
}

# (recency, relevance, diversity)
BASE_BOOSTS: Dict[QueryIntent, Tuple[float, float, float]] = {
    QueryIntent.FACTUAL: (0.1, 0.9, 0.1),
    QueryIntent.CASUAL: (0.2, 0.6, 0.2),
    QueryIntent.EXPLORATION: (0.3, 0.4, 0.3),
    QueryIntent.COMPARISON: (0.2, 0.5, 0.3),
    QueryIntent.SYNTHESIS: (0.2, 0.6, 0.2),
}

CONTENT_TYPE_FILTERS: Dict[QueryIntent, list] = {
    QueryIntent.FACTUAL: ["work", "timeline"],
    QueryIntent.EXPLORATION: ["work", "experiment", "leadership"],
    QueryIntent.SYNTHESIS: ["work", "leadership", "experiment"],
    QueryIntent.COMPARISON: ["work", "timeline"],
}

TECH_KEYWORDS = [
    "react", "typescript", "javascript", "node", "aws", "docker",
    "kubernetes", "figma", "design", "ux", "ui", "frontend", "backend",
]

COMPANY_KEYWORDS = ["volkswagen", "vw", "polsat", "allegro", "startup"]

RECENCY_TERMS = ("recent", "latest", "current", "now")
RECENCY_YEARS = 2

DIVERSITY_THRESHOLD_BOOSTED = 0.3
DIVERSITY_THRESHOLD_DEFAULT = 0.1

_PRECISION_TERMS = re.compile(
    r"\b(specific|konkretnie|exactly|dokładnie|precisely|precyzyjnie)\b", re.IGNORECASE
)
_DIGIT = re.compile(r"\d")


def _lookup(table: Dict[QueryIntent, Any], intent: Any) -> Any:
    try:
        return table[QueryIntent(intent)]
    except (KeyError, ValueError):
        return table[QueryIntent.CASUAL]


def _wants_diversity(intent: Any) -> bool:
    return _lookup(CONTEXT_SIZE_TABLE, intent).diversity_boost


def compute_weights(query: str, intent: QueryIntent) -> Dict[str, float]:
    """Derive semantic/lexical fusion weights for a query.

    Starts from the intent's base pair and applies, in order: a lexical bump
    for numbers or precision wording, a semantic bump for long queries, and a
    nudge toward semantic for intents that ask for diversity.

    Returns:
        ``{"semantic": float, "lexical": float}`` rounded to 2 decimals
    """
    query = query or ""
    semantic, lexical = _lookup(BASE_WEIGHTS, intent)

    if _DIGIT.search(query) or _PRECISION_TERMS.search(query):
        lexical = min(0.6, lexical + 0.2)
        semantic = 1 - lexical

    if len(query) > 100 or len(query.split()) > 15:
        semantic = min(0.9, semantic + 0.1)
        lexical = 1 - semantic

    if _wants_diversity(intent):
        semantic = min(0.8, semantic + 0.05)
        lexical = max(0.2, lexical - 0.05)

    return {"semantic": round(semantic, 2), "lexical": round(lexical, 2)}


def _years_ago(now: datetime, years: int) -> datetime:
    try:
        return now.replace(year=now.year - years)
    except ValueError:
        # Feb 29 in a non-leap target year
        return now.replace(year=now.year - years, day=28)


def _iso_utc(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_filters(
    query: str,
    intent: QueryIntent,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Build the metadata filter map for a query.

    Fragments are additive; a query that triggers nothing gets ``{}``.
    """
    query_lower = (query or "").lower()
    filters: Dict[str, Any] = {}

    try:
        content_types = CONTENT_TYPE_FILTERS.get(QueryIntent(intent))
    except ValueError:
        content_types = None
    if content_types:
        filters["contentType"] = {"$in": list(content_types)}

    mentioned_tech = [tech for tech in TECH_KEYWORDS if tech in query_lower]
    if mentioned_tech:
        filters["technologies"] = {"$in": mentioned_tech}

    if any(term in query_lower for term in RECENCY_TERMS):
        cutoff = _years_ago(now or datetime.now(timezone.utc), RECENCY_YEARS)
        filters["date"] = {"$gte": _iso_utc(cutoff)}

    mentioned_companies = [company for company in COMPANY_KEYWORDS if company in query_lower]
    if mentioned_companies:
        filters["$text"] = {"$search": " ".join(mentioned_companies)}

    return filters


def compute_boosts(query: str, intent: QueryIntent) -> BoostFactors:
    """Compute recency/relevance/diversity boosts, scaled down to sum to 1 if over."""
    query_lower = (query or "").lower()
    recency, relevance, diversity = _lookup(BASE_BOOSTS, intent)

    if "recent" in query_lower or "latest" in query_lower:
        recency = min(0.4, recency + 0.2)

    if "different" in query_lower or "various" in query_lower:
        diversity = min(0.4, diversity + 0.2)

    total = recency + relevance + diversity
    if total > 1:
        recency, relevance, diversity = recency / total, relevance / total, diversity / total

    return BoostFactors(recency=recency, relevance=relevance, diversity=diversity)


def build_search_config(
    query: str,
    classify: IntentClassifier = classify_intent,
    context_sizer: ContextSizer = get_context_size_config,
    top_k: Optional[int] = None,
    now: Optional[datetime] = None,
) -> HybridSearchConfig:
    """Assemble the full per-query config for the hybrid engine.

    Args:
        query: Raw user query
        classify: Intent classifier
        context_sizer: Context size recommender
        top_k: Overrides the recommended chunk count when given
        now: Clock override for the recency filter

    Returns:
        A fresh HybridSearchConfig
    """
    intent = classify(query)
    context = context_sizer(query, intent)
    weights = compute_weights(query, intent)

    return HybridSearchConfig(
        semantic_weight=weights["semantic"],
        lexical_weight=weights["lexical"],
        top_k=top_k or context.chunk_count,
        metadata_filters=build_filters(query, intent, now=now),
        boost_factors=compute_boosts(query, intent),
        query_expansion=context.query_expansion,
        diversity_threshold=(
            DIVERSITY_THRESHOLD_BOOSTED if context.diversity_boost else DIVERSITY_THRESHOLD_DEFAULT
        ),
    )
