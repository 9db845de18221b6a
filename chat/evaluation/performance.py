#!/usr/bin/env python3
"""
Retrieval performance validation for the career chat.

Runs a batch of queries through the hybrid search engine and the multi-stage
pipeline, collects each engine's quality metrics and a latency distribution,
and reports them together. Meant for smoke and regression runs against a
real index, not for serving.

Usage:
    python -m chat.evaluation.performance
    python -m chat.evaluation.performance --iterations 3 --max-p95-ms 2500
"""

import argparse
import asyncio
import math
import sys
import time
from dataclasses import dataclass, field
from statistics import mean, median
from typing import Awaitable, Callable, List, Optional, Sequence

import structlog
from pydantic import BaseModel

from chat.models import HybridSearchMetrics, MultiStageMetrics
from chat.tools.hybrid_search import HybridSearchEngine
from chat.tools.multi_stage_retrieval import MultiStageRetrieval
from libs.common.log_config import configure_logging

logger = structlog.get_logger(__name__)


DEFAULT_QUERIES = [
    "ile lat doświadczenia masz?",
    "co potrafisz jako projektant?",
    "what are your most recent projects",
    "tell me more about the design process at Volkswagen",
    "compare your frontend and backend experience",
    "hello!",
]


def percentile(values: Sequence[float], pct: float) -> float:
    """Nearest-rank percentile; 0.0 for no values."""
    if not values:
        return 0.0
    ordered = sorted(values)
    rank = max(1, math.ceil(pct * len(ordered) / 100))
    return ordered[rank - 1]


@dataclass
class LatencySamples:
    """Wall-clock timings for one engine, in milliseconds."""

    engine: str
    samples_ms: List[float] = field(default_factory=list)

    def add(self, elapsed_ms: float) -> None:
        self.samples_ms.append(elapsed_ms)


class LatencyStats(BaseModel):
    engine: str = ""
    samples: int = 0
    mean_ms: float = 0.0
    p50_ms: float = 0.0
    p95_ms: float = 0.0
    max_ms: float = 0.0

    @classmethod
    def from_samples(cls, samples: LatencySamples) -> "LatencyStats":
        values = samples.samples_ms
        if not values:
            return cls(engine=samples.engine)
        return cls(
            engine=samples.engine,
            samples=len(values),
            mean_ms=round(mean(values), 2),
            p50_ms=round(median(values), 2),
            p95_ms=round(percentile(values, 95), 2),
            max_ms=round(max(values), 2),
        )


class PerformanceReport(BaseModel):
    """Combined quality and latency report for both engines."""

    query_count: int
    iterations: int
    hybrid: HybridSearchMetrics
    multi_stage: MultiStageMetrics
    hybrid_latency: LatencyStats
    multi_stage_latency: LatencyStats

    @property
    def worst_p95_ms(self) -> float:
        return max(self.hybrid_latency.p95_ms, self.multi_stage_latency.p95_ms)


class PerformanceValidator:
    """Runs both retrieval engines over a query batch and aggregates metrics."""

    def __init__(self, hybrid: HybridSearchEngine, multi_stage: MultiStageRetrieval):
        self.hybrid = hybrid
        self.multi_stage = multi_stage

    @staticmethod
    async def _time_queries(
        name: str,
        run: Callable[[str], Awaitable[object]],
        queries: Sequence[str],
        iterations: int,
    ) -> LatencySamples:
        samples = LatencySamples(engine=name)
        for _ in range(iterations):
            for query in queries:
                start = time.time()
                await run(query)
                samples.add((time.time() - start) * 1000)
        return samples

    async def run(self, queries: Sequence[str], iterations: int = 1) -> PerformanceReport:
        """Validate both engines on ``queries``.

        Quality metrics come from one pass of each engine's own validation;
        latency percentiles come from ``iterations`` further timed passes.
        """
        queries = list(queries)
        iterations = max(1, iterations)

        logger.info("Starting retrieval performance validation", queries=len(queries), iterations=iterations)

        hybrid_metrics = await self.hybrid.validate_performance(queries)
        multi_stage_metrics = await self.multi_stage.validate_performance(queries)

        hybrid_samples = await self._time_queries("hybrid", self.hybrid.search, queries, iterations)
        multi_stage_samples = await self._time_queries(
            "multi_stage", self.multi_stage.search, queries, iterations
        )

        report = PerformanceReport(
            query_count=len(queries),
            iterations=iterations,
            hybrid=hybrid_metrics,
            multi_stage=multi_stage_metrics,
            hybrid_latency=LatencyStats.from_samples(hybrid_samples),
            multi_stage_latency=LatencyStats.from_samples(multi_stage_samples),
        )

        logger.info(
            "Retrieval performance validation completed",
            hybrid_p95_ms=report.hybrid_latency.p95_ms,
            multi_stage_p95_ms=report.multi_stage_latency.p95_ms,
            multi_stage_confidence=round(multi_stage_metrics.avg_confidence, 3),
        )
        return report


async def run_validation(queries: Sequence[str], iterations: int) -> PerformanceReport:
    """Build engines against the configured Pinecone index and validate them."""
    from chat.tools.vector_store import PineconeSearchProvider

    provider = PineconeSearchProvider()
    validator = PerformanceValidator(
        hybrid=HybridSearchEngine(provider),
        multi_stage=MultiStageRetrieval(provider),
    )
    return await validator.run(queries, iterations=iterations)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Validate career chat retrieval performance")
    parser.add_argument("--iterations", type=int, default=1, help="Timed passes over the query set")
    parser.add_argument("--max-p95-ms", type=float, default=None, help="Fail if either engine's p95 exceeds this")
    parser.add_argument("queries", nargs="*", help="Queries to run (defaults to a built-in set)")
    args = parser.parse_args(argv)

    configure_logging()

    report = asyncio.run(run_validation(args.queries or DEFAULT_QUERIES, args.iterations))
    print(report.model_dump_json(indent=2))

    if args.max_p95_ms is not None and report.worst_p95_ms > args.max_p95_ms:
        logger.warning("Latency target missed", p95_ms=report.worst_p95_ms, target_ms=args.max_p95_ms)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
