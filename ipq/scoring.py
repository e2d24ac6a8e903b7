"""Composite scoring, percentile filtering and final ranking."""

import logging
import math
from typing import TypeVar

from ipq.models import BandwidthResult, ProbeResult, QuickFilterResult, ScoredCandidate

logger = logging.getLogger(__name__)

LATENCY_WEIGHT = 0.4
BANDWIDTH_WEIGHT = 0.3
STABILITY_WEIGHT = 0.3

T = TypeVar("T", ProbeResult, QuickFilterResult, ScoredCandidate)


def score(min_delay: float, avg_delay: float, bandwidth: float, stability: float) -> float:
    """Combine latency, bandwidth and stability into a 0-100 score.

    Each component is scaled to 0-100: latency ``max(0, 100 - avg/2)``,
    bandwidth ``min(100, mbps*10)``, stability ``max(0, 100 - variance/10)``.
    *min_delay* is accepted for call-site symmetry but not weighted.

    Returns:
        Weighted sum rounded to two decimals.
    """
    latency_score = max(0.0, 100 - avg_delay / 2)
    bandwidth_score = min(100.0, bandwidth * 10)
    stability_score = max(0.0, 100 - stability / 10)
    total = (
        latency_score * LATENCY_WEIGHT
        + bandwidth_score * BANDWIDTH_WEIGHT
        + stability_score * STABILITY_WEIGHT
    )
    return round(total, 2)


def _avg_delay(item: ProbeResult | QuickFilterResult | ScoredCandidate) -> float:
    if isinstance(item, QuickFilterResult):
        return item.delay
    return item.avg_delay


def top_percent(candidates: list[T], pct: float) -> list[T]:
    """Keep the lowest-latency *pct* percent of *candidates*.

    Candidates are stably sorted ascending by average delay and the first
    ``ceil(n * pct / 100)`` are kept, never fewer than one when the input
    is non-empty.
    """
    if not candidates:
        return []
    ordered = sorted(candidates, key=_avg_delay)
    keep = max(1, math.ceil(len(ordered) * pct / 100))
    kept = ordered[:keep]
    logger.info(
        "Latency top %g%%: kept %d of %d address(es)",
        pct,
        len(kept),
        len(candidates),
    )
    for rank, item in enumerate(kept, start=1):
        logger.info("#%d %s (%.1f ms)", rank, item.address, _avg_delay(item))
    return kept


def build_candidates(
    probe_results: list[ProbeResult],
    bandwidth_results: list[BandwidthResult],
) -> list[ScoredCandidate]:
    """Join stability and bandwidth results per address and score them.

    Addresses without a reachable bandwidth result are dropped.  Output
    order follows *probe_results*.
    """
    by_address = {b.address: b for b in bandwidth_results}
    candidates: list[ScoredCandidate] = []
    for p in probe_results:
        b = by_address.get(p.address)
        if b is None or not b.reachable:
            continue
        candidates.append(
            ScoredCandidate(
                address=p.address,
                min_delay=p.min_delay,
                avg_delay=p.avg_delay,
                stability=p.stability,
                throughput_mbps=b.throughput_mbps,
                latency_ms=b.latency_ms,
                score=score(p.min_delay, p.avg_delay, b.throughput_mbps, p.stability),
            )
        )
    return candidates


def rank(candidates: list[ScoredCandidate]) -> list[ScoredCandidate]:
    """Sort by score, best first; equal scores keep their input order."""
    return sorted(candidates, key=lambda c: c.score, reverse=True)
