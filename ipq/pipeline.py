"""Pipeline coordinator: sequences the resolution, probing, scoring and geo stages."""

import logging
import time

import httpx

from ipq.aggregator import group_by_region
from ipq.config import IpqConfig
from ipq.dns import resolve_domains, unique_addresses
from ipq.geoip import GeoResolver
from ipq.models import PipelineResult
from ipq.persistence import GeoCache
from ipq.probes.bandwidth import measure_all
from ipq.probes.reachability import probe_all, quick_filter_all
from ipq.scoring import build_candidates, rank, top_percent

logger = logging.getLogger(__name__)


async def run_pipeline(
    domains: list[str],
    config: IpqConfig,
    cache: GeoCache,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> PipelineResult:
    """Run every stage for one set of domains.

    Stages: resolve → dedupe → quick filter → geolocate (basic groups) →
    latency top-percent → stability pass → bandwidth pass → score and rank →
    geolocate (advanced groups).  The last five only run when
    ``config.advanced_mode`` is set.

    The run stops early, with ``stopped_reason`` set, when there are no
    domains, nothing resolves, or nothing survives the quick filter.

    Args:
        domains: Domains to resolve.
        config: Loaded configuration.
        cache: Loaded geolocation cache; updated in place, not saved.
        http_client: Client for geolocation and bandwidth requests.  One is
            created (and closed) when omitted.

    Returns:
        A ``PipelineResult`` holding the output of every stage that ran.
    """
    t0 = time.monotonic()
    result = PipelineResult(domains=list(domains), advanced=config.advanced_mode)

    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(follow_redirects=True)
    resolver = GeoResolver.from_config(cache, client, config)
    try:
        await _run_stages(result, config, resolver, client)
    finally:
        resolver.close()
        if owns_client:
            await client.aclose()

    result.duration_seconds = time.monotonic() - t0
    logger.info("Pipeline finished in %.2fs", result.duration_seconds)
    return result


async def _run_stages(
    result: PipelineResult,
    config: IpqConfig,
    resolver: GeoResolver,
    client: httpx.AsyncClient,
) -> None:
    """Fill *result* stage by stage, returning early on a systemic stop."""
    if not result.domains:
        _stop(result, "no domains configured")
        return

    logger.info("===== Resolving domains =====")
    result.resolutions = await resolve_domains(result.domains, config)
    result.addresses = unique_addresses(result.resolutions)
    total = sum(len(r.addresses) for r in result.resolutions)
    logger.info(
        "%d address(es) before deduplication, %d unique",
        total,
        len(result.addresses),
    )
    if not result.addresses:
        _stop(result, "no addresses resolved")
        return

    logger.info("===== Quick filter =====")
    result.quick_results = await quick_filter_all(
        result.addresses,
        config.test_ports,
        max_workers=config.max_workers,
        timeout_ms=config.connect_timeout_ms,
        good_ms=config.good_delay_ms,
        reject_ms=config.reject_delay_ms,
    )
    good = [r for r in result.quick_results if r.good]
    if not good:
        _stop(result, "no address passed the quick filter")
        return

    logger.info("===== Geolocation (basic) =====")
    records = await resolver.resolve_many(
        [(r.address, r.delay) for r in good],
        max_workers=config.max_workers,
        query_interval_ms=config.query_interval_ms,
    )
    result.basic_groups = group_by_region(records)

    if not config.advanced_mode:
        return

    logger.info("===== Latency top %g%% =====", config.latency_filter_percentage)
    shortlist = top_percent(good, config.latency_filter_percentage)

    logger.info("===== Stability pass =====")
    result.probe_results = await probe_all(
        [r.address for r in shortlist],
        config.test_ports,
        config.tcp_ping_count,
        batch_size=config.batch_size,
        pause_ms=config.query_interval_ms,
        timeout_ms=config.connect_timeout_ms,
        good_ms=config.good_delay_ms,
        sentinel_ms=config.failure_sentinel_ms,
    )

    logger.info("===== Bandwidth pass =====")
    result.bandwidth_results = await measure_all(result.probe_results, config, client=client)

    result.ranked = rank(build_candidates(result.probe_results, result.bandwidth_results))
    logger.info("Ranked %d candidate(s) by composite score", len(result.ranked))
    if not result.ranked:
        logger.warning("No candidate survived the bandwidth pass")
        return

    logger.info("===== Geolocation (advanced) =====")
    records = await resolver.resolve_many(
        [(c.address, c.min_delay) for c in result.ranked],
        max_workers=config.max_workers,
        query_interval_ms=config.query_interval_ms,
    )
    result.advanced_groups = group_by_region(records)


def _stop(result: PipelineResult, reason: str) -> None:
    logger.warning("Stopping early: %s", reason)
    result.stopped_reason = reason
