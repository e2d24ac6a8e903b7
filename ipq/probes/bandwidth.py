"""Bandwidth probe: bounded HTTP downloads pinned to a candidate address."""

import asyncio
import logging
import time

import httpx

from ipq.config import IpqConfig
from ipq.models import Address, BandwidthResult, ProbeResult, is_valid_address
from ipq.probes.reachability import probe

logger = logging.getLogger(__name__)

USER_AGENT = "ipq/0.1 (+bandwidth-probe)"


def throughput_mbps(num_bytes: int, seconds: float) -> float:
    """Convert a transfer to Mbit/s; zero when nothing was measured."""
    if num_bytes <= 0 or seconds <= 0:
        return 0.0
    return (num_bytes * 8) / (seconds * 1_000_000)


async def download(
    client: httpx.AsyncClient,
    url: str,
    address: str,
    *,
    max_bytes: int,
    max_seconds: float,
    timeout: float = 15.0,
) -> tuple[int, float, float]:
    """Stream *url* from *address* until a byte or time cap is hit.

    The request goes to *address* directly; the endpoint host name travels
    in the ``Host`` header and as the TLS SNI name, so certificate checks
    still apply to the endpoint host.

    Args:
        client: Shared async HTTP client.
        url: Fully formatted endpoint URL.
        address: Address the connection is pinned to.
        max_bytes: Stop after this many bytes.
        max_seconds: Stop after this many seconds of transfer.
        timeout: httpx timeout for connect and individual reads.

    Returns:
        ``(bytes_received, transfer_seconds, latency_ms)``.  A non-200
        response yields ``(0, 0.0, latency_ms)``.

    Raises:
        httpx.HTTPError: On transport failures.
    """
    target = httpx.URL(url)
    pinned = target.copy_with(host=address)
    headers = {"Host": target.host, "User-Agent": USER_AGENT}

    t0 = time.perf_counter()
    async with client.stream(
        "GET",
        pinned,
        headers=headers,
        extensions={"sni_hostname": target.host},
        timeout=timeout,
    ) as response:
        started = time.perf_counter()
        latency_ms = round((started - t0) * 1000.0, 2)
        if response.status_code != 200:
            logger.debug("%s via %s returned HTTP %d", url, address, response.status_code)
            return 0, 0.0, latency_ms

        received = 0
        try:
            async with asyncio.timeout(max_seconds):
                async for chunk in response.aiter_bytes():
                    received += len(chunk)
                    if received >= max_bytes:
                        break
        except TimeoutError:
            logger.debug("%s via %s hit the %.1fs cap", url, address, max_seconds)
        elapsed = time.perf_counter() - started

    return received, elapsed, latency_ms


async def measure(
    address: str,
    size_bytes: int,
    attempts: int = 3,
    *,
    client: httpx.AsyncClient,
    endpoints: list[str],
    max_bytes: int | None = None,
    max_seconds: float = 10.0,
    fast_mbps: float = 5.0,
    request_timeout: float = 15.0,
    ports: list[int] | None = None,
    connect_timeout_ms: float = 3000,
) -> BandwidthResult:
    """Estimate throughput for *address* across all endpoints and attempts.

    The best throughput and the smallest connection latency are kept.  As
    soon as one transfer exceeds *fast_mbps* the result is returned.  If no
    transfer produced a positive measurement, a single reachability attempt
    provides a latency-only signal.

    Args:
        address: Address under test.
        size_bytes: Download size requested from each endpoint.
        attempts: Rounds over the endpoint list.
        client: Shared async HTTP client.
        endpoints: URL templates containing ``{size}``.
        max_bytes: Transfer cap; defaults to *size_bytes*.
        max_seconds: Per-transfer wall-clock cap.
        fast_mbps: Throughput considered good enough to stop probing.
        request_timeout: httpx timeout per transfer.
        ports: Ports for the reachability fallback (default ``[443]``).
        connect_timeout_ms: Connect timeout for the fallback.

    Returns:
        A ``BandwidthResult``.  Never raises on network errors.
    """
    if not is_valid_address(address):
        return BandwidthResult(address=address, fast=False)
    address = Address(address)
    cap = max_bytes if max_bytes is not None else size_bytes

    best_speed = 0.0
    best_latency = 0.0
    for _ in range(max(attempts, 0)):
        for template in endpoints:
            url = template.format(size=size_bytes)
            try:
                received, seconds, latency = await download(
                    client,
                    url,
                    address,
                    max_bytes=cap,
                    max_seconds=max_seconds,
                    timeout=request_timeout,
                )
            except (httpx.HTTPError, OSError) as exc:
                logger.debug("Bandwidth test of %s via %s failed: %s", address, url, exc)
                continue

            speed = throughput_mbps(received, seconds)
            if speed <= 0:
                continue
            best_speed = max(best_speed, speed)
            best_latency = latency if best_latency == 0 else min(best_latency, latency)
            if speed > fast_mbps:
                return BandwidthResult(
                    address=address,
                    fast=True,
                    throughput_mbps=best_speed,
                    latency_ms=best_latency,
                    reachable=True,
                )

    if best_speed > 0:
        return BandwidthResult(
            address=address,
            fast=False,
            throughput_mbps=best_speed,
            latency_ms=best_latency,
            reachable=True,
        )

    logger.debug("No bandwidth measurement for %s; falling back to TCP probe", address)
    fallback = await probe(
        address,
        ports if ports is not None else [443],
        1,
        timeout_ms=connect_timeout_ms,
    )
    if fallback.available:
        return BandwidthResult(
            address=address,
            fast=False,
            latency_ms=fallback.min_delay,
            reachable=True,
        )
    return BandwidthResult(address=address, fast=False)


async def measure_all(
    probe_results: list[ProbeResult],
    config: IpqConfig,
    *,
    client: httpx.AsyncClient,
) -> list[BandwidthResult]:
    """Measure every available address one at a time.

    A pause of ``query_interval_ms`` follows every ``batch_size`` addresses.

    Returns:
        One result per available input address, in input order.
    """
    candidates = [r for r in probe_results if r.available]
    total = len(candidates)
    logger.info("Bandwidth testing %d address(es)", total)
    block = max(config.batch_size, 1)

    results: list[BandwidthResult] = []
    for i, candidate in enumerate(candidates, start=1):
        result = await measure(
            candidate.address,
            config.bandwidth_test_size_bytes,
            config.bandwidth_test_count,
            client=client,
            endpoints=config.bandwidth_endpoints,
            max_seconds=config.bandwidth_max_seconds,
            fast_mbps=config.bandwidth_fast_mbps,
            request_timeout=config.bandwidth_request_timeout,
            ports=config.test_ports,
            connect_timeout_ms=config.connect_timeout_ms,
        )
        results.append(result)
        logger.info(
            "[%d/%d] %s bandwidth %.2f Mbps, latency %.1f ms%s",
            i,
            total,
            candidate.address,
            result.throughput_mbps,
            result.latency_ms,
            "" if result.reachable else " (unreachable)",
        )
        if i % block == 0 and i < total and config.query_interval_ms > 0:
            await asyncio.sleep(config.query_interval_ms / 1000)

    return results
