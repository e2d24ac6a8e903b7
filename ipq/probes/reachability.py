"""TCP reachability probes: single-pass quick filter and repeated stability pass."""

import asyncio
import logging
import time

from ipq.models import Address, ProbeResult, QuickFilterResult, is_valid_address
from ipq.probes import tcp_connect_latency, valid_ports

logger = logging.getLogger(__name__)


async def _best_delay(
    address: str,
    ports: list[int],
    timeout_ms: float,
    good_ms: float,
) -> float | None:
    """Try each port once; stop at the first delay below *good_ms*.

    Returns the best delay seen, or ``None`` if no port connected.
    """
    best: float | None = None
    for port in ports:
        delay = await tcp_connect_latency(address, port, timeout_ms)
        if delay is None:
            continue
        if best is None or delay < best:
            best = delay
        if delay < good_ms:
            break
    return best


async def quick_filter(
    address: str,
    ports: list[int],
    *,
    timeout_ms: float = 3000,
    good_ms: float = 200,
    reject_ms: float = 500,
) -> QuickFilterResult:
    """Cheap one-pass check used to discard obviously dead addresses.

    Args:
        address: Address to check.
        ports: Ports to try, in order.
        timeout_ms: Per-connect timeout.
        good_ms: A delay below this ends the port loop immediately.
        reject_ms: Best delays above this are rejected.

    Returns:
        A ``QuickFilterResult``; rejected addresses carry a delay of 0.
    """
    if not is_valid_address(address):
        logger.debug("Rejecting malformed address %r", address)
        return QuickFilterResult(address=address, good=False)
    address = Address(address)

    usable = valid_ports(ports)
    if not usable:
        logger.warning("No usable test ports; rejecting %s", address)
        return QuickFilterResult(address=address, good=False)

    best = await _best_delay(address, usable, timeout_ms, good_ms)
    if best is None or best > reject_ms:
        return QuickFilterResult(address=address, good=False)
    return QuickFilterResult(address=address, good=True, delay=best)


async def probe(
    address: str,
    ports: list[int],
    attempts: int = 5,
    *,
    timeout_ms: float = 3000,
    good_ms: float = 200,
    sentinel_ms: float = 999,
) -> ProbeResult:
    """Repeat the quick-filter port loop to get latency and stability stats.

    An attempt that connects on no port is recorded as *sentinel_ms* in
    ``samples``.  The statistics only cover attempts that connected; the
    stability metric is the population variance of those delays.

    Args:
        address: Address to probe.
        ports: Ports to try on every attempt.
        attempts: Number of attempts.
        timeout_ms: Per-connect timeout.
        good_ms: A delay below this ends an attempt's port loop.
        sentinel_ms: Placeholder delay for failed attempts.

    Returns:
        A ``ProbeResult``.  With no connected attempt it is unavailable and
        all statistics are zero.
    """
    if not is_valid_address(address):
        return ProbeResult(address=address, available=False)
    address = Address(address)

    usable = valid_ports(ports)
    if not usable:
        logger.warning("No usable test ports; skipping %s", address)
        return ProbeResult(address=address, available=False)

    samples: list[float] = []
    connected: list[float] = []
    for _ in range(max(attempts, 0)):
        best = await _best_delay(address, usable, timeout_ms, good_ms)
        if best is None:
            samples.append(sentinel_ms)
        else:
            samples.append(best)
            connected.append(best)

    if not connected:
        return ProbeResult(address=address, available=False, samples=tuple(samples))

    avg = sum(connected) / len(connected)
    variance = sum((d - avg) ** 2 for d in connected) / len(connected)
    return ProbeResult(
        address=address,
        available=True,
        min_delay=min(connected),
        avg_delay=round(avg, 2),
        stability=round(variance, 2),
        samples=tuple(samples),
    )


async def quick_filter_all(
    addresses: list[Address],
    ports: list[int],
    *,
    max_workers: int = 15,
    timeout_ms: float = 3000,
    good_ms: float = 200,
    reject_ms: float = 500,
) -> list[QuickFilterResult]:
    """Quick-filter every address concurrently, at most *max_workers* at once.

    Returns:
        One result per input address, in input order.
    """
    logger.info("Quick-filtering %d address(es)", len(addresses))
    semaphore = asyncio.Semaphore(max(max_workers, 1))
    t0 = time.monotonic()

    async def _one(address: Address) -> QuickFilterResult:
        async with semaphore:
            return await quick_filter(
                address,
                ports,
                timeout_ms=timeout_ms,
                good_ms=good_ms,
                reject_ms=reject_ms,
            )

    results = await asyncio.gather(*(_one(a) for a in addresses))

    for result in results:
        if result.good:
            logger.info("Reachable %s (%.1f ms)", result.address, result.delay)
        else:
            logger.info("Rejected %s", result.address)

    kept = sum(1 for r in results if r.good)
    logger.info(
        "Quick filter kept %d of %d address(es) in %.1fs",
        kept,
        len(addresses),
        time.monotonic() - t0,
    )
    return list(results)


async def probe_all(
    addresses: list[Address],
    ports: list[int],
    attempts: int = 5,
    *,
    batch_size: int = 10,
    pause_ms: float = 100,
    timeout_ms: float = 3000,
    good_ms: float = 200,
    sentinel_ms: float = 999,
) -> list[ProbeResult]:
    """Run the stability pass address by address.

    A pause of *pause_ms* follows every block of *batch_size* addresses.

    Returns:
        One result per input address, in input order.
    """
    total = len(addresses)
    logger.info("Stability probing %d address(es), %d attempt(s) each", total, attempts)
    t0 = time.monotonic()
    block = max(batch_size, 1)

    results: list[ProbeResult] = []
    for i, address in enumerate(addresses, start=1):
        result = await probe(
            address,
            ports,
            attempts,
            timeout_ms=timeout_ms,
            good_ms=good_ms,
            sentinel_ms=sentinel_ms,
        )
        results.append(result)
        if result.available:
            logger.info(
                "[%d/%d] %s avg %.1f ms, min %.1f ms, variance %.2f",
                i,
                total,
                address,
                result.avg_delay,
                result.min_delay,
                result.stability,
            )
        else:
            logger.info("[%d/%d] %s unavailable", i, total, address)

        if i % block == 0 and i < total and pause_ms > 0:
            await asyncio.sleep(pause_ms / 1000)

    available = sum(1 for r in results if r.available)
    logger.info(
        "Stability pass found %d available address(es) in %.1fs",
        available,
        time.monotonic() - t0,
    )
    return results
