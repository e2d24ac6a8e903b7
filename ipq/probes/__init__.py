"""Network probes and the TCP connect primitive they share."""

import asyncio
import logging
import time

logger = logging.getLogger(__name__)


def valid_ports(ports: object) -> list[int]:
    """Return the usable ports from *ports*, preserving order.

    Non-integer values (including booleans) and ports outside ``1-65535``
    are dropped.  A non-list argument yields an empty list.
    """
    if not isinstance(ports, (list, tuple)):
        return []
    usable: list[int] = []
    for port in ports:
        if isinstance(port, bool) or not isinstance(port, int):
            logger.debug("Skipping non-numeric port %r", port)
            continue
        if not 1 <= port <= 65535:
            logger.debug("Skipping out-of-range port %d", port)
            continue
        usable.append(port)
    return usable


async def tcp_connect_latency(address: str, port: int, timeout_ms: float) -> float | None:
    """Measure how long a TCP handshake with *address*:*port* takes.

    Args:
        address: IPv4 address to connect to.
        port: TCP port.
        timeout_ms: Give up after this many milliseconds.

    Returns:
        Connect delay in milliseconds (two decimals), or ``None`` if the
        connection timed out, was refused, or failed at the socket level.
    """
    t0 = time.perf_counter()
    try:
        _reader, writer = await asyncio.wait_for(
            asyncio.open_connection(address, port),
            timeout=timeout_ms / 1000,
        )
    except (asyncio.TimeoutError, OSError) as exc:
        logger.debug("Connect to %s:%d failed: %s", address, port, exc or "timeout")
        return None

    elapsed_ms = (time.perf_counter() - t0) * 1000.0
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return round(elapsed_ms, 2)
