"""Multi-authority DNS resolution for candidate discovery."""

import asyncio
import logging

import dns.asyncresolver
import dns.exception
import dns.rdatatype

from ipq.config import IpqConfig
from ipq.models import (
    Address,
    Authority,
    DomainResolution,
    ResolutionRecord,
    is_valid_address,
)

logger = logging.getLogger(__name__)


def authorities_from_config(config: IpqConfig) -> list[Authority]:
    """Build the ordered authority list from ``config.dns_servers``.

    Entries whose address is not a dotted-quad IPv4 address are skipped.
    """
    authorities = []
    for address, label in config.dns_servers.items():
        if not is_valid_address(address):
            logger.warning("Ignoring DNS server %s(%s): not an IPv4 address", label, address)
            continue
        authorities.append(Authority(address=address, label=label))
    return authorities


async def _query_authority(domain: str, nameserver: str, timeout: float) -> list[str]:
    """Ask a single nameserver for the A records of *domain*.

    Raises:
        dns.exception.DNSException: On timeout, NXDOMAIN, empty answer, etc.
        OSError: If the nameserver is unreachable at the socket level.
        ValueError: If *nameserver* is not an IP address.
    """
    resolver = dns.asyncresolver.Resolver(configure=False)
    resolver.nameservers = [nameserver]
    resolver.timeout = timeout
    resolver.lifetime = timeout
    answer = await resolver.resolve(domain, dns.rdatatype.A)
    return [rdata.to_text() for rdata in answer]


async def _attempt(domain: str, authority: Authority, timeout: float) -> set[Address]:
    """One resolution attempt; returns only well-formed addresses.

    Transport and protocol errors are logged and turned into an empty set.
    """
    try:
        raw = await _query_authority(domain, authority.address, timeout)
    except (dns.exception.DNSException, OSError, ValueError) as exc:
        logger.debug(
            "%s(%s) failed to resolve %s: %s",
            authority.label,
            authority.address,
            domain,
            exc,
        )
        return set()

    valid = {Address(ip) for ip in raw if is_valid_address(ip)}
    dropped = len(raw) - len(valid)
    if dropped:
        logger.debug(
            "%s(%s) returned %d malformed address(es) for %s",
            authority.label,
            authority.address,
            dropped,
            domain,
        )
    return valid


async def resolve_domain(
    domain: str,
    authorities: list[Authority],
    *,
    timeout: float = 5.0,
    pacing: float = 0.1,
    critical: frozenset[str] | set[str] = frozenset(),
) -> DomainResolution:
    """Resolve *domain* against every authority and union the results.

    Authorities are queried one after another in the given order, with
    *pacing* seconds between consecutive queries.  An authority whose address
    is in *critical* is retried once if its first attempt fails; all other
    failures are simply recorded.

    Args:
        domain: Domain name to resolve.
        authorities: Ordered nameservers to query.
        timeout: Per-attempt timeout in seconds.
        pacing: Pause between authorities in seconds.
        critical: Nameserver addresses that deserve a retry.

    Returns:
        A ``DomainResolution`` with the deduplicated address set and one
        ``ResolutionRecord`` per authority.

    Raises:
        ValueError: If *domain* is not a non-empty string.
    """
    if not isinstance(domain, str) or not domain.strip():
        raise ValueError(f"Unusable domain: {domain!r}")
    domain = domain.strip()

    result = DomainResolution(domain=domain)
    total = len(authorities)
    logger.info("Resolving %s with %d DNS server(s)", domain, total)

    for i, authority in enumerate(authorities, start=1):
        addresses = await _attempt(domain, authority, timeout)
        retried = False
        if not addresses and authority.address in critical:
            logger.info("Retrying DNS server %s for %s", authority.address, domain)
            retried = True
            addresses = await _attempt(domain, authority, timeout)

        result.records.append(
            ResolutionRecord(
                domain=domain,
                authority=authority.address,
                label=authority.label,
                addresses=frozenset(addresses),
                success=bool(addresses),
                retried=retried,
            )
        )
        if addresses:
            result.addresses |= addresses
            logger.info(
                "[%2d/%d] %s -> %d address(es) (%s: %s) | unique so far: %d",
                i,
                total,
                domain,
                len(addresses),
                authority.label,
                authority.address,
                len(result.addresses),
            )

        if i < total and pacing > 0:
            await asyncio.sleep(pacing)

    logger.info(
        "%s resolved: %d server(s) succeeded, %d failed, %d unique address(es)",
        domain,
        result.succeeded,
        result.failed,
        len(result.addresses),
    )
    failed = [f"{r.label}({r.authority})" for r in result.records if not r.success]
    if failed:
        logger.warning("DNS servers that failed for %s: %s", domain, ", ".join(failed))
    return result


async def resolve_domains(domains: list[str], config: IpqConfig) -> list[DomainResolution]:
    """Resolve each domain in order, pausing between domains.

    Domains that are unusable are logged and skipped.
    """
    authorities = authorities_from_config(config)
    critical = frozenset(config.critical_dns_servers)
    interval = config.query_interval_ms / 1000

    resolutions: list[DomainResolution] = []
    for i, domain in enumerate(domains):
        if i > 0 and interval > 0:
            await asyncio.sleep(interval)
        try:
            resolution = await resolve_domain(
                domain,
                authorities,
                timeout=config.dns_timeout,
                pacing=config.dns_pacing_ms / 1000,
                critical=critical,
            )
        except ValueError as exc:
            logger.warning("Skipping domain: %s", exc)
            continue
        if not resolution.addresses:
            logger.warning("No addresses resolved for %s", domain)
        resolutions.append(resolution)

    succeeded = sum(1 for r in resolutions if r.addresses)
    logger.info(
        "Resolution summary: %d domain(s) resolved, %d failed",
        succeeded,
        len(domains) - succeeded,
    )
    return resolutions


def unique_addresses(resolutions: list[DomainResolution]) -> list[Address]:
    """Deduplicate the addresses of all resolutions, ordered numerically."""
    seen: set[Address] = set()
    for resolution in resolutions:
        seen |= resolution.addresses
    return sorted(seen, key=lambda a: a.sort_key)
