"""Geolocation: online country lookups with cache, fallbacks and offline MaxMind."""

import asyncio
import logging
import time
from dataclasses import dataclass

import geoip2.database
import geoip2.errors
import httpx
import maxminddb

from ipq.config import IpqConfig
from ipq.models import RegionRecord
from ipq.persistence import GeoCache

logger = logging.getLogger(__name__)

UNKNOWN = "Unknown"

USER_AGENT = "ipq/0.1 (+geolocation)"


@dataclass(frozen=True)
class GeoProvider:
    """One HTTP geolocation service.

    Attributes:
        name: Label used in log messages.
        url: URL template with an ``{ip}`` placeholder.
        field: JSON field holding the two-letter country code.
        params: Extra query parameters (e.g. an API token).
    """

    name: str
    url: str
    field: str
    params: dict[str, str] | None = None


def providers_from_config(config: IpqConfig) -> list[GeoProvider]:
    """Return the primary and secondary providers, in query order."""
    token = {"token": config.geo_primary_token} if config.geo_primary_token else None
    return [
        GeoProvider("primary", config.geo_primary_url, config.geo_primary_field, token),
        GeoProvider("secondary", config.geo_secondary_url, config.geo_secondary_field),
    ]


def extract_country_code(payload: object, field: str) -> str | None:
    """Pull a two-letter country code out of a decoded JSON response."""
    if not isinstance(payload, dict):
        return None
    value = payload.get(field)
    if not isinstance(value, str):
        return None
    value = value.strip().upper()
    if len(value) != 2 or not value.isalpha():
        return None
    return value


class GeoIPReader:
    """Wrapper around a MaxMind GeoLite2 Country database reader.

    The reader is tolerant of a missing or corrupt database file: if the
    path is ``None`` or can't be opened, every lookup simply returns ``None``.

    Args:
        country_db_path: Path to ``GeoLite2-Country.mmdb``, or ``None``.
    """

    def __init__(self, country_db_path: str | None = None) -> None:
        self._reader: geoip2.database.Reader | None = None

        if country_db_path:
            try:
                self._reader = geoip2.database.Reader(country_db_path)
                logger.debug("Opened GeoLite2-Country DB: %s", country_db_path)
            except FileNotFoundError:
                logger.warning(
                    "GeoLite2-Country DB not found at %s; offline fallback disabled",
                    country_db_path,
                )
            except maxminddb.InvalidDatabaseError as exc:
                logger.warning(
                    "GeoLite2-Country DB at %s is unreadable (%s); offline fallback disabled",
                    country_db_path,
                    exc,
                )

    def close(self) -> None:
        """Close the underlying database reader."""
        if self._reader:
            self._reader.close()

    def lookup_country(self, ip: str) -> str | None:
        """Return the ISO country code for *ip*, or ``None`` if unknown."""
        if not self._reader:
            return None
        try:
            resp = self._reader.country(ip)
        except (geoip2.errors.AddressNotFoundError, ValueError):
            logger.debug("Country lookup failed for %s", ip)
            return None
        return resp.country.iso_code


class GeoResolver:
    """Resolve addresses to country codes through the cache and providers.

    Lookup order: fresh cache entry, primary provider, secondary provider,
    optional offline MaxMind database.  When everything fails, ``"Unknown"``
    is cached like any other answer so a consistently failing address is not
    re-queried within the freshness window.

    Args:
        cache: Shared geolocation cache.
        client: Async HTTP client used for provider requests.
        providers: Ordered HTTP providers.
        offline: Optional MaxMind reader consulted last.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        cache: GeoCache,
        client: httpx.AsyncClient,
        providers: list[GeoProvider],
        offline: GeoIPReader | None = None,
        timeout: float = 5.0,
    ) -> None:
        self.cache = cache
        self.client = client
        self.providers = providers
        self.offline = offline
        self.timeout = timeout

    @classmethod
    def from_config(
        cls,
        cache: GeoCache,
        client: httpx.AsyncClient,
        config: IpqConfig,
    ) -> "GeoResolver":
        offline = GeoIPReader(config.maxmind_country_db) if config.maxmind_country_db else None
        return cls(
            cache,
            client,
            providers_from_config(config),
            offline=offline,
            timeout=config.api_timeout,
        )

    def close(self) -> None:
        """Release the offline database, if any."""
        if self.offline:
            self.offline.close()

    async def _query(self, provider: GeoProvider, address: str, timeout: float) -> str | None:
        """Ask one provider; any failure is logged and returns ``None``."""
        url = provider.url.format(ip=address)
        try:
            response = await self.client.get(
                url,
                params=provider.params,
                headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
                timeout=timeout,
            )
        except httpx.HTTPError as exc:
            logger.warning("%s geolocation failed for %s: %s", provider.name, address, exc)
            return None

        if response.status_code != 200:
            logger.warning(
                "%s geolocation for %s returned HTTP %d",
                provider.name,
                address,
                response.status_code,
            )
            return None

        try:
            payload = response.json()
        except ValueError:
            logger.warning("%s geolocation for %s returned invalid JSON", provider.name, address)
            return None

        code = extract_country_code(payload, provider.field)
        if code is None:
            logger.warning("%s geolocation for %s returned incomplete data", provider.name, address)
        return code

    async def resolve(self, address: str, timeout: float | None = None) -> str:
        """Return the country code for *address*; never raises on lookup failure."""
        cached = self.cache.get(address)
        if cached is not None:
            logger.debug("%s region from cache: %s", address, cached)
            return cached

        timeout = self.timeout if timeout is None else timeout
        for provider in self.providers:
            code = await self._query(provider, address, timeout)
            if code:
                self.cache.put(address, code)
                logger.info("%s identified as %s (%s provider)", address, code, provider.name)
                return code

        if self.offline:
            code = self.offline.lookup_country(address)
            if code:
                self.cache.put(address, code)
                logger.info("%s identified as %s (offline database)", address, code)
                return code

        logger.warning("All geolocation sources failed for %s; marking %s", address, UNKNOWN)
        self.cache.put(address, UNKNOWN)
        return UNKNOWN

    async def resolve_many(
        self,
        items: list[tuple[str, float]],
        *,
        max_workers: int = 15,
        query_interval_ms: float = 200,
    ) -> list[RegionRecord]:
        """Geolocate ``(address, delay)`` pairs concurrently.

        At most *max_workers* lookups run at once.  Lookups that need the
        network are staggered by *query_interval_ms* per block of ten
        addresses; cache hits are not delayed.

        Returns:
            One ``RegionRecord`` per input pair, in input order.
        """
        logger.info("Geolocating %d address(es)", len(items))
        semaphore = asyncio.Semaphore(max(max_workers, 1))
        t0 = time.monotonic()

        async def _one(index: int, address: str, delay: float) -> RegionRecord:
            if self.cache.get(address) is None and query_interval_ms > 0:
                await asyncio.sleep((index // 10) * query_interval_ms / 1000)
            async with semaphore:
                code = await self.resolve(address)
            return RegionRecord(address=address, country_code=code, delay=delay)

        records = await asyncio.gather(
            *(_one(i, address, delay) for i, (address, delay) in enumerate(items))
        )

        total = len(records)
        for i, record in enumerate(records, start=1):
            logger.info("[%d/%d] %s -> %s", i, total, record.address, record.country_code)
        logger.info(
            "Geolocation finished for %d address(es) in %.1fs",
            total,
            time.monotonic() - t0,
        )
        return list(records)
