"""JSON-backed geolocation cache with freshness TTL, retention window and size cap."""

import json
import logging
import threading
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from ipq.models import GeoCacheEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FreshEntry:
    """On-disk entry carrying a country code and an ISO-8601 timestamp."""

    country_code: str
    timestamp: datetime


@dataclass(frozen=True)
class LegacyEntry:
    """Older on-disk entry: a bare country-code string with no timestamp."""

    country_code: str


def is_cache_valid(
    timestamp: datetime | None,
    ttl_hours: float = 24,
    now: datetime | None = None,
) -> bool:
    """Return True if *timestamp* is younger than *ttl_hours*.

    An age of exactly *ttl_hours* is no longer valid.
    """
    if timestamp is None:
        return False
    now = now or datetime.now(UTC)
    return now - timestamp < timedelta(hours=ttl_hours)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC.

    Raises:
        ValueError: If *value* is not ISO-8601.
    """
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts


def decode_entry(raw: object) -> FreshEntry | LegacyEntry | None:
    """Classify one persisted value, or return None if it is unusable."""
    if isinstance(raw, str) and raw:
        return LegacyEntry(country_code=raw)
    if isinstance(raw, dict):
        code = raw.get("region", raw.get("country_code"))
        stamp = raw.get("timestamp")
        if isinstance(code, str) and code and isinstance(stamp, str):
            try:
                return FreshEntry(country_code=code, timestamp=parse_timestamp(stamp))
            except ValueError:
                return None
    return None


class GeoCache:
    """Address → country cache persisted as a single JSON document.

    The cache is loaded once at the start of a run and saved once at the end;
    nothing is written implicitly.  ``get``/``put`` touch a single key each,
    while ``cleanup`` holds the lock for the whole expiry and eviction pass.

    Args:
        path: JSON file location.
        ttl_hours: Freshness window used by ``get``.
        retention_hours: Entries older than this are deleted by ``cleanup``.
        max_entries: Size cap enforced by ``cleanup``.
    """

    def __init__(
        self,
        path: Path | str,
        ttl_hours: float = 168,
        retention_hours: float = 720,
        max_entries: int = 1000,
    ) -> None:
        self.path = Path(path).expanduser()
        self.ttl_hours = ttl_hours
        self.retention_hours = retention_hours
        self.max_entries = max_entries
        self._entries: dict[str, GeoCacheEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, address: object) -> bool:
        return address in self._entries

    def entries(self) -> dict[str, GeoCacheEntry]:
        """Return a snapshot copy of all entries."""
        with self._lock:
            return dict(self._entries)

    def entry(self, address: str) -> GeoCacheEntry | None:
        """Return the raw entry for *address*, fresh or not."""
        with self._lock:
            return self._entries.get(address)

    def get(self, address: str, now: datetime | None = None) -> str | None:
        """Return the cached code for *address* if it is still fresh."""
        with self._lock:
            entry = self._entries.get(address)
        if entry is None or not is_cache_valid(entry.timestamp, self.ttl_hours, now):
            return None
        return entry.country_code

    def put(self, address: str, country_code: str, now: datetime | None = None) -> None:
        """Store or overwrite the entry for *address*."""
        entry = GeoCacheEntry(country_code=country_code, timestamp=now or datetime.now(UTC))
        with self._lock:
            self._entries[address] = entry

    def load(self) -> int:
        """Replace the in-memory entries with the persisted ones.

        A missing or unreadable file leaves the cache empty.

        Returns:
            Number of entries loaded.
        """
        with self._lock:
            self._entries = {}

        if not self.path.is_file():
            logger.info("Cache file %s does not exist; starting empty", self.path)
            return 0

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Failed to load cache file %s: %s", self.path, exc)
            return 0

        if not isinstance(raw, dict):
            logger.warning("Cache file %s is not a JSON object; ignoring it", self.path)
            return 0

        loaded_at = datetime.now(UTC)
        entries: dict[str, GeoCacheEntry] = {}
        legacy = 0
        for address, value in raw.items():
            decoded = decode_entry(value)
            match decoded:
                case FreshEntry(country_code=code, timestamp=ts):
                    entries[address] = GeoCacheEntry(country_code=code, timestamp=ts)
                case LegacyEntry(country_code=code):
                    entries[address] = GeoCacheEntry(country_code=code, timestamp=loaded_at)
                    legacy += 1
                case _:
                    logger.debug("Dropping malformed cache entry for %s: %r", address, value)

        with self._lock:
            self._entries = entries

        if legacy:
            logger.info("Migrated %d legacy cache entr(ies) without timestamps", legacy)
        logger.info("Loaded %d cache entr(ies) from %s", len(entries), self.path)
        return len(entries)

    def save(self) -> bool:
        """Rewrite the cache file with every in-memory entry.

        Returns:
            True on success; False if the file could not be written.
        """
        with self._lock:
            payload = {
                address: {
                    "region": entry.country_code,
                    "timestamp": entry.timestamp.isoformat(),
                }
                for address, entry in self._entries.items()
            }

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                json.dumps(payload, indent=2, ensure_ascii=False),
                encoding="utf-8",
            )
        except OSError as exc:
            logger.error("Failed to save cache file %s: %s", self.path, exc)
            return False

        logger.info("Saved %d cache entr(ies) to %s", len(payload), self.path)
        return True

    def cleanup(self, now: datetime | None = None) -> tuple[int, int]:
        """Drop entries past the retention window, then enforce the size cap.

        Returns:
            ``(expired, evicted)`` counts.
        """
        now = now or datetime.now(UTC)
        with self._lock:
            expired = [
                address
                for address, entry in self._entries.items()
                if not is_cache_valid(entry.timestamp, self.retention_hours, now)
            ]
            for address in expired:
                del self._entries[address]

            evicted = 0
            overflow = len(self._entries) - self.max_entries
            if overflow > 0:
                oldest = sorted(self._entries, key=lambda a: self._entries[a].timestamp)
                for address in oldest[:overflow]:
                    del self._entries[address]
                evicted = overflow

        if expired:
            logger.info("Removed %d expired cache entr(ies)", len(expired))
        if evicted:
            logger.info("Cache over capacity; evicted %d oldest entr(ies)", evicted)
        return len(expired), evicted
