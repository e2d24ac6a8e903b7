"""Data models: addresses, per-stage probe results, cache entries, region groups."""

from dataclasses import dataclass, field
from datetime import datetime


def is_valid_address(text: object) -> bool:
    """Return True if *text* is a dotted-quad IPv4 address.

    Exactly four dot-separated parts are required, and each part must be an
    ASCII decimal integer in ``[0, 255]``.
    """
    if not isinstance(text, str):
        return False
    parts = text.split(".")
    if len(parts) != 4:
        return False
    for part in parts:
        if not (part.isascii() and part.isdigit()):
            return False
        if int(part) > 255:
            return False
    return True


class Address(str):
    """A validated dotted-quad IPv4 address.

    Behaves exactly like the underlying string (hashing, equality, JSON
    serialisation), so sets of addresses deduplicate on the dotted quad.

    Raises:
        ValueError: If the value is not a valid dotted-quad address.
    """

    __slots__ = ()

    def __new__(cls, value: str) -> "Address":
        if not is_valid_address(value):
            raise ValueError(f"Invalid IPv4 address: {value!r}")
        return super().__new__(cls, value)

    @property
    def sort_key(self) -> tuple[int, ...]:
        """Octets as integers, for numeric ordering."""
        return tuple(int(part) for part in self.split("."))


@dataclass(frozen=True)
class Authority:
    """One configured DNS resolution source.

    Attributes:
        address: Nameserver address (e.g. ``"223.5.5.5"``).
        label: Human-readable provider label (e.g. ``"AliDNS"``).
    """

    address: str
    label: str


@dataclass(frozen=True)
class ResolutionRecord:
    """Outcome of querying one authority for one domain.

    Attributes:
        domain: Queried domain name.
        authority: Nameserver address.
        label: Nameserver display label.
        addresses: Valid addresses returned (empty on failure).
        success: Whether the attempt produced at least one valid address.
        retried: Whether the critical-authority retry was used.
    """

    domain: str
    authority: str
    label: str
    addresses: frozenset[Address] = frozenset()
    success: bool = False
    retried: bool = False


@dataclass
class DomainResolution:
    """Union of all authority results for a single domain.

    Attributes:
        domain: Queried domain name.
        addresses: Deduplicated addresses returned by any authority.
        records: One ``ResolutionRecord`` per authority, in query order.
    """

    domain: str
    addresses: set[Address] = field(default_factory=set)
    records: list[ResolutionRecord] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.records if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.records if not r.success)


@dataclass(frozen=True)
class QuickFilterResult:
    """Single-pass reachability verdict for one address."""

    address: Address
    good: bool
    delay: float = 0.0


@dataclass(frozen=True)
class ProbeResult:
    """Repeated-connect latency statistics for one address.

    Attributes:
        address: Probed address.
        available: True if at least one attempt connected.
        min_delay: Lowest connect delay among connected attempts (ms).
        avg_delay: Mean connect delay among connected attempts (ms).
        stability: Population variance of connected delays (lower is better).
        samples: Per-attempt delays; failed attempts carry the sentinel value.
    """

    address: Address
    available: bool
    min_delay: float = 0.0
    avg_delay: float = 0.0
    stability: float = 0.0
    samples: tuple[float, ...] = ()


@dataclass(frozen=True)
class BandwidthResult:
    """Download throughput estimate for one address.

    Attributes:
        address: Probed address.
        fast: Throughput exceeded the "fast enough" threshold.
        throughput_mbps: Best observed throughput in Mbit/s.
        latency_ms: Smallest observed connection latency in ms.
        reachable: Any usable signal was obtained, either a positive
            measurement or a successful fallback connect.
    """

    address: Address
    fast: bool
    throughput_mbps: float = 0.0
    latency_ms: float = 0.0
    reachable: bool = False


@dataclass(frozen=True)
class ScoredCandidate:
    """Final ranked record for one address."""

    address: Address
    min_delay: float
    avg_delay: float
    stability: float
    throughput_mbps: float
    latency_ms: float
    score: float


@dataclass
class GeoCacheEntry:
    """Cached country lookup for one address.

    Attributes:
        country_code: ISO 3166-1 alpha-2 code, or ``"Unknown"``.
        timestamp: When the lookup happened (timezone-aware, UTC).
    """

    country_code: str
    timestamp: datetime


@dataclass(frozen=True)
class RegionRecord:
    """An address with its resolved country and a delay used for ordering."""

    address: Address
    country_code: str
    delay: float = 0.0


@dataclass(frozen=True)
class RegionGroup:
    """Records sharing a country display name, ordered by delay."""

    country_name: str
    records: tuple[RegionRecord, ...] = ()


@dataclass
class PipelineResult:
    """Everything produced by one pipeline run, stage by stage.

    Stages that did not run leave their fields empty.  ``stopped_reason`` is
    set when the run terminated early.
    """

    domains: list[str] = field(default_factory=list)
    resolutions: list[DomainResolution] = field(default_factory=list)
    addresses: list[Address] = field(default_factory=list)
    quick_results: list[QuickFilterResult] = field(default_factory=list)
    basic_groups: list[RegionGroup] = field(default_factory=list)
    probe_results: list[ProbeResult] = field(default_factory=list)
    bandwidth_results: list[BandwidthResult] = field(default_factory=list)
    ranked: list[ScoredCandidate] = field(default_factory=list)
    advanced_groups: list[RegionGroup] = field(default_factory=list)
    advanced: bool = False
    stopped_reason: str | None = None
    duration_seconds: float = 0.0

    @property
    def good_addresses(self) -> list[Address]:
        """Addresses that passed the quick filter, in input order."""
        return [r.address for r in self.quick_results if r.good]
