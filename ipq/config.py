"""YAML configuration file loading and domain list reading."""

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".ipq"
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_CACHE_PATH = str(DEFAULT_CONFIG_DIR / "geo_cache.json")
DEFAULT_DOMAINS_PATH = str(DEFAULT_CONFIG_DIR / "domains.txt")

# Public resolvers inside mainland China; they hand back the edge addresses
# closest to domestic users.
DEFAULT_DNS_SERVERS: dict[str, str] = {
    "223.5.5.5": "AliDNS",
    "223.6.6.6": "AliDNS",
    "180.76.76.76": "BaiduDNS",
    "119.29.29.29": "DNSPod",
    "182.254.116.116": "DNSPod",
    "114.114.114.114": "114DNS",
    "114.114.115.115": "114DNS",
    "123.123.123.123": "China Unicom",
    "123.123.123.124": "China Unicom",
}

DEFAULT_CRITICAL_DNS_SERVERS: tuple[str, ...] = (
    "223.5.5.5",
    "223.6.6.6",
    "119.29.29.29",
)

DEFAULT_BANDWIDTH_ENDPOINTS: tuple[str, ...] = (
    "https://speed.cloudflare.com/__down?bytes={size}",
)


@dataclass
class IpqConfig:
    """Top-level configuration for the ipq tool.

    Every field has a default so the tool runs without a config file.

    Attributes:
        dns_servers: Nameserver address → display label, queried in order.
        critical_dns_servers: Nameservers that get one retry on failure.
        dns_timeout: Per-authority resolution timeout in seconds.
        dns_pacing_ms: Pause between consecutive authorities.
        test_ports: TCP ports tried by the reachability probes.
        connect_timeout_ms: Per-connect timeout.
        good_delay_ms: A connect faster than this stops the port loop early.
        reject_delay_ms: Quick filter rejects a best delay above this.
        failure_sentinel_ms: Delay recorded for an attempt that never connected.
        api_timeout: Geolocation request timeout in seconds.
        query_interval_ms: Pacing between domains and between blocks of
            geolocation lookups.
        max_workers: Concurrency cap for the quick filter and geolocation.
        batch_size: Addresses per block in the sequential probing stages.
        cache_path: JSON file backing the geolocation cache.
        cache_ttl_hours: Freshness window for cached lookups.
        cache_retention_hours: Age after which entries are deleted outright.
        cache_max_entries: Cache size cap enforced by cleanup.
        advanced_mode: Run the stability, bandwidth and ranking stages.
        tcp_ping_count: Attempts per address in the stability pass.
        bandwidth_test_count: Attempts per address in the bandwidth pass.
        bandwidth_test_size_mb: Requested download size.
        bandwidth_max_seconds: Wall-clock cap on a single download.
        bandwidth_request_timeout: httpx timeout for a single download.
        bandwidth_fast_mbps: Throughput that short-circuits further probing.
        bandwidth_endpoints: URL templates with a ``{size}`` placeholder.
        latency_filter_percentage: Share of quick-filter survivors kept
            for the expensive stages.
        geo_primary_url: Primary provider URL template (``{ip}``).
        geo_primary_field: Country-code field in the primary response.
        geo_primary_token: Optional API token sent to the primary provider.
        geo_secondary_url: Secondary provider URL template (``{ip}``).
        geo_secondary_field: Country-code field in the secondary response.
        maxmind_country_db: Optional GeoLite2-Country.mmdb consulted offline
            when both providers fail.
        domains_file: Text file listing the domains to resolve.
        output_dir: Directory receiving the report files.
        log_file: Optional rotating log file.
    """

    dns_servers: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_DNS_SERVERS)
    )
    critical_dns_servers: list[str] = field(
        default_factory=lambda: list(DEFAULT_CRITICAL_DNS_SERVERS)
    )
    dns_timeout: float = 5.0
    dns_pacing_ms: int = 100
    test_ports: list[int] = field(default_factory=lambda: [443])
    connect_timeout_ms: int = 3000
    good_delay_ms: float = 200.0
    reject_delay_ms: float = 500.0
    failure_sentinel_ms: float = 999.0
    api_timeout: float = 5.0
    query_interval_ms: int = 200
    max_workers: int = 15
    batch_size: int = 10
    cache_path: str = DEFAULT_CACHE_PATH
    cache_ttl_hours: float = 168.0
    cache_retention_hours: float = 720.0
    cache_max_entries: int = 1000
    advanced_mode: bool = True
    tcp_ping_count: int = 5
    bandwidth_test_count: int = 3
    bandwidth_test_size_mb: int = 10
    bandwidth_max_seconds: float = 10.0
    bandwidth_request_timeout: float = 15.0
    bandwidth_fast_mbps: float = 5.0
    bandwidth_endpoints: list[str] = field(
        default_factory=lambda: list(DEFAULT_BANDWIDTH_ENDPOINTS)
    )
    latency_filter_percentage: float = 30.0
    geo_primary_url: str = "https://api.ipinfo.io/lite/{ip}"
    geo_primary_field: str = "country_code"
    geo_primary_token: str | None = None
    geo_secondary_url: str = "http://ip-api.com/json/{ip}?fields=status,countryCode"
    geo_secondary_field: str = "countryCode"
    maxmind_country_db: str | None = None
    domains_file: str = DEFAULT_DOMAINS_PATH
    output_dir: str = "."
    log_file: str | None = None

    @property
    def bandwidth_test_size_bytes(self) -> int:
        return self.bandwidth_test_size_mb * 1024 * 1024


# Keys in the YAML file that map to IpqConfig fields.
_YAML_KEY_TO_FIELD: dict[str, str] = {f.name: f.name for f in fields(IpqConfig)}


def load_config(path: Path | str | None = None) -> IpqConfig:
    """Load configuration from a YAML file.

    Args:
        path: Explicit path to a YAML config file.  If ``None``, the
            default location (``~/.ipq/config.yaml``) is tried.  If the
            default file doesn't exist, an ``IpqConfig`` with all defaults
            is returned silently.

    Returns:
        A populated ``IpqConfig`` instance.

    Raises:
        FileNotFoundError: If an explicit *path* was given but doesn't exist.
        ConfigError: If the file contains invalid YAML, has an unexpected
            top-level structure, or a value has the wrong shape.
    """
    resolved = _resolve_path(path)

    if resolved is None:
        logger.debug("No config file found; using defaults")
        return IpqConfig()

    logger.debug("Loading config from %s", resolved)
    text = resolved.read_text(encoding="utf-8")

    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {resolved}: {exc}") from exc

    if raw is None:
        # Empty file: treat as all-defaults.
        return IpqConfig()

    if not isinstance(raw, dict):
        raise ConfigError(
            f"Expected a YAML mapping at the top level in {resolved}, "
            f"got {type(raw).__name__}"
        )

    return _build_config(raw, source=resolved)


def load_domains(path: Path | str) -> list[str]:
    """Read the domain list file.

    Blank lines and lines starting with ``#`` are skipped; anything after a
    ``#`` on a domain line is treated as a comment.

    Args:
        path: Path to the domain list.

    Returns:
        Domains in file order.  A missing file yields an empty list.
    """
    p = Path(path).expanduser()
    if not p.is_file():
        logger.warning("Domain list %s does not exist", p)
        return []

    domains: list[str] = []
    for line in p.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        domain = stripped.split("#", 1)[0].strip()
        if domain:
            domains.append(domain)

    logger.info("Loaded %d domain(s) from %s", len(domains), p)
    return domains


class ConfigError(Exception):
    """Raised when a configuration file is malformed or unreadable."""


# ------------------------------------------------------------------
# Internal helpers
# ------------------------------------------------------------------


def _resolve_path(path: Path | str | None) -> Path | None:
    """Return a concrete ``Path`` to read, or ``None`` if nothing to read.

    Raises:
        FileNotFoundError: If the caller supplied an explicit path that
            doesn't exist on disk.
    """
    if path is not None:
        p = Path(path).expanduser()
        if not p.is_file():
            raise FileNotFoundError(f"Config file not found: {p}")
        return p

    # Try the default location.
    default = DEFAULT_CONFIG_PATH.expanduser()
    if default.is_file():
        return default
    return None


def _build_config(raw: dict, source: Path) -> IpqConfig:
    """Map raw YAML dict to an ``IpqConfig``, ignoring unknown keys."""
    kwargs: dict[str, object] = {}

    for yaml_key, field_name in _YAML_KEY_TO_FIELD.items():
        if yaml_key in raw:
            kwargs[field_name] = raw[yaml_key]

    unknown = set(raw) - set(_YAML_KEY_TO_FIELD)
    if unknown:
        logger.warning(
            "Ignoring unknown config keys in %s: %s",
            source,
            ", ".join(sorted(unknown)),
        )

    _check_shapes(kwargs, source)
    return IpqConfig(**kwargs)


def _check_shapes(kwargs: dict[str, object], source: Path) -> None:
    """Reject container values whose YAML type can't be used as configured."""
    servers = kwargs.get("dns_servers")
    if servers is not None:
        if not isinstance(servers, dict):
            raise ConfigError(
                f"dns_servers in {source} must be a mapping of address to label"
            )
        kwargs["dns_servers"] = {str(k): str(v) for k, v in servers.items()}

    for key in ("critical_dns_servers", "test_ports", "bandwidth_endpoints"):
        value = kwargs.get(key)
        if value is not None and not isinstance(value, list):
            raise ConfigError(f"{key} in {source} must be a list")
