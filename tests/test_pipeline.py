"""End-to-end tests for the pipeline coordinator with the network mocked out."""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from ipq.config import IpqConfig
from ipq.models import (
    Address,
    BandwidthResult,
    DomainResolution,
    PipelineResult,
    RegionGroup,
    RegionRecord,
)
from ipq.output import format_region_records
from ipq.persistence import GeoCache
from ipq.pipeline import run_pipeline


def _make_config(tmp_path: Path, **overrides) -> IpqConfig:
    defaults = dict(
        dns_servers={"223.5.5.5": "AliDNS", "119.29.29.29": "DNSPod"},
        dns_pacing_ms=0,
        query_interval_ms=0,
        cache_path=str(tmp_path / "geo_cache.json"),
        geo_primary_url="https://geo.test/{ip}",
        geo_secondary_url="https://geo-backup.test/{ip}",
    )
    defaults.update(overrides)
    return IpqConfig(**defaults)


def _connect_replay(mapping: dict[str, list[float]]):
    """Fake ``tcp_connect_latency``: per-address delays, ``None`` when exhausted."""
    iterators = {address: iter(delays) for address, delays in mapping.items()}

    def _connect(address: str, port: int, timeout_ms: float) -> float | None:
        it = iterators.get(address)
        return next(it, None) if it is not None else None

    return _connect


def _geo_handler(codes: dict[str, str]):
    def handler(request: httpx.Request) -> httpx.Response:
        address = request.url.path.rsplit("/", 1)[-1]
        if address not in codes:
            return httpx.Response(404)
        return httpx.Response(200, json={"country_code": codes[address]})

    return handler


def _run(domains, config, cache, handler) -> PipelineResult:
    async def _go() -> PipelineResult:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await run_pipeline(domains, config, cache, http_client=client)

    return asyncio.run(_go())


class TestRunPipeline:
    """Full runs with DNS, TCP and HTTP replaced by fakes."""

    @patch("ipq.pipeline.measure_all", new_callable=AsyncMock)
    @patch("ipq.probes.reachability.tcp_connect_latency", new_callable=AsyncMock)
    @patch("ipq.dns._query_authority", new_callable=AsyncMock)
    def test_single_good_address(
        self,
        mock_query: AsyncMock,
        mock_connect: AsyncMock,
        mock_measure: AsyncMock,
        tmp_path: Path,
    ) -> None:
        answers = {
            "223.5.5.5": ["203.0.113.5", "203.0.113.9"],
            "119.29.29.29": ["203.0.113.9", "203.0.113.5"],
        }
        mock_query.side_effect = lambda domain, nameserver, timeout: answers[nameserver]
        # .5: quick filter, then five stability attempts.  .9 never connects.
        mock_connect.side_effect = _connect_replay(
            {"203.0.113.5": [45.0, 50.0, 52.0, 48.0, 51.0, 49.0]}
        )
        mock_measure.return_value = [
            BandwidthResult(
                Address("203.0.113.5"),
                fast=True,
                throughput_mbps=20.0,
                latency_ms=30.0,
                reachable=True,
            )
        ]
        cfg = _make_config(tmp_path)
        cache = GeoCache(cfg.cache_path)

        result = _run(["example.test"], cfg, cache, _geo_handler({"203.0.113.5": "US"}))

        assert result.stopped_reason is None
        (resolution,) = result.resolutions
        assert (resolution.succeeded, resolution.failed) == (2, 0)
        assert result.addresses == ["203.0.113.5", "203.0.113.9"]
        assert result.good_addresses == ["203.0.113.5"]

        (probe,) = result.probe_results
        assert probe.min_delay == 48.0
        assert probe.avg_delay == 50.0
        assert probe.stability == 2.0

        (candidate,) = result.ranked
        assert candidate.address == "203.0.113.5"
        assert candidate.throughput_mbps == 20.0

        expected = [RegionGroup("美国", (RegionRecord(Address("203.0.113.5"), "US", 48.0),))]
        assert result.advanced_groups == expected
        assert format_region_records(result.advanced_groups) == [
            "203.0.113.5#US 美国节点 | 01"
        ]
        assert result.basic_groups == [
            RegionGroup("美国", (RegionRecord(Address("203.0.113.5"), "US", 45.0),))
        ]
        # Geolocation answers are cached for the next run.
        assert cache.get("203.0.113.5") == "US"

    @patch("ipq.pipeline.probe_all", new_callable=AsyncMock)
    @patch("ipq.probes.reachability.tcp_connect_latency", new_callable=AsyncMock)
    @patch("ipq.pipeline.resolve_domains", new_callable=AsyncMock)
    def test_basic_mode_skips_advanced_stages(
        self,
        mock_resolve: AsyncMock,
        mock_connect: AsyncMock,
        mock_probe_all: AsyncMock,
        tmp_path: Path,
    ) -> None:
        mock_resolve.return_value = [
            DomainResolution("example.test", addresses={Address("198.51.100.1")})
        ]
        mock_connect.return_value = 25.0
        cfg = _make_config(tmp_path, advanced_mode=False)

        result = _run(
            ["example.test"], cfg, GeoCache(cfg.cache_path), _geo_handler({"198.51.100.1": "JP"})
        )

        assert result.advanced is False
        assert [g.country_name for g in result.basic_groups] == ["日本"]
        assert result.ranked == []
        assert result.advanced_groups == []
        mock_probe_all.assert_not_awaited()

    @patch("ipq.pipeline.measure_all", new_callable=AsyncMock)
    @patch("ipq.probes.reachability.tcp_connect_latency", new_callable=AsyncMock)
    @patch("ipq.pipeline.resolve_domains", new_callable=AsyncMock)
    def test_percentile_shortlist(
        self,
        mock_resolve: AsyncMock,
        mock_connect: AsyncMock,
        mock_measure: AsyncMock,
        tmp_path: Path,
    ) -> None:
        addresses = {Address(f"10.0.0.{i}") for i in range(1, 11)}
        mock_resolve.return_value = [DomainResolution("example.test", addresses=addresses)]

        def _connect(address: str, port: int, timeout_ms: float) -> float:
            return float(address.rsplit(".", 1)[1]) * 10

        mock_connect.side_effect = _connect
        mock_measure.return_value = []
        cfg = _make_config(tmp_path, latency_filter_percentage=30)

        result = _run(["example.test"], cfg, GeoCache(cfg.cache_path), _geo_handler({}))

        assert [p.address for p in result.probe_results] == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]
        # Nothing reachable in the bandwidth pass, so nothing is ranked.
        assert result.ranked == []
        assert result.advanced_groups == []
        # Every quick-filter survivor is still geolocated (as Unknown here).
        assert [g.country_name for g in result.basic_groups] == ["未知"]


class TestEarlyStops:
    """The run stops with a reason when a stage leaves nothing to work on."""

    def test_no_domains(self, tmp_path: Path) -> None:
        cfg = _make_config(tmp_path)
        result = asyncio.run(run_pipeline([], cfg, GeoCache(cfg.cache_path)))

        assert result.stopped_reason == "no domains configured"
        assert result.resolutions == []

    @patch("ipq.pipeline.quick_filter_all", new_callable=AsyncMock)
    @patch("ipq.pipeline.resolve_domains", new_callable=AsyncMock)
    def test_nothing_resolved(
        self, mock_resolve: AsyncMock, mock_quick: AsyncMock, tmp_path: Path
    ) -> None:
        mock_resolve.return_value = [DomainResolution("example.test")]
        cfg = _make_config(tmp_path)

        result = _run(["example.test"], cfg, GeoCache(cfg.cache_path), _geo_handler({}))

        assert result.stopped_reason == "no addresses resolved"
        mock_quick.assert_not_awaited()

    @patch("ipq.pipeline.GeoResolver")
    @patch("ipq.probes.reachability.tcp_connect_latency", new_callable=AsyncMock)
    @patch("ipq.pipeline.resolve_domains", new_callable=AsyncMock)
    def test_nothing_passes_quick_filter(
        self,
        mock_resolve: AsyncMock,
        mock_connect: AsyncMock,
        mock_geo_cls,
        tmp_path: Path,
    ) -> None:
        mock_resolve.return_value = [
            DomainResolution("example.test", addresses={Address("192.0.2.1")})
        ]
        mock_connect.return_value = None
        cfg = _make_config(tmp_path)

        result = _run(["example.test"], cfg, GeoCache(cfg.cache_path), _geo_handler({}))

        assert result.stopped_reason == "no address passed the quick filter"
        assert len(result.quick_results) == 1
        mock_geo_cls.from_config.return_value.resolve_many.assert_not_called()
        mock_geo_cls.from_config.return_value.close.assert_called_once()


@pytest.mark.parametrize("advanced", [True, False])
@patch("ipq.pipeline.resolve_domains", new_callable=AsyncMock)
def test_duration_recorded(mock_resolve: AsyncMock, advanced: bool, tmp_path: Path) -> None:
    mock_resolve.return_value = []
    cfg = _make_config(tmp_path, advanced_mode=advanced)

    result = _run(["example.test"], cfg, GeoCache(cfg.cache_path), _geo_handler({}))

    assert result.advanced is advanced
    assert result.duration_seconds >= 0
