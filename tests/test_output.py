"""Tests for report files and console rendering."""

import json
from pathlib import Path

import pytest

from ipq.models import (
    Address,
    PipelineResult,
    QuickFilterResult,
    RegionGroup,
    RegionRecord,
    ScoredCandidate,
)
from ipq.output import (
    BASIC_IP_LIST,
    BASIC_REGION_FILE,
    OUTPUT_FILES,
    PRO_IP_LIST,
    PRO_REGION_FILE,
    RANKING_FILE,
    clean_output_files,
    format_ranking,
    format_region_records,
    render,
    render_to_string,
    write_outputs,
    write_region_records,
)


def _make_candidate(address: str = "203.0.113.5", score: float = 91.5) -> ScoredCandidate:
    return ScoredCandidate(
        address=Address(address),
        min_delay=48.0,
        avg_delay=50.0,
        stability=2.0,
        throughput_mbps=12.34,
        latency_ms=30.0,
        score=score,
    )


def _make_groups() -> list[RegionGroup]:
    return [
        RegionGroup(
            "日本",
            (
                RegionRecord(Address("198.51.100.2"), "JP", 20.0),
                RegionRecord(Address("198.51.100.1"), "JP", 35.0),
            ),
        ),
        RegionGroup("美国", (RegionRecord(Address("203.0.113.5"), "US", 48.0),)),
    ]


def _make_result(**overrides) -> PipelineResult:
    defaults = dict(
        domains=["example.test"],
        addresses=[Address("198.51.100.1"), Address("198.51.100.2"), Address("203.0.113.5")],
        quick_results=[
            QuickFilterResult(Address("198.51.100.1"), good=True, delay=35.0),
            QuickFilterResult(Address("198.51.100.2"), good=True, delay=20.0),
            QuickFilterResult(Address("203.0.113.5"), good=True, delay=48.0),
        ],
        basic_groups=_make_groups(),
        ranked=[_make_candidate()],
        advanced_groups=[RegionGroup("美国", (RegionRecord(Address("203.0.113.5"), "US", 48.0),))],
        advanced=True,
        duration_seconds=4.2,
    )
    defaults.update(overrides)
    return PipelineResult(**defaults)


class TestFormatRegionRecords:
    """The ``ip#CC name节点 | NN`` line format."""

    def test_single_record(self) -> None:
        groups = [RegionGroup("美国", (RegionRecord(Address("203.0.113.5"), "US", 48.0),))]
        assert format_region_records(groups) == ["203.0.113.5#US 美国节点 | 01"]

    def test_rank_restarts_per_group(self) -> None:
        assert format_region_records(_make_groups()) == [
            "198.51.100.2#JP 日本节点 | 01",
            "198.51.100.1#JP 日本节点 | 02",
            "203.0.113.5#US 美国节点 | 01",
        ]

    def test_rank_is_zero_padded(self) -> None:
        records = tuple(
            RegionRecord(Address(f"10.0.0.{i}"), "SG", float(i)) for i in range(1, 12)
        )
        lines = format_region_records([RegionGroup("新加坡", records)])
        assert lines[-1] == "10.0.0.11#SG 新加坡节点 | 11"
        assert lines[0].endswith("| 01")


class TestFormatRanking:
    def test_line(self) -> None:
        assert format_ranking([_make_candidate()]) == [
            "[1/1] 203.0.113.5 (delay 48ms, bandwidth 12.34Mbps, score 91.5)"
        ]


class TestWriteOutputs:
    """write_outputs() writes one file per stage that produced data."""

    def test_advanced_run_writes_all_files(self, tmp_path: Path) -> None:
        written = write_outputs(_make_result(), tmp_path)

        assert sorted(p.name for p in written) == sorted(OUTPUT_FILES)
        assert (tmp_path / BASIC_IP_LIST).read_text(encoding="utf-8").splitlines() == [
            "198.51.100.1",
            "198.51.100.2",
            "203.0.113.5",
        ]
        assert (tmp_path / PRO_IP_LIST).read_text(encoding="utf-8") == "203.0.113.5\n"
        assert (tmp_path / PRO_REGION_FILE).read_text(encoding="utf-8") == (
            "203.0.113.5#US 美国节点 | 01\n"
        )
        assert "score 91.5" in (tmp_path / RANKING_FILE).read_text(encoding="utf-8")

    def test_basic_run_writes_basic_files(self, tmp_path: Path) -> None:
        result = _make_result(ranked=[], advanced_groups=[], advanced=False)

        written = write_outputs(result, tmp_path)

        assert sorted(p.name for p in written) == sorted([BASIC_IP_LIST, BASIC_REGION_FILE])
        assert not (tmp_path / PRO_IP_LIST).exists()

    def test_stopped_run_writes_nothing(self, tmp_path: Path) -> None:
        result = PipelineResult(stopped_reason="no addresses resolved")
        assert write_outputs(result, tmp_path) == []

    def test_empty_region_file_not_written(self, tmp_path: Path) -> None:
        assert write_region_records([], tmp_path / BASIC_REGION_FILE) is False
        assert not (tmp_path / BASIC_REGION_FILE).exists()

    def test_creates_output_dir(self, tmp_path: Path) -> None:
        out = tmp_path / "reports"
        write_outputs(_make_result(), out)
        assert (out / BASIC_IP_LIST).is_file()


class TestCleanOutputFiles:
    def test_removes_only_report_files(self, tmp_path: Path) -> None:
        for name in (BASIC_IP_LIST, RANKING_FILE, "notes.txt"):
            (tmp_path / name).write_text("old\n", encoding="utf-8")

        removed = clean_output_files(tmp_path)

        assert sorted(p.name for p in removed) == sorted([BASIC_IP_LIST, RANKING_FILE])
        assert (tmp_path / "notes.txt").exists()

    def test_missing_dir(self, tmp_path: Path) -> None:
        assert clean_output_files(tmp_path / "nope") == []


class TestRenderTable:
    def test_ranked_run(self) -> None:
        text = render_to_string(_make_result(), "table")

        assert "Ranked candidates (1)" in text
        assert "203.0.113.5" in text
        assert "91.50" in text
        assert "Regions" in text
        assert "美国" in text
        assert "3 resolved, 3 reachable, 1 ranked" in text

    def test_basic_run_shows_reachable(self) -> None:
        text = render_to_string(_make_result(ranked=[], advanced_groups=[]), "table")

        assert "Reachable addresses (3)" in text
        assert "日本" in text

    def test_stopped_run(self) -> None:
        text = render_to_string(PipelineResult(stopped_reason="no domains configured"), "table")

        assert "Stopped early" in text
        assert "no domains configured" in text


class TestRenderJson:
    def test_structure(self) -> None:
        data = json.loads(render_to_string(_make_result(), "json"))

        assert data["stopped_reason"] is None
        assert data["resolved"] == ["198.51.100.1", "198.51.100.2", "203.0.113.5"]
        assert data["ranked"][0]["address"] == "203.0.113.5"
        assert data["ranked"][0]["score"] == 91.5
        assert data["regions"] == {
            "美国": [{"address": "203.0.113.5", "country_code": "US", "delay": 48.0}]
        }
        assert len(data["reachable"]) == 3

    def test_basic_regions_used_without_advanced(self) -> None:
        data = json.loads(render_to_string(_make_result(advanced_groups=[]), "json"))
        assert set(data["regions"]) == {"日本", "美国"}


def test_unknown_format_raises() -> None:
    with pytest.raises(ValueError, match="Unknown output format"):
        render(_make_result(), "xml")
