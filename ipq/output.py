"""Output: report files, rich table summary, JSON summary, format dispatch."""

import dataclasses
import json
import logging
import sys
from io import StringIO
from pathlib import Path

from rich.console import Console
from rich.table import Table

from ipq.aggregator import region_distribution
from ipq.models import PipelineResult, RegionGroup, ScoredCandidate

logger = logging.getLogger(__name__)

BASIC_IP_LIST = "DNSIPlist.txt"
BASIC_REGION_FILE = "SenflareDNS.txt"
PRO_IP_LIST = "DNSIPlist-Pro.txt"
PRO_REGION_FILE = "SenflareDNS-Pro.txt"
RANKING_FILE = "Ranking.txt"

OUTPUT_FILES = (
    BASIC_IP_LIST,
    BASIC_REGION_FILE,
    PRO_IP_LIST,
    PRO_REGION_FILE,
    RANKING_FILE,
)

# Columns displayed in the ranking table.
_RANKING_COLUMNS = [
    ("IP", "address"),
    ("Min ms", "min_delay"),
    ("Avg ms", "avg_delay"),
    ("Variance", "stability"),
    ("Mbps", "throughput_mbps"),
    ("Score", "score"),
]

# How many entries to show in the region table.
_TOP_N = 10


# ---------------------------------------------------------------------------
# Report files
# ---------------------------------------------------------------------------


def clean_output_files(output_dir: Path | str) -> list[Path]:
    """Delete report files left over from a previous run.

    Returns:
        The paths that were removed.
    """
    removed: list[Path] = []
    for name in OUTPUT_FILES:
        path = Path(output_dir) / name
        if not path.exists():
            continue
        try:
            path.unlink()
        except OSError as exc:
            logger.warning("Failed to delete %s: %s", path, exc)
            continue
        logger.info("Deleted old output file %s", path)
        removed.append(path)
    return removed


def format_region_records(groups: list[RegionGroup]) -> list[str]:
    """Render region groups as ``ip#CC name节点 | NN`` lines.

    ``NN`` is the two-digit rank of the record inside its group.
    """
    lines: list[str] = []
    for group in groups:
        for rank, record in enumerate(group.records, start=1):
            lines.append(
                f"{record.address}#{record.country_code} "
                f"{group.country_name}节点 | {rank:02d}"
            )
    return lines


def format_ranking(candidates: list[ScoredCandidate]) -> list[str]:
    """Render ranked candidates as one human-readable line each."""
    total = len(candidates)
    return [
        f"[{i}/{total}] {c.address} (delay {_num(c.min_delay)}ms, "
        f"bandwidth {c.throughput_mbps:.2f}Mbps, score {c.score:.1f})"
        for i, c in enumerate(candidates, start=1)
    ]


def _write_lines(lines: list[str], path: Path) -> bool:
    content = "\n".join(lines) + ("\n" if lines else "")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    except OSError as exc:
        logger.error("Failed to write %s: %s", path, exc)
        return False
    return True


def write_ip_list(addresses: list[str], path: Path | str) -> bool:
    """Write one address per line."""
    ok = _write_lines([str(a) for a in addresses], Path(path))
    if ok:
        logger.info("Saved %d address(es) to %s", len(addresses), path)
    return ok


def write_region_records(groups: list[RegionGroup], path: Path | str) -> bool:
    """Write region groups in the ``ip#CC name节点 | NN`` format."""
    lines = format_region_records(groups)
    if not lines:
        logger.warning("No region records to save to %s", path)
        return False
    ok = _write_lines(lines, Path(path))
    if ok:
        logger.info("Saved %d region record(s) to %s", len(lines), path)
    return ok


def write_ranking(candidates: list[ScoredCandidate], path: Path | str) -> bool:
    """Write the ranking details file."""
    ok = _write_lines(format_ranking(candidates), Path(path))
    if ok:
        logger.info("Saved ranking details to %s", path)
    return ok


def write_outputs(result: PipelineResult, output_dir: Path | str) -> list[Path]:
    """Write the report files for every stage that produced data.

    Returns:
        Paths of the files written.
    """
    out = Path(output_dir)
    written: list[Path] = []

    good = result.good_addresses
    if good and write_ip_list(good, out / BASIC_IP_LIST):
        written.append(out / BASIC_IP_LIST)
    if result.basic_groups and write_region_records(
        result.basic_groups, out / BASIC_REGION_FILE
    ):
        written.append(out / BASIC_REGION_FILE)

    if result.ranked:
        if write_ip_list([c.address for c in result.ranked], out / PRO_IP_LIST):
            written.append(out / PRO_IP_LIST)
        if write_ranking(result.ranked, out / RANKING_FILE):
            written.append(out / RANKING_FILE)
    if result.advanced_groups and write_region_records(
        result.advanced_groups, out / PRO_REGION_FILE
    ):
        written.append(out / PRO_REGION_FILE)

    return written


# ---------------------------------------------------------------------------
# Console summary
# ---------------------------------------------------------------------------


def render(
    result: PipelineResult,
    fmt: str,
    *,
    file: object | None = None,
    width: int | None = None,
) -> None:
    """Dispatch the run summary to the appropriate formatter.

    Args:
        result: Pipeline result to render.
        fmt: Output format, ``"table"`` or ``"json"``.
        file: Writable file object for output (default: ``sys.stdout``).
        width: Explicit console width (default: auto-detect).

    Raises:
        ValueError: If *fmt* is not ``"table"`` or ``"json"``.
    """
    if fmt == "table":
        render_table(result, file=file, width=width)
    elif fmt == "json":
        render_json(result, file=file)
    else:
        raise ValueError(f"Unknown output format: {fmt!r}")


def render_table(
    result: PipelineResult,
    *,
    file: object | None = None,
    width: int | None = None,
) -> None:
    """Render *result* as ``rich`` tables.

    Shows the ranking when the advanced stages produced one, otherwise the
    quick-filter survivors, followed by the region distribution.
    """
    out = file or sys.stdout
    console = Console(file=out, highlight=False, width=width)

    if result.stopped_reason:
        console.print(f"[bold]Stopped early:[/bold] {result.stopped_reason}")
        return

    if result.ranked:
        _render_ranking(console, result.ranked)
    else:
        _render_quick(console, result)

    groups = result.advanced_groups or result.basic_groups
    if groups:
        _render_regions(console, groups)

    console.print(
        f"  {len(result.addresses)} resolved, {len(result.good_addresses)} reachable, "
        f"{len(result.ranked)} ranked in {result.duration_seconds:.1f}s"
    )


def _render_ranking(console: Console, ranked: list[ScoredCandidate]) -> None:
    table = Table(title=f"Ranked candidates ({len(ranked)})")
    table.add_column("#", justify="right")
    for header, _ in _RANKING_COLUMNS:
        table.add_column(header)

    for i, candidate in enumerate(ranked, start=1):
        table.add_row(
            str(i),
            *[_fmt(getattr(candidate, attr)) for _, attr in _RANKING_COLUMNS],
        )
    console.print(table)


def _render_quick(console: Console, result: PipelineResult) -> None:
    table = Table(title=f"Reachable addresses ({len(result.good_addresses)})")
    table.add_column("IP")
    table.add_column("Delay ms", justify="right")
    for r in result.quick_results:
        if r.good:
            table.add_row(str(r.address), _fmt(r.delay))
    console.print(table)


def _render_regions(console: Console, groups: list[RegionGroup]) -> None:
    table = Table(title="Regions")
    table.add_column("Region")
    table.add_column("Addresses", justify="right")
    for name, count in region_distribution(groups)[:_TOP_N]:
        table.add_row(name, str(count))
    console.print(table)


def render_json(result: PipelineResult, *, file: object | None = None) -> None:
    """Render *result* as a JSON document."""
    out = file or sys.stdout
    out.write(json.dumps(_result_to_dict(result), indent=2, ensure_ascii=False))  # type: ignore[union-attr]
    out.write("\n")  # type: ignore[union-attr]


def _result_to_dict(result: PipelineResult) -> dict:
    """Convert a ``PipelineResult`` to a plain, JSON-friendly dict."""
    return {
        "stopped_reason": result.stopped_reason,
        "duration_seconds": round(result.duration_seconds, 3),
        "resolved": [str(a) for a in result.addresses],
        "reachable": [
            {"address": str(r.address), "delay": r.delay}
            for r in result.quick_results
            if r.good
        ],
        "ranked": [dataclasses.asdict(c) for c in result.ranked],
        "regions": {
            g.country_name: [dataclasses.asdict(r) for r in g.records]
            for g in (result.advanced_groups or result.basic_groups)
        },
    }


def _num(value: float) -> str:
    """Drop a trailing ``.0`` from whole-number delays."""
    return str(int(value)) if float(value).is_integer() else f"{value:.2f}"


def _fmt(value: object) -> str:
    """Format a field value for table display; floats get two decimals."""
    if isinstance(value, float):
        return f"{value:.2f}"
    return str(value)


def render_to_string(result: PipelineResult, fmt: str, *, width: int = 200) -> str:
    """Render to a string instead of stdout, useful for testing.

    Args:
        result: Pipeline result to render.
        fmt: Output format, ``"table"`` or ``"json"``.
        width: Console width for table rendering (default: 200).

    Returns:
        The rendered output as a string.
    """
    buf = StringIO()
    render(result, fmt, file=buf, width=width)
    return buf.getvalue()
