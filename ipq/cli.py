"""CLI entry point for the ipq tool."""

import asyncio
import logging
import logging.handlers
import sys
from pathlib import Path

import click

from ipq.config import ConfigError, IpqConfig, load_config, load_domains
from ipq.output import clean_output_files, render, write_outputs
from ipq.persistence import GeoCache
from ipq.pipeline import run_pipeline

logger = logging.getLogger(__name__)

FORMATS = ("table", "json")

_LOG_FILE_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


@click.command()
@click.option(
    "--config",
    "-c",
    "config_path",
    default=None,
    type=click.Path(exists=False),
    help="Path to YAML config file (default: ~/.ipq/config.yaml).",
)
@click.option(
    "--domains",
    "-d",
    "domains_path",
    default=None,
    type=click.Path(exists=False),
    help="Domain list file (overrides domains_file from the config).",
)
@click.option(
    "--output-dir",
    "-o",
    default=None,
    type=click.Path(file_okay=False),
    help="Directory for report files (overrides output_dir from the config).",
)
@click.option(
    "--format",
    "-f",
    "output_format",
    default="table",
    type=click.Choice(FORMATS, case_sensitive=False),
    show_default=True,
    help="Console summary format.",
)
@click.option(
    "--basic",
    is_flag=True,
    default=False,
    help="Skip the stability, bandwidth and ranking stages.",
)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def main(
    config_path: str | None,
    domains_path: str | None,
    output_dir: str | None,
    output_format: str,
    basic: bool,
    verbose: bool,
) -> None:
    """Rank and geolocate the IP addresses behind a list of domains."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    try:
        cfg = load_config(config_path)
    except (ConfigError, FileNotFoundError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    if domains_path is not None:
        cfg.domains_file = domains_path
    if output_dir is not None:
        cfg.output_dir = output_dir
    if basic:
        cfg.advanced_mode = False

    _configure_file_logging(cfg.log_file)
    logger.debug("Config loaded: %s", cfg)

    try:
        _run(cfg, output_format.lower())
    except Exception:
        logger.exception("Unexpected error; aborting")
        sys.exit(1)


def _run(cfg: IpqConfig, output_format: str) -> None:
    """Run the full lifecycle for one invocation.

    Lifecycle: clean old reports → load domains → load and clean cache →
    pipeline → write reports → render summary.  The cache is saved even if
    the pipeline fails.

    Args:
        cfg: Loaded ``IpqConfig`` instance.
        output_format: Summary format (``"table"`` or ``"json"``).
    """
    clean_output_files(cfg.output_dir)
    domains = load_domains(cfg.domains_file)

    cache = GeoCache(
        cfg.cache_path,
        ttl_hours=cfg.cache_ttl_hours,
        retention_hours=cfg.cache_retention_hours,
        max_entries=cfg.cache_max_entries,
    )
    cache.load()
    cache.cleanup()

    try:
        result = asyncio.run(run_pipeline(domains, cfg, cache))
    finally:
        cache.save()
        logger.info("Cache holds %d entr(ies)", len(cache))

    written = write_outputs(result, cfg.output_dir)
    logger.info("Wrote %d report file(s) to %s", len(written), Path(cfg.output_dir))
    render(result, output_format)


def _configure_file_logging(log_file: str | None) -> None:
    """Attach a size-rotated file handler to the root logger."""
    if not log_file:
        return
    path = Path(log_file).expanduser()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.handlers.RotatingFileHandler(
            path, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
        )
    except OSError as exc:
        logger.warning("Cannot open log file %s: %s", path, exc)
        return
    handler.setFormatter(logging.Formatter(_LOG_FILE_FORMAT))
    logging.getLogger().addHandler(handler)
