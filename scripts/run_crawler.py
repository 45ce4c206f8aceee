#!/usr/bin/env python3
"""
Command-line interface for running the job crawler.

Uses typer for clean CLI with subcommands.
"""

import json
import sys
from pathlib import Path
from typing import List, Optional

import typer

# Add project root to path so we can import jobtrawl
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from jobtrawl.contexts.crawling.config import config_to_dict, load_config
from jobtrawl.contexts.crawling.errors import FatalConfigurationError
from jobtrawl.contexts.crawling.orchestration import run_crawl, setup_logger

app = typer.Typer(
    add_completion=False,
    help="Job listing crawler",
)


def _overrides(**values) -> dict:
    return {k: v for k, v in values.items() if v is not None}


@app.command("run")
def run_command(
    start_urls: Optional[List[str]] = typer.Argument(
        None,
        help="Search or job URL(s) to start from. If none given, one is built from --keyword/--location.",
    ),
    config_file: Optional[List[Path]] = typer.Option(
        None,
        "--config",
        "-c",
        help="YAML config file(s), later files win (default: config/crawl.yaml)",
    ),
    keyword: Optional[str] = typer.Option(None, "--keyword", "-k", help="Search keyword"),
    location: Optional[str] = typer.Option(None, "--location", "-l", help="Search location"),
    target: Optional[int] = typer.Option(None, "--target", "-n", help="Number of jobs to save", min=1),
    max_pages: Optional[int] = typer.Option(None, "--max-pages", "-p", help="Listing page budget", min=1),
    max_concurrency: Optional[int] = typer.Option(None, "--max-concurrency", help="Upper worker bound (4-24)"),
    no_details: bool = typer.Option(
        False,
        "--no-details",
        help="Save listing data only, without visiting job pages",
    ),
    sink: Optional[str] = typer.Option(None, "--sink", help="Output sink: jsonl or sql"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Output file, or database URL for sql"),
    quiet: bool = typer.Option(
        False,
        "--quiet",
        "-q",
        help="Only warnings and errors on the console (the log file keeps everything)",
    ),
):
    """
    Crawl job listings and save job records, logging to a timestamped file.

    Examples:

        # Default search from config/crawl.yaml
        $ run_crawler.py run

        # Keyword search, 20 jobs, at most 3 pages
        $ run_crawler.py run --keyword "data engineer" -n 20 -p 3

        # Explicit start URL, listing data only
        $ run_crawler.py run https://www.totaljobs.com/jobs/admin?page=1 --no-details
    """
    log_file = setup_logger(console_level="WARNING" if quiet else "INFO")
    typer.echo(f"Logging to {log_file}", err=True)

    overrides = _overrides(
        start_urls=list(start_urls) if start_urls else None,
        keyword=keyword,
        location=location,
        target_record_count=target,
        max_pages=max_pages,
        max_concurrency=max_concurrency,
        collect_details=False if no_details else None,
        sink=sink,
        output=output,
        show_progress=False if quiet else None,
    )

    try:
        summary = run_crawl(config_paths=config_file or None, overrides=overrides)
    except KeyboardInterrupt:
        typer.secho("\n\nInterrupted by user", fg=typer.colors.YELLOW, err=True)
        raise typer.Exit(code=130)

    result = summary.to_dict()
    result.pop("traceback", None)
    typer.echo(json.dumps(result, indent=2))

    if summary.error_type == FatalConfigurationError.__name__:
        typer.secho(f"Configuration error: {summary.error}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)
    if not summary.ok:
        raise typer.Exit(code=1)


@app.command("show-config")
def show_config_command(
    config_file: Optional[List[Path]] = typer.Option(None, "--config", "-c", help="YAML config file(s)"),
):
    """Print the effective, normalized configuration."""
    try:
        config = load_config(config_file or None)
    except FatalConfigurationError as e:
        typer.secho(f"Configuration error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)
    typer.echo(json.dumps(config_to_dict(config), indent=2))


if __name__ == "__main__":
    app()
