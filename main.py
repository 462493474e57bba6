"""
Main CLI entry point for the improvement-proposal tracker.
"""

import asyncio
import json
import logging
import sys

import click
from rich.console import Console
from rich.table import Table
from sqlalchemy.exc import SQLAlchemyError

from analysis.lifecycle import LifecycleCollapser
from analysis.snapshots import SnapshotEngine
from config import Config
from iptracker.database import Database
from iptracker.exceptions import ConfigurationError
from iptracker.merger import HistoryMerger
from iptracker.pipeline import Pipeline
from iptracker.utils import setup_logging

console = Console()


def _open_database() -> Database:
    try:
        db = Database(Config.DATABASE_PATH)
        db.create_tables()
    except SQLAlchemyError as e:
        console.print(f"[red]❌ Database unusable ({Config.DATABASE_PATH}): {e}[/red]")
        sys.exit(1)
    return db


def _protocols(db: Database) -> list:
    protocols = db.get_enabled_protocols()
    if not protocols:
        protocols = sorted({repo.protocol for repo in Config.enabled_repositories()})
    return protocols


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
def cli(debug):
    """Improvement Proposal Tracker - proposal histories and statistics."""
    log_level = "DEBUG" if debug else Config.LOG_LEVEL
    setup_logging(log_level, Config.LOG_FILE)


@cli.command()
def setup():
    """Validate configuration, create tables and seed repositories."""
    console.print("[bold]Setting up proposal tracker...[/bold]\n")

    errors = Config.validate()
    if errors:
        console.print("[bold red]Configuration errors:[/bold red]")
        for error in errors:
            console.print(f"  ❌ {error}")
        sys.exit(1)

    console.print("✅ Configuration valid")

    db = _open_database()
    console.print(f"✅ Database initialized: {Config.DATABASE_PATH}")

    count = db.seed_repositories(Config.enabled_repositories())
    console.print(f"✅ Seeded {count} repositories")

    console.print("\n[bold green]Setup complete! Ready to crawl.[/bold green]")


@cli.command("run-full-pipeline")
def run_full_pipeline():
    """Collect, resolve and snapshot the latest month."""
    errors = Config.validate()
    if errors:
        console.print("[bold red]Configuration errors:[/bold red]")
        for error in errors:
            console.print(f"  ❌ {error}")
        sys.exit(1)

    db = _open_database()
    pipeline = Pipeline(db)

    try:
        summary = asyncio.run(pipeline.run())
    except ConfigurationError as e:
        console.print(f"[red]❌ {e}[/red]")
        sys.exit(1)

    table = Table(title="Crawl Summary", show_header=True)
    table.add_column("Repository", style="cyan")
    table.add_column("Commits", justify="right")
    table.add_column("Documents", justify="right")
    table.add_column("New Versions", justify="right", style="green")
    table.add_column("Status")
    for crawl in summary.crawls:
        status = "[green]ok[/green]" if crawl.succeeded else f"[red]{crawl.error}[/red]"
        table.add_row(
            crawl.repository,
            str(crawl.commits_processed),
            str(crawl.documents_processed),
            str(crawl.versions_created),
            status,
        )
    for name in summary.timed_out:
        table.add_row(name, "-", "-", "-", "[red]timed out[/red]")
    console.print(table)

    console.print(f"Moved proposals linked: {summary.moved_linked}")
    console.print(f"Snapshots computed: {summary.snapshots_computed}")
    console.print(
        f"\n[bold]Processed: {summary.processed}  Failed: {summary.failed}[/bold]"
    )

    if summary.total_failure:
        console.print("[bold red]Every repository failed[/bold red]")
        sys.exit(1)


@cli.command("regenerate-historical-snapshots")
def regenerate_historical_snapshots():
    """Backfill monthly snapshots from first to last known activity."""
    db = _open_database()
    engine = SnapshotEngine(db)

    summary = engine.regenerate_historical(_protocols(db))
    console.print(
        f"✅ Computed {summary.computed}, skipped {summary.skipped}, failed {summary.failed}"
    )
    if summary.failed and not summary.computed and not summary.skipped:
        sys.exit(1)


@cli.command("merge-forked-histories")
def merge_forked_histories():
    """Merge proposal histories split across forked repositories."""
    db = _open_database()
    summary = HistoryMerger(db).merge_forked_histories()

    console.print(
        f"✅ Merged {summary.merged}, already merged {summary.skipped}, failed {summary.failed}"
    )
    for result in summary.results:
        if not result.succeeded:
            console.print(f"  ❌ {result.proposal_number}: {result.error}")

    if summary.failed and not summary.merged and not summary.skipped:
        sys.exit(1)


@cli.command("reset-crawl-checkpoints")
def reset_crawl_checkpoints():
    """Clear every repository checkpoint to force full re-ingestion."""
    db = _open_database()
    count = db.reset_checkpoints()
    console.print(f"✅ Reset checkpoints for {count} repositories")


@cli.command("backfill-global-stats")
def backfill_global_stats():
    """Derive global snapshots for every month with protocol snapshots."""
    db = _open_database()
    summary = SnapshotEngine(db).backfill_global()
    console.print(
        f"✅ Computed {summary.computed}, skipped {summary.skipped}, failed {summary.failed}"
    )
    if summary.failed and not summary.computed and not summary.skipped:
        sys.exit(1)


@cli.command()
@click.argument("protocol")
def stats(protocol):
    """Show the latest stored snapshot for a protocol."""
    db = _open_database()
    snapshot = db.get_latest_protocol_snapshot(protocol)
    if snapshot is None:
        console.print(f"[yellow]No snapshots for {protocol}[/yellow]")
        return

    console.print(f"\n[bold]{protocol} as of {snapshot.snapshot_date:%Y-%m-%d}[/bold]")
    console.print(f"Total proposals: {snapshot.total_proposals}")
    console.print(f"Distinct authors: {snapshot.distinct_authors_count}")
    console.print(f"Authors on finalized: {snapshot.authors_on_finalized_count}")
    console.print(f"Acceptance score: {snapshot.acceptance_score:.2%}")
    console.print(f"Average word count: {snapshot.average_word_count:,.0f}")

    table = Table(title="Tracks", show_header=True)
    table.add_column("Track", style="cyan")
    table.add_column("Proposals", justify="right")
    table.add_column("Finalized", justify="right", style="green")
    table.add_column("Authors", justify="right")
    table.add_column("Acceptance", justify="right", style="magenta")
    for track in sorted(snapshot.tracks, key=lambda t: -t.total_proposals_in_track):
        table.add_row(
            track.track_name,
            str(track.total_proposals_in_track),
            str(track.finalized_proposals_in_track),
            str(track.distinct_authors_in_track_count),
            f"{track.acceptance_score_for_track:.1%}",
        )
    console.print(table)


@cli.command()
@click.argument("protocol")
@click.option("--json", "as_json", is_flag=True, help="Print Sankey nodes/links as JSON")
def lifecycle(protocol, as_json):
    """Show collapsed lifecycle transitions for a protocol."""
    db = _open_database()
    collapser = LifecycleCollapser(db)

    try:
        if as_json:
            click.echo(json.dumps(collapser.sankey(protocol), indent=2))
        else:
            collapser.display(protocol)
    except SQLAlchemyError as e:
        console.print(f"[red]Error reading lifecycle data: {e}[/red]")
        logging.exception("Lifecycle error")
        sys.exit(1)


if __name__ == "__main__":
    cli()
