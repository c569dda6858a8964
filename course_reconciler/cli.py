"""
Command-line entry point.

Usage:
    python -m course_reconciler.cli --records records.json --catalog catalog.json
    python -m course_reconciler.cli --store-dir mappings latest RECORD_ID
    python -m course_reconciler.cli --store-dir mappings stats SESSION_ID
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from course_reconciler.coordinator import ReconciliationCoordinator, RunOutcome
from course_reconciler.models.config import ReconciliationConfig
from course_reconciler.models.session import SessionStatus
from course_reconciler.utils.confidence import calculate_confidence_stats
from course_reconciler.utils.errors import ReconciliationError
from course_reconciler.utils.logger import configure_logging, get_logger
from course_reconciler.utils.mapping_store import MappingStore
from course_reconciler.utils.matching_client import (
    ClaudeMatchingClient,
    HttpMatchingClient,
    MatchingClient,
)
from course_reconciler.utils.progress_tracker import ProgressTracker
from course_reconciler.utils.source_loader import JsonCatalogStore, JsonSourceStore

console = Console()

STATUS_STYLES = {
    SessionStatus.COMPLETED: "green",
    SessionStatus.FAILED: "red",
    SessionStatus.CANCELLED: "yellow",
    SessionStatus.IN_PROGRESS: "blue",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="course-reconciler",
        description="Reconcile extracted course records against a reference catalog.",
    )
    parser.add_argument("--config", type=Path, help="Path to reconciliation.json")
    parser.add_argument(
        "--store-dir", type=Path, default=Path("mappings"), help="Mapping store directory"
    )

    subparsers = parser.add_subparsers(dest="command")

    latest = subparsers.add_parser("latest", help="Show the latest mapping of a record")
    latest.add_argument("record_id")

    stats = subparsers.add_parser("stats", help="Show the stats of a session")
    stats.add_argument("session_id")

    parser.add_argument("--records", type=Path, help="Extraction JSON file")
    parser.add_argument("--catalog", type=Path, help="Catalog JSON file")
    parser.add_argument("--grade-context", help="Grade context shared by all records")
    parser.add_argument("--endpoint", help="HTTP matching endpoint (Claude is used otherwise)")
    parser.add_argument("--model", help="Claude model override")
    parser.add_argument("--dry-run", action="store_true", help="Run without persisting")
    parser.add_argument(
        "--no-retry", action="store_true", help="Do not start fresh runs after call failures"
    )
    return parser


def load_config(config_path: Optional[Path], dry_run: bool) -> ReconciliationConfig:
    """Config from file when given or present, defaults otherwise."""
    default_path = Path("config/reconciliation.json")
    if config_path is not None:
        config = ReconciliationConfig.load(config_path)
    elif default_path.exists():
        config = ReconciliationConfig.load(default_path)
    else:
        config = ReconciliationConfig()

    if dry_run:
        config = config.model_copy(update={"dry_run": True})
    return config


def build_client(args: argparse.Namespace, config: ReconciliationConfig) -> MatchingClient:
    if args.endpoint:
        return HttpMatchingClient(args.endpoint, timeout=config.external_call_timeout)
    return ClaudeMatchingClient(model=args.model)


def render_summary(outcomes: list[RunOutcome], config: ReconciliationConfig) -> None:
    table = Table(title="Reconciliation Sessions")
    table.add_column("Session", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Total", justify="right")
    table.add_column("Exact", justify="right")
    table.add_column("Prefix", justify="right")
    table.add_column("Semantic", justify="right")
    table.add_column("Flagged", justify="right")
    table.add_column("Unmapped", justify="right")
    table.add_column("Rejected", justify="right")
    table.add_column("Success", justify="right")

    for outcome in outcomes:
        session = outcome.session
        stats = session.stats
        style = STATUS_STYLES.get(session.status, "white")
        table.add_row(
            session.id[:8],
            f"[{style}]{session.status.value}[/{style}]",
            str(stats.total),
            str(stats.exact_matches),
            str(stats.prefix_matches),
            str(stats.semantic_matches),
            str(stats.flagged),
            str(stats.unmapped),
            str(stats.validation_rejections),
            f"{stats.success_rate:.1f}%",
        )

    console.print(table)

    for outcome in outcomes:
        session = outcome.session
        if session.error is not None:
            console.print(
                f"[red]{session.id[:8]}: {session.error.kind}: {session.error.message}[/red]"
            )
        for warning in session.warnings:
            console.print(f"[yellow]{session.id[:8]}: {warning}[/yellow]")

    results = [
        result
        for outcome in outcomes
        if outcome.committed or config.dry_run
        for result in outcome.results
    ]
    if results:
        confidence = calculate_confidence_stats(
            results, low_threshold=config.confidence_flag_threshold
        )
        overall = confidence["overall"]
        console.print(
            f"Confidence: {overall['high']} high, {overall['medium']} medium, "
            f"{overall['low']} low ({confidence['quality_assessment']})"
        )


def show_latest(store: MappingStore, record_id: str) -> int:
    result = store.read_latest_mapping(record_id)
    if result is None:
        console.print(f"[yellow]No completed mapping for {record_id}[/yellow]")
        return 1

    table = Table(title=f"Latest mapping for {record_id}", show_header=False)
    table.add_row("Session", result.session_id)
    table.add_row("Status", result.status.value)
    table.add_row("Code", result.mapped_code or "-")
    table.add_row("Confidence", str(result.confidence))
    table.add_row("Method", result.match_method.value)
    table.add_row("Alternatives", ", ".join(result.alternative_codes) or "-")
    table.add_row("Flags", ", ".join(result.flags) or "-")
    table.add_row("Reasoning", result.reasoning or "-")
    console.print(table)
    return 0


def show_stats(store: MappingStore, session_id: str) -> int:
    session = store.get_session(session_id)
    if session is None:
        console.print(f"[yellow]Unknown session {session_id}[/yellow]")
        return 1

    table = Table(title=f"Session {session_id}", show_header=False)
    table.add_row("Status", session.status.value)
    table.add_row("Duration", f"{session.duration_ms} ms")
    for field, value in session.stats.model_dump().items():
        table.add_row(field, str(value))
    table.add_row("External calls", str(len(session.external_calls)))
    table.add_row("Findings", str(len(session.validation_findings)))
    table.add_row("Digest intact", str(store.verify_session(session_id)))
    console.print(table)
    return 0


async def reconcile(args: argparse.Namespace, config: ReconciliationConfig) -> int:
    logger = get_logger(correlation_id="cli", phase="cli", component="cli")

    records = JsonSourceStore(args.records.parent).fetch_source_records(str(args.records))
    catalog = JsonCatalogStore(args.catalog).fetch_catalog()
    logger.info("Inputs loaded", records=len(records), catalog_entries=len(catalog))

    store = None if config.dry_run else MappingStore(args.store_dir)
    coordinator = ReconciliationCoordinator(build_client(args, config), store=store, config=config)

    outcomes = await coordinator.reconcile_in_batches(
        records,
        catalog,
        grade_context=args.grade_context,
        retry=not args.no_retry,
        tracker=ProgressTracker(console=console),
    )
    render_summary(outcomes, config)

    return 0 if all(o.session.status == SessionStatus.COMPLETED for o in outcomes) else 1


def main(argv: Optional[list[str]] = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config, args.dry_run)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Invalid configuration: {e}[/red]")
        return 2

    configure_logging(log_level=config.log_level)

    try:
        if args.command == "latest":
            return show_latest(MappingStore(args.store_dir), args.record_id)
        if args.command == "stats":
            return show_stats(MappingStore(args.store_dir), args.session_id)

        if args.records is None or args.catalog is None:
            parser.error("--records and --catalog are required to run a reconciliation")

        return asyncio.run(reconcile(args, config))
    except ReconciliationError as e:
        console.print(f"[red]{e.kind}: {e}[/red]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
