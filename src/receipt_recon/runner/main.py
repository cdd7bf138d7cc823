"""
CLI main entry point.
"""

import argparse
import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date
from pathlib import Path

import yaml

from ..capability import HttpDocumentCapability
from ..config import Config, create_default_config, load_config
from ..errors import ConfigurationError, ReceiptReconError
from ..ingest import EmailDirectorySource, jobs_from_file
from ..pipeline import BatchResult, StagePipelineEngine
from ..schemas import ProcessingStatus
from ..state_store import StateStore

logger = logging.getLogger(__name__)

STATUS_ICONS = {
    ProcessingStatus.COMPLETED.value: "✓",
    ProcessingStatus.CLASSIFIED_ONLY.value: "⚠️ ",
    ProcessingStatus.NOT_RECEIPT.value: "–",
    ProcessingStatus.UNKNOWN.value: "❌",
}


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}") from e


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="receipt-recon",
        description="Extract receipts from emails and reconcile them against bank statements",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # process command
    process_parser = subparsers.add_parser(
        "process", help="Run the stage pipeline on the attachments of .eml files"
    )
    process_parser.add_argument("eml_files", nargs="+", type=Path, help="Email files")
    process_parser.add_argument(
        "--force",
        action="store_true",
        help="Reprocess documents that already completed",
    )

    # reprocess command
    reprocess_parser = subparsers.add_parser(
        "reprocess", help="Reprocess documents identified by email id and filename"
    )
    reprocess_parser.add_argument(
        "--email-id",
        action="append",
        required=True,
        help="Source email id (repeat together with --filename for each document)",
    )
    reprocess_parser.add_argument(
        "--filename",
        action="append",
        required=True,
        help="Attachment filename, paired with the --email-id in the same position",
    )
    reprocess_parser.add_argument(
        "--eml-dir",
        type=Path,
        required=True,
        help="Directory of .eml files to fetch the document from",
    )
    reprocess_parser.add_argument(
        "--force",
        action="store_true",
        help="Reprocess even if the latest attempt completed",
    )

    # logs command
    logs_parser = subparsers.add_parser("logs", help="Show stage logs (newest first)")
    logs_parser.add_argument("--email-id", help="Only logs of this email")
    logs_parser.add_argument(
        "--stage", choices=["classify", "extract", "persist"], help="Only this stage"
    )
    outcome = logs_parser.add_mutually_exclusive_group()
    outcome.add_argument(
        "--success", dest="success", action="store_const", const=True, help="Only successes"
    )
    outcome.add_argument(
        "--failed", dest="success", action="store_const", const=False, help="Only failures"
    )
    logs_parser.add_argument("--page", type=int, default=1, help="Page (default: 1)")
    logs_parser.add_argument("--limit", type=int, default=50, help="Rows per page (default: 50)")

    # files command
    files_parser = subparsers.add_parser("files", help="Show processed documents")
    files_parser.add_argument("--email-id", help="Only documents of this email")
    files_parser.add_argument("--page", type=int, default=1, help="Page (default: 1)")
    files_parser.add_argument("--limit", type=int, default=50, help="Rows per page (default: 50)")

    # import-statement command
    import_parser = subparsers.add_parser(
        "import-statement", help="Import a bank statement export"
    )
    import_parser.add_argument("statement", type=Path, help="Statement file (CSV)")

    # reconcile command
    reconcile_parser = subparsers.add_parser(
        "reconcile", help="Reconcile receipts against a bank statement"
    )
    source = reconcile_parser.add_mutually_exclusive_group(required=True)
    source.add_argument("statement", nargs="?", type=Path, help="Statement file (CSV)")
    source.add_argument("--statement-id", type=int, help="Previously imported statement")
    reconcile_parser.add_argument("--start", type=_iso_date, help="Period start (YYYY-MM-DD)")
    reconcile_parser.add_argument("--end", type=_iso_date, help="Period end (YYYY-MM-DD)")
    reconcile_parser.add_argument(
        "--persist",
        action="store_true",
        help="Record the report in reconciliation history",
    )
    reconcile_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the full report as JSON",
    )

    # match command
    match_parser = subparsers.add_parser(
        "match", help="Manually match a receipt to an imported bank transaction"
    )
    match_parser.add_argument("receipt_id", type=int, help="Receipt id (see reconcile output)")
    match_parser.add_argument(
        "transaction_id", type=int, help="Bank transaction id (see reconcile output)"
    )
    match_parser.add_argument("--notes", help="Note to keep with the match")

    # unmatch command
    unmatch_parser = subparsers.add_parser("unmatch", help="Remove a manual match")
    unmatch_parser.add_argument("match_id", type=int, help="Manual match id")

    # matches command
    subparsers.add_parser("matches", help="List manual matches")

    # status command
    subparsers.add_parser("status", help="Show processing and reconciliation statistics")

    # init-config command
    subparsers.add_parser("init-config", help="Write a default config file")

    return parser


def _require_config(config: Config, needs_capability: bool) -> None:
    """Raise ConfigurationError for settings the command depends on."""
    errors = config.validate()
    if not needs_capability:
        errors = [e for e in errors if not e.startswith("capability.")]
    if errors:
        raise ConfigurationError(errors)


@contextmanager
def _build_engine(config: Config, store: StateStore) -> Iterator[StagePipelineEngine]:
    capability = HttpDocumentCapability(
        config.capability, max_concurrent=config.pipeline.max_workers
    )
    try:
        yield StagePipelineEngine(store, capability, config.pipeline)
    finally:
        capability.close()


def _ref(row_id: int | None) -> str:
    return f" #{row_id}" if row_id is not None else ""


def _print_batch(result: BatchResult) -> None:
    for item in result.items:
        if item.outcome is None:
            print(f"  ❌ {item.email_id} / {item.filename}: {item.error}")
            continue
        outcome = item.outcome
        icon = STATUS_ICONS.get(outcome.status.value, "?")
        note = " (skipped, already completed)" if outcome.skipped else ""
        error = f" - {outcome.error_message}" if outcome.error_message else ""
        print(f"  {icon} {item.email_id} / {item.filename}: {outcome.status.value}{note}{error}")

    print()
    print(f"📊 {len(result.items)} document(s): {result.status_counts()}")
    if result.failed:
        print(f"⚠️  {len(result.failed)} document(s) could not be processed")


def cmd_process(config: Config, eml_files: list[Path], force: bool) -> int:
    """Ingest .eml files and run the pipeline on their attachments."""
    _require_config(config, needs_capability=True)

    jobs = []
    for path in eml_files:
        if not path.exists():
            print(f"❌ File not found: {path}")
            return 1
        found = jobs_from_file(path, accepted_mime_types=config.pipeline.accepted_mime_types)
        print(f"  → {path.name}: {len(found)} attachment(s)")
        jobs.extend(found)

    if not jobs:
        print("ℹ️  No accepted attachments found")
        return 0

    store = StateStore(config.state_db_path)
    print(f"🔄 Processing {len(jobs)} document(s)...")
    with _build_engine(config, store) as engine:
        result = engine.process_batch(jobs, force_reprocess=force)

    _print_batch(result)
    return 1 if result.failed else 0


def cmd_reprocess(
    config: Config,
    email_ids: list[str],
    filenames: list[str],
    eml_dir: Path,
    force: bool,
) -> int:
    """Reprocess documents given as (email id, filename) pairs."""
    _require_config(config, needs_capability=True)

    if len(email_ids) != len(filenames):
        print(
            f"❌ Got {len(email_ids)} --email-id and {len(filenames)} --filename values, "
            "they must pair up"
        )
        return 1
    if not eml_dir.is_dir():
        print(f"❌ Not a directory: {eml_dir}")
        return 1

    documents = list(zip(email_ids, filenames))
    store = StateStore(config.state_db_path)
    source = EmailDirectorySource(eml_dir, config.pipeline.accepted_mime_types)
    print(f"🔄 Reprocessing {len(documents)} document(s)...")
    with _build_engine(config, store) as engine:
        result = engine.reprocess(documents, force, source)

    _print_batch(result)
    return 1 if result.failed else 0


def cmd_logs(
    config: Config,
    email_id: str | None,
    stage: str | None,
    success: bool | None,
    page: int,
    limit: int,
) -> int:
    """Show stage logs."""
    _require_config(config, needs_capability=False)
    store = StateStore(config.state_db_path)
    result = store.query_stage_logs(
        email_id=email_id, stage=stage, success=success, page=page, limit=limit
    )

    pagination = result.pagination
    print(f"\n📜 Stage logs (page {pagination['page']}/{max(pagination['pages'], 1)}, "
          f"{pagination['total']} total)")
    print("=" * 60)
    for log in result.rows:
        icon = "✓" if log.success else "❌"
        error = f" - {log.error_message}" if log.error_message else ""
        print(
            f"  {icon} {log.processed_at} {log.stage.value:<8} "
            f"{log.email_id} / {log.filename} ({log.duration_ms}ms){error}"
        )
    print()
    return 0


def cmd_files(config: Config, email_id: str | None, page: int, limit: int) -> int:
    """Show processed documents with their latest status."""
    _require_config(config, needs_capability=False)
    store = StateStore(config.state_db_path)
    views, pagination = store.list_processed_files(email_id=email_id, page=page, limit=limit)

    print(f"\n📄 Processed files (page {pagination['page']}/{max(pagination['pages'], 1)}, "
          f"{pagination['total']} total)")
    print("=" * 60)
    for view in views:
        icon = STATUS_ICONS.get(view.processing_status.value, "?")
        line = (
            f"  {icon} {view.email_id} / {view.filename}: {view.processing_status.value} "
            f"({view.successful_stages}/3 stages)"
        )
        if view.merchant_name:
            line += f" {view.merchant_name} {view.total_amount} on {view.transaction_date}"
        print(line)
    print()
    return 0


def cmd_import_statement(config: Config, statement: Path) -> int:
    """Import a bank statement export."""
    from ..services import ReconciliationService

    _require_config(config, needs_capability=False)
    if not statement.exists():
        print(f"❌ File not found: {statement}")
        return 1

    store = StateStore(config.state_db_path)
    service = ReconciliationService(store, config)
    result = service.import_statement(statement)

    print(f"✓ Imported statement #{result.statement_id} ({result.filename})")
    print(f"  Rows:         {result.parse_result.total_rows}")
    print(f"  Transactions: {result.transaction_count}")
    if result.parse_result.errors:
        print(f"⚠️  {result.error_count} row(s) skipped:")
        for error in result.parse_result.errors:
            print(f"   - line {error.row_index}: {error.reason}")
    return 0


def cmd_reconcile(
    config: Config,
    statement: Path | None,
    statement_id: int | None,
    start: date | None,
    end: date | None,
    persist: bool,
    as_json: bool,
) -> int:
    """Reconcile receipts against a bank statement.

    Returns:
        Exit code (0 for success, 1 for failure).
    """
    from ..services import ReconciliationService

    _require_config(config, needs_capability=False)
    if statement is not None and not statement.exists():
        print(f"❌ File not found: {statement}")
        return 1

    store = StateStore(config.state_db_path)
    service = ReconciliationService(store, config)
    try:
        report = service.reconcile(
            statement,
            start_date=start,
            end_date=end,
            persist=persist,
            statement_id=statement_id,
        )
    except ValueError as e:
        print(f"❌ {e}")
        return 1

    if as_json:
        print(json.dumps(report.to_dict(), indent=2))
        return 0

    summary = report.summary()
    print()
    print("📊 Reconciliation Results")
    print("=" * 40)
    print(f"  Matched:                {summary['matched']}")
    if summary["manual_matches"]:
        print(f"  Manually matched:       {summary['manual_matches']}")
    print(f"  Unmatched receipts:     {summary['unmatched_receipts']}")
    print(f"  Unmatched transactions: {summary['unmatched_bank_transactions']}")
    print(f"  Credits ignored:        {summary['ignored_credits']}")
    print(f"  Matched amount:         {summary['matched_amount']}")
    print(f"  Reconciliation rate:    {summary['reconciliation_rate']:.1f}%")
    print()

    for match in report.matches:
        manual = " manual" if match.manual else ""
        print(
            f"  ✓ {match.receipt.merchant_name} {match.receipt.total_amount} "
            f"↔ {match.transaction.description} {match.transaction.amount} "
            f"(Δ {match.date_delta_days}d{manual})"
        )
    for receipt in report.unmatched_receipts:
        print(
            f"  ❓ receipt{_ref(receipt.receipt_id)} {receipt.merchant_name} "
            f"{receipt.total_amount} on {receipt.transaction_date.isoformat()}"
        )
    for tx in report.unmatched_bank_transactions:
        print(
            f"  ❓ debit{_ref(tx.transaction_id)} {tx.description} {tx.amount} "
            f"on {tx.date.isoformat()}"
        )

    if report.parse_errors:
        print()
        print(f"⚠️  {len(report.parse_errors)} statement row(s) skipped:")
        for error in report.parse_errors:
            print(f"   - line {error.row_index}: {error.reason}")
    return 0


def cmd_match(config: Config, receipt_id: int, transaction_id: int, notes: str | None) -> int:
    """Pin a receipt to a bank transaction."""
    from ..services import ReconciliationService

    _require_config(config, needs_capability=False)
    service = ReconciliationService(StateStore(config.state_db_path), config)
    try:
        match_id = service.create_manual_match(receipt_id, transaction_id, notes)
    except ValueError as e:
        print(f"❌ {e}")
        return 1

    print(f"✓ Manual match #{match_id}: receipt #{receipt_id} ↔ transaction #{transaction_id}")
    return 0


def cmd_unmatch(config: Config, match_id: int) -> int:
    """Remove a manual match."""
    from ..services import ReconciliationService

    _require_config(config, needs_capability=False)
    service = ReconciliationService(StateStore(config.state_db_path), config)
    if not service.remove_manual_match(match_id):
        print(f"❌ Manual match #{match_id} does not exist")
        return 1

    print(f"✓ Removed manual match #{match_id}")
    return 0


def cmd_matches(config: Config) -> int:
    """List manual matches."""
    from ..services import ReconciliationService

    _require_config(config, needs_capability=False)
    service = ReconciliationService(StateStore(config.state_db_path), config)
    matches = service.list_manual_matches()

    print(f"\n📌 Manual matches ({len(matches)})")
    print("=" * 40)
    for match in matches:
        notes = f" - {match.notes}" if match.notes else ""
        print(
            f"  #{match.id} receipt #{match.receipt_id} ↔ "
            f"transaction #{match.bank_transaction_id} ({match.created_at}){notes}"
        )
    print()
    return 0


def cmd_status(config: Config) -> int:
    """Show processing status."""
    _require_config(config, needs_capability=False)
    store = StateStore(config.state_db_path)
    stats = store.get_processing_stats()

    print("\n📊 Processing Status")
    print("=" * 40)
    print(f"  Documents:          {stats['documents']}")
    print(f"  Attempts:           {stats['attempts']}")
    print(f"  Receipts persisted: {stats['receipts']}")
    for status in ProcessingStatus:
        print(f"  {status.value + ':':<20}{stats['statuses'].get(status.value, 0)}")
    print()
    print("  Stage        ok   failed   avg ms")
    for stage, counts in stats["stages"].items():
        print(
            f"  {stage:<10} {counts['succeeded']:>4} {counts['failed']:>8} "
            f"{counts['avg_duration_ms']:>8.1f}"
        )

    runs = store.get_reconciliation_runs(limit=1)
    if runs:
        last = runs[0]
        print()
        print(
            f"  Last reconciliation: {last['created_at']} "
            f"({last['reconciliation_rate']:.1f}% matched)"
        )
    print()
    return 0


def cmd_init_config(config_path: Path) -> int:
    """Write a default config file."""
    if config_path.exists():
        print(f"❌ Config file already exists: {config_path}")
        return 1
    create_default_config(config_path)
    print(f"✓ Wrote default config to {config_path}")
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        return cmd_init_config(parsed.config)

    try:
        config = load_config(parsed.config)
    except ConfigurationError as e:
        print(f"❌ {e}")
        return 2
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"❌ Failed to load config: {e}")
        return 2

    # Route to command
    try:
        if parsed.command == "process":
            return cmd_process(config, parsed.eml_files, parsed.force)
        elif parsed.command == "reprocess":
            return cmd_reprocess(
                config, parsed.email_id, parsed.filename, parsed.eml_dir, parsed.force
            )
        elif parsed.command == "logs":
            return cmd_logs(
                config, parsed.email_id, parsed.stage, parsed.success, parsed.page, parsed.limit
            )
        elif parsed.command == "files":
            return cmd_files(config, parsed.email_id, parsed.page, parsed.limit)
        elif parsed.command == "import-statement":
            return cmd_import_statement(config, parsed.statement)
        elif parsed.command == "reconcile":
            return cmd_reconcile(
                config,
                statement=parsed.statement,
                statement_id=parsed.statement_id,
                start=parsed.start,
                end=parsed.end,
                persist=parsed.persist,
                as_json=parsed.json,
            )
        elif parsed.command == "match":
            return cmd_match(config, parsed.receipt_id, parsed.transaction_id, parsed.notes)
        elif parsed.command == "unmatch":
            return cmd_unmatch(config, parsed.match_id)
        elif parsed.command == "matches":
            return cmd_matches(config)
        elif parsed.command == "status":
            return cmd_status(config)
        else:
            parser.print_help()
            return 1
    except ConfigurationError as e:
        print("❌ Invalid configuration:")
        for error in e.errors:
            print(f"   - {error}")
        return 2
    except ReceiptReconError as e:
        logger.error(f"{parsed.command} failed: {e}")
        print(f"❌ {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
