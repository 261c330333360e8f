"""Command line entry point for reconciliation, submission and maintenance runs."""
import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from invoice_recon.core.config import Settings
from invoice_recon.core.errors import ConfigurationError, ConsistencyGuardError, LockHeldError, ProviderError
from invoice_recon.core.lock import RunLock
from invoice_recon.core.logging import configure_logging
from invoice_recon.core.models import RunSummary
from invoice_recon.engine.archiver import Archiver
from invoice_recon.engine.sequence import SequenceAllocator, SqliteCounterStore
from invoice_recon.pipeline import (
    run_archive_backfill,
    run_hash_backfill,
    run_id_audit,
    run_intake,
    run_mirror_rebuild,
    run_prune_orphans,
    run_reconciliation,
    run_submission,
)
from invoice_recon.providers.blobs import S3BlobStore
from invoice_recon.providers.classifier import DocumentClassifier
from invoice_recon.providers.mirror import SupabaseMirror
from invoice_recon.providers.sheets import SheetSource
from invoice_recon.reporting.sinks import render_summary_markdown, write_report, write_rows_csv

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_GUARD = 2
EXIT_UNAVAILABLE = 3

# Every run that writes to the mirror shares this lock.
MIRROR_LOCK = "mirror-sync"


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser with one sub-command per run."""

    parser = argparse.ArgumentParser(description="Reconcile invoices between the sheet, the mirror and the archive")
    parser.add_argument("--env-file", type=Path, help="Secrets file to load before reading the environment")
    parser.add_argument("--log-level", help="Logging level (defaults to LOG_LEVEL or INFO)")
    parser.add_argument(
        "--report",
        type=Path,
        help="Write the run report here (.csv, .xlsx or .md)",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    reconcile = commands.add_parser("reconcile", help="Sync the mirror from the sheet")
    reconcile.add_argument("--dry-run", action="store_true", help="Plan only, change nothing")
    reconcile.add_argument("--workers", type=int, default=1, help="Parallel mirror writes")

    submit = commands.add_parser("submit", help="Assign invoice ids to confirmed rows and archive them")
    submit.add_argument("--rows", type=int, nargs="*", help="Only these sheet rows")
    submit.add_argument("--workers", type=int, default=1, help="Parallel mirror writes")

    intake = commands.add_parser("intake", help="Classify new documents and append them to the sheet")
    intake.add_argument("--limit", type=int, help="Stop after this many new documents")

    backfill = commands.add_parser("archive-backfill", help="Archive submitted rows missing an archived link")
    backfill.add_argument("--dry-run", action="store_true")

    hashes = commands.add_parser("hash-backfill", help="Fill missing content hashes from blob ETags")
    hashes.add_argument("--dry-run", action="store_true")

    commands.add_parser("audit-ids", help="Report malformed or inconsistent invoice ids")

    prune = commands.add_parser("prune-orphans", help="Delete archived objects no row points at")
    prune.add_argument("--apply", action="store_true", help="Actually delete (default is a dry run)")

    rebuild = commands.add_parser("rebuild-mirror", help="Delete and re-insert every mirror row")
    rebuild.add_argument("--yes", action="store_true", help="Confirm the destructive rebuild")
    rebuild.add_argument("--dry-run", action="store_true")
    rebuild.add_argument("--workers", type=int, default=1)
    return parser


def _log_progress(done: int, total: int) -> None:
    if done == total or done % 25 == 0:
        logger.info("Progress %d/%d", done, total)


def _mirror_lock(settings: Settings) -> RunLock:
    return RunLock(MIRROR_LOCK, settings.lock_dir)


def _archiver(settings: Settings) -> Archiver:
    return Archiver(
        S3BlobStore.from_settings(settings),
        settings.source_prefix,
        settings.projects_prefix,
        attempts=settings.retry_attempts,
    )


def _dispatch(args: argparse.Namespace, settings: Settings) -> Optional[RunSummary]:
    command = args.command
    attempts = settings.retry_attempts

    if command == "reconcile":
        return run_reconciliation(
            SheetSource.from_settings(settings),
            SupabaseMirror.from_settings(settings),
            dry_run=args.dry_run,
            workers=args.workers,
            progress=_log_progress,
            attempts=attempts,
            lock=_mirror_lock(settings),
        )
    if command == "submit":
        return run_submission(
            SheetSource.from_settings(settings),
            SupabaseMirror.from_settings(settings),
            _archiver(settings),
            SequenceAllocator(SqliteCounterStore(settings.counter_db)),
            rows=args.rows,
            lock=_mirror_lock(settings),
            workers=args.workers,
            progress=_log_progress,
            attempts=attempts,
        )
    if command == "intake":
        blobs = S3BlobStore.from_settings(settings)
        return run_intake(
            SheetSource.from_settings(settings),
            blobs,
            DocumentClassifier(timeout=settings.request_timeout),
            source_prefix=settings.source_prefix,
            limit=args.limit,
            attempts=attempts,
        )
    if command == "archive-backfill":
        return run_archive_backfill(SheetSource.from_settings(settings), _archiver(settings), dry_run=args.dry_run)
    if command == "hash-backfill":
        return run_hash_backfill(SheetSource.from_settings(settings), _archiver(settings), dry_run=args.dry_run)
    if command == "audit-ids":
        findings = run_id_audit(SheetSource.from_settings(settings))
        if args.report:
            write_rows_csv(findings, args.report, ["row", "invoice_id", "issue"])
        for finding in findings:
            print(json.dumps(finding, ensure_ascii=False))
        print(f"{len(findings)} invoice id issues")
        return None
    if command == "prune-orphans":
        return run_prune_orphans(SheetSource.from_settings(settings), _archiver(settings), dry_run=not args.apply)
    if command == "rebuild-mirror":
        if not args.yes and not args.dry_run:
            raise ConfigurationError("rebuild-mirror deletes every mirror row; pass --yes to confirm")
        return run_mirror_rebuild(
            SheetSource.from_settings(settings),
            SupabaseMirror.from_settings(settings),
            lock=_mirror_lock(settings),
            dry_run=args.dry_run,
            workers=args.workers,
            progress=_log_progress,
            attempts=attempts,
        )
    raise ConfigurationError(f"Unknown command {command!r}")


def main(argv: Optional[List[str]] = None) -> int:
    """Entrypoint for running the pipelines from the command line."""

    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    try:
        settings = Settings.from_env(args.env_file)
        summary = _dispatch(args, settings)
    except ConsistencyGuardError as exc:
        logger.error("Consistency guard stopped the run: %s", exc)
        print(f"Aborted: {exc}", file=sys.stderr)
        return EXIT_GUARD
    except (ConfigurationError, LockHeldError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_UNAVAILABLE
    except ProviderError as exc:
        logger.error("Run failed reading a provider: %s", exc)
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILURES

    if summary is None:
        return EXIT_OK
    if args.report:
        output = write_report(summary, args.report)
        print(f"Wrote {output}")
    print(render_summary_markdown(summary), end="")
    return EXIT_FAILURES if summary.failed else EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
