"""Batch runs that move invoices between the sheet, the mirror and the archive."""
from __future__ import annotations

import contextlib
import logging
import posixpath
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from invoice_recon.core.errors import ArchiveError, ConsistencyGuardError, ProviderError
from invoice_recon.core.lock import RunLock
from invoice_recon.core.models import InvoiceRecord, ReconciliationPlan, RunSummary, Status
from invoice_recon.core.utils import with_retries
from invoice_recon.engine.archiver import DEFAULT_EXTENSIONS, Archiver
from invoice_recon.engine.dedupe import dedupe
from invoice_recon.engine.executor import PlanExecutor
from invoice_recon.engine.planner import DiffPlanner
from invoice_recon.engine.sequence import SequenceAllocator
from invoice_recon.quality import audit_invoice_ids, validate_candidate

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


def _locked(lock: Optional[RunLock]):
    return lock if lock is not None else contextlib.nullcontext()


def _plan_as_dry_run(plan: ReconciliationPlan, summary: RunSummary) -> None:
    for record in plan.inserts:
        summary.skip("insert", record.label, "dry run")
    for update in plan.updates:
        summary.skip("update", update.label or str(update.row_id), "dry run: " + ", ".join(sorted(update.fields)))
    for row_id in plan.deletes:
        summary.skip("delete", str(row_id), "dry run")
    for item in plan.needs_review:
        summary.skip("review", item.record.label, item.reason)


def run_reconciliation(
    sheet,
    mirror,
    *,
    dry_run: bool = False,
    workers: int = 1,
    progress: Optional[ProgressCallback] = None,
    planner: Optional[DiffPlanner] = None,
    attempts: int = 3,
    lock: Optional[RunLock] = None,
) -> RunSummary:
    """Bring the mirror in line with the sheet.

    Raises ConsistencyGuardError before touching anything when the plan would
    empty the mirror. Pass the shared mirror ``lock`` so a rebuild cannot
    run at the same time.
    """

    with _locked(lock):
        authoritative = sheet.read_records()
        mirrored = with_retries(mirror.select_all, attempts=attempts, description="mirror snapshot")
        plan = (planner or DiffPlanner()).plan(authoritative, mirrored)

        if dry_run:
            summary = RunSummary(name="reconcile (dry run)")
            _plan_as_dry_run(plan, summary)
        else:
            executor = PlanExecutor(mirror, max_workers=workers, progress=progress, attempts=attempts)
            summary = executor.execute(plan, name="reconcile")

    for record in plan.authoritative_excess:
        summary.notes.append(f"duplicate sheet row {record.row_id} ({record.label})")
    logger.info("Reconciliation finished: %s", summary.counts())
    return summary


def _existing_ids(*sources: Iterable[InvoiceRecord]) -> Set[str]:
    found: Set[str] = set()
    for records in sources:
        found.update(record.generated_invoice_id for record in records if record.generated_invoice_id)
    return found


def _archive_fields(archiver: Archiver, record: InvoiceRecord, summary: RunSummary) -> Dict[str, Any]:
    """Archive one record and return the sheet fields to write, empty on failure."""

    try:
        result = archiver.archive(record)
    except (ArchiveError, ProviderError) as exc:
        logger.warning("Archiving %s failed: %s", record.label, exc)
        summary.fail("archive", record.generated_invoice_id or record.label, str(exc))
        return {}
    if result.conflict:
        summary.skip("archive", record.generated_invoice_id or record.label, f"conflict at {result.archived_id}")
        return {}
    summary.ok("archive", record.generated_invoice_id or record.label, "copied" if result.copied else "already archived")
    return {"archived_file_link": result.archived_link, "archived_file_id": result.archived_id}


def _write_back(sheet, changes: List[Tuple[int, Dict[str, Any]]], summary: RunSummary) -> None:
    if not changes:
        return
    for cell, reason in sheet.write_fields(changes):
        summary.fail("sheet-write", cell, reason)


def run_submission(
    sheet,
    mirror,
    archiver: Archiver,
    allocator: SequenceAllocator,
    *,
    rows: Optional[Iterable[int]] = None,
    lock: Optional[RunLock] = None,
    workers: int = 1,
    progress: Optional[ProgressCallback] = None,
    attempts: int = 3,
) -> RunSummary:
    """Assign invoice ids to confirmed rows, archive them and sync the mirror.

    Rows are processed in sheet order so sequence numbers follow the sheet.
    """

    selected_rows = set(rows) if rows is not None else None
    summary = RunSummary(name="submit")

    with _locked(lock):
        records = sheet.read_records()
        # check write targets before any id is reserved
        sheet.require_columns("status", "generated_invoice_id")
        mirrored = with_retries(mirror.select_all, attempts=attempts, description="mirror snapshot")
        valid_projects = sheet.project_codes()
        batch = allocator.open_batch(_existing_ids(records, mirrored))

        pending = sorted(
            (
                record
                for record in records
                if record.status == Status.CONFIRMED
                and not record.generated_invoice_id
                and (selected_rows is None or record.row_id in selected_rows)
            ),
            key=lambda record: record.row_id or 0,
        )
        logger.info("Submitting %d confirmed records", len(pending))

        changes: List[Tuple[int, Dict[str, Any]]] = []
        for record in pending:
            if not record.project_code:
                summary.skip("submit", record.label, "missing project code")
                continue
            if valid_projects and record.project_code not in valid_projects:
                summary.skip("submit", record.label, f"unknown project {record.project_code}")
                continue

            invoice_id = batch.allocate(record.project_code, record.amount, record.currency)
            submitted = record.with_updates(generated_invoice_id=invoice_id, status=Status.SUBMITTED)
            fields: Dict[str, Any] = {"generated_invoice_id": invoice_id, "status": Status.SUBMITTED}
            fields.update(_archive_fields(archiver, submitted, summary))
            changes.append((record.row_id, fields))
            summary.ok("submit", invoice_id, f"row {record.row_id}")

        _write_back(sheet, changes, summary)
        summary.merge(
            run_reconciliation(sheet, mirror, workers=workers, progress=progress, attempts=attempts)
        )
    return summary


def run_intake(
    sheet,
    blobs,
    classifier,
    *,
    source_prefix: str,
    limit: Optional[int] = None,
    attempts: int = 3,
) -> RunSummary:
    """Classify new documents from the blob source and append them for confirmation."""

    summary = RunSummary(name="intake")
    records = sheet.read_records()
    known = {record.content_hash for record in records if record.content_hash}
    known.update(record.source_key for record in records if record.source_key)

    accepted: List[InvoiceRecord] = []
    for blob in blobs.list(source_prefix):
        if limit is not None and len(accepted) >= limit:
            break
        if posixpath.splitext(blob.key)[1].lower() not in DEFAULT_EXTENSIONS:
            continue
        if blob.etag in known or blob.key in known:
            summary.skip("intake", blob.key, "already imported")
            continue

        filename = posixpath.basename(blob.key)
        try:
            content = with_retries(lambda: blobs.get(blob.key), attempts=attempts, description=f"get {blob.key}")
            candidate = with_retries(
                lambda: classifier.classify(content, filename),
                attempts=attempts,
                description=f"classify {filename}",
            )
        except ProviderError as exc:
            summary.fail("intake", blob.key, str(exc))
            continue

        record, issues = validate_candidate(
            candidate,
            source_key=blob.key,
            content_hash=blob.etag,
            file_link=blobs.public_url(blob.key),
        )
        if record is None:
            summary.fail("intake", blob.key, "; ".join(issues))
            continue
        accepted.append(record)
        known.add(blob.etag)
        summary.ok("intake", blob.key, f"{record.vendor} {record.amount} {record.currency}")

    if accepted:
        sheet.append_records(accepted)
    return summary


def run_archive_backfill(sheet, archiver: Archiver, *, dry_run: bool = False) -> RunSummary:
    """Archive submitted records that have an invoice id but no archived link."""

    summary = RunSummary(name="archive-backfill")
    changes: List[Tuple[int, Dict[str, Any]]] = []
    for record in sheet.read_records():
        if record.status != Status.SUBMITTED or not record.generated_invoice_id or record.archived_file_link:
            continue
        if dry_run:
            summary.skip("archive", record.generated_invoice_id, "dry run")
            continue
        fields = _archive_fields(archiver, record, summary)
        if fields and record.row_id is not None:
            changes.append((record.row_id, fields))
    _write_back(sheet, changes, summary)
    return summary


def run_hash_backfill(sheet, archiver: Archiver, *, dry_run: bool = False) -> RunSummary:
    """Fill in missing content hashes from the original document's ETag."""

    summary = RunSummary(name="hash-backfill")
    changes: List[Tuple[int, Dict[str, Any]]] = []
    for record in sheet.read_records():
        if record.content_hash or record.row_id is None:
            continue
        try:
            digest = archiver.content_hash_for(record)
        except ProviderError as exc:
            summary.fail("hash", record.label, str(exc))
            continue
        if not digest:
            summary.skip("hash", record.label, "original not found")
            continue
        if dry_run:
            summary.skip("hash", record.label, f"dry run: {digest}")
            continue
        changes.append((record.row_id, {"content_hash": digest}))
        summary.ok("hash", record.label, digest)
    _write_back(sheet, changes, summary)
    return summary


def run_id_audit(sheet) -> List[Dict[str, str]]:
    """Audit every invoice id in the sheet against its row."""

    return audit_invoice_ids(sheet.read_records(), sheet.project_codes() or None)


def run_prune_orphans(sheet, archiver: Archiver, *, dry_run: bool = True) -> RunSummary:
    return archiver.prune_orphans(sheet.read_records(), dry_run=dry_run)


def run_mirror_rebuild(
    sheet,
    mirror,
    *,
    lock: Optional[RunLock] = None,
    dry_run: bool = False,
    workers: int = 1,
    progress: Optional[ProgressCallback] = None,
    attempts: int = 3,
) -> RunSummary:
    """Replace every mirror row with the deduplicated sheet contents.

    An empty sheet read is refused, since it would leave the mirror empty.
    """

    with _locked(lock):
        canonical = dedupe(sheet.read_records()).canonical
        if not canonical:
            raise ConsistencyGuardError("Sheet returned no records; refusing to rebuild the mirror")
        existing = with_retries(mirror.select_all, attempts=attempts, description="mirror snapshot")
        plan = ReconciliationPlan(
            inserts=list(canonical),
            deletes=[record.row_id for record in existing if record.row_id is not None],
        )
        logger.warning("Rebuilding mirror: %d deletes, %d inserts", len(plan.deletes), len(plan.inserts))
        if dry_run:
            summary = RunSummary(name="rebuild-mirror (dry run)")
            _plan_as_dry_run(plan, summary)
            return summary
        executor = PlanExecutor(mirror, max_workers=workers, progress=progress, attempts=attempts)
        return executor.execute(plan, name="rebuild-mirror")
