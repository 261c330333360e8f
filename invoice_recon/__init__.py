"""Invoice reconciliation and identifier allocation across sheet, mirror and archive."""
from invoice_recon.core import (
    ConsistencyGuardError,
    InvoiceRecord,
    ReconciliationPlan,
    RunSummary,
    Settings,
    Status,
    configure_logging,
)
from invoice_recon.engine import (
    Archiver,
    DiffPlanner,
    Matcher,
    PlanExecutor,
    SequenceAllocator,
    dedupe,
    render_invoice_id,
)
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

__all__ = [
    "Archiver",
    "ConsistencyGuardError",
    "DiffPlanner",
    "InvoiceRecord",
    "Matcher",
    "PlanExecutor",
    "ReconciliationPlan",
    "RunSummary",
    "SequenceAllocator",
    "Settings",
    "Status",
    "configure_logging",
    "dedupe",
    "render_invoice_id",
    "run_archive_backfill",
    "run_hash_backfill",
    "run_id_audit",
    "run_intake",
    "run_mirror_rebuild",
    "run_prune_orphans",
    "run_reconciliation",
    "run_submission",
]
