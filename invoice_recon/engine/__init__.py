"""Reconciliation and identifier-allocation engine."""
from invoice_recon.engine.archiver import ArchiveResult, Archiver
from invoice_recon.engine.dedupe import DedupeResult, dedupe
from invoice_recon.engine.executor import PlanExecutor
from invoice_recon.engine.matcher import Match, Matcher
from invoice_recon.engine.normalize import (
    extract_identity,
    match_key,
    normalize_amount,
    normalize_vendor,
    parse_amount,
    record_identity,
)
from invoice_recon.engine.planner import DiffPlanner
from invoice_recon.engine.sequence import (
    AllocationBatch,
    ParsedInvoiceId,
    SequenceAllocator,
    SqliteCounterStore,
    next_sequence,
    parse_amount_segment,
    parse_invoice_id,
    render_invoice_id,
)

__all__ = [
    "AllocationBatch",
    "ArchiveResult",
    "Archiver",
    "DedupeResult",
    "DiffPlanner",
    "Match",
    "Matcher",
    "ParsedInvoiceId",
    "PlanExecutor",
    "SequenceAllocator",
    "SqliteCounterStore",
    "dedupe",
    "extract_identity",
    "match_key",
    "next_sequence",
    "normalize_amount",
    "normalize_vendor",
    "parse_amount",
    "parse_amount_segment",
    "parse_invoice_id",
    "record_identity",
    "render_invoice_id",
]
