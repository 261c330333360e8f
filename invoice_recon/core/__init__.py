"""Core building blocks for the invoice_recon package."""
from invoice_recon.core.config import Settings
from invoice_recon.core.errors import (
    AmbiguousMatchError,
    ArchiveConflictError,
    ArchiveError,
    ConfigurationError,
    ConsistencyGuardError,
    DuplicateKeyError,
    LockHeldError,
    NotFoundError,
    NotLocatableError,
    ProviderError,
    ReconError,
    TransientError,
)
from invoice_recon.core.lock import RunLock
from invoice_recon.core.logging import configure_logging
from invoice_recon.core.models import (
    InvoiceRecord,
    ItemOutcome,
    MatchKey,
    ReconciliationPlan,
    RecordUpdate,
    ReviewItem,
    RunSummary,
    Status,
)
from invoice_recon.core.utils import chunked, load_env_file, with_retries

__all__ = [
    "AmbiguousMatchError",
    "ArchiveConflictError",
    "ArchiveError",
    "ConfigurationError",
    "ConsistencyGuardError",
    "DuplicateKeyError",
    "InvoiceRecord",
    "ItemOutcome",
    "LockHeldError",
    "MatchKey",
    "NotFoundError",
    "NotLocatableError",
    "ProviderError",
    "ReconError",
    "ReconciliationPlan",
    "RecordUpdate",
    "ReviewItem",
    "RunLock",
    "RunSummary",
    "Settings",
    "Status",
    "TransientError",
    "chunked",
    "configure_logging",
    "load_env_file",
    "with_retries",
]
