"""Cross-store equivalence via an ordered cascade of match strategies."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence

from invoice_recon.core.errors import AmbiguousMatchError
from invoice_recon.core.models import InvoiceRecord, Status
from invoice_recon.engine.normalize import match_key, record_identity

logger = logging.getLogger(__name__)

EXACT = "identity"
CONTAINMENT = "containment"
CONTENT_HASH = "content_hash"
COMPOSITE = "composite"


@dataclass
class Match:
    candidate: InvoiceRecord
    strategy: str


def _exact(record: InvoiceRecord, pool: Sequence[InvoiceRecord]) -> Optional[InvoiceRecord]:
    identity = record_identity(record)
    if not identity:
        return None
    for candidate in pool:
        if record_identity(candidate) == identity:
            return candidate
    return None


def _contained(record: InvoiceRecord, pool: Sequence[InvoiceRecord]) -> Optional[InvoiceRecord]:
    identity = record_identity(record)
    for candidate in pool:
        if identity and candidate.primary_file_link and identity in candidate.primary_file_link:
            return candidate
        # Containment is symmetric: the candidate's id may sit inside our link.
        other = record_identity(candidate)
        if other and record.primary_file_link and other in record.primary_file_link:
            return candidate
    return None


def _same_hash(record: InvoiceRecord, pool: Sequence[InvoiceRecord]) -> Optional[InvoiceRecord]:
    digest = record.content_hash.strip()
    if not digest:
        return None
    for candidate in pool:
        if candidate.content_hash.strip() == digest:
            return candidate
    return None


class Matcher:
    """Find the counterpart of a record in another store.

    Strategies run in order and the first one that succeeds wins:
    exact identity, identity contained in the stored link, equal content
    hash, then a composite vendor/amount match that only considers records
    still waiting for confirmation.
    """

    def __init__(self, composite_statuses: Iterable[Status] = (Status.WAITING_FOR_CONFIRM,)) -> None:
        self.composite_statuses = frozenset(composite_statuses)
        self._strategies: List[tuple[str, Callable]] = [
            (EXACT, _exact),
            (CONTAINMENT, _contained),
            (CONTENT_HASH, _same_hash),
        ]

    def match(self, record: InvoiceRecord, pool: Sequence[InvoiceRecord]) -> Optional[Match]:
        """Return the first match, None when nothing matches.

        Raises AmbiguousMatchError when the composite fallback finds more than
        one candidate.
        """

        if not pool:
            return None
        for name, strategy in self._strategies:
            found = strategy(record, pool)
            if found is not None:
                logger.debug("Matched %s via %s", record.label, name)
                return Match(found, name)
        return self._composite(record, pool)

    def _composite(self, record: InvoiceRecord, pool: Sequence[InvoiceRecord]) -> Optional[Match]:
        key = match_key(record)
        if not key.vendor:
            # Empty vendors are too common to mean anything.
            logger.debug("Cannot match %s on empty key", record.label)
            return None
        candidates = [
            candidate
            for candidate in pool
            if candidate.status in self.composite_statuses
            and match_key(candidate)[1:] == key[1:]
        ]
        if not candidates:
            return None
        if len(candidates) > 1:
            raise AmbiguousMatchError(
                f"{len(candidates)} candidates for {key.vendor!r} {key.amount}",
                candidates,
            )
        return Match(candidates[0], COMPOSITE)
