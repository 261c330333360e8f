"""Turn an authoritative snapshot and a mirror snapshot into a change plan."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Set

from invoice_recon.core.errors import AmbiguousMatchError, ConsistencyGuardError
from invoice_recon.core.models import InvoiceRecord, ReconciliationPlan, RecordUpdate, ReviewItem
from invoice_recon.engine.dedupe import dedupe
from invoice_recon.engine.matcher import Matcher

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DiffPlanner:
    """Plan inserts, updates and deletes that bring the mirror in line.

    The authoritative store always wins: only its non-empty ``status`` and
    ``generated_invoice_id`` are pushed to the mirror, never the reverse.
    """

    def __init__(self, matcher: Optional[Matcher] = None, clock: Callable[[], datetime] = _utc_now) -> None:
        self.matcher = matcher or Matcher()
        self.clock = clock

    def plan(
        self,
        authoritative: Sequence[InvoiceRecord],
        mirror: Sequence[InvoiceRecord],
    ) -> ReconciliationPlan:
        plan = ReconciliationPlan()

        sheet = dedupe(authoritative)
        mirrored = dedupe(mirror)
        plan.authoritative_excess = list(sheet.excess)
        for record in sheet.excess:
            logger.warning("Duplicate authoritative row %s (row %s)", record.label, record.row_id)
        for record in mirrored.excess:
            if record.row_id is not None:
                plan.deletes.append(record.row_id)

        claimed: Set[int] = set()
        protected: Set[int] = set()
        now = self.clock().isoformat()

        for record in sheet.canonical:
            pool = [candidate for candidate in mirrored.canonical if id(candidate) not in claimed]
            try:
                found = self.matcher.match(record, pool)
            except AmbiguousMatchError as exc:
                logger.warning("Ambiguous match for %s: %s", record.label, exc)
                plan.needs_review.append(ReviewItem(record, str(exc)))
                protected.update(id(candidate) for candidate in exc.candidates)
                continue

            if found is None:
                plan.inserts.append(record)
                continue

            counterpart = found.candidate
            claimed.add(id(counterpart))
            fields = self._changed_fields(record, counterpart)
            if fields and counterpart.row_id is not None:
                fields["updated_at"] = now
                plan.updates.append(RecordUpdate(counterpart.row_id, fields, record.label))

        for candidate in mirrored.canonical:
            if id(candidate) in claimed or id(candidate) in protected or candidate.row_id is None:
                continue
            try:
                reverse = self.matcher.match(candidate, sheet.canonical)
            except AmbiguousMatchError as exc:
                logger.warning("Ambiguous reverse match for mirror row %s: %s", candidate.row_id, exc)
                continue
            if reverse is None:
                plan.deletes.append(candidate.row_id)

        self._guard(plan, mirror)
        logger.info("Planned %s", plan.counts())
        return plan

    @staticmethod
    def _changed_fields(source: InvoiceRecord, target: InvoiceRecord) -> Dict[str, object]:
        fields: Dict[str, object] = {}
        if source.status is not None and source.status != target.status:
            fields["status"] = source.status.value
        if source.generated_invoice_id and source.generated_invoice_id != target.generated_invoice_id:
            fields["generated_invoice_id"] = source.generated_invoice_id
        return fields

    @staticmethod
    def _guard(plan: ReconciliationPlan, mirror: Sequence[InvoiceRecord]) -> None:
        existing: List[int] = [record.row_id for record in mirror if record.row_id is not None]
        if existing and set(existing) <= set(plan.deletes):
            raise ConsistencyGuardError(
                f"Plan would delete all {len(existing)} mirror records; refusing to continue"
            )
