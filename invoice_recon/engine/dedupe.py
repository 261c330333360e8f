"""Collapse duplicate copies of the same invoice inside one store."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Tuple

from invoice_recon.core.models import InvoiceRecord
from invoice_recon.engine.normalize import match_key

logger = logging.getLogger(__name__)


@dataclass
class DedupeResult:
    canonical: List[InvoiceRecord] = field(default_factory=list)
    excess: List[InvoiceRecord] = field(default_factory=list)
    groups: List[List[InvoiceRecord]] = field(default_factory=list)


class _DisjointSet:
    def __init__(self, size: int) -> None:
        self.parent = list(range(size))

    def find(self, index: int) -> int:
        while self.parent[index] != index:
            self.parent[index] = self.parent[self.parent[index]]
            index = self.parent[index]
        return index

    def union(self, left: int, right: int) -> None:
        root_left, root_right = self.find(left), self.find(right)
        if root_left != root_right:
            self.parent[max(root_left, root_right)] = min(root_left, root_right)


def _canonical_rank(record: InvoiceRecord) -> Tuple[int, int]:
    has_id = 1 if record.generated_invoice_id else 0
    row = record.row_id if record.row_id is not None else -1
    return has_id, row


def dedupe(records: Sequence[InvoiceRecord]) -> DedupeResult:
    """Group records by identity or content hash and keep one per group.

    Two records are linked when they share a non-empty identity or a
    non-empty content hash and also agree on vendor and amount. Records
    with neither identity nor hash are never grouped. The canonical member
    of a group is the one carrying an invoice id, then the highest row id.
    """

    records = list(records)
    keys = [match_key(record) for record in records]
    links = _DisjointSet(len(records))
    seen: Dict[Tuple[str, str, str, str], int] = {}

    for index, (record, key) in enumerate(zip(records, keys)):
        vendor_amount = (key.vendor, key.amount)
        bucket_keys = []
        if key.identity:
            bucket_keys.append(("identity", key.identity) + vendor_amount)
        digest = record.content_hash.strip()
        if digest:
            bucket_keys.append(("hash", digest) + vendor_amount)
        for bucket in bucket_keys:
            if bucket in seen:
                links.union(seen[bucket], index)
            else:
                seen[bucket] = index

    grouped: Dict[int, List[int]] = {}
    for index in range(len(records)):
        grouped.setdefault(links.find(index), []).append(index)

    result = DedupeResult()
    for root in sorted(grouped):
        members = [records[index] for index in grouped[root]]
        keeper = max(members, key=_canonical_rank)
        result.canonical.append(keeper)
        result.groups.append(members)
        for member in members:
            if member is not keeper:
                result.excess.append(member)

    if result.excess:
        logger.info(
            "Deduplicated %d records into %d (%d excess)",
            len(records),
            len(result.canonical),
            len(result.excess),
        )
    return result
