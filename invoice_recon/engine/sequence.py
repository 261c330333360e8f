"""Per-project sequential invoice identifiers.

Identifiers look like ``PRJ01-0007-m600GBP``: project code, a four digit
sequence, the rounded absolute amount (``m`` marks a negative amount) and
the currency code.
"""
from __future__ import annotations

import logging
import re
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Dict, Iterable, Iterator, Optional, Protocol

from invoice_recon.engine.normalize import parse_amount

logger = logging.getLogger(__name__)

_AMOUNT_SEGMENT = re.compile(r"^(m?)(\d+)([A-Za-z]*)$")


@dataclass(frozen=True)
class ParsedInvoiceId:
    project_code: str
    sequence: int
    amount: Decimal
    currency: str


def _scan_pattern(project_code: str) -> re.Pattern:
    return re.compile(rf"^{re.escape(project_code)}-(\d{{4}})-")


def next_sequence(project_code: str, existing_ids: Iterable[Optional[str]]) -> int:
    """Highest sequence already used by ``project_code`` plus one, or 1."""

    pattern = _scan_pattern(project_code)
    highest = 0
    for value in existing_ids:
        if not value:
            continue
        found = pattern.match(str(value).strip())
        if found:
            highest = max(highest, int(found.group(1)))
    return highest + 1


def render_amount_segment(amount, currency: str) -> str:
    value = parse_amount(amount)
    whole = value.copy_abs().quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    sign = "m" if value < 0 else ""
    return f"{sign}{int(whole)}{(currency or '').strip().upper()}"


def render_invoice_id(project_code: str, sequence: int, amount, currency: str) -> str:
    if not project_code:
        raise ValueError("project code is required to render an invoice id")
    if sequence < 1:
        raise ValueError(f"sequence must be positive, got {sequence}")
    return f"{project_code}-{sequence:04d}-{render_amount_segment(amount, currency)}"


def parse_amount_segment(segment: str) -> tuple[Decimal, str]:
    """``"m600GBP"`` -> ``(Decimal("-600"), "GBP")``."""

    found = _AMOUNT_SEGMENT.match((segment or "").strip())
    if not found:
        raise ValueError(f"Malformed amount segment: {segment!r}")
    sign, digits, currency = found.groups()
    amount = Decimal(digits)
    if sign:
        amount = -amount
    return amount, currency.upper()


def parse_invoice_id(text: str) -> ParsedInvoiceId:
    """Split an identifier back into its parts.

    Project codes may themselves contain dashes, so the string is split from
    the right.
    """

    parts = (text or "").strip().rsplit("-", 2)
    if len(parts) != 3 or not parts[0]:
        raise ValueError(f"Malformed invoice id: {text!r}")
    project_code, sequence_text, segment = parts
    if len(sequence_text) != 4 or not sequence_text.isdigit():
        raise ValueError(f"Malformed sequence in invoice id: {text!r}")
    amount, currency = parse_amount_segment(segment)
    return ParsedInvoiceId(project_code, int(sequence_text), amount, currency)


class CounterStore(Protocol):
    def reserve(self, project_code: str, floor: int) -> int:
        ...


class SqliteCounterStore:
    """Durable per-project counters that survive concurrent batches.

    ``reserve`` runs inside ``BEGIN IMMEDIATE`` so two processes sharing the
    database file serialize on the write lock.
    """

    def __init__(self, path: Path, timeout: float = 30.0) -> None:
        self.path = Path(path)
        self.timeout = timeout
        self._init_schema()

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.path), timeout=self.timeout, isolation_level=None)
        try:
            yield conn
        finally:
            conn.close()

    def _init_schema(self) -> None:
        if self.path.parent and not self.path.parent.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._conn() as conn:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS project_counters ("
                "project_code TEXT PRIMARY KEY, "
                "last_sequence INTEGER NOT NULL, "
                "updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP)"
            )

    def reserve(self, project_code: str, floor: int) -> int:
        """Return ``max(stored, floor) + 1`` and persist it."""

        with self._conn() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT last_sequence FROM project_counters WHERE project_code = ?",
                    (project_code,),
                ).fetchone()
                stored = row[0] if row else 0
                value = max(stored, floor) + 1
                conn.execute(
                    "INSERT INTO project_counters (project_code, last_sequence, updated_at) "
                    "VALUES (?, ?, CURRENT_TIMESTAMP) "
                    "ON CONFLICT(project_code) DO UPDATE SET "
                    "last_sequence = excluded.last_sequence, updated_at = excluded.updated_at",
                    (project_code, value),
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        return value

    def current(self, project_code: str) -> int:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT last_sequence FROM project_counters WHERE project_code = ?",
                (project_code,),
            ).fetchone()
        return row[0] if row else 0


class AllocationBatch:
    """Running counters for one submission batch, seeded once per project."""

    def __init__(self, allocator: "SequenceAllocator", existing_ids: Iterable[Optional[str]]) -> None:
        self._allocator = allocator
        self._existing = [value for value in existing_ids if value]
        self._last: Dict[str, int] = {}

    def next(self, project_code: str) -> int:
        if not project_code:
            raise ValueError("project code is required for allocation")
        with self._allocator.lock_for(project_code):
            if project_code not in self._last:
                self._last[project_code] = next_sequence(project_code, self._existing) - 1
            sequence = self._allocator.reserve(project_code, self._last[project_code])
            self._last[project_code] = sequence
        return sequence

    def allocate(self, project_code: str, amount, currency: str) -> str:
        invoice_id = render_invoice_id(project_code, self.next(project_code), amount, currency)
        self._existing.append(invoice_id)
        logger.info("Allocated %s", invoice_id)
        return invoice_id


class SequenceAllocator:
    """Hands out sequence numbers one project at a time.

    Without a counter store the scanned maximum is the only source of truth.
    With one, every number is also reserved durably, so concurrent batches
    seeded from the same stale snapshot still get distinct numbers.
    """

    def __init__(self, counters: Optional[CounterStore] = None) -> None:
        self.counters = counters
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, project_code: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(project_code, threading.Lock())

    def reserve(self, project_code: str, floor: int) -> int:
        if self.counters is None:
            return floor + 1
        return self.counters.reserve(project_code, floor)

    def open_batch(self, existing_ids: Iterable[Optional[str]]) -> AllocationBatch:
        return AllocationBatch(self, existing_ids)

    def allocate(self, project_code: str, amount, currency: str, existing_ids: Iterable[Optional[str]]) -> str:
        """Allocate a single identifier outside of a batch."""

        return self.open_batch(existing_ids).allocate(project_code, amount, currency)
