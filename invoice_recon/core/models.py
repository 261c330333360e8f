"""Data models shared by the reconciliation engine and provider adapters."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional


class Status(str, Enum):
    """Lifecycle states an invoice moves through."""

    WAITING_FOR_CONFIRM = "Waiting for Confirm"
    CONFIRMED = "Confirmed"
    SUBMITTED = "Submitted"

    @classmethod
    def parse(cls, raw: Any) -> Optional["Status"]:
        """Map free-form status text to a Status, or None when blank/unknown."""

        if raw is None:
            return None
        if isinstance(raw, Status):
            return raw
        text = " ".join(str(raw).split()).casefold()
        if not text:
            return None
        for member in cls:
            if member.value.casefold() == text or member.name.casefold() == text.replace(" ", "_"):
                return member
        if text.replace(" ", "") == "waitingforconfirm":
            return cls.WAITING_FOR_CONFIRM
        return None


@dataclass
class InvoiceRecord:
    """One expense invoice, normalized from whichever store it was read from."""

    row_id: Optional[int] = None
    identity: str = ""
    vendor: str = ""
    amount: Decimal = Decimal("0.00")
    currency: str = ""
    status: Optional[Status] = None
    generated_invoice_id: Optional[str] = None
    primary_file_link: str = ""
    archived_file_link: str = ""
    archived_file_id: str = ""
    content_hash: str = ""
    project_code: str = ""
    invoice_date: str = ""
    category: str = ""
    source_key: str = ""

    @property
    def label(self) -> str:
        """Short human-readable key used in logs and run reports."""

        if self.identity:
            return self.identity
        if self.generated_invoice_id:
            return self.generated_invoice_id
        if self.row_id is not None:
            return f"row:{self.row_id}"
        return f"{self.vendor or '?'}/{self.amount}"

    def with_updates(self, **changes: Any) -> "InvoiceRecord":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Return a plain dictionary with JSON/CSV friendly values."""

        data = asdict(self)
        data["amount"] = f"{self.amount:.2f}"
        data["status"] = self.status.value if self.status else ""
        return data


class MatchKey(NamedTuple):
    identity: str
    vendor: str
    amount: str


@dataclass
class RecordUpdate:
    """Targeted field changes for one mirror row."""

    row_id: int
    fields: Dict[str, Any]
    label: str = ""


@dataclass
class ReviewItem:
    """An authoritative record the planner refused to act on without a human."""

    record: InvoiceRecord
    reason: str


@dataclass
class ReconciliationPlan:
    inserts: List[InvoiceRecord] = field(default_factory=list)
    updates: List[RecordUpdate] = field(default_factory=list)
    deletes: List[int] = field(default_factory=list)
    needs_review: List[ReviewItem] = field(default_factory=list)
    authoritative_excess: List[InvoiceRecord] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.inserts or self.updates or self.deletes)

    def counts(self) -> Dict[str, int]:
        return {
            "inserts": len(self.inserts),
            "updates": len(self.updates),
            "deletes": len(self.deletes),
            "needs_review": len(self.needs_review),
            "authoritative_excess": len(self.authoritative_excess),
        }


@dataclass
class ItemOutcome:
    action: str
    key: str
    reason: str = ""


@dataclass
class RunSummary:
    """Per-item results of a run, detailed enough to re-run the failures."""

    name: str = "run"
    succeeded: List[ItemOutcome] = field(default_factory=list)
    skipped: List[ItemOutcome] = field(default_factory=list)
    failed: List[ItemOutcome] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)

    def ok(self, action: str, key: str, reason: str = "") -> None:
        self.succeeded.append(ItemOutcome(action, key, reason))

    def skip(self, action: str, key: str, reason: str) -> None:
        self.skipped.append(ItemOutcome(action, key, reason))

    def fail(self, action: str, key: str, reason: str) -> None:
        self.failed.append(ItemOutcome(action, key, reason))

    def merge(self, other: "RunSummary") -> "RunSummary":
        self.succeeded.extend(other.succeeded)
        self.skipped.extend(other.skipped)
        self.failed.extend(other.failed)
        self.notes.extend(other.notes)
        return self

    def count(self, action: str) -> int:
        return sum(1 for item in self.succeeded if item.action == action)

    def counts(self) -> Dict[str, int]:
        return {
            "inserts": self.count("insert"),
            "updates": self.count("update"),
            "deletes": self.count("delete"),
            "skipped": len(self.skipped),
            "errors": len(self.failed),
        }

    def failed_keys(self) -> List[str]:
        return [item.key for item in self.failed]

    def outcomes(self) -> List[Dict[str, str]]:
        """Flatten every outcome into rows for the report sinks."""

        rows: List[Dict[str, str]] = []
        for result, items in (("ok", self.succeeded), ("skipped", self.skipped), ("failed", self.failed)):
            for item in items:
                rows.append({"result": result, "action": item.action, "key": item.key, "reason": item.reason})
        return rows
