"""Quality checks for classifier output and assigned invoice ids."""
import logging
import re
from collections import Counter
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from invoice_recon.core.models import InvoiceRecord, Status
from invoice_recon.engine.normalize import parse_amount
from invoice_recon.engine.sequence import parse_invoice_id

logger = logging.getLogger(__name__)

_CURRENCY = re.compile(r"^[A-Z]{3}$")
_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d.%m.%Y", "%Y/%m/%d")


def _clean(value: Any) -> str:
    if value is None:
        return ""
    text = " ".join(str(value).split())
    return "" if text.lower() in {"null", "none", "n/a"} else text


def _normalize_date(value: str) -> Optional[str]:
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).strftime("%Y-%m-%d")
        except ValueError:
            continue
    return None


def validate_candidate(
    candidate: Dict[str, Any],
    *,
    source_key: str = "",
    content_hash: str = "",
    file_link: str = "",
) -> Tuple[Optional[InvoiceRecord], List[str]]:
    """Turn classifier output into a record, or explain why it cannot be one."""

    issues: List[str] = []
    if not candidate:
        return None, ["classifier returned nothing"]

    vendor = _clean(candidate.get("vendor"))
    if not vendor:
        issues.append("missing vendor")

    raw_amount = _clean(candidate.get("amount"))
    amount = parse_amount(raw_amount)
    if not raw_amount or amount == 0:
        issues.append("missing or zero amount")

    currency = _clean(candidate.get("currency")).upper()
    if not _CURRENCY.match(currency):
        issues.append(f"invalid currency {currency!r}")

    invoice_date = ""
    raw_date = _clean(candidate.get("invoice_date"))
    if raw_date:
        invoice_date = _normalize_date(raw_date) or ""
        if not invoice_date:
            issues.append(f"unreadable invoice date {raw_date!r}")

    if issues:
        logger.warning("Rejected classifier output for %s: %s", source_key or file_link, "; ".join(issues))
        return None, issues

    record = InvoiceRecord(
        vendor=vendor,
        amount=amount,
        currency=currency,
        status=Status.WAITING_FOR_CONFIRM,
        primary_file_link=file_link,
        content_hash=content_hash,
        invoice_date=invoice_date,
        category=_clean(candidate.get("category")),
        source_key=source_key,
    )
    return record, []


def audit_invoice_ids(
    records: Iterable[InvoiceRecord],
    valid_projects: Optional[Set[str]] = None,
) -> List[Dict[str, str]]:
    """Report malformed, inconsistent or duplicated invoice ids.

    Ids are never rewritten; this only lists what a human should look at.
    """

    findings: List[Dict[str, str]] = []
    records = [record for record in records if record.generated_invoice_id]
    seen = Counter(record.generated_invoice_id for record in records)

    def report(record: InvoiceRecord, issue: str) -> None:
        findings.append(
            {
                "row": "" if record.row_id is None else str(record.row_id),
                "invoice_id": record.generated_invoice_id or "",
                "issue": issue,
            }
        )

    for record in records:
        invoice_id = record.generated_invoice_id or ""
        if seen[invoice_id] > 1:
            report(record, f"duplicate id used by {seen[invoice_id]} rows")
        try:
            parsed = parse_invoice_id(invoice_id)
        except ValueError as exc:
            report(record, str(exc))
            continue

        if record.project_code and parsed.project_code != record.project_code:
            report(record, f"project {parsed.project_code} does not match {record.project_code}")
        if valid_projects and parsed.project_code not in valid_projects:
            report(record, f"unknown project {parsed.project_code}")

        expected = record.amount.copy_abs().quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        if record.amount < 0:
            expected = -expected
        if parsed.amount != expected:
            report(record, f"amount {parsed.amount} does not match {record.amount}")
        if record.currency and parsed.currency != record.currency.upper():
            report(record, f"currency {parsed.currency} does not match {record.currency}")

    if findings:
        logger.warning("Invoice id audit found %d issues", len(findings))
    return findings
