"""Comparable keys for records read from different stores."""
from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any
from urllib.parse import urlparse

from invoice_recon.core.models import InvoiceRecord, MatchKey

TWO_PLACES = Decimal("0.01")
_AMOUNT_NOISE = re.compile(r"[^0-9.\-]")
_IDENTITY_RUN = re.compile(r"[A-Za-z0-9_-]{20,}")
_BARE_IDENTITY = re.compile(r"^[A-Za-z0-9_-]+$")


def normalize_vendor(raw: Any) -> str:
    """Lowercase, trim and collapse internal whitespace."""

    if raw is None:
        return ""
    return " ".join(str(raw).split()).lower()


def parse_amount(raw: Any) -> Decimal:
    """Parse money text such as ``"$1,200.50"`` into a 2 dp Decimal.

    Anything that cannot be parsed comes back as ``0.00``.
    """

    if raw is None:
        return Decimal("0.00")
    if isinstance(raw, Decimal):
        value = raw
    elif isinstance(raw, (int, float)):
        value = Decimal(str(raw))
    else:
        cleaned = _AMOUNT_NOISE.sub("", str(raw))
        if not cleaned:
            return Decimal("0.00")
        try:
            value = Decimal(cleaned)
        except InvalidOperation:
            return Decimal("0.00")
    if not value.is_finite():
        return Decimal("0.00")
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def normalize_amount(raw: Any) -> str:
    return f"{parse_amount(raw):.2f}"


def extract_identity(text: Any) -> str:
    """Pull the storage-provider file id out of a link or bare id.

    The longest run of at least 20 id characters wins, so the
    ``1AbC...`` segment of a Drive URL beats the ``view`` and ``file`` parts.
    Only the path and query of a URL are searched; host names such as
    ``pub-<hex>.r2.dev`` are never an id.
    """

    if text is None:
        return ""
    value = str(text).strip()
    if not value:
        return ""
    if _BARE_IDENTITY.match(value):
        return value
    parsed = urlparse(value)
    if parsed.scheme and parsed.netloc:
        value = f"{parsed.path}?{parsed.query}"
    runs = _IDENTITY_RUN.findall(value)
    if not runs:
        return ""
    return max(runs, key=len)


def record_identity(record: InvoiceRecord) -> str:
    """Best identity for a record: its own field, else one parsed from its link."""

    return extract_identity(record.identity) or extract_identity(record.primary_file_link)


def match_key(record: InvoiceRecord) -> MatchKey:
    return MatchKey(
        identity=record_identity(record),
        vendor=normalize_vendor(record.vendor),
        amount=normalize_amount(record.amount),
    )
