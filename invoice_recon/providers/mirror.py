"""Relational mirror of the invoice sheet, served through Supabase PostgREST."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import requests

from invoice_recon.core.config import Settings
from invoice_recon.core.errors import DuplicateKeyError, NotFoundError, ProviderError, TransientError
from invoice_recon.core.models import InvoiceRecord, Status
from invoice_recon.core.utils import chunked
from invoice_recon.engine.normalize import extract_identity, parse_amount

logger = logging.getLogger(__name__)

PAGE_SIZE = 1000
DELETE_CHUNK = 50


def record_from_row(row: Dict[str, Any]) -> InvoiceRecord:
    """Normalize one mirror row into an InvoiceRecord."""

    file_link = row.get("file_link") or ""
    file_id = row.get("file_id") or ""
    return InvoiceRecord(
        row_id=row.get("id"),
        identity=extract_identity(file_id) or extract_identity(file_link),
        vendor=row.get("vendor") or "",
        amount=parse_amount(row.get("amount")),
        currency=row.get("currency") or "",
        status=Status.parse(row.get("status")),
        generated_invoice_id=row.get("generated_invoice_id") or None,
        primary_file_link=file_link,
        archived_file_link=row.get("achieved_file_link") or "",
        archived_file_id=row.get("achieved_file_id") or "",
        content_hash=row.get("file_ID_HASH") or "",
        project_code=row.get("charge_to_project") or "",
        invoice_date=row.get("invoice_date") or "",
        category=row.get("category") or "",
    )


def record_to_row(record: InvoiceRecord) -> Dict[str, Any]:
    """Column payload for inserting a record; the database assigns ``id``."""

    return {
        "file_id": record.identity or None,
        "file_link": record.primary_file_link or None,
        "vendor": record.vendor or None,
        "amount": float(record.amount),
        "currency": record.currency or None,
        "invoice_date": record.invoice_date or None,
        "status": record.status.value if record.status else None,
        "generated_invoice_id": record.generated_invoice_id or None,
        "charge_to_project": record.project_code or None,
        "achieved_file_id": record.archived_file_id or None,
        "achieved_file_link": record.archived_file_link or None,
        "file_ID_HASH": record.content_hash or None,
        "category": record.category or None,
    }


class SupabaseMirror:
    """Targeted reads and writes against the mirror table."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        table: str = "invoices",
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
    ) -> None:
        self.endpoint = f"{base_url.rstrip('/')}/rest/v1/{table}"
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            }
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "SupabaseMirror":
        settings.require("supabase_url", "supabase_key")
        return cls(
            settings.supabase_url,
            settings.supabase_key,
            table=settings.supabase_table,
            timeout=settings.request_timeout,
        )

    def _request(self, method: str, params: Optional[Dict[str, str]] = None, **kwargs: Any) -> requests.Response:
        try:
            response = self.session.request(method, self.endpoint, params=params, timeout=self.timeout, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientError(f"{method} {self.endpoint}: {exc}") from exc

        if response.status_code == 409:
            raise DuplicateKeyError(response.text[:200])
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientError(f"{method} returned {response.status_code}: {response.text[:200]}")
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise ProviderError(f"{method} returned {response.status_code}: {response.text[:200]}") from exc
        return response

    def _rows(self, response: requests.Response) -> List[Dict[str, Any]]:
        """Decode a JSON array body; an unreadable body is a provider failure."""

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(f"mirror returned a non-JSON body: {response.text[:200]!r}") from exc
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise ProviderError(f"mirror returned {type(payload).__name__} instead of rows")
        return payload

    def select_all(self, page_size: int = PAGE_SIZE) -> List[InvoiceRecord]:
        """Read the whole table page by page."""

        records: List[InvoiceRecord] = []
        offset = 0
        while True:
            response = self._request(
                "GET",
                params={"select": "*", "order": "id.asc", "limit": str(page_size), "offset": str(offset)},
            )
            rows = self._rows(response)
            records.extend(record_from_row(row) for row in rows)
            if len(rows) < page_size:
                break
            offset += page_size
        logger.info("Loaded %d mirror records", len(records))
        return records

    def insert(self, record: InvoiceRecord) -> InvoiceRecord:
        response = self._request(
            "POST",
            json=record_to_row(record),
            headers={"Prefer": "return=representation"},
        )
        rows = self._rows(response)
        return record_from_row(rows[0]) if rows else record

    def update(self, row_id: int, fields: Dict[str, Any]) -> None:
        response = self._request(
            "PATCH",
            params={"id": f"eq.{row_id}"},
            json=fields,
            headers={"Prefer": "return=representation"},
        )
        if not self._rows(response):
            raise NotFoundError(f"mirror row {row_id} not found")

    def delete(self, row_ids: Sequence[int]) -> int:
        """Delete rows by id in chunks; returns the number removed."""

        removed = 0
        for chunk in chunked(list(row_ids), DELETE_CHUNK):
            ids = ",".join(str(row_id) for row_id in chunk)
            response = self._request(
                "DELETE",
                params={"id": f"in.({ids})"},
                headers={"Prefer": "return=representation"},
            )
            removed += len(self._rows(response))
        return removed

    def count(self) -> int:
        response = self._request(
            "HEAD",
            params={"select": "id"},
            headers={"Prefer": "count=exact", "Range": "0-0"},
        )
        content_range = response.headers.get("Content-Range", "")
        total = content_range.rsplit("/", 1)[-1]
        return int(total) if total.isdigit() else 0
