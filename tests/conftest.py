"""Pytest configuration plus in-memory stand-ins for the sheet, mirror and archive."""
import copy
import sys
import threading
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Ensure repository root is on sys.path for module resolution
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import gspread
import requests
from gspread.utils import a1_to_rowcol

from invoice_recon.core.errors import DuplicateKeyError, NotFoundError, TransientError
from invoice_recon.core.models import InvoiceRecord, Status
from invoice_recon.providers.blobs import BlobObject, quote_key
from invoice_recon.providers.sheets import SheetSource

SHEET_HEADERS = [
    "File_ID",
    "file_link",
    "Vender",
    "amount",
    "currency",
    "Invoice_data",
    "category",
    "Status",
    "Charge_to_project",
    "Invoice ID",
    "Achieved_File_Link",
    "Achieved_File_ID",
    "file_ID_HASH",
]

DRIVE_ID = "1AbCdEfGhIjKlMnOpQrStUvWxYz0123456"


class FakeWorksheet:
    """Just enough of gspread's Worksheet for the sheet adapter."""

    def __init__(self, values: List[List[str]]):
        self.values = [list(row) for row in values]
        self.batch_calls: List[List[Dict]] = []
        self.fail_batches: List[int] = []
        self.fail_code = 400
        self.read_errors: List[Exception] = []

    def get_all_values(self):
        if self.read_errors:
            raise self.read_errors.pop(0)
        return copy.deepcopy(self.values)

    def row_values(self, row: int):
        return list(self.values[row - 1]) if len(self.values) >= row else []

    def batch_update(self, data, value_input_option=None):
        call_number = len(self.batch_calls)
        self.batch_calls.append(list(data))
        if call_number in self.fail_batches:
            raise FakeAPIError("quota exceeded", self.fail_code)
        for item in data:
            row, column = a1_to_rowcol(item["range"])
            while len(self.values) < row:
                self.values.append([])
            target = self.values[row - 1]
            while len(target) < column:
                target.append("")
            target[column - 1] = item["values"][0][0]

    def append_rows(self, rows, value_input_option=None):
        self.values.extend(list(row) for row in rows)

    def cell(self, row: int, header: str) -> str:
        column = self.values[0].index(header)
        line = self.values[row - 1]
        return line[column] if column < len(line) else ""


class FakeAPIError(gspread.exceptions.APIError):
    """APIError without the HTTP response gspread normally builds it from."""

    def __init__(self, message, code=400):
        Exception.__init__(self, message)
        self.message = message
        self.code = code

    def __str__(self):
        return self.message


def sheet_row(**fields) -> List[str]:
    """Build a sheet row in SHEET_HEADERS order from header-name keyword args."""

    row = [""] * len(SHEET_HEADERS)
    for header, value in fields.items():
        row[SHEET_HEADERS.index(header.replace("__", " "))] = value
    return row


class FakeResponse:
    """requests.Response stand-in; an exception payload is raised from json()."""

    def __init__(self, status_code=200, payload=None, headers=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.text = text if text is not None else str(payload)

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class ScriptedSession:
    """Returns queued responses and records each request."""

    def __init__(self, *responses):
        self.headers = {}
        self.responses = list(responses)
        self.requests = []

    def request(self, method, url, params=None, timeout=None, **kwargs):
        self.requests.append({"method": method, "url": url, "params": params, "timeout": timeout, **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeMirror:
    """In-memory mirror with the SupabaseMirror interface."""

    def __init__(self, records: Optional[List[InvoiceRecord]] = None):
        self.rows: Dict[int, InvoiceRecord] = {}
        self.next_id = 1
        self.calls: List[tuple] = []
        self.fail_inserts = 0
        self._lock = threading.Lock()
        for record in records or []:
            self._store(record)

    def _store(self, record: InvoiceRecord) -> InvoiceRecord:
        row_id = record.row_id if record.row_id is not None else self.next_id
        self.next_id = max(self.next_id, row_id) + 1
        stored = record.with_updates(row_id=row_id, source_key="")
        self.rows[row_id] = stored
        return stored

    def select_all(self):
        return [copy.copy(record) for _, record in sorted(self.rows.items())]

    def insert(self, record):
        with self._lock:
            self.calls.append(("insert", record.label))
            if self.fail_inserts:
                self.fail_inserts -= 1
                raise TransientError("mirror unavailable")
            for existing in self.rows.values():
                if record.identity and existing.identity == record.identity:
                    raise DuplicateKeyError(record.identity)
            return self._store(record.with_updates(row_id=None))

    def update(self, row_id, fields):
        self.calls.append(("update", row_id))
        if row_id not in self.rows:
            raise NotFoundError(str(row_id))
        changes = {}
        if "status" in fields:
            changes["status"] = Status.parse(fields["status"])
        if "generated_invoice_id" in fields:
            changes["generated_invoice_id"] = fields["generated_invoice_id"]
        self.rows[row_id] = self.rows[row_id].with_updates(**changes)

    def delete(self, row_ids):
        self.calls.append(("delete", tuple(row_ids)))
        removed = 0
        for row_id in row_ids:
            if self.rows.pop(row_id, None) is not None:
                removed += 1
        return removed

    def count(self):
        return len(self.rows)


class FakeBlobStore:
    """In-memory bucket with the S3BlobStore interface."""

    def __init__(self, objects: Optional[Dict[str, bytes]] = None, public_base: str = "https://files.example.com"):
        self.objects: Dict[str, bytes] = {}
        self.etags: Dict[str, str] = {}
        self.public_base = public_base
        self.copies: List[tuple] = []
        self.copy_failures = 0
        for key, body in (objects or {}).items():
            self.put(key, body)

    def put(self, key, body, content_type="application/octet-stream"):
        self.objects[key] = body
        self.etags[key] = f"etag-{abs(hash(body)) % 10**8}"
        return BlobObject(key, self.etags[key], len(body))

    def public_url(self, key):
        return f"{self.public_base}/{quote_key(key)}"

    def list(self, prefix):
        for key in sorted(self.objects):
            if key.startswith(prefix):
                yield BlobObject(key, self.etags[key], len(self.objects[key]))

    def head(self, key):
        if key not in self.objects:
            return None
        return BlobObject(key, self.etags[key], len(self.objects[key]))

    def get(self, key):
        if key not in self.objects:
            raise NotFoundError(key)
        return self.objects[key]

    def copy(self, source_key, dest_key):
        if self.copy_failures:
            self.copy_failures -= 1
            raise TransientError("slow down")
        self.copies.append((source_key, dest_key))
        self.objects[dest_key] = self.objects[source_key]
        self.etags[dest_key] = self.etags[source_key]
        return BlobObject(dest_key, self.etags[dest_key])

    def delete_many(self, keys, chunk_size=1000):
        deleted = []
        for key in keys:
            if self.objects.pop(key, None) is not None:
                self.etags.pop(key, None)
                deleted.append(key)
        return deleted, []


@pytest.fixture
def make_record():
    """Factory for InvoiceRecord with sensible defaults."""

    def _make(**fields) -> InvoiceRecord:
        fields.setdefault("vendor", "Acme")
        fields.setdefault("amount", Decimal("100.00"))
        fields.setdefault("currency", "GBP")
        return InvoiceRecord(**fields)

    return _make


@pytest.fixture
def worksheet() -> FakeWorksheet:
    return FakeWorksheet(
        [
            SHEET_HEADERS,
            sheet_row(
                File_ID=DRIVE_ID,
                file_link=f"https://drive.google.com/file/d/{DRIVE_ID}/view",
                Vender="Acme Ltd",
                amount="1,200.00",
                currency="GBP",
                Status="Submitted",
                Charge_to_project="PRJ01",
                Invoice__ID="PRJ01-0001-1200GBP",
            ),
        ]
    )


@pytest.fixture
def sheet(worksheet: FakeWorksheet) -> SheetSource:
    return SheetSource(worksheet)


@pytest.fixture
def no_sleep():
    """Sleep replacement that records requested delays."""

    delays: List[float] = []
    return delays.append
