"""Google Sheets adapter: the authoritative invoice list."""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple, TypeVar

import gspread
import requests
from gspread.utils import rowcol_to_a1

from invoice_recon.core.config import Settings
from invoice_recon.core.errors import ConfigurationError, ProviderError, TransientError
from invoice_recon.core.models import InvoiceRecord, Status
from invoice_recon.core.utils import chunked, with_retries
from invoice_recon.engine.normalize import extract_identity, parse_amount

logger = logging.getLogger(__name__)

T = TypeVar("T")

BATCH_SIZE = 100

# Header spellings seen in the sheet, per record field. Only this module
# knows about them.
FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "vendor": ("Vendor", "Vender"),
    "amount": ("amount",),
    "currency": ("currency",),
    "status": ("Status",),
    "generated_invoice_id": ("Invoice_ID", "Invoice ID", "invoice_id"),
    "identity": ("File_ID", "file_id"),
    "primary_file_link": ("file_link",),
    "archived_file_link": ("Achieved_File_link", "Achieved_File_Link"),
    "archived_file_id": ("Achieved_File_ID",),
    "project_code": ("Charge_to_project", "Charge to project"),
    "invoice_date": ("Invoice_data", "Invoice_date", "Invoice date"),
    "category": ("category",),
    "content_hash": ("file_ID_HASH",),
    "source_key": ("source_key",),
}
APPEND_ORDER = [
    "identity",
    "primary_file_link",
    "vendor",
    "amount",
    "currency",
    "invoice_date",
    "category",
    "status",
    "content_hash",
]
PROJECT_CODE_HEADERS = ("Project Code", "ProjectCode", "project_code")


def _fold(header: str) -> str:
    return " ".join(str(header).replace("_", " ").split()).casefold()


def build_header_map(headers: Sequence[str]) -> Dict[str, int]:
    """Map record fields to 1-based column numbers, tolerating alias spellings."""

    folded = {}
    for index, header in enumerate(headers, start=1):
        folded.setdefault(_fold(header), index)
    mapping: Dict[str, int] = {}
    for field_name, aliases in FIELD_ALIASES.items():
        for alias in aliases:
            column = folded.get(_fold(alias))
            if column:
                mapping[field_name] = column
                break
    return mapping


def _cell(row: Sequence[str], column: Optional[int]) -> str:
    if not column or column > len(row):
        return ""
    return str(row[column - 1]).strip()


def _format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, Status):
        return value.value
    return str(value)


def _status_code(exc: gspread.exceptions.APIError) -> Optional[int]:
    code = getattr(exc, "code", None)
    if code is None:
        code = getattr(getattr(exc, "response", None), "status_code", None)
    try:
        return int(code) if code is not None else None
    except (TypeError, ValueError):
        return None


def _translate(exc: Exception, action: str) -> ProviderError:
    """Map gspread and transport errors onto the provider error classes."""

    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return TransientError(f"{action}: {exc}")
    if isinstance(exc, gspread.exceptions.APIError):
        code = _status_code(exc)
        if code is not None and (code == 429 or code >= 500):
            return TransientError(f"{action} returned {code}: {exc}")
        return ProviderError(f"{action} failed: {exc}")
    return ProviderError(f"{action}: {exc}")


class SheetSource:
    """Read and write the main invoice worksheet.

    ``worksheet`` is any object with gspread's ``Worksheet`` interface, which
    keeps the adapter testable with an in-memory stand-in. Every call goes
    through ``with_retries``; rate limits and server errors are retried.
    """

    def __init__(
        self,
        worksheet: Any,
        projects_worksheet: Any = None,
        attempts: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.worksheet = worksheet
        self.projects_worksheet = projects_worksheet
        self.attempts = attempts
        self.sleep = sleep
        self._headers: Optional[List[str]] = None
        self._columns: Dict[str, int] = {}
        self._missing_logged: Set[str] = set()

    @classmethod
    def from_settings(cls, settings: Settings) -> "SheetSource":
        settings.require("sheet_id")
        client = (
            gspread.service_account(filename=str(settings.service_account_path))
            if settings.service_account_path
            else gspread.service_account()
        )
        client.set_timeout(settings.request_timeout)
        try:
            spreadsheet = client.open_by_key(settings.sheet_id)
            main = spreadsheet.worksheet(settings.main_sheet)
        except gspread.exceptions.WorksheetNotFound as exc:
            raise ConfigurationError(f"Worksheet {settings.main_sheet!r} not found") from exc
        except (gspread.exceptions.APIError, requests.RequestException) as exc:
            raise _translate(exc, "open spreadsheet") from exc
        projects = None
        try:
            projects = spreadsheet.worksheet(settings.projects_sheet)
        except gspread.exceptions.WorksheetNotFound:
            logger.warning("Projects worksheet %r not found; project codes are unchecked", settings.projects_sheet)
        return cls(main, projects, attempts=settings.retry_attempts)

    def _call(self, call: Callable[[], T], action: str) -> T:
        def translated() -> T:
            try:
                return call()
            except (gspread.exceptions.APIError, requests.RequestException) as exc:
                raise _translate(exc, action) from exc

        return with_retries(translated, attempts=self.attempts, description=action, sleep=self.sleep)

    @property
    def columns(self) -> Dict[str, int]:
        if self._headers is None:
            header_row = self._call(lambda: self.worksheet.row_values(1), "sheet header read")
            self._headers = [str(value) for value in (header_row or [])]
            self._columns = build_header_map(self._headers)
        return self._columns

    def require_columns(self, *field_names: str) -> None:
        """Raise ConfigurationError unless every named field has a column."""

        columns = self.columns
        missing = [name for name in field_names if name not in columns]
        if missing:
            raise ConfigurationError("Sheet is missing columns for: " + ", ".join(missing))

    def read_records(self) -> List[InvoiceRecord]:
        """Snapshot every data row as an InvoiceRecord keyed by its row number."""

        values = self._call(self.worksheet.get_all_values, "sheet read")
        if not values:
            return []
        self._headers = [str(value) for value in values[0]]
        self._columns = build_header_map(self._headers)
        columns = self._columns

        records: List[InvoiceRecord] = []
        for row_number, row in enumerate(values[1:], start=2):
            if not any(str(value).strip() for value in row):
                continue
            file_id = _cell(row, columns.get("identity"))
            link = _cell(row, columns.get("primary_file_link"))
            records.append(
                InvoiceRecord(
                    row_id=row_number,
                    identity=extract_identity(file_id) or extract_identity(link),
                    vendor=_cell(row, columns.get("vendor")),
                    amount=parse_amount(_cell(row, columns.get("amount"))),
                    currency=_cell(row, columns.get("currency")).upper(),
                    status=Status.parse(_cell(row, columns.get("status"))),
                    generated_invoice_id=_cell(row, columns.get("generated_invoice_id")) or None,
                    primary_file_link=link,
                    archived_file_link=_cell(row, columns.get("archived_file_link")),
                    archived_file_id=_cell(row, columns.get("archived_file_id")),
                    content_hash=_cell(row, columns.get("content_hash")),
                    project_code=_cell(row, columns.get("project_code")),
                    invoice_date=_cell(row, columns.get("invoice_date")),
                    category=_cell(row, columns.get("category")),
                    source_key=_cell(row, columns.get("source_key")),
                )
            )
        logger.info("Loaded %d sheet records", len(records))
        return records

    def write_fields(self, changes: Iterable[Tuple[int, Dict[str, Any]]]) -> List[Tuple[str, str]]:
        """Write ``(row, {field: value})`` changes cell by cell.

        Fields the sheet has no column for are dropped. Updates go out in
        batches of 100 ranges; a batch that still fails after retries is
        logged and returned as ``(range, reason)`` pairs while later batches
        still run.
        """

        columns = self.columns
        data: List[Dict[str, Any]] = []
        for row_number, fields in changes:
            for field_name, value in fields.items():
                column = columns.get(field_name)
                if not column:
                    if field_name not in self._missing_logged:
                        logger.warning("Sheet has no column for %r; not writing it", field_name)
                        self._missing_logged.add(field_name)
                    continue
                data.append({"range": rowcol_to_a1(row_number, column), "values": [[_format_value(value)]]})

        failed: List[Tuple[str, str]] = []
        for batch in chunked(data, BATCH_SIZE):
            try:
                self._call(
                    lambda: self.worksheet.batch_update(batch, value_input_option="USER_ENTERED"),
                    f"sheet batch update of {len(batch)} cells",
                )
            except ProviderError as exc:
                logger.error("Sheet batch update of %d cells failed: %s", len(batch), exc)
                failed.extend((item["range"], str(exc)) for item in batch)
        return failed

    def append_records(self, records: Sequence[InvoiceRecord]) -> int:
        """Append new rows at the bottom, filling only the columns the sheet has."""

        if not records:
            return 0
        columns = self.columns
        width = max(columns.values()) if columns else 0
        rows = []
        for record in records:
            row = [""] * width
            data = record.to_dict()
            for field_name in APPEND_ORDER:
                column = columns.get(field_name)
                if column:
                    row[column - 1] = _format_value(data.get(field_name))
            rows.append(row)
        self._call(lambda: self.worksheet.append_rows(rows, value_input_option="USER_ENTERED"), "sheet append")
        logger.info("Appended %d rows to the sheet", len(rows))
        return len(rows)

    def project_codes(self) -> Set[str]:
        """Valid project codes from the Projects worksheet, empty when unavailable."""

        if self.projects_worksheet is None:
            return set()
        values = self._call(self.projects_worksheet.get_all_values, "projects sheet read")
        if not values:
            return set()
        folded = [_fold(header) for header in values[0]]
        column = next(
            (index for index, header in enumerate(folded) if header in {_fold(name) for name in PROJECT_CODE_HEADERS}),
            None,
        )
        if column is None:
            logger.warning("Projects worksheet has no project code column")
            return set()
        return {str(row[column]).strip() for row in values[1:] if len(row) > column and str(row[column]).strip()}
