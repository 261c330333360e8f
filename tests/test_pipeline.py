"""End-to-end runs over the in-memory sheet, mirror and archive."""
from decimal import Decimal
from pathlib import Path

import pytest

from conftest import DRIVE_ID, SHEET_HEADERS, FakeBlobStore, FakeMirror, FakeWorksheet, sheet_row
from invoice_recon.core.errors import ConfigurationError, ConsistencyGuardError, LockHeldError
from invoice_recon.core.lock import RunLock
from invoice_recon.core.models import Status
from invoice_recon.engine.archiver import Archiver
from invoice_recon.engine.sequence import SequenceAllocator, SqliteCounterStore
from invoice_recon.pipeline import (
    run_archive_backfill,
    run_hash_backfill,
    run_id_audit,
    run_intake,
    run_mirror_rebuild,
    run_reconciliation,
    run_submission,
)
from invoice_recon.providers.sheets import SheetSource

SOURCE = "bui_invoice/original_files/fr_google_drive/"
PROJECTS = "bui_invoice/projects/"
OTHER_ID = "Z" * 28
NO_PROJECT_ID = "N" * 26


@pytest.fixture
def submission_sheet():
    worksheet = FakeWorksheet(
        [
            SHEET_HEADERS,
            sheet_row(File_ID=DRIVE_ID, Vender="Acme", amount="1,200.00", currency="GBP", Status="Confirmed", Charge_to_project="PRJ01"),
            sheet_row(File_ID=NO_PROJECT_ID, Vender="No Project", amount="10", currency="GBP", Status="Confirmed"),
            sheet_row(
                File_ID=OTHER_ID,
                Vender="Older",
                amount="-600",
                currency="GBP",
                Status="Submitted",
                Charge_to_project="PRJ01",
                Invoice__ID="PRJ01-0004-m600GBP",
            ),
        ]
    )
    projects = FakeWorksheet([["Project Code"], ["PRJ01"]])
    return worksheet, SheetSource(worksheet, projects)


@pytest.fixture
def blobs():
    return FakeBlobStore({f"{SOURCE}{DRIVE_ID}.pdf": b"acme invoice", f"{SOURCE}{OTHER_ID}.jpg": b"older receipt"})


@pytest.fixture
def archiver(blobs, no_sleep):
    return Archiver(blobs, SOURCE, PROJECTS, sleep=no_sleep)


def test_submission_allocates_archives_writes_back_and_syncs(submission_sheet, archiver, blobs, tmp_path: Path):
    worksheet, sheet = submission_sheet
    mirror = FakeMirror()
    allocator = SequenceAllocator(SqliteCounterStore(tmp_path / "counters.db"))

    summary = run_submission(sheet, mirror, archiver, allocator, lock=RunLock("submission", tmp_path))

    assert worksheet.cell(2, "Invoice ID") == "PRJ01-0005-1200GBP"
    assert worksheet.cell(2, "Status") == "Submitted"
    assert worksheet.cell(2, "Achieved_File_ID") == f"{PROJECTS}PRJ01/PRJ01-0005-1200GBP.pdf"
    assert worksheet.cell(2, "Achieved_File_Link").startswith("https://files.example.com/")
    assert worksheet.cell(3, "Invoice ID") == ""
    assert [(item.key, item.reason) for item in summary.skipped] == [(NO_PROJECT_ID, "missing project code")]
    assert summary.counts()["inserts"] == 3
    assert summary.failed == []

    inserted = {record.identity: record for record in mirror.select_all()}
    assert inserted[DRIVE_ID].generated_invoice_id == "PRJ01-0005-1200GBP"
    assert inserted[DRIVE_ID].status == Status.SUBMITTED
    assert not (tmp_path / ".submission.lock.json").exists()

    rerun = run_reconciliation(sheet, mirror)
    assert rerun.counts() == {"inserts": 0, "updates": 0, "deletes": 0, "skipped": 0, "errors": 0}


def test_submission_only_selected_rows(submission_sheet, archiver):
    worksheet, sheet = submission_sheet

    run_submission(sheet, FakeMirror(), archiver, SequenceAllocator(), rows=[3])

    assert worksheet.cell(2, "Invoice ID") == ""


def test_submission_records_archive_failure_but_keeps_id(submission_sheet, no_sleep):
    worksheet, sheet = submission_sheet
    archiver = Archiver(FakeBlobStore(), SOURCE, PROJECTS, sleep=no_sleep)

    summary = run_submission(sheet, FakeMirror(), archiver, SequenceAllocator())

    assert worksheet.cell(2, "Invoice ID") == "PRJ01-0005-1200GBP"
    assert worksheet.cell(2, "Achieved_File_Link") == ""
    assert summary.failed_keys() == ["PRJ01-0005-1200GBP"]


def _drop_column(worksheet: FakeWorksheet, header: str) -> FakeWorksheet:
    index = worksheet.values[0].index(header)
    return FakeWorksheet([row[:index] + row[index + 1:] for row in worksheet.values])


def test_submission_writes_back_when_optional_column_is_missing(submission_sheet, archiver, tmp_path: Path):
    full, _ = submission_sheet
    worksheet = _drop_column(full, "Achieved_File_ID")
    sheet = SheetSource(worksheet, FakeWorksheet([["Project Code"], ["PRJ01"]]))
    mirror = FakeMirror()

    summary = run_submission(sheet, mirror, archiver, SequenceAllocator(SqliteCounterStore(tmp_path / "c.db")))

    assert worksheet.cell(2, "Invoice ID") == "PRJ01-0005-1200GBP"
    assert worksheet.cell(2, "Status") == "Submitted"
    assert worksheet.cell(2, "Achieved_File_Link").endswith("PRJ01/PRJ01-0005-1200GBP.pdf")
    assert summary.failed == []
    assert {record.generated_invoice_id for record in mirror.select_all()} == {"PRJ01-0005-1200GBP", "PRJ01-0004-m600GBP", None}


def test_submission_without_invoice_id_column_reserves_nothing(submission_sheet, archiver, blobs, tmp_path: Path):
    full, _ = submission_sheet
    sheet = SheetSource(_drop_column(full, "Invoice ID"))
    counters = SqliteCounterStore(tmp_path / "c.db")

    with pytest.raises(ConfigurationError):
        run_submission(sheet, FakeMirror(), archiver, SequenceAllocator(counters))

    assert counters.current("PRJ01") == 0
    assert blobs.copies == []


def test_submission_refuses_to_run_while_locked(submission_sheet, archiver, tmp_path: Path):
    _, sheet = submission_sheet
    holder = RunLock("submission", tmp_path)
    holder.acquire()

    with pytest.raises(LockHeldError):
        run_submission(sheet, FakeMirror(), archiver, SequenceAllocator(), lock=RunLock("submission", tmp_path))
    holder.release()


def test_rebuild_is_blocked_while_reconciliation_holds_the_lock(sheet, tmp_path: Path):
    blocked = []

    class RebuildDuringSnapshot(FakeMirror):
        def select_all(self):
            try:
                run_mirror_rebuild(sheet, FakeMirror(), lock=RunLock("mirror-sync", tmp_path))
            except LockHeldError as exc:
                blocked.append(exc)
            return super().select_all()

    mirror = RebuildDuringSnapshot()
    summary = run_reconciliation(sheet, mirror, lock=RunLock("mirror-sync", tmp_path))

    assert len(blocked) == 1
    assert summary.counts()["inserts"] == 1
    assert not (tmp_path / ".mirror-sync.lock.json").exists()


def test_reconciliation_dry_run_changes_nothing(sheet):
    mirror = FakeMirror()

    summary = run_reconciliation(sheet, mirror, dry_run=True)

    assert mirror.count() == 0
    assert [(item.action, item.reason) for item in summary.skipped] == [("insert", "dry run")]


def test_reconciliation_guard_aborts_before_mutation(make_record):
    mirror = FakeMirror([make_record(row_id=1, identity=DRIVE_ID)])
    empty_sheet = SheetSource(FakeWorksheet([SHEET_HEADERS]))

    with pytest.raises(ConsistencyGuardError):
        run_reconciliation(empty_sheet, mirror)
    assert mirror.count() == 1
    assert mirror.calls == []


class CannedClassifier:
    def __init__(self, answers):
        self.answers = answers
        self.seen = []

    def classify(self, content, filename):
        self.seen.append(filename)
        return self.answers[filename]


def test_intake_appends_new_documents_only(no_sleep):
    blobs = FakeBlobStore(
        {
            f"{SOURCE}known.pdf": b"already in sheet",
            f"{SOURCE}fresh.pdf": b"new invoice",
            f"{SOURCE}blurry.png": b"unreadable",
            f"{SOURCE}notes.txt": b"ignore me",
        }
    )
    worksheet = FakeWorksheet(
        [SHEET_HEADERS, sheet_row(Vender="Known", amount="1", file_ID_HASH=blobs.etags[f"{SOURCE}known.pdf"])]
    )
    classifier = CannedClassifier(
        {
            "fresh.pdf": {"vendor": "Fresh Co", "amount": "42.10", "currency": "EUR", "invoice_date": "2024-04-02"},
            "blurry.png": {"vendor": None, "amount": None, "currency": None},
        }
    )

    summary = run_intake(SheetSource(worksheet), blobs, classifier, source_prefix=SOURCE)

    assert sorted(classifier.seen) == ["blurry.png", "fresh.pdf"]
    assert [item.key for item in summary.succeeded] == [f"{SOURCE}fresh.pdf"]
    assert [item.key for item in summary.skipped] == [f"{SOURCE}known.pdf"]
    assert summary.failed_keys() == [f"{SOURCE}blurry.png"]
    assert worksheet.cell(3, "Vender") == "Fresh Co"
    assert worksheet.cell(3, "Status") == "Waiting for Confirm"
    assert worksheet.cell(3, "file_ID_HASH") == blobs.etags[f"{SOURCE}fresh.pdf"]


def test_archive_backfill_fills_missing_links(archiver):
    worksheet = FakeWorksheet(
        [
            SHEET_HEADERS,
            sheet_row(File_ID=OTHER_ID, Vender="Older", amount="-600", Status="Submitted", Charge_to_project="PRJ01", Invoice__ID="PRJ01-0004-m600GBP"),
            sheet_row(File_ID=DRIVE_ID, Vender="Acme", amount="5", Status="Confirmed", Charge_to_project="PRJ01"),
        ]
    )

    preview = run_archive_backfill(SheetSource(worksheet), archiver, dry_run=True)
    assert [item.key for item in preview.skipped] == ["PRJ01-0004-m600GBP"]
    assert worksheet.cell(2, "Achieved_File_ID") == ""

    summary = run_archive_backfill(SheetSource(worksheet), archiver)

    assert summary.count("archive") == 1
    assert worksheet.cell(2, "Achieved_File_ID") == f"{PROJECTS}PRJ01/PRJ01-0004-m600GBP.jpg"


def test_hash_backfill_uses_source_etags(archiver, blobs):
    worksheet = FakeWorksheet(
        [
            SHEET_HEADERS,
            sheet_row(File_ID=DRIVE_ID, Vender="Acme", amount="5"),
            sheet_row(File_ID="N" * 30, Vender="Lost", amount="5"),
        ]
    )

    summary = run_hash_backfill(SheetSource(worksheet), archiver)

    assert worksheet.cell(2, "file_ID_HASH") == blobs.etags[f"{SOURCE}{DRIVE_ID}.pdf"]
    assert [item.reason for item in summary.skipped] == ["original not found"]


def test_id_audit_reads_projects(submission_sheet):
    worksheet, sheet = submission_sheet
    worksheet.values.append(sheet_row(Vender="Typo", amount="7", Charge_to_project="PRJ01", Invoice__ID="PRJ9-0001-7GBP"))

    findings = run_id_audit(sheet)

    assert {finding["issue"] for finding in findings} == {
        "project PRJ9 does not match PRJ01",
        "unknown project PRJ9",
    }


def test_mirror_rebuild_replaces_contents(sheet, make_record, tmp_path: Path):
    mirror = FakeMirror([make_record(row_id=10, identity="S" * 30), make_record(row_id=11, identity=DRIVE_ID)])

    summary = run_mirror_rebuild(sheet, mirror, lock=RunLock("submission", tmp_path))

    assert summary.counts()["deletes"] == 2
    assert summary.counts()["inserts"] == 1
    assert [record.identity for record in mirror.select_all()] == [DRIVE_ID]
    assert mirror.select_all()[0].amount == Decimal("1200.00")


def test_mirror_rebuild_refuses_empty_sheet(make_record):
    mirror = FakeMirror([make_record(row_id=10, identity=DRIVE_ID)])

    with pytest.raises(ConsistencyGuardError):
        run_mirror_rebuild(SheetSource(FakeWorksheet([SHEET_HEADERS])), mirror)
    assert mirror.count() == 1
