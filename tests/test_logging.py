"""Logging coverage to ensure per-item problems are surfaced without stopping the run."""
import logging

from conftest import FakeMirror
from invoice_recon.core.errors import ProviderError, TransientError
from invoice_recon.core.logging import configure_logging
from invoice_recon.core.models import ReconciliationPlan, RecordUpdate, Status
from invoice_recon.core.utils import with_retries
from invoice_recon.engine.executor import PlanExecutor
from invoice_recon.engine.planner import DiffPlanner


def test_configure_logging_reads_level_from_env(monkeypatch):
    captured = {}
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: captured.update(kwargs))

    configure_logging()

    assert captured["level"] == "DEBUG"
    assert captured["format"] == "%(asctime)s %(levelname)s %(name)s: %(message)s"


def test_executor_logs_failures_and_continues(make_record, caplog):
    class FlakyMirror(FakeMirror):
        def update(self, row_id, fields):
            if row_id == 1:
                raise ProviderError("column missing")
            return super().update(row_id, fields)

    mirror = FlakyMirror([make_record(row_id=1, identity="A" * 25), make_record(row_id=2, identity="B" * 25)])
    plan = ReconciliationPlan(
        updates=[RecordUpdate(1, {"status": "Submitted"}, "first"), RecordUpdate(2, {"status": "Submitted"}, "second")]
    )

    caplog.set_level("WARNING")
    summary = PlanExecutor(mirror, sleep=lambda _: None).execute(plan)

    assert summary.failed_keys() == ["first"]
    assert mirror.rows[2].status == Status.SUBMITTED
    assert "first" in caplog.text


def test_planner_logs_duplicate_sheet_rows(make_record, caplog):
    identity = "D" * 25
    caplog.set_level("WARNING")

    DiffPlanner().plan([make_record(row_id=2, identity=identity), make_record(row_id=3, identity=identity)], [])

    assert "Duplicate authoritative row" in caplog.text


def test_retries_log_each_attempt(caplog):
    caplog.set_level("WARNING")
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 2:
            raise TransientError("rate limited")
        return "done"

    assert with_retries(flaky, description="mirror select", sleep=lambda _: None) == "done"
    assert any("mirror select failed (attempt 1/3)" in message for message in caplog.messages)
