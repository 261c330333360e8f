"""Apply a reconciliation plan to the mirror one item at a time."""
from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, List, Optional, Tuple

from invoice_recon.core.errors import DuplicateKeyError, NotFoundError, ProviderError, ReconError
from invoice_recon.core.models import InvoiceRecord, ReconciliationPlan, RecordUpdate, RunSummary
from invoice_recon.core.utils import chunked, with_retries

logger = logging.getLogger(__name__)

DELETE_CHUNK = 50

Outcome = Tuple[str, str, str, str]
ProgressCallback = Callable[[int, int], None]


class PlanExecutor:
    """Run inserts, updates and deletes with per-item error isolation.

    A failing item is recorded in the summary and the run moves on; nothing
    here aborts the batch.
    """

    def __init__(
        self,
        mirror,
        max_workers: int = 1,
        progress: Optional[ProgressCallback] = None,
        attempts: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.mirror = mirror
        self.max_workers = max(1, max_workers)
        self.progress = progress
        self.attempts = attempts
        self.sleep = sleep
        self._done = 0
        self._total = 0

    def _tick(self, amount: int = 1) -> None:
        self._done += amount
        if self.progress:
            self.progress(self._done, self._total)

    def _retry(self, call, description: str):
        return with_retries(call, attempts=self.attempts, description=description, sleep=self.sleep)

    def execute(self, plan: ReconciliationPlan, name: str = "reconcile") -> RunSummary:
        summary = RunSummary(name=name)
        self._done = 0
        self._total = len(plan.inserts) + len(plan.updates) + len(plan.deletes)

        for item in plan.needs_review:
            summary.skip("review", item.record.label, item.reason)

        self._run_deletes(plan.deletes, summary)
        tasks: List[Callable[[], Outcome]] = [self._insert_task(record) for record in plan.inserts]
        tasks.extend(self._update_task(update) for update in plan.updates)

        if self.max_workers == 1:
            for task in tasks:
                self._record(summary, task())
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                futures = [pool.submit(task) for task in tasks]
                for future in as_completed(futures):
                    self._record(summary, future.result())

        logger.info("Executed plan: %s", summary.counts())
        return summary

    def _record(self, summary: RunSummary, outcome: Outcome) -> None:
        result, action, key, reason = outcome
        if result == "ok":
            summary.ok(action, key, reason)
        elif result == "skipped":
            summary.skip(action, key, reason)
        else:
            summary.fail(action, key, reason)
        self._tick()

    def _run_deletes(self, row_ids: List[int], summary: RunSummary) -> None:
        for chunk in chunked(row_ids, DELETE_CHUNK):
            try:
                self._retry(lambda: self.mirror.delete(chunk), f"delete {len(chunk)} rows")
            except NotFoundError as exc:
                for row_id in chunk:
                    summary.skip("delete", str(row_id), str(exc))
            except ReconError as exc:
                logger.error("Delete chunk of %d rows failed: %s", len(chunk), exc)
                for row_id in chunk:
                    summary.fail("delete", str(row_id), str(exc))
            else:
                for row_id in chunk:
                    summary.ok("delete", str(row_id))
            self._tick(len(chunk))

    def _insert_task(self, record: InvoiceRecord) -> Callable[[], Outcome]:
        def task() -> Outcome:
            try:
                self._retry(lambda: self.mirror.insert(record), f"insert {record.label}")
            except DuplicateKeyError:
                return "skipped", "insert", record.label, "already present in mirror"
            except ProviderError as exc:
                logger.warning("Insert failed for %s: %s", record.label, exc)
                return "failed", "insert", record.label, str(exc)
            return "ok", "insert", record.label, ""

        return task

    def _update_task(self, update: RecordUpdate) -> Callable[[], Outcome]:
        key = update.label or str(update.row_id)

        def task() -> Outcome:
            try:
                self._retry(lambda: self.mirror.update(update.row_id, update.fields), f"update {key}")
            except NotFoundError:
                return "skipped", "update", key, "mirror row vanished"
            except ProviderError as exc:
                logger.warning("Update failed for %s: %s", key, exc)
                return "failed", "update", key, str(exc)
            return "ok", "update", key, ""

        return task
