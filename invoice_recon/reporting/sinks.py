"""Report sinks for run summaries and audit findings."""
from __future__ import annotations

import csv
from pathlib import Path
from typing import Any, Dict, Iterable, List, Sequence

from openpyxl import Workbook

from invoice_recon.core.models import RunSummary

OUTCOME_HEADERS = ["result", "action", "key", "reason"]


def ensure_output_dir(output_path: Path) -> None:
    """Create parent folders for sink outputs when missing."""

    output_path.parent.mkdir(parents=True, exist_ok=True)


def write_rows_csv(rows: Iterable[Dict[str, Any]], output_path: Path, headers: Sequence[str]) -> Path:
    rows = list(rows)
    ensure_output_dir(output_path)
    with output_path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=list(headers), extrasaction="ignore")
        writer.writeheader()
        writer.writerows(rows)
    return output_path


def write_summary_csv(summary: RunSummary, output_path: Path) -> Path:
    """One row per item outcome, so failed keys can be fed into a re-run."""

    return write_rows_csv(summary.outcomes(), output_path, OUTCOME_HEADERS)


def write_summary_excel(summary: RunSummary, output_path: Path) -> Path:
    """Write a workbook with a counts sheet and an outcomes sheet."""

    ensure_output_dir(output_path)
    workbook = Workbook()
    counts_sheet = workbook.active
    counts_sheet.title = "summary"
    counts_sheet.append(["run", summary.name])
    for action, total in summary.counts().items():
        counts_sheet.append([action, total])
    for note in summary.notes:
        counts_sheet.append(["note", note])

    outcomes_sheet = workbook.create_sheet("outcomes")
    outcomes_sheet.append(OUTCOME_HEADERS)
    for row in summary.outcomes():
        outcomes_sheet.append([row.get(header, "") for header in OUTCOME_HEADERS])
    workbook.save(output_path)
    return output_path


def render_summary_markdown(summary: RunSummary, limit: int = 50) -> str:
    counts = summary.counts()
    lines: List[str] = [
        f"# {summary.name} summary",
        "",
        "| inserts | updates | deletes | skipped | errors |",
        "|---|---|---|---|---|",
        "| {inserts} | {updates} | {deletes} | {skipped} | {errors} |".format(**counts),
    ]
    if summary.notes:
        lines += ["", "## Notes", ""]
        lines += [f"- {note}" for note in summary.notes]
    if summary.failed:
        lines += ["", "## Failures", ""]
        for item in summary.failed[:limit]:
            lines.append(f"- `{item.key}` ({item.action}): {item.reason}")
        if len(summary.failed) > limit:
            lines.append(f"- ... and {len(summary.failed) - limit} more")
    return "\n".join(lines) + "\n"


def write_summary_markdown(summary: RunSummary, output_path: Path) -> Path:
    ensure_output_dir(output_path)
    output_path.write_text(render_summary_markdown(summary), encoding="utf-8")
    return output_path


def write_report(summary: RunSummary, output_path: Path) -> Path:
    """Pick the sink from the file extension."""

    suffix = output_path.suffix.lower()
    if suffix == ".xlsx":
        return write_summary_excel(summary, output_path)
    if suffix in {".md", ".markdown"}:
        return write_summary_markdown(summary, output_path)
    return write_summary_csv(summary, output_path)
