"""Run report sinks."""
from invoice_recon.reporting.sinks import (
    render_summary_markdown,
    write_report,
    write_rows_csv,
    write_summary_csv,
    write_summary_excel,
    write_summary_markdown,
)

__all__ = [
    "render_summary_markdown",
    "write_report",
    "write_rows_csv",
    "write_summary_csv",
    "write_summary_excel",
    "write_summary_markdown",
]
