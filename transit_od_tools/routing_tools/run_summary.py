"""Summarize a batch routing run and export the summary."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final

import pandas as pd
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter

STATUS_ROUTED: Final[str] = "routed"
STATUS_NO_ITINERARY: Final[str] = "no_itinerary"
STATUS_NO_ELIGIBLE: Final[str] = "no_eligible_option"
STATUS_INVALID: Final[str] = "invalid_coordinates"
STATUS_FAILED: Final[str] = "failed"

ROUTE_STATUSES: Final[tuple[str, ...]] = (
    STATUS_ROUTED,
    STATUS_NO_ITINERARY,
    STATUS_NO_ELIGIBLE,
    STATUS_INVALID,
    STATUS_FAILED,
)


@dataclass
class BatchSummary:
    """Counters for one invocation of the batch router.

    ``start_row`` is the number of rows already completed by earlier
    invocations when this one started (non-zero when resuming).
    """

    mode: str
    rows_total: int
    start_row: int = 0
    rows_processed: int = 0
    result_rows: int = 0
    elapsed_seconds: float = 0.0
    status_counts: Counter = field(default_factory=Counter)

    def record(self, status: str, result_rows: int = 0) -> None:
        self.rows_processed += 1
        self.result_rows += result_rows
        self.status_counts[status] += 1

    @property
    def last_row(self) -> int:
        return self.start_row + self.rows_processed

    @property
    def complete(self) -> bool:
        return self.last_row >= self.rows_total

    def as_frame(self) -> pd.DataFrame:
        """One metric per row, statuses in a fixed order."""
        rows = [
            ("mode", self.mode),
            ("rows_total", self.rows_total),
            ("start_row", self.start_row),
            ("rows_processed", self.rows_processed),
            ("last_row", self.last_row),
            ("complete", self.complete),
            ("result_rows", self.result_rows),
            ("elapsed_seconds", round(self.elapsed_seconds, 1)),
        ]
        rows.extend(
            (f"status_{status}", self.status_counts.get(status, 0)) for status in ROUTE_STATUSES
        )
        return pd.DataFrame(rows, columns=["metric", "value"])


def log_summary(summary: BatchSummary) -> None:
    """Log the status breakdown of a run."""
    logging.info(
        "Processed %d row(s) (rows %d-%d of %d) in %.1f s; %d result row(s).",
        summary.rows_processed,
        summary.start_row + 1,
        summary.last_row,
        summary.rows_total,
        summary.elapsed_seconds,
        summary.result_rows,
    )
    for status in ROUTE_STATUSES:
        count = summary.status_counts.get(status, 0)
        if count:
            logging.info("  %-20s %d", status, count)
    if summary.status_counts.get(STATUS_FAILED, 0):
        logging.warning(
            "%d row(s) failed; see the route_error column of the OD table.",
            summary.status_counts[STATUS_FAILED],
        )


def export_summary_csv(summary: BatchSummary, csv_file_path: Path | str) -> None:
    """Write the summary as a two-column CSV."""
    summary.as_frame().to_csv(csv_file_path, index=False)
    logging.info("Run summary saved to CSV: %s", csv_file_path)


def export_summary_excel(summary: BatchSummary, output_file: Path | str) -> None:
    """Export the summary to a single-sheet workbook with auto-sized columns."""
    data_frame = summary.as_frame()
    data_frame["value"] = data_frame["value"].astype(str)
    with pd.ExcelWriter(output_file, engine="openpyxl") as writer:
        data_frame.to_excel(writer, index=False, sheet_name="Summary")
        worksheet = writer.sheets["Summary"]

        for idx, col in enumerate(data_frame.columns, 1):
            worksheet.cell(row=1, column=idx).font = Font(bold=True)
            series = data_frame[col].astype(str)
            max_length = max(series.map(len).max(), len(str(col)))
            worksheet.column_dimensions[get_column_letter(idx)].width = max_length + 2
    logging.info("Run summary saved to Excel: %s", output_file)
