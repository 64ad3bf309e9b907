from __future__ import annotations

import pandas as pd
from openpyxl import load_workbook

from transit_od_tools.routing_tools.run_summary import (
    STATUS_FAILED,
    STATUS_ROUTED,
    BatchSummary,
    export_summary_csv,
    export_summary_excel,
)


def _summary() -> BatchSummary:
    summary = BatchSummary(mode="itineraries", rows_total=10, start_row=4)
    summary.record(STATUS_ROUTED, result_rows=5)
    summary.record(STATUS_ROUTED, result_rows=3)
    summary.record(STATUS_FAILED)
    summary.elapsed_seconds = 12.34
    return summary


def test_record_and_progress() -> None:
    summary = _summary()

    assert summary.rows_processed == 3
    assert summary.result_rows == 8
    assert summary.last_row == 7
    assert not summary.complete


def test_as_frame_lists_every_status() -> None:
    frame = _summary().as_frame().set_index("metric")["value"]

    assert frame["status_routed"] == 2
    assert frame["status_failed"] == 1
    assert frame["status_no_itinerary"] == 0
    assert frame["elapsed_seconds"] == 12.3


def test_export_summary_csv(tmp_path) -> None:
    path = tmp_path / "run_summary.csv"

    export_summary_csv(_summary(), path)

    frame = pd.read_csv(path)
    assert list(frame.columns) == ["metric", "value"]
    assert frame.loc[frame["metric"] == "last_row", "value"].iloc[0] == "7"


def test_export_summary_excel_bold_header(tmp_path) -> None:
    path = tmp_path / "run_summary.xlsx"

    export_summary_excel(_summary(), path)

    worksheet = load_workbook(path)["Summary"]
    assert worksheet["A1"].value == "metric"
    assert worksheet["A1"].font.bold
    assert worksheet["A2"].value == "mode"
    assert worksheet["B2"].value == "itineraries"
