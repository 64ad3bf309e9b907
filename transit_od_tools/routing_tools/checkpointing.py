"""Accumulate per-row results and persist them as resumable checkpoints.

Checkpoints are append-only: every flush appends the rows completed since the
previous flush to ``od_processed.csv`` and ``results_processed.csv``, then
rewrites the small ``checkpoint.json`` state file.  The state file is replaced
atomically and only after both appends succeed, so it never claims rows that
are not on disk.  Rows appended after the last state write (a crash between
the two steps) are cut away when the run is resumed.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import os
import shutil
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Final

import pandas as pd

# =============================================================================
# CONSTANTS
# =============================================================================

OD_CHECKPOINT_FILE: Final[str] = "od_processed.csv"
RESULTS_CHECKPOINT_FILE: Final[str] = "results_processed.csv"
STATE_FILE: Final[str] = "checkpoint.json"

# =============================================================================
# DATA MODEL
# =============================================================================


@dataclass(frozen=True)
class CheckpointState:
    """Progress recorded by the last successful flush."""

    mode: str
    departure: str
    input_file: str | None
    rows_total: int
    last_completed_row: int
    od_rows_written: int
    result_rows_written: int
    updated_at: str

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CheckpointState:
        names = {f.name for f in fields(cls)}
        missing = names - set(data)
        if missing:
            raise ValueError(f"Checkpoint state is missing keys: {', '.join(sorted(missing))}")
        return cls(**{name: data[name] for name in names})


class ResultAccumulator:
    """Rows completed since the last flush, in processing order."""

    def __init__(self) -> None:
        self._od_rows: list[dict[str, Any]] = []
        self._results: list[pd.DataFrame] = []
        self._last_row_id: int | None = None

    def add(self, row_id: int, od_row: Mapping[str, Any], results: pd.DataFrame | None) -> None:
        """Record one completed OD row and the result rows it produced."""
        if self._last_row_id is not None and row_id <= self._last_row_id:
            raise ValueError(f"Row {row_id} added after row {self._last_row_id}; order must hold.")
        self._od_rows.append(dict(od_row))
        if results is not None and not results.empty:
            self._results.append(results)
        self._last_row_id = row_id

    @property
    def pending_rows(self) -> int:
        return len(self._od_rows)

    @property
    def last_row_id(self) -> int | None:
        return self._last_row_id

    def drain(self) -> tuple[list[dict[str, Any]], list[pd.DataFrame]]:
        """Hand over and forget the pending rows."""
        od_rows, results = self._od_rows, self._results
        self._od_rows, self._results = [], []
        return od_rows, results


# =============================================================================
# FUNCTIONS
# =============================================================================


def load_checkpoint(output_dir: Path | str) -> CheckpointState | None:
    """Read ``checkpoint.json`` from *output_dir*; ``None`` if there is none."""
    state_path = Path(output_dir) / STATE_FILE
    if not state_path.exists():
        return None
    try:
        data = json.loads(state_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Checkpoint state '{state_path}' is not valid JSON: {exc}") from exc
    return CheckpointState.from_dict(data)


# =============================================================================
# WRITER
# =============================================================================


class CheckpointWriter:
    """Append completed rows to the checkpoint files of one run.

    Args:
        output_dir: Folder for checkpoint and final files.
        od_columns: Column order of the augmented OD table.
        result_columns: Column order of the result table.
        mode: Operating mode of the run, recorded in the state file.
        departure: Departure timestamp of the run, recorded in the state file.
        rows_total: Number of rows in the input table.
        input_file: Input table path, recorded for reference.
        od_dtypes: Dtypes applied to every OD chunk before it is written.
        result_dtypes: Dtypes applied to every result chunk.
        encoding: Text encoding of the written files.
    """

    def __init__(
        self,
        output_dir: Path | str,
        od_columns: Sequence[str],
        result_columns: Sequence[str],
        mode: str,
        departure: dt.datetime,
        rows_total: int,
        input_file: Path | str | None = None,
        od_dtypes: Mapping[str, Any] | None = None,
        result_dtypes: Mapping[str, Any] | None = None,
        encoding: str = "utf-8",
    ) -> None:
        self.output_dir = Path(output_dir)
        self.od_columns = list(od_columns)
        self.result_columns = list(result_columns)
        self.mode = mode
        self.departure = departure.isoformat()
        self.rows_total = rows_total
        self.input_file = str(input_file) if input_file is not None else None
        self.od_dtypes = dict(od_dtypes or {})
        self.result_dtypes = dict(result_dtypes or {})
        self.encoding = encoding

        self.od_path = self.output_dir / OD_CHECKPOINT_FILE
        self.results_path = self.output_dir / RESULTS_CHECKPOINT_FILE
        self.state_path = self.output_dir / STATE_FILE

        self.last_completed_row = 0
        self.od_rows_written = 0
        self.result_rows_written = 0

    # -- run setup -----------------------------------------------------------

    def start_fresh(self) -> None:
        """Discard earlier checkpoints and write header-only files."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.state_path.unlink(missing_ok=True)
        pd.DataFrame(columns=self.od_columns).to_csv(
            self.od_path, index=False, encoding=self.encoding
        )
        pd.DataFrame(columns=self.result_columns).to_csv(
            self.results_path, index=False, encoding=self.encoding
        )
        self.last_completed_row = 0
        self.od_rows_written = 0
        self.result_rows_written = 0

    def resume(self, state: CheckpointState) -> int:
        """Continue from *state*; return the number of rows already completed.

        Raises:
            ValueError: The state belongs to a different run set-up, or the
                checkpoint files hold fewer rows than the state records.
        """
        if state.mode != self.mode:
            raise ValueError(f"Checkpoint was written in mode '{state.mode}', not '{self.mode}'.")
        if state.departure != self.departure:
            raise ValueError(
                f"Checkpoint departure {state.departure} differs from {self.departure}."
            )
        if state.rows_total != self.rows_total:
            raise ValueError(
                f"Checkpoint covers an input of {state.rows_total} rows, "
                f"this input has {self.rows_total}."
            )
        if state.input_file != self.input_file:
            logging.warning(
                "Checkpoint input file was %s; resuming with %s.", state.input_file, self.input_file
            )

        self._truncate(self.od_path, state.od_rows_written)
        self._truncate(self.results_path, state.result_rows_written)

        self.last_completed_row = state.last_completed_row
        self.od_rows_written = state.od_rows_written
        self.result_rows_written = state.result_rows_written
        logging.info(
            "Resuming after row %d of %d (%s).",
            state.last_completed_row,
            state.rows_total,
            state.updated_at,
        )
        return state.last_completed_row

    def _truncate(self, path: Path, rows: int) -> None:
        if not path.exists():
            raise ValueError(f"Checkpoint file '{path}' is missing; cannot resume.")
        frame = pd.read_csv(path, dtype=str, keep_default_na=False, encoding=self.encoding)
        if len(frame) < rows:
            raise ValueError(
                f"Checkpoint file '{path}' holds {len(frame)} rows, state records {rows}."
            )
        if len(frame) > rows:
            logging.warning(
                "Dropping %d row(s) of %s written after the last checkpoint.",
                len(frame) - rows,
                path.name,
            )
            frame.head(rows).to_csv(path, index=False, encoding=self.encoding)

    # -- flushing ------------------------------------------------------------

    def _od_frame(self, od_rows: list[dict[str, Any]]) -> pd.DataFrame:
        frame = pd.DataFrame.from_records(od_rows).reindex(columns=self.od_columns)
        return frame.astype({k: v for k, v in self.od_dtypes.items() if k in frame.columns})

    def _result_frame(self, results: list[pd.DataFrame]) -> pd.DataFrame:
        if results:
            frame = pd.concat(results, ignore_index=True).reindex(columns=self.result_columns)
        else:
            frame = pd.DataFrame(columns=self.result_columns)
        return frame.astype({k: v for k, v in self.result_dtypes.items() if k in frame.columns})

    def flush(self, accumulator: ResultAccumulator) -> CheckpointState | None:
        """Append the accumulator's pending rows and record the new state."""
        last_row = accumulator.last_row_id
        if accumulator.pending_rows == 0 or last_row is None:
            return None

        od_rows, results = accumulator.drain()
        od_frame = self._od_frame(od_rows)
        result_frame = self._result_frame(results)

        od_frame.to_csv(self.od_path, mode="a", header=False, index=False, encoding=self.encoding)
        if not result_frame.empty:
            result_frame.to_csv(
                self.results_path, mode="a", header=False, index=False, encoding=self.encoding
            )

        self.last_completed_row = last_row
        self.od_rows_written += len(od_frame)
        self.result_rows_written += len(result_frame)
        return self._write_state()

    def _write_state(self) -> CheckpointState:
        state = CheckpointState(
            mode=self.mode,
            departure=self.departure,
            input_file=self.input_file,
            rows_total=self.rows_total,
            last_completed_row=self.last_completed_row,
            od_rows_written=self.od_rows_written,
            result_rows_written=self.result_rows_written,
            updated_at=dt.datetime.now().isoformat(timespec="seconds"),
        )
        tmp_path = self.state_path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(asdict(state), indent=2), encoding="utf-8")
        os.replace(tmp_path, self.state_path)
        return state

    def finalize(self, final_od_name: str, final_results_name: str) -> tuple[Path, Path]:
        """Copy the checkpoint files to their final names."""
        final_od = self.output_dir / final_od_name
        final_results = self.output_dir / final_results_name
        shutil.copyfile(self.od_path, final_od)
        shutil.copyfile(self.results_path, final_results)
        logging.info("Final OD table saved: %s", final_od)
        logging.info("Final results saved: %s", final_results)
        return final_od, final_results
