"""Batch-route origin/destination pairs through the R5 engine with checkpoints.

This tool reads a table of OD pairs (one origin and one destination
coordinate per row) and issues one routing query per row, all with the same
departure time.  It runs in one of two modes:

- ``itineraries``: detailed public-transit itineraries.  The top three ranked
  options of each row are kept in the result table, and the fastest option
  that involves at least one connection (two or more segments) is written
  back to the OD table as ``best_total_duration``, ``best_option`` and
  ``best_total_distance``.
- ``travel_time_matrix``: door-to-door travel time within a trip-duration and
  walk-time bound.  Result rows are kept as returned; no best option.

Every row gets a ``route_status`` (``routed``, ``no_itinerary``,
``no_eligible_option``, ``invalid_coordinates`` or ``failed``) and, on
failure, the engine's error text in ``route_error``.  A failing row does not
stop the batch.

Outputs (in the output folder):
- od_processed.csv / results_processed.csv : append-only checkpoints
- checkpoint.json                          : progress, used to resume a run
- od_final.csv / results_final.csv         : final copies once the run ends
- run_summary.csv / run_summary.xlsx       : status counts and timings

An interrupted run picks up after the last checkpointed row when started
again with the same input, mode and departure time.
"""

from __future__ import annotations

import argparse
import datetime as dt
import logging
import time
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final

import pandas as pd
from tqdm import tqdm

from transit_od_tools.routing_tools.checkpointing import (
    CheckpointWriter,
    ResultAccumulator,
    load_checkpoint,
)
from transit_od_tools.routing_tools.itinerary_selection import (
    DEFAULT_MAX_OPTION,
    DEFAULT_MIN_SEGMENTS,
    filter_top_options,
    select_best_option,
)
from transit_od_tools.routing_tools.routing_engine import (
    ITINERARY_COLUMNS,
    TRAVEL_TIME_COLUMNS,
    EngineSettings,
    R5RoutingEngine,
    RoutingRequest,
)
from transit_od_tools.routing_tools.run_summary import (
    STATUS_FAILED,
    STATUS_INVALID,
    STATUS_NO_ELIGIBLE,
    STATUS_NO_ITINERARY,
    STATUS_ROUTED,
    BatchSummary,
    export_summary_csv,
    export_summary_excel,
    log_summary,
)
from transit_od_tools.utils.logging_helper import setup_logging
from transit_od_tools.utils.od_table_helpers import (
    ODColumns,
    build_od_pairs,
    has_valid_coordinates,
    load_od_table,
)

# =============================================================================
# CONFIGURATION
# =============================================================================

NETWORK_DATA_DIR: Final[Path] = Path(r"Path\To\Your\Network_Data")  # .pbf + GTFS .zip files
INPUT_CSV: Final[Path] = Path(r"Path\To\Your\distance_df.csv")
OUTPUT_DIR: Final[Path] = Path(r"Path\To\Your\Output_Folder")

INPUT_ENCODING: Final[str] = "cp949"
OUTPUT_ENCODING: Final[str] = "utf-8"
OD_COLUMNS: Final[ODColumns] = ODColumns()

# Engine
JAVA_MAX_MEMORY: Final[str] = "32G"
ENGINE_VERBOSE: Final[bool] = True
ENGINE_OVERWRITE: Final[bool] = False
ELEVATION: Final[str] = "NONE"

# Routing inputs (applied to every row)
DEPARTURE_FORMAT: Final[str] = "%d-%m-%Y %H:%M:%S"
DEPARTURE: Final[dt.datetime] = dt.datetime(2025, 4, 14, 14, 13, 0)
TRANSPORT_MODES: Final[tuple[str, ...]] = ("WALK", "TRANSIT")
EGRESS_MODE: Final[str] = "WALK"
SHORTEST_PATH_ONLY: Final[bool] = False

MODE_ITINERARIES: Final[str] = "itineraries"
MODE_TRAVEL_TIME: Final[str] = "travel_time_matrix"

# Best-option rule (itineraries mode)
MAX_OPTION: Final[int] = DEFAULT_MAX_OPTION
MIN_SEGMENTS: Final[int] = DEFAULT_MIN_SEGMENTS  # 2 = require a connection

# Rows per engine call; batches never straddle a checkpoint
BATCH_SIZE: Final[int] = 1
RESUME: Final[bool] = True
SHOW_PROGRESS: Final[bool] = True
WRITE_SUMMARY_EXCEL: Final[bool] = True

FINAL_OD_FILE: Final[str] = "od_final.csv"
FINAL_RESULTS_FILE: Final[str] = "results_final.csv"
SUMMARY_CSV_FILE: Final[str] = "run_summary.csv"
SUMMARY_XLSX_FILE: Final[str] = "run_summary.xlsx"


@dataclass(frozen=True)
class ModeDefaults:
    """Per-mode routing bounds (minutes), checkpoint and status intervals (rows)."""

    max_walk_minutes: int
    max_trip_minutes: int
    checkpoint_every: int
    status_every: int


MODE_DEFAULTS: Final[dict[str, ModeDefaults]] = {
    MODE_ITINERARIES: ModeDefaults(
        max_walk_minutes=30, max_trip_minutes=120, checkpoint_every=1000, status_every=100
    ),
    MODE_TRAVEL_TIME: ModeDefaults(
        max_walk_minutes=20, max_trip_minutes=60, checkpoint_every=10000, status_every=10000
    ),
}
STATUS_EVERY: Final[int] = MODE_DEFAULTS[MODE_ITINERARIES].status_every

# -----------------------------------------------------------------------------
# OUTPUT FIELDS
# -----------------------------------------------------------------------------

BEST_FIELDS: Final[list[str]] = ["best_total_duration", "best_option", "best_total_distance"]
STATUS_FIELDS: Final[list[str]] = ["route_status", "route_error"]

RESULT_KEY_COLUMNS: Final[list[str]] = ["row_id", "from_id", "to_id"]
ITINERARY_RESULT_COLUMNS: Final[list[str]] = RESULT_KEY_COLUMNS + ITINERARY_COLUMNS[1:]
TRAVEL_TIME_RESULT_COLUMNS: Final[list[str]] = RESULT_KEY_COLUMNS + TRAVEL_TIME_COLUMNS[1:]

# =============================================================================
# DATA MODEL
# =============================================================================


@dataclass(frozen=True)
class BatchSettings:
    """Everything that shapes a run except the engine and the input table."""

    mode: str
    request: RoutingRequest
    checkpoint_every: int
    status_every: int = STATUS_EVERY
    batch_size: int = BATCH_SIZE
    max_option: int = MAX_OPTION
    min_segments: int = MIN_SEGMENTS
    resume: bool = RESUME
    limit: int | None = None
    show_progress: bool = SHOW_PROGRESS
    output_encoding: str = OUTPUT_ENCODING
    write_summary_excel: bool = WRITE_SUMMARY_EXCEL

    def __post_init__(self) -> None:
        if self.mode not in MODE_DEFAULTS:
            raise ValueError(f"Unknown mode '{self.mode}'; expected one of {list(MODE_DEFAULTS)}.")
        for name in ("checkpoint_every", "status_every", "batch_size"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1.")
        if self.limit is not None and self.limit < 0:
            raise ValueError("limit must not be negative.")

    @property
    def output_fields(self) -> list[str]:
        if self.mode == MODE_ITINERARIES:
            return BEST_FIELDS + STATUS_FIELDS
        return list(STATUS_FIELDS)

    @property
    def result_columns(self) -> list[str]:
        if self.mode == MODE_ITINERARIES:
            return list(ITINERARY_RESULT_COLUMNS)
        return list(TRAVEL_TIME_RESULT_COLUMNS)


@dataclass
class RowOutcome:
    """What a single OD row contributes to the outputs."""

    status: str
    fields: dict[str, Any] = field(default_factory=dict)
    results: pd.DataFrame | None = None

    @property
    def result_rows(self) -> int:
        return 0 if self.results is None else len(self.results)


# =============================================================================
# FUNCTIONS
# =============================================================================


def default_settings(
    mode: str,
    departure: dt.datetime = DEPARTURE,
    max_walk_minutes: int | None = None,
    max_trip_minutes: int | None = None,
    **overrides: Any,
) -> BatchSettings:
    """Settings for *mode* from the configuration above.

    Walk and trip bounds fall back to the mode's defaults; *overrides* go to
    :class:`BatchSettings` (``checkpoint_every`` and ``status_every`` also default per mode).
    """
    if mode not in MODE_DEFAULTS:
        raise ValueError(f"Unknown mode '{mode}'; expected one of {list(MODE_DEFAULTS)}.")
    defaults = MODE_DEFAULTS[mode]
    request = RoutingRequest(
        departure=departure,
        modes=TRANSPORT_MODES,
        egress_mode=EGRESS_MODE,
        max_walk_minutes=(
            defaults.max_walk_minutes if max_walk_minutes is None else max_walk_minutes
        ),
        max_trip_minutes=(
            defaults.max_trip_minutes if max_trip_minutes is None else max_trip_minutes
        ),
        shortest_path_only=SHORTEST_PATH_ONLY,
    )
    overrides.setdefault("checkpoint_every", defaults.checkpoint_every)
    overrides.setdefault("status_every", defaults.status_every)
    return BatchSettings(mode=mode, request=request, **overrides)


def iter_batches(
    start: int, stop: int, batch_size: int, checkpoint_every: int
) -> Iterator[tuple[int, int]]:
    """Yield ``(first, last)`` row counts of consecutive batches.

    Rows ``first + 1 .. last`` (1-based) form a batch.  A batch never crosses a
    multiple of *checkpoint_every*.
    """
    first = start
    while first < stop:
        boundary = (first // checkpoint_every + 1) * checkpoint_every
        last = min(first + batch_size, boundary, stop)
        yield first, last
        first = last


def _blank_fields(settings: BatchSettings, status: str, error: str | None = None) -> dict[str, Any]:
    fields = {name: None for name in settings.output_fields}
    fields["route_status"] = status
    fields["route_error"] = error
    return fields


def _with_pair_ids(results: pd.DataFrame, pair: Any, columns: list[str]) -> pd.DataFrame:
    out = results.copy()
    out["from_id"] = pair.origin_id
    out["to_id"] = pair.destination_id
    return out.reindex(columns=columns)


def summarize_itinerary_row(
    results: pd.DataFrame, pair: Any, settings: BatchSettings
) -> RowOutcome:
    """Turn one row's itineraries into OD fields and kept result rows."""
    if results.empty:
        return RowOutcome(STATUS_NO_ITINERARY, _blank_fields(settings, STATUS_NO_ITINERARY))

    kept = _with_pair_ids(
        filter_top_options(results, settings.max_option), pair, settings.result_columns
    )
    best = select_best_option(results, settings.max_option, settings.min_segments)
    if best is None:
        return RowOutcome(STATUS_NO_ELIGIBLE, _blank_fields(settings, STATUS_NO_ELIGIBLE), kept)

    fields = _blank_fields(settings, STATUS_ROUTED)
    fields.update(
        best_total_duration=best.total_duration,
        best_option=best.option,
        best_total_distance=best.total_distance,
    )
    return RowOutcome(STATUS_ROUTED, fields, kept)


def summarize_travel_time_row(
    results: pd.DataFrame, pair: Any, settings: BatchSettings
) -> RowOutcome:
    """Travel-time rows are kept as returned."""
    if results.empty:
        return RowOutcome(STATUS_NO_ITINERARY, _blank_fields(settings, STATUS_NO_ITINERARY))
    kept = _with_pair_ids(results, pair, settings.result_columns)
    return RowOutcome(STATUS_ROUTED, _blank_fields(settings, STATUS_ROUTED), kept)


def _query(engine: Any, pairs: pd.DataFrame, settings: BatchSettings) -> pd.DataFrame:
    if settings.mode == MODE_ITINERARIES:
        return engine.detailed_itineraries(pairs, settings.request)
    return engine.travel_time_matrix(pairs, settings.request)


def route_pairs(engine: Any, pairs: pd.DataFrame, settings: BatchSettings) -> dict[int, RowOutcome]:
    """Route a batch of pairs, isolating failures to the rows that cause them.

    Pairs with invalid coordinates are skipped.  If the engine raises for a
    multi-row batch, every row is retried on its own.

    Returns:
        Outcome per ``row_id`` for every pair in *pairs*.
    """
    outcomes: dict[int, RowOutcome] = {}
    valid_mask = pd.Series(
        [has_valid_coordinates(pair) for _, pair in pairs.iterrows()], index=pairs.index, dtype=bool
    )
    for pair in pairs[~valid_mask].itertuples(index=False):
        logging.warning("Row %d skipped: invalid coordinates.", pair.row_id)
        outcomes[int(pair.row_id)] = RowOutcome(
            STATUS_INVALID, _blank_fields(settings, STATUS_INVALID)
        )

    valid = pairs[valid_mask]
    if valid.empty:
        return outcomes

    try:
        results = _query(engine, valid, settings)
    except Exception as exc:  # noqa: BLE001
        if len(valid) == 1:
            row_id = int(valid["row_id"].iloc[0])
            logging.warning("Row %d failed: %s", row_id, exc)
            error = f"{type(exc).__name__}: {exc}"
            outcomes[row_id] = RowOutcome(
                STATUS_FAILED, _blank_fields(settings, STATUS_FAILED, error)
            )
            return outcomes
        logging.warning(
            "Batch of rows %d-%d failed (%s); retrying one row at a time.",
            int(valid["row_id"].iloc[0]),
            int(valid["row_id"].iloc[-1]),
            exc,
        )
        for position in range(len(valid)):
            outcomes.update(route_pairs(engine, valid.iloc[[position]], settings))
        return outcomes

    summarize = (
        summarize_itinerary_row if settings.mode == MODE_ITINERARIES else summarize_travel_time_row
    )
    by_row = {int(row_id): group for row_id, group in results.groupby("row_id", sort=False)}
    empty = results.iloc[0:0]
    for pair in valid.itertuples(index=False):
        row_id = int(pair.row_id)
        outcomes[row_id] = summarize(by_row.get(row_id, empty), pair, settings)
    return outcomes


def _od_layout(
    od_table: pd.DataFrame, settings: BatchSettings
) -> tuple[list[str], dict[str, Any]]:
    fields = settings.output_fields
    input_columns = [col for col in od_table.columns if col not in fields]
    dtypes: dict[str, Any] = {col: od_table[col].dtype for col in input_columns}
    if settings.mode == MODE_ITINERARIES:
        dtypes.update(
            best_total_duration="float64", best_option="Int64", best_total_distance="float64"
        )
    return input_columns + fields, dtypes


def _result_dtypes(settings: BatchSettings) -> dict[str, Any]:
    if settings.mode == MODE_ITINERARIES:
        return {
            "row_id": "Int64",
            "option": "Int64",
            "segment": "Int64",
            "total_duration": "float64",
            "segment_duration": "float64",
            "wait": "float64",
            "total_distance": "float64",
            "distance": "float64",
        }
    return {"row_id": "Int64", "travel_time": "float64"}


def run_batch(
    od_table: pd.DataFrame,
    engine: Any,
    settings: BatchSettings,
    output_dir: Path | str,
    input_file: Path | str | None = None,
    columns: ODColumns = OD_COLUMNS,
) -> BatchSummary:
    """Route every row of *od_table* in order, checkpointing as it goes.

    Args:
        od_table: Input table as returned by :func:`load_od_table`.
        engine: An open routing engine exposing ``detailed_itineraries`` and
            ``travel_time_matrix`` (see :class:`R5RoutingEngine`).
        settings: Mode, routing request and batching options.
        output_dir: Folder for checkpoints and final outputs.
        input_file: Path of the input table, recorded in the checkpoint.
        columns: Identifier/coordinate column names of *od_table*.

    Returns:
        Counters for this invocation.
    """
    output_dir = Path(output_dir)
    rows_total = len(od_table)
    stop = rows_total if settings.limit is None else min(rows_total, settings.limit)

    od_columns, od_dtypes = _od_layout(od_table, settings)
    writer = CheckpointWriter(
        output_dir,
        od_columns=od_columns,
        result_columns=settings.result_columns,
        mode=settings.mode,
        departure=settings.request.departure,
        rows_total=rows_total,
        input_file=input_file,
        od_dtypes=od_dtypes,
        result_dtypes=_result_dtypes(settings),
        encoding=settings.output_encoding,
    )

    state = load_checkpoint(output_dir) if settings.resume else None
    if state is not None:
        start = writer.resume(state)
    else:
        writer.start_fresh()
        start = 0

    summary = BatchSummary(mode=settings.mode, rows_total=rows_total, start_row=start)
    if start >= stop:
        logging.info("Nothing to route: rows 1-%d already completed.", start)

    pairs = build_od_pairs(od_table, columns, start, stop)
    accumulator = ResultAccumulator()
    started = time.perf_counter()
    progress = tqdm(
        total=max(stop - start, 0),
        desc=settings.mode,
        unit="pair",
        dynamic_ncols=True,
        disable=not settings.show_progress,
    )

    try:
        batches = iter_batches(start, stop, settings.batch_size, settings.checkpoint_every)
        for first, last in batches:
            batch = pairs.iloc[first - start : last - start]
            outcomes = route_pairs(engine, batch, settings)

            for row_id in batch["row_id"]:
                row_id = int(row_id)
                outcome = outcomes[row_id]
                od_row = {**od_table.iloc[row_id - 1].to_dict(), **outcome.fields}
                accumulator.add(row_id, od_row, outcome.results)
                summary.record(outcome.status, outcome.result_rows)
                progress.update(1)
                if row_id % settings.status_every == 0:
                    logging.info("Processing iteration: %d of %d", row_id, rows_total)

            if last % settings.checkpoint_every == 0:
                writer.flush(accumulator)
                logging.info("Progress saved up to row %d of %d", last, rows_total)
    finally:
        progress.close()
        # Rows completed since the last checkpoint survive an early exit.
        if writer.flush(accumulator) is not None:
            logging.info(
                "Progress saved up to row %d of %d", writer.last_completed_row, rows_total
            )
        summary.elapsed_seconds = time.perf_counter() - started

    writer.finalize(FINAL_OD_FILE, FINAL_RESULTS_FILE)
    export_summary_csv(summary, output_dir / SUMMARY_CSV_FILE)
    if settings.write_summary_excel:
        export_summary_excel(summary, output_dir / SUMMARY_XLSX_FILE)
    log_summary(summary)
    return summary


# =============================================================================
# ARGUMENTS
# =============================================================================


def parse_args(argv: Sequence[str] | None = None) -> tuple[argparse.Namespace, list[str]]:
    """Parse CLI args and return (args, unknown_args)."""
    p = argparse.ArgumentParser(
        description="Route OD pairs through R5 one row at a time, with resumable checkpoints."
    )
    p.add_argument(
        "-m",
        "--mode",
        choices=sorted(MODE_DEFAULTS),
        default=MODE_ITINERARIES,
        help="Detailed itineraries or travel-time matrix.",
    )
    p.add_argument("-i", "--input", type=Path, default=INPUT_CSV, help="OD pair CSV.")
    p.add_argument("-d", "--outdir", type=Path, default=OUTPUT_DIR, help="Output folder.")
    p.add_argument(
        "-n", "--network-dir", type=Path, default=NETWORK_DATA_DIR, help="R5 data folder."
    )
    p.add_argument(
        "--departure",
        default=DEPARTURE.strftime(DEPARTURE_FORMAT),
        help="Departure time, 'DD-MM-YYYY HH:MM:SS'.",
    )
    p.add_argument("--encoding", default=INPUT_ENCODING, help="Text encoding of the input CSV.")
    p.add_argument("--max-walk", type=int, default=None, help="Max walk time (minutes).")
    p.add_argument("--max-trip", type=int, default=None, help="Max trip duration (minutes).")
    p.add_argument("--checkpoint-every", type=int, default=None, help="Rows between checkpoints.")
    p.add_argument(
        "--status-every", type=int, default=None, help="Rows between status lines."
    )
    p.add_argument("--batch-size", type=int, default=BATCH_SIZE, help="Rows per engine call.")
    p.add_argument("--limit", type=int, default=None, help="Stop after this input row.")
    p.add_argument("--max-memory", default=JAVA_MAX_MEMORY, help="JVM heap for R5, e.g. 32G.")
    p.add_argument("--no-resume", action="store_true", help="Ignore an existing checkpoint.")
    p.add_argument("--no-progress", action="store_true", help="Hide the progress bar.")
    p.add_argument("--log-file", type=Path, default=None, help="Also log to this file.")
    args, unknown = p.parse_known_args(list(argv) if argv is not None else None)
    return args, unknown


# =============================================================================
# MAIN
# =============================================================================


def main(
    argv: Sequence[str] | None = None,
    engine_factory: Callable[[EngineSettings], Any] = R5RoutingEngine,
) -> None:
    """CLI entry point (notebook-safe)."""
    args, _unknown = parse_args(argv)
    setup_logging(log_file=args.log_file)

    try:
        departure = dt.datetime.strptime(args.departure, DEPARTURE_FORMAT)
    except ValueError as exc:
        raise ValueError(
            f"Departure '{args.departure}' does not match {DEPARTURE_FORMAT}."
        ) from exc

    overrides: dict[str, Any] = {
        "batch_size": args.batch_size,
        "resume": not args.no_resume,
        "limit": args.limit,
        "show_progress": not args.no_progress,
    }
    if args.checkpoint_every is not None:
        overrides["checkpoint_every"] = args.checkpoint_every
    if args.status_every is not None:
        overrides["status_every"] = args.status_every
    settings = default_settings(args.mode, departure, args.max_walk, args.max_trip, **overrides)

    od_table = load_od_table(args.input, OD_COLUMNS, args.encoding)
    engine_settings = EngineSettings(
        network_dir=args.network_dir,
        max_memory=args.max_memory,
        verbose=ENGINE_VERBOSE,
        overwrite=ENGINE_OVERWRITE,
        elevation=ELEVATION,
    )

    logging.info(
        "Mode %s, departure %s, %d OD pair(s).", settings.mode, departure.isoformat(), len(od_table)
    )
    with engine_factory(engine_settings) as engine:
        run_batch(od_table, engine, settings, args.outdir, args.input, OD_COLUMNS)


if __name__ == "__main__":
    main()
