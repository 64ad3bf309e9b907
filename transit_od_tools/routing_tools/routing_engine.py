"""Explicit handle on the R5 multimodal routing engine (via ``r5py``).

The engine is a Java library driven through ``r5py``.  Building the transport
network is expensive and the JVM holds on to a large heap, so the handle is
created once per run and released explicitly::

    with R5RoutingEngine(settings) as engine:
        itineraries = engine.detailed_itineraries(pairs, request)

Both query methods take a *pairs* frame (see
:func:`transit_od_tools.utils.od_table_helpers.build_od_pairs`) and address
the engine with synthetic point ids equal to ``row_id``; results are returned
in a canonical, engine-independent schema keyed by ``row_id``.

``r5py`` reads its JVM options (heap size, verbosity) from the command line
when it is first imported, so it is imported lazily in :meth:`R5RoutingEngine.open`
after :func:`configure_java` has run.
"""

from __future__ import annotations

import datetime as dt
import gc
import logging
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final

import pandas as pd

from transit_od_tools.utils.od_table_helpers import points_frame

# =============================================================================
# CONSTANTS
# =============================================================================

ELEVATION_MODES: Final[tuple[str, ...]] = ("NONE", "TOBLER", "MINETTI")

ITINERARY_COLUMNS: Final[list[str]] = [
    "row_id",
    "option",
    "segment",
    "mode",
    "total_duration",
    "segment_duration",
    "wait",
    "total_distance",
    "distance",
    "route",
    "departure_time",
]

TRAVEL_TIME_COLUMNS: Final[list[str]] = ["row_id", "travel_time"]

# =============================================================================
# DATA MODEL
# =============================================================================


@dataclass(frozen=True)
class EngineSettings:
    """How to build the routing engine.

    Attributes:
        network_dir: Folder holding one OpenStreetMap ``.pbf`` extract, any
            number of GTFS ``.zip`` feeds and, for elevation-aware routing, one
            ``.tif`` raster.
        max_memory: JVM heap size, e.g. ``"32G"``.
        verbose: Let the engine log its own progress.
        overwrite: Discard the engine's cached network and rebuild it.
        elevation: ``"NONE"``, ``"TOBLER"`` or ``"MINETTI"``.
    """

    network_dir: Path
    max_memory: str = "32G"
    verbose: bool = True
    overwrite: bool = False
    elevation: str = "NONE"


@dataclass(frozen=True)
class RoutingRequest:
    """Parameters applied uniformly to every routing query of a run."""

    departure: dt.datetime
    modes: tuple[str, ...] = ("WALK", "TRANSIT")
    egress_mode: str = "WALK"
    max_walk_minutes: int = 30
    max_trip_minutes: int = 120
    shortest_path_only: bool = False


@dataclass(frozen=True)
class NetworkFiles:
    """Input files found in a network directory."""

    osm_pbf: Path
    gtfs: list[Path] = field(default_factory=list)
    elevation_raster: Path | None = None


# =============================================================================
# FUNCTIONS
# =============================================================================


def discover_network_files(network_dir: Path | str, elevation: str = "NONE") -> NetworkFiles:
    """Locate the street network, GTFS feeds and elevation raster.

    Raises:
        OSError: Folder missing, no ``.pbf`` or more than one, or a raster is
            required by *elevation* but absent.
        ValueError: Unknown *elevation* mode.
    """
    elevation = elevation.upper()
    if elevation not in ELEVATION_MODES:
        raise ValueError(
            f"Unknown elevation mode '{elevation}'; expected one of {', '.join(ELEVATION_MODES)}."
        )

    folder = Path(network_dir)
    if not folder.is_dir():
        raise OSError(f"The network directory '{folder}' does not exist.")

    pbf_files = sorted(folder.glob("*.pbf"))
    if not pbf_files:
        raise OSError(f"No OpenStreetMap .pbf file found in '{folder}'.")
    if len(pbf_files) > 1:
        names = ", ".join(path.name for path in pbf_files)
        raise OSError(f"Expected one .pbf file in '{folder}', found {len(pbf_files)}: {names}")

    gtfs_files = sorted(folder.glob("*.zip"))
    if not gtfs_files:
        logging.warning("No GTFS .zip feeds in '%s'; routing will use streets only.", folder)

    raster: Path | None = None
    if elevation != "NONE":
        rasters = sorted(folder.glob("*.tif"))
        if not rasters:
            raise OSError(f"Elevation mode {elevation} needs a .tif raster in '{folder}'.")
        raster = rasters[0]

    return NetworkFiles(osm_pbf=pbf_files[0], gtfs=gtfs_files, elevation_raster=raster)


def configure_java(max_memory: str, verbose: bool = False) -> None:
    """Hand JVM options to ``r5py``; must run before ``r5py`` is imported."""
    if "r5py" in sys.modules:
        logging.warning("r5py already imported; JVM options (max memory %s) ignored.", max_memory)
        return
    if "--max-memory" not in sys.argv:
        sys.argv.extend(["--max-memory", max_memory])
    if verbose and "--verbose" not in sys.argv:
        sys.argv.append("--verbose")


def _minutes(values: pd.Series) -> pd.Series:
    """Convert timedeltas (or plain minutes) to float minutes."""
    if pd.api.types.is_numeric_dtype(values):
        return values.astype(float)
    return pd.to_timedelta(values).dt.total_seconds() / 60.0


def _mode_name(mode: Any) -> str:
    return str(getattr(mode, "name", mode))


def normalize_itineraries(raw: pd.DataFrame, shortest_path_only: bool = False) -> pd.DataFrame:
    """Convert an ``r5py`` detailed-itinerary table to the canonical schema.

    ``r5py`` numbers options and segments from 0 and reports durations as
    timedeltas.  The canonical schema numbers both from 1, reports minutes and
    repeats the option totals (``total_duration`` = travel + wait time,
    ``total_distance``) on every segment row of the option.

    Args:
        raw: Segment rows with ``from_id``, ``option``, ``segment``,
            ``transport_mode``, ``travel_time``, ``wait_time``, ``distance``
            and, optionally, ``route`` and ``departure_time``.
        shortest_path_only: Keep only the fastest option of each row.

    Returns:
        A DataFrame with :data:`ITINERARY_COLUMNS`, sorted by row, option,
        segment.  Unreachable rows (no option) are dropped.
    """
    if raw.empty or "option" not in raw.columns:
        return pd.DataFrame(columns=ITINERARY_COLUMNS)

    segments = raw[raw["option"].notna() & raw["segment"].notna()].copy()
    if segments.empty:
        return pd.DataFrame(columns=ITINERARY_COLUMNS)

    out = pd.DataFrame(
        {
            "row_id": segments["from_id"].astype(str).astype("int64"),
            "option": segments["option"].astype("int64") + 1,
            "segment": segments["segment"].astype("int64") + 1,
            "mode": segments["transport_mode"].map(_mode_name),
            "segment_duration": _minutes(segments["travel_time"]).round(2),
            "wait": _minutes(segments["wait_time"]).fillna(0.0).round(2),
            "distance": pd.to_numeric(segments["distance"], errors="coerce"),
            "route": segments["route"] if "route" in segments else pd.NA,
            "departure_time": segments["departure_time"] if "departure_time" in segments else pd.NA,
        }
    )
    out = out.sort_values(["row_id", "option", "segment"], kind="mergesort").reset_index(drop=True)

    per_option = out.groupby(["row_id", "option"], sort=False)
    out["total_duration"] = (
        per_option["segment_duration"].transform("sum") + per_option["wait"].transform("sum")
    ).round(2)
    out["total_distance"] = per_option["distance"].transform("sum")

    if shortest_path_only:
        firsts = out.drop_duplicates(["row_id", "option"])
        fastest = firsts.loc[firsts.groupby("row_id", sort=False)["total_duration"].idxmin()]
        keep = out.set_index(["row_id", "option"]).index.isin(
            fastest.set_index(["row_id", "option"]).index
        )
        out = out[keep].copy()
        out["option"] = 1

    return out[ITINERARY_COLUMNS].reset_index(drop=True)


def normalize_travel_times(raw: pd.DataFrame) -> pd.DataFrame:
    """Reduce an ``r5py`` travel-time matrix to the requested pairs.

    The matrix is all-to-all; the requested pairs are the cells where origin
    and destination carry the same ``row_id``.  Unreachable cells are dropped.
    """
    if raw.empty:
        return pd.DataFrame(columns=TRAVEL_TIME_COLUMNS)

    pairwise = raw[raw["from_id"].astype(str) == raw["to_id"].astype(str)]
    pairwise = pairwise[pairwise["travel_time"].notna()]
    out = pd.DataFrame(
        {
            "row_id": pairwise["from_id"].astype(str).astype("int64"),
            "travel_time": pd.to_numeric(pairwise["travel_time"], errors="coerce"),
        }
    )
    return out.sort_values("row_id", kind="mergesort").reset_index(drop=True)


# =============================================================================
# ENGINE
# =============================================================================


class R5RoutingEngine:
    """Scoped handle on an ``r5py.TransportNetwork``."""

    def __init__(self, settings: EngineSettings) -> None:
        self.settings = settings
        self._r5py: Any = None
        self._network: Any = None

    # -- lifecycle -----------------------------------------------------------

    def open(self) -> R5RoutingEngine:
        """Build (or load from the engine cache) the transport network."""
        files = discover_network_files(self.settings.network_dir, self.settings.elevation)
        configure_java(self.settings.max_memory, self.settings.verbose)

        import r5py

        self._r5py = r5py
        if self.settings.overwrite:
            self._clear_cache()

        kwargs: dict[str, Any] = {"gtfs": [str(path) for path in files.gtfs]}
        if files.elevation_raster is not None:
            kwargs["elevation_model"] = str(files.elevation_raster)
            kwargs["elevation_cost_function"] = getattr(
                r5py.ElevationCostFunction, self.settings.elevation.upper()
            )

        logging.info(
            "Building R5 network from %s (%d GTFS feed(s), elevation %s)",
            files.osm_pbf.name,
            len(files.gtfs),
            self.settings.elevation,
        )
        self._network = r5py.TransportNetwork(str(files.osm_pbf), **kwargs)
        logging.info("R5 network ready.")
        return self

    def close(self) -> None:
        """Release the network and ask the JVM to free its memory."""
        if self._network is None:
            return
        self._network = None
        gc.collect()

        import jpype

        if jpype.isJVMStarted():
            jpype.java.lang.System.gc()
        logging.info("R5 network released.")

    def __enter__(self) -> R5RoutingEngine:
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self._network is not None

    def _clear_cache(self) -> None:
        cache_dir = Path(self._r5py.util.config.Config().CACHE_DIR)
        if cache_dir.exists():
            logging.info("Overwrite requested; clearing R5 cache at %s", cache_dir)
            shutil.rmtree(cache_dir, ignore_errors=True)
            cache_dir.mkdir(parents=True, exist_ok=True)

    def _require_open(self) -> None:
        if self._network is None:
            raise RuntimeError("Routing engine is not open; use it inside a 'with' block.")

    # -- queries -------------------------------------------------------------

    def _points(self, pairs: pd.DataFrame) -> tuple[Any, Any]:
        origins = points_frame(pairs["row_id"], pairs["origin_lon"], pairs["origin_lat"])
        destinations = points_frame(
            pairs["row_id"], pairs["destination_lon"], pairs["destination_lat"]
        )
        return origins, destinations

    def _modes(self, names: tuple[str, ...] | list[str]) -> list[Any]:
        return [getattr(self._r5py.TransportMode, name.upper()) for name in names]

    def _common_kwargs(self, request: RoutingRequest) -> dict[str, Any]:
        return {
            "departure": request.departure,
            "transport_modes": self._modes(request.modes),
            "egress_modes": self._modes([request.egress_mode]),
            "max_time": dt.timedelta(minutes=request.max_trip_minutes),
            "max_time_walking": dt.timedelta(minutes=request.max_walk_minutes),
        }

    def detailed_itineraries(self, pairs: pd.DataFrame, request: RoutingRequest) -> pd.DataFrame:
        """Route each pair (origin *i* to destination *i*) with full itineraries."""
        self._require_open()
        origins, destinations = self._points(pairs)
        raw = self._r5py.DetailedItineraries(
            self._network,
            origins=origins,
            destinations=destinations,
            force_all_to_all=False,
            **self._common_kwargs(request),
        )
        return normalize_itineraries(pd.DataFrame(raw), request.shortest_path_only)

    def travel_time_matrix(self, pairs: pd.DataFrame, request: RoutingRequest) -> pd.DataFrame:
        """Travel time in minutes for each pair, within the trip/walk bounds."""
        self._require_open()
        origins, destinations = self._points(pairs)
        raw = self._r5py.TravelTimeMatrix(
            self._network,
            origins=origins,
            destinations=destinations,
            **self._common_kwargs(request),
        )
        return normalize_travel_times(pd.DataFrame(raw))
