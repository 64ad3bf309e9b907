"""Load origin/destination pair tables and shape them for the routing engine.

The OD table is a delimited file with one row per trip to be routed: an origin
identifier and coordinate, and a destination identifier and coordinate.  Any
additional columns are carried through untouched so that the augmented table
written by the batch router still contains them.
"""

from __future__ import annotations

import logging
import math
import os
from collections.abc import Sequence
from dataclasses import astuple, dataclass
from typing import Final

import geopandas as gpd
import numpy as np
import pandas as pd
from shapely.geometry import Point

# =============================================================================
# CONSTANTS
# =============================================================================

WGS84: Final[str] = "EPSG:4326"

PAIR_COLUMNS: Final[tuple[str, ...]] = (
    "row_id",
    "origin_id",
    "origin_lon",
    "origin_lat",
    "destination_id",
    "destination_lon",
    "destination_lat",
)

# =============================================================================
# DATA MODEL
# =============================================================================


@dataclass(frozen=True)
class ODColumns:
    """Names of the identifier and coordinate columns in the OD table."""

    origin_id: str = "start_gid"
    origin_lon: str = "start_longitude"
    origin_lat: str = "start_latitude"
    destination_id: str = "end_gid"
    destination_lon: str = "end_longitude"
    destination_lat: str = "end_latitude"

    @property
    def coordinate_columns(self) -> tuple[str, str, str, str]:
        return (self.origin_lon, self.origin_lat, self.destination_lon, self.destination_lat)

    @property
    def required(self) -> tuple[str, ...]:
        return astuple(self)


# =============================================================================
# FUNCTIONS
# =============================================================================


def load_od_table(
    path: str | os.PathLike[str],
    columns: ODColumns = ODColumns(),
    encoding: str = "cp949",
) -> pd.DataFrame:
    """Read an OD pair table from a delimited text file.

    Args:
        path: Location of the CSV file.
        columns: Column names for the origin/destination identifiers and
            coordinates.
        encoding: Text encoding of the file.

    Returns:
        The table with a fresh ``RangeIndex`` in file order.  Identifier
        columns are strings (leading zeros survive); coordinate columns are
        floats, with unparseable values set to NaN.

    Raises:
        OSError: The file does not exist.
        ValueError: The file is empty, cannot be parsed or decoded, or lacks
            one of the required columns.
    """
    if not os.path.exists(path):
        raise OSError(f"OD table '{path}' does not exist.")

    id_dtypes = {columns.origin_id: str, columns.destination_id: str}
    try:
        table = pd.read_csv(path, encoding=encoding, dtype=id_dtypes, low_memory=False)
    except pd.errors.EmptyDataError as exc:
        raise ValueError(f"OD table '{path}' is empty.") from exc
    except pd.errors.ParserError as exc:
        raise ValueError(f"Parser error in OD table '{path}': {exc}") from exc
    except UnicodeDecodeError as exc:
        raise ValueError(
            f"OD table '{path}' could not be decoded as '{encoding}': {exc}"
        ) from exc

    missing = [name for name in columns.required if name not in table.columns]
    if missing:
        raise ValueError(f"OD table '{path}' is missing required columns: {', '.join(missing)}")

    for name in columns.coordinate_columns:
        table[name] = pd.to_numeric(table[name], errors="coerce").astype(float)

    table = table.reset_index(drop=True)
    logging.info("Loaded %s (%d OD pairs).", path, len(table))
    return table


def build_od_pairs(
    od_table: pd.DataFrame,
    columns: ODColumns = ODColumns(),
    start: int = 0,
    stop: int | None = None,
) -> pd.DataFrame:
    """Slice the OD table into the engine-facing pairs frame.

    ``start``/``stop`` are positional (0-based, half-open).  ``row_id`` is the
    1-based position of the row in the full input table.
    """
    subset = od_table.iloc[start:stop]
    return pd.DataFrame(
        {
            "row_id": np.arange(start + 1, start + 1 + len(subset), dtype="int64"),
            "origin_id": subset[columns.origin_id].to_numpy(),
            "origin_lon": subset[columns.origin_lon].to_numpy(dtype=float),
            "origin_lat": subset[columns.origin_lat].to_numpy(dtype=float),
            "destination_id": subset[columns.destination_id].to_numpy(),
            "destination_lon": subset[columns.destination_lon].to_numpy(dtype=float),
            "destination_lat": subset[columns.destination_lat].to_numpy(dtype=float),
        },
        columns=list(PAIR_COLUMNS),
    )


def _valid_lon_lat(lon: float, lat: float) -> bool:
    return (
        math.isfinite(lon)
        and math.isfinite(lat)
        and -180.0 <= lon <= 180.0
        and -90.0 <= lat <= 90.0
    )


def has_valid_coordinates(pair: pd.Series) -> bool:
    """Return True if both ends of *pair* are finite WGS84 coordinates."""
    return _valid_lon_lat(float(pair["origin_lon"]), float(pair["origin_lat"])) and _valid_lon_lat(
        float(pair["destination_lon"]), float(pair["destination_lat"])
    )


def points_frame(
    ids: Sequence[object],
    lons: Sequence[float],
    lats: Sequence[float],
) -> gpd.GeoDataFrame:
    """Build a point GeoDataFrame with an ``id`` column, in WGS84."""
    return gpd.GeoDataFrame(
        {"id": [str(value) for value in ids]},
        geometry=[Point(lon, lat) for lon, lat in zip(lons, lats)],
        crs=WGS84,
    )
