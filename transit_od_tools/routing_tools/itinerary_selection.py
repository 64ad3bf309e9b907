"""Pick the best itinerary option for one OD pair.

The engine returns several ranked options per OD pair, each made of one or
more segments.  The selection rule:

    1. Keep options ranked ``1..max_option`` (three by default).
    2. Keep options whose highest segment index is at least ``min_segments``
       (two by default, i.e. trips that involve a connection).
    3. Of those, take each option's first row, which carries the option
       totals, and pick the smallest ``total_duration``.  Ties go to the
       lowest option index.

A single-segment option is never selected under the default rule, even when
it is the fastest.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final

import pandas as pd

DEFAULT_MAX_OPTION: Final[int] = 3
DEFAULT_MIN_SEGMENTS: Final[int] = 2


@dataclass(frozen=True)
class BestOption:
    """Totals of the selected option."""

    option: int
    total_duration: float
    total_distance: float


def filter_top_options(
    itineraries: pd.DataFrame, max_option: int = DEFAULT_MAX_OPTION
) -> pd.DataFrame:
    """Keep the rows of options ranked ``max_option`` or better."""
    return itineraries[itineraries["option"] <= max_option]


def max_segment_by_option(itineraries: pd.DataFrame) -> pd.Series:
    """Highest segment index of each option (a proxy for transfers + 1)."""
    return itineraries.groupby("option", sort=True)["segment"].max()


def select_best_option(
    itineraries: pd.DataFrame,
    max_option: int = DEFAULT_MAX_OPTION,
    min_segments: int = DEFAULT_MIN_SEGMENTS,
) -> BestOption | None:
    """Apply the selection rule to the itineraries of a single OD pair.

    Args:
        itineraries: Segment rows of one OD pair with ``option``, ``segment``,
            ``total_duration`` and ``total_distance`` columns.
        max_option: Highest option rank considered.
        min_segments: Minimum highest-segment index for an option to qualify.

    Returns:
        The winning option, or ``None`` if no option qualifies.
    """
    if itineraries.empty:
        return None

    top = filter_top_options(itineraries, max_option)
    if top.empty:
        return None

    segment_counts = max_segment_by_option(top)
    eligible = segment_counts[segment_counts >= min_segments].index
    if len(eligible) == 0:
        return None

    # First row of each option carries the option totals.
    summary = (
        top[top["option"].isin(eligible)]
        .groupby("option", sort=True)
        .head(1)
        .sort_values("option", kind="mergesort")
        .reset_index(drop=True)
    )
    summary = summary[summary["total_duration"].notna()]
    if summary.empty:
        return None

    best = summary.loc[summary["total_duration"].idxmin()]
    return BestOption(
        option=int(best["option"]),
        total_duration=float(best["total_duration"]),
        total_distance=float(best["total_distance"]),
    )
