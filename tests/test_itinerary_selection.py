from __future__ import annotations

import math

import pandas as pd

from transit_od_tools.routing_tools.itinerary_selection import (
    BestOption,
    filter_top_options,
    max_segment_by_option,
    select_best_option,
)


def _itineraries(rows: list[tuple[int, int, float, float]]) -> pd.DataFrame:
    """Segment rows as (option, segment, total_duration, total_distance)."""
    return pd.DataFrame(rows, columns=["option", "segment", "total_duration", "total_distance"])


def test_single_segment_option_is_never_selected() -> None:
    """The fastest option is walk-only; the fastest connecting option wins."""
    itineraries = _itineraries(
        [
            (1, 1, 20.0, 1500.0),
            (2, 1, 25.0, 4000.0),
            (2, 2, 25.0, 4000.0),
            (3, 1, 30.0, 5200.0),
            (3, 2, 30.0, 5200.0),
            (3, 3, 30.0, 5200.0),
        ]
    )

    assert select_best_option(itineraries) == BestOption(
        option=2, total_duration=25.0, total_distance=4000.0
    )


def test_options_beyond_third_are_ignored() -> None:
    itineraries = _itineraries(
        [
            (1, 1, 40.0, 9000.0),
            (1, 2, 40.0, 9000.0),
            (4, 1, 10.0, 3000.0),
            (4, 2, 10.0, 3000.0),
        ]
    )

    best = select_best_option(itineraries)

    assert best is not None
    assert best.option == 1
    assert best.total_duration == 40.0


def test_only_single_segment_options_gives_none() -> None:
    itineraries = _itineraries([(1, 1, 30.0, 2000.0), (2, 1, 35.0, 2100.0)])
    assert select_best_option(itineraries) is None


def test_tie_goes_to_lowest_option_regardless_of_row_order() -> None:
    itineraries = _itineraries(
        [
            (3, 1, 30.0, 7000.0),
            (3, 2, 30.0, 7000.0),
            (2, 1, 30.0, 6500.0),
            (2, 2, 30.0, 6500.0),
        ]
    )

    best = select_best_option(itineraries)

    assert best is not None
    assert best.option == 2
    assert best.total_distance == 6500.0


def test_empty_itineraries_gives_none() -> None:
    assert select_best_option(_itineraries([])) is None


def test_rule_parameters_are_configurable() -> None:
    itineraries = _itineraries(
        [
            (1, 1, 20.0, 1500.0),
            (2, 1, 25.0, 4000.0),
            (2, 2, 25.0, 4000.0),
            (4, 1, 12.0, 3000.0),
            (4, 2, 12.0, 3000.0),
        ]
    )

    walk_allowed = select_best_option(itineraries, min_segments=1)
    fourth_allowed = select_best_option(itineraries, max_option=4)

    assert walk_allowed is not None and walk_allowed.option == 1
    assert fourth_allowed is not None and fourth_allowed.option == 4


def test_missing_durations_give_none() -> None:
    itineraries = _itineraries([(1, 1, math.nan, 100.0), (1, 2, math.nan, 100.0)])
    assert select_best_option(itineraries) is None


def test_filter_top_options_and_segment_counts() -> None:
    itineraries = _itineraries(
        [
            (1, 1, 20.0, 1.0),
            (2, 1, 25.0, 1.0),
            (2, 2, 25.0, 1.0),
            (3, 1, 30.0, 1.0),
            (4, 1, 35.0, 1.0),
        ]
    )

    top = filter_top_options(itineraries)
    counts = max_segment_by_option(itineraries)

    assert sorted(top["option"].unique()) == [1, 2, 3]
    assert counts.to_dict() == {1: 1, 2: 2, 3: 1, 4: 1}
