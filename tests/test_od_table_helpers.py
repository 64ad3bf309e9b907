from __future__ import annotations

import math
from pathlib import Path

import pytest

from transit_od_tools.utils.od_table_helpers import (
    PAIR_COLUMNS,
    WGS84,
    ODColumns,
    build_od_pairs,
    has_valid_coordinates,
    load_od_table,
    points_frame,
)

FIXTURE = Path(__file__).parent / "fixtures" / "od_pairs.csv"

HEADER = "start_gid,start_longitude,start_latitude,end_gid,end_longitude,end_latitude,name\n"


def test_load_od_table_fixture_preserves_ids_and_extra_columns() -> None:
    table = load_od_table(FIXTURE, encoding="utf-8")

    assert len(table) == 5
    assert list(table.index) == [0, 1, 2, 3, 4]
    # Identifiers stay strings, so leading zeros survive.
    assert table.loc[0, "start_gid"] == "0001"
    assert table.loc[4, "end_gid"] == "1005"
    assert table.loc[0, "pair_label"] == "city_hall-gangnam"
    assert math.isnan(table.loc[3, "start_longitude"])


def test_load_od_table_reads_cp949_by_default(tmp_path) -> None:
    path = tmp_path / "distance_df.csv"
    path.write_text(
        HEADER + "A1,126.97,37.55,B1,127.02,37.49,서울역-강남역\n", encoding="cp949"
    )

    table = load_od_table(path)

    assert table.loc[0, "name"] == "서울역-강남역"
    assert table.loc[0, "start_longitude"] == pytest.approx(126.97)


def test_load_od_table_wrong_encoding_raises_value_error(tmp_path) -> None:
    path = tmp_path / "distance_df.csv"
    path.write_text(HEADER + "A1,126.97,37.55,B1,127.02,37.49,서울역\n", encoding="cp949")

    with pytest.raises(ValueError) as excinfo:
        load_od_table(path, encoding="utf-8")
    assert "utf-8" in str(excinfo.value)


def test_load_od_table_missing_file_raises_oserror(tmp_path) -> None:
    missing = tmp_path / "nope.csv"
    with pytest.raises(OSError) as excinfo:
        load_od_table(missing)
    assert str(missing) in str(excinfo.value)


def test_load_od_table_empty_file_raises_value_error(tmp_path) -> None:
    path = tmp_path / "empty.csv"
    path.write_text("", encoding="utf-8")
    with pytest.raises(ValueError, match="empty"):
        load_od_table(path)


def test_load_od_table_missing_columns_listed(tmp_path) -> None:
    path = tmp_path / "partial.csv"
    path.write_text("start_gid,start_longitude,start_latitude\nA,1,2\n", encoding="utf-8")

    with pytest.raises(ValueError) as excinfo:
        load_od_table(path)
    message = str(excinfo.value)
    assert "end_gid" in message
    assert "end_latitude" in message


def test_load_od_table_custom_columns_and_bad_coordinates(tmp_path) -> None:
    path = tmp_path / "custom.csv"
    path.write_text("o,ox,oy,d,dx,dy\n7,abc,37.5,8,127.0,37.4\n", encoding="utf-8")
    columns = ODColumns("o", "ox", "oy", "d", "dx", "dy")

    table = load_od_table(path, columns=columns, encoding="utf-8")

    assert table.loc[0, "o"] == "7"
    assert math.isnan(table.loc[0, "ox"])
    assert table.loc[0, "dx"] == 127.0


def test_build_od_pairs_row_ids_are_input_positions() -> None:
    table = load_od_table(FIXTURE, encoding="utf-8")

    pairs = build_od_pairs(table, start=2, stop=4)

    assert list(pairs.columns) == list(PAIR_COLUMNS)
    assert list(pairs["row_id"]) == [3, 4]
    assert list(pairs["origin_id"]) == ["0003", "0004"]
    assert pairs.loc[0, "destination_lat"] == pytest.approx(37.52)


def test_has_valid_coordinates() -> None:
    table = load_od_table(FIXTURE, encoding="utf-8")
    pairs = build_od_pairs(table)

    flags = [has_valid_coordinates(pair) for _, pair in pairs.iterrows()]
    out_of_range = pairs.iloc[0].copy()
    out_of_range["destination_lat"] = 95.0

    assert flags == [True, True, True, False, True]
    assert not has_valid_coordinates(out_of_range)


def test_points_frame_uses_string_ids_in_wgs84() -> None:
    frame = points_frame([1, 2], [126.9, 127.0], [37.5, 37.6])

    assert frame.crs == WGS84
    assert list(frame["id"]) == ["1", "2"]
    assert frame.geometry.iloc[1].x == pytest.approx(127.0)
    assert frame.geometry.iloc[1].y == pytest.approx(37.6)


def test_od_columns_required_order() -> None:
    assert ODColumns().required == (
        "start_gid",
        "start_longitude",
        "start_latitude",
        "end_gid",
        "end_longitude",
        "end_latitude",
    )
    assert ODColumns().coordinate_columns == (
        "start_longitude",
        "start_latitude",
        "end_longitude",
        "end_latitude",
    )
