"""Tests for input validation of raw point batches."""

import math

import numpy as np
import pytest

from pytrackdoctor.errors import InvalidPointsError, TooFewPointsError, TooManyPointsError
from pytrackdoctor.models import GeoPoint
from pytrackdoctor.preprocessing.validation import MAX_POINTS, validate_points

from conftest import T0, make_track


def test_accepts_canonical_rows(straight_rows):
    frame = validate_points(straight_rows)
    assert list(frame.columns) == [
        "index", "lat", "lon", "time", "elevation", "speed", "bearing",
        "speed_supplied", "bearing_supplied",
    ]
    assert len(frame) == len(straight_rows)
    assert frame["index"].tolist() == list(range(len(straight_rows)))
    assert not frame["speed_supplied"].any()
    assert frame["elevation"].isna().all()


def test_optional_fields_and_none_placeholders():
    rows = [
        [10.0, 20.0, T0, 5.0, 3.0, 90.0],
        [10.0001, 20.0, T0 + 1, None, 2.5],
        [10.0002, 20.0, T0 + 2, None, None, None],
    ]
    frame = validate_points(rows)
    assert frame["speed_supplied"].tolist() == [True, True, False]
    assert frame["bearing_supplied"].tolist() == [True, False, False]
    assert frame.loc[0, "elevation"] == 5.0
    assert math.isnan(frame.loc[1, "elevation"])


def test_accepts_numpy_array_and_geopoints():
    arr = np.array(make_track(n=5))
    assert len(validate_points(arr)) == 5

    points = [GeoPoint(index=i, lat=row[0], lon=row[1], timestamp=row[2]) for i, row in enumerate(make_track(n=4))]
    assert len(validate_points(points)) == 4


def test_equal_timestamps_are_tolerated():
    rows = [[1.0, 1.0, T0], [1.0, 1.0, T0], [1.0001, 1.0, T0 + 1]]
    assert len(validate_points(rows)) == 3


@pytest.mark.parametrize("rows", [None, [], [[1.0, 2.0, T0]]])
def test_too_few_points(rows):
    with pytest.raises(TooFewPointsError) as exc:
        validate_points(rows)
    assert exc.value.code == "too_few_points"
    assert exc.value.details["limit"] == 2


def test_too_many_points_reports_limit():
    rows = [[1.0, 1.0, T0 + i] for i in range(MAX_POINTS + 1)]
    with pytest.raises(TooManyPointsError) as exc:
        validate_points(rows)
    assert exc.value.code == "too_many_points"
    assert exc.value.details["limit"] == 100000
    assert exc.value.details["received"] == MAX_POINTS + 1


def test_invalid_points_lists_every_offender():
    rows = make_track(n=12)
    rows[1][0] = 91.0                      # latitude out of range
    rows[2][1] = "east"                    # non-numeric
    rows[3] = rows[3][:2]                  # too short
    rows[4][0] = float("nan")              # non-finite
    rows[5] = rows[5] + [None, -1.0]       # negative speed
    rows[6] = rows[6] + [None, None, 400.0]  # bearing out of range
    rows[8][2] = rows[7][2] - 10.0         # earlier than predecessor
    rows[9][2] = 100.0                     # timestamp before 2000
    rows[10][0] = True                     # bool is not a coordinate

    with pytest.raises(InvalidPointsError) as exc:
        validate_points(rows)
    err = exc.value
    assert err.code == "invalid_points"
    assert err.invalid_indices == [1, 2, 3, 4, 5, 6, 8, 9, 10]
    assert err.details["invalid_indices"] == err.invalid_indices
    assert "latitude out of range" in err.details["reasons"][1]
    assert err.to_dict()["error"] == "invalid_points"


def test_infinite_optional_value_rejected():
    rows = make_track(n=3)
    rows[1].append(float("inf"))
    with pytest.raises(InvalidPointsError) as exc:
        validate_points(rows)
    assert exc.value.invalid_indices == [1]


def test_rejection_is_a_value_error():
    with pytest.raises(ValueError):
        validate_points([[0.0, 0.0, T0], [0.0, 200.0, T0 + 1]])
