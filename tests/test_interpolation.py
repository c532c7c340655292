"""Tests for spline gap filling."""

import logging

import numpy as np
import pytest

from pytrackdoctor.options import TuningOptions
from pytrackdoctor.preprocessing.interpolation import fill_gaps
from pytrackdoctor.utilities.geodesy import haversine

from conftest import detect, make_track


def _fill(rows, tuning=None):
    frame, result = detect(rows)
    return frame, fill_gaps(frame, result.gaps, tuning or TuningOptions())


def test_no_gaps_is_a_no_op(straight_rows, tuning):
    frame, result = detect(straight_rows)
    out, info, gaps = fill_gaps(frame, result.gaps, tuning)
    assert out.equals(frame)
    assert info.added_points == 0
    assert gaps == []


def test_gap_filled_at_local_cadence():
    rows = make_track(n=60, gap_after=29, gap_seconds=400.0)
    frame, (out, info, gaps) = _fill(rows)

    assert info.name == "spline_interpolation"
    assert info.added_points == 132
    assert len(out) == 60 + 132
    assert info.parameters["methods"] == {"spline": 1, "linear": 0}
    assert info.parameters["filled_gaps"] == 1

    inserted = out.iloc[30:162]
    assert (inserted["status"] == "interpolated").all()
    assert (inserted["fixed_by"] == "spline_interpolation").all()
    assert inserted["index"].tolist() == list(range(60, 192))
    assert info.parameters["interpolated_indices"] == list(range(60, 192))
    t29, t30 = rows[29][2], rows[30][2]
    assert ((inserted["time"] > t29) & (inserted["time"] < t30)).all()
    assert inserted["time"].is_monotonic_increasing
    # Original indices keep their order around the inserted block
    assert out.loc[29, "index"] == 29 and out.loc[162, "index"] == 30

    (gap,) = gaps
    assert gap.filled is True and gap.reason is None


def test_spline_points_stay_on_straight_path():
    rows = make_track(n=60, gap_after=29, gap_seconds=400.0)
    _, (out, _, _) = _fill(rows)
    inserted = out[out["status"] == "interpolated"]
    expected = make_track(n=60, gap_after=29, gap_seconds=400.0)
    lon0 = expected[0][1]
    assert np.abs(inserted["lon"].to_numpy() - lon0).max() < 1e-6
    assert (inserted["original_lat"] == inserted["lat"]).all()
    assert (inserted["corrected_lon"] == inserted["lon"]).all()


def test_gap_near_start_falls_back_to_linear():
    rows = make_track(n=40, gap_after=2, gap_seconds=60.0)
    frame, (out, info, _) = _fill(rows)
    assert info.parameters["methods"] == {"spline": 0, "linear": 1}
    assert info.added_points == 19

    inserted = out[out["status"] == "interpolated"]
    d_total = haversine(rows[2][0], rows[2][1], rows[3][0], rows[3][1])
    d_first = haversine(rows[2][0], rows[2][1], inserted["lat"].iloc[0], inserted["lon"].iloc[0])
    assert d_first == pytest.approx(d_total / 20.0, rel=1e-3)


def test_overlong_gap_left_unfilled(caplog):
    rows = make_track(n=60, gap_after=29, gap_seconds=700.0)
    with caplog.at_level(logging.WARNING, logger="pytrackdoctor.preprocessing.interpolation"):
        frame, (out, info, gaps) = _fill(rows)

    assert info.added_points == 0
    assert len(out) == 60
    (gap,) = gaps
    assert gap.filled is False
    assert "exceeds" in gap.reason
    assert info.parameters["unfilled_gaps"] == gaps
    assert any("left unfilled" in r.getMessage() for r in caplog.records)


def test_gap_across_antimeridian():
    rows = make_track(n=60, bearing_deg=90.0, start=(0.0, 179.98), gap_after=29, gap_seconds=400.0)
    assert rows[29][1] > 0 > rows[30][1]
    _, (out, info, _) = _fill(rows)

    inserted = out[out["status"] == "interpolated"]
    lons = inserted["lon"].to_numpy()
    assert info.added_points == 132
    assert (np.abs(lons) <= 180.0).all()
    assert ((lons > 179.98) | (lons < -179.9)).all()
    assert np.abs(inserted["lat"].to_numpy()).max() < 1e-4


def test_elevation_interpolated_between_boundaries():
    rows = make_track(n=60, gap_after=29, gap_seconds=400.0, elevation=100.0)
    _, (out, _, _) = _fill(rows)
    elev = out.loc[out["status"] == "interpolated", "elevation"].to_numpy()
    assert np.all(np.isfinite(elev))
    assert elev.min() > rows[29][3] - 1e-9
    assert elev.max() < rows[30][3] + 1e-9
    assert np.all(np.diff(elev) > 0)


def test_missing_elevation_stays_missing():
    rows = make_track(n=60, gap_after=29, gap_seconds=400.0)
    _, (out, _, _) = _fill(rows)
    assert out.loc[out["status"] == "interpolated", "elevation"].isna().all()
