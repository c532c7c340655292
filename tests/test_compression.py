"""Tests for Douglas-Peucker simplification."""

import threading

import numpy as np
import pandas as pd
import pytest

from pytrackdoctor.errors import DiagnosisCancelledError
from pytrackdoctor.preprocessing.compression import (
    douglas_peucker,
    douglas_peucker_mask,
    simplification_error,
)

from conftest import M_PER_DEG, make_track


def _frame(lats, lons):
    return pd.DataFrame({
        "index": np.arange(len(lats)),
        "corrected_lat": np.asarray(lats, dtype=float),
        "corrected_lon": np.asarray(lons, dtype=float),
    })


def _random_walk(n, seed=7, step_m=15.0):
    rng = np.random.default_rng(seed)
    north = np.cumsum(rng.normal(0.0, step_m, n))
    east = np.cumsum(rng.normal(0.0, step_m, n))
    return 45.0 + north / M_PER_DEG, 7.0 + east / (M_PER_DEG * np.cos(np.radians(45.0)))


def test_collinear_track_keeps_only_endpoints():
    rows = make_track(n=50)
    frame = _frame([r[0] for r in rows], [r[1] for r in rows])
    out, info = douglas_peucker(frame, 1.0)
    assert out["index"].tolist() == [0, 49]
    assert info.removed_points == 48
    assert info.removed_indices == list(range(1, 49))
    assert info.parameters["compression_ratio"] == pytest.approx(2 / 50)


def test_corner_of_l_shape_is_kept():
    north = make_track(n=11)
    corner = (north[-1][0], north[-1][1])
    east = make_track(n=11, bearing_deg=90.0, start=corner)
    lats = [r[0] for r in north] + [r[0] for r in east[1:]]
    lons = [r[1] for r in north] + [r[1] for r in east[1:]]
    out, _ = douglas_peucker(_frame(lats, lons), 1.0)
    assert out["index"].tolist() == [0, 10, 20]


def test_error_bound_holds_on_random_walk():
    lats, lons = _random_walk(500)
    frame = _frame(lats, lons)
    for eps in (1.0, 5.0, 25.0):
        out, info = douglas_peucker(frame, eps)
        assert info.parameters["max_error_m"] <= eps
        keep = frame["index"].isin(out["index"]).to_numpy()
        assert simplification_error(frame, keep) <= eps
        assert out["index"].is_monotonic_increasing


def test_zero_epsilon_keeps_non_collinear_points():
    lats, lons = _random_walk(200)
    out, info = douglas_peucker(_frame(lats, lons), 0.0)
    assert info.removed_points == 0
    assert len(out) == 200
    assert info.parameters["max_error_m"] == 0.0


@pytest.mark.parametrize("n", [0, 1, 2])
def test_short_inputs_are_kept_whole(n):
    mask = douglas_peucker_mask(np.zeros(n), np.arange(n, dtype=float), 10.0)
    assert mask.tolist() == [True] * n


def test_input_frame_not_mutated():
    lats, lons = _random_walk(100)
    frame = _frame(lats, lons)
    before = frame.copy()
    douglas_peucker(frame, 10.0)
    assert frame.equals(before)


def test_long_simplification_can_be_cancelled():
    lats, lons = _random_walk(3000)
    event = threading.Event()
    event.set()
    with pytest.raises(DiagnosisCancelledError):
        douglas_peucker_mask(lats, lons, 0.0, cancel=event)
