"""Tests for the adaptive Kalman/RTS smoother."""

import numpy as np
import pytest
import scipy.linalg

from pytrackdoctor.preprocessing import filtration
from pytrackdoctor.preprocessing.filtration import adaptive_rts_smooth
from pytrackdoctor.utilities.geodesy import haversine

from conftest import detect, displace, lateral_offset_m, make_track


def _normal_mask(frame):
    return (frame["status"] == "normal").to_numpy()


def test_no_flagged_points_is_a_no_op(straight_rows, tuning):
    frame, _ = detect(straight_rows)
    out, info = adaptive_rts_smooth(frame, tuning)
    assert out.equals(frame)
    assert out is not frame
    assert info.name == "adaptive_rts"
    assert info.fixed_points == 0


def test_outlier_pulled_back_and_normals_untouched(tuning):
    rows = make_track(n=40)
    displace(rows, 20, east_m=60.0)
    frame, _ = detect(rows)
    out, info = adaptive_rts_smooth(frame, tuning)

    assert info.fixed_indices == [20]
    assert info.fixed_points == 1
    assert out.loc[20, "fixed_by"] == "adaptive_rts"
    assert lateral_offset_m(out.loc[20, "corrected_lat"], out.loc[20, "corrected_lon"], rows) < 20.0

    normal = _normal_mask(out)
    assert np.array_equal(out.loc[normal, "corrected_lat"].to_numpy(), frame.loc[normal, "lat"].to_numpy())
    assert np.array_equal(out.loc[normal, "corrected_lon"].to_numpy(), frame.loc[normal, "lon"].to_numpy())
    # Original coordinates never change
    assert np.array_equal(out["original_lat"].to_numpy(), frame["original_lat"].to_numpy())


def test_jump_repositioned_onto_path(tuning):
    rows = make_track(n=40)
    displace(rows, 20, north_m=5000.0)
    frame, _ = detect(rows)
    out, info = adaptive_rts_smooth(frame, tuning)

    assert 20 in info.fixed_indices
    expected = make_track(n=40)[20]
    moved = haversine(out.loc[20, "corrected_lat"], out.loc[20, "corrected_lon"], expected[0], expected[1])
    assert moved < 100.0
    assert info.parameters["mean_displacement_m"] > 4000.0


def test_two_point_jump_moves_toward_prediction(tuning):
    rows = [[22.5431, 113.9510, 1705318200.0], [40.0, -70.0, 1705318201.0]]
    frame, _ = detect(rows)
    out, info = adaptive_rts_smooth(frame, tuning)

    assert info.fixed_points >= 1
    assert 1 in info.fixed_indices
    before = haversine(22.5431, 113.9510, 40.0, -70.0)
    after = haversine(22.5431, 113.9510, out.loc[1, "corrected_lat"], out.loc[1, "corrected_lon"])
    assert after < before
    # The trusted first point keeps its coordinates
    assert out.loc[0, "corrected_lat"] == 22.5431


def test_drift_run_anchored_to_chord(tuning):
    rows = make_track(n=40)
    for k in range(15, 23):
        displace(rows, k, east_m=20.0 if k % 2 else -20.0)
    frame, _ = detect(rows)
    out, info = adaptive_rts_smooth(frame, tuning)

    drift = (out["status"] == "drift").to_numpy()
    assert drift.sum() >= 3
    assert info.parameters["anchored_drift_runs"] >= 1
    offsets = [lateral_offset_m(la, lo, rows) for la, lo in out.loc[drift, ["corrected_lat", "corrected_lon"]].to_numpy()]
    assert max(offsets) < 10.0


def test_singular_matrix_leaves_points_unmodified(monkeypatch, tuning):
    rows = make_track(n=40)
    displace(rows, 20, east_m=60.0)
    frame, _ = detect(rows)

    def _singular(*args, **kwargs):
        raise scipy.linalg.LinAlgError("singular matrix")

    monkeypatch.setattr(filtration.sla, "inv", _singular)
    out, info = adaptive_rts_smooth(frame, tuning)

    assert info.fixed_points == 0
    assert info.failed_indices == [20]
    assert out.loc[20, "corrected_lat"] == frame.loc[20, "lat"]
    assert out.loc[20, "fixed_by"] is None
    assert info.processed_points >= info.fixed_points + info.removed_points


def test_gating_threshold_parameters_reported(tuning):
    rows = make_track(n=30)
    displace(rows, 10, east_m=60.0)
    frame, _ = detect(rows)
    _, info = adaptive_rts_smooth(frame, tuning)
    assert info.parameters["projection"] == "aeqd"
    assert info.parameters["outlier_alpha"] == pytest.approx(0.01)
