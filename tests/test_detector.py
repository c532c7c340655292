"""Tests for the ordered anomaly classifiers."""

import threading

import numpy as np
import pytest

from pytrackdoctor.diagnostics.detector import CLASSIFIERS, detect_anomalies, severity_for
from pytrackdoctor.errors import DiagnosisCancelledError
from pytrackdoctor.models import PointStatus, Severity
from pytrackdoctor.options import ThresholdOptions, TuningOptions
from pytrackdoctor.preprocessing import get_sampling_rate
from pytrackdoctor.preprocessing.kinematics import derive_kinematics
from pytrackdoctor.preprocessing.validation import validate_points

from conftest import T0, detect, displace, make_track, status_of


def _flagged(frame, status):
    return frame.loc[frame["status"] == status.value, "index"].tolist()


def test_precedence_order():
    assert [c.status for c in CLASSIFIERS] == [
        PointStatus.MISSING,
        PointStatus.JUMP,
        PointStatus.SPEED_ANOMALY,
        PointStatus.ACCELERATION_ANOMALY,
        PointStatus.DENSITY_ANOMALY,
        PointStatus.DRIFT,
        PointStatus.OUTLIER,
    ]


def test_severity_bands():
    assert severity_for(np.array([0.5, 1.3, 2.5]), (2.0, 1.2)).tolist() == ["low", "medium", "high"]


def test_clean_track_is_all_normal(straight_rows):
    frame, result = detect(straight_rows)
    assert (frame["status"] == "normal").all()
    assert frame["severity"].isna().all()
    assert result.anomalies == []
    assert result.normal_points == len(straight_rows)
    assert result.anomaly_points == 0
    assert result.info.name == "anomaly_detector"


def test_detector_sets_original_and_corrected_columns(straight_rows):
    frame, _ = detect(straight_rows)
    assert (frame["original_lat"] == frame["lat"]).all()
    assert (frame["corrected_lon"] == frame["lon"]).all()
    assert frame["fixed_by"].isna().all()


def test_missing_gap_recorded_with_span():
    rows = make_track(n=60, gap_after=29, gap_seconds=400.0)
    frame, result = detect(rows)
    assert _flagged(frame, PointStatus.MISSING) == [30]
    assert status_of(frame, 30) == "missing"

    (anomaly,) = result.anomalies
    assert anomaly.type is PointStatus.MISSING
    assert anomaly.severity is Severity.HIGH
    assert anomaly.count == 1 == len(anomaly.indices)
    (gap,) = anomaly.gaps
    assert (gap.start_index, gap.end_index) == (29, 30)
    assert gap.duration_seconds == pytest.approx(400.0)
    assert gap.filled is False


def test_jump_flagged_and_excluded_from_later_checks():
    rows = make_track(n=40)
    displace(rows, 20, north_m=5000.0)
    frame, result = detect(rows)
    assert _flagged(frame, PointStatus.JUMP) == [20]
    assert frame.loc[20, "severity"] == "high"
    # The fix after the jump is measured against the last trusted point
    assert (frame.drop(index=20)["status"] == "normal").all()
    assert [a.type for a in result.anomalies] == [PointStatus.JUMP]


def test_two_point_continental_jump():
    rows = [[22.5431, 113.9510, 1705318200.0], [40.0, -70.0, 1705318201.0]]
    frame, result = detect(rows)
    assert frame["status"].tolist() == ["normal", "jump"]
    assert result.anomalies[0].severity is Severity.HIGH
    assert result.anomalies[0].indices == [1]


def test_zero_dt_with_movement_is_jump():
    rows = make_track(n=10)
    rows[5][2] = rows[4][2]
    frame, _ = detect(rows)
    assert status_of(frame, 5) == "jump"


def test_sustained_overspeed_is_low_severity():
    rows = make_track(n=20, speed_mps=125.0 / 3.0)  # 150 km/h
    frame, result = detect(rows)
    assert _flagged(frame, PointStatus.SPEED_ANOMALY) == list(range(1, 20))
    assert set(frame.loc[1:, "severity"]) == {"low"}
    assert result.anomalies[0].count == 19


def test_supplied_speed_then_acceleration():
    rows = make_track(n=30)
    rows[10] = rows[10] + [None, 60.0]  # 216 km/h reported by the device
    frame, _ = detect(rows)
    assert status_of(frame, 10) == "speed_anomaly"
    assert frame.loc[10, "severity"] == "medium"
    # Dropping from 60 m/s back to 8.3 m/s within 3 s
    assert status_of(frame, 11) == "acceleration_anomaly"


def test_duplicate_fix_is_density_anomaly():
    rows = make_track(n=40)
    rows.insert(15, list(rows[14]))
    frame, _ = detect(rows)
    assert _flagged(frame, PointStatus.DENSITY_ANOMALY) == [15]


def test_sampling_burst_is_density_anomaly():
    times = list(T0 + 3.0 * np.arange(30))
    times += [times[-1] + 1.0 * (k + 1) for k in range(12)]
    times += [times[-1] + 3.0 * (k + 1) for k in range(30)]
    speed = 25.0 / 3.0
    rows = [[22.5 + speed * (t - T0) / 111194.93, 113.9, t] for t in times]
    frame, _ = detect(rows)
    flagged = _flagged(frame, PointStatus.DENSITY_ANOMALY)
    assert flagged
    assert set(flagged) <= set(range(26, 47))


def test_sustained_zigzag_is_drift():
    rows = make_track(n=40)
    for k in range(15, 23):
        displace(rows, k, east_m=20.0 if k % 2 else -20.0)
    frame, result = detect(rows)
    drift = _flagged(frame, PointStatus.DRIFT)
    assert len(drift) >= 3
    assert set(drift) <= set(range(15, 24))
    # Drift precedes the outlier classifier
    assert PointStatus.DRIFT in [a.type for a in result.anomalies]


def test_single_spike_is_outlier():
    rows = make_track(n=40)
    displace(rows, 20, east_m=60.0)
    frame, result = detect(rows)
    assert _flagged(frame, PointStatus.OUTLIER) == [20]
    assert (frame.drop(index=20)["status"] == "normal").all()
    assert result.anomalies[0].severity is Severity.HIGH


def test_every_point_has_exactly_one_status(messy_rows):
    frame, result = detect(messy_rows)
    seen = []
    for anomaly in result.anomalies:
        assert anomaly.count == len(anomaly.indices)
        seen.extend(anomaly.indices)
    assert len(seen) == len(set(seen))
    assert result.normal_points + result.anomaly_points == len(messy_rows)
    assert sum(result.counts.values()) == len(messy_rows)


def test_thresholds_come_from_options():
    rows = make_track(n=20)  # 30 km/h
    frame, _ = detect(rows, thresholds=ThresholdOptions(max_speed=20.0))
    assert _flagged(frame, PointStatus.SPEED_ANOMALY) == list(range(1, 20))


def test_detector_honours_cancellation():
    frame, _ = derive_kinematics(validate_points(make_track(n=10)))
    event = threading.Event()
    event.set()
    with pytest.raises(DiagnosisCancelledError):
        detect_anomalies(frame, ThresholdOptions(), TuningOptions(), cancel=event)


def test_corrupted_first_fix_is_the_only_jump():
    rows = make_track(n=200, cadence=1.0, speed_mps=10.0)
    displace(rows, 0, north_m=100_000.0)
    frame, result = detect(rows)
    assert _flagged(frame, PointStatus.JUMP) == [0]
    assert frame.loc[0, "severity"] == "high"
    assert (frame.drop(index=0)["status"] == "normal").all()
    assert result.counts["jump"] == 1


def test_relocation_flags_only_the_first_fix_at_the_new_place():
    rows = make_track(n=60)
    for k in range(30, 60):
        displace(rows, k, north_m=5000.0)
    frame, _ = detect(rows)
    assert _flagged(frame, PointStatus.JUMP) == [30]
    assert (frame.loc[40:, "status"] == "normal").all()


def test_double_spike_keeps_trusting_the_track():
    rows = make_track(n=40)
    displace(rows, 20, north_m=5000.0)
    displace(rows, 21, north_m=5000.0)
    frame, _ = detect(rows)
    assert _flagged(frame, PointStatus.JUMP) == [20, 21]
    assert status_of(frame, 22) == "normal"


def test_adaptive_thresholds_tighten_to_the_track():
    rows = make_track(n=60)  # 30 km/h
    displace(rows, 20, east_m=60.0)

    fixed, fixed_result = detect(rows)
    assert status_of(fixed, 20) == "outlier"
    assert fixed_result.info.parameters["effective_max_speed_kmh"] == pytest.approx(120.0)

    frame, result = detect(rows, tuning=TuningOptions(adaptive_thresholds=True))
    params = result.info.parameters
    assert params["adaptive_thresholds"] is True
    # p95 of 30 km/h times 1.5; p99 of the 65 m spike step times 10
    assert params["effective_max_speed_kmh"] == pytest.approx(45.0, rel=1e-3)
    assert params["effective_max_jump_m"] == pytest.approx(650.0, rel=1e-2)
    assert _flagged(frame, PointStatus.SPEED_ANOMALY) == [20, 21]
    assert "exceed 45 km/h" in result.anomalies[0].description


def test_adaptive_thresholds_never_exceed_the_options():
    rows = make_track(n=20, speed_mps=125.0 / 3.0)  # 150 km/h
    frame, result = detect(rows, tuning=TuningOptions(adaptive_thresholds=True))
    params = result.info.parameters
    assert params["effective_max_speed_kmh"] == pytest.approx(120.0)
    assert params["effective_max_jump_m"] == pytest.approx(500.0)
    assert _flagged(frame, PointStatus.SPEED_ANOMALY) == list(range(1, 20))


def test_adaptive_thresholds_fall_back_without_motion():
    rows = [[22.5, 113.9, T0 + 3.0 * k] for k in range(10)]
    _, result = detect(rows, tuning=TuningOptions(adaptive_thresholds=True))
    assert result.info.parameters["effective_max_speed_kmh"] == pytest.approx(120.0)
    assert result.info.parameters["effective_max_jump_m"] == 500.0


def test_gap_threshold_follows_the_sampling_rate():
    rows = make_track(n=60, cadence=2.0, gap_after=29, gap_seconds=400.0)
    rows.insert(10, list(rows[9]))
    frame, result = detect(rows)
    params = result.info.parameters
    assert params["median_interval_s"] == get_sampling_rate(frame) == 2.0
    assert params["gap_threshold_s"] == pytest.approx(10.0)
    assert _flagged(frame, PointStatus.MISSING) == [31]
