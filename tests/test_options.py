"""Tests for option parsing and validation."""

import dataclasses

import pytest

from pytrackdoctor.errors import InvalidOptionsError
from pytrackdoctor.options import (
    AlgorithmOptions,
    DiagnoseOptions,
    OutputOptions,
    ThresholdOptions,
    TuningOptions,
)


def test_defaults():
    opts = DiagnoseOptions()
    assert opts.algorithms == AlgorithmOptions(True, True, True, True)
    assert opts.thresholds.max_speed == 120.0
    assert opts.thresholds.max_acceleration == 10.0
    assert opts.thresholds.max_jump == 500.0
    assert opts.output.include_points is True
    assert opts.output.simplify_epsilon == 1.0
    assert opts.thresholds.max_speed_mps == pytest.approx(120.0 / 3.6)


def test_from_dict_accepts_camel_and_snake_case():
    opts = DiagnoseOptions.from_dict({
        "algorithms": {"adaptiveRTS": False, "outlier_removal": False},
        "thresholds": {"maxSpeed": 80, "maxJump": 250.0},
        "output": {"includePoints": False, "simplifyEpsilon": 0},
    })
    assert opts.algorithms.adaptive_rts is False
    assert opts.algorithms.outlier_removal is False
    assert opts.algorithms.spline_interpolation is True
    assert opts.thresholds.max_speed == 80
    assert opts.thresholds.max_jump == 250.0
    assert opts.output.include_points is False
    assert opts.output.simplify_epsilon == 0


def test_coerce():
    opts = DiagnoseOptions(thresholds=ThresholdOptions(max_speed=50.0))
    assert DiagnoseOptions.coerce(opts) is opts
    assert DiagnoseOptions.coerce(None) == DiagnoseOptions()
    assert DiagnoseOptions.coerce({"thresholds": {"maxSpeed": 50.0}}) == opts


@pytest.mark.parametrize("data", [
    {"thresholds": {"maxSped": 80}},
    {"algorithm": {"adaptiveRTS": False}},
    {"output": "everything"},
])
def test_unknown_or_malformed_options_rejected(data):
    with pytest.raises(InvalidOptionsError):
        DiagnoseOptions.from_dict(data)


@pytest.mark.parametrize("kwargs", [
    {"max_speed": -1.0},
    {"max_acceleration": 0.0},
    {"max_jump": float("nan")},
    {"drift_threshold": "far"},
    {"max_speed": True},
])
def test_bad_thresholds_rejected(kwargs):
    with pytest.raises(InvalidOptionsError):
        ThresholdOptions(**kwargs)


def test_invalid_options_error_is_a_value_error():
    with pytest.raises(ValueError):
        OutputOptions(simplify_epsilon=-0.5)


@pytest.mark.parametrize("kwargs", [
    {"outlier_alpha": 0.0},
    {"outlier_alpha": 1.5},
    {"drift_anchor_weight": 1.2},
    {"max_points_per_gap": 0},
])
def test_bad_tuning_rejected(kwargs):
    with pytest.raises(InvalidOptionsError):
        TuningOptions(**kwargs)


@pytest.mark.parametrize("name", [
    "density_window",
    "density_baseline_window",
    "density_min_points",
    "drift_window",
    "drift_min_run",
    "outlier_half_window",
    "outlier_max_rounds",
    "max_points_per_gap",
    "min_robust_points",
])
def test_window_and_count_tunings_must_be_integers(name):
    with pytest.raises(InvalidOptionsError, match="integer"):
        TuningOptions(**{name: 5.5})


def test_fractional_window_from_wire_rejected():
    with pytest.raises(InvalidOptionsError):
        DiagnoseOptions.from_dict({"tuning": {"densityWindow": 5.5}})
    opts = DiagnoseOptions.from_dict({"tuning": {"densityWindow": 7, "adaptiveThresholds": True}})
    assert opts.tuning.density_window == 7
    assert opts.tuning.adaptive_thresholds is True


def test_adaptive_thresholds_off_by_default():
    assert TuningOptions().adaptive_thresholds is False
    with pytest.raises(InvalidOptionsError):
        TuningOptions(adaptive_thresholds="yes")


def test_options_are_frozen():
    opts = DiagnoseOptions()
    with pytest.raises(dataclasses.FrozenInstanceError):
        opts.thresholds.max_speed = 10.0


def test_to_dict_uses_wire_names():
    wire = DiagnoseOptions().to_dict()
    assert set(wire) == {"algorithms", "thresholds", "output"}
    assert set(wire["algorithms"]) == {"adaptiveRTS", "splineInterpolation", "simplification", "outlierRemoval"}
    assert set(wire["thresholds"]) == {"maxSpeed", "maxAcceleration", "maxJump", "driftThreshold"}
    assert wire["output"] == {"includePoints": True, "simplifyEpsilon": 1.0}
    assert DiagnoseOptions.from_dict(wire) == DiagnoseOptions()


def test_detection_only_and_with_algorithms():
    opts = DiagnoseOptions().with_algorithms(AlgorithmOptions.detection_only())
    assert not any(dataclasses.astuple(opts.algorithms))
    assert opts.thresholds == ThresholdOptions()
