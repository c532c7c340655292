"""
Per-request configuration for the diagnosis pipeline.

Options are immutable dataclasses built fresh for every call and threaded
explicitly through each stage. ``DiagnoseOptions.from_dict`` accepts the
camelCase wire names (``adaptiveRTS``, ``maxSpeed``, ``simplifyEpsilon`` ...)
as well as the snake_case attribute names.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Mapping, Optional, Union

from pytrackdoctor.errors import InvalidOptionsError

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])([A-Z])")


def _snake(key: str) -> str:
    return _CAMEL_BOUNDARY.sub(r"_\1", key).lower()


def _require_positive(owner: object, *names: str) -> None:
    for name in names:
        value = getattr(owner, name)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidOptionsError(f"{type(owner).__name__}.{name} must be a number, got {value!r}")
        if not math.isfinite(value) or value <= 0:
            raise InvalidOptionsError(f"{type(owner).__name__}.{name} must be positive and finite, got {value!r}")


def _require_int(owner: object, *names: str) -> None:
    for name in names:
        value = getattr(owner, name)
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidOptionsError(f"{type(owner).__name__}.{name} must be an integer, got {value!r}")


def _section_from_mapping(cls, data: Optional[Mapping[str, Any]]):
    if data is None:
        return cls()
    if isinstance(data, cls):
        return data
    if not isinstance(data, Mapping):
        raise InvalidOptionsError(f"{cls.__name__} expects a mapping, got {type(data).__name__}")
    known = {f.name for f in fields(cls)}
    kwargs = {}
    for key, value in data.items():
        name = _snake(str(key))
        if name not in known:
            raise InvalidOptionsError(f"Unknown option '{key}' for {cls.__name__}")
        kwargs[name] = value
    return cls(**kwargs)


@dataclass(frozen=True)
class AlgorithmOptions:
    """Toggles for the correction stages. Detection always runs."""

    adaptive_rts: bool = True
    spline_interpolation: bool = True
    simplification: bool = True
    outlier_removal: bool = True

    @classmethod
    def detection_only(cls) -> "AlgorithmOptions":
        return cls(adaptive_rts=False, spline_interpolation=False, simplification=False, outlier_removal=False)


@dataclass(frozen=True)
class ThresholdOptions:
    """Classifier thresholds: km/h, m/s^2, meters and degrees respectively."""

    max_speed: float = 120.0
    max_acceleration: float = 10.0
    max_jump: float = 500.0
    drift_threshold: float = 0.0001

    def __post_init__(self):
        _require_positive(self, "max_speed", "max_acceleration", "max_jump", "drift_threshold")

    @property
    def max_speed_mps(self) -> float:
        return self.max_speed / 3.6


@dataclass(frozen=True)
class OutputOptions:
    include_points: bool = True
    simplify_epsilon: float = 1.0

    def __post_init__(self):
        eps = self.simplify_epsilon
        if isinstance(eps, bool) or not isinstance(eps, (int, float)) or not math.isfinite(eps) or eps < 0:
            raise InvalidOptionsError(f"OutputOptions.simplify_epsilon must be >= 0 and finite, got {eps!r}")


@dataclass(frozen=True)
class TuningOptions:
    """
    Internal constants of the detector and the correction stages.

    The defaults suit road vehicles logged every 1 to 10 s. They are exposed so that
    callers with unusual data (very sparse logging, sub-second cadence) can
    adjust them per request.
    """

    # Tighten max_speed / max_jump to the track's own p95 speed and p99 step
    adaptive_thresholds: bool = False
    # Missing-gap detection
    gap_multiplier: float = 5.0
    min_gap_seconds: float = 10.0
    # Density
    density_min_points: int = 20
    density_window: int = 5
    density_baseline_window: int = 51
    density_k: float = 2.0
    density_tolerance: float = 0.5
    # Drift
    drift_window: int = 5
    drift_min_run: int = 3
    drift_relative_tolerance: float = 0.5
    # Statistical outliers (detector and remover)
    outlier_half_window: int = 3
    outlier_k: float = 3.5
    outlier_min_deviation_m: float = 10.0
    outlier_max_rounds: int = 20
    # Adaptive RTS
    measurement_noise_std_m: float = 5.0
    process_noise_std: float = 1.0
    outlier_alpha: float = 0.01
    drift_anchor_weight: float = 0.7
    # Gap filling
    max_fill_seconds: float = 600.0
    max_points_per_gap: int = 1000
    spline_max_deviation_m: float = 100.0
    # Health score
    min_robust_points: int = 5

    def __post_init__(self):
        _require_positive(
            self,
            "gap_multiplier", "min_gap_seconds", "density_min_points", "density_window",
            "density_baseline_window", "density_k", "density_tolerance", "drift_window",
            "drift_min_run", "drift_relative_tolerance", "outlier_half_window", "outlier_k", "outlier_min_deviation_m",
            "outlier_max_rounds", "measurement_noise_std_m", "process_noise_std",
            "max_fill_seconds", "max_points_per_gap", "spline_max_deviation_m", "min_robust_points",
        )
        _require_int(
            self,
            "density_min_points", "density_window", "density_baseline_window", "drift_window",
            "drift_min_run", "outlier_half_window", "outlier_max_rounds", "max_points_per_gap",
            "min_robust_points",
        )
        if not isinstance(self.adaptive_thresholds, bool):
            raise InvalidOptionsError(
                f"TuningOptions.adaptive_thresholds must be a boolean, got {self.adaptive_thresholds!r}"
            )
        if not 0.0 < self.outlier_alpha < 1.0:
            raise InvalidOptionsError(f"TuningOptions.outlier_alpha must be in (0, 1), got {self.outlier_alpha!r}")
        if not 0.0 <= self.drift_anchor_weight <= 1.0:
            raise InvalidOptionsError(
                f"TuningOptions.drift_anchor_weight must be in [0, 1], got {self.drift_anchor_weight!r}"
            )


@dataclass(frozen=True)
class DiagnoseOptions:
    algorithms: AlgorithmOptions = field(default_factory=AlgorithmOptions)
    thresholds: ThresholdOptions = field(default_factory=ThresholdOptions)
    output: OutputOptions = field(default_factory=OutputOptions)
    tuning: TuningOptions = field(default_factory=TuningOptions)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "DiagnoseOptions":
        """
        Build options from a nested mapping, filling omitted values with defaults.

        Examples
        --------
        >>> opts = DiagnoseOptions.from_dict({
        ...     "algorithms": {"adaptiveRTS": False},
        ...     "thresholds": {"maxSpeed": 80},
        ... })
        >>> opts.thresholds.max_speed
        80
        """
        data = dict(data or {})
        sections = {f.name for f in fields(cls)}
        unknown = set(data) - sections
        if unknown:
            raise InvalidOptionsError(f"Unknown option section(s): {sorted(unknown)}")
        return cls(
            algorithms=_section_from_mapping(AlgorithmOptions, data.get("algorithms")),
            thresholds=_section_from_mapping(ThresholdOptions, data.get("thresholds")),
            output=_section_from_mapping(OutputOptions, data.get("output")),
            tuning=_section_from_mapping(TuningOptions, data.get("tuning")),
        )

    @classmethod
    def coerce(cls, value: Union["DiagnoseOptions", Mapping[str, Any], None]) -> "DiagnoseOptions":
        if value is None:
            return cls()
        if isinstance(value, cls):
            return value
        return cls.from_dict(value)

    def with_algorithms(self, algorithms: AlgorithmOptions) -> "DiagnoseOptions":
        return replace(self, algorithms=algorithms)

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {
            "algorithms": {
                "adaptiveRTS": self.algorithms.adaptive_rts,
                "splineInterpolation": self.algorithms.spline_interpolation,
                "simplification": self.algorithms.simplification,
                "outlierRemoval": self.algorithms.outlier_removal,
            },
            "thresholds": {
                "maxSpeed": self.thresholds.max_speed,
                "maxAcceleration": self.thresholds.max_acceleration,
                "maxJump": self.thresholds.max_jump,
                "driftThreshold": self.thresholds.drift_threshold,
            },
            "output": {
                "includePoints": self.output.include_points,
                "simplifyEpsilon": self.output.simplify_epsilon,
            },
        }


__all__ = [
    "AlgorithmOptions",
    "ThresholdOptions",
    "OutputOptions",
    "TuningOptions",
    "DiagnoseOptions",
]
