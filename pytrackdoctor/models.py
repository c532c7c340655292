"""
Data model of a diagnosis run.

Everything here is created fresh per request. Points are frozen dataclasses:
``original_lat``/``original_lon`` are assigned once when a point enters the
pipeline and can never be overwritten afterwards. ``to_dict`` methods emit the
camelCase wire representation (``reportId``, ``processedPoints``, ...).
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, fields, is_dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np

from pytrackdoctor.utilities.frames import points_to_frame


class PointStatus(str, Enum):
    NORMAL = "normal"
    DRIFT = "drift"
    JUMP = "jump"
    SPEED_ANOMALY = "speed_anomaly"
    ACCELERATION_ANOMALY = "acceleration_anomaly"
    MISSING = "missing"
    DENSITY_ANOMALY = "density_anomaly"
    OUTLIER = "outlier"
    INTERPOLATED = "interpolated"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2}


class Rating(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"

    @classmethod
    def from_total(cls, total: float) -> "Rating":
        """Lower edges are inclusive: 85 is excellent, 84 is good."""
        if total >= 85:
            return cls.EXCELLENT
        if total >= 70:
            return cls.GOOD
        if total >= 50:
            return cls.FAIR
        return cls.POOR


# ========== Wire Conversion ==========

def _camel(name: str) -> str:
    head, *tail = name.split("_")
    return head + "".join(part.capitalize() for part in tail)


def _wire(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, np.generic):
        return _wire(value.item())
    if is_dataclass(value) and not isinstance(value, type):
        return {_camel(f.name): _wire(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, dict):
        return {str(k): _wire(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_wire(v) for v in value]
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


class _WireMixin:
    def to_dict(self) -> Dict[str, Any]:
        return _wire(self)


# ========== Points ==========

@dataclass(frozen=True)
class GeoPoint(_WireMixin):
    """One GPS fix. Optional kinematic fields are derived when absent."""

    index: int
    lat: float
    lon: float
    timestamp: float
    elevation: Optional[float] = None
    speed: Optional[float] = None
    bearing: Optional[float] = None
    acceleration: Optional[float] = None

    def as_row(self) -> List[Optional[float]]:
        """Canonical ``[lat, lon, time, elevation, speed, bearing]`` row."""
        return [self.lat, self.lon, self.timestamp, self.elevation, self.speed, self.bearing]


@dataclass(frozen=True)
class AnnotatedPoint(GeoPoint):
    status: PointStatus = PointStatus.NORMAL
    severity: Optional[Severity] = None
    original_lat: Optional[float] = None
    original_lon: Optional[float] = None
    corrected_lat: Optional[float] = None
    corrected_lon: Optional[float] = None
    fixed_by: Optional[str] = None

    def corrected_row(self) -> List[Optional[float]]:
        """Canonical row built from the corrected position."""
        return [self.corrected_lat, self.corrected_lon, self.timestamp, self.elevation]


# ========== Report Building Blocks ==========

@dataclass(frozen=True)
class GapSpan(_WireMixin):
    start_index: int
    end_index: int
    start_time: float
    end_time: float
    duration_seconds: float
    distance_meters: float
    filled: bool = False
    reason: Optional[str] = None


@dataclass
class Anomaly(_WireMixin):
    type: PointStatus
    severity: Severity
    count: int
    indices: List[int]
    gaps: List[GapSpan] = field(default_factory=list)
    description: str = ""


@dataclass
class AlgorithmInfo(_WireMixin):
    """Audit record emitted by every stage that touches the point sequence."""

    name: str
    description: str
    processed_points: int
    fixed_points: int = 0
    removed_points: int = 0
    fixed_indices: List[int] = field(default_factory=list)
    removed_indices: List[int] = field(default_factory=list)
    added_points: int = 0
    failed_indices: List[int] = field(default_factory=list)
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ScoreDetail(_WireMixin):
    score: float
    weight: float
    description: str


@dataclass(frozen=True)
class HealthScore(_WireMixin):
    total: int
    rating: Rating
    breakdown: Dict[str, ScoreDetail]


@dataclass(frozen=True)
class Bounds(_WireMixin):
    north: float
    south: float
    east: float
    west: float

    @property
    def crosses_antimeridian(self) -> bool:
        return self.west > self.east


@dataclass(frozen=True)
class ElevationStats(_WireMixin):
    min: float
    max: float
    avg: float
    gain: float
    loss: float


@dataclass(frozen=True)
class TrajectoryStats(_WireMixin):
    point_count: int
    distance: float
    duration_seconds: float
    bounds: Optional[Bounds]
    avg_speed: float
    max_speed: float
    elevation: Optional[ElevationStats] = None


@dataclass
class DiagnosticsInfo(_WireMixin):
    """
    Pipeline-wide counts, anomalies, stage audits and the health score.

    ``total_processed`` counts original points changed by the anomaly stages
    (``fixed_points`` + ``outlier_removed_points``) plus ``simplified_points``.
    Interpolated points are added, not processed, and stay out of it.
    """

    normal_points: int
    anomaly_points: int
    fixed_points: int
    removed_points: int
    interpolated_points: int
    total_processed: int
    anomalies: List[Anomaly]
    algorithms: List[AlgorithmInfo]
    health_score: HealthScore
    outlier_removed_points: int = 0
    simplified_points: int = 0


@dataclass
class DiagnosisReport(_WireMixin):
    report_id: str
    original: TrajectoryStats
    corrected: TrajectoryStats
    diagnostics: DiagnosticsInfo
    points: Optional[List[AnnotatedPoint]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = _wire(self)
        if self.points is None:
            data.pop("points")
        return data

    def points_frame(self, as_polars: bool = False):
        """Annotated points as a pandas (default) or polars DataFrame."""
        return points_to_frame(self.points or [], as_polars=as_polars)


__all__ = [
    "PointStatus",
    "Severity",
    "Rating",
    "GeoPoint",
    "AnnotatedPoint",
    "GapSpan",
    "Anomaly",
    "AlgorithmInfo",
    "ScoreDetail",
    "HealthScore",
    "Bounds",
    "ElevationStats",
    "TrajectoryStats",
    "DiagnosticsInfo",
    "DiagnosisReport",
]
