"""
Composite trajectory health score.

Four dimensions, each scored 0-100 and combined with fixed weights:

=============  ======  ==========================================================
dimension      weight  penalises
=============  ======  ==========================================================
completeness   0.30    unfilled gap time, filled gap time (x0.25), removed points
accuracy       0.30    drift/outlier/jump share, mean correction displacement
consistency    0.25    speed/acceleration violations left in the corrected track
smoothness     0.15    heading reversals sharper than 120 degrees
=============  ======  ==========================================================

Ratings: excellent >= 85, good >= 70, fair >= 50, otherwise poor.
"""

from typing import Dict, Iterable, Mapping

import numpy as np
import pandas as pd

from pytrackdoctor.models import GapSpan, HealthScore, PointStatus, Rating, ScoreDetail
from pytrackdoctor.options import ThresholdOptions, TuningOptions
from pytrackdoctor.preprocessing.kinematics import step_geometry
from pytrackdoctor.utilities.geodesy import initial_bearing

WEIGHTS: Dict[str, float] = {
    "completeness": 0.30,
    "accuracy": 0.30,
    "consistency": 0.25,
    "smoothness": 0.15,
}

INSUFFICIENT = "insufficient data for robust analysis"
NEUTRAL_SCORE = 50.0
REVERSAL_DEG = 120.0
MIN_HEADING_STEP_M = 1.0
DISPLACEMENT_UNIT_M = 10.0
MAX_DISPLACEMENT_PENALTY = 20.0


def _clip(score: float) -> float:
    return float(np.clip(score, 0.0, 100.0))


def completeness_score(gaps: Iterable[GapSpan], duration_seconds: float, removed: int, point_count: int):
    unfilled = sum(g.duration_seconds for g in gaps if not g.filled)
    filled = sum(g.duration_seconds for g in gaps if g.filled)
    if duration_seconds > 0:
        unfilled_ratio = unfilled / duration_seconds
        filled_ratio = filled / duration_seconds
    else:
        unfilled_ratio = filled_ratio = 0.0
    removed_ratio = removed / point_count if point_count else 0.0
    score = _clip(100.0 * (1.0 - unfilled_ratio - 0.25 * filled_ratio - removed_ratio))
    return score, f"{unfilled:.0f} s unfilled and {filled:.0f} s interpolated gap time; {removed} point(s) removed"


def accuracy_score(status_counts: Mapping[str, int], point_count: int, mean_displacement_m: float):
    flagged = sum(status_counts.get(s.value, 0) for s in (PointStatus.DRIFT, PointStatus.OUTLIER, PointStatus.JUMP))
    share = flagged / point_count if point_count else 0.0
    penalty = min(mean_displacement_m / DISPLACEMENT_UNIT_M, MAX_DISPLACEMENT_PENALTY)
    score = _clip(100.0 * (1.0 - share) - penalty)
    return score, f"{flagged} drift/outlier/jump point(s); mean correction {mean_displacement_m:.1f} m"


def consistency_score(corrected: pd.DataFrame, thresholds: ThresholdOptions):
    """Share of corrected steps still breaking the speed or acceleration limits."""
    lats = corrected["corrected_lat"].to_numpy(dtype=float)
    lons = corrected["corrected_lon"].to_numpy(dtype=float)
    times = corrected["time"].to_numpy(dtype=float)
    segments = len(lats) - 1
    if segments < 1:
        return 100.0, "no segments"

    _, dt, speed = step_geometry(lats, lons, times)
    speed, dt = speed[1:], dt[1:]
    accel = np.full(segments, np.nan)
    with np.errstate(invalid="ignore", divide="ignore"):
        accel[1:] = np.where(dt[1:] > 0, (speed[1:] - speed[:-1]) / dt[1:], np.nan)
        speed_bad = ~np.isfinite(speed) | (speed > thresholds.max_speed_mps)
        accel_bad = np.isfinite(accel) & (np.abs(accel) > thresholds.max_acceleration)
    violations = int(np.count_nonzero(speed_bad | accel_bad))
    score = _clip(100.0 * (1.0 - violations / segments))
    return score, f"{violations} of {segments} corrected segment(s) violate speed/acceleration limits"


def smoothness_score(corrected: pd.DataFrame):
    """Penalise heading reversals (> 120 degrees) between consecutive moving steps."""
    lats = corrected["corrected_lat"].to_numpy(dtype=float)
    lons = corrected["corrected_lon"].to_numpy(dtype=float)
    times = corrected["time"].to_numpy(dtype=float)
    dist, _, _ = step_geometry(lats, lons, times)
    moving = np.flatnonzero(dist[1:] > MIN_HEADING_STEP_M)
    if moving.size < 2:
        return 100.0, "too few moving segments to assess heading changes"
    headings = initial_bearing(lats[moving], lons[moving], lats[moving + 1], lons[moving + 1])
    turn = np.abs((np.diff(headings) + 180.0) % 360.0 - 180.0)
    reversals = int(np.count_nonzero(turn > REVERSAL_DEG))
    ratio = reversals / turn.size
    score = _clip(100.0 * (1.0 - 3.0 * ratio))
    return score, f"{reversals} heading reversal(s) over {turn.size} turn(s)"


def score_health(
    point_count: int,
    duration_seconds: float,
    gaps: Iterable[GapSpan],
    status_counts: Mapping[str, int],
    outlier_removed: int,
    mean_displacement_m: float,
    corrected: pd.DataFrame,
    thresholds: ThresholdOptions,
    tuning: TuningOptions,
) -> HealthScore:
    """
    Combine the four dimensions into a HealthScore.

    Parameters
    ----------
    point_count : int
        Number of original points.
    duration_seconds : float
        Duration of the original trajectory.
    gaps : iterable of GapSpan
        Detector gaps with their ``filled`` flag set by the interpolator.
    status_counts : mapping
        Detector status value -> number of points.
    outlier_removed : int
        Points deleted by the outlier remover.
    mean_displacement_m : float
        Mean distance the smoother moved its fixed points.
    corrected : pd.DataFrame
        Final corrected frame (``corrected_lat``, ``corrected_lon``, ``time``).
    thresholds, tuning
        Speed/acceleration limits and ``min_robust_points``.

    Returns
    -------
    HealthScore
        ``total`` is the rounded weighted sum, clipped to [0, 100].
    """
    gaps = list(gaps)
    scores = {
        "completeness": completeness_score(gaps, duration_seconds, outlier_removed, point_count),
        "accuracy": accuracy_score(status_counts, point_count, mean_displacement_m),
    }
    if point_count < tuning.min_robust_points:
        scores = {name: (score, INSUFFICIENT) for name, (score, _) in scores.items()}
        scores["consistency"] = (NEUTRAL_SCORE, INSUFFICIENT)
        scores["smoothness"] = (NEUTRAL_SCORE, INSUFFICIENT)
    else:
        scores["consistency"] = consistency_score(corrected, thresholds)
        scores["smoothness"] = smoothness_score(corrected)

    breakdown = {
        name: ScoreDetail(score=round(scores[name][0], 2), weight=weight, description=scores[name][1])
        for name, weight in WEIGHTS.items()
    }
    weighted = sum(scores[name][0] * weight for name, weight in WEIGHTS.items())
    total = int(np.clip(round(weighted), 0, 100))
    return HealthScore(total=total, rating=Rating.from_total(total), breakdown=breakdown)
