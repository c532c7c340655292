"""
Anomaly detection for GPS trajectories.

Each classifier looks at the whole trajectory through a shared
:class:`DetectionContext` and returns a boolean mask plus a magnitude ratio
(how far past its threshold each point is). Classifiers run in the fixed
order of ``CLASSIFIERS``; the first one to flag a point decides its status,
so every point carries exactly one status.

Precedence
----------
1. missing   : the interval before the point exceeds the gap threshold
2. jump      : teleport from the last trusted point, or undefined speed
3. speed     : speed above ``max_speed`` (or the adaptive limit)
4. accel     : |acceleration| above ``max_acceleration``
5. density   : sampling rate far from the local baseline, or exact duplicate
6. drift     : sustained mismatch between coordinate delta and speed
7. outlier   : robust (MAD) deviation from a neighbourhood fit

Jump points are excluded from the view used by classifiers 3-7: speeds,
accelerations and neighbourhood fits are measured against the last
non-jump point, so the fix after a teleport is not flagged a second time.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

import numpy as np
import pandas as pd

from pytrackdoctor.models import AlgorithmInfo, Anomaly, GapSpan, PointStatus, Severity
from pytrackdoctor.options import ThresholdOptions, TuningOptions
from pytrackdoctor.preprocessing.kinematics import step_geometry
from pytrackdoctor.preprocessing.sampling_rate import get_sampling_rate
from pytrackdoctor.utilities.cancel import CHECK_EVERY, CancelToken, raise_if_cancelled
from pytrackdoctor.utilities.geodesy import METERS_PER_DEGREE, LocalProjection, haversine
from pytrackdoctor.utilities.robust import MAD_TO_SIGMA, neighbour_residuals, robust_z, runs_of

_LOG = logging.getLogger(__name__)

# Same timestamp and closer than this: a duplicated fix
DUPLICATE_DISTANCE_M = 0.01

# Adaptive thresholds: percentile multipliers and the sample caps
ADAPTIVE_SPEED_FACTOR = 1.5
ADAPTIVE_JUMP_FACTOR = 10.0
ADAPTIVE_SPEED_CAP_MPS = 300.0 / 3.6
ADAPTIVE_STEP_CAP_M = 10_000.0


@dataclass
class DetectionContext:
    """Arrays and thresholds shared by all classifiers of one detection run."""

    lats: np.ndarray
    lons: np.ndarray
    times: np.ndarray
    speeds: np.ndarray
    speed_supplied: np.ndarray
    thresholds: ThresholdOptions
    tuning: TuningOptions
    max_speed_mps: float
    max_jump: float
    median_interval: float
    gap_threshold: float
    gap_mask: np.ndarray
    gap_ratio: np.ndarray
    jump_mask: np.ndarray
    jump_ratio: np.ndarray
    ref_speed: np.ndarray
    ref_accel: np.ndarray
    view: np.ndarray

    @property
    def n(self) -> int:
        return len(self.lats)


@dataclass
class DetectionResult:
    anomalies: List[Anomaly]
    gaps: List[GapSpan]
    info: AlgorithmInfo
    normal_points: int
    anomaly_points: int
    counts: Dict[str, int] = field(default_factory=dict)


# ========== Context Construction ==========

def _percentile_rank(values: np.ndarray, q: float) -> float:
    """Value at rank ``int(len * q)`` of the sorted sample (clipped to the last)."""
    ordered = np.sort(values)
    return float(ordered[min(int(len(ordered) * q), len(ordered) - 1)])


def effective_thresholds(
    speeds: np.ndarray,
    dist: np.ndarray,
    gap_mask: np.ndarray,
    thresholds: ThresholdOptions,
    tuning: TuningOptions,
) -> Tuple[float, float]:
    """
    Speed (m/s) and jump distance (m) limits used by this detection run.

    With ``tuning.adaptive_thresholds`` the limits tighten to the track's own
    motion: ``p95(speed) * 1.5`` and ``p99(step) * 10``, never above the
    option values. Implausible samples (speeds of 300 km/h or more, steps of
    10 km or more, zero values) are left out of the percentiles; with no
    usable sample the option value applies.
    """
    vmax = thresholds.max_speed_mps
    max_jump = thresholds.max_jump
    if not tuning.adaptive_thresholds:
        return vmax, max_jump

    v = speeds[np.isfinite(speeds)]
    v = v[(v > 0) & (v < ADAPTIVE_SPEED_CAP_MPS)]
    if v.size:
        vmax = min(_percentile_rank(v, 0.95) * ADAPTIVE_SPEED_FACTOR, vmax)

    steps = dist[1:][~gap_mask[1:]]
    steps = steps[(steps > 0) & (steps < ADAPTIVE_STEP_CAP_M)]
    if steps.size:
        max_jump = min(_percentile_rank(steps, 0.99) * ADAPTIVE_JUMP_FACTOR, max_jump)
    return vmax, max_jump


def _consistent(d: float, span: float, max_jump: float, vmax: float) -> bool:
    if span <= 0:
        return d <= 0
    return d <= max_jump or d / span <= vmax


def _scan_jumps(
    lats: np.ndarray,
    lons: np.ndarray,
    times: np.ndarray,
    dist: np.ndarray,
    dt: np.ndarray,
    speeds: np.ndarray,
    supplied: np.ndarray,
    gap_mask: np.ndarray,
    max_jump: float,
    vmax: float,
    cancel: Optional[CancelToken],
):
    """
    Walk the trajectory keeping track of the last trusted (non-jump) point.

    Returns the jump mask and ratio plus reference speed / acceleration
    measured against the last trusted point. The point after a gap restarts
    the chain with an unknown speed, so no acceleration is computed across
    a gap.

    The chain re-anchors in two places:

    - A first fix that disagrees with the second, while the second and third
      agree, is the jump; the chain starts at the second fix.
    - After a jump, a fix that agrees with both the jump point and its own
      successor marks a relocation: it becomes the new trusted point, so
      only the first fix at the new location is flagged.
    """
    n = len(lats)

    jump_mask = np.zeros(n, dtype=bool)
    jump_ratio = np.zeros(n, dtype=float)
    ref_speed = np.full(n, np.nan)
    ref_accel = np.full(n, np.nan)
    if supplied[0]:
        ref_speed[0] = speeds[0]

    def _follows(i):
        return not gap_mask[i] and _consistent(dist[i], dt[i], max_jump, vmax)

    last = 0
    begin = 1
    if n >= 3 and not gap_mask[1] and not _follows(1) and _follows(2):
        jump_mask[0] = True
        jump_ratio[0] = dist[1] / max_jump
        ref_speed[0] = np.nan
        ref_speed[1] = speeds[1] if supplied[1] else np.nan
        last = 1
        begin = 2

    for i in range(begin, n):
        if i % CHECK_EVERY == 0:
            raise_if_cancelled(cancel, "anomaly detection")

        if last == i - 1:
            d = dist[i]
            span = dt[i]
        else:
            d = float(haversine(lats[last], lons[last], lats[i], lons[i]))
            span = times[i] - times[last]

        if gap_mask[i]:
            ref_speed[i] = speeds[i] if supplied[i] else np.nan
            last = i
            continue

        if not _consistent(d, span, max_jump, vmax):
            relocated = jump_mask[i - 1] and _follows(i) and i + 1 < n and _follows(i + 1)
            if not relocated:
                jump_mask[i] = True
                jump_ratio[i] = d / max_jump
                continue
            last = i - 1
            d = dist[i]
            span = dt[i]

        if supplied[i]:
            v = speeds[i]
        elif span > 0:
            v = d / span
        else:
            v = 0.0
        ref_speed[i] = v
        if span > 0 and np.isfinite(ref_speed[last]):
            ref_accel[i] = (v - ref_speed[last]) / span
        last = i

    return jump_mask, jump_ratio, ref_speed, ref_accel


def build_context(
    frame: pd.DataFrame,
    thresholds: ThresholdOptions,
    tuning: TuningOptions,
    cancel: Optional[CancelToken] = None,
) -> DetectionContext:
    lats = frame["lat"].to_numpy(dtype=float)
    lons = frame["lon"].to_numpy(dtype=float)
    times = frame["time"].to_numpy(dtype=float)
    speeds = frame["speed"].to_numpy(dtype=float)
    supplied = frame["speed_supplied"].to_numpy(dtype=bool)
    n = len(frame)

    dist, dt, _ = step_geometry(lats, lons, times)

    # ========== Gap Threshold ==========
    rate = get_sampling_rate(frame[["time"]], time_col="time")
    median_interval = rate if rate > 0 else 0.0
    gap_threshold = max(median_interval * tuning.gap_multiplier, tuning.min_gap_seconds)
    gap_mask = np.zeros(n, dtype=bool)
    gap_mask[1:] = dt[1:] > gap_threshold
    gap_ratio = np.zeros(n, dtype=float)
    gap_ratio[1:] = dt[1:] / gap_threshold

    vmax, max_jump = effective_thresholds(speeds, dist, gap_mask, thresholds, tuning)
    jump_mask, jump_ratio, ref_speed, ref_accel = _scan_jumps(
        lats, lons, times, dist, dt, speeds, supplied, gap_mask, max_jump, vmax, cancel
    )

    return DetectionContext(
        lats=lats,
        lons=lons,
        times=times,
        speeds=speeds,
        speed_supplied=supplied,
        thresholds=thresholds,
        tuning=tuning,
        max_speed_mps=vmax,
        max_jump=max_jump,
        median_interval=median_interval,
        gap_threshold=gap_threshold,
        gap_mask=gap_mask,
        gap_ratio=gap_ratio,
        jump_mask=jump_mask,
        jump_ratio=jump_ratio,
        ref_speed=ref_speed,
        ref_accel=ref_accel,
        view=np.flatnonzero(~jump_mask),
    )


# ========== Classifiers ==========

def _empty(ctx: DetectionContext) -> Tuple[np.ndarray, np.ndarray]:
    return np.zeros(ctx.n, dtype=bool), np.zeros(ctx.n, dtype=float)


def classify_missing(ctx: DetectionContext) -> Tuple[np.ndarray, np.ndarray]:
    return ctx.gap_mask, ctx.gap_ratio


def classify_jump(ctx: DetectionContext) -> Tuple[np.ndarray, np.ndarray]:
    return ctx.jump_mask, ctx.jump_ratio


def classify_speed(ctx: DetectionContext) -> Tuple[np.ndarray, np.ndarray]:
    vmax = ctx.max_speed_mps
    v = ctx.ref_speed
    finite = np.isfinite(v)
    ratio = np.where(finite, np.nan_to_num(v) / vmax, 0.0)
    return finite & (ratio > 1.0), ratio


def classify_acceleration(ctx: DetectionContext) -> Tuple[np.ndarray, np.ndarray]:
    amax = ctx.thresholds.max_acceleration
    a = np.abs(ctx.ref_accel)
    finite = np.isfinite(a)
    ratio = np.where(finite, np.nan_to_num(a) / amax, 0.0)
    return finite & (ratio > 1.0), ratio


def classify_density(ctx: DetectionContext) -> Tuple[np.ndarray, np.ndarray]:
    """
    Exact duplicates, plus sampling-rate deviations from a rolling baseline.

    The local rate is the inverse of the rolling mean interval
    (``density_window`` points, gap intervals excluded). A point is flagged
    when its rate departs from the rolling median (``density_baseline_window``)
    by more than both ``density_k`` robust sigmas and ``density_tolerance``
    times the baseline.
    """
    mask, ratio = _empty(ctx)
    tuning = ctx.tuning
    v = ctx.view
    m = len(v)
    if m < 2:
        return mask, ratio

    t = ctx.times[v]
    dt_v = np.diff(t)
    d_v = haversine(ctx.lats[v][:-1], ctx.lons[v][:-1], ctx.lats[v][1:], ctx.lons[v][1:])
    dup = (dt_v <= 0) & (d_v < DUPLICATE_DISTANCE_M)
    mask[v[1:][dup]] = True
    ratio[v[1:][dup]] = 1.0

    if m < tuning.density_min_points:
        return mask, ratio

    usable = (dt_v > 0) & ~ctx.gap_mask[v[1:]]
    intervals = np.where(usable, dt_v, np.nan)
    arriving = np.concatenate([intervals[:1], intervals])
    local = pd.Series(arriving).rolling(tuning.density_window, center=True, min_periods=1).mean()
    rate = 1.0 / local.to_numpy()
    baseline = (
        pd.Series(rate)
        .rolling(tuning.density_baseline_window, center=True, min_periods=1)
        .median()
        .to_numpy()
    )

    finite = np.isfinite(rate) & np.isfinite(baseline)
    if np.count_nonzero(finite) < tuning.density_min_points:
        return mask, ratio

    med = float(np.median(rate[finite]))
    scale = MAD_TO_SIGMA * float(np.median(np.abs(rate[finite] - med)))
    with np.errstate(invalid="ignore", divide="ignore"):
        band = np.maximum(tuning.density_k * scale, tuning.density_tolerance * baseline)
        dev = np.abs(rate - baseline)
        flagged = finite & (band > 0) & (dev > band)
        mask[v[flagged]] = True
        ratio[v[flagged]] = np.maximum(ratio[v[flagged]], dev[flagged] / band[flagged])
    return mask, ratio


def classify_drift(ctx: DetectionContext) -> Tuple[np.ndarray, np.ndarray]:
    """
    Sustained disagreement between the coordinate delta and the reported motion.

    The expected delta of a step is speed x dt, using the supplied speed when
    the device reported one and otherwise the net speed over a centred window
    of ``drift_window`` points. A step is a candidate when the mismatch
    exceeds ``drift_threshold`` degrees and ``drift_relative_tolerance`` of
    the expected delta; only runs of ``drift_min_run`` candidates count.
    """
    mask, ratio = _empty(ctx)
    tuning = ctx.tuning
    v = ctx.view
    m = len(v)
    if m < max(3, tuning.drift_min_run + 1):
        return mask, ratio

    lat_v = ctx.lats[v]
    lon_v = ctx.lons[v]
    t_v = ctx.times[v]

    d = np.zeros(m)
    d[1:] = haversine(lat_v[:-1], lon_v[:-1], lat_v[1:], lon_v[1:])
    dt_v = np.zeros(m)
    dt_v[1:] = np.diff(t_v)

    half = tuning.drift_window // 2
    pos = np.arange(m)
    a = np.clip(pos - half, 0, m - 1)
    b = np.clip(pos + half, 0, m - 1)
    net = haversine(lat_v[a], lon_v[a], lat_v[b], lon_v[b])
    span = t_v[b] - t_v[a]
    with np.errstate(invalid="ignore", divide="ignore"):
        net_speed = np.where(span > 0, net / span, 0.0)

    speed = np.where(ctx.speed_supplied[v], ctx.speeds[v], net_speed)
    expected = speed * dt_v
    excess = np.abs(d - expected)
    threshold_m = ctx.thresholds.drift_threshold * METERS_PER_DEGREE

    candidate = (
        (excess > threshold_m)
        & (excess > tuning.drift_relative_tolerance * expected)
        & (dt_v > 0)
        & ~ctx.gap_mask[v]
    )
    candidate[0] = False

    for start, stop in runs_of(candidate):
        if stop - start >= tuning.drift_min_run:
            mask[v[start:stop]] = True
    ratio[v] = excess / threshold_m
    return mask, ratio


def classify_outlier(ctx: DetectionContext) -> Tuple[np.ndarray, np.ndarray]:
    """Robust z-score of the residual against the neighbour-pair median fit."""
    mask, ratio = _empty(ctx)
    tuning = ctx.tuning
    v = ctx.view
    if len(v) < 3:
        return mask, ratio

    proj = LocalProjection.around(ctx.lats[v], ctx.lons[v])
    xs, ys = proj.to_xy(ctx.lats[v], ctx.lons[v])
    resid = neighbour_residuals(xs, ys, ctx.times[v], tuning.outlier_half_window)
    z = robust_z(resid)
    with np.errstate(invalid="ignore"):
        flagged = (z > tuning.outlier_k) & (np.nan_to_num(resid) > tuning.outlier_min_deviation_m)
    mask[v[flagged]] = True
    ratio[v] = z / tuning.outlier_k
    return mask, ratio


class Classifier(NamedTuple):
    status: PointStatus
    classify: Callable[[DetectionContext], Tuple[np.ndarray, np.ndarray]]
    # Ratio above which severity is (high, medium); otherwise low
    bands: Tuple[float, float]


CLASSIFIERS: Tuple[Classifier, ...] = (
    Classifier(PointStatus.MISSING, classify_missing, (10.0, 3.0)),
    Classifier(PointStatus.JUMP, classify_jump, (2.0, 1.2)),
    Classifier(PointStatus.SPEED_ANOMALY, classify_speed, (2.0, 1.5)),
    Classifier(PointStatus.ACCELERATION_ANOMALY, classify_acceleration, (2.0, 1.5)),
    Classifier(PointStatus.DENSITY_ANOMALY, classify_density, (3.0, 2.0)),
    Classifier(PointStatus.DRIFT, classify_drift, (5.0, 2.0)),
    Classifier(PointStatus.OUTLIER, classify_outlier, (3.0, 2.0)),
)


def severity_for(ratio: np.ndarray, bands: Tuple[float, float]) -> np.ndarray:
    high, medium = bands
    ratio = np.asarray(ratio, dtype=float)
    return np.select(
        [ratio > high, ratio > medium],
        [Severity.HIGH.value, Severity.MEDIUM.value],
        default=Severity.LOW.value,
    ).astype(object)


# ========== Report Assembly ==========

def _gap_spans(frame: pd.DataFrame, ctx: DetectionContext) -> List[GapSpan]:
    index = frame["index"].to_numpy()
    spans = []
    for i in np.flatnonzero(ctx.gap_mask):
        spans.append(GapSpan(
            start_index=int(index[i - 1]),
            end_index=int(index[i]),
            start_time=float(ctx.times[i - 1]),
            end_time=float(ctx.times[i]),
            duration_seconds=float(ctx.times[i] - ctx.times[i - 1]),
            distance_meters=float(haversine(ctx.lats[i - 1], ctx.lons[i - 1], ctx.lats[i], ctx.lons[i])),
        ))
    return spans


def _describe(status: PointStatus, count: int, ctx: DetectionContext) -> str:
    th = ctx.thresholds
    if status is PointStatus.MISSING:
        return f"{count} gap(s) longer than {ctx.gap_threshold:.0f} s in the timestamp sequence"
    if status is PointStatus.JUMP:
        return f"{count} point(s) jump more than {ctx.max_jump:.0f} m at over {ctx.max_speed_mps * 3.6:.0f} km/h or with no elapsed time"
    if status is PointStatus.SPEED_ANOMALY:
        return f"{count} point(s) exceed {ctx.max_speed_mps * 3.6:.0f} km/h"
    if status is PointStatus.ACCELERATION_ANOMALY:
        return f"{count} point(s) exceed {th.max_acceleration:g} m/s^2 acceleration"
    if status is PointStatus.DENSITY_ANOMALY:
        return f"{count} point(s) with irregular sampling density or duplicated fixes"
    if status is PointStatus.DRIFT:
        return f"{count} point(s) drift more than {th.drift_threshold:g} deg from the motion implied by speed"
    return f"{count} point(s) deviate statistically from their neighbours"


def build_anomalies(frame: pd.DataFrame, gaps: List[GapSpan], ctx: DetectionContext) -> List[Anomaly]:
    """One Anomaly per status present, in precedence order."""
    status = frame["status"].to_numpy(dtype=object)
    severity = frame["severity"].to_numpy(dtype=object)
    index = frame["index"].to_numpy()
    rank = {s.value: s.rank for s in Severity}

    anomalies = []
    for clf in CLASSIFIERS:
        sel = status == clf.status.value
        if not sel.any():
            continue
        worst = max(severity[sel], key=lambda s: rank[s])
        indices = [int(i) for i in index[sel]]
        anomalies.append(Anomaly(
            type=clf.status,
            severity=Severity(worst),
            count=len(indices),
            indices=indices,
            gaps=list(gaps) if clf.status is PointStatus.MISSING else [],
            description=_describe(clf.status, len(indices), ctx),
        ))
    return anomalies


def detect_anomalies(
    frame: pd.DataFrame,
    thresholds: ThresholdOptions,
    tuning: TuningOptions,
    cancel: Optional[CancelToken] = None,
) -> Tuple[pd.DataFrame, DetectionResult]:
    """
    Classify every point and aggregate the anomalies.

    Parameters
    ----------
    frame : pd.DataFrame
        Output of :func:`~pytrackdoctor.preprocessing.kinematics.derive_kinematics`.
    thresholds : ThresholdOptions
        ``max_speed`` (km/h), ``max_acceleration`` (m/s^2), ``max_jump`` (m)
        and ``drift_threshold`` (degrees).
    tuning : TuningOptions
        Gap, density, drift and outlier constants.
    cancel : object with ``is_set()``, optional
        Cooperative cancellation token.

    Returns
    -------
    (pd.DataFrame, DetectionResult)
        A new frame with ``status``, ``severity``, ``original_lat/lon``,
        ``corrected_lat/lon`` and ``fixed_by`` columns, and the aggregated
        result. ``normal_points + anomaly_points == len(frame)``.
    """
    ctx = build_context(frame, thresholds, tuning, cancel)
    n = ctx.n

    status = np.full(n, PointStatus.NORMAL.value, dtype=object)
    severity = np.full(n, None, dtype=object)
    assigned = np.zeros(n, dtype=bool)
    for clf in CLASSIFIERS:
        raise_if_cancelled(cancel, "anomaly detection")
        mask, ratio = clf.classify(ctx)
        take = mask & ~assigned
        if take.any():
            status[take] = clf.status.value
            severity[take] = severity_for(ratio[take], clf.bands)
            assigned |= take

    out = frame.copy()
    out["status"] = status
    out["severity"] = severity
    out["original_lat"] = ctx.lats.copy()
    out["original_lon"] = ctx.lons.copy()
    out["corrected_lat"] = ctx.lats.copy()
    out["corrected_lon"] = ctx.lons.copy()
    out["fixed_by"] = None

    gaps = _gap_spans(out, ctx)
    anomalies = build_anomalies(out, gaps, ctx)
    counts = {s.value: int(np.count_nonzero(status == s.value)) for s in PointStatus}
    normal = counts[PointStatus.NORMAL.value]

    info = AlgorithmInfo(
        name="anomaly_detector",
        description="Ordered classifiers: " + ", ".join(c.status.value for c in CLASSIFIERS),
        processed_points=n,
        parameters={
            "max_speed_kmh": thresholds.max_speed,
            "max_acceleration": thresholds.max_acceleration,
            "max_jump_m": thresholds.max_jump,
            "drift_threshold_deg": thresholds.drift_threshold,
            "adaptive_thresholds": tuning.adaptive_thresholds,
            "effective_max_speed_kmh": ctx.max_speed_mps * 3.6,
            "effective_max_jump_m": ctx.max_jump,
            "median_interval_s": ctx.median_interval,
            "gap_threshold_s": ctx.gap_threshold,
            "outlier_k": tuning.outlier_k,
            "precedence": [c.status.value for c in CLASSIFIERS],
        },
    )
    _LOG.debug(
        "Detected %d anomalous point(s) of %d: %s",
        n - normal, n, {k: v for k, v in counts.items() if v and k != PointStatus.NORMAL.value},
    )
    return out, DetectionResult(
        anomalies=anomalies,
        gaps=gaps,
        info=info,
        normal_points=normal,
        anomaly_points=n - normal,
        counts=counts,
    )
