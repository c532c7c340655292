"""
Adaptive Kalman / Rauch-Tung-Striebel smoothing of flagged GPS points.

The trajectory is projected to a local Azimuthal Equidistant (AEQD) plane
centred on the robust centroid of its trusted points, filtered forward with a
constant-velocity model and smoothed backward with the RTS recursion. The
filter is *adaptive*: each measurement's noise covariance is scaled by the
anomaly status the detector gave the point, and further inflated when its
innovation fails a chi-squared gate. Flagged points end up following the
filter's prediction rather than their raw reading.

Only points with a correctable status receive smoothed coordinates. Normal
points keep their coordinates exactly; smoothing is corrective, not a
blanket low-pass filter.
"""

import logging
from typing import Optional, Tuple

import numpy as np
import pandas as pd
import scipy.linalg as sla
from scipy.stats import chi2

from pytrackdoctor.models import AlgorithmInfo, PointStatus
from pytrackdoctor.options import TuningOptions
from pytrackdoctor.utilities.cancel import CHECK_EVERY, CancelToken, raise_if_cancelled
from pytrackdoctor.utilities.geodesy import LocalProjection, haversine
from pytrackdoctor.utilities.robust import runs_of

_LOG = logging.getLogger(__name__)

CORRECTABLE = (
    PointStatus.DRIFT,
    PointStatus.OUTLIER,
    PointStatus.JUMP,
    PointStatus.SPEED_ANOMALY,
    PointStatus.ACCELERATION_ANOMALY,
)

# Multiplier on the base measurement variance; unlisted statuses use 1
STATUS_NOISE_SCALE = {
    PointStatus.JUMP.value: 1e6,
    PointStatus.OUTLIER.value: 100.0,
    PointStatus.SPEED_ANOMALY.value: 50.0,
    PointStatus.DRIFT.value: 25.0,
    PointStatus.ACCELERATION_ANOMALY.value: 25.0,
}

INITIAL_VELOCITY_VAR = 1e4
MIN_DT_S = 1e-3

H = np.array([[1.0, 0.0, 0.0, 0.0],
              [0.0, 0.0, 1.0, 0.0]])


def _transition(dt: float) -> np.ndarray:
    return np.array([[1.0, dt, 0.0, 0.0],
                     [0.0, 1.0, 0.0, 0.0],
                     [0.0, 0.0, 1.0, dt],
                     [0.0, 0.0, 0.0, 1.0]])


def _process_noise(dt: float, q_std: float) -> np.ndarray:
    """Discrete white-noise acceleration covariance for [x, vx, y, vy]."""
    block = np.array([[dt ** 4 / 4.0, dt ** 3 / 2.0],
                      [dt ** 3 / 2.0, dt ** 2]]) * q_std ** 2
    Q = np.zeros((4, 4))
    Q[np.ix_([0, 1], [0, 1])] = block
    Q[np.ix_([2, 3], [2, 3])] = block
    return Q


def _kalman_rts(
    xs: np.ndarray,
    ys: np.ndarray,
    dt_s: np.ndarray,
    noise_scale: np.ndarray,
    tuning: TuningOptions,
    cancel: Optional[CancelToken] = None,
) -> Tuple[np.ndarray, np.ndarray, int]:
    """
    Forward Kalman filter with innovation gating followed by the RTS smoother.

    Parameters
    ----------
    xs, ys : np.ndarray
        Projected measurements in meters.
    dt_s : np.ndarray
        ``n - 1`` strictly positive time steps in seconds.
    noise_scale : np.ndarray
        Per-point multiplier on the base measurement variance.

    Returns
    -------
    smoothed : np.ndarray, shape (n, 2)
        Smoothed positions.
    unstable : np.ndarray of bool
        Points where a matrix inversion failed or the state became non-finite.
        Their smoothed position falls back to the filtered (or predicted) one.
    gated : int
        Number of measurements whose noise was inflated by the gate.
    """
    n = len(xs)
    Z = np.column_stack((xs, ys))
    base_var = tuning.measurement_noise_std_m ** 2
    chi2_thresh = float(chi2.ppf(1.0 - tuning.outlier_alpha, df=2))

    x_pred = np.zeros((n, 4)); P_pred = np.zeros((n, 4, 4))
    x_filt = np.zeros((n, 4)); P_filt = np.zeros((n, 4, 4))
    unstable = np.zeros(n, dtype=bool)
    gated = 0

    r0 = base_var * noise_scale[0]
    x_filt[0] = [xs[0], 0.0, ys[0], 0.0]
    P_filt[0] = np.diag([r0, INITIAL_VELOCITY_VAR, r0, INITIAL_VELOCITY_VAR])
    x_pred[0] = x_filt[0]; P_pred[0] = P_filt[0]

    # ========== Forward Pass ==========
    for k in range(1, n):
        if k % CHECK_EVERY == 0:
            raise_if_cancelled(cancel, "adaptive RTS smoothing")
        F = _transition(dt_s[k - 1])
        x_pred[k] = F @ x_filt[k - 1]
        P_pred[k] = F @ P_filt[k - 1] @ F.T + _process_noise(dt_s[k - 1], tuning.process_noise_std)

        R = np.eye(2) * base_var * noise_scale[k]
        resid = Z[k] - H @ x_pred[k]
        try:
            S = H @ P_pred[k] @ H.T + R
            S_inv = sla.inv(S)
            # Mahalanobis distance of the innovation against chi2(df=2)
            m2 = float(resid @ S_inv @ resid)
            if m2 > chi2_thresh:
                R = R * (m2 / chi2_thresh)
                S = H @ P_pred[k] @ H.T + R
                S_inv = sla.inv(S)
                gated += 1
        except (sla.LinAlgError, ValueError):
            unstable[k] = True
            x_filt[k] = x_pred[k]; P_filt[k] = P_pred[k]
            continue

        K = P_pred[k] @ H.T @ S_inv
        x_new = x_pred[k] + K @ resid
        P_new = (np.eye(4) - K @ H) @ P_pred[k]
        if not (np.all(np.isfinite(x_new)) and np.all(np.isfinite(P_new))):
            unstable[k] = True
            x_filt[k] = x_pred[k]; P_filt[k] = P_pred[k]
            continue
        x_filt[k] = x_new; P_filt[k] = P_new

    # ========== RTS Backward Pass ==========
    x_smooth = x_filt.copy()
    P_smooth = P_filt.copy()
    for k in range(n - 2, -1, -1):
        if k % CHECK_EVERY == 0:
            raise_if_cancelled(cancel, "adaptive RTS smoothing")
        F = _transition(dt_s[k])
        try:
            Ck = P_filt[k] @ F.T @ sla.inv(P_pred[k + 1])
        except (sla.LinAlgError, ValueError):
            unstable[k] = True
            continue
        x_new = x_filt[k] + Ck @ (x_smooth[k + 1] - x_pred[k + 1])
        P_new = P_filt[k] + Ck @ (P_smooth[k + 1] - P_pred[k + 1]) @ Ck.T
        if not np.all(np.isfinite(x_new)):
            unstable[k] = True
            continue
        x_smooth[k] = x_new; P_smooth[k] = P_new

    return x_smooth[:, [0, 2]], unstable, gated


def _anchor_drift_runs(
    smoothed: np.ndarray,
    anchors: np.ndarray,
    times: np.ndarray,
    drift: np.ndarray,
    weight: float,
    min_run: int,
) -> int:
    """
    Pull sustained drift runs toward the straight, time-linear path between
    the last point before the run and the first point after it. ``anchors``
    holds the final (n, 2) position of every point, so an anchor that was
    itself corrected contributes its smoothed position.

    Modifies ``smoothed`` in place and returns the number of anchored runs.
    Runs touching either end of the trajectory have no anchor and are left
    to the smoother alone.
    """
    n = len(anchors)
    anchored = 0
    for start, stop in runs_of(drift):
        if stop - start < min_run or start == 0 or stop >= n:
            continue
        a, b = start - 1, stop
        span = times[b] - times[a]
        frac = (times[start:stop] - times[a]) / span if span > 0 else np.linspace(0, 1, stop - start + 2)[1:-1]
        chord = anchors[a] + frac[:, None] * (anchors[b] - anchors[a])
        smoothed[start:stop] += weight * (chord - smoothed[start:stop])
        anchored += 1
    return anchored


def adaptive_rts_smooth(
    frame: pd.DataFrame,
    tuning: TuningOptions,
    cancel: Optional[CancelToken] = None,
) -> Tuple[pd.DataFrame, AlgorithmInfo]:
    """
    Reposition flagged points with an adaptive Kalman/RTS smoother.

    Parameters
    ----------
    frame : pd.DataFrame
        Detector output (``status`` and ``corrected_lat``/``corrected_lon``).
    tuning : TuningOptions
        ``measurement_noise_std_m``, ``process_noise_std``, ``outlier_alpha``,
        ``drift_anchor_weight`` and ``drift_min_run`` are used.
    cancel : object with ``is_set()``, optional

    Returns
    -------
    (pd.DataFrame, AlgorithmInfo)
        A new frame where drift, outlier, jump, speed_anomaly and
        acceleration_anomaly points carry smoothed ``corrected_lat`` /
        ``corrected_lon`` and ``fixed_by="adaptive_rts"``. Every other point
        is untouched. Points whose state could not be estimated are listed in
        ``failed_indices`` and not counted as fixed.

    Notes
    -----
    - The state is ``[x, vx, y, vy]`` in meters and m/s in a local AEQD
      projection; non-positive time steps are treated as 1 ms.
    - The base measurement variance is ``measurement_noise_std_m ** 2``,
      scaled per status by ``STATUS_NOISE_SCALE``.
    - With fewer than 2 points or no correctable point the stage is a no-op.
    """
    out = frame.copy()
    n = len(out)
    status = out["status"].to_numpy(dtype=object)
    correctable = np.isin(status, [s.value for s in CORRECTABLE])

    def _info(fixed=(), failed=(), **params) -> AlgorithmInfo:
        return AlgorithmInfo(
            name="adaptive_rts",
            description="Constant-velocity Kalman filter with status-adaptive noise and RTS smoothing in a local AEQD plane",
            processed_points=n,
            fixed_points=len(fixed),
            fixed_indices=list(fixed),
            failed_indices=list(failed),
            parameters={
                "measurement_noise_std_m": tuning.measurement_noise_std_m,
                "process_noise_std": tuning.process_noise_std,
                "outlier_alpha": tuning.outlier_alpha,
                **params,
            },
        )

    if n < 2 or not correctable.any():
        return out, _info(mean_displacement_m=0.0)

    lats = out["corrected_lat"].to_numpy(dtype=float)
    lons = out["corrected_lon"].to_numpy(dtype=float)
    times = out["time"].to_numpy(dtype=float)

    trusted = status != PointStatus.JUMP.value
    proj = LocalProjection.around(lats[trusted], lons[trusted])
    xs, ys = proj.to_xy(lats, lons)

    dt_s = np.diff(times)
    dt_s = np.where(dt_s > 0, dt_s, MIN_DT_S)
    noise_scale = np.array([STATUS_NOISE_SCALE.get(s, 1.0) for s in status])

    smoothed, unstable, gated = _kalman_rts(xs, ys, dt_s, noise_scale, tuning, cancel)
    anchors = np.where(correctable[:, None], smoothed, np.column_stack((xs, ys)))
    anchored = _anchor_drift_runs(
        smoothed, anchors, times,
        status == PointStatus.DRIFT.value,
        tuning.drift_anchor_weight,
        tuning.drift_min_run,
    )

    new_lats, new_lons = proj.to_latlon(smoothed[:, 0], smoothed[:, 1])
    finite = np.isfinite(new_lats) & np.isfinite(new_lons) & (np.abs(new_lats) <= 90.0)
    failed = correctable & (unstable | ~finite)
    apply = correctable & ~failed

    corrected_lat = lats.copy()
    corrected_lon = lons.copy()
    corrected_lat[apply] = new_lats[apply]
    corrected_lon[apply] = new_lons[apply]
    out["corrected_lat"] = corrected_lat
    out["corrected_lon"] = corrected_lon
    fixed_by = out["fixed_by"].to_numpy(dtype=object).copy()
    fixed_by[apply] = "adaptive_rts"
    out["fixed_by"] = fixed_by

    index = out["index"].to_numpy()
    fixed_idx = [int(i) for i in index[apply]]
    failed_idx = [int(i) for i in index[failed]]
    if failed_idx:
        _LOG.warning("Smoother left %d flagged point(s) unmodified: %s", len(failed_idx), failed_idx[:20])

    displacement = haversine(lats[apply], lons[apply], corrected_lat[apply], corrected_lon[apply])
    mean_disp = float(np.mean(displacement)) if displacement.size else 0.0
    _LOG.debug("Smoothed %d point(s), mean displacement %.2f m, %d gated", len(fixed_idx), mean_disp, gated)

    return out, _info(
        fixed=fixed_idx,
        failed=failed_idx,
        mean_displacement_m=mean_disp,
        projection=proj.name,
        gated_measurements=gated,
        anchored_drift_runs=anchored,
    )
