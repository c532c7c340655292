"""
Robust local-fit statistics shared by the outlier classifier and remover.

A point's residual is its distance from the median of the positions
predicted for it by linear interpolation in time between neighbour pairs
(one before, one after, up to ``half_window`` positions away). With three
neighbours per side one corrupted neighbour spoils at most a third of the
predictions, so the median stays on the clean path.
"""

import warnings

import numpy as np

MAD_TO_SIGMA = 1.4826


def neighbour_residuals(xs: np.ndarray, ys: np.ndarray, times: np.ndarray, half_window: int = 3) -> np.ndarray:
    """
    Distance (in the units of ``xs``/``ys``) from each point to its neighbour prediction.

    Points without a neighbour on both sides (the endpoints) get NaN.
    """
    xs = np.asarray(xs, dtype=float)
    ys = np.asarray(ys, dtype=float)
    times = np.asarray(times, dtype=float)
    m = len(xs)
    if m < 3:
        return np.full(m, np.nan)

    preds_x = []
    preds_y = []
    for a in range(1, half_window + 1):
        for b in range(1, half_window + 1):
            if a + b >= m:
                continue
            px = np.full(m, np.nan)
            py = np.full(m, np.nan)
            idx = np.arange(a, m - b)
            ia = idx - a
            ib = idx + b
            span = times[ib] - times[ia]
            with np.errstate(invalid="ignore", divide="ignore"):
                frac = np.where(span > 0, (times[idx] - times[ia]) / span, a / (a + b))
            px[idx] = xs[ia] + frac * (xs[ib] - xs[ia])
            py[idx] = ys[ia] + frac * (ys[ib] - ys[ia])
            preds_x.append(px)
            preds_y.append(py)

    with warnings.catch_warnings():
        # Endpoints have no prediction at all
        warnings.simplefilter("ignore", RuntimeWarning)
        med_x = np.nanmedian(np.vstack(preds_x), axis=0)
        med_y = np.nanmedian(np.vstack(preds_y), axis=0)
    return np.hypot(xs - med_x, ys - med_y)


def endpoint_residuals(xs: np.ndarray, ys: np.ndarray, times: np.ndarray) -> np.ndarray:
    """
    Distance of the first and last point from the line through their two
    nearest neighbours, extrapolated in time. Returns ``[first, last]``.
    """
    out = np.full(2, np.nan)
    if len(xs) < 3:
        return out
    for slot, (i, j, k) in enumerate(((0, 1, 2), (-1, -2, -3))):
        span = times[k] - times[j]
        frac = (times[i] - times[j]) / span if span != 0 else 0.0
        px = xs[j] + frac * (xs[k] - xs[j])
        py = ys[j] + frac * (ys[k] - ys[j])
        out[slot] = np.hypot(xs[i] - px, ys[i] - py)
    return out


def robust_z(values: np.ndarray) -> np.ndarray:
    """
    MAD-based z-scores; NaN inputs score 0.

    With zero dispersion every value above the median scores +inf.
    """
    values = np.asarray(values, dtype=float)
    z = np.zeros(len(values))
    valid = np.isfinite(values)
    if not valid.any():
        return z
    med = float(np.median(values[valid]))
    scale = MAD_TO_SIGMA * float(np.median(np.abs(values[valid] - med)))
    if scale > 0:
        z[valid] = (values[valid] - med) / scale
    else:
        z[valid] = np.where(values[valid] > med, np.inf, 0.0)
    return z


def runs_of(mask: np.ndarray):
    """Yield ``(start, stop)`` half-open ranges of consecutive True values."""
    mask = np.asarray(mask, dtype=bool)
    if not mask.any():
        return
    padded = np.concatenate([[False], mask, [False]])
    edges = np.flatnonzero(np.diff(padded.astype(np.int8)))
    for start, stop in zip(edges[::2], edges[1::2]):
        yield int(start), int(stop)
