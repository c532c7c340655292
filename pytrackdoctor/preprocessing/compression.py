"""
Trajectory compression for pytrackdoctor.

Douglas-Peucker simplification with spherical cross-track distance. Runs
last in the pipeline so that its removal count describes the final
corrected trajectory. The algorithm is distance-only: it never looks at a
point's status.
"""

import logging
from typing import Optional, Tuple

import numpy as np
import pandas as pd

from pytrackdoctor.models import AlgorithmInfo
from pytrackdoctor.utilities.cancel import CHECK_EVERY, CancelToken, raise_if_cancelled
from pytrackdoctor.utilities.geodesy import cross_track_distance

_LOG = logging.getLogger(__name__)


def douglas_peucker_mask(
    lats: np.ndarray,
    lons: np.ndarray,
    epsilon: float,
    cancel: Optional[CancelToken] = None,
) -> np.ndarray:
    """
    Boolean keep-mask of the Douglas-Peucker simplification.

    Uses an explicit stack instead of recursion. A sub-range is split at its
    farthest point when that point lies more than ``epsilon`` meters from the
    great-circle segment joining the sub-range's endpoints.

    Examples
    --------
    >>> lats = np.array([0.0, 0.00001, 0.0])
    >>> lons = np.array([0.0, 0.001, 0.002])
    >>> douglas_peucker_mask(lats, lons, 5.0).tolist()
    [True, False, True]
    """
    lats = np.asarray(lats, dtype=float)
    lons = np.asarray(lons, dtype=float)
    n = len(lats)
    keep = np.zeros(n, dtype=bool)
    if n == 0:
        return keep
    keep[0] = keep[-1] = True
    if n < 3:
        return keep

    stack = [(0, n - 1)]
    iterations = 0
    while stack:
        iterations += 1
        if iterations % CHECK_EVERY == 0:
            raise_if_cancelled(cancel, "Douglas-Peucker simplification")
        a, b = stack.pop()
        if b - a < 2:
            continue
        d = cross_track_distance(lats[a + 1:b], lons[a + 1:b], lats[a], lons[a], lats[b], lons[b])
        i = int(np.argmax(d))
        if d[i] > epsilon:
            k = a + 1 + i
            keep[k] = True
            stack.append((k, b))
            stack.append((a, k))
    return keep


def simplification_error(
    frame: pd.DataFrame,
    keep: np.ndarray,
    lat_col: str = "corrected_lat",
    lon_col: str = "corrected_lon",
) -> float:
    """
    Maximum distance (m) of any dropped point from the simplified polyline.

    Each dropped point is measured against the kept segment that spans it.
    """
    lats = frame[lat_col].to_numpy(dtype=float)
    lons = frame[lon_col].to_numpy(dtype=float)
    kept_pos = np.flatnonzero(keep)
    worst = 0.0
    for a, b in zip(kept_pos[:-1], kept_pos[1:]):
        if b - a < 2:
            continue
        d = cross_track_distance(lats[a + 1:b], lons[a + 1:b], lats[a], lons[a], lats[b], lons[b])
        worst = max(worst, float(np.max(d)))
    return worst


def douglas_peucker(
    frame: pd.DataFrame,
    epsilon: float,
    cancel: Optional[CancelToken] = None,
) -> Tuple[pd.DataFrame, AlgorithmInfo]:
    """
    Simplify the corrected trajectory with Douglas-Peucker.

    Parameters
    ----------
    frame : pd.DataFrame
        Pipeline frame; ``corrected_lat`` / ``corrected_lon`` are simplified.
    epsilon : float
        Maximum allowed cross-track deviation in meters. ``0`` keeps every
        point not exactly on its segment.
    cancel : object with ``is_set()``, optional

    Returns
    -------
    (pd.DataFrame, AlgorithmInfo)
        Kept rows in order, and the stage record with ``removed_indices``,
        ``compression_ratio`` (kept / input) and ``max_error_m``.
    """
    n = len(frame)
    keep = douglas_peucker_mask(
        frame["corrected_lat"].to_numpy(dtype=float),
        frame["corrected_lon"].to_numpy(dtype=float),
        epsilon,
        cancel,
    )
    removed = [int(i) for i in frame["index"].to_numpy()[~keep]]
    max_error = simplification_error(frame, keep) if removed else 0.0
    out = frame.loc[keep].reset_index(drop=True)
    _LOG.debug("Douglas-Peucker kept %d of %d point(s) (eps=%.3f m)", len(out), n, epsilon)

    info = AlgorithmInfo(
        name="douglas_peucker",
        description="Douglas-Peucker simplification with great-circle cross-track distance to the segment",
        processed_points=n,
        removed_points=len(removed),
        removed_indices=removed,
        parameters={
            "epsilon_m": epsilon,
            "compression_ratio": (len(out) / n) if n else 1.0,
            "max_error_m": max_error,
        },
    )
    return out, info
