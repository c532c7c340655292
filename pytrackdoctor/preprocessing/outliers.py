"""
Second-pass statistical outlier removal.

Runs after smoothing and gap filling, on corrected coordinates. Unlike the
smoother, which repositions points, this stage deletes them. Removal is
iterative: each round recomputes the neighbour fit over the points still
kept and drops only candidates that are the worst within their own
neighbourhood, so one large outlier cannot drag its neighbours out with it.
"""

import logging
from typing import Optional, Tuple

import numpy as np
import pandas as pd

from pytrackdoctor.models import AlgorithmInfo
from pytrackdoctor.options import TuningOptions
from pytrackdoctor.utilities.cancel import CancelToken, raise_if_cancelled
from pytrackdoctor.utilities.geodesy import LocalProjection
from pytrackdoctor.utilities.robust import endpoint_residuals, neighbour_residuals, robust_z

_LOG = logging.getLogger(__name__)


def _local_maxima(resid: np.ndarray, candidates: np.ndarray, half_window: int) -> np.ndarray:
    """
    Candidates whose residual is the largest within +-``half_window`` positions
    (earliest wins ties). Non-candidates compete too, so a corrupted endpoint
    shields the neighbours it drags off the path.
    """
    chosen = np.zeros(len(resid), dtype=bool)
    score = np.nan_to_num(resid, nan=-np.inf)
    for i in np.flatnonzero(candidates):
        before = score[max(0, i - half_window):i]
        after = score[i + 1:i + half_window + 1]
        if (before.size == 0 or score[i] > before.max()) and (after.size == 0 or score[i] >= after.max()):
            chosen[i] = True
    return chosen


def remove_outliers(
    frame: pd.DataFrame,
    tuning: TuningOptions,
    cancel: Optional[CancelToken] = None,
) -> Tuple[pd.DataFrame, AlgorithmInfo]:
    """
    Delete points that deviate statistically from their neighbourhood.

    Parameters
    ----------
    frame : pd.DataFrame
        Pipeline frame; ``corrected_lat`` / ``corrected_lon`` are tested.
    tuning : TuningOptions
        ``outlier_half_window``, ``outlier_k``, ``outlier_min_deviation_m`` and
        ``outlier_max_rounds`` are used.
    cancel : object with ``is_set()``, optional

    Returns
    -------
    (pd.DataFrame, AlgorithmInfo)
        The frame without the removed rows, and an AlgorithmInfo listing
        their indices in ``removed_indices``. The first and last points are
        never removed.
    """
    n = len(frame)
    kept = np.ones(n, dtype=bool)
    rounds = 0

    if n >= 3:
        lats = frame["corrected_lat"].to_numpy(dtype=float)
        lons = frame["corrected_lon"].to_numpy(dtype=float)
        times = frame["time"].to_numpy(dtype=float)
        proj = LocalProjection.around(lats, lons)
        xs, ys = proj.to_xy(lats, lons)

        for _ in range(tuning.outlier_max_rounds):
            raise_if_cancelled(cancel, "outlier removal")
            pos = np.flatnonzero(kept)
            if len(pos) < 3:
                break
            resid = neighbour_residuals(xs[pos], ys[pos], times[pos], tuning.outlier_half_window)
            z = robust_z(resid)
            candidates = (z > tuning.outlier_k) & (np.nan_to_num(resid) > tuning.outlier_min_deviation_m)
            candidates[0] = candidates[-1] = False
            resid[[0, -1]] = endpoint_residuals(xs[pos], ys[pos], times[pos])
            if not candidates.any():
                break
            drop = _local_maxima(resid, candidates, tuning.outlier_half_window)
            if not drop.any():
                break
            kept[pos[drop]] = False
            rounds += 1

    removed = [int(i) for i in frame["index"].to_numpy()[~kept]]
    out = frame.loc[kept].reset_index(drop=True)
    if removed:
        _LOG.debug("Removed %d outlier(s) in %d round(s)", len(removed), rounds)

    info = AlgorithmInfo(
        name="outlier_removal",
        description="Iterative MAD test on residuals from a +-3 neighbour median fit; local maxima removed per round",
        processed_points=n,
        removed_points=len(removed),
        removed_indices=removed,
        parameters={
            "k": tuning.outlier_k,
            "min_deviation_m": tuning.outlier_min_deviation_m,
            "half_window": tuning.outlier_half_window,
            "rounds": rounds,
        },
    )
    return out, info
