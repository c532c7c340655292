"""
Sampling rate analysis for GPS trajectories.

The detector derives its gap threshold from the typical sampling interval,
and the gap filler spaces synthetic points at the local cadence around each
gap. Both use the median of strictly positive intervals, which is robust to
bursts, duplicates and the gaps themselves.
"""

from typing import Optional, Union

import numpy as np
import pandas as pd
import polars as pl

from pytrackdoctor.utilities.frames import _to_pandas_preserve, to_epoch_seconds


def positive_intervals(times: np.ndarray, exclude: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Strictly positive consecutive time differences, in seconds.

    Parameters
    ----------
    times : np.ndarray
        Epoch seconds, non-decreasing.
    exclude : np.ndarray of bool, optional
        Mask over the ``len(times) - 1`` intervals to leave out (e.g. gaps).
    """
    dt = np.diff(np.asarray(times, dtype=float))
    keep = dt > 0
    if exclude is not None:
        keep &= ~np.asarray(exclude, dtype=bool)
    return dt[keep]


def get_sampling_rate(
    df: Union[pd.DataFrame, pl.DataFrame],
    time_col: str = 'time',
    method: str = 'median',
) -> float:
    """
    Calculate the typical sampling interval of a GPS trajectory.

    Parameters
    ----------
    df : pd.DataFrame or pl.DataFrame
        Trajectory with a time column (epoch seconds or datetime-like).
    time_col : str, default='time'
        Name of the time column.
    method : {'median', 'mean'}, default='median'
        Aggregate over strictly positive intervals.

    Returns
    -------
    float
        Interval in seconds rounded to 3 decimals, or -1.0 when fewer than two
        points or no positive interval exist.

    Raises
    ------
    ValueError
        If ``time_col`` is missing or ``method`` is unknown.

    Examples
    --------
    >>> df = pd.DataFrame({'time': [0.0, 3.0, 6.0, 406.0, 409.0]})
    >>> get_sampling_rate(df)
    3.0
    """
    if method not in ('median', 'mean'):
        raise ValueError(f"method must be 'median' or 'mean', got {method!r}")
    if time_col not in df.columns:
        raise ValueError(f"Column '{time_col}' not found in DataFrame.")
    if len(df) < 2:
        return -1.0

    pdf, _ = _to_pandas_preserve(df)
    dt = positive_intervals(to_epoch_seconds(pdf[time_col]))
    if dt.size == 0:
        return -1.0
    rate = float(np.median(dt)) if method == 'median' else float(np.mean(dt))
    return round(rate, 3)


def local_cadence(
    times: np.ndarray,
    left: int,
    right: int,
    gap_mask: Optional[np.ndarray] = None,
    window: int = 10,
) -> float:
    """
    Median positive interval around the interval ``left -> right``.

    Looks at up to ``window`` intervals on each side of the given interval,
    skipping the interval itself and anything flagged in ``gap_mask``
    (indexed by the interval's right-hand point). Falls back to the
    trajectory-wide median, then to 1 second.
    """
    times = np.asarray(times, dtype=float)
    dt = np.diff(times)
    usable = dt > 0
    if gap_mask is not None:
        usable &= ~np.asarray(gap_mask, dtype=bool)[1:]
    usable[left:right] = False

    lo = max(0, left - window)
    hi = min(len(dt), right + window)
    local = dt[lo:hi][usable[lo:hi]]
    if local.size:
        return float(np.median(local))
    overall = dt[usable]
    if overall.size:
        return float(np.median(overall))
    return 1.0
