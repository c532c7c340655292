"""
Summary statistics of a trajectory.

Computed independently for the original and the corrected sequence; the
input frame is never modified.
"""

from typing import Optional

import numpy as np
import pandas as pd

from pytrackdoctor.models import Bounds, ElevationStats, TrajectoryStats
from pytrackdoctor.utilities.geodesy import haversine, longitude_extent

MPS_TO_KMH = 3.6


def _elevation_stats(elevation: np.ndarray) -> Optional[ElevationStats]:
    ele = elevation[np.isfinite(elevation)]
    if ele.size == 0:
        return None
    diffs = np.diff(ele)
    return ElevationStats(
        min=float(ele.min()),
        max=float(ele.max()),
        avg=float(ele.mean()),
        gain=float(diffs[diffs > 0].sum()),
        loss=float(-diffs[diffs < 0].sum()),
    )


def compute_trajectory_stats(
    frame: pd.DataFrame,
    lat_col: str = "lat",
    lon_col: str = "lon",
    time_col: str = "time",
    elevation_col: str = "elevation",
) -> TrajectoryStats:
    """
    Point count, length, duration, bounds, speeds and elevation of a trajectory.

    Parameters
    ----------
    frame : pd.DataFrame
        Any frame with coordinate and epoch-second time columns.
    lat_col, lon_col : str
        Coordinates to describe, e.g. ``original_lat`` or ``corrected_lat``.
    time_col : str, default="time"
    elevation_col : str, default="elevation"
        Ignored when absent. Only finite elevations are used.

    Returns
    -------
    TrajectoryStats
        Distance in meters, duration in seconds, speeds in km/h. Average
        speed is the distance over the time of steps with a positive time
        delta. Bounds whose ``west`` exceeds ``east`` cross the antimeridian.
    """
    n = len(frame)
    if n == 0:
        return TrajectoryStats(point_count=0, distance=0.0, duration_seconds=0.0,
                               bounds=None, avg_speed=0.0, max_speed=0.0)

    lats = frame[lat_col].to_numpy(dtype=float)
    lons = frame[lon_col].to_numpy(dtype=float)
    times = frame[time_col].to_numpy(dtype=float)

    step = haversine(lats[:-1], lons[:-1], lats[1:], lons[1:]) if n > 1 else np.zeros(0)
    dt = np.diff(times)
    moving = dt > 0
    timed_time = float(dt[moving].sum())
    avg_speed = float(step[moving].sum()) / timed_time * MPS_TO_KMH if timed_time > 0 else 0.0
    max_speed = float(np.max(step[moving] / dt[moving])) * MPS_TO_KMH if moving.any() else 0.0

    west, east = longitude_extent(lons)
    bounds = Bounds(north=float(lats.max()), south=float(lats.min()), east=east, west=west)

    elevation = None
    if elevation_col in frame.columns:
        elevation = _elevation_stats(frame[elevation_col].to_numpy(dtype=float))

    return TrajectoryStats(
        point_count=n,
        distance=float(step.sum()),
        duration_seconds=float(times[-1] - times[0]),
        bounds=bounds,
        avg_speed=avg_speed,
        max_speed=max_speed,
        elevation=elevation,
    )
