"""
Per-point kinematics derived from consecutive fixes.

Speed (m/s), bearing (degrees) and acceleration (m/s^2) are computed from
the haversine distance and time difference to the previous point. Values the
device supplied (``speed_supplied`` / ``bearing_supplied``) are kept as-is.

Two consecutive fixes with the same timestamp but different coordinates have
no defined speed: it is stored as NaN and left for the anomaly detector,
which classifies such points as jumps.
"""

import logging
from typing import Tuple

import numpy as np
import pandas as pd

from pytrackdoctor.models import AlgorithmInfo
from pytrackdoctor.utilities.geodesy import haversine, initial_bearing

_LOG = logging.getLogger(__name__)


def step_geometry(lats: np.ndarray, lons: np.ndarray, times: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Distance, time delta and speed of the step arriving at each point.

    Element 0 of every returned array describes no step and is 0. Speed is NaN
    where ``dt <= 0`` and the points differ, 0 where they coincide.
    """
    n = len(lats)
    dist = np.zeros(n, dtype=float)
    dt = np.zeros(n, dtype=float)
    speed = np.zeros(n, dtype=float)
    if n < 2:
        return dist, dt, speed

    dist[1:] = haversine(lats[:-1], lons[:-1], lats[1:], lons[1:])
    dt[1:] = np.diff(times)
    with np.errstate(divide="ignore", invalid="ignore"):
        speed[1:] = np.where(dt[1:] > 0, dist[1:] / dt[1:], np.where(dist[1:] > 0, np.nan, 0.0))
    return dist, dt, speed


def derive_kinematics(
    frame: pd.DataFrame,
    lat_col: str = "lat",
    lon_col: str = "lon",
    time_col: str = "time",
) -> Tuple[pd.DataFrame, AlgorithmInfo]:
    """
    Fill speed, bearing and acceleration for every point.

    Parameters
    ----------
    frame : pd.DataFrame
        Pipeline frame with ``speed_supplied`` / ``bearing_supplied`` flags.
    lat_col, lon_col : str
        Coordinates to derive from. The pipeline uses the raw ``lat``/``lon``
        first and ``corrected_lat``/``corrected_lon`` once repairs are done.
    time_col : str, default="time"

    Returns
    -------
    (pd.DataFrame, AlgorithmInfo)
        A new frame with ``speed``, ``bearing`` and ``acceleration`` filled,
        and the stage's audit record.

    Notes
    -----
    - The first point takes the speed and bearing of the first step, so its
      acceleration (and the second point's, for derived speeds) is 0.
    - Zero-length steps repeat the previous bearing.
    - Acceleration is NaN where the time delta is not positive or either
      speed is undefined.
    """
    out = frame.copy()
    n = len(out)
    lats = out[lat_col].to_numpy(dtype=float)
    lons = out[lon_col].to_numpy(dtype=float)
    times = out[time_col].to_numpy(dtype=float)

    dist, dt, step_speed = step_geometry(lats, lons, times)

    # ========== Speed ==========
    derived_speed = step_speed.copy()
    if n >= 2:
        derived_speed[0] = step_speed[1] if np.isfinite(step_speed[1]) else 0.0
    supplied = out["speed_supplied"].to_numpy(dtype=bool)
    speed = np.where(supplied, out["speed"].to_numpy(dtype=float), derived_speed)

    # ========== Bearing ==========
    step_bearing = np.full(n, np.nan)
    if n >= 2:
        moving = dist[1:] > 0
        raw = initial_bearing(lats[:-1], lons[:-1], lats[1:], lons[1:])
        step_bearing[1:] = np.where(moving, raw, np.nan)
    derived_bearing = pd.Series(step_bearing).ffill().bfill().fillna(0.0).to_numpy()
    bearing_supplied = out["bearing_supplied"].to_numpy(dtype=bool)
    bearing = np.where(bearing_supplied, out["bearing"].to_numpy(dtype=float), derived_bearing)

    # ========== Acceleration ==========
    acceleration = np.zeros(n, dtype=float)
    if n >= 2:
        with np.errstate(invalid="ignore", divide="ignore"):
            dv = speed[1:] - speed[:-1]
            acceleration[1:] = np.where(dt[1:] > 0, dv / dt[1:], np.nan)

    out["speed"] = speed
    out["bearing"] = bearing
    out["acceleration"] = acceleration

    undefined = int(np.count_nonzero(~np.isfinite(speed)))
    if undefined:
        _LOG.debug("%d point(s) with undefined speed (zero time delta)", undefined)

    info = AlgorithmInfo(
        name="kinematics",
        description="Haversine distance, initial bearing, speed and acceleration from consecutive fixes",
        processed_points=n,
        parameters={
            "derived_speed_points": int(np.count_nonzero(~supplied)),
            "derived_bearing_points": int(np.count_nonzero(~bearing_supplied)),
            "undefined_speed_points": undefined,
            "earth_radius_m": 6_371_000.0,
        },
    )
    return out, info
