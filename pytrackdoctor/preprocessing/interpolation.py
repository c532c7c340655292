"""
Gap filling for GPS trajectories.

Each ``missing`` gap recorded by the detector is filled with synthetic points
spaced at the local sampling cadence. When at least four trusted control
points exist on both sides of the gap, lat(t), lon(t) and elevation(t) are
fitted with natural cubic splines (longitude unwrapped first, so a gap across
the antimeridian is fitted continuously). Otherwise, or when the spline
misbehaves, points are placed along the WGS84 geodesic between the gap's
boundary points using pyproj.

Gaps longer than ``max_fill_seconds`` are not filled; they are reported in
the stage's parameters and on the :class:`~pytrackdoctor.models.GapSpan`.
"""

import logging
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy.interpolate import CubicSpline

from pytrackdoctor.models import AlgorithmInfo, GapSpan, PointStatus
from pytrackdoctor.options import TuningOptions
from pytrackdoctor.preprocessing.sampling_rate import local_cadence
from pytrackdoctor.utilities.cancel import CancelToken, raise_if_cancelled
from pytrackdoctor.utilities.geodesy import (
    geodesic_interpolate,
    haversine,
    unwrap_longitudes,
    wrap_longitude,
)

_LOG = logging.getLogger(__name__)

CONTROL_POINTS_PER_SIDE = 4
UNTRUSTED = (PointStatus.JUMP.value, PointStatus.OUTLIER.value)


def _control_side(positions, trusted: np.ndarray, times: np.ndarray, limit: int) -> List[int]:
    """First ``limit`` trusted positions from an iterator, deduplicated on time."""
    picked: List[int] = []
    seen = set()
    for j in positions:
        if not trusted[j] or times[j] in seen:
            continue
        picked.append(j)
        seen.add(times[j])
        if len(picked) == limit:
            break
    return picked


def _walk_left(p: int, gap_mask: np.ndarray):
    j = p
    while j >= 0:
        yield j
        if gap_mask[j]:
            return
        j -= 1


def _walk_right(q: int, gap_mask: np.ndarray):
    j = q
    n = len(gap_mask)
    while j < n:
        yield j
        j += 1
        if j < n and gap_mask[j]:
            return


def _spline_fill(
    ctrl: np.ndarray,
    times: np.ndarray,
    lats: np.ndarray,
    lons: np.ndarray,
    elev: np.ndarray,
    new_t: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    t_c = times[ctrl]
    lat_new = CubicSpline(t_c, lats[ctrl], bc_type="natural")(new_t)
    lon_new = wrap_longitude(CubicSpline(t_c, unwrap_longitudes(lons[ctrl]), bc_type="natural")(new_t))
    if np.all(np.isfinite(elev[ctrl])):
        ele_new = CubicSpline(t_c, elev[ctrl], bc_type="natural")(new_t)
    else:
        ele_new = np.full(len(new_t), np.nan)
    return lat_new, lon_new, ele_new


def fill_gaps(
    frame: pd.DataFrame,
    gaps: List[GapSpan],
    tuning: TuningOptions,
    cancel: Optional[CancelToken] = None,
) -> Tuple[pd.DataFrame, AlgorithmInfo, List[GapSpan]]:
    """
    Insert interpolated points into every fillable gap.

    Parameters
    ----------
    frame : pd.DataFrame
        Pipeline frame after smoothing. Positions are read from
        ``corrected_lat`` / ``corrected_lon``.
    gaps : list of GapSpan
        Gaps recorded by the detector, in trajectory order.
    tuning : TuningOptions
        ``max_fill_seconds``, ``max_points_per_gap`` and
        ``spline_max_deviation_m`` are used.
    cancel : object with ``is_set()``, optional

    Returns
    -------
    frame : pd.DataFrame
        New frame with synthetic rows (status ``interpolated``,
        ``fixed_by="spline_interpolation"``) inserted inside their gaps.
        Synthetic rows get fresh indices continuing after the largest
        existing index.
    info : AlgorithmInfo
        ``added_points`` counts inserted rows; ``parameters["unfilled_gaps"]``
        lists the gaps left open.
    gaps : list of GapSpan
        The input gaps with ``filled`` / ``reason`` updated.

    Examples
    --------
    A 400 s gap in a 3 s cadence track is filled with 132 points::

        frame, info, gaps = fill_gaps(frame, result.gaps, TuningOptions())
        info.added_points  # 132
    """
    n = len(frame)

    def _info(added=0, **params) -> AlgorithmInfo:
        return AlgorithmInfo(
            name="spline_interpolation",
            description="Natural cubic spline over lat(t)/lon(t)/elevation(t) with geodesic linear fallback",
            processed_points=n,
            added_points=added,
            parameters={
                "max_fill_seconds": tuning.max_fill_seconds,
                "max_points_per_gap": tuning.max_points_per_gap,
                **params,
            },
        )

    if not gaps:
        return frame.copy(), _info(filled_gaps=0, unfilled_gaps=[]), []

    index = frame["index"].to_numpy()
    position: Dict[int, int] = {int(i): p for p, i in enumerate(index)}
    times = frame["time"].to_numpy(dtype=float)
    lats = frame["corrected_lat"].to_numpy(dtype=float)
    lons = frame["corrected_lon"].to_numpy(dtype=float)
    elev = frame["elevation"].to_numpy(dtype=float)
    status = frame["status"].to_numpy(dtype=object)
    fixed_by = frame["fixed_by"].to_numpy(dtype=object)
    trusted = ~(np.isin(status, UNTRUSTED) & pd.isna(fixed_by))

    gap_mask = np.zeros(n, dtype=bool)
    for gap in gaps:
        q = position.get(gap.end_index)
        if q is not None:
            gap_mask[q] = True

    next_index = int(index.max()) + 1
    inserts: List[Tuple[int, pd.DataFrame]] = []
    updated: List[GapSpan] = []
    unfilled: List[GapSpan] = []
    methods = {"spline": 0, "linear": 0}

    for gap in gaps:
        raise_if_cancelled(cancel, "gap interpolation")
        p = position.get(gap.start_index)
        q = position.get(gap.end_index)

        reason = None
        if p is None or q is None or q != p + 1:
            reason = "gap boundary points are not adjacent in the sequence"
        elif gap.duration_seconds > tuning.max_fill_seconds:
            reason = (
                f"gap of {gap.duration_seconds:.0f} s exceeds the maximum fillable "
                f"duration of {tuning.max_fill_seconds:.0f} s"
            )
        if reason is not None:
            _LOG.warning("Gap %d -> %d left unfilled: %s", gap.start_index, gap.end_index, reason)
            span = replace(gap, filled=False, reason=reason)
            updated.append(span)
            unfilled.append(span)
            continue

        # ========== Synthetic Timestamps ==========
        duration = times[q] - times[p]
        cadence = local_cadence(times, p, q, gap_mask=gap_mask)
        m = int(np.clip(round(duration / cadence) - 1, 1, tuning.max_points_per_gap))
        new_t = times[p] + duration * np.arange(1, m + 1) / (m + 1)

        # ========== Positions ==========
        fractions = (new_t - times[p]) / duration
        chord_lat, chord_lon = geodesic_interpolate(lats[p], lons[p], lats[q], lons[q], fractions)

        left = _control_side(_walk_left(p, gap_mask), trusted, times, CONTROL_POINTS_PER_SIDE)
        right = _control_side(_walk_right(q, gap_mask), trusted, times, CONTROL_POINTS_PER_SIDE)
        method = "linear"
        if len(left) >= CONTROL_POINTS_PER_SIDE and len(right) >= CONTROL_POINTS_PER_SIDE:
            ctrl = np.array(left[::-1] + right)
            lat_new, lon_new, ele_new = _spline_fill(ctrl, times, lats, lons, elev, new_t)
            chord_len = float(haversine(lats[p], lons[p], lats[q], lons[q]))
            limit = max(tuning.spline_max_deviation_m, 0.5 * chord_len)
            ok = np.all(np.isfinite(lat_new)) and np.all(np.isfinite(lon_new)) and np.all(np.abs(lat_new) <= 90.0)
            if ok and float(np.max(haversine(lat_new, lon_new, chord_lat, chord_lon))) <= limit:
                method = "spline"
            else:
                _LOG.warning(
                    "Spline over gap %d -> %d strays from the geodesic chord; using linear interpolation",
                    gap.start_index, gap.end_index,
                )
        if method == "linear":
            lat_new, lon_new = chord_lat, chord_lon
            if np.isfinite(elev[p]) and np.isfinite(elev[q]):
                ele_new = elev[p] + fractions * (elev[q] - elev[p])
            else:
                ele_new = np.full(m, np.nan)
        methods[method] += 1

        rows = pd.DataFrame({
            "index": np.arange(next_index, next_index + m, dtype=np.int64),
            "lat": lat_new,
            "lon": lon_new,
            "time": new_t,
            "elevation": ele_new,
            "speed": np.nan,
            "bearing": np.nan,
            "speed_supplied": False,
            "bearing_supplied": False,
            "acceleration": np.nan,
            "status": PointStatus.INTERPOLATED.value,
            "severity": None,
            "original_lat": lat_new,
            "original_lon": lon_new,
            "corrected_lat": lat_new,
            "corrected_lon": lon_new,
            "fixed_by": "spline_interpolation",
        })
        next_index += m
        inserts.append((p, rows[[c for c in frame.columns if c in rows.columns]]))
        updated.append(replace(gap, filled=True, reason=None))

    # ========== Assemble ==========
    pieces = []
    cursor = 0
    for p, rows in inserts:
        pieces.append(frame.iloc[cursor:p + 1])
        pieces.append(rows)
        cursor = p + 1
    pieces.append(frame.iloc[cursor:])
    out = pd.concat(pieces, ignore_index=True)

    added = sum(len(rows) for _, rows in inserts)
    _LOG.debug("Filled %d gap(s) with %d point(s); %d unfilled", len(inserts), added, len(unfilled))
    return out, _info(
        added=added,
        filled_gaps=len(inserts),
        unfilled_gaps=unfilled,
        methods=methods,
        interpolated_indices=list(range(int(index.max()) + 1, next_index)),
    ), updated
