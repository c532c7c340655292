"""
Input validation for raw GPS point batches.

Rows come in the canonical form ``[lat, lon, time, elevation?, speed?, bearing?]``
(3 to 6 numbers) or as :class:`~pytrackdoctor.models.GeoPoint` objects. A batch
is accepted whole or rejected whole: every offending index is reported at once.
"""

import logging
from numbers import Real
from typing import Dict, Iterable, Optional, Sequence, Union

import numpy as np
import pandas as pd

from pytrackdoctor.errors import InvalidPointsError, TooFewPointsError, TooManyPointsError
from pytrackdoctor.models import GeoPoint

_LOG = logging.getLogger(__name__)

MIN_POINTS = 2
MAX_POINTS = 100_000
# 2000-01-01T00:00:00Z .. 2100-01-01T00:00:00Z
MIN_TIMESTAMP = 946_684_800.0
MAX_TIMESTAMP = 4_102_444_800.0

FRAME_COLUMNS = ("lat", "lon", "time", "elevation", "speed", "bearing")


def _parse_row(row, out: np.ndarray) -> Optional[str]:
    """Fill ``out`` (length 6, NaN-initialised) from one raw row; return a reason on failure."""
    if isinstance(row, GeoPoint):
        row = row.as_row()
    if isinstance(row, (str, bytes)) or not isinstance(row, (Sequence, np.ndarray)):
        return "not a sequence"
    if not 3 <= len(row) <= 6:
        return f"expected 3 to 6 values, got {len(row)}"

    for j, value in enumerate(row):
        if value is None:
            if j < 3:
                return f"missing {FRAME_COLUMNS[j]}"
            continue
        if isinstance(value, bool) or not isinstance(value, (Real, np.number)):
            return f"non-numeric {FRAME_COLUMNS[j]}"
        out[j] = float(value)
    return None


def validate_points(points: Union[Iterable, np.ndarray, None]) -> pd.DataFrame:
    """
    Validate a raw point batch and return it as the canonical pipeline frame.

    Parameters
    ----------
    points : iterable of rows, array of shape (n, 3..6), or iterable of GeoPoint
        Raw GPS fixes in input order.

    Returns
    -------
    pd.DataFrame
        Columns ``index, lat, lon, time, elevation, speed, bearing,
        speed_supplied, bearing_supplied``. Absent optional values are NaN.

    Raises
    ------
    TooFewPointsError
        Fewer than 2 rows.
    TooManyPointsError
        More than 100,000 rows (``details["limit"] == 100000``).
    InvalidPointsError
        One or more rows are malformed: wrong length, non-numeric or non-finite
        lat/lon/time, coordinates out of range, timestamp outside 2000-2100,
        timestamp earlier than its predecessor, infinite optional values,
        negative speed or bearing outside [0, 360].
    """
    if points is None:
        raise TooFewPointsError(0, MIN_POINTS)
    rows = points.tolist() if isinstance(points, np.ndarray) else list(points)

    n = len(rows)
    if n < MIN_POINTS:
        raise TooFewPointsError(n, MIN_POINTS)
    if n > MAX_POINTS:
        raise TooManyPointsError(n, MAX_POINTS)

    values = np.full((n, 6), np.nan, dtype=float)
    reasons: Dict[int, str] = {}
    for i, row in enumerate(rows):
        reason = _parse_row(row, values[i])
        if reason is not None:
            reasons[i] = reason

    lat, lon, t, ele, speed, bearing = values.T

    # ========== Range Checks (vectorised) ==========
    checks = (
        (~np.isfinite(lat) | ~np.isfinite(lon) | ~np.isfinite(t), "non-finite lat/lon/time"),
        ((lat < -90.0) | (lat > 90.0), "latitude out of range"),
        ((lon < -180.0) | (lon > 180.0), "longitude out of range"),
        ((t < MIN_TIMESTAMP) | (t > MAX_TIMESTAMP), "timestamp out of range"),
        (np.isinf(ele) | np.isinf(speed) | np.isinf(bearing), "infinite optional value"),
        (speed < 0.0, "negative speed"),
        ((bearing < 0.0) | (bearing > 360.0), "bearing out of range"),
    )
    with np.errstate(invalid="ignore"):
        for mask, reason in checks:
            for i in np.flatnonzero(mask):
                reasons.setdefault(int(i), reason)

        # Non-decreasing order, judged against the preceding row's timestamp
        decreasing = np.zeros(n, dtype=bool)
        decreasing[1:] = t[1:] < t[:-1]
    for i in np.flatnonzero(decreasing):
        reasons.setdefault(int(i), "timestamp earlier than previous point")

    if reasons:
        invalid = sorted(reasons)
        _LOG.debug("Rejected batch of %d points: %d invalid", n, len(invalid))
        raise InvalidPointsError(invalid, reasons)

    frame = pd.DataFrame({
        "index": np.arange(n, dtype=np.int64),
        "lat": lat,
        "lon": lon,
        "time": t,
        "elevation": ele,
        "speed": speed,
        "bearing": bearing,
    })
    frame["speed_supplied"] = np.isfinite(speed)
    frame["bearing_supplied"] = np.isfinite(bearing)
    _LOG.debug("Accepted %d points spanning %.1f s", n, float(t[-1] - t[0]))
    return frame

