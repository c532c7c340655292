"""
Spherical and ellipsoidal geodesy helpers shared by every pipeline stage.

Distances and bearings use the haversine / initial-bearing formulas on a
sphere of radius 6,371,000 m, vectorised with numpy. Metric work that needs
a plane (Kalman smoothing, local neighbourhood fits) goes through a cached
Azimuthal Equidistant (AEQD) projection centred on the trajectory, which
preserves distances from the centre at every latitude.

Antimeridian and polar conventions
----------------------------------
- Longitude differences are never taken naively: haversine and bearing only
  use ``sin``/``cos`` of the difference, so a hop from 179.9 to -179.9 is a
  ~22 km step, not a 40,000 km one.
- Curve fitting over longitude works on ``unwrap_longitudes`` output and the
  result is folded back with ``wrap_longitude``.
- The bearing from an exact pole is undefined; ``atan2(0, x)`` yields 0 or
  180 degrees and that value is returned as-is.
"""

import threading
import warnings
from typing import Dict, Tuple

import numpy as np
from pyproj import Geod, Transformer
from pyproj.exceptions import CRSError, ProjError

EARTH_RADIUS_M = 6_371_000.0
METERS_PER_DEGREE = 111_320.0

# ========== Global Geodesic Calculator ==========
_GEOD = Geod(ellps="WGS84")

# ========== AEQD Projection Transformer Cache ==========
# Key: (rounded_lat, rounded_lon, precision) -> (forward_transformer, inverse_transformer)
_transformer_cache: Dict[Tuple[float, float, int], Tuple[Transformer, Transformer]] = {}
_transformer_lock = threading.Lock()
MAX_CACHED_TRANSFORMERS = 256


def haversine(lat1, lon1, lat2, lon2):
    """
    Great-circle distance in meters between two (arrays of) points.

    Parameters
    ----------
    lat1, lon1, lat2, lon2 : float or np.ndarray
        Coordinates in degrees. Arrays broadcast against each other.

    Returns
    -------
    float or np.ndarray
        Distance in meters along the shortest great-circle path.

    Examples
    --------
    >>> round(haversine(0.0, 179.9, 0.0, -179.9))
    22239
    """
    lat1 = np.radians(lat1)
    lat2 = np.radians(lat2)
    dlat = lat2 - lat1
    dlon = np.radians(np.asarray(lon2, dtype=float) - np.asarray(lon1, dtype=float))
    a = np.sin(dlat / 2.0) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlon / 2.0) ** 2
    c = 2.0 * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))
    return EARTH_RADIUS_M * c


def initial_bearing(lat1, lon1, lat2, lon2):
    """Initial compass bearing in degrees [0, 360) from point 1 towards point 2."""
    phi1 = np.radians(lat1)
    phi2 = np.radians(lat2)
    dlon = np.radians(np.asarray(lon2, dtype=float) - np.asarray(lon1, dtype=float))
    y = np.sin(dlon) * np.cos(phi2)
    x = np.cos(phi1) * np.sin(phi2) - np.sin(phi1) * np.cos(phi2) * np.cos(dlon)
    return np.mod(np.degrees(np.arctan2(y, x)), 360.0)


def wrap_longitude(lon):
    """Fold longitudes into [-180, 180), keeping an exact +180 input as 180."""
    lon = np.asarray(lon, dtype=float)
    wrapped = np.mod(lon + 180.0, 360.0) - 180.0
    return np.where((lon == 180.0), 180.0, wrapped)


def unwrap_longitudes(lons: np.ndarray) -> np.ndarray:
    """Continuous longitude series (no +-360 jumps), suitable for curve fitting."""
    lons = np.asarray(lons, dtype=float)
    if lons.size == 0:
        return lons.copy()
    return np.degrees(np.unwrap(np.radians(lons)))


def robust_center(lats: np.ndarray, lons: np.ndarray) -> Tuple[float, float]:
    """
    Median-based centre of a set of points.

    Longitudes are taken relative to the first point before the median so
    that a trajectory straddling the antimeridian is centred on it, not on
    the Greenwich side.
    """
    lats = np.asarray(lats, dtype=float)
    lons = np.asarray(lons, dtype=float)
    ref = float(lons[0])
    rel = np.mod(lons - ref + 180.0, 360.0) - 180.0
    cen_lon = float(wrap_longitude(ref + float(np.median(rel))))
    cen_lat = float(np.median(lats))
    return cen_lat, cen_lon


def get_aeqd_transformer(cen_lat: float, cen_lon: float, precision: int = 6) -> Tuple[Transformer, Transformer]:
    """
    Return the cached (forward, inverse) AEQD transformer pair for a centre.

    The centre is rounded to ``precision`` decimals so that nearby tracks
    share a pair; past ``MAX_CACHED_TRANSFORMERS`` centres the oldest entry
    is evicted.
    Transformers are immutable once created, so concurrent requests can share
    them safely.
    """
    key = (round(cen_lat, precision), round(cen_lon, precision), precision)
    pair = _transformer_cache.get(key)
    if pair is not None:
        return pair

    # +proj=aeqd: true distances and azimuths from (lat_0, lon_0)
    proj = f"+proj=aeqd +lat_0={key[0]:.9f} +lon_0={key[1]:.9f} +datum=WGS84 +units=m +no_defs"
    fwd = Transformer.from_crs("EPSG:4326", proj, always_xy=True)
    inv = Transformer.from_crs(proj, "EPSG:4326", always_xy=True)
    with _transformer_lock:
        _transformer_cache[key] = (fwd, inv)
        while len(_transformer_cache) > MAX_CACHED_TRANSFORMERS:
            _transformer_cache.pop(next(iter(_transformer_cache)))
    return fwd, inv


class LocalProjection:
    """
    Forward/inverse projection of lat/lon arrays to a local metric plane.

    Parameters
    ----------
    cen_lat, cen_lon : float
        Projection centre, usually from :func:`robust_center`.
    """

    def __init__(self, cen_lat: float, cen_lon: float):
        self.center = (cen_lat, cen_lon)
        try:
            self._fwd, self._inv = get_aeqd_transformer(cen_lat, cen_lon)
            self.name = "aeqd"
        except (CRSError, ProjError):
            warnings.warn("AEQD projection failed; falling back to EPSG:3857 projection.")
            self._fwd = Transformer.from_crs("EPSG:4326", "EPSG:3857", always_xy=True)
            self._inv = Transformer.from_crs("EPSG:3857", "EPSG:4326", always_xy=True)
            self.name = "epsg:3857"

    @classmethod
    def around(cls, lats: np.ndarray, lons: np.ndarray) -> "LocalProjection":
        return cls(*robust_center(lats, lons))

    def to_xy(self, lats, lons) -> Tuple[np.ndarray, np.ndarray]:
        xs, ys = self._fwd.transform(np.asarray(lons, dtype=float), np.asarray(lats, dtype=float))
        return np.asarray(xs, dtype=float), np.asarray(ys, dtype=float)

    def to_latlon(self, xs, ys) -> Tuple[np.ndarray, np.ndarray]:
        lons, lats = self._inv.transform(np.asarray(xs, dtype=float), np.asarray(ys, dtype=float))
        return np.asarray(lats, dtype=float), wrap_longitude(lons)


def cross_track_distance(lat, lon, lat1: float, lon1: float, lat2: float, lon2: float) -> np.ndarray:
    """
    Distance in meters from points to the great-circle *segment* 1-2.

    When the perpendicular foot falls outside the segment (the angle at either
    endpoint exceeds 90 degrees), the distance to the nearer endpoint is
    returned instead, so the result is a true point-to-segment distance.
    """
    lat = np.asarray(lat, dtype=float)
    lon = np.asarray(lon, dtype=float)
    d13 = haversine(lat1, lon1, lat, lon) / EARTH_RADIUS_M
    d23 = haversine(lat2, lon2, lat, lon) / EARTH_RADIUS_M
    d12 = float(haversine(lat1, lon1, lat2, lon2)) / EARTH_RADIUS_M
    if d12 == 0.0:
        return d13 * EARTH_RADIUS_M

    th12 = np.radians(initial_bearing(lat1, lon1, lat2, lon2))
    th13 = np.radians(initial_bearing(lat1, lon1, lat, lon))
    th21 = np.radians(initial_bearing(lat2, lon2, lat1, lon1))
    th23 = np.radians(initial_bearing(lat2, lon2, lat, lon))

    dxt = np.abs(np.arcsin(np.clip(np.sin(d13) * np.sin(th13 - th12), -1.0, 1.0)))
    inside = (np.cos(th13 - th12) >= 0.0) & (np.cos(th23 - th21) >= 0.0)
    return np.where(inside, dxt, np.minimum(d13, d23)) * EARTH_RADIUS_M


def geodesic_interpolate(lat_a, lon_a, lat_b, lon_b, fractions) -> Tuple[np.ndarray, np.ndarray]:
    """
    Vectorised interpolation along WGS84 geodesics.

    ``fractions`` in [0, 1] give the position between a and b. All inputs
    broadcast to a common 1D shape. Returns ``(lats, lons)``.
    """
    fractions = np.asarray(fractions, dtype=float)
    lat_a, lon_a, lat_b, lon_b = (np.broadcast_to(np.asarray(v, dtype=float), fractions.shape)
                                  for v in (lat_a, lon_a, lat_b, lon_b))
    # pyproj.Geod expects lon, lat order
    az12, _, s12 = _GEOD.inv(lon_a, lat_a, lon_b, lat_b)
    lon_i, lat_i, _ = _GEOD.fwd(lon_a, lat_a, az12, np.asarray(s12) * fractions)
    return np.asarray(lat_i, dtype=float), wrap_longitude(lon_i)


def longitude_extent(lons: np.ndarray) -> Tuple[float, float]:
    """
    Smallest (west, east) longitude arc covering all points.

    If the arc crosses the antimeridian the result has ``west > east``.
    """
    lons = np.sort(np.asarray(lons, dtype=float))
    if lons.size == 0:
        raise ValueError("longitude_extent requires at least one longitude")
    if lons.size == 1:
        return float(lons[0]), float(lons[0])
    gaps = np.diff(np.concatenate([lons, [lons[0] + 360.0]]))
    widest = int(np.argmax(gaps))
    if widest == lons.size - 1:
        # Largest empty arc wraps through the antimeridian: plain min/max
        return float(lons[0]), float(lons[-1])
    return float(lons[widest + 1]), float(lons[widest])


__all__ = [
    "EARTH_RADIUS_M",
    "METERS_PER_DEGREE",
    "haversine",
    "initial_bearing",
    "wrap_longitude",
    "unwrap_longitudes",
    "robust_center",
    "get_aeqd_transformer",
    "LocalProjection",
    "cross_track_distance",
    "geodesic_interpolate",
    "longitude_extent",
]
