"""Shared pytest fixtures & track factories.

Tracks are built from elapsed time (constant velocity), so a timestamp gap
keeps the vehicle on the same line, and individual fixes can be displaced
afterwards to plant anomalies at known indices.
"""

import math

import numpy as np
import pytest

from pytrackdoctor.options import ThresholdOptions, TuningOptions
from pytrackdoctor.preprocessing.kinematics import derive_kinematics
from pytrackdoctor.preprocessing.validation import validate_points
from pytrackdoctor.diagnostics.detector import detect_anomalies

T0 = 1705318200.0
START = (22.5431, 113.9510)
M_PER_DEG = math.radians(1.0) * 6_371_000.0


# --- Factory helpers -------------------------------------------------
def make_track(
    n=60,
    cadence=3.0,
    speed_mps=25.0 / 3.0,
    bearing_deg=0.0,
    start=START,
    t0=T0,
    gap_after=None,
    gap_seconds=400.0,
    elevation=None,
):
    """Straight constant-velocity track as canonical rows.

    ``gap_after=k`` makes the interval between rows k and k+1 last
    ``gap_seconds`` instead of ``cadence``.
    """
    lat0, lon0 = start
    times = t0 + cadence * np.arange(n, dtype=float)
    if gap_after is not None:
        times[gap_after + 1:] += gap_seconds - cadence
    dist = speed_mps * (times - t0)
    north = dist * math.cos(math.radians(bearing_deg))
    east = dist * math.sin(math.radians(bearing_deg))
    lats = lat0 + north / M_PER_DEG
    lons = lon0 + east / (M_PER_DEG * math.cos(math.radians(lat0)))
    lons = (lons + 180.0) % 360.0 - 180.0
    rows = [[float(la), float(lo), float(t)] for la, lo, t in zip(lats, lons, times)]
    if elevation is not None:
        for k, row in enumerate(rows):
            row.append(float(elevation + 0.1 * k))
    return rows


def displace(rows, i, north_m=0.0, east_m=0.0):
    """Move row ``i`` in place by the given offsets in meters."""
    lat, lon = rows[i][0], rows[i][1]
    rows[i][0] = lat + north_m / M_PER_DEG
    rows[i][1] = lon + east_m / (M_PER_DEG * math.cos(math.radians(lat)))
    return rows


def make_messy_track():
    """80 rows: lateral spike at 20, 5 km jump at 40, 400 s gap after 60."""
    rows = make_track(n=80, gap_after=60)
    displace(rows, 20, east_m=60.0)
    displace(rows, 40, north_m=5000.0)
    return rows


def detect(rows, thresholds=None, tuning=None):
    """Validate, derive kinematics and run the detector on raw rows."""
    frame = validate_points(rows)
    frame, _ = derive_kinematics(frame)
    return detect_anomalies(frame, thresholds or ThresholdOptions(), tuning or TuningOptions())


def status_of(frame, index):
    return frame.loc[frame["index"] == index, "status"].iloc[0]


def lateral_offset_m(lat, lon, rows):
    """East-west distance of a fix from a north-bound track's line."""
    lon0 = rows[0][1]
    return abs(lon - lon0) * M_PER_DEG * math.cos(math.radians(lat))


# --- Fixtures --------------------------------------------------------
@pytest.fixture
def straight_rows():
    return make_track()


@pytest.fixture
def messy_rows():
    return make_messy_track()


@pytest.fixture
def thresholds():
    return ThresholdOptions()


@pytest.fixture
def tuning():
    return TuningOptions()
