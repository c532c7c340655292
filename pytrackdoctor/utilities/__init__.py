"""
Utilities module for the pytrackdoctor library.

Geodesy helpers, DataFrame conversion, robust statistics, cancellation and
logging setup shared by the pipeline stages.
"""

from pytrackdoctor.utilities.geodesy import (
    haversine,
    initial_bearing,
    cross_track_distance,
    geodesic_interpolate,
    longitude_extent,
    LocalProjection,
)
from pytrackdoctor.utilities.frames import frame_to_rows, points_to_frame, to_epoch_seconds
from pytrackdoctor.utilities.log import get_logger

__all__ = [
    # Geodesy
    'haversine',
    'initial_bearing',
    'cross_track_distance',
    'geodesic_interpolate',
    'longitude_extent',
    'LocalProjection',
    # DataFrames
    'frame_to_rows',
    'points_to_frame',
    'to_epoch_seconds',
    # Logging
    'get_logger',
]
