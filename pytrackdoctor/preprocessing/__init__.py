"""
Trajectory preprocessing and repair stages for pytrackdoctor.

This module provides the stages that prepare and repair GPS trajectories:
- Validation: Reject malformed point batches before any processing
- Kinematics: Derive speed, bearing and acceleration from consecutive fixes
- Filtering: Reposition flagged points with an adaptive Kalman/RTS smoother
- Interpolation: Fill timestamp gaps with spline or geodesic points
- Outliers: Delete statistically deviating points
- Compression: Douglas-Peucker simplification
- Sampling rate: Calculate trajectory sampling rates
"""

# Validation
from pytrackdoctor.preprocessing.validation import validate_points

# Kinematics
from pytrackdoctor.preprocessing.kinematics import derive_kinematics

# Filtering
from pytrackdoctor.preprocessing.filtration import adaptive_rts_smooth

# Interpolation
from pytrackdoctor.preprocessing.interpolation import fill_gaps

# Outliers
from pytrackdoctor.preprocessing.outliers import remove_outliers

# Compression
from pytrackdoctor.preprocessing.compression import douglas_peucker, douglas_peucker_mask, simplification_error

# Sampling rate
from pytrackdoctor.preprocessing.sampling_rate import get_sampling_rate

__all__ = [
    # Validation
    'validate_points',
    # Kinematics
    'derive_kinematics',
    # Filtering
    'adaptive_rts_smooth',
    # Interpolation
    'fill_gaps',
    # Outliers
    'remove_outliers',
    # Compression
    'douglas_peucker',
    'douglas_peucker_mask',
    'simplification_error',
    # Sampling rate
    'get_sampling_rate',
]
