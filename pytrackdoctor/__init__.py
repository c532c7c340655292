"""
pytrackdoctor - Diagnosis and repair of GPS trajectories.

pytrackdoctor ingests an ordered batch of raw GPS fixes, classifies every
anomaly (gaps, jumps, speed and acceleration violations, sampling density
problems, drift and statistical outliers), repairs what it can and scores
the overall health of the track.

Components
----------
- **preprocessing**: Validation, kinematics, smoothing, gap filling, outlier removal, simplification
- **diagnostics**: Anomaly detection, trajectory statistics, health score
- **utilities**: Geodesy, DataFrame conversion, logging setup

Quick Start
-----------
```python
import pytrackdoctor as ptd

points = [
    [22.5431, 113.9510, 1705318200],
    [22.5432, 113.9512, 1705318203, 12.0],        # elevation
    [22.5433, 113.9514, 1705318206, 12.5, 7.9],   # elevation, speed (m/s)
]
report = ptd.diagnose(points, options={"thresholds": {"maxSpeed": 80}}, report_id="trip-42")

print(report.diagnostics.health_score.total, report.diagnostics.health_score.rating.value)
payload = report.to_dict()                    # camelCase wire form

# DataFrames (pandas or polars) work too
report = ptd.diagnose_dataframe(df, lat_col="latitude", lon_col="longitude", time_col="timestamp")
points_df = report.points_frame()
```
"""

import logging

from pytrackdoctor._version import __version__, __version_info__
from pytrackdoctor import preprocessing, diagnostics, utilities
from pytrackdoctor.errors import (
    DiagnosisError,
    PointValidationError,
    TooFewPointsError,
    TooManyPointsError,
    InvalidPointsError,
    InternalDiagnosisError,
    DiagnosisCancelledError,
    InvalidOptionsError,
)
from pytrackdoctor.models import (
    PointStatus,
    Severity,
    Rating,
    GeoPoint,
    AnnotatedPoint,
    DiagnosisReport,
)
from pytrackdoctor.options import (
    AlgorithmOptions,
    ThresholdOptions,
    OutputOptions,
    TuningOptions,
    DiagnoseOptions,
)
from pytrackdoctor.pipeline import diagnose, diagnose_dataframe

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    '__version__',
    '__version_info__',
    'preprocessing',
    'diagnostics',
    'utilities',
    # Entry points
    'diagnose',
    'diagnose_dataframe',
    # Options
    'AlgorithmOptions',
    'ThresholdOptions',
    'OutputOptions',
    'TuningOptions',
    'DiagnoseOptions',
    # Model
    'PointStatus',
    'Severity',
    'Rating',
    'GeoPoint',
    'AnnotatedPoint',
    'DiagnosisReport',
    # Errors
    'DiagnosisError',
    'PointValidationError',
    'TooFewPointsError',
    'TooManyPointsError',
    'InvalidPointsError',
    'InternalDiagnosisError',
    'DiagnosisCancelledError',
    'InvalidOptionsError',
]
