"""
Diagnostics module for pytrackdoctor.

Anomaly classification, trajectory statistics and the composite health score.
"""

from pytrackdoctor.diagnostics.detector import CLASSIFIERS, DetectionResult, detect_anomalies
from pytrackdoctor.diagnostics.stats import compute_trajectory_stats
from pytrackdoctor.diagnostics.health_score import WEIGHTS, score_health

__all__ = [
    # Detection
    'CLASSIFIERS',
    'DetectionResult',
    'detect_anomalies',
    # Statistics
    'compute_trajectory_stats',
    # Health
    'WEIGHTS',
    'score_health',
]
