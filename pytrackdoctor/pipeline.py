"""
End-to-end diagnosis pipeline.

Stages run strictly in order, each taking the working frame and handing a
new one to the next:

1. validation            (always)
2. kinematics            (always)
3. anomaly detection     (always)
4. adaptive RTS smoothing    ``algorithms.adaptive_rts``
5. gap interpolation         ``algorithms.spline_interpolation``
6. outlier removal           ``algorithms.outlier_removal``
7. Douglas-Peucker           ``algorithms.simplification``
8. statistics and health score

The caller gets either a fully accounted :class:`DiagnosisReport` or a
single :class:`~pytrackdoctor.errors.DiagnosisError`.
"""

import logging
import time
import uuid
from typing import Any, List, Mapping, Optional, Union

import numpy as np
import pandas as pd
import polars as pl
from tqdm import tqdm

from pytrackdoctor.diagnostics.detector import detect_anomalies
from pytrackdoctor.diagnostics.health_score import score_health
from pytrackdoctor.diagnostics.stats import compute_trajectory_stats
from pytrackdoctor.errors import DiagnosisError, InternalDiagnosisError
from pytrackdoctor.models import (
    AlgorithmInfo,
    AnnotatedPoint,
    DiagnosisReport,
    DiagnosticsInfo,
    PointStatus,
    Severity,
)
from pytrackdoctor.options import DiagnoseOptions
from pytrackdoctor.preprocessing.compression import douglas_peucker
from pytrackdoctor.preprocessing.filtration import adaptive_rts_smooth
from pytrackdoctor.preprocessing.interpolation import fill_gaps
from pytrackdoctor.preprocessing.kinematics import derive_kinematics
from pytrackdoctor.preprocessing.outliers import remove_outliers
from pytrackdoctor.preprocessing.validation import validate_points
from pytrackdoctor.utilities.cancel import CancelToken, raise_if_cancelled
from pytrackdoctor.utilities.frames import frame_to_rows

_LOG = logging.getLogger(__name__)

STAGES = (
    "kinematics",
    "anomaly_detector",
    "adaptive_rts",
    "spline_interpolation",
    "outlier_removal",
    "douglas_peucker",
    "health_score",
)


def _optional(value) -> Optional[float]:
    value = float(value)
    return value if np.isfinite(value) else None


def _annotated_points(frame: pd.DataFrame) -> List[AnnotatedPoint]:
    columns = (
        "index", "lat", "lon", "time", "elevation", "speed", "bearing", "acceleration",
        "status", "severity", "original_lat", "original_lon", "corrected_lat", "corrected_lon", "fixed_by",
    )
    points = []
    for (index, lat, lon, t, ele, speed, bearing, accel, status, severity,
         o_lat, o_lon, c_lat, c_lon, fixed_by) in zip(*(frame[c].to_numpy() for c in columns)):
        points.append(AnnotatedPoint(
            index=int(index),
            lat=float(lat),
            lon=float(lon),
            timestamp=float(t),
            elevation=_optional(ele),
            speed=_optional(speed),
            bearing=_optional(bearing),
            acceleration=_optional(accel),
            status=PointStatus(status),
            severity=Severity(severity) if isinstance(severity, str) else None,
            original_lat=float(o_lat),
            original_lon=float(o_lon),
            corrected_lat=float(c_lat),
            corrected_lon=float(c_lon),
            fixed_by=fixed_by if isinstance(fixed_by, str) else None,
        ))
    return points


def _check_accounting(
    point_count: int,
    normal: int,
    anomalous: int,
    final_count: int,
    outlier_removed: int,
    simplified: int,
    interpolated: int,
    algorithms: List[AlgorithmInfo],
) -> None:
    if normal + anomalous != point_count:
        raise InternalDiagnosisError(
            "Detector status counts do not cover the input",
            {"point_count": point_count, "normal_points": normal, "anomaly_points": anomalous},
        )
    expected = point_count - outlier_removed - simplified + interpolated
    if final_count != expected or final_count < 0:
        raise InternalDiagnosisError(
            "Corrected point count does not match stage accounting",
            {"expected": expected, "actual": final_count},
        )
    for info in algorithms:
        if info.processed_points < info.fixed_points + info.removed_points:
            raise InternalDiagnosisError(
                f"Stage '{info.name}' reports more fixed/removed than processed points",
                {"stage": info.name},
            )


def _run(
    source: pd.DataFrame,
    opts: DiagnoseOptions,
    report_id: str,
    cancel: Optional[CancelToken],
    progress: tqdm,
) -> DiagnosisReport:
    algo = opts.algorithms
    tuning = opts.tuning
    point_count = len(source)
    algorithms: List[AlgorithmInfo] = []
    raise_if_cancelled(cancel, "validation")

    def _advance(stage: str) -> None:
        progress.set_postfix_str(stage)
        progress.update(1)
        raise_if_cancelled(cancel, stage)

    # ========== Kinematics & Detection ==========
    frame, info = derive_kinematics(source)
    algorithms.append(info)
    _advance("kinematics")

    frame, detection = detect_anomalies(frame, opts.thresholds, tuning, cancel)
    algorithms.append(detection.info)
    gaps = detection.gaps
    _advance("anomaly_detector")

    # ========== Correction ==========
    fixed_points = 0
    mean_displacement = 0.0
    if algo.adaptive_rts:
        frame, info = adaptive_rts_smooth(frame, tuning, cancel)
        algorithms.append(info)
        fixed_points = info.fixed_points
        mean_displacement = float(info.parameters.get("mean_displacement_m", 0.0))
    _advance("adaptive_rts")

    interpolated = 0
    if algo.spline_interpolation:
        frame, info, gaps = fill_gaps(frame, gaps, tuning, cancel)
        algorithms.append(info)
        interpolated = info.added_points
        for anomaly in detection.anomalies:
            if anomaly.type is PointStatus.MISSING:
                anomaly.gaps = list(gaps)
    _advance("spline_interpolation")

    outlier_removed = 0
    if algo.outlier_removal:
        frame, info = remove_outliers(frame, tuning, cancel)
        algorithms.append(info)
        outlier_removed = info.removed_points
    _advance("outlier_removal")

    simplified = 0
    if algo.simplification:
        frame, info = douglas_peucker(frame, opts.output.simplify_epsilon, cancel)
        algorithms.append(info)
        simplified = info.removed_points
    _advance("douglas_peucker")

    # Derived speed/bearing/acceleration describe the repaired path
    frame, _ = derive_kinematics(frame, lat_col="corrected_lat", lon_col="corrected_lon")

    _check_accounting(
        point_count, detection.normal_points, detection.anomaly_points, len(frame),
        outlier_removed, simplified, interpolated, algorithms,
    )

    # ========== Statistics & Health ==========
    original = compute_trajectory_stats(source, "lat", "lon")
    corrected = compute_trajectory_stats(frame, "corrected_lat", "corrected_lon")
    health = score_health(
        point_count=point_count,
        duration_seconds=original.duration_seconds,
        gaps=gaps,
        status_counts=detection.counts,
        outlier_removed=outlier_removed,
        mean_displacement_m=mean_displacement,
        corrected=frame,
        thresholds=opts.thresholds,
        tuning=tuning,
    )
    _advance("health_score")

    diagnostics = DiagnosticsInfo(
        normal_points=detection.normal_points,
        anomaly_points=detection.anomaly_points,
        fixed_points=fixed_points,
        removed_points=outlier_removed + simplified,
        interpolated_points=interpolated,
        total_processed=fixed_points + outlier_removed + simplified,
        anomalies=detection.anomalies,
        algorithms=algorithms,
        health_score=health,
        outlier_removed_points=outlier_removed,
        simplified_points=simplified,
    )
    return DiagnosisReport(
        report_id=report_id,
        original=original,
        corrected=corrected,
        diagnostics=diagnostics,
        points=_annotated_points(frame) if opts.output.include_points else None,
    )


def diagnose(
    points,
    options: Union[DiagnoseOptions, Mapping[str, Any], None] = None,
    report_id: Optional[str] = None,
    cancel: Optional[CancelToken] = None,
    verbose: bool = False,
) -> DiagnosisReport:
    """
    Diagnose and repair a GPS trajectory.

    Parameters
    ----------
    points : iterable
        Rows ``[lat, lon, time, elevation?, speed?, bearing?]`` (time in epoch
        seconds, speed in m/s, bearing in degrees) or GeoPoint objects, in
        trajectory order.
    options : DiagnoseOptions or mapping, optional
        Stage toggles, thresholds and output settings. Mappings may use the
        camelCase wire names (``{"thresholds": {"maxSpeed": 80}}``).
    report_id : str, optional
        Identifier to put on the report; a uuid4 hex string when omitted.
        Passing one makes the report fully deterministic.
    cancel : object with ``is_set()``, optional
        E.g. a ``threading.Event``; checked between stages and inside long
        loops.
    verbose : bool, default=False
        Show a tqdm progress bar over the stages.

    Returns
    -------
    DiagnosisReport

    Raises
    ------
    TooFewPointsError, TooManyPointsError, InvalidPointsError
        The input batch was rejected; nothing was processed.
    InvalidOptionsError
        An option value is out of range or unknown.
    DiagnosisCancelledError
        ``cancel`` was set before the pipeline finished.
    InternalDiagnosisError
        Any unexpected failure, with the original exception chained.

    Examples
    --------
    >>> report = diagnose([[22.5431, 113.9510, 1705318200], [22.5432, 113.9511, 1705318203]])
    >>> report.diagnostics.health_score.rating
    <Rating.GOOD: 'good'>
    """
    opts = DiagnoseOptions.coerce(options)
    source = validate_points(points)
    report_id = report_id or uuid.uuid4().hex

    started = time.perf_counter()
    progress = tqdm(total=len(STAGES), desc="diagnose", disable=not verbose)
    try:
        report = _run(source, opts, report_id, cancel, progress)
    except DiagnosisError:
        raise
    except Exception as exc:
        _LOG.exception("Diagnosis %s failed", report_id)
        raise InternalDiagnosisError(
            f"Unexpected failure during diagnosis: {exc}",
            {"exception": type(exc).__name__},
        ) from exc
    finally:
        progress.close()

    d = report.diagnostics
    _LOG.info(
        "Diagnosis %s: %d points, %d anomalous, %d fixed, %d interpolated, %d removed, health %d (%s) in %.3f s",
        report_id, len(source), d.anomaly_points, d.fixed_points, d.interpolated_points,
        d.removed_points, d.health_score.total, d.health_score.rating.value, time.perf_counter() - started,
    )
    return report


def diagnose_dataframe(
    df: Union[pd.DataFrame, pl.DataFrame],
    lat_col: str = "lat",
    lon_col: str = "lon",
    time_col: str = "time",
    elevation_col: Optional[str] = None,
    speed_col: Optional[str] = None,
    bearing_col: Optional[str] = None,
    options: Union[DiagnoseOptions, Mapping[str, Any], None] = None,
    report_id: Optional[str] = None,
    cancel: Optional[CancelToken] = None,
    verbose: bool = False,
) -> DiagnosisReport:
    """
    Diagnose a trajectory held in a pandas or polars DataFrame.

    The time column may hold epoch seconds or datetimes (naive values are
    read as UTC). Rows with unparseable values are rejected by validation
    like any other invalid point.

    Raises
    ------
    ValueError
        If a named column is missing.

    Examples
    --------
    >>> report = diagnose_dataframe(df, lat_col="latitude", lon_col="longitude")  # doctest: +SKIP
    >>> report.points_frame(as_polars=True)  # doctest: +SKIP
    """
    rows = frame_to_rows(df, lat_col, lon_col, time_col, elevation_col, speed_col, bearing_col)
    return diagnose(rows, options=options, report_id=report_id, cancel=cancel, verbose=verbose)


__all__ = ["diagnose", "diagnose_dataframe", "STAGES"]
