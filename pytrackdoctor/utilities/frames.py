"""
DataFrame conversion helpers.

Public entry points accept pandas or polars frames and hand results back in
the caller's flavour; internally everything runs on pandas.
"""

from dataclasses import asdict, is_dataclass
from enum import Enum
from typing import Iterable, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
import polars as pl

# ========== DataFrame Type Preservation Helpers ==========

def _to_pandas_preserve(df: Union[pd.DataFrame, pl.DataFrame]) -> Tuple[pd.DataFrame, bool]:
    """
    Convert input DataFrame to pandas and track original type.

    Returns: (pandas_df, was_polars_flag)
    """
    if isinstance(df, pl.DataFrame):
        return df.to_pandas(), True
    if isinstance(df, pd.DataFrame):
        return df.copy(), False
    raise ValueError("df must be either a pandas DataFrame or a polars DataFrame.")


def _from_pandas_preserve(pdf: pd.DataFrame, was_polars: bool) -> Union[pd.DataFrame, pl.DataFrame]:
    """Convert a pandas DataFrame back to polars when the input was polars."""
    return pl.from_pandas(pdf) if was_polars else pdf


def to_epoch_seconds(series: pd.Series) -> np.ndarray:
    """
    Timestamps as float seconds since the Unix epoch.

    Numeric columns are taken as epoch seconds already. Datetime-like and
    string columns are parsed with ``pd.to_datetime``; naive values are read
    as UTC.
    """
    if pd.api.types.is_numeric_dtype(series) and not pd.api.types.is_bool_dtype(series):
        return series.to_numpy(dtype=float)
    times = pd.to_datetime(series, utc=True)
    epoch = pd.Timestamp(0, tz="UTC")
    return ((times - epoch) / pd.Timedelta(seconds=1)).to_numpy(dtype=float)


def frame_to_rows(
    df: Union[pd.DataFrame, pl.DataFrame],
    lat_col: str = "lat",
    lon_col: str = "lon",
    time_col: str = "time",
    elevation_col: Optional[str] = None,
    speed_col: Optional[str] = None,
    bearing_col: Optional[str] = None,
) -> List[List[Optional[float]]]:
    """
    Canonical ``[lat, lon, time, elevation, speed, bearing]`` rows from a frame.

    Raises
    ------
    ValueError
        If a named column is missing.
    """
    pdf, _ = _to_pandas_preserve(df)
    wanted = [lat_col, lon_col, time_col] + [c for c in (elevation_col, speed_col, bearing_col) if c]
    missing = [c for c in wanted if c not in pdf.columns]
    if missing:
        raise ValueError(f"Column(s) {missing} not found in DataFrame.")

    columns = [
        pd.to_numeric(pdf[lat_col], errors="coerce").to_numpy(dtype=float),
        pd.to_numeric(pdf[lon_col], errors="coerce").to_numpy(dtype=float),
        to_epoch_seconds(pdf[time_col]),
    ]
    for col in (elevation_col, speed_col, bearing_col):
        if col is None:
            columns.append(np.full(len(pdf), np.nan))
        else:
            columns.append(pd.to_numeric(pdf[col], errors="coerce").to_numpy(dtype=float))
    return np.column_stack(columns).tolist() if len(pdf) else []


def _plain(value):
    if isinstance(value, Enum):
        return value.value
    return value


def points_to_frame(points: Iterable, as_polars: bool = False) -> Union[pd.DataFrame, pl.DataFrame]:
    """Flatten point dataclasses into a DataFrame, one row per point."""
    records = []
    for point in points:
        record = asdict(point) if is_dataclass(point) else dict(point)
        records.append({k: _plain(v) for k, v in record.items()})
    pdf = pd.DataFrame.from_records(records)
    return _from_pandas_preserve(pdf, as_polars)


__all__ = [
    "to_epoch_seconds",
    "frame_to_rows",
    "points_to_frame",
]
