from datetime import datetime
from typing import Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

from bess_convert.models import MISSING, TimeSeriesPoint, is_missing


def parse_timestamp(value: str, time_format: str) -> Optional[datetime]:
    """
    Parses a timestamp string using the layout's format, falling back to a generic parse.

    Args:
        value (str): The raw timestamp text, e.g. "1/10/2024 00:00".
        time_format (str): The strptime format expected for the layout.

    Returns:
        Optional[datetime]: The parsed timestamp, or None if it cannot be parsed.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None

    parsed = pd.to_datetime(text, format=time_format, errors="coerce")
    if pd.isna(parsed):
        try:
            parsed = pd.to_datetime(text, errors="coerce")
        except (ValueError, TypeError):
            return None
    if pd.isna(parsed):
        return None
    if parsed.tzinfo is not None:
        # Site exports are local wall-clock time; drop the offset, keep the reading
        parsed = parsed.tz_localize(None)
    return parsed.to_pydatetime()


def parse_timestamps(values: Sequence[str], time_format: str) -> pd.Series:
    """
    Vectorised version of `parse_timestamp`.

    Args:
        values (Sequence[str]): Raw timestamp strings.
        time_format (str): The strptime format expected for the layout.

    Returns:
        pd.Series: datetime64 values, NaT where a value could not be parsed.
    """
    raw = pd.Series(list(values), dtype="object")
    parsed = pd.to_datetime(raw, format=time_format, errors="coerce")

    # Retry the stragglers one by one with the generic parser
    for idx in parsed.index[parsed.isna()]:
        fallback = parse_timestamp(raw[idx], time_format)
        if fallback is not None:
            parsed[idx] = fallback
    return parsed


def cell_array(values: Iterable[Optional[float]], limit: Optional[int] = None) -> List[float]:
    """Turns raw cell readings into floats, with MISSING for absent readings."""
    out = [MISSING if is_missing(v) else float(v) for v in values]
    return out[:limit] if limit is not None else out


def value_or_zero(value: Optional[float]) -> float:
    """Bank scalars default to 0 when the source has no reading."""
    return 0.0 if is_missing(value) else float(value)


def interval_seconds(points: Sequence[TimeSeriesPoint]) -> np.ndarray:
    """
    Seconds between consecutive points.

    Args:
        points (Sequence[TimeSeriesPoint]): Points in time order.

    Returns:
        np.ndarray: len(points) - 1 intervals (empty for fewer than two points).
    """
    if len(points) < 2:
        return np.array([], dtype=np.float64)
    stamps = pd.to_datetime(pd.Series([p.timestamp for p in points]))
    return stamps.diff().dt.total_seconds().to_numpy()[1:]


def gap_ratio(points: Sequence[TimeSeriesPoint], threshold_s: float) -> float:
    """Fraction of intervals longer than `threshold_s`; 0.0 when there are no intervals."""
    intervals = interval_seconds(points)
    if intervals.size == 0:
        return 0.0
    return float(np.count_nonzero(intervals > threshold_s)) / intervals.size
