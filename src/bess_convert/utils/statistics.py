from __future__ import annotations

import math
import warnings
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

import numpy as np
from scipy import stats

from bess_convert.models import BankStatistics, TimeSeriesPoint


@dataclass(frozen=True)
class SeriesStats:
    count: int = 0
    valid_count: int = 0
    avg: float = 0.0
    max: float = 0.0
    min: float = 0.0
    std_dev: float = 0.0


def valid_values(values: Iterable[Optional[float]]) -> np.ndarray:
    """Drop ``None`` and NaN, return a float64 array."""
    arr = np.asarray([np.nan if v is None else v for v in values], dtype=np.float64)
    return arr[~np.isnan(arr)]


def describe_values(values: Sequence[Optional[float]]) -> SeriesStats:
    """
    Aggregate a sequence of readings, ignoring missing ones.

    Uses the population standard deviation (ddof=0). An input with no valid
    readings yields all-zero statistics rather than an error.
    """
    values = list(values)
    arr = valid_values(values)
    if arr.size == 0:
        return SeriesStats(count=len(values))

    with warnings.catch_warnings():
        # skew/kurtosis of constant input warn; only mean and variance are used
        warnings.simplefilter("ignore", RuntimeWarning)
        desc = stats.describe(arr, ddof=0)
    low, high = desc.minmax
    return SeriesStats(
        count=len(values),
        valid_count=int(desc.nobs),
        avg=float(desc.mean),
        max=float(high),
        min=float(low),
        std_dev=math.sqrt(max(float(desc.variance), 0.0)),
    )


def round_score(value: float, digits: int = 2) -> float:
    """Round half up, so 0.125 becomes 0.13 where ``round`` would give 0.12."""
    scale = 10 ** digits
    return math.floor(value * scale + 0.5) / scale


def mean_or_zero(values: Iterable[Optional[float]]) -> float:
    arr = valid_values(values)
    return float(arr.mean()) if arr.size else 0.0


def bank_statistics(points: Sequence[TimeSeriesPoint]) -> BankStatistics:
    if not points:
        return BankStatistics()

    voltage = describe_values([p.bank.voltage for p in points])
    current = describe_values([p.bank.current for p in points])
    soc = describe_values([p.bank.soc for p in points])
    soh = describe_values([p.bank.soh for p in points])
    temperature = describe_values([p.bank.temperature for p in points])

    return BankStatistics(
        avg_voltage=voltage.avg,
        avg_current=current.avg,
        avg_soc=soc.avg,
        avg_soh=soh.avg,
        avg_temperature=temperature.avg,
        max_voltage=voltage.max,
        min_voltage=voltage.min,
        max_current=current.max,
        min_current=current.min,
        max_soc=soc.max,
        min_soc=soc.min,
        max_soh=soh.max,
        min_soh=soh.min,
        max_temperature=temperature.max,
        min_temperature=temperature.min,
    )
