from __future__ import annotations

"""
Canonical data structures produced and consumed by the conversion pipeline.

Per-cell readings use ``MISSING`` (NaN) for absent values. Bank-level scalars
default to ``0.0`` when the source row has no reading; downstream quality
scoring counts a literal zero as missing for bank fields only.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

MISSING = float("nan")


def is_missing(value: Any) -> bool:
    """True for ``None`` and NaN."""
    if value is None:
        return True
    try:
        return math.isnan(value)
    except TypeError:
        return True


def isoformat_or_none(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _num(value: Any) -> Any:
    # NaN is not valid JSON
    if isinstance(value, float) and math.isnan(value):
        return None
    return value


class SignalKind(str, Enum):
    VOLTAGE = "voltage"
    TEMPERATURE = "temperature"
    SOC = "soc"
    STATE = "state"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    def __lt__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank >= other.rank


_SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


class AnomalyKind(str, Enum):
    VOLTAGE_OUTLIER = "voltage_outlier"
    TEMPERATURE_OUTLIER = "temperature_outlier"
    SOC_OUTLIER = "soc_outlier"
    MISSING_DATA = "missing_data"
    TIME_GAP = "time_gap"


# -------------------------------------------------------------------------
# Time series
# -------------------------------------------------------------------------

@dataclass
class BankData:
    voltage: float = 0.0
    current: float = 0.0
    soc: float = 0.0
    soh: float = 0.0
    power: float = 0.0
    temperature: float = 0.0


@dataclass
class CellData:
    voltages: List[float] = field(default_factory=list)
    temperatures: List[float] = field(default_factory=list)
    socs: List[float] = field(default_factory=list)
    sohs: List[float] = field(default_factory=list)

    def all_values(self) -> List[float]:
        return [*self.voltages, *self.temperatures, *self.socs, *self.sohs]


@dataclass
class TimeSeriesPoint:
    timestamp: datetime
    bank: BankData = field(default_factory=BankData)
    cells: CellData = field(default_factory=CellData)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": isoformat_or_none(self.timestamp),
            "bank_data": {k: _num(v) for k, v in vars(self.bank).items()},
            "cell_data": {k: [_num(v) for v in vals] for k, vals in vars(self.cells).items()},
        }


@dataclass
class BankStatistics:
    avg_voltage: float = 0.0
    avg_current: float = 0.0
    avg_soc: float = 0.0
    avg_soh: float = 0.0
    avg_temperature: float = 0.0
    max_voltage: float = 0.0
    min_voltage: float = 0.0
    max_current: float = 0.0
    min_current: float = 0.0
    max_soc: float = 0.0
    min_soc: float = 0.0
    max_soh: float = 0.0
    min_soh: float = 0.0
    max_temperature: float = 0.0
    min_temperature: float = 0.0


@dataclass
class BankTimeSeries:
    bank_id: str
    points: List[TimeSeriesPoint] = field(default_factory=list)
    statistics: BankStatistics = field(default_factory=BankStatistics)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bank_id": self.bank_id,
            "data_points": [p.to_dict() for p in self.points],
            "statistics": dict(vars(self.statistics)),
        }


@dataclass
class UnitSummary:
    total_records: int = 0
    valid_records: int = 0
    error_records: int = 0
    completeness: float = 0.0
    accuracy: float = 0.0
    consistency: float = 0.0
    timeliness: float = 0.0


@dataclass
class StandardBatteryData:
    unit_id: str
    unit_type: str
    banks: List[BankTimeSeries] = field(default_factory=list)
    time_range: Tuple[Optional[datetime], Optional[datetime]] = (None, None)
    summary: UnitSummary = field(default_factory=UnitSummary)
    system_id: Optional[str] = None
    group_id: Optional[str] = None

    def all_points(self) -> List[TimeSeriesPoint]:
        return [p for bank in self.banks for p in bank.points]

    def to_dict(self) -> Dict[str, Any]:
        start, end = self.time_range
        return {
            "unit_id": self.unit_id,
            "unit_type": self.unit_type,
            "system_id": self.system_id,
            "group_id": self.group_id,
            "time_range": {"start": isoformat_or_none(start), "end": isoformat_or_none(end)},
            "banks": [b.to_dict() for b in self.banks],
            "summary": dict(vars(self.summary)),
        }


# -------------------------------------------------------------------------
# Validation / anomalies
# -------------------------------------------------------------------------

@dataclass
class Anomaly:
    kind: AnomalyKind
    severity: Severity
    timestamp: datetime
    unit_id: str
    value: Optional[float]
    message: str
    expected_range: Optional[Tuple[float, float]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "timestamp": isoformat_or_none(self.timestamp),
            "unit_id": self.unit_id,
            "value": _num(self.value),
            "expected_range": list(self.expected_range) if self.expected_range else None,
            "message": self.message,
        }


@dataclass
class AnomalyReport:
    anomalies: List[Anomaly] = field(default_factory=list)

    @property
    def total_anomalies(self) -> int:
        return len(self.anomalies)

    @property
    def severity_distribution(self) -> Dict[Severity, int]:
        distribution = {severity: 0 for severity in Severity}
        for anomaly in self.anomalies:
            distribution[anomaly.severity] += 1
        return distribution

    def to_dict(self) -> Dict[str, Any]:
        return {
            "anomalies": [a.to_dict() for a in self.anomalies],
            "summary": {
                "total_anomalies": self.total_anomalies,
                "severity_distribution": {s.value: n for s, n in self.severity_distribution.items()},
            },
        }


@dataclass
class ValidationIssue:
    type: str
    field: str
    value: Any
    message: str
    row_index: Optional[int] = None


@dataclass
class ValidationResult:
    is_valid: bool
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)
    total_records: int = 0
    valid_records: int = 0
    error_rate: float = 0.0


@dataclass
class QualityReport:
    overall_score: float
    completeness: float
    accuracy: float
    consistency: float
    timeliness: float
    anomaly_count: int
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return dict(vars(self))


# -------------------------------------------------------------------------
# Recorded errors / warnings
# -------------------------------------------------------------------------

@dataclass
class ErrorRecord:
    """An error entry of a conversion report."""

    error_id: str
    type: str
    severity: Severity
    message: str
    timestamp: datetime
    file_path: Optional[str] = None
    row_index: Optional[int] = None
    field: Optional[str] = None
    details: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out = dict(vars(self))
        out["severity"] = self.severity.value
        out["timestamp"] = isoformat_or_none(self.timestamp)
        return out


@dataclass
class WarningRecord:
    """A warning entry of a conversion report."""

    warning_id: str
    type: str
    message: str
    timestamp: datetime
    file_path: Optional[str] = None
    row_index: Optional[int] = None
    field: Optional[str] = None
    suggestion: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out = dict(vars(self))
        out["timestamp"] = isoformat_or_none(self.timestamp)
        return out
