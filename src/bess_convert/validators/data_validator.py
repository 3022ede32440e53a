from __future__ import annotations

"""
Structural validation, anomaly detection and quality scoring of standardised data.

Three passes over a `StandardBatteryData`:

* `DataValidator.validate_data` checks structure, per-point timestamps and
  ranges, and the time ordering of every bank. A unit is valid when it has no
  errors and less than 10% invalid records.
* `DataValidator.detect_anomalies` scans a flat point sequence for voltage,
  temperature, SOC/SOH, missing-data and time-gap anomalies.
* `DataValidator.generate_quality_report` scores completeness, accuracy,
  consistency and timeliness and derives recommendations.

Voltage severity is measured against the width of the configured range,
temperature severity against the 2-sigma detection threshold.
"""

import logging
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from bess_convert.config import (
    CONTINUITY_GAP_S,
    DEFAULT_RANGES,
    LONG_GAP_S,
    MAX_ERROR_RATE,
    TIMELINESS_GAP_S,
    ValidationRanges,
)
from bess_convert.models import (
    Anomaly,
    AnomalyKind,
    AnomalyReport,
    BankTimeSeries,
    QualityReport,
    Severity,
    StandardBatteryData,
    TimeSeriesPoint,
    ValidationIssue,
    ValidationResult,
    is_missing,
)
from bess_convert.transformers.common import field_presence
from bess_convert.utils.processing_helpers import interval_seconds
from bess_convert.utils.statistics import describe_values, round_score

LOGGER = logging.getLogger(__name__)

SOC_DOMAIN = (0.0, 100.0)

# Emitted when the named subscore falls below its limit
_SCORE_RECOMMENDATIONS = (
    ("completeness", 0.8, "Data completeness is low: check that the acquisition system is recording every channel"),
    ("accuracy", 0.9, "Many anomalous values were detected: check sensor calibration and transmission quality"),
    ("consistency", 0.8, "Data consistency is low: check data formats and the configured value ranges"),
    ("timeliness", 0.9, "The series has time gaps: check the sampling frequency and link stability"),
)
_CRITICAL_RECOMMENDATION = "Critical anomalies found: inspect the affected devices immediately"
_HIGH_RECOMMENDATION = "Many high-severity anomalies: schedule a maintenance check"
_GOOD_RECOMMENDATION = "Data quality is good: keep the current acquisition and processing setup"
_HIGH_ANOMALY_LIMIT = 5


# -------------------------------------------------------------------------
# Severity grading
# -------------------------------------------------------------------------

def severity_by_range(value: float, normal_range: Tuple[float, float]) -> Severity:
    """Grade by distance to the nearest bound, in multiples of the range width."""
    low, high = normal_range
    width = high - low
    ratio = min(abs(value - low), abs(value - high)) / width
    if ratio > 3:
        return Severity.CRITICAL
    if ratio > 2:
        return Severity.HIGH
    if ratio > 1:
        return Severity.MEDIUM
    return Severity.LOW


def severity_by_threshold(deviation: float, threshold: float) -> Severity:
    """Grade by deviation in multiples of the detection threshold."""
    ratio = deviation / threshold
    if ratio > 3:
        return Severity.CRITICAL
    if ratio > 2:
        return Severity.HIGH
    if ratio > 1.5:
        return Severity.MEDIUM
    return Severity.LOW


def in_range(value: Optional[float], bounds: Tuple[float, float]) -> bool:
    if is_missing(value):
        return False
    return bounds[0] <= value <= bounds[1]


def _valid_timestamp(value) -> bool:
    return isinstance(value, datetime) and not pd.isna(value)


class DataValidator:
    def __init__(self, ranges: ValidationRanges = DEFAULT_RANGES):
        self.ranges = ranges

    # ---------------------------------------------------------------------
    # Structural validation
    # ---------------------------------------------------------------------
    def validate_data(self, data: StandardBatteryData) -> ValidationResult:
        LOGGER.info("Validating unit %s", data.unit_id)
        errors: List[ValidationIssue] = []
        warnings: List[ValidationIssue] = []

        self._validate_structure(data, errors)

        total_records = 0
        valid_records = 0
        for bank in data.banks:
            bank_total, bank_valid = self._validate_bank(bank, errors, warnings)
            total_records += bank_total
            valid_records += bank_valid
            self._validate_continuity(bank, warnings)

        error_rate = (total_records - valid_records) / total_records if total_records > 0 else 0.0
        is_valid = not errors and error_rate < MAX_ERROR_RATE

        LOGGER.info(
            "Validation of %s %s: %d errors, %d warnings, error rate %.3f",
            data.unit_id,
            "passed" if is_valid else "failed",
            len(errors),
            len(warnings),
            error_rate,
        )
        return ValidationResult(
            is_valid=is_valid,
            errors=errors,
            warnings=warnings,
            total_records=total_records,
            valid_records=valid_records,
            error_rate=error_rate,
        )

    def _validate_structure(self, data: StandardBatteryData, errors: List[ValidationIssue]) -> None:
        if not data.unit_id:
            errors.append(ValidationIssue("missing_field", "unit_id", data.unit_id, "Missing unit id"))
        if not data.unit_type:
            errors.append(ValidationIssue("missing_field", "unit_type", data.unit_type, "Missing unit type"))
        if not data.banks:
            errors.append(ValidationIssue("missing_field", "banks", data.banks, "Missing bank data"))

    def _validate_bank(
        self,
        bank: BankTimeSeries,
        errors: List[ValidationIssue],
        warnings: List[ValidationIssue],
    ) -> Tuple[int, int]:
        if not bank.points:
            errors.append(
                ValidationIssue("missing_field", "points", [], f"Bank {bank.bank_id} has no data points")
            )
            return 0, 0

        valid = 0
        for index, point in enumerate(bank.points):
            record_ok = True
            if not _valid_timestamp(point.timestamp):
                errors.append(
                    ValidationIssue("invalid_value", "timestamp", point.timestamp, "Invalid timestamp", index)
                )
                record_ok = False
            if not self._validate_ranges(point, index, warnings):
                record_ok = False
            if record_ok:
                valid += 1
        return len(bank.points), valid

    def _validate_ranges(self, point: TimeSeriesPoint, index: int, warnings: List[ValidationIssue]) -> bool:
        checks = (
            ("voltage", point.bank.voltage, self.ranges.bank_voltage),
            ("temperature", point.bank.temperature, self.ranges.temperature),
            ("soc", point.bank.soc, self.ranges.soc),
            ("soh", point.bank.soh, self.ranges.soh),
        )
        ok = True
        for name, value, bounds in checks:
            if not in_range(value, bounds):
                warnings.append(
                    ValidationIssue(
                        "suspicious_value",
                        name,
                        value,
                        f"{name} value {value} outside normal range [{bounds[0]}, {bounds[1]}]",
                        index,
                    )
                )
                ok = False
        return ok

    def _validate_continuity(self, bank: BankTimeSeries, warnings: List[ValidationIssue]) -> None:
        points = bank.points
        for index in range(1, len(points)):
            previous, current = points[index - 1].timestamp, points[index].timestamp
            if not (_valid_timestamp(previous) and _valid_timestamp(current)):
                continue
            gap = (current - previous).total_seconds()
            if gap <= 0:
                warnings.append(
                    ValidationIssue(
                        "format_inconsistency",
                        "timestamp",
                        gap,
                        f"Bank {bank.bank_id}: timestamps not ascending",
                        index,
                    )
                )
            elif gap > CONTINUITY_GAP_S:
                warnings.append(
                    ValidationIssue(
                        "format_inconsistency",
                        "timestamp",
                        gap,
                        f"Time gap of {round(gap / 3600)} hours detected",
                        index,
                    )
                )

    # ---------------------------------------------------------------------
    # Anomaly detection
    # ---------------------------------------------------------------------
    def detect_anomalies(self, points: Sequence[TimeSeriesPoint], unit_id: str = "unit") -> AnomalyReport:
        LOGGER.info("Scanning %d points of %s for anomalies", len(points), unit_id)
        anomalies: List[Anomaly] = []
        self._voltage_anomalies(points, unit_id, anomalies)
        self._temperature_anomalies(points, unit_id, anomalies)
        self._domain_anomalies(points, unit_id, anomalies)
        self._missing_data(points, unit_id, anomalies)
        self._time_gaps(points, unit_id, anomalies)

        report = AnomalyReport(anomalies=anomalies)
        LOGGER.info("Found %d anomalies in %s", report.total_anomalies, unit_id)
        return report

    def _voltage_anomalies(self, points, unit_id: str, anomalies: List[Anomaly]) -> None:
        low, high = self.ranges.bank_voltage
        margin = (high - low) * 0.5
        for point in points:
            voltage = point.bank.voltage
            if is_missing(voltage):
                continue
            if voltage < low - margin or voltage > high + margin:
                anomalies.append(
                    Anomaly(
                        kind=AnomalyKind.VOLTAGE_OUTLIER,
                        severity=severity_by_range(voltage, (low, high)),
                        timestamp=point.timestamp,
                        unit_id=unit_id,
                        value=voltage,
                        expected_range=(low, high),
                        message=f"Voltage {voltage}V outside normal range [{low}, {high}]V",
                    )
                )

    def _temperature_anomalies(self, points, unit_id: str, anomalies: List[Anomaly]) -> None:
        stats = describe_values([p.bank.temperature for p in points])
        if stats.valid_count == 0:
            return
        threshold = 2 * stats.std_dev
        if threshold == 0:
            # a constant series has no outliers
            return
        for point in points:
            temperature = point.bank.temperature
            if is_missing(temperature):
                continue
            deviation = abs(temperature - stats.avg)
            if deviation > threshold:
                anomalies.append(
                    Anomaly(
                        kind=AnomalyKind.TEMPERATURE_OUTLIER,
                        severity=severity_by_threshold(deviation, threshold),
                        timestamp=point.timestamp,
                        unit_id=unit_id,
                        value=temperature,
                        expected_range=(stats.avg - threshold, stats.avg + threshold),
                        message=f"Temperature {temperature}°C deviates {deviation:.2f}°C from the mean",
                    )
                )

    def _domain_anomalies(self, points, unit_id: str, anomalies: List[Anomaly]) -> None:
        for label, getter in (("SOC", lambda p: p.bank.soc), ("SOH", lambda p: p.bank.soh)):
            for point in points:
                value = getter(point)
                if is_missing(value) or in_range(value, SOC_DOMAIN):
                    continue
                anomalies.append(
                    Anomaly(
                        kind=AnomalyKind.SOC_OUTLIER,
                        severity=Severity.HIGH,
                        timestamp=point.timestamp,
                        unit_id=unit_id,
                        value=value,
                        expected_range=SOC_DOMAIN,
                        message=f"{label} value {value}% outside valid range",
                    )
                )

    def _missing_data(self, points, unit_id: str, anomalies: List[Anomaly]) -> None:
        for point in points:
            fields = {
                "voltage": point.bank.voltage,
                "current": point.bank.current,
                "soc": point.bank.soc,
                "soh": point.bank.soh,
            }
            missing = [name for name, value in fields.items() if is_missing(value)]
            if missing:
                anomalies.append(
                    Anomaly(
                        kind=AnomalyKind.MISSING_DATA,
                        severity=Severity.HIGH if len(missing) > 2 else Severity.MEDIUM,
                        timestamp=point.timestamp,
                        unit_id=unit_id,
                        value=None,
                        message=f"Missing fields: {', '.join(missing)}",
                    )
                )

    def _time_gaps(self, points, unit_id: str, anomalies: List[Anomaly]) -> None:
        intervals = interval_seconds(points)
        for index in np.flatnonzero(intervals > CONTINUITY_GAP_S):
            gap = float(intervals[index])
            point = points[index + 1]
            anomalies.append(
                Anomaly(
                    kind=AnomalyKind.TIME_GAP,
                    severity=Severity.HIGH if gap > LONG_GAP_S else Severity.MEDIUM,
                    timestamp=point.timestamp,
                    unit_id=unit_id,
                    value=gap,
                    message=f"Time gap of {round(gap / 3600)} hours",
                )
            )

    # ---------------------------------------------------------------------
    # Quality scoring
    # ---------------------------------------------------------------------
    def generate_quality_report(self, data: StandardBatteryData) -> QualityReport:
        LOGGER.info("Generating quality report for %s", data.unit_id)
        points = data.all_points()
        anomaly_report = self.detect_anomalies(points, data.unit_id)

        completeness = self.check_data_completeness(data)
        accuracy = self._accuracy(points, anomaly_report)
        consistency = self.check_data_consistency(data)
        timeliness = self._timeliness(data)
        overall = (completeness + accuracy + consistency + timeliness) / 4
        completeness, accuracy, consistency, timeliness, overall = (
            round_score(score) for score in (completeness, accuracy, consistency, timeliness, overall)
        )

        report = QualityReport(
            overall_score=overall,
            completeness=completeness,
            accuracy=accuracy,
            consistency=consistency,
            timeliness=timeliness,
            anomaly_count=anomaly_report.total_anomalies,
            recommendations=self.recommendations(
                completeness, accuracy, consistency, timeliness, anomaly_report
            ),
        )
        LOGGER.info("Quality report for %s: overall score %.2f", data.unit_id, report.overall_score)
        return report

    def check_data_completeness(self, data: StandardBatteryData) -> float:
        """Share of present fields; zero bank scalars count as missing, cells only when NaN."""
        total, present = field_presence(data.all_points())
        return present / total if total > 0 else 0.0

    def check_data_consistency(self, data: StandardBatteryData) -> float:
        if not data.banks:
            return 0.0

        total = 0
        passed = 0
        for bank in data.banks:
            points = bank.points
            if len(points) < 2:
                continue
            for index in range(1, len(points)):
                total += 1
                previous, current = points[index - 1].timestamp, points[index].timestamp
                if _valid_timestamp(previous) and _valid_timestamp(current) and current >= previous:
                    passed += 1
            for point in points:
                for value, bounds in (
                    (point.bank.voltage, self.ranges.bank_voltage),
                    (point.bank.temperature, self.ranges.temperature),
                    (point.bank.soc, self.ranges.soc),
                    (point.bank.soh, self.ranges.soh),
                ):
                    total += 1
                    if in_range(value, bounds):
                        passed += 1
        return passed / total if total > 0 else 1.0

    @staticmethod
    def _accuracy(points: Sequence[TimeSeriesPoint], report: AnomalyReport) -> float:
        if not points:
            return 1.0
        return max(0.0, 1.0 - report.total_anomalies / len(points))

    @staticmethod
    def _timeliness(data: StandardBatteryData) -> float:
        gaps = 0
        intervals = 0
        for bank in data.banks:
            bank_intervals = interval_seconds(bank.points)
            intervals += bank_intervals.size
            gaps += int(np.count_nonzero(bank_intervals > TIMELINESS_GAP_S))
        return max(0.0, 1.0 - gaps / intervals) if intervals > 0 else 1.0

    @staticmethod
    def recommendations(
        completeness: float,
        accuracy: float,
        consistency: float,
        timeliness: float,
        anomaly_report: AnomalyReport,
    ) -> List[str]:
        scores = {
            "completeness": completeness,
            "accuracy": accuracy,
            "consistency": consistency,
            "timeliness": timeliness,
        }
        out = [text for name, limit, text in _SCORE_RECOMMENDATIONS if scores[name] < limit]

        distribution = anomaly_report.severity_distribution
        if distribution[Severity.CRITICAL] > 0:
            out.append(_CRITICAL_RECOMMENDATION)
        if distribution[Severity.HIGH] > _HIGH_ANOMALY_LIMIT:
            out.append(_HIGH_RECOMMENDATION)
        return out or [_GOOD_RECOMMENDATION]
