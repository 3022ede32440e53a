import math
from datetime import datetime, timedelta

import pytest

from bess_convert.config import ValidationRanges
from bess_convert.models import (
    AnomalyKind,
    BankData,
    BankTimeSeries,
    CellData,
    Severity,
    StandardBatteryData,
    TimeSeriesPoint,
)
from bess_convert.validators.data_validator import (
    DataValidator,
    severity_by_range,
    severity_by_threshold,
)

START = datetime(2024, 1, 10)

# -----------------------------------------------------------------------------
# Helper builders
# -----------------------------------------------------------------------------

def _point(minute, voltage=700.0, current=1.0, soc=50.0, soh=90.0, temperature=25.0, cells=True):
    return TimeSeriesPoint(
        timestamp=START + timedelta(minutes=minute),
        bank=BankData(
            voltage=voltage,
            current=current,
            soc=soc,
            soh=soh,
            power=voltage * current,
            temperature=temperature,
        ),
        cells=CellData(voltages=[3.3, 3.3]) if cells else CellData(),
    )


def _unit(points, unit_id="project1-2#-Bank01"):
    return StandardBatteryData(
        unit_id=unit_id,
        unit_type="project1",
        banks=[BankTimeSeries(bank_id="Bank01", points=list(points))],
    )


def _of_kind(report, kind):
    return [a for a in report.anomalies if a.kind is kind]


# -----------------------------------------------------------------------------
# Pytest fixtures
# -----------------------------------------------------------------------------

@pytest.fixture
def validator():
    return DataValidator()


# -----------------------------------------------------------------------------
# validate_data
# -----------------------------------------------------------------------------

@pytest.mark.parametrize("invalid, expected", [(99, True), (100, False), (101, False)])
def test_validity_threshold_is_ten_percent(validator, invalid, expected):
    points = [_point(i, soc=150.0 if i < invalid else 50.0) for i in range(1000)]

    result = validator.validate_data(_unit(points))

    assert result.errors == []
    assert result.total_records == 1000
    assert result.valid_records == 1000 - invalid
    assert result.error_rate == invalid / 1000
    assert result.is_valid is expected
    assert len([w for w in result.warnings if w.field == "soc"]) == invalid


def test_out_of_range_values_warn_with_row_index(validator):
    result = validator.validate_data(_unit([_point(0), _point(1, temperature=95.0)]))

    (warning,) = result.warnings
    assert warning.type == "suspicious_value"
    assert warning.field == "temperature"
    assert warning.row_index == 1
    assert result.valid_records == 1


def test_bank_total_voltage_is_not_checked_against_cell_range(validator):
    result = validator.validate_data(_unit([_point(0, voltage=775.4)]))

    assert result.warnings == []
    assert result.is_valid


def test_structure_errors(validator):
    result = validator.validate_data(StandardBatteryData(unit_id="", unit_type="project1"))

    assert not result.is_valid
    assert {e.field for e in result.errors} == {"unit_id", "banks"}
    assert all(e.type == "missing_field" for e in result.errors)


def test_bank_without_points_is_an_error(validator):
    result = validator.validate_data(_unit([]))

    assert not result.is_valid
    assert result.errors[0].field == "points"
    assert result.error_rate == 0.0


def test_invalid_timestamp_is_an_error(validator):
    point = _point(0)
    point.timestamp = None

    result = validator.validate_data(_unit([point]))

    assert result.errors[0].type == "invalid_value"
    assert result.errors[0].field == "timestamp"
    assert not result.is_valid


def test_continuity_warnings(validator):
    points = [_point(0), _point(180), _point(170)]

    result = validator.validate_data(_unit(points))

    messages = [w.message for w in result.warnings if w.type == "format_inconsistency"]
    assert len(messages) == 2
    assert "Time gap of 3 hours" in messages[0]
    assert "not ascending" in messages[1]


# -----------------------------------------------------------------------------
# Severity grading
# -----------------------------------------------------------------------------

@pytest.mark.parametrize(
    "ratio, expected",
    [(0.5, Severity.LOW), (0.75, Severity.LOW), (1.5, Severity.MEDIUM), (2.5, Severity.HIGH), (3.5, Severity.CRITICAL)],
)
def test_severity_by_range(ratio, expected):
    low, high = 2.5, 4.2
    assert severity_by_range(high + ratio * (high - low), (low, high)) is expected
    assert severity_by_range(low - ratio * (high - low), (low, high)) is expected


@pytest.mark.parametrize(
    "deviation, expected",
    [(1.5, Severity.LOW), (1.6, Severity.MEDIUM), (2.1, Severity.HIGH), (3.1, Severity.CRITICAL)],
)
def test_severity_by_threshold(deviation, expected):
    assert severity_by_threshold(deviation, 1.0) is expected


def test_voltage_severity_grows_with_distance():
    validator = DataValidator(ValidationRanges(bank_voltage=(2.5, 4.2)))
    low, high = 2.5, 4.2
    ratios = [0.75, 1.5, 2.5, 3.5]
    points = [_point(i, voltage=high + r * (high - low), current=0.0) for i, r in enumerate(ratios)]

    anomalies = _of_kind(validator.detect_anomalies(points), AnomalyKind.VOLTAGE_OUTLIER)

    severities = [a.severity for a in anomalies]
    assert severities == [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]
    assert severities == sorted(severities)
    assert anomalies[0].expected_range == (low, high)


def test_voltage_at_half_width_outside_is_not_flagged():
    validator = DataValidator(ValidationRanges(bank_voltage=(2.5, 4.2)))
    low, high = 2.5, 4.2
    edge = high + 0.5 * (high - low)

    report = validator.detect_anomalies([_point(0, voltage=edge, current=0.0)])

    assert _of_kind(report, AnomalyKind.VOLTAGE_OUTLIER) == []


# -----------------------------------------------------------------------------
# Anomaly detection
# -----------------------------------------------------------------------------

def test_temperature_outlier(validator):
    points = [_point(i) for i in range(19)] + [_point(19, temperature=100.0)]

    (anomaly,) = _of_kind(validator.detect_anomalies(points), AnomalyKind.TEMPERATURE_OUTLIER)

    assert anomaly.value == 100.0
    assert anomaly.severity is Severity.HIGH
    assert anomaly.timestamp == START + timedelta(minutes=19)


def test_constant_temperature_has_no_outliers(validator):
    report = validator.detect_anomalies([_point(i) for i in range(5)])

    assert _of_kind(report, AnomalyKind.TEMPERATURE_OUTLIER) == []


def test_soc_and_soh_outside_domain(validator):
    report = validator.detect_anomalies([_point(0, soc=120.0), _point(1, soh=-5.0)])

    anomalies = _of_kind(report, AnomalyKind.SOC_OUTLIER)
    assert [a.value for a in anomalies] == [120.0, -5.0]
    assert all(a.severity is Severity.HIGH for a in anomalies)
    assert "SOH" in anomalies[1].message


def test_missing_data_severity(validator):
    points = [
        _point(0, voltage=math.nan),
        _point(1, voltage=math.nan, current=math.nan, soc=math.nan),
    ]

    anomalies = _of_kind(validator.detect_anomalies(points), AnomalyKind.MISSING_DATA)

    assert [a.severity for a in anomalies] == [Severity.MEDIUM, Severity.HIGH]
    assert anomalies[1].message == "Missing fields: voltage, current, soc"


def test_time_gaps(validator):
    points = [_point(0), _point(3 * 60), _point(3 * 60 + 25 * 60)]

    anomalies = _of_kind(validator.detect_anomalies(points), AnomalyKind.TIME_GAP)

    assert [a.severity for a in anomalies] == [Severity.MEDIUM, Severity.HIGH]
    assert anomalies[0].value == 3 * 3600
    assert anomalies[0].timestamp == START + timedelta(hours=3)


def test_severity_distribution_lists_every_level(validator):
    report = validator.detect_anomalies([_point(0, soc=120.0)])

    assert report.total_anomalies == 1
    assert report.severity_distribution == {
        Severity.LOW: 0,
        Severity.MEDIUM: 0,
        Severity.HIGH: 1,
        Severity.CRITICAL: 0,
    }
    assert report.to_dict()["summary"]["severity_distribution"]["high"] == 1


# -----------------------------------------------------------------------------
# Quality scoring
# -----------------------------------------------------------------------------

def test_clean_unit_scores_full_marks(validator):
    report = validator.generate_quality_report(_unit(_point(i) for i in range(4)))

    assert (report.completeness, report.accuracy, report.consistency, report.timeliness) == (1.0, 1.0, 1.0, 1.0)
    assert report.overall_score == 1.0
    assert report.anomaly_count == 0
    assert report.recommendations == [
        "Data quality is good: keep the current acquisition and processing setup"
    ]


def test_zero_bank_fields_count_as_missing(validator):
    # per point: 4 of 5 bank fields plus 2 of 2 cells present
    completeness = validator.check_data_completeness(_unit(_point(i, current=0.0) for i in range(4)))

    assert completeness == pytest.approx(6 / 7)


def test_critical_voltage_lowers_accuracy_and_recommends_action(validator):
    points = [_point(0), _point(1), _point(2), _point(3, voltage=5000.0)]

    report = validator.generate_quality_report(_unit(points))

    assert report.anomaly_count == 1
    assert report.accuracy == 0.75
    assert any("accuracy" in r or "anomalous" in r for r in report.recommendations)
    assert any("immediately" in r for r in report.recommendations)


def test_overall_score_averages_unrounded_subscores(validator, monkeypatch):
    monkeypatch.setattr(validator, "check_data_completeness", lambda data: 0.375)
    monkeypatch.setattr(validator, "_accuracy", lambda points, report: 0.375)
    monkeypatch.setattr(validator, "check_data_consistency", lambda data: 0.125)
    monkeypatch.setattr(validator, "_timeliness", lambda data: 0.125)

    report = validator.generate_quality_report(_unit([_point(0)]))

    # halves round up
    assert (report.completeness, report.accuracy, report.consistency, report.timeliness) == (0.38, 0.38, 0.13, 0.13)
    # mean of 0.375, 0.375, 0.125, 0.125; averaging the rounded scores would give 0.255
    assert report.overall_score == 0.25


def test_gappy_series_lowers_timeliness(validator):
    points = [_point(0), _point(1), _point(2 * 60)]

    report = validator.generate_quality_report(_unit(points))

    assert report.timeliness == 0.5
    assert any("time gaps" in r for r in report.recommendations)


def test_consistency_edge_cases(validator):
    assert validator.check_data_consistency(StandardBatteryData(unit_id="u", unit_type="project1")) == 0.0
    assert validator.check_data_consistency(_unit([_point(0)])) == 1.0


def test_quality_report_tolerates_missing_timestamp(validator):
    points = [_point(0), _point(1), _point(2)]
    points[1].timestamp = None

    report = validator.generate_quality_report(_unit(points))

    assert report.consistency < 1.0
    # both orderings touching the missing stamp fail, all 12 range checks pass
    assert validator.check_data_consistency(_unit(points)) == pytest.approx(12 / 14)
