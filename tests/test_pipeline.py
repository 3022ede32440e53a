import json
from pathlib import Path
from types import SimpleNamespace

import pytest

from bess_convert.config import ErrorHandlingStrategy
from bess_convert.models import SignalKind
from bess_convert.pipeline import ConversionPipeline
from bess_convert.sources import NARROW, WIDE, FileDescriptor, describe_file, discover_files, read_csv_records

WIDE_HEADER = "时间,总电压,总电流,SOC,SOH,V1,V2,T1,T2"

# -----------------------------------------------------------------------------
# Helper builders
# -----------------------------------------------------------------------------

def _write_csv(path: Path, header: str, rows: list[str]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join([header, *rows]) + "\n", encoding="utf-8")
    return path


def _wide_rows(count=3):
    return [f"1/10/2024 00:0{i},775.4,-10,10,89,3.24,3.23,25,26" for i in range(count)]


def _pipeline(sleeps=None, **options):
    kwargs = {"strategy": ErrorHandlingStrategy(**options)}
    if sleeps is not None:
        kwargs["sleep"] = sleeps.append
    return ConversionPipeline(**kwargs)


# -----------------------------------------------------------------------------
# Pytest fixtures
# -----------------------------------------------------------------------------

@pytest.fixture
def wide_root(tmp_path: Path):
    root = tmp_path / "raw" / "project1"
    _write_csv(root / "2#" / "Bank01_20240110.csv", WIDE_HEADER, _wide_rows())
    return root


@pytest.fixture
def narrow_root(tmp_path: Path):
    root = tmp_path / "raw" / "project2"
    _write_csv(
        root / "group1" / "voltage" / "vol1_2024_01_10_000000.csv",
        "devInstCode,groupNo,datetime,bankVol,bankCur,v1,v2",
        ["D1,1,2024-01-10 00:00:00,700,2,3.30,3.31", "D1,1,2024-01-10 00:01:00,701,2,3.31,3.32"],
    )
    _write_csv(
        root / "group1" / "temperature" / "temp1_2024_01_10_000000.csv",
        "devInstCode,groupNo,datetime,t1,t2",
        ["D1,1,2024-01-10 00:00:00,25,27", "D1,1,2024-01-10 00:01:00,26,28"],
    )
    return root


# -----------------------------------------------------------------------------
# Sources
# -----------------------------------------------------------------------------

def test_describe_wide_file():
    descriptor = describe_file("raw/project1/2#/Bank07_20240110.csv")

    assert descriptor.layout == WIDE
    assert descriptor.unit_id == "Bank07"
    assert descriptor.date == "2024-01-10"
    assert descriptor.system_id == "2#"
    assert descriptor.kind is None


@pytest.mark.parametrize(
    "path, kind",
    [
        ("raw/project2/group1/voltage/vol1_2024_01_10_000000.csv", SignalKind.VOLTAGE),
        ("raw/project2/group1/temp3_2024_01_10_120000.csv", SignalKind.TEMPERATURE),
        ("raw/project2/group1/soc/soc1_2024_01_10_000000.csv", SignalKind.SOC),
        ("raw/project2/group1/state/state1_2024_01_10_000000.csv", SignalKind.STATE),
    ],
)
def test_describe_narrow_file(path, kind):
    descriptor = describe_file(path)

    assert descriptor.layout == NARROW
    assert descriptor.unit_id == "group1"
    assert descriptor.kind is kind
    assert descriptor.date == "2024-01-10"


def test_describe_unrecognised_file():
    assert describe_file("raw/notes.csv") is None


def test_discover_files_filters_by_layout(wide_root, narrow_root, tmp_path):
    (tmp_path / "raw" / "readme.csv").write_text("x\n", encoding="utf-8")

    assert [d.unit_id for d in discover_files(tmp_path / "raw", WIDE)] == ["Bank01"]
    assert [d.kind for d in discover_files(tmp_path / "raw", NARROW)] == [SignalKind.TEMPERATURE, SignalKind.VOLTAGE]
    assert len(discover_files(tmp_path / "raw")) == 3
    assert discover_files(tmp_path / "nowhere") == []


def test_read_csv_records_keeps_text_and_strips_headers(tmp_path):
    path = _write_csv(tmp_path / "a.csv", "时间, 总电压,SOC", ["1/10/2024 00:00, 775.4,"])

    assert read_csv_records(path) == [{"时间": "1/10/2024 00:00", "总电压": "775.4", "SOC": ""}]


# -----------------------------------------------------------------------------
# Wide conversion
# -----------------------------------------------------------------------------

def test_convert_wide_end_to_end(wide_root):
    pipeline = _pipeline()

    outcome = pipeline.convert_wide(discover_files(wide_root, WIDE))

    (unit,) = outcome.units
    assert unit.unit_id == "project1-2#-Bank01"
    assert unit.system_id == "2#"
    points = unit.banks[0].points
    assert len(points) == 3
    assert points[0].bank.power == 775.4 * -10
    assert points[0].bank.temperature == pytest.approx(25.5)
    assert unit.summary.consistency == 1.0

    assert outcome.validation[unit.unit_id].is_valid
    assert outcome.quality[unit.unit_id].anomaly_count == 0
    assert not outcome.aborted

    report = outcome.report
    assert report.sealed
    assert report.summary.total_files_processed == 1
    assert report.summary.total_records_processed == 3
    assert report.summary.total_records_valid == 3
    assert report.data_quality.overall_quality_score > 0
    assert report.performance.peak_memory_usage_mb > 0

    json.dumps(unit.to_dict())


def test_bad_row_is_skipped_with_warning(wide_root):
    _write_csv(wide_root / "2#" / "Bank02_20240110.csv", WIDE_HEADER, [",775.4,0,10,89,3.2,3.2,25,25", *_wide_rows(2)])

    outcome = _pipeline().convert_wide(discover_files(wide_root, WIDE))

    assert len(outcome.units) == 2
    processed = {Path(f.file_path).name: f for f in outcome.report.processed_files}
    assert processed["Bank02_20240110.csv"].valid_records == 2
    assert processed["Bank02_20240110.csv"].invalid_records == 1
    assert any(w.message.startswith("Skipping row 0") for w in outcome.report.warnings)


def test_skip_file_policy_fails_only_that_file(wide_root):
    _write_csv(wide_root / "2#" / "Bank02_20240110.csv", WIDE_HEADER, [",775.4,0,10,89,3.2,3.2,25,25"])

    outcome = _pipeline(on_parse_error="skip-file").convert_wide(discover_files(wide_root, WIDE))

    assert [u.banks[0].bank_id for u in outcome.units] == ["Bank01"]
    assert outcome.report.summary.total_files_failed == 1
    assert outcome.report.failed_files[0].error_type == "parse_error"


def test_abort_policy_records_a_bad_row_once(wide_root):
    _write_csv(wide_root / "2#" / "Bank02_20240110.csv", WIDE_HEADER, [",775.4,0,10,89,3.2,3.2,25,25", *_wide_rows(2)])
    pipeline = _pipeline(on_parse_error="abort")

    outcome = pipeline.convert_wide(discover_files(wide_root, WIDE))

    assert outcome.aborted
    assert [u.banks[0].bank_id for u in outcome.units] == ["Bank01"]
    (error,) = outcome.report.errors
    assert error.row_index == 0
    assert error.file_path.endswith("Bank02_20240110.csv")
    assert pipeline.handler.get_error_statistics()["total_errors"] == 1


def test_missing_file_is_skipped_under_warn(wide_root):
    descriptors = discover_files(wide_root, WIDE)
    descriptors.append(describe_file(wide_root / "2#" / "Bank02_20240110.csv"))

    outcome = _pipeline().convert_wide(descriptors)

    assert len(outcome.units) == 1
    assert outcome.report.summary.total_files_skipped == 1
    assert outcome.report.skipped_files[0].reason == "not_found"
    assert outcome.report.summary.total_files_scanned == 2


def test_missing_file_fails_under_error_policy(tmp_path):
    missing = FileDescriptor(path=tmp_path / "Bank09_20240110.csv", layout=WIDE, unit_id="Bank09")
    pipeline = _pipeline(on_file_not_found="error")

    outcome = pipeline.convert_wide([missing])

    assert outcome.units == []
    assert outcome.aborted
    assert pipeline.handler.get_error_statistics()["total_errors"] == 1
    assert outcome.report.summary.total_files_failed == 1
    assert outcome.report.failed_files[0].error_type == "io_error"


def test_transient_read_failure_is_retried(wide_root, monkeypatch):
    monkeypatch.setattr("psutil.virtual_memory", lambda: SimpleNamespace(percent=10.0))
    sleeps = []
    calls = []

    def flaky_loader(path):
        calls.append(path)
        if len(calls) == 1:
            raise ConnectionError("connection reset while reading")
        return read_csv_records(path)

    pipeline = _pipeline(sleeps=sleeps)
    pipeline.loader = flaky_loader

    outcome = pipeline.convert_wide(discover_files(wide_root, WIDE))

    assert len(outcome.units) == 1
    assert len(calls) == 2
    assert sleeps == [1.0]


def test_skip_data_policy_drops_invalid_unit(wide_root):
    _write_csv(
        wide_root / "2#" / "Bank02_20240110.csv",
        WIDE_HEADER,
        [f"1/10/2024 00:0{i},775.4,0,150,89,3.2,3.2,25,25" for i in range(3)],
    )

    outcome = _pipeline(on_validation_error="skip-data").convert_wide(discover_files(wide_root, WIDE))

    assert [u.banks[0].bank_id for u in outcome.units] == ["Bank01"]
    assert not outcome.validation["project1-2#-Bank02"].is_valid


# -----------------------------------------------------------------------------
# Narrow conversion
# -----------------------------------------------------------------------------

def test_convert_narrow_end_to_end(narrow_root):
    outcome = _pipeline().convert_narrow(discover_files(narrow_root, NARROW))

    (unit,) = outcome.units
    assert unit.unit_id == "project2-group1"
    assert unit.banks[0].bank_id == "group1-combined"

    points = unit.banks[0].points
    assert len(points) == 2
    assert points[1].bank.voltage == 701.0
    assert points[1].bank.power == 1402.0
    assert points[1].bank.temperature == pytest.approx(27.0)
    assert points[0].bank.soc == 0.0
    assert unit.summary.consistency == 0.5

    report = outcome.report
    assert report.unit_type == "project2"
    assert report.summary.total_files_processed == 2
    assert report.summary.total_records_processed == 4


# -----------------------------------------------------------------------------
# Command line
# -----------------------------------------------------------------------------

def test_main_writes_units_report_and_points_table(wide_root, tmp_path, monkeypatch):
    from bess_convert import main as cli

    out_dir = tmp_path / "processed"
    monkeypatch.setattr(
        "sys.argv",
        ["bess-convert", "all", "--raw", str(wide_root.parent), "--out", str(out_dir), "--parquet"],
    )

    cli.main()

    with open(out_dir / "project1" / "project1-2#-Bank01.json", encoding="utf-8") as fh:
        assert json.load(fh)["unit_id"] == "project1-2#-Bank01"
    with open(out_dir / "project1_report.json", encoding="utf-8") as fh:
        assert json.load(fh)["summary"]["total_files_processed"] == 1
    assert (out_dir / "project1_points.parquet").exists()
    # no project2 data: an empty session still leaves a report behind
    assert (out_dir / "project2_report.json").exists()
    assert not (out_dir / "project2_points.parquet").exists()
