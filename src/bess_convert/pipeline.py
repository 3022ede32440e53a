from __future__ import annotations

"""
End-to-end conversion of discovered CSV files into standardised units.

One call to `ConversionPipeline.convert_wide` or `convert_narrow` is one
reporter session. Units (a bank file, or all files of a group) are handled
one at a time through `ErrorMiddleware.batch_process`:

1. every file is read with retry through `wrap_file_operation`;
2. every row is built through `wrap_row_operation`;
3. the unit is transformed, checked through `wrap_validation_operation`,
   scanned for anomalies and scored;
4. outcomes and a psutil performance sample go to the reporter.
"""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence

import psutil

from bess_convert.config import (
    DEFAULT_LAYOUT,
    DEFAULT_RANGES,
    DEFAULT_STRATEGY,
    ErrorHandlingStrategy,
    LayoutConfig,
    ParseErrorPolicy,
    ValidationErrorPolicy,
    ValidationRanges,
)
from bess_convert.handlers.error_handler import ErrorHandler
from bess_convert.handlers.errors import HandledFailure, InvalidResultError
from bess_convert.middleware.error_middleware import ErrorMiddleware
from bess_convert.models import AnomalyReport, QualityReport, StandardBatteryData, ValidationResult
from bess_convert.reporters.conversion_reporter import (
    ConversionReport,
    ConversionReporter,
    FailedFileInfo,
    ProcessedFileInfo,
    SkippedFileInfo,
)
from bess_convert.rows import NarrowRow, RawBatch, WideRow
from bess_convert.sources import FileDescriptor, read_csv_records
from bess_convert.transformers.common import validate_transform_result
from bess_convert.transformers.narrow_transformer import NarrowLayoutTransformer
from bess_convert.transformers.wide_transformer import WideLayoutTransformer
from bess_convert.validators.data_validator import DataValidator

LOGGER = logging.getLogger(__name__)

Loader = Callable[[object], List[Mapping[str, str]]]


@dataclass
class ConversionOutcome:
    session_id: str
    report: ConversionReport
    units: List[StandardBatteryData] = field(default_factory=list)
    validation: Dict[str, ValidationResult] = field(default_factory=dict)
    anomalies: Dict[str, AnomalyReport] = field(default_factory=dict)
    quality: Dict[str, QualityReport] = field(default_factory=dict)
    aborted: bool = False


class ConversionPipeline:
    def __init__(
        self,
        strategy: ErrorHandlingStrategy = DEFAULT_STRATEGY,
        ranges: ValidationRanges = DEFAULT_RANGES,
        layout: LayoutConfig = DEFAULT_LAYOUT,
        reporter: Optional[ConversionReporter] = None,
        loader: Loader = read_csv_records,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.handler = ErrorHandler(strategy)
        self.reporter = reporter if reporter is not None else ConversionReporter()
        self.middleware = ErrorMiddleware(self.handler, self.reporter, sleep=sleep)
        self.validator = DataValidator(ranges)
        self.layout = layout
        self.wide = WideLayoutTransformer(layout)
        self.narrow = NarrowLayoutTransformer(layout)
        self.loader = loader
        self._process = psutil.Process()

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------
    def convert_wide(self, descriptors: Sequence[FileDescriptor]) -> ConversionOutcome:
        """Convert project1 bank files, one unit per file."""
        outcome = self._start("project1")

        def work(descriptor: FileDescriptor, index: int) -> Optional[StandardBatteryData]:
            batch = self._load_batch(outcome.session_id, descriptor)
            if batch is None:
                return None
            return self._finish_unit(outcome, self.wide.transform(batch), str(descriptor.path))

        return self._run(outcome, list(descriptors), work, "convert bank file")

    def convert_narrow(self, descriptors: Sequence[FileDescriptor]) -> ConversionOutcome:
        """Convert project2 per-kind files, one unit per group."""
        outcome = self._start("project2")

        groups: Dict[str, List[FileDescriptor]] = OrderedDict()
        for descriptor in descriptors:
            groups.setdefault(descriptor.unit_id, []).append(descriptor)

        def work(group: List[FileDescriptor], index: int) -> Optional[StandardBatteryData]:
            batches = [self._load_batch(outcome.session_id, d) for d in group]
            batches = [b for b in batches if b is not None]
            if not batches:
                LOGGER.warning("Group %s has no readable files", group[0].unit_id)
                return None
            return self._finish_unit(outcome, self.narrow.transform(batches), str(group[0].path.parent))

        return self._run(outcome, list(groups.values()), work, "convert group files")

    # ---------------------------------------------------------------------
    # Session plumbing
    # ---------------------------------------------------------------------
    def _start(self, unit_type: str) -> ConversionOutcome:
        session_id = self.reporter.start_conversion(unit_type)
        self.middleware.set_reporter(self.reporter, session_id)
        self.handler.reset_statistics()
        return ConversionOutcome(session_id=session_id, report=self.reporter.get_report(session_id))

    def _run(self, outcome: ConversionOutcome, items, work, operation: str) -> ConversionOutcome:
        batch = self.middleware.batch_process(items, work, operation)
        outcome.units = [unit for unit in batch.results if unit is not None]
        outcome.aborted = batch.should_abort
        outcome.report = self.reporter.finish_conversion(outcome.session_id)
        LOGGER.info("%s", self.reporter.summarize_outcome(outcome.report))
        return outcome

    def _sample_performance(self, session_id: str) -> None:
        memory_mb = self._process.memory_info().rss / (1024 * 1024)
        cpu_pct = psutil.cpu_percent(interval=None)
        self.reporter.update_performance_metrics(session_id, memory_mb, cpu_pct)

    # ---------------------------------------------------------------------
    # Files and rows
    # ---------------------------------------------------------------------
    def _load_batch(self, session_id: str, descriptor: FileDescriptor) -> Optional[RawBatch]:
        path = str(descriptor.path)
        started = time.perf_counter()
        try:
            records = self.middleware.wrap_file_operation(lambda: self.loader(descriptor.path), path, "read csv file")
        except HandledFailure as exc:
            self.reporter.record_file_failed(session_id, FailedFileInfo(path, str(exc), "io_error"))
            raise

        if records is None:
            if not descriptor.path.exists():
                self.reporter.record_file_skipped(session_id, SkippedFileInfo(path, "not_found"))
            else:
                self.reporter.record_file_failed(session_id, FailedFileInfo(path, "file could not be read", "io_error"))
            return None

        rows = []
        for index, record in enumerate(records):
            try:
                row = self.middleware.wrap_row_operation(
                    lambda: self._build_row(descriptor, record), path, index, "parse csv row"
                )
            except HandledFailure as exc:
                if self.handler.get_strategy().on_parse_error is ParseErrorPolicy.SKIP_FILE:
                    self.reporter.record_file_failed(session_id, FailedFileInfo(path, str(exc), "parse_error"))
                    return None
                raise
            if row is not None:
                rows.append(row)

        stat = descriptor.path.stat() if descriptor.path.exists() else None
        self.reporter.record_file_processed(
            session_id,
            ProcessedFileInfo(
                file_path=path,
                record_count=len(records),
                valid_records=len(rows),
                invalid_records=len(records) - len(rows),
                processing_time_ms=(time.perf_counter() - started) * 1000.0,
                file_size=stat.st_size if stat else 0,
            ),
        )
        return RawBatch(
            unit_id=descriptor.unit_id,
            rows=rows,
            kind=descriptor.kind,
            date=descriptor.date,
            file_path=path,
            system_id=descriptor.system_id,
        )

    def _build_row(self, descriptor: FileDescriptor, record: Mapping[str, str]):
        if descriptor.kind is None:
            return WideRow.from_record(
                record,
                cell_count=self.layout.wide_cell_count,
                temperature_count=self.layout.wide_temperature_count,
            )
        return NarrowRow.from_record(record)

    # ---------------------------------------------------------------------
    # Units
    # ---------------------------------------------------------------------
    def _finish_unit(
        self,
        outcome: ConversionOutcome,
        unit: StandardBatteryData,
        location: str,
    ) -> Optional[StandardBatteryData]:
        validation = self.validator.validate_data(unit)
        outcome.validation[unit.unit_id] = validation

        def check() -> bool:
            validate_transform_result(unit, strict=True)
            if not validation.is_valid:
                raise InvalidResultError(
                    f"Validation of {unit.unit_id} failed: {len(validation.errors)} errors, "
                    f"{validation.error_rate:.1%} invalid records"
                )
            return True

        passed = self.middleware.wrap_validation_operation(
            check, file_path=location, data_value=unit.unit_id, operation_name="validate unit"
        )
        if passed is None and self.handler.get_strategy().on_validation_error is ValidationErrorPolicy.SKIP_DATA:
            LOGGER.warning("Dropping unit %s after failed validation", unit.unit_id)
            self._sample_performance(outcome.session_id)
            return None

        anomalies = self.validator.detect_anomalies(unit.all_points(), unit.unit_id)
        quality = self.validator.generate_quality_report(unit)
        outcome.anomalies[unit.unit_id] = anomalies
        outcome.quality[unit.unit_id] = quality
        self.reporter.record_data_quality(outcome.session_id, quality, anomalies)
        self._sample_performance(outcome.session_id)
        return unit
