from __future__ import annotations

"""
Session reporter: one `ConversionReport` per conversion run.

`start_conversion` registers a zeroed report under a fresh session id and
starts a live tracker (performance samples and per-unit quality outcomes).
Recording calls mutate the report in place. `finish_conversion` computes the
rollups, seals the report and drops the tracker; a sealed report stays
retrievable by id and ignores further mutation.

The store is shared by every caller of the reporter, so it is guarded by a
lock. Nothing else in a session is shared.
"""

import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from bess_convert.handlers.errors import ReportNotFoundError
from bess_convert.models import (
    AnomalyReport,
    ErrorRecord,
    QualityReport,
    Severity,
    WarningRecord,
    isoformat_or_none,
)
from bess_convert.utils.statistics import round_score

LOGGER = logging.getLogger(__name__)

EXPECTED_RECORDS_PER_SECOND = 1000
HIGH_MEMORY_MB = 1000
HIGH_CPU_PCT = 80
MANY_WARNINGS = 10


# -------------------------------------------------------------------------
# Report structures
# -------------------------------------------------------------------------

@dataclass
class ConversionSummary:
    total_files_scanned: int = 0
    total_files_processed: int = 0
    total_files_skipped: int = 0
    total_files_failed: int = 0
    total_records_processed: int = 0
    total_records_valid: int = 0
    total_records_invalid: int = 0
    processing_start_time: Optional[datetime] = None
    processing_end_time: Optional[datetime] = None
    total_processing_time_ms: float = 0.0


@dataclass
class ProcessedFileInfo:
    file_path: str
    record_count: int
    valid_records: int
    invalid_records: int
    processing_time_ms: float = 0.0
    file_size: int = 0
    last_modified: Optional[datetime] = None
    processed_at: datetime = field(default_factory=datetime.now)


@dataclass
class SkippedFileInfo:
    file_path: str
    # already_processed | no_changes | invalid_format | access_denied | not_found
    reason: str
    last_modified: Optional[datetime] = None
    skipped_at: datetime = field(default_factory=datetime.now)


@dataclass
class FailedFileInfo:
    file_path: str
    error: str
    # parse_error | validation_error | io_error | unknown_error
    error_type: str = "unknown_error"
    attempted_at: datetime = field(default_factory=datetime.now)


@dataclass
class DataQualityMetrics:
    overall_quality_score: float = 0.0
    completeness_score: float = 0.0
    accuracy_score: float = 0.0
    consistency_score: float = 0.0
    timeliness_score: float = 0.0
    anomaly_count: int = 0
    critical_anomalies: int = 0
    high_severity_anomalies: int = 0


@dataclass
class PerformanceMetrics:
    total_memory_used_mb: float = 0.0
    peak_memory_usage_mb: float = 0.0
    average_file_processing_time_ms: float = 0.0
    files_per_second: float = 0.0
    records_per_second: float = 0.0
    cpu_usage_percent: float = 0.0
    io_wait_time_ms: float = 0.0


@dataclass
class ConversionReport:
    report_id: str
    created_at: datetime
    unit_type: str
    summary: ConversionSummary = field(default_factory=ConversionSummary)
    processed_files: List[ProcessedFileInfo] = field(default_factory=list)
    skipped_files: List[SkippedFileInfo] = field(default_factory=list)
    failed_files: List[FailedFileInfo] = field(default_factory=list)
    data_quality: DataQualityMetrics = field(default_factory=DataQualityMetrics)
    errors: List[ErrorRecord] = field(default_factory=list)
    warnings: List[WarningRecord] = field(default_factory=list)
    performance: PerformanceMetrics = field(default_factory=PerformanceMetrics)
    recommendations: List[str] = field(default_factory=list)
    sealed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "report_id": self.report_id,
            "created_at": isoformat_or_none(self.created_at),
            "unit_type": self.unit_type,
            "summary": _plain(self.summary),
            "file_processing": {
                "processed_files": [_plain(f) for f in self.processed_files],
                "skipped_files": [_plain(f) for f in self.skipped_files],
                "failed_files": [_plain(f) for f in self.failed_files],
            },
            "data_quality": _plain(self.data_quality),
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "performance": _plain(self.performance),
            "recommendations": list(self.recommendations),
            "sealed": self.sealed,
        }


def _plain(obj) -> Dict[str, Any]:
    return {k: isoformat_or_none(v) if isinstance(v, datetime) else v for k, v in vars(obj).items()}


@dataclass
class _Tracker:
    started: float = field(default_factory=time.perf_counter)
    memory_samples: List[float] = field(default_factory=list)
    cpu_samples: List[float] = field(default_factory=list)
    quality: List[Tuple[QualityReport, Optional[AnomalyReport]]] = field(default_factory=list)


class ConversionReporter:
    def __init__(self):
        self._reports: Dict[str, ConversionReport] = {}
        self._trackers: Dict[str, _Tracker] = {}
        self._lock = threading.RLock()

    # ---------------------------------------------------------------------
    # Session lifecycle
    # ---------------------------------------------------------------------
    def start_conversion(self, unit_type: str) -> str:
        session_id = str(uuid.uuid4())
        now = datetime.now()
        report = ConversionReport(report_id=session_id, created_at=now, unit_type=unit_type)
        report.summary.processing_start_time = now
        report.summary.processing_end_time = now
        with self._lock:
            self._reports[session_id] = report
            self._trackers[session_id] = _Tracker()
        LOGGER.info("Started conversion session %s (%s)", session_id, unit_type)
        return session_id

    def finish_conversion(self, session_id: str) -> ConversionReport:
        with self._lock:
            report = self._reports.get(session_id)
            if report is None:
                raise ReportNotFoundError(f"No conversion report for session {session_id}")
            if report.sealed:
                LOGGER.info("Session %s already finished", session_id)
                return report

            tracker = self._trackers.pop(session_id)
            summary = report.summary
            summary.processing_end_time = datetime.now()
            summary.total_processing_time_ms = (time.perf_counter() - tracker.started) * 1000.0
            summary.total_files_scanned = (
                summary.total_files_processed + summary.total_files_skipped + summary.total_files_failed
            )

            self._performance_rollup(report, tracker)
            self._quality_rollup(report, tracker)
            report.recommendations = self._recommendations(report)
            report.sealed = True

        LOGGER.info(
            "Finished conversion session %s in %.0f ms", session_id, report.summary.total_processing_time_ms
        )
        return report

    def get_report(self, session_id: str) -> Optional[ConversionReport]:
        with self._lock:
            return self._reports.get(session_id)

    # ---------------------------------------------------------------------
    # Recording
    # ---------------------------------------------------------------------
    def record_file_processed(self, session_id: str, info: ProcessedFileInfo) -> None:
        with self._lock:
            report = self._live_report(session_id, "record processed file")
            if report is None:
                return
            report.processed_files.append(info)
            report.summary.total_files_processed += 1
            report.summary.total_records_processed += info.record_count
            report.summary.total_records_valid += info.valid_records
            report.summary.total_records_invalid += info.invalid_records
        LOGGER.debug("Processed %s: %d records", info.file_path, info.record_count)

    def record_file_skipped(self, session_id: str, info: SkippedFileInfo) -> None:
        with self._lock:
            report = self._live_report(session_id, "record skipped file")
            if report is None:
                return
            report.skipped_files.append(info)
            report.summary.total_files_skipped += 1
        LOGGER.debug("Skipped %s: %s", info.file_path, info.reason)

    def record_file_failed(self, session_id: str, info: FailedFileInfo) -> None:
        with self._lock:
            report = self._live_report(session_id, "record failed file")
            if report is None:
                return
            report.failed_files.append(info)
            report.summary.total_files_failed += 1
            self.record_error(
                session_id,
                ErrorRecord(
                    error_id=str(uuid.uuid4()),
                    type="file_error",
                    severity=Severity.HIGH,
                    message=info.error,
                    timestamp=info.attempted_at,
                    file_path=info.file_path,
                    details=f"error type: {info.error_type}",
                ),
            )
        LOGGER.warning("File failed: %s (%s)", info.file_path, info.error)

    def record_error(self, session_id: str, error: ErrorRecord) -> None:
        with self._lock:
            report = self._live_report(session_id, "record error")
            if report is None:
                return
            report.errors.append(error)
        LOGGER.error("Recorded %s: %s", error.type, error.message)

    def record_warning(self, session_id: str, warning: WarningRecord) -> None:
        with self._lock:
            report = self._live_report(session_id, "record warning")
            if report is None:
                return
            report.warnings.append(warning)
        LOGGER.warning("Recorded %s warning: %s", warning.type, warning.message)

    def record_data_quality(
        self,
        session_id: str,
        quality: QualityReport,
        anomalies: Optional[AnomalyReport] = None,
    ) -> None:
        with self._lock:
            if self._live_report(session_id, "record data quality") is None:
                return
            self._trackers[session_id].quality.append((quality, anomalies))

    def update_performance_metrics(self, session_id: str, memory_mb: float, cpu_pct: float) -> None:
        with self._lock:
            report = self._live_report(session_id, "update performance metrics")
            if report is None:
                return
            tracker = self._trackers[session_id]
            tracker.memory_samples.append(memory_mb)
            tracker.cpu_samples.append(cpu_pct)
            report.performance.total_memory_used_mb = memory_mb
            report.performance.peak_memory_usage_mb = max(report.performance.peak_memory_usage_mb, memory_mb)
            report.performance.cpu_usage_percent = cpu_pct

    # ---------------------------------------------------------------------
    # Output
    # ---------------------------------------------------------------------
    def save_report_to_file(self, report: ConversionReport, path) -> Path:
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as fh:
                json.dump(report.to_dict(), fh, indent=2, ensure_ascii=False)
        except OSError as exc:
            LOGGER.error("Failed to save report %s to %s: %s", report.report_id, path, exc)
            raise
        LOGGER.info("Saved conversion report to %s", path)
        return path

    def generate_report_summary(self, report: ConversionReport) -> str:
        s = report.summary
        q = report.data_quality
        p = report.performance
        success_rate, validity_rate = _rates(report)
        lines = [
            "=== Conversion report summary ===",
            f"Report ID: {report.report_id}",
            f"Unit type: {report.unit_type}",
            f"Period: {isoformat_or_none(s.processing_start_time)} - {isoformat_or_none(s.processing_end_time)}",
            f"Total processing time: {s.total_processing_time_ms / 1000:.2f}s",
            "",
            "Files:",
            f"- scanned: {s.total_files_scanned}",
            f"- processed: {s.total_files_processed} ({success_rate:.1f}%)",
            f"- skipped: {s.total_files_skipped}",
            f"- failed: {s.total_files_failed}",
            "",
            "Records:",
            f"- processed: {s.total_records_processed}",
            f"- valid: {s.total_records_valid} ({validity_rate:.1f}%)",
            f"- invalid: {s.total_records_invalid}",
            "",
            "Data quality:",
            f"- overall: {q.overall_quality_score:.2f}",
            f"- completeness: {q.completeness_score:.2f}",
            f"- accuracy: {q.accuracy_score:.2f}",
            f"- consistency: {q.consistency_score:.2f}",
            f"- timeliness: {q.timeliness_score:.2f}",
            f"- anomalies: {q.anomaly_count} (critical {q.critical_anomalies}, high {q.high_severity_anomalies})",
            "",
            "Performance:",
            f"- average file time: {p.average_file_processing_time_ms:.2f}ms",
            f"- files/s: {p.files_per_second:.2f}",
            f"- records/s: {p.records_per_second:.0f}",
            f"- peak memory: {p.peak_memory_usage_mb:.2f}MB",
            "",
            f"Errors: {len(report.errors)}",
            f"Warnings: {len(report.warnings)}",
            "",
            "Recommendations:",
        ]
        lines += [f"- {rec}" for rec in report.recommendations]
        return "\n".join(lines)

    def summarize_outcome(self, report: ConversionReport) -> str:
        """One-paragraph outcome: success rate, validity rate and elapsed seconds."""
        s = report.summary
        success_rate, validity_rate = _rates(report)
        return (
            f"Processed {s.total_files_processed} of {s.total_files_scanned} files "
            f"({success_rate:.1f}% success); {s.total_records_valid} of {s.total_records_processed} "
            f"records valid ({validity_rate:.1f}%); finished in {s.total_processing_time_ms / 1000:.2f} seconds."
        )

    # ---------------------------------------------------------------------
    # Rollups
    # ---------------------------------------------------------------------
    def _live_report(self, session_id: str, action: str) -> Optional[ConversionReport]:
        report = self._reports.get(session_id)
        if report is None:
            LOGGER.error("Cannot %s: no report for session %s", action, session_id)
            return None
        if report.sealed:
            LOGGER.error("Cannot %s: session %s is already finished", action, session_id)
            return None
        return report

    @staticmethod
    def _performance_rollup(report: ConversionReport, tracker: _Tracker) -> None:
        perf = report.performance
        summary = report.summary

        if report.processed_files:
            perf.average_file_processing_time_ms = float(
                np.mean([f.processing_time_ms for f in report.processed_files])
            )
        if summary.total_processing_time_ms > 0:
            seconds = summary.total_processing_time_ms / 1000.0
            perf.files_per_second = summary.total_files_processed / seconds
            perf.records_per_second = summary.total_records_processed / seconds
        if tracker.cpu_samples:
            perf.cpu_usage_percent = round(float(np.mean(tracker.cpu_samples)), 2)
        if perf.average_file_processing_time_ms > 0 and perf.cpu_usage_percent > 0:
            cpu_ratio = min(perf.cpu_usage_percent / 100.0, 1.0)
            perf.io_wait_time_ms = perf.average_file_processing_time_ms * (1.0 - cpu_ratio)

    @staticmethod
    def _quality_rollup(report: ConversionReport, tracker: _Tracker) -> None:
        dq = report.data_quality
        summary = report.summary

        if tracker.quality:
            qualities = [q for q, _ in tracker.quality]
            dq.completeness_score = float(np.mean([q.completeness for q in qualities]))
            dq.accuracy_score = float(np.mean([q.accuracy for q in qualities]))
            dq.consistency_score = float(np.mean([q.consistency for q in qualities]))
            dq.timeliness_score = float(np.mean([q.timeliness for q in qualities]))
            dq.anomaly_count = sum(q.anomaly_count for q in qualities)
            distributions = [a.severity_distribution for _, a in tracker.quality if a is not None]
            dq.critical_anomalies = sum(d[Severity.CRITICAL] for d in distributions)
            dq.high_severity_anomalies = sum(d[Severity.HIGH] for d in distributions)
        else:
            # Without per-unit scores, fall back to file and record ratios
            if summary.total_files_scanned > 0:
                dq.completeness_score = summary.total_files_processed / summary.total_files_scanned
            if summary.total_records_processed > 0:
                dq.accuracy_score = summary.total_records_valid / summary.total_records_processed
            error_weight = min(len(report.errors) / max(summary.total_records_processed, 1), 1.0)
            dq.consistency_score = max(0.0, 1.0 - error_weight)
            dq.timeliness_score = min(report.performance.records_per_second / EXPECTED_RECORDS_PER_SECOND, 1.0)
            dq.anomaly_count = sum(1 for w in report.warnings if w.type == "data_quality")
            dq.critical_anomalies = sum(1 for e in report.errors if e.severity is Severity.CRITICAL)
            dq.high_severity_anomalies = sum(1 for e in report.errors if e.severity is Severity.HIGH)

        dq.overall_quality_score = round_score(
            (dq.completeness_score + dq.accuracy_score + dq.consistency_score + dq.timeliness_score) / 4
        )
        dq.completeness_score = round_score(dq.completeness_score)
        dq.accuracy_score = round_score(dq.accuracy_score)
        dq.consistency_score = round_score(dq.consistency_score)
        dq.timeliness_score = round_score(dq.timeliness_score)

    @staticmethod
    def _recommendations(report: ConversionReport) -> List[str]:
        out: List[str] = []
        s = report.summary
        q = report.data_quality
        p = report.performance

        success_rate = s.total_files_processed / s.total_files_scanned if s.total_files_scanned > 0 else 0.0
        if success_rate < 0.8:
            out.append("File success rate is low: check file formats and access permissions")
        if s.total_files_failed > 0:
            out.append(f"{s.total_files_failed} file(s) failed: review the error details and fix the sources")
        if q.completeness_score < 0.9:
            out.append("Data completeness is low: check the data sources and the acquisition process")
        if q.accuracy_score < 0.95:
            out.append("Data accuracy could be improved: review validation rules and cleaning steps")
        if q.consistency_score < 0.9:
            out.append("Data consistency is low: align data formats and conventions")
        if p.files_per_second < 1:
            out.append("File throughput is low: look at I/O costs")
        if p.peak_memory_usage_mb > HIGH_MEMORY_MB:
            out.append("Memory usage is high: process data in smaller batches")
        if p.cpu_usage_percent > HIGH_CPU_PCT:
            out.append("CPU usage is high: spread the processing load")

        critical = sum(1 for e in report.errors if e.severity is Severity.CRITICAL)
        if critical > 0:
            out.append(f"{critical} critical error(s) found: address them before using the data")
        if len(report.warnings) > MANY_WARNINGS:
            out.append("Many warnings were recorded: review data quality and the processing flow")

        return out or ["Conversion ran cleanly: keep the current processing setup"]


def _rates(report: ConversionReport) -> Tuple[float, float]:
    s = report.summary
    success = s.total_files_processed / s.total_files_scanned * 100 if s.total_files_scanned > 0 else 0.0
    validity = s.total_records_valid / s.total_records_processed * 100 if s.total_records_processed > 0 else 0.0
    return success, validity
