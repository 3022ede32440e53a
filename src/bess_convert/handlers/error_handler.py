from __future__ import annotations

"""
Failure classification and policy dispatch.

`ErrorHandler` turns an exception raised somewhere in a conversion session
into an `ErrorHandlingResult`: a category and severity computed from the
exception itself, and a continue/abort decision taken only from the active
`ErrorHandlingStrategy`. The result carries the `ErrorRecord` or
`WarningRecord` that should land in the session report.
"""

import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from bess_convert.config import (
    DEFAULT_STRATEGY,
    ErrorHandlingStrategy,
    FileNotFoundPolicy,
    ParseErrorPolicy,
    ValidationErrorPolicy,
)
from bess_convert.models import ErrorRecord, Severity, WarningRecord

LOGGER = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    FILE_ACCESS = "file_access"
    FILE_FORMAT = "file_format"
    DATA_PARSING = "data_parsing"
    DATA_VALIDATION = "data_validation"
    DATA_TRANSFORM = "data_transform"
    NETWORK_ERROR = "network_error"
    MEMORY_ERROR = "memory_error"
    SYSTEM_ERROR = "system_error"


# Checked in order; the first category with a matching token wins
_MESSAGE_RULES: Tuple[Tuple[ErrorCategory, Tuple[str, ...]], ...] = (
    (ErrorCategory.FILE_ACCESS, ("enoent", "eacces", "eperm", "no such file", "permission denied")),
    (ErrorCategory.FILE_FORMAT, ("csv", "format")),
    (ErrorCategory.DATA_PARSING, ("parse", "invalid")),
    (ErrorCategory.DATA_VALIDATION, ("validation", "range", "type")),
    (ErrorCategory.DATA_TRANSFORM, ("transform", "convert", "mapping")),
    (ErrorCategory.MEMORY_ERROR, ("memory", "heap")),
    (ErrorCategory.NETWORK_ERROR, ("network", "timeout", "connection")),
)

_NOT_FOUND_TOKENS = ("enoent", "no such file", "not found")
_PERMISSION_TOKENS = ("permission denied", "eacces", "eperm")

_ERROR_TYPES = {
    ErrorCategory.FILE_ACCESS: "file_error",
    ErrorCategory.FILE_FORMAT: "file_error",
    ErrorCategory.DATA_PARSING: "parse_error",
    ErrorCategory.DATA_VALIDATION: "validation_error",
    ErrorCategory.DATA_TRANSFORM: "transformation_error",
    ErrorCategory.NETWORK_ERROR: "storage_error",
    ErrorCategory.MEMORY_ERROR: "storage_error",
    ErrorCategory.SYSTEM_ERROR: "storage_error",
}

RETRYABLE_CATEGORIES = frozenset({ErrorCategory.NETWORK_ERROR})


@dataclass
class ErrorContext:
    """Where a failure happened. Attached to every classified failure."""

    operation: str
    file_path: Optional[str] = None
    row_index: Optional[int] = None
    column_name: Optional[str] = None
    data_value: Any = None
    timestamp: datetime = field(default_factory=datetime.now)
    retry_count: int = 0

    def with_retry_count(self, retry_count: int) -> "ErrorContext":
        return replace(self, retry_count=retry_count)


@dataclass
class ErrorHandlingResult:
    should_continue: bool
    should_retry: bool = False
    retry_delay_ms: Optional[int] = None
    error: Optional[ErrorRecord] = None
    warning: Optional[WarningRecord] = None


def _message(error: BaseException) -> str:
    return str(error).lower()


def is_not_found(error: BaseException) -> bool:
    if isinstance(error, FileNotFoundError):
        return True
    message = _message(error)
    return any(token in message for token in _NOT_FOUND_TOKENS)


def is_permission_denied(error: BaseException) -> bool:
    if isinstance(error, PermissionError):
        return True
    message = _message(error)
    return any(token in message for token in _PERMISSION_TOKENS)


class ErrorHandler:
    def __init__(self, strategy: ErrorHandlingStrategy = DEFAULT_STRATEGY):
        self._strategy = strategy
        self._category_counts: Counter = Counter()
        self._severity_counts: Counter = Counter()

    # ---------------------------------------------------------------------
    # Strategy
    # ---------------------------------------------------------------------
    def set_strategy(self, strategy: Optional[ErrorHandlingStrategy] = None, **overrides: Any) -> None:
        """
        Replace the strategy and/or update some of its options.

        Overrides merge over the strategy in effect, so
        ``set_strategy(max_retries=5)`` keeps every other option as it was.
        """
        base = strategy if strategy is not None else self._strategy
        self._strategy = base.merged(**overrides)
        LOGGER.info("Error handling strategy updated: %s", self._strategy.to_dict())

    def get_strategy(self) -> ErrorHandlingStrategy:
        return self._strategy

    # ---------------------------------------------------------------------
    # Classification
    # ---------------------------------------------------------------------
    def categorize_error(self, error: BaseException, context: Optional[ErrorContext] = None) -> ErrorCategory:
        if isinstance(error, (FileNotFoundError, PermissionError)):
            return ErrorCategory.FILE_ACCESS
        if isinstance(error, MemoryError):
            return ErrorCategory.MEMORY_ERROR
        if isinstance(error, (TimeoutError, ConnectionError)):
            return ErrorCategory.NETWORK_ERROR

        message = _message(error)
        if not message:
            return ErrorCategory.SYSTEM_ERROR
        if isinstance(error, SyntaxError):
            return ErrorCategory.DATA_PARSING

        for category, tokens in _MESSAGE_RULES:
            if any(token in message for token in tokens):
                return category
        return ErrorCategory.SYSTEM_ERROR

    def determine_severity(self, error: BaseException, context: Optional[ErrorContext] = None) -> Severity:
        category = self.categorize_error(error, context)

        if category in (ErrorCategory.MEMORY_ERROR, ErrorCategory.SYSTEM_ERROR):
            return Severity.CRITICAL
        if category is ErrorCategory.FILE_ACCESS and is_permission_denied(error):
            return Severity.HIGH
        if category in (ErrorCategory.DATA_TRANSFORM, ErrorCategory.NETWORK_ERROR):
            return Severity.HIGH
        if category in (ErrorCategory.FILE_FORMAT, ErrorCategory.DATA_PARSING):
            return Severity.MEDIUM
        if category is ErrorCategory.DATA_VALIDATION:
            return Severity.LOW
        if category is ErrorCategory.FILE_ACCESS and is_not_found(error):
            return Severity.LOW
        return Severity.MEDIUM

    def should_retry(self, error: BaseException, context: ErrorContext) -> bool:
        if context.retry_count >= self._strategy.max_retries:
            return False
        return self.categorize_error(error, context) in RETRYABLE_CATEGORIES

    # ---------------------------------------------------------------------
    # Policy dispatch
    # ---------------------------------------------------------------------
    def handle_file_error(self, error: BaseException, context: ErrorContext) -> ErrorHandlingResult:
        category, severity = self._classify(error, context)
        LOGGER.error(
            "File error in %s (%s): %s [category=%s, severity=%s]",
            context.operation,
            context.file_path,
            error,
            category.value,
            severity.value,
        )

        if category is ErrorCategory.FILE_ACCESS and is_not_found(error):
            return self._file_not_found(error, context, category)

        should_retry = self.should_retry(error, context)
        if category is ErrorCategory.FILE_FORMAT:
            should_continue = self._strategy.continue_on_error
        else:
            should_continue = self._strategy.continue_on_error and severity is not Severity.CRITICAL
        return ErrorHandlingResult(
            should_continue=should_continue,
            should_retry=should_retry,
            retry_delay_ms=self._strategy.retry_delay_ms if should_retry else None,
            error=self.create_error_record(error, context, category, severity),
        )

    def handle_row_error(self, error: BaseException, context: ErrorContext) -> ErrorHandlingResult:
        category, severity = self._classify(error, context)
        LOGGER.warning(
            "Row error in %s (%s, row %s, column %s): %s [category=%s, severity=%s]",
            context.operation,
            context.file_path,
            context.row_index,
            context.column_name,
            error,
            category.value,
            severity.value,
        )

        policy = self._strategy.on_parse_error
        if policy is ParseErrorPolicy.SKIP_ROW:
            return ErrorHandlingResult(
                should_continue=True,
                warning=self.create_warning_record(f"Skipping row {context.row_index}: {error}", context),
            )
        if policy is ParseErrorPolicy.SKIP_FILE:
            return ErrorHandlingResult(
                should_continue=False,
                error=self.create_error_record(error, context, category, severity),
            )
        return ErrorHandlingResult(
            should_continue=False,
            error=self.create_error_record(error, context, category, Severity.CRITICAL),
        )

    def handle_validation_error(self, error: BaseException, context: ErrorContext) -> ErrorHandlingResult:
        category, severity = self._classify(error, context)
        LOGGER.warning(
            "Validation error in %s (%s, row %s, column %s, value %r): %s [category=%s, severity=%s]",
            context.operation,
            context.file_path,
            context.row_index,
            context.column_name,
            context.data_value,
            error,
            category.value,
            severity.value,
        )

        policy = self._strategy.on_validation_error
        if policy is ValidationErrorPolicy.MARK_INVALID:
            return ErrorHandlingResult(
                should_continue=True,
                warning=self.create_warning_record(f"Validation failed: {error}", context),
            )
        if policy is ValidationErrorPolicy.SKIP_DATA:
            return ErrorHandlingResult(
                should_continue=True,
                warning=self.create_warning_record(f"Skipping invalid data: {error}", context),
            )
        return ErrorHandlingResult(
            should_continue=False,
            error=self.create_error_record(error, context, category, Severity.HIGH),
        )

    # ---------------------------------------------------------------------
    # Records
    # ---------------------------------------------------------------------
    def create_error_record(
        self,
        error: BaseException,
        context: ErrorContext,
        category: ErrorCategory,
        severity: Severity,
    ) -> ErrorRecord:
        details = f"operation: {context.operation}, category: {category.value}"
        if context.data_value is not None:
            details += f", value: {context.data_value!r}"
        return ErrorRecord(
            error_id=str(uuid.uuid4()),
            type=_ERROR_TYPES[category],
            severity=severity,
            message=str(error) or type(error).__name__,
            timestamp=context.timestamp,
            file_path=context.file_path,
            row_index=context.row_index,
            field=context.column_name,
            details=details,
        )

    def create_warning_record(self, message: str, context: ErrorContext) -> WarningRecord:
        return WarningRecord(
            warning_id=str(uuid.uuid4()),
            type=_warning_type(context.operation),
            message=message,
            timestamp=context.timestamp,
            file_path=context.file_path,
            row_index=context.row_index,
            field=context.column_name,
            suggestion=_suggestion(message),
        )

    # ---------------------------------------------------------------------
    # Statistics
    # ---------------------------------------------------------------------
    def get_error_statistics(self) -> Dict[str, Any]:
        return {
            "total_errors": sum(self._category_counts.values()),
            "errors_by_category": dict(self._category_counts),
            "errors_by_severity": dict(self._severity_counts),
        }

    def reset_statistics(self) -> None:
        self._category_counts.clear()
        self._severity_counts.clear()
        LOGGER.info("Error statistics reset")

    # ---------------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------------
    def _classify(self, error: BaseException, context: ErrorContext) -> Tuple[ErrorCategory, Severity]:
        category = self.categorize_error(error, context)
        severity = self.determine_severity(error, context)
        self._category_counts[category.value] += 1
        self._severity_counts[severity.value] += 1
        return category, severity

    def _file_not_found(self, error: BaseException, context: ErrorContext, category: ErrorCategory) -> ErrorHandlingResult:
        policy = self._strategy.on_file_not_found
        if policy is FileNotFoundPolicy.ERROR:
            return ErrorHandlingResult(
                should_continue=False,
                error=self.create_error_record(error, context, category, Severity.HIGH),
            )
        if policy is FileNotFoundPolicy.SKIP:
            message = f"File not found, skipped: {context.file_path}"
        else:
            message = f"File not found: {context.file_path}"
        return ErrorHandlingResult(should_continue=True, warning=self.create_warning_record(message, context))


def _warning_type(operation: str) -> str:
    operation = operation.lower()
    if "parse" in operation or "format" in operation:
        return "format_issue"
    if "validat" in operation or "quality" in operation:
        return "data_quality"
    if "performance" in operation or "memory" in operation:
        return "performance"
    return "configuration"


def _suggestion(message: str) -> str:
    message = message.lower()
    if "not found" in message:
        return "Check that the file path is correct and the file is readable"
    if "parse" in message or "format" in message:
        return "Check the CSV layout: delimiter, header row and encoding"
    if "validation" in message or "range" in message:
        return "Check the values against the configured validation ranges"
    if "memory" in message:
        return "Process large files in smaller batches"
    return "See the error details for more information"
