from __future__ import annotations

import gc
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, TypeVar

import psutil

from bess_convert.handlers.error_handler import ErrorContext, ErrorHandler, ErrorHandlingResult
from bess_convert.handlers.errors import HandledFailure

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

MEMORY_CHECK_INTERVAL = 100
MEMORY_HIGH_PERCENT = 90.0
MEMORY_PAUSE_S = 1.0


@dataclass
class BatchResult:
    results: List[Any] = field(default_factory=list)
    success_count: int = 0
    error_count: int = 0
    should_abort: bool = False


class ErrorMiddleware:
    """
    Runs fallible units of work under an `ErrorHandler`.

    Every failure is classified by the handler, the resulting error or warning
    is recorded with the reporter (when one is attached), and the operation
    either yields ``None`` (continue) or raises `HandledFailure` wrapping the
    caught exception (abort).
    """

    def __init__(
        self,
        handler: ErrorHandler,
        reporter=None,
        session_id: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
        memory_percent: Callable[[], float] = lambda: psutil.virtual_memory().percent,
    ):
        self.handler = handler
        self.reporter = reporter
        self.session_id = session_id
        self._sleep = sleep
        self._memory_percent = memory_percent

    def set_reporter(self, reporter, session_id: str) -> None:
        self.reporter = reporter
        self.session_id = session_id

    # ---------------------------------------------------------------------
    # Retry
    # ---------------------------------------------------------------------
    def with_retry(self, operation: Callable[[], T], context: ErrorContext) -> T:
        """
        Call ``operation`` until it succeeds or the handler refuses a retry.

        Attempt ``n`` (0-based) that fails with a retryable error sleeps
        ``retry_delay_ms * 2**n`` before the next one. After the last allowed
        attempt the error propagates.
        """
        strategy = self.handler.get_strategy()
        for attempt in range(strategy.max_retries + 1):
            try:
                return operation()
            except Exception as exc:
                if not self.handler.should_retry(exc, context.with_retry_count(attempt)):
                    raise
                delay_ms = strategy.retry_delay_ms * (2 ** attempt)
                LOGGER.warning(
                    "%s failed (attempt %d/%d), retrying in %d ms: %s",
                    context.operation,
                    attempt + 1,
                    strategy.max_retries + 1,
                    delay_ms,
                    exc,
                )
                self._sleep(delay_ms / 1000.0)
        raise RuntimeError(f"{context.operation}: retry loop exhausted")

    # ---------------------------------------------------------------------
    # Wrapped operations
    # ---------------------------------------------------------------------
    def wrap_file_operation(
        self,
        operation: Callable[[], T],
        file_path: Optional[str],
        operation_name: str = "read file",
    ) -> Optional[T]:
        context = ErrorContext(operation=operation_name, file_path=file_path)
        try:
            return self.with_retry(operation, context)
        except Exception as exc:
            result = self.handler.handle_file_error(exc, context)
            return self._settle(exc, result)

    def wrap_row_operation(
        self,
        operation: Callable[[], T],
        file_path: Optional[str],
        row_index: Optional[int],
        operation_name: str = "parse row",
        column_name: Optional[str] = None,
        data_value: Any = None,
    ) -> Optional[T]:
        context = ErrorContext(
            operation=operation_name,
            file_path=file_path,
            row_index=row_index,
            column_name=column_name,
            data_value=data_value,
        )
        try:
            return operation()
        except Exception as exc:
            result = self.handler.handle_row_error(exc, context)
            return self._settle(exc, result)

    def wrap_validation_operation(
        self,
        operation: Callable[[], T],
        file_path: Optional[str] = None,
        row_index: Optional[int] = None,
        column_name: Optional[str] = None,
        data_value: Any = None,
        operation_name: str = "validate data",
    ) -> Optional[T]:
        context = ErrorContext(
            operation=operation_name,
            file_path=file_path,
            row_index=row_index,
            column_name=column_name,
            data_value=data_value,
        )
        try:
            return operation()
        except Exception as exc:
            result = self.handler.handle_validation_error(exc, context)
            return self._settle(exc, result)

    def batch_process(
        self,
        items: Sequence[T],
        worker: Callable[[T, int], R],
        operation: str = "batch item",
    ) -> BatchResult:
        """
        Run ``worker(item, index)`` over ``items`` one at a time.

        Failures contribute ``None`` to ``results``. Processing stops after a
        failure the handler will not continue from, once ``max_errors_per_file``
        failures have accumulated, or after the first failure when
        ``continue_on_error`` is off. A `HandledFailure` from a wrapped
        operation was already classified and recorded; it only stops the batch.
        Every ``MEMORY_CHECK_INTERVAL`` items the batch pauses while system
        memory usage is above ``MEMORY_HIGH_PERCENT``.
        """
        strategy = self.handler.get_strategy()
        batch = BatchResult()

        for index, item in enumerate(items):
            if index % MEMORY_CHECK_INTERVAL == 0:
                self._relieve_memory_pressure(operation)
            try:
                batch.results.append(worker(item, index))
                batch.success_count += 1
                continue
            except HandledFailure as exc:
                batch.results.append(None)
                batch.error_count += 1
                LOGGER.error("%s: aborting batch at item %d: %s", operation, index, exc)
                batch.should_abort = True
                break
            except Exception as exc:
                context = ErrorContext(operation=operation, row_index=index, data_value=item)
                result = self.handler.handle_row_error(exc, context)
                self._record(result)

            batch.results.append(None)
            batch.error_count += 1

            if not result.should_continue:
                LOGGER.error("%s: aborting batch at item %d", operation, index)
                batch.should_abort = True
                break
            if batch.error_count >= strategy.max_errors_per_file:
                LOGGER.warning(
                    "%s: error limit (%d) reached, aborting batch", operation, strategy.max_errors_per_file
                )
                batch.should_abort = True
                break
            if not strategy.continue_on_error:
                LOGGER.warning("%s: continue_on_error is off, aborting batch after first failure", operation)
                batch.should_abort = True
                break

        LOGGER.info(
            "%s: %d succeeded, %d failed%s",
            operation,
            batch.success_count,
            batch.error_count,
            " (aborted)" if batch.should_abort else "",
        )
        return batch

    # ---------------------------------------------------------------------
    # Statistics
    # ---------------------------------------------------------------------
    def should_continue_processing(self, current_errors: int) -> bool:
        strategy = self.handler.get_strategy()
        if not strategy.continue_on_error:
            return current_errors == 0
        return current_errors < strategy.max_errors_per_file

    def get_error_statistics(self):
        return self.handler.get_error_statistics()

    def reset_error_statistics(self) -> None:
        self.handler.reset_statistics()

    def generate_error_summary(self) -> str:
        stats = self.handler.get_error_statistics()
        if stats["total_errors"] == 0:
            return "No errors were recorded during processing"

        lines = ["Error summary:", f"Total errors: {stats['total_errors']}", "", "By category:"]
        lines += [f"  {category}: {count}" for category, count in stats["errors_by_category"].items()]
        lines += ["", "By severity:"]
        lines += [f"  {severity}: {count}" for severity, count in stats["errors_by_severity"].items()]
        return "\n".join(lines)

    # ---------------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------------
    def _record(self, result: ErrorHandlingResult) -> None:
        if self.reporter is None or self.session_id is None:
            return
        if result.error is not None:
            self.reporter.record_error(self.session_id, result.error)
        if result.warning is not None:
            self.reporter.record_warning(self.session_id, result.warning)

    def _settle(self, exc: Exception, result: ErrorHandlingResult) -> None:
        self._record(result)
        if not result.should_continue:
            raise HandledFailure(exc) from exc
        return None

    def _relieve_memory_pressure(self, operation: str) -> None:
        percent = self._memory_percent()
        if percent <= MEMORY_HIGH_PERCENT:
            return
        LOGGER.warning("%s: memory usage at %.1f%%, pausing processing", operation, percent)
        self._sleep(MEMORY_PAUSE_S)
        gc.collect()
