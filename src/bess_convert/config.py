from __future__ import annotations

"""
Configuration values for the BESS telemetry converter.

Everything here is an explicit value: the error-handling strategy and the
validation ranges are frozen dataclasses that get passed to the components
that need them. Nothing in the package reads mutable module state.
"""

from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Any, Tuple


# Gap thresholds (seconds)
TIMELINESS_GAP_S = 60 * 60
CONTINUITY_GAP_S = 2 * 60 * 60
LONG_GAP_S = 24 * 60 * 60

# Error rate at (or above) which a validated unit is no longer valid
MAX_ERROR_RATE = 0.10


class FileNotFoundPolicy(str, Enum):
    SKIP = "skip"
    WARN = "warn"
    ERROR = "error"


class ParseErrorPolicy(str, Enum):
    SKIP_ROW = "skip-row"
    SKIP_FILE = "skip-file"
    ABORT = "abort"


class ValidationErrorPolicy(str, Enum):
    MARK_INVALID = "mark-invalid"
    SKIP_DATA = "skip-data"
    ABORT = "abort"


_POLICY_FIELDS = {
    "on_file_not_found": FileNotFoundPolicy,
    "on_parse_error": ParseErrorPolicy,
    "on_validation_error": ValidationErrorPolicy,
}


@dataclass(frozen=True)
class ErrorHandlingStrategy:
    """How failures are recovered from or escalated during a conversion session."""

    on_file_not_found: FileNotFoundPolicy = FileNotFoundPolicy.WARN
    on_parse_error: ParseErrorPolicy = ParseErrorPolicy.SKIP_ROW
    on_validation_error: ValidationErrorPolicy = ValidationErrorPolicy.MARK_INVALID
    max_errors_per_file: int = 100
    continue_on_error: bool = True
    max_retries: int = 3
    retry_delay_ms: int = 1000

    def __post_init__(self) -> None:
        # Accept plain strings ("skip-row") as well as enum members
        for name, enum_cls in _POLICY_FIELDS.items():
            object.__setattr__(self, name, enum_cls(getattr(self, name)))
        if self.max_errors_per_file < 1:
            raise ValueError("max_errors_per_file must be >= 1")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.retry_delay_ms < 0:
            raise ValueError("retry_delay_ms must be >= 0")

    def merged(self, **overrides: Any) -> "ErrorHandlingStrategy":
        """Return a copy with ``overrides`` applied; unknown keys raise ``TypeError``."""
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise TypeError(f"Unknown strategy option(s): {', '.join(sorted(unknown))}")
        return replace(self, **overrides)

    def to_dict(self) -> dict[str, Any]:
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            out[f.name] = value.value if isinstance(value, Enum) else value
        return out


DEFAULT_STRATEGY = ErrorHandlingStrategy()


Range = Tuple[float, float]


@dataclass(frozen=True)
class ValidationRanges:
    """Normal operating ranges. ``voltage`` is per cell, ``bank_voltage`` is the bank total."""

    voltage: Range = (2.5, 4.2)
    bank_voltage: Range = (0.0, 1000.0)
    temperature: Range = (-40.0, 80.0)
    soc: Range = (0.0, 100.0)
    soh: Range = (0.0, 100.0)

    def __post_init__(self) -> None:
        for f in fields(self):
            low, high = getattr(self, f.name)
            if low >= high:
                raise ValueError(f"Invalid {f.name} range: [{low}, {high}]")


DEFAULT_RANGES = ValidationRanges()


@dataclass(frozen=True)
class LayoutConfig:
    wide_time_format: str = "%m/%d/%Y %H:%M"
    wide_cell_count: int = 240
    wide_temperature_count: int = 120
    narrow_time_format: str = "%Y-%m-%d %H:%M:%S"
    narrow_cell_count: int = 216


DEFAULT_LAYOUT = LayoutConfig()
