from __future__ import annotations

"""
Raw row model: one CSV row as handed over by the tokenizer.

The tokenizer yields ``{column name: cell string}`` mappings. ``WideRow`` and
``NarrowRow`` turn those into typed records; numeric cells that are blank,
``-`` or unparseable become ``None``. Only a missing timestamp column makes a
row unusable (``RowParseError``).
"""

import re
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional

from bess_convert.handlers.errors import RowParseError
from bess_convert.models import SignalKind

WIDE_TIME_COLUMN = "时间"
WIDE_BANK_COLUMNS = {
    "voltage": "总电压",
    "current": "总电流",
    "soc": "SOC",
    "soh": "SOH",
}
# Cell column prefixes, e.g. V1..V240, T1..T120, SOC1.., SOH1..
WIDE_CELL_PREFIXES = {
    "voltages": "V",
    "temperatures": "T",
    "socs": "SOC",
    "sohs": "SOH",
}

NARROW_TIME_COLUMN = "datetime"
NARROW_BASE_COLUMNS = ("devInstCode", "groupNo", "datetime", "bankVol", "bankCur")

_NULL_TOKENS = {"", "-", "--", "null", "none", "nan", "n/a"}


def safe_float(value: Any) -> Optional[float]:
    """Parse a cell into a float, ``None`` when it is blank or not numeric."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return None if value != value else float(value)
    text = str(value).strip()
    if text.lower() in _NULL_TOKENS:
        return None
    try:
        parsed = float(text)
    except ValueError:
        return None
    return None if parsed != parsed else parsed


def extract_cell_values(record: Mapping[str, Any], prefix: str, max_count: Optional[int] = None) -> List[Optional[float]]:
    """Collect ``<prefix><n>`` columns ordered by ``n``."""
    pattern = re.compile(rf"^{re.escape(prefix)}(\d+)$")
    numbered = []
    for column in record:
        match = pattern.match(str(column).strip())
        if match:
            numbered.append((int(match.group(1)), column))
    numbered.sort()
    if max_count is not None:
        numbered = numbered[:max_count]
    return [safe_float(record[column]) for _, column in numbered]


def _timestamp_text(record: Mapping[str, Any], column: str) -> str:
    if column not in record:
        raise RowParseError(f"Cannot parse row: missing '{column}' column")
    text = str(record[column] or "").strip()
    if not text:
        raise RowParseError(f"Cannot parse row: empty '{column}' value")
    return text


@dataclass
class WideRow:
    """One row of a per-bank file carrying every signal kind."""

    timestamp: str
    voltage: Optional[float] = None
    current: Optional[float] = None
    soc: Optional[float] = None
    soh: Optional[float] = None
    voltages: List[Optional[float]] = field(default_factory=list)
    temperatures: List[Optional[float]] = field(default_factory=list)
    socs: List[Optional[float]] = field(default_factory=list)
    sohs: List[Optional[float]] = field(default_factory=list)

    @classmethod
    def from_record(
        cls,
        record: Mapping[str, Any],
        cell_count: Optional[int] = None,
        temperature_count: Optional[int] = None,
    ) -> "WideRow":
        return cls(
            timestamp=_timestamp_text(record, WIDE_TIME_COLUMN),
            **{name: safe_float(record.get(column)) for name, column in WIDE_BANK_COLUMNS.items()},
            voltages=extract_cell_values(record, WIDE_CELL_PREFIXES["voltages"], cell_count),
            temperatures=extract_cell_values(record, WIDE_CELL_PREFIXES["temperatures"], temperature_count),
            socs=extract_cell_values(record, WIDE_CELL_PREFIXES["socs"], cell_count),
            sohs=extract_cell_values(record, WIDE_CELL_PREFIXES["sohs"], cell_count),
        )


@dataclass
class NarrowRow:
    """One row of a per-kind file: bank scalars (voltage files only) plus one value per cell."""

    timestamp: str
    device_code: Optional[str] = None
    group_no: Optional[int] = None
    bank_voltage: Optional[float] = None
    bank_current: Optional[float] = None
    values: List[Optional[float]] = field(default_factory=list)

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "NarrowRow":
        group_no = safe_float(record.get("groupNo"))
        # Value columns are whatever follows the base columns, in file order
        values = [
            safe_float(value)
            for column, value in record.items()
            if str(column).strip() not in NARROW_BASE_COLUMNS
        ]
        return cls(
            timestamp=_timestamp_text(record, NARROW_TIME_COLUMN),
            device_code=(str(record["devInstCode"]).strip() or None) if "devInstCode" in record else None,
            group_no=int(group_no) if group_no is not None else None,
            bank_voltage=safe_float(record.get("bankVol")),
            bank_current=safe_float(record.get("bankCur")),
            values=values,
        )


@dataclass
class RawBatch:
    """Rows of one source file together with the metadata extracted from its path."""

    unit_id: str
    rows: List[Any] = field(default_factory=list)
    kind: Optional[SignalKind] = None
    date: Optional[str] = None
    file_path: Optional[str] = None
    system_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.kind is not None:
            self.kind = SignalKind(self.kind)
