from __future__ import annotations

"""
Transformer for the project1 (wide) layout.

Each source file holds one bank and every signal kind as columns:

    时间, 总电压, 总电流, SOC, SOH, V1..V240, T1..T120, SOC1.., SOH1..

One row becomes one `TimeSeriesPoint`:

1. The timestamp is parsed with the layout format (generic parse as fallback);
   rows whose timestamp cannot be parsed are dropped with a warning.
2. Bank voltage/current/SOC/SOH are copied (0 when absent) and the bank
   temperature is the mean of the row's valid temperature cells.
3. ``power`` is always derived as ``voltage * current``.
4. Repeated timestamps keep the first row; points are sorted ascending.
"""

import logging
from datetime import datetime
from typing import Dict, List, Sequence

from bess_convert.config import DEFAULT_LAYOUT, LayoutConfig
from bess_convert.models import (
    BankData,
    BankTimeSeries,
    CellData,
    StandardBatteryData,
    TimeSeriesPoint,
)
from bess_convert.rows import RawBatch, WideRow
from bess_convert.transformers.common import build_summary, time_range
from bess_convert.utils.processing_helpers import cell_array, parse_timestamp, value_or_zero
from bess_convert.utils.statistics import bank_statistics, mean_or_zero

LOGGER = logging.getLogger(__name__)

UNIT_TYPE = "project1"


class WideLayoutTransformer:
    def __init__(self, layout: LayoutConfig = DEFAULT_LAYOUT):
        self.layout = layout

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------
    def transform(self, batch: RawBatch) -> StandardBatteryData:
        """Convert the rows of one bank file into a single-bank unit."""
        rows = [self._as_row(row) for row in batch.rows]
        LOGGER.info("Transforming %d wide rows for bank %s", len(rows), batch.unit_id)

        points = self._build_points(rows)
        bank = BankTimeSeries(
            bank_id=batch.unit_id,
            points=points,
            statistics=bank_statistics(points),
        )

        system_id = batch.system_id or "unknown"
        result = StandardBatteryData(
            unit_id=f"{UNIT_TYPE}-{system_id}-{batch.unit_id}",
            unit_type=UNIT_TYPE,
            banks=[bank],
            time_range=time_range(points),
            summary=build_summary(len(rows), points),
            system_id=batch.system_id,
        )
        LOGGER.info("Bank %s transformed: %d points", batch.unit_id, len(points))
        return result

    # ---------------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------------
    def _as_row(self, row) -> WideRow:
        if isinstance(row, WideRow):
            return row
        return WideRow.from_record(
            row,
            cell_count=self.layout.wide_cell_count,
            temperature_count=self.layout.wide_temperature_count,
        )

    def _build_points(self, rows: Sequence[WideRow]) -> List[TimeSeriesPoint]:
        by_time: Dict[datetime, TimeSeriesPoint] = {}
        for index, row in enumerate(rows):
            timestamp = parse_timestamp(row.timestamp, self.layout.wide_time_format)
            if timestamp is None:
                LOGGER.warning("Dropping row %d: unparseable timestamp %r", index, row.timestamp)
                continue
            if timestamp in by_time:
                # first row for a timestamp wins
                continue
            by_time[timestamp] = self._point(timestamp, row)
        return [by_time[ts] for ts in sorted(by_time)]

    def _point(self, timestamp: datetime, row: WideRow) -> TimeSeriesPoint:
        voltage = value_or_zero(row.voltage)
        current = value_or_zero(row.current)
        bank = BankData(
            voltage=voltage,
            current=current,
            soc=value_or_zero(row.soc),
            soh=value_or_zero(row.soh),
            power=voltage * current,
            temperature=mean_or_zero(row.temperatures),
        )
        cells = CellData(
            voltages=cell_array(row.voltages, self.layout.wide_cell_count),
            temperatures=cell_array(row.temperatures, self.layout.wide_temperature_count),
            socs=cell_array(row.socs, self.layout.wide_cell_count),
            sohs=cell_array(row.sohs, self.layout.wide_cell_count),
        )
        return TimeSeriesPoint(timestamp=timestamp, bank=bank, cells=cells)
