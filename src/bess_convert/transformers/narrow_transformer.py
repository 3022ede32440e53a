from __future__ import annotations

"""
Transformer for the project2 (narrow) layout.

A group is exported as one file per signal kind per day:

    devInstCode, groupNo, datetime, [bankVol, bankCur], value1..valueN

Rebuilding one time series means aligning these files on their timestamps:

1. Batches are grouped by signal kind.
2. Every kind's rows are indexed by normalised timestamp. Rows whose
   timestamp cannot be parsed are dropped with a warning, and for a repeated
   timestamp the first row wins.
3. The outer union of all timestamps is walked in ascending order; each kind
   present at a timestamp fills its part of the point through `KIND_HANDLERS`.
   Kinds absent at a timestamp leave bank fields at 0 and cell arrays empty.
4. ``power`` is derived once all kinds are merged.
"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Sequence

import pandas as pd

from bess_convert.config import DEFAULT_LAYOUT, LayoutConfig
from bess_convert.models import (
    BankTimeSeries,
    SignalKind,
    StandardBatteryData,
    TimeSeriesPoint,
)
from bess_convert.rows import NarrowRow, RawBatch
from bess_convert.transformers.common import build_summary, time_range
from bess_convert.utils.processing_helpers import cell_array, parse_timestamps, value_or_zero
from bess_convert.utils.statistics import bank_statistics, mean_or_zero

LOGGER = logging.getLogger(__name__)

UNIT_TYPE = "project2"

KindRows = Dict[datetime, NarrowRow]


# -------------------------------------------------------------------------
# Per-kind handlers
# -------------------------------------------------------------------------

def _apply_voltage(point: TimeSeriesPoint, row: NarrowRow, cell_count: int) -> None:
    point.bank.voltage = value_or_zero(row.bank_voltage)
    point.bank.current = value_or_zero(row.bank_current)
    point.cells.voltages = cell_array(row.values, cell_count)


def _apply_temperature(point: TimeSeriesPoint, row: NarrowRow, cell_count: int) -> None:
    point.bank.temperature = mean_or_zero(row.values)
    point.cells.temperatures = cell_array(row.values, cell_count)


def _apply_soc(point: TimeSeriesPoint, row: NarrowRow, cell_count: int) -> None:
    point.bank.soc = mean_or_zero(row.values)
    point.cells.socs = cell_array(row.values, cell_count)


def _apply_state(point: TimeSeriesPoint, row: NarrowRow, cell_count: int) -> None:
    point.bank.soh = mean_or_zero(row.values)
    point.cells.sohs = cell_array(row.values, cell_count)


KIND_HANDLERS: Dict[SignalKind, Callable[[TimeSeriesPoint, NarrowRow, int], None]] = {
    SignalKind.VOLTAGE: _apply_voltage,
    SignalKind.TEMPERATURE: _apply_temperature,
    SignalKind.SOC: _apply_soc,
    SignalKind.STATE: _apply_state,
}


class NarrowLayoutTransformer:
    def __init__(self, layout: LayoutConfig = DEFAULT_LAYOUT):
        self.layout = layout

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------
    def transform(self, batches: Sequence[RawBatch]) -> StandardBatteryData:
        """Align the per-kind batches of one group into a single-bank unit."""
        if not batches:
            raise ValueError("Narrow layout transform needs at least one batch")

        group_id = batches[0].unit_id
        LOGGER.info("Transforming %d narrow batches for group %s", len(batches), group_id)

        by_kind = self._group_by_kind(batches)
        LOGGER.info("Group %s signal kinds: %s", group_id, ", ".join(k.value for k in by_kind))

        indexed = {kind: self._index_rows(kind_batches) for kind, kind_batches in by_kind.items()}
        points = self._align(indexed)

        bank = BankTimeSeries(
            bank_id=f"{group_id}-combined",
            points=points,
            statistics=bank_statistics(points),
        )
        total_records = sum(len(batch.rows) for batch in batches)
        result = StandardBatteryData(
            unit_id=f"{UNIT_TYPE}-{group_id}",
            unit_type=UNIT_TYPE,
            banks=[bank],
            time_range=time_range(points),
            summary=build_summary(total_records, points, by_kind.keys()),
            group_id=group_id,
        )
        LOGGER.info("Group %s transformed: %d aligned points", group_id, len(points))
        return result

    def build_multidimensional_index(self, batches: Sequence[RawBatch]) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """
        Index batches as ``{group: {kind: {date: {record_count, file_path}}}}``.

        Batches without a kind are filed under ``"unknown"``, as are batches
        without a date.
        """
        index: Dict[str, Dict[str, Dict[str, Any]]] = {}
        for batch in batches:
            kind = batch.kind.value if batch.kind is not None else "unknown"
            date = batch.date or "unknown"
            index.setdefault(batch.unit_id, {}).setdefault(kind, {})[date] = {
                "record_count": len(batch.rows),
                "file_path": batch.file_path,
            }
        LOGGER.info("Built multidimensional index over %d groups", len(index))
        return index

    # ---------------------------------------------------------------------
    # Alignment
    # ---------------------------------------------------------------------
    @staticmethod
    def _group_by_kind(batches: Sequence[RawBatch]) -> Dict[SignalKind, List[RawBatch]]:
        by_kind: Dict[SignalKind, List[RawBatch]] = defaultdict(list)
        for batch in batches:
            if batch.kind is None:
                raise ValueError(f"Narrow batch {batch.file_path or batch.unit_id} has no signal kind")
            by_kind[batch.kind].append(batch)
        return dict(by_kind)

    def _index_rows(self, batches: Sequence[RawBatch]) -> KindRows:
        rows = [self._as_row(row) for batch in batches for row in batch.rows]
        if not rows:
            return {}

        frame = pd.DataFrame(
            {
                "timestamp": parse_timestamps([r.timestamp for r in rows], self.layout.narrow_time_format),
                "position": range(len(rows)),
            }
        )
        unparseable = frame["timestamp"].isna()
        for position in frame.loc[unparseable, "position"]:
            LOGGER.warning("Dropping narrow row: unparseable timestamp %r", rows[position].timestamp)

        # file order is preserved, so keep="first" means first row wins
        frame = frame[~unparseable].drop_duplicates(subset="timestamp", keep="first")
        return {ts.to_pydatetime(): rows[pos] for ts, pos in zip(frame["timestamp"], frame["position"])}

    def _align(self, indexed: Dict[SignalKind, KindRows]) -> List[TimeSeriesPoint]:
        timestamps = sorted(set().union(*(rows.keys() for rows in indexed.values())))
        cell_count = self.layout.narrow_cell_count

        points = []
        for timestamp in timestamps:
            point = TimeSeriesPoint(timestamp=timestamp)
            for kind, rows in indexed.items():
                row = rows.get(timestamp)
                if row is not None:
                    KIND_HANDLERS[kind](point, row, cell_count)
            point.bank.power = point.bank.voltage * point.bank.current
            points.append(point)
        return points

    @staticmethod
    def _as_row(row) -> NarrowRow:
        return row if isinstance(row, NarrowRow) else NarrowRow.from_record(row)
