from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Tuple

from pandera.errors import SchemaError, SchemaErrors

from bess_convert.config import TIMELINESS_GAP_S
from bess_convert.handlers.errors import InvalidResultError
from bess_convert.models import (
    SignalKind,
    StandardBatteryData,
    TimeSeriesPoint,
    UnitSummary,
    is_missing,
)
from bess_convert.utils.processing_helpers import gap_ratio
from bess_convert.utils.schema import bank_points_schema, points_frame
from bess_convert.utils.statistics import round_score

LOGGER = logging.getLogger(__name__)

EXPECTED_KINDS = len(SignalKind)


def field_presence(points: Sequence[TimeSeriesPoint], include_temperature: bool = True) -> Tuple[int, int]:
    """
    Return ``(total_fields, present_fields)`` over every bank and cell field.

    Bank fields count 0 as missing; cell fields only count NaN as missing.
    ``include_temperature=False`` leaves the bank temperature out.
    """
    total = 0
    present = 0
    for point in points:
        bank_fields = [
            point.bank.voltage,
            point.bank.current,
            point.bank.soc,
            point.bank.soh,
        ]
        if include_temperature:
            bank_fields.append(point.bank.temperature)
        total += len(bank_fields)
        present += sum(1 for v in bank_fields if not is_missing(v) and v != 0)

        cell_fields = point.cells.all_values()
        total += len(cell_fields)
        present += sum(1 for v in cell_fields if not is_missing(v))
    return total, present


def time_range(points: Sequence[TimeSeriesPoint]) -> Tuple[Optional[datetime], Optional[datetime]]:
    if not points:
        return None, None
    stamps = [p.timestamp for p in points]
    return min(stamps), max(stamps)


def build_summary(
    total_records: int,
    points: Sequence[TimeSeriesPoint],
    kinds_present: Optional[Iterable[SignalKind]] = None,
) -> UnitSummary:
    """
    Score a freshly transformed unit.

    Narrow groups pass ``kinds_present``: consistency is the share of signal
    kinds found and accuracy covers every bank field. Wide banks pass nothing:
    consistency is the share of intervals no longer than an hour and accuracy
    skips the bank temperature.
    """
    valid_records = len(points)
    completeness = valid_records / total_records if total_records > 0 else 0.0

    total_fields, present_fields = field_presence(points, include_temperature=kinds_present is not None)
    accuracy = present_fields / total_fields if total_fields > 0 else 0.0

    timeliness = 1.0 - gap_ratio(points, TIMELINESS_GAP_S) if len(points) > 1 else 1.0

    if kinds_present is None:
        consistency = timeliness
    else:
        consistency = len(set(kinds_present)) / EXPECTED_KINDS

    return UnitSummary(
        total_records=total_records,
        valid_records=valid_records,
        error_records=max(total_records - valid_records, 0),
        completeness=round_score(completeness),
        accuracy=round_score(accuracy),
        consistency=round_score(max(consistency, 0.0)),
        timeliness=round_score(max(timeliness, 0.0)),
    )


def validate_transform_result(data: StandardBatteryData, strict: bool = False) -> bool:
    """
    Check a transformed unit against the output invariants.

    A unit needs an id, a type, at least one bank, at least one point per bank,
    strictly increasing timestamps and ``power == voltage * current`` on every
    point. Returns False (logged) on the first violation, or raises
    ``InvalidResultError`` when ``strict`` is set.
    """
    problems: List[str] = []

    if not data.unit_id or not data.unit_type:
        problems.append("missing unit id or unit type")
    if not data.banks:
        problems.append("no bank data")

    for bank in data.banks:
        if not bank.points:
            problems.append(f"bank {bank.bank_id} has no data points")
            continue
        try:
            bank_points_schema.validate(points_frame(bank.points))
        except (SchemaError, SchemaErrors) as exc:
            problems.append(f"bank {bank.bank_id} failed point checks: {exc}")

    if problems:
        for problem in problems:
            LOGGER.error("Invalid transform result for %s: %s", data.unit_id, problem)
        if strict:
            raise InvalidResultError(f"{data.unit_id}: {'; '.join(problems)}")
        return False

    LOGGER.info("Transform result for %s passed validation", data.unit_id)
    return True
