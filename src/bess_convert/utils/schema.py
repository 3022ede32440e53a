from typing import Sequence

import pandas as pd
from pandera import Check, Column, DataFrameSchema, Index
from pandera.typing import DateTime, Float, Int

from bess_convert.models import TimeSeriesPoint

# Schema for the flattened points of one bank, which is what every transformer must hand back.
bank_points_schema = DataFrameSchema(
    columns={
        "timestamp": Column(
            DateTime,
            checks=[
                Check(lambda s: s.is_monotonic_increasing, error="timestamps must be ascending"),
                Check(lambda s: s.is_unique, error="timestamps must not repeat"),
            ],
            nullable=False,
            required=True,
            description="Point time. Strictly increasing within a bank.",
        ),
        "voltage": Column(Float, required=True, description="Bank total voltage (0 when absent)."),
        "current": Column(Float, required=True, description="Bank current (0 when absent)."),
        "soc": Column(Float, required=True, description="Bank SOC in percent (0 when absent)."),
        "soh": Column(Float, required=True, description="Bank SOH in percent (0 when absent)."),
        "temperature": Column(Float, required=True, description="Mean of the cell temperatures."),
        "power": Column(Float, required=True, description="Derived, always voltage * current."),
        "cell_count": Column(Int, Check.greater_than_or_equal_to(0), required=True),
    },
    checks=[
        Check(
            lambda df: df["power"] == df["voltage"] * df["current"],
            error="power must equal voltage * current",
        ),
    ],
    index=Index(Int),
    strict=True,
    coerce=True,
)


def points_frame(points: Sequence[TimeSeriesPoint]) -> pd.DataFrame:
    """Flatten points into the frame checked by `bank_points_schema`."""
    return pd.DataFrame(
        {
            "timestamp": [p.timestamp for p in points],
            "voltage": [p.bank.voltage for p in points],
            "current": [p.bank.current for p in points],
            "soc": [p.bank.soc for p in points],
            "soh": [p.bank.soh for p in points],
            "temperature": [p.bank.temperature for p in points],
            "power": [p.bank.power for p in points],
            "cell_count": [len(p.cells.voltages) for p in points],
        },
        columns=list(bank_points_schema.columns.keys()),
    )
