from datetime import datetime

import pandas as pd
import pytest

from bess_convert.utils.processing_helpers import parse_timestamp, parse_timestamps

NARROW_FORMAT = "%Y-%m-%d %H:%M:%S"
WIDE_FORMAT = "%m/%d/%Y %H:%M"

# -----------------------------------------------------------------------------
# Tests
# -----------------------------------------------------------------------------

def test_parse_timestamp_with_layout_format():
    assert parse_timestamp("1/10/2024 08:05", WIDE_FORMAT) == datetime(2024, 1, 10, 8, 5)


@pytest.mark.parametrize(
    "text",
    ["2024-01-10 08:00:00+08:00", "2024-01-10T08:00:00Z", "2024-01-10 08:00:00-05:00"],
)
def test_parse_timestamp_keeps_wall_clock_of_offset_stamps(text):
    parsed = parse_timestamp(text, NARROW_FORMAT)

    assert parsed == datetime(2024, 1, 10, 8, 0)
    assert parsed.tzinfo is None


@pytest.mark.parametrize("text", [None, "", "   ", "not a time"])
def test_parse_timestamp_unparseable(text):
    assert parse_timestamp(text, NARROW_FORMAT) is None


def test_parse_timestamps_falls_back_per_value():
    parsed = parse_timestamps(["2024-01-10 08:00:00", "2024-01-10 09:00:00+08:00", "garbage"], NARROW_FORMAT)

    assert parsed[0] == pd.Timestamp(2024, 1, 10, 8)
    assert parsed[1] == pd.Timestamp(2024, 1, 10, 9)
    assert pd.isna(parsed[2])
