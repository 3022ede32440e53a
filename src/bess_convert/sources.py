from __future__ import annotations

"""
Thin adapters for the file-level collaborators: discovery and CSV reading.

Expected directory layouts::

    project1/<system>/BankNN_YYYYMMDD.csv
    project2/<group>/<kind>/<prefix>N_YYYY_MM_DD_HHMMSS.csv   (prefix: soc|state|temp|vol)
"""

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd

from bess_convert.models import SignalKind

LOGGER = logging.getLogger(__name__)

WIDE_FILE_PATTERN = re.compile(r"Bank(\d{2})_(\d{8})\.csv$")
NARROW_FILE_PATTERN = re.compile(r"(soc|state|temp|vol)\d+_(\d{4})_(\d{2})_(\d{2})_(\d{6})\.csv$")

NARROW_KIND_PREFIXES = {
    "soc": SignalKind.SOC,
    "state": SignalKind.STATE,
    "temp": SignalKind.TEMPERATURE,
    "vol": SignalKind.VOLTAGE,
}
_KIND_DIRECTORIES = {kind.value for kind in SignalKind}

WIDE = "wide"
NARROW = "narrow"


@dataclass(frozen=True)
class FileDescriptor:
    path: Path
    layout: str
    unit_id: str
    kind: Optional[SignalKind] = None
    date: Optional[str] = None
    system_id: Optional[str] = None


def describe_file(path: str | os.PathLike[str]) -> Optional[FileDescriptor]:
    """Extract layout metadata from a file path; ``None`` for unrecognised names."""
    path = Path(path)

    match = WIDE_FILE_PATTERN.search(path.name)
    if match:
        bank_number, stamp = match.groups()
        return FileDescriptor(
            path=path,
            layout=WIDE,
            unit_id=f"Bank{bank_number}",
            date=f"{stamp[:4]}-{stamp[4:6]}-{stamp[6:]}",
            system_id=path.parent.name or None,
        )

    match = NARROW_FILE_PATTERN.search(path.name)
    if match:
        prefix, year, month, day, _ = match.groups()
        group_dir = path.parent.parent if path.parent.name in _KIND_DIRECTORIES else path.parent
        return FileDescriptor(
            path=path,
            layout=NARROW,
            unit_id=group_dir.name,
            kind=NARROW_KIND_PREFIXES[prefix],
            date=f"{year}-{month}-{day}",
        )

    return None


def discover_files(root: str | os.PathLike[str], layout: Optional[str] = None) -> List[FileDescriptor]:
    """Recursively list recognised CSV files under ``root``, sorted by path."""
    root = Path(root)
    if not root.exists():
        LOGGER.warning("Data directory %s does not exist", root)
        return []

    descriptors = []
    for path in sorted(root.rglob("*.csv")):
        descriptor = describe_file(path)
        if descriptor is None:
            LOGGER.debug("Ignoring unrecognised file %s", path)
            continue
        if layout is not None and descriptor.layout != layout:
            continue
        descriptors.append(descriptor)

    LOGGER.info("Discovered %d CSV files under %s", len(descriptors), root)
    return descriptors


def read_csv_records(path: str | os.PathLike[str]) -> List[Dict[str, str]]:
    """Read a CSV file into ``{column: cell text}`` mappings, one per row."""
    df = pd.read_csv(path, dtype=str, keep_default_na=False, encoding="utf-8-sig", skipinitialspace=True)
    df.columns = [str(c).strip() for c in df.columns]
    return df.to_dict(orient="records")
