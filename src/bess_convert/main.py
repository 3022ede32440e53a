import argparse
import json
import logging
import os
from pathlib import Path

import pandas as pd

from bess_convert.config import DEFAULT_STRATEGY
from bess_convert.pipeline import ConversionPipeline
from bess_convert.sources import NARROW, WIDE, discover_files
from bess_convert.utils.schema import points_frame

# Configure logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")


def _write_units(units, out_dir: Path) -> None:
    out_dir.mkdir(parents=True, exist_ok=True)
    for unit in units:
        target = out_dir / f"{unit.unit_id}.json"
        with open(target, "w", encoding="utf-8") as fh:
            json.dump(unit.to_dict(), fh, ensure_ascii=False)
        logging.info("Wrote %s", target)


def _write_points_table(units, target: Path) -> None:
    """Flatten every bank point into one Parquet table (cell arrays are left out)."""
    frames = []
    for unit in units:
        for bank in unit.banks:
            frame = points_frame(bank.points)
            frame.insert(0, "bank_id", bank.bank_id)
            frame.insert(0, "unit_id", unit.unit_id)
            frames.append(frame)
    if not frames:
        logging.info("No points to write to %s", target)
        return
    pd.concat(frames, ignore_index=True).to_parquet(target, index=False)
    logging.info("Wrote %s", target)


def main():
    """Main function to parse command-line arguments and run the requested conversion."""
    parser = argparse.ArgumentParser(description="Normalise BESS telemetry CSV exports into standard JSON units.")
    parser.add_argument("project", choices=["project1", "project2", "all"], help="Which site layout to convert.")
    parser.add_argument("--raw", default=None, help="Root of the raw data (default: <repo>/data/raw).")
    parser.add_argument("--out", default=None, help="Output directory (default: <repo>/data/processed).")
    parser.add_argument("--on-parse-error", choices=["skip-row", "skip-file", "abort"], default="skip-row")
    parser.add_argument("--on-file-not-found", choices=["skip", "warn", "error"], default="warn")
    parser.add_argument("--max-retries", type=int, default=DEFAULT_STRATEGY.max_retries)
    parser.add_argument("--parquet", action="store_true", help="Also write a flat points table per project.")
    args = parser.parse_args()

    # Define the root directory of the project
    root_dir = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    raw_dir = Path(args.raw or os.path.join(root_dir, "data", "raw"))
    out_dir = Path(args.out or os.path.join(root_dir, "data", "processed"))

    strategy = DEFAULT_STRATEGY.merged(
        on_parse_error=args.on_parse_error,
        on_file_not_found=args.on_file_not_found,
        max_retries=args.max_retries,
    )
    pipeline = ConversionPipeline(strategy=strategy)

    jobs = []
    if args.project in ("project1", "all"):
        jobs.append(("project1", WIDE, pipeline.convert_wide))
    if args.project in ("project2", "all"):
        jobs.append(("project2", NARROW, pipeline.convert_narrow))

    for name, layout, convert in jobs:
        logging.info("Processing %s data...", name)
        descriptors = discover_files(raw_dir / name, layout)
        outcome = convert(descriptors)
        _write_units(outcome.units, out_dir / name)
        if args.parquet:
            _write_points_table(outcome.units, out_dir / f"{name}_points.parquet")
        pipeline.reporter.save_report_to_file(outcome.report, out_dir / f"{name}_report.json")
        print(pipeline.reporter.generate_report_summary(outcome.report))
        logging.info("Finished processing %s data.", name)


if __name__ == "__main__":
    main()
