"""Splices replacement segments into GTFS shapes and writes an edited feed.

Each edit names a shape and gives the new path for part of it as an encoded
polyline (as produced by most routing tools and map editors). The segment's
end points are matched to the nearest existing shape points, the matched
stretch is replaced, the shape is renumbered from 0 and its
shape_dist_traveled values are cleared so they can be regenerated.

Edits are independent. An edit whose shape is missing, whose polyline is
malformed or whose end matches before its start is reported and skipped.

Inputs:
    - GTFS directory with `shapes.txt`
    - Shape edits, from SHAPE_EDITS below and/or a CSV with columns
      shape_id, polyline, match_start (optional), match_end (optional)

Outputs:
    - `shapes.txt`: edited shapes table (untouched rows are written as read)
    - `shape_edit_report.csv`: one row per edit with its status and bounds
    - Copies of the other GTFS .txt files (optional)
    - `edited_shapes.geojson`: edited shapes as lines for review (optional)
"""

from __future__ import annotations

import argparse
import logging
import shutil
from collections.abc import Iterable, Sequence
from dataclasses import asdict, fields
from pathlib import Path
from typing import Optional

import geopandas as gpd
import pandas as pd
from shapely.geometry import LineString

from gtfs_edits.shape_store import (
    ShapeEdit,
    ShapeEditOutcome,
    ShapesTableStore,
    apply_shape_edits,
)
from utils.gtfs_helpers import SHAPES_FILE, list_feed_files, load_gtfs_data, write_gtfs_table
from utils.logging_helper import setup_logging

# =============================================================================
# CONFIGURATION
# =============================================================================

GTFS_DIR = Path(r"C:\path\to\gtfs")  # folder containing GTFS .txt files
OUTPUT_DIR = Path(r"C:\path\to\output")  # edited feed is written here

# Optional CSV of edits (shape_id, polyline, match_start, match_end)
EDITS_CSV: Optional[Path] = None

# Inline edits, applied before any edits from EDITS_CSV
SHAPE_EDITS: list[ShapeEdit] = [
    # ShapeEdit("1001", "_p~iF~ps|U_ulLnnqC", match_start=True, match_end=True),
]

COPY_OTHER_FILES = True  # copy the rest of the feed next to the new shapes.txt
EXPORT_GEOJSON = True
COORD_DECIMALS = 6  # decimals written for spliced-in coordinates

LOG_LEVEL = "INFO"  # DEBUG | INFO | WARNING
LOG_FILE: Optional[Path] = None

GTFS_CRS = "EPSG:4326"
REPORT_FILE = "shape_edit_report.csv"
GEOJSON_FILE = "edited_shapes.geojson"

LOGGER = logging.getLogger(__name__)

REPORT_COLUMNS = [f.name for f in fields(ShapeEditOutcome)]
TRUE_VALUES = {"true", "t", "1", "yes", "y"}
FALSE_VALUES = {"false", "f", "0", "no", "n"}

# =============================================================================
# FUNCTIONS
# =============================================================================


def _parse_flag(value: object, column: str, row_number: int) -> bool:
    """Parse a match flag; blank means True."""
    text = "" if value is None or pd.isna(value) else str(value).strip().lower()
    if text == "" or text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    raise ValueError(f"Row {row_number}: cannot read {column}={value!r} as true/false.")


def load_shape_edits(csv_path: Path) -> list[ShapeEdit]:
    """Read shape edits from a CSV file.

    Args:
        csv_path: CSV with ``shape_id`` and ``polyline`` columns and optional
            ``match_start`` / ``match_end`` columns.

    Returns:
        Edits in file order.

    Raises:
        ValueError: Required columns are missing or a flag is unreadable.
    """
    df = pd.read_csv(csv_path, dtype=str, keep_default_na=False)
    required = {"shape_id", "polyline"}
    missing = sorted(required - set(df.columns))
    if missing:
        raise ValueError(f"{csv_path.name} missing required columns: {missing}")

    edits: list[ShapeEdit] = []
    for row_number, row in enumerate(df.to_dict("records"), start=2):
        edits.append(
            ShapeEdit(
                shape_id=str(row["shape_id"]).strip(),
                polyline=str(row["polyline"]).strip(),
                match_start=_parse_flag(row.get("match_start"), "match_start", row_number),
                match_end=_parse_flag(row.get("match_end"), "match_end", row_number),
            )
        )

    LOGGER.info("Loaded %d shape edits from %s.", len(edits), csv_path)
    return edits


def build_shape_lines(shapes: pd.DataFrame, shape_ids: Iterable[str]) -> gpd.GeoDataFrame:
    """Build one LineString per requested shape, ordered by sequence.

    Shapes with fewer than two valid points are skipped with a warning.
    """
    wanted = set(shape_ids)
    df = shapes[shapes["shape_id"].astype(str).isin(wanted)].copy()
    for col in ["shape_pt_lat", "shape_pt_lon", "shape_pt_sequence"]:
        df[col] = pd.to_numeric(df[col], errors="coerce")
    df = df.dropna(subset=["shape_pt_lat", "shape_pt_lon", "shape_pt_sequence"])
    df = df.sort_values(["shape_id", "shape_pt_sequence"], kind="mergesort")

    records: list[dict] = []
    for shape_id, group in df.groupby("shape_id", sort=False):
        coordinates = list(zip(group["shape_pt_lon"], group["shape_pt_lat"], strict=True))
        if len(coordinates) < 2:
            LOGGER.warning("Shape ID %s skipped: has fewer than 2 valid points.", shape_id)
            continue
        records.append(
            {
                "shape_id": str(shape_id),
                "point_count": len(coordinates),
                "geometry": LineString(coordinates),
            }
        )

    if not records:
        return gpd.GeoDataFrame(
            data=None, columns=["shape_id", "point_count", "geometry"], geometry=[], crs=GTFS_CRS
        )
    return gpd.GeoDataFrame(data=records, crs=GTFS_CRS)


def copy_feed_files(gtfs_dir: Path, output_dir: Path, skip: Sequence[str] = (SHAPES_FILE,)) -> int:
    """Copy the feed's .txt files (except ``skip``) into ``output_dir``."""
    if gtfs_dir.resolve() == output_dir.resolve():
        return 0
    copied = 0
    for path in list_feed_files(gtfs_dir):
        if path.name in skip:
            continue
        shutil.copy2(path, output_dir / path.name)
        copied += 1
    LOGGER.info("Copied %d other GTFS files to %s.", copied, output_dir)
    return copied


def run_shape_edits(
    gtfs_dir: Path,
    output_dir: Path,
    edits: Sequence[ShapeEdit],
    copy_other_files: bool = COPY_OTHER_FILES,
    export_geojson: bool = EXPORT_GEOJSON,
    coord_decimals: int = COORD_DECIMALS,
) -> pd.DataFrame:
    """Apply shape edits to a feed and write the edited feed.

    Args:
        gtfs_dir: Folder holding the input ``shapes.txt``.
        output_dir: Folder for the edited ``shapes.txt`` and the report.
        edits: Edits to apply, in order.
        copy_other_files: Also copy the feed's other .txt files.
        export_geojson: Write the successfully edited shapes as GeoJSON.
        coord_decimals: Decimals for coordinates of new points.

    Returns:
        The edit report, one row per edit.

    Raises:
        NotADirectoryError: ``gtfs_dir`` does not exist.
        OSError: ``shapes.txt`` is missing.
        ValueError: ``shapes.txt`` is empty, unparsable or missing columns.
    """
    if not gtfs_dir.is_dir():
        raise NotADirectoryError(f"Input GTFS directory not found or is not a directory: {gtfs_dir}")

    LOGGER.info("-" * 50)
    LOGGER.info("Input GTFS Directory: %s", gtfs_dir)
    LOGGER.info("Output Directory: %s", output_dir)
    LOGGER.info("Edits: %d", len(edits))
    LOGGER.info("-" * 50)

    shapes = load_gtfs_data(gtfs_dir, files=(SHAPES_FILE,))["shapes"]
    store = ShapesTableStore(shapes, coord_decimals=coord_decimals)

    outcomes = apply_shape_edits(store, edits)
    report = pd.DataFrame([asdict(o) for o in outcomes], columns=REPORT_COLUMNS)

    output_dir.mkdir(parents=True, exist_ok=True)
    write_gtfs_table(store.shapes, output_dir / SHAPES_FILE)
    report.to_csv(output_dir / REPORT_FILE, index=False)
    LOGGER.info("Wrote: %s", output_dir / REPORT_FILE)

    if copy_other_files:
        copy_feed_files(gtfs_dir, output_dir)

    applied_ids = [o.shape_id for o in outcomes if o.status == "applied"]
    if export_geojson and applied_ids:
        lines = build_shape_lines(store.shapes, applied_ids)
        if not lines.empty:
            lines.to_file(output_dir / GEOJSON_FILE, driver="GeoJSON")
            LOGGER.info("Wrote: %s", output_dir / GEOJSON_FILE)

    counts = report["status"].value_counts()
    LOGGER.info(
        "Edits applied: %d, skipped: %d, failed: %d",
        counts.get("applied", 0),
        counts.get("skipped", 0),
        counts.get("failed", 0),
    )
    return report


# =============================================================================
# MAIN
# =============================================================================


def parse_args(argv: Sequence[str] | None = None) -> tuple[argparse.Namespace, list[str]]:
    """Parse CLI args and return (args, unknown_args)."""
    parser = argparse.ArgumentParser(description="Splice polyline segments into GTFS shapes.")
    parser.add_argument("--gtfs-dir", type=Path, default=GTFS_DIR, help="Input GTFS folder")
    parser.add_argument("--out", type=Path, default=OUTPUT_DIR, help="Output directory")
    parser.add_argument("--edits-csv", type=Path, default=EDITS_CSV, help="CSV of shape edits")
    parser.add_argument(
        "--no-copy",
        action="store_true",
        help="Only write shapes.txt and the report, not the rest of the feed",
    )
    parser.add_argument("--no-geojson", action="store_true", help="Skip the GeoJSON preview")
    parser.add_argument("--log-level", default=LOG_LEVEL, help="DEBUG | INFO | WARNING")
    args, unknown = parser.parse_known_args(list(argv) if argv is not None else None)
    return args, unknown


def main(argv: Sequence[str] | None = None) -> None:
    """Run the configured shape edits."""
    args, unknown = parse_args(argv)
    setup_logging(args.log_level, LOG_FILE)
    if unknown:
        LOGGER.debug("Ignoring unknown arguments: %s", unknown)

    edits = list(SHAPE_EDITS)
    if args.edits_csv is not None:
        edits.extend(load_shape_edits(args.edits_csv))
    if not edits:
        LOGGER.warning("No shape edits configured; nothing to do.")
        return

    run_shape_edits(
        gtfs_dir=args.gtfs_dir,
        output_dir=args.out,
        edits=edits,
        copy_other_files=COPY_OTHER_FILES and not args.no_copy,
        export_geojson=EXPORT_GEOJSON and not args.no_geojson,
    )


if __name__ == "__main__":
    main()
