"""Shared helpers for reading and writing GTFS feed tables."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any, cast

import pandas as pd

LOGGER = logging.getLogger(__name__)

SHAPES_FILE = "shapes.txt"
SHAPES_REQUIRED_COLUMNS = ("shape_id", "shape_pt_lat", "shape_pt_lon", "shape_pt_sequence")


def load_gtfs_data(
    gtfs_folder_path: str | os.PathLike[str],
    files: Sequence[str] = (SHAPES_FILE,),
    dtype: str | type[str] | Mapping[str, Any] = str,
) -> dict[str, pd.DataFrame]:
    """Load one or more GTFS text files into memory.

    Args:
        gtfs_folder_path: Folder containing the GTFS feed.
        files: File names to load. Defaults to ``shapes.txt`` only.
        dtype: Forwarded to :pyfunc:`pandas.read_csv(dtype=…)`. Supply a
            mapping for per-column dtypes.

    Returns:
        Mapping of file stem → :class:`pandas.DataFrame`; for example,
        ``data["shapes"]`` holds the parsed *shapes.txt* table.

    Raises:
        OSError: Folder missing or one of *files* not present.
        ValueError: Empty file or CSV parser failure.
        RuntimeError: Generic OS error while reading a file.

    Notes:
        All columns default to ``str`` so rows that are written back out
        unchanged keep their original text (leading zeros, trailing digits).
    """
    folder = str(gtfs_folder_path)
    if not os.path.exists(folder):
        raise OSError(f"The directory '{folder}' does not exist.")

    missing = [name for name in files if not os.path.exists(os.path.join(folder, name))]
    if missing:
        raise OSError(f"Missing GTFS files in '{folder}': {', '.join(missing)}")

    data: dict[str, pd.DataFrame] = {}
    for file_name in files:
        key = file_name.replace(".txt", "")
        file_path = os.path.join(folder, file_name)
        try:
            df = pd.read_csv(
                file_path, dtype=cast("Any", dtype), keep_default_na=False, low_memory=False
            )
        except pd.errors.EmptyDataError as exc:
            raise ValueError(f"File '{file_name}' in '{folder}' is empty.") from exc
        except pd.errors.ParserError as exc:
            raise ValueError(f"Parser error in '{file_name}' in '{folder}': {exc}") from exc
        except OSError as exc:
            raise RuntimeError(f"OS error reading file '{file_name}' in '{folder}': {exc}") from exc

        data[key] = df
        LOGGER.info("Loaded %s (%d records).", file_name, len(df))

    return data


def list_feed_files(gtfs_folder_path: str | os.PathLike[str]) -> list[Path]:
    """Return the ``.txt`` tables of a GTFS folder, sorted by name."""
    return sorted(p for p in Path(gtfs_folder_path).glob("*.txt") if p.is_file())


def write_gtfs_table(df: pd.DataFrame, out_path: Path) -> None:
    """Write a GTFS table as CSV without the index.

    Raises:
        IOError: The file cannot be written.
    """
    try:
        out_path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(out_path, index=False)
    except OSError as exc:
        raise IOError(f"Could not write {out_path}: {exc}") from exc
    LOGGER.info("Wrote %s (%d records).", out_path, len(df))
