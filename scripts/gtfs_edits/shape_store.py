"""Persists shape splices to a GTFS ``shapes.txt`` table.

``splice_shape`` only computes the new point list. This module is the thin
layer around it: it fetches a shape's points from a store, diffs the old and
new lists into delete/save calls and fires the store's cache-invalidation
hook once the edit is complete.

Any object with ``fetch_points``, ``delete_point``, ``save_point`` and
``invalidate_caches`` can act as the store; ``ShapesTableStore`` implements
them over a pandas DataFrame read from ``shapes.txt``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, replace
from typing import Literal, Optional, Protocol

import numpy as np
import pandas as pd

from gtfs_edits.polyline_decoder import MalformedEncodingError, decode_polyline
from gtfs_edits.shape_splicer import (
    EmptyShapeError,
    OutOfOrderMatchError,
    ShapePoint,
    SpliceError,
    splice_shape,
)
from utils.gtfs_helpers import SHAPES_REQUIRED_COLUMNS

LOGGER = logging.getLogger(__name__)

EditStatus = Literal["applied", "skipped", "failed"]

# =============================================================================
# TYPES
# =============================================================================


class ShapePointStore(Protocol):
    """Storage the edit adapter reads shape points from and writes them to."""

    def fetch_points(self, shape_id: str) -> list[ShapePoint]:
        """Return the shape's points ordered by sequence (empty if unknown)."""
        ...

    def delete_point(self, point: ShapePoint) -> None:
        """Remove a previously fetched point."""
        ...

    def save_point(self, point: ShapePoint) -> None:
        """Persist a new or updated point."""
        ...

    def invalidate_caches(self) -> None:
        """Called once after all deletes and saves of an edit."""
        ...


@dataclass(frozen=True)
class ShapeEdit:
    """A replacement segment for one shape."""

    shape_id: str
    polyline: str
    match_start: bool = True
    match_end: bool = True


@dataclass
class ShapeEditOutcome:
    """What happened to a single ``ShapeEdit``; one row of the edit report."""

    shape_id: str
    status: EditStatus
    message: str = ""
    from_index: Optional[int] = None
    to_index: Optional[int] = None
    points_removed: int = 0
    points_inserted: int = 0
    points_updated: int = 0


# =============================================================================
# PANDAS STORE
# =============================================================================


class ShapesTableStore:
    """Shape point store backed by a ``shapes.txt`` DataFrame.

    The table is expected to hold the raw text of the file (``dtype=str``).
    Rows of shapes that are never edited are left exactly as read. Deletes and
    saves are queued and only applied to the table by ``invalidate_caches``.
    """

    def __init__(self, shapes: pd.DataFrame, coord_decimals: int = 6) -> None:
        missing = sorted(set(SHAPES_REQUIRED_COLUMNS) - set(shapes.columns))
        if missing:
            raise ValueError(f"shapes.txt missing required columns: {missing}")

        self._shapes = shapes.reset_index(drop=True).copy()
        self._coord_decimals = coord_decimals
        # Fetched points and the table row each one was read from.
        self._cache: dict[str, list[tuple[ShapePoint, int]]] = {}
        self._deleted_rows: set[int] = set()
        self._affected: set[str] = set()
        self._saved: list[ShapePoint] = []

    @property
    def shapes(self) -> pd.DataFrame:
        """The table as of the last ``invalidate_caches`` call."""
        return self._shapes

    def shape_ids(self) -> list[str]:
        """Distinct shape ids in order of first appearance."""
        return [str(sid) for sid in pd.unique(self._shapes["shape_id"].astype(str))]

    def fetch_points(self, shape_id: str) -> list[ShapePoint]:
        return [point for point, _ in self._fetch_rows(str(shape_id))]

    def delete_point(self, point: ShapePoint) -> None:
        """Queue the removal of the row ``point`` was read from.

        The row is found by identity first, so two rows holding equal points
        are deleted one at a time.
        """
        rows = self._fetch_rows(point.shape_id)
        label = next((row for p, row in rows if p is point), None)
        if label is None:
            label = next(
                (row for p, row in rows if p == point and row not in self._deleted_rows),
                None,
            )
        if label is None:
            raise KeyError(
                f"Point {point.sequence} of shape {point.shape_id} is not in the table."
            )
        self._deleted_rows.add(label)
        self._affected.add(point.shape_id)

    def save_point(self, point: ShapePoint) -> None:
        self._saved.append(replace(point))
        self._affected.add(point.shape_id)

    def invalidate_caches(self) -> None:
        if self._affected:
            self._apply_pending()
        self._cache.clear()

    # -------------------------------------------------------------------------

    def _fetch_rows(self, shape_id: str) -> list[tuple[ShapePoint, int]]:
        if shape_id not in self._cache:
            self._cache[shape_id] = self._read_points(shape_id)
        return self._cache[shape_id]

    def _parsed_columns(self, rows: pd.DataFrame) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "sequence": pd.to_numeric(rows["shape_pt_sequence"], errors="coerce"),
                "lat": pd.to_numeric(rows["shape_pt_lat"], errors="coerce"),
                "lon": pd.to_numeric(rows["shape_pt_lon"], errors="coerce"),
            }
        )

    def _read_points(self, shape_id: str) -> list[tuple[ShapePoint, int]]:
        rows = self._shapes[self._shapes["shape_id"].astype(str) == shape_id]
        frame = self._parsed_columns(rows)
        if "shape_dist_traveled" in rows.columns:
            frame["dist"] = pd.to_numeric(rows["shape_dist_traveled"], errors="coerce")
        else:
            frame["dist"] = np.nan

        before = len(frame)
        frame = frame.dropna(subset=["sequence", "lat", "lon"])
        if len(frame) < before:
            LOGGER.warning(
                "Ignored %d rows of shape %s with invalid lat/lon/sequence.",
                before - len(frame),
                shape_id,
            )

        frame = frame.sort_values("sequence", kind="mergesort")
        return [
            (
                ShapePoint(
                    shape_id=shape_id,
                    sequence=int(seq),
                    lat=float(lat),
                    lon=float(lon),
                    dist_traveled=None if pd.isna(d) else float(d),
                ),
                int(label),
            )
            for label, seq, lat, lon, d in frame.itertuples(index=True, name=None)
        ]

    def _format_coord(self, value: float) -> str:
        text = f"{value:.{self._coord_decimals}f}".rstrip("0").rstrip(".")
        return "0" if text in ("", "-0") else text

    def _to_record(self, point: ShapePoint) -> dict[str, str]:
        return {
            "shape_id": point.shape_id,
            "shape_pt_lat": self._format_coord(point.lat),
            "shape_pt_lon": self._format_coord(point.lon),
            "shape_pt_sequence": str(point.sequence),
            "shape_dist_traveled": (
                "" if point.dist_traveled is None else str(point.dist_traveled)
            ),
        }

    def _apply_pending(self) -> None:
        frame = self._shapes
        shape_ids = frame["shape_id"].astype(str)
        shape_rank = {sid: rank for rank, sid in enumerate(pd.unique(shape_ids))}
        affected = set(self._affected)

        drop = frame.index.isin(list(self._deleted_rows))
        # Unreadable rows of an edited shape would clash with the new numbering.
        in_edited = shape_ids.isin(affected)
        unreadable = in_edited & self._parsed_columns(frame).isna().any(axis=1)
        for sid, count in shape_ids[unreadable].value_counts(sort=False).items():
            LOGGER.warning("Dropped %d unreadable rows of edited shape %s.", count, sid)
        frame = frame[~(drop | unreadable.to_numpy())]

        if self._saved:
            new_rows = pd.DataFrame.from_records([self._to_record(p) for p in self._saved])
            new_rows = new_rows.reindex(columns=frame.columns, fill_value="")
            frame = pd.concat([frame, new_rows], ignore_index=True)

        # Edited shapes are re-sorted by sequence; the rest keep their row order.
        shape_ids = frame["shape_id"].astype(str)
        for sid in pd.unique(shape_ids):
            shape_rank.setdefault(sid, len(shape_rank))
        row_rank = pd.Series(np.arange(len(frame), dtype=float), index=frame.index)
        edited = shape_ids.isin(affected)
        row_rank[edited] = pd.to_numeric(frame.loc[edited, "shape_pt_sequence"], errors="coerce")

        order = pd.DataFrame({"shape": shape_ids.map(shape_rank), "row": row_rank})
        order = order.sort_values(["shape", "row"], kind="mergesort")
        self._shapes = frame.loc[order.index].reset_index(drop=True)

        LOGGER.debug(
            "Applied %d deletions and %d saves to shapes table.",
            len(self._deleted_rows),
            len(self._saved),
        )
        self._deleted_rows.clear()
        self._affected.clear()
        self._saved.clear()


# =============================================================================
# EDIT ADAPTER
# =============================================================================


def apply_shape_edit(store: ShapePointStore, edit: ShapeEdit) -> ShapeEditOutcome:
    """Splice one edit into its shape and persist the difference.

    Points in the replaced range are deleted, kept points whose sequence or
    ``dist_traveled`` changed are deleted and saved again, and the segment's
    points are saved. Kept points that did not change are not touched.

    Raises:
        EmptyShapeError: The store has no points for the shape.
        MalformedEncodingError: The edit's polyline cannot be decoded.
        SpliceError: The segment cannot be matched to the shape.
    """
    old_points = store.fetch_points(edit.shape_id)
    if not old_points:
        raise EmptyShapeError(edit.shape_id)

    segment = decode_polyline(edit.polyline)
    result = splice_shape(
        old_points, segment, edit.match_start, edit.match_end, shape_id=edit.shape_id
    )

    removed_count = result.to_index - result.from_index + 1
    offset = len(result.inserted) - removed_count
    updated = 0

    for index, old in enumerate(old_points):
        if result.from_index <= index <= result.to_index:
            store.delete_point(old)
            continue
        new = result.points[index if index < result.from_index else index + offset]
        if new != old:
            store.delete_point(old)
            store.save_point(new)
            updated += 1

    for point in result.inserted:
        store.save_point(point)

    store.invalidate_caches()

    LOGGER.info(
        "Shape %s: replaced points %d-%d with %d new points (%d renumbered).",
        result.shape_id,
        result.from_index,
        result.to_index,
        len(result.inserted),
        updated,
    )
    return ShapeEditOutcome(
        shape_id=result.shape_id,
        status="applied",
        from_index=result.from_index,
        to_index=result.to_index,
        points_removed=removed_count,
        points_inserted=len(result.inserted),
        points_updated=updated,
    )


def apply_shape_edits(
    store: ShapePointStore, edits: Iterable[ShapeEdit]
) -> list[ShapeEditOutcome]:
    """Apply edits in order; a failing edit is logged, reported and skipped."""
    outcomes: list[ShapeEditOutcome] = []
    for edit in edits:
        try:
            outcome = apply_shape_edit(store, edit)
        except EmptyShapeError as exc:
            LOGGER.warning("%s", exc)
            outcome = ShapeEditOutcome(edit.shape_id, "skipped", str(exc))
        except OutOfOrderMatchError as exc:
            LOGGER.error("Shape %s: %s", edit.shape_id, exc)
            outcome = ShapeEditOutcome(
                edit.shape_id,
                "skipped",
                str(exc),
                from_index=exc.from_index,
                to_index=exc.to_index,
            )
        except (MalformedEncodingError, SpliceError) as exc:
            LOGGER.error("Shape %s: could not apply edit: %s", edit.shape_id, exc)
            outcome = ShapeEditOutcome(edit.shape_id, "failed", str(exc))
        outcomes.append(outcome)
    return outcomes
