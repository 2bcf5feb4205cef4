"""Splices a replacement segment into an existing GTFS shape.

The segment's first and last points are matched to the nearest points of the
shape (plain Euclidean distance in degree space, adequate for the short spans
these edits cover). The matched range is replaced by the segment and every
point of the result is renumbered from zero, tagged with the target shape id
and stripped of ``shape_dist_traveled``.

The functions here are pure: input lists and points are never modified, and
persisting the result is left to the caller (see ``shape_store``).
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from typing import Optional

import numpy as np

from gtfs_edits.polyline_decoder import Point

# Value of ShapePoint.dist_traveled once a splice has invalidated it.
MISSING_DIST_TRAVELED = None

# =============================================================================
# TYPES
# =============================================================================


class SpliceError(ValueError):
    """Base class for splices that cannot be applied to a shape."""


class EmptyShapeError(SpliceError):
    """The target shape has no points."""

    def __init__(self, shape_id: Optional[str]) -> None:
        super().__init__(f"No points found for shape: {shape_id}")
        self.shape_id = shape_id


class EmptySegmentError(SpliceError):
    """The replacement segment has no points."""


class OutOfOrderMatchError(SpliceError):
    """The segment end matched before the segment start."""

    def __init__(self, from_index: int, to_index: int) -> None:
        super().__init__(
            f"Segment match is out of order: fromIndex={from_index} toIndex={to_index}"
        )
        self.from_index = from_index
        self.to_index = to_index


@dataclass
class ShapePoint:
    """One row of GTFS ``shapes.txt``."""

    shape_id: str
    sequence: int
    lat: float
    lon: float
    dist_traveled: Optional[float] = MISSING_DIST_TRAVELED


@dataclass
class SpliceResult:
    """Outcome of a splice.

    Attributes:
        shape_id: Shape the points now belong to.
        points: Full renumbered point list, superseding the input list.
        from_index: First replaced index of the input list.
        to_index: Last replaced index of the input list (inclusive).
        removed: Input points that were replaced, in order.
        inserted: Points built from the segment, as they appear in ``points``.
    """

    shape_id: str
    points: list[ShapePoint]
    from_index: int
    to_index: int
    removed: list[ShapePoint] = field(default_factory=list)
    inserted: list[ShapePoint] = field(default_factory=list)


# =============================================================================
# MATCHING
# =============================================================================


def closest_point_index(
    shape_points: Sequence[ShapePoint],
    point: Point,
    start_index: int = 0,
) -> int:
    """Return the index of the shape point nearest to ``point``.

    Every point from ``start_index`` to the end is considered; on ties the
    earliest index wins. Points with non-finite coordinates never match.

    Returns:
        The index into ``shape_points``, or -1 when no candidate has a
        finite distance.
    """
    candidates = shape_points[start_index:]
    count = len(candidates)
    lats = np.fromiter((p.lat for p in candidates), dtype=float, count=count)
    lons = np.fromiter((p.lon for p in candidates), dtype=float, count=count)

    dy = lats - point.lat
    dx = lons - point.lon
    distances = np.sqrt(dy * dy + dx * dx)

    finite = np.isfinite(distances)
    if not finite.any():
        return -1
    distances[~finite] = np.inf

    # argmin returns the first occurrence of the minimum.
    return start_index + int(np.argmin(distances))


def find_splice_bounds(
    shape_points: Sequence[ShapePoint],
    segment: Sequence[Point],
    match_start: bool = True,
    match_end: bool = True,
    shape_id: Optional[str] = None,
) -> tuple[int, int]:
    """Find the inclusive index range of ``shape_points`` the segment replaces.

    Args:
        shape_points: Shape points ordered by sequence.
        segment: Replacement points.
        match_start: Match the segment start to its nearest shape point;
            otherwise the range starts at the first point.
        match_end: Match the segment end to its nearest shape point at or
            after the start; otherwise the range ends at the last point.
        shape_id: Used in error messages only.

    Returns:
        ``(from_index, to_index)``.

    Raises:
        EmptyShapeError: ``shape_points`` is empty.
        EmptySegmentError: ``segment`` is empty.
        OutOfOrderMatchError: The end matched before the start, or could
            not be matched at all (``to_index`` is -1).
        SpliceError: The start could not be matched.
    """
    if not shape_points:
        raise EmptyShapeError(shape_id)
    if not segment:
        raise EmptySegmentError(f"Replacement segment for shape {shape_id} has no points.")

    from_index = 0
    to_index = len(shape_points) - 1

    if match_start:
        from_index = closest_point_index(shape_points, segment[0], 0)
        if from_index < 0:
            raise SpliceError(f"Segment start could not be matched to shape {shape_id}.")
    if match_end:
        to_index = closest_point_index(shape_points, segment[-1], from_index)

    if to_index < from_index:
        raise OutOfOrderMatchError(from_index, to_index)

    return from_index, to_index


# =============================================================================
# SPLICING
# =============================================================================


def splice_shape(
    shape_points: Sequence[ShapePoint],
    segment: Sequence[Point],
    match_start: bool = True,
    match_end: bool = True,
    shape_id: Optional[str] = None,
) -> SpliceResult:
    """Replace the matched range of a shape with a segment and renumber it.

    Args:
        shape_points: Current points of one shape, ordered by sequence.
        segment: Replacement points, typically from ``decode_polyline``.
        match_start: See ``find_splice_bounds``.
        match_end: See ``find_splice_bounds``.
        shape_id: Target shape id. Defaults to the first input point's id.

    Returns:
        A ``SpliceResult`` whose ``points`` are numbered 0..n-1, all carry
        the target shape id and have no ``dist_traveled``.

    Raises:
        SpliceError: See ``find_splice_bounds``. Nothing is modified.
    """
    if shape_id is None and shape_points:
        shape_id = shape_points[0].shape_id

    from_index, to_index = find_splice_bounds(
        shape_points, segment, match_start, match_end, shape_id=shape_id
    )
    target_id = str(shape_id)

    new_points = [
        ShapePoint(shape_id=target_id, sequence=0, lat=p.lat, lon=p.lon) for p in segment
    ]
    spliced = [*shape_points[:from_index], *new_points, *shape_points[to_index + 1 :]]

    points = [
        replace(p, shape_id=target_id, sequence=i, dist_traveled=MISSING_DIST_TRAVELED)
        for i, p in enumerate(spliced)
    ]

    return SpliceResult(
        shape_id=target_id,
        points=points,
        from_index=from_index,
        to_index=to_index,
        removed=list(shape_points[from_index : to_index + 1]),
        inserted=points[from_index : from_index + len(new_points)],
    )
