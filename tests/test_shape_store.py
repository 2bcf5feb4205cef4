from __future__ import annotations

import pandas as pd
import pytest

from gtfs_edits import shape_store
from gtfs_edits.shape_splicer import OutOfOrderMatchError, ShapePoint
from gtfs_edits.shape_store import (
    ShapeEdit,
    ShapesTableStore,
    apply_shape_edit,
    apply_shape_edits,
)

# (1.05, 1.05) -> (1.9, 1.9)
SEGMENT = "oalEoalEo_eDo_eD"


def _shapes_frame() -> pd.DataFrame:
    """Two shapes as read from shapes.txt (all text). S1 is stored out of order."""
    rows = [
        ("S1", "2", "2.0", "2.0", "28.3"),
        ("S1", "0", "0.0", "0.0", "0.0"),
        ("S1", "1", "1.0", "1.0", "14.1"),
        ("S1", "3", "3.0", "3.0", "42.4"),
        ("S2", "1", "38.900001", "-77.000010", ""),
        ("S2", "2", "38.910000", "-77.010000", ""),
    ]
    return pd.DataFrame(
        rows,
        columns=[
            "shape_id",
            "shape_pt_sequence",
            "shape_pt_lat",
            "shape_pt_lon",
            "shape_dist_traveled",
        ],
    )


class RecordingStore:
    """In-memory store that records every call made by the adapter."""

    def __init__(self, points: dict[str, list[ShapePoint]]) -> None:
        self.points = points
        self.calls: list[tuple[str, object]] = []

    def fetch_points(self, shape_id: str) -> list[ShapePoint]:
        self.calls.append(("fetch", shape_id))
        return list(self.points.get(shape_id, []))

    def delete_point(self, point: ShapePoint) -> None:
        self.calls.append(("delete", point))

    def save_point(self, point: ShapePoint) -> None:
        self.calls.append(("save", point))

    def invalidate_caches(self) -> None:
        self.calls.append(("invalidate", None))

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]


# -----------------------------------------------------------------------------
# ShapesTableStore
# -----------------------------------------------------------------------------


def test_store_requires_shape_columns() -> None:
    df = pd.DataFrame({"shape_id": ["S1"], "shape_pt_lat": ["1"], "shape_pt_lon": ["1"]})
    with pytest.raises(ValueError, match="shape_pt_sequence"):
        ShapesTableStore(df)


def test_fetch_points_orders_by_sequence() -> None:
    store = ShapesTableStore(_shapes_frame())

    points = store.fetch_points("S1")

    assert [p.sequence for p in points] == [0, 1, 2, 3]
    assert [p.lat for p in points] == [0.0, 1.0, 2.0, 3.0]
    assert points[3].dist_traveled == pytest.approx(42.4)
    assert store.fetch_points("S2")[0].dist_traveled is None


def test_fetch_points_unknown_shape_is_empty() -> None:
    assert ShapesTableStore(_shapes_frame()).fetch_points("nope") == []


def test_fetch_points_skips_invalid_rows(caplog) -> None:
    df = _shapes_frame()
    df.loc[len(df)] = ["S1", "4", "not-a-number", "4.0", ""]
    store = ShapesTableStore(df)

    with caplog.at_level("WARNING"):
        points = store.fetch_points("S1")

    assert len(points) == 4
    assert "Ignored 1 rows of shape S1" in caplog.text


def test_fetch_points_returns_copies_of_cache() -> None:
    store = ShapesTableStore(_shapes_frame())
    first = store.fetch_points("S1")
    first.clear()
    assert len(store.fetch_points("S1")) == 4


def test_changes_apply_on_invalidate() -> None:
    store = ShapesTableStore(_shapes_frame())
    point = store.fetch_points("S1")[0]

    store.delete_point(point)
    assert len(store.shapes) == 6

    store.invalidate_caches()
    assert len(store.shapes) == 5
    assert [p.sequence for p in store.fetch_points("S1")] == [1, 2, 3]


def test_shape_ids_in_order() -> None:
    assert ShapesTableStore(_shapes_frame()).shape_ids() == ["S1", "S2"]


# -----------------------------------------------------------------------------
# apply_shape_edit
# -----------------------------------------------------------------------------


def test_apply_shape_edit_rewrites_table() -> None:
    store = ShapesTableStore(_shapes_frame())

    outcome = apply_shape_edit(store, ShapeEdit("S1", SEGMENT))

    assert outcome.status == "applied"
    assert (outcome.from_index, outcome.to_index) == (1, 2)
    assert outcome.points_removed == 2
    assert outcome.points_inserted == 2

    s1 = store.shapes[store.shapes["shape_id"] == "S1"]
    assert s1["shape_pt_sequence"].tolist() == ["0", "1", "2", "3"]
    assert s1["shape_pt_lat"].tolist() == ["0", "1.05", "1.9", "3"]
    assert s1["shape_dist_traveled"].tolist() == ["", "", "", ""]


def test_apply_shape_edit_leaves_other_shapes_untouched() -> None:
    source = _shapes_frame()
    store = ShapesTableStore(source)

    apply_shape_edit(store, ShapeEdit("S1", SEGMENT))

    s2_before = source[source["shape_id"] == "S2"].reset_index(drop=True)
    s2_after = store.shapes[store.shapes["shape_id"] == "S2"].reset_index(drop=True)
    pd.testing.assert_frame_equal(s2_before, s2_after)
    assert store.shapes["shape_id"].tolist()[:4] == ["S1"] * 4


def test_apply_shape_edit_drops_unreadable_rows_of_edited_shape(caplog) -> None:
    """A row with a blank latitude must not keep its old sequence number."""
    df = pd.DataFrame(
        [
            ("S1", "0", "", "0.0", ""),
            ("S1", "1", "0.0", "0.0", ""),
            ("S1", "2", "1.0", "1.0", ""),
            ("S1", "3", "2.0", "2.0", ""),
            ("S1", "4", "3.0", "3.0", ""),
            ("S2", "1", "", "-77.0", ""),
        ],
        columns=_shapes_frame().columns,
    )
    store = ShapesTableStore(df)

    with caplog.at_level("WARNING"):
        apply_shape_edit(store, ShapeEdit("S1", SEGMENT))

    s1 = store.shapes[store.shapes["shape_id"] == "S1"]
    assert s1["shape_pt_sequence"].tolist() == ["0", "1", "2", "3"]
    assert s1["shape_pt_lat"].tolist() == ["0", "1.05", "1.9", "3"]
    assert "Dropped 1 unreadable rows of edited shape S1" in caplog.text
    # Shapes that were not edited keep their rows as read.
    assert len(store.shapes[store.shapes["shape_id"] == "S2"]) == 1


def test_apply_shape_edit_keeps_both_rows_with_same_sequence() -> None:
    """Duplicate sequences are deleted row by row, so no point is lost."""
    df = pd.DataFrame(
        [
            ("S1", "0", "0.0", "0.0", ""),
            ("S1", "1", "1.0", "1.0", ""),
            ("S1", "2", "2.0", "2.0", ""),
            ("S1", "3", "2.5", "2.5", ""),
            ("S1", "3", "3.0", "3.0", ""),
        ],
        columns=_shapes_frame().columns,
    )
    store = ShapesTableStore(df)

    apply_shape_edit(store, ShapeEdit("S1", SEGMENT))

    s1 = store.shapes[store.shapes["shape_id"] == "S1"]
    assert s1["shape_pt_sequence"].tolist() == ["0", "1", "2", "3", "4"]
    assert s1["shape_pt_lat"].tolist() == ["0.0", "1.05", "1.9", "2.5", "3"]
    assert not s1["shape_pt_sequence"].duplicated().any()


def test_delete_point_unknown_point_raises() -> None:
    store = ShapesTableStore(_shapes_frame())
    with pytest.raises(KeyError, match="not in the table"):
        store.delete_point(ShapePoint("S1", 9, 9.0, 9.0))


def test_apply_shape_edit_sees_previous_edit() -> None:
    """A second edit to the same shape works on the first edit's result."""
    store = ShapesTableStore(_shapes_frame())

    apply_shape_edit(store, ShapeEdit("S1", SEGMENT))
    # Same segment with an unmatched end: replaces everything from index 1 on.
    outcome = apply_shape_edit(store, ShapeEdit("S1", SEGMENT, match_end=False))

    assert (outcome.from_index, outcome.to_index) == (1, 3)
    lats = [p.lat for p in store.fetch_points("S1")]
    assert lats == pytest.approx([0.0, 1.05, 1.9])


def test_apply_shape_edit_diffs_old_and_new_points() -> None:
    """Unchanged kept points get no calls, changed ones are re-saved."""
    points = [ShapePoint("S1", i, float(i), float(i)) for i in range(4)]
    points[3].dist_traveled = 3.0
    store = RecordingStore({"S1": points})

    outcome = apply_shape_edit(store, ShapeEdit("S1", SEGMENT))

    deleted = [p for name, p in store.calls if name == "delete"]
    saved = [p for name, p in store.calls if name == "save"]
    # Points 1 and 2 are replaced; point 3 loses its dist_traveled.
    assert deleted == [points[1], points[2], points[3]]
    assert [(p.sequence, p.dist_traveled) for p in saved] == [(3, None), (1, None), (2, None)]
    assert points[0] not in deleted
    assert outcome.points_updated == 1
    assert store.names()[0] == "fetch"
    assert store.names()[-1] == "invalidate"


def test_apply_shape_edit_renumbers_shifted_points() -> None:
    """Inserting more points than removed shifts the tail's sequences."""
    points = [ShapePoint("S1", i, float(i), float(i)) for i in range(4)]
    store = RecordingStore({"S1": points})

    # (1.05, 1.05), (1.5, 1.5), (1.9, 1.9)
    outcome = apply_shape_edit(store, ShapeEdit("S1", "oalEoalEo{vAo{vA_cmA_cmA"))

    assert outcome.points_inserted == 3
    assert outcome.points_updated == 1
    saved = [p for name, p in store.calls if name == "save"]
    assert saved[0].sequence == 4
    assert saved[0].lat == 3.0


def test_apply_shape_edit_missing_shape_makes_no_changes() -> None:
    store = RecordingStore({})
    with pytest.raises(shape_store.EmptyShapeError):
        apply_shape_edit(store, ShapeEdit("S1", SEGMENT))
    assert store.names() == ["fetch"]


# -----------------------------------------------------------------------------
# apply_shape_edits
# -----------------------------------------------------------------------------


def test_apply_shape_edits_continues_past_failures(caplog) -> None:
    store = ShapesTableStore(_shapes_frame())
    edits = [
        ShapeEdit("missing", SEGMENT),
        ShapeEdit("S1", "_p~iF~ps|"),
        ShapeEdit("S1", SEGMENT),
    ]

    with caplog.at_level("WARNING"):
        outcomes = apply_shape_edits(store, edits)

    assert [o.status for o in outcomes] == ["skipped", "failed", "applied"]
    assert "No points found for shape: missing" in caplog.text
    assert "could not apply edit" in caplog.text
    assert len(store.fetch_points("S1")) == 4


def test_apply_shape_edits_reports_out_of_order(monkeypatch, caplog) -> None:
    def _raise(*args, **kwargs):
        raise OutOfOrderMatchError(3, 1)

    monkeypatch.setattr(shape_store, "splice_shape", _raise)
    store = RecordingStore({"S1": [ShapePoint("S1", 0, 0.0, 0.0)]})

    with caplog.at_level("ERROR"):
        outcomes = apply_shape_edits(store, [ShapeEdit("S1", SEGMENT)])

    assert outcomes[0].status == "skipped"
    assert (outcomes[0].from_index, outcomes[0].to_index) == (3, 1)
    assert "fromIndex=3 toIndex=1" in caplog.text
    assert "delete" not in store.names()
    assert "save" not in store.names()
