from __future__ import annotations

import logging
import math

import pytest

from floorsim.config import normalize_config
from floorsim.errors import LayoutError
from floorsim.geometry import SIZE_TWO, Table, any_overlap, radius_of, tables_collide
from floorsim.world import FloorLayout, kitchen_length


def _layout(**overrides) -> FloorLayout:
    return FloorLayout(normalize_config(overrides))


def test_seeding_places_requested_tables() -> None:
    layout = _layout(table4_count=2, table2_count=2)
    assert [t.cap for t in layout.tables] == [4, 4, 2, 2]
    assert [t.id for t in layout.tables] == [0, 1, 2, 3]
    assert len(layout.seat_anchors()) == 12
    inner = layout.table_inner
    for t in layout.tables:
        assert inner.contains(t.x, t.z)


def test_crowded_seeding_drops_overlapping_tables(caplog) -> None:
    caplog.set_level(logging.WARNING)
    layout = _layout(width=4.0, depth=4.0, table4_count=12)
    assert len(layout.tables) < 12
    assert not tables_collide(layout.tables)
    assert any("dropping" in r.getMessage() for r in caplog.records)


def test_moving_a_table_onto_another_is_rejected() -> None:
    layout = _layout(table2_count=2)
    a, b = layout.tables
    rev = layout.revision
    assert not layout.move_table(b.id, a.x, a.z)
    assert layout.table(b.id) == b
    assert layout.revision == rev
    assert not any_overlap(layout.table_circles())


def test_move_table_snaps_and_clamps() -> None:
    layout = _layout(table2_count=1)
    t = layout.tables[0]
    assert layout.move_table(t.id, 100.0, 0.33)
    moved = layout.table(t.id)
    assert moved.x == pytest.approx(layout.table_inner.max_x - SIZE_TWO.w / 2)
    assert moved.z == pytest.approx(0.3)


def test_rotate_table_steps_five_degrees() -> None:
    layout = _layout(table2_count=1)
    assert layout.rotate_table(0, 2)
    assert layout.table(0).rot_y == pytest.approx(math.radians(10))


def test_set_tables_refuses_overlap() -> None:
    layout = _layout()
    with pytest.raises(LayoutError):
        layout.set_tables([Table(0, 0.0, 0.0, 0.0, SIZE_TWO, 2), Table(1, 0.5, 0.0, 0.0, SIZE_TWO, 2)])


def test_degenerate_room_is_refused() -> None:
    with pytest.raises(LayoutError):
        _layout(width=0.4)
    layout = _layout()
    with pytest.raises(LayoutError):
        layout.apply_config(normalize_config({"depth": 0.3}))
    assert layout.cfg.depth == 10.0


def test_door_offset_is_clamped_and_snapped() -> None:
    layout = _layout()
    assert layout.set_door_left(-5.0) == pytest.approx(0.1)
    assert layout.set_door_left(100.0) == pytest.approx(8.0 - 1.2 - 0.1)
    assert layout.set_door_left(2.02) == pytest.approx(2.0)
    assert layout.door.cx == pytest.approx(-4.0 + 2.0 + 0.6)


def test_kitchen_on_door_wall_avoids_opening() -> None:
    layout = _layout(kitchen_side="back")
    kl = kitchen_length(8.0)
    pos = layout.slide_kitchen(0.3)
    assert abs(pos - layout.door.cx) >= 1.2 / 2 + kl / 2
    kx, kz = layout.kitchen_point
    assert kz == pytest.approx(-5.0 + 0.2 + 0.3)


def test_modules_slide_along_side_walls() -> None:
    layout = _layout()
    assert layout.slide_restroom(100.0) == pytest.approx(5.0 - 0.05 - 1.0)
    rx, rz = layout.restroom_point
    assert rx == pytest.approx(-4.0 + 0.2 + 0.25)
    assert layout.kitchen_point == pytest.approx((3.5, 0.0))


def test_apply_config_reseeds_only_on_count_change() -> None:
    layout = _layout(table2_count=1)
    rev = layout.revision
    assert not layout.apply_config(normalize_config({"table2_count": 1, "incoming": 5}))
    assert layout.revision == rev
    assert layout.apply_config(normalize_config({"table2_count": 2}))
    assert len(layout.tables) == 2
    assert layout.revision > rev


def test_staff_exit_is_beyond_the_back_wall() -> None:
    layout = _layout()
    ex, ez = layout.staff_exit_target
    assert ex == pytest.approx(layout.door.cx)
    assert ez < layout.agent_inner.min_z
    assert layout.staff_exit_out_z < ez


def test_padded_table_circles_never_overlap() -> None:
    layout = _layout()
    r = radius_of(SIZE_TWO)
    with pytest.raises(LayoutError):
        layout.set_tables([Table(0, 0.0, 0.0, 0.0, SIZE_TWO, 2), Table(1, 2 * r + 0.07, 0.0, 0.0, SIZE_TWO, 2)])
    assert layout.tables == []

    layout.set_tables([Table(0, 0.0, 0.0, 0.0, SIZE_TWO, 2), Table(1, 3.0, 0.0, 0.0, SIZE_TWO, 2)])
    assert not layout.move_table(1, 1.3, 0.0)
    assert layout.move_table(1, 1.4, 0.0)
    assert not any_overlap(layout.table_circles())


@pytest.mark.parametrize("n4,n2", [(2, 2), (4, 4), (6, 6), (12, 0)])
def test_seeded_layouts_have_disjoint_obstacles(n4: int, n2: int) -> None:
    layout = _layout(table4_count=n4, table2_count=n2)
    assert layout.tables
    assert not any_overlap(layout.table_circles())
