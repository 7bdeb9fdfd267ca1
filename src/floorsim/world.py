from __future__ import annotations
from dataclasses import dataclass, replace
from typing import List, Optional, Tuple
import logging
import math

from .config import Config
from .errors import LayoutError
from .geometry import (
    SIZE_FOUR, SIZE_TWO, TABLE_CLEARANCE, TABLE_PAD, Circle, RoomInner, Table, TableSize, Vec2,
    clamp, clamp_pos_to_room, is_angle_feasible, radius_of, room_inner, table_obstacles,
    tables_collide,
)
from .seats import SeatAnchor, build_seat_anchors

logger = logging.getLogger(__name__)

AGENT_R = 0.18
AGENT_INSET = AGENT_R + 0.005
DOOR_MARGIN = 0.1
DOOR_SNAP = 0.05
MODULE_MARGIN = 0.05
RESTROOM_LEN = 2.0
KITCHEN_OFFSET = 0.3
RESTROOM_OFFSET = 0.25
MOVE_GRID = 0.1
ROT_STEP = math.radians(5.0)


def kitchen_length(width: float) -> float:
    return min(4.0, max(2.0, width * 0.35))


@dataclass(frozen=True)
class DoorGeometry:
    """Door opening on the back wall (min z) plus the walkway points derived from it."""
    cx: float
    width: float
    inner_min_z: float      # agent interior edge at the back wall
    tunnel_half: float
    wall_t: float = 0.2

    @property
    def portal_half(self) -> float:
        return max(0.22, self.width / 2 - AGENT_R * 0.4)

    @property
    def portal_thick(self) -> float:
        return max(0.7, self.wall_t + 0.4)

    def in_portal(self, x: float, z: float) -> bool:
        return abs(x - self.cx) <= self.portal_half and abs(z - self.inner_min_z) <= self.portal_thick * 0.5 + 0.05

    @property
    def door_wp(self) -> Vec2:
        return (self.cx, self.inner_min_z + 0.5)

    @property
    def foyer_wp(self) -> Vec2:
        return (self.cx, self.inner_min_z + 1.6)

    @property
    def exit_wp(self) -> Vec2:
        return (self.cx, self.inner_min_z - 0.9)

    @property
    def outside_z(self) -> float:
        return self.inner_min_z - 1.2

    @property
    def spawn_z(self) -> float:
        return self.inner_min_z - 0.28

    def in_tunnel(self, x: float, z: float) -> bool:
        return abs(x - self.cx) <= self.tunnel_half + 0.02 and self.inner_min_z - 0.5 < z <= self.inner_min_z + 0.6

    def in_opening(self, x: float, slack: float = 0.02) -> bool:
        return abs(x - self.cx) <= self.tunnel_half + slack

    def clamp_to_opening(self, x: float, slack: float = 0.02) -> float:
        return clamp(x, self.cx - (self.tunnel_half + slack), self.cx + (self.tunnel_half + slack))

    def max_in_tunnel(self, agent_r: float = AGENT_R) -> int:
        return max(1, int(math.floor((self.width - 0.1) / (agent_r * 2 + 0.06))))


class FloorLayout:
    """
    Room geometry plus the furniture the agents move around.

    Every change that moves a table bumps `revision`, so consumers can
    rebuild seat anchors and obstacle lists lazily.
    """

    def __init__(self, cfg: Config, door_left: Optional[float] = None,
                 kitchen_pos: float = 0.0, restroom_pos: float = 0.0):
        self.cfg = cfg
        self.revision = 0
        self.tables: List[Table] = []
        self.door_left = self._clamp_door_left(
            door_left if door_left is not None else (cfg.width - cfg.door_width) / 2
        )
        self.kitchen_pos = self._clamp_module(cfg.kitchen_side, kitchen_pos, kitchen_length(cfg.width))
        self.restroom_pos = self._clamp_module(cfg.restroom_side, restroom_pos, RESTROOM_LEN)
        room_inner(cfg.width, cfg.depth, cfg.wall_t, AGENT_INSET, check=True)
        self.seed_tables(cfg.table4_count, cfg.table2_count)

    # ---------- bounds ----------

    @property
    def table_inner(self) -> RoomInner:
        return room_inner(self.cfg.width, self.cfg.depth, self.cfg.wall_t)

    @property
    def agent_inner(self) -> RoomInner:
        return room_inner(self.cfg.width, self.cfg.depth, self.cfg.wall_t, AGENT_INSET)

    @property
    def door(self) -> DoorGeometry:
        cfg = self.cfg
        return DoorGeometry(
            cx=-cfg.width / 2 + self.door_left + cfg.door_width / 2,
            width=cfg.door_width,
            inner_min_z=self.agent_inner.min_z,
            tunnel_half=max(0.07, cfg.door_width / 2 - AGENT_R - 0.05),
            wall_t=cfg.wall_t,
        )

    # ---------- tables ----------

    def seed_tables(self, n4: int, n2: int) -> List[Table]:
        """Grid placement, 4-seat tables first. Cells that would collide are dropped."""
        specs: List[Tuple[TableSize, int]] = [(SIZE_FOUR, 4)] * n4 + [(SIZE_TWO, 2)] * n2
        self.tables = []
        if specs:
            inner = self.table_inner
            n = len(specs)
            max_r = max(radius_of(s) for s, _ in specs)
            min_span = ((max_r + TABLE_PAD) * 2 + TABLE_CLEARANCE) * 1.25
            cols = int(math.ceil(math.sqrt(n)))
            rows = int(math.ceil(n / cols))
            span_x = max(min_span, (inner.max_x - inner.min_x) / max(1, cols))
            span_z = max(min_span, (inner.max_z - inner.min_z) / max(1, rows))
            placed: List[Table] = []
            for i, (size, cap) in enumerate(specs):
                r, c = divmod(i, cols)
                cx0 = inner.min_x + (c + 0.5) * span_x
                cz0 = inner.min_z + (r + 0.5) * span_z
                cx, cz = clamp_pos_to_room(cx0, cz0, SIZE_FOUR, 0.0, inner)
                t = Table(id=len(placed), x=cx, z=cz, rot_y=0.0, size=size, cap=cap)
                if tables_collide(placed + [t]):
                    logger.warning("dropping %d-seat table %d: no room at (%.2f, %.2f)", cap, i, cx, cz)
                    continue
                placed.append(t)
            self.tables = placed
        self.revision += 1
        return self.tables

    def set_tables(self, tables: List[Table]) -> None:
        """Replace the furniture wholesale; overlapping sets are refused."""
        if tables_collide(tables):
            raise LayoutError("tables overlap")
        self.tables = list(tables)
        self.revision += 1

    def _index(self, table_id: int) -> int:
        for i, t in enumerate(self.tables):
            if t.id == table_id:
                return i
        raise KeyError(table_id)

    def _try_replace(self, i: int, t: Table) -> bool:
        nxt = list(self.tables)
        nxt[i] = t
        if tables_collide(nxt):
            return False
        self.tables = nxt
        self.revision += 1
        return True

    def move_table(self, table_id: int, x: float, z: float) -> bool:
        """Snap to the move grid, clamp by the rotated extents; refuse collisions."""
        i = self._index(table_id)
        t = self.tables[i]
        gx = round(x / MOVE_GRID) * MOVE_GRID
        gz = round(z / MOVE_GRID) * MOVE_GRID
        cx, cz = clamp_pos_to_room(gx, gz, t.size, t.rot_y, self.table_inner)
        return self._try_replace(i, replace(t, x=cx, z=cz))

    def rotate_table(self, table_id: int, steps: int = 1) -> bool:
        i = self._index(table_id)
        t = self.tables[i]
        nxt = t.rot_y + steps * ROT_STEP
        inner = self.table_inner
        if not is_angle_feasible(t.size, nxt, inner):
            return False
        cx, cz = clamp_pos_to_room(t.x, t.z, t.size, nxt, inner)
        return self._try_replace(i, replace(t, rot_y=nxt, x=cx, z=cz))

    def seat_anchors(self) -> List[SeatAnchor]:
        return build_seat_anchors(self.tables)

    def table_circles(self) -> List[Circle]:
        return table_obstacles(self.tables)

    def table(self, table_id: int) -> Optional[Table]:
        for t in self.tables:
            if t.id == table_id:
                return t
        return None

    # ---------- door ----------

    def _clamp_door_left(self, v: float) -> float:
        cfg = self.cfg
        lo = DOOR_MARGIN
        hi = max(lo, cfg.width - cfg.door_width - DOOR_MARGIN)
        v = round(v / DOOR_SNAP) * DOOR_SNAP
        return clamp(v, lo, hi)

    def set_door_left(self, v: float) -> float:
        self.door_left = self._clamp_door_left(v)
        # modules on the door wall may now sit in the opening
        self.kitchen_pos = self._clamp_module(self.cfg.kitchen_side, self.kitchen_pos, kitchen_length(self.cfg.width))
        self.restroom_pos = self._clamp_module(self.cfg.restroom_side, self.restroom_pos, RESTROOM_LEN)
        self.revision += 1
        return self.door_left

    # ---------- kitchen / restroom modules ----------

    def _clamp_module(self, side: str, v: float, along: float) -> float:
        cfg = self.cfg
        if side in ("left", "right"):
            half = cfg.depth / 2
        else:
            half = cfg.width / 2
        lo = -half + MODULE_MARGIN + along / 2
        hi = half - MODULE_MARGIN - along / 2
        v = clamp(v, lo, hi)
        if side == "back":
            dc = -cfg.width / 2 + self.door_left + cfg.door_width / 2
            limit = cfg.door_width / 2 + along / 2 + 0.05
            if abs(v - dc) < limit:
                v = dc - limit if v < dc else dc + limit
            v = clamp(v, lo, hi)
        return v

    def slide_kitchen(self, v: float) -> float:
        self.kitchen_pos = self._clamp_module(self.cfg.kitchen_side, round(v / DOOR_SNAP) * DOOR_SNAP,
                                              kitchen_length(self.cfg.width))
        return self.kitchen_pos

    def slide_restroom(self, v: float) -> float:
        self.restroom_pos = self._clamp_module(self.cfg.restroom_side, round(v / DOOR_SNAP) * DOOR_SNAP,
                                               RESTROOM_LEN)
        return self.restroom_pos

    def _wall_point(self, side: str, pos: float, offset: float) -> Vec2:
        cfg = self.cfg
        if side == "left":
            return (-cfg.width / 2 + cfg.wall_t + offset, pos)
        if side == "right":
            return (cfg.width / 2 - cfg.wall_t - offset, pos)
        if side == "back":
            return (pos, -cfg.depth / 2 + cfg.wall_t + offset)
        return (pos, cfg.depth / 2 - cfg.wall_t - offset)

    @property
    def kitchen_point(self) -> Vec2:
        return self._wall_point(self.cfg.kitchen_side, self.kitchen_pos, KITCHEN_OFFSET)

    @property
    def restroom_point(self) -> Vec2:
        return self._wall_point(self.cfg.restroom_side, self.restroom_pos, RESTROOM_OFFSET)

    # ---------- staff exit ----------

    @property
    def staff_exit_target(self) -> Vec2:
        cfg = self.cfg
        return (self.door.cx, -cfg.depth / 2 + cfg.wall_t - 0.9)

    @property
    def staff_exit_out_z(self) -> float:
        cfg = self.cfg
        return -cfg.depth / 2 + cfg.wall_t - 1.2

    # ---------- config ----------

    def apply_config(self, cfg: Config) -> bool:
        """Adopt a new config; re-seed tables only when the furniture counts or room changed."""
        room_inner(cfg.width, cfg.depth, cfg.wall_t, AGENT_INSET, check=True)
        old = self.cfg
        self.cfg = cfg
        geom_changed = (old.width, old.depth, old.wall_t, old.door_width) != (cfg.width, cfg.depth, cfg.wall_t, cfg.door_width)
        counts_changed = (old.table4_count, old.table2_count) != (cfg.table4_count, cfg.table2_count)
        self.door_left = self._clamp_door_left(self.door_left)
        self.kitchen_pos = self._clamp_module(cfg.kitchen_side, self.kitchen_pos, kitchen_length(cfg.width))
        self.restroom_pos = self._clamp_module(cfg.restroom_side, self.restroom_pos, RESTROOM_LEN)
        if geom_changed or counts_changed:
            self.seed_tables(cfg.table4_count, cfg.table2_count)
            return True
        return False
