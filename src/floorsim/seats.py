from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple
import math

from .geometry import TABLE_PAD, Table, TableSize, Vec2, rotate_local

PERSON_R = 0.18
SEAT_MARGIN = 0.03
MIN_SEAT_DIST = 0.42
APPROACH_BACK = 0.38  # approach point sits this far behind the seat


@dataclass(frozen=True)
class SeatAnchor:
    id: int
    x: float
    z: float
    dir: float      # yaw facing the table centre
    table_id: int
    table_cap: int

    @property
    def pos(self) -> Vec2:
        return (self.x, self.z)


def seat_id(table_id: int, k: int) -> int:
    return table_id * 10 + k


def _seat_offsets(size: TableSize, cap: int) -> List[Tuple[float, float]]:
    """(along, lateral) offsets from the table centre, in table-local axes."""
    r_table = 0.5 * math.sqrt(size.w * size.w + size.d * size.d) + TABLE_PAD
    r_min = r_table + PERSON_R + SEAT_MARGIN
    base_half = size.d / 2
    if cap == 4:
        x_off = size.w * 0.25
        seat_dist = max(MIN_SEAT_DIST, math.sqrt(max(0.0, r_min * r_min - x_off * x_off)) - base_half + 0.02)
        along = base_half + seat_dist
        return [(along, x_off), (along, -x_off), (-along, x_off), (-along, -x_off)]
    seat_dist = max(MIN_SEAT_DIST, r_min - base_half + 0.02)
    along = base_half + seat_dist
    return [(along, 0.0), (-along, 0.0)]


def anchors_for_table(t: Table) -> List[SeatAnchor]:
    fwd = (math.sin(t.rot_y), math.cos(t.rot_y))
    right = (math.cos(t.rot_y), -math.sin(t.rot_y))
    out: List[SeatAnchor] = []
    for k, (along, lat) in enumerate(_seat_offsets(t.size, t.cap)):
        ax = t.x + fwd[0] * along + right[0] * lat
        az = t.z + fwd[1] * along + right[1] * lat
        out.append(SeatAnchor(
            id=seat_id(t.id, k),
            x=ax,
            z=az,
            dir=math.atan2(t.x - ax, t.z - az),
            table_id=t.id,
            table_cap=t.cap,
        ))
    return out


def build_seat_anchors(tables: Iterable[Table]) -> List[SeatAnchor]:
    anchors: List[SeatAnchor] = []
    for t in tables:
        anchors.extend(anchors_for_table(t))
    return anchors


def anchors_by_id(anchors: Iterable[SeatAnchor]) -> Dict[int, SeatAnchor]:
    return {a.id: a for a in anchors}


def approach_point(a: SeatAnchor, back: float = APPROACH_BACK) -> Vec2:
    """Point behind the seat on the line away from the table."""
    ang = a.dir + math.pi
    return a.x + math.sin(ang) * back, a.z + math.cos(ang) * back


# ---------- service spots ----------

@dataclass(frozen=True)
class ServiceSpots:
    primary: Vec2
    secondary: Vec2


def service_spots(t: Table, kitchen: Vec2, staff_radius: float, margin: float) -> ServiceSpots:
    """Standing points off both short edges; the one nearer the kitchen is primary."""
    short_is_x = t.size.w <= t.size.d
    short_half = (t.size.w if short_is_x else t.size.d) / 2
    offset = short_half + staff_radius + margin
    lx, lz = (0.0, offset) if short_is_x else (offset, 0.0)
    ox, oz = rotate_local(lx, lz, t.rot_y)
    a = (t.x + ox, t.z + oz)
    b = (t.x - ox, t.z - oz)
    da = (a[0] - kitchen[0]) ** 2 + (a[1] - kitchen[1]) ** 2
    db = (b[0] - kitchen[0]) ** 2 + (b[1] - kitchen[1]) ** 2
    return ServiceSpots(a, b) if da <= db else ServiceSpots(b, a)
