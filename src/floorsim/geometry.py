from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, List, Tuple
import math

from .errors import LayoutError

Vec2 = Tuple[float, float]  # (x, z) on the floor plane

EPS = 1e-6


def clamp(v: float, lo: float, hi: float) -> float:
    return min(max(v, lo), hi)


# ---------- room bounds ----------

@dataclass(frozen=True)
class RoomInner:
    min_x: float
    max_x: float
    min_z: float
    max_z: float

    @property
    def valid(self) -> bool:
        return self.min_x < self.max_x and self.min_z < self.max_z

    def contains(self, x: float, z: float, tol: float = 1e-9) -> bool:
        return (self.min_x - tol <= x <= self.max_x + tol) and (self.min_z - tol <= z <= self.max_z + tol)

    def wall_distance(self, x: float, z: float) -> float:
        return min(abs(x - self.min_x), abs(self.max_x - x), abs(z - self.min_z), abs(self.max_z - z))


def room_inner(width: float, depth: float, wall_t: float, inset: float = 0.0, check: bool = False) -> RoomInner:
    """Walkable interior of a room centred on the origin, shrunk by `inset` (e.g. an agent radius)."""
    inner = RoomInner(
        -width / 2 + wall_t + inset,
        width / 2 - wall_t - inset,
        -depth / 2 + wall_t + inset,
        depth / 2 - wall_t - inset,
    )
    if check and not inner.valid:
        raise LayoutError(f"degenerate room interior {inner} (width={width}, depth={depth}, wall_t={wall_t}, inset={inset})")
    return inner


# ---------- circles ----------

@dataclass(frozen=True)
class Circle:
    x: float
    z: float
    r: float

    def inflated(self, pad: float) -> "Circle":
        return Circle(self.x, self.z, self.r + pad)


def circles_overlap(a: Circle, b: Circle, clearance: float = 0.0) -> bool:
    s = a.r + b.r + clearance
    dx, dz = a.x - b.x, a.z - b.z
    return dx * dx + dz * dz < s * s


def any_overlap(circles: List[Circle], clearance: float = 0.0) -> bool:
    for i in range(len(circles)):
        for j in range(i + 1, len(circles)):
            if circles_overlap(circles[i], circles[j], clearance):
                return True
    return False


def inflate_all(circles: Iterable[Circle], pad: float) -> List[Circle]:
    return [c.inflated(pad) for c in circles]


# ---------- tables ----------

@dataclass(frozen=True)
class TableSize:
    w: float
    d: float
    h: float = 0.75


SIZE_TWO = TableSize(1.0, 0.7, 0.75)
SIZE_FOUR = TableSize(1.2, 0.75, 0.75)
TABLE_PAD = 0.08        # bounding circle -> obstacle circle
TABLE_CLEARANCE = 0.0   # between obstacle circles


def radius_of(size: TableSize) -> float:
    """Bounding circle (half diagonal) of a table footprint."""
    return 0.5 * math.sqrt(size.w * size.w + size.d * size.d)


@dataclass(frozen=True)
class Table:
    id: int
    x: float
    z: float
    rot_y: float
    size: TableSize
    cap: int  # 2 or 4

    @property
    def radius(self) -> float:
        return radius_of(self.size)

    def obstacle(self, pad: float = TABLE_PAD) -> Circle:
        return Circle(self.x, self.z, self.radius + pad)


def rect_extents(size: TableSize, theta: float) -> Vec2:
    """Half extents along x/z of a footprint rotated by `theta` about the vertical axis."""
    hw, hd = size.w / 2, size.d / 2
    c, s = math.cos(theta), math.sin(theta)
    return abs(hw * c) + abs(hd * s), abs(hw * s) + abs(hd * c)


def clamp_pos_to_room(x: float, z: float, size: TableSize, theta: float, room: RoomInner) -> Vec2:
    ex, ez = rect_extents(size, theta)
    return clamp(x, room.min_x + ex, room.max_x - ex), clamp(z, room.min_z + ez, room.max_z - ez)


def is_angle_feasible(size: TableSize, theta: float, room: RoomInner) -> bool:
    ex, ez = rect_extents(size, theta)
    return ex <= (room.max_x - room.min_x) / 2 and ez <= (room.max_z - room.min_z) / 2


def table_obstacles(tables: Iterable[Table], pad: float = TABLE_PAD) -> List[Circle]:
    return [t.obstacle(pad) for t in tables]


def tables_collide(tables: List[Table], clearance: float = TABLE_CLEARANCE) -> bool:
    """Checked on the padded obstacle circles, the same ones the agents avoid."""
    return any_overlap(table_obstacles(tables), clearance)


def rotate_local(lx: float, lz: float, yaw: float) -> Vec2:
    """Rotate a table-local offset (x = lateral, z = along) into the floor frame."""
    c, s = math.cos(yaw), math.sin(yaw)
    return lx * c + lz * s, -lx * s + lz * c
