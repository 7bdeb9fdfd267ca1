from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
import math

from .geometry import EPS, Circle, RoomInner, Vec2, clamp

# ---------- spatial hash ----------

class SpatialHash:
    """Uniform grid over agent indices, rebuilt from scratch every tick."""

    def __init__(self, cell: float = 0.9):
        self.cell = cell
        self._grid: Dict[Tuple[int, int], List[int]] = {}

    def _key(self, x: float, z: float) -> Tuple[int, int]:
        return int(math.floor(x / self.cell)), int(math.floor(z / self.cell))

    def rebuild(self, points: Iterable[Tuple[int, float, float]]) -> None:
        self._grid.clear()
        for idx, x, z in points:
            self._grid.setdefault(self._key(x, z), []).append(idx)

    def near(self, x: float, z: float) -> List[int]:
        gx, gz = self._key(x, z)
        out: List[int] = []
        for dz in (-1, 0, 1):
            for dx in (-1, 0, 1):
                out.extend(self._grid.get((gx + dx, gz + dz), ()))
        return out


# ---------- force accumulation ----------

@dataclass
class Forces:
    vtx: float = 0.0   # target velocity
    vtz: float = 0.0
    sep_x: float = 0.0
    sep_z: float = 0.0
    rep_x: float = 0.0
    rep_z: float = 0.0
    push_x: float = 0.0  # accelerations added after the velocity controller
    push_z: float = 0.0
    slide_x: float = 0.0
    slide_z: float = 0.0

    def seek(self, x: float, z: float, tx: float, tz: float, speed: float) -> Tuple[float, float, float]:
        """Set the seek term; returns (dx, dz, dist) toward the target."""
        dx, dz = tx - x, tz - z
        dist = math.hypot(dx, dz) or EPS
        self.vtx += dx / dist * speed
        self.vtz += dz / dist * speed
        return dx, dz, dist

    def separation(self, rx: float, rz: float, dd: float, sep_dist: float) -> None:
        if dd < sep_dist:
            w = (sep_dist - dd) / sep_dist
            self.sep_x += rx / dd * w
            self.sep_z += rz / dd * w

    def soft(self, rx: float, rz: float, dd: float, radius: float, gain: float, scale: float = 1.0) -> None:
        if dd < radius:
            strength = (radius - dd) * gain * scale
            self.rep_x += rx / dd * strength
            self.rep_z += rz / dd * strength

    def contact(self, rx: float, rz: float, dd: float, r0: float, r1: float,
                push: float, slide: float = 0.0) -> None:
        """Push away and slide tangentially, full strength at r0 fading to zero at r1."""
        s = 1.0 - min(1.0, max(0.0, (dd - r0) / (r1 - r0)))
        if s <= 0.0:
            return
        nx, nz = rx / dd, rz / dd
        self.push_x += nx * s * push
        self.push_z += nz * s * push
        if slide:
            self.slide_x += -nz * s * slide
            self.slide_z += nx * s * slide

    def wall(self, x: float, z: float, inner: RoomInner, pad: float = 0.18, gain: float = 3.2) -> None:
        d_l = x - inner.min_x
        d_r = inner.max_x - x
        d_f = z - inner.min_z
        d_b = inner.max_z - z
        if d_l < pad:
            self.push_x += (pad - d_l) * gain
        if d_r < pad:
            self.push_x -= (pad - d_r) * gain
        if d_f < pad:
            self.push_z += (pad - d_f) * gain
        if d_b < pad:
            self.push_z -= (pad - d_b) * gain

    def fold(self, max_sep: float = 1.5, max_rep: float = 3.0) -> None:
        """Add capped separation and repulsion into the target velocity."""
        sep = math.hypot(self.sep_x, self.sep_z)
        if sep > EPS:
            m = min(sep, max_sep)
            self.vtx += self.sep_x / sep * m
            self.vtz += self.sep_z / sep * m
        rep = math.hypot(self.rep_x, self.rep_z)
        if rep > EPS:
            m = min(rep, max_rep)
            self.vtx += self.rep_x / rep * m
            self.vtz += self.rep_z / rep * m
        self.sep_x = self.sep_z = self.rep_x = self.rep_z = 0.0


def offset(ax: float, az: float, bx: float, bz: float) -> Tuple[float, float, float]:
    """Vector b->a and its length floored at EPS."""
    rx, rz = ax - bx, az - bz
    return rx, rz, math.hypot(rx, rz) or EPS


def lateral(dx: float, dz: float, dist: float) -> Vec2:
    """Unit normal to the heading (left-hand side)."""
    return -dz / dist, dx / dist


# ---------- integration ----------

def integrate(pos: List[float], vel: List[float], f: Forces, dt: float,
              accel: float, damp: float, max_speed: float) -> Vec2:
    """
    Velocity controller: accelerate toward the target
    velocity, add contact pushes, damp, cap. Returns the proposed position;
    `vel` is updated in place.
    """
    k = damp ** (dt * 60.0)
    ax = (f.vtx - vel[0]) * accel + f.push_x + f.slide_x
    az = (f.vtz - vel[1]) * accel + f.push_z + f.slide_z
    vel[0] = (vel[0] + ax * dt) * k
    vel[1] = (vel[1] + az * dt) * k
    v = math.hypot(vel[0], vel[1])
    if v > max_speed:
        vel[0] *= max_speed / v
        vel[1] *= max_speed / v
    return pos[0] + vel[0] * dt, pos[1] + vel[1] * dt


def resolve_hard(pos: List[float], vel: List[float], circles: Sequence[Circle], radius: float,
                 pad: float, overshoot: float, slide_vel: float = 0.0, normal_vel: float = 0.0,
                 passes: int = 3) -> int:
    """Positional correction out of every circle's hard radius. Returns the number of corrections."""
    hits = 0
    for _ in range(passes):
        moved = False
        for o in circles:
            ox, oz = pos[0] - o.x, pos[1] - o.z
            dd = math.hypot(ox, oz)
            hard_r = o.r + radius + pad
            if dd >= hard_r:
                continue
            if dd < EPS:
                nx, nz = 1.0, 0.0
            else:
                nx, nz = ox / dd, oz / dd
            push = hard_r - dd + 1e-3
            pos[0] += nx * push * (1.0 + overshoot)
            pos[1] += nz * push * (1.0 + overshoot)
            if slide_vel:
                vel[0] += -nz * slide_vel
                vel[1] += nx * slide_vel
            if normal_vel:
                vel[0] += nx * push * normal_vel
                vel[1] += nz * push * normal_vel
            hits += 1
            moved = True
        if not moved:
            break
    return hits


def separate_pairs(bodies: Sequence[List[float]], min_dist: float, grid: Optional[SpatialHash] = None,
                   passes: int = 8) -> int:
    """Split any pairwise overlap evenly between the two bodies; repeat while a pass still moved something."""
    hits = 0
    for _ in range(max(1, passes)):
        moved = _separate_pass(bodies, min_dist, grid)
        hits += moved
        if not moved:
            break
    return hits


def _separate_pass(bodies: Sequence[List[float]], min_dist: float, grid: Optional[SpatialHash]) -> int:
    hits = 0
    if grid is not None:
        grid.rebuild((i, b[0], b[1]) for i, b in enumerate(bodies))
    for i, a in enumerate(bodies):
        others = grid.near(a[0], a[1]) if grid is not None else range(len(bodies))
        for j in others:
            if j <= i:
                continue
            b = bodies[j]
            rx, rz = a[0] - b[0], a[1] - b[1]
            dd = math.hypot(rx, rz)
            if dd >= min_dist:
                continue
            if dd < EPS:
                nx, nz = (1.0, 0.0) if i % 2 == 0 else (-1.0, 0.0)
            else:
                nx, nz = rx / dd, rz / dd
            half = (min_dist - dd) / 2 + 1e-4
            a[0] += nx * half
            a[1] += nz * half
            b[0] -= nx * half
            b[1] -= nz * half
            hits += 1
    return hits


# ---------- narrow gaps ----------

def narrow_gap_repulsion(x: float, z: float, circles: Sequence[Circle],
                         min_gap: float = 0.48, reach: float = 0.36, gain: float = 2.2) -> Vec2:
    """Nudge out of the throat between two circles whose free gap is below `min_gap`."""
    rx = rz = 0.0
    n = len(circles)
    for i in range(n):
        c1 = circles[i]
        for j in range(i + 1, n):
            c2 = circles[j]
            dx, dz = c2.x - c1.x, c2.z - c1.z
            d = math.hypot(dx, dz) or EPS
            gap = d - (c1.r + c2.r)
            if gap >= min_gap:
                continue
            mx, mz = (c1.x + c2.x) / 2, (c1.z + c2.z) / 2
            nx, nz = -dz / d, dx / d
            mdx, mdz = x - mx, z - mz
            dist = math.hypot(mdx, mdz)
            lim = reach + (min_gap - gap)
            if dist < lim:
                s = 1.0 - dist / max(EPS, lim)
                side = -1.0 if (mdx * nx + mdz * nz) < 0 else 1.0
                rx += nx * s * gain * side
                rz += nz * s * gain * side
    return rx, rz


# ---------- waypoint routing ----------

def segment_hits_circle(ax: float, az: float, bx: float, bz: float, c: Circle, inflate: float = 0.0) -> bool:
    r = c.r + inflate
    abx, abz = bx - ax, bz - az
    ab2 = abx * abx + abz * abz or EPS
    t = clamp(((c.x - ax) * abx + (c.z - az) * abz) / ab2, 0.0, 1.0)
    px, pz = ax + t * abx, az + t * abz
    return (px - c.x) ** 2 + (pz - c.z) ** 2 <= r * r


def first_blocking_circle(ax: float, az: float, bx: float, bz: float,
                          circles: Sequence[Circle], inflate: float = 0.0) -> Optional[Circle]:
    """Nearest circle (by centre distance from a) that the segment a-b crosses."""
    best: Optional[Circle] = None
    best_d = math.inf
    for c in circles:
        if segment_hits_circle(ax, az, bx, bz, c, inflate):
            d = math.hypot(c.x - ax, c.z - az)
            if d < best_d:
                best, best_d = c, d
    return best


def tangent_waypoint(ax: float, az: float, tx: float, tz: float, c: Circle, pad: float = 0.18) -> Vec2:
    """
    Far-side point on the padded circle, the one of the two closer to the target.

    Angles are `acos(r / L)` either side of the agent->centre direction, measured
    at the centre, so the point sits behind the circle rather than at true tangency.
    """
    r = max(c.r + pad, 0.01)
    vx, vz = c.x - ax, c.z - az
    length = math.hypot(vx, vz) or EPS
    base = math.atan2(vz, vx)
    t_dir = math.acos(clamp(r / max(length, r + EPS), -1.0, 1.0))
    cands = [(c.x + math.cos(a) * r, c.z + math.sin(a) * r) for a in (base + t_dir, base - t_dir)]
    cands.sort(key=lambda p: math.hypot(p[0] - tx, p[1] - tz))
    return cands[0]


INFLATION_LEVELS = (0.0, 0.1, 0.18)


def pick_waypoint(ax: float, az: float, tx: float, tz: float, circles: Sequence[Circle]) -> Optional[Vec2]:
    """None when the straight line to the goal is clear."""
    for inf in INFLATION_LEVELS:
        block = first_blocking_circle(ax, az, tx, tz, circles, inf)
        if block is None:
            return None
        wp = tangent_waypoint(ax, az, tx, tz, block, 0.2 + inf)
        if first_blocking_circle(ax, az, wp[0], wp[1], circles, 0.06) is None:
            return wp
    block = first_blocking_circle(ax, az, tx, tz, circles, 0.12)
    return tangent_waypoint(ax, az, tx, tz, block, 0.22) if block is not None else None


# ---------- stuck recovery ----------

def parity_side(agent_id: int, salt: str = "customer") -> float:
    """Deterministic +1/-1 per agent so symmetric pairs pick opposite sides."""
    if salt == "staff":
        bit = ((agent_id * 9301) ^ 49297) & 1
    elif salt == "spot":
        bit = (((agent_id * 1103515245) & 0xFFFFFFFF) >> 1) & 1
    else:
        bit = agent_id & 1
    return 1.0 if bit else -1.0
