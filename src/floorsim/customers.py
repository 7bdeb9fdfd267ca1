from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set
import logging
import math

import numpy as np

from .config import Config
from .geometry import Circle, Vec2, clamp
from .seats import SeatAnchor, anchors_by_id, approach_point
from .stats import stay_seconds
from .steering import (
    Forces, SpatialHash, integrate, lateral, offset, parity_side, resolve_hard, separate_pairs,
)
from .world import AGENT_R, FloorLayout

logger = logging.getLogger(__name__)

R = AGENT_R
SPEED = 1.25
ACCEL = 7.5
DAMP = 0.92
SEP_DIST = R * 2.2
MAX_SEP = 1.5
MAX_REP = 3.0
HARD_PAD = 0.08
SEATED_R = R + 0.02

LANES = 3
SPAWN_COOLDOWN = 0.35
SPAWN_RETRY = 0.12
STUCK_SPEED = 0.05
STUCK_TIME = 0.9
GRID_CELL = 0.9

APPROACH_REACH = 0.22   # switch from approach point to the seat itself
SEAT_SNAP = 0.2
RESTROOM_REACH = 0.25
RESTROOM_USE_SEC = 10.0
RESTROOM_MARGIN = 12.0
RESTROOM_EARLIEST = 5.0
MIN_STAY = 5.0
OUTSIDE_LINGER = 1.0


class CustomerPhase(Enum):
    APPROACH_DOOR = "approachDoor"
    FOYER = "foyer"
    TO_SEAT = "toSeat"
    SEATED = "seated"
    RESTROOM_GO = "restroomGo"
    RESTROOM_USE = "restroomUse"
    EXIT = "exit"
    OUTSIDE = "outside"


@dataclass
class Customer:
    id: int
    pos: List[float]
    vel: List[float]
    lane_x: float
    phase: CustomerPhase
    target: Vec2
    since: float
    seat_id: Optional[int] = None
    table_id: Optional[int] = None   # set while the customer counts toward table occupancy
    holds_table: bool = False
    leave_at: float = 0.0
    stuck: float = 0.0
    restroom_planned: bool = False
    restroom_at: float = 0.0
    at_approach: bool = False

    @property
    def moving(self) -> bool:
        return self.phase not in (CustomerPhase.SEATED, CustomerPhase.RESTROOM_USE, CustomerPhase.OUTSIDE)


@dataclass(frozen=True)
class ServiceRequest:
    id: int
    table_id: int
    x: float
    z: float


@dataclass
class CustomerCounts:
    pending: int = 0
    inside: int = 0
    seated: int = 0
    exiting: int = 0
    departed: int = 0
    active_tables: int = 0


class CustomerSim:
    """Customer pool: arrivals through the door, seating, restroom trips and departures."""

    def __init__(self, layout: FloorLayout, cfg: Config, rng: Optional[np.random.Generator] = None):
        self.layout = layout
        self.cfg = cfg
        self.rng = rng if rng is not None else np.random.default_rng()
        self.agents: List[Customer] = []
        self.now = 0.0
        self.pending = 0
        self.departed = 0
        self.seat_taken: Set[int] = set()
        self.table_occ: Dict[int, int] = {}
        self.anchors: Dict[int, SeatAnchor] = {}
        self._next_id = 1
        self._next_request = 1
        self._prev_incoming = 0.0
        self._spawn_cooldown = 0.0
        self._grid = SpatialHash(GRID_CELL)
        self._handlers: Dict[CustomerPhase, Callable[[Customer], None]] = {
            CustomerPhase.APPROACH_DOOR: self._on_approach_door,
            CustomerPhase.FOYER: self._on_foyer,
            CustomerPhase.TO_SEAT: self._on_to_seat,
            CustomerPhase.SEATED: self._on_seated,
            CustomerPhase.RESTROOM_GO: self._on_restroom_go,
            CustomerPhase.RESTROOM_USE: self._on_restroom_use,
            CustomerPhase.EXIT: self._on_exit,
            CustomerPhase.OUTSIDE: self._on_outside,
        }
        self._coef = 1.0
        self._requests: List[ServiceRequest] = []
        self.refresh_anchors(layout.seat_anchors())

    # ---------- inputs ----------

    def set_incoming(self, effective_incoming: float) -> int:
        """Queue arrivals when the whole-number part of the incoming rate goes up."""
        prev = math.floor(self._prev_incoming or 0.0)
        cur = math.floor(effective_incoming or 0.0)
        diff = max(0, cur - prev)
        if diff > 0:
            self.pending += diff
        self._prev_incoming = effective_incoming
        return diff

    def refresh_anchors(self, anchors: Iterable[SeatAnchor]) -> None:
        """Adopt regenerated seat anchors; customers whose seat vanished are sent back to the foyer."""
        self.anchors = anchors_by_id(anchors)
        self.seat_taken = {sid for sid in self.seat_taken if sid in self.anchors}
        for a in self.agents:
            if a.seat_id is None:
                continue
            seat = self.anchors.get(a.seat_id)
            if seat is not None:
                if a.phase is CustomerPhase.SEATED:
                    a.pos[0], a.pos[1] = seat.x, seat.z
                continue
            self._release(a)
            if a.phase in (CustomerPhase.SEATED, CustomerPhase.TO_SEAT):
                self._enter(a, CustomerPhase.FOYER)

    # ---------- seats ----------

    def _seat_reachable(self, s: SeatAnchor) -> bool:
        """Inside the walls and clear of every other table."""
        if not self.layout.agent_inner.contains(s.x, s.z):
            return False
        for t in self.layout.tables:
            if t.id == s.table_id:
                continue
            c = t.obstacle()
            if math.hypot(s.x - c.x, s.z - c.z) < c.r + R + HARD_PAD:
                return False
        return True

    def try_assign_seat(self) -> Optional[int]:
        """Reserve the free seat closest to a wall."""
        inner = self.layout.agent_inner
        free = [s for s in self.anchors.values()
                if s.id not in self.seat_taken and self._seat_reachable(s)]
        if not free:
            return None
        free.sort(key=lambda s: (inner.wall_distance(s.x, s.z), s.id))
        seat = free[0]
        self.seat_taken.add(seat.id)
        return seat.id

    def _release(self, a: Customer) -> None:
        if a.seat_id is not None:
            self.seat_taken.discard(a.seat_id)
        if a.holds_table and a.table_id is not None:
            prev = self.table_occ.get(a.table_id, 0)
            if prev <= 1:
                self.table_occ.pop(a.table_id, None)
            else:
                self.table_occ[a.table_id] = prev - 1
        a.seat_id = None
        a.table_id = None
        a.holds_table = False
        a.restroom_planned = False

    def _enter(self, a: Customer, phase: CustomerPhase) -> None:
        a.phase = phase
        a.since = self.now
        a.at_approach = False

    # ---------- spawning ----------

    def _spawn_one(self) -> Customer:
        door = self.layout.door
        inner = self.layout.agent_inner
        lane_w = min(door.tunnel_half * 0.9, 0.22)
        i = self._next_id % LANES
        lane = clamp(door.cx + (i - (LANES - 1) / 2) * lane_w * 2, inner.min_x, inner.max_x)
        jitter = min(door.width / 2 * 0.18, 0.1)
        x0 = door.clamp_to_opening(lane + float(self.rng.uniform(-1.0, 1.0)) * jitter)
        a = Customer(
            id=self._next_id,
            pos=[x0, door.spawn_z],
            vel=[0.0, 0.0],
            lane_x=lane,
            phase=CustomerPhase.APPROACH_DOOR,
            target=door.door_wp,
            since=self.now,
            seat_id=self.try_assign_seat(),
        )
        self._next_id += 1
        self.agents.append(a)
        return a

    def _maybe_spawn(self, dt: float) -> None:
        self._spawn_cooldown -= dt
        if self.pending <= 0 or self._spawn_cooldown > 0:
            return
        door = self.layout.door
        in_tunnel = sum(1 for a in self.agents
                        if a.phase is not CustomerPhase.OUTSIDE and door.in_tunnel(a.pos[0], a.pos[1]))
        if in_tunnel < door.max_in_tunnel(R):
            self._spawn_one()
            self.pending -= 1
            self._spawn_cooldown = SPAWN_COOLDOWN
        else:
            self._spawn_cooldown = SPAWN_RETRY

    # ---------- phase handlers ----------

    def _on_approach_door(self, a: Customer) -> None:
        door = self.layout.door
        a.target = door.door_wp
        if a.pos[1] >= door.door_wp[1] - 0.02:
            self._enter(a, CustomerPhase.FOYER)

    def _on_foyer(self, a: Customer) -> None:
        max_wait = max(12.0, max(1.0, self.cfg.base_stay_sec) * 0.5)
        if self.now - a.since > max_wait:
            # balk
            self._release(a)
            self._enter(a, CustomerPhase.EXIT)
            a.target = self.layout.door.exit_wp
            return
        a.target = self.layout.door.foyer_wp
        if a.seat_id is not None:
            self._enter(a, CustomerPhase.TO_SEAT)

    def _on_to_seat(self, a: Customer) -> None:
        seat = self.anchors.get(a.seat_id) if a.seat_id is not None else None
        if seat is None:
            self._release(a)
            self._enter(a, CustomerPhase.FOYER)
            return
        if not a.at_approach:
            ap = approach_point(seat)
            a.target = ap
            if (ap[0] - a.pos[0]) ** 2 + (ap[1] - a.pos[1]) ** 2 < APPROACH_REACH ** 2:
                a.at_approach = True
        if a.at_approach:
            a.target = seat.pos
            if (seat.x - a.pos[0]) ** 2 + (seat.z - a.pos[1]) ** 2 < SEAT_SNAP ** 2:
                self._sit(a, seat)

    def _sit(self, a: Customer, seat: SeatAnchor) -> None:
        a.pos[0], a.pos[1] = seat.x, seat.z
        a.vel[0] = a.vel[1] = 0.0
        self._enter(a, CustomerPhase.SEATED)
        if a.holds_table:
            # back from the restroom: the stay and the table count carry on
            return
        a.holds_table = True
        a.table_id = seat.table_id
        a.leave_at = self.now + max(MIN_STAY, stay_seconds(self.cfg, self._coef))
        prev = self.table_occ.get(seat.table_id, 0)
        self.table_occ[seat.table_id] = prev + 1
        if prev == 0:
            self._requests.append(ServiceRequest(self._next_request, seat.table_id, seat.x, seat.z))
            self._next_request += 1
        if self.rng.random() < self.cfg.restroom_prob:
            lo = self.now + RESTROOM_EARLIEST
            hi = a.leave_at - RESTROOM_MARGIN
            span = a.leave_at - self.now
            if span > RESTROOM_MARGIN and lo <= hi:
                a.restroom_planned = True
                a.restroom_at = clamp(self.now + span * 0.5, lo, hi)

    def _on_seated(self, a: Customer) -> None:
        if a.restroom_planned and self.now >= a.restroom_at:
            a.restroom_planned = False
            self._enter(a, CustomerPhase.RESTROOM_GO)
            a.target = self.layout.restroom_point
        elif self.now >= a.leave_at:
            self._release(a)
            self._enter(a, CustomerPhase.EXIT)
            a.target = self.layout.door.exit_wp

    def _on_restroom_go(self, a: Customer) -> None:
        rp = self.layout.restroom_point
        a.target = rp
        if (rp[0] - a.pos[0]) ** 2 + (rp[1] - a.pos[1]) ** 2 < RESTROOM_REACH ** 2:
            a.vel[0] = a.vel[1] = 0.0
            self._enter(a, CustomerPhase.RESTROOM_USE)

    def _on_restroom_use(self, a: Customer) -> None:
        if self.now - a.since >= RESTROOM_USE_SEC:
            self._enter(a, CustomerPhase.TO_SEAT)

    def _on_exit(self, a: Customer) -> None:
        a.target = self.layout.door.exit_wp

    def _on_outside(self, a: Customer) -> None:
        door = self.layout.door
        a.vel[0] *= 0.9
        a.vel[1] *= 0.9
        a.pos[0] = clamp(a.pos[0], door.cx - 0.35, door.cx + 0.35)
        a.pos[1] += (door.outside_z - a.pos[1]) * 0.06

    # ---------- steering ----------

    def _confine(self, a: Customer, x: float, z: float, prev_z: float) -> List[float]:
        """Keep inside the room; the back wall can only be crossed through the door opening."""
        inner = self.layout.agent_inner
        door = self.layout.door
        x = clamp(x, inner.min_x, inner.max_x)
        floor_z = inner.min_z
        if a.phase in (CustomerPhase.APPROACH_DOOR, CustomerPhase.EXIT):
            if prev_z < inner.min_z or door.in_opening(x):
                floor_z = inner.min_z - 1.6 if a.phase is CustomerPhase.EXIT else door.spawn_z
                if min(z, prev_z) < inner.min_z:
                    x = door.clamp_to_opening(x)
        return [x, clamp(z, floor_z, inner.max_z)]

    def _steer(self, a: Customer, circles: Sequence[Circle], staff: Sequence[Vec2], dt: float) -> None:
        cfg = self.cfg
        door = self.layout.door
        inner = self.layout.agent_inner
        avoid, rep = cfg.avoidance, cfg.repulsion
        x, z = a.pos
        f = Forces()
        dx, dz, dist = f.seek(x, z, a.target[0], a.target[1], SPEED)

        if a.phase is CustomerPhase.APPROACH_DOOR:
            f.vtx += (a.lane_x - x) * 3.4
            f.vtz += 1.8
        elif a.phase is not CustomerPhase.EXIT and z < inner.min_z + 0.85:
            f.vtx += (a.lane_x - x) * 3.0
        if a.phase is CustomerPhase.EXIT:
            f.vtx += (door.cx - x) * 2.4
            f.vtz -= 1.2

        speed = math.hypot(a.vel[0], a.vel[1])
        a.stuck = a.stuck + dt if speed < STUCK_SPEED else 0.0
        if a.stuck > STUCK_TIME:
            lx, lz = lateral(dx, dz, dist)
            side = parity_side(a.id)
            f.vtx += lx * 0.8 * side
            f.vtz += lz * 0.8 * side
            a.stuck = 0.0

        # no soft forces inside the door portal or on the last stretch to a seat
        if a.phase is CustomerPhase.EXIT and door.in_portal(x, z):
            f.vtx += (door.cx - x) * 8.0
            f.vtz -= 1.4
        elif not a.at_approach:
            for j in self._grid.near(x, z):
                b = self.agents[j]
                if b is a or not b.moving:
                    continue
                rx, rz, dd = offset(x, z, b.pos[0], b.pos[1])
                f.separation(rx, rz, dd, SEP_DIST)
                f.soft(rx, rz, dd, avoid.human_human, rep.human_human)
                f.contact(rx, rz, dd, R * 2 + 0.06, R * 2 + 0.38, 4.0, 2.4)
            for o in circles:
                rx, rz, dd = offset(x, z, o.x, o.z)
                f.soft(rx, rz, dd, o.r + avoid.human_obstacle, rep.human_obstacle)
                r0 = o.r + R + 0.08
                f.contact(rx, rz, dd, r0, r0 + 0.35, 4.0, 2.4)
            for sx, sz in staff:
                rx, rz, dd = offset(x, z, sx, sz)
                f.soft(rx, rz, dd, avoid.human_staff, rep.human_staff)

        f.fold(MAX_SEP, MAX_REP)
        if z >= inner.min_z:
            f.wall(x, z, inner)

        nx, nz = integrate(a.pos, a.vel, f, dt, ACCEL, DAMP, SPEED)
        if a.phase is CustomerPhase.EXIT and nz > z:
            nz = z
        a.pos = self._confine(a, nx, nz, z)
        resolve_hard(a.pos, a.vel, circles, R, HARD_PAD, overshoot=0.25, slide_vel=0.25)
        a.pos = self._confine(a, a.pos[0], a.pos[1], z)

    # ---------- obstacles ----------

    def seated_obstacles(self) -> List[Circle]:
        return [Circle(a.pos[0], a.pos[1], SEATED_R) for a in self.agents if a.phase is CustomerPhase.SEATED]

    def crowd_obstacles(self) -> List[Circle]:
        """Customers on their feet inside the building."""
        return [Circle(a.pos[0], a.pos[1], SEATED_R) for a in self.agents if a.moving]

    # ---------- tick ----------

    def step(self, dt: float, coef: float = 1.0, staff: Sequence[Vec2] = ()) -> List[ServiceRequest]:
        """Advance one frame; returns the service requests raised during it."""
        self.now += dt
        self._coef = coef
        self._requests = []
        self._maybe_spawn(dt)

        for a in self.agents:
            if a.phase in (CustomerPhase.FOYER, CustomerPhase.TO_SEAT) and a.seat_id is None:
                sid = self.try_assign_seat()
                if sid is not None:
                    a.seat_id = sid
                    self._enter(a, CustomerPhase.TO_SEAT)

        # one ring of cells must cover the widest customer-customer interaction
        self._grid.cell = max(GRID_CELL, self.cfg.avoidance.human_human, SEP_DIST)
        self._grid.rebuild((i, a.pos[0], a.pos[1]) for i, a in enumerate(self.agents) if a.moving)
        circles = self.layout.table_circles() + self.seated_obstacles()

        for a in self.agents:
            self._handlers[a.phase](a)
            if a.moving:
                self._steer(a, circles, staff, dt)
            if a.phase is CustomerPhase.EXIT and a.pos[1] <= self.layout.door.exit_wp[1]:
                a.vel[0] = a.vel[1] = 0.0
                a.pos[1] = self.layout.door.outside_z
                self._enter(a, CustomerPhase.OUTSIDE)
                self.departed += 1

        walkers = [a for a in self.agents
                   if a.moving and a.pos[1] >= self.layout.agent_inner.min_z and not a.at_approach]
        if walkers:
            bodies = [a.pos for a in walkers]
            if separate_pairs(bodies, R * 2, self._grid):
                for a in walkers:
                    a.pos = self._confine(a, a.pos[0], a.pos[1], a.pos[1])

        self.agents = [a for a in self.agents
                       if not (a.phase is CustomerPhase.OUTSIDE and self.now - a.since >= OUTSIDE_LINGER)]
        return list(self._requests)

    def counts(self) -> CustomerCounts:
        return CustomerCounts(
            pending=max(0, self.pending),
            inside=sum(1 for a in self.agents if a.phase not in (CustomerPhase.OUTSIDE, CustomerPhase.RESTROOM_USE)),
            seated=sum(1 for a in self.agents if a.phase is CustomerPhase.SEATED),
            exiting=sum(1 for a in self.agents if a.phase is CustomerPhase.EXIT),
            departed=self.departed,
            active_tables=len(self.table_occ),
        )
