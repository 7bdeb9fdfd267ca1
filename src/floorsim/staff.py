from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence
import logging
import math

from .config import Config
from .customers import ServiceRequest
from .geometry import EPS, Circle, Vec2, clamp, inflate_all
from .seats import ServiceSpots, service_spots
from .steering import (
    Forces, integrate, lateral, narrow_gap_repulsion, offset, parity_side, pick_waypoint,
    resolve_hard, separate_pairs,
)
from .world import AGENT_R, FloorLayout

logger = logging.getLogger(__name__)

R = AGENT_R
MAX_SPEED = 1.6
ACCEL = 8.5
DAMP = 0.9
OB_PUSH = 5.2
SLIDE = 2.7
HARD_PUSH = 0.36
HARD_PAD = 0.09
ARRIVE_EPS = R + 0.15
ARRIVAL_R = max(0.15, R * 0.6)
SEP_DIST = R * 2.2
MAX_SEP = 1.5
MAX_REP = 3.0
SERVING_REP_SCALE = 0.2

NO_PROGRESS_TIME = 2.6
MAX_REPLAN = 3
SPOT_GIVEUP = 2.0
PROGRESS_STEP = 0.05
BASE_SERVICE_TIME = 3.0
IDLE_WATCHDOG = 3.0
PARKED_WATCHDOG = 3.0
PARKED_RADIUS = 0.45
TABLE_INFLATE = 0.06
CROWD_INFLATE = 0.02


class StaffPhase(Enum):
    IDLE = "IDLE"
    GO_TO_TABLE = "GO_TO_TABLE"
    SERVING = "SERVING"
    RETURNING = "RETURNING"
    EXITING = "EXITING"
    DESPAWN = "DESPAWN"


@dataclass
class StaffAgent:
    id: int
    pos: List[float]
    vel: List[float]
    phase: StaffPhase
    target: Vec2
    since: float
    table_id: int = -1
    spots: Optional[ServiceSpots] = None
    active_spot: int = 0
    serving_spot: Optional[Vec2] = None
    # replanning
    waypoint: Optional[Vec2] = None
    stuck: float = 0.0
    last_replan: float = 0.0
    replan_attempts: int = 0
    last_dist: Optional[float] = None
    last_progress: Optional[float] = None
    alt_tried: bool = False
    jittered: bool = False
    # watchdogs
    idle_sec: float = 0.0
    at_table_sec: float = 0.0
    # utilization
    total_sec: float = 0.0
    busy_sec: float = 0.0

    def clear_task(self) -> None:
        self.table_id = -1
        self.spots = None
        self.active_spot = 0
        self.serving_spot = None
        self.waypoint = None
        self.stuck = 0.0
        self.replan_attempts = 0
        self.last_dist = None
        self.last_progress = None
        self.alt_tried = False
        self.jittered = False
        self.idle_sec = 0.0
        self.at_table_sec = 0.0

    def snapshot(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "phase": self.phase.value,
            "pos": [round(self.pos[0], 3), round(self.pos[1], 3)],
            "target": [round(self.target[0], 3), round(self.target[1], 3)],
            "serving_spot": list(self.serving_spot) if self.serving_spot else None,
        }


def _dist(a: Sequence[float], b: Sequence[float]) -> float:
    return math.hypot(a[0] - b[0], a[1] - b[1])


class StaffSim:
    """Waiting staff: claim service requests, walk to the table, serve, come back."""

    def __init__(self, layout: FloorLayout, cfg: Config):
        self.layout = layout
        self.cfg = cfg
        self.agents: List[StaffAgent] = []
        self.pending: List[ServiceRequest] = []
        self.now = 0.0
        self.exit_requested = False
        self._next_id = 1
        self._last_snapshot: Optional[Dict[str, Any]] = None
        self._running = True
        self._coef = 1.0
        self._circles: List[Circle] = []
        self._humans: List[Circle] = []
        self._handlers: Dict[StaffPhase, Callable[[StaffAgent, float], None]] = {
            StaffPhase.IDLE: self._on_idle,
            StaffPhase.GO_TO_TABLE: self._navigate,
            StaffPhase.SERVING: self._on_serving,
            StaffPhase.RETURNING: self._navigate,
            StaffPhase.EXITING: self._navigate,
            StaffPhase.DESPAWN: self._on_despawn,
        }

    # ---------- control ----------

    def submit(self, requests: Sequence[ServiceRequest]) -> None:
        if not self._running:
            return
        known = {r.id for r in self.pending}
        self.pending.extend(r for r in requests if r.id not in known)

    def set_running(self, running: bool) -> None:
        """Pausing sends everyone out through the door; resuming starts from an empty pool."""
        if running == self._running:
            return
        self._running = running
        if running:
            self.exit_requested = False
            self.agents = []
            return
        self.exit_requested = True
        self.pending = []
        for a in self.agents:
            if a.phase is not StaffPhase.DESPAWN:
                self._begin_exit(a)

    def _begin_exit(self, a: StaffAgent) -> None:
        a.clear_task()
        a.phase = StaffPhase.EXITING
        a.target = self.layout.staff_exit_target
        a.since = self.now
        a.last_replan = 0.0

    def _to_kitchen(self, a: StaffAgent, phase: StaffPhase) -> None:
        a.clear_task()
        a.phase = phase
        a.target = self.layout.kitchen_point
        a.since = self.now
        a.last_progress = self.now
        a.last_replan = self.now

    def _park_at_kitchen(self, a: StaffAgent) -> None:
        k = self.layout.kitchen_point
        self._to_kitchen(a, StaffPhase.IDLE)
        a.pos = [k[0], k[1]]
        a.vel = [0.0, 0.0]

    def reset_all(self) -> None:
        """Known-good state: everyone idle at the kitchen."""
        for a in self.agents:
            self._park_at_kitchen(a)
            a.last_progress = None
            a.last_replan = 0.0

    def assign(self, a: StaffAgent, req: ServiceRequest) -> None:
        kitchen = self.layout.kitchen_point
        table = self.layout.table(req.table_id)
        spots = service_spots(table, kitchen, R, self.cfg.staff_service_margin) if table else None
        if spots is not None:
            tgt = spots.primary
        elif math.isfinite(req.x) and math.isfinite(req.z):
            tgt = (req.x, req.z)
        else:
            tgt = kitchen
        a.clear_task()
        a.phase = StaffPhase.GO_TO_TABLE
        a.target = tgt
        a.since = self.now
        a.table_id = req.table_id
        a.serving_spot = tgt
        a.spots = spots
        a.last_dist = _dist(tgt, a.pos)
        a.last_progress = self.now
        a.last_replan = self.now

    # ---------- tick ----------

    def step(self, dt: float, coef: float, seated: Sequence[Circle] = (), crowd: Sequence[Circle] = ()) -> None:
        """One frame. A failure inside the tick resets the whole pool instead of propagating."""
        if not self._running and not self.exit_requested:
            return
        try:
            self._tick(dt, coef, seated, crowd)
        except Exception:
            logger.exception(
                "staff update failed, resetting pool (last agent: %s, staff_count=%d, running=%s)",
                self._last_snapshot, self.cfg.staff_count, self._running,
            )
            self.reset_all()

    def _tick(self, dt: float, coef: float, seated: Sequence[Circle], crowd: Sequence[Circle]) -> None:
        self.now += dt
        self._coef = coef
        idle_dt = min(dt, 0.05)

        if self._running:
            self._resize_pool()
            while self.pending:
                idle = next((a for a in self.agents if a.phase is StaffPhase.IDLE), None)
                if idle is None:
                    break
                self.assign(idle, self.pending.pop(0))

        people = list(seated) + list(crowd)
        self._humans = inflate_all(people, CROWD_INFLATE)
        self._circles = inflate_all(self.layout.table_circles(), TABLE_INFLATE) + self._humans

        for a in self.agents:
            if not self._running and a.phase not in (StaffPhase.EXITING, StaffPhase.DESPAWN):
                self._begin_exit(a)
            self._last_snapshot = a.snapshot()

            a.total_sec += dt
            if a.phase not in (StaffPhase.IDLE, StaffPhase.DESPAWN):
                a.busy_sec += dt
            self._watchdogs(a, idle_dt)
            self._handlers[a.phase](a, dt)

        movers = [a for a in self.agents
                  if a.phase in (StaffPhase.GO_TO_TABLE, StaffPhase.RETURNING, StaffPhase.EXITING)
                  and a.pos[1] >= self.layout.agent_inner.min_z]
        if len(movers) > 1 and separate_pairs([a.pos for a in movers], R * 2):
            for a in movers:
                a.pos = self._confine(a, a.pos[0], a.pos[1], a.pos[1])

        self.agents = [a for a in self.agents if a.phase is not StaffPhase.DESPAWN]

    def _resize_pool(self) -> None:
        k = self.layout.kitchen_point
        while len(self.agents) < self.cfg.staff_count:
            a = StaffAgent(
                id=self._next_id, pos=[k[0], k[1]], vel=[0.0, 0.0],
                phase=StaffPhase.IDLE, target=k, since=self.now,
            )
            self._next_id += 1
            self.agents.append(a)
            logger.debug("staff %d spawned at kitchen %s", a.id, k)
        while len(self.agents) > self.cfg.staff_count:
            idx = next((i for i, a in enumerate(self.agents) if a.phase is StaffPhase.IDLE), None)
            if idx is None:
                break
            del self.agents[idx]

    def _watchdogs(self, a: StaffAgent, idle_dt: float) -> None:
        if a.phase in (StaffPhase.EXITING, StaffPhase.DESPAWN):
            a.idle_sec = a.at_table_sec = 0.0
            return
        if a.phase is StaffPhase.IDLE and a.serving_spot is None:
            a.idle_sec += idle_dt
        else:
            a.idle_sec = 0.0
        if a.idle_sec > IDLE_WATCHDOG:
            self._to_kitchen(a, StaffPhase.RETURNING)
            return

        parked = False
        if a.phase is StaffPhase.GO_TO_TABLE and a.serving_spot is not None:
            goal_is_spot = _dist(a.target, a.serving_spot) < 1e-3
            parked = goal_is_spot and _dist(a.pos, a.serving_spot) < PARKED_RADIUS
        a.at_table_sec = a.at_table_sec + idle_dt if parked else 0.0
        if a.at_table_sec >= PARKED_WATCHDOG:
            self._to_kitchen(a, StaffPhase.RETURNING)
            a.vel = [0.0, 0.0]

    # ---------- phase handlers ----------

    def _on_idle(self, a: StaffAgent, dt: float) -> None:
        k = self.layout.kitchen_point
        a.pos = [k[0], k[1]]
        a.vel = [0.0, 0.0]
        a.target = k
        a.table_id = -1
        a.serving_spot = None

    def _on_serving(self, a: StaffAgent, dt: float) -> None:
        if a.serving_spot is not None:
            a.pos = [a.serving_spot[0], a.serving_spot[1]]
        a.vel = [0.0, 0.0]
        if self.now - a.since > BASE_SERVICE_TIME * self._coef:
            self._to_kitchen(a, StaffPhase.RETURNING)

    def _on_despawn(self, a: StaffAgent, dt: float) -> None:
        pass

    def _confine(self, a: StaffAgent, x: float, z: float, prev_z: float) -> List[float]:
        inner = self.layout.agent_inner
        door = self.layout.door
        x = clamp(x, inner.min_x, inner.max_x)
        floor_z = inner.min_z
        if a.phase is StaffPhase.EXITING and (prev_z < inner.min_z or door.in_opening(x)):
            floor_z = self.layout.staff_exit_out_z - 0.5
            if min(z, prev_z) < inner.min_z:
                x = door.clamp_to_opening(x)
        return [x, clamp(z, floor_z, inner.max_z)]

    def _navigate(self, a: StaffAgent, dt: float) -> None:
        cfg = self.cfg
        avoid, rep = cfg.avoidance, cfg.repulsion
        circles = self._circles
        now = self.now
        if a.phase is StaffPhase.EXITING:
            a.target = self.layout.staff_exit_target
        goal = a.target
        x, z = a.pos

        wp = a.waypoint
        need_replan = (
            wp is None
            or _dist(wp, a.pos) < 0.18
            or (a.stuck > 0.8 and now - a.last_replan > 0.35)
        )
        if need_replan:
            wp = pick_waypoint(x, z, goal[0], goal[1], circles)
            a.waypoint = wp
            a.last_replan = now
        tx, tz = wp if wp is not None else goal

        f = Forces()
        dx, dz, dist = f.seek(x, z, tx, tz, MAX_SPEED)
        goal_dist = _dist(goal, a.pos) or EPS
        spot = a.serving_spot
        spot_dist = _dist(spot, a.pos) if spot is not None else goal_dist
        scale = SERVING_REP_SCALE if a.phase is StaffPhase.GO_TO_TABLE and spot_dist < ARRIVAL_R * 1.5 else 1.0

        gx, gz = narrow_gap_repulsion(x, z, circles)
        f.vtx += gx
        f.vtz += gz
        for o in circles:
            rx, rz, dd = offset(x, z, o.x, o.z)
            f.soft(rx, rz, dd, o.r + avoid.staff_obstacle, rep.staff_obstacle, scale)
            r0 = o.r + R + 0.08
            f.contact(rx, rz, dd, r0, r0 + 0.4, OB_PUSH, SLIDE)
        for b in self.agents:
            if b is a or b.phase is StaffPhase.DESPAWN:
                continue
            rx, rz, dd = offset(x, z, b.pos[0], b.pos[1])
            f.separation(rx, rz, dd, SEP_DIST)
            f.soft(rx, rz, dd, avoid.staff_human, rep.staff_human, scale)
            r0 = R * 2 + 0.05
            f.contact(rx, rz, dd, r0, r0 + 0.3, OB_PUSH * 0.8)
        for o in self._humans:
            rx, rz, dd = offset(x, z, o.x, o.z)
            f.separation(rx, rz, dd, SEP_DIST + o.r)
            f.soft(rx, rz, dd, o.r + avoid.staff_human, rep.staff_human, scale)
        f.fold(MAX_SEP, MAX_REP)

        speed = math.hypot(a.vel[0], a.vel[1])
        a.stuck = a.stuck + dt if speed < 0.05 else max(0.0, a.stuck - dt * 0.5)

        if a.last_dist is None:
            a.last_dist = goal_dist
        if a.last_progress is None:
            a.last_progress = now
        if a.last_dist - goal_dist >= PROGRESS_STEP:
            a.last_dist = goal_dist
            a.last_progress = now
            a.replan_attempts = 0

        if a.phase is StaffPhase.GO_TO_TABLE and now - a.last_progress > SPOT_GIVEUP:
            self._try_other_spot(a, goal, dx, dz, dist)

        if a.stuck > 0.9:
            lx, lz = lateral(dx, dz, dist)
            side = parity_side(a.id, "staff")
            f.vtx += lx * 0.9 * side
            f.vtz += lz * 0.9 * side

        nx, nz = integrate(a.pos, a.vel, f, dt, ACCEL, DAMP, MAX_SPEED)
        a.pos = self._confine(a, nx, nz, z)
        resolve_hard(a.pos, a.vel, circles, R, HARD_PAD, overshoot=HARD_PUSH, normal_vel=HARD_PUSH)
        a.pos = self._confine(a, a.pos[0], a.pos[1], z)

        if wp is not None:
            if _dist(wp, a.pos) < 0.2:
                a.waypoint = None
        else:
            self._check_arrival(a)
        if a.phase in (StaffPhase.GO_TO_TABLE, StaffPhase.RETURNING, StaffPhase.EXITING):
            self._replan_ceiling(a)

    def _try_other_spot(self, a: StaffAgent, goal: Vec2, dx: float, dz: float, dist: float) -> None:
        if a.spots is not None and not a.alt_tried:
            a.active_spot = 1 - a.active_spot
            nxt = a.spots.secondary if a.active_spot == 1 else a.spots.primary
            a.target = nxt
            a.serving_spot = nxt
            a.alt_tried = True
        elif not a.jittered:
            lx, lz = lateral(dx, dz, dist)
            side = parity_side(a.id, "spot")
            a.target = (goal[0] + lx * 0.3 * side, goal[1] + lz * 0.3 * side)
            a.jittered = True
        else:
            return
        a.last_progress = self.now
        a.last_dist = _dist(a.target, a.pos)
        a.waypoint = None

    def _check_arrival(self, a: StaffAgent) -> None:
        goal = a.target
        dd = _dist(goal, a.pos)
        spot = a.serving_spot
        spot_dist = _dist(spot, a.pos) if spot is not None else dd
        if a.phase is StaffPhase.GO_TO_TABLE and spot_dist < ARRIVAL_R:
            s = spot if spot is not None else goal
            a.pos = [s[0], s[1]]
            a.vel = [0.0, 0.0]
            a.phase = StaffPhase.SERVING
            a.since = self.now
        elif a.phase is StaffPhase.GO_TO_TABLE and spot is not None and dd < ARRIVE_EPS:
            a.target = spot
            a.waypoint = None
        elif a.phase is StaffPhase.RETURNING and dd < ARRIVE_EPS:
            self._park_at_kitchen(a)
        elif a.phase is StaffPhase.EXITING and (a.pos[1] <= self.layout.staff_exit_out_z or dd < ARRIVE_EPS):
            a.phase = StaffPhase.DESPAWN

    def _replan_ceiling(self, a: StaffAgent) -> None:
        """Bounded replans without progress, then teleport to the goal."""
        if a.last_progress is None or self.now - a.last_progress <= NO_PROGRESS_TIME:
            return
        if a.replan_attempts < MAX_REPLAN:
            a.replan_attempts += 1
            a.waypoint = None
            a.last_progress = self.now
            return
        if a.phase is StaffPhase.EXITING or not self._running:
            ex = self.layout.staff_exit_target
            a.pos = [ex[0], self.layout.staff_exit_out_z]
            a.vel = [0.0, 0.0]
            a.phase = StaffPhase.DESPAWN
            logger.info("staff %d could not reach the exit, removed", a.id)
        else:
            logger.info("staff %d stuck in %s, teleported to kitchen", a.id, a.phase.value)
            self._park_at_kitchen(a)

    # ---------- stats ----------

    def utilization(self) -> float:
        total = sum(a.total_sec for a in self.agents)
        busy = sum(a.busy_sec for a in self.agents)
        return busy / total if total > 1e-6 else 0.0

    def positions(self) -> List[Vec2]:
        return [(a.pos[0], a.pos[1]) for a in self.agents if a.phase is not StaffPhase.DESPAWN]
