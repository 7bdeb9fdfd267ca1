from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging
import math
import time

import numpy as np

from .config import Config, FallbackLog, normalize_config
from .customers import CustomerPhase, CustomerSim
from .geometry import Circle, clamp
from .staff import StaffSim
from .stats import (
    LiveStats, SalesLedger, effective_avg_spend, effective_incoming, load_status, revpash,
    service_coefficient, table_load, turnover,
)
from .timer import RunTimer
from .world import FloorLayout

logger = logging.getLogger(__name__)

MIN_DT = 0.001
MAX_DT = 0.1


@dataclass(frozen=True)
class AgentView:
    kind: str       # "customer" | "staff"
    id: int
    x: float
    z: float
    phase: str
    visible: bool   # customers inside the restroom are hidden


@dataclass(frozen=True)
class StatsView:
    live: LiveStats
    load: float
    load_status: str
    service_coefficient: float
    effective_incoming: float
    avg_spend: float
    sales: float
    turnover: float
    revpash: Optional[float]
    elapsed_sec: float
    remaining_sec: float
    running: bool

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        live = d.pop("live")
        return {**live, **d}


class FloorSimulation:
    """
    Owns the layout, both agent pools and the run clock.

    Outside code drives it through `step(dt)` and the control calls, and
    reads it back only through `agents()` / `stats()` snapshots.
    """

    def __init__(self, cfg: Any = None, seed: Optional[int] = None,
                 clock: Callable[[], float] = time.monotonic, layout: Optional[FloorLayout] = None):
        self.fallbacks = FallbackLog()
        self.cfg = self._normalize(cfg)
        self.layout = layout if layout is not None else FloorLayout(self.cfg)
        self.rng = np.random.default_rng(seed)
        self.customers = CustomerSim(self.layout, self.cfg, self.rng)
        self.staff = StaffSim(self.layout, self.cfg)
        self.timer = RunTimer(self.cfg.time_limit_sec, clock=clock)
        self.sales = SalesLedger()
        self.now = 0.0
        self.running = True
        self._revision = self.layout.revision
        self.customers.set_incoming(effective_incoming(self.cfg, self.fallbacks))

    def _normalize(self, raw: Any) -> Config:
        issues: List[str] = []
        cfg = normalize_config(raw if raw is not None else Config(), issues)
        if issues:
            self.fallbacks.warn_keys(issues)
        return cfg

    # ---------- control ----------

    def update_config(self, raw: Any) -> Config:
        """Normalize and adopt a new config at the control boundary."""
        cfg = self._normalize(raw)
        self.layout.apply_config(cfg)
        self.cfg = cfg
        self.customers.cfg = cfg
        self.staff.cfg = cfg
        self.timer.set_limit(cfg.time_limit_sec)
        self.customers.set_incoming(effective_incoming(cfg, self.fallbacks))
        self._sync_layout()
        return cfg

    def set_running(self, running: bool) -> None:
        if running == self.running:
            return
        self.running = running
        self.staff.set_running(running)
        if running:
            self.timer.start()
        else:
            self.timer.pause()
        logger.info("simulation %s at t=%.2f", "resumed" if running else "paused", self.now)

    def poll_timer(self) -> bool:
        """Periodic countdown check, independent of `step`; pauses on expiry."""
        if self.timer.poll():
            self.set_running(False)
            return True
        return False

    def reset_timer(self) -> None:
        self.timer.reset()

    def _sync_layout(self) -> None:
        if self.layout.revision != self._revision:
            self._revision = self.layout.revision
            self.customers.refresh_anchors(self.layout.seat_anchors())

    # ---------- tick ----------

    def service_coefficient(self) -> float:
        return service_coefficient(
            len(self.customers.table_occ), self.cfg.staff_count,
            self.cfg.threshold_tables_per_staff, self.fallbacks,
        )

    def step(self, dt: float) -> None:
        dt = clamp(dt, MIN_DT, MAX_DT) if math.isfinite(dt) else MIN_DT
        self._sync_layout()
        coef = self.service_coefficient()
        if self.running:
            self.now += dt
            # staff positions are one tick old for the customers
            requests = self.customers.step(dt, coef, self.staff.positions())
            self.staff.submit(requests)
        self.staff.step(dt, coef, self.customers.seated_obstacles(), self.customers.crowd_obstacles())
        self.sales.update(self.customers.departed, effective_avg_spend(self.cfg))

    # ---------- snapshots ----------

    def obstacles(self) -> List[Circle]:
        return self.layout.table_circles() + self.customers.seated_obstacles()

    def agents(self) -> Tuple[AgentView, ...]:
        out: List[AgentView] = []
        for a in self.customers.agents:
            out.append(AgentView("customer", a.id, a.pos[0], a.pos[1], a.phase.value,
                                 a.phase is not CustomerPhase.RESTROOM_USE))
        for s in self.staff.agents:
            out.append(AgentView("staff", s.id, s.pos[0], s.pos[1], s.phase.value, True))
        return tuple(out)

    def stats(self) -> StatsView:
        c = self.customers.counts()
        cfg = self.cfg
        seats = cfg.total_seats
        elapsed = self.timer.elapsed
        live = LiveStats(
            pending=c.pending,
            inside=c.inside,
            seated=c.seated,
            exiting=c.exiting,
            departed=c.departed,
            active_tables=c.active_tables,
            staff_count=len(self.staff.agents),
            staff_utilization=self.staff.utilization(),
        )
        return StatsView(
            live=live,
            load=table_load(c.active_tables, cfg.staff_count),
            load_status=load_status(c.active_tables, cfg.staff_count, cfg.threshold_tables_per_staff),
            service_coefficient=self.service_coefficient(),
            effective_incoming=effective_incoming(cfg, self.fallbacks),
            avg_spend=effective_avg_spend(cfg),
            sales=self.sales.total,
            turnover=turnover(c.departed, seats),
            revpash=revpash(self.sales.total, seats, elapsed),
            elapsed_sec=elapsed,
            remaining_sec=self.timer.remaining,
            running=self.running,
        )
