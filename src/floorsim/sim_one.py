# FloorSim: sim_one.py (headless single run)

from __future__ import annotations
from typing import Dict, Any, List, Optional
from pathlib import Path
import logging
import math

from .config import dump_config
from .io_utils import ensure_dir, write_csv, write_json
from .metrics import write_summary
from .simulation import FloorSimulation
from .timer import VirtualClock
from .world_digest import build_world_digest, write_world_digest

logger = logging.getLogger(__name__)

STATS_HEADER = [
    "t", "pending", "inside", "seated", "exiting", "departed", "active_tables",
    "staff_count", "staff_utilization", "service_coefficient", "load_status",
    "sales", "turnover", "revpash", "running",
]
AGENTS_HEADER = ["t", "kind", "id", "x", "z", "phase", "visible"]


def _r(x: Optional[float], nd: int = 4) -> float | str:
    return "" if x is None else round(float(x), nd)


def _stats_row(t: float, sim: FloorSimulation) -> List[float | str]:
    s = sim.stats()
    live = s.live
    return [
        _r(t, 3), live.pending, live.inside, live.seated, live.exiting, live.departed,
        live.active_tables, live.staff_count, _r(live.staff_utilization),
        _r(s.service_coefficient), s.load_status, _r(s.sales, 2), _r(s.turnover),
        _r(s.revpash, 2), int(s.running),
    ]


def run_one(
    cfg: Any,
    out_dir: Path,
    duration_s: float = 120.0,
    dt: float = 0.05,
    seed: Optional[int] = None,
    sample_every_s: float = 1.0,
    log_agents: bool = True,
) -> Dict[str, Any]:
    """
    Drive one simulation headlessly on a virtual clock and write the run folder:
    config.yaml, world.json (+ manifest.json stamp), stats.csv, agents.csv, summary.json.
    """
    ensure_dir(out_dir)
    clock = VirtualClock()
    sim = FloorSimulation(cfg, seed=seed, clock=clock)
    dump_config(sim.cfg, out_dir / "config.yaml")
    write_json(out_dir / "manifest.json", {"seed": seed, "dt": dt, "duration_s": duration_s})
    world_sha = write_world_digest(out_dir, build_world_digest(sim.layout))

    dt = min(max(dt, 0.001), 0.1)
    steps = max(0, int(math.ceil(duration_s / dt)))
    sample_every_s = max(dt, sample_every_s)
    stats_rows: List[List[float | str]] = [_stats_row(0.0, sim)]
    agent_rows: List[List[float | str]] = []
    next_sample = sample_every_s
    peak_seated = 0
    peak_tables = 0
    limit_hit_at: Optional[float] = None

    for k in range(steps):
        clock.advance(dt)
        sim.step(dt)
        t = (k + 1) * dt
        if sim.poll_timer() and limit_hit_at is None:
            limit_hit_at = t
        counts = sim.customers.counts()
        peak_seated = max(peak_seated, counts.seated)
        peak_tables = max(peak_tables, counts.active_tables)
        if t + 1e-9 >= next_sample or k == steps - 1:
            next_sample += sample_every_s
            stats_rows.append(_stats_row(t, sim))
            if log_agents:
                for a in sim.agents():
                    agent_rows.append([_r(t, 3), a.kind, a.id, _r(a.x), _r(a.z), a.phase, int(a.visible)])

    write_csv(out_dir / "stats.csv", STATS_HEADER, stats_rows)
    if log_agents:
        write_csv(out_dir / "agents.csv", AGENTS_HEADER, agent_rows)

    final = sim.stats()
    summary = {
        "seed": seed,
        "steps": steps,
        "sim_time": round(steps * dt, 3),
        "departed": final.live.departed,
        "peak_seated": peak_seated,
        "peak_active_tables": peak_tables,
        "staff_utilization": round(final.live.staff_utilization, 4),
        "sales": round(final.sales, 2),
        "turnover": round(final.turnover, 4),
        "revpash": None if final.revpash is None else round(final.revpash, 2),
        "time_limit_hit_at": limit_hit_at,
        "world_sha256": world_sha,
    }
    write_summary(out_dir, summary)
    logger.info("run finished in %s: departed=%d sales=%.2f", out_dir, summary["departed"], summary["sales"])
    return summary
