from __future__ import annotations

import json
import math
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import matplotlib.pyplot as plt
from matplotlib.patches import Circle, Rectangle

from .errors import FloorSimError
from .io_utils import read_csv_rows

PHASE_COLORS = {
    "customer": "tab:blue",
    "staff": "tab:red",
}


# ---------- Helpers ----------

def _load_world(run_dir: Path) -> Dict[str, Any]:
    path = run_dir / "world.json"
    if not path.exists():
        raise FloorSimError(f"world.json not found in {run_dir}")
    return json.loads(path.read_text(encoding="utf-8"))


def _last_frame(rows: List[Dict[str, str]]) -> List[Dict[str, str]]:
    if not rows:
        return []
    t_last = rows[-1]["t"]
    return [r for r in rows if r["t"] == t_last]


def _table_patch(t: Dict[str, Any]) -> Rectangle:
    cx, cz = t["center"]
    w, d = t["size"]
    # rotate about the centre: matplotlib rotates about the anchor corner
    yaw = -t["rot_y"]
    c, s = math.cos(yaw), math.sin(yaw)
    ax = cx - (w / 2 * c - d / 2 * s)
    az = cz - (w / 2 * s + d / 2 * c)
    return Rectangle((ax, az), w, d, angle=math.degrees(yaw),
                     facecolor=(0.55, 0.4, 0.25, 0.8), edgecolor=(0.1, 0.1, 0.1, 0.6))


def draw_floor(ax, world: Dict[str, Any]) -> None:
    room = world["room"]
    w, dpt = room["width"], room["depth"]
    ax.add_patch(Rectangle((-w / 2, -dpt / 2), w, dpt, fill=False, edgecolor="black", linewidth=1.5))
    x0, z0, x1, z1 = room["inner"]
    ax.add_patch(Rectangle((x0, z0), x1 - x0, z1 - z0, fill=False, edgecolor="grey", linestyle=":"))
    door = world["door"]
    ax.plot([door["cx"] - door["width"] / 2, door["cx"] + door["width"] / 2],
            [-dpt / 2, -dpt / 2], color="white", linewidth=4)
    for t in world["tables"]:
        ax.add_patch(_table_patch(t))
    for s in world["seats"]:
        ax.add_patch(Circle(tuple(s["pos"]), radius=0.12, facecolor="none", edgecolor="tab:green"))
    kx, kz = world["kitchen"]["point"]
    rx, rz = world["restroom"]["point"]
    ax.scatter([kx], [kz], marker="s", color="tab:orange", label="kitchen")
    ax.scatter([rx], [rz], marker="^", color="tab:purple", label="restroom")


def draw_agents(ax, frame: List[Dict[str, str]]) -> None:
    for kind, color in PHASE_COLORS.items():
        pts: List[Tuple[float, float]] = [
            (float(r["x"]), float(r["z"])) for r in frame if r["kind"] == kind and r.get("visible") != "0"
        ]
        if pts:
            ax.scatter([p[0] for p in pts], [p[1] for p in pts], s=24, color=color, label=kind, zorder=5)


def plot_run(run_dir: Path, out_path: Optional[Path] = None) -> Path:
    """Floor plan with the last sampled agent positions, plus occupancy and staff series."""
    world = _load_world(run_dir)
    stats = read_csv_rows(run_dir / "stats.csv") if (run_dir / "stats.csv").exists() else []
    agents = read_csv_rows(run_dir / "agents.csv") if (run_dir / "agents.csv").exists() else []

    fig, (ax_floor, ax_ts) = plt.subplots(1, 2, figsize=(12, 6))
    draw_floor(ax_floor, world)
    draw_agents(ax_floor, _last_frame(agents))
    room = world["room"]
    pad = 1.5
    ax_floor.set_xlim(-room["width"] / 2 - 0.5, room["width"] / 2 + 0.5)
    ax_floor.set_ylim(-room["depth"] / 2 - pad, room["depth"] / 2 + 0.5)
    ax_floor.set_aspect("equal")
    ax_floor.set_title("floor")
    ax_floor.legend(loc="upper right", fontsize=8)

    if stats:
        t = [float(r["t"]) for r in stats]
        for key in ("inside", "seated", "departed", "active_tables"):
            ax_ts.plot(t, [float(r[key]) for r in stats], label=key)
        util_ax = ax_ts.twinx()
        util_ax.plot(t, [float(r["staff_utilization"]) for r in stats], color="black", linestyle="--", label="staff util")
        util_ax.set_ylim(0, 1.05)
        util_ax.set_ylabel("staff utilization")
    ax_ts.set_xlabel("t [s]")
    ax_ts.set_title("occupancy")
    ax_ts.legend(loc="upper left", fontsize=8)

    out = out_path if out_path is not None else run_dir / "floor.png"
    fig.tight_layout()
    fig.savefig(out, dpi=120)
    plt.close(fig)
    return out
