from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import DEFAULT_CONFIG, FallbackLog, config_to_mapping, dump_config, load_config, normalize_config
from .errors import FloorSimError
from .io_utils import RUNS_ROOT

logger = logging.getLogger("floorsim")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: Optional[str] = None) -> None:
    name = (level or os.environ.get("FLOORSIM_LOGGING") or "INFO").upper()
    logging.basicConfig(level=getattr(logging, name, logging.INFO), format=LOG_FORMAT)


# ---------- config assembly ----------

_OVERRIDES = {
    "tables4": "table4_count",
    "tables2": "table2_count",
    "staff": "staff_count",
    "incoming": "incoming",
    "restroom_prob": "restroom_prob",
    "base_stay": "base_stay_sec",
    "time_limit": "time_limit_sec",
}


def _build_config(args: argparse.Namespace) -> Any:
    raw: Dict[str, Any] = config_to_mapping(DEFAULT_CONFIG)
    if getattr(args, "config", None):
        raw = config_to_mapping(load_config(Path(args.config)))
    for opt, key in _OVERRIDES.items():
        val = getattr(args, opt, None)
        if val is not None:
            raw[key] = val
    issues: List[str] = []
    cfg = normalize_config(raw, issues)
    if issues:
        FallbackLog().warn_keys(issues)
    return cfg


def _add_config_args(sp: argparse.ArgumentParser) -> None:
    sp.add_argument("--config", type=str, default=None, help="YAML config (see `floorsim config`)")
    sp.add_argument("--tables4", type=int, default=None, help="Number of 4-seat tables")
    sp.add_argument("--tables2", type=int, default=None, help="Number of 2-seat tables")
    sp.add_argument("--staff", type=int, default=None, help="Staff headcount")
    sp.add_argument("--incoming", type=float, default=None, help="Arrivals to queue at start")
    sp.add_argument("--restroom-prob", dest="restroom_prob", type=float, default=None)
    sp.add_argument("--base-stay", dest="base_stay", type=float, default=None, help="Base stay [s]")
    sp.add_argument("--time-limit", dest="time_limit", type=float, default=None,
                    help="Auto-pause after this many seconds (0 = none)")
    sp.add_argument("--duration", type=float, default=120.0, help="Simulated seconds")
    sp.add_argument("--dt", type=float, default=0.05, help="Frame time [s]")


# ---------- commands ----------

def cmd_run_one(args: argparse.Namespace) -> int:
    from .sim_one import run_one
    cfg = _build_config(args)
    out = Path(args.out) if args.out else RUNS_ROOT / "run_one"
    summary = run_one(cfg, out, duration_s=args.duration, dt=args.dt, seed=args.seed,
                      sample_every_s=args.sample_every, log_agents=not args.no_agents)
    print(json.dumps(summary, indent=2))
    return 0


def cmd_batch(args: argparse.Namespace) -> int:
    from .batch import run_batch
    cfg = _build_config(args)
    out = Path(args.out) if args.out else RUNS_ROOT / "batch"
    summary = run_batch(cfg, out, runs=args.runs, master_seed=args.seed,
                        duration_s=args.duration, dt=args.dt)
    print(json.dumps(summary, indent=2))
    return 0


def cmd_summarize(args: argparse.Namespace) -> int:
    from .metrics import aggregate, summarize_run
    for rd in args.run_dirs:
        path = Path(rd)
        if (path / "index.csv").exists():
            s = aggregate(path)
        else:
            s = summarize_run(path)
        print(f"== {path.name} ==")
        print(json.dumps(s, indent=2))
    return 0


def cmd_plot(args: argparse.Namespace) -> int:
    from .plot import plot_run
    out = plot_run(Path(args.run_dir), Path(args.out) if args.out else None)
    print(f"[floorsim] wrote {out}")
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    """Write the defaults, or a normalized copy of an existing file."""
    cfg = load_config(Path(args.source)) if args.source else DEFAULT_CONFIG
    dump_config(cfg, Path(args.out))
    print(f"[floorsim] wrote {args.out}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="floorsim", description="Restaurant floor crowd simulation")
    ap.add_argument("--log-level", type=str, default=None, help="DEBUG, INFO, WARNING (env FLOORSIM_LOGGING)")
    sub = ap.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("run-one", help="Run one headless simulation and write a run folder")
    _add_config_args(sp)
    sp.add_argument("--out", type=str, default=None)
    sp.add_argument("--seed", type=int, default=None)
    sp.add_argument("--sample-every", type=float, default=1.0, help="Seconds between CSV samples")
    sp.add_argument("--no-agents", action="store_true", help="Skip agents.csv")
    sp.set_defaults(func=cmd_run_one)

    sp = sub.add_parser("batch", help="Seeded repetitions of run-one")
    _add_config_args(sp)
    sp.add_argument("--out", type=str, default=None)
    sp.add_argument("--runs", type=int, default=10)
    sp.add_argument("--seed", type=int, default=12345, help="Master seed")
    sp.set_defaults(func=cmd_batch)

    sp = sub.add_parser("summarize", help="Summarize run or batch folders")
    sp.add_argument("run_dirs", nargs="+", type=str)
    sp.set_defaults(func=cmd_summarize)

    sp = sub.add_parser("plot", help="Render floor.png for a run folder")
    sp.add_argument("run_dir", type=str)
    sp.add_argument("--out", type=str, default=None)
    sp.set_defaults(func=cmd_plot)

    sp = sub.add_parser("config", help="Write a config YAML")
    sp.add_argument("--source", type=str, default=None, help="Existing YAML to normalize")
    sp.add_argument("--out", type=str, default="floorsim.yaml")
    sp.set_defaults(func=cmd_config)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)
    try:
        return int(args.func(args))
    except (FloorSimError, OSError) as e:
        logger.error("%s", e)
        print(f"[floorsim] error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
