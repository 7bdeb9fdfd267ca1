from __future__ import annotations
from dataclasses import dataclass, field, asdict, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Set
import logging
import math

import yaml

logger = logging.getLogger(__name__)

SIDES = ("left", "right", "back", "front")


# ---------- Schema & Defaults ----------

@dataclass
class AvoidanceRadius:
    human_human: float = 0.9
    human_staff: float = 1.0
    human_obstacle: float = 1.1
    staff_human: float = 1.1
    staff_obstacle: float = 1.3


@dataclass
class RepulsionGains:
    human_human: float = 0.8
    human_staff: float = 1.0
    human_obstacle: float = 1.2
    staff_human: float = 1.5
    staff_obstacle: float = 2.0


@dataclass
class Config:
    # room
    width: float = 8.0
    depth: float = 10.0
    height: float = 2.6
    wall_t: float = 0.2
    door_width: float = 1.2
    door_height: float = 2.0
    # furniture / modules
    table4_count: int = 0
    table2_count: int = 0
    kitchen_side: str = "right"
    restroom_side: str = "left"
    # demand
    incoming: float = 0.0
    restroom_prob: float = 0.51
    avg_spend: float = 1500.0
    # staffing
    staff_count: int = 0
    staff_service_margin: float = 0.6
    threshold_tables_per_staff: float = 4.0
    # pricing
    base_price: float = 1500.0
    current_price: float = 1500.0
    price_elasticity: float = -1.0
    # stay
    base_stay_sec: float = 70.0
    time_limit_on: bool = False
    time_cap_sec: float = 90.0
    time_discount_pct: float = 10.0
    # run control, 0 = no limit
    time_limit_sec: float = 0.0
    avoidance: AvoidanceRadius = field(default_factory=AvoidanceRadius)
    repulsion: RepulsionGains = field(default_factory=RepulsionGains)

    @property
    def total_seats(self) -> int:
        return self.table4_count * 4 + self.table2_count * 2

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULT_CONFIG = Config()

_COUNT_FIELDS = ("table4_count", "table2_count", "staff_count")
_SIDE_FIELDS = ("kitchen_side", "restroom_side")
# may legitimately be negative
_SIGNED_FIELDS = ("price_elasticity",)


# ---------- Normalization ----------

def _to_number(v: Any, fallback: float, key: str, issues: Optional[List[str]]) -> float:
    if isinstance(v, bool):
        n = math.nan
    else:
        try:
            n = float(v)
        except (TypeError, ValueError):
            n = math.nan
    if not math.isfinite(n):
        if issues is not None:
            issues.append(key)
        return fallback
    return n


def _non_negative(v: Any, fallback: float, key: str, issues: Optional[List[str]]) -> float:
    return max(0.0, _to_number(v, fallback, key, issues))


def _pick(raw: Any, name: str) -> Any:
    if isinstance(raw, Mapping):
        return raw.get(name)
    return getattr(raw, name, None)


def _normalize_pairs(raw: Any, cls: type, prefix: str, issues: Optional[List[str]]) -> Any:
    default = cls()
    if raw is not None and not isinstance(raw, (Mapping, cls)):
        if issues is not None:
            issues.append(prefix)
        raw = None
    values = {}
    for f in fields(cls):
        v = _pick(raw, f.name)
        fallback = getattr(default, f.name)
        # missing entries are backfilled silently
        values[f.name] = fallback if v is None else _non_negative(v, fallback, f"{prefix}.{f.name}", issues)
    return cls(**values)


def normalize_config(raw: Any, issues: Optional[List[str]] = None) -> Config:
    """
    Return a fully populated Config from a Config, a mapping or garbage.

    Invalid or missing fields fall back to defaults; the offending field
    names are appended to `issues` when given. Normalizing an already
    normalized Config returns an equal value.
    """
    if isinstance(raw, Config) or isinstance(raw, Mapping):
        cfg = raw
    else:
        if raw is not None and issues is not None:
            issues.append("cfg")
        cfg = {}

    d = DEFAULT_CONFIG
    out: Dict[str, Any] = {}
    for f in fields(Config):
        name = f.name
        if name in ("avoidance", "repulsion"):
            continue
        val = _pick(cfg, name)
        present = val is not None
        default = getattr(d, name)
        if name in _SIDE_FIELDS:
            if val in SIDES:
                out[name] = val
            else:
                if present and issues is not None:
                    issues.append(name)
                out[name] = default
        elif name == "time_limit_on":
            if isinstance(val, bool):
                out[name] = val
            else:
                if present and issues is not None:
                    issues.append(name)
                out[name] = default
        elif name in _COUNT_FIELDS:
            out[name] = int(_non_negative(val if present else default, default, name, issues))
        elif name in _SIGNED_FIELDS:
            out[name] = _to_number(val if present else default, default, name, issues)
        elif name == "restroom_prob":
            out[name] = min(1.0, max(0.0, _to_number(val if present else default, default, name, issues)))
        else:
            out[name] = _non_negative(val if present else default, default, name, issues)

    avoidance = _pick(cfg, "avoidance")
    radius = _pick(avoidance, "radius") if isinstance(avoidance, Mapping) else avoidance
    out["avoidance"] = _normalize_pairs(radius, AvoidanceRadius, "avoidance.radius", issues)
    out["repulsion"] = _normalize_pairs(_pick(cfg, "repulsion"), RepulsionGains, "repulsion", issues)
    return Config(**out)


def config_to_mapping(cfg: Config) -> Dict[str, Any]:
    """Nested plain-dict form; `avoidance` keeps the `radius` level of the control surface."""
    data = cfg.to_dict()
    data["avoidance"] = {"radius": data["avoidance"]}
    return data


class FallbackLog:
    """Logs each distinct invalid key once for the lifetime of the instance."""

    def __init__(self) -> None:
        self._seen: Set[str] = set()

    def warn_keys(self, keys: List[str]) -> List[str]:
        fresh = [k for k in dict.fromkeys(keys) if k not in self._seen]
        if fresh:
            self._seen.update(fresh)
            logger.warning("config fallback: %s", ", ".join(fresh))
        return fresh

    def warn_value(self, key: str, value: Any) -> bool:
        if key in self._seen:
            return False
        self._seen.add(key)
        logger.warning("fallback for %s: %r", key, value)
        return True


# ---------- YAML persistence ----------

def load_config(path: Path, fallback_log: FallbackLog | None = None) -> Config:
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)
    issues: List[str] = []
    cfg = normalize_config(raw if raw is not None else {}, issues)
    if issues:
        (fallback_log or FallbackLog()).warn_keys(issues)
    return cfg


def dump_config(cfg: Config, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(config_to_mapping(cfg), f, sort_keys=False, allow_unicode=True)
