from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional
import logging
import math

from .config import Config, FallbackLog

logger = logging.getLogger(__name__)

LOAD_K = 0.25
MAX_DISCOUNT_PCT = 30.0
MIN_PRICE_RATIO = 1e-3


@dataclass(frozen=True)
class LiveStats:
    pending: int = 0
    inside: int = 0
    seated: int = 0
    exiting: int = 0
    departed: int = 0
    active_tables: int = 0
    staff_count: int = 0
    staff_utilization: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------- load / service coefficient ----------

def table_load(active_tables: int, staff_count: int) -> float:
    return active_tables / max(1, staff_count)


def service_coefficient(active_tables: int, staff_count: int, threshold: float,
                        fallback_log: Optional[FallbackLog] = None) -> float:
    """1.0 up to the threshold, then +0.25 per table of load above it."""
    load = table_load(active_tables, staff_count)
    raw = 1.0 if load <= threshold else 1.0 + LOAD_K * (load - threshold)
    if not math.isfinite(raw):
        if fallback_log is not None:
            fallback_log.warn_value("service_coefficient", raw)
        return 1.0
    return raw


def load_status(active_tables: int, staff_count: int, threshold: float) -> str:
    load = table_load(active_tables, staff_count)
    if load < threshold * 0.95:
        return "ok"
    if load <= threshold * 1.05:
        return "warn"
    return "bad"


# ---------- pricing ----------

def price_ratio(base_price: float, current_price: float) -> float:
    ratio = current_price / base_price if base_price > 0 and current_price > 0 else 1.0
    return max(MIN_PRICE_RATIO, ratio)


def effective_incoming(cfg: Config, fallback_log: Optional[FallbackLog] = None) -> float:
    """Arrival count scaled by price ratio ** elasticity; non-finite results become 0."""
    try:
        raw = cfg.incoming * math.pow(price_ratio(cfg.base_price, cfg.current_price), cfg.price_elasticity)
    except OverflowError:
        raw = math.inf
    if not math.isfinite(raw):
        if fallback_log is not None:
            fallback_log.warn_value("effective_incoming", raw)
        return 0.0
    return raw


def effective_avg_spend(cfg: Config) -> float:
    if not cfg.time_limit_on:
        return cfg.avg_spend
    discount = min(MAX_DISCOUNT_PCT, max(0.0, cfg.time_discount_pct))
    return cfg.avg_spend * (1 - discount / 100)


def stay_seconds(cfg: Config, coef: float) -> float:
    """Seated duration for a new customer, before the 5 s floor."""
    raw = max(1.0, cfg.base_stay_sec) * coef
    return min(raw, max(0.0, cfg.time_cap_sec)) if cfg.time_limit_on else raw


# ---------- revenue ----------

class SalesLedger:
    """Cumulative sales: every new departure is booked at the spend in force at that moment."""

    def __init__(self) -> None:
        self.total = 0.0
        self._last_departed = 0

    def update(self, departed: int, avg_spend: float) -> float:
        if departed > self._last_departed:
            self.total += (departed - self._last_departed) * avg_spend
            self._last_departed = departed
        return self.total

    def reset(self) -> None:
        self.total = 0.0
        self._last_departed = 0


def turnover(departed: int, total_seats: int) -> float:
    return departed / total_seats if total_seats > 0 else 0.0


def revpash(total_sales: float, total_seats: int, elapsed_sec: float) -> Optional[float]:
    """Revenue per available seat-hour; None until there is a seat and some elapsed time."""
    hours = max(0.0, elapsed_sec) / 3600
    if total_seats > 0 and hours > 1e-6:
        return total_sales / (total_seats * hours)
    return None
