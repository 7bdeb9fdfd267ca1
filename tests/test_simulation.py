from __future__ import annotations

import logging
import math

import pytest

from floorsim.config import config_to_mapping
from floorsim.customers import CustomerPhase
from floorsim.simulation import MAX_DT, MIN_DT, FloorSimulation
from floorsim.staff import StaffPhase
from floorsim.stats import stay_seconds
from floorsim.timer import VirtualClock

DT = 0.05


def _sim(seed: int = 3, clock=None, **cfg) -> FloorSimulation:
    return FloorSimulation({"table4_count": 2, "table2_count": 2, **cfg}, seed=seed,
                           clock=clock or VirtualClock())


def _run(sim: FloorSimulation, seconds: float, clock: VirtualClock = None) -> None:
    for _ in range(int(round(seconds / DT))):
        if clock is not None:
            clock.advance(DT)
        sim.step(DT)


def test_dt_is_clamped() -> None:
    sim = _sim()
    sim.step(5.0)
    assert sim.now == pytest.approx(MAX_DT)
    sim.step(0.0)
    assert sim.now == pytest.approx(MAX_DT + MIN_DT)
    sim.step(math.nan)
    assert sim.now == pytest.approx(MAX_DT + 2 * MIN_DT)


def test_service_coefficient_above_threshold() -> None:
    sim = _sim(staff_count=1, threshold_tables_per_staff=4)
    sim.customers.table_occ = {i: 1 for i in range(6)}
    coef = sim.service_coefficient()
    assert coef == pytest.approx(1.5)
    assert stay_seconds(sim.cfg, coef) == pytest.approx(70 * 1.5)
    assert sim.stats().load_status == "bad"

    sim.update_config({**config_to_mapping(sim.cfg), "time_limit_on": True, "time_cap_sec": 90})
    assert stay_seconds(sim.cfg, sim.service_coefficient()) == pytest.approx(90)


def test_service_coefficient_at_or_below_threshold() -> None:
    sim = _sim(staff_count=2, threshold_tables_per_staff=4)
    sim.customers.table_occ = {i: 2 for i in range(8)}
    assert sim.service_coefficient() == 1.0
    assert sim.stats().load_status == "warn"


def test_pause_freezes_customers_and_sends_staff_out() -> None:
    sim = _sim(staff_count=2, incoming=3)
    _run(sim, 6.0)
    assert len(sim.staff.agents) == 2
    before = {a.id: (tuple(a.pos), a.phase) for a in sim.customers.agents}
    old_staff = {a.id for a in sim.staff.agents}

    sim.set_running(False)
    now = sim.now
    for _ in range(int(30 / DT)):
        sim.step(DT)
        for a in sim.staff.agents:
            assert a.phase in (StaffPhase.EXITING, StaffPhase.DESPAWN)
        if not sim.staff.agents:
            break
    assert sim.staff.agents == []
    assert sim.now == now
    assert {a.id: (tuple(a.pos), a.phase) for a in sim.customers.agents} == before
    assert sim.stats().running is False

    sim.set_running(True)
    sim.step(DT)
    assert len(sim.staff.agents) == 2
    assert not old_staff & {a.id for a in sim.staff.agents}


def test_time_limit_pauses_run() -> None:
    clock = VirtualClock()
    sim = _sim(clock=clock, time_limit_sec=2.7)
    assert sim.timer.limit_sec == 2.0
    hit = None
    for k in range(80):
        clock.advance(DT)
        sim.step(DT)
        if sim.poll_timer():
            hit = k
            break
    assert hit is not None
    assert not sim.running
    assert sim.stats().remaining_sec == 0.0
    assert sim.stats().elapsed_sec == pytest.approx(2.0)
    assert sim.poll_timer() is False

    sim.reset_timer()
    assert sim.timer.elapsed == 0.0


def test_update_config_logs_each_bad_key_once(caplog) -> None:
    caplog.set_level(logging.WARNING)
    sim = _sim()
    for _ in range(3):
        sim.update_config({"staff_count": "many", "incoming": 2})
    msgs = [r.getMessage() for r in caplog.records if "staff_count" in r.getMessage()]
    assert len(msgs) == 1
    assert sim.cfg.staff_count == 0
    assert sim.customers.counts().pending >= 2


def test_update_config_rebuilds_layout_and_staff() -> None:
    sim = _sim(staff_count=1)
    sim.step(DT)
    rev = sim.layout.revision
    sim.update_config({"table4_count": 3, "table2_count": 0, "staff_count": 3})
    assert sim.layout.revision != rev
    assert len(sim.layout.tables) == 3
    assert len(sim.customers.anchors) == 12
    sim.step(DT)
    assert len(sim.staff.agents) == 3


def test_snapshots() -> None:
    sim = _sim(staff_count=1, incoming=2, restroom_prob=0.0)
    _run(sim, 3.0)
    views = sim.agents()
    assert {v.kind for v in views} == {"customer", "staff"}
    assert all(v.visible for v in views)

    sim.customers.agents[0].phase = CustomerPhase.RESTROOM_USE
    hidden = [v for v in sim.agents() if not v.visible]
    assert len(hidden) == 1 and hidden[0].phase == "RESTROOM_USE"

    d = sim.stats().to_dict()
    for key in ("pending", "inside", "seated", "departed", "staff_utilization",
                "load_status", "service_coefficient", "sales", "revpash", "running"):
        assert key in d
    assert "live" not in d
    assert len(sim.obstacles()) >= len(sim.layout.tables)


def test_empty_room_reports_zeroes() -> None:
    d = FloorSimulation(seed=1, clock=VirtualClock()).stats().to_dict()
    assert d["turnover"] == 0.0
    assert d["revpash"] is None
    assert d["load_status"] == "ok"
    assert d["remaining_sec"] == -1.0
