from __future__ import annotations

import logging
import math
from typing import List, Tuple

import pytest

from floorsim import staff as staff_mod
from floorsim.config import normalize_config
from floorsim.customers import ServiceRequest
from floorsim.geometry import SIZE_TWO, Circle, Table
from floorsim.simulation import FloorSimulation
from floorsim.staff import IDLE_WATCHDOG, MAX_REPLAN, NO_PROGRESS_TIME, StaffAgent, StaffPhase, StaffSim
from floorsim.timer import VirtualClock
from floorsim.world import FloorLayout

DT = 0.05


def _layout(**overrides) -> FloorLayout:
    cfg = normalize_config({"table2_count": 1, **overrides})
    layout = FloorLayout(cfg)
    layout.set_tables([Table(id=0, x=0.0, z=-2.0, rot_y=0.0, size=SIZE_TWO, cap=2)])
    return layout


def _in_order(seq: List[StaffPhase], wanted: List[StaffPhase]) -> bool:
    it = iter(seq)
    return all(any(p is w for p in it) for w in wanted)


def test_every_phase_has_a_handler() -> None:
    layout = _layout()
    assert set(StaffSim(layout, layout.cfg)._handlers) == set(StaffPhase)


def test_pool_tracks_headcount() -> None:
    layout = _layout(staff_count=3)
    staff = StaffSim(layout, layout.cfg)
    staff.step(DT, 1.0)
    assert len(staff.agents) == 3
    assert all(a.phase is StaffPhase.IDLE for a in staff.agents)
    assert all(tuple(a.pos) == layout.kitchen_point for a in staff.agents)
    staff.cfg = normalize_config({"table2_count": 1, "staff_count": 1})
    staff.step(DT, 1.0)
    assert len(staff.agents) == 1


def test_assignment_targets_the_spot_nearest_the_kitchen() -> None:
    layout = _layout(staff_count=1)
    staff = StaffSim(layout, layout.cfg)
    staff.step(DT, 1.0)
    staff.submit([ServiceRequest(1, 0, 0.0, -2.92)])
    staff.step(DT, 1.0)
    (a,) = staff.agents
    assert a.phase is StaffPhase.GO_TO_TABLE
    assert a.table_id == 0
    assert a.serving_spot == pytest.approx((1.13, -2.0))
    assert staff.pending == []


def test_request_for_missing_table_uses_request_position() -> None:
    layout = _layout(staff_count=1)
    staff = StaffSim(layout, layout.cfg)
    staff.step(DT, 1.0)
    staff.submit([ServiceRequest(1, 42, 2.0, 3.0)])
    staff.step(DT, 1.0)
    assert staff.agents[0].serving_spot == (2.0, 3.0)


def test_scenario_service_cycle() -> None:
    layout = _layout(incoming=1, staff_count=1, restroom_prob=0.0, base_stay_sec=60)
    sim = FloorSimulation(layout.cfg, seed=5, clock=VirtualClock(), layout=layout)
    phases: List[StaffPhase] = []
    seen_serving_at = None
    for _ in range(int(40 / DT)):
        sim.step(DT)
        for a in sim.staff.agents:
            if not phases or phases[-1] is not a.phase:
                phases.append(a.phase)
            if a.phase is StaffPhase.SERVING and seen_serving_at is None:
                seen_serving_at = sim.now
                assert tuple(a.pos) == pytest.approx(a.serving_spot)

    assert sim.customers._next_request == 2
    assert _in_order(phases, [StaffPhase.GO_TO_TABLE, StaffPhase.SERVING,
                              StaffPhase.RETURNING, StaffPhase.IDLE])
    assert seen_serving_at is not None
    assert sim.staff.utilization() > 0
    assert sim.stats().live.staff_count == 1


def test_tick_failure_resets_pool_to_kitchen(monkeypatch, caplog) -> None:
    caplog.set_level(logging.ERROR)
    layout = _layout(staff_count=2)
    staff = StaffSim(layout, layout.cfg)
    staff.step(DT, 1.0)
    staff.submit([ServiceRequest(1, 0, 0.0, -2.92)])

    def boom(*args, **kwargs):
        raise RuntimeError("planner exploded")

    monkeypatch.setattr(staff_mod, "pick_waypoint", boom)
    staff.step(DT, 1.0)
    assert all(a.phase is StaffPhase.IDLE for a in staff.agents)
    assert all(tuple(a.pos) == layout.kitchen_point for a in staff.agents)
    assert any("staff update failed" in r.getMessage() for r in caplog.records)

    monkeypatch.undo()
    staff.step(DT, 1.0)
    assert len(staff.agents) == 2


def test_pause_sends_staff_out_and_resume_rebuilds() -> None:
    layout = _layout(staff_count=2)
    staff = StaffSim(layout, layout.cfg)
    staff.step(DT, 1.0)
    first_ids = {a.id for a in staff.agents}
    staff.submit([ServiceRequest(1, 0, 0.0, -2.92)])
    staff.set_running(False)
    assert staff.pending == []
    assert all(a.phase is StaffPhase.EXITING for a in staff.agents)
    staff.submit([ServiceRequest(2, 0, 0.0, -2.92)])
    assert staff.pending == []

    for _ in range(int(30 / DT)):
        staff.step(DT, 1.0)
        for a in staff.agents:
            assert a.phase in (StaffPhase.EXITING, StaffPhase.DESPAWN)
        if not staff.agents:
            break
    assert staff.agents == []

    staff.set_running(True)
    staff.step(DT, 1.0)
    assert len(staff.agents) == 2
    assert not first_ids & {a.id for a in staff.agents}


def test_staff_stay_inside_while_working() -> None:
    layout = _layout(incoming=2, staff_count=2, base_stay_sec=20)
    sim = FloorSimulation(layout.cfg, seed=9, clock=VirtualClock(), layout=layout)
    inner = layout.agent_inner
    for _ in range(int(30 / DT)):
        sim.step(DT)
        for a in sim.staff.agents:
            if a.phase is StaffPhase.SERVING:
                continue
            assert inner.min_x - 1e-6 <= a.pos[0] <= inner.max_x + 1e-6
            assert inner.min_z - 1e-6 <= a.pos[1] <= inner.max_z + 1e-6
            assert math.isfinite(a.vel[0]) and math.isfinite(a.vel[1])


def _busy_waiter(**overrides) -> Tuple[StaffSim, StaffAgent]:
    """One waiter just dispatched to table 0."""
    layout = _layout(staff_count=1, **overrides)
    staff = StaffSim(layout, layout.cfg)
    staff.step(DT, 1.0)
    staff.submit([ServiceRequest(1, 0, 0.0, -2.92)])
    staff.step(DT, 1.0)
    (a,) = staff.agents
    assert a.phase is StaffPhase.GO_TO_TABLE
    return staff, a


def test_idle_watchdog_sends_staff_home() -> None:
    layout = _layout(staff_count=1)
    staff = StaffSim(layout, layout.cfg)
    staff.step(DT, 1.0)
    (a,) = staff.agents
    a.idle_sec = IDLE_WATCHDOG - 0.01
    staff._watchdogs(a, DT)
    assert a.phase is StaffPhase.RETURNING
    assert a.target == layout.kitchen_point
    assert a.idle_sec == 0.0

    staff.step(DT, 1.0)
    assert a.phase is StaffPhase.IDLE
    assert tuple(a.pos) == layout.kitchen_point


def test_parked_watchdog_recalls_staff_stalled_at_the_spot() -> None:
    staff, a = _busy_waiter()
    # inside the parked radius, outside the arrival radius
    a.pos = [a.serving_spot[0] + 0.2, a.serving_spot[1]]
    fired_after = None
    for k in range(1, 100):
        staff._watchdogs(a, DT)
        if a.phase is not StaffPhase.GO_TO_TABLE:
            fired_after = k
            break
    assert fired_after is not None
    assert fired_after * DT == pytest.approx(3.0, abs=DT + 1e-9)
    assert a.phase is StaffPhase.RETURNING
    assert a.vel == [0.0, 0.0]
    assert a.target == staff.layout.kitchen_point


def test_parked_watchdog_ignores_staff_heading_elsewhere() -> None:
    staff, a = _busy_waiter()
    a.pos = [a.serving_spot[0] + 0.2, a.serving_spot[1]]
    a.target = (a.serving_spot[0], a.serving_spot[1] + 1.0)
    for _ in range(100):
        staff._watchdogs(a, DT)
    assert a.phase is StaffPhase.GO_TO_TABLE
    assert a.at_table_sec == 0.0


def test_blocked_spot_tries_the_other_side_then_one_sidestep() -> None:
    staff, a = _busy_waiter()
    spots = a.spots
    assert a.serving_spot == spots.primary

    staff._try_other_spot(a, a.target, 1.0, 0.0, 1.0)
    assert a.target == spots.secondary
    assert a.serving_spot == spots.secondary
    assert a.waypoint is None

    staff._try_other_spot(a, a.target, 1.0, 0.0, 1.0)
    assert math.dist(a.target, spots.secondary) == pytest.approx(0.3)
    assert a.target[0] == pytest.approx(spots.secondary[0])
    assert a.serving_spot == spots.secondary

    sidestep = a.target
    staff._try_other_spot(a, a.target, 1.0, 0.0, 1.0)
    assert a.target == sidestep


def test_replans_run_out_then_staff_is_parked_in_the_kitchen(caplog) -> None:
    caplog.set_level(logging.INFO, logger="floorsim.staff")
    staff, a = _busy_waiter()
    for attempt in range(1, MAX_REPLAN + 1):
        staff.now += NO_PROGRESS_TIME + 0.1
        staff._replan_ceiling(a)
        assert a.replan_attempts == attempt
        assert a.phase is StaffPhase.GO_TO_TABLE
        assert a.waypoint is None

    staff.now += NO_PROGRESS_TIME + 0.1
    staff._replan_ceiling(a)
    assert a.phase is StaffPhase.IDLE
    assert tuple(a.pos) == staff.layout.kitchen_point
    assert any("teleported to kitchen" in r.getMessage() for r in caplog.records)


def test_replans_run_out_on_the_way_out(caplog) -> None:
    caplog.set_level(logging.INFO, logger="floorsim.staff")
    staff, a = _busy_waiter()
    staff.set_running(False)
    assert a.phase is StaffPhase.EXITING
    a.replan_attempts = MAX_REPLAN
    a.last_progress = staff.now
    staff.now += NO_PROGRESS_TIME + 0.1
    staff._replan_ceiling(a)
    assert a.phase is StaffPhase.DESPAWN
    assert a.pos == [staff.layout.staff_exit_target[0], staff.layout.staff_exit_out_z]
    assert any("could not reach the exit" in r.getMessage() for r in caplog.records)


def test_walled_in_request_ends_with_a_trip_home(caplog) -> None:
    caplog.set_level(logging.INFO, logger="floorsim.staff")
    layout = _layout(staff_count=1)
    staff = StaffSim(layout, layout.cfg)
    staff.step(DT, 1.0)
    gx, gz = -1.5, 2.5
    ring = [Circle(gx + 0.75 * math.cos(k * math.pi / 6), gz + 0.75 * math.sin(k * math.pi / 6), 0.3)
            for k in range(12)]
    staff.submit([ServiceRequest(1, 42, gx, gz)])

    def teleported() -> bool:
        return any("teleported to kitchen" in r.getMessage() for r in caplog.records)

    for _ in range(int(60 / DT)):
        staff.step(DT, 1.0, seated=ring)
        assert staff.agents[0].phase is not StaffPhase.SERVING
        if teleported():
            break
    assert teleported()
    (a,) = staff.agents
    assert a.phase is StaffPhase.IDLE
    assert tuple(a.pos) == layout.kitchen_point
