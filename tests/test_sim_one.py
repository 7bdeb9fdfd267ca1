from __future__ import annotations

import json
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import pytest

from floorsim.batch import run_batch
from floorsim.config import load_config, normalize_config
from floorsim.errors import FloorSimError
from floorsim.io_utils import read_csv_rows, read_json
from floorsim.metrics import aggregate, summarize_run
from floorsim.plot import plot_run
from floorsim.sim_one import AGENTS_HEADER, STATS_HEADER, run_one
from floorsim.world_digest import hash_world_digest


def _cfg():
    return normalize_config({"table4_count": 2, "table2_count": 2, "staff_count": 2,
                             "incoming": 4, "base_stay_sec": 8})


def test_run_one_writes_run_folder(tmp_path: Path) -> None:
    out = tmp_path / "run"
    summary = run_one(_cfg(), out, duration_s=30.0, dt=0.05, seed=11, sample_every_s=1.0)

    for name in ("config.yaml", "manifest.json", "world.json", "stats.csv", "agents.csv", "summary.json"):
        assert (out / name).exists(), name

    assert load_config(out / "config.yaml") == _cfg()
    world = read_json(out / "world.json")
    manifest = read_json(out / "manifest.json")
    assert manifest["seed"] == 11
    assert manifest["world_sha256"] == hash_world_digest(world) == summary["world_sha256"]
    assert world["total_seats"] == 12
    assert len(world["seats"]) == 12

    stats = read_csv_rows(out / "stats.csv")
    assert list(stats[0].keys()) == STATS_HEADER
    assert float(stats[0]["t"]) == 0.0
    assert float(stats[-1]["t"]) == pytest.approx(30.0)
    assert len(stats) == 31
    departed = [int(r["departed"]) for r in stats]
    assert departed == sorted(departed)

    agents = read_csv_rows(out / "agents.csv")
    assert agents and list(agents[0].keys()) == AGENTS_HEADER
    assert {r["kind"] for r in agents} >= {"staff"}

    assert summary["steps"] == 600
    assert summary["departed"] == departed[-1]
    assert summary["sales"] == pytest.approx(summary["departed"] * 1500.0)
    assert json.loads((out / "summary.json").read_text()) == summary


def test_run_one_is_deterministic_for_a_seed(tmp_path: Path) -> None:
    a = run_one(_cfg(), tmp_path / "a", duration_s=10.0, seed=4, log_agents=False)
    b = run_one(_cfg(), tmp_path / "b", duration_s=10.0, seed=4, log_agents=False)
    assert not (tmp_path / "a" / "agents.csv").exists()
    assert (tmp_path / "a" / "stats.csv").read_text() == (tmp_path / "b" / "stats.csv").read_text()
    assert a["world_sha256"] == b["world_sha256"]


def test_run_one_records_time_limit(tmp_path: Path) -> None:
    cfg = normalize_config({"table2_count": 2, "incoming": 1, "time_limit_sec": 3})
    summary = run_one(cfg, tmp_path / "run", duration_s=6.0, seed=1)
    assert summary["time_limit_hit_at"] == pytest.approx(3.0, abs=0.06)
    stats = read_csv_rows(tmp_path / "run" / "stats.csv")
    assert stats[-1]["running"] == "0"


def test_summarize_run(tmp_path: Path) -> None:
    out = tmp_path / "run"
    run_one(_cfg(), out, duration_s=10.0, seed=2)
    s = summarize_run(out)
    assert s["rows"] == 11
    assert s["departed"] == s["summary"]["departed"]
    assert sum(s["load_status_counts"].values()) == 11
    assert any(k.startswith("staff:") for k in s["phase_counts"])

    with pytest.raises(FloorSimError):
        summarize_run(tmp_path / "missing")


def test_plot_run(tmp_path: Path) -> None:
    out = tmp_path / "run"
    run_one(_cfg(), out, duration_s=5.0, seed=2)
    png = plot_run(out)
    assert png == out / "floor.png"
    assert png.stat().st_size > 0

    with pytest.raises(FloorSimError):
        plot_run(tmp_path / "nothing")


def test_batch_and_aggregate(tmp_path: Path) -> None:
    out = tmp_path / "batch"
    summary = run_batch(_cfg(), out, runs=2, master_seed=7, duration_s=5.0)
    assert summary["runs"] == 2
    seeds = read_json(out / "seeds.json")
    assert len(seeds) == 2 and seeds[0] != seeds[1]
    assert (out / "run_0000" / "summary.json").exists()
    assert (out / "run_0001" / "summary.json").exists()
    assert not (out / "run_0000" / "agents.csv").exists()

    index = read_csv_rows(out / "index.csv")
    assert [r["run_id"] for r in index] == ["run_0000", "run_0001"]
    assert [int(r["seed"]) for r in index] == seeds

    agg = aggregate(out)
    assert agg["runs"] == 2
    assert agg["avg_sales"] == pytest.approx(summary["avg_sales"])
    assert aggregate(tmp_path / "empty") == {"runs": 0, "avg_departed": 0.0, "avg_sales": 0.0,
                                              "avg_staff_utilization": 0.0}
