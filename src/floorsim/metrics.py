from __future__ import annotations
from pathlib import Path
from typing import Dict, Any, List
import csv, json

from .errors import FloorSimError

# -------- batch aggregation --------

def _read_index(batch_dir: Path) -> List[Dict[str, Any]]:
	index = batch_dir / "index.csv"
	if not index.exists():
		return []
	out: List[Dict[str, Any]] = []
	with open(index, "r", newline="", encoding="utf-8") as f:
		for row in csv.DictReader(f):
			out.append({
				"run_id": row["run_id"],
				"departed": int(row["departed"]),
				"sales": float(row["sales"]),
				"staff_utilization": float(row["staff_utilization"]),
			})
	return out

def aggregate(batch_dir: Path) -> Dict[str, Any]:
	rows = _read_index(batch_dir)
	if not rows:
		return {"runs": 0, "avg_departed": 0.0, "avg_sales": 0.0, "avg_staff_utilization": 0.0}
	runs = len(rows)
	return {
		"runs": runs,
		"avg_departed": sum(r["departed"] for r in rows) / runs,
		"avg_sales": sum(r["sales"] for r in rows) / runs,
		"avg_staff_utilization": sum(r["staff_utilization"] for r in rows) / runs,
	}

def write_summary(run_dir: Path, summary: Dict[str, Any]) -> None:
	(run_dir / "summary.json").write_text(json.dumps(summary, indent=2), encoding="utf-8")

# -------- single run read-back --------

def _float_col(rows: List[Dict[str, str]], field: str) -> List[float]:
	vals: List[float] = []
	for r in rows:
		v = r.get(field, "")
		if v == "":
			continue
		vals.append(float(v))
	return vals

def summarize_run(run_dir: Path) -> Dict[str, Any]:
	"""Read a run folder back: stats.csv extremes, load-status histogram, agent phase counts."""
	stats_path = run_dir / "stats.csv"
	if not stats_path.exists():
		raise FloorSimError(f"stats.csv not found in {run_dir}")
	with stats_path.open("r", newline="", encoding="utf-8") as f:
		rows = list(csv.DictReader(f))
	out: Dict[str, Any] = {"run": run_dir.name, "rows": len(rows)}
	seated = _float_col(rows, "seated")
	departed = _float_col(rows, "departed")
	util = _float_col(rows, "staff_utilization")
	sales = _float_col(rows, "sales")
	out["peak_seated"] = int(max(seated)) if seated else 0
	out["departed"] = int(departed[-1]) if departed else 0
	out["staff_utilization_mean"] = sum(util) / len(util) if util else 0.0
	out["sales"] = sales[-1] if sales else 0.0
	status: Dict[str, int] = {}
	for r in rows:
		s = (r.get("load_status") or "").strip()
		if s:
			status[s] = status.get(s, 0) + 1
	out["load_status_counts"] = status

	agents_path = run_dir / "agents.csv"
	phases: Dict[str, int] = {}
	if agents_path.exists():
		with agents_path.open("r", newline="", encoding="utf-8") as f:
			for r in csv.DictReader(f):
				key = f"{r.get('kind')}:{r.get('phase')}"
				phases[key] = phases.get(key, 0) + 1
	out["phase_counts"] = phases

	summary_path = run_dir / "summary.json"
	if summary_path.exists():
		out["summary"] = json.loads(summary_path.read_text(encoding="utf-8"))
	return out
