from __future__ import annotations
import json, hashlib
from typing import Dict, Any, List
from pathlib import Path

from .seats import approach_point
from .world import FloorLayout

def _sha256_bytes(b: bytes) -> str:
	h = hashlib.sha256(); h.update(b); return h.hexdigest()

def _round3(x: float) -> float:
	return float(round(x, 3))

def _pt(p) -> List[float]:
	return [_round3(p[0]), _round3(p[1])]

def build_world_digest(layout: FloorLayout) -> Dict[str, Any]:
	"""Stable, rounded description of the floor: room, door, modules, tables, seats, obstacles."""
	cfg = layout.cfg
	inner = layout.agent_inner
	door = layout.door

	tables: List[Dict[str, Any]] = []
	for t in sorted(layout.tables, key=lambda t: t.id):
		tables.append({
			"id": t.id,
			"center": _pt((t.x, t.z)),
			"rot_y": _round3(t.rot_y),
			"size": [_round3(t.size.w), _round3(t.size.d)],
			"cap": t.cap,
			"radius": _round3(t.radius),
		})

	seats: List[Dict[str, Any]] = []
	for s in sorted(layout.seat_anchors(), key=lambda s: s.id):
		seats.append({
			"id": s.id,
			"table_id": s.table_id,
			"pos": _pt(s.pos),
			"dir": _round3(s.dir),
			"approach": _pt(approach_point(s)),
		})

	return {
		"room": {
			"width": _round3(cfg.width), "depth": _round3(cfg.depth),
			"height": _round3(cfg.height), "wall_t": _round3(cfg.wall_t),
			"inner": [_round3(inner.min_x), _round3(inner.min_z), _round3(inner.max_x), _round3(inner.max_z)],
		},
		"door": {
			"left": _round3(layout.door_left), "cx": _round3(door.cx),
			"width": _round3(cfg.door_width), "height": _round3(cfg.door_height),
			"door_wp": _pt(door.door_wp), "foyer_wp": _pt(door.foyer_wp), "exit_wp": _pt(door.exit_wp),
		},
		"kitchen": {"side": cfg.kitchen_side, "pos": _round3(layout.kitchen_pos), "point": _pt(layout.kitchen_point)},
		"restroom": {"side": cfg.restroom_side, "pos": _round3(layout.restroom_pos), "point": _pt(layout.restroom_point)},
		"staff_exit": {"target": _pt(layout.staff_exit_target), "out_z": _round3(layout.staff_exit_out_z)},
		"tables": tables,
		"seats": seats,
		"obstacles": [[_round3(c.x), _round3(c.z), _round3(c.r)] for c in layout.table_circles()],
		"total_seats": cfg.total_seats,
	}

def hash_world_digest(d: Dict[str, Any]) -> str:
	js = json.dumps(d, ensure_ascii=False, sort_keys=True, separators=(",", ":")).encode("utf-8")
	return _sha256_bytes(js)

def write_world_digest(run_dir: Path, digest: Dict[str, Any]) -> str:
	world_path = run_dir / "world.json"
	world_path.write_text(json.dumps(digest, indent=2), encoding="utf-8")
	h = hash_world_digest(digest)
	# Stamp manifest
	man_path = run_dir / "manifest.json"
	man = json.loads(man_path.read_text(encoding="utf-8")) if man_path.exists() else {}
	man["world_sha256"] = h
	man_path.write_text(json.dumps(man, indent=2), encoding="utf-8")
	return h
