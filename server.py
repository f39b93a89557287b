from __future__ import annotations

import itertools
import logging
from typing import Any, Dict, List, Tuple

from flask import Flask, jsonify, request

from sheetnest import config
from sheetnest import export_svg
from sheetnest import geometry
from sheetnest import packing
from sheetnest.errors import ConfigError, NestError, ParseError

log = logging.getLogger(__name__)

app = Flask(__name__, static_folder=None)


def _sheet_from(payload: Dict[str, Any]) -> packing.SheetConfig:
    raw = payload.get("sheet") or {}
    try:
        return packing.SheetConfig(
            float(raw.get("width", config.DEFAULT_SHEET_W)),
            float(raw.get("height", config.DEFAULT_SHEET_H)),
            float(raw.get("margin", config.DEFAULT_MARGIN)),
            float(raw.get("gap", config.DEFAULT_GAP)),
            bool(raw.get("allow_rotation", config.ALLOW_ROTATION)),
        ).validate()
    except (TypeError, ValueError):
        raise ConfigError("Sheet parameters must be numbers.") from None


def _parts_from(payload: Dict[str, Any], mode: str) -> Tuple[List[geometry.Part], List[str]]:
    parts: List[geometry.Part] = []
    errors: List[str] = []
    if payload.get("svg"):
        parts, errors = geometry.parts_from_svg(str(payload["svg"]), mode)
    items = list(payload.get("parts") or [])
    if payload.get("part"):
        # single shape requested N times
        items.append(dict(payload["part"], count=payload.get("count", 1)))
    taken = {p.id for p in parts}
    auto = itertools.count(len(parts) + len(errors))
    for item in items:
        part_id = str(item.get("id") or "")
        while not part_id or part_id in taken:
            if item.get("id"):
                raise ConfigError(f"Duplicate part id {part_id!r}.")
            part_id = f"poly-{next(auto)}"
        taken.add(part_id)
        try:
            part = geometry.part_from_path(part_id, str(item.get("d", "")), mode)
        except ParseError as exc:
            log.warning("skip part %s: %s", part_id, exc)
            errors.append(f"{part_id}: {exc}")
            continue
        part.fill = item.get("fill")
        part.stroke = item.get("stroke")
        count = int(item.get("count", 1))
        parts.extend(geometry.expand_copies(part, count) if count > 1 or "count" in item else [part])
    ids = [p.id for p in parts]
    if len(set(ids)) != len(ids):
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        raise ConfigError(f"Duplicate part id {dupes[0]!r}.")
    return parts, errors


def _keep_outs_from(payload: Dict[str, Any]) -> List[packing.KeepOutRect]:
    return [
        packing.KeepOutRect(float(k["x"]), float(k["y"]), float(k["width"]), float(k["height"]))
        for k in payload.get("keep_outs") or []
    ]


def _locked_from(payload: Dict[str, Any], parts: List[geometry.Part]) -> List[packing.LockedPlacement]:
    by_id = {p.id: p for p in parts}
    locked: List[packing.LockedPlacement] = []
    for item in payload.get("locked") or []:
        part = by_id.get(str(item.get("id")))
        if part is None:
            raise ConfigError(f"Locked placement references unknown part {item.get('id')!r}.")
        locked.append(
            packing.LockedPlacement(
                part,
                int(item.get("sheet", 0)),
                float(item["x"]),
                float(item["y"]),
                packing.Rotation(int(item.get("rotation", 0))),
                bool(item.get("mirror", False)),
            )
        )
    return locked


def _run(payload: Dict[str, Any]):
    mode = str(payload.get("mode", config.NEST_MODE)).strip().lower()
    sheet = _sheet_from(payload)
    parts, errors = _parts_from(payload, mode)
    keep_outs = _keep_outs_from(payload)
    result = packing.nest(
        parts,
        sheet,
        mode=mode,
        keep_outs=keep_outs,
        locked=_locked_from(payload, parts),
        strategy=payload.get("strategy", config.NEST_STRATEGY),
        seed=int(payload.get("seed", config.NEST_SEED)),
        allow_mirror=bool(payload.get("allow_mirror", config.ALLOW_MIRROR)),
        timeout=float(payload.get("timeout", config.NEST_TIMEOUT)),
        max_sheets=payload.get("max_sheets", config.MAX_SHEETS),
    )
    return result, sheet, keep_outs, errors


@app.get("/api/health")
def api_health():
    return jsonify({"ok": True})


@app.post("/api/nest")
def api_nest():
    payload: Dict[str, Any] = request.get_json(silent=True) or {}
    try:
        result, _, _, errors = _run(payload)
    except (NestError, KeyError, TypeError, ValueError) as exc:
        return jsonify({"ok": False, "error": str(exc)}), 400
    data = result.to_dict()
    data.update({"ok": True, "errors": errors, "message": export_svg.summary_message(result)})
    return jsonify(data)


@app.post("/api/export")
def api_export():
    payload: Dict[str, Any] = request.get_json(silent=True) or {}
    try:
        result, sheet, keep_outs, errors = _run(payload)
    except (NestError, KeyError, TypeError, ValueError) as exc:
        return jsonify({"ok": False, "error": str(exc)}), 400
    draw = bool(payload.get("draw_bounds", True))
    sheets = [
        {
            "name": export_svg.SHEET_FILE.format(n=i + 1),
            "svg": export_svg.sheet_svg(s, sheet, keep_outs, draw_bounds=draw, draw_keep_outs=draw),
        }
        for i, s in enumerate(result.sheets)
    ]
    return jsonify(
        {
            "ok": True,
            "sheets": sheets,
            "combined": export_svg.combined_svg(result, sheet, keep_outs, draw_bounds=draw, draw_keep_outs=draw),
            "unplaced": [u.part.id for u in result.unplaced],
            "errors": errors,
            "message": export_svg.summary_message(result),
        }
    )


if __name__ == "__main__":
    config.configure_logging()
    config._apply_nest_env()
    app.run(host="127.0.0.1", port=5000, debug=True)
