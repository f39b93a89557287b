from __future__ import annotations

import logging
from math import ceil
from pathlib import Path
from typing import List, Sequence
from xml.sax.saxutils import escape

import cv2
import numpy as np

from . import config
from .packing import KeepOutRect, NestingResult, Placement, Sheet, SheetConfig

log = logging.getLogger(__name__)

SHEET_FILE = "nesting-shape-sheet-{n}.svg"
SHEET_PNG = "nesting-shape-sheet-{n}.png"
STROKE_COLOR = (160, 160, 160)
KEEP_OUT_BGR = (200, 200, 255)
PART_FILL_BGR = (225, 225, 225)


def _num(v: float) -> str:
    s = f"{v:.3f}".rstrip("0").rstrip(".")
    return "0" if s in ("-0", "") else s


def _attr(v: str) -> str:
    return escape(v, {'"': "&quot;"})


def placement_transform(pl: Placement) -> str:
    """Transform list taking the part's source coordinates to sheet coordinates."""
    a, b, c, d, e, f = pl.matrix
    ops = [f"translate({_num(e)} {_num(f)})"]
    if int(pl.rotation):
        ops.append(f"rotate({int(pl.rotation)})")
    if pl.mirror:
        ops.append("scale(-1 1)")
    ox, oy = pl.part.offset
    if ox or oy:
        ops.append(f"translate({_num(-ox)} {_num(-oy)})")
    if pl.part.source_transform:
        ops.append(pl.part.source_transform)
    return " ".join(ops)


def _world_path(pl: Placement) -> str:
    return " ".join(
        "M " + " L ".join(f"{_num(x)} {_num(y)}" for x, y in poly) + " Z" for poly in pl.polygons if len(poly) >= 3
    )


def _sheet_body(sheet: Sheet, cfg: SheetConfig, keep_outs: Sequence[KeepOutRect], draw_bounds: bool, draw_keep_outs: bool) -> List[str]:
    w, h = cfg.width, cfg.height
    parts: List[str] = []
    if draw_bounds:
        parts.append(
            f'<rect x="0" y="0" width="{_num(w)}" height="{_num(h)}" fill="none" stroke="#999999" stroke-width="0.3"/>'
        )
        if cfg.margin > 0:
            parts.append(
                f'<rect x="{_num(cfg.margin)}" y="{_num(cfg.margin)}" width="{_num(cfg.usable_width)}" '
                f'height="{_num(cfg.usable_height)}" fill="none" stroke="#cccccc" stroke-width="0.2" '
                f'stroke-dasharray="2 2"/>'
            )
    if draw_keep_outs:
        for ko in keep_outs:
            parts.append(
                f'<rect x="{_num(ko.x)}" y="{_num(ko.y)}" width="{_num(ko.width)}" height="{_num(ko.height)}" '
                f'fill="#ff0000" fill-opacity="0.15" stroke="#ff0000" stroke-width="0.3"/>'
            )
    parts.append('<g id="parts">')
    for pl in sheet.placements:
        fill = _attr(pl.part.fill or "none")
        stroke = _attr(pl.part.stroke or "#000000")
        if pl.part.source_d:
            parts.append(
                f'<path d="{_attr(pl.part.source_d)}" transform="{placement_transform(pl)}" '
                f'fill="{fill}" stroke="{stroke}" stroke-width="0.2" data-part-id="{_attr(pl.part_id)}"/>'
            )
        else:
            parts.append(
                f'<path d="{_world_path(pl)}" fill="{fill}" stroke="{stroke}" stroke-width="0.2" '
                f'data-part-id="{_attr(pl.part_id)}"/>'
            )
    parts.append("</g>")
    return parts


def sheet_svg(
    sheet: Sheet,
    cfg: SheetConfig,
    keep_outs: Sequence[KeepOutRect] = (),
    *,
    draw_bounds: bool = True,
    draw_keep_outs: bool = True,
) -> str:
    w, h = cfg.width, cfg.height
    parts = [
        f'<svg xmlns="http://www.w3.org/2000/svg" width="{_num(w)}mm" height="{_num(h)}mm" '
        f'viewBox="0 0 {_num(w)} {_num(h)}">'
    ]
    parts.extend(_sheet_body(sheet, cfg, keep_outs, draw_bounds, draw_keep_outs))
    parts.append("</svg>")
    return "".join(parts)


def combined_svg(
    result: NestingResult,
    cfg: SheetConfig,
    keep_outs: Sequence[KeepOutRect] = (),
    *,
    spacing: float | None = None,
    draw_bounds: bool = True,
    draw_keep_outs: bool = True,
) -> str:
    gap = config.SHEET_SPACING if spacing is None else spacing
    n = max(1, len(result.sheets))
    w = cfg.width
    h = n * cfg.height + (n - 1) * gap
    parts = [
        f'<svg xmlns="http://www.w3.org/2000/svg" width="{_num(w)}mm" height="{_num(h)}mm" '
        f'viewBox="0 0 {_num(w)} {_num(h)}">'
    ]
    for i, sheet in enumerate(result.sheets):
        parts.append(f'<g id="sheet-{i + 1}" transform="translate(0 {_num(i * (cfg.height + gap))})">')
        parts.extend(_sheet_body(sheet, cfg, keep_outs, draw_bounds, draw_keep_outs))
        parts.append("</g>")
    parts.append("</svg>")
    return "".join(parts)


def write_sheet_png(
    sheet: Sheet,
    cfg: SheetConfig,
    out_path: Path,
    keep_outs: Sequence[KeepOutRect] = (),
    scale: float | None = None,
) -> None:
    s = config.DRAW_SCALE if scale is None else scale
    w_px = int(ceil(cfg.width * s))
    h_px = int(ceil(cfg.height * s))
    img = np.full((h_px, w_px, 3), 255, dtype=np.uint8)
    cv2.rectangle(img, (0, 0), (w_px - 1, h_px - 1), STROKE_COLOR, 1)
    for ko in keep_outs:
        x0, y0, x1, y1 = ko.bounds
        cv2.rectangle(img, (int(x0 * s), int(y0 * s)), (int(x1 * s), int(y1 * s)), KEEP_OUT_BGR, -1)
    for pl in sheet.placements:
        rings = [
            np.array([[p[0] * s, p[1] * s] for p in poly], dtype=np.int32) for poly in pl.polygons if len(poly) >= 3
        ]
        if not rings:
            continue
        cv2.fillPoly(img, rings, PART_FILL_BGR)
        cv2.polylines(img, rings, True, (0, 0, 0), 1, cv2.LINE_AA)
    cv2.imwrite(str(out_path), img)


def export_sheets(
    result: NestingResult,
    cfg: SheetConfig,
    out_dir: Path,
    keep_outs: Sequence[KeepOutRect] = (),
    *,
    png: bool = False,
) -> List[Path]:
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    written: List[Path] = []
    for i, sheet in enumerate(result.sheets):
        path = out_dir / SHEET_FILE.format(n=i + 1)
        path.write_text(sheet_svg(sheet, cfg, keep_outs), encoding="utf-8")
        written.append(path)
        if png:
            png_path = out_dir / SHEET_PNG.format(n=i + 1)
            write_sheet_png(sheet, cfg, png_path, keep_outs)
            written.append(png_path)
    log.info("wrote %d file(s) to %s", len(written), out_dir)
    return written


def summary_message(result: NestingResult) -> str:
    total = result.placed_count + len(result.unplaced)
    if result.unplaced:
        msg = f"{len(result.unplaced)} of {total} parts could not be placed."
    else:
        msg = f"All {total} parts placed on {len(result.sheets)} sheet(s)."
    if result.cancelled:
        msg += " The search was cancelled before it finished."
    return msg
