from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np
import pyclipper

from . import config
from .errors import BooleanOpFailure

log = logging.getLogger(__name__)

IntPoint = Tuple[int, int]
IntPolygon = List[IntPoint]
Point = Tuple[float, float]


@dataclass
class KernelResult:
    """Outcome of a boolean op. On failure ``polygons`` is the untouched input."""

    polygons: List[IntPolygon]
    ok: bool = True
    error: BooleanOpFailure | None = None

    def __iter__(self):
        return iter(self.polygons)

    def __len__(self) -> int:
        return len(self.polygons)


def to_int(polys: Sequence[Sequence[Point]]) -> List[IntPolygon]:
    out: List[IntPolygon] = []
    for poly in polys:
        if not all(math.isfinite(x) and math.isfinite(y) for x, y in poly):
            continue
        out.append([(int(round(x * config.UNITS_PER_MM)), int(round(y * config.UNITS_PER_MM))) for x, y in poly])
    return out


def to_mm(polys: Sequence[Sequence[IntPoint]]) -> List[List[Point]]:
    s = float(config.UNITS_PER_MM)
    return [[(x / s, y / s) for x, y in poly] for poly in polys]


def area(poly: Sequence[Tuple[float, float]]) -> float:
    if len(poly) < 3:
        return 0.0
    pts = np.asarray(poly, dtype=float)
    x = pts[:, 0]
    y = pts[:, 1]
    return float(0.5 * (np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1))))


def _from_clipper(paths) -> List[IntPolygon]:
    return [[(int(p[0]), int(p[1])) for p in path] for path in paths]


def _failed(op: str, polys: List[IntPolygon], exc: Exception) -> KernelResult:
    err = BooleanOpFailure(f"{op} failed: {exc}")
    log.warning("kernel %s failed, returning input unchanged: %s", op, exc)
    return KernelResult(polys, ok=False, error=err)


def union(polygon_sets: Sequence[Sequence[IntPolygon]]) -> KernelResult:
    if not polygon_sets:
        return KernelResult([])
    if len(polygon_sets) == 1:
        return KernelResult(list(polygon_sets[0]))
    flat = [list(p) for ps in polygon_sets for p in ps]
    try:
        pc = pyclipper.Pyclipper()
        pc.AddPaths(flat, pyclipper.PT_SUBJECT, True)
        res = pc.Execute(pyclipper.CT_UNION, pyclipper.PFT_NONZERO, pyclipper.PFT_NONZERO)
    except pyclipper.ClipperException as exc:
        return _failed("union", flat, exc)
    return KernelResult(_from_clipper(res))


def offset(polys: Sequence[IntPolygon], delta_mm: float) -> KernelResult:
    polys = list(polys)
    if delta_mm == 0 or not polys:
        return KernelResult(polys)
    try:
        pco = pyclipper.PyclipperOffset()
        pco.MiterLimit = config.MITER_LIMIT
        pco.ArcTolerance = config.ARC_TOLERANCE_U
        pco.AddPaths(polys, pyclipper.JT_ROUND, pyclipper.ET_CLOSEDPOLYGON)
        res = pco.Execute(delta_mm * config.UNITS_PER_MM)
    except pyclipper.ClipperException as exc:
        return _failed("offset", polys, exc)
    return KernelResult(_from_clipper(res))


def difference(a: Sequence[IntPolygon], b: Sequence[IntPolygon]) -> KernelResult:
    a = list(a)
    if not a:
        return KernelResult([])
    if not b:
        return KernelResult(a)
    try:
        pc = pyclipper.Pyclipper()
        pc.AddPaths(a, pyclipper.PT_SUBJECT, True)
        pc.AddPaths(list(b), pyclipper.PT_CLIP, True)
        res = pc.Execute(pyclipper.CT_DIFFERENCE, pyclipper.PFT_NONZERO, pyclipper.PFT_NONZERO)
    except pyclipper.ClipperException as exc:
        return _failed("difference", a, exc)
    return KernelResult(_from_clipper(res))


def _close(p: IntPoint, q: IntPoint) -> bool:
    return float(np.hypot(p[0] - q[0], p[1] - q[1])) < config.CLEAN_DISTANCE_U


def clean(polys: Sequence[IntPolygon]) -> List[IntPolygon]:
    out: List[IntPolygon] = []
    for poly in polys:
        if len(poly) < 3:
            continue
        pts: IntPolygon = []
        for p in poly:
            if pts and _close(pts[-1], p):
                continue
            pts.append((int(p[0]), int(p[1])))
        while len(pts) > 1 and _close(pts[-1], pts[0]):
            pts.pop()
        if len(pts) < 3:
            continue
        a = area(pts)
        if abs(a) < config.MIN_AREA_U2:
            continue
        if a < 0:
            pts.reverse()
        out.append(pts)
    return out


def circle(cx: float, cy: float, r: float, segments: int | None = None) -> IntPolygon:
    n = segments or config.CIRCLE_SEGMENTS
    ts = 2 * np.pi * np.arange(n) / n
    pts = [(cx + r * np.cos(t), cy + r * np.sin(t)) for t in ts]
    return to_int([pts])[0]


def rect(x: float, y: float, w: float, h: float) -> IntPolygon:
    return to_int([[(x, y), (x + w, y), (x + w, y + h), (x, y + h)]])[0]


def capsule(x1: float, y1: float, x2: float, y2: float, r: float, end_segments: int | None = None) -> IntPolygon:
    """Stadium around the segment (x1, y1)-(x2, y2), counter-clockwise."""
    length = float(np.hypot(x2 - x1, y2 - y1))
    if length < 1.0:
        return circle((x1 + x2) / 2, (y1 + y2) / 2, r)
    n = end_segments or config.CAPSULE_END_SEGMENTS
    ang = math.atan2(y2 - y1, x2 - x1)
    pts: List[Point] = []
    # cap around the end point, then around the start point
    for cx, cy, base in ((x2, y2, ang - np.pi / 2), (x1, y1, ang + np.pi / 2)):
        for i in range(n + 1):
            t = base + np.pi * i / n
            pts.append((cx + r * math.cos(t), cy + r * math.sin(t)))
    return to_int([pts])[0]


def bounds(polys: Sequence[Sequence[Tuple[float, float]]]) -> Tuple[float, float, float, float] | None:
    xs = [p[0] for poly in polys for p in poly]
    ys = [p[1] for poly in polys for p in poly]
    if not xs:
        return None
    return (min(xs), min(ys), max(xs), max(ys))


def translate(polys: Sequence[IntPolygon], dx: int, dy: int) -> List[IntPolygon]:
    return [[(x + dx, y + dy) for x, y in poly] for poly in polys]


def to_svg_path(polys: Sequence[IntPolygon]) -> str:
    parts: List[str] = []
    for poly in to_mm(polys):
        if len(poly) < 3:
            continue
        parts.append("M " + " L ".join(f"{x:.3f} {y:.3f}" for x, y in poly) + " Z")
    return " ".join(parts)
