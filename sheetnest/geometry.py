from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from functools import cached_property
from typing import List, Sequence, Tuple

import numpy as np
from shapely.geometry import MultiPolygon, Polygon
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union
from shapely.validation import make_valid

from . import kernel
from . import svg_utils
from .errors import ParseError

log = logging.getLogger(__name__)

Point = Tuple[float, float]
BBox = Tuple[float, float, float, float]

MODE_SHAPE = "shape"
MODE_BBOX = "bbox"


@dataclass
class Part:
    id: str
    polygons: List[List[Point]]
    bbox: BBox
    area: float
    source_d: str = ""
    offset: Point = (0.0, 0.0)
    fill: str | None = None
    stroke: str | None = None
    mode: str = MODE_SHAPE
    # SVG transform taking source_d into the coordinates the outline was read in
    source_transform: str = ""

    @property
    def width(self) -> float:
        return self.bbox[2] - self.bbox[0]

    @property
    def height(self) -> float:
        return self.bbox[3] - self.bbox[1]

    @property
    def bbox_area(self) -> float:
        return self.width * self.height

    @cached_property
    def shape(self) -> BaseGeometry:
        return to_shapely(self.polygons)


def _polygonal(geom: BaseGeometry) -> BaseGeometry:
    if isinstance(geom, (Polygon, MultiPolygon)):
        return geom
    polys = [g for g in getattr(geom, "geoms", []) if isinstance(g, (Polygon, MultiPolygon))]
    return unary_union(polys) if polys else Polygon()


def to_shapely(polys: Sequence[Sequence[Point]]) -> BaseGeometry:
    """Even-odd assembly, so nested rings become holes whatever their winding."""
    geom: BaseGeometry = Polygon()
    for ring in polys:
        if len(ring) < 3:
            continue
        poly = Polygon(ring)
        if not poly.is_valid:
            poly = _polygonal(make_valid(poly))
        geom = geom.symmetric_difference(poly) if not geom.is_empty else poly
    return geom


def oriented_rings(polys: Sequence[Sequence[Point]]) -> List[List[Point]]:
    # outer rings counter-clockwise, rings nested at odd depth clockwise
    rings = [list(r) for r in polys if len(r) >= 3]
    shells = [Polygon(r) for r in rings]
    out: List[List[Point]] = []
    for i, ring in enumerate(rings):
        inside_pt = shells[i].representative_point() if shells[i].is_valid else shells[i].centroid
        depth = sum(1 for j, other in enumerate(shells) if j != i and other.contains(inside_pt) and other.area > shells[i].area)
        a = kernel.area(ring)
        hole = depth % 2 == 1
        if (a < 0) != hole:
            ring = ring[::-1]
        out.append(ring)
    return out


def _rdp(pts: np.ndarray, tol: float) -> List[int]:
    if len(pts) < 3:
        return list(range(len(pts)))
    start, end = pts[0], pts[-1]
    seg = end - start
    seg_len = float(np.hypot(seg[0], seg[1]))
    rel = pts[1:-1] - start
    if seg_len < 1e-12:
        dists = np.hypot(rel[:, 0], rel[:, 1])
    else:
        dists = np.abs(rel[:, 0] * seg[1] - rel[:, 1] * seg[0]) / seg_len
    idx = int(np.argmax(dists))
    if dists[idx] <= tol:
        return [0, len(pts) - 1]
    split = idx + 1
    left = _rdp(pts[: split + 1], tol)
    right = _rdp(pts[split:], tol)
    return left[:-1] + [i + split for i in right]


def simplify_rdp(points: Sequence[Point], tol: float) -> List[Point]:
    if tol <= 0 or len(points) < 3:
        return list(points)
    arr = np.asarray(points, dtype=float)
    keep = _rdp(arr, tol)
    return [(float(arr[i][0]), float(arr[i][1])) for i in keep]


def _bbox_of(polys: Sequence[Sequence[Point]]) -> BBox | None:
    return kernel.bounds(polys)


def build_part(
    part_id: str,
    subpaths: Sequence[svg_utils.Subpath],
    mode: str = MODE_SHAPE,
    *,
    source_d: str = "",
    simplify_tol: float = 0.0,
    fill: str | None = None,
    stroke: str | None = None,
    source_transform: str = "",
) -> Part:
    rings = [list(s.points) for s in subpaths if len(s.points) >= 2]
    if mode == MODE_BBOX:
        bb = _bbox_of(rings)
        if bb is None or bb[2] - bb[0] <= 0 or bb[3] - bb[1] <= 0:
            raise ParseError(f"Part {part_id} has no extent")
        w = bb[2] - bb[0]
        h = bb[3] - bb[1]
        box = [(0.0, 0.0), (w, 0.0), (w, h), (0.0, h)]
        return Part(
            part_id, [box], (0.0, 0.0, w, h), w * h, source_d, (bb[0], bb[1]), fill, stroke, MODE_BBOX, source_transform
        )

    if simplify_tol > 0:
        rings = [simplify_rdp(r, simplify_tol) for r in rings]
    cleaned = kernel.clean(kernel.to_int(rings))
    if not cleaned:
        raise ParseError(f"Part {part_id} has no closed outline above the minimum area")
    polys = kernel.to_mm(cleaned)
    minx, miny, maxx, maxy = _bbox_of(polys)
    local = [[(x - minx, y - miny) for x, y in poly] for poly in polys]
    part = Part(
        part_id,
        local,
        (0.0, 0.0, maxx - minx, maxy - miny),
        0.0,
        source_d,
        (minx, miny),
        fill,
        stroke,
        MODE_SHAPE,
        source_transform,
    )
    part.area = float(part.shape.area)
    return part


def part_from_path(
    part_id: str,
    d: str,
    mode: str = MODE_SHAPE,
    *,
    tolerance: float | None = None,
    simplify_tol: float = 0.0,
    strict: bool = False,
) -> Part:
    subpaths = svg_utils.flatten_path(d, tolerance, strict=strict)
    return build_part(part_id, subpaths, mode, source_d=d, simplify_tol=simplify_tol)


def part_from_shape(shape: svg_utils.SvgShape, mode: str = MODE_SHAPE, simplify_tol: float = 0.0) -> Part:
    return build_part(
        shape.id,
        shape.subpaths,
        mode,
        source_d=shape.d,
        simplify_tol=simplify_tol,
        fill=shape.fill,
        stroke=shape.stroke,
        source_transform=shape.transform,
    )


def expand_copies(part: Part, count: int) -> List[Part]:
    return [dataclasses.replace(part, id=f"{part.id}-copy-{i}") for i in range(max(0, int(count)))]


def halo_polygons(part: Part, gap: float) -> List[List[Point]]:
    """Part outline grown by half the gap, holes shrunk by the same amount."""
    if gap <= 0:
        return [list(p) for p in part.polygons]
    res = kernel.offset(kernel.to_int(oriented_rings(part.polygons)), gap / 2.0)
    if not res.ok:
        log.warning("halo for %s falls back to the bare outline", part.id)
    return kernel.to_mm(res.polygons)


def parts_from_svg(
    svg_text: str,
    mode: str = MODE_SHAPE,
    *,
    tolerance: float | None = None,
    simplify_tol: float = 0.0,
) -> Tuple[List[Part], List[str]]:
    imported = svg_utils.parse_svg_parts(svg_text, tolerance)
    parts: List[Part] = []
    errors = list(imported.errors)
    for shape in imported.shapes:
        try:
            parts.append(part_from_shape(shape, mode, simplify_tol))
        except ParseError as exc:
            log.warning("skip %s: %s", shape.id, exc)
            errors.append(f"{shape.id}: {exc}")
    return parts, errors
