from __future__ import annotations

import copy
import math
import re
import xml.etree.ElementTree as ET

import cv2
import pytest

from sheetnest import export_svg
from sheetnest import geometry
from sheetnest import packing
from sheetnest.packing import KeepOutRect, Rotation, SheetConfig
from sheetnest.svg_utils import flatten_path

SVG_NS = "{http://www.w3.org/2000/svg}"
L_SHAPE = "M 100 100 L 130 100 L 130 110 L 110 110 L 110 140 L 100 140 Z"


def _apply(transform, pt):
    x, y = pt
    for name, args in reversed(re.findall(r"(\w+)\(([^)]*)\)", transform)):
        vals = [float(v) for v in args.split()]
        if name == "translate":
            x, y = x + vals[0], y + vals[1]
        elif name == "rotate":
            t = math.radians(vals[0])
            x, y = x * math.cos(t) - y * math.sin(t), x * math.sin(t) + y * math.cos(t)
        elif name == "scale":
            x, y = x * vals[0], y * vals[1]
        elif name == "matrix":
            a, b, c, d, e, f = vals
            x, y = a * x + c * y + e, b * x + d * y + f
    return x, y


@pytest.fixture
def layout():
    sheet = SheetConfig(200, 120, margin=5, gap=2)
    keep_outs = [KeepOutRect(150, 0, 50, 30)]
    parts = geometry.expand_copies(geometry.part_from_path("ell", L_SHAPE), 5)
    result = packing.shape_pack(parts, sheet, keep_outs, strategy="balanced", allow_mirror=True, seed=2)
    return result, sheet, keep_outs


def test_sheet_svg_is_well_formed(layout):
    result, sheet, keep_outs = layout
    doc = export_svg.sheet_svg(result.sheets[0], sheet, keep_outs)
    root = ET.fromstring(doc)
    assert root.attrib["viewBox"] == "0 0 200 120"
    rects = root.findall(f"{SVG_NS}rect")
    assert len(rects) == 3
    paths = root.findall(f".//{SVG_NS}path")
    assert len(paths) == len(result.sheets[0].placements)
    assert all(p.attrib["d"] == L_SHAPE for p in paths)


def test_bounds_and_keep_outs_are_optional(layout):
    result, sheet, keep_outs = layout
    root = ET.fromstring(
        export_svg.sheet_svg(result.sheets[0], sheet, keep_outs, draw_bounds=False, draw_keep_outs=False)
    )
    assert root.findall(f"{SVG_NS}rect") == []


def test_transform_maps_source_outline_onto_placement(layout):
    result, _, _ = layout
    src = [p for s in flatten_path(L_SHAPE) for p in s.points][:-1]
    for pl in result.placements:
        t = export_svg.placement_transform(pl)
        moved = [_apply(t, p) for p in src]
        xs = [x for x, _ in moved]
        ys = [y for _, y in moved]
        want = [p for poly in pl.polygons for p in poly]
        assert (min(xs), min(ys)) == pytest.approx((pl.x, pl.y), abs=1e-3)
        assert (max(xs), max(ys)) == pytest.approx(
            (max(x for x, _ in want), max(y for _, y in want)), abs=1e-3
        )


def test_transform_lists_rotation_and_mirror():
    part = geometry.part_from_path("ell", L_SHAPE)
    pl = packing._make_placement(part, 0, 10, 20, Rotation.DEG_90, True)
    t = export_svg.placement_transform(pl)
    assert "rotate(90)" in t
    assert "scale(-1 1)" in t
    assert t.endswith("translate(-100 -100)")


def test_export_does_not_touch_placements(layout):
    result, sheet, keep_outs = layout
    before = copy.deepcopy([p.to_dict() for p in result.placements])
    export_svg.sheet_svg(result.sheets[0], sheet, keep_outs)
    export_svg.combined_svg(result, sheet, keep_outs)
    assert [p.to_dict() for p in result.placements] == before


def test_combined_svg_stacks_sheets():
    sheet = SheetConfig(100, 100, margin=5, gap=2)
    part = geometry.part_from_path("sq", "M 0 0 L 80 0 L 80 80 L 0 80 Z")
    result = packing.shape_pack(geometry.expand_copies(part, 2), sheet, strategy="fast")
    assert len(result.sheets) == 2
    root = ET.fromstring(export_svg.combined_svg(result, sheet, spacing=10))
    assert root.attrib["viewBox"] == "0 0 100 210"
    groups = root.findall(f"{SVG_NS}g")
    assert [g.attrib["id"] for g in groups] == ["sheet-1", "sheet-2"]
    assert groups[1].attrib["transform"] == "translate(0 110)"


def test_parts_without_source_use_world_polygons():
    sheet = SheetConfig(100, 100)
    part = geometry.build_part("raw", flatten_path("M 0 0 L 10 0 L 10 10 Z"))
    result = packing.shape_pack([part], sheet, strategy="fast")
    doc = export_svg.sheet_svg(result.sheets[0], sheet)
    path = ET.fromstring(doc).find(f".//{SVG_NS}path")
    assert "transform" not in path.attrib
    nums = [float(v) for v in re.findall(r"-?[\d.]+", path.attrib["d"])]
    assert min(nums[0::2]) == pytest.approx(5)
    assert max(nums[0::2]) == pytest.approx(15)


def test_export_sheets_writes_files(tmp_path, layout):
    result, sheet, keep_outs = layout
    written = export_svg.export_sheets(result, sheet, tmp_path, keep_outs, png=True)
    names = sorted(p.name for p in written)
    assert "nesting-shape-sheet-1.svg" in names
    assert "nesting-shape-sheet-1.png" in names
    img = cv2.imread(str(tmp_path / "nesting-shape-sheet-1.png"))
    assert img.shape[:2] == (240, 400)


def test_summary_message(layout):
    result, _, _ = layout
    msg = export_svg.summary_message(result)
    total = result.placed_count + len(result.unplaced)
    if result.unplaced:
        assert msg == f"{len(result.unplaced)} of {total} parts could not be placed."
    else:
        assert msg.startswith(f"All {total} parts placed")
    huge = geometry.part_from_path("huge", "M 0 0 L 900 0 L 900 10 L 0 10 Z")
    partial = packing.shape_pack([huge, geometry.part_from_path("ell", L_SHAPE)], SheetConfig(), strategy="fast")
    assert export_svg.summary_message(partial) == "1 of 2 parts could not be placed."


def test_export_keeps_source_transform():
    svg = (
        '<svg xmlns="http://www.w3.org/2000/svg">'
        '<g transform="translate(40 40) scale(2)"><path d="M 0 0 L 15 0 L 15 10 L 0 10 Z"/></g>'
        "</svg>"
    )
    parts, _ = geometry.parts_from_svg(svg)
    part = parts[0]
    assert (part.width, part.height) == pytest.approx((30, 20))
    result = packing.shape_pack([part], SheetConfig(100, 100), strategy="fast")
    pl = result.placements[0]
    t = export_svg.placement_transform(pl)
    assert t.endswith("matrix(2 0 0 2 40 40)")
    moved = [_apply(t, p) for p in [(0, 0), (15, 10)]]
    assert moved[0] == pytest.approx((pl.x, pl.y), abs=1e-3)
    assert moved[1] == pytest.approx((pl.x + 30, pl.y + 20), abs=1e-3)
