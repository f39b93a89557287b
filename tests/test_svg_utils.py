from __future__ import annotations

import math

import pytest

from sheetnest import config
from sheetnest.errors import ParseError
from sheetnest.svg_utils import flatten_path, parse_svg_parts, polylines_to_path, transform_matrix


def _points(d, tol=None):
    return [p for s in flatten_path(d, tol) for p in s.points]


def _assert_same(a, b, eps=1e-6):
    assert len(a) == len(b)
    for p, q in zip(a, b):
        assert p[0] == pytest.approx(q[0], abs=eps)
        assert p[1] == pytest.approx(q[1], abs=eps)


def test_straight_path_round_trip():
    d = "M 10 10 L 50 10 L 50 40.5 L 10 40.5 Z M 60 0 L 70 0 L 65 8"
    subs = flatten_path(d)
    out = polylines_to_path(subs)
    assert out == d
    again = flatten_path(out)
    assert [s.closed for s in again] == [True, False]
    _assert_same([p for s in again for p in s.points], [p for s in subs for p in s.points])


def test_relative_commands_accumulate():
    subs = flatten_path("m 10 10 l 20 0 l 0 20 z")
    assert len(subs) == 1
    assert subs[0].closed
    _assert_same(subs[0].points, [(10, 10), (30, 10), (30, 30), (10, 10)])


def test_horizontal_vertical():
    _assert_same(_points("M0 0 H10 V5 h-10 z"), [(0, 0), (10, 0), (10, 5), (0, 5), (0, 0)])


def test_implicit_lineto_after_move():
    subs = flatten_path("M 0 0 10 0 10 10")
    assert len(subs) == 1
    assert not subs[0].closed
    _assert_same(subs[0].points, [(0, 0), (10, 0), (10, 10)])


def test_relative_implicit_lineto_after_move():
    _assert_same(_points("m 5 5 10 0 0 10"), [(5, 5), (15, 5), (15, 15)])


def test_multiple_subpaths_and_trailing_open():
    subs = flatten_path("M0 0 L1 0 L1 1 Z M5 5 L6 5 L6 6")
    assert len(subs) == 2
    assert subs[0].closed
    assert not subs[1].closed
    assert subs[1].points[0] == (5.0, 5.0)


def test_draw_after_close_starts_at_subpath_start():
    subs = flatten_path("M0 0 L10 0 L10 10 Z L 0 10")
    assert len(subs) == 2
    _assert_same(subs[1].points, [(0, 0), (0, 10)])


def test_unknown_command_raises_with_token():
    with pytest.raises(ParseError) as exc:
        flatten_path("M0 0 L 5 5 X 5 5")
    assert exc.value.token == "X"
    assert exc.value.position == 11


def test_malformed_number_is_skipped_by_default():
    _assert_same(_points("M 0 0 L 10 # 0 L 10 10"), [(0, 0), (10, 0), (10, 10)])


def test_malformed_number_raises_in_strict_mode():
    with pytest.raises(ParseError) as exc:
        flatten_path("M 0 0 L 10 # 0", strict=True)
    assert exc.value.token == "#"


def test_wrong_argument_count_drops_incomplete_pair():
    _assert_same(_points("M 0 0 L 10 0 20"), [(0, 0), (10, 0)])
    with pytest.raises(ParseError):
        flatten_path("M 0 0 L 10 0 20", strict=True)


def test_cubic_endpoints_and_tolerance():
    coarse = _points("M0 0 C 0 10 10 10 10 0", 1.0)
    fine = _points("M0 0 C 0 10 10 10 10 0", 0.01)
    assert coarse[0] == (0.0, 0.0)
    assert coarse[-1] == pytest.approx((10.0, 0.0))
    assert len(fine) > len(coarse) > 2
    for x, y in fine:
        assert -1e-9 <= x <= 10 + 1e-9
        assert -1e-9 <= y <= 7.5 + 1e-9


def test_cubic_subdivision_depth_is_bounded():
    pts = _points("M0 0 C 0 1e9 1e9 1e9 1e9 0", 0.01)
    assert len(pts) <= 2 ** config.MAX_SUBDIVISION_DEPTH + 1


def test_smooth_cubic_reflects_previous_control_point():
    a = _points("M0 0 C 0 10 10 10 10 0 S 20 -10 20 0")
    b = _points("M0 0 C 0 10 10 10 10 0 C 10 -10 20 -10 20 0")
    _assert_same(a, b)


def test_smooth_cubic_after_line_uses_current_point():
    a = _points("M0 0 L 10 0 S 20 10 30 0")
    b = _points("M0 0 L 10 0 C 10 0 20 10 30 0")
    _assert_same(a, b)


def test_smooth_cubic_after_quadratic_does_not_reflect():
    a = _points("M0 0 Q 5 10 10 0 S 20 10 30 0")
    b = _points("M0 0 Q 5 10 10 0 C 10 0 20 10 30 0")
    _assert_same(a, b)


def test_smooth_quadratic_reflects():
    a = _points("M0 0 Q 5 10 10 0 T 20 0")
    b = _points("M0 0 Q 5 10 10 0 Q 15 -10 20 0")
    _assert_same(a, b)


def test_smooth_quadratic_after_line_is_straight():
    pts = _points("M0 0 L10 0 T 20 0")
    assert all(abs(y) < 1e-9 for _, y in pts)
    assert pts[-1] == pytest.approx((20.0, 0.0))


def test_arc_points_lie_on_circle():
    pts = _points("M 0 0 A 10 10 0 0 1 20 0", 0.05)
    assert pts[-1] == (20.0, 0.0)
    assert len(pts) >= config.MIN_ARC_SEGMENTS
    for x, y in pts:
        assert math.hypot(x - 10, y) == pytest.approx(10.0, abs=1e-6)
    assert max(abs(y) for _, y in pts) == pytest.approx(10.0, abs=0.05)


def test_arc_radii_are_scaled_up_when_too_small():
    pts = _points("M 0 0 A 1 1 0 0 1 20 0")
    for x, y in pts:
        assert math.hypot(x - 10, y) == pytest.approx(10.0, abs=1e-6)


def test_arc_with_zero_radius_is_a_line():
    _assert_same(_points("M0 0 A 0 5 0 0 1 10 0"), [(0, 0), (10, 0)])


def test_arc_compact_flags():
    a = _points("M0 0 A10 10 0 01 20 0")
    b = _points("M0 0 A 10 10 0 0 1 20 0")
    _assert_same(a, b)


def test_arc_sweep_flag_picks_side():
    up = _points("M 0 0 A 10 10 0 0 0 20 0")
    down = _points("M 0 0 A 10 10 0 0 1 20 0")
    assert sum(y for _, y in up) * sum(y for _, y in down) < 0


SVG_DOC = """<svg xmlns="http://www.w3.org/2000/svg" width="200mm" height="100mm" viewBox="0 0 200 100">
  <defs><path d="M0 0 L 5 0 L 5 5 Z"/></defs>
  <path d="M 10 10 L 30 10 L 30 30 Z" fill="#ff0000"/>
  <g>
    <rect x="40" y="10" width="20" height="10" style="fill:none;stroke:#000"/>
    <circle cx="80" cy="20" r="5"/>
    <path d="M 0 0 X 1 1"/>
    <polygon points="100,10 110,10 105,20"/>
    <ellipse cx="130" cy="20" rx="10" ry="5"/>
  </g>
</svg>"""


def test_parse_svg_parts_reads_all_shape_elements():
    imported = parse_svg_parts(SVG_DOC)
    ids = [s.id for s in imported.shapes]
    assert ids == ["poly-0", "poly-1", "poly-2", "poly-4", "poly-5"]
    assert imported.canvas == (200.0, 100.0)
    assert imported.shapes[0].fill == "#ff0000"
    assert imported.shapes[1].stroke == "#000"
    assert len(imported.shapes[2].subpaths[0].points) == config.ELLIPSE_SEGMENTS + 1
    assert imported.shapes[1].d.startswith("M 40 10")
    assert len(imported.errors) == 1
    assert imported.errors[0].startswith("poly-3")


def test_parse_svg_parts_rejects_invalid_xml():
    with pytest.raises(ParseError):
        parse_svg_parts("<svg><path></svg>")


def _bounds(shape):
    pts = [p for s in shape.subpaths for p in s.points]
    xs = [x for x, _ in pts]
    ys = [y for _, y in pts]
    return (min(xs), min(ys), max(xs), max(ys))


def test_group_scale_is_applied():
    imported = parse_svg_parts(
        '<svg xmlns="http://www.w3.org/2000/svg"><g transform="scale(2)"><rect width="10" height="10"/></g></svg>'
    )
    shape = imported.shapes[0]
    assert _bounds(shape) == pytest.approx((0, 0, 20, 20))
    assert shape.d.startswith("M 0 0")
    assert shape.transform == "matrix(2 0 0 2 0 0)"


def test_nested_translates_accumulate():
    imported = parse_svg_parts(
        '<svg xmlns="http://www.w3.org/2000/svg">'
        '<g transform="translate(100 0)"><g transform="translate(0, 50)">'
        '<path d="M 0 0 L 10 0 L 10 10 Z" transform="translate(5)"/>'
        "</g></g></svg>"
    )
    assert _bounds(imported.shapes[0]) == pytest.approx((105, 50, 115, 60))


def test_untransformed_shapes_carry_no_transform():
    imported = parse_svg_parts(SVG_DOC)
    assert all(s.transform == "" for s in imported.shapes)


def test_transform_list_applies_rightmost_first():
    m = transform_matrix("translate(10 0) scale(2)")
    assert m @ [1, 1, 1] == pytest.approx([12, 2, 1])
    r = transform_matrix("rotate(90 10 10)")
    assert r @ [20, 10, 1] == pytest.approx([10, 20, 1])
    assert transform_matrix("matrix(1 0 0 1 3 4)") @ [0, 0, 1] == pytest.approx([3, 4, 1])
