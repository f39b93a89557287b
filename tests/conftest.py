from __future__ import annotations

import math

import pytest

from sheetnest import geometry


def rect_path(w: float, h: float, x: float = 0.0, y: float = 0.0) -> str:
    return f"M {x} {y} L {x + w} {y} L {x + w} {y + h} L {x} {y + h} Z"


def star_path(r_outer: float, r_inner: float, cx: float = 0.0, cy: float = 0.0) -> str:
    pts = []
    for i in range(10):
        r = r_outer if i % 2 == 0 else r_inner
        t = -math.pi / 2 + i * math.pi / 5
        pts.append((cx + r * math.cos(t), cy + r * math.sin(t)))
    return "M " + " L ".join(f"{x:.4f} {y:.4f}" for x, y in pts) + " Z"


@pytest.fixture
def rect_part():
    def _make(part_id: str, w: float, h: float, mode: str = geometry.MODE_SHAPE) -> geometry.Part:
        return geometry.part_from_path(part_id, rect_path(w, h), mode)

    return _make


@pytest.fixture
def star_part():
    def _make(part_id: str = "star", r_outer: float = 25.0, r_inner: float = 10.0) -> geometry.Part:
        return geometry.part_from_path(part_id, star_path(r_outer, r_inner, 50.0, 50.0))

    return _make
