from __future__ import annotations

import logging
import math
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Tuple

import numpy as np

from . import config
from .errors import ParseError

log = logging.getLogger(__name__)

Point = Tuple[float, float]

_COMMANDS = "MmLlHhVvCcSsQqTtAaZz"
_ARITY = {"M": 2, "L": 2, "H": 1, "V": 1, "C": 6, "S": 4, "Q": 4, "T": 2, "A": 7, "Z": 0}
_TOKEN_RE = re.compile(
    r"(?P<num>[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)"
    r"|(?P<cmd>[A-Za-z])"
    r"|(?P<sep>[\s,]+)"
    r"|(?P<bad>.)"
)
_NUM_RE = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_SKIP_CONTAINERS = {"defs", "clipPath", "mask", "symbol", "marker", "pattern"}
_TRANSFORM_RE = re.compile(r"(matrix|translate|scale|rotate|skewX|skewY)\s*\(([^)]*)\)")


@dataclass
class Subpath:
    points: List[Point] = field(default_factory=list)
    closed: bool = False


@dataclass
class SvgShape:
    id: str
    d: str
    subpaths: List[Subpath]
    fill: str | None = None
    stroke: str | None = None
    transform: str = ""


@dataclass
class SvgImport:
    shapes: List[SvgShape]
    errors: List[str]
    canvas: Tuple[float, float] | None = None


def _malformed(message: str, token: str, pos: int, strict: bool) -> None:
    if strict:
        raise ParseError(message, token=token, position=pos)
    log.warning("%s (token %r at %d), skipped", message, token, pos)


def _tokenize(d: str, strict: bool) -> List[Tuple[str, List[str], int]]:
    segments: List[Tuple[str, List[str], int]] = []
    for m in _TOKEN_RE.finditer(d):
        kind = m.lastgroup
        text = m.group()
        if kind == "sep":
            continue
        if kind == "cmd":
            if text not in _COMMANDS:
                raise ParseError(f"Unknown path command {text!r}", token=text, position=m.start())
            segments.append((text, [], m.start()))
        elif kind == "num":
            if not segments:
                _malformed("Number before first command", text, m.start(), strict)
                continue
            segments[-1][1].append(text)
        else:
            _malformed("Malformed numeric token", text, m.start(), strict)
    return segments


def _split_flag(args: List[str], idx: int) -> None:
    # compact arc flags, e.g. "0110" or "10.5"
    tok = args[idx]
    if len(tok) > 1 and tok[0] in "01":
        args[idx] = tok[0]
        args.insert(idx + 1, tok[1:])


def _arc_args(args: List[str]) -> List[str]:
    out = list(args)
    i = 0
    while i + 3 < len(out):
        _split_flag(out, i + 3)
        if i + 4 < len(out):
            _split_flag(out, i + 4)
        i += 7
    return out


def _dist_to_line(p: Point, a: Point, b: Point) -> float:
    dx = b[0] - a[0]
    dy = b[1] - a[1]
    len_sq = dx * dx + dy * dy
    if len_sq < 1e-10:
        return float(np.hypot(p[0] - a[0], p[1] - a[1]))
    return abs((p[0] - a[0]) * dy - (p[1] - a[1]) * dx) / math.sqrt(len_sq)


def flatten_cubic(
    p0: Point, p1: Point, p2: Point, p3: Point, tolerance: float, depth: int = 0
) -> List[Point]:
    """Points after p0 approximating the cubic, within tolerance of the curve."""
    d1 = _dist_to_line(p1, p0, p3)
    d2 = _dist_to_line(p2, p0, p3)
    if depth >= config.MAX_SUBDIVISION_DEPTH or d1 + d2 <= tolerance:
        return [p3]
    p01 = ((p0[0] + p1[0]) / 2, (p0[1] + p1[1]) / 2)
    p12 = ((p1[0] + p2[0]) / 2, (p1[1] + p2[1]) / 2)
    p23 = ((p2[0] + p3[0]) / 2, (p2[1] + p3[1]) / 2)
    p012 = ((p01[0] + p12[0]) / 2, (p01[1] + p12[1]) / 2)
    p123 = ((p12[0] + p23[0]) / 2, (p12[1] + p23[1]) / 2)
    mid = ((p012[0] + p123[0]) / 2, (p012[1] + p123[1]) / 2)
    return flatten_cubic(p0, p01, p012, mid, tolerance, depth + 1) + flatten_cubic(
        mid, p123, p23, p3, tolerance, depth + 1
    )


def flatten_quadratic(p0: Point, p1: Point, p2: Point, tolerance: float) -> List[Point]:
    c1 = (p0[0] + 2.0 / 3.0 * (p1[0] - p0[0]), p0[1] + 2.0 / 3.0 * (p1[1] - p0[1]))
    c2 = (p2[0] + 2.0 / 3.0 * (p1[0] - p2[0]), p2[1] + 2.0 / 3.0 * (p1[1] - p2[1]))
    return flatten_cubic(p0, c1, c2, p2, tolerance)


def _vec_angle(ux: float, uy: float, vx: float, vy: float) -> float:
    return math.atan2(ux * vy - uy * vx, ux * vx + uy * vy)


def flatten_arc(
    p0: Point,
    rx: float,
    ry: float,
    phi_deg: float,
    large_arc: bool,
    sweep: bool,
    p1: Point,
    tolerance: float,
) -> List[Point]:
    x1, y1 = p0
    x2, y2 = p1
    if x1 == x2 and y1 == y2:
        return []
    if rx == 0 or ry == 0:
        return [p1]
    rx = abs(rx)
    ry = abs(ry)
    phi = np.deg2rad(phi_deg)
    cos_phi = math.cos(phi)
    sin_phi = math.sin(phi)
    dx2 = (x1 - x2) / 2.0
    dy2 = (y1 - y2) / 2.0
    x1p = cos_phi * dx2 + sin_phi * dy2
    y1p = -sin_phi * dx2 + cos_phi * dy2

    lam = (x1p * x1p) / (rx * rx) + (y1p * y1p) / (ry * ry)
    if lam > 1:
        s = math.sqrt(lam)
        rx *= s
        ry *= s

    num = rx * rx * ry * ry - rx * rx * y1p * y1p - ry * ry * x1p * x1p
    den = rx * rx * y1p * y1p + ry * ry * x1p * x1p
    coef = math.sqrt(max(0.0, num / den)) if den > 0 else 0.0
    if large_arc == sweep:
        coef = -coef
    cxp = coef * rx * y1p / ry
    cyp = -coef * ry * x1p / rx
    cx = cos_phi * cxp - sin_phi * cyp + (x1 + x2) / 2.0
    cy = sin_phi * cxp + cos_phi * cyp + (y1 + y2) / 2.0

    ux = (x1p - cxp) / rx
    uy = (y1p - cyp) / ry
    vx = (-x1p - cxp) / rx
    vy = (-y1p - cyp) / ry
    theta1 = _vec_angle(1.0, 0.0, ux, uy)
    dtheta = _vec_angle(ux, uy, vx, vy)
    if not sweep and dtheta > 0:
        dtheta -= 2 * math.pi
    elif sweep and dtheta < 0:
        dtheta += 2 * math.pi

    segs = int(math.ceil(abs(dtheta) * max(rx, ry) / tolerance))
    segs = max(config.MIN_ARC_SEGMENTS, min(config.MAX_ARC_SEGMENTS, segs))
    ts = theta1 + dtheta * np.arange(1, segs + 1) / segs
    xs = cos_phi * rx * np.cos(ts) - sin_phi * ry * np.sin(ts) + cx
    ys = sin_phi * rx * np.cos(ts) + cos_phi * ry * np.sin(ts) + cy
    pts = [(float(x), float(y)) for x, y in zip(xs, ys)]
    pts[-1] = (float(x2), float(y2))
    return pts


def _finish(sub: Subpath) -> Subpath | None:
    pts: List[Point] = []
    for p in sub.points:
        if not (math.isfinite(p[0]) and math.isfinite(p[1])):
            return None
        if pts and abs(pts[-1][0] - p[0]) < 1e-9 and abs(pts[-1][1] - p[1]) < 1e-9:
            continue
        pts.append(p)
    if len(pts) < 2:
        return None
    return Subpath(pts, sub.closed)


def flatten_path(d: str, tolerance: float | None = None, strict: bool = False) -> List[Subpath]:
    """Flatten path data into polylines.

    Closed subpaths repeat their first point at the end. Malformed numbers are
    skipped unless ``strict`` is set; an unknown command letter always raises
    ParseError.
    """
    tol = config.clamp_flatness(config.DEFAULT_FLATNESS if tolerance is None else tolerance)
    subpaths: List[Subpath] = []
    cur: Point = (0.0, 0.0)
    start: Point = (0.0, 0.0)
    sub: Subpath | None = None
    last_cmd = ""
    last_ctrl: Point | None = None

    def _emit(pts: Iterable[Point]) -> None:
        nonlocal sub
        if sub is None or sub.closed:
            sub = Subpath([cur])
            subpaths.append(sub)
        sub.points.extend(pts)

    for cmd, raw_args, pos in _tokenize(d, strict):
        upper = cmd.upper()
        rel = cmd.islower()
        arity = _ARITY[upper]
        if upper == "A":
            raw_args = _arc_args(raw_args)
        args = [float(a) for a in raw_args]

        if upper == "Z":
            if args:
                _malformed("Arguments after close command", cmd, pos, strict)
            if sub is not None and sub.points:
                if sub.points[-1] != sub.points[0]:
                    sub.points.append(sub.points[0])
                sub.closed = True
            cur = start
            last_cmd = "Z"
            last_ctrl = None
            continue

        if not args or len(args) % arity:
            _malformed(f"Wrong argument count for {cmd!r}", cmd, pos, strict)
            args = args[: len(args) - len(args) % arity]
            if not args:
                continue

        for i in range(0, len(args), arity):
            a = args[i : i + arity]
            ox, oy = cur if rel else (0.0, 0.0)
            if upper == "M" and i == 0:
                cur = (a[0] + ox, a[1] + oy)
                start = cur
                sub = Subpath([cur])
                subpaths.append(sub)
                last_cmd = "M"
                last_ctrl = None
                continue
            if upper in ("M", "L"):
                nxt = (a[0] + ox, a[1] + oy)
                _emit([nxt])
                cur = nxt
                last_ctrl = None
            elif upper == "H":
                nxt = (a[0] + ox, cur[1])
                _emit([nxt])
                cur = nxt
                last_ctrl = None
            elif upper == "V":
                nxt = (cur[0], a[0] + oy)
                _emit([nxt])
                cur = nxt
                last_ctrl = None
            elif upper in ("C", "S"):
                if upper == "C":
                    c1 = (a[0] + ox, a[1] + oy)
                    c2 = (a[2] + ox, a[3] + oy)
                    end = (a[4] + ox, a[5] + oy)
                else:
                    if last_cmd in ("C", "S") and last_ctrl is not None:
                        c1 = (2 * cur[0] - last_ctrl[0], 2 * cur[1] - last_ctrl[1])
                    else:
                        c1 = cur
                    c2 = (a[0] + ox, a[1] + oy)
                    end = (a[2] + ox, a[3] + oy)
                _emit(flatten_cubic(cur, c1, c2, end, tol))
                cur = end
                last_ctrl = c2
            elif upper in ("Q", "T"):
                if upper == "Q":
                    q = (a[0] + ox, a[1] + oy)
                    end = (a[2] + ox, a[3] + oy)
                else:
                    if last_cmd in ("Q", "T") and last_ctrl is not None:
                        q = (2 * cur[0] - last_ctrl[0], 2 * cur[1] - last_ctrl[1])
                    else:
                        q = cur
                    end = (a[0] + ox, a[1] + oy)
                _emit(flatten_quadratic(cur, q, end, tol))
                cur = end
                last_ctrl = q
            elif upper == "A":
                end = (a[5] + ox, a[6] + oy)
                _emit(flatten_arc(cur, a[0], a[1], a[2], a[3] != 0, a[4] != 0, end, tol))
                cur = end
                last_ctrl = None
            last_cmd = "L" if upper == "M" else upper

    out: List[Subpath] = []
    for s in subpaths:
        done = _finish(s)
        if done is not None:
            out.append(done)
    return out


def _fmt(v: float) -> str:
    s = f"{v:.4f}".rstrip("0").rstrip(".")
    return "0" if s in ("-0", "") else s


def polylines_to_path(subpaths: Iterable[Subpath]) -> str:
    parts: List[str] = []
    for sub in subpaths:
        pts = list(sub.points)
        if sub.closed and len(pts) > 1 and pts[0] == pts[-1]:
            pts = pts[:-1]
        if not pts:
            continue
        d = f"M {_fmt(pts[0][0])} {_fmt(pts[0][1])}"
        if len(pts) > 1:
            d += " L " + " L ".join(f"{_fmt(x)} {_fmt(y)}" for x, y in pts[1:])
        if sub.closed:
            d += " Z"
        parts.append(d)
    return " ".join(parts)


def _parse_length(value: str | None, default: float = 0.0) -> float:
    if not value:
        return default
    m = _NUM_RE.match(value.strip())
    if not m:
        return default
    return float(m.group())


def _parse_points(points_str: str) -> List[Point]:
    nums = [float(n) for n in _NUM_RE.findall(points_str or "")]
    return [(nums[i], nums[i + 1]) for i in range(0, len(nums) - 1, 2)]


def _style_of(el: ET.Element) -> Dict[str, str]:
    style: Dict[str, str] = {}
    for item in el.attrib.get("style", "").split(";"):
        if ":" in item:
            key, val = item.split(":", 1)
            style[key.strip()] = val.strip()
    for key in ("fill", "stroke"):
        if key in el.attrib:
            style[key] = el.attrib[key]
    return style


def _ellipse_points(cx: float, cy: float, rx: float, ry: float) -> List[Point]:
    n = config.ELLIPSE_SEGMENTS
    ts = 2 * np.pi * np.arange(n) / n
    return [(float(cx + rx * np.cos(t)), float(cy + ry * np.sin(t))) for t in ts]


def _closed(pts: List[Point]) -> List[Subpath]:
    if len(pts) < 3:
        return []
    return [Subpath(pts + [pts[0]], True)]


def _parse_transform(transform: str | None) -> List[Tuple[str, List[float]]]:
    ops: List[Tuple[str, List[float]]] = []
    if not transform:
        return ops
    for name, args in _TRANSFORM_RE.findall(transform):
        ops.append((name, [float(v) for v in _NUM_RE.findall(args)]))
    return ops


def _op_matrix(name: str, nums: List[float]) -> np.ndarray:
    if name == "matrix" and len(nums) == 6:
        a, b, c, d, e, f = nums
        return np.array([[a, c, e], [b, d, f], [0, 0, 1]], dtype=np.float64)
    if name == "translate" and nums:
        tx = nums[0]
        ty = nums[1] if len(nums) > 1 else 0.0
        return np.array([[1, 0, tx], [0, 1, ty], [0, 0, 1]], dtype=np.float64)
    if name == "scale" and nums:
        sx = nums[0]
        sy = nums[1] if len(nums) > 1 else sx
        return np.array([[sx, 0, 0], [0, sy, 0], [0, 0, 1]], dtype=np.float64)
    if name == "rotate" and nums:
        t = math.radians(nums[0])
        r = np.array([[math.cos(t), -math.sin(t), 0], [math.sin(t), math.cos(t), 0], [0, 0, 1]], dtype=np.float64)
        if len(nums) == 3:
            cx, cy = nums[1], nums[2]
            return _op_matrix("translate", [cx, cy]) @ r @ _op_matrix("translate", [-cx, -cy])
        return r
    if name == "skewX" and nums:
        return np.array([[1, math.tan(math.radians(nums[0])), 0], [0, 1, 0], [0, 0, 1]], dtype=np.float64)
    if name == "skewY" and nums:
        return np.array([[1, 0, 0], [math.tan(math.radians(nums[0])), 1, 0], [0, 0, 1]], dtype=np.float64)
    log.warning("ignoring malformed transform %s(%s)", name, " ".join(f"{v:g}" for v in nums))
    return np.eye(3, dtype=np.float64)


def transform_matrix(transform: str | None) -> np.ndarray:
    """3x3 matrix of an SVG transform list; the rightmost op applies first."""
    m = np.eye(3, dtype=np.float64)
    for name, nums in _parse_transform(transform):
        m = m @ _op_matrix(name, nums)
    return m


def _is_identity(m: np.ndarray) -> bool:
    return bool(np.allclose(m, np.eye(3), atol=1e-12))


def _matrix_attr(m: np.ndarray) -> str:
    if _is_identity(m):
        return ""
    a, c, e = m[0]
    b, d, f = m[1]
    return "matrix(" + " ".join(_fmt(float(v)) for v in (a, b, c, d, e, f)) + ")"


def _apply_matrix(subs: List[Subpath], m: np.ndarray) -> List[Subpath]:
    if _is_identity(m):
        return subs
    out: List[Subpath] = []
    for sub in subs:
        pts = np.asarray(sub.points, dtype=np.float64).reshape(-1, 2)
        moved = pts @ m[:2, :2].T + m[:2, 2]
        out.append(Subpath([(float(x), float(y)) for x, y in moved], sub.closed))
    return out


def _iter_elements(root: ET.Element, ctm: np.ndarray | None = None) -> Iterable[Tuple[ET.Element, np.ndarray]]:
    """Walk drawable elements with their current transform matrix."""
    parent = np.eye(3, dtype=np.float64) if ctm is None else ctm
    for el in root:
        tag = el.tag.rsplit("}", 1)[-1]
        if tag in _SKIP_CONTAINERS:
            continue
        m = parent @ transform_matrix(el.attrib.get("transform"))
        yield el, m
        yield from _iter_elements(el, m)


def _shape_subpaths(tag: str, el: ET.Element, tolerance: float, strict: bool) -> Tuple[List[Subpath], str]:
    a = el.attrib
    if tag == "path":
        d = a.get("d", "")
        return flatten_path(d, tolerance, strict=strict), d
    if tag == "polygon":
        subs = _closed(_parse_points(a.get("points", "")))
    elif tag == "polyline":
        pts = _parse_points(a.get("points", ""))
        subs = [Subpath(pts, False)] if len(pts) >= 2 else []
    elif tag == "rect":
        x = _parse_length(a.get("x"))
        y = _parse_length(a.get("y"))
        w = _parse_length(a.get("width"))
        h = _parse_length(a.get("height"))
        subs = _closed([(x, y), (x + w, y), (x + w, y + h), (x, y + h)]) if w > 0 and h > 0 else []
    elif tag == "circle":
        r = _parse_length(a.get("r"))
        subs = _closed(_ellipse_points(_parse_length(a.get("cx")), _parse_length(a.get("cy")), r, r)) if r > 0 else []
    elif tag == "ellipse":
        rx = _parse_length(a.get("rx"))
        ry = _parse_length(a.get("ry"))
        subs = (
            _closed(_ellipse_points(_parse_length(a.get("cx")), _parse_length(a.get("cy")), rx, ry))
            if rx > 0 and ry > 0
            else []
        )
    else:
        return [], ""
    return subs, polylines_to_path(subs)


def _get_canvas_size(root: ET.Element) -> Tuple[float, float] | None:
    vb = root.attrib.get("viewBox")
    if vb:
        parts = vb.replace(",", " ").split()
        if len(parts) == 4:
            return (float(parts[2]), float(parts[3]))
    w = _parse_length(root.attrib.get("width"))
    h = _parse_length(root.attrib.get("height"))
    if w > 0 and h > 0:
        return (w, h)
    return None


def parse_svg_parts(svg_text: str, tolerance: float | None = None, strict: bool = False) -> SvgImport:
    """Read outline shapes out of an SVG document, one shape per element.

    Each element's own and inherited ``transform`` is applied to its flattened
    outline; the untouched path data and that transform are kept for export.
    Elements that fail to parse are reported in ``errors`` and the rest of the
    document is still read.
    """
    try:
        root = ET.fromstring(svg_text)
    except ET.ParseError as exc:
        raise ParseError(f"Invalid SVG document: {exc}") from exc
    shapes: List[SvgShape] = []
    errors: List[str] = []
    idx = 0
    for el, ctm in _iter_elements(root):
        tag = el.tag.rsplit("}", 1)[-1]
        if tag not in ("path", "polygon", "polyline", "rect", "circle", "ellipse"):
            continue
        shape_id = f"poly-{idx}"
        idx += 1
        try:
            subs, d = _shape_subpaths(tag, el, tolerance, strict)
        except ParseError as exc:
            log.warning("skip %s <%s>: %s", shape_id, tag, exc)
            errors.append(f"{shape_id}: {exc}")
            continue
        if not subs:
            continue
        style = _style_of(el)
        shapes.append(
            SvgShape(shape_id, d, _apply_matrix(subs, ctm), style.get("fill"), style.get("stroke"), _matrix_attr(ctm))
        )
    return SvgImport(shapes, errors, _get_canvas_size(root))
