from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from math import ceil, floor, isfinite
from typing import Any, Callable, Dict, Iterable, List, Sequence, Tuple

from rectpack import newPacker
import rectpack
from rectpack import maxrects
from shapely.affinity import affine_transform, translate as _stranslate
from shapely.geometry import box
from shapely.geometry.base import BaseGeometry

from . import config
from . import geometry
from .errors import ConfigError
from .geometry import Part

log = logging.getLogger(__name__)

Point = Tuple[float, float]
Matrix = Tuple[float, float, float, float, float, float]

AREA_EPS = 1e-9
BOUNDS_EPS = 1e-6

REASON_TOO_LARGE = "too_large"
REASON_NO_SPACE = "no_space"
REASON_CANCELLED = "cancelled"


def _log_step(msg: str) -> None:
    log.info(msg)


class Strategy(Enum):
    FAST = "fast"
    BALANCED = "balanced"
    MAX = "max"

    @classmethod
    def parse(cls, value: Any) -> "Strategy":
        if isinstance(value, Strategy):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ConfigError(f"Unknown strategy {value!r}.") from None


class Rotation(IntEnum):
    DEG_0 = 0
    DEG_90 = 90
    DEG_180 = 180
    DEG_270 = 270


_COS_SIN: Dict[Rotation, Tuple[float, float]] = {
    Rotation.DEG_0: (1.0, 0.0),
    Rotation.DEG_90: (0.0, 1.0),
    Rotation.DEG_180: (-1.0, 0.0),
    Rotation.DEG_270: (0.0, -1.0),
}


@dataclass(frozen=True)
class _SearchParams:
    grid_div: int
    random_points: int
    rotations: Tuple[Rotation, ...]
    rectpack_seeds: bool


_SEARCH: Dict[Strategy, _SearchParams] = {
    Strategy.FAST: _SearchParams(4, 0, (Rotation.DEG_0, Rotation.DEG_90), False),
    Strategy.BALANCED: _SearchParams(6, 8, tuple(Rotation), False),
    Strategy.MAX: _SearchParams(10, 24, tuple(Rotation), True),
}
# each strategy also runs the next narrower one and keeps the better layout
_NARROWER: Dict[Strategy, Strategy] = {
    Strategy.BALANCED: Strategy.FAST,
    Strategy.MAX: Strategy.BALANCED,
}


@dataclass
class SheetConfig:
    width: float = config.DEFAULT_SHEET_W
    height: float = config.DEFAULT_SHEET_H
    margin: float = config.DEFAULT_MARGIN
    gap: float = config.DEFAULT_GAP
    allow_rotation: bool = True

    @property
    def usable_width(self) -> float:
        return self.width - 2 * self.margin

    @property
    def usable_height(self) -> float:
        return self.height - 2 * self.margin

    def validate(self) -> "SheetConfig":
        try:
            values = [float(v) for v in (self.width, self.height, self.margin, self.gap)]
        except (TypeError, ValueError):
            raise ConfigError("Sheet parameters must be numbers.") from None
        if not all(isfinite(v) for v in values):
            raise ConfigError("Sheet parameters must be finite numbers.")
        if self.width <= 0 or self.height <= 0:
            raise ConfigError("Sheet size must be greater than zero.")
        if self.margin < 0:
            raise ConfigError("Margin must not be negative.")
        if self.gap < 0:
            raise ConfigError("Gap must not be negative.")
        if self.usable_width <= 0 or self.usable_height <= 0:
            raise ConfigError("Sheet is too small for the given margin.")
        return self


@dataclass
class KeepOutRect:
    x: float
    y: float
    width: float
    height: float

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        return (self.x, self.y, self.x + self.width, self.y + self.height)

    @property
    def geom(self) -> BaseGeometry:
        return box(*self.bounds)


@dataclass
class LockedPlacement:
    part: Part
    sheet_index: int
    x: float
    y: float
    rotation: Rotation = Rotation.DEG_0
    mirror: bool = False


@dataclass
class Placement:
    part: Part
    sheet_index: int
    x: float
    y: float
    width: float
    height: float
    rotation: Rotation = Rotation.DEG_0
    mirror: bool = False
    polygons: List[List[Point]] = field(default_factory=list)
    matrix: Matrix = (1.0, 0.0, 0.0, 1.0, 0.0, 0.0)
    locked: bool = False

    @property
    def part_id(self) -> str:
        return self.part.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.part.id,
            "sheet": self.sheet_index,
            "x": round(self.x, 4),
            "y": round(self.y, 4),
            "width": round(self.width, 4),
            "height": round(self.height, 4),
            "rotation": int(self.rotation),
            "mirror": self.mirror,
            "locked": self.locked,
            "transform": [round(v, 6) for v in self.matrix],
        }


@dataclass
class Sheet:
    index: int
    placements: List[Placement] = field(default_factory=list)


@dataclass
class UnplacedPart:
    part: Part
    reason: str = REASON_NO_SPACE


@dataclass
class NestingResult:
    sheets: List[Sheet] = field(default_factory=list)
    unplaced: List[UnplacedPart] = field(default_factory=list)
    cancelled: bool = False
    strategy: str = ""

    @property
    def placements(self) -> List[Placement]:
        return [p for s in self.sheets for p in s.placements]

    @property
    def placed_count(self) -> int:
        return sum(len(s.placements) for s in self.sheets)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy,
            "cancelled": self.cancelled,
            "placed": self.placed_count,
            "sheets": [
                {"index": s.index, "placements": [p.to_dict() for p in s.placements]} for s in self.sheets
            ],
            "unplaced": [{"id": u.part.id, "reason": u.reason} for u in self.unplaced],
        }


def placement_matrix(rotation: Rotation, mirror: bool, tx: float = 0.0, ty: float = 0.0) -> Matrix:
    """SVG matrix (a b c d e f): mirror x, then rotate, then translate."""
    cos, sin = _COS_SIN[Rotation(rotation)]
    a, b, c, d = cos, sin, -sin, cos
    if mirror:
        a, b = -a, -b
    return (a + 0.0, b + 0.0, c + 0.0, d + 0.0, float(tx), float(ty))


def transform_polys(polys: Iterable[Sequence[Point]], m: Matrix) -> List[List[Point]]:
    a, b, c, d, e, f = m
    return [[(a * x + c * y + e, b * x + d * y + f) for x, y in poly] for poly in polys]


def _oriented_bbox(bbox: Tuple[float, float, float, float], rotation: Rotation, mirror: bool) -> Tuple[float, float, float, float]:
    x0, y0, x1, y1 = bbox
    corners = transform_polys([[(x0, y0), (x1, y0), (x1, y1), (x0, y1)]], placement_matrix(rotation, mirror))[0]
    xs = [p[0] for p in corners]
    ys = [p[1] for p in corners]
    return (min(xs), min(ys), max(xs), max(ys))


def _make_placement(
    part: Part,
    sheet_index: int,
    x: float,
    y: float,
    rotation: Rotation,
    mirror: bool,
    locked: bool = False,
) -> Placement:
    ox0, oy0, ox1, oy1 = _oriented_bbox(part.bbox, rotation, mirror)
    m = placement_matrix(rotation, mirror, x - ox0, y - oy0)
    return Placement(
        part,
        sheet_index,
        float(x),
        float(y),
        ox1 - ox0,
        oy1 - oy0,
        Rotation(rotation),
        bool(mirror),
        transform_polys(part.polygons, m),
        m,
        locked,
    )


def _bbox_overlap(a: Tuple[float, ...], b: Tuple[float, ...]) -> bool:
    return a[0] < b[2] and b[0] < a[2] and a[1] < b[3] and b[1] < a[3]


def _unlocked(parts: Sequence[Part], locked: Sequence[LockedPlacement]) -> List[Part]:
    """Parts left to place: each lock consumes exactly one matching input part."""
    pending = [lp.part for lp in locked]
    out: List[Part] = []
    for part in parts:
        hit = next((i for i, q in enumerate(pending) if q is part), None)
        if hit is None:
            out.append(part)
        else:
            pending.pop(hit)
    # locks built from a separate Part object fall back to the first free id match
    for lock_part in pending:
        hit = next((i for i, p in enumerate(out) if p.id == lock_part.id), None)
        if hit is not None:
            out.pop(hit)
    return out


def _sheet_limit(max_sheets: Any) -> int:
    if max_sheets is None:
        return config.MAX_SHEETS
    try:
        limit = int(max_sheets)
    except (TypeError, ValueError):
        raise ConfigError("max_sheets must be a whole number.") from None
    if limit < 0:
        raise ConfigError("max_sheets must not be negative.")
    return limit


# shelf packer

@dataclass(frozen=True)
class ShelfCursor:
    x: float
    y: float
    row_height: float = 0.0

    @classmethod
    def start(cls, sheet: SheetConfig) -> "ShelfCursor":
        return cls(sheet.margin, sheet.margin)


def _shelf_orientations(part: Part, allow_rotation: bool) -> List[Tuple[Rotation, float, float]]:
    rotations = list(Rotation) if allow_rotation else [Rotation.DEG_0]
    out = []
    for rot in rotations:
        x0, y0, x1, y1 = _oriented_bbox(part.bbox, rot, False)
        out.append((rot, x1 - x0, y1 - y0))
    return out


def _fits_empty(sizes: Iterable[Tuple[float, float]], sheet: SheetConfig) -> bool:
    return any(
        w <= sheet.usable_width + BOUNDS_EPS and h <= sheet.usable_height + BOUNDS_EPS for w, h in sizes
    )


def shelf_choose(
    cursor: ShelfCursor, options: Sequence[Tuple[Rotation, float, float]], sheet: SheetConfig
) -> Tuple[Rotation, float, float] | None:
    """Orientation that fits at the cursor and leaves the most row width."""
    right = sheet.width - sheet.margin
    bottom = sheet.height - sheet.margin
    best = None
    best_left = -1.0
    for rot, w, h in options:
        if cursor.x + w > right + BOUNDS_EPS or cursor.y + h > bottom + BOUNDS_EPS:
            continue
        left = right - (cursor.x + w)
        if best is None or left > best_left + BOUNDS_EPS:
            best = (rot, w, h)
            best_left = left
    return best


def shelf_advance(cursor: ShelfCursor, sheet: SheetConfig) -> ShelfCursor:
    return ShelfCursor(sheet.margin, cursor.y + cursor.row_height + sheet.gap)


def shelf_commit(cursor: ShelfCursor, w: float, h: float, sheet: SheetConfig) -> ShelfCursor:
    return ShelfCursor(cursor.x + w + sheet.gap, cursor.y, max(cursor.row_height, h))


def shelf_pack(parts: Sequence[Part], sheet: SheetConfig, *, max_sheets: int | None = None) -> NestingResult:
    sheet.validate()
    limit = _sheet_limit(max_sheets)
    ordered = sorted(parts, key=lambda p: p.bbox_area, reverse=True)
    sheets: List[Sheet] = []
    unplaced: List[UnplacedPart] = []
    cursor = ShelfCursor.start(sheet)
    _log_step(f"shelf pack: {len(ordered)} parts, sheet {sheet.width:g}x{sheet.height:g}")
    for part in ordered:
        options = _shelf_orientations(part, sheet.allow_rotation)
        if not _fits_empty(((w, h) for _, w, h in options), sheet):
            log.info("part %s is larger than the usable sheet area", part.id)
            unplaced.append(UnplacedPart(part, REASON_TOO_LARGE))
            continue
        choice = shelf_choose(cursor, options, sheet) if sheets else None
        if choice is None and sheets:
            cursor = shelf_advance(cursor, sheet)
            choice = shelf_choose(cursor, options, sheet)
        if choice is None:
            if len(sheets) >= limit:
                unplaced.append(UnplacedPart(part, REASON_NO_SPACE))
                continue
            sheets.append(Sheet(len(sheets)))
            cursor = ShelfCursor.start(sheet)
            choice = shelf_choose(cursor, options, sheet)
        if choice is None:
            unplaced.append(UnplacedPart(part, REASON_NO_SPACE))
            continue
        rot, w, h = choice
        sheets[-1].placements.append(_make_placement(part, sheets[-1].index, cursor.x, cursor.y, rot, False))
        cursor = shelf_commit(cursor, w, h, sheet)
    _log_step(f"shelf pack: placed {sum(len(s.placements) for s in sheets)} on {len(sheets)} sheet(s), unplaced {len(unplaced)}")
    return NestingResult(sheets, unplaced, False, "shelf")


# shape-aware packer

@dataclass
class _Option:
    rotation: Rotation
    mirror: bool
    shape: BaseGeometry
    halo: BaseGeometry
    width: float
    height: float


@dataclass
class _SheetState:
    sheet: Sheet
    anchors: List[Point]
    halos: List[BaseGeometry] = field(default_factory=list)


def _shapely_matrix(m: Matrix) -> List[float]:
    a, b, c, d, e, f = m
    return [a, c, b, d, e, f]


def _build_option(part: Part, halo_local: BaseGeometry, rotation: Rotation, mirror: bool) -> _Option:
    m = _shapely_matrix(placement_matrix(rotation, mirror))
    x0, y0, x1, y1 = _oriented_bbox(part.bbox, rotation, mirror)
    shape = _stranslate(affine_transform(part.shape, m), -x0, -y0)
    halo = _stranslate(affine_transform(halo_local, m), -x0, -y0)
    return _Option(rotation, mirror, shape, halo, x1 - x0, y1 - y0)


class _OptionCache:
    def __init__(self, gap: float, rotations: Sequence[Rotation], allow_mirror: bool) -> None:
        self.gap = gap
        self.rotations = tuple(rotations)
        self.mirrors = (False, True) if allow_mirror else (False,)
        self._halos: Dict[int, BaseGeometry] = {}
        self._options: Dict[Tuple[int, int, bool], _Option] = {}

    def _halo(self, part: Part) -> BaseGeometry:
        # copies share their polygon list
        key = id(part.polygons)
        if key not in self._halos:
            self._halos[key] = geometry.to_shapely(geometry.halo_polygons(part, self.gap))
        return self._halos[key]

    def get(self, part: Part, rotation: Rotation, mirror: bool) -> _Option:
        key = (id(part.polygons), int(rotation), bool(mirror))
        if key not in self._options:
            self._options[key] = _build_option(part, self._halo(part), rotation, mirror)
        return self._options[key]

    def all(self, part: Part) -> List[_Option]:
        return [self.get(part, rot, mirror) for mirror in self.mirrors for rot in self.rotations]


def _grid_points(sheet: SheetConfig, div: int) -> List[Point]:
    sx = sheet.usable_width / div
    sy = sheet.usable_height / div
    return [(sheet.margin + i * sx, sheet.margin + j * sy) for j in range(div) for i in range(div)]


def _rectpack_seeds(parts: Sequence[Part], sheet: SheetConfig) -> List[Point]:
    if not parts:
        return []
    packer = newPacker(rotation=False, pack_algo=maxrects.MaxRectsBssf, sort_algo=rectpack.SORT_AREA)
    packer.add_bin(int(floor(sheet.usable_width + sheet.gap)), int(floor(sheet.usable_height + sheet.gap)))
    for idx, part in enumerate(parts):
        packer.add_rect(int(ceil(part.width + sheet.gap)), int(ceil(part.height + sheet.gap)), rid=idx)
    packer.pack()
    return [(float(x + sheet.margin), float(y + sheet.margin)) for _, x, y, _, _, _ in packer.rect_list()]


def _keep_out_anchors(keep_outs: Sequence[KeepOutRect], sheet: SheetConfig) -> List[Point]:
    out: List[Point] = [(sheet.margin, sheet.margin)]
    for ko in keep_outs:
        x0, y0, x1, y1 = ko.bounds
        out.extend([(x1, y0), (x0, y1), (x1, sheet.margin), (sheet.margin, y1)])
    return out


def _candidates(
    state: _SheetState,
    fixed: Sequence[Point],
    random_points: int,
    rng: random.Random,
    sheet: SheetConfig,
) -> List[Point]:
    pts: List[Point] = list(state.anchors) + list(fixed)
    for _ in range(random_points):
        pts.append(
            (
                sheet.margin + rng.random() * sheet.usable_width,
                sheet.margin + rng.random() * sheet.usable_height,
            )
        )
    right = sheet.width - sheet.margin
    bottom = sheet.height - sheet.margin
    seen = set()
    out: List[Point] = []
    for x, y in pts:
        if x < sheet.margin - BOUNDS_EPS or y < sheet.margin - BOUNDS_EPS or x >= right or y >= bottom:
            continue
        key = (round(x / config.CANDIDATE_EPS), round(y / config.CANDIDATE_EPS))
        if key in seen:
            continue
        seen.add(key)
        out.append((x, y))
    out.sort(key=lambda p: (p[1], p[0]))
    return out


def _fits(
    state: _SheetState,
    opt: _Option,
    x: float,
    y: float,
    sheet: SheetConfig,
    keep_outs: Sequence[KeepOutRect],
) -> BaseGeometry | None:
    if x < sheet.margin - BOUNDS_EPS or y < sheet.margin - BOUNDS_EPS:
        return None
    if x + opt.width > sheet.width - sheet.margin + BOUNDS_EPS:
        return None
    if y + opt.height > sheet.height - sheet.margin + BOUNDS_EPS:
        return None
    cand_bb = (x, y, x + opt.width, y + opt.height)
    shape = None
    for ko in keep_outs:
        if not _bbox_overlap(cand_bb, ko.bounds):
            continue
        if shape is None:
            shape = _stranslate(opt.shape, x, y)
        if shape.intersection(ko.geom).area > AREA_EPS:
            return None
    halo = _stranslate(opt.halo, x, y)
    hb = halo.bounds
    for other in state.halos:
        if not _bbox_overlap(hb, other.bounds):
            continue
        if halo.intersection(other).area > AREA_EPS:
            return None
    return halo


def _commit(state: _SheetState, placement: Placement, halo: BaseGeometry, gap: float) -> None:
    state.sheet.placements.append(placement)
    state.halos.append(halo)
    x, y = placement.x, placement.y
    state.anchors.extend(
        [
            (x + placement.width + gap, y),
            (x, y + placement.height + gap),
            (x + placement.width + gap, state.anchors[0][1]),
            (state.anchors[0][0], y + placement.height + gap),
        ]
    )


class _Cancelled(Exception):
    pass


def _try_place(
    state: _SheetState,
    part: Part,
    options: Sequence[_Option],
    fixed: Sequence[Point],
    params: _SearchParams,
    rng: random.Random,
    sheet: SheetConfig,
    keep_outs: Sequence[KeepOutRect],
    should_stop: Callable[[], bool],
) -> bool:
    for x, y in _candidates(state, fixed, params.random_points, rng, sheet):
        if should_stop():
            raise _Cancelled
        for opt in options:
            halo = _fits(state, opt, x, y, sheet, keep_outs)
            if halo is None:
                continue
            pl = _make_placement(part, state.sheet.index, x, y, opt.rotation, opt.mirror)
            _commit(state, pl, halo, sheet.gap)
            return True
    return False


def _run_shape(
    parts: Sequence[Part],
    sheet: SheetConfig,
    keep_outs: Sequence[KeepOutRect],
    locked: Sequence[LockedPlacement],
    strategy: Strategy,
    seed: int,
    allow_mirror: bool,
    limit: int,
    should_stop: Callable[[], bool],
) -> NestingResult:
    params = _SEARCH[strategy]
    rng = random.Random(seed)
    rotations = params.rotations if sheet.allow_rotation else (Rotation.DEG_0,)
    cache = _OptionCache(sheet.gap, rotations, allow_mirror)
    base_anchors = _keep_out_anchors(keep_outs, sheet)
    states: List[_SheetState] = []

    def _open_sheet() -> _SheetState:
        st = _SheetState(Sheet(len(states)), list(base_anchors))
        states.append(st)
        return st

    for lp in sorted(locked, key=lambda item: item.sheet_index):
        while len(states) <= lp.sheet_index:
            _open_sheet()
        st = states[lp.sheet_index]
        opt = cache.get(lp.part, lp.rotation, lp.mirror)
        pl = _make_placement(lp.part, lp.sheet_index, lp.x, lp.y, lp.rotation, lp.mirror, locked=True)
        _commit(st, pl, _stranslate(opt.halo, lp.x, lp.y), sheet.gap)

    ordered = sorted(_unlocked(parts, locked), key=lambda p: p.bbox_area, reverse=True)
    fixed = _grid_points(sheet, params.grid_div)
    if params.rectpack_seeds:
        fixed += _rectpack_seeds(ordered, sheet)

    unplaced: List[UnplacedPart] = []
    cancelled = False
    for i, part in enumerate(ordered):
        try:
            if should_stop():
                raise _Cancelled
            options = cache.all(part)
            if not _fits_empty(((o.width, o.height) for o in options), sheet):
                unplaced.append(UnplacedPart(part, REASON_TOO_LARGE))
                continue
            if any(_try_place(st, part, options, fixed, params, rng, sheet, keep_outs, should_stop) for st in states):
                continue
            if len(states) >= limit:
                unplaced.append(UnplacedPart(part, REASON_NO_SPACE))
                continue
            st = _open_sheet()
            try:
                placed = _try_place(st, part, options, fixed, params, rng, sheet, keep_outs, should_stop)
            except _Cancelled:
                states.pop()
                raise
            if not placed:
                states.pop()
                unplaced.append(UnplacedPart(part, REASON_NO_SPACE))
        except _Cancelled:
            cancelled = True
            unplaced.extend(UnplacedPart(p, REASON_CANCELLED) for p in ordered[i:])
            log.info("%s run cancelled, %d part(s) not placed", strategy.value, len(ordered) - i)
            break
    return NestingResult([st.sheet for st in states], unplaced, cancelled, strategy.value)


def _better(a: NestingResult, b: NestingResult) -> bool:
    return (a.placed_count, -len(a.sheets)) > (b.placed_count, -len(b.sheets))


def shape_pack(
    parts: Sequence[Part],
    sheet: SheetConfig,
    keep_outs: Sequence[KeepOutRect] = (),
    locked: Sequence[LockedPlacement] = (),
    strategy: Strategy | str | None = None,
    seed: int | None = None,
    *,
    allow_mirror: bool = False,
    cancel: threading.Event | None = None,
    timeout: float | None = None,
    max_sheets: int | None = None,
) -> NestingResult:
    sheet.validate()
    strategy = Strategy.parse(config.NEST_STRATEGY if strategy is None else strategy)
    seed = config.NEST_SEED if seed is None else int(seed)
    timeout = config.NEST_TIMEOUT if timeout is None else float(timeout)
    limit = _sheet_limit(max_sheets)
    deadline = time.monotonic() + timeout if timeout > 0 else None

    def _should_stop() -> bool:
        if cancel is not None and cancel.is_set():
            return True
        return deadline is not None and time.monotonic() > deadline

    chain = [strategy]
    while chain[-1] in _NARROWER:
        chain.append(_NARROWER[chain[-1]])
    chain.reverse()

    best: NestingResult | None = None
    cancelled = False
    for step in chain:
        t0 = time.perf_counter()
        res = _run_shape(parts, sheet, keep_outs, locked, step, seed, allow_mirror, limit, _should_stop)
        _log_step(
            f"shape pack [{step.value}] placed {res.placed_count} on {len(res.sheets)} sheet(s), "
            f"unplaced {len(res.unplaced)} in {time.perf_counter() - t0:.2f}s"
        )
        if best is None or _better(res, best):
            best = res
        if res.cancelled:
            cancelled = True
            break
    best.strategy = strategy.value
    best.cancelled = cancelled
    return best


def nest(
    parts: Sequence[Part],
    sheet: SheetConfig,
    *,
    mode: str = geometry.MODE_SHAPE,
    keep_outs: Sequence[KeepOutRect] = (),
    locked: Sequence[LockedPlacement] = (),
    strategy: Strategy | str | None = None,
    seed: int | None = None,
    allow_mirror: bool = False,
    cancel: threading.Event | None = None,
    timeout: float | None = None,
    max_sheets: int | None = None,
) -> NestingResult:
    if mode == geometry.MODE_BBOX:
        return shelf_pack(parts, sheet, max_sheets=max_sheets)
    return shape_pack(
        parts,
        sheet,
        keep_outs,
        locked,
        strategy,
        seed,
        allow_mirror=allow_mirror,
        cancel=cancel,
        timeout=timeout,
        max_sheets=max_sheets,
    )
