from __future__ import annotations

import logging
import os
from pathlib import Path

UNITS_PER_MM = 1000
CLEAN_DISTANCE_U = 10
MIN_AREA_U2 = 10_000
DEFAULT_FLATNESS = 0.15
MIN_FLATNESS = 0.01
MAX_FLATNESS = 2.0
MAX_SUBDIVISION_DEPTH = 12
MIN_ARC_SEGMENTS = 8
MAX_ARC_SEGMENTS = 512
MITER_LIMIT = 2.0
ARC_TOLERANCE_U = 25.0
CIRCLE_SEGMENTS = 64
CAPSULE_END_SEGMENTS = 16
ELLIPSE_SEGMENTS = 32

DEFAULT_SHEET_W = 300.0
DEFAULT_SHEET_H = 200.0
DEFAULT_MARGIN = 5.0
DEFAULT_GAP = 2.0

SVG_PATH = Path(os.getenv("NEST_SVG_PATH", "parts.svg"))
OUT_DIR = Path(os.getenv("NEST_OUT_DIR", "nested"))
NEST_MODE = "shape"
NEST_STRATEGY = os.getenv("NEST_STRATEGY", "balanced")
ALLOW_ROTATION = True
ALLOW_MIRROR = False
WRITE_PNG = False
NEST_SEED = 1
NEST_TIMEOUT = 0.0
MAX_SHEETS = 100
DRAW_SCALE = 2.0
CANDIDATE_EPS = 0.01
SHEET_SPACING = 20.0

LOG_FORMAT = "[%(asctime)s] %(message)s"
LOG_DATEFMT = "%H:%M:%S"


def clamp_flatness(value: float) -> float:
    return max(MIN_FLATNESS, min(MAX_FLATNESS, float(value)))


def _env_flag(name: str, default: bool) -> bool:
    val = os.environ.get(name)
    if val is None:
        return default
    return val.strip().lower() in ("1", "true", "yes", "on")


def _apply_nest_env() -> None:
    global DEFAULT_SHEET_W, DEFAULT_SHEET_H, DEFAULT_MARGIN, DEFAULT_GAP, DEFAULT_FLATNESS
    global SVG_PATH, OUT_DIR, NEST_MODE, NEST_STRATEGY, NEST_SEED, NEST_TIMEOUT, MAX_SHEETS
    global ALLOW_ROTATION, ALLOW_MIRROR, WRITE_PNG, DRAW_SCALE
    if "NEST_SVG_PATH" in os.environ:
        SVG_PATH = Path(os.environ["NEST_SVG_PATH"])
    if "NEST_OUT_DIR" in os.environ:
        OUT_DIR = Path(os.environ["NEST_OUT_DIR"])
    if "NEST_SHEET_W" in os.environ:
        DEFAULT_SHEET_W = float(os.environ["NEST_SHEET_W"])
    if "NEST_SHEET_H" in os.environ:
        DEFAULT_SHEET_H = float(os.environ["NEST_SHEET_H"])
    if "NEST_MARGIN" in os.environ:
        DEFAULT_MARGIN = float(os.environ["NEST_MARGIN"])
    if "NEST_GAP" in os.environ:
        DEFAULT_GAP = float(os.environ["NEST_GAP"])
    if "NEST_FLATNESS" in os.environ:
        DEFAULT_FLATNESS = clamp_flatness(float(os.environ["NEST_FLATNESS"]))
    if "NEST_MODE" in os.environ:
        NEST_MODE = str(os.environ["NEST_MODE"]).strip().lower()
    if "NEST_STRATEGY" in os.environ:
        NEST_STRATEGY = str(os.environ["NEST_STRATEGY"]).strip().lower()
    if "NEST_SEED" in os.environ:
        NEST_SEED = int(float(os.environ["NEST_SEED"]))
    if "NEST_TIMEOUT" in os.environ:
        NEST_TIMEOUT = float(os.environ["NEST_TIMEOUT"])
    if "NEST_MAX_SHEETS" in os.environ:
        MAX_SHEETS = int(float(os.environ["NEST_MAX_SHEETS"]))
    if "NEST_DRAW_SCALE" in os.environ:
        DRAW_SCALE = float(os.environ["NEST_DRAW_SCALE"])
    ALLOW_ROTATION = _env_flag("NEST_ALLOW_ROTATION", ALLOW_ROTATION)
    ALLOW_MIRROR = _env_flag("NEST_ALLOW_MIRROR", ALLOW_MIRROR)
    WRITE_PNG = _env_flag("NEST_PNG", WRITE_PNG)


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
