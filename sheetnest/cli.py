from __future__ import annotations

import logging
import sys
import time
from pathlib import Path
from typing import List

from . import config
from . import export_svg
from . import geometry
from . import packing
from .errors import NestError

log = logging.getLogger(__name__)


def _log_step(msg: str) -> None:
    log.info(msg)


def main(argv: List[str] | None = None) -> int:
    """Nest every shape of an SVG file and write one SVG per sheet.

    Usage: sheetnest [input.svg] [out_dir]. Everything else comes from the
    NEST_* environment variables read by config._apply_nest_env().
    """
    config.configure_logging()
    config._apply_nest_env()
    args = sys.argv[1:] if argv is None else argv
    svg_path = Path(args[0]) if args else config.SVG_PATH
    out_dir = Path(args[1]) if len(args) > 1 else config.OUT_DIR
    if not svg_path.exists():
        raise SystemExit(f"Missing {svg_path}")

    t0 = time.perf_counter()
    sheet = packing.SheetConfig(
        config.DEFAULT_SHEET_W,
        config.DEFAULT_SHEET_H,
        config.DEFAULT_MARGIN,
        config.DEFAULT_GAP,
        config.ALLOW_ROTATION,
    )
    try:
        sheet.validate()
        parts, errors = geometry.parts_from_svg(svg_path.read_text(encoding="utf-8"), config.NEST_MODE)
    except NestError as exc:
        log.error("%s", exc)
        return 2
    _log_step(f"loaded {len(parts)} part(s) from {svg_path}, {len(errors)} skipped")

    result = packing.nest(
        parts,
        sheet,
        mode=config.NEST_MODE,
        strategy=config.NEST_STRATEGY,
        seed=config.NEST_SEED,
        allow_mirror=config.ALLOW_MIRROR,
        timeout=config.NEST_TIMEOUT,
        max_sheets=config.MAX_SHEETS,
    )
    export_svg.export_sheets(result, sheet, out_dir, png=config.WRITE_PNG)
    msg = export_svg.summary_message(result)
    if result.unplaced:
        log.warning(msg)
    else:
        _log_step(msg)
    _log_step(f"done in {time.perf_counter() - t0:.2f}s")
    return 0


if __name__ == "__main__":
    sys.exit(main())
