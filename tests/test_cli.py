from __future__ import annotations

import logging

from sheetnest import cli
from sheetnest import config

from conftest import rect_path


def _write_svg(path, *ds):
    body = "".join(f'<path d="{d}"/>' for d in ds)
    path.write_text(f'<svg xmlns="http://www.w3.org/2000/svg">{body}</svg>', encoding="utf-8")


def test_main_writes_one_svg_per_sheet(tmp_path, monkeypatch):
    for name in ("NEST_SHEET_W", "NEST_SHEET_H", "NEST_PNG", "NEST_STRATEGY"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(config, "DEFAULT_SHEET_W", 100.0)
    monkeypatch.setattr(config, "DEFAULT_SHEET_H", 100.0)
    monkeypatch.setattr(config, "NEST_STRATEGY", "fast")
    monkeypatch.setattr(config, "WRITE_PNG", False)
    src = tmp_path / "in.svg"
    out = tmp_path / "out"
    _write_svg(src, rect_path(80, 80), rect_path(80, 80, 200, 0))

    assert cli.main([str(src), str(out)]) == 0
    assert sorted(p.name for p in out.iterdir()) == [
        "nesting-shape-sheet-1.svg",
        "nesting-shape-sheet-2.svg",
    ]


def test_main_reports_unplaced_parts(tmp_path, monkeypatch, caplog):
    monkeypatch.setenv("NEST_SHEET_W", "50")
    monkeypatch.setenv("NEST_SHEET_H", "50")
    monkeypatch.setenv("NEST_STRATEGY", "fast")
    for name in ("DEFAULT_SHEET_W", "DEFAULT_SHEET_H", "NEST_STRATEGY"):
        monkeypatch.setattr(config, name, getattr(config, name))
    src = tmp_path / "in.svg"
    _write_svg(src, rect_path(10, 10), rect_path(400, 10))

    with caplog.at_level(logging.WARNING):
        assert cli.main([str(src), str(tmp_path / "out")]) == 0
    assert "1 of 2 parts could not be placed." in caplog.text


def test_main_rejects_bad_sheet(tmp_path, monkeypatch):
    monkeypatch.delenv("NEST_SHEET_W", raising=False)
    monkeypatch.setattr(config, "DEFAULT_SHEET_W", 0.0)
    src = tmp_path / "in.svg"
    _write_svg(src, rect_path(10, 10))
    assert cli.main([str(src), str(tmp_path / "out")]) == 2
