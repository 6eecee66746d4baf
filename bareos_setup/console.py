"""Labelled status lines for the operator, mirrored into the trace log."""

from __future__ import annotations

import sys

from .executil import log

CYAN = "\033[1;36m"; GREEN = "\033[1;32m"; YELLOW = "\033[1;33m"; RED = "\033[1;31m"; CLR = "\033[0m"

_LABELS = {
    "info": ("[INFO]", CYAN, "INFO"),
    "ok": ("[ OK ]", GREEN, "INFO"),
    "warn": ("[WARN]", YELLOW, "WARN"),
    "fail": ("[FAIL]", RED, "ERROR"),
}


def _color_enabled(stream) -> bool:
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


def _emit(kind: str, msg: str) -> None:
    label, color, level = _LABELS[kind]
    stream = sys.stderr if kind in ("warn", "fail") else sys.stdout
    if _color_enabled(stream):
        label = f"{color}{label}{CLR}"
    print(f"{label} {msg}", file=stream, flush=True)
    log(level, f"console.{kind}", message=msg)


def info(msg: str) -> None: _emit("info", msg)
def ok(msg: str) -> None: _emit("ok", msg)
def warn(msg: str) -> None: _emit("warn", msg)
def fail(msg: str) -> None: _emit("fail", msg)


def detail(msg: str) -> None:
    print(f"  - {msg}", flush=True)
