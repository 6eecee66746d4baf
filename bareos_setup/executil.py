from __future__ import annotations

"""Subprocess wrapper, dry-run hook and JSONL trace log."""

import datetime as _dt
import json
import os
import shlex
import shutil
import subprocess
import time
from typing import Iterable, Sequence

from .errors import MissingToolError
from .paths import logs_dir


LOG_DIRS: list[str] | None = None
LOG_PATH: str | None = None
LOG_NAME = "bareos_setup.jsonl"


def _log_dirs() -> list[str]:
    if LOG_DIRS:
        return list(LOG_DIRS)
    return [
        logs_dir(),
        "/var/log/bareos-setup",
        "/tmp/bareos-setup-logs",
    ]


def _ensure_logger() -> str | None:
    global LOG_PATH
    if LOG_PATH:
        return LOG_PATH
    for d in _log_dirs():
        d_expanded = os.path.expanduser(d)
        try:
            os.makedirs(d_expanded, exist_ok=True)
        except OSError:
            continue
        if not os.access(d_expanded, os.W_OK):
            continue
        LOG_PATH = os.path.join(d_expanded, LOG_NAME)
        return LOG_PATH
    LOG_PATH = None
    return None


def resolve_log_path() -> str | None:
    """Return the active log path, creating directories when possible."""

    return _ensure_logger()


class Result:
    def __init__(self, rc: int, out: str, err: str, duration: float):
        self.rc, self.out, self.err, self.duration = rc, out, err, duration


LEVELS = {"TRACE": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "NONE": 100}
LOG_LEVEL = os.environ.get("BAREOS_SETUP_LOG_LEVEL", "TRACE").upper()


def _write_jsonl(obj: dict):
    path = _ensure_logger()
    if not path:
        return
    try:
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, default=str) + "\n")
    except OSError:
        pass


def log(level: str, event: str, **fields):
    lvl = LEVELS.get(level.upper(), 100)
    cur = LEVELS.get(LOG_LEVEL, 100)
    if lvl < cur:
        return
    ts = _dt.datetime.now(_dt.timezone.utc).isoformat().replace("+00:00", "Z")
    rec = {"ts": ts, "level": level.upper(), "event": event}
    rec.update(fields)
    _write_jsonl(rec)


def trace(event: str, **fields):
    log("TRACE", event, **fields)


def format_cmd(cmd: Sequence[str]) -> str:
    return " ".join(shlex.quote(c) for c in cmd)


def run(
    cmd: Sequence[str],
    check: bool = True,
    dry_run: bool = False,
    timeout: float | None = None,
    env: dict | None = None,
    input: str | None = None,
) -> Result:
    """Run ``cmd`` and capture its output.

    There is no timeout unless the caller asks for one: provisioning commands
    (``apt-get``, ``zpool create``, ``mkfs``) block for as long as they need.
    """

    trace("exec.start", cmd=list(cmd), dry_run=dry_run)
    if dry_run:
        text = "DRY-RUN: " + format_cmd(cmd)
        return Result(0, text, "", 0.0)
    started = time.time()
    env2 = (env or os.environ).copy()
    env2.setdefault("DEBIAN_FRONTEND", "noninteractive")
    proc = subprocess.run(
        list(cmd),
        capture_output=True,
        text=True,
        errors="replace",
        timeout=timeout,
        env=env2,
        input=input,
    )
    dur = time.time() - started
    trace(
        "exec.done",
        cmd=list(cmd),
        rc=proc.returncode,
        dur=dur,
        out=proc.stdout,
        err=proc.stderr,
    )
    if check and proc.returncode != 0:
        raise subprocess.CalledProcessError(proc.returncode, list(cmd), proc.stdout, proc.stderr)
    return Result(proc.returncode, proc.stdout, proc.stderr, dur)


def which(tool: str) -> str | None:
    return shutil.which(tool)


def require_tools(tools: Iterable[str]) -> None:
    """Fail on the first command missing from ``PATH``."""

    for tool in tools:
        if which(tool) is None:
            trace("exec.missing_tool", tool=tool)
            raise MissingToolError(
                f"Missing required command: {tool}",
                hint=f"install the package providing '{tool}' and re-run",
                state={"tool": tool},
            )


def error_text(exc: subprocess.CalledProcessError) -> str:
    return (exc.stderr or exc.stdout or "").strip() or f"exit status {exc.returncode}"


def append_jsonl(path: str, obj: dict):
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")
    except OSError:
        pass
