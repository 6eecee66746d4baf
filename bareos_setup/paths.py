from __future__ import annotations

import os
from pathlib import Path

_DEFAULT_BASE = "/var/lib/bareos-setup"


def _expand(path: str) -> str:
    candidate = Path(path).expanduser()
    try:
        return str(candidate.resolve())
    except FileNotFoundError:
        return str(candidate)


def base_path() -> str:
    """Return the base directory for setup logs and artifacts.

    The location can be overridden via the ``BAREOS_SETUP_BASE_PATH``
    environment variable.
    """

    override = os.environ.get("BAREOS_SETUP_BASE_PATH")
    if override:
        return _expand(override)
    return _expand(_DEFAULT_BASE)


def logs_dir() -> str:
    return str(Path(base_path()) / "logs")


def artifacts_dir() -> str:
    return str(Path(base_path()) / "artifacts")
