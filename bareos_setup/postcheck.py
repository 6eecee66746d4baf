from __future__ import annotations

from typing import Any, Dict

from .catalog import describe_database, server_responding
from .executil import run
from .model import SetupConfig
from .mounts import fstab_has_bind


def _mount_source(path: str) -> str:
    r = run(["findmnt", "-no", "SOURCE", path], check=False)
    return (r.out or "").strip() if r.rc == 0 else ""


def _unit_state(unit: str) -> str:
    r = run(["systemctl", "is-active", unit], check=False)
    return (r.out or "").strip() or "unknown"


def run_postcheck(config: SetupConfig) -> Dict[str, Any]:
    """Read-only health report of a provisioned host.

    Nothing is changed; every probe runs with ``check=False``.
    """

    res: Dict[str, Any] = {"checks": {}, "ok": True, "errors": []}

    pool_src = _mount_source(config.pool_mount)
    res["checks"]["pool_mount"] = {"path": config.pool_mount, "source": pool_src, "mounted": bool(pool_src)}
    if not pool_src:
        res["errors"].append({"check": "pool_mount", "why": f"{config.pool_mount} is not mounted"})

    if config.bind_mount:
        bind_src = _mount_source(config.storage_dir)
        in_fstab = fstab_has_bind(config.fstab_path, config.pool_mount, config.storage_dir)
        res["checks"]["bind_mount"] = {
            "path": config.storage_dir,
            "source": bind_src,
            "mounted": bool(bind_src),
            "fstab": in_fstab,
        }
        if not bind_src or not in_fstab:
            res["errors"].append({"check": "bind_mount", "why": f"{config.storage_dir} bind mount incomplete"})

    if server_responding():
        info = describe_database(config.db_name)
        res["checks"]["catalog"] = info
        if info["encoding"] != "UTF8":
            why = f"catalog encoding is {info['encoding'] or 'missing'}"
            res["errors"].append({"check": "catalog", "why": why})
    else:
        res["checks"]["catalog"] = {"name": config.db_name, "server": "unreachable"}
        res["errors"].append({"check": "catalog", "why": "PostgreSQL not responding"})

    units: Dict[str, str] = {}
    for unit in (*config.core_services, *config.aux_services):
        units[unit] = _unit_state(unit)
    res["checks"]["units"] = units
    # auxiliary units only degrade the WebUI
    for unit in config.core_services:
        if units[unit] != "active":
            res["errors"].append({"check": "units", "why": f"{unit} is {units[unit]}"})

    res["ok"] = not res["errors"]
    return res
