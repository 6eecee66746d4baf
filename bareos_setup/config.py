"""Configuration loading: defaults, JSON file, environment and CLI overrides."""

from __future__ import annotations

import dataclasses
import json
import os
import re
from typing import Any, Dict, Mapping, Optional

from .errors import ConfigError
from .executil import trace
from .model import PoolBackend, SetupConfig

_LV_EXTENTS_RE = re.compile(r"^\d+%(FREE|VG|PVS|ORIGIN)$", re.IGNORECASE)
_LV_ABSOLUTE_RE = re.compile(r"^\d+(\.\d+)?[bBsSkKmMgGtTpPeE]?$")

_FIELDS = {f.name: f for f in dataclasses.fields(SetupConfig)}
_TUPLE_FIELDS = ("disks", "zfs_options", "packages", "core_services", "aux_services")
_BOOL_FIELDS = ("wipe_disks", "bind_mount", "catalog_auto_repair", "dry_run")
_ABSOLUTE_PATHS = (
    "pool_mount",
    "storage_dir",
    "fstab_path",
    "os_release_path",
    "keyring_path",
    "source_list_path",
    "bareos_scripts_dir",
)


def _read_file(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except FileNotFoundError as exc:
        raise ConfigError(f"config file not found: {path}", state={"path": path}) from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(
            f"config file is not valid JSON: {path} ({exc.msg} at line {exc.lineno})",
            state={"path": path},
        ) from exc
    if not isinstance(data, dict):
        raise ConfigError(f"config file must hold a JSON object: {path}", state={"path": path})
    return data


def _coerce(name: str, value: Any) -> Any:
    if name in _TUPLE_FIELDS:
        if isinstance(value, str):
            value = value.split()
        if not isinstance(value, (list, tuple)):
            raise ConfigError(f"{name} must be a list of strings", state={"field": name})
        return tuple(str(v) for v in value)
    if name in _BOOL_FIELDS:
        if not isinstance(value, bool):
            raise ConfigError(f"{name} must be true or false", state={"field": name})
        return value
    if name == "pool_backend":
        try:
            return PoolBackend(str(value).upper())
        except ValueError as exc:
            raise ConfigError(
                f"unknown pool backend {value!r}",
                hint="use ZFS or LVM",
                state={"field": name},
            ) from exc
    return value


def validate(config: SetupConfig) -> SetupConfig:
    if not config.disks:
        raise ConfigError("disk list is empty", hint="name at least one data disk with --disk")
    if not (_LV_EXTENTS_RE.match(config.lv_size) or _LV_ABSOLUTE_RE.match(config.lv_size)):
        raise ConfigError(
            f"invalid LV size {config.lv_size!r}",
            hint="use extents such as 100%FREE or an absolute size such as 20T",
            state={"field": "lv_size"},
        )
    for name in _ABSOLUTE_PATHS:
        value = getattr(config, name)
        if not os.path.isabs(value):
            raise ConfigError(f"{name} must be an absolute path, got {value!r}", state={"field": name})
    if config.wipe_disks and not config.wipe_token:
        raise ConfigError("wipe_token must not be empty when wiping disks", state={"field": "wipe_token"})
    return config


def load_config(
        path: Optional[str] = None,
        overrides: Optional[Mapping[str, Any]] = None,
        env: Optional[Mapping[str, str]] = None,
) -> SetupConfig:
    """Merge defaults < JSON file < ``SERIES`` environment < explicit overrides.

    ``None`` values in ``overrides`` mean "not given" and leave the lower layer
    in place.
    """

    env = os.environ if env is None else env
    merged: Dict[str, Any] = {}
    sources: Dict[str, str] = {}
    if path:
        for key, value in _read_file(path).items():
            merged[key] = value
            sources[key] = "file"
    if env.get("SERIES"):
        merged["series"] = env["SERIES"]
        sources["series"] = "env"
    for key, value in (overrides or {}).items():
        if value is None:
            continue
        merged[key] = value
        sources[key] = "cli"

    unknown = sorted(k for k in merged if k not in _FIELDS)
    if unknown:
        raise ConfigError(f"unknown configuration keys: {', '.join(unknown)}", state={"keys": unknown})

    values = {k: _coerce(k, v) for k, v in merged.items()}
    config = validate(SetupConfig(**values))
    trace("config.loaded", sources=sources, backend=config.pool_backend.value, disks=list(config.disks))
    return config


def as_dict(config: SetupConfig) -> Dict[str, Any]:
    data = dataclasses.asdict(config)
    data["pool_backend"] = config.pool_backend.value
    data["zfs_dataset"] = config.dataset
    return data
