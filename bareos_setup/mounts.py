"""fstab entries, mountpoints and the storage bind mount."""
from __future__ import annotations

import os
from typing import Iterator

from . import console
from .executil import run, trace
from .model import SetupConfig, Step, StepPolicy


def _fstab_entries(fstab_path: str) -> Iterator[list[str]]:
    try:
        with open(fstab_path, "r", encoding="utf-8", errors="surrogateescape") as fh:
            lines = fh.read().splitlines()
    except FileNotFoundError:
        return
    for line in lines:
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        yield stripped.split()


def fstab_has_uuid(fstab_path: str, uuid: str) -> bool:
    if not uuid:
        return False
    return any(fields[0] == f"UUID={uuid}" for fields in _fstab_entries(fstab_path))


def fstab_has_bind(fstab_path: str, source: str, target: str) -> bool:
    """True when an equivalent ``source target none bind`` line is present."""

    src = os.path.normpath(source)
    tgt = os.path.normpath(target)
    for fields in _fstab_entries(fstab_path):
        if len(fields) < 4:
            continue
        if os.path.normpath(fields[0]) != src or os.path.normpath(fields[1]) != tgt:
            continue
        if fields[2] == "none" and "bind" in fields[3].split(","):
            return True
    return False


def append_fstab(fstab_path: str, line: str, dry_run: bool = False) -> None:
    trace("mounts.fstab_append", path=fstab_path, line=line, dry_run=dry_run)
    if dry_run:
        return
    prefix = ""
    try:
        with open(fstab_path, "rb") as fh:
            fh.seek(0, os.SEEK_END)
            if fh.tell() > 0:
                fh.seek(-1, os.SEEK_END)
                if fh.read(1) != b"\n":
                    prefix = "\n"
    except FileNotFoundError:
        pass
    with open(fstab_path, "a", encoding="utf-8") as fh:
        fh.write(f"{prefix}{line}\n")
        try:
            fh.flush()
            os.fsync(fh.fileno())
        except OSError:
            pass


def is_mounted(path: str) -> bool:
    return run(["mountpoint", "-q", path], check=False).rc == 0


def mount(path: str, dry_run: bool = False) -> None:
    run(["mount", path], check=True, dry_run=dry_run)


def ensure_dirs(*paths: str, dry_run: bool = False) -> None:
    run(["mkdir", "-p", *paths], check=True, dry_run=dry_run)


def ensure_ownership(path: str, user: str, group: str, dry_run: bool = False) -> None:
    """Hand the storage tree to the storage daemon's identity.

    The daemon fixes its own permissions on first start, so a failure here is
    only reported.
    """

    r = run(["chown", "-R", f"{user}:{group}", path], check=False, dry_run=dry_run)
    if r.rc != 0:
        trace("mounts.chown_failed", path=path, rc=r.rc, err=(r.err or "").strip())
        console.warn(f"could not chown {path} to {user}:{group} (rc={r.rc})")
    else:
        console.ok(f"Storage path ready: {path}")


def bind_line(source: str, target: str) -> str:
    return f"{source}  {target}  none  bind  0 0"


def bind_mount_steps(config: SetupConfig) -> list[Step]:
    src, tgt, fstab = config.pool_mount, config.storage_dir, config.fstab_path
    steps: list[Step] = []
    if config.bind_mount:
        steps += [
            Step(
                name=f"bind-mount target {tgt}",
                check=lambda: os.path.isdir(tgt),
                action=lambda: ensure_dirs(tgt, dry_run=config.dry_run),
            ),
            Step(
                name=f"fstab bind entry {src} -> {tgt}",
                check=lambda: fstab_has_bind(fstab, src, tgt),
                action=lambda: append_fstab(fstab, bind_line(src, tgt), dry_run=config.dry_run),
            ),
            Step(
                name=f"bind mount {tgt}",
                check=lambda: is_mounted(tgt),
                action=lambda: mount(tgt, dry_run=config.dry_run),
            ),
        ]
    steps.append(
        Step(
            name=f"ownership of {tgt}",
            action=lambda: ensure_ownership(tgt, config.service_user, config.service_group, dry_run=config.dry_run),
            policy=StepPolicy.BEST_EFFORT,
        )
    )
    return steps
