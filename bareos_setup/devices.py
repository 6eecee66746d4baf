"""Disk inventory, validation gate and block-device probes."""
from __future__ import annotations

import os
import stat
from typing import Sequence

from . import console
from .errors import DeviceValidationError
from .executil import run, trace


def _is_block_device(path: str) -> bool:
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return False
    except OSError as exc:
        trace("devices.stat_error", path=path, error=str(exc))
        return False
    return stat.S_ISBLK(st.st_mode)


def describe_disk(dev: str) -> str:
    r = run(["lsblk", "-dn", "-o", "SIZE,MODEL", dev], check=False)
    fields = (r.out or "").split()
    return " ".join(fields[:2])


def validate_disks(disks: Sequence[str]) -> list[str]:
    """Confirm every configured disk is a block device, in order.

    Stops at the first offender; nothing has been touched at that point.
    """

    if not disks:
        raise DeviceValidationError(
            "no disks configured",
            hint="list the data disks with --disk (see `lsblk`)",
        )
    console.info("Verifying data disks:")
    for dev in disks:
        if not _is_block_device(dev):
            trace("devices.invalid", device=dev)
            raise DeviceValidationError(
                f"{dev} is not a block device",
                hint="edit the disk list (--disk / \"disks\" in the config file)",
                state={"device": dev},
            )
        console.detail(f"{dev} ({describe_disk(dev)})")
    trace("devices.validated", disks=list(disks))
    return list(disks)


def fstype_of(dev: str) -> str:
    r = run(["lsblk", "-no", "FSTYPE", dev], check=False)
    return (r.out or "").strip()


def uuid_of(path: str) -> str:
    r = run(["blkid", "-s", "UUID", "-o", "value", path], check=False)
    return (r.out or "").strip()
