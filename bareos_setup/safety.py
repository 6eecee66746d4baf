"""Guards around the destructive disk wipe."""

from __future__ import annotations

from typing import Callable, Sequence

from . import console
from .errors import WipeAbortedError
from .executil import require_tools, run, trace
from .model import SetupConfig

WIPE_TOOLS = ("sgdisk", "wipefs")


def confirm_wipe(disks: Sequence[str], token: str = "YES", prompt: Callable[[str], str] = input) -> None:
    """Ask the operator to type ``token``; anything else aborts the run."""

    console.warn(f"Disk wipe requested, this ERASES: {' '.join(disks)}")
    try:
        answer = prompt(f"Type {token} to continue: ")
    except EOFError:
        answer = ""
    if answer != token:
        trace("safety.wipe_refused", disks=list(disks))
        raise WipeAbortedError(
            "Aborted: disk wipe not confirmed",
            hint=f"type exactly {token!r} at the prompt, or drop --wipe-disks",
            state={"disks": list(disks)},
        )
    trace("safety.wipe_confirmed", disks=list(disks))


def wipe_disks(disks: Sequence[str], dry_run: bool = False) -> dict[str, list[str]]:
    """Zap partition tables and signatures on every disk.

    A clean disk makes ``sgdisk``/``wipefs`` complain, so per-disk failures are
    reported and the loop moves on to the next disk.
    """

    failures: dict[str, list[str]] = {}
    for dev in disks:
        for cmd in (["sgdisk", "--zap-all", dev], ["wipefs", "-a", dev]):
            r = run(cmd, check=False, dry_run=dry_run)
            if r.rc != 0:
                failures.setdefault(dev, []).append(cmd[0])
                trace("safety.wipe_error", device=dev, cmd=cmd, rc=r.rc, err=(r.err or "").strip())
                console.warn(f"{cmd[0]} reported rc={r.rc} on {dev}; continuing")
    console.ok("Disk wipe complete")
    return failures


def maybe_wipe(config: SetupConfig, prompt: Callable[[str], str] = input) -> dict[str, list[str]] | None:
    if not config.wipe_disks:
        return None
    require_tools(WIPE_TOOLS)
    confirm_wipe(config.disks, config.wipe_token, prompt)
    return wipe_disks(config.disks, dry_run=config.dry_run)
