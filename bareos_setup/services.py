"""systemd activation of the Bareos daemons and the WebUI host."""

from __future__ import annotations

import os
from typing import Sequence

from . import console
from .errors import ServiceStartError
from .executil import run, trace
from .model import SetupConfig, Step, StepPolicy

APACHE_CONF_ENABLED = "/etc/apache2/conf-enabled"


def unit_running(unit: str) -> bool:
    enabled = run(["systemctl", "is-enabled", "--quiet", unit], check=False).rc == 0
    active = run(["systemctl", "is-active", "--quiet", unit], check=False).rc == 0
    return enabled and active


def all_running(units: Sequence[str]) -> bool:
    return all(unit_running(u) for u in units)


def enable_now(unit: str, dry_run: bool = False) -> bool:
    r = run(["systemctl", "enable", "--now", unit], check=False, dry_run=dry_run)
    trace("services.enable", unit=unit, rc=r.rc)
    return r.rc == 0


def start_core(units: Sequence[str], dry_run: bool = False) -> None:
    """The backup system is useless without these; any failure is fatal."""

    failed = [u for u in units if not enable_now(u, dry_run=dry_run)]
    if failed:
        raise ServiceStartError(
            f"Failed to start Bareos daemons: {', '.join(failed)}",
            hint=f"inspect `journalctl -u {failed[0]}`",
            state={"failed": failed},
        )
    console.ok(f"Started {', '.join(units)}")


def start_auxiliary(units: Sequence[str], dry_run: bool = False) -> list[str]:
    failed = []
    for unit in units:
        if not enable_now(unit, dry_run=dry_run):
            failed.append(unit)
            console.warn(f"{unit} failed to start; WebUI unavailable")
    return failed


def enable_webui(conf: str | None, host_unit: str | None, dry_run: bool = False) -> None:
    if not conf:
        return
    r = run(["a2enconf", conf], check=False, dry_run=dry_run)
    if r.rc != 0:
        trace("services.a2enconf_failed", conf=conf, rc=r.rc)
    if host_unit:
        run(["systemctl", "reload", host_unit], check=False, dry_run=dry_run)


def service_steps(config: SetupConfig) -> list[Step]:
    core = tuple(config.core_services)
    aux = tuple(config.aux_services)
    steps = [
        Step(
            f"core services {' '.join(core)}",
            lambda: start_core(core, dry_run=config.dry_run),
            check=lambda: all_running(core),
        )
    ]
    if aux:
        steps.append(
            Step(
                f"auxiliary services {' '.join(aux)}",
                lambda: start_auxiliary(aux, dry_run=config.dry_run),
                check=lambda: all_running(aux),
                policy=StepPolicy.BEST_EFFORT,
            )
        )
    if config.webui_apache_conf:
        steps.append(
            Step(
                f"webui apache config {config.webui_apache_conf}",
                lambda: enable_webui(config.webui_apache_conf, aux[0] if aux else None, dry_run=config.dry_run),
                check=lambda: os.path.exists(f"{APACHE_CONF_ENABLED}/{config.webui_apache_conf}.conf"),
                policy=StepPolicy.BEST_EFFORT,
            )
        )
    return steps
