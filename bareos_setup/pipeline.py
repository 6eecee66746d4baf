"""The ordered provisioning step table.

Order matters: disks are validated before anything destructive, the pool is
mounted before the bind mount points at it, the repository key lands before
the source list, and the catalog is settled before the daemons start.
"""

from __future__ import annotations

import os
from typing import Callable

from . import console
from .catalog import check_server, ensure_catalog, ensure_server_running
from .devices import validate_disks
from .errors import MissingToolError
from .executil import require_tools, trace
from .model import CatalogState, PipelineReport, SetupConfig, Step
from .mounts import bind_mount_steps, ensure_dirs
from .pool import StorageBackend, select_backend
from .repository import (
    REPO_PREREQS,
    apt_install,
    apt_update,
    install_with_repair,
    packages_installed,
    register_repository,
    resolve_series,
    source_line,
    source_registered,
)
from .safety import maybe_wipe
from .services import service_steps, unit_running
from .steps import run_steps

PREFLIGHT_TOOLS = ("lsblk", "apt-get", "systemctl")
DATABASE_PACKAGES = ("postgresql",)
DATABASE_UNIT = "postgresql"


def _install_packages(packages, dry_run: bool) -> None:
    apt_update(dry_run=dry_run)
    apt_install(packages, dry_run=dry_run)


def _require_backend_tools(backend: StorageBackend, dry_run: bool) -> None:
    console.info(f"Storage pool: {backend.describe()}")
    try:
        require_tools(backend.tools)
    except MissingToolError as exc:
        if not dry_run:
            raise
        # nothing was installed during a dry run
        console.warn(f"{exc} (dry run, continuing)")


def _catalog_action(config: SetupConfig, report: PipelineReport) -> Callable[[], None]:
    def action() -> None:
        state = ensure_catalog(config)
        report.catalog_state = state
        # repair_catalog raises on failure
        report.catalog_repaired = (
            state is CatalogState.INVALID and config.catalog_auto_repair and not config.dry_run
        )

    return action


def _package_action(config: SetupConfig) -> Callable[[], None]:
    def action() -> None:
        apt_update(dry_run=config.dry_run)
        install_with_repair(config.packages, dry_run=config.dry_run)
        console.ok("Bareos packages installed")

    return action


def build_steps(
        config: SetupConfig,
        prompt: Callable[[str], str] = input,
        report: PipelineReport | None = None,
) -> list[Step]:
    report = report if report is not None else PipelineReport()
    backend = select_backend(config)
    series = resolve_series(config.series, config.os_release_path)
    report.series = series
    line = source_line(config.repo_base_url, series, config.keyring_path)
    dry = config.dry_run

    steps: list[Step] = [
        Step("preflight tools", lambda: require_tools(PREFLIGHT_TOOLS)),
        Step(
            f"directories {config.pool_mount} {config.storage_dir}",
            lambda: ensure_dirs(config.pool_mount, config.storage_dir, dry_run=dry),
            check=lambda: os.path.isdir(config.pool_mount) and os.path.isdir(config.storage_dir),
        ),
        Step("validate disks", lambda: validate_disks(config.disks)),
    ]
    if config.wipe_disks:
        steps.append(Step("wipe disks", lambda: maybe_wipe(config, prompt)))

    steps += [
        Step(
            f"{backend.kind.value} packages {' '.join(backend.packages)}",
            lambda: _install_packages(backend.packages, dry),
            check=lambda: packages_installed(backend.packages),
        ),
        Step(f"{backend.kind.value} tools", lambda: _require_backend_tools(backend, dry)),
    ]
    steps += backend.steps()
    steps += bind_mount_steps(config)

    steps += [
        Step(
            "repository prerequisites",
            lambda: apt_install(REPO_PREREQS, dry_run=dry),
            check=lambda: packages_installed(REPO_PREREQS),
        ),
        Step(
            f"bareos repository {series}",
            lambda: register_repository(
                config.repo_base_url,
                series,
                config.keyring_path,
                config.source_list_path,
                dry_run=dry,
            ),
            check=lambda: source_registered(config.source_list_path, line, config.keyring_path),
        ),
        Step(
            f"bareos packages {' '.join(config.packages)}",
            _package_action(config),
            check=lambda: packages_installed(config.packages),
        ),
        Step(
            "postgresql packages",
            lambda: apt_install(DATABASE_PACKAGES, dry_run=dry),
            check=lambda: packages_installed(DATABASE_PACKAGES),
        ),
        Step(
            "postgresql service",
            lambda: ensure_server_running(config),
            check=lambda: unit_running(DATABASE_UNIT),
        ),
        Step("postgresql connectivity", lambda: check_server(dry_run=dry)),
        Step(f"bareos catalog {config.db_name}", _catalog_action(config, report)),
    ]
    steps += service_steps(config)
    trace("pipeline.built", steps=[s.name for s in steps], backend=backend.kind.value, series=series)
    return steps


def planned_steps(config: SetupConfig) -> list[dict]:
    return [
        {"name": s.name, "policy": s.policy.value, "checked": s.check is not None}
        for s in build_steps(config, prompt=lambda _msg: "")
    ]


def run_pipeline(config: SetupConfig, prompt: Callable[[str], str] = input) -> PipelineReport:
    report = PipelineReport()
    steps = build_steps(config, prompt=prompt, report=report)
    console.info(f"Using Bareos repository series: {report.series}")
    report.outcomes = run_steps(steps)
    trace(
        "pipeline.done",
        done=report.names("done"),
        skipped=report.names("skipped"),
        warned=report.names("warned"),
        catalog=report.catalog_state.value if report.catalog_state else None,
        catalog_repaired=report.catalog_repaired,
    )
    return report
