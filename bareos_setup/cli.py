"""CLI entrypoint for the Bareos server provisioner."""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from typing import Any, Callable, Dict, Optional

from . import console
from .config import as_dict, load_config
from .errors import ProvisionError
from .executil import append_jsonl, resolve_log_path, trace
from .model import PipelineReport, PoolBackend, SetupConfig
from .paths import artifacts_dir, logs_dir
from .pipeline import planned_steps, run_pipeline
from .postcheck import run_postcheck

RESULT_CODES: Dict[str, int] = {
    "SETUP_OK": 0,
    "PLAN_OK": 0,
    "DRYRUN_OK": 0,
    "VERIFY_OK": 0,
    "FAIL_CONFIG": 2,
    "FAIL_MISSING_TOOL": 3,
    "FAIL_INVALID_DEVICE": 4,
    "FAIL_WIPE_ABORTED": 5,
    "FAIL_POOL": 6,
    "FAIL_REPO_KEY": 7,
    "FAIL_PACKAGES": 8,
    "FAIL_DATABASE": 9,
    "FAIL_CATALOG": 10,
    "FAIL_SERVICES": 11,
    "FAIL_VERIFY": 12,
    "FAIL_GENERIC": 13,
    "FAIL_UNHANDLED": 14,
}

RESULT_LOG_PATH: Optional[str] = None
CLI_START_MONO = time.perf_counter()

# argparse dest -> SetupConfig field, for flags whose names differ
_DEST_TO_FIELD = {
    "backend": "pool_backend",
    "disk": "disks",
    "zfs_option": "zfs_options",
    "scripts_dir": "bareos_scripts_dir",
    "keyring": "keyring_path",
    "source_list": "source_list_path",
    "package": "packages",
    "core_service": "core_services",
    "aux_service": "aux_services",
    "webui_conf": "webui_apache_conf",
    "fstab": "fstab_path",
    "os_release": "os_release_path",
}
_PASSTHROUGH = (
    "wipe_disks",
    "wipe_token",
    "pool_mount",
    "storage_dir",
    "bind_mount",
    "zpool_name",
    "zfs_layout",
    "zfs_dataset",
    "vg_name",
    "lv_name",
    "lv_size",
    "lvm_fs",
    "lvm_mount_options",
    "db_name",
    "db_user",
    "db_locale",
    "catalog_auto_repair",
    "series",
    "repo_base_url",
    "director_service",
    "service_user",
    "service_group",
    "dry_run",
)


def _result_log_path() -> str:
    global RESULT_LOG_PATH
    if RESULT_LOG_PATH:
        return RESULT_LOG_PATH
    path = resolve_log_path()
    if not path:
        path = os.path.join(logs_dir(), "bareos_setup.jsonl")
    RESULT_LOG_PATH = path
    return path


def _emit_result(
        kind: str,
        extra: Optional[Dict[str, Any]] = None,
        exit_code: Optional[int] = None,
) -> None:
    payload: Dict[str, Any] = {"result": kind, "ts": int(time.time())}
    if extra:
        payload.update(extra)
    payload.setdefault("log_path", _result_log_path())
    payload["timing_total_ms"] = int(max(0.0, (time.perf_counter() - CLI_START_MONO) * 1000))
    append_jsonl(_result_log_path(), payload)
    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str))
    code = RESULT_CODES.get(kind, 1) if exit_code is None else exit_code
    raise SystemExit(code)


def _write_json_artifact(name: str, data: Dict[str, Any]) -> Optional[str]:
    base = artifacts_dir()
    path = os.path.join(base, f"{name}_{time.strftime('%Y%m%d_%H%M%S')}.json")
    payload = dict(data)
    payload["artifact"] = path
    try:
        os.makedirs(base, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, default=str)
    except OSError as exc:
        trace("cli.artifact_failed", path=path, error=str(exc))
        return None
    return path


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bareos-setup",
        description="Provision a Bareos backup server: storage pool, repository, catalog, services.",
    )
    parser.add_argument("--config", default=None, help="JSON file with configuration values")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--plan", action="store_true", help="print the step plan and exit")
    mode.add_argument("--verify", action="store_true", help="report the state of a provisioned host")
    parser.add_argument("--dry-run", dest="dry_run", action="store_true", default=None)

    pool = parser.add_argument_group("storage pool")
    pool.add_argument("--backend", type=str.upper, choices=[b.value for b in PoolBackend], default=None)
    pool.add_argument("--disk", action="append", default=None, help="data disk (repeatable)")
    pool.add_argument("--wipe-disks", dest="wipe_disks", action="store_true", default=None)
    pool.add_argument("--wipe-token", default=None)
    pool.add_argument("--pool-mount", default=None)
    pool.add_argument("--storage-dir", default=None)
    pool.add_argument("--bind-mount", dest="bind_mount", action="store_true", default=None)
    pool.add_argument("--no-bind-mount", dest="bind_mount", action="store_false", default=None)
    pool.add_argument("--zpool-name", default=None)
    pool.add_argument("--zfs-layout", default=None)
    pool.add_argument("--zfs-dataset", default=None)
    pool.add_argument("--zfs-option", action="append", default=None, help="dataset property (repeatable)")
    pool.add_argument("--vg-name", default=None)
    pool.add_argument("--lv-name", default=None)
    pool.add_argument("--lv-size", default=None)
    pool.add_argument("--lvm-fs", default=None)
    pool.add_argument("--lvm-mount-options", default=None)

    catalog = parser.add_argument_group("catalog")
    catalog.add_argument("--db-name", default=None)
    catalog.add_argument("--db-user", default=None)
    catalog.add_argument("--db-locale", default=None)
    catalog.add_argument("--catalog-auto-repair", dest="catalog_auto_repair", action="store_true", default=None)
    catalog.add_argument("--no-catalog-auto-repair", dest="catalog_auto_repair", action="store_false", default=None)
    catalog.add_argument("--scripts-dir", default=None)

    repo = parser.add_argument_group("repository")
    repo.add_argument("--series", default=None, help="repository series, e.g. xUbuntu_24.04")
    repo.add_argument("--repo-base-url", default=None)
    repo.add_argument("--keyring", default=None)
    repo.add_argument("--source-list", default=None)
    repo.add_argument("--package", action="append", default=None, help="package to install (repeatable)")

    svc = parser.add_argument_group("services")
    svc.add_argument("--core-service", action="append", default=None)
    svc.add_argument("--aux-service", action="append", default=None)
    svc.add_argument("--webui-conf", default=None)
    svc.add_argument("--director-service", default=None)
    svc.add_argument("--service-user", default=None)
    svc.add_argument("--service-group", default=None)

    host = parser.add_argument_group("host")
    host.add_argument("--fstab", default=None)
    host.add_argument("--os-release", default=None)
    return parser


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for dest, field in _DEST_TO_FIELD.items():
        out[field] = getattr(args, dest)
    for name in _PASSTHROUGH:
        out[name] = getattr(args, name)
    return out


def _print_summary(config: SetupConfig, report: PipelineReport) -> None:
    print()
    console.ok(f"POOL_MODE: {config.pool_backend.value}")
    console.ok(f"Pool mount: {config.pool_mount}  ->  {config.storage_dir} (bind: {str(config.bind_mount).lower()})")
    console.ok(f"Repo series: {report.series}")
    if report.catalog_state is not None:
        found = report.catalog_state.value
        if report.catalog_repaired:
            console.ok(f"Catalog: {config.db_name} (found {found}, recreated as UTF-8)")
        else:
            console.ok(f"Catalog: {config.db_name} ({found})")
    warned = report.names("warned")
    if warned:
        console.warn(f"Completed with warnings: {', '.join(warned)}")
    print()
    console.info("Quick checks:")
    units = " ".join((*config.core_services, *config.aux_services))
    console.detail(f"df -h {config.pool_mount} {config.storage_dir}")
    console.detail("(ZFS) zpool status && zfs list   |  (LVM) lvs && vgs && pvs")
    console.detail(f"systemctl status --no-pager {units}")
    console.detail(
        "sudo -u postgres psql -c \"SELECT datname, pg_encoding_to_char(encoding) AS enc, datcollate, datctype "
        f"FROM pg_database WHERE datname='{config.db_name}';\""
    )
    console.detail("WebUI:  http://<server_ip>/bareos-webui/")


def _report_payload(report: PipelineReport) -> Dict[str, Any]:
    return {
        "series": report.series,
        "catalog_state": report.catalog_state.value if report.catalog_state else None,
        "catalog_repaired": report.catalog_repaired,
        "steps": [vars(o) for o in report.outcomes],
    }


def _main_impl(argv: Optional[list[str]] = None, prompt: Callable[[str], str] = input) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    mode = "plan" if args.plan else ("verify" if args.verify else ("dry-run" if args.dry_run else "full"))
    trace("cli.args", mode=mode, config=args.config, log_path=_result_log_path())

    config = load_config(args.config, _overrides(args))

    if args.plan:
        _emit_result("PLAN_OK", {"mode": mode, "config": as_dict(config), "steps": planned_steps(config)})

    if args.verify:
        postcheck = run_postcheck(config)
        for err in postcheck["errors"]:
            console.warn(f"{err['check']}: {err['why']}")
        _emit_result("VERIFY_OK" if postcheck["ok"] else "FAIL_VERIFY", {"mode": mode, "postcheck": postcheck})

    report = run_pipeline(config, prompt=prompt)
    _print_summary(config, report)
    payload = {"mode": mode, "config": as_dict(config), "report": _report_payload(report)}
    payload["artifact"] = _write_json_artifact("setup", payload)
    _emit_result("DRYRUN_OK" if config.dry_run else "SETUP_OK", payload)
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    try:
        return _main_impl(argv)
    except SystemExit:
        raise
    except ProvisionError as exc:
        console.fail(str(exc))
        if exc.hint:
            console.detail(f"hint: {exc.hint}")
        _emit_result(exc.result, extra={"why": str(exc), "hint": exc.hint, "state": exc.state})
    except Exception as exc:  # noqa: BLE001
        trace("cli.unhandled", error=repr(exc))
        _emit_result("FAIL_UNHANDLED", extra={"error": str(exc)})
    return 0


if __name__ == "__main__":
    sys.exit(main())
