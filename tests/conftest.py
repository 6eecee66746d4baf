import ast
import dataclasses
import os
import re
import subprocess
import sys
import threading
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterable, Set

import pytest

_ROOT_DIR = Path(__file__).absolute().parent.parent
_PACKAGE_DIR = (_ROOT_DIR / "bareos_setup").absolute()

_EXECUTED_LINES: Dict[Path, Set[int]] = defaultdict(set)
_CANDIDATE_LINES: Dict[Path, Set[int]] = {}
_PREVIOUS_TRACE = None
_PREVIOUS_THREAD_TRACE = None
_TRACE_ACTIVE = False


def _iter_python_files(directory: Path) -> Iterable[Path]:
    for path in directory.rglob("*.py"):
        if path.is_file():
            yield path.absolute()


def _candidate_lines_for(path: Path) -> Set[int]:
    source = path.read_text(encoding="utf-8")
    try:
        tree = ast.parse(source, filename=str(path))
    except SyntaxError:
        return set()

    potential_lines: Set[int] = set()
    for node in ast.walk(tree):
        lineno = getattr(node, "lineno", None)
        end_lineno = getattr(node, "end_lineno", None)
        if lineno is None:
            continue
        if end_lineno is None:
            end_lineno = lineno
        potential_lines.update(range(lineno, end_lineno + 1))

    lines = set()
    source_lines = source.splitlines()
    for lineno in potential_lines:
        if lineno > len(source_lines):
            continue
        text = source_lines[lineno - 1].strip()
        if not text or text.startswith("#"):
            continue
        lines.add(lineno)
    return lines


for file_path in _iter_python_files(_PACKAGE_DIR):
    _CANDIDATE_LINES[file_path] = _candidate_lines_for(file_path)


def _trace(frame, event, arg):
    if event != "line":
        return _trace
    filename = Path(frame.f_code.co_filename)
    try:
        resolved = filename.absolute()
    except OSError:
        return _trace
    if resolved in _CANDIDATE_LINES:
        _EXECUTED_LINES[resolved].add(frame.f_lineno)
    return _trace


def pytest_sessionstart(session):
    global _PREVIOUS_TRACE, _PREVIOUS_THREAD_TRACE, _TRACE_ACTIVE
    if _TRACE_ACTIVE:
        return
    _TRACE_ACTIVE = True
    _EXECUTED_LINES.clear()
    _PREVIOUS_TRACE = sys.gettrace()
    _PREVIOUS_THREAD_TRACE = threading.gettrace()
    sys.settrace(_trace)
    threading.settrace(_trace)


def pytest_sessionfinish(session, exitstatus):
    global _TRACE_ACTIVE
    if not _TRACE_ACTIVE:
        return
    _TRACE_ACTIVE = False

    if _PREVIOUS_TRACE is not None:
        sys.settrace(_PREVIOUS_TRACE)
    else:
        sys.settrace(None)

    threading.settrace(_PREVIOUS_THREAD_TRACE)

    _report_coverage(session)


def _report_coverage(session) -> None:
    if not _CANDIDATE_LINES:
        return

    terminal = session.config.pluginmanager.get_plugin("terminalreporter")
    write_line = terminal.write_line if terminal else print

    rows = []
    total_statements = 0
    total_covered = 0

    for path in sorted(_CANDIDATE_LINES):
        candidates = _CANDIDATE_LINES[path]
        if not candidates:
            continue
        executed = _EXECUTED_LINES.get(path, set()) & candidates
        covered = len(executed)
        statements = len(candidates)
        missing = sorted(candidates - executed)
        coverage_pct = (covered / statements * 100.0) if statements else 100.0

        total_statements += statements
        total_covered += covered

        rows.append((path.relative_to(_ROOT_DIR), statements, len(missing), coverage_pct, missing))

    if not rows:
        return

    write_line("")
    write_line("Coverage summary for 'bareos_setup':")
    header = f"{'Name':<60} {'Stmts':>6} {'Miss':>6} {'Cover':>7}"
    write_line(header)
    write_line("-" * len(header))

    for name, statements, missing_count, coverage_pct, missing in rows:
        write_line(f"{str(name):<60} {statements:>6} {missing_count:>6} {coverage_pct:>6.1f}%")
        if missing_count:
            preview = ", ".join(map(str, missing[:10]))
            suffix = "..." if missing_count > 10 else ""
            write_line(f"    Missing: {preview}{suffix}")

    if total_statements:
        total_pct = total_covered / total_statements * 100.0
        write_line("-" * len(header))
        write_line(f"{'TOTAL':<60} {total_statements:>6} {total_statements - total_covered:>6} {total_pct:>6.1f}%")


# --------------------------------------------------------------------------
# isolated logging for every test


@pytest.fixture(autouse=True)
def _isolated_logs(tmp_path, monkeypatch):
    from bareos_setup import cli, executil

    log_dir = tmp_path / "_logs"
    monkeypatch.setenv("BAREOS_SETUP_BASE_PATH", str(tmp_path / "_base"))
    monkeypatch.setattr(executil, "LOG_DIRS", [str(log_dir)])
    monkeypatch.setattr(executil, "LOG_PATH", None)
    monkeypatch.setattr(cli, "RESULT_LOG_PATH", None)
    return log_dir


# --------------------------------------------------------------------------
# fake host: a stateful stand-in for every external command the pipeline runs

_RUN_USERS = ("devices", "safety", "mounts", "pool", "repository", "catalog", "services", "postcheck")

ARMORED_KEY = "-----BEGIN PGP PUBLIC KEY BLOCK-----\nmQINBFake\n-----END PGP PUBLIC KEY BLOCK-----\n"


class FakeHost:
    """Simulates pools, volumes, mounts, APT, systemd and PostgreSQL."""

    def __init__(self, root: Path):
        self.root = root
        self.calls: list[list[str]] = []
        self.block_devices: set[str] = set()
        self.pools: set[str] = set()
        self.datasets: dict[str, dict[str, str]] = {}
        self.pvs: set[str] = set()
        self.vgs: set[str] = set()
        self.lvs: set[str] = set()
        self.fstypes: dict[str, str] = {}
        self.uuids: dict[str, str] = {}
        self.mounted: dict[str, str] = {}
        self.installed: set[str] = set()
        self.install_failures = 0
        self.units: dict[str, bool] = {}
        self.failing_units: set[str] = set()
        self.stuck_units: set[str] = set()
        self.db_up = True
        self.databases: dict[str, str] = {}
        self.locales: dict[str, str] = {}
        self.roles: set[str] = set()
        self.schema_loads: list[str] = []
        self.conf_dir = root / "conf-enabled"
        self.conf_dir.mkdir(parents=True, exist_ok=True)
        (root / "etc").mkdir(parents=True, exist_ok=True)
        (root / "etc" / "fstab").write_text("# /etc/fstab\n", encoding="utf-8")

    # -- helpers for tests
    def config(self, **overrides):
        from bareos_setup.model import SetupConfig

        disks = overrides.pop("disks", ("/dev/sdb", "/dev/sdc", "/dev/sdd"))
        self.block_devices.update(disks)
        base = dict(
            disks=tuple(disks),
            pool_mount=str(self.root / "srv" / "bareos-disk"),
            storage_dir=str(self.root / "var" / "lib" / "bareos" / "storage"),
            fstab_path=str(self.root / "etc" / "fstab"),
            os_release_path=str(self.root / "etc" / "os-release"),
            keyring_path=str(self.root / "keyrings" / "bareos.gpg"),
            source_list_path=str(self.root / "sources.list.d" / "bareos.list"),
            series="xUbuntu_24.04",
        )
        base.update(overrides)
        return dataclasses.replace(SetupConfig(), **base)

    def commands(self, *prefix: str) -> list[list[str]]:
        n = len(prefix)
        return [c for c in self.calls if tuple(c[:n]) == prefix]

    def psql_calls(self, fragment: str) -> list[str]:
        return [c[-1] for c in self.calls if c and c[0] == "psql" and fragment in c[-1]]

    # -- the run() replacement
    def run(self, cmd, check=True, dry_run=False, timeout=None, env=None, input=None):
        from bareos_setup.executil import Result, format_cmd

        cmd = list(cmd)
        if cmd[:3] == ["sudo", "-u", "postgres"]:
            cmd = cmd[3:]
        self.calls.append(cmd)
        if dry_run:
            return Result(0, "DRY-RUN: " + format_cmd(cmd), "", 0.0)
        rc, out, err = self._dispatch(cmd, input)
        if check and rc != 0:
            raise subprocess.CalledProcessError(rc, cmd, out, err)
        return Result(rc, out, err, 0.0)

    def _dispatch(self, cmd, stdin):
        tool = cmd[0]
        handler = getattr(self, "_" + re.sub(r"[^a-z0-9]", "_", tool), None)
        if handler is None:
            raise AssertionError(f"unexpected command: {cmd}")
        return handler(cmd, stdin)

    @staticmethod
    def _rc(flag: bool):
        return (0, "", "") if flag else (1, "", "not found")

    def _lsblk(self, cmd, stdin):
        dev = cmd[-1]
        if "FSTYPE" in cmd:
            return 0, self.fstypes.get(dev, "") + "\n", ""
        return 0, "7.3T HGST\n", ""

    def _blkid(self, cmd, stdin):
        dev = cmd[-1]
        if dev not in self.uuids:
            return 2, "", ""
        return 0, self.uuids[dev] + "\n", ""

    def _zpool(self, cmd, stdin):
        if cmd[1] == "list":
            return self._rc(cmd[2] in self.pools)
        if cmd[1] == "create":
            self.pools.add(cmd[3])
            return 0, "", ""
        raise AssertionError(cmd)

    def _zfs(self, cmd, stdin):
        sub, ds = cmd[1], cmd[-1]
        if sub == "list":
            return self._rc(ds in self.datasets)
        if sub == "create":
            self.datasets[ds] = {"mountpoint": "/" + ds, "mounted": "yes"}
            return 0, "", ""
        if sub == "get":
            if ds not in self.datasets:
                return 1, "", "dataset does not exist"
            return 0, self.datasets[ds][cmd[-2]] + "\n", ""
        if sub == "set":
            mnt = cmd[2].split("=", 1)[1]
            self.datasets[ds].update(mountpoint=mnt, mounted="yes")
            self.mounted[mnt] = ds
            return 0, "", ""
        if sub == "mount":
            if self.datasets[ds]["mounted"] == "yes":
                return 1, "", "filesystem already mounted"
            self.datasets[ds]["mounted"] = "yes"
            self.mounted[self.datasets[ds]["mountpoint"]] = ds
            return 0, "", ""
        raise AssertionError(cmd)

    def _pvs(self, cmd, stdin):
        return self._rc(cmd[-1] in self.pvs)

    def _pvcreate(self, cmd, stdin):
        self.pvs.add(cmd[-1])
        return 0, "", ""

    def _vgdisplay(self, cmd, stdin):
        return self._rc(cmd[-1] in self.vgs)

    def _vgcreate(self, cmd, stdin):
        self.vgs.add(cmd[1])
        return 0, "", ""

    def _lvdisplay(self, cmd, stdin):
        return self._rc(cmd[-1] in self.lvs)

    def _lvcreate(self, cmd, stdin):
        self.lvs.add(f"/dev/{cmd[-1]}/{cmd[2]}")
        return 0, "", ""

    def _mkfs_xfs(self, cmd, stdin):
        dev = cmd[-1]
        self.fstypes[dev] = "xfs"
        self.uuids[dev] = "0f1e2d3c-4b5a-6978-8796-a5b4c3d2e1f0"
        return 0, "", ""

    _mkfs_ext4 = _mkfs_xfs

    def _mountpoint(self, cmd, stdin):
        return self._rc(cmd[-1] in self.mounted)

    def _mount(self, cmd, stdin):
        self.mounted[cmd[-1]] = "fstab"
        return 0, "", ""

    def _findmnt(self, cmd, stdin):
        src = self.mounted.get(cmd[-1])
        return (0, src + "\n", "") if src else (1, "", "")

    def _mkdir(self, cmd, stdin):
        for p in cmd[2:]:
            os.makedirs(p, exist_ok=True)
        return 0, "", ""

    def _chown(self, cmd, stdin):
        return 0, "", ""

    def _sgdisk(self, cmd, stdin):
        return 0, "", ""

    _wipefs = _sgdisk

    def _apt_get(self, cmd, stdin):
        if cmd[1] == "update" or cmd[1:3] == ["-f", "install"]:
            return 0, "", ""
        if cmd[1] == "install":
            if self.install_failures:
                self.install_failures -= 1
                return 100, "", "E: Unmet dependencies"
            self.installed.update(p for p in cmd[2:] if not p.startswith("-"))
            return 0, "", ""
        raise AssertionError(cmd)

    def _dpkg_query(self, cmd, stdin):
        pkg = cmd[-1]
        if pkg in self.installed:
            return 0, "install ok installed", ""
        return 1, "", f"no packages found matching {pkg}"

    def _gpg(self, cmd, stdin):
        target = cmd[cmd.index("-o") + 1]
        Path(target).write_text("dearmored:" + (stdin or ""), encoding="utf-8")
        return 0, "", ""

    def _a2enconf(self, cmd, stdin):
        (self.conf_dir / f"{cmd[1]}.conf").write_text("", encoding="utf-8")
        return 0, "", ""

    def _systemctl(self, cmd, stdin):
        verb, unit = cmd[1], cmd[-1]
        if verb == "enable":
            if unit in self.failing_units:
                return 1, "", f"Job for {unit}.service failed"
            self.units[unit] = True
            return 0, "", ""
        if verb in ("is-active", "is-enabled"):
            active = self.units.get(unit, False)
            if "--quiet" in cmd:
                return self._rc(active)
            return (0, "active\n", "") if active else (3, "inactive\n", "")
        if verb == "stop":
            if unit not in self.stuck_units:
                self.units[unit] = False
            return 0, "", ""
        if verb == "reload":
            return 0, "", ""
        raise AssertionError(cmd)

    def _env(self, cmd, stdin):
        self.schema_loads.append(os.path.basename(cmd[-1]))
        return 0, "", ""

    def _psql(self, cmd, stdin):
        sql = cmd[-1]
        if not self.db_up:
            return 2, "", "could not connect to server"
        lit = re.search(r"datname='([^']*)'", sql)
        ident = re.search(r'DATABASE "([^"]+)"', sql)
        if sql == "SELECT 1":
            return 0, "1\n", ""
        if sql.startswith("SHOW server_encoding"):
            return 0, "UTF8\n", ""
        if sql.startswith("SELECT 1 FROM pg_database"):
            return 0, ("1\n" if lit.group(1) in self.databases else ""), ""
        if sql.startswith("SELECT 1 FROM pg_roles"):
            role = re.search(r"rolname='([^']*)'", sql).group(1)
            return 0, ("1\n" if role in self.roles else ""), ""
        if "|| '|'" in sql:
            enc = self.databases.get(lit.group(1))
            loc = self.locales.get(lit.group(1), "C")
            return 0, (f"{enc}|{loc}|{loc}\n" if enc else ""), ""
        if sql.startswith("SELECT pg_encoding_to_char"):
            return 0, self.databases.get(lit.group(1), "") + "\n", ""
        if sql.startswith("CREATE ROLE"):
            self.roles.add(re.search(r'ROLE "([^"]+)"', sql).group(1))
            return 0, "", ""
        if sql.startswith("CREATE DATABASE"):
            name = ident.group(1)
            if name in self.databases:
                return 1, "", f'database "{name}" already exists'
            self.databases[name] = "UTF8" if "ENCODING 'UTF8'" in sql else "SQL_ASCII"
            self.locales[name] = re.search(r"LC_COLLATE '([^']+)'", sql).group(1)
            return 0, "", ""
        if sql.startswith("DROP DATABASE"):
            self.databases.pop(ident.group(1), None)
            return 0, "", ""
        if sql.startswith(("REVOKE", "SELECT pg_terminate_backend")):
            return 0, "", ""
        raise AssertionError(sql)


@pytest.fixture
def host(tmp_path, monkeypatch):
    import importlib

    from bareos_setup import devices, executil, repository, services

    fake = FakeHost(tmp_path / "host")
    for name in _RUN_USERS:
        module = importlib.import_module(f"bareos_setup.{name}")
        monkeypatch.setattr(module, "run", fake.run)
    monkeypatch.setattr(devices, "_is_block_device", lambda path: path in fake.block_devices)
    monkeypatch.setattr(executil, "which", lambda tool: f"/usr/bin/{tool}")
    monkeypatch.setattr(repository, "fetch_key", lambda url, series, client=None: ARMORED_KEY)
    monkeypatch.setattr(services, "APACHE_CONF_ENABLED", str(fake.conf_dir))
    return fake
