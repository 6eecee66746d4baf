"""Storage pool backends (ZFS raidz / LVM + XFS).

Both backends expose the same surface: the commands they need, the packages
that provide them, and an ordered list of idempotent steps that build the pool
and get it mounted at ``pool_mount``.  The backend is picked once from the
configuration by :func:`select_backend`.
"""
from __future__ import annotations

import os
import re

from . import console
from .devices import fstype_of, uuid_of
from .errors import PoolError
from .executil import run, trace
from .model import PoolBackend, SetupConfig, Step, StepPolicy
from .mounts import append_fstab, ensure_dirs, fstab_has_uuid, is_mounted, mount

_PERCENT_SIZE_RE = re.compile(r"^\d+%(FREE|VG|PVS|ORIGIN)$", re.IGNORECASE)


def _probe(cmd: list[str]) -> bool:
    return run(cmd, check=False).rc == 0


class StorageBackend:
    kind: PoolBackend
    tools: tuple[str, ...] = ()
    packages: tuple[str, ...] = ()

    def __init__(self, config: SetupConfig) -> None:
        self.config = config

    def pool_steps(self) -> list[Step]:
        raise NotImplementedError

    def mount_steps(self) -> list[Step]:
        raise NotImplementedError

    def steps(self) -> list[Step]:
        return self.pool_steps() + self.mount_steps()

    def describe(self) -> str:
        raise NotImplementedError


class ZfsPool(StorageBackend):
    kind = PoolBackend.ZFS
    tools = ("zpool", "zfs")
    packages = ("zfsutils-linux",)

    def pool_exists(self) -> bool:
        return _probe(["zpool", "list", self.config.zpool_name])

    def dataset_exists(self) -> bool:
        return _probe(["zfs", "list", self.config.dataset])

    def _dataset_property(self, prop: str) -> str:
        r = run(["zfs", "get", "-H", "-o", "value", prop, self.config.dataset], check=False)
        return (r.out or "").strip() if r.rc == 0 else ""

    def create_pool(self) -> None:
        cfg = self.config
        console.info(f"Creating ZFS pool '{cfg.zpool_name}' (layout: {cfg.zfs_layout})")
        run(["zpool", "create", "-f", cfg.zpool_name, cfg.zfs_layout, *cfg.disks], dry_run=cfg.dry_run)

    def create_dataset(self) -> None:
        cfg = self.config
        opts: list[str] = []
        for opt in cfg.zfs_options:
            opts += ["-O", opt]
        console.info(f"Creating dataset '{cfg.dataset}' with tuned options")
        run(["zfs", "create", *opts, cfg.dataset], dry_run=cfg.dry_run)

    def set_mountpoint(self) -> None:
        cfg = self.config
        run(["zfs", "set", f"mountpoint={cfg.pool_mount}", cfg.dataset], dry_run=cfg.dry_run)

    def mount_dataset(self) -> None:
        run(["zfs", "mount", self.config.dataset], dry_run=self.config.dry_run)
        console.ok(f"ZFS dataset mounted at {self.config.pool_mount}")

    def pool_steps(self) -> list[Step]:
        cfg = self.config
        return [
            Step(f"zfs pool {cfg.zpool_name}", self.create_pool, check=self.pool_exists),
            Step(f"zfs dataset {cfg.dataset}", self.create_dataset, check=self.dataset_exists),
        ]

    def mount_steps(self) -> list[Step]:
        cfg = self.config
        return [
            Step(
                f"zfs mountpoint {cfg.pool_mount}",
                self.set_mountpoint,
                check=lambda: self._dataset_property("mountpoint") == cfg.pool_mount,
            ),
            # an earlier run may already hold the mount
            Step(
                f"zfs mount {cfg.dataset}",
                self.mount_dataset,
                check=lambda: self._dataset_property("mounted") == "yes",
                policy=StepPolicy.BEST_EFFORT,
            ),
        ]

    def describe(self) -> str:
        return f"ZFS {self.config.zfs_layout} pool {self.config.zpool_name} ({len(self.config.disks)} disks)"


def lv_size_args(size: str) -> list[str]:
    """``lvcreate`` takes extents (``-l 100%FREE``) or an absolute size (``-L 20T``)."""

    if _PERCENT_SIZE_RE.match(size):
        return ["-l", size]
    return ["-L", size]


def mkfs_args(fs: str, dev: str) -> list[str]:
    args = [f"mkfs.{fs}"]
    if fs in ("ext2", "ext3", "ext4"):
        args += ["-F"]
    else:
        args += ["-f"]
    return args + [dev]


class LvmPool(StorageBackend):
    kind = PoolBackend.LVM
    tools = ("pvcreate", "vgcreate", "lvcreate", "blkid")
    packages = ("lvm2", "xfsprogs")

    def pv_exists(self, dev: str) -> bool:
        return _probe(["pvs", "--noheadings", dev])

    def vg_exists(self) -> bool:
        return _probe(["vgdisplay", self.config.vg_name])

    def lv_exists(self) -> bool:
        return _probe(["lvdisplay", self.config.lv_device])

    def has_filesystem(self) -> bool:
        return bool(fstype_of(self.config.lv_device))

    def create_pv(self, dev: str) -> None:
        run(["pvcreate", "-ff", "-y", dev], dry_run=self.config.dry_run)
        console.detail(f"pvcreate {dev}")

    def create_vg(self) -> None:
        cfg = self.config
        run(["vgcreate", cfg.vg_name, *cfg.disks], dry_run=cfg.dry_run)

    def create_lv(self) -> None:
        cfg = self.config
        run(["lvcreate", "-n", cfg.lv_name, *lv_size_args(cfg.lv_size), cfg.vg_name], dry_run=cfg.dry_run)

    def format_lv(self) -> None:
        cfg = self.config
        console.info(f"Formatting {cfg.lv_device} as {cfg.lvm_fs}")
        run(mkfs_args(cfg.lvm_fs, cfg.lv_device), dry_run=cfg.dry_run)

    def fstab_line(self, uuid: str) -> str:
        cfg = self.config
        return f"UUID={uuid}  {cfg.pool_mount}  {cfg.lvm_fs}  {cfg.lvm_mount_options}  0 2"

    def fstab_registered(self) -> bool:
        return fstab_has_uuid(self.config.fstab_path, uuid_of(self.config.lv_device))

    def register_fstab(self) -> None:
        # device names are not stable across reboots; persist by UUID
        cfg = self.config
        uuid = uuid_of(cfg.lv_device)
        if not uuid:
            if cfg.dry_run:
                trace("pool.fstab_uuid_pending", device=cfg.lv_device)
                return
            raise PoolError(
                f"could not read filesystem UUID of {cfg.lv_device}",
                hint=f"check `blkid {cfg.lv_device}`",
                state={"device": cfg.lv_device},
            )
        append_fstab(cfg.fstab_path, self.fstab_line(uuid), dry_run=cfg.dry_run)

    def mount_volume(self) -> None:
        mount(self.config.pool_mount, dry_run=self.config.dry_run)
        console.ok(f"LVM volume mounted at {self.config.pool_mount}")

    def pool_steps(self) -> list[Step]:
        cfg = self.config
        steps = [
            Step(f"physical volume {dev}", lambda dev=dev: self.create_pv(dev), check=lambda dev=dev: self.pv_exists(dev))
            for dev in cfg.disks
        ]
        steps += [
            Step(f"volume group {cfg.vg_name}", self.create_vg, check=self.vg_exists),
            Step(f"logical volume {cfg.lv_device}", self.create_lv, check=self.lv_exists),
            Step(f"{cfg.lvm_fs} filesystem on {cfg.lv_device}", self.format_lv, check=self.has_filesystem),
        ]
        return steps

    def mount_steps(self) -> list[Step]:
        cfg = self.config
        return [
            Step(
                f"mount point {cfg.pool_mount}",
                lambda: ensure_dirs(cfg.pool_mount, dry_run=cfg.dry_run),
                check=lambda: os.path.isdir(cfg.pool_mount),
            ),
            Step(f"fstab entry for {cfg.lv_device}", self.register_fstab, check=self.fstab_registered),
            Step(f"mount {cfg.pool_mount}", self.mount_volume, check=lambda: is_mounted(cfg.pool_mount)),
        ]

    def describe(self) -> str:
        cfg = self.config
        return f"LVM {cfg.vg_name}/{cfg.lv_name} ({cfg.lv_size}, {cfg.lvm_fs}) on {len(cfg.disks)} disks"


BACKENDS: dict[PoolBackend, type[StorageBackend]] = {
    PoolBackend.ZFS: ZfsPool,
    PoolBackend.LVM: LvmPool,
}


def select_backend(config: SetupConfig) -> StorageBackend:
    return BACKENDS[PoolBackend(config.pool_backend)](config)
