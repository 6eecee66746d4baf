from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Callable, Optional


class PoolBackend(str, enum.Enum):
    ZFS = "ZFS"
    LVM = "LVM"


class StepPolicy(str, enum.Enum):
    FATAL = "fatal"
    BEST_EFFORT = "best-effort"


class CatalogState(str, enum.Enum):
    ABSENT = "absent"
    VALID = "present-valid"
    INVALID = "present-invalid"


DEFAULT_DISKS = ("/dev/sdb", "/dev/sdc", "/dev/sdd", "/dev/sde", "/dev/sdf", "/dev/sdg", "/dev/sdh")
DEFAULT_ZFS_OPTIONS = (
    "compression=lz4",
    "atime=off",
    "xattr=sa",
    "acltype=posixacl",
    "recordsize=1M",
)
DEFAULT_PACKAGES = ("bareos", "bareos-database-postgresql", "bareos-webui")
DEFAULT_CORE_SERVICES = ("bareos-director", "bareos-storage", "bareos-filedaemon")
DEFAULT_AUX_SERVICES = ("apache2",)


@dataclass(frozen=True)
class SetupConfig:
    pool_backend: PoolBackend = PoolBackend.ZFS
    disks: tuple[str, ...] = DEFAULT_DISKS
    wipe_disks: bool = False
    wipe_token: str = "YES"
    pool_mount: str = "/srv/bareos-disk"
    storage_dir: str = "/var/lib/bareos/storage"
    bind_mount: bool = True
    # ZFS
    zpool_name: str = "bareospool"
    zfs_layout: str = "raidz2"
    zfs_dataset: Optional[str] = None
    zfs_options: tuple[str, ...] = DEFAULT_ZFS_OPTIONS
    # LVM
    vg_name: str = "bareos-vg"
    lv_name: str = "bareos-lv"
    lv_size: str = "100%FREE"
    lvm_fs: str = "xfs"
    lvm_mount_options: str = "noatime,nodiratime"
    # catalog
    db_name: str = "bareos"
    db_user: str = "bareos"
    db_locale: str = "C.UTF-8"
    catalog_auto_repair: bool = True
    bareos_scripts_dir: str = "/usr/lib/bareos/scripts"
    # repository
    series: Optional[str] = None
    repo_base_url: str = "https://download.bareos.org/current"
    keyring_path: str = "/usr/share/keyrings/bareos.gpg"
    source_list_path: str = "/etc/apt/sources.list.d/bareos.list"
    packages: tuple[str, ...] = DEFAULT_PACKAGES
    # services
    core_services: tuple[str, ...] = DEFAULT_CORE_SERVICES
    aux_services: tuple[str, ...] = DEFAULT_AUX_SERVICES
    webui_apache_conf: Optional[str] = "bareos-webui"
    director_service: str = "bareos-director"
    # host
    service_user: str = "bareos"
    service_group: str = "bareos"
    fstab_path: str = "/etc/fstab"
    os_release_path: str = "/etc/os-release"
    dry_run: bool = False

    @property
    def dataset(self) -> str:
        return self.zfs_dataset or f"{self.zpool_name}/disk"

    @property
    def lv_device(self) -> str:
        return f"/dev/{self.vg_name}/{self.lv_name}"


@dataclass
class Step:
    """One provisioning step: ``check`` reports whether ``action`` is already done."""

    name: str
    action: Callable[[], object]
    check: Optional[Callable[[], bool]] = None
    policy: StepPolicy = StepPolicy.FATAL


@dataclass
class StepOutcome:
    name: str
    status: str  # done | skipped | warned
    duration: float = 0.0
    error: Optional[str] = None


@dataclass
class PipelineReport:
    series: Optional[str] = None
    # state found on arrival, before create or repair
    catalog_state: Optional[CatalogState] = None
    catalog_repaired: bool = False
    outcomes: list[StepOutcome] = field(default_factory=list)

    def names(self, status: str) -> list[str]:
        return [o.name for o in self.outcomes if o.status == status]
