from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class Role(str, Enum):
    REMOVABLE_BOOT = "removable-boot"
    SECONDARY_FAST = "secondary-fast"
    UNKNOWN = "unknown"


@dataclass
class NodeLayout:
    removable_disk: str = "/dev/mmcblk0"
    removable_root: str = "/dev/mmcblk0p1"
    removable_esp: str = "/dev/mmcblk0p10"
    secondary_disk: str = "/dev/nvme0n1"
    secondary_root: str = "/dev/nvme0n1p1"
    boot_config: str = "boot/extlinux/extlinux.conf"
    esp_mountpoint: str = "/boot/efi"
    keep: tuple = ("boot", "lost+found")
    removable_entry_label: str = "UEFI SD Device"
    removable_entry_index: str = "0001"
    headless_target: str = "multi-user.target"
    image: str = "/var/lib/nodeprep/images/sd-blob.img"

    @property
    def removable_selector(self) -> str:
        return self.removable_root


@dataclass(frozen=True)
class StorageDevice:
    path: str
    disk: str
    role: Role
    partitions: tuple = ()


@dataclass(frozen=True)
class DeviceIdentity:
    device: str
    uuid: str
    fstype: str
    role: Role


@dataclass(frozen=True)
class FirmwareBootEntry:
    index: str
    label: str
    active: bool
    device_path: str = ""


@dataclass
class CheckResult:
    name: str
    passed: bool
    detail: str = ""


@dataclass
class OpResult:
    ok: bool
    operation: str
    summary: str
    error: Optional[str] = None
    detail: dict = field(default_factory=dict)


@dataclass
class BootRecordChange:
    path: str
    previous: str
    current: str
    changed: bool
