from __future__ import annotations

import os
from pathlib import Path

from .model import NodeLayout

_DEFAULT_BASE = "/var/lib/nodeprep"
_DEFAULT_MOUNT_ROOT = "/mnt/nodeprep"


def _expand(path: str) -> str:
    candidate = Path(path).expanduser()
    try:
        return str(candidate.resolve())
    except FileNotFoundError:
        return str(candidate)


def base_path() -> str:
    """Return the base directory for nodeprep state, logs and images.

    The location can be overridden via the ``NODEPREP_BASE_PATH`` environment
    variable.  Nothing under it is consulted to decide what state the node is
    in; the devices themselves are the only source of truth for that.
    """

    override = os.environ.get("NODEPREP_BASE_PATH")
    if override:
        return _expand(override)
    return _expand(_DEFAULT_BASE)


def logs_dir() -> str:
    override = os.environ.get("NODEPREP_LOG_DIR")
    if override:
        return _expand(override)
    return str(Path(base_path()) / "logs")


def images_dir() -> str:
    return str(Path(base_path()) / "images")


def mount_root() -> str:
    return os.environ.get("NODEPREP_MOUNT_ROOT") or _DEFAULT_MOUNT_ROOT


def scratch_mount(name: str) -> str:
    """Mount point used when a partition has to be mounted explicitly."""

    return os.path.join(mount_root(), name)


def _env(name: str, default: str) -> str:
    value = os.environ.get(name, "").strip()
    return value or default


def node_layout() -> NodeLayout:
    """Build the two-device layout from environment overrides.

    Only names are read here.  Which device currently backs ``/``, and what
    is on each partition, is always re-queried by the callers.
    """

    keep = tuple(
        item.strip()
        for item in _env("NODEPREP_KEEP", "boot,lost+found").split(",")
        if item.strip()
    )
    return NodeLayout(
        removable_disk=_env("NODEPREP_REMOVABLE_DISK", "/dev/mmcblk0"),
        removable_root=_env("NODEPREP_REMOVABLE_ROOT", "/dev/mmcblk0p1"),
        removable_esp=_env("NODEPREP_REMOVABLE_ESP", "/dev/mmcblk0p10"),
        secondary_disk=_env("NODEPREP_SECONDARY_DISK", "/dev/nvme0n1"),
        secondary_root=_env("NODEPREP_SECONDARY_ROOT", "/dev/nvme0n1p1"),
        boot_config=_env("NODEPREP_BOOT_CONFIG", "boot/extlinux/extlinux.conf"),
        esp_mountpoint=_env("NODEPREP_ESP_MOUNTPOINT", "/boot/efi"),
        keep=keep,
        removable_entry_label=_env("NODEPREP_REMOVABLE_ENTRY_LABEL", "UEFI SD Device"),
        removable_entry_index=_env("NODEPREP_REMOVABLE_ENTRY_INDEX", "0001"),
        headless_target=_env("NODEPREP_HEADLESS_TARGET", "multi-user.target"),
        image=_env("NODEPREP_IMAGE", os.path.join(images_dir(), "sd-blob.img")),
    )
