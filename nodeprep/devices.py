"""Device inspection: which device backs ``/`` and what is on each disk.

Every query goes to the kernel or the block utilities at call time.  The
answers are never cached, so a reboot between two calls is always observed.
"""
from __future__ import annotations

import json
import os
import stat

from .errors import InspectionError
from .executil import run, trace
from .model import DeviceIdentity, NodeLayout, Role, StorageDevice

SWAPS = "/proc/swaps"
_TAGGED_SOURCES = ("UUID=", "PARTUUID=", "LABEL=", "PARTLABEL=")


def _real(path: str) -> str:
    try:
        return os.path.realpath(path)
    except OSError:
        return path


def role_of_disk(disk: str, layout: NodeLayout) -> Role:
    real = _real(disk)
    if real == _real(layout.removable_disk):
        return Role.REMOVABLE_BOOT
    if real == _real(layout.secondary_disk):
        return Role.SECONDARY_FAST
    return Role.UNKNOWN


def _query(cmd: list):
    try:
        return run(cmd, check=False)
    except OSError as exc:
        raise InspectionError(f"{cmd[0]} unavailable: {exc}", state={"cmd": cmd}) from exc


def _resolve_tagged(source: str) -> str:
    r = _query(["blkid", "-l", "-o", "device", "-t", source])
    lines = (r.out or "").strip().splitlines()
    if r.rc != 0 or not lines:
        raise InspectionError(f"blkid could not resolve root source {source}", state={"source": source})
    return lines[0].strip()


def parent_disk(device: str) -> str:
    """Return the whole-disk node for ``device`` (itself when it is a disk)."""
    r = _query(["lsblk", "-no", "PKNAME", device])
    if r.rc != 0:
        raise InspectionError(
            f"lsblk could not resolve the parent of {device}: {(r.err or '').strip()}",
            state={"device": device, "rc": r.rc},
        )
    names = [line.strip() for line in (r.out or "").splitlines() if line.strip()]
    if not names:
        return device
    return f"/dev/{names[0]}"


def current_root_source(layout: NodeLayout) -> StorageDevice:
    r = _query(["findmnt", "-no", "SOURCE", "/"])
    source = (r.out or "").strip().splitlines()[0].strip() if (r.out or "").strip() else ""
    if r.rc != 0 or not source:
        raise InspectionError(
            "mount table did not report a source for /",
            state={"rc": r.rc, "err": (r.err or "").strip()},
        )
    # btrfs and bind mounts report "/dev/x[/subdir]"
    if "[" in source:
        source = source.split("[", 1)[0]
    if source.startswith(_TAGGED_SOURCES):
        source = _resolve_tagged(source)
    if not source.startswith("/dev/"):
        raise InspectionError(f"root is not backed by a block device: {source}", state={"source": source})

    disk = parent_disk(source)
    role = role_of_disk(disk, layout)
    trace("devices.root_source", source=source, disk=disk, role=role.value)
    return StorageDevice(path=source, disk=disk, role=role, partitions=partitions(disk))


def partitions(disk: str) -> tuple:
    """Partition nodes of ``disk`` in name order; empty for a partition or a missing disk."""
    r = run(["lsblk", "-J", "-o", "NAME,PATH,TYPE", disk], check=False)
    if r.rc != 0:
        return ()
    try:
        payload = json.loads(r.out or "{}")
    except json.JSONDecodeError:
        trace("devices.partitions.bad_json", disk=disk)
        return ()
    found = []
    for node in payload.get("blockdevices") or []:
        for child in node.get("children") or []:
            if child.get("type") != "part":
                continue
            path = child.get("path") or child.get("name") or ""
            if path and not path.startswith("/"):
                path = f"/dev/{path}"
            if path:
                found.append(path)
    found.sort()
    return tuple(found)


def _blkid_value(tag: str, path: str) -> str:
    r = run(["blkid", "-s", tag, "-o", "value", path], check=False)
    return (r.out or "").strip()


def uuid_of(path: str) -> str:
    return _blkid_value("UUID", path)


def fstype_of(path: str) -> str:
    return _blkid_value("TYPE", path)


def identify(device: str, layout: NodeLayout) -> DeviceIdentity:
    disk = parent_disk(device)
    ident = DeviceIdentity(
        device=device,
        uuid=uuid_of(device),
        fstype=fstype_of(device),
        role=role_of_disk(disk, layout),
    )
    trace("devices.identify", device=device, uuid=ident.uuid, fstype=ident.fstype, role=ident.role.value)
    return ident


def block_exists(path: str) -> bool:
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


def swap_devices() -> list[str]:
    """Active swap areas as listed by the kernel."""
    try:
        with open(SWAPS, "r", encoding="utf-8") as fh:
            lines = fh.read().splitlines()
    except OSError as exc:
        raise InspectionError(f"cannot read {SWAPS}: {exc}") from exc
    # first line is the column header
    return [line.split()[0] for line in lines[1:] if line.strip()]


def default_target() -> str:
    r = _query(["systemctl", "get-default"])
    if r.rc != 0:
        raise InspectionError("systemctl get-default failed", state={"rc": r.rc, "err": (r.err or "").strip()})
    return (r.out or "").strip()


def disable_swap(dry_run: bool = False):
    run(["swapoff", "-a"], check=True, dry_run=dry_run)
