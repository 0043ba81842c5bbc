"""Mount-table queries and explicit mount/unmount helpers."""
from __future__ import annotations

import contextlib
import os
from subprocess import CalledProcessError

from . import devices
from .errors import MountError
from .executil import run, trace, udev_settle

MOUNTINFO = "/proc/self/mountinfo"


def _device_realpath(dev: str) -> str:
    try:
        return os.path.realpath(dev)
    except OSError:
        return dev


def device_mountpoints(dev: str) -> list[str]:
    """Return every mount point currently backed by ``dev``."""
    mountpoints: list[str] = []
    real = _device_realpath(dev)
    try:
        with open(MOUNTINFO, "r", encoding="utf-8") as fh:
            for line in fh:
                parts = line.strip().split()
                if not parts:
                    continue
                with contextlib.suppress(ValueError):
                    dash = parts.index("-")
                    source_idx = dash + 2
                    if source_idx >= len(parts):
                        continue
                    source = parts[source_idx]
                    if not source.startswith("/"):
                        continue
                    if _device_realpath(source) == real:
                        mountpoints.append(parts[4].replace("\\040", " "))
    except FileNotFoundError:
        return []
    except OSError as exc:
        trace("mounts.mountinfo_error", device=dev, error=str(exc))
    return mountpoints


def findmnt_source(mountpoint: str) -> str:
    r = run(["findmnt", "-no", "SOURCE", mountpoint], check=False)
    if r.rc != 0:
        return ""
    lines = (r.out or "").strip().splitlines()
    return lines[0].strip() if lines else ""


def _nodes_of(target: str) -> list[str]:
    # A whole disk releases all of its partitions; a partition only itself.
    nodes = list(devices.partitions(target))
    if target not in nodes:
        nodes.append(target)
    return nodes


def unmount_device(target: str, dry_run: bool = False) -> list[str]:
    """Unmount every mounted node of ``target``; return the released mount points."""
    released: list[str] = []
    for node in _nodes_of(target):
        # deepest first so nested mounts come off before their parents
        for mp in sorted(device_mountpoints(node), key=len, reverse=True):
            if mp == "/":
                raise MountError(f"{node} backs the running root filesystem", state={"node": node})
            try:
                run(["umount", mp], check=True, dry_run=dry_run)
            except CalledProcessError as exc:
                raise MountError(
                    f"failed to unmount {mp} ({node}): {(exc.stderr or '').strip() or exc.returncode}",
                    state={"node": node, "mountpoint": mp, "released": released},
                ) from exc
            released.append(mp)
    if released:
        trace("mounts.released", target=target, mountpoints=released, dry_run=dry_run)
        udev_settle()
    return released


@contextlib.contextmanager
def mounted(device: str, mountpoint: str, read_only: bool = False, replay_journal: bool = True):
    """Yield a directory holding the root of ``device``'s filesystem.

    When ``device`` is already mounted its existing mount point is reused:
    the mount table identifies the backing device, so that directory cannot
    be a stale copy.  Otherwise ``device`` is mounted at ``mountpoint`` and
    unmounted again on exit.

    ``replay_journal=False`` adds ``noload`` to a read-only mount so a dirty
    ext4 journal is left as found.
    """
    existing = device_mountpoints(device)
    if existing:
        trace("mounts.reuse", device=device, mountpoint=existing[0])
        yield existing[0]
        return

    os.makedirs(mountpoint, exist_ok=True)
    cmd = ["mount"]
    if read_only:
        cmd += ["-o", "ro" if replay_journal else "ro,noload"]
    cmd += [device, mountpoint]
    try:
        run(cmd, check=True)
    except CalledProcessError as exc:
        raise MountError(
            f"could not mount {device} at {mountpoint}: {(exc.stderr or '').strip() or exc.returncode}",
            state={"device": device, "mountpoint": mountpoint},
        ) from exc
    trace("mounts.mounted", device=device, mountpoint=mountpoint, read_only=read_only)
    try:
        yield mountpoint
    finally:
        run(["umount", mountpoint], check=False)
        with contextlib.suppress(OSError):
            os.rmdir(mountpoint)
