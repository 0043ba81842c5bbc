"""Guarded execution of the destructive block operations.

``execute`` is the only path to a destructive write.  It re-inspects the
root source, evaluates the guard, demands the confirmation phrase, releases
the target's mounts and only then performs the operation.  Whatever happens
the caller gets an ``OpResult`` back.
"""
from __future__ import annotations

import os
import shutil
import subprocess
from dataclasses import dataclass

from . import devices, mounts, root_sync
from .errors import (
    ConfirmationRejected,
    NodePrepError,
    OperationFailure,
    PreconditionViolation,
)
from .executil import run, trace, udev_settle
from .model import NodeLayout, OpResult, Role, StorageDevice
from .paths import scratch_mount


@dataclass(frozen=True)
class Guard:
    name: str
    role: Role

    def check(self, root: StorageDevice) -> tuple[bool, str]:
        if root.role is self.role:
            return True, ""
        return False, (
            f"root is backed by {root.path} ({root.role.value}); "
            f"{self.name} requires {self.role.value}"
        )


ROOT_IS_REMOVABLE = Guard("root-is-removable", Role.REMOVABLE_BOOT)
ROOT_IS_SECONDARY = Guard("root-is-secondary", Role.SECONDARY_FAST)


def guard_not_live_disk(target: str, root: StorageDevice) -> tuple[bool, str]:
    """Refuse when ``target`` sits on the disk that backs ``/``.

    Returns (ok, reason).
    """
    target_disk = devices.parent_disk(target)
    if os.path.realpath(target_disk) == os.path.realpath(root.disk):
        return False, f"Target {target} is on the live root disk ({root.disk})."
    return True, ""


def require_confirmation(expected: str, token) -> bool:
    # exact match: no case folding, no strip
    return isinstance(token, str) and token == expected


def check_guard(guard: Guard, layout: NodeLayout) -> tuple[bool, str]:
    root = devices.current_root_source(layout)
    ok, reason = guard.check(root)
    trace("safety.check_guard", guard=guard.name, ok=ok, root=root.path, role=root.role.value)
    return ok, reason


def failure(operation: str, exc: NodePrepError) -> OpResult:
    return OpResult(
        ok=False,
        operation=operation,
        summary=str(exc),
        error=type(exc).__name__,
        detail=dict(exc.state),
    )


def capture(name: str, fn) -> OpResult:
    """Call ``fn`` and turn anything it raises into a failed ``OpResult``."""
    try:
        return fn()
    except NodePrepError as exc:
        trace("safety.failed", operation=name, error=type(exc).__name__, message=str(exc))
        return failure(name, exc)
    except Exception as exc:
        trace("safety.unexpected", operation=name, error=type(exc).__name__, message=str(exc))
        wrapped = OperationFailure(f"{name}: {exc}", state={"exception": type(exc).__name__})
        return failure(name, wrapped)


def _step(state: dict, cmd: list, dry_run: bool):
    state.setdefault("commands", []).append(list(cmd))
    return run(cmd, check=True, dry_run=dry_run)


@dataclass
class CloneOperation:
    """Lay a single ext4 partition on the secondary disk and copy ``/`` onto it."""

    target: str
    partition: str
    phrase: str = "erase ssd"
    kind: str = "clone"

    def describe(self) -> str:
        return f"clone live root onto {self.partition} (repartitions {self.target})"

    def perform(self, layout: NodeLayout, state: dict, dry_run: bool = False) -> str:
        _step(state, ["parted", "-s", self.target, "mklabel", "gpt"], dry_run)
        _step(state, ["parted", "-s", "-a", "optimal", self.target, "mkpart", "primary", "ext4", "0%", "100%"], dry_run)
        _step(state, ["partprobe", self.target], dry_run)
        udev_settle()
        _step(state, ["mkfs.ext4", "-F", self.partition], dry_run)
        if dry_run:
            stats = root_sync.rsync_root(scratch_mount("clone"), dry_run=True)
        else:
            with mounts.mounted(self.partition, scratch_mount("clone")) as dst:
                state.setdefault("commands", []).append(root_sync.rsync_command(dst))
                stats = root_sync.rsync_root(dst)
                state["rsync"] = stats
                state["marker"] = root_sync.write_clone_marker(dst, stats)
        state["rsync"] = stats
        return f"cloned / onto {self.partition}"


@dataclass
class DeleteExceptOperation:
    """Delete every top-level entry of a partition except the keep-list."""

    target: str
    keep: tuple = ("boot", "lost+found")
    phrase: str = "strip rootfs"
    kind: str = "delete-except"

    def describe(self) -> str:
        return f"delete everything on {self.target} except {', '.join(self.keep)}"

    def perform(self, layout: NodeLayout, state: dict, dry_run: bool = False) -> str:
        deleted = state.setdefault("deleted", [])
        with mounts.mounted(self.target, scratch_mount("strip"), read_only=dry_run) as top:
            if os.path.realpath(top) == "/":
                raise OperationFailure(f"{self.target} is mounted at /; refusing to strip", state=state)
            for name in sorted(os.listdir(top)):
                if name in self.keep:
                    continue
                path = os.path.join(top, name)
                if not dry_run:
                    if os.path.isdir(path) and not os.path.islink(path):
                        shutil.rmtree(path)
                    else:
                        os.remove(path)
                deleted.append(name)
            trace("safety.deleted", target=self.target, entries=deleted, dry_run=dry_run)
        return f"removed {len(deleted)} top-level entries from {self.target}"


@dataclass
class ImageWriteOperation:
    """Overwrite a whole device with an image file."""

    image: str
    target: str
    phrase: str = "reimage microsd"
    kind: str = "image-write"

    def describe(self) -> str:
        return f"write {self.image} over {self.target}"

    def perform(self, layout: NodeLayout, state: dict, dry_run: bool = False) -> str:
        _step(state, ["dd", f"if={self.image}", f"of={self.target}", "bs=4M", "conv=fdatasync"], dry_run)
        _step(state, ["partprobe", self.target], dry_run)
        udev_settle()
        return f"wrote {os.path.basename(self.image)} to {self.target}"


def execute(op, guard: Guard, confirm, layout: NodeLayout, dry_run: bool = False) -> OpResult:
    def _body() -> OpResult:
        root = devices.current_root_source(layout)
        ok, reason = guard.check(root)
        if ok:
            ok, reason = guard_not_live_disk(op.target, root)
        if not ok:
            trace("safety.guard_failed", operation=op.kind, guard=guard.name, reason=reason)
            raise PreconditionViolation(reason, state={"root": root.path, "role": root.role.value, "target": op.target})

        if not require_confirmation(op.phrase, confirm):
            trace("safety.confirm_rejected", operation=op.kind)
            raise ConfirmationRejected(
                f"{op.describe()}: confirmation must be exactly '{op.phrase}'",
                state={"expected": op.phrase},
            )

        state: dict = {"target": op.target, "dry_run": dry_run}
        trace("safety.perform", operation=op.kind, target=op.target, dry_run=dry_run)
        try:
            state["unmounted"] = mounts.unmount_device(op.target, dry_run=dry_run)
            summary = op.perform(layout, state, dry_run=dry_run)
            _step(state, ["sync"], dry_run)
        except subprocess.CalledProcessError as exc:
            state["rc"] = exc.returncode
            state["stderr"] = (exc.stderr or "").strip()
            raise OperationFailure(
                f"{op.kind} failed running {' '.join(exc.cmd)}: {state['stderr'] or exc.returncode}",
                state=state,
            ) from exc
        except OperationFailure:
            raise
        except (NodePrepError, OSError) as exc:
            if isinstance(exc, NodePrepError):
                state.update(exc.state)
            raise OperationFailure(f"{op.kind} failed: {exc}", state=state) from exc

        trace("safety.done", operation=op.kind, target=op.target, dry_run=dry_run)
        return OpResult(ok=True, operation=op.kind, summary=summary, detail=state)

    return capture(op.kind, _body)
