"""Named, independently evaluated invariants about the node's boot state.

Checks only read.  Partitions that are not already mounted are mounted
read-only with ``noload`` under the scratch mount root, and the temporary
mount point is removed again afterwards.
"""
from __future__ import annotations

import os
from typing import Callable, Dict, List

from . import bootconf, devices, firmware, headless, mounts, root_sync
from .executil import trace
from .model import CheckResult, NodeLayout, Role
from .paths import scratch_mount

ROOT_TREE_MARKERS = ("etc", "usr", "boot")

AUDIT = (
    "secondary_clone_present",
    "root_source_secondary",
    "boot_selector_secondary",
    "firmware_boot_current_removable",
    "removable_root_stripped",
    "esp_mounted_from_removable",
    "swap_disabled",
    "headless_target",
)


def _secondary_clone_present(layout: NodeLayout):
    part = layout.secondary_root
    if not devices.block_exists(part):
        return False, f"{part} does not exist"
    uuid = devices.uuid_of(part)
    fstype = devices.fstype_of(part)
    if not uuid or fstype != "ext4":
        return False, f"{part} has no ext4 filesystem (uuid={uuid or '-'}, type={fstype or '-'})"
    with mounts.mounted(part, scratch_mount("verify-secondary"), read_only=True, replay_journal=False) as top:
        missing = [m for m in ROOT_TREE_MARKERS if not os.path.isdir(os.path.join(top, m))]
        complete = root_sync.clone_marker_present(top)
    if missing:
        return False, f"{part} lacks a root tree: missing {', '.join(missing)}"
    if not complete:
        return False, f"{part} holds an unfinished clone: no {root_sync.CLONE_MARKER}"
    return True, f"{part} UUID={uuid}"


def _root_is(role: Role):
    def _check(layout: NodeLayout):
        root = devices.current_root_source(layout)
        return root.role is role, f"/ from {root.path} ({root.role.value})"

    return _check


def _boot_selector_secondary(layout: NodeLayout):
    uuid = devices.uuid_of(layout.secondary_root)
    if not uuid:
        return False, f"{layout.secondary_root} has no UUID"
    selector = bootconf.read_root_selector(layout.removable_root, layout)
    expected = f"UUID={uuid}"
    return selector == expected, f"root={selector} (expected root={expected})"


def _firmware_boot_current_removable(layout: NodeLayout):
    state = firmware.snapshot()
    entry = firmware.removable_entry(state.entries, layout.removable_entry_label)
    expected = entry.index if entry else layout.removable_entry_index.upper()
    if state.current == expected:
        return True, f"BootCurrent {state.current}"
    for candidate in state.entries:
        if candidate.index == state.current and firmware.is_secondary_entry(candidate):
            return False, (
                f"BootCurrent {state.current} ({candidate.label}) booted secondary storage directly; "
                f"expected removable entry {expected}"
            )
    return False, f"BootCurrent {state.current or '-'}, expected {expected}"


def _removable_root_stripped(layout: NodeLayout):
    mountpoint = scratch_mount("verify-removable")
    with mounts.mounted(layout.removable_root, mountpoint, read_only=True, replay_journal=False) as top:
        names = sorted(os.listdir(top))
    extra = [n for n in names if n not in layout.keep]
    if extra:
        return False, f"unexpected entries: {', '.join(extra)}"
    if "boot" not in names:
        return False, "boot directory missing"
    return True, f"only {', '.join(names)}"


def _esp_mounted_from_removable(layout: NodeLayout):
    source = mounts.findmnt_source(layout.esp_mountpoint)
    if not source:
        return False, f"nothing mounted at {layout.esp_mountpoint}"
    ok = os.path.realpath(source) == os.path.realpath(layout.removable_esp)
    return ok, f"{layout.esp_mountpoint} from {source} (expected {layout.removable_esp})"


def _swap_disabled(layout: NodeLayout):
    active = devices.swap_devices()
    return not active, ("no active swap" if not active else f"active swap: {', '.join(active)}")


def _fstab_swap_disabled(layout: NodeLayout):
    lines = headless.fstab_swap_entries()
    return not lines, ("no swap in fstab" if not lines else f"{len(lines)} swap line(s) in fstab")


def _headless_target(layout: NodeLayout):
    target = devices.default_target()
    return target == layout.headless_target, f"default target {target}"


CHECKS: Dict[str, Callable] = {
    "secondary_clone_present": _secondary_clone_present,
    "root_source_secondary": _root_is(Role.SECONDARY_FAST),
    "root_source_removable": _root_is(Role.REMOVABLE_BOOT),
    "boot_selector_secondary": _boot_selector_secondary,
    "firmware_boot_current_removable": _firmware_boot_current_removable,
    "removable_root_stripped": _removable_root_stripped,
    "esp_mounted_from_removable": _esp_mounted_from_removable,
    "swap_disabled": _swap_disabled,
    "fstab_swap_disabled": _fstab_swap_disabled,
    "headless_target": _headless_target,
}


def run_checks(names, layout: NodeLayout) -> List[CheckResult]:
    """Evaluate each named invariant; a check that raises is reported as failed."""
    unknown = [n for n in names if n not in CHECKS]
    if unknown:
        raise KeyError(f"unknown invariant(s): {', '.join(unknown)}")
    results: List[CheckResult] = []
    for name in names:
        try:
            passed, detail = CHECKS[name](layout)
        except Exception as exc:
            passed, detail = False, f"{type(exc).__name__}: {exc}"
        result = CheckResult(name=name, passed=bool(passed), detail=detail)
        trace("verification.check", name=name, passed=result.passed, detail=detail)
        results.append(result)
    return results


def run_all(layout: NodeLayout) -> List[CheckResult]:
    return run_checks(AUDIT, layout)


def summarize(results: List[CheckResult]) -> dict:
    failed = [r.name for r in results if not r.passed]
    return {
        "ok": not failed,
        "passed": [r.name for r in results if r.passed],
        "failed": failed,
        "checks": {r.name: {"ok": r.passed, "detail": r.detail} for r in results},
    }
