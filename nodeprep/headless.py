"""Headless node configuration: text target, no swap, optional hostname."""
from __future__ import annotations

from pathlib import Path

from . import devices, packages
from .bootconf import write_atomic
from .executil import log, run, trace
from .model import NodeLayout

FSTAB = "/etc/fstab"
ZRAM_UNITS = ("nvzramconfig.service",)


def _is_swap_line(line: str) -> bool:
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return False
    fields = stripped.split()
    return len(fields) >= 3 and fields[2] == "swap"


def fstab_swap_entries(path: str | None = None) -> list[str]:
    try:
        text = Path(path or FSTAB).read_text(encoding="utf-8")
    except FileNotFoundError:
        return []
    return [line for line in text.splitlines() if _is_swap_line(line)]


def comment_swap_lines(text: str) -> str:
    out = []
    for line in text.splitlines(keepends=True):
        out.append("#" + line if _is_swap_line(line) else line)
    return "".join(out)


def disable_fstab_swap(path: str | None = None, dry_run: bool = False) -> int:
    target = Path(path or FSTAB)
    if not target.exists():
        return 0
    text = target.read_text(encoding="utf-8")
    count = len([line for line in text.splitlines() if _is_swap_line(line)])
    if count and not dry_run:
        write_atomic(target, comment_swap_lines(text))
    trace("headless.fstab", path=str(target), commented=count, dry_run=dry_run)
    return count


def set_default_target(target: str, dry_run: bool = False):
    run(["systemctl", "set-default", target], check=True, dry_run=dry_run)


def disable_zram(dry_run: bool = False) -> list[str]:
    disabled = []
    for unit in ZRAM_UNITS:
        r = run(["systemctl", "list-unit-files", unit], check=False)
        if r.rc != 0 or unit not in (r.out or ""):
            continue
        run(["systemctl", "disable", "--now", unit], check=True, dry_run=dry_run)
        disabled.append(unit)
    return disabled


def set_hostname(name: str, dry_run: bool = False):
    run(["hostnamectl", "set-hostname", name], check=True, dry_run=dry_run)


def configure(layout: NodeLayout, hostname: str | None = None, remove_desktop: bool = False, dry_run: bool = False) -> dict:
    """Apply the headless settings in order; every step is safe to repeat."""
    summary: dict = {"target": layout.headless_target, "dry_run": dry_run}
    set_default_target(layout.headless_target, dry_run=dry_run)
    devices.disable_swap(dry_run=dry_run)
    summary["fstab_swap_commented"] = disable_fstab_swap(dry_run=dry_run)
    summary["zram_disabled"] = disable_zram(dry_run=dry_run)
    if hostname:
        set_hostname(hostname, dry_run=dry_run)
        summary["hostname"] = hostname
    if remove_desktop:
        summary.update(packages.remove_desktop(dry_run=dry_run))
    log("INFO", "headless.configured", **summary)
    return summary
