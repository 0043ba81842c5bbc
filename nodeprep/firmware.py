"""Read-only view of the firmware boot entries (efibootmgr)."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

from .errors import FirmwareQueryError
from .executil import run, trace
from .model import FirmwareBootEntry

_ENTRY = re.compile(r"^Boot([0-9A-Fa-f]{4})(\*?)\s+(.*)$")

SECONDARY_ENTRY = re.compile(r"^UEFI (Samsung|WD|Crucial|Micron|SK ?hynix|Kingston|.*\b(SSD|NVMe|NVME)\b)")

STANDARD_LABELS = (
    re.compile(r"^Enter Setup$"),
    re.compile(r"^UEFI SD Device$"),
    re.compile(r"^UEFI PXE"),
    re.compile(r"^UEFI HTTP"),
    re.compile(r"^BootManagerMenuApp$"),
    re.compile(r"^UEFI Shell$"),
    SECONDARY_ENTRY,
)


class EntryClass(str, Enum):
    STANDARD = "standard"
    ANOMALOUS = "anomalous"


@dataclass
class Classification:
    standard: list = field(default_factory=list)
    anomalous: list = field(default_factory=list)


@dataclass
class FirmwareState:
    current: str
    order: list
    entries: list


def parse_efibootmgr(text: str) -> FirmwareState:
    current = ""
    order: list[str] = []
    entries: list[FirmwareBootEntry] = []
    for raw in (text or "").splitlines():
        line = raw.rstrip()
        if line.startswith("BootCurrent:"):
            current = line.split(":", 1)[1].strip()
            continue
        if line.startswith("BootOrder:"):
            order = [idx.strip() for idx in line.split(":", 1)[1].split(",") if idx.strip()]
            continue
        m = _ENTRY.match(line)
        if not m:
            continue
        rest = m.group(3)
        # verbose listings separate the label from the device path with a tab
        label, _, device_path = rest.partition("\t")
        entries.append(
            FirmwareBootEntry(
                index=m.group(1).upper(),
                label=label.strip(),
                active=m.group(2) == "*",
                device_path=device_path.strip(),
            )
        )
    return FirmwareState(current=current.upper(), order=[o.upper() for o in order], entries=entries)


def snapshot() -> FirmwareState:
    try:
        r = run(["efibootmgr", "-v"], check=False)
    except OSError as exc:
        raise FirmwareQueryError(f"efibootmgr unavailable: {exc}") from exc
    if r.rc != 0:
        raise FirmwareQueryError(
            f"efibootmgr failed: {(r.err or '').strip() or r.rc}",
            state={"rc": r.rc},
        )
    state = parse_efibootmgr(r.out)
    trace("firmware.query", current=state.current, order=state.order, entries=len(state.entries))
    return state


def list_entries() -> list:
    return snapshot().entries


def current() -> str:
    state = snapshot()
    if not state.current:
        raise FirmwareQueryError("firmware did not report BootCurrent")
    return state.current


def preferred_order() -> list:
    return snapshot().order


def classify_entry(entry: FirmwareBootEntry) -> EntryClass:
    for pattern in STANDARD_LABELS:
        if pattern.match(entry.label):
            return EntryClass.STANDARD
    return EntryClass.ANOMALOUS


def classify(entries) -> Classification:
    """Split ``entries`` into standard and anomalous; every entry lands in exactly one."""
    result = Classification()
    for entry in entries:
        if classify_entry(entry) is EntryClass.STANDARD:
            result.standard.append(entry)
        else:
            result.anomalous.append(entry)
    return result


def removable_entry(entries, label: str):
    for entry in entries:
        if entry.label == label:
            return entry
    return None


def is_secondary_entry(entry: FirmwareBootEntry) -> bool:
    return bool(SECONDARY_ENTRY.match(entry.label))


def inspect() -> dict:
    state = snapshot()
    groups = classify(state.entries)

    def _row(entry: FirmwareBootEntry) -> dict:
        return {
            "index": entry.index,
            "label": entry.label,
            "active": entry.active,
            "device_path": entry.device_path,
            "class": classify_entry(entry).value,
        }

    return {
        "current": state.current,
        "order": state.order,
        "entries": [_row(e) for e in state.entries],
        "standard": [e.index for e in groups.standard],
        "anomalous": [e.index for e in groups.anomalous],
    }
