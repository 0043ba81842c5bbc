from __future__ import annotations

import json
import os
import re
import subprocess
import time
from typing import Dict

from .executil import log, run, trace

_SIZE_UNITS = {
    "b": 1,
    "byte": 1,
    "bytes": 1,
    "k": 1024,
    "kb": 1024,
    "m": 1024 ** 2,
    "mb": 1024 ** 2,
    "g": 1024 ** 3,
    "gb": 1024 ** 3,
    "t": 1024 ** 4,
    "tb": 1024 ** 4,
}

_NUMBER_RE = re.compile(r"([0-9]+(?:[.,][0-9]+)?)\s*([A-Za-z]+)?")

# rsync exits 24 when source files vanish mid-copy, which is normal on a live root
VANISHED_RC = 24

# written on the clone only after rsync has finished
CLONE_MARKER = "var/lib/nodeprep/clone-complete"

EXCLUDES = ["/dev/*", "/proc/*", "/sys/*", "/tmp/*", "/run/*", "/mnt/*", "/media/*", "/lost+found", "/" + CLONE_MARKER]


def _parse_size(fragment: str):
    match = _NUMBER_RE.search(fragment.strip().replace(",", ""))
    if not match:
        return None
    try:
        value = float(match.group(1))
    except ValueError:
        return None
    unit = (match.group(2) or "bytes").lower().rstrip("s")
    return int(round(value * _SIZE_UNITS.get(unit, 1)))


def _parse_int(fragment: str):
    match = re.search(r"(-?\d[\d,]*)", fragment)
    if not match:
        return None
    return int(match.group(1).replace(",", ""))


def parse_rsync_stats(text: str) -> dict:
    """Pull the headline numbers out of ``rsync --stats`` output."""
    if not isinstance(text, str):
        return {}
    stats: Dict[str, object] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        lower = line.lower()
        if lower.startswith("number of files:"):
            value = _parse_int(line.split(":", 1)[1])
            if value is not None:
                stats["files"] = value
        elif "files transferred:" in lower:
            value = _parse_int(line.split(":", 1)[1])
            if value is not None and "files_transferred" not in stats:
                stats["files_transferred"] = value
        elif lower.startswith("total file size:"):
            numeric = _parse_size(line.split(":", 1)[1])
            if numeric is not None:
                stats["total_file_size_bytes"] = numeric
        elif lower.startswith("total transferred file size:"):
            numeric = _parse_size(line.split(":", 1)[1])
            if numeric is not None:
                stats["transferred_size_bytes"] = numeric
    return stats


def rsync_command(dst_mnt: str) -> list[str]:
    cmd = ["rsync", "-axHAWX", "--numeric-ids", "--stats"]
    for e in EXCLUDES:
        cmd += ["--exclude", e]
    return cmd + ["/", dst_mnt.rstrip("/") + "/"]


def rsync_root(dst_mnt: str, dry_run: bool = False) -> dict:
    """Copy the live root tree onto ``dst_mnt``; return the parsed stats."""
    cmd = rsync_command(dst_mnt)
    try:
        result = run(cmd, check=True, dry_run=dry_run)
        out = result.out
    except subprocess.CalledProcessError as e:
        if e.returncode != VANISHED_RC:
            raise
        log("WARN", "root_sync.vanished", rc=e.returncode, dst=dst_mnt)
        out = e.output
    stats = parse_rsync_stats(out or "")
    log("INFO", "root_sync.done", dst=dst_mnt, dry_run=dry_run, **stats)
    return stats


def write_clone_marker(dst_mnt: str, stats: dict) -> str:
    """Record on the clone that the copy of ``/`` ran to the end."""
    path = os.path.join(dst_mnt, CLONE_MARKER)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        json.dump({"ts": int(time.time()), "rsync": stats}, fh, sort_keys=True)
        fh.write("\n")
        fh.flush()
        os.fsync(fh.fileno())
    trace("root_sync.marker", path=path)
    return path


def clone_marker_present(top: str) -> bool:
    return os.path.isfile(os.path.join(top, CLONE_MARKER))
