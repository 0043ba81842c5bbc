"""Read and rewrite the root selector in the removable media's extlinux.conf."""
from __future__ import annotations

import os
import re
from pathlib import Path

from . import mounts
from .errors import BootConfigError
from .executil import trace
from .model import BootRecordChange, NodeLayout
from .paths import scratch_mount

# ``root=`` as its own word; nfsroot=, resume_root= and friends are not matched
ROOT_TOKEN = re.compile(r"(?<![\w.-])root=(\S+)")


def write_atomic(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        mode = path.stat().st_mode & 0o7777
    except FileNotFoundError:
        mode = 0o644
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w", encoding="utf-8", newline="") as fh:
        fh.write(content)
        fh.flush()
        os.fsync(fh.fileno())
    os.replace(tmp_path, path)
    os.chmod(path, mode)


def parse_root_selector(text: str) -> str:
    match = ROOT_TOKEN.search(text)
    if not match:
        raise BootConfigError("boot configuration has no root= selector")
    return match.group(1)


def replace_root_selector(text: str, selector: str) -> str:
    """Return ``text`` with every ``root=`` value set to ``selector``.

    Only the token value changes; whitespace, comments, other kernel
    arguments and line endings are carried through untouched.
    """
    if not ROOT_TOKEN.search(text):
        raise BootConfigError("boot configuration has no root= selector")
    return ROOT_TOKEN.sub(lambda _m: f"root={selector}", text)


def _read_text(path: Path) -> str:
    try:
        with open(path, "r", encoding="utf-8", newline="") as fh:
            return fh.read()
    except FileNotFoundError as exc:
        raise BootConfigError(f"boot configuration not found: {path}", state={"path": str(path)}) from exc
    except OSError as exc:
        raise BootConfigError(f"cannot read {path}: {exc}", state={"path": str(path)}) from exc


def read_root_selector(partition: str, layout: NodeLayout) -> str:
    with mounts.mounted(partition, scratch_mount("bootconf"), read_only=True) as root:
        path = Path(root) / layout.boot_config
        selector = parse_root_selector(_read_text(path))
    trace("bootconf.read", partition=partition, selector=selector)
    return selector


def write_root_selector(partition: str, selector: str, layout: NodeLayout, dry_run: bool = False) -> BootRecordChange:
    with mounts.mounted(partition, scratch_mount("bootconf")) as root:
        path = Path(root) / layout.boot_config
        text = _read_text(path)
        previous = parse_root_selector(text)
        updated = replace_root_selector(text, selector)
        changed = updated != text
        if changed and not dry_run:
            write_atomic(path, updated)
    change = BootRecordChange(path=str(path), previous=previous, current=selector, changed=changed)
    trace(
        "bootconf.write",
        partition=partition,
        path=change.path,
        previous=previous,
        current=selector,
        changed=changed,
        dry_run=dry_run,
    )
    return change


def rewrite_root_selector(partition: str, new_uuid: str, layout: NodeLayout, dry_run: bool = False) -> BootRecordChange:
    if not new_uuid:
        raise BootConfigError("refusing to write an empty UUID selector")
    return write_root_selector(partition, f"UUID={new_uuid}", layout, dry_run=dry_run)
