import ast
import contextlib
import sys
import threading
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterable, Set

import pytest

_ROOT_DIR = Path(__file__).absolute().parent.parent
_PACKAGE_DIR = (_ROOT_DIR / "nodeprep").absolute()

_EXECUTED_LINES: Dict[Path, Set[int]] = defaultdict(set)
_CANDIDATE_LINES: Dict[Path, Set[int]] = {}
_PREVIOUS_TRACE = None
_PREVIOUS_THREAD_TRACE = None
_TRACE_ACTIVE = False


def _iter_python_files(directory: Path) -> Iterable[Path]:
    for path in directory.rglob("*.py"):
        if path.is_file():
            yield path.absolute()


def _candidate_lines_for(path: Path) -> Set[int]:
    source = path.read_text(encoding="utf-8")
    try:
        tree = ast.parse(source, filename=str(path))
    except SyntaxError:
        return set()

    potential_lines: Set[int] = set()
    for node in ast.walk(tree):
        lineno = getattr(node, "lineno", None)
        if lineno is None:
            continue
        end_lineno = getattr(node, "end_lineno", None) or lineno
        potential_lines.update(range(lineno, end_lineno + 1))

    source_lines = source.splitlines()
    return {
        lineno
        for lineno in potential_lines
        if lineno <= len(source_lines)
        and source_lines[lineno - 1].strip()
        and not source_lines[lineno - 1].strip().startswith("#")
    }


for file_path in _iter_python_files(_PACKAGE_DIR):
    _CANDIDATE_LINES[file_path] = _candidate_lines_for(file_path)


def _trace(frame, event, arg):
    if event != "line":
        return _trace
    try:
        resolved = Path(frame.f_code.co_filename).absolute()
    except OSError:
        return _trace
    if resolved in _CANDIDATE_LINES:
        _EXECUTED_LINES[resolved].add(frame.f_lineno)
    return _trace


def pytest_sessionstart(session):
    global _PREVIOUS_TRACE, _PREVIOUS_THREAD_TRACE, _TRACE_ACTIVE
    if _TRACE_ACTIVE:
        return
    _TRACE_ACTIVE = True
    _EXECUTED_LINES.clear()
    _PREVIOUS_TRACE = sys.gettrace()
    _PREVIOUS_THREAD_TRACE = threading.gettrace()
    sys.settrace(_trace)
    threading.settrace(_trace)


def pytest_sessionfinish(session, exitstatus):
    global _TRACE_ACTIVE
    if not _TRACE_ACTIVE:
        return
    _TRACE_ACTIVE = False
    sys.settrace(_PREVIOUS_TRACE)
    threading.settrace(_PREVIOUS_THREAD_TRACE)
    _report_coverage(session)


def _report_coverage(session) -> None:
    terminal = session.config.pluginmanager.get_plugin("terminalreporter")
    write_line = terminal.write_line if terminal else print

    rows = []
    total_statements = 0
    total_covered = 0
    for path in sorted(_CANDIDATE_LINES):
        candidates = _CANDIDATE_LINES[path]
        if not candidates:
            continue
        executed = _EXECUTED_LINES.get(path, set()) & candidates
        missing = sorted(candidates - executed)
        total_statements += len(candidates)
        total_covered += len(executed)
        rows.append((path.relative_to(_ROOT_DIR), len(candidates), missing))

    if not rows:
        return

    write_line("")
    write_line("Coverage summary for 'nodeprep':")
    header = f"{'Name':<40} {'Stmts':>6} {'Miss':>6} {'Cover':>7}"
    write_line(header)
    write_line("-" * len(header))
    for name, statements, missing in rows:
        pct = (statements - len(missing)) / statements * 100.0
        write_line(f"{str(name):<40} {statements:>6} {len(missing):>6} {pct:>6.1f}%")
        if missing:
            suffix = "..." if len(missing) > 10 else ""
            write_line(f"    Missing: {', '.join(map(str, missing[:10]))}{suffix}")
    write_line("-" * len(header))
    total_pct = total_covered / total_statements * 100.0
    write_line(f"{'TOTAL':<40} {total_statements:>6} {total_statements - total_covered:>6} {total_pct:>6.1f}%")


# --- shared fakes -----------------------------------------------------------

from nodeprep import bootconf, devices, executil, firmware, headless, mounts, root_sync  # noqa: E402
from nodeprep.firmware import FirmwareState  # noqa: E402
from nodeprep.model import FirmwareBootEntry, NodeLayout, Role, StorageDevice  # noqa: E402


@pytest.fixture(autouse=True)
def _isolated_log(tmp_path, monkeypatch):
    monkeypatch.setattr(executil, "LOG_DIRS", [str(tmp_path / "logs")])
    monkeypatch.setattr(executil, "LOG_PATH", None)


@pytest.fixture
def layout():
    return NodeLayout()


STANDARD_ENTRIES = [
    FirmwareBootEntry("0000", "Enter Setup", True),
    FirmwareBootEntry("0001", "UEFI SD Device", True),
    FirmwareBootEntry("0002", "UEFI PXEv4 (MAC:48B02D5E1F20)", True),
    FirmwareBootEntry("0003", "UEFI HTTPv4 (MAC:48B02D5E1F20)", True),
    FirmwareBootEntry("0004", "BootManagerMenuApp", True),
    FirmwareBootEntry("0005", "UEFI Shell", True),
    FirmwareBootEntry("0008", "UEFI Samsung SSD 980 500GB", True),
]


class FakeNode:
    """A two-disk node whose facts live in plain attributes.

    Starts pristine: running from removable media, desktop target, swap on,
    nothing on the secondary disk.  ``migrate()`` flips it to the finished
    state.  Partition contents are real directories under ``tmp_path``.
    """

    def __init__(self, tmp_path: Path, monkeypatch, layout: NodeLayout) -> None:
        self.layout = layout
        self.root_role = Role.REMOVABLE_BOOT
        self.secondary_uuid = "5c3e0f0a-91b4-4d61-8f43-0c2b4a7d9e11"
        self.secondary_fstype = ""
        self.selector = layout.removable_root
        self.swaps = ["/dev/zram0"]
        self.target = "graphical.target"
        self.fstab_swap = ["/swapfile none swap sw 0 0"]
        self.boot_current = "0001"
        self.esp_source = layout.removable_esp
        self.blocks = {
            layout.removable_disk,
            layout.removable_root,
            layout.removable_esp,
            layout.secondary_disk,
        }
        self.trees = {
            layout.removable_root: tmp_path / "removable",
            layout.secondary_root: tmp_path / "secondary",
        }
        for name in ("boot", "etc", "usr", "home", "var", "lost+found"):
            (self.trees[layout.removable_root] / name).mkdir(parents=True)
        (self.trees[layout.removable_root] / "boot" / "extlinux").mkdir()
        self.trees[layout.secondary_root].mkdir()
        self.inspections = 0
        self.mount_calls = []

        monkeypatch.setattr(devices, "current_root_source", self._root_source)
        monkeypatch.setattr(devices, "parent_disk", self._parent_disk)
        monkeypatch.setattr(devices, "uuid_of", self._uuid_of)
        monkeypatch.setattr(devices, "fstype_of", self._fstype_of)
        monkeypatch.setattr(devices, "block_exists", lambda path: path in self.blocks)
        monkeypatch.setattr(devices, "swap_devices", lambda: list(self.swaps))
        monkeypatch.setattr(devices, "default_target", lambda: self.target)
        monkeypatch.setattr(bootconf, "read_root_selector", lambda partition, lay: self.selector)
        monkeypatch.setattr(firmware, "snapshot", self._firmware)
        monkeypatch.setattr(mounts, "findmnt_source", lambda mp: self.esp_source)
        monkeypatch.setattr(mounts, "mounted", self._mounted)
        monkeypatch.setattr(headless, "fstab_swap_entries", lambda path=None: list(self.fstab_swap))

    def _root_source(self, layout):
        self.inspections += 1
        if self.root_role is Role.SECONDARY_FAST:
            return StorageDevice(self.layout.secondary_root, self.layout.secondary_disk, self.root_role)
        return StorageDevice(self.layout.removable_root, self.layout.removable_disk, self.root_role)

    def _parent_disk(self, device):
        if device.startswith(self.layout.removable_disk):
            return self.layout.removable_disk
        return self.layout.secondary_disk

    def _uuid_of(self, path):
        if path == self.layout.secondary_root and self.secondary_fstype:
            return self.secondary_uuid
        return ""

    def _fstype_of(self, path):
        return self.secondary_fstype if path == self.layout.secondary_root else ""

    def _firmware(self):
        return FirmwareState(current=self.boot_current, order=["0001", "0008"], entries=list(STANDARD_ENTRIES))

    @contextlib.contextmanager
    def _mounted(self, device, mountpoint, read_only=False, replay_journal=True):
        self.mount_calls.append((device, read_only, replay_journal))
        tree = self.trees[device]
        tree.mkdir(parents=True, exist_ok=True)
        yield str(tree)

    def go_headless(self):
        self.swaps = []
        self.fstab_swap = []
        self.target = "multi-user.target"

    def clone(self, complete=True):
        """Lay down a root tree on the secondary partition.

        ``complete=False`` leaves the tree an aborted rsync would: top-level
        directories but no completion marker.
        """
        self.blocks.add(self.layout.secondary_root)
        self.secondary_fstype = "ext4"
        top = self.trees[self.layout.secondary_root]
        for name in ("boot", "etc", "usr"):
            (top / name).mkdir(exist_ok=True)
        if complete:
            root_sync.write_clone_marker(str(top), {"files": 3})

    def migrate(self):
        self.clone()
        self.root_role = Role.SECONDARY_FAST
        self.selector = f"UUID={self.secondary_uuid}"
        self.go_headless()
        removable = self.trees[self.layout.removable_root]
        for name in ("etc", "usr", "home", "var"):
            (removable / name).rmdir()


@pytest.fixture
def node(tmp_path, monkeypatch, layout):
    return FakeNode(tmp_path, monkeypatch, layout)
