"""Subprocess wrapper, dry-run hook and JSONL trace log."""

from __future__ import annotations

import datetime as _dt
import json
import os
import shlex
import subprocess
import time
from typing import Sequence

from .paths import logs_dir


LOG_DIRS: list[str] | None = None
LOG_PATH: str | None = None
LOG_NAME = "nodeprep.jsonl"


def _log_dirs() -> list[str]:
    if LOG_DIRS:
        return list(LOG_DIRS)
    return [
        logs_dir(),
        "/var/log/nodeprep",
        "/tmp/nodeprep-logs",
    ]


def _ensure_logger() -> str | None:
    global LOG_PATH
    if LOG_PATH:
        return LOG_PATH
    for d in _log_dirs():
        d_expanded = os.path.expanduser(d)
        try:
            os.makedirs(d_expanded, exist_ok=True)
        except OSError:
            continue
        if not os.access(d_expanded, os.W_OK):
            continue
        LOG_PATH = os.path.join(d_expanded, LOG_NAME)
        return LOG_PATH
    LOG_PATH = None
    return None


def resolve_log_path() -> str | None:
    """Return the active log path, creating directories when possible."""

    return _ensure_logger()


def _now() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


def _write_jsonl(obj: dict):
    path = _ensure_logger()
    if not path:
        return
    try:
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, default=str) + "\n")
    except OSError:
        pass


def _log_event(kind: str, cmd: list[str], rc: int = None, out: str = None, err: str = None, dur: float = None):
    _write_jsonl({"ts": _now(), "kind": kind, "cmd": cmd, "rc": rc, "dur": dur, "out": out, "err": err})


class Result:
    def __init__(self, rc: int, out: str, err: str, duration: float):
        self.rc, self.out, self.err, self.duration = rc, out, err, duration


LEVELS = {"TRACE": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "NONE": 100}
LOG_LEVEL = os.environ.get("NODEPREP_LOG_LEVEL", "TRACE").upper()


def log(level: str, event: str, **fields):
    lvl = LEVELS.get(level.upper(), 100)
    cur = LEVELS.get(LOG_LEVEL, 100)
    if lvl < cur:
        return
    rec = {"ts": _now(), "level": level.upper(), "event": event}
    rec.update(fields)
    _write_jsonl(rec)


def trace(event: str, **fields):
    log("TRACE", event, **fields)


def run(
    cmd: Sequence[str],
    check: bool = True,
    dry_run: bool = False,
    timeout: float | None = None,
    env: dict | None = None,
) -> Result:
    """Run ``cmd`` once and capture its output.

    There is no retry on failure or timeout: re-running a block operation is
    left to the operator.  ``timeout`` defaults to none so that long copies
    are bounded only by whatever wraps the process.
    """
    trace("exec.start", cmd=list(cmd), dry_run=dry_run)
    _log_event("exec", list(cmd))
    if dry_run:
        text = "DRY-RUN: " + " ".join(shlex.quote(c) for c in cmd)
        return Result(0, text, "", 0.0)
    started = time.time()
    env2 = (env or os.environ).copy()
    env2.setdefault("NODEPREP_LOG_LEVEL", LOG_LEVEL)
    proc = subprocess.run(list(cmd), capture_output=True, text=True, timeout=timeout, env=env2)
    dur = time.time() - started
    trace("exec.done", cmd=list(cmd), rc=proc.returncode, dur=dur)
    _log_event("done", list(cmd), rc=proc.returncode, out=proc.stdout, err=proc.stderr, dur=dur)
    if check and proc.returncode != 0:
        raise subprocess.CalledProcessError(proc.returncode, list(cmd), proc.stdout, proc.stderr)
    return Result(proc.returncode, proc.stdout, proc.stderr, dur)


def udev_settle():
    try:
        subprocess.run(["udevadm", "settle"], check=False)
    except OSError:
        pass


def append_jsonl(path: str, obj: dict):
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")
    except OSError:
        pass
