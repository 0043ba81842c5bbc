"""Opaque calls into the OS package manager."""
from __future__ import annotations

import os

from .executil import log, run

_APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


def _apt(args: list, dry_run: bool):
    env = dict(os.environ)
    env.update(_APT_ENV)
    return run(["apt-get", *args], check=True, dry_run=dry_run, env=env)


def apply_updates(dry_run: bool = False) -> dict:
    _apt(["update"], dry_run)
    _apt(["upgrade", "-y"], dry_run)
    log("INFO", "packages.updated", dry_run=dry_run)
    return {"updated": True, "dry_run": dry_run}


def remove_desktop(dry_run: bool = False) -> dict:
    _apt(["remove", "--purge", "ubuntu-desktop", "-y"], dry_run)
    _apt(["autoremove", "--purge", "-y"], dry_run)
    log("INFO", "packages.desktop_removed", dry_run=dry_run)
    return {"desktop_removed": True, "dry_run": dry_run}
