from __future__ import annotations

# Recovery: return the removable media to a bootable standalone state
import os
import shutil
from dataclasses import asdict

from . import bootconf, devices, mounts, safety
from .errors import ConfirmationRejected, OperationFailure, PreconditionViolation, PrerequisiteMissing
from .executil import log, run
from .model import NodeLayout, OpResult
from .paths import scratch_mount

REIMAGE_PHRASE = "reimage microsd"
REVERT_PHRASE = "revert boot"
RESET_PHRASE = "reset this node"
STAGED_DIR = "tmp"


def _require_image(image: str, layout: NodeLayout):
    # existence only; the image is not opened here
    missing = []
    if not image or not os.path.isfile(image):
        missing.append(f"image file {image or '(none)'}")
    if not devices.block_exists(layout.removable_disk):
        missing.append(f"block device {layout.removable_disk}")
    if missing:
        raise PrerequisiteMissing(
            "missing " + " and ".join(missing),
            state={"image": image, "target": layout.removable_disk},
        )


def stage_image_copy(image: str, layout: NodeLayout, dry_run: bool = False) -> str:
    """Copy ``image`` into tmp/ on the freshly written removable root partition."""
    if dry_run:
        return os.path.join(scratch_mount("recovery"), STAGED_DIR, os.path.basename(image))
    try:
        with mounts.mounted(layout.removable_root, scratch_mount("recovery")) as top:
            dest_dir = os.path.join(top, STAGED_DIR)
            os.makedirs(dest_dir, exist_ok=True)
            dest = os.path.join(dest_dir, os.path.basename(image))
            shutil.copy2(image, dest)
            run(["sync"], check=True)
    except OSError as exc:
        raise OperationFailure(
            f"image written but staging a copy failed: {exc}",
            state={"image": image, "partition": layout.removable_root},
        ) from exc
    log("INFO", "recovery.staged", image=image, dest=dest)
    return dest


def _write_image(image: str, layout: NodeLayout, confirm, phrase: str, stage_copy: bool, dry_run: bool) -> OpResult:
    _require_image(image, layout)
    op = safety.ImageWriteOperation(image=image, target=layout.removable_disk, phrase=phrase)
    result = safety.execute(op, safety.ROOT_IS_SECONDARY, confirm, layout, dry_run=dry_run)
    if result.ok and stage_copy:
        result.detail["staged_copy"] = stage_image_copy(image, layout, dry_run=dry_run)
    return result


def reimage_removable_media(
    image: str,
    layout: NodeLayout,
    confirm,
    stage_copy: bool = True,
    dry_run: bool = False,
) -> OpResult:
    return safety.capture(
        "reimage",
        lambda: _write_image(image, layout, confirm, REIMAGE_PHRASE, stage_copy, dry_run),
    )


def _revert(layout: NodeLayout, dry_run: bool):
    change = bootconf.write_root_selector(
        layout.removable_root, layout.removable_selector, layout, dry_run=dry_run
    )
    log("INFO", "recovery.reverted", previous=change.previous, current=change.current, dry_run=dry_run)
    return change


def revert_boot_selector(layout: NodeLayout, confirm, dry_run: bool = False) -> OpResult:
    def _body():
        if not devices.block_exists(layout.removable_root):
            raise PrerequisiteMissing(
                f"missing block device {layout.removable_root}",
                state={"target": layout.removable_root},
            )
        ok, reason = safety.check_guard(safety.ROOT_IS_SECONDARY, layout)
        if not ok:
            raise PreconditionViolation(reason, state={"guard": safety.ROOT_IS_SECONDARY.name})
        if not safety.require_confirmation(REVERT_PHRASE, confirm):
            raise ConfirmationRejected(
                f"confirmation must be exactly '{REVERT_PHRASE}'",
                state={"expected": REVERT_PHRASE},
            )
        change = _revert(layout, dry_run)
        return OpResult(
            True,
            "revert-boot",
            f"root={change.previous} -> root={change.current}",
            detail=asdict(change),
        )

    return safety.capture("revert-boot", _body)


def factory_reset(image: str, layout: NodeLayout, confirm, dry_run: bool = False) -> OpResult:
    """Re-image, stage the image copy and point the selector back at the removable root."""

    def _body():
        result = _write_image(image, layout, confirm, RESET_PHRASE, True, dry_run)
        if not result.ok:
            result.operation = "factory-reset"
            return result
        change = _revert(layout, dry_run)
        detail = dict(result.detail)
        detail["boot_record"] = asdict(change)
        return OpResult(
            True,
            "factory-reset",
            f"{result.summary}; root={change.current}",
            detail=detail,
        )

    return safety.capture("factory-reset", _body)
