"""Ordered migration stages.

Stage progress is never stored.  Each stage names the invariants it needs
(``requires``) and the invariants it establishes (``postcondition``); both
are evaluated against the devices every time a stage runs, so re-running a
finished stage is a no-op and a half-finished one simply runs again.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Callable, Optional

from . import bootconf, devices, headless, packages, safety, verification
from .errors import ConfirmationRejected, NodePrepError, PreconditionViolation
from .executil import log, trace
from .model import NodeLayout, OpResult

REPOINT_PHRASE = "repoint boot"


class State(str, Enum):
    HEADLESS_CONFIGURED = "HeadlessConfigured"
    CLONED = "Cloned"
    BOOT_REPOINTED = "BootRepointed"
    STRIPPED = "Stripped"
    UPDATED = "Updated"
    VERIFIED = "Verified"


@dataclass
class StageContext:
    layout: NodeLayout
    confirm: Optional[str] = None
    prompt: Optional[Callable[[str], str]] = None
    dry_run: bool = False
    hostname: Optional[str] = None
    remove_desktop: bool = False

    def token_for(self, phrase: str) -> str:
        if self.confirm is not None:
            return self.confirm
        if self.prompt is not None:
            return self.prompt(f"Type '{phrase}' to continue: ")
        return ""


@dataclass
class StageOutcome:
    stage: str
    ok: bool
    state: Optional[str] = None
    noop: bool = False
    summary: str = ""
    error: Optional[str] = None
    checks: list = field(default_factory=list)
    detail: dict = field(default_factory=dict)

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Stage:
    name: str
    establishes: State
    requires: tuple
    postcondition: tuple
    action: Optional[Callable[[StageContext], OpResult]]


def _guarded(ctx: StageContext, op, guard: safety.Guard) -> OpResult:
    token = ctx.confirm
    if token is None:
        # only prompt when the guard would let the operation through;
        # execute() inspects again and reports the real failure
        try:
            ok, _ = safety.check_guard(guard, ctx.layout)
        except NodePrepError:
            ok = False
        token = ctx.token_for(op.phrase) if ok else ""
    return safety.execute(op, guard, token, ctx.layout, dry_run=ctx.dry_run)


def _headless(ctx: StageContext) -> OpResult:
    def _body():
        summary = headless.configure(
            ctx.layout,
            hostname=ctx.hostname,
            remove_desktop=ctx.remove_desktop,
            dry_run=ctx.dry_run,
        )
        return OpResult(True, "headless", f"default target {ctx.layout.headless_target}, swap off", detail=summary)

    return safety.capture("headless", _body)


def _clone(ctx: StageContext) -> OpResult:
    op = safety.CloneOperation(target=ctx.layout.secondary_disk, partition=ctx.layout.secondary_root)
    return _guarded(ctx, op, safety.ROOT_IS_REMOVABLE)


def _repoint(ctx: StageContext) -> OpResult:
    layout = ctx.layout

    def _body():
        uuid = devices.uuid_of(layout.secondary_root)
        if not uuid:
            raise PreconditionViolation(f"{layout.secondary_root} has no filesystem UUID")
        if not safety.require_confirmation(REPOINT_PHRASE, ctx.token_for(REPOINT_PHRASE)):
            raise ConfirmationRejected(
                f"confirmation must be exactly '{REPOINT_PHRASE}'",
                state={"expected": REPOINT_PHRASE},
            )
        change = bootconf.rewrite_root_selector(layout.removable_root, uuid, layout, dry_run=ctx.dry_run)
        return OpResult(
            True,
            "repoint",
            f"root={change.previous} -> root={change.current}",
            detail=asdict(change),
        )

    return safety.capture("repoint", _body)


def _strip(ctx: StageContext) -> OpResult:
    op = safety.DeleteExceptOperation(target=ctx.layout.removable_root, keep=tuple(ctx.layout.keep))
    return _guarded(ctx, op, safety.ROOT_IS_SECONDARY)


def _update(ctx: StageContext) -> OpResult:
    return safety.capture(
        "update",
        lambda: OpResult(True, "update", "packages updated", detail=packages.apply_updates(dry_run=ctx.dry_run)),
    )


STAGES = (
    Stage(
        "headless",
        State.HEADLESS_CONFIGURED,
        requires=("root_source_removable",),
        postcondition=("swap_disabled", "fstab_swap_disabled", "headless_target"),
        action=_headless,
    ),
    Stage(
        "clone",
        State.CLONED,
        requires=("root_source_removable", "swap_disabled", "fstab_swap_disabled", "headless_target"),
        postcondition=("secondary_clone_present",),
        action=_clone,
    ),
    Stage(
        "repoint",
        State.BOOT_REPOINTED,
        requires=("secondary_clone_present",),
        postcondition=("boot_selector_secondary",),
        action=_repoint,
    ),
    Stage(
        "strip",
        State.STRIPPED,
        requires=("root_source_secondary", "boot_selector_secondary"),
        postcondition=("removable_root_stripped",),
        action=_strip,
    ),
    Stage(
        "update",
        State.UPDATED,
        requires=("root_source_secondary", "removable_root_stripped"),
        postcondition=(),
        action=_update,
    ),
    Stage(
        "verify",
        State.VERIFIED,
        requires=(),
        postcondition=verification.AUDIT,
        action=None,
    ),
)

STAGE_NAMES = tuple(s.name for s in STAGES)


def get_stage(name: str) -> Stage:
    for stage in STAGES:
        if stage.name == name:
            return stage
    raise KeyError(f"unknown stage {name!r}; expected one of {', '.join(STAGE_NAMES)}")


def _rows(results) -> list:
    return [asdict(r) for r in results]


def _failed(results) -> list:
    return [r.name for r in results if not r.passed]


def run_stage(name: str, ctx: StageContext) -> StageOutcome:
    stage = get_stage(name)
    layout = ctx.layout

    if stage.postcondition:
        post = verification.run_checks(stage.postcondition, layout)
        if not _failed(post):
            trace("stages.noop", stage=stage.name)
            return StageOutcome(
                stage.name, True, stage.establishes.value, noop=True,
                summary=f"{stage.establishes.value} already holds", checks=_rows(post),
            )
        if stage.action is None:
            failed = _failed(post)
            log("WARN", "stages.audit_failed", stage=stage.name, failed=failed)
            return StageOutcome(
                stage.name, False, summary=f"failed: {', '.join(failed)}",
                error="VerificationFailure", checks=_rows(post),
            )

    if stage.requires:
        pre = verification.run_checks(stage.requires, layout)
        failed = _failed(pre)
        if failed:
            trace("stages.precondition_failed", stage=stage.name, failed=failed)
            return StageOutcome(
                stage.name, False, summary=f"requires {', '.join(failed)}",
                error="PreconditionViolation", checks=_rows(pre),
            )

    trace("stages.act", stage=stage.name, dry_run=ctx.dry_run)
    result = stage.action(ctx)
    if not result.ok:
        return StageOutcome(stage.name, False, summary=result.summary, error=result.error, detail=result.detail)

    if ctx.dry_run or not stage.postcondition:
        log("INFO", "stages.done", stage=stage.name, dry_run=ctx.dry_run)
        return StageOutcome(stage.name, True, stage.establishes.value, summary=result.summary, detail=result.detail)

    post = verification.run_checks(stage.postcondition, layout)
    failed = _failed(post)
    if failed:
        log("ERROR", "stages.postcondition_failed", stage=stage.name, failed=failed)
        return StageOutcome(
            stage.name, False, summary=f"{result.summary}; postcondition failed: {', '.join(failed)}",
            error="VerificationFailure", checks=_rows(post), detail=result.detail,
        )
    log("INFO", "stages.done", stage=stage.name, state=stage.establishes.value)
    return StageOutcome(
        stage.name, True, stage.establishes.value, summary=result.summary,
        checks=_rows(post), detail=result.detail,
    )


def status(layout: NodeLayout) -> list:
    """Which stage postconditions hold right now, read from the devices."""
    rows = []
    for stage in STAGES:
        if not stage.postcondition:
            rows.append({"stage": stage.name, "state": stage.establishes.value, "holds": None, "failed": []})
            continue
        failed = _failed(verification.run_checks(stage.postcondition, layout))
        rows.append({"stage": stage.name, "state": stage.establishes.value, "holds": not failed, "failed": failed})
    return rows
