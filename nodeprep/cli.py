"""CLI entrypoint for the nodeprep boot migration tool."""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from dataclasses import asdict
from typing import Any, Dict, Optional

from . import firmware, recovery, stages
from .errors import NodePrepError
from .executil import append_jsonl, resolve_log_path, trace
from .model import OpResult
from .paths import logs_dir, node_layout
from .recovery import REIMAGE_PHRASE, RESET_PHRASE, REVERT_PHRASE

RESULT_CODES: Dict[str, int] = {
    "STAGE_OK": 0,
    "VERIFY_OK": 0,
    "STATUS_OK": 0,
    "FIRMWARE_OK": 0,
    "RECOVERY_OK": 0,
    "FAIL_PRECONDITION": 2,
    "FAIL_CONFIRMATION": 3,
    "FAIL_OPERATION": 4,
    "FAIL_INSPECTION": 5,
    "FAIL_VERIFICATION": 6,
    "FAIL_PREREQUISITE": 7,
    "FAIL_NOT_ROOT": 8,
    "FAIL_BOOT_CONFIG": 9,
    "FAIL_UNHANDLED": 12,
}

ERROR_KINDS: Dict[str, str] = {
    "PreconditionViolation": "FAIL_PRECONDITION",
    "ConfirmationRejected": "FAIL_CONFIRMATION",
    "OperationFailure": "FAIL_OPERATION",
    "MountError": "FAIL_OPERATION",
    "InspectionError": "FAIL_INSPECTION",
    "FirmwareQueryError": "FAIL_INSPECTION",
    "VerificationFailure": "FAIL_VERIFICATION",
    "PrerequisiteMissing": "FAIL_PREREQUISITE",
    "BootConfigError": "FAIL_BOOT_CONFIG",
}

STAGE_COMMANDS = stages.STAGE_NAMES

RESULT_LOG_PATH: Optional[str] = None
CLI_START_MONO = time.perf_counter()
JSON_OUTPUT_ENABLED = True
_CURRENT_COMMAND: Optional[str] = None


def _result_log_path() -> str:
    global RESULT_LOG_PATH
    if RESULT_LOG_PATH:
        return RESULT_LOG_PATH
    path = resolve_log_path()
    if not path:
        path = os.path.join(logs_dir(), "nodeprep.jsonl")
    RESULT_LOG_PATH = path
    return path


def _kind_for_error(error: Optional[str]) -> str:
    return ERROR_KINDS.get(error or "", "FAIL_UNHANDLED")


def _emit_result(
        kind: str,
        extra: Optional[Dict[str, Any]] = None,
        exit_code: Optional[int] = None,
) -> None:
    payload: Dict[str, Any] = {"result": kind, "ts": int(time.time())}
    if _CURRENT_COMMAND:
        payload["command"] = _CURRENT_COMMAND
    if extra:
        payload.update(extra)
    payload.setdefault("log_path", _result_log_path())
    append_jsonl(_result_log_path(), payload)
    if JSON_OUTPUT_ENABLED:
        print(json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str))
    why_text = str(payload.get("why") or payload.get("summary") or "")
    total_ms = int(max(0.0, (time.perf_counter() - CLI_START_MONO) * 1000))
    print(
        f"result={kind} command={_CURRENT_COMMAND or ''} why={why_text} "
        f"timing_total_ms={total_ms} log_path={payload.get('log_path') or ''}",
        file=sys.stderr,
    )
    code = RESULT_CODES.get(kind, 1) if exit_code is None else exit_code
    raise SystemExit(code)


def _print_checks(checks) -> None:
    for row in checks:
        mark = "PASS" if row.get("passed") else "FAIL"
        print(f"[{mark}] {row.get('name')}: {row.get('detail', '')}", file=sys.stderr)


def _prompt(text: str) -> str:
    return input(text)


def _interactive_prompt():
    try:
        return _prompt if sys.stdin.isatty() else None
    except (AttributeError, ValueError, OSError):
        return None


def _token(args, phrase: str) -> str:
    if args.confirm is not None:
        return args.confirm
    prompt = _interactive_prompt()
    if prompt is None:
        return ""
    return prompt(f"Type '{phrase}' to continue: ")


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--confirm", default=None, help="confirmation phrase for destructive steps")
    common.add_argument("--dry-run", action="store_true")
    common.add_argument("--json", dest="json", action="store_true", default=True)
    common.add_argument("--no-json", dest="json", action="store_false")

    parser = argparse.ArgumentParser(prog="nodeprep", add_help=True)
    sub = parser.add_subparsers(dest="command", required=True)

    headless = sub.add_parser("headless", parents=[common], help="text target, swap off")
    headless.add_argument("--hostname", default=None)
    headless.add_argument("--remove-desktop", action="store_true")
    sub.add_parser("clone", parents=[common], help="clone the live root onto secondary storage")
    sub.add_parser("repoint", parents=[common], help="point the removable boot selector at the clone")
    sub.add_parser("strip", parents=[common], help="empty the removable root except boot")
    sub.add_parser("update", parents=[common], help="apply pending OS updates")
    sub.add_parser("verify", parents=[common], help="run the full audit")
    sub.add_parser("status", parents=[common], help="show which stage postconditions hold")
    sub.add_parser("inspect-firmware", parents=[common], help="list and classify firmware boot entries")

    for name in ("reimage", "factory-reset"):
        p = sub.add_parser(name, parents=[common])
        p.add_argument("--image", default=None)
        if name == "reimage":
            p.add_argument("--no-stage-image", dest="stage_image", action="store_false", default=True)
    sub.add_parser("revert-boot", parents=[common], help="point the removable boot selector back at itself")
    return parser


def _require_root(args) -> None:
    if args.dry_run:
        return
    if os.geteuid() != 0:
        _emit_result("FAIL_NOT_ROOT", extra={"why": "nodeprep needs root to reach block devices and firmware"})


def _emit_op(result: OpResult) -> None:
    extra = asdict(result)
    if result.ok:
        _emit_result("RECOVERY_OK", extra)
    _emit_result(_kind_for_error(result.error), extra)


def _run_stage(args, layout) -> None:
    ctx = stages.StageContext(
        layout=layout,
        confirm=args.confirm,
        prompt=_interactive_prompt(),
        dry_run=args.dry_run,
        hostname=getattr(args, "hostname", None),
        remove_desktop=getattr(args, "remove_desktop", False),
    )
    outcome = stages.run_stage(args.command, ctx)
    if outcome.checks:
        _print_checks(outcome.checks)
    extra = outcome.as_dict()
    if outcome.ok:
        _emit_result("VERIFY_OK" if args.command == "verify" else "STAGE_OK", extra)
    _emit_result(_kind_for_error(outcome.error), extra)


def _main_impl(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    global JSON_OUTPUT_ENABLED, _CURRENT_COMMAND
    JSON_OUTPUT_ENABLED = bool(getattr(args, "json", True))
    _CURRENT_COMMAND = args.command

    trace("cli.args", command=args.command, dry_run=args.dry_run, confirm_given=args.confirm is not None)
    _require_root(args)
    layout = node_layout()

    if args.command in STAGE_COMMANDS:
        _run_stage(args, layout)

    if args.command == "status":
        rows = stages.status(layout)
        for row in rows:
            holds = row["holds"]
            mark = "n/a " if holds is None else ("PASS" if holds else "FAIL")
            suffix = f" ({', '.join(row['failed'])})" if row["failed"] else ""
            print(f"[{mark}] {row['stage']} -> {row['state']}{suffix}", file=sys.stderr)
        _emit_result("STATUS_OK", {"stages": rows})

    if args.command == "inspect-firmware":
        report = firmware.inspect()
        for row in report["entries"]:
            print(f"Boot{row['index']} [{row['class']}] {row['label']}", file=sys.stderr)
        _emit_result("FIRMWARE_OK", report)

    if args.command == "reimage":
        image = args.image or layout.image
        _emit_op(
            recovery.reimage_removable_media(
                image, layout, _token(args, REIMAGE_PHRASE), stage_copy=args.stage_image, dry_run=args.dry_run
            )
        )

    if args.command == "revert-boot":
        _emit_op(recovery.revert_boot_selector(layout, _token(args, REVERT_PHRASE), dry_run=args.dry_run))

    if args.command == "factory-reset":
        image = args.image or layout.image
        _emit_op(recovery.factory_reset(image, layout, _token(args, RESET_PHRASE), dry_run=args.dry_run))

    parser.error(f"unhandled command {args.command}")
    return 2


def main(argv: Optional[list[str]] = None) -> int:
    try:
        return _main_impl(argv)
    except SystemExit:
        raise
    except NodePrepError as exc:
        _emit_result(_kind_for_error(type(exc).__name__), extra={"why": str(exc), "state": exc.state})
    except Exception as exc:  # noqa: BLE001
        _emit_result("FAIL_UNHANDLED", extra={"error": str(exc), "why": type(exc).__name__})
    return 0


if __name__ == "__main__":
    sys.exit(main())
