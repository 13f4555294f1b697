#!/usr/bin/env python3
"""Statecraft command line.

Usage:
    statecraft reconcile [CONFIG] [--group G] [--dry-run] [--fail-fast] [--workers N]
    statecraft validate [CONFIG] [--group G] [--json]
    statecraft plan [CONFIG] [--group G]
    statecraft history [CONFIG] [--resource ID] [--run RUN_ID] [--limit N]

Exit codes:
    0   Final validation has zero failures
    1   One or more resources failed validation
    2   Configuration error (nothing was probed or changed)
    130 Interrupted

Environment variables:
    STATECRAFT_CONFIG       Resource file when CONFIG is omitted
    STATECRAFT_LOG_LEVEL    Console log level (default: INFO)
    STATECRAFT_AUDIT_LOG    Audit log file, overrides the resource file's
                            settings (default: ~/.statecraft/audit.log)
"""
import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from .config.inventory import ResourceInventory, configured_audit_log
from .engine import ReconcileEngine
from .engine.errors import ConfigError
from .engine.schema import ErrorMode, ExecutionStatus, RunReport
from .system import create_system
from .utils.audit_log import get_recent_changes, setup_audit_logging
from .utils.logging_config import setup_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="statecraft",
        description="Reconcile a host to its declared system state",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Preview what would change
    statecraft plan configs/rock5b-mali.yaml

    # Apply only the GPU group, stopping at the first failure
    statecraft reconcile configs/rock5b-mali.yaml --group gpu --fail-fast

    # Check the host without changing anything
    statecraft validate configs/rock5b-mali.yaml
""",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_config_args(sub: argparse.ArgumentParser) -> None:
        sub.add_argument(
            "config",
            nargs="?",
            help="Resource file (default: $STATECRAFT_CONFIG or ./configs/resources.yaml)",
        )
        sub.add_argument(
            "--group",
            action="append",
            default=[],
            help="Only this group and its dependencies (repeatable)",
        )

    reconcile = subparsers.add_parser("reconcile", help="Probe, plan, apply and validate")
    add_config_args(reconcile)
    reconcile.add_argument("--dry-run", action="store_true", help="Plan and record, change nothing")
    reconcile.add_argument(
        "--fail-fast",
        action="store_true",
        help="Skip all remaining actions after the first failure",
    )
    reconcile.add_argument("--workers", type=int, help="Run independent actions concurrently")
    reconcile.add_argument("--max-attempts", type=int, help="Attempts per action, fallback included")
    reconcile.add_argument("--json", action="store_true", help="Print the run report as JSON")
    reconcile.add_argument("--report", type=Path, help="Write the run report as JSON to this file")

    validate = subparsers.add_parser("validate", help="Check every resource, change nothing")
    add_config_args(validate)
    validate.add_argument("--json", action="store_true", help="Print the report as JSON")

    plan = subparsers.add_parser("plan", help="Show the actions a reconcile would take")
    add_config_args(plan)

    history = subparsers.add_parser("history", help="Show recent actions from the audit log")
    history.add_argument(
        "config",
        nargs="?",
        help="Resource file whose settings name the audit log",
    )
    history.add_argument("--resource", help="Filter by resource ID")
    history.add_argument("--status", choices=[s.value for s in ExecutionStatus])
    history.add_argument("--run", help="Only actions from this run ID")
    history.add_argument("--limit", type=int, default=20)
    history.add_argument("--audit-log", help="Audit log file (overrides the settings)")

    return parser


def format_run(report: RunReport) -> str:
    """Human-readable action records followed by the validation report."""
    lines = []
    for record in report.records:
        action = record.action
        line = f"[{record.status.value.upper():9s}] {action.ordinal:3d}. {action.describe()}"
        if record.attempts > 1:
            line += f" (attempts: {record.attempts})"
        if record.used_fallback:
            line += " (fallback)"
        lines.append(line)
        if record.error:
            lines.append(f"             {record.error}")
        elif record.status == ExecutionStatus.SKIPPED and record.message:
            lines.append(f"             {record.message}")

    if not report.records:
        lines.append("No changes needed - current state matches desired state")

    lines.append("")
    if report.validation is not None:
        lines.append(report.validation.format_text())
    if report.cancelled:
        lines.append("Run was cancelled")
    if report.reboot_required:
        lines.append("Reboot required for some changes to take effect")
    if report.run_id:
        lines.append(f"Run ID: {report.run_id} (statecraft history --run {report.run_id})")
    return "\n".join(lines)


def _engine(inventory: ResourceInventory, args: argparse.Namespace) -> ReconcileEngine:
    overrides = {}
    if getattr(args, "fail_fast", False):
        overrides["error_mode"] = ErrorMode.FAIL_FAST
    overrides["workers"] = getattr(args, "workers", None)
    overrides["max_attempts"] = getattr(args, "max_attempts", None)

    settings = inventory.settings(**overrides)
    setup_audit_logging(settings.audit_log)
    engine = ReconcileEngine(create_system(settings), settings.execute_options())
    engine.config_checksum = inventory.checksum
    return engine


def cmd_reconcile(args: argparse.Namespace) -> int:
    inventory = ResourceInventory(args.config)
    resources = inventory.select(args.group)
    engine = _engine(inventory, args)

    def handle_signal(signum, frame):
        logger.warning(f"Received signal {signum}, stopping after the current action")
        engine.cancel()

    previous_handler = signal.signal(signal.SIGTERM, handle_signal)
    try:
        if engine.options.workers > 1:
            report = asyncio.run(engine.reconcile_concurrent(resources, dry_run=args.dry_run))
        else:
            report = engine.reconcile(resources, dry_run=args.dry_run)
    finally:
        signal.signal(signal.SIGTERM, previous_handler)

    if args.report:
        args.report.parent.mkdir(parents=True, exist_ok=True)
        args.report.write_text(json.dumps(report.to_dict(), indent=2))
        logger.info(f"Run report written to {args.report}")

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(format_run(report))

    return EXIT_OK if report.success else EXIT_FAILED


def cmd_validate(args: argparse.Namespace) -> int:
    inventory = ResourceInventory(args.config)
    resources = inventory.select(args.group)
    engine = _engine(inventory, args)
    engine.validator.validate(resources)
    report = engine.validate(resources)

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(report.format_text())

    return EXIT_OK if report.failed == 0 else EXIT_FAILED


def cmd_plan(args: argparse.Namespace) -> int:
    inventory = ResourceInventory(args.config)
    resources = inventory.select(args.group)
    engine = _engine(inventory, args)
    print(engine.preview(resources))
    return EXIT_OK


def cmd_history(args: argparse.Namespace) -> int:
    changes = get_recent_changes(
        log_file=args.audit_log or configured_audit_log(args.config),
        resource_id=args.resource,
        status=args.status,
        run_id=args.run,
        limit=args.limit,
    )
    if not changes:
        print("No recorded actions")
        return EXIT_OK

    for change in changes:
        line = (
            f"{change.timestamp}  {change.run_id}  {change.status:9s} {change.operation:7s} "
            f"{change.resource_id} ({change.target})"
        )
        if change.dry_run:
            line += " [dry run]"
        if change.error:
            line += f": {change.error}"
        print(line)
    return EXIT_OK


COMMANDS = {
    "reconcile": cmd_reconcile,
    "validate": cmd_validate,
    "plan": cmd_plan,
    "history": cmd_history,
}


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the statecraft CLI."""
    args = build_parser().parse_args(argv)

    setup_logging(level=logging.DEBUG if args.verbose else None)

    try:
        return COMMANDS[args.command](args)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
