"""Command-line interface implementation for site convergence."""

from __future__ import annotations

import argparse
import json
import logging
import signal
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, MutableMapping, Sequence

from ..adapters import AwsProvider, ResourceProvider
from ..config import ConvergeSettings
from ..errors import ConcurrentApplyError, ConfigError, DeclarationError, StateStoreError
from ..models import ApplyResult, NodeOutcome, OperationKind, OperationRecord, Plan, PlannedOperation
from ..service import ConvergenceResult, ConvergenceService
from ..state import StateStore

DEFAULT_DECLARATION = Path("site.yaml")
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ConvergenceReport:
    """Planned operations, their outcomes and contextual metadata."""

    command: str
    plan: Plan
    result: ApplyResult | None
    metadata: Mapping[str, Any]

    @property
    def succeeded(self) -> bool:
        return self.result is None or self.result.succeeded

    def counts_by_action(self) -> dict[str, int]:
        counts: MutableMapping[OperationKind, int] = {action: 0 for action in OperationKind}
        for operation in self.plan.operations:
            counts[operation.action] += 1
        return {action.value: count for action, count in counts.items()}

    def counts_by_outcome(self) -> dict[str, int]:
        counts: MutableMapping[NodeOutcome, int] = {outcome: 0 for outcome in NodeOutcome}
        for record in self.result.records if self.result else ():
            counts[record.outcome] += 1
        return {outcome.value: count for outcome, count in counts.items()}

    def to_dict(self) -> dict[str, Any]:
        summary: dict[str, Any] = {
            "total_operations": len(self.plan.operations),
            "changes": len(self.plan.changes),
            "actions": self.counts_by_action(),
        }
        if self.result is not None:
            summary["succeeded"] = self.result.succeeded
            summary["outcomes"] = self.counts_by_outcome()
            summary["error"] = str(self.result.error) if self.result.error else None

        return {
            "command": self.command,
            "metadata": dict(self.metadata),
            "summary": summary,
            "operations": [
                _serialize_operation(operation, self.result.record(operation.resource_id) if self.result else None)
                for operation in self.plan.operations
            ],
        }


def _serialize_operation(operation: PlannedOperation, record: OperationRecord | None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "resource_id": operation.resource_id,
        "kind": operation.kind.value,
        "action": operation.action.value,
        "reason": operation.reason,
    }
    if record is not None:
        payload["outcome"] = record.outcome.value
        payload["detail"] = record.detail
        if record.started_at is not None and record.finished_at is not None:
            payload["duration_seconds"] = round(record.finished_at - record.started_at, 3)
    return payload


def render_table(report: ConvergenceReport) -> str:
    """Render the operations as a simple text table for terminal output."""

    if not report.plan.operations:
        return "No resources declared or recorded."
    if report.result is None and report.plan.is_empty:
        return "No changes. Remote state matches the declarations."

    headers: tuple[str, ...] = ("Action", "Resource", "Kind", "Reason")
    if report.result is not None:
        headers += ("Outcome", "Detail")

    rows: list[tuple[str, ...]] = [headers]
    for operation in report.plan.operations:
        row: tuple[str, ...] = (
            operation.action.value,
            operation.resource_id,
            operation.kind.value,
            operation.reason or "-",
        )
        if report.result is not None:
            record = report.result.record(operation.resource_id)
            row += (record.outcome.value, record.detail or "-") if record else ("-", "-")
        rows.append(row)

    widths = [max(len(row[idx]) for row in rows) for idx in range(len(headers))]

    def format_row(values: tuple[str, ...]) -> str:
        return "  ".join(value.ljust(width) for value, width in zip(values, widths, strict=True)).rstrip()

    lines = [format_row(headers), "  ".join("=" * width for width in widths)]
    lines.extend(format_row(row) for row in rows[1:])

    changes = len(report.plan.changes)
    if report.result is None:
        lines.extend(["", f"Plan: {changes} change(s)."])
    else:
        outcomes = report.counts_by_outcome()
        lines.extend(
            [
                "",
                "Result: "
                + ", ".join(f"{count} {name}" for name, count in outcomes.items())
                + "."
            ]
        )
        if report.result.error is not None:
            lines.append(f"Error: {report.result.error}")
    return "\n".join(lines)


def build_parser() -> argparse.ArgumentParser:
    """Construct the CLI argument parser."""

    parser = argparse.ArgumentParser(
        prog="site-converge", description="Converge static-site infrastructure to its declarations"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    subparsers = parser.add_subparsers(dest="command")

    for name, help_text in (
        ("plan", "Show the operations an apply would perform."),
        ("apply", "Create, update, replace and destroy resources to match the declarations."),
        ("destroy", "Remove every resource recorded in the state."),
        ("unlock", "Remove a state lock left behind by an interrupted apply."),
    ):
        command = subparsers.add_parser(name, help=help_text)
        _add_common_arguments(command)
        if name in {"plan", "apply", "destroy"}:
            _add_run_arguments(command)

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS, help="Enable debug logging."
    )
    parser.add_argument(
        "-f",
        "--file",
        dest="files",
        action="append",
        type=Path,
        default=None,
        help="Declaration file to load. Repeat to merge several files (default: site.yaml).",
    )
    parser.add_argument(
        "--state",
        dest="state_path",
        type=Path,
        default=None,
        help="Path to the state file. Overrides the declarations' settings.",
    )


def _add_run_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--zone-id", default=None, help="DNS hosted zone that receives records.")
    parser.add_argument("--region", default=None, help="Region for the bucket and other regional resources.")
    parser.add_argument("--profile", default=None, help="Named credentials profile to use.")
    parser.add_argument(
        "--max-wait",
        dest="certificate_max_wait",
        type=float,
        default=None,
        help="Seconds to wait for certificate validation before giving up.",
    )
    parser.add_argument(
        "--poll-interval",
        dest="certificate_poll_interval",
        type=float,
        default=None,
        help="Seconds between certificate status checks.",
    )
    parser.add_argument(
        "--upload-workers",
        type=int,
        default=None,
        help="Number of concurrent asset uploads.",
    )
    parser.add_argument(
        "--verify-remote",
        dest="verify_remote_assets",
        action="store_true",
        default=None,
        help="Re-upload assets whose remote copy no longer matches the recorded hash.",
    )
    parser.add_argument(
        "--format",
        choices=["table", "json"],
        default="table",
        help="Output format for the plan or apply report.",
    )


def create_provider(settings: ConvergeSettings) -> ResourceProvider:
    """Create the cloud provider used for apply and destroy."""

    return AwsProvider(
        region=settings.region,
        profile=settings.profile,
        deploy_timeout=settings.distribution_deploy_timeout,
    )


def create_service(cancel_event: threading.Event | None = None) -> ConvergenceService:
    return ConvergenceService(provider_factory=create_provider, cancel_event=cancel_event)


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    names = (
        "state_path",
        "zone_id",
        "region",
        "profile",
        "certificate_max_wait",
        "certificate_poll_interval",
        "upload_workers",
        "verify_remote_assets",
    )
    overrides = {name: getattr(args, name, None) for name in names}
    if overrides["state_path"] is not None:
        overrides["state_path"] = args.state_path.resolve()
    return {key: value for key, value in overrides.items() if value is not None}


def _declaration_paths(args: argparse.Namespace) -> list[Path]:
    return [path.resolve() for path in (args.files or [DEFAULT_DECLARATION])]


def _build_report(command: str, result: ConvergenceResult) -> ConvergenceReport:
    return ConvergenceReport(command=command, plan=result.plan, result=result.apply, metadata=result.metadata)


def _format_report(report: ConvergenceReport, *, output_format: str) -> str:
    if output_format not in {"table", "json"}:
        raise ValueError("format must be either 'table' or 'json'")
    if output_format == "json":
        return json.dumps(report.to_dict(), indent=2)
    return render_table(report)


def _handle_run(args: argparse.Namespace) -> int:
    cancel_event = threading.Event()
    service = create_service(cancel_event)
    paths = _declaration_paths(args)
    overrides = _overrides(args)

    def _cancel(signum: int, frame: Any) -> None:
        logger.warning("Cancellation requested; stopping after the current operation")
        cancel_event.set()

    previous_handler = None
    if args.command != "plan" and threading.current_thread() is threading.main_thread():
        previous_handler = signal.signal(signal.SIGINT, _cancel)

    try:
        if args.command == "plan":
            result = service.plan(paths, overrides=overrides)
        elif args.command == "apply":
            result = service.apply(paths, overrides=overrides)
        else:
            result = service.destroy(paths, overrides=overrides)
    except (DeclarationError, ConfigError, ConcurrentApplyError, StateStoreError) as exc:
        print(f"Error: {exc}")
        return 2
    finally:
        if previous_handler is not None:
            signal.signal(signal.SIGINT, previous_handler)

    report = _build_report(args.command, result)
    print(_format_report(report, output_format=args.format))
    return 0 if report.succeeded else 1


def _handle_unlock(args: argparse.Namespace) -> int:
    service = ConvergenceService()
    try:
        settings = service.settings(_declaration_paths(args), overrides=_overrides(args))
    except (DeclarationError, ConfigError) as exc:
        print(f"Error: {exc}")
        return 2

    if StateStore(settings.state_path).force_unlock():
        print(f"Removed lock on {settings.state_path}.")
    else:
        print(f"No lock held on {settings.state_path}.")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by tests and the console script."""

    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format=LOG_FORMAT)

    if args.command in {"plan", "apply", "destroy"}:
        return _handle_run(args)
    if args.command == "unlock":
        return _handle_unlock(args)

    parser.print_help()
    return 0


def run() -> None:  # pragma: no cover - thin wrapper for module execution
    """Execute the CLI and exit with the produced status code."""

    raise SystemExit(main())


if __name__ == "__main__":  # pragma: no cover - module execution guard
    run()
