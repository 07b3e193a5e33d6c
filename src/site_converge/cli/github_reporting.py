"""Helpers for publishing convergence reports to GitHub Actions surfaces."""

from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
from typing import Iterable, Mapping, MutableMapping, Sequence

ACTION_ORDER = ["create", "update", "replace", "destroy", "no-op"]
OUTCOME_ORDER = ["succeeded", "skipped", "failed"]


def _normalize_counts(raw_counts: Mapping[str, int] | None, keys: Sequence[str]) -> MutableMapping[str, int]:
    counts: MutableMapping[str, int] = {key: 0 for key in keys}
    for key, value in (raw_counts or {}).items():
        normalized = str(key).lower()
        if normalized in counts:
            counts[normalized] = int(value)
    return counts


def _escape(message: str) -> str:
    return message.replace("%", "%25").replace("\r", "").replace("\n", "%0A")


def format_summary(report: Mapping[str, object]) -> str:
    """Render a Markdown job summary for the provided report."""

    summary: Mapping[str, object] = report.get("summary") or {}
    metadata: Mapping[str, object] = report.get("metadata") or {}
    operations: Sequence[Mapping[str, object]] = report.get("operations") or []
    command = str(report.get("command") or "plan")

    lines: list[str] = [
        f"# Site Convergence ({command})",
        "",
        f"**Planned changes:** {int(summary.get('changes', 0))}",
    ]
    if "succeeded" in summary:
        lines.append(f"**Result:** {'Succeeded' if summary.get('succeeded') else 'Failed'}")
    if summary.get("error"):
        lines.append(f"**Error:** {summary['error']}")

    actions = _normalize_counts(summary.get("actions"), ACTION_ORDER)
    lines.extend(["", "| Action | Resources |", "| --- | ---: |"])
    for action in ACTION_ORDER:
        lines.append(f"| {action.title()} | {actions[action]} |")

    if "outcomes" in summary:
        outcomes = _normalize_counts(summary.get("outcomes"), OUTCOME_ORDER)
        lines.extend(["", "| Outcome | Resources |", "| --- | ---: |"])
        for outcome in OUTCOME_ORDER:
            lines.append(f"| {outcome.title()} | {outcomes[outcome]} |")

    if metadata:
        lines.extend(["", "## Metadata", ""])
        for key in sorted(metadata):
            lines.append(f"- **{key}:** {metadata[key]}")

    changes = [op for op in operations if op.get("action") != "no-op"]
    if changes:
        lines.extend(["", "## Operations", ""])
        display_limit = 20
        for operation in changes[:display_limit]:
            bullet = f"- **{str(operation.get('action', '')).title()}** `{operation.get('resource_id', '')}`"
            outcome = operation.get("outcome")
            if outcome:
                bullet += f" ({outcome})"
            detail = str(operation.get("detail") or operation.get("reason") or "").strip()
            if detail:
                bullet += f": {detail}"
            lines.append(bullet)

        remaining = len(changes) - display_limit
        if remaining > 0:
            lines.append(f"- ...and {remaining} more operations.")

    lines.append("")
    return "\n".join(lines)


def iter_annotations(report: Mapping[str, object]) -> Iterable[str]:
    """Generate workflow command annotations for failed and skipped resources."""

    operations: Sequence[Mapping[str, object]] = report.get("operations") or []
    for operation in operations:
        outcome = str(operation.get("outcome") or "")
        if outcome not in {"failed", "skipped"}:
            continue

        level = "error" if outcome == "failed" else "warning"
        resource_id = str(operation.get("resource_id", "")).strip()
        action = str(operation.get("action", "")).strip()
        detail = str(operation.get("detail") or "").strip() or f"Resource {outcome}."

        title = f"{action} {resource_id}".strip()
        attribute_segment = f" title={title}" if title else ""
        yield f"::{level}{attribute_segment}::{_escape(detail)}"


def _load_report(path: Path) -> Mapping[str, object]:
    raw = path.read_text(encoding="utf-8-sig")
    if not raw.strip():
        return {}

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Failed to parse report JSON from '{path}': {exc.msg}.") from exc

    if not isinstance(data, Mapping):
        raise ValueError("Report JSON must be an object.")
    return data


def _write_summary(report: Mapping[str, object], destination: Path | None) -> None:
    if destination is None:
        return

    destination.parent.mkdir(parents=True, exist_ok=True)
    with destination.open("a", encoding="utf-8") as handle:
        handle.write(format_summary(report))


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="site-converge-summary",
        description="Publish a convergence report as GitHub job summary and annotations.",
    )
    parser.add_argument("report", type=Path, help="Path to the JSON report from 'site-converge --format json'.")
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional explicit path for the GitHub job summary output.",
    )

    args = parser.parse_args(argv)

    summary_path = args.summary_path
    if summary_path is None:
        summary_env = os.getenv("GITHUB_STEP_SUMMARY")
        if summary_env:
            summary_path = Path(summary_env)

    try:
        report = _load_report(args.report)
    except (OSError, ValueError) as exc:
        print(f"Error: {exc}")
        return 2

    _write_summary(report, summary_path)

    for command in iter_annotations(report):
        print(command)

    return 0


def run() -> None:  # pragma: no cover - wrapper for console entry point
    raise SystemExit(main())


if __name__ == "__main__":  # pragma: no cover - module execution guard
    run()
