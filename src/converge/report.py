"""Human-readable and JSON renderings of plans and apply reports."""

from typing import Any, Dict, List

from converge.codes import ActionStatus, Operation
from converge.kernel.apply import ApplyReport
from converge.kernel.plan import Action, Plan
from converge._internal.canonical_json import canonical_dumps


_SYMBOLS = {
    Operation.CREATE: "+",
    Operation.UPDATE: "~",
    Operation.DELETE: "-",
}


def _format_value(value: Any) -> str:
    if isinstance(value, str):
        return value if value == "(known after apply)" else f'"{value}"'
    return canonical_dumps(value)


def _describe(action: Action) -> str:
    if action.replace:
        verb = "will be deleted, then re-created" if action.operation == Operation.DELETE else "will be re-created"
        symbol = "-/+"
    else:
        verb = {
            Operation.CREATE: "will be created",
            Operation.UPDATE: "will be updated in place",
            Operation.DELETE: "will be deleted",
        }[action.operation]
        symbol = _SYMBOLS[action.operation]
    line = f"  {symbol} {action.address} {verb}"
    if action.reason:
        line += f" ({action.reason})"
    return line


def render_plan(plan: Plan) -> str:
    """Render a plan as text, one block per changing action, in plan order."""
    lines: List[str] = []
    changes = plan.changes()
    if not changes:
        lines.append("No changes. Declared resources match the recorded state.")
        return "\n".join(lines)

    lines.append("Planned actions, in order:")
    lines.append("")
    for action in changes:
        lines.append(_describe(action))
        # Attribute detail once per resource: on the create half of a replace
        if action.replace and action.operation == Operation.DELETE:
            continue
        for change in action.changes:
            marker = " # forces replacement" if change.requires_replace else ""
            if action.operation == Operation.CREATE and not action.replace:
                lines.append(f"      {change.name} = {_format_value(change.after)}")
            else:
                lines.append(
                    f"      {change.name}: {_format_value(change.before)} -> {_format_value(change.after)}{marker}"
                )
    lines.append("")
    s = plan.summary()
    lines.append(
        f"Plan: {s['create']} to create, {s['update']} to update, "
        f"{s['replace']} to replace, {s['delete']} to delete."
    )
    return "\n".join(lines)


def render_apply_report(report: ApplyReport) -> str:
    """Render the final apply report: succeeded, failed and skipped actions."""
    lines: List[str] = []
    for result in report.results:
        if result.operation == Operation.NOOP and result.status == ActionStatus.SUCCEEDED:
            continue
        line = f"  [{result.status.value}] {result.key}"
        if result.error:
            line += f": {result.error}"
        lines.append(line)

    succeeded = [r for r in report.succeeded() if r.operation != Operation.NOOP]
    lines.append("")
    status = "complete" if report.ok else ("cancelled" if report.cancelled else "FAILED")
    lines.append(
        f"Apply {status}: {len(succeeded)} succeeded, {len(report.failed())} failed, "
        f"{len(report.skipped())} skipped."
    )
    return "\n".join(lines)


def apply_report_to_dict(report: ApplyReport) -> Dict[str, Any]:
    return {
        "ok": report.ok,
        "cancelled": report.cancelled,
        "summary": {
            "succeeded": len(report.succeeded()),
            "failed": len(report.failed()),
            "skipped": len(report.skipped()),
        },
        "results": [r.model_dump(mode="json") for r in report.results],
    }
