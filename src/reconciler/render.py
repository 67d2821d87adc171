"""Plan and apply output rendering (Terraform-style)."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, NamedTuple

import typer

from reconciler.engine.types import Action, ResourceStatus

if TYPE_CHECKING:
    from collections.abc import Callable

    from reconciler.engine.types import ApplyResult, DriftEntry, Plan, ResourceChange

SENSITIVE = "(sensitive value)"
UNKNOWN_VALUE = "(known after apply)"


class _ActionStyle(NamedTuple):
    color: str
    symbol: str
    progress_verb: str
    done_verb: str


_ACTION_STYLES: dict[Action, _ActionStyle] = {
    Action.CREATE: _ActionStyle("green", "+", "Creating", "Creation complete"),
    Action.UPDATE: _ActionStyle("yellow", "~", "Modifying", "Modifications complete"),
    Action.DESTROY_THEN_CREATE: _ActionStyle("red", "-/+", "Replacing", "Replacement complete"),
    Action.CREATE_BEFORE_DESTROY: _ActionStyle("green", "+/-", "Replacing", "Replacement complete"),
    Action.DELETE: _ActionStyle("red", "-", "Destroying", "Destruction complete"),
    Action.NOOP: _ActionStyle("bright_black", " ", "", ""),
}

_ACTION_DESC: dict[Action, str] = {
    Action.CREATE: "will be created",
    Action.UPDATE: "will be updated in-place",
    Action.DESTROY_THEN_CREATE: "must be replaced",
    Action.CREATE_BEFORE_DESTROY: "must be replaced",
    Action.DELETE: "will be destroyed",
    Action.NOOP: "is up-to-date",
}

_STATUS_COLORS: dict[ResourceStatus, str] = {
    ResourceStatus.APPLIED: "green",
    ResourceStatus.FAILED: "red",
    ResourceStatus.SKIPPED: "yellow",
    ResourceStatus.NOOP: "bright_black",
}


def styler(color: bool) -> Callable[..., str]:
    """Return ``typer.style`` when *color* is True, otherwise a passthrough."""
    if color:
        return typer.style
    return lambda text, **_kw: text


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def has_actionable_changes(plan: Plan) -> bool:
    """Return True if the plan contains any non-NOOP changes."""
    return any(c.action != Action.NOOP for c in plan.changes)


def _align_values(items: dict[str, str]) -> list[tuple[str, str]]:
    """Right-pad keys so ``=`` signs align."""
    if not items:
        return []
    max_key = max(len(k) for k in items)
    return [(k.ljust(max_key), v) for k, v in items.items()]


def _format_value(value: Any) -> str:
    """Format a value for display in a plan diff block."""
    if isinstance(value, str):
        return f'"{value}"'
    if value is None:
        return "null"
    return str(value)


def _display(change: ResourceChange, key: str, value: Any, *, planned: bool = True) -> str:
    if key in change.sensitive:
        return SENSITIVE
    if planned and key in change.unknown:
        return UNKNOWN_VALUE
    return _format_value(value)


# ---------------------------------------------------------------------------
# Plan rendering
# ---------------------------------------------------------------------------


def _change_attrs(change: ResourceChange) -> dict[str, str]:
    """Extract displayable ``key -> formatted value`` pairs from a change."""
    if change.action == Action.CREATE and change.planned is not None:
        return {k: _display(change, k, v) for k, v in change.planned.items()}
    if change.action == Action.DELETE and change.prior is not None:
        return {k: _display(change, k, v, planned=False) for k, v in change.prior.items()}
    if change.diff:
        attrs: dict[str, str] = {}
        for k, d in change.diff.items():
            before = _display(change, k, d["from"], planned=False)
            after = _display(change, k, d["to"])
            suffix = " # forces replacement" if k in change.replace_reasons else ""
            attrs[k] = f"{before} -> {after}{suffix}"
        return attrs
    return {}


def format_change(change: ResourceChange, *, color: bool = True) -> str:
    """Render a single ResourceChange as a Terraform-style block."""
    style = styler(color)
    action_style = _ACTION_STYLES[change.action]
    sc = {"fg": action_style.color}
    symbol = action_style.symbol

    header = f"  # {change.address} {_ACTION_DESC[change.action]}"
    extra = [r for r in change.replace_reasons if r in ("tainted", "requested")]
    if extra:
        header += f" ({', '.join(extra)})"

    name = change.address.split(".", 1)[1] if "." in change.address else change.address
    lines = [
        style(header, bold=True, **sc),
        style(f'  {symbol} resource "{change.resource_type}" "{name}" {{', **sc),
        *[
            style(f"      {symbol} {k} = {v}", **sc)
            for k, v in _align_values(_change_attrs(change))
        ],
        style("    }", **sc),
    ]
    return "\n".join(lines)


def format_changes(changes: list[ResourceChange], *, color: bool = True) -> str:
    """Render a list of changes as Terraform-style diff blocks."""
    blocks = [format_change(c, color=color) for c in changes if c.action != Action.NOOP]
    if not blocks:
        return "No changes. Resources are up-to-date."
    return "\n\n".join(blocks)


def format_plan(plan: Plan, *, color: bool = True) -> str:
    """Render the full plan output with per-change diff blocks and summary."""
    body = format_changes(plan.changes, color=color)
    if not has_actionable_changes(plan):
        return body
    return f"{body}\n\n{format_plan_summary(changes_summary(plan.changes), color=color)}"


def format_drift(entries: list[DriftEntry]) -> str:
    """Render drift detected by a refresh."""
    if not entries:
        return "No drift detected."
    lines: list[str] = []
    for e in entries:
        if e.kind == "vanished":
            lines.append(f"  # {e.address} has been deleted outside of the engine")
            continue
        lines.append(f"  # {e.address} has changed outside of the engine")
        for k, v in _align_values(
            {
                k: SENSITIVE
                if k in e.sensitive
                else f"{_format_value(d['from'])} -> {_format_value(d['to'])}"
                for k, d in e.diff.items()
            }
        ):
            lines.append(f"      ~ {k} = {v}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------


def format_progress(change: ResourceChange, event: str, *, color: bool = True) -> str:
    """One progress line for an apply event (``start`` / ``done`` / ``failed``)."""
    style = styler(color)
    action_style = _ACTION_STYLES[change.action]
    if event == "start":
        return f"{change.address}: {action_style.progress_verb}..."
    if event == "done":
        return style(f"{change.address}: {action_style.done_verb}", fg=action_style.color)
    return style(f"{change.address}: Failed", fg="red", bold=True)


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------

_PLAN_VERBS = ("to add", "to change", "to destroy")
_APPLY_VERBS = ("added", "changed", "destroyed")
_SUMMARY_COLORS = ("green", "yellow", "red")


def _format_summary(summary: dict[str, int], verbs: tuple[str, ...], *, color: bool) -> str:
    """Build the ``N verb, N verb, N verb`` part of a summary line."""
    style = styler(color)
    counts = (summary.get("create", 0), summary.get("update", 0), summary.get("delete", 0))
    parts = [
        style(f"{n} {verb}", fg=fg) if n and color else f"{n} {verb}"
        for n, verb, fg in zip(counts, verbs, _SUMMARY_COLORS, strict=True)
    ]
    return ", ".join(parts)


def changes_summary(changes: list[ResourceChange]) -> dict[str, int]:
    """Count changes as adds/changes/destroys; a replacement counts as one add and one destroy."""
    summary: dict[str, int] = {"create": 0, "update": 0, "delete": 0}
    for c in changes:
        if c.action == Action.NOOP:
            continue
        if c.action.is_replace:
            summary["create"] += 1
            summary["delete"] += 1
        else:
            summary[c.action.value] += 1
    return summary


def format_plan_summary(summary: dict[str, int], *, color: bool = True) -> str:
    """Render ``Plan: 2 to add, 1 to change, 0 to destroy.``"""
    return f"Plan: {_format_summary(summary, _PLAN_VERBS, color=color)}."


def format_apply_summary(result: ApplyResult, *, color: bool = True) -> str:
    """Render ``Apply complete! Resources: ...`` or the partial-failure header."""
    style = styler(color)
    counts = _format_summary(changes_summary(result.applied), _APPLY_VERBS, color=color)
    if result.ok:
        header = style("Apply complete!", fg="green", bold=True)
    elif result.canceled:
        header = style("Apply canceled.", fg="yellow", bold=True)
    else:
        header = style("Apply finished with errors.", fg="red", bold=True)
    return f"{header} Resources: {counts}."


def format_apply_report(result: ApplyResult, *, color: bool = True) -> str:
    """Render the terminal status of every address, with errors."""
    style = styler(color)
    lines: list[str] = []
    for address in sorted(result.outcomes):
        outcome = result.outcomes[address]
        status = style(
            outcome.status.value.ljust(7), fg=_STATUS_COLORS[outcome.status], bold=True
        )
        line = f"  {status} {address} ({outcome.action.value})"
        if outcome.error:
            line += f": {outcome.error}"
        lines.append(line)
    return "\n".join(lines)
