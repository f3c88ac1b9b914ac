"""Output formatters for run results."""

import json
from collections.abc import Sequence

from rich.console import Console
from rich.markup import escape
from rich.text import Text
from rich.tree import Tree

from convergent.models import ChangeKind, RunResult
from convergent.task import Deletion

KIND_COLORS = {
    ChangeKind.CREATE: "green",
    ChangeKind.UPDATE: "yellow",
    ChangeKind.REPLACE: "bold red",
}

KIND_SYMBOLS = {
    ChangeKind.CREATE: "+",
    ChangeKind.UPDATE: "~",
    ChangeKind.REPLACE: "-/+",
}

REDACTED = "[REDACTED]"


def _escape_md_cell(value: str) -> str:
    """Escape characters that break markdown table cells."""
    return value.replace("|", "\\|").replace("\n", " ")


def _show(value, redact: bool) -> str:
    if redact:
        return REDACTED
    if value is None:
        return "(unset)"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


def _is_empty(result: RunResult, deletions: Sequence[Deletion]) -> bool:
    return not result.changes and not deletions and result.success and not result.warnings


def format_json(
    result: RunResult,
    deletions: Sequence[Deletion] = (),
    *,
    redact: bool = False,
    title: str = "Plan",
) -> str:
    """Format a run as JSON."""
    changes = [
        {
            "task": c.task_name,
            "kind": c.task_kind,
            "action": c.kind.value,
            "fields": [
                {
                    "field": d.field,
                    "expected": REDACTED if redact else d.expected,
                    "actual": REDACTED if redact else d.actual,
                    "replace": d.replace,
                }
                for d in c.deltas
            ],
        }
        for c in result.changes
    ]

    return json.dumps(
        {
            "operation": title.lower(),
            "summary": {
                "total_tasks": len(result.outcomes),
                "changes": len(changes),
                "deletions": len(deletions),
                "failed": len(result.failures),
                "skipped": len(result.skipped),
                "cancelled": result.cancelled,
                "success": result.success,
            },
            "changes": changes,
            "deletions": [{"name": d.task_name, "description": d.description} for d in deletions],
            "failures": [
                {
                    "task": f.task_name,
                    "error": str(f.error),
                    "retryable": f.retryable,
                    "dependencies": list(f.dependencies),
                }
                for f in result.failures
            ],
            "skipped": [
                {"task": s.task_name, "cause": s.cause, "chain": list(s.chain)}
                for s in result.skipped
            ],
            "warnings": result.warnings,
        },
        indent=2,
        default=str,
    )


def format_markdown(
    result: RunResult,
    deletions: Sequence[Deletion] = (),
    *,
    redact: bool = False,
    title: str = "Plan",
) -> str:
    """Format a run as Markdown."""
    if _is_empty(result, deletions):
        return "No changes."

    changes = result.changes
    lines = [
        f"## {title}: {len(changes)} change(s), {len(deletions)} deletion(s)",
        "",
    ]

    if changes:
        lines.append("| Task | Kind | Action | Field | Expected | Actual |")
        lines.append("|------|------|--------|-------|----------|--------|")
        for c in changes:
            task = _escape_md_cell(c.task_name)
            if not c.deltas:
                lines.append(f"| {task} | {c.task_kind} | {c.kind.value} | — | — | — |")
            for d in c.deltas:
                expected = _escape_md_cell(_show(d.expected, redact))
                actual = _escape_md_cell(_show(d.actual, redact))
                field = f"{d.field} (forces replacement)" if d.replace else d.field
                lines.append(
                    f"| {task} | {c.task_kind} | {c.kind.value} "
                    f"| `{field}` | `{expected}` | `{actual}` |"
                )
        lines.append("")

    if deletions:
        lines.append("### Deletions")
        lines.append("")
        lines.extend(f"- {_escape_md_cell(d.description)}" for d in deletions)
        lines.append("")

    if result.failures:
        lines.append("### Failures")
        lines.append("")
        lines.extend(f"- **{f.task_name}**: {_escape_md_cell(str(f.error))}" for f in result.failures)
        lines.append("")

    if result.skipped:
        lines.append("### Skipped")
        lines.append("")
        lines.extend(f"- **{s.task_name}**: {_escape_md_cell(s.cause)}" for s in result.skipped)
        lines.append("")

    warnings = result.warnings
    if warnings:
        lines.append("### Warnings")
        lines.append("")
        for name, messages in warnings.items():
            lines.extend(f"- **{name}**: {_escape_md_cell(m)}" for m in messages)
        lines.append("")

    return "\n".join(lines)


def format_table(
    result: RunResult,
    deletions: Sequence[Deletion] = (),
    *,
    redact: bool = False,
    title: str = "Plan",
) -> str:
    """Format a run as a Rich tree view, returned as a string."""
    if _is_empty(result, deletions):
        return "No changes."

    console = Console(record=True, width=120)
    tree = Tree(f"[bold]{title}[/bold]")

    for c in result.changes:
        color = KIND_COLORS.get(c.kind, "dim")
        branch = tree.add(
            Text.from_markup(
                f"[{color}]{KIND_SYMBOLS.get(c.kind, '')} {escape(c.task_name)}[/{color}]"
                f" ({c.task_kind}) — {c.kind.value}"
            )
        )
        for d in c.deltas:
            expected = escape(_show(d.expected, redact))
            actual = escape(_show(d.actual, redact))
            suffix = " [bold red](forces replacement)[/bold red]" if d.replace else ""
            branch.add(
                Text.from_markup(f"{d.field}: [red]{actual}[/red] → [green]{expected}[/green]{suffix}")
            )

    if deletions:
        branch = tree.add(Text.from_markup("[red]Deletions[/red]"))
        for d in deletions:
            branch.add(Text.from_markup(f"[red]- {escape(d.description)}[/red]"))

    if result.failures:
        branch = tree.add(Text.from_markup("[bold red]Failures[/bold red]"))
        for f in result.failures:
            branch.add(Text.from_markup(f"[red]{escape(f.task_name)}[/red]: {escape(str(f.error))}"))

    if result.skipped:
        branch = tree.add(Text.from_markup("[yellow]Skipped[/yellow]"))
        for s in result.skipped:
            branch.add(Text.from_markup(f"{escape(s.task_name)}: {escape(s.cause)}"))

    for name, messages in result.warnings.items():
        branch = tree.add(Text.from_markup(f"[yellow]Warnings for {escape(name)}[/yellow]"))
        for m in messages:
            branch.add(Text(m))

    console.print(tree)
    return console.export_text()
