"""Human- and machine-readable reports: detection results, plans, run progress."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from archconform.execution.events import (
    PhaseAborted,
    PhaseSkipped,
    PhaseStarted,
    PhaseVerified,
    RunCompleted,
    UnitApplied,
    UnitDecisionRequested,
    UnitFailed,
    UnitsBlocked,
    UnitSkipped,
)

if TYPE_CHECKING:
    from rich.console import Console

    from archconform.execution.events import Event
    from archconform.execution.summary import RunSummary
    from archconform.health import HealthScore
    from archconform.planning.units import Plan
    from archconform.rules.engine import DetectionResult

_SEVERITY_MARKS: dict[str, str] = {
    "critical": "✗",
    "major": "✗",
    "minor": "▲",
    "info": "●",
}


# ---------------------------------------------------------------------------
# Detection results
# ---------------------------------------------------------------------------


def format_violations_rich(result: DetectionResult) -> str:
    """Format a DetectionResult as human-readable text.

    Example::

        Rules: 8 evaluated
        Files: 25 evaluated, 0 skipped, 1 unparseable

        ✗ core-no-infrastructure [Layering, critical]
          src/domain/order.py:3 → core module imports infrastructure module ...

        1 violation found (8 rules evaluated, 0.1s)
    """
    lines: list[str] = [
        f"Rules: {result.rules_evaluated} evaluated",
        f"Files: {len(result.evaluated)} evaluated, {len(result.skipped)} skipped, "
        f"{len(result.unparseable)} unparseable",
        "",
    ]
    elapsed_str = f"{result.elapsed_ms / 1000:.1f}s"

    for v in result.violations:
        mark = _SEVERITY_MARKS.get(v.severity.value, "?")
        lines.append(f"{mark} {v.rule_id} [{v.category}, {v.severity.value}]")
        loc = v.path
        if v.line_range is not None:
            loc += f":{v.line_range[0]}"
        lines.append(f"  {loc} → {v.message}")
        lines.append("")

    for path in result.unparseable:
        lines.append(f"! {path}: unparseable, not evaluated")
    if result.unparseable:
        lines.append("")

    count = len(result.violations)
    if count:
        noun = "violation" if count == 1 else "violations"
        lines.append(
            f"{count} {noun} found ({result.rules_evaluated} rules evaluated, {elapsed_str})"
        )
    else:
        lines.append(
            f"✓ No violations found ({result.rules_evaluated} rules evaluated, {elapsed_str})"
        )
    return "\n".join(lines)


def format_violations_json(
    result: DetectionResult, health: HealthScore | None = None
) -> str:
    """Format a DetectionResult as JSON with ``violations`` and ``summary``."""
    summary: dict[str, object] = {
        "rules_evaluated": result.rules_evaluated,
        "violations_count": len(result.violations),
        "files_evaluated": len(result.evaluated),
        "files_skipped": result.skipped,
        "files_unparseable": result.unparseable,
        "elapsed_ms": result.elapsed_ms,
    }
    if health is not None:
        summary["health"] = health.to_dict()
    output = {"violations": [v.to_dict() for v in result.violations], "summary": summary}
    return json.dumps(output, indent=2)


def format_violations_porcelain(result: DetectionResult) -> str:
    """One line per violation: ``rule_id:category:severity:path:line:related``."""
    lines: list[str] = []
    for v in result.violations:
        line = str(v.line_range[0]) if v.line_range is not None else ""
        related = v.related_path or ""
        lines.append(f"{v.rule_id}:{v.category}:{v.severity.value}:{v.path}:{line}:{related}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


def format_plan_rich(plan: Plan) -> str:
    """Render a plan as one table per phase."""
    from io import StringIO

    from rich.console import Console
    from rich.table import Table

    buf = StringIO()
    console = Console(file=buf, force_terminal=True, width=100)

    console.print()
    console.rule(f"[bold]Refactoring Plan {plan.id}[/bold]", style="blue")
    if plan.is_empty:
        console.print("  Nothing to do.")
        return buf.getvalue()

    for idx, phase in enumerate(plan.phases, start=1):
        console.print()
        console.print(f"[bold]Phase {idx}: {phase.label}[/bold] ({len(phase.units)} units)")
        table = Table(show_header=True, box=None, padding=(0, 1))
        table.add_column("Unit", style="cyan", no_wrap=True)
        table.add_column("Operation")
        table.add_column("After", style="dim")
        table.add_column("Why")
        for unit in phase.units:
            table.add_row(
                unit.id,
                unit.describe(),
                ", ".join(sorted(unit.depends_on)),
                unit.rationale,
            )
        console.print(table)
    console.print()
    return buf.getvalue()


def format_plan_json(plan: Plan) -> str:
    return json.dumps(plan.to_dict(), indent=2)


def format_plan_porcelain(plan: Plan) -> str:
    """One line per unit: ``phase:unit_id:kind:target_path:new_path:depends_on``."""
    lines: list[str] = []
    for idx, phase in enumerate(plan.phases, start=1):
        for unit in phase.units:
            deps = ",".join(sorted(unit.depends_on))
            new_path = unit.new_path or ""
            lines.append(f"{idx}:{unit.id}:{unit.kind.value}:{unit.target_path}:{new_path}:{deps}")
    return "\n".join(lines)


def format_summary(summary: RunSummary) -> str:
    return (
        f"Run {summary.outcome}: {summary.applied} applied, {summary.skipped} skipped, "
        f"{summary.failed} failed, {summary.blocked} blocked, {summary.aborted} aborted "
        f"({summary.phases_completed}/{summary.phases_total} phases verified)"
    )


# ---------------------------------------------------------------------------
# Progress sink
# ---------------------------------------------------------------------------


class RichProgressSink:
    """Renders controller events on a Rich console as they happen."""

    def __init__(self, plan: Plan, console: Console | None = None) -> None:
        if console is None:
            from rich.console import Console

            console = Console(stderr=True)
        self.plan = plan
        self.console = console

    def emit(self, event: Event) -> None:
        c = self.console
        if isinstance(event, PhaseStarted):
            c.print()
            c.rule(
                f"[bold]Phase {event.phase_index + 1}/{len(self.plan.phases)}: "
                f"{event.label}[/bold]",
                style="blue",
            )
            for uid in event.unit_ids:
                c.print(f"  {uid}  {self.plan.unit(uid).describe()}")
        elif isinstance(event, UnitDecisionRequested):
            unit = self.plan.unit(event.unit_id)
            c.print(f"[cyan]{event.unit_id}[/cyan] {event.description}")
            if unit.rationale:
                c.print(f"  [dim]{unit.rationale}[/dim]")
        elif isinstance(event, UnitApplied):
            c.print(f"  [green]✓[/green] {event.unit_id} applied")
        elif isinstance(event, UnitSkipped):
            c.print(f"  [yellow]-[/yellow] {event.unit_id} skipped")
        elif isinstance(event, UnitFailed):
            c.print(f"  [red]✗[/red] {event.unit_id} failed: {event.reason}")
        elif isinstance(event, UnitsBlocked):
            c.print(f"  [red]blocked:[/red] {', '.join(event.unit_ids)}")
        elif isinstance(event, PhaseVerified):
            if event.passed:
                c.print(f"[green]✓ Phase {event.phase_index + 1} verified[/green]")
            elif event.timed_out:
                c.print(f"[red]✗ Phase {event.phase_index + 1} verification timed out[/red]")
            else:
                c.print(
                    f"[red]✗ Phase {event.phase_index + 1} verification failed "
                    f"(exit {event.exit_code})[/red]"
                )
        elif isinstance(event, PhaseSkipped):
            c.print(f"[yellow]Phase {event.phase_index + 1} skipped[/yellow]")
        elif isinstance(event, PhaseAborted):
            c.print(f"[red]Aborted: {len(event.unit_ids)} units not applied[/red]")
        elif isinstance(event, RunCompleted):
            c.print()
            c.print(format_summary(event.summary))
