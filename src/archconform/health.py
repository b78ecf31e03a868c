"""Health calculator: a bounded 0-10 score derived from violation severities.

The score is a pure function of the violation set::

    score = clamp(10 - 2*critical - major - 0.25*minor, 0, 10)

``info`` violations never count.  Any scope (file, directory, whole graph) is
scored by filtering the violations first.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any

from archconform.model.source_model import path_in_scope
from archconform.rules.types import Severity

if TYPE_CHECKING:
    from collections.abc import Iterable

    from archconform.rules.types import Violation

MAX_SCORE = 10.0

# Points deducted per violation of each severity.
SEVERITY_WEIGHTS: dict[Severity, float] = {
    Severity.CRITICAL: 2.0,
    Severity.MAJOR: 1.0,
    Severity.MINOR: 0.25,
    Severity.INFO: 0.0,
}

# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SeverityBreakdown:
    """Violation counts per severity."""

    critical: int = 0
    major: int = 0
    minor: int = 0
    info: int = 0

    @classmethod
    def of(cls, violations: Iterable[Violation]) -> SeverityBreakdown:
        counts = dict.fromkeys(Severity, 0)
        for v in violations:
            counts[v.severity] += 1
        return cls(
            critical=counts[Severity.CRITICAL],
            major=counts[Severity.MAJOR],
            minor=counts[Severity.MINOR],
            info=counts[Severity.INFO],
        )

    @property
    def total(self) -> int:
        return self.critical + self.major + self.minor + self.info

    def to_dict(self) -> dict[str, int]:
        return {
            "critical": self.critical,
            "major": self.major,
            "minor": self.minor,
            "info": self.info,
        }


@dataclass(frozen=True)
class HealthScore:
    """Score of one scope; ``scope == ""`` is the whole graph."""

    scope: str
    value: float
    breakdown: SeverityBreakdown

    @property
    def label(self) -> str:
        return health_label(self.value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope": self.scope,
            "value": self.value,
            "label": self.label,
            "breakdown": self.breakdown.to_dict(),
        }


# ---------------------------------------------------------------------------
# Score formula
# ---------------------------------------------------------------------------


def _score_breakdown(breakdown: SeverityBreakdown) -> float:
    raw = (
        MAX_SCORE
        - breakdown.critical * SEVERITY_WEIGHTS[Severity.CRITICAL]
        - breakdown.major * SEVERITY_WEIGHTS[Severity.MAJOR]
        - breakdown.minor * SEVERITY_WEIGHTS[Severity.MINOR]
    )
    return max(0.0, min(MAX_SCORE, raw))


def score(violations: Iterable[Violation]) -> float:
    """Health score of *violations*, clamped to ``[0, 10]``."""
    return _score_breakdown(SeverityBreakdown.of(violations))


def health_label(value: float) -> str:
    """Map a score to a label.

    Ranges:
      >= 8   -> healthy
      >= 5   -> fair
      > 0    -> poor
      0      -> critical
    """
    if value >= 8:
        return "healthy"
    if value >= 5:
        return "fair"
    if value > 0:
        return "poor"
    return "critical"


def _normalize_scope(scope: str) -> str:
    scope = scope.strip().rstrip("/")
    if scope.startswith("./"):
        scope = scope[2:]
    return "" if scope == "." else scope


def health(violations: Iterable[Violation], scope: str = "") -> HealthScore:
    """Score the violations under *scope* (a file path or directory prefix)."""
    normalized = _normalize_scope(scope)
    scoped = [v for v in violations if path_in_scope(v.path, [normalized])]
    breakdown = SeverityBreakdown.of(scoped)
    return HealthScore(scope=normalized, value=_score_breakdown(breakdown), breakdown=breakdown)


def health_by_directory(violations: Iterable[Violation]) -> list[HealthScore]:
    """Score every directory that contains (directly or below) a violation.

    Sorted by directory path; the project root is reported as ``"."``.
    """
    items = list(violations)
    directories: set[str] = set()
    for v in items:
        parent = PurePosixPath(v.path).parent
        while True:
            directories.add(str(parent))
            if str(parent) == ".":
                break
            parent = parent.parent

    results: list[HealthScore] = []
    for directory in sorted(directories):
        result = health(items, directory)
        results.append(HealthScore(scope=directory, value=result.value, breakdown=result.breakdown))
    return results


def violation_set_hash(violations: Iterable[Violation]) -> str:
    """Order-independent digest of a violation set."""
    digest = hashlib.sha256()
    for line in sorted(
        f"{v.rule_id}\0{v.severity.value}\0{v.path}\0{v.line_start}\0{v.message}"
        for v in violations
    ):
        digest.update(line.encode("utf-8"))
        digest.update(b"\n")
    return digest.hexdigest()


class HealthCalculator:
    """Caches :func:`health` results by ``(scope, violation-set hash)``."""

    def __init__(self) -> None:
        self._cache: dict[tuple[str, str], HealthScore] = {}

    def __len__(self) -> int:
        return len(self._cache)

    def health(self, violations: Iterable[Violation], scope: str = "") -> HealthScore:
        items = list(violations)
        key = (_normalize_scope(scope), violation_set_hash(items))
        cached = self._cache.get(key)
        if cached is None:
            cached = health(items, scope)
            self._cache[key] = cached
        return cached

    def clear(self) -> None:
        self._cache.clear()


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

_LABEL_STYLES: dict[str, tuple[str, str]] = {
    "healthy": ("✓", "green"),
    "fair": ("●", "yellow"),
    "poor": ("▲", "red"),
    "critical": ("✗", "bold red"),
}


def format_health(overall: HealthScore, directories: list[HealthScore] | None = None) -> str:
    """Format a score (and optional per-directory scores) as Rich-rendered text."""
    from io import StringIO

    from rich.console import Console
    from rich.table import Table
    from rich.text import Text

    buf = StringIO()
    console = Console(file=buf, force_terminal=True, width=80)

    console.print()
    console.rule("[bold]Architecture Health[/bold]", style="blue")
    console.print()

    indicator, style = _LABEL_STYLES[overall.label]
    line = Text()
    line.append("  Health: ", style="bold")
    line.append(f"{overall.value:.2f}", style=f"bold {style}")
    line.append(" / 10  ", style="bold")
    line.append(f"{indicator} {overall.label}", style=style)
    console.print(line)

    b = overall.breakdown
    console.print(
        f"  critical: {b.critical}  major: {b.major}  minor: {b.minor}  info: {b.info}"
    )
    console.print()

    if directories:
        console.rule("By Directory", style="dim")
        table = Table(show_header=True, box=None, padding=(0, 1))
        table.add_column("Directory", style="cyan")
        table.add_column("Score", justify="right")
        table.add_column("Crit", justify="right")
        table.add_column("Major", justify="right")
        table.add_column("Minor", justify="right")
        for entry in directories:
            _, entry_style = _LABEL_STYLES[entry.label]
            table.add_row(
                entry.scope,
                Text(f"{entry.value:.2f}", style=entry_style),
                str(entry.breakdown.critical),
                str(entry.breakdown.major),
                str(entry.breakdown.minor),
            )
        console.print(table)
        console.print()

    return buf.getvalue()
