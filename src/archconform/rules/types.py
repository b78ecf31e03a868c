"""Rule and violation records shared by the registry, detector, and synthesizer."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from archconform.model.source_model import ModuleGraph, SourceFile
    from archconform.planning.units import UnitDraft

    Predicate = Callable[[ModuleGraph, SourceFile, "Rule"], Iterable["Violation"]]
    FixShape = Callable[["Violation", ModuleGraph | None, "Rule"], list[UnitDraft]]

INTERNAL_CATEGORY = "Internal"


class Severity(enum.Enum):
    """Violation severity, most severe first."""

    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"
    INFO = "info"

    @property
    def rank(self) -> int:
        """0 for critical up to 3 for info."""
        return _SEVERITY_ORDER.index(self)


_SEVERITY_ORDER: tuple[Severity, ...] = (
    Severity.CRITICAL,
    Severity.MAJOR,
    Severity.MINOR,
    Severity.INFO,
)


def parse_severity(value: object) -> Severity:
    try:
        return Severity(str(value).strip().lower())
    except ValueError:
        valid = [s.value for s in _SEVERITY_ORDER]
        msg = f"invalid severity '{value}', must be one of {valid}"
        raise ValueError(msg) from None


@dataclass(frozen=True)
class Violation:
    """A single detected deviation from a rule."""

    rule_id: str
    category: str
    severity: Severity
    path: str
    message: str
    line_range: tuple[int, int] | None = None
    suggested_fix_kind: str | None = None
    related_path: str | None = None  # the other file involved (import target, new location)

    @property
    def line_start(self) -> int:
        return self.line_range[0] if self.line_range is not None else 0

    def to_dict(self) -> dict[str, object]:
        return {
            "rule_id": self.rule_id,
            "category": self.category,
            "severity": self.severity.value,
            "path": self.path,
            "line_range": list(self.line_range) if self.line_range is not None else None,
            "message": self.message,
            "suggested_fix_kind": self.suggested_fix_kind,
            "related_path": self.related_path,
        }


def violation_sort_key(violation: Violation) -> tuple[str, int, str]:
    """Final ordering of detector output: path, first line, rule id."""
    return (violation.path, violation.line_start, violation.rule_id)


@dataclass(frozen=True)
class Rule:
    """A flat rule record: identity, severity, predicate, and fix shape."""

    id: str
    category: str
    default_severity: Severity
    predicate: Predicate = field(compare=False, repr=False)
    fix_ref: str | None = None
    fix_shape: FixShape | None = field(default=None, compare=False, repr=False)
    description: str = ""
    params: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def evaluate(self, graph: ModuleGraph, file: SourceFile) -> list[Violation]:
        """Run the predicate for one file."""
        return list(self.predicate(graph, file, self))

    def violation(
        self,
        path: str,
        message: str,
        *,
        line: int | None = None,
        line_end: int | None = None,
        related_path: str | None = None,
    ) -> Violation:
        """Build a :class:`Violation` stamped with this rule's identity."""
        line_range: tuple[int, int] | None = None
        if line is not None:
            line_range = (line, line_end if line_end is not None else line)
        return Violation(
            rule_id=self.id,
            category=self.category,
            severity=self.default_severity,
            path=path,
            message=message,
            line_range=line_range,
            suggested_fix_kind=self.fix_ref,
            related_path=related_path,
        )
