"""Change units, phases, and plans."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any

from archconform.rules.types import Severity


class ChangeKind(enum.Enum):
    """Atomic file operation scheduled by a plan."""

    CREATE = "create"
    MODIFY = "modify"
    RENAME = "rename"
    DELETE = "delete"


@dataclass(frozen=True)
class UnitDraft:
    """A change unit proposed by a fix shape, before grouping and id assignment.

    ``after`` lists the ``key`` values of drafts from the same fix shape that
    must be applied first.
    """

    key: str
    kind: ChangeKind
    target_path: str
    rationale: str
    new_path: str | None = None
    content: str | None = None
    touches: frozenset[str] = frozenset()
    after: tuple[str, ...] = ()


@dataclass(frozen=True)
class ChangeUnit:
    """Smallest atomic file operation a plan can schedule."""

    id: str
    kind: ChangeKind
    target_path: str
    depends_on: frozenset[str] = frozenset()
    rationale: str = ""
    severity: Severity = Severity.MINOR
    new_path: str | None = None  # destination of a rename
    content: str | None = None  # full content for create/modify, when known
    touches: frozenset[str] = frozenset()  # other module paths this edit concerns

    @property
    def paths(self) -> tuple[str, ...]:
        """Every filesystem path this unit writes."""
        if self.new_path is not None:
            return (self.target_path, self.new_path)
        return (self.target_path,)

    def describe(self) -> str:
        if self.kind is ChangeKind.RENAME:
            return f"rename {self.target_path} → {self.new_path}"
        return f"{self.kind.value} {self.target_path}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "target_path": self.target_path,
            "depends_on": sorted(self.depends_on),
            "rationale": self.rationale,
            "severity": self.severity.value,
            "new_path": self.new_path,
            "content": self.content,
            "touches": sorted(self.touches),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChangeUnit:
        return cls(
            id=str(data["id"]),
            kind=ChangeKind(data["kind"]),
            target_path=str(data["target_path"]),
            depends_on=frozenset(str(d) for d in data.get("depends_on", [])),
            rationale=str(data.get("rationale", "")),
            severity=Severity(data.get("severity", Severity.MINOR.value)),
            new_path=data.get("new_path"),
            content=data.get("content"),
            touches=frozenset(str(t) for t in data.get("touches", [])),
        )


@dataclass(frozen=True)
class Phase:
    """An ordered, user-confirmable batch of change units."""

    label: str
    priority_tier: int
    units: tuple[ChangeUnit, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "priority_tier": self.priority_tier,
            "units": [u.to_dict() for u in self.units],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Phase:
        return cls(
            label=str(data["label"]),
            priority_tier=int(data["priority_tier"]),
            units=tuple(ChangeUnit.from_dict(u) for u in data.get("units", [])),
        )


@dataclass(frozen=True)
class Plan:
    """An ordered list of phases; ``id`` is a hash of its ordered content."""

    id: str
    phases: tuple[Phase, ...]

    @property
    def is_empty(self) -> bool:
        return not any(phase.units for phase in self.phases)

    def units(self) -> list[ChangeUnit]:
        return [unit for phase in self.phases for unit in phase.units]

    def unit(self, unit_id: str) -> ChangeUnit:
        for unit in self.units():
            if unit.id == unit_id:
                return unit
        raise KeyError(unit_id)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "phases": [p.to_dict() for p in self.phases]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Plan:
        return cls(
            id=str(data["id"]),
            phases=tuple(Phase.from_dict(p) for p in data.get("phases", [])),
        )
