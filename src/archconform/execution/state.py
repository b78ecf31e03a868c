"""Serializable execution state of a phased run."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from archconform.errors import InvalidTransitionError, PersistenceError

if TYPE_CHECKING:
    from archconform.planning.units import Plan

STATE_VERSION = 1


class UnitStatus(enum.Enum):
    PENDING = "pending"
    APPLIED = "applied"
    SKIPPED = "skipped"
    BLOCKED = "blocked"
    ABORTED = "aborted"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self not in (UnitStatus.PENDING, UnitStatus.BLOCKED)


# pending may settle any way; blocked only skipped or aborted; the rest never change
_ALLOWED: dict[UnitStatus, frozenset[UnitStatus]] = {
    UnitStatus.PENDING: frozenset(UnitStatus) - {UnitStatus.PENDING},
    UnitStatus.BLOCKED: frozenset({UnitStatus.SKIPPED, UnitStatus.ABORTED}),
}


class Stage(enum.Enum):
    """Controller stages; ``awaiting_*`` stages are suspension points."""

    IDLE = "idle"
    PRESENTING_PHASE = "presenting_phase"
    AWAITING_PHASE_DECISION = "awaiting_phase_decision"
    APPLYING_UNIT = "applying_unit"
    AWAITING_UNIT_DECISION = "awaiting_unit_decision"
    VERIFYING = "verifying"
    AWAITING_VERIFICATION_DECISION = "awaiting_verification_decision"
    AWAITING_BLOCKED_DECISION = "awaiting_blocked_decision"
    PHASE_COMPLETE = "phase_complete"
    COMPLETED = "completed"
    ABORTED = "aborted"

    @property
    def is_final(self) -> bool:
        return self in (Stage.COMPLETED, Stage.ABORTED)


class Decision(enum.Enum):
    CONTINUE = "continue"
    SKIP_PHASE = "skip_phase"
    ABORT = "abort"
    APPLY = "apply"
    SKIP = "skip"
    APPLY_ALL = "apply_all"
    RETRY = "retry"


@dataclass
class ExecutionState:
    """Everything needed to resume a run: per-unit status and the current stage.

    Unit status changes go through :meth:`set_status`, which rejects any
    change that would revert a settled unit.
    """

    plan_id: str
    unit_status: dict[str, UnitStatus]
    current_phase_index: int = 0
    stage: Stage = Stage.IDLE
    current_unit_id: str | None = None
    last_verification: dict[str, Any] | None = None
    completed_phases: list[int] = field(default_factory=list)
    skipped_phases: list[int] = field(default_factory=list)

    @classmethod
    def for_plan(cls, plan: Plan) -> ExecutionState:
        return cls(
            plan_id=plan.id,
            unit_status={unit.id: UnitStatus.PENDING for unit in plan.units()},
        )

    def status(self, unit_id: str) -> UnitStatus:
        return self.unit_status[unit_id]

    def set_status(self, unit_id: str, status: UnitStatus) -> None:
        current = self.unit_status[unit_id]
        if current is status:
            return
        if status not in _ALLOWED.get(current, frozenset()):
            msg = f"Unit {unit_id}: cannot change status from {current.value} to {status.value}"
            raise InvalidTransitionError(msg)
        self.unit_status[unit_id] = status

    def count(self, status: UnitStatus) -> int:
        return sum(1 for s in self.unit_status.values() if s is status)

    def ids_with(self, status: UnitStatus) -> list[str]:
        return sorted(uid for uid, s in self.unit_status.items() if s is status)

    # -- serialization ------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "plan_id": self.plan_id,
            "current_phase_index": self.current_phase_index,
            "stage": self.stage.value,
            "current_unit_id": self.current_unit_id,
            "unit_status": {uid: s.value for uid, s in sorted(self.unit_status.items())},
            "last_verification": self.last_verification,
            "completed_phases": list(self.completed_phases),
            "skipped_phases": list(self.skipped_phases),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionState:
        version = data.get("version")
        if version != STATE_VERSION:
            msg = f"Unsupported execution state version {version}, expected {STATE_VERSION}"
            raise PersistenceError(msg)
        try:
            return cls(
                plan_id=str(data["plan_id"]),
                unit_status={
                    str(uid): UnitStatus(value) for uid, value in data["unit_status"].items()
                },
                current_phase_index=int(data.get("current_phase_index", 0)),
                stage=Stage(data.get("stage", Stage.IDLE.value)),
                current_unit_id=data.get("current_unit_id"),
                last_verification=data.get("last_verification"),
                completed_phases=[int(i) for i in data.get("completed_phases", [])],
                skipped_phases=[int(i) for i in data.get("skipped_phases", [])],
            )
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            msg = f"Malformed execution state: {exc}"
            raise PersistenceError(msg) from exc
