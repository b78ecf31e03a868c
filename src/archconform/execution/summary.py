"""Run summary: a pure fold over a plan and its execution state."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

from archconform.execution.state import Stage, UnitStatus

if TYPE_CHECKING:
    from archconform.execution.state import ExecutionState
    from archconform.planning.units import Plan

_BLOCKED_STAGES = (Stage.AWAITING_VERIFICATION_DECISION, Stage.AWAITING_BLOCKED_DECISION)


@dataclass(frozen=True)
class RunSummary:
    plan_id: str
    outcome: str  # not_started / in_progress / blocked / completed / aborted
    total_units: int
    applied: int
    skipped: int
    failed: int
    blocked: int
    aborted: int
    pending: int
    phases_total: int
    phases_completed: int
    phases_skipped: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _outcome(state: ExecutionState) -> str:
    if state.stage is Stage.ABORTED:
        return "aborted"
    if state.stage is Stage.COMPLETED:
        return "completed"
    if state.stage is Stage.IDLE:
        return "not_started"
    if state.stage in _BLOCKED_STAGES:
        return "blocked"
    return "in_progress"


def summarize(plan: Plan, state: ExecutionState) -> RunSummary:
    """Count units per status and phases per outcome."""
    return RunSummary(
        plan_id=plan.id,
        outcome=_outcome(state),
        total_units=len(state.unit_status),
        applied=state.count(UnitStatus.APPLIED),
        skipped=state.count(UnitStatus.SKIPPED),
        failed=state.count(UnitStatus.FAILED),
        blocked=state.count(UnitStatus.BLOCKED),
        aborted=state.count(UnitStatus.ABORTED),
        pending=state.count(UnitStatus.PENDING),
        phases_total=len(plan.phases),
        phases_completed=len(state.completed_phases),
        phases_skipped=len(state.skipped_phases),
    )
