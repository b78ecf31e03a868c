"""Planning domain: change units, phases, and the plan synthesizer."""

from archconform.planning.synthesizer import (
    DEFAULT_POLICY,
    PriorityPolicy,
    add_structural_dependencies,
    build_plan,
    find_minimal_cycle,
    group_violations,
    structural_edges,
    synthesize,
)
from archconform.planning.units import ChangeKind, ChangeUnit, Phase, Plan, UnitDraft

__all__ = [
    "DEFAULT_POLICY",
    "ChangeKind",
    "ChangeUnit",
    "Phase",
    "Plan",
    "PriorityPolicy",
    "UnitDraft",
    "add_structural_dependencies",
    "build_plan",
    "find_minimal_cycle",
    "group_violations",
    "structural_edges",
    "synthesize",
]
