"""Refactor plan synthesizer: violations -> change units -> phased, dependency-safe plan.

Synthesis runs in four steps:

1. Each violation's rule supplies a fix shape, which turns the violation into
   unit drafts.  Drafts with the same ``(kind, target_path)`` merge into one
   change unit.
2. Structural dependency edges are added between units (creates before their
   consumers, renames before reference updates, deletes last).
3. The dependency graph is checked for cycles.  A cycle fails the whole
   synthesis with the minimal cycle; no partial plan is produced.
4. Units get a priority tier from their severity and are pulled forward into
   the earliest tier of anything that depends on them, then sorted
   topologically inside each phase.
"""

from __future__ import annotations

import hashlib
import heapq
import json
import logging
from collections import deque
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from archconform.errors import PlanCycleError, PlanError
from archconform.planning.units import ChangeKind, ChangeUnit, Phase, Plan
from archconform.rules.types import INTERNAL_CATEGORY, Severity, violation_sort_key

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from archconform.model.source_model import ModuleGraph
    from archconform.planning.units import UnitDraft
    from archconform.rules.registry import RuleRegistry
    from archconform.rules.types import Violation

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Priority policy
# ---------------------------------------------------------------------------


def _default_tiers() -> dict[Severity, int]:
    return {
        Severity.CRITICAL: 1,
        Severity.MAJOR: 2,
        Severity.MINOR: 3,
        Severity.INFO: 3,
    }


def _default_labels() -> dict[int, str]:
    return {1: "Critical fixes", 2: "Major fixes", 3: "Minor fixes"}


@dataclass(frozen=True)
class PriorityPolicy:
    """Maps unit severity to a phase tier (lower runs first) and tier labels."""

    tiers: dict[Severity, int] = field(default_factory=_default_tiers, hash=False)
    labels: dict[int, str] = field(default_factory=_default_labels, hash=False)

    def tier_for(self, severity: Severity) -> int:
        return self.tiers[severity]

    def label_for(self, tier: int) -> str:
        return self.labels.get(tier, f"Tier {tier}")


DEFAULT_POLICY = PriorityPolicy()


# ---------------------------------------------------------------------------
# Step 1: grouping
# ---------------------------------------------------------------------------


@dataclass
class _Slot:
    """Mutable accumulator for drafts merged into one unit."""

    id: str
    kind: ChangeKind
    target_path: str
    severity: Severity
    new_path: str | None = None
    content: str | None = None
    rationales: list[str] = field(default_factory=list)
    touches: set[str] = field(default_factory=set)
    depends_on: set[str] = field(default_factory=set)

    def absorb(self, draft: UnitDraft, severity: Severity) -> None:
        if draft.kind is ChangeKind.RENAME and self.new_path != draft.new_path:
            msg = (
                f"Conflicting renames of {self.target_path}: "
                f"'{self.new_path}' and '{draft.new_path}'"
            )
            raise PlanError(msg)
        if draft.rationale and draft.rationale not in self.rationales:
            self.rationales.append(draft.rationale)
        self.touches.update(draft.touches)
        if self.content is None:
            self.content = draft.content
        if severity.rank < self.severity.rank:
            self.severity = severity

    def to_unit(self) -> ChangeUnit:
        return ChangeUnit(
            id=self.id,
            kind=self.kind,
            target_path=self.target_path,
            depends_on=frozenset(self.depends_on),
            rationale="; ".join(self.rationales),
            severity=self.severity,
            new_path=self.new_path,
            content=self.content,
            touches=frozenset(self.touches - {self.target_path}),
        )


def unit_id(index: int) -> str:
    """Stable unit id for the *index*-th unit (1-based)."""
    return f"u{index:03d}"


def group_violations(
    violations: Iterable[Violation],
    registry: RuleRegistry,
    *,
    graph: ModuleGraph | None = None,
) -> list[ChangeUnit]:
    """Turn violations into change units via each rule's fix shape.

    Violations are processed in detector order, so unit ids are stable for
    a given violation set.  Internal violations, violations of unknown
    rules, and rules without a fix shape produce no units.
    """
    slots: dict[tuple[ChangeKind, str], _Slot] = {}

    for violation in sorted(violations, key=violation_sort_key):
        if violation.category == INTERNAL_CATEGORY:
            continue
        if violation.rule_id not in registry:
            logger.debug("No rule '%s' registered, skipping violation", violation.rule_id)
            continue
        rule = registry.get(violation.rule_id)
        if rule.fix_shape is None:
            logger.debug("Rule '%s' has no fix shape, skipping %s", rule.id, violation.path)
            continue

        local: dict[str, _Slot] = {}
        drafts = rule.fix_shape(violation, graph, rule)
        for draft in drafts:
            key = (draft.kind, draft.target_path)
            slot = slots.get(key)
            if slot is None:
                slot = _Slot(
                    id=unit_id(len(slots) + 1),
                    kind=draft.kind,
                    target_path=draft.target_path,
                    severity=violation.severity,
                    new_path=draft.new_path,
                )
                slots[key] = slot
            slot.absorb(draft, violation.severity)
            local[draft.key] = slot

        for draft in drafts:
            slot = local[draft.key]
            for after in draft.after:
                if after not in local:
                    msg = f"Fix '{rule.fix_ref}' references unknown draft '{after}'"
                    raise PlanError(msg)
                if local[after] is not slot:
                    slot.depends_on.add(local[after].id)

    units = [slot.to_unit() for slot in slots.values()]
    logger.debug("Grouped violations into %d change units", len(units))
    return add_structural_dependencies(units)


# ---------------------------------------------------------------------------
# Step 2: structural edges
# ---------------------------------------------------------------------------


def _concerns(unit: ChangeUnit, path: str) -> bool:
    return unit.target_path == path or path in unit.touches


def structural_edges(units: Sequence[ChangeUnit]) -> dict[str, set[str]]:
    """Dependencies implied by what each unit does to which path.

    - ``Create(p)`` precedes any ``Modify`` targeting or touching ``p``.
    - ``Rename(p)`` follows a ``Modify`` targeting ``p`` and precedes any
      ``Modify`` touching ``p`` or targeting the rename destination.
    - ``Delete(p)`` follows every other unit targeting or touching ``p``.
    """
    edges: dict[str, set[str]] = {u.id: set() for u in units}
    modifies = [u for u in units if u.kind is ChangeKind.MODIFY]

    for unit in units:
        path = unit.target_path
        if unit.kind is ChangeKind.CREATE:
            for m in modifies:
                if _concerns(m, path):
                    edges[m.id].add(unit.id)
        elif unit.kind is ChangeKind.RENAME:
            for m in modifies:
                if m.target_path == path:
                    edges[unit.id].add(m.id)
                elif path in m.touches or m.target_path == unit.new_path:
                    edges[m.id].add(unit.id)
        elif unit.kind is ChangeKind.DELETE:
            for other in units:
                if other.id != unit.id and _concerns(other, path):
                    edges[unit.id].add(other.id)

    return {uid: deps - {uid} for uid, deps in edges.items()}


def add_structural_dependencies(units: Sequence[ChangeUnit]) -> list[ChangeUnit]:
    """Return *units* with structural edges merged into ``depends_on``."""
    edges = structural_edges(units)
    return [
        replace(u, depends_on=u.depends_on | frozenset(edges[u.id])) if edges[u.id] else u
        for u in units
    ]


# ---------------------------------------------------------------------------
# Step 3: cycle detection
# ---------------------------------------------------------------------------


def _shortest_cycle_from(start: str, deps: dict[str, list[str]]) -> list[str] | None:
    parents: dict[str, str] = {}
    queue: deque[str] = deque()
    for nxt in deps[start]:
        if nxt == start:
            return [start]
        if nxt not in parents:
            parents[nxt] = start
            queue.append(nxt)
    while queue:
        current = queue.popleft()
        for nxt in deps[current]:
            if nxt == start:
                path = [current]
                while path[-1] != start:
                    path.append(parents[path[-1]])
                path.reverse()
                return path
            if nxt not in parents:
                parents[nxt] = current
                queue.append(nxt)
    return None


def _rotate_to_smallest(cycle: list[str]) -> list[str]:
    pivot = cycle.index(min(cycle))
    return cycle[pivot:] + cycle[:pivot]


def find_minimal_cycle(units: Sequence[ChangeUnit]) -> list[str] | None:
    """Shortest dependency cycle, rotated to start at its smallest id.

    Follows ``depends_on`` edges, so ``[A, B]`` means A depends on B and B
    depends on A.  Ties between equally short cycles go to the
    lexicographically smallest.
    """
    remaining = _unsorted_remainder(units)
    if not remaining:
        return None
    deps = {
        u.id: sorted(d for d in u.depends_on if d in remaining)
        for u in units
        if u.id in remaining
    }
    best: list[str] | None = None
    for start in sorted(remaining):
        cycle = _shortest_cycle_from(start, deps)
        if cycle is None:
            continue
        cycle = _rotate_to_smallest(cycle)
        if best is None or (len(cycle), cycle) < (len(best), best):
            best = cycle
    return best


def _unsorted_remainder(units: Sequence[ChangeUnit]) -> set[str]:
    """Ids left over after Kahn's algorithm; non-empty iff there is a cycle."""
    indegree = {u.id: len(u.depends_on) for u in units}
    dependents: dict[str, list[str]] = {u.id: [] for u in units}
    for u in units:
        for dep in u.depends_on:
            dependents[dep].append(u.id)
    ready = [uid for uid, n in indegree.items() if n == 0]
    while ready:
        uid = ready.pop()
        del indegree[uid]
        for child in dependents[uid]:
            indegree[child] -= 1
            if indegree[child] == 0:
                ready.append(child)
    return set(indegree)


# ---------------------------------------------------------------------------
# Step 4: tiers and ordering
# ---------------------------------------------------------------------------


def _topological_order(units: Sequence[ChangeUnit], among: set[str]) -> list[str]:
    """Kahn's algorithm over *among*, ties broken by id."""
    by_id = {u.id: u for u in units}
    indegree = {uid: sum(1 for d in by_id[uid].depends_on if d in among) for uid in among}
    dependents: dict[str, list[str]] = {uid: [] for uid in among}
    for uid in among:
        for dep in by_id[uid].depends_on:
            if dep in among:
                dependents[dep].append(uid)

    heap = [uid for uid, n in indegree.items() if n == 0]
    heapq.heapify(heap)
    order: list[str] = []
    while heap:
        uid = heapq.heappop(heap)
        order.append(uid)
        for child in dependents[uid]:
            indegree[child] -= 1
            if indegree[child] == 0:
                heapq.heappush(heap, child)
    return order


def effective_tiers(units: Sequence[ChangeUnit], policy: PriorityPolicy) -> dict[str, int]:
    """Tier of each unit, pulled forward to the earliest tier of its dependents."""
    ids = {u.id for u in units}
    order = _topological_order(units, ids)
    by_id = {u.id: u for u in units}
    tiers = {u.id: policy.tier_for(u.severity) for u in units}
    for uid in reversed(order):
        for dep in by_id[uid].depends_on:
            if tiers[uid] < tiers[dep]:
                tiers[dep] = tiers[uid]
    return tiers


def plan_id(phases: Sequence[Phase]) -> str:
    """Content hash of the ordered phases."""
    payload = json.dumps([p.to_dict() for p in phases], sort_keys=True)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def build_plan(units: Sequence[ChangeUnit], policy: PriorityPolicy = DEFAULT_POLICY) -> Plan:
    """Validate caller-supplied units and arrange them into phases.

    Raises
    ------
    PlanError
        On duplicate unit ids or dependencies on unknown units.
    PlanCycleError
        When the dependencies form a cycle.
    """
    seen: set[str] = set()
    for unit in units:
        if unit.id in seen:
            msg = f"Duplicate change unit id '{unit.id}'"
            raise PlanError(msg)
        seen.add(unit.id)
    for unit in units:
        unknown = sorted(unit.depends_on - seen)
        if unknown:
            msg = f"Unit {unit.id} depends on unknown units {unknown}"
            raise PlanError(msg)

    cycle = find_minimal_cycle(units)
    if cycle is not None:
        raise PlanCycleError(cycle)

    tiers = effective_tiers(units, policy)
    by_id = {u.id: u for u in units}
    phases: list[Phase] = []
    for tier in sorted(set(tiers.values())):
        members = {uid for uid, t in tiers.items() if t == tier}
        ordered = _topological_order(units, members)
        phases.append(
            Phase(
                label=policy.label_for(tier),
                priority_tier=tier,
                units=tuple(by_id[uid] for uid in ordered),
            )
        )

    plan = Plan(id=plan_id(phases), phases=tuple(phases))
    logger.info("Built plan %s: %d units in %d phases", plan.id, len(units), len(phases))
    return plan


def synthesize(
    violations: Iterable[Violation],
    registry: RuleRegistry,
    policy: PriorityPolicy = DEFAULT_POLICY,
    *,
    graph: ModuleGraph | None = None,
) -> Plan:
    """Turn a violation set into a phased plan, or raise :class:`PlanCycleError`.

    *graph* lets fix shapes find importers of a module; without it, shapes
    that update references produce only their primary unit.
    """
    units = group_violations(violations, registry, graph=graph)
    return build_plan(units, policy)
