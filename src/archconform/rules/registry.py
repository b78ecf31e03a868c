"""Rule registry: load rule packs, index rules by id and category."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import yaml

from archconform.errors import DuplicateRuleError, RulePackError
from archconform.rules.fixes import FIX_SHAPES
from archconform.rules.predicates import PREDICATES, validate_params
from archconform.rules.types import Rule, parse_severity

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Mapping
    from pathlib import Path

    from archconform.rules.types import FixShape, Predicate

logger = logging.getLogger(__name__)

SUPPORTED_PACK_VERSIONS: frozenset[int] = frozenset({1})

# ---------------------------------------------------------------------------
# Bundled rule pack
# ---------------------------------------------------------------------------

DEFAULT_RULE_PACK: dict[str, Any] = {
    "version": 1,
    "rules": [
        {
            "id": "core-no-infrastructure",
            "category": "Layering",
            "severity": "critical",
            "description": "Core code must not import infrastructure code",
            "predicate": "layer_dependency",
            "params": {"from_layer": "core", "forbidden_layers": ["infrastructure"]},
            "fix": "extract_abstraction",
        },
        {
            "id": "core-no-presentation",
            "category": "Layering",
            "severity": "critical",
            "description": "Core code must not import presentation code",
            "predicate": "layer_dependency",
            "params": {"from_layer": "core", "forbidden_layers": ["presentation"]},
            "fix": "extract_abstraction",
        },
        {
            "id": "infrastructure-no-presentation",
            "category": "Layering",
            "severity": "major",
            "description": "Infrastructure code must not import presentation code",
            "predicate": "layer_dependency",
            "params": {"from_layer": "infrastructure", "forbidden_layers": ["presentation"]},
            "fix": "extract_abstraction",
        },
        {
            "id": "no-import-cycles",
            "category": "Dependencies",
            "severity": "major",
            "description": "Modules must not import each other in a cycle",
            "predicate": "import_cycle",
            "params": {"max_length": 10},
            "fix": "extract_abstraction",
        },
        {
            "id": "misplaced-module",
            "category": "Structure",
            "severity": "minor",
            "description": "A module's name and directory must agree on its layer",
            "predicate": "layer_placement",
            "fix": "relocate_module",
        },
        {
            "id": "high-fan-out",
            "category": "Design",
            "severity": "minor",
            "description": "Modules should not depend on too many other modules",
            "predicate": "max_fan_out",
            "params": {"max_imports": 12},
            "fix": "modify_in_place",
        },
        {
            "id": "oversized-module",
            "category": "Design",
            "severity": "minor",
            "description": "Modules should stay small enough to review",
            "predicate": "max_file_lines",
            "params": {"max_lines": 800},
            "fix": "modify_in_place",
        },
        {
            "id": "orphan-module",
            "category": "Structure",
            "severity": "info",
            "description": "Modules nothing imports are candidates for removal",
            "predicate": "orphan_module",
            "fix": "remove_module",
        },
    ],
}


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class RuleRegistry:
    """In-memory index of rules by id and by category, in load order."""

    def __init__(self, rules: Iterable[Rule] = ()) -> None:
        self._rules: dict[str, Rule] = {}
        self._by_category: dict[str, list[str]] = {}
        for rule in rules:
            self.register(rule)

    def register(self, rule: Rule) -> None:
        if rule.id in self._rules:
            msg = f"Duplicate rule id '{rule.id}'"
            raise DuplicateRuleError(msg)
        self._rules[rule.id] = rule
        self._by_category.setdefault(rule.category, []).append(rule.id)

    def __contains__(self, rule_id: object) -> bool:
        return rule_id in self._rules

    def __iter__(self) -> Iterator[Rule]:
        return iter(self._rules.values())

    def __len__(self) -> int:
        return len(self._rules)

    def get(self, rule_id: str) -> Rule:
        return self._rules[rule_id]

    def categories(self) -> list[str]:
        return list(self._by_category)

    def filter(
        self,
        categories: Iterable[str] | None = None,
        ids: Iterable[str] | None = None,
    ) -> list[Rule]:
        """Return rules matching any of *categories* and any of *ids*.

        ``None`` for either argument means "no restriction".  Category names
        compare case-insensitively.
        """
        wanted_categories = {c.lower() for c in categories} if categories else None
        wanted_ids = set(ids) if ids else None
        return [
            rule
            for rule in self._rules.values()
            if (wanted_categories is None or rule.category.lower() in wanted_categories)
            and (wanted_ids is None or rule.id in wanted_ids)
        ]

    def fix_shape(self, rule_id: str) -> FixShape | None:
        rule = self._rules.get(rule_id)
        return rule.fix_shape if rule is not None else None


# ---------------------------------------------------------------------------
# Rule pack parsing
# ---------------------------------------------------------------------------


def _parse_rule(
    idx: int,
    rule_data: object,
    predicates: Mapping[str, Predicate],
    fix_shapes: Mapping[str, FixShape],
    source: str,
) -> Rule:
    if not isinstance(rule_data, dict):
        msg = f"{source}: rule at index {idx} must be a mapping"
        raise RulePackError(msg)

    rule_id = rule_data.get("id")
    if rule_id is None or not isinstance(rule_id, str) or not rule_id.strip():
        msg = f"{source}: rule at index {idx} missing required 'id' field"
        raise RulePackError(msg)

    category = rule_data.get("category")
    if category is None or not isinstance(category, str) or not category.strip():
        msg = f"{source}: rule '{rule_id}' missing required 'category' field"
        raise RulePackError(msg)

    try:
        severity = parse_severity(rule_data.get("severity", "major"))
    except ValueError as exc:
        msg = f"{source}: rule '{rule_id}' has {exc}"
        raise RulePackError(msg) from exc

    predicate_ref = rule_data.get("predicate")
    if predicate_ref not in predicates:
        msg = (
            f"{source}: rule '{rule_id}' has unknown predicate '{predicate_ref}', "
            f"must be one of {sorted(predicates)}"
        )
        raise RulePackError(msg)

    fix_ref = rule_data.get("fix")
    if fix_ref is not None and fix_ref not in fix_shapes:
        msg = (
            f"{source}: rule '{rule_id}' has unknown fix '{fix_ref}', "
            f"must be one of {sorted(fix_shapes)}"
        )
        raise RulePackError(msg)

    params = rule_data.get("params", {})
    if params is None:
        params = {}
    if not isinstance(params, dict):
        msg = f"{source}: rule '{rule_id}': 'params' must be a mapping"
        raise RulePackError(msg)

    builtin = PREDICATES.get(str(predicate_ref))
    if builtin is not None and predicates[str(predicate_ref)] is builtin:
        try:
            validate_params(str(predicate_ref), params)
        except (TypeError, ValueError) as exc:
            msg = f"{source}: rule '{rule_id}' has invalid params: {exc}"
            raise RulePackError(msg) from exc

    return Rule(
        id=rule_id,
        category=category,
        default_severity=severity,
        predicate=predicates[str(predicate_ref)],
        fix_ref=str(fix_ref) if fix_ref is not None else None,
        fix_shape=fix_shapes[str(fix_ref)] if fix_ref is not None else None,
        description=str(rule_data.get("description", "")),
        params=dict(params),
    )


def parse_rule_pack(
    data: object,
    *,
    source: str = "rule pack",
    predicates: Mapping[str, Predicate] | None = None,
    fix_shapes: Mapping[str, FixShape] | None = None,
) -> RuleRegistry:
    """Validate already-loaded rule pack data and build a :class:`RuleRegistry`.

    Raises :class:`RulePackError` on schema errors and
    :class:`DuplicateRuleError` when two rules share an id.
    """
    predicates = PREDICATES if predicates is None else predicates
    fix_shapes = FIX_SHAPES if fix_shapes is None else fix_shapes

    if not isinstance(data, dict):
        msg = f"{source} must be a YAML mapping"
        raise RulePackError(msg)

    version = data.get("version")
    if version is None:
        msg = f"{source}: missing required 'version' field"
        raise RulePackError(msg)
    if version not in SUPPORTED_PACK_VERSIONS:
        expected = sorted(SUPPORTED_PACK_VERSIONS)
        msg = f"{source}: unsupported version {version}, expected one of {expected}"
        raise RulePackError(msg)

    rules_data = data.get("rules", [])
    if not isinstance(rules_data, list):
        msg = f"{source}: 'rules' must be a list"
        raise RulePackError(msg)

    registry = RuleRegistry()
    for idx, rule_data in enumerate(rules_data):
        registry.register(_parse_rule(idx, rule_data, predicates, fix_shapes, source))

    logger.debug("Loaded %d rules from %s", len(registry), source)
    return registry


def load_rule_pack(
    path: Path,
    *,
    predicates: Mapping[str, Predicate] | None = None,
    fix_shapes: Mapping[str, FixShape] | None = None,
) -> RuleRegistry:
    """Parse a YAML rule pack file into a :class:`RuleRegistry`."""
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        msg = f"{path.name}: invalid YAML: {exc}"
        raise RulePackError(msg) from exc

    return parse_rule_pack(
        data, source=path.name, predicates=predicates, fix_shapes=fix_shapes
    )


def default_registry() -> RuleRegistry:
    """Registry holding the bundled rule pack."""
    return parse_rule_pack(DEFAULT_RULE_PACK, source="default rule pack")
