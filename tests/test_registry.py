"""Tests for archconform.rules.registry: rule pack loading and indexing."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from archconform.errors import DuplicateRuleError, RulePackError
from archconform.rules.predicates import layer_dependency
from archconform.rules.registry import (
    DEFAULT_RULE_PACK,
    RuleRegistry,
    default_registry,
    load_rule_pack,
    parse_rule_pack,
)
from archconform.rules.types import Rule, Severity

if TYPE_CHECKING:
    from pathlib import Path


def _pack(*rules: dict[str, Any]) -> dict[str, Any]:
    return {"version": 1, "rules": list(rules)}


def _rule(**overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": "r1",
        "category": "Design",
        "severity": "minor",
        "predicate": "max_file_lines",
        "params": {"max_lines": 10},
    }
    data.update(overrides)
    return data


# ---------------------------------------------------------------------------
# Default pack
# ---------------------------------------------------------------------------


class TestDefaultRegistry:
    def test_loads_every_bundled_rule(self) -> None:
        registry = default_registry()
        assert len(registry) == len(DEFAULT_RULE_PACK["rules"])
        assert "core-no-infrastructure" in registry

    def test_severity_and_fix(self) -> None:
        rule = default_registry().get("core-no-infrastructure")
        assert rule.default_severity is Severity.CRITICAL
        assert rule.fix_ref == "extract_abstraction"
        assert rule.fix_shape is not None
        assert rule.predicate is layer_dependency

    def test_categories_in_load_order(self) -> None:
        assert default_registry().categories() == [
            "Layering",
            "Dependencies",
            "Structure",
            "Design",
        ]


# ---------------------------------------------------------------------------
# Filtering
# ---------------------------------------------------------------------------


class TestFilter:
    def test_no_restriction(self) -> None:
        registry = default_registry()
        assert len(registry.filter()) == len(registry)

    def test_by_category_case_insensitive(self) -> None:
        ids = [r.id for r in default_registry().filter(categories=["layering"])]
        assert ids == [
            "core-no-infrastructure",
            "core-no-presentation",
            "infrastructure-no-presentation",
        ]

    def test_by_id(self) -> None:
        rules = default_registry().filter(ids=["orphan-module"])
        assert [r.id for r in rules] == ["orphan-module"]

    def test_category_and_id_combined(self) -> None:
        assert default_registry().filter(categories=["Design"], ids=["orphan-module"]) == []

    def test_unknown_category(self) -> None:
        assert default_registry().filter(categories=["Nope"]) == []


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegister:
    def test_duplicate_rule_id(self) -> None:
        rule = Rule(
            id="x", category="C", default_severity=Severity.MINOR, predicate=layer_dependency
        )
        registry = RuleRegistry([rule])
        with pytest.raises(DuplicateRuleError, match="Duplicate rule id 'x'"):
            registry.register(rule)

    def test_fix_shape_of_unknown_rule(self) -> None:
        assert default_registry().fix_shape("nope") is None


# ---------------------------------------------------------------------------
# Schema validation
# ---------------------------------------------------------------------------


class TestParseRulePack:
    def test_minimal_pack(self) -> None:
        registry = parse_rule_pack(_pack(_rule()))
        rule = registry.get("r1")
        assert rule.params == {"max_lines": 10}
        assert rule.fix_shape is None

    def test_severity_defaults_to_major(self) -> None:
        data = _rule()
        del data["severity"]
        assert parse_rule_pack(_pack(data)).get("r1").default_severity is Severity.MAJOR

    def test_duplicate_ids(self) -> None:
        with pytest.raises(DuplicateRuleError):
            parse_rule_pack(_pack(_rule(), _rule()))

    def test_not_a_mapping(self) -> None:
        with pytest.raises(RulePackError, match="must be a YAML mapping"):
            parse_rule_pack([1, 2])

    def test_missing_version(self) -> None:
        with pytest.raises(RulePackError, match="missing required 'version'"):
            parse_rule_pack({"rules": []})

    def test_unsupported_version(self) -> None:
        with pytest.raises(RulePackError, match="unsupported version 2"):
            parse_rule_pack({"version": 2, "rules": []})

    def test_rules_must_be_list(self) -> None:
        with pytest.raises(RulePackError, match="'rules' must be a list"):
            parse_rule_pack({"version": 1, "rules": {"a": 1}})

    def test_missing_id(self) -> None:
        with pytest.raises(RulePackError, match="missing required 'id'"):
            parse_rule_pack(_pack(_rule(id="")))

    def test_missing_category(self) -> None:
        data = _rule()
        del data["category"]
        with pytest.raises(RulePackError, match="missing required 'category'"):
            parse_rule_pack(_pack(data))

    def test_invalid_severity(self) -> None:
        with pytest.raises(RulePackError, match="invalid severity 'urgent'"):
            parse_rule_pack(_pack(_rule(severity="urgent")))

    def test_unknown_predicate(self) -> None:
        with pytest.raises(RulePackError, match="unknown predicate 'magic'"):
            parse_rule_pack(_pack(_rule(predicate="magic")))

    def test_unknown_fix(self) -> None:
        with pytest.raises(RulePackError, match="unknown fix 'rewrite'"):
            parse_rule_pack(_pack(_rule(fix="rewrite")))

    def test_missing_required_params(self) -> None:
        with pytest.raises(RulePackError, match="invalid params"):
            parse_rule_pack(_pack(_rule(params={})))

    def test_params_must_be_mapping(self) -> None:
        with pytest.raises(RulePackError, match="'params' must be a mapping"):
            parse_rule_pack(_pack(_rule(params=[1])))

    def test_bad_layer_param(self) -> None:
        data = _rule(
            predicate="layer_dependency",
            params={"from_layer": "core", "forbidden_layers": ["basement"]},
        )
        with pytest.raises(RulePackError, match="invalid layer 'basement'"):
            parse_rule_pack(_pack(data))

    def test_empty_forbidden_layers(self) -> None:
        data = _rule(
            predicate="layer_dependency",
            params={"from_layer": "core", "forbidden_layers": []},
        )
        with pytest.raises(RulePackError, match="non-empty list"):
            parse_rule_pack(_pack(data))

    def test_negative_limit(self) -> None:
        with pytest.raises(RulePackError, match="must be non-negative"):
            parse_rule_pack(_pack(_rule(params={"max_lines": -1})))

    def test_custom_predicates_skip_builtin_validation(self) -> None:
        def custom(graph: object, file: object, rule: Rule) -> list[object]:
            return []

        registry = parse_rule_pack(
            _pack(_rule(predicate="custom", params={})), predicates={"custom": custom}
        )
        assert registry.get("r1").predicate is custom


class TestLoadRulePack:
    def test_from_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "rules.yml"
        path.write_text(
            "version: 1\n"
            "rules:\n"
            "  - id: no-ui-in-db\n"
            "    category: Layering\n"
            "    severity: critical\n"
            "    predicate: forbidden_import\n"
            "    params:\n"
            "      from: 'src/db/**'\n"
            "      to: 'src/ui/**'\n"
        )
        registry = load_rule_pack(path)
        assert [r.id for r in registry] == ["no-ui-in-db"]

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "rules.yml"
        path.write_text("version: [1\n")
        with pytest.raises(RulePackError, match="rules.yml: invalid YAML"):
            load_rule_pack(path)

    def test_error_names_the_file(self, tmp_path: Path) -> None:
        path = tmp_path / "pack.yml"
        path.write_text("version: 1\nrules:\n  - id: x\n")
        with pytest.raises(RulePackError, match="^pack.yml: rule 'x'"):
            load_rule_pack(path)
