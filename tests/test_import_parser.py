"""Tests for archconform.model.import_parser: tree-sitter import extraction and resolution."""

from __future__ import annotations

import pytest

from archconform.errors import ParseError
from archconform.model.import_parser import ParsedImport, PythonImportParser, resolve_import


@pytest.fixture(scope="module")
def parser() -> PythonImportParser:
    return PythonImportParser()


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestParse:
    def test_plain_import(self, parser: PythonImportParser) -> None:
        result = parser.parse("import os\nimport app.domain.order\n")
        assert [(i.module, i.line) for i in result] == [("os", 1), ("app.domain.order", 2)]

    def test_multiple_names_in_one_statement(self, parser: PythonImportParser) -> None:
        result = parser.parse("import a, b.c\n")
        assert [i.module for i in result] == ["a", "b.c"]

    def test_aliased_import(self, parser: PythonImportParser) -> None:
        result = parser.parse("import numpy as np\n")
        assert result == [ParsedImport(module="numpy", line=1)]

    def test_from_import_names(self, parser: PythonImportParser) -> None:
        result = parser.parse("from app.domain import order, customer as c\n")
        assert len(result) == 1
        assert result[0].module == "app.domain"
        assert result[0].names == ("order", "customer")

    def test_relative_imports(self, parser: PythonImportParser) -> None:
        result = parser.parse("from . import sibling\nfrom ..pkg.mod import thing\n")
        assert [i.module for i in result] == [".", "..pkg.mod"]

    def test_nested_imports_are_found(self, parser: PythonImportParser) -> None:
        source = (
            "def load():\n"
            "    import json\n"
            "    return json\n"
            "\n"
            "if True:\n"
            "    from app import settings\n"
        )
        result = parser.parse(source)
        assert [(i.module, i.line) for i in result] == [("json", 2), ("app", 6)]

    def test_no_imports(self, parser: PythonImportParser) -> None:
        assert parser.parse("x = 1\n") == []

    def test_syntax_error_raises(self, parser: PythonImportParser) -> None:
        with pytest.raises(ParseError, match="syntax error"):
            parser.parse("def broken(:\n    pass\n")


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


KNOWN = frozenset(
    {
        "src/app/__init__.py",
        "src/app/domain/__init__.py",
        "src/app/domain/order.py",
        "src/app/infrastructure/order_repository.py",
        "tools/script.py",
    }
)


class TestResolveImport:
    def test_absolute_under_source_root(self) -> None:
        imp = ParsedImport(module="app.domain.order", line=1)
        assert resolve_import(imp, "src/app/__init__.py", KNOWN) == ["src/app/domain/order.py"]

    def test_absolute_at_project_root(self) -> None:
        imp = ParsedImport(module="tools.script", line=1)
        assert resolve_import(imp, "src/app/__init__.py", KNOWN) == ["tools/script.py"]

    def test_package_resolves_to_init(self) -> None:
        imp = ParsedImport(module="app.domain", line=1)
        assert resolve_import(imp, "tools/script.py", KNOWN) == ["src/app/domain/__init__.py"]

    def test_from_import_prefers_submodule(self) -> None:
        imp = ParsedImport(module="app.domain", line=1, names=("order",))
        assert resolve_import(imp, "tools/script.py", KNOWN) == ["src/app/domain/order.py"]

    def test_from_import_of_symbol_falls_back_to_module(self) -> None:
        imp = ParsedImport(
            module="app.infrastructure.order_repository", line=1, names=("OrderRepository",)
        )
        assert resolve_import(imp, "src/app/domain/order.py", KNOWN) == [
            "src/app/infrastructure/order_repository.py"
        ]

    def test_relative_sibling(self) -> None:
        imp = ParsedImport(module=".", line=1, names=("order",))
        assert resolve_import(imp, "src/app/domain/__init__.py", KNOWN) == [
            "src/app/domain/order.py"
        ]

    def test_relative_parent(self) -> None:
        imp = ParsedImport(module="..infrastructure.order_repository", line=1)
        assert resolve_import(imp, "src/app/domain/order.py", KNOWN) == [
            "src/app/infrastructure/order_repository.py"
        ]

    def test_relative_beyond_root_is_dropped(self) -> None:
        imp = ParsedImport(module="...nothing", line=1)
        assert resolve_import(imp, "tools/script.py", KNOWN) == []

    def test_third_party_is_dropped(self) -> None:
        imp = ParsedImport(module="requests", line=1)
        assert resolve_import(imp, "tools/script.py", KNOWN) == []

    def test_self_import_is_dropped(self) -> None:
        imp = ParsedImport(module="app.domain.order", line=1)
        assert resolve_import(imp, "src/app/domain/order.py", KNOWN) == []

    def test_custom_source_roots(self) -> None:
        known = frozenset({"lib/pkg/mod.py"})
        imp = ParsedImport(module="pkg.mod", line=1)
        assert resolve_import(imp, "main.py", known, source_roots=("lib",)) == ["lib/pkg/mod.py"]
