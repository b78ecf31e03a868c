"""Import parser: extract Python imports via tree-sitter and resolve them to files."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from tree_sitter import Language, Parser

from archconform.errors import ParseError

if TYPE_CHECKING:
    from collections.abc import Collection, Sequence

    from tree_sitter import Node as TSNode


DEFAULT_SOURCE_ROOTS: tuple[str, ...] = ("src",)


@dataclass(frozen=True)
class ParsedImport:
    """A single import statement extracted from source code."""

    module: str  # dotted module path, leading dots for relative imports
    line: int  # 1-based line number
    names: tuple[str, ...] = ()  # names bound by ``from X import a, b``


def _text(node: TSNode | None) -> str:
    if node is None or not node.text:
        return ""
    return node.text.decode("utf-8")


def _imported_name(node: TSNode) -> str:
    """Return the dotted name of a ``dotted_name`` or ``aliased_import`` node."""
    if node.type == "aliased_import":
        return _text(node.child_by_field_name("name"))
    return _text(node)


def _first_error_line(root: TSNode) -> int:
    stack = [root]
    while stack:
        node = stack.pop()
        if node.type == "ERROR" or node.is_missing:
            return node.start_point.row + 1
        stack.extend(reversed(node.children))
    return root.start_point.row + 1


class PythonImportParser:
    """Parser collaborator for Python sources backed by ``tree-sitter-python``."""

    def __init__(self) -> None:
        import tree_sitter_python as tspython

        self._language = Language(tspython.language())

    def parse(self, content: str) -> list[ParsedImport]:
        """Return every import statement in *content*, ordered by line.

        Raises :class:`ParseError` when the syntax tree contains errors.
        """
        parser = Parser(self._language)
        tree = parser.parse(content.encode("utf-8"))
        root = tree.root_node

        if root.has_error:
            msg = f"syntax error near line {_first_error_line(root)}"
            raise ParseError(msg)

        results: list[ParsedImport] = []
        stack: list[TSNode] = [root]
        while stack:
            node = stack.pop()
            if node.type == "import_statement":
                line = node.start_point.row + 1
                for child in node.children_by_field_name("name"):
                    module = _imported_name(child)
                    if module:
                        results.append(ParsedImport(module=module, line=line))
            elif node.type == "import_from_statement":
                module = _text(node.child_by_field_name("module_name"))
                if not module:
                    continue
                names = tuple(
                    name
                    for name in (
                        _imported_name(child) for child in node.children_by_field_name("name")
                    )
                    if name
                )
                results.append(
                    ParsedImport(module=module, line=node.start_point.row + 1, names=names)
                )
            else:
                stack.extend(reversed(node.children))

        results.sort(key=lambda imp: imp.line)
        return results


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def _module_bases(
    module: str, importer: str, source_roots: Sequence[str]
) -> list[str]:
    """Convert an import's module to slash-separated base paths (no extension).

    Absolute imports are tried at the project root and under each source
    root.  Relative imports are anchored at the importing file's package.
    """
    if not module.startswith("."):
        rel = module.replace(".", "/")
        prefixes = ["", *(root.strip("/") for root in source_roots if root.strip("/"))]
        return [f"{prefix}/{rel}" if prefix else rel for prefix in prefixes]

    level = len(module) - len(module.lstrip("."))
    rest = module[level:].replace(".", "/")
    package = PurePosixPath(importer).parent
    for _ in range(level - 1):
        if package == PurePosixPath("."):
            return []
        package = package.parent

    base = "" if package == PurePosixPath(".") else str(package)
    if rest:
        return [f"{base}/{rest}" if base else rest]
    return [base]


def _first_known(bases: Sequence[str], known: Collection[str]) -> str | None:
    for base in bases:
        if not base:
            continue
        for candidate in (f"{base}.py", f"{base}/__init__.py"):
            if candidate in known:
                return candidate
    return None


def resolve_import(
    parsed: ParsedImport,
    importer: str,
    known: Collection[str],
    source_roots: Sequence[str] = DEFAULT_SOURCE_ROOTS,
) -> list[str]:
    """Resolve *parsed* to paths of files in *known*.

    ``from pkg import mod`` resolves to ``pkg/mod.py`` when that submodule
    exists and to ``pkg/__init__.py`` otherwise.  Imports that resolve to
    nothing (third-party or standard library) yield an empty list.
    """
    bases = _module_bases(parsed.module, importer, source_roots)

    targets: list[str] = []
    for name in parsed.names:
        joined = [f"{base}/{name}" if base else name for base in bases]
        hit = _first_known(joined, known)
        if hit is not None and hit not in targets:
            targets.append(hit)

    if not targets:
        hit = _first_known(bases, known)
        if hit is not None:
            targets.append(hit)

    return [target for target in targets if target != importer]
