"""Source model builder: enumerate files, parse imports, classify layers."""

from __future__ import annotations

import fnmatch
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from archconform.errors import ParseError
from archconform.model.import_parser import (
    DEFAULT_SOURCE_ROOTS,
    ParsedImport,
    PythonImportParser,
    resolve_import,
)
from archconform.model.layers import Layer, LayerClassifier

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence
    from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_INCLUDE: tuple[str, ...] = ("**/*.py",)
DEFAULT_EXCLUDE: tuple[str, ...] = (
    ".git/**",
    ".venv/**",
    "venv/**",
    "**/__pycache__/**",
    "build/**",
    "dist/**",
    ".archconform/**",
)


# ---------------------------------------------------------------------------
# Collaborator protocols
# ---------------------------------------------------------------------------


class FileEnumerator(Protocol):
    """Lists and reads candidate source files."""

    def list(self, root: Path, include: Sequence[str], exclude: Sequence[str]) -> list[str]:
        """Return root-relative POSIX paths matching *include* and not *exclude*."""
        ...

    def read(self, path: Path) -> str:
        """Return the text content of *path*."""
        ...


class ImportParser(Protocol):
    """Extracts import statements from source text."""

    def parse(self, content: str) -> list[ParsedImport]:
        """Return the imports in *content* or raise :class:`ParseError`."""
        ...


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SourceFile:
    """A file of the analysed codebase."""

    path: str
    content: str | None
    layer: Layer
    size: int = 0
    parse_error: str | None = None

    @property
    def unparseable(self) -> bool:
        return self.parse_error is not None

    @property
    def line_count(self) -> int:
        if not self.content:
            return 0
        return self.content.count("\n") + (0 if self.content.endswith("\n") else 1)


@dataclass(frozen=True)
class ImportEdge:
    """A resolved import from one source file to another."""

    source: str
    target: str
    line: int | None = None


class ModuleGraph:
    """Immutable graph of source files and the import edges between them."""

    def __init__(self, files: Iterable[SourceFile], edges: Iterable[ImportEdge]) -> None:
        by_path = {f.path: f for f in files}
        self._files: dict[str, SourceFile] = {p: by_path[p] for p in sorted(by_path)}
        self._edges: tuple[ImportEdge, ...] = tuple(
            sorted(set(edges), key=lambda e: (e.source, e.target, e.line or 0))
        )
        self._outgoing: dict[str, list[ImportEdge]] = {}
        self._incoming: dict[str, list[ImportEdge]] = {}
        for edge in self._edges:
            self._outgoing.setdefault(edge.source, []).append(edge)
            self._incoming.setdefault(edge.target, []).append(edge)

    def __contains__(self, path: object) -> bool:
        return path in self._files

    def __len__(self) -> int:
        return len(self._files)

    @property
    def files(self) -> tuple[SourceFile, ...]:
        return tuple(self._files.values())

    @property
    def edges(self) -> tuple[ImportEdge, ...]:
        return self._edges

    def file(self, path: str) -> SourceFile:
        return self._files[path]

    def get(self, path: str) -> SourceFile | None:
        return self._files.get(path)

    def parseable_files(self) -> list[SourceFile]:
        return [f for f in self._files.values() if not f.unparseable]

    def unparseable_files(self) -> list[SourceFile]:
        return [f for f in self._files.values() if f.unparseable]

    def imports_of(self, path: str) -> list[ImportEdge]:
        """Outgoing import edges of *path*."""
        return list(self._outgoing.get(path, ()))

    def importers_of(self, path: str) -> list[ImportEdge]:
        """Incoming import edges of *path*."""
        return list(self._incoming.get(path, ()))


# ---------------------------------------------------------------------------
# Default enumerator
# ---------------------------------------------------------------------------


def glob_match(path: str, pattern: str) -> bool:
    """Match *path* against *pattern*, where a leading ``**/`` also matches zero dirs."""
    if fnmatch.fnmatchcase(path, pattern):
        return True
    if pattern.startswith("**/"):
        return glob_match(path, pattern[3:])
    if pattern.endswith("/**"):
        prefix = pattern[:-3]
        return path == prefix or fnmatch.fnmatchcase(path, prefix + "/*")
    return False


def path_in_scope(path: str, scope: Iterable[str] | None) -> bool:
    """Return True when *path* is one of, or lies under one of, the *scope* entries.

    An empty or missing scope, or a scope holding ``"."`` or ``""``, covers everything.
    """
    if not scope:
        return True
    for entry in scope:
        prefix = entry.strip().rstrip("/")
        if prefix in ("", "."):
            return True
        if prefix.startswith("./"):
            prefix = prefix[2:]
        if path == prefix or path.startswith(prefix + "/"):
            return True
    return False


class FilesystemEnumerator:
    """Enumerate files on the local filesystem using ``fnmatch`` globs."""

    def list(self, root: Path, include: Sequence[str], exclude: Sequence[str]) -> list[str]:
        paths: list[str] = []
        for file_path in root.rglob("*"):
            if not file_path.is_file():
                continue
            rel = file_path.relative_to(root).as_posix()
            if not any(glob_match(rel, pattern) for pattern in include):
                continue
            if any(glob_match(rel, pattern) for pattern in exclude):
                continue
            paths.append(rel)
        return sorted(paths)

    def read(self, path: Path) -> str:
        return path.read_text(encoding="utf-8")


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


def build_model(
    root: Path,
    include: Sequence[str] = DEFAULT_INCLUDE,
    exclude: Sequence[str] = DEFAULT_EXCLUDE,
    *,
    enumerator: FileEnumerator | None = None,
    parser: ImportParser | None = None,
    classifier: Callable[[str], Layer] | None = None,
    source_roots: Sequence[str] = DEFAULT_SOURCE_ROOTS,
) -> ModuleGraph:
    """Build a :class:`ModuleGraph` for the files under *root*.

    Files that cannot be read or parsed are kept as unparseable nodes so
    that one bad file never aborts model construction.
    """
    enumerator = enumerator or FilesystemEnumerator()
    parser = parser or PythonImportParser()
    classifier = classifier or LayerClassifier()

    paths = enumerator.list(root, include, exclude)
    known = frozenset(paths)
    logger.debug("Enumerated %d files under %s", len(paths), root)

    files: list[SourceFile] = []
    edges: list[ImportEdge] = []

    for rel in paths:
        layer = classifier(rel)
        try:
            content = enumerator.read(root / rel)
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Cannot read %s: %s", rel, exc)
            files.append(SourceFile(path=rel, content=None, layer=layer, parse_error=str(exc)))
            continue

        size = len(content.encode("utf-8"))
        try:
            parsed = parser.parse(content)
        except ParseError as exc:
            logger.warning("Cannot parse %s: %s", rel, exc)
            files.append(
                SourceFile(path=rel, content=content, layer=layer, size=size, parse_error=str(exc))
            )
            continue

        files.append(SourceFile(path=rel, content=content, layer=layer, size=size))
        for imp in parsed:
            for target in resolve_import(imp, rel, known, source_roots):
                edges.append(ImportEdge(source=rel, target=target, line=imp.line))

    graph = ModuleGraph(files, edges)
    logger.info(
        "Model built: %d files (%d unparseable), %d import edges",
        len(graph),
        len(graph.unparseable_files()),
        len(graph.edges),
    )
    return graph
