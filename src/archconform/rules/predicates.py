"""Builtin rule predicates referenced by name from rule packs.

Every predicate has the signature ``(graph, file, rule) -> list[Violation]``
and reads its configuration from ``rule.params``.  Predicates are pure: they
only read the immutable :class:`ModuleGraph`.
"""

from __future__ import annotations

from collections import deque
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from archconform.model.layers import Layer, LayerClassifier, parse_layer
from archconform.model.source_model import glob_match

if TYPE_CHECKING:
    from archconform.model.source_model import ModuleGraph, SourceFile
    from archconform.rules.types import Predicate, Rule, Violation


DEFAULT_ENTRY_POINTS: tuple[str, ...] = (
    "**/__main__.py",
    "**/__init__.py",
    "**/cli.py",
    "**/conftest.py",
    "**/test_*.py",
    "**/*_test.py",
    "tests/**",
    "setup.py",
    "manage.py",
)


# ---------------------------------------------------------------------------
# Layering
# ---------------------------------------------------------------------------


def layer_dependency(graph: ModuleGraph, file: SourceFile, rule: Rule) -> list[Violation]:
    """Flag imports from ``from_layer`` files into any of ``forbidden_layers``."""
    from_layer = parse_layer(rule.params["from_layer"])
    forbidden = {parse_layer(name) for name in rule.params["forbidden_layers"]}

    if file.layer is not from_layer:
        return []

    violations: list[Violation] = []
    for edge in graph.imports_of(file.path):
        target = graph.get(edge.target)
        if target is None or target.layer not in forbidden:
            continue
        violations.append(
            rule.violation(
                file.path,
                f"{from_layer.value} module imports {target.layer.value} module "
                f"'{edge.target}'",
                line=edge.line,
                related_path=edge.target,
            )
        )
    return violations


def forbidden_import(graph: ModuleGraph, file: SourceFile, rule: Rule) -> list[Violation]:
    """Flag imports from files matching ``from`` into files matching ``to`` (globs)."""
    from_glob = str(rule.params["from"])
    to_glob = str(rule.params["to"])

    if not glob_match(file.path, from_glob):
        return []

    return [
        rule.violation(
            file.path,
            f"'{file.path}' must not import '{edge.target}' ({from_glob} -> {to_glob})",
            line=edge.line,
            related_path=edge.target,
        )
        for edge in graph.imports_of(file.path)
        if glob_match(edge.target, to_glob)
    ]


def _layer_directory_index(parts: tuple[str, ...], classifier: LayerClassifier) -> int | None:
    for idx in range(len(parts) - 1, -1, -1):
        if parts[idx].lower() in classifier.directories:
            return idx
    return None


def relocated_path(path: str, layer: Layer, classifier: LayerClassifier) -> str | None:
    """Return where *path* belongs if it should live in a *layer* directory.

    The deepest layer directory segment is swapped for the target layer's
    directory; when the path has none, the directory is inserted above the
    file.
    """
    target_dir = classifier.directory_for(layer)
    if target_dir is None:
        return None
    pure = PurePosixPath(path)
    parts = pure.parent.parts
    idx = _layer_directory_index(parts, classifier)
    if idx is None:
        new_parts = (*parts, target_dir)
    else:
        new_parts = (*parts[:idx], target_dir, *parts[idx + 1 :])
    return str(PurePosixPath(*new_parts, pure.name))


def layer_placement(graph: ModuleGraph, file: SourceFile, rule: Rule) -> list[Violation]:
    """Flag files whose name suffix names a different layer than their directory."""
    classifier = LayerClassifier(
        suffixes={k: parse_layer(v) for k, v in rule.params["suffixes"].items()}
        if "suffixes" in rule.params
        else None,
        directories={k: parse_layer(v) for k, v in rule.params["directories"].items()}
        if "directories" in rule.params
        else None,
    )
    suffix_layer = classifier.layer_from_suffix(file.path)
    dir_layer = classifier.layer_from_directory(file.path)
    if suffix_layer is None or dir_layer is None or suffix_layer is dir_layer:
        return []

    destination = relocated_path(file.path, suffix_layer, classifier)
    if destination is None or destination == file.path or destination in graph:
        return []
    return [
        rule.violation(
            file.path,
            f"{suffix_layer.value} module lives in a {dir_layer.value} directory; "
            f"move it to '{destination}'",
            related_path=destination,
        )
    ]


# ---------------------------------------------------------------------------
# Dependency structure
# ---------------------------------------------------------------------------


def _shortest_cycle_through(graph: ModuleGraph, start: str, max_length: int) -> list[str] | None:
    """BFS over import edges from *start* back to itself."""
    parents: dict[str, str] = {}
    queue: deque[tuple[str, int]] = deque()
    for edge in graph.imports_of(start):
        if edge.target == start:
            continue
        if edge.target not in parents:
            parents[edge.target] = start
            queue.append((edge.target, 1))

    while queue:
        current, depth = queue.popleft()
        if depth >= max_length:
            continue
        for edge in graph.imports_of(current):
            if edge.target == start:
                path = [current]
                while path[-1] != start:
                    path.append(parents[path[-1]])
                path.reverse()
                return path
            if edge.target not in parents:
                parents[edge.target] = current
                queue.append((edge.target, depth + 1))
    return None


def import_cycle(graph: ModuleGraph, file: SourceFile, rule: Rule) -> list[Violation]:
    """Flag the shortest import cycle through *file*.

    A cycle is reported once, on its lexicographically smallest member.
    """
    max_length = int(rule.params.get("max_length", 10))
    cycle = _shortest_cycle_through(graph, file.path, max_length)
    if cycle is None or min(cycle) != file.path:
        return []

    following = cycle[1]
    line = next(
        (e.line for e in graph.imports_of(file.path) if e.target == following),
        None,
    )
    display = " → ".join([*cycle, cycle[0]])
    return [
        rule.violation(
            file.path,
            f"Circular import detected: {display}",
            line=line,
            related_path=following,
        )
    ]


def max_fan_out(graph: ModuleGraph, file: SourceFile, rule: Rule) -> list[Violation]:
    """Flag files importing more than ``max_imports`` distinct project modules."""
    limit = int(rule.params["max_imports"])
    targets = {edge.target for edge in graph.imports_of(file.path)}
    if len(targets) <= limit:
        return []
    return [
        rule.violation(
            file.path,
            f"'{file.path}' imports {len(targets)} project modules (max {limit})",
        )
    ]


def max_file_lines(graph: ModuleGraph, file: SourceFile, rule: Rule) -> list[Violation]:
    """Flag files longer than ``max_lines``."""
    limit = int(rule.params["max_lines"])
    count = file.line_count
    if count <= limit:
        return []
    return [
        rule.violation(
            file.path,
            f"'{file.path}' has {count} lines (max {limit})",
            line=1,
            line_end=count,
        )
    ]


def orphan_module(graph: ModuleGraph, file: SourceFile, rule: Rule) -> list[Violation]:
    """Flag modules nothing imports, excluding entry points."""
    entry_points = rule.params.get("entry_points", DEFAULT_ENTRY_POINTS)
    if any(glob_match(file.path, pattern) for pattern in entry_points):
        return []
    if graph.importers_of(file.path):
        return []
    return [rule.violation(file.path, f"'{file.path}' is not imported by any module")]


PREDICATES: dict[str, Predicate] = {
    "layer_dependency": layer_dependency,
    "forbidden_import": forbidden_import,
    "layer_placement": layer_placement,
    "import_cycle": import_cycle,
    "max_fan_out": max_fan_out,
    "max_file_lines": max_file_lines,
    "orphan_module": orphan_module,
}

REQUIRED_PARAMS: dict[str, tuple[str, ...]] = {
    "layer_dependency": ("from_layer", "forbidden_layers"),
    "forbidden_import": ("from", "to"),
    "max_fan_out": ("max_imports",),
    "max_file_lines": ("max_lines",),
}

_INT_PARAMS: tuple[str, ...] = ("max_imports", "max_lines", "max_length")


def validate_params(predicate_ref: str, params: dict[str, object]) -> None:
    """Check rule params for a builtin predicate, raising ``ValueError`` on problems."""
    missing = [p for p in REQUIRED_PARAMS.get(predicate_ref, ()) if p not in params]
    if missing:
        msg = f"missing params {missing}"
        raise ValueError(msg)

    if predicate_ref == "layer_dependency":
        parse_layer(str(params["from_layer"]))
        forbidden = params["forbidden_layers"]
        if not isinstance(forbidden, list) or not forbidden:
            msg = "'forbidden_layers' must be a non-empty list"
            raise ValueError(msg)
        for name in forbidden:
            parse_layer(str(name))

    for key in _INT_PARAMS:
        if key in params:
            value = int(params[key])  # type: ignore[call-overload]
            if value < 0:
                msg = f"'{key}' must be non-negative"
                raise ValueError(msg)
