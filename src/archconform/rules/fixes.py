"""Builtin fix shapes: how a violation turns into atomic file operations.

A fix shape has the signature ``(violation, graph, rule) -> list[UnitDraft]``.
Ordering between drafts is mostly left to the synthesizer's structural
constraints, which is why drafts declare the module paths they ``touch``.
"""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from archconform.planning.units import ChangeKind, UnitDraft

if TYPE_CHECKING:
    from archconform.model.source_model import ModuleGraph
    from archconform.rules.types import FixShape, Rule, Violation


def _camel(stem: str) -> str:
    return "".join(part[:1].upper() + part[1:] for part in stem.split("_") if part)


def port_path_for(importer: str, dependency: str) -> str:
    """Path of the abstraction extracted between *importer* and *dependency*."""
    stem = PurePosixPath(dependency).stem
    if stem == "__init__":
        stem = PurePosixPath(dependency).parent.name or "module"
    return str(PurePosixPath(importer).parent / f"{stem}_port.py")


def _port_content(port: str, importer: str, dependency: str) -> str:
    name = _camel(PurePosixPath(port).stem)
    return (
        f'"""Port between {importer} and {dependency}."""\n'
        "\n"
        "from typing import Protocol\n"
        "\n"
        "\n"
        f"class {name}(Protocol):\n"
        f'    """Operations {PurePosixPath(importer).name} needs from '
        f'{PurePosixPath(dependency).name}."""\n'
    )


def modify_in_place(
    violation: Violation, graph: ModuleGraph | None, rule: Rule
) -> list[UnitDraft]:
    """A single edit of the offending file."""
    touches = frozenset({violation.related_path}) if violation.related_path else frozenset()
    return [
        UnitDraft(
            key="edit",
            kind=ChangeKind.MODIFY,
            target_path=violation.path,
            rationale=violation.message,
            touches=touches,
        )
    ]


def extract_abstraction(
    violation: Violation, graph: ModuleGraph | None, rule: Rule
) -> list[UnitDraft]:
    """Create a port next to the importer and point both sides at it."""
    dependency = violation.related_path
    if dependency is None:
        return modify_in_place(violation, graph, rule)

    importer = violation.path
    port = port_path_for(importer, dependency)
    return [
        UnitDraft(
            key="port",
            kind=ChangeKind.CREATE,
            target_path=port,
            rationale=f"Introduce an abstraction for {dependency} ({rule.id})",
            content=_port_content(port, importer, dependency),
        ),
        UnitDraft(
            key="consumer",
            kind=ChangeKind.MODIFY,
            target_path=importer,
            rationale=f"Depend on {port} instead of {dependency}",
            touches=frozenset({port, dependency}),
        ),
        UnitDraft(
            key="provider",
            kind=ChangeKind.MODIFY,
            target_path=dependency,
            rationale=f"Implement {port}",
            touches=frozenset({port}),
        ),
    ]


def relocate_module(
    violation: Violation, graph: ModuleGraph | None, rule: Rule
) -> list[UnitDraft]:
    """Rename the file to ``related_path`` and update every importer."""
    destination = violation.related_path
    if destination is None:
        return modify_in_place(violation, graph, rule)

    drafts = [
        UnitDraft(
            key="move",
            kind=ChangeKind.RENAME,
            target_path=violation.path,
            new_path=destination,
            rationale=violation.message,
        )
    ]
    if graph is not None:
        importers = sorted({edge.source for edge in graph.importers_of(violation.path)})
        drafts.extend(
            UnitDraft(
                key=f"importer:{importer}",
                kind=ChangeKind.MODIFY,
                target_path=importer,
                rationale=f"Update import of {violation.path} to {destination}",
                touches=frozenset({violation.path}),
            )
            for importer in importers
        )
    return drafts


def remove_module(
    violation: Violation, graph: ModuleGraph | None, rule: Rule
) -> list[UnitDraft]:
    """Drop every reference to the file, then delete it."""
    drafts: list[UnitDraft] = []
    if graph is not None:
        importers = sorted({edge.source for edge in graph.importers_of(violation.path)})
        drafts.extend(
            UnitDraft(
                key=f"importer:{importer}",
                kind=ChangeKind.MODIFY,
                target_path=importer,
                rationale=f"Remove reference to {violation.path}",
                touches=frozenset({violation.path}),
            )
            for importer in importers
        )
    drafts.append(
        UnitDraft(
            key="delete",
            kind=ChangeKind.DELETE,
            target_path=violation.path,
            rationale=violation.message,
        )
    )
    return drafts


FIX_SHAPES: dict[str, FixShape] = {
    "modify_in_place": modify_in_place,
    "extract_abstraction": extract_abstraction,
    "relocate_module": relocate_module,
    "remove_module": remove_module,
}
