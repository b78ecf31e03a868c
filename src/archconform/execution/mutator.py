"""File mutators: the collaborators that actually create, modify, rename, and delete files."""

from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Protocol

import click

from archconform.errors import MutationError
from archconform.planning.units import ChangeKind

if TYPE_CHECKING:
    from archconform.planning.units import ChangeUnit

logger = logging.getLogger(__name__)


class FileMutator(Protocol):
    def apply(self, unit: ChangeUnit, new_content: str | None = None) -> None: ...


class FilesystemMutator:
    """Applies change units under *root*.

    - create writes the unit's content and never overwrites an existing file
    - modify requires an existing file and writes the supplied content
    - rename refuses to replace an existing destination
    - delete requires an existing file

    A modify without content is an error unless *annotate* is set, in which
    case a marker comment carrying the unit's rationale is appended for a
    developer to act on.
    """

    def __init__(self, root: Path, *, annotate: bool = False) -> None:
        self.root = root
        self.annotate = annotate

    def _resolve(self, unit: ChangeUnit, rel_path: str) -> Path:
        pure = PurePosixPath(rel_path)
        if pure.is_absolute() or ".." in pure.parts:
            raise MutationError(unit.id, rel_path, "path escapes the project root")
        return self.root / pure

    def apply(self, unit: ChangeUnit, new_content: str | None = None) -> None:
        """Apply *unit*; every failure surfaces as :class:`MutationError`."""
        content = new_content if new_content is not None else unit.content
        target = self._resolve(unit, unit.target_path)

        try:
            if unit.kind is ChangeKind.CREATE:
                self._create(unit, target, content or "")
            elif unit.kind is ChangeKind.MODIFY:
                self._modify(unit, target, content)
            elif unit.kind is ChangeKind.RENAME:
                self._rename(unit, target)
            elif unit.kind is ChangeKind.DELETE:
                self._delete(unit, target)
        except (OSError, UnicodeDecodeError) as exc:
            raise MutationError(unit.id, unit.target_path, str(exc)) from exc
        logger.debug("Applied %s (%s)", unit.id, unit.describe())

    def _create(self, unit: ChangeUnit, target: Path, content: str) -> None:
        if target.exists():
            raise MutationError(unit.id, unit.target_path, "file already exists")
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            with target.open("x", encoding="utf-8") as fh:
                fh.write(content)
        except FileExistsError as exc:
            raise MutationError(unit.id, unit.target_path, "file already exists") from exc

    def _modify(self, unit: ChangeUnit, target: Path, content: str | None) -> None:
        if not target.is_file():
            raise MutationError(unit.id, unit.target_path, "file does not exist")
        if content is None:
            if not self.annotate:
                raise MutationError(unit.id, unit.target_path, "no content supplied for modify")
            content = self._annotated(unit, target.read_text(encoding="utf-8"))
        target.write_text(content, encoding="utf-8")

    def _annotated(self, unit: ChangeUnit, existing: str) -> str:
        marker = f"# archconform {unit.id}: {unit.rationale or unit.describe()}\n"
        if marker in existing:
            return existing
        if existing and not existing.endswith("\n"):
            existing += "\n"
        return existing + marker

    def _rename(self, unit: ChangeUnit, target: Path) -> None:
        if unit.new_path is None:
            raise MutationError(unit.id, unit.target_path, "rename has no destination")
        destination = self._resolve(unit, unit.new_path)
        if not target.is_file():
            raise MutationError(unit.id, unit.target_path, "file does not exist")
        if destination.exists():
            raise MutationError(unit.id, unit.new_path, "destination already exists")
        destination.parent.mkdir(parents=True, exist_ok=True)
        target.rename(destination)

    def _delete(self, unit: ChangeUnit, target: Path) -> None:
        if not target.is_file():
            raise MutationError(unit.id, unit.target_path, "file does not exist")
        target.unlink()


class EditorMutator(FilesystemMutator):
    """Like :class:`FilesystemMutator`, but opens content-less modifies in ``$EDITOR``."""

    def __init__(self, root: Path, *, editor: str | None = None) -> None:
        super().__init__(root)
        self.editor = editor

    def _modify(self, unit: ChangeUnit, target: Path, content: str | None) -> None:
        if content is not None or not target.is_file():
            super()._modify(unit, target, content)
            return

        before = target.read_text(encoding="utf-8")
        click.echo(f"  {unit.id}: {unit.rationale or unit.describe()}")
        try:
            click.edit(filename=str(target), editor=self.editor)
        except click.ClickException as exc:
            raise MutationError(unit.id, unit.target_path, exc.format_message()) from exc
        if target.read_text(encoding="utf-8") == before:
            raise MutationError(unit.id, unit.target_path, "file left unchanged in editor")
