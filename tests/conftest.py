"""Shared test fixtures for archconform."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from archconform.model.layers import Layer
from archconform.model.source_model import ImportEdge, ModuleGraph, SourceFile

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path


def make_graph(
    files: dict[str, Layer],
    edges: list[tuple[str, str]] | None = None,
    *,
    contents: dict[str, str] | None = None,
    unparseable: tuple[str, ...] = (),
) -> ModuleGraph:
    """Build a ModuleGraph in memory, without touching the filesystem."""
    contents = contents or {}
    nodes = []
    for path, layer in files.items():
        content = contents.get(path, "")
        nodes.append(
            SourceFile(
                path=path,
                content=content,
                layer=layer,
                size=len(content),
                parse_error="syntax error near line 1" if path in unparseable else None,
            )
        )
    import_edges = [
        ImportEdge(source=src, target=dst, line=idx + 1)
        for idx, (src, dst) in enumerate(edges or [])
    ]
    return ModuleGraph(nodes, import_edges)


def write_files(root: Path, files: dict[str, str]) -> Path:
    """Write ``{relative path: content}`` under *root*."""
    for rel, content in files.items():
        target = root / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
    return root


@pytest.fixture()
def tmp_project(tmp_path: Path) -> Path:
    """A project where one core module imports an infrastructure module.

    Layout::

        src/app/__init__.py
        src/app/domain/__init__.py
        src/app/domain/order.py              (imports the repository, line 1)
        src/app/infrastructure/__init__.py
        src/app/infrastructure/order_repository.py
    """
    return write_files(
        tmp_path,
        {
            "src/app/__init__.py": "",
            "src/app/domain/__init__.py": "",
            "src/app/domain/order.py": (
                "from app.infrastructure.order_repository import OrderRepository\n"
                "\n"
                "\n"
                "class Order:\n"
                "    repository = OrderRepository\n"
            ),
            "src/app/infrastructure/__init__.py": "",
            "src/app/infrastructure/order_repository.py": (
                "class OrderRepository:\n    pass\n"
            ),
        },
    )


@pytest.fixture()
def clean_project(tmp_path: Path) -> Path:
    """A project that satisfies every bundled rule."""
    return write_files(
        tmp_path,
        {
            "src/app/__init__.py": "from app.domain import order\n",
            "src/app/domain/__init__.py": "",
            "src/app/domain/order.py": "class Order:\n    pass\n",
        },
    )


@pytest.fixture()
def graph_factory() -> Callable[..., ModuleGraph]:
    return make_graph
