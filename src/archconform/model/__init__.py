"""Source model: files, inferred layers, and import edges."""

from archconform.model.import_parser import ParsedImport, PythonImportParser, resolve_import
from archconform.model.layers import Layer, LayerClassifier, parse_layer
from archconform.model.source_model import (
    DEFAULT_EXCLUDE,
    DEFAULT_INCLUDE,
    FileEnumerator,
    FilesystemEnumerator,
    ImportEdge,
    ImportParser,
    ModuleGraph,
    SourceFile,
    build_model,
    glob_match,
    path_in_scope,
)

__all__ = [
    "DEFAULT_EXCLUDE",
    "DEFAULT_INCLUDE",
    "FileEnumerator",
    "FilesystemEnumerator",
    "ImportEdge",
    "ImportParser",
    "Layer",
    "LayerClassifier",
    "ModuleGraph",
    "ParsedImport",
    "PythonImportParser",
    "SourceFile",
    "build_model",
    "glob_match",
    "parse_layer",
    "path_in_scope",
    "resolve_import",
]
