"""Layer classification from path segments and file-name suffixes."""

from __future__ import annotations

import enum
from collections.abc import Mapping
from pathlib import PurePosixPath


class Layer(enum.Enum):
    """Architectural tier of a source file."""

    CORE = "core"
    INFRASTRUCTURE = "infrastructure"
    PRESENTATION = "presentation"
    UNKNOWN = "unknown"


DEFAULT_SUFFIXES: dict[str, Layer] = {
    "_repository": Layer.INFRASTRUCTURE,
    "_gateway": Layer.INFRASTRUCTURE,
    "_adapter": Layer.INFRASTRUCTURE,
    "_client": Layer.INFRASTRUCTURE,
    "_view": Layer.PRESENTATION,
    "_controller": Layer.PRESENTATION,
    "_handler": Layer.PRESENTATION,
    "_entity": Layer.CORE,
}

DEFAULT_DIRECTORIES: dict[str, Layer] = {
    "domain": Layer.CORE,
    "core": Layer.CORE,
    "entities": Layer.CORE,
    "use_cases": Layer.CORE,
    "usecases": Layer.CORE,
    "infrastructure": Layer.INFRASTRUCTURE,
    "infra": Layer.INFRASTRUCTURE,
    "adapters": Layer.INFRASTRUCTURE,
    "gateways": Layer.INFRASTRUCTURE,
    "persistence": Layer.INFRASTRUCTURE,
    "repositories": Layer.INFRASTRUCTURE,
    "db": Layer.INFRASTRUCTURE,
    "presentation": Layer.PRESENTATION,
    "interface": Layer.PRESENTATION,
    "ui": Layer.PRESENTATION,
    "api": Layer.PRESENTATION,
    "web": Layer.PRESENTATION,
    "cli": Layer.PRESENTATION,
    "views": Layer.PRESENTATION,
    "controllers": Layer.PRESENTATION,
}


class LayerClassifier:
    """Assign a :class:`Layer` to a path.

    The file-name suffix is checked first (``order_repository.py`` is
    infrastructure wherever it lives), then directory segments from the
    deepest upwards.  Paths matching neither table are ``UNKNOWN``.
    """

    def __init__(
        self,
        suffixes: Mapping[str, Layer] | None = None,
        directories: Mapping[str, Layer] | None = None,
    ) -> None:
        self.suffixes = dict(DEFAULT_SUFFIXES if suffixes is None else suffixes)
        self.directories = dict(DEFAULT_DIRECTORIES if directories is None else directories)

    def __call__(self, path: str) -> Layer:
        return self.classify(path)

    def classify(self, path: str) -> Layer:
        layer = self.layer_from_suffix(path)
        if layer is not None:
            return layer
        return self.layer_from_directory(path) or Layer.UNKNOWN

    def layer_from_suffix(self, path: str) -> Layer | None:
        stem = PurePosixPath(path).stem
        for suffix in sorted(self.suffixes, key=len, reverse=True):
            if stem.endswith(suffix):
                return self.suffixes[suffix]
        return None

    def layer_from_directory(self, path: str) -> Layer | None:
        for segment in reversed(PurePosixPath(path).parent.parts):
            layer = self.directories.get(segment.lower())
            if layer is not None:
                return layer
        return None

    def directory_for(self, layer: Layer) -> str | None:
        """Return the first configured directory name mapped to *layer*."""
        for name, mapped in self.directories.items():
            if mapped is layer:
                return name
        return None


def parse_layer(value: str) -> Layer:
    """Parse a layer name from configuration or rule-pack params."""
    try:
        return Layer(str(value).strip().lower())
    except ValueError:
        valid = sorted(layer.value for layer in Layer)
        msg = f"invalid layer '{value}', must be one of {valid}"
        raise ValueError(msg) from None
