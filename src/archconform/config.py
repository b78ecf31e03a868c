"""Engine configuration from ``.archconform/config.yml``."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

import yaml

from archconform.errors import ConfigError
from archconform.model.import_parser import DEFAULT_SOURCE_ROOTS
from archconform.model.layers import LayerClassifier, parse_layer
from archconform.model.source_model import DEFAULT_EXCLUDE, DEFAULT_INCLUDE
from archconform.rules.engine import SamplingPolicy
from archconform.rules.registry import default_registry, load_rule_pack

if TYPE_CHECKING:
    from pathlib import Path

    from archconform.model.layers import Layer
    from archconform.rules.registry import RuleRegistry

logger = logging.getLogger(__name__)

CONFIG_DIR = ".archconform"
CONFIG_FILE = "config.yml"

_KNOWN_KEYS = frozenset(
    {
        "include",
        "exclude",
        "source_roots",
        "rule_pack",
        "categories",
        "entry_points",
        "workers",
        "sampling",
        "verify",
        "layers",
    }
)

DEFAULT_CONFIG_YAML = """\
# archconform configuration; every key is optional.
include:
  - "**/*.py"
exclude:
  - ".git/**"
  - ".venv/**"
  - "**/__pycache__/**"
source_roots:
  - src
# rule_pack: .archconform/rules.yml
# categories: [Layering, Dependencies]
workers: 4
sampling:
  threshold: 2000
  largest: 50
  percent: 10
  seed: 0
verify:
  command: python -m pytest -q
  timeout: 600
# layers:
#   suffixes: {_repository: infrastructure}
#   directories: {services: core}
"""


@dataclass(frozen=True)
class EngineConfig:
    """Resolved configuration; CLI options override it via :func:`dataclasses.replace`."""

    include: tuple[str, ...] = DEFAULT_INCLUDE
    exclude: tuple[str, ...] = DEFAULT_EXCLUDE
    source_roots: tuple[str, ...] = DEFAULT_SOURCE_ROOTS
    rule_pack: str | None = None
    categories: tuple[str, ...] = ()
    entry_points: tuple[str, ...] = ()
    workers: int = 1
    sampling: SamplingPolicy = field(default_factory=SamplingPolicy)
    verify_command: str | None = None
    verify_timeout: float | None = None
    layer_suffixes: dict[str, Layer] | None = field(default=None, hash=False)
    layer_directories: dict[str, Layer] | None = field(default=None, hash=False)

    def classifier(self) -> LayerClassifier:
        return LayerClassifier(suffixes=self.layer_suffixes, directories=self.layer_directories)

    def registry(self, project_root: Path) -> RuleRegistry:
        """The configured rule pack, or the bundled one."""
        if self.rule_pack is None:
            return default_registry()
        path = project_root / self.rule_pack
        if not path.is_file():
            msg = f"Rule pack not found: {path}"
            raise ConfigError(msg)
        return load_rule_pack(path)


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------


def _str_tuple(key: str, value: object) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        msg = f"config.yml: '{key}' must be a list of strings"
        raise ConfigError(msg)
    return tuple(value)


def _int(key: str, value: object, minimum: int = 0) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        msg = f"config.yml: '{key}' must be an integer >= {minimum}"
        raise ConfigError(msg)
    return value


def _number(key: str, value: object) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        msg = f"config.yml: '{key}' must be a non-negative number"
        raise ConfigError(msg)
    return float(value)


def _mapping(key: str, value: object) -> dict[str, Any]:
    if not isinstance(value, dict):
        msg = f"config.yml: '{key}' must be a mapping"
        raise ConfigError(msg)
    return value


def _layer_table(key: str, value: object) -> dict[str, Layer]:
    table: dict[str, Layer] = {}
    for name, layer in _mapping(key, value).items():
        try:
            table[str(name)] = parse_layer(layer)
        except ValueError as exc:
            msg = f"config.yml: '{key}.{name}': {exc}"
            raise ConfigError(msg) from exc
    return table


def _sampling(value: object, entry_points: tuple[str, ...]) -> SamplingPolicy:
    data = _mapping("sampling", value)
    defaults = SamplingPolicy()
    percent = _number("sampling.percent", data.get("percent", defaults.percent))
    if percent > 100:
        msg = "config.yml: 'sampling.percent' must be between 0 and 100"
        raise ConfigError(msg)
    return SamplingPolicy(
        threshold=_int("sampling.threshold", data.get("threshold", defaults.threshold)),
        largest=_int("sampling.largest", data.get("largest", defaults.largest)),
        percent=percent,
        seed=_int("sampling.seed", data.get("seed", defaults.seed)),
        entry_points=entry_points,
    )


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def parse_config(data: object) -> EngineConfig:
    """Build an :class:`EngineConfig` from already-loaded YAML data."""
    if data is None:
        return EngineConfig()
    if not isinstance(data, dict):
        msg = "config.yml must be a YAML mapping"
        raise ConfigError(msg)

    for key in sorted(set(data) - _KNOWN_KEYS):
        logger.warning("config.yml: ignoring unknown key '%s'", key)

    config = EngineConfig()
    changes: dict[str, Any] = {}
    if "include" in data:
        changes["include"] = _str_tuple("include", data["include"])
    if "exclude" in data:
        changes["exclude"] = _str_tuple("exclude", data["exclude"])
    if "source_roots" in data:
        changes["source_roots"] = _str_tuple("source_roots", data["source_roots"])
    if data.get("rule_pack") is not None:
        if not isinstance(data["rule_pack"], str):
            msg = "config.yml: 'rule_pack' must be a path"
            raise ConfigError(msg)
        changes["rule_pack"] = data["rule_pack"]
    if "categories" in data:
        changes["categories"] = _str_tuple("categories", data["categories"])
    entry_points = _str_tuple("entry_points", data.get("entry_points", []))
    changes["entry_points"] = entry_points
    if "workers" in data:
        changes["workers"] = _int("workers", data["workers"], minimum=1)

    raw_sampling = data.get("sampling")
    changes["sampling"] = _sampling({} if raw_sampling is None else raw_sampling, entry_points)

    if "verify" in data:
        verify = _mapping("verify", data["verify"])
        command = verify.get("command")
        if command is not None and not isinstance(command, str):
            msg = "config.yml: 'verify.command' must be a string"
            raise ConfigError(msg)
        changes["verify_command"] = command or None
        if verify.get("timeout") is not None:
            timeout = _number("verify.timeout", verify["timeout"])
            if timeout == 0:
                msg = "config.yml: 'verify.timeout' must be greater than 0"
                raise ConfigError(msg)
            changes["verify_timeout"] = timeout

    if "layers" in data:
        layers = _mapping("layers", data["layers"])
        if "suffixes" in layers:
            changes["layer_suffixes"] = _layer_table("layers.suffixes", layers["suffixes"])
        if "directories" in layers:
            changes["layer_directories"] = _layer_table(
                "layers.directories", layers["directories"]
            )

    return replace(config, **changes)


def config_path(project_root: Path) -> Path:
    return project_root / CONFIG_DIR / CONFIG_FILE


def load_config(project_root: Path) -> EngineConfig:
    """Load ``.archconform/config.yml``; a missing file yields the defaults."""
    path = config_path(project_root)
    if not path.is_file():
        return EngineConfig()
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except (OSError, yaml.YAMLError) as exc:
        msg = f"Cannot read {path}: {exc}"
        raise ConfigError(msg) from exc
    return parse_config(data)
