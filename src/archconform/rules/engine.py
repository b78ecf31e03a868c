"""Violation detector: evaluate rules over a module graph, fail-soft and deterministic."""

from __future__ import annotations

import logging
import random
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from archconform.errors import RuleEvaluationError
from archconform.model.layers import Layer
from archconform.model.source_model import glob_match, path_in_scope
from archconform.rules.types import INTERNAL_CATEGORY, Severity, Violation, violation_sort_key

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from archconform.model.source_model import ModuleGraph, SourceFile
    from archconform.rules.types import Rule

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Sampling
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SamplingPolicy:
    """Bounds detection cost on very large graphs.

    Sampling only kicks in when the graph holds more than ``threshold``
    files.  Core files, the ``largest`` files by size, and files matching
    ``entry_points`` are always kept; ``percent`` of the remainder is drawn
    with a ``seed``-ed random generator.
    """

    threshold: int = 2000
    largest: int = 50
    percent: float = 10.0
    seed: int = 0
    entry_points: tuple[str, ...] = ()


def select_files(
    files: Sequence[SourceFile], policy: SamplingPolicy | None
) -> tuple[list[SourceFile], list[str]]:
    """Split *files* into ``(selected, skipped_paths)``.  Order follows *files*."""
    if policy is None or len(files) <= policy.threshold:
        return list(files), []

    keep: set[str] = set()
    for f in files:
        if f.layer is Layer.CORE:
            keep.add(f.path)
        elif any(glob_match(f.path, pattern) for pattern in policy.entry_points):
            keep.add(f.path)

    by_size = sorted(files, key=lambda f: (-f.size, f.path))
    keep.update(f.path for f in by_size[: policy.largest])

    remainder = [f.path for f in files if f.path not in keep]
    count = int(len(remainder) * max(0.0, min(policy.percent, 100.0)) / 100)
    keep.update(random.Random(policy.seed).sample(remainder, count))  # noqa: S311

    selected = [f for f in files if f.path in keep]
    skipped = [f.path for f in files if f.path not in keep]
    logger.info(
        "Sampling: evaluating %d of %d files, %d skipped",
        len(selected),
        len(files),
        len(skipped),
    )
    return selected, skipped


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


@dataclass
class DetectionResult:
    """Result of a detection pass."""

    violations: list[Violation] = field(default_factory=list)
    evaluated: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    unparseable: list[str] = field(default_factory=list)
    rules_evaluated: int = 0
    elapsed_ms: float = 0.0

    @property
    def internal_errors(self) -> list[Violation]:
        return [v for v in self.violations if v.category == INTERNAL_CATEGORY]


def _internal_violation(error: RuleEvaluationError) -> Violation:
    return Violation(
        rule_id=error.rule_id,
        category=INTERNAL_CATEGORY,
        severity=Severity.INFO,
        path=error.path,
        message=str(error),
    )


def _evaluate(graph: ModuleGraph, rule: Rule, file: SourceFile) -> list[Violation]:
    """Evaluate one (rule, file) pair; a failing predicate yields one Internal violation."""
    try:
        return rule.evaluate(graph, file)
    except Exception as exc:  # noqa: BLE001
        error = RuleEvaluationError(rule.id, file.path, f"{type(exc).__name__}: {exc}")
        logger.warning("%s", error)
        return [_internal_violation(error)]


def detect(
    graph: ModuleGraph,
    rules: Iterable[Rule],
    sampling: SamplingPolicy | None = None,
    *,
    scope: Sequence[str] | None = None,
    workers: int = 1,
) -> DetectionResult:
    """Evaluate *rules* against every parseable file of *graph*.

    Parameters
    ----------
    graph:
        Immutable module graph; predicates only read it.
    rules:
        Rules to evaluate, usually ``registry.filter(...)``.
    sampling:
        Optional sampling policy for very large graphs.  Skipped files are
        listed in the result.
    scope:
        Restrict evaluation to these paths (files or directory prefixes).
    workers:
        Size of the thread pool used for (rule, file) evaluations.

    Returns
    -------
    DetectionResult
        Violations stably sorted by path, first line, and rule id.
    """
    start = time.monotonic()
    rule_list = list(rules)

    in_scope = [f for f in graph.files if path_in_scope(f.path, scope)]
    unparseable = [f.path for f in in_scope if f.unparseable]
    candidates = [f for f in in_scope if not f.unparseable]
    selected, skipped = select_files(candidates, sampling)

    pairs = [(rule, file) for rule in rule_list for file in selected]
    if workers > 1 and len(pairs) > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            batches = list(pool.map(lambda pair: _evaluate(graph, *pair), pairs))
    else:
        batches = [_evaluate(graph, rule, file) for rule, file in pairs]

    violations = [v for batch in batches for v in batch]
    violations.sort(key=violation_sort_key)

    elapsed = (time.monotonic() - start) * 1000
    logger.info(
        "Detected %d violations in %d files (%d rules, %.1f ms)",
        len(violations),
        len(selected),
        len(rule_list),
        elapsed,
    )
    return DetectionResult(
        violations=violations,
        evaluated=[f.path for f in selected],
        skipped=skipped,
        unparseable=unparseable,
        rules_evaluated=len(rule_list),
        elapsed_ms=elapsed,
    )
