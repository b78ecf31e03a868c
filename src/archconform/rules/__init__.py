"""Rules domain: rule records, builtin predicates, and the violation detector.

Note: ``archconform.rules.registry`` and ``archconform.rules.fixes`` are not
re-exported here because fix shapes build ``planning.units`` drafts, and
``planning.units`` itself imports ``rules.types``.  Import them directly::

    from archconform.rules.registry import RuleRegistry, default_registry
"""

from archconform.rules.engine import DetectionResult, SamplingPolicy, detect, select_files
from archconform.rules.predicates import PREDICATES
from archconform.rules.types import (
    INTERNAL_CATEGORY,
    Rule,
    Severity,
    Violation,
    parse_severity,
    violation_sort_key,
)

__all__ = [
    "INTERNAL_CATEGORY",
    "PREDICATES",
    "DetectionResult",
    "Rule",
    "SamplingPolicy",
    "Severity",
    "Violation",
    "detect",
    "parse_severity",
    "select_files",
    "violation_sort_key",
]
