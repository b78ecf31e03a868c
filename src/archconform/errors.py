"""Exception hierarchy shared by every archconform component."""

from __future__ import annotations


class ArchConformError(Exception):
    """Base class for all archconform errors."""


class ConfigError(ArchConformError):
    """Raised when ``config.yml`` is malformed or holds wrongly typed values."""


class ParseError(ArchConformError):
    """Raised by a parser when a file's imports cannot be extracted."""


class RuleEvaluationError(ArchConformError):
    """Raised (or recorded) when a rule predicate fails on a single file."""

    def __init__(self, rule_id: str, path: str, reason: str) -> None:
        self.rule_id = rule_id
        self.path = path
        self.reason = reason
        super().__init__(f"Rule '{rule_id}' failed on {path}: {reason}")


class RulePackError(ArchConformError, ValueError):
    """Raised when a rule pack has schema errors."""


class DuplicateRuleError(RulePackError):
    """Raised when a rule id is registered twice."""


class PlanError(ArchConformError):
    """Raised when a set of change units cannot form a plan."""


class PlanCycleError(PlanError):
    """Raised when change unit dependencies form a cycle.

    ``cycle`` holds the minimal cycle, starting at its smallest unit id and
    without repeating the first element at the end.
    """

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = list(cycle)
        display = " → ".join([*self.cycle, self.cycle[0]]) if self.cycle else ""
        super().__init__(f"Dependency cycle between change units: {display}")


class MutationError(ArchConformError):
    """Raised by a file mutator when a change unit cannot be applied."""

    def __init__(self, unit_id: str, path: str, reason: str) -> None:
        self.unit_id = unit_id
        self.path = path
        self.reason = reason
        super().__init__(f"Unit {unit_id} ({path}): {reason}")


class VerificationTimeout(ArchConformError):
    """Raised when the build/test command exceeds its timeout."""

    def __init__(self, command: str, timeout: float, duration_ms: float) -> None:
        self.command = command
        self.timeout = timeout
        self.duration_ms = duration_ms
        super().__init__(f"Verification command timed out after {timeout:g}s: {command}")


class InvalidDecisionError(ArchConformError):
    """Raised when a decision is not offered at the current suspension point."""


class InvalidTransitionError(ArchConformError, ValueError):
    """Raised when a unit status change would revert a settled status."""


class PersistenceError(ArchConformError):
    """Raised when persisted plan or state files cannot be used."""
