"""Progress events emitted by the execution controller, and sinks that consume them."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, ClassVar, Protocol

if TYPE_CHECKING:
    from archconform.execution.summary import RunSummary

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    """Base class; ``kind`` names the event in serialized form."""

    kind: ClassVar[str] = "event"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, **asdict(self)}


@dataclass(frozen=True)
class PhaseStarted(Event):
    kind: ClassVar[str] = "phase_started"

    phase_index: int
    label: str
    unit_ids: tuple[str, ...]


@dataclass(frozen=True)
class UnitDecisionRequested(Event):
    kind: ClassVar[str] = "unit_decision_requested"

    phase_index: int
    unit_id: str
    description: str


@dataclass(frozen=True)
class UnitApplied(Event):
    kind: ClassVar[str] = "unit_applied"

    phase_index: int
    unit_id: str


@dataclass(frozen=True)
class UnitSkipped(Event):
    kind: ClassVar[str] = "unit_skipped"

    phase_index: int
    unit_id: str


@dataclass(frozen=True)
class UnitFailed(Event):
    kind: ClassVar[str] = "unit_failed"

    phase_index: int
    unit_id: str
    reason: str


@dataclass(frozen=True)
class UnitsBlocked(Event):
    kind: ClassVar[str] = "units_blocked"

    phase_index: int
    unit_ids: tuple[str, ...]


@dataclass(frozen=True)
class PhaseVerified(Event):
    kind: ClassVar[str] = "phase_verified"

    phase_index: int
    passed: bool
    exit_code: int | None = None
    duration_ms: float = 0.0
    timed_out: bool = False


@dataclass(frozen=True)
class PhaseSkipped(Event):
    kind: ClassVar[str] = "phase_skipped"

    phase_index: int
    unit_ids: tuple[str, ...]


@dataclass(frozen=True)
class PhaseAborted(Event):
    """Emitted once per run abort; ``unit_ids`` covers every phase that was cut short."""

    kind: ClassVar[str] = "phase_aborted"

    phase_index: int
    unit_ids: tuple[str, ...]


@dataclass(frozen=True)
class RunCompleted(Event):
    kind: ClassVar[str] = "run_completed"

    summary: RunSummary

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "summary": self.summary.to_dict()}


class EventSink(Protocol):
    def emit(self, event: Event) -> None: ...


class EventLog:
    """Records every event in emission order."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    def emit(self, event: Event) -> None:
        logger.debug("event %s", event.kind)
        self.events.append(event)

    def kinds(self) -> list[str]:
        return [e.kind for e in self.events]

    def of_type(self, event_type: type[Event]) -> list[Event]:
        return [e for e in self.events if isinstance(e, event_type)]

    def to_dicts(self) -> list[dict[str, Any]]:
        return [e.to_dict() for e in self.events]

