"""Execution domain: phased controller, verification gate, mutators, events, persistence."""

from archconform.execution.controller import OPTIONS, ExecutionController, Prompt
from archconform.execution.events import (
    Event,
    EventLog,
    EventSink,
    PhaseAborted,
    PhaseSkipped,
    PhaseStarted,
    PhaseVerified,
    RunCompleted,
    UnitApplied,
    UnitDecisionRequested,
    UnitFailed,
    UnitsBlocked,
    UnitSkipped,
)
from archconform.execution.mutator import EditorMutator, FileMutator, FilesystemMutator
from archconform.execution.persistence import (
    clear,
    load_plan,
    load_state,
    save_plan,
    save_state,
)
from archconform.execution.state import Decision, ExecutionState, Stage, UnitStatus
from archconform.execution.summary import RunSummary, summarize
from archconform.execution.verification import (
    CommandResult,
    CommandRunner,
    SubprocessRunner,
    VerificationGate,
    VerificationResult,
)

__all__ = [
    "OPTIONS",
    "CommandResult",
    "CommandRunner",
    "Decision",
    "EditorMutator",
    "Event",
    "EventLog",
    "EventSink",
    "ExecutionController",
    "ExecutionState",
    "FileMutator",
    "FilesystemMutator",
    "PhaseAborted",
    "PhaseSkipped",
    "PhaseStarted",
    "PhaseVerified",
    "Prompt",
    "RunCompleted",
    "RunSummary",
    "Stage",
    "SubprocessRunner",
    "UnitApplied",
    "UnitDecisionRequested",
    "UnitFailed",
    "UnitSkipped",
    "UnitStatus",
    "UnitsBlocked",
    "VerificationGate",
    "VerificationResult",
    "clear",
    "load_plan",
    "load_state",
    "save_plan",
    "save_state",
    "summarize",
]
