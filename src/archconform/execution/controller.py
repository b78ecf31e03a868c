"""Phased execution controller: a resumable state machine driven by external decisions.

The controller never loops on its own.  :meth:`ExecutionController.start`,
:meth:`~ExecutionController.resume` and :meth:`~ExecutionController.decide`
each advance the machine to the next suspension point and return a
:class:`Prompt` describing it, or ``None`` once the run has ended.  All
progress lives in :class:`ExecutionState`, so a run can be persisted at any
suspension point and resumed in another process.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from archconform.errors import (
    InvalidDecisionError,
    MutationError,
    PersistenceError,
    VerificationTimeout,
)
from archconform.execution.events import (
    EventLog,
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
from archconform.execution.state import Decision, ExecutionState, Stage, UnitStatus
from archconform.execution.summary import summarize
from archconform.execution.verification import VerificationResult

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator, Sequence

    from archconform.execution.events import Event, EventSink
    from archconform.execution.mutator import FileMutator
    from archconform.execution.verification import VerificationGate
    from archconform.planning.units import ChangeUnit, Phase, Plan

logger = logging.getLogger(__name__)

OPTIONS: dict[Stage, tuple[Decision, ...]] = {
    Stage.AWAITING_PHASE_DECISION: (Decision.CONTINUE, Decision.SKIP_PHASE, Decision.ABORT),
    Stage.AWAITING_UNIT_DECISION: (
        Decision.APPLY,
        Decision.SKIP,
        Decision.APPLY_ALL,
        Decision.ABORT,
    ),
    Stage.AWAITING_VERIFICATION_DECISION: (Decision.RETRY, Decision.SKIP_PHASE, Decision.ABORT),
    Stage.AWAITING_BLOCKED_DECISION: (Decision.CONTINUE, Decision.SKIP_PHASE, Decision.ABORT),
}


@dataclass(frozen=True)
class Prompt:
    """A suspension point waiting for one of ``options``."""

    stage: Stage
    phase_index: int
    unit_id: str | None
    options: tuple[Decision, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "phase_index": self.phase_index,
            "unit_id": self.unit_id,
            "options": [o.value for o in self.options],
        }


@dataclass(frozen=True)
class _Outcome:
    unit: ChangeUnit
    started: bool
    error: MutationError | None = None


class ExecutionController:
    """Drives a :class:`Plan` phase by phase.

    Parameters
    ----------
    plan:
        The plan to execute.
    mutator:
        Applies each change unit; raises :class:`MutationError` on failure.
    gate:
        Verification gate run after each phase settles.  ``None`` means
        every phase verifies trivially.
    sink:
        Receives progress events.  Defaults to an in-memory :class:`EventLog`.
    state:
        Previously persisted state to resume from.
    workers:
        Upper bound on units applied concurrently by ``apply_all``.
    on_suspend:
        Called with the state every time the controller suspends or ends,
        typically to persist it.
    """

    def __init__(
        self,
        plan: Plan,
        mutator: FileMutator,
        *,
        gate: VerificationGate | None = None,
        sink: EventSink | None = None,
        state: ExecutionState | None = None,
        workers: int = 1,
        on_suspend: Callable[[ExecutionState], None] | None = None,
    ) -> None:
        if state is not None and state.plan_id != plan.id:
            msg = f"Execution state belongs to plan {state.plan_id}, not {plan.id}"
            raise PersistenceError(msg)
        self.plan = plan
        self.mutator = mutator
        self.gate = gate
        self.sink: EventSink = sink if sink is not None else EventLog()
        self.state = state if state is not None else ExecutionState.for_plan(plan)
        self.workers = max(1, workers)
        self.on_suspend = on_suspend

        self._abort_requested = threading.Event()
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def stage(self) -> Stage:
        return self.state.stage

    @property
    def finished(self) -> bool:
        return self.state.stage.is_final

    def current_prompt(self) -> Prompt | None:
        options = OPTIONS.get(self.state.stage)
        if options is None:
            return None
        return Prompt(
            stage=self.state.stage,
            phase_index=self.state.current_phase_index,
            unit_id=self.state.current_unit_id,
            options=options,
        )

    def start(self, from_phase: int = 0) -> Prompt | None:
        """Begin the run at phase *from_phase*; earlier phases are skipped."""
        if self.state.stage is not Stage.IDLE:
            msg = f"Run already started (stage {self.state.stage.value})"
            raise InvalidDecisionError(msg)
        if not 0 <= from_phase <= len(self.plan.phases):
            msg = f"Phase {from_phase} out of range (plan has {len(self.plan.phases)})"
            raise InvalidDecisionError(msg)
        logger.info("Starting plan %s at phase %d", self.plan.id, from_phase)
        self._skip_phases_before(from_phase)
        return self._enter_phase()

    def resume(self, from_phase: int | None = None) -> Prompt | None:
        """Return to the persisted suspension point without re-emitting events.

        With *from_phase* beyond the current phase, the phases in between
        are skipped and the run continues at *from_phase*.
        """
        if self.state.stage is Stage.IDLE:
            return self.start(from_phase or 0)
        if self.state.stage.is_final:
            return None
        if from_phase is not None and from_phase > self.state.current_phase_index:
            if from_phase > len(self.plan.phases):
                msg = f"Phase {from_phase} out of range (plan has {len(self.plan.phases)})"
                raise InvalidDecisionError(msg)
            self._skip_phases_before(from_phase)
            return self._enter_phase()

        stage = self.state.stage
        if stage in OPTIONS:
            return self.current_prompt()
        # Persisted mid-transition: pick up where the transition left off.
        if stage is Stage.PRESENTING_PHASE:
            self.state.stage = Stage.AWAITING_PHASE_DECISION
            return self._suspend()
        if stage is Stage.APPLYING_UNIT:
            return self._next_unit()
        if stage is Stage.VERIFYING:
            return self._verify()
        return self._advance()

    def decide(self, decision: Decision | str) -> Prompt | None:
        """Feed *decision* into the current suspension point."""
        try:
            decision = Decision(decision)
        except ValueError:
            msg = f"Unknown decision '{decision}'"
            raise InvalidDecisionError(msg) from None
        prompt = self.current_prompt()
        if prompt is None or decision not in prompt.options:
            msg = f"Decision '{decision.value}' is not available at stage {self.state.stage.value}"
            raise InvalidDecisionError(msg)

        if decision is Decision.ABORT or self._abort_requested.is_set():
            return self._abort()

        stage = self.state.stage
        logger.debug("Decision %s at %s", decision.value, stage.value)
        if stage is Stage.AWAITING_PHASE_DECISION:
            if decision is Decision.CONTINUE:
                return self._next_unit()
            return self._skip_phase()

        if stage is Stage.AWAITING_UNIT_DECISION:
            unit = self.plan.unit(str(self.state.current_unit_id))
            if decision is Decision.APPLY:
                outcome = self._run_unit(unit)
                self._record(outcome)
                if outcome.error is not None:
                    return self._block_phase()
                return self._next_unit()
            if decision is Decision.SKIP:
                self._set(unit.id, UnitStatus.SKIPPED)
                self._emit(UnitSkipped(self.state.current_phase_index, unit.id))
                return self._next_unit()
            return self._apply_rest()

        if stage is Stage.AWAITING_VERIFICATION_DECISION:
            if decision is Decision.RETRY:
                return self._verify()
            return self._skip_phase()

        # awaiting_blocked_decision
        if decision is Decision.CONTINUE:
            self._settle_blocked(UnitStatus.SKIPPED)
            return self._verify()
        return self._skip_phase()

    def request_abort(self) -> None:
        """Ask the run to stop; in-flight units finish, unstarted ones are aborted."""
        logger.info("Abort requested")
        self._abort_requested.set()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _phase(self) -> Phase:
        return self.plan.phases[self.state.current_phase_index]

    def _emit(self, event: Event) -> None:
        self.sink.emit(event)

    def _set(self, unit_id: str, status: UnitStatus) -> None:
        self.state.set_status(unit_id, status)

    def _suspend(self) -> Prompt | None:
        if self.on_suspend is not None:
            self.on_suspend(self.state)
        return self.current_prompt()

    def _skip_phases_before(self, index: int) -> None:
        while self.state.current_phase_index < index:
            self._mark_phase_skipped()
            self.state.current_phase_index += 1

    def _enter_phase(self) -> Prompt | None:
        self.state.current_unit_id = None
        while self.state.current_phase_index < len(self.plan.phases):
            phase = self._phase()
            pending = [u.id for u in phase.units if self._status(u) is UnitStatus.PENDING]
            if pending:
                self.state.stage = Stage.PRESENTING_PHASE
                logger.info(
                    "Phase %d (%s): %d units",
                    self.state.current_phase_index + 1,
                    phase.label,
                    len(pending),
                )
                self._emit(
                    PhaseStarted(
                        self.state.current_phase_index,
                        phase.label,
                        tuple(u.id for u in phase.units),
                    )
                )
                self.state.stage = Stage.AWAITING_PHASE_DECISION
                return self._suspend()
            self.state.current_phase_index += 1
        return self._complete()

    def _status(self, unit: ChangeUnit) -> UnitStatus:
        return self.state.status(unit.id)

    def _next_unit(self) -> Prompt | None:
        if self._abort_requested.is_set():
            return self._abort()
        for unit in self._phase().units:
            if self._status(unit) is UnitStatus.PENDING:
                self.state.stage = Stage.APPLYING_UNIT
                self.state.current_unit_id = unit.id
                self._emit(
                    UnitDecisionRequested(self.state.current_phase_index, unit.id, unit.describe())
                )
                self.state.stage = Stage.AWAITING_UNIT_DECISION
                return self._suspend()
        return self._verify()

    def _apply_rest(self) -> Prompt | None:
        """Apply every pending unit of the phase in dependency waves."""
        self.state.stage = Stage.APPLYING_UNIT
        remaining = [u for u in self._phase().units if self._status(u) is UnitStatus.PENDING]

        while remaining:
            if self._abort_requested.is_set():
                return self._abort()
            pending_ids = {u.id for u in remaining}
            wave = [u for u in remaining if not (u.depends_on & pending_ids)]
            if not wave:
                wave = remaining[:1]
            outcomes = self._run_wave(wave)
            for outcome in outcomes:
                self._record(outcome)
            if any(o.error is not None for o in outcomes):
                return self._block_phase()
            if not all(o.started for o in outcomes):
                return self._abort()
            done = {u.id for u in wave}
            remaining = [u for u in remaining if u.id not in done]

        return self._verify()

    def _run_wave(self, wave: Sequence[ChangeUnit]) -> list[_Outcome]:
        if self.workers == 1 or len(wave) == 1:
            return [self._run_unit(unit) for unit in wave]
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            return list(pool.map(self._run_unit, wave))

    def _run_unit(self, unit: ChangeUnit) -> _Outcome:
        """Call the mutator for one unit; safe to run on a worker thread."""
        if self._abort_requested.is_set():
            return _Outcome(unit, started=False)
        with self._path_locks(unit.paths):
            try:
                self.mutator.apply(unit)
            except MutationError as exc:
                logger.warning("%s", exc)
                return _Outcome(unit, started=True, error=exc)
        return _Outcome(unit, started=True)

    def _record(self, outcome: _Outcome) -> None:
        """Fold one unit outcome into the state (on the controller thread)."""
        if not outcome.started:
            return
        index = self.state.current_phase_index
        if outcome.error is not None:
            self._set(outcome.unit.id, UnitStatus.FAILED)
            self.state.current_unit_id = outcome.unit.id
            self._emit(UnitFailed(index, outcome.unit.id, outcome.error.reason))
        else:
            self._set(outcome.unit.id, UnitStatus.APPLIED)
            self._emit(UnitApplied(index, outcome.unit.id))

    @contextmanager
    def _path_locks(self, paths: Sequence[str]) -> Iterator[None]:
        with self._locks_guard:
            locks = [self._locks.setdefault(p, threading.Lock()) for p in sorted(set(paths))]
        with ExitStack() as stack:
            for lock in locks:
                stack.enter_context(lock)
            yield

    def _block_phase(self) -> Prompt | None:
        blocked: list[str] = []
        for unit in self._phase().units:
            if self._status(unit) is UnitStatus.PENDING:
                self._set(unit.id, UnitStatus.BLOCKED)
                blocked.append(unit.id)
        if blocked:
            self._emit(UnitsBlocked(self.state.current_phase_index, tuple(blocked)))
        self.state.stage = Stage.AWAITING_BLOCKED_DECISION
        return self._suspend()

    def _settle_blocked(self, status: UnitStatus) -> list[str]:
        settled: list[str] = []
        for unit in self._phase().units:
            if self._status(unit) in (UnitStatus.PENDING, UnitStatus.BLOCKED):
                self._set(unit.id, status)
                settled.append(unit.id)
        return settled

    def _mark_phase_skipped(self) -> None:
        skipped = self._settle_blocked(UnitStatus.SKIPPED)
        index = self.state.current_phase_index
        if index not in self.state.skipped_phases:
            self.state.skipped_phases.append(index)
        self._emit(PhaseSkipped(index, tuple(skipped)))

    def _skip_phase(self) -> Prompt | None:
        self._mark_phase_skipped()
        return self._advance()

    def _verify(self) -> Prompt | None:
        if self._abort_requested.is_set():
            return self._abort()
        self.state.stage = Stage.VERIFYING
        self.state.current_unit_id = None
        if self.gate is None:
            result = VerificationResult(passed=True, exit_code=0)
        else:
            try:
                result = self.gate.verify()
            except VerificationTimeout as exc:
                result = VerificationResult.from_timeout(exc)

        self.state.last_verification = result.to_dict()
        self._emit(
            PhaseVerified(
                self.state.current_phase_index,
                result.passed,
                result.exit_code,
                result.duration_ms,
                result.timed_out,
            )
        )
        if not result.passed:
            self.state.stage = Stage.AWAITING_VERIFICATION_DECISION
            return self._suspend()

        self.state.stage = Stage.PHASE_COMPLETE
        if self.state.current_phase_index not in self.state.completed_phases:
            self.state.completed_phases.append(self.state.current_phase_index)
        return self._advance()

    def _advance(self) -> Prompt | None:
        self.state.current_phase_index += 1
        return self._enter_phase()

    def _complete(self) -> None:
        self.state.stage = Stage.COMPLETED
        self.state.current_unit_id = None
        self.state.current_phase_index = len(self.plan.phases)
        summary = summarize(self.plan, self.state)
        logger.info("Plan %s completed: %d applied", self.plan.id, summary.applied)
        self._emit(RunCompleted(summary))
        self._suspend()

    def _abort(self) -> None:
        index = min(self.state.current_phase_index, max(len(self.plan.phases) - 1, 0))
        aborted: list[str] = []
        for phase in self.plan.phases[index:]:
            for unit in phase.units:
                if self._status(unit) in (UnitStatus.PENDING, UnitStatus.BLOCKED):
                    self._set(unit.id, UnitStatus.ABORTED)
                    aborted.append(unit.id)
        self.state.stage = Stage.ABORTED
        self.state.current_unit_id = None
        logger.info("Plan %s aborted: %d units not applied", self.plan.id, len(aborted))
        self._emit(PhaseAborted(index, tuple(aborted)))
        self._emit(RunCompleted(summarize(self.plan, self.state)))
        self._suspend()
