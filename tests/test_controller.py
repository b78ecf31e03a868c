"""Tests for archconform.execution.controller: the phased, resumable run state machine."""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING

import pytest

from archconform.errors import (
    InvalidDecisionError,
    InvalidTransitionError,
    MutationError,
    PersistenceError,
    VerificationTimeout,
)
from archconform.execution.controller import ExecutionController
from archconform.execution.events import (
    EventLog,
    PhaseAborted,
    PhaseSkipped,
    RunCompleted,
    UnitFailed,
    UnitsBlocked,
)
from archconform.execution.mutator import FilesystemMutator
from archconform.execution.state import Decision, ExecutionState, Stage, UnitStatus
from archconform.execution.summary import summarize
from archconform.execution.verification import CommandResult, VerificationGate
from archconform.planning.synthesizer import plan_id
from archconform.planning.units import ChangeKind, ChangeUnit, Phase, Plan

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path


def _plan(*phase_sizes: int, deps: dict[str, tuple[str, ...]] | None = None) -> Plan:
    """Plan with ``phase_sizes[i]`` units in phase i, ids ``u01``, ``u02``, ... in order."""
    deps = deps or {}
    phases: list[Phase] = []
    counter = 0
    for tier, size in enumerate(phase_sizes, start=1):
        units = []
        for _ in range(size):
            counter += 1
            uid = f"u{counter:02d}"
            units.append(
                ChangeUnit(
                    id=uid,
                    kind=ChangeKind.MODIFY,
                    target_path=f"f{counter:02d}.py",
                    depends_on=frozenset(deps.get(uid, ())),
                )
            )
        phases.append(Phase(label=f"Phase {tier}", priority_tier=tier, units=tuple(units)))
    return Plan(id=plan_id(phases), phases=tuple(phases))


class RecordingMutator:
    """Records applied unit ids; raises for ids in ``fail``."""

    def __init__(
        self,
        fail: set[str] | None = None,
        on_apply: Callable[[ChangeUnit], None] | None = None,
    ) -> None:
        self.fail = fail or set()
        self.on_apply = on_apply
        self.applied: list[str] = []
        self._lock = threading.Lock()

    def apply(self, unit: ChangeUnit, new_content: str | None = None) -> None:
        if self.on_apply is not None:
            self.on_apply(unit)
        if unit.id in self.fail:
            raise MutationError(unit.id, unit.target_path, "boom")
        with self._lock:
            self.applied.append(unit.id)


class ScriptedRunner:
    """Command runner returning the scripted exit codes in order; ``None`` times out."""

    def __init__(self, *exit_codes: int | None) -> None:
        self.exit_codes = list(exit_codes)
        self.calls = 0

    def run(self, command: str, timeout: float | None) -> CommandResult:
        code = self.exit_codes[min(self.calls, len(self.exit_codes) - 1)]
        self.calls += 1
        if code is None:
            raise VerificationTimeout(command, timeout or 1.0, 1000.0)
        return CommandResult(code, "", "failed" if code else "", 5.0)


def _controller(
    plan: Plan,
    mutator: RecordingMutator | None = None,
    **kwargs: object,
) -> tuple[ExecutionController, RecordingMutator, EventLog]:
    mutator = mutator or RecordingMutator()
    log = EventLog()
    controller = ExecutionController(plan, mutator, sink=log, **kwargs)  # type: ignore[arg-type]
    return controller, mutator, log


def _summary(log: EventLog) -> dict[str, object]:
    (event,) = log.of_type(RunCompleted)
    assert isinstance(event, RunCompleted)
    return event.summary.to_dict()


# ---------------------------------------------------------------------------
# Happy paths
# ---------------------------------------------------------------------------


class TestRun:
    def test_unit_by_unit(self) -> None:
        controller, mutator, log = _controller(_plan(2, 1))

        prompt = controller.start()
        assert prompt is not None
        assert prompt.stage is Stage.AWAITING_PHASE_DECISION
        assert prompt.options == (Decision.CONTINUE, Decision.SKIP_PHASE, Decision.ABORT)

        prompt = controller.decide(Decision.CONTINUE)
        assert prompt is not None
        assert (prompt.stage, prompt.unit_id) == (Stage.AWAITING_UNIT_DECISION, "u01")
        prompt = controller.decide("apply")
        assert prompt is not None and prompt.unit_id == "u02"
        prompt = controller.decide("apply")
        assert prompt is not None
        assert (prompt.stage, prompt.phase_index) == (Stage.AWAITING_PHASE_DECISION, 1)
        controller.decide("continue")
        assert controller.decide("apply") is None

        assert controller.finished
        assert controller.stage is Stage.COMPLETED
        assert mutator.applied == ["u01", "u02", "u03"]
        assert log.kinds() == [
            "phase_started",
            "unit_decision_requested",
            "unit_applied",
            "unit_decision_requested",
            "unit_applied",
            "phase_verified",
            "phase_started",
            "unit_decision_requested",
            "unit_applied",
            "phase_verified",
            "run_completed",
        ]
        summary = _summary(log)
        assert summary["outcome"] == "completed"
        assert summary["applied"] == 3
        assert summary["phases_completed"] == 2

    def test_skip_unit(self) -> None:
        controller, mutator, log = _controller(_plan(2))
        controller.start()
        controller.decide("continue")
        controller.decide("skip")
        controller.decide("apply")

        assert mutator.applied == ["u02"]
        assert controller.state.status("u01") is UnitStatus.SKIPPED
        assert "unit_skipped" in log.kinds()

    def test_skip_phase(self) -> None:
        controller, mutator, log = _controller(_plan(2, 1))
        controller.start()

        prompt = controller.decide("skip_phase")

        assert prompt is not None and prompt.phase_index == 1
        assert mutator.applied == []
        assert controller.state.ids_with(UnitStatus.SKIPPED) == ["u01", "u02"]
        assert controller.state.skipped_phases == [0]
        (skipped,) = log.of_type(PhaseSkipped)
        assert isinstance(skipped, PhaseSkipped)
        assert skipped.unit_ids == ("u01", "u02")

    def test_apply_all_respects_dependencies(self) -> None:
        plan = _plan(4, deps={"u02": ("u01",), "u04": ("u02",)})
        controller, mutator, _ = _controller(plan, workers=4)
        controller.start()
        controller.decide("continue")

        assert controller.decide("apply_all") is None

        order = mutator.applied
        assert sorted(order) == ["u01", "u02", "u03", "u04"]
        assert order.index("u01") < order.index("u02") < order.index("u04")

    def test_apply_all_serializes_units_sharing_a_path(self) -> None:
        units = (
            ChangeUnit("u01", ChangeKind.MODIFY, "a.py"),
            ChangeUnit("u02", ChangeKind.RENAME, "b.py", new_path="a.py"),
        )
        phases = (Phase(label="Phase 1", priority_tier=1, units=units),)
        guard = threading.Lock()
        active: dict[str, int] = {}
        peak: dict[str, int] = {}

        def track(unit: ChangeUnit) -> None:
            with guard:
                for path in unit.paths:
                    active[path] = active.get(path, 0) + 1
                    peak[path] = max(peak.get(path, 0), active[path])
            time.sleep(0.05)
            with guard:
                for path in unit.paths:
                    active[path] -= 1

        controller, mutator, _ = _controller(
            Plan(id=plan_id(phases), phases=phases), RecordingMutator(on_apply=track), workers=4
        )
        controller.start()
        controller.decide("continue")

        assert controller.decide("apply_all") is None

        assert sorted(mutator.applied) == ["u01", "u02"]
        assert peak["a.py"] == 1

    def test_empty_plan_completes_immediately(self) -> None:
        plan = Plan(id=plan_id(()), phases=())
        controller, _, log = _controller(plan)

        assert controller.start() is None
        assert controller.stage is Stage.COMPLETED
        assert log.kinds() == ["run_completed"]

    def test_start_from_later_phase(self) -> None:
        controller, mutator, log = _controller(_plan(1, 1, 1))

        prompt = controller.start(from_phase=2)

        assert prompt is not None and prompt.phase_index == 2
        assert controller.state.skipped_phases == [0, 1]
        assert log.kinds()[:2] == ["phase_skipped", "phase_skipped"]
        assert controller.state.status("u01") is UnitStatus.SKIPPED

    def test_on_suspend_sees_every_suspension(self) -> None:
        seen: list[Stage] = []
        controller, _, _ = _controller(_plan(1), on_suspend=lambda s: seen.append(s.stage))
        controller.start()
        controller.decide("continue")
        controller.decide("apply")

        assert seen == [
            Stage.AWAITING_PHASE_DECISION,
            Stage.AWAITING_UNIT_DECISION,
            Stage.COMPLETED,
        ]


# ---------------------------------------------------------------------------
# Abort
# ---------------------------------------------------------------------------


class TestAbort:
    def test_abort_at_phase_prompt(self) -> None:
        controller, _, log = _controller(_plan(1, 2))
        controller.start()
        controller.decide("continue")
        controller.decide("apply")

        assert controller.decide("abort") is None

        assert controller.stage is Stage.ABORTED
        assert controller.state.status("u01") is UnitStatus.APPLIED
        assert controller.state.ids_with(UnitStatus.ABORTED) == ["u02", "u03"]
        (aborted,) = log.of_type(PhaseAborted)
        assert isinstance(aborted, PhaseAborted)
        assert aborted.unit_ids == ("u02", "u03")
        assert _summary(log)["outcome"] == "aborted"

    def test_abort_mid_phase_with_apply_all(self) -> None:
        plan = _plan(2, 5, 2)
        controller_ref: list[ExecutionController] = []

        def abort_on_third(unit: ChangeUnit) -> None:
            if unit.id == "u05":
                controller_ref[0].request_abort()

        controller, mutator, log = _controller(plan, RecordingMutator(on_apply=abort_on_third))
        controller_ref.append(controller)
        controller.start()
        controller.decide("continue")
        controller.decide("apply_all")
        controller.decide("continue")

        assert controller.decide("apply_all") is None

        state = controller.state
        assert [state.status(u) for u in ("u03", "u04", "u05")] == [UnitStatus.APPLIED] * 3
        assert state.ids_with(UnitStatus.ABORTED) == ["u06", "u07", "u08", "u09"]
        assert mutator.applied == ["u01", "u02", "u03", "u04", "u05"]
        summary = _summary(log)
        assert summary["applied"] == 5
        assert summary["aborted"] == 4
        assert summary["pending"] == 0

    def test_abort_mid_phase_unit_by_unit(self) -> None:
        plan = _plan(2, 5, 2)
        controller_ref: list[ExecutionController] = []

        def abort_on_third(unit: ChangeUnit) -> None:
            if unit.id == "u05":
                controller_ref[0].request_abort()

        controller, _, _ = _controller(plan, RecordingMutator(on_apply=abort_on_third))
        controller_ref.append(controller)
        controller.start()
        controller.decide("continue")
        controller.decide("apply_all")
        controller.decide("continue")
        controller.decide("apply")
        controller.decide("apply")

        assert controller.decide("apply") is None
        assert controller.state.ids_with(UnitStatus.APPLIED) == ["u01", "u02", "u03", "u04", "u05"]
        assert controller.state.ids_with(UnitStatus.ABORTED) == ["u06", "u07", "u08", "u09"]

    def test_failing_unit_during_abort_stays_failed(self) -> None:
        plan = _plan(3)
        controller_ref: list[ExecutionController] = []

        def abort_now(unit: ChangeUnit) -> None:
            if unit.id == "u02":
                controller_ref[0].request_abort()

        mutator = RecordingMutator(fail={"u02"}, on_apply=abort_now)
        controller, _, _ = _controller(plan, mutator)
        controller_ref.append(controller)
        controller.start()
        controller.decide("continue")
        controller.decide("apply")
        controller.decide("apply")

        assert controller.state.status("u02") is UnitStatus.FAILED
        assert controller.stage is Stage.AWAITING_BLOCKED_DECISION
        assert controller.decide("continue") is None
        assert controller.state.status("u03") is UnitStatus.ABORTED

    def test_abort_request_while_suspended(self) -> None:
        controller, mutator, _ = _controller(_plan(2))
        controller.start()
        controller.request_abort()

        assert controller.decide("continue") is None
        assert controller.stage is Stage.ABORTED
        assert mutator.applied == []

    def test_statuses_never_revert_after_abort(self) -> None:
        controller, _, _ = _controller(_plan(1, 1))
        controller.start()
        controller.decide("continue")
        controller.decide("apply")
        controller.decide("abort")

        with pytest.raises(InvalidDecisionError):
            controller.decide("continue")
        assert controller.resume() is None
        with pytest.raises(InvalidTransitionError):
            controller.state.set_status("u01", UnitStatus.PENDING)
        with pytest.raises(InvalidTransitionError):
            controller.state.set_status("u02", UnitStatus.APPLIED)


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


class TestVerification:
    def test_failure_pauses_and_retry_does_not_reapply(self) -> None:
        runner = ScriptedRunner(1, 0)
        gate = VerificationGate("make test", runner=runner)
        controller, mutator, log = _controller(_plan(1, 1), gate=gate)
        controller.start()
        controller.decide("continue")

        prompt = controller.decide("apply")

        assert prompt is not None
        assert prompt.stage is Stage.AWAITING_VERIFICATION_DECISION
        assert prompt.options == (Decision.RETRY, Decision.SKIP_PHASE, Decision.ABORT)
        assert controller.state.last_verification is not None
        assert controller.state.last_verification["exit_code"] == 1
        assert _outcome_of(controller) == "blocked"

        prompt = controller.decide("retry")

        assert runner.calls == 2
        assert mutator.applied == ["u01"]
        assert prompt is not None
        assert (prompt.stage, prompt.phase_index) == (Stage.AWAITING_PHASE_DECISION, 1)
        assert controller.state.completed_phases == [0]
        assert log.kinds().count("phase_verified") == 2

    def test_skip_phase_after_failed_verification(self) -> None:
        gate = VerificationGate("make test", runner=ScriptedRunner(2))
        controller, _, _ = _controller(_plan(1), gate=gate)
        controller.start()
        controller.decide("continue")
        controller.decide("apply")

        assert controller.decide("skip_phase") is None
        assert controller.state.status("u01") is UnitStatus.APPLIED
        assert controller.state.skipped_phases == [0]
        assert controller.state.completed_phases == []

    def test_timeout_is_a_failed_verification(self) -> None:
        gate = VerificationGate("sleep 100", runner=ScriptedRunner(None), timeout=0.5)
        controller, _, _ = _controller(_plan(1), gate=gate)
        controller.start()
        controller.decide("continue")

        prompt = controller.decide("apply")

        assert prompt is not None
        assert prompt.stage is Stage.AWAITING_VERIFICATION_DECISION
        assert controller.state.last_verification is not None
        assert controller.state.last_verification["timed_out"] is True


def _outcome_of(controller: ExecutionController) -> str:
    return summarize(controller.plan, controller.state).outcome


# ---------------------------------------------------------------------------
# Mutation failures
# ---------------------------------------------------------------------------


class TestBlocking:
    def test_failure_blocks_rest_of_phase(self) -> None:
        controller, _, log = _controller(_plan(3), RecordingMutator(fail={"u02"}))
        controller.start()
        controller.decide("continue")
        controller.decide("apply")

        prompt = controller.decide("apply")

        assert prompt is not None
        assert prompt.stage is Stage.AWAITING_BLOCKED_DECISION
        assert controller.state.status("u02") is UnitStatus.FAILED
        assert controller.state.status("u03") is UnitStatus.BLOCKED
        (blocked,) = log.of_type(UnitsBlocked)
        assert isinstance(blocked, UnitsBlocked)
        assert blocked.unit_ids == ("u03",)

    def test_continue_skips_blocked_units_then_verifies(self) -> None:
        controller, _, log = _controller(_plan(3), RecordingMutator(fail={"u02"}))
        controller.start()
        controller.decide("continue")
        controller.decide("apply")
        controller.decide("apply")

        assert controller.decide("continue") is None

        summary = _summary(log)
        assert (summary["applied"], summary["failed"], summary["skipped"]) == (1, 1, 1)
        assert controller.state.completed_phases == [0]

    def test_apply_all_failure_blocks(self) -> None:
        plan = _plan(3, deps={"u02": ("u01",), "u03": ("u02",)})
        controller, mutator, _ = _controller(plan, RecordingMutator(fail={"u02"}), workers=2)
        controller.start()
        controller.decide("continue")

        prompt = controller.decide("apply_all")

        assert prompt is not None
        assert prompt.stage is Stage.AWAITING_BLOCKED_DECISION
        assert mutator.applied == ["u01"]
        assert controller.state.status("u03") is UnitStatus.BLOCKED

    def test_filesystem_error_fails_the_unit(self, tmp_path: Path) -> None:
        (tmp_path / "pkg").write_text("not a directory")
        units = (
            ChangeUnit("u01", ChangeKind.CREATE, "pkg/port.py", content="X = 1\n"),
            ChangeUnit("u02", ChangeKind.CREATE, "other.py", content=""),
        )
        phases = (Phase(label="Phase 1", priority_tier=1, units=units),)
        log = EventLog()
        controller = ExecutionController(
            Plan(id=plan_id(phases), phases=phases), FilesystemMutator(tmp_path), sink=log
        )
        controller.start()
        controller.decide("continue")

        prompt = controller.decide("apply")

        assert prompt is not None
        assert prompt.stage is Stage.AWAITING_BLOCKED_DECISION
        assert controller.state.status("u01") is UnitStatus.FAILED
        assert controller.state.status("u02") is UnitStatus.BLOCKED
        (failed,) = log.of_type(UnitFailed)
        assert isinstance(failed, UnitFailed)
        assert failed.unit_id == "u01"
        assert not (tmp_path / "other.py").exists()


# ---------------------------------------------------------------------------
# Decisions and resumption
# ---------------------------------------------------------------------------


class TestDecisions:
    def test_decide_before_start(self) -> None:
        controller, _, _ = _controller(_plan(1))
        with pytest.raises(InvalidDecisionError):
            controller.decide("continue")

    def test_unknown_decision(self) -> None:
        controller, _, _ = _controller(_plan(1))
        controller.start()
        with pytest.raises(InvalidDecisionError, match="Unknown decision 'maybe'"):
            controller.decide("maybe")

    def test_decision_not_offered(self) -> None:
        controller, _, _ = _controller(_plan(1))
        controller.start()
        with pytest.raises(InvalidDecisionError, match="not available"):
            controller.decide(Decision.RETRY)

    def test_start_twice(self) -> None:
        controller, _, _ = _controller(_plan(1))
        controller.start()
        with pytest.raises(InvalidDecisionError, match="already started"):
            controller.start()

    def test_state_for_another_plan(self) -> None:
        state = ExecutionState.for_plan(_plan(2))
        with pytest.raises(PersistenceError):
            ExecutionController(_plan(3), RecordingMutator(), state=state)


class TestResume:
    @staticmethod
    def _drive(controller: ExecutionController, decisions: list[str]) -> None:
        for decision in decisions:
            controller.decide(decision)

    def test_resumed_run_matches_uninterrupted_run(self) -> None:
        plan = _plan(2, 2)
        decisions = ["continue", "apply", "skip", "continue", "apply", "apply"]

        straight, straight_mutator, _ = _controller(plan)
        straight.start()
        self._drive(straight, decisions)

        first, first_mutator, _ = _controller(plan)
        first.start()
        self._drive(first, decisions[:2])
        saved = first.state.to_dict()

        second, second_mutator, log = _controller(plan, state=ExecutionState.from_dict(saved))
        prompt = second.resume()

        assert log.events == []
        assert prompt is not None
        assert (prompt.stage, prompt.unit_id) == (Stage.AWAITING_UNIT_DECISION, "u02")
        self._drive(second, decisions[2:])

        assert second.state.unit_status == straight.state.unit_status
        assert second.state.completed_phases == straight.state.completed_phases
        assert first_mutator.applied + second_mutator.applied == straight_mutator.applied

    def test_resume_idle_starts(self) -> None:
        controller, _, log = _controller(_plan(1))
        prompt = controller.resume()
        assert prompt is not None
        assert log.kinds() == ["phase_started"]

    def test_resume_from_later_phase(self) -> None:
        controller, _, _ = _controller(_plan(1, 1, 1))
        controller.start()

        prompt = controller.resume(from_phase=2)

        assert prompt is not None and prompt.phase_index == 2
        assert controller.state.skipped_phases == [0, 1]

    def test_resume_from_transient_stage(self) -> None:
        plan = _plan(1)
        state = ExecutionState.for_plan(plan)
        state.stage = Stage.VERIFYING
        state.set_status("u01", UnitStatus.APPLIED)
        controller, _, _ = _controller(plan, state=state)

        assert controller.resume() is None
        assert controller.stage is Stage.COMPLETED
        assert controller.state.completed_phases == [0]


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


class TestExecutionState:
    def test_round_trip(self) -> None:
        state = ExecutionState.for_plan(_plan(2))
        state.set_status("u01", UnitStatus.APPLIED)
        state.stage = Stage.AWAITING_UNIT_DECISION
        state.current_unit_id = "u02"
        assert ExecutionState.from_dict(state.to_dict()) == state

    def test_same_status_is_a_no_op(self) -> None:
        state = ExecutionState.for_plan(_plan(1))
        state.set_status("u01", UnitStatus.APPLIED)
        state.set_status("u01", UnitStatus.APPLIED)
        assert state.count(UnitStatus.APPLIED) == 1

    def test_blocked_may_only_settle_as_skipped_or_aborted(self) -> None:
        state = ExecutionState.for_plan(_plan(1))
        state.set_status("u01", UnitStatus.BLOCKED)
        with pytest.raises(InvalidTransitionError):
            state.set_status("u01", UnitStatus.APPLIED)
        state.set_status("u01", UnitStatus.ABORTED)
        assert state.status("u01").is_terminal

    def test_wrong_version(self) -> None:
        data = ExecutionState.for_plan(_plan(1)).to_dict()
        data["version"] = 99
        with pytest.raises(PersistenceError, match="version 99"):
            ExecutionState.from_dict(data)

    def test_malformed(self) -> None:
        data = ExecutionState.for_plan(_plan(1)).to_dict()
        data["unit_status"] = {"u01": "exploded"}
        with pytest.raises(PersistenceError, match="Malformed"):
            ExecutionState.from_dict(data)


# ---------------------------------------------------------------------------
# Event serialization
# ---------------------------------------------------------------------------


class TestEvents:
    def test_log_serializes_in_order(self) -> None:
        controller, _, log = _controller(_plan(1))
        controller.start()
        controller.decide("continue")
        controller.decide("apply_all")

        dicts = log.to_dicts()

        assert [d["kind"] for d in dicts] == [
            "phase_started",
            "unit_decision_requested",
            "unit_applied",
            "phase_verified",
            "run_completed",
        ]
        assert dicts[0] == {
            "kind": "phase_started",
            "phase_index": 0,
            "label": "Phase 1",
            "unit_ids": ("u01",),
        }
        assert dicts[-1]["summary"]["outcome"] == "completed"

    def test_prompt_to_dict(self) -> None:
        controller, _, _ = _controller(_plan(1))
        prompt = controller.start()
        assert prompt is not None
        assert prompt.to_dict() == {
            "stage": "awaiting_phase_decision",
            "phase_index": 0,
            "unit_id": None,
            "options": ["continue", "skip_phase", "abort"],
        }
