"""Persist plans and execution state under ``.archconform/`` as JSON."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from typing import TYPE_CHECKING, Any

from archconform.errors import PersistenceError
from archconform.execution.state import ExecutionState
from archconform.planning.synthesizer import plan_id
from archconform.planning.units import Plan

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

STATE_DIR = ".archconform"
PLAN_FILE = "plan.json"
STATE_FILE = "state.json"


def plan_path(project_root: Path) -> Path:
    return project_root / STATE_DIR / PLAN_FILE


def state_path(project_root: Path) -> Path:
    return project_root / STATE_DIR / STATE_FILE


def _write_json_atomic(path: Path, data: dict[str, Any]) -> None:
    """Write *data* to a sibling temp file, then replace *path* with it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, ensure_ascii=False)
            fh.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def _read_json(path: Path) -> dict[str, Any]:
    if not path.is_file():
        msg = f"{path} not found"
        raise PersistenceError(msg)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        msg = f"Cannot read {path}: {exc}"
        raise PersistenceError(msg) from exc
    if not isinstance(data, dict):
        msg = f"{path} must hold a JSON object"
        raise PersistenceError(msg)
    return data


def save_plan(project_root: Path, plan: Plan) -> Path:
    path = plan_path(project_root)
    _write_json_atomic(path, plan.to_dict())
    logger.debug("Saved plan %s to %s", plan.id, path)
    return path


def load_plan(project_root: Path) -> Plan:
    path = plan_path(project_root)
    data = _read_json(path)
    try:
        plan = Plan.from_dict(data)
    except (KeyError, TypeError, ValueError) as exc:
        msg = f"Malformed plan in {path}: {exc}"
        raise PersistenceError(msg) from exc
    if plan_id(plan.phases) != plan.id:
        msg = f"{path} was modified after it was written (plan id mismatch)"
        raise PersistenceError(msg)
    return plan


def save_state(project_root: Path, state: ExecutionState) -> Path:
    path = state_path(project_root)
    _write_json_atomic(path, state.to_dict())
    logger.debug("Saved execution state (%s) to %s", state.stage.value, path)
    return path


def load_state(project_root: Path, plan: Plan | None = None) -> ExecutionState:
    """Load the saved state; with *plan*, check that the state belongs to it."""
    state = ExecutionState.from_dict(_read_json(state_path(project_root)))
    if plan is not None:
        if state.plan_id != plan.id:
            msg = f"Saved state belongs to plan {state.plan_id}, not {plan.id}"
            raise PersistenceError(msg)
        missing = sorted({u.id for u in plan.units()} - set(state.unit_status))
        if missing:
            msg = f"Saved state has no status for units {missing}"
            raise PersistenceError(msg)
    return state


def clear(project_root: Path) -> None:
    """Remove any saved plan and state."""
    for path in (plan_path(project_root), state_path(project_root)):
        if path.exists():
            path.unlink()
