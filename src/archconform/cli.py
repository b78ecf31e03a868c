"""archconform CLI entry point."""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TYPE_CHECKING, NoReturn

import click

from archconform import __version__
from archconform.errors import ArchConformError, PlanCycleError

if TYPE_CHECKING:
    from archconform.config import EngineConfig
    from archconform.execution.controller import ExecutionController, Prompt
    from archconform.model.source_model import ModuleGraph
    from archconform.planning.units import Plan
    from archconform.rules.engine import DetectionResult
    from archconform.rules.registry import RuleRegistry

EXIT_OK = 0
EXIT_VIOLATIONS = 1
EXIT_ABORTED = 2
EXIT_BLOCKED = 3
EXIT_ERROR = 4

_PROJECT_OPTION = click.option(
    "--project",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Project root (default: current directory).",
)
_CATEGORY_OPTION = click.option(
    "--category",
    "categories",
    multiple=True,
    help="Only evaluate rules of this category (repeatable).",
)
_WORKERS_OPTION = click.option(
    "--workers",
    type=click.IntRange(min=1),
    default=None,
    help="Worker threads for detection and apply-all (default: from config.yml).",
)
_PATHS_ARGUMENT = click.argument("paths", nargs=-1)


@click.group()
@click.version_option(version=__version__, prog_name="archconform")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Minimal output (errors only).")
@click.pass_context
def main(ctx: click.Context, *, verbose: bool, quiet: bool) -> None:
    """archconform - architectural conformance checks and phased refactoring."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    level = logging.DEBUG if verbose else logging.ERROR if quiet else logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s", force=True)


# ---------------------------------------------------------------------------
# Shared analysis pipeline
# ---------------------------------------------------------------------------


@dataclass
class _Analysis:
    config: EngineConfig
    registry: RuleRegistry
    graph: ModuleGraph
    result: DetectionResult


def _fail(exc: Exception) -> NoReturn:
    click.echo(f"Error: {exc}", err=True)
    sys.exit(EXIT_ERROR)


def _load_config(project_root: Path, workers: int | None) -> EngineConfig:
    from archconform.config import load_config

    config = load_config(project_root)
    if workers is not None:
        config = replace(config, workers=workers)
    return config


def _analyze(
    project_root: Path,
    paths: tuple[str, ...],
    categories: tuple[str, ...],
    workers: int | None,
) -> _Analysis:
    from archconform.model.source_model import build_model
    from archconform.rules.engine import detect

    config = _load_config(project_root, workers)
    registry = config.registry(project_root)

    wanted = categories or config.categories
    rules = registry.filter(categories=wanted or None)
    if wanted and not rules:
        msg = f"No rules in categories {list(wanted)}; known: {registry.categories()}"
        raise click.UsageError(msg)

    graph = build_model(
        project_root,
        config.include,
        config.exclude,
        classifier=config.classifier(),
        source_roots=config.source_roots,
    )
    result = detect(
        graph,
        rules,
        config.sampling,
        scope=list(paths) or None,
        workers=config.workers,
    )
    return _Analysis(config=config, registry=registry, graph=graph, result=result)


def _actionable(result: DetectionResult) -> bool:
    from archconform.rules.types import INTERNAL_CATEGORY

    return any(v.category != INTERNAL_CATEGORY for v in result.violations)


def _resolve_format(fmt: str | None) -> str:
    if fmt is None:
        return "rich" if sys.stdout.isatty() else "porcelain"
    return fmt


_FORMAT_OPTION = click.option(
    "--format",
    "fmt",
    type=click.Choice(["rich", "json", "porcelain"]),
    default=None,
    help="Output format (default: rich if TTY, porcelain if piped).",
)


# ---------------------------------------------------------------------------
# check / health / plan
# ---------------------------------------------------------------------------


@main.command()
@_PATHS_ARGUMENT
@_CATEGORY_OPTION
@_FORMAT_OPTION
@_WORKERS_OPTION
@_PROJECT_OPTION
def check(
    paths: tuple[str, ...],
    *,
    categories: tuple[str, ...],
    fmt: str | None,
    workers: int | None,
    project: Path | None,
) -> None:
    """Detect architecture violations under PATHS (default: whole project).

    Exit codes: 0 = clean, 1 = violations found, 4 = configuration error.
    """
    from archconform.health import health
    from archconform.report import (
        format_violations_json,
        format_violations_porcelain,
        format_violations_rich,
    )

    project_root = project or Path.cwd()
    try:
        analysis = _analyze(project_root, paths, categories, workers)
    except ArchConformError as exc:
        _fail(exc)

    fmt = _resolve_format(fmt)
    result = analysis.result
    if fmt == "json":
        output = format_violations_json(result, health(result.violations))
    elif fmt == "porcelain":
        output = format_violations_porcelain(result)
    else:
        output = format_violations_rich(result)
    if output:
        click.echo(output)

    if _actionable(result):
        sys.exit(EXIT_VIOLATIONS)


@main.command("health")
@_PATHS_ARGUMENT
@_CATEGORY_OPTION
@click.option("--by-directory", is_flag=True, help="Also score every directory.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@_WORKERS_OPTION
@_PROJECT_OPTION
def health_cmd(
    paths: tuple[str, ...],
    *,
    categories: tuple[str, ...],
    by_directory: bool,
    as_json: bool,
    workers: int | None,
    project: Path | None,
) -> None:
    """Show the 0-10 health score of PATHS (default: whole project)."""
    import json

    from archconform.health import format_health, health, health_by_directory

    project_root = project or Path.cwd()
    try:
        analysis = _analyze(project_root, paths, categories, workers)
    except ArchConformError as exc:
        _fail(exc)

    violations = analysis.result.violations
    scope = paths[0] if len(paths) == 1 else ""
    overall = health(violations, scope)
    directories = health_by_directory(violations) if by_directory else None

    if as_json:
        payload: dict[str, object] = {"health": overall.to_dict()}
        if directories is not None:
            payload["directories"] = [d.to_dict() for d in directories]
        click.echo(json.dumps(payload, indent=2))
    else:
        click.echo(format_health(overall, directories), nl=False)


def _synthesize(project_root: Path, analysis: _Analysis) -> Plan:
    """Synthesize a plan and save it, dropping any state saved for an older plan."""
    from archconform.execution.persistence import clear, save_plan
    from archconform.planning.synthesizer import synthesize

    plan = synthesize(analysis.result.violations, analysis.registry, graph=analysis.graph)
    clear(project_root)
    save_plan(project_root, plan)
    return plan


@main.command()
@_PATHS_ARGUMENT
@_CATEGORY_OPTION
@_FORMAT_OPTION
@_WORKERS_OPTION
@_PROJECT_OPTION
def plan(
    paths: tuple[str, ...],
    *,
    categories: tuple[str, ...],
    fmt: str | None,
    workers: int | None,
    project: Path | None,
) -> None:
    """Build and save a phased refactoring plan without executing it.

    Exit codes: 0 = nothing to fix, 1 = plan produced, 4 = configuration or plan error.
    """
    from archconform.report import format_plan_json, format_plan_porcelain, format_plan_rich

    project_root = project or Path.cwd()
    try:
        analysis = _analyze(project_root, paths, categories, workers)
        refactor_plan = _synthesize(project_root, analysis)
    except PlanCycleError as exc:
        click.echo(f"Error: {exc}", err=True)
        click.echo(f"Cycle: {', '.join(exc.cycle)}", err=True)
        sys.exit(EXIT_ERROR)
    except ArchConformError as exc:
        _fail(exc)

    formatters = {
        "rich": format_plan_rich,
        "json": format_plan_json,
        "porcelain": format_plan_porcelain,
    }
    output = formatters[_resolve_format(fmt)](refactor_plan)
    if output:
        click.echo(output)

    if _actionable(analysis.result):
        sys.exit(EXIT_VIOLATIONS)


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------

_PROMPT_TEXT = {
    "awaiting_phase_decision": "Start this phase?",
    "awaiting_unit_decision": "Apply this unit?",
    "awaiting_verification_decision": "Verification failed. Next step?",
    "awaiting_blocked_decision": "A unit failed and the rest of the phase is blocked. Next step?",
}


def _ask(prompt: Prompt) -> str:
    choices = [o.value for o in prompt.options]
    try:
        answer: str = click.prompt(
            _PROMPT_TEXT[prompt.stage.value],
            type=click.Choice(choices),
            default=choices[0],
        )
    except click.Abort:
        return "abort"
    return answer


def _auto_decision(prompt: Prompt, *, resumed: bool = False) -> str | None:
    """Decision taken under ``--yes``; ``None`` stops and leaves the run suspended.

    The first prompt of a resumed run retries a failed verification and
    settles blocked units, since resuming means the problem was fixed.
    """
    stage = prompt.stage.value
    if stage == "awaiting_phase_decision":
        return "continue"
    if stage == "awaiting_unit_decision":
        return "apply_all"
    if resumed and stage == "awaiting_verification_decision":
        return "retry"
    if resumed and stage == "awaiting_blocked_decision":
        return "continue"
    return None


def _drive(
    controller: ExecutionController,
    prompt: Prompt | None,
    *,
    yes: bool,
    resumed: bool = False,
) -> int:
    from archconform.execution.state import Stage

    while prompt is not None:
        decision = _auto_decision(prompt, resumed=resumed) if yes else _ask(prompt)
        resumed = False
        if decision is None:
            click.echo(
                "Run suspended; fix the problem and resume with --resume-phase "
                f"{prompt.phase_index + 1}.",
                err=True,
            )
            return EXIT_BLOCKED
        prompt = controller.decide(decision)

    if controller.stage is Stage.ABORTED:
        return EXIT_ABORTED
    return EXIT_OK


@main.command()
@_PATHS_ARGUMENT
@_CATEGORY_OPTION
@click.option("--dry-run", is_flag=True, help="Only produce and show the plan.")
@click.option(
    "--resume-phase",
    type=click.IntRange(min=1),
    default=None,
    help="Resume the saved run at phase N (1-based).",
)
@click.option("--yes", "-y", is_flag=True, help="Apply every unit without prompting.")
@click.option("--verify-cmd", default=None, help="Build/test command run after each phase.")
@click.option(
    "--timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Verification timeout in seconds (must be greater than 0).",
)
@_WORKERS_OPTION
@_PROJECT_OPTION
def run(
    paths: tuple[str, ...],
    *,
    categories: tuple[str, ...],
    dry_run: bool,
    resume_phase: int | None,
    yes: bool,
    verify_cmd: str | None,
    timeout: float | None,
    workers: int | None,
    project: Path | None,
) -> None:
    """Detect, plan, and apply fixes phase by phase with confirmation.

    Exit codes: 0 = clean or completed, 1 = violations not executed (--dry-run),
    2 = aborted, 3 = blocked by verification or a failed unit,
    4 = configuration or plan error.
    """
    from archconform.execution.controller import ExecutionController
    from archconform.execution.mutator import EditorMutator, FilesystemMutator
    from archconform.execution.persistence import (
        load_plan,
        load_state,
        save_state,
        state_path,
    )
    from archconform.execution.verification import SubprocessRunner, VerificationGate
    from archconform.report import RichProgressSink, format_plan_rich

    project_root = project or Path.cwd()
    resuming = resume_phase is not None and state_path(project_root).is_file()

    try:
        if resuming:
            config = _load_config(project_root, workers)
            refactor_plan = load_plan(project_root)
            state = load_state(project_root, refactor_plan)
        else:
            analysis = _analyze(project_root, paths, categories, workers)
            config = analysis.config
            refactor_plan = _synthesize(project_root, analysis)
            state = None
            if not _actionable(analysis.result):
                click.echo("✓ No violations found")
                sys.exit(EXIT_OK)
    except PlanCycleError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(EXIT_ERROR)
    except ArchConformError as exc:
        _fail(exc)

    if dry_run or refactor_plan.is_empty:
        click.echo(format_plan_rich(refactor_plan), nl=False)
        if refactor_plan.is_empty:
            click.echo("Violations found, but no rule offers a fix.")
        sys.exit(EXIT_VIOLATIONS)

    gate = VerificationGate(
        verify_cmd if verify_cmd is not None else config.verify_command,
        runner=SubprocessRunner(project_root),
        timeout=timeout if timeout is not None else config.verify_timeout,
    )
    mutator = FilesystemMutator(project_root, annotate=True) if yes else EditorMutator(project_root)
    controller = ExecutionController(
        refactor_plan,
        mutator,
        gate=gate,
        sink=RichProgressSink(refactor_plan),
        state=state,
        workers=config.workers,
        on_suspend=lambda s: save_state(project_root, s),
    )

    from_phase = resume_phase - 1 if resume_phase is not None else 0
    try:
        prompt = controller.resume(from_phase) if resuming else controller.start(from_phase)
        code = _drive(controller, prompt, yes=yes, resumed=resuming)
    except ArchConformError as exc:
        _fail(exc)
    sys.exit(code)


# ---------------------------------------------------------------------------
# init
# ---------------------------------------------------------------------------


@main.command()
@_PROJECT_OPTION
def init(*, project: Path | None) -> None:
    """Write a starter .archconform/config.yml."""
    from archconform.config import DEFAULT_CONFIG_YAML, config_path

    project_root = project or Path.cwd()
    path = config_path(project_root)
    if path.exists():
        click.echo(f"Config already exists: {path}")
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(DEFAULT_CONFIG_YAML, encoding="utf-8")
    click.echo(f"Config: {path}")
