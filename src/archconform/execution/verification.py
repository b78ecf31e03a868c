"""Verification gate: run the project's build/test command between phases."""

from __future__ import annotations

import logging
import shlex
import subprocess
import time
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, Protocol

from archconform.errors import VerificationTimeout

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: float


class CommandRunner(Protocol):
    def run(self, command: str, timeout: float | None) -> CommandResult:
        """Run *command*; raise :class:`VerificationTimeout` past *timeout* seconds."""
        ...


class SubprocessRunner:
    """Runs commands with :func:`subprocess.run` in *cwd*, without a shell."""

    def __init__(self, cwd: Path | None = None) -> None:
        self.cwd = cwd

    def run(self, command: str, timeout: float | None) -> CommandResult:
        start = time.monotonic()
        try:
            result = subprocess.run(  # noqa: S603
                shlex.split(command),
                cwd=str(self.cwd) if self.cwd is not None else None,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            duration = (time.monotonic() - start) * 1000
            raise VerificationTimeout(command, timeout or 0.0, duration) from exc
        except FileNotFoundError as exc:
            duration = (time.monotonic() - start) * 1000
            return CommandResult(127, "", str(exc), duration)

        duration = (time.monotonic() - start) * 1000
        return CommandResult(result.returncode, result.stdout, result.stderr, duration)


@dataclass(frozen=True)
class VerificationResult:
    passed: bool
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    duration_ms: float = 0.0
    timed_out: bool = False
    command: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VerificationResult:
        return cls(
            passed=bool(data["passed"]),
            exit_code=data.get("exit_code"),
            stdout=str(data.get("stdout", "")),
            stderr=str(data.get("stderr", "")),
            duration_ms=float(data.get("duration_ms", 0.0)),
            timed_out=bool(data.get("timed_out", False)),
            command=data.get("command"),
        )

    @classmethod
    def from_timeout(cls, error: VerificationTimeout) -> VerificationResult:
        return cls(
            passed=False,
            exit_code=None,
            stderr=str(error),
            duration_ms=error.duration_ms,
            timed_out=True,
            command=error.command,
        )


class VerificationGate:
    """Runs *command* through *runner*; no command means every phase passes."""

    def __init__(
        self,
        command: str | None = None,
        *,
        runner: CommandRunner | None = None,
        timeout: float | None = None,
    ) -> None:
        self.command = command
        self.runner: CommandRunner = runner if runner is not None else SubprocessRunner()
        self.timeout = timeout

    def verify(self) -> VerificationResult:
        """Run the command once.

        Raises
        ------
        VerificationTimeout
            When the command exceeds the timeout.
        """
        if not self.command:
            return VerificationResult(passed=True, exit_code=0)

        if self.timeout is None:
            logger.debug("Running verification without a timeout: %s", self.command)
        try:
            outcome = self.runner.run(self.command, self.timeout)
        except VerificationTimeout:
            logger.warning("Verification timed out after %ss: %s", self.timeout, self.command)
            raise

        result = VerificationResult(
            passed=outcome.exit_code == 0,
            exit_code=outcome.exit_code,
            stdout=outcome.stdout,
            stderr=outcome.stderr,
            duration_ms=outcome.duration_ms,
            command=self.command,
        )
        if not result.passed:
            logger.warning(
                "Verification failed (exit %d): %s", outcome.exit_code, self.command
            )
        return result
