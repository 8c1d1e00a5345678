from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import subprocess
from typing import Callable, Iterable, Literal, Protocol

logger = logging.getLogger(__name__)

ErrorCategory = Literal["retryable", "fatal"]
CommandRunner = Callable[[list[str], Path | None], subprocess.CompletedProcess[str]]

_RETRYABLE_PATTERNS = (
    "timed out",
    "timeout",
    "temporarily unavailable",
    "connection refused",
    "connection reset",
    "i/o timeout",
    "tls handshake timeout",
    "cannot connect to the docker daemon",
    "is the docker daemon running",
    "toomanyrequests",
    "too many requests",
    "rate limit",
)


@dataclass(frozen=True)
class CommandResult:
    command: list[str]
    returncode: int
    stdout: str
    stderr: str


class CommandError(RuntimeError):
    def __init__(
        self,
        *,
        message: str,
        result: CommandResult,
        category: ErrorCategory,
    ) -> None:
        self.result = result
        self.category = category
        super().__init__(self._build_message(message))

    @property
    def retryable(self) -> bool:
        return self.category == "retryable"

    def _build_message(self, message: str) -> str:
        detail = (self.result.stderr or self.result.stdout).strip()
        if len(detail) > 400:
            detail = f"{detail[:397]}..."
        cmd = " ".join(self.result.command)
        return (
            f"{message} (category={self.category}, returncode={self.result.returncode}, "
            f"command={cmd!r}, detail={detail!r})"
        )


class StreamProcess(Protocol):
    """The subset of `subprocess.Popen` used for long-running commands."""

    @property
    def stdout(self) -> Iterable[str] | None: ...

    def poll(self) -> int | None: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...

    def wait(self, timeout: float | None = None) -> int: ...


StreamOpener = Callable[[list[str], Path | None], StreamProcess]


def default_runner(command: list[str], cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    return subprocess.run(command, capture_output=True, text=True, check=False, cwd=cwd)


def default_opener(command: list[str], cwd: Path | None = None) -> StreamProcess:
    return subprocess.Popen(
        command,
        cwd=cwd,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        errors="replace",
        bufsize=1,
    )


def classify_error(*, returncode: int, stderr: str, stdout: str) -> ErrorCategory:
    if returncode < 0:
        return "retryable"
    text = f"{stderr}\n{stdout}".lower()
    if any(pattern in text for pattern in _RETRYABLE_PATTERNS):
        return "retryable"
    return "fatal"


def _missing_binary_result(command: list[str], exc: OSError) -> CommandResult:
    return CommandResult(command=command, returncode=127, stdout="", stderr=str(exc))


def run_command(
    command: list[str],
    *,
    cwd: Path | None = None,
    runner: CommandRunner | None = None,
    error_message: str,
) -> CommandResult:
    active_runner = runner or default_runner
    logger.debug("Running command: %s", " ".join(command))
    try:
        completed = active_runner(command, cwd)
    except FileNotFoundError as exc:
        raise CommandError(
            message=error_message,
            result=_missing_binary_result(command, exc),
            category="fatal",
        ) from exc
    result = CommandResult(
        command=command,
        returncode=completed.returncode,
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
    )
    if result.returncode != 0:
        raise CommandError(
            message=error_message,
            result=result,
            category=classify_error(
                returncode=result.returncode,
                stderr=result.stderr,
                stdout=result.stdout,
            ),
        )
    return result


def open_stream(
    command: list[str],
    *,
    cwd: Path | None = None,
    opener: StreamOpener | None = None,
    error_message: str,
) -> StreamProcess:
    active_opener = opener or default_opener
    logger.debug("Spawning command: %s", " ".join(command))
    try:
        return active_opener(command, cwd)
    except FileNotFoundError as exc:
        raise CommandError(
            message=error_message,
            result=_missing_binary_result(command, exc),
            category="fatal",
        ) from exc
