from __future__ import annotations

from dataclasses import dataclass
import logging
import subprocess
from typing import Callable, Literal

logger = logging.getLogger(__name__)

ErrorCategory = Literal["retryable", "fatal"]
CommandRunner = Callable[[list[str]], subprocess.CompletedProcess[str]]

_RETRYABLE_PATTERNS = (
    "timed out",
    "timeout",
    "temporarily unavailable",
    "connection refused",
    "connection reset",
    "i/o timeout",
    "tls handshake timeout",
    "context deadline exceeded",
    "unable to connect",
    "the server is currently unable to handle the request",
    "another operation (install/upgrade/rollback) is in progress",
    "too many requests",
)
_MAX_DETAIL_LEN = 400


@dataclass(frozen=True)
class CommandResult:
    command: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        return f"{self.stderr}\n{self.stdout}"


class AdapterCommandError(RuntimeError):
    """A kubectl/helm invocation exited non-zero."""

    def __init__(self, *, message: str, result: CommandResult, category: ErrorCategory) -> None:
        self.result = result
        self.category = category
        super().__init__(self._build_message(message))

    @property
    def retryable(self) -> bool:
        return self.category == "retryable"

    def mentions(self, *needles: str) -> bool:
        text = self.result.output.lower()
        return any(needle in text for needle in needles)

    def _build_message(self, message: str) -> str:
        detail = (self.result.stderr or self.result.stdout).strip()
        if len(detail) > _MAX_DETAIL_LEN:
            detail = f"{detail[:_MAX_DETAIL_LEN - 3]}..."
        return f"{message} (category={self.category}, returncode={self.result.returncode}, detail={detail!r})"


def default_runner(command: list[str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(command, capture_output=True, text=True, check=False)


def classify_error(*, returncode: int, stderr: str, stdout: str) -> ErrorCategory:
    # negative return codes mean the process was killed by a signal
    if returncode < 0:
        return "retryable"
    text = f"{stderr}\n{stdout}".lower()
    if any(pattern in text for pattern in _RETRYABLE_PATTERNS):
        return "retryable"
    return "fatal"


def run_command(
    command: list[str],
    *,
    runner: CommandRunner | None = None,
    error_message: str,
) -> CommandResult:
    logger.debug("Running command: %s", " ".join(command))
    completed = (runner or default_runner)(command)
    result = CommandResult(
        command=command,
        returncode=completed.returncode,
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
    )
    if result.returncode == 0:
        return result

    category = classify_error(returncode=result.returncode, stderr=result.stderr, stdout=result.stdout)
    logger.debug("Command failed with returncode=%s category=%s", result.returncode, category)
    raise AdapterCommandError(message=error_message, result=result, category=category)
