from __future__ import annotations

from dataclasses import dataclass
import logging
import os
import re
import shlex
import shutil
import signal
import subprocess
import time
from typing import Callable, Sequence

from rns_manager.core import CommandsConfig
from rns_manager.errors import Outcome, PermanentError


EXTRA_BIN_PATHS = ("/usr/local/sbin", "/usr/sbin", "/sbin")
EXIT_TIMEOUT = 124
EXIT_NOT_EXECUTABLE = 126
EXIT_NOT_FOUND = 127
KILL_GRACE_SECONDS = 5.0
MIN_ATTEMPT_TIMEOUT = 0.01

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandSpec:
    argv: tuple[str, ...]
    timeout: float = 120.0
    max_attempts: int = 3
    backoff_base: float = 2.0
    backoff_cap: float = 60.0
    non_retryable_patterns: tuple[str, ...] = ()
    cwd: str | None = None

    def __post_init__(self) -> None:
        if isinstance(self.argv, (str, bytes)):
            raise PermanentError("argv must be a sequence of arguments, not a command string")
        argv = tuple(self.argv)
        if not argv or not all(isinstance(arg, str) for arg in argv):
            raise PermanentError("argv must be a non-empty sequence of strings")
        if not argv[0]:
            raise PermanentError("argv[0] must name a program")
        if self.max_attempts < 1:
            raise PermanentError("max_attempts must be at least 1")
        if self.timeout <= 0:
            raise PermanentError("timeout must be positive")
        object.__setattr__(self, "argv", argv)
        object.__setattr__(self, "non_retryable_patterns", tuple(self.non_retryable_patterns))

    def backoff_delay(self, attempt: int) -> float:
        return min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_cap)

    def display(self) -> str:
        return shlex.join(self.argv)


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str = ""
    attempts: int = 1
    last_error: str | None = None
    timed_out: bool = False
    outcome: Outcome = Outcome.SUCCESS

    @property
    def succeeded(self) -> bool:
        return self.outcome == Outcome.SUCCESS

    @property
    def output(self) -> str:
        return "\n".join(part.strip() for part in (self.stdout, self.stderr) if part.strip())


@dataclass
class _Attempt:
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    error: str | None = None


def _find_command(name: str) -> str | None:
    if os.sep in name:
        return name if os.path.isfile(name) and os.access(name, os.X_OK) else None
    path_entries = [entry for entry in os.environ.get("PATH", "").split(os.pathsep) if entry]
    for extra in EXTRA_BIN_PATHS:
        if extra not in path_entries:
            path_entries.append(extra)
    return shutil.which(name, path=os.pathsep.join(path_entries))


def _kill_process_group(process: subprocess.Popen) -> None:
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        process.kill()


def _launch(argv: Sequence[str], timeout: float, cwd: str | None) -> _Attempt:
    executable = _find_command(argv[0])
    if executable is None:
        return _Attempt(returncode=EXIT_NOT_FOUND, error=f"command not found: {argv[0]}")
    try:
        process = subprocess.Popen(
            [executable, *argv[1:]],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            cwd=cwd,
            start_new_session=True,
        )
    except FileNotFoundError:
        return _Attempt(returncode=EXIT_NOT_FOUND, error=f"command not found: {argv[0]}")
    except PermissionError:
        return _Attempt(returncode=EXIT_NOT_EXECUTABLE, error=f"permission denied: {argv[0]}")
    except OSError as exc:
        return _Attempt(returncode=EXIT_NOT_EXECUTABLE, error=f"{argv[0]}: {exc}")
    try:
        stdout, stderr = process.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        _kill_process_group(process)
        try:
            stdout, stderr = process.communicate(timeout=KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            # a detached grandchild still holds the pipes
            for stream in (process.stdout, process.stderr):
                if stream:
                    stream.close()
            process.wait()
            stdout, stderr = "", ""
        return _Attempt(
            returncode=EXIT_TIMEOUT,
            stdout=stdout or "",
            stderr=stderr or "",
            timed_out=True,
            error=f"timed out after {timeout:g}s",
        )
    error = None if process.returncode == 0 else f"exited with status {process.returncode}"
    return _Attempt(returncode=process.returncode, stdout=stdout or "", stderr=stderr or "", error=error)


class CommandRunner:
    """Runs argv-only commands with a hard timeout and exponential backoff."""

    def __init__(
        self,
        config: CommandsConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        launcher: Callable[[Sequence[str], float, str | None], _Attempt] = _launch,
    ) -> None:
        self.config = config or CommandsConfig()
        self._sleep = sleep
        self._clock = clock
        self._launch = launcher

    def timeout_for(self, kind: str) -> float:
        presets = {
            "network": self.config.network_timeout,
            "apt": self.config.apt_timeout,
            "git": self.config.git_timeout,
            "pip": self.config.pip_timeout,
        }
        return presets.get(kind, self.config.default_timeout)

    def spec(
        self,
        argv: Sequence[str],
        timeout: float | None = None,
        max_attempts: int | None = None,
        non_retryable: Sequence[str] = (),
        cwd: str | None = None,
    ) -> CommandSpec:
        return CommandSpec(
            argv=argv,
            timeout=timeout if timeout is not None else self.config.default_timeout,
            max_attempts=max_attempts if max_attempts is not None else self.config.max_attempts,
            backoff_base=self.config.backoff_base,
            backoff_cap=self.config.backoff_cap,
            non_retryable_patterns=tuple(non_retryable),
            cwd=cwd,
        )

    def run_argv(self, argv: Sequence[str], deadline: float | None = None, **kwargs) -> CommandResult:
        return self.run(self.spec(argv, **kwargs), deadline=deadline)

    def run(self, spec: CommandSpec, deadline: float | None = None) -> CommandResult:
        patterns = [re.compile(pattern) for pattern in spec.non_retryable_patterns]
        attempt = 0
        while True:
            attempt += 1
            timeout = spec.timeout
            if deadline is not None:
                timeout = max(min(timeout, deadline - self._clock()), MIN_ATTEMPT_TIMEOUT)
            current = self._launch(spec.argv, timeout, spec.cwd)
            if current.returncode == 0 and not current.timed_out:
                logger.debug("%s succeeded on attempt %d/%d", spec.display(), attempt, spec.max_attempts)
                return self._result(current, attempt, Outcome.SUCCESS)

            text = f"{current.stderr}\n{current.stdout}"
            if any(pattern.search(text) for pattern in patterns):
                logger.error("%s failed with a non-retryable error: %s", spec.display(), current.error)
                return self._result(current, attempt, Outcome.PERMANENT)

            if attempt >= spec.max_attempts:
                logger.error("All %d attempts failed for: %s (%s)", spec.max_attempts, spec.display(), current.error)
                return self._result(current, attempt, Outcome.TRANSIENT)

            delay = spec.backoff_delay(attempt)
            if deadline is not None and self._clock() + delay >= deadline:
                logger.error("Deadline reached after attempt %d/%d for: %s", attempt, spec.max_attempts, spec.display())
                result = self._result(current, attempt, Outcome.TRANSIENT)
                result.last_error = f"deadline exceeded ({current.error})"
                return result

            logger.warning(
                "Attempt %d/%d failed for %s (%s), retrying in %gs",
                attempt,
                spec.max_attempts,
                spec.display(),
                current.error,
                delay,
            )
            self._sleep(delay)

    @staticmethod
    def _result(attempt_result: _Attempt, attempts: int, outcome: Outcome) -> CommandResult:
        return CommandResult(
            returncode=attempt_result.returncode,
            stdout=attempt_result.stdout,
            stderr=attempt_result.stderr,
            attempts=attempts,
            last_error=attempt_result.error,
            timed_out=attempt_result.timed_out,
            outcome=outcome,
        )

    def which(self, name: str) -> str | None:
        return _find_command(name)
