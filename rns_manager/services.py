from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
import math
import time
from typing import Callable, Dict

from rns_manager.core import ServicesConfig
from rns_manager.errors import Outcome
from rns_manager.status_cache import StatusCache
from rns_manager.system import EXIT_NOT_FOUND, CommandResult, CommandRunner


logger = logging.getLogger(__name__)

Argv = tuple[str, ...]


class ServiceState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ServiceDescriptor:
    name: str
    alive_checks: tuple[Argv, ...]
    start_command: Argv
    stop_command: Argv
    poll_interval: float = 1.0
    max_wait: float = 10.0
    stop_fallback: Argv | None = None
    command_timeout: float = 30.0
    probe_timeout: float = 5.0

    @property
    def cache_key(self) -> str:
        return f"service:{self.name}:alive"


@dataclass
class TransitionResult:
    service: str
    action: str
    state: ServiceState
    outcome: Outcome
    message: str
    changed: bool = False
    converged: bool = False
    stuck: bool = False
    polls: int = 0
    elapsed: float = 0.0
    command: CommandResult | None = None

    @property
    def ok(self) -> bool:
        return self.outcome == Outcome.SUCCESS

    @property
    def attempts(self) -> int:
        return self.command.attempts if self.command else 0


def rnsd_descriptor(config: ServicesConfig | None = None) -> ServiceDescriptor:
    config = config or ServicesConfig()
    return ServiceDescriptor(
        name="rnsd",
        alive_checks=(
            ("systemctl", "--user", "is-active", "--quiet", "rnsd.service"),
            ("pgrep", "-x", "rnsd"),
        ),
        start_command=("rnsd", "--daemon"),
        stop_command=("rnsd", "--daemon", "stop"),
        stop_fallback=("pkill", "-x", "rnsd"),
        poll_interval=config.poll_interval,
        max_wait=config.max_wait,
    )


def meshtasticd_descriptor(config: ServicesConfig | None = None) -> ServiceDescriptor:
    config = config or ServicesConfig()
    return ServiceDescriptor(
        name="meshtasticd",
        alive_checks=(
            ("systemctl", "is-active", "--quiet", "meshtasticd"),
            ("pgrep", "-x", "meshtasticd"),
        ),
        start_command=("systemctl", "start", "meshtasticd"),
        stop_command=("systemctl", "stop", "meshtasticd"),
        poll_interval=config.poll_interval,
        max_wait=config.max_wait,
    )


SERVICE_FACTORIES: Dict[str, Callable[[ServicesConfig | None], ServiceDescriptor]] = {
    "rnsd": rnsd_descriptor,
    "meshtasticd": meshtasticd_descriptor,
}


def get_descriptor(name: str, config: ServicesConfig | None = None) -> ServiceDescriptor:
    if name not in SERVICE_FACTORIES:
        raise KeyError(name)
    return SERVICE_FACTORIES[name](config)


def _state_for(alive: bool | None) -> ServiceState:
    if alive is None:
        return ServiceState.UNKNOWN
    return ServiceState.RUNNING if alive else ServiceState.STOPPED


class ServiceController:
    """Drives one managed process between running and stopped.

    Convergence is decided by the alive checks only, never by the exit code
    of the start or stop command. Every wait is bounded by ``max_wait`` and by
    the caller's optional ``deadline``; running out of time is reported as a
    stuck transition rather than raised.
    """

    def __init__(
        self,
        descriptor: ServiceDescriptor,
        runner: CommandRunner,
        cache: StatusCache,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.descriptor = descriptor
        self.runner = runner
        self.cache = cache
        self._sleep = sleep
        self._clock = clock
        self.state = _state_for(self._probe())

    @property
    def name(self) -> str:
        return self.descriptor.name

    def _probe(self, deadline: float | None = None) -> bool | None:
        missing = 0
        for argv in self.descriptor.alive_checks:
            result = self.runner.run_argv(
                argv,
                deadline=deadline,
                timeout=self.descriptor.probe_timeout,
                max_attempts=1,
            )
            if result.succeeded:
                return True
            if result.returncode == EXIT_NOT_FOUND:
                missing += 1
        if missing == len(self.descriptor.alive_checks):
            return None
        return False

    def _fresh_alive(self, deadline: float | None = None) -> bool | None:
        self.cache.invalidate(self.descriptor.cache_key)
        alive = self.cache.get(self.descriptor.cache_key, lambda: self._probe(deadline))
        self.state = _state_for(alive)
        return alive

    def status(self, ttl: float | None = None) -> ServiceState:
        alive = self.cache.get(self.descriptor.cache_key, self._probe, ttl=ttl)
        self.state = _state_for(alive)
        return self.state

    def _issue(self, argv: Argv, deadline: float | None) -> CommandResult:
        result = self.runner.run_argv(argv, deadline=deadline, timeout=self.descriptor.command_timeout)
        self.cache.invalidate(self.descriptor.cache_key)
        return result

    def _unknown(self, action: str) -> TransitionResult:
        logger.error("Cannot %s %s: no liveness check is available", action, self.name)
        return TransitionResult(
            service=self.name,
            action=action,
            state=ServiceState.UNKNOWN,
            outcome=Outcome.PERMANENT,
            message=f"Cannot determine whether {self.name} is running; {action} not attempted",
        )

    def start(self, deadline: float | None = None) -> TransitionResult:
        alive = self._fresh_alive(deadline)
        if alive is None:
            return self._unknown("start")
        if alive:
            return TransitionResult(
                service=self.name,
                action="start",
                state=ServiceState.RUNNING,
                outcome=Outcome.SUCCESS,
                message=f"{self.name} is already running",
                converged=True,
            )
        logger.info("Starting %s", self.name)
        self.state = ServiceState.STARTING
        command = self._issue(self.descriptor.start_command, deadline)
        if not command.succeeded:
            return self._command_failed("start", command, deadline)
        return self._await(True, "start", command, deadline)

    def stop(self, deadline: float | None = None) -> TransitionResult:
        alive = self._fresh_alive(deadline)
        if alive is None:
            return self._unknown("stop")
        if not alive:
            return TransitionResult(
                service=self.name,
                action="stop",
                state=self.state,
                outcome=Outcome.SUCCESS,
                message=f"{self.name} is not running",
                converged=True,
            )
        logger.info("Stopping %s", self.name)
        self.state = ServiceState.STOPPING
        command = self._issue(self.descriptor.stop_command, deadline)
        if not command.succeeded and self.descriptor.stop_fallback:
            logger.warning("%s stop command failed, falling back to %s", self.name, " ".join(self.descriptor.stop_fallback))
            command = self._issue(self.descriptor.stop_fallback, deadline)
        if not command.succeeded:
            return self._command_failed("stop", command, deadline)
        return self._await(False, "stop", command, deadline)

    def restart(self, deadline: float | None = None) -> TransitionResult:
        stopped = self.stop(deadline)
        if not stopped.ok:
            return stopped
        started = self.start(deadline)
        started.action = "restart"
        started.changed = started.changed or stopped.changed
        return started

    def _command_failed(self, action: str, command: CommandResult, deadline: float | None) -> TransitionResult:
        target = action == "start"
        alive = self._fresh_alive(deadline)
        if alive is target:
            return TransitionResult(
                service=self.name,
                action=action,
                state=self.state,
                outcome=Outcome.SUCCESS,
                message=f"{self.name} {'running' if target else 'stopped'} despite command failure",
                changed=True,
                converged=True,
                polls=1,
                command=command,
            )
        logger.error("Failed to %s %s: %s", action, self.name, command.last_error)
        return TransitionResult(
            service=self.name,
            action=action,
            state=self.state,
            outcome=command.outcome,
            message=f"Failed to {action} {self.name} after {command.attempts} attempt(s): {command.last_error}",
            polls=1,
            command=command,
        )

    def _await(self, target: bool, action: str, command: CommandResult, deadline: float | None) -> TransitionResult:
        started = self._clock()
        limit = started + self.descriptor.max_wait
        if deadline is not None:
            limit = min(limit, deadline)
        max_polls = math.ceil(self.descriptor.max_wait / max(self.descriptor.poll_interval, 1e-3)) + 1
        polls = 0
        while True:
            self.cache.invalidate(self.descriptor.cache_key)
            alive = self.cache.get(self.descriptor.cache_key, lambda: self._probe(deadline))
            polls += 1
            if alive is target:
                self.state = _state_for(alive)
                elapsed = self._clock() - started
                logger.info("%s %s after %d poll(s)", self.name, "started" if target else "stopped", polls)
                return TransitionResult(
                    service=self.name,
                    action=action,
                    state=self.state,
                    outcome=Outcome.SUCCESS,
                    message=f"{self.name} {'started' if target else 'stopped'}",
                    changed=True,
                    converged=True,
                    polls=polls,
                    elapsed=elapsed,
                    command=command,
                )
            remaining = limit - self._clock()
            if remaining <= 0 or polls >= max_polls:
                break
            self._sleep(min(self.descriptor.poll_interval, remaining))

        elapsed = self._clock() - started
        verb = "start" if target else "stop"
        logger.warning("%s did not %s within %gs", self.name, verb, self.descriptor.max_wait)
        return TransitionResult(
            service=self.name,
            action=action,
            state=self.state,
            outcome=Outcome.STUCK,
            message=f"{self.name} may still be {'stopped' if target else 'running'} after {elapsed:g}s",
            changed=True,
            stuck=True,
            polls=polls,
            elapsed=elapsed,
            command=command,
        )
