from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Dict, Mapping

from rns_manager.errors import TransientError
from rns_manager.services import ServiceController, ServiceState
from rns_manager.status_cache import StatusCache
from rns_manager.system import EXIT_NOT_FOUND, CommandRunner


logger = logging.getLogger(__name__)

TRACKED_PACKAGES = ("rns", "lxmf", "nomadnet")


@dataclass
class StatusSnapshot:
    services: Dict[str, ServiceState] = field(default_factory=dict)
    versions: Dict[str, str] = field(default_factory=dict)

    def lines(self) -> list[str]:
        lines = [f"{name}: {state.value}" for name, state in self.services.items()]
        for package, version in self.versions.items():
            if not version:
                lines.append(f"{package}: not installed")
            elif version == "unknown":
                lines.append(f"{package}: unknown")
            else:
                lines.append(f"{package}: v{version}")
        return lines


class StatusBoard:
    """Read-mostly queries for the dashboard, served through the status cache."""

    def __init__(
        self,
        runner: CommandRunner,
        cache: StatusCache,
        services: Mapping[str, ServiceController] | None = None,
    ) -> None:
        self.runner = runner
        self.cache = cache
        self.services = dict(services or {})

    def _pip_command(self) -> str | None:
        for name in ("pip3", "pip"):
            if self.runner.which(name):
                return name
        return None

    def _fetch_version(self, package: str) -> str:
        pip = self._pip_command()
        if pip is None:
            return ""
        result = self.runner.run_argv(
            [pip, "show", package],
            timeout=self.runner.timeout_for("pip"),
            max_attempts=1,
        )
        if result.timed_out:
            raise TransientError(f"{pip} show {package} timed out")
        if result.returncode == EXIT_NOT_FOUND or not result.succeeded:
            return ""
        for line in result.stdout.splitlines():
            if line.startswith("Version:"):
                return line.split(":", 1)[1].strip()
        return ""

    def installed_version(self, package: str, ttl: float | None = None) -> str:
        return self.cache.get(f"version:{package}", lambda: self._fetch_version(package), ttl=ttl)

    def service_state(self, name: str, ttl: float | None = None) -> ServiceState:
        controller = self.services.get(name)
        if controller is None:
            return ServiceState.UNKNOWN
        return controller.status(ttl=ttl)

    def snapshot(self, packages: tuple[str, ...] = TRACKED_PACKAGES) -> StatusSnapshot:
        result = StatusSnapshot()
        for name in self.services:
            result.services[name] = self.service_state(name)
        for package in packages:
            try:
                result.versions[package] = self.installed_version(package)
            except TransientError as exc:
                logger.warning("Version lookup failed: %s", exc)
                result.versions[package] = "unknown"
        return result

    def invalidate(self) -> None:
        self.cache.invalidate_all()
