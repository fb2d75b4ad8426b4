from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
import pwd
import tempfile
try:
    import tomllib
except ModuleNotFoundError:  # Python < 3.11
    import tomli as tomllib
from typing import Any, Dict

import tomli_w


CONFIG_DIRECTORIES = (".reticulum", ".nomadnetwork", ".lxmf")
CONFIG_ENV_VAR = "RNS_MANAGER_CONFIG"


def resolve_real_home() -> Path:
    sudo_user = os.environ.get("SUDO_USER", "")
    if sudo_user and sudo_user != "root" and "/" not in sudo_user and ".." not in sudo_user:
        try:
            home = Path(pwd.getpwnam(sudo_user).pw_dir)
        except KeyError:
            home = None
        if home and home.is_dir():
            return home
    return Path.home()


def default_config_path(home: Path | None = None) -> Path:
    override = os.getenv(CONFIG_ENV_VAR)
    if override:
        return Path(override)
    return (home or resolve_real_home()) / ".config" / "rns-manager" / "config.toml"


@dataclass
class CacheConfig:
    ttl: float = 10.0

    def to_dict(self) -> Dict[str, Any]:
        return {"ttl": self.ttl}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheConfig":
        return cls(ttl=float(data.get("ttl", 10.0)))


@dataclass
class CommandsConfig:
    max_attempts: int = 3
    backoff_base: float = 2.0
    backoff_cap: float = 60.0
    default_timeout: float = 120.0
    network_timeout: float = 300.0
    apt_timeout: float = 600.0
    git_timeout: float = 300.0
    pip_timeout: float = 300.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "backoff_base": self.backoff_base,
            "backoff_cap": self.backoff_cap,
            "default_timeout": self.default_timeout,
            "network_timeout": self.network_timeout,
            "apt_timeout": self.apt_timeout,
            "git_timeout": self.git_timeout,
            "pip_timeout": self.pip_timeout,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CommandsConfig":
        defaults = cls()
        return cls(
            max_attempts=max(1, int(data.get("max_attempts", defaults.max_attempts))),
            backoff_base=float(data.get("backoff_base", defaults.backoff_base)),
            backoff_cap=float(data.get("backoff_cap", defaults.backoff_cap)),
            default_timeout=float(data.get("default_timeout", defaults.default_timeout)),
            network_timeout=float(data.get("network_timeout", defaults.network_timeout)),
            apt_timeout=float(data.get("apt_timeout", defaults.apt_timeout)),
            git_timeout=float(data.get("git_timeout", defaults.git_timeout)),
            pip_timeout=float(data.get("pip_timeout", defaults.pip_timeout)),
        )


@dataclass
class ServicesConfig:
    poll_interval: float = 1.0
    max_wait: float = 10.0

    def to_dict(self) -> Dict[str, Any]:
        return {"poll_interval": self.poll_interval, "max_wait": self.max_wait}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServicesConfig":
        return cls(
            poll_interval=float(data.get("poll_interval", 1.0)),
            max_wait=float(data.get("max_wait", 10.0)),
        )


@dataclass
class BackupConfig:
    root: str | None = None
    keep: int = 3
    auto_prune: bool = False

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"keep": self.keep, "auto_prune": self.auto_prune}
        if self.root:
            payload["root"] = self.root
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackupConfig":
        return cls(
            root=str(data.get("root")) if data.get("root") else None,
            keep=max(0, int(data.get("keep", 3))),
            auto_prune=bool(data.get("auto_prune", False)),
        )

    def resolved_root(self, home: Path) -> Path:
        if self.root:
            return Path(self.root).expanduser()
        return home / ".reticulum_backups"


@dataclass
class LoggingConfig:
    path: str | None = None
    level: str = "INFO"
    max_bytes: int = 1024 * 1024
    backup_count: int = 3

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "level": self.level,
            "max_bytes": self.max_bytes,
            "backup_count": self.backup_count,
        }
        if self.path:
            payload["path"] = self.path
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoggingConfig":
        return cls(
            path=str(data.get("path")) if data.get("path") else None,
            level=str(data.get("level", "INFO")).upper(),
            max_bytes=int(data.get("max_bytes", 1024 * 1024)),
            backup_count=int(data.get("backup_count", 3)),
        )

    def resolved_path(self, home: Path) -> Path:
        if self.path:
            return Path(self.path).expanduser()
        return home / "rns_management.log"


@dataclass
class Config:
    cache: CacheConfig = field(default_factory=CacheConfig)
    commands: CommandsConfig = field(default_factory=CommandsConfig)
    services: ServicesConfig = field(default_factory=ServicesConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cache": self.cache.to_dict(),
            "commands": self.commands.to_dict(),
            "services": self.services.to_dict(),
            "backup": self.backup.to_dict(),
            "logging": self.logging.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        return cls(
            cache=CacheConfig.from_dict(data.get("cache", {})),
            commands=CommandsConfig.from_dict(data.get("commands", {})),
            services=ServicesConfig.from_dict(data.get("services", {})),
            backup=BackupConfig.from_dict(data.get("backup", {})),
            logging=LoggingConfig.from_dict(data.get("logging", {})),
        )


def load_config(path: Path | None = None) -> Config:
    path = Path(path) if path else default_config_path()
    if not path.exists():
        return Config()
    with path.open("rb") as handle:
        payload = tomllib.load(handle)
    return Config.from_dict(payload)


def _serialize_config(config: Config) -> str:
    return tomli_w.dumps(config.to_dict())


def save_config(config: Config, path: Path | None = None) -> bool:
    path = Path(path) if path else default_config_path()
    content = _serialize_config(config)
    if path.exists():
        existing = path.read_text(encoding="utf-8")
        if existing == content:
            return False
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", delete=False, dir=path.parent, encoding="utf-8") as handle:
        handle.write(content)
        temp_name = handle.name
    Path(temp_name).replace(path)
    return True


def config_to_toml(config: Config) -> str:
    return _serialize_config(config)
