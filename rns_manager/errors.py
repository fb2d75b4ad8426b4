from __future__ import annotations

from enum import Enum


class Outcome(str, Enum):
    SUCCESS = "success"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    SECURITY = "security"
    RESOURCE = "resource"
    STUCK = "stuck"


class RnsManagerError(Exception):
    outcome = Outcome.PERMANENT


class PermanentError(RnsManagerError, ValueError):
    """Malformed input. Never retried."""

    outcome = Outcome.PERMANENT


class SecurityError(RnsManagerError):
    """An untrusted archive failed validation."""

    outcome = Outcome.SECURITY


class ResourceError(RnsManagerError, OSError):
    outcome = Outcome.RESOURCE


class TransientError(RnsManagerError):
    """A flaky external call that may succeed if asked again."""

    outcome = Outcome.TRANSIENT
