"""
Swarm Runtime Errors

Exception taxonomy shared by the runtime services and translated to
HTTP status codes by the API layer.
"""

from enum import Enum


class SwarmRuntimeError(Exception):
    """Base exception for swarm runtime errors"""
    pass


class RuntimeValidationError(SwarmRuntimeError):
    """Raised when a required field is missing or invalid (HTTP 400)"""
    pass


class EntityNotFoundError(SwarmRuntimeError):
    """Raised when a referenced swarm, agent or task does not exist (HTTP 404)"""
    pass


class ShellExecutionError(SwarmRuntimeError):
    """Raised when a shell command cannot be spawned"""
    pass


class FailureDisposition(str, Enum):
    """Outcome of finalizing a failed run"""
    RETRY_WITH_FALLBACK = "retry_with_fallback"
    TERMINAL = "terminal"
    IGNORED = "ignored"
