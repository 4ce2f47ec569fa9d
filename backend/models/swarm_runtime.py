"""
Swarm Runtime Enumerations

Status, mode and level vocabularies shared by the state document,
the lifecycle engine and the API layer.
"""

from enum import Enum


class SwarmStatus(str, Enum):
    """Swarm status enumeration"""
    DRAFT = "draft"
    LIVE = "live"
    PAUSED = "paused"


class AgentStatus(str, Enum):
    """Agent status enumeration"""
    IDLE = "idle"
    RUNNING = "running"
    RECOVERING = "recovering"
    EXECUTING = "executing"
    PAUSED = "paused"
    BLOCKED = "blocked"


class TaskStatus(str, Enum):
    """Task status enumeration"""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_TASK_STATUSES = frozenset({
    TaskStatus.SUCCEEDED,
    TaskStatus.FAILED,
    TaskStatus.CANCELED,
})

RETRYABLE_TASK_STATUSES = frozenset({
    TaskStatus.FAILED,
    TaskStatus.CANCELED,
})


class ExecutionMode(str, Enum):
    """Task execution mode enumeration"""
    SIMULATE = "simulate"
    SHELL = "shell"


class ActivityLevel(str, Enum):
    """Activity event severity"""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
