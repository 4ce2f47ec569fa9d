"""
Runtime State Schemas

Pydantic v2 records for the single JSON document that holds every
swarm, agent, task, credential and activity event. Field validators
repair partial or invalid input so that loading a damaged snapshot
always produces a usable record; cross-record repairs (dangling
references, orphaned entities) live in the state store.

Serialized field names are camelCase to stay compatible with the
dashboard and with snapshots written by earlier runtimes.
"""

import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from backend.models.swarm_runtime import (
    ActivityLevel,
    AgentStatus,
    ExecutionMode,
    SwarmStatus,
    TaskStatus,
)

TEXT_LIMIT = 240
OUTPUT_PREVIEW_LIMIT = 2200
ACTIVITY_LIMIT = 300
CREDENTIAL_LIMIT = 100

DEFAULT_PROJECT_NAME = "anyre.quest"
DEFAULT_ORCHESTRATOR_NAME = "Prime Orchestrator"
DEFAULT_OBJECTIVE = "Execute cross-platform tasks autonomously."
DEFAULT_PROVIDER = "openrouter"


# ============================================================================
# Coercion helpers
# ============================================================================

def sanitize_text(value: Any, fallback: str = "", limit: int = TEXT_LIMIT) -> str:
    """Trim a string and cut it to the limit; non-strings become the fallback"""
    if not isinstance(value, str):
        return fallback
    return value.strip()[:limit]


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def finite_number(value: Any) -> Optional[float]:
    """Return the value if it is a real finite JSON number, else None"""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return value


def number_or(value: Any, default: float) -> float:
    """Parse numbers and numeric strings; zero, NaN and garbage use the default"""
    if isinstance(value, bool):
        return default
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return default
    number = finite_number(value)
    if not number:
        return default
    return number


def bounded_int(value: Any, default: int, low: int, high: int) -> int:
    return int(clamp(int(number_or(value, default)), low, high))


def counter(value: Any) -> int:
    number = finite_number(value)
    if number is None:
        return 0
    return max(0, int(number))


def nullable_string(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()[:TEXT_LIMIT]
    return None


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def iso_from_ms(ms: float) -> str:
    moment = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso_ms(value: Optional[str]) -> Optional[int]:
    """Parse an ISO timestamp into epoch milliseconds; None if unparseable"""
    if not isinstance(value, str) or not value:
        return None
    try:
        moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)


def iso_or_now(value: Any) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return iso_from_ms(now_ms())


def _base36(number: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if number <= 0:
        return "0"
    out = []
    while number:
        number, rem = divmod(number, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


def make_id(prefix: str, at_ms: Optional[int] = None) -> str:
    stamp = _base36(at_ms if at_ms is not None else now_ms())
    return f"{prefix}_{stamp}_{uuid4().hex[:6]}"


def normalize_provider_id(raw: Any) -> str:
    normalized = sanitize_text(raw, DEFAULT_PROVIDER).lower()
    if not normalized:
        return DEFAULT_PROVIDER
    return re.sub(r"\s+", "-", normalized)


def _enum_value(value: Any, enum_cls, default):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        return default


def _records(value: Any) -> list:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, (dict, BaseModel))]


# ============================================================================
# Records
# ============================================================================

class RuntimeRecord(BaseModel):
    """Base record: camelCase on the wire, unknown keys ignored"""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        validate_default=True,
    )


class Swarm(RuntimeRecord):
    id: str = ""
    name: str = "Untitled Swarm"
    objective: str = DEFAULT_OBJECTIVE
    provider: str = DEFAULT_PROVIDER
    model: str = ""
    deploy_target: str = "local"
    deploy_command: str = ""
    auto_adapt: bool = True
    heartbeat_ms: int = 8000
    status: SwarmStatus = SwarmStatus.DRAFT
    created_at: str = ""
    last_deployed_at: Optional[str] = None
    completed_tasks: int = 0
    obstacles_resolved: int = 0
    idea_count: int = 0
    automation_modules: List[str] = Field(default_factory=list)
    agent_ids: List[str] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _id(cls, value: Any) -> str:
        return sanitize_text(value) or make_id("swarm")

    @field_validator("name", mode="before")
    @classmethod
    def _name(cls, value: Any) -> str:
        return sanitize_text(value) or "Untitled Swarm"

    @field_validator("objective", mode="before")
    @classmethod
    def _objective(cls, value: Any) -> str:
        return sanitize_text(value) or DEFAULT_OBJECTIVE

    @field_validator("provider", mode="before")
    @classmethod
    def _provider(cls, value: Any) -> str:
        return normalize_provider_id(value)

    @field_validator("model", "deploy_command", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return sanitize_text(value)

    @field_validator("deploy_target", mode="before")
    @classmethod
    def _deploy_target(cls, value: Any) -> str:
        return sanitize_text(value) or "local"

    @field_validator("auto_adapt", mode="before")
    @classmethod
    def _auto_adapt(cls, value: Any) -> bool:
        return value is not False

    @field_validator("heartbeat_ms", mode="before")
    @classmethod
    def _heartbeat_ms(cls, value: Any) -> int:
        return bounded_int(value, 8000, 2000, 60000)

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value: Any) -> SwarmStatus:
        return _enum_value(value, SwarmStatus, SwarmStatus.DRAFT)

    @field_validator("created_at", mode="before")
    @classmethod
    def _created_at(cls, value: Any) -> str:
        return iso_or_now(value)

    @field_validator("last_deployed_at", mode="before")
    @classmethod
    def _nullable(cls, value: Any) -> Optional[str]:
        return nullable_string(value)

    @field_validator("completed_tasks", "obstacles_resolved", "idea_count", mode="before")
    @classmethod
    def _counter(cls, value: Any) -> int:
        return counter(value)

    @field_validator("agent_ids", mode="before")
    @classmethod
    def _agent_ids(cls, value: Any) -> List[str]:
        if not isinstance(value, list):
            return []
        return [item for item in (sanitize_text(v) for v in value) if item]

    @field_validator("automation_modules", mode="before")
    @classmethod
    def _modules(cls, value: Any) -> List[str]:
        if not isinstance(value, list):
            return []
        modules: List[str] = []
        for item in value:
            module_id = sanitize_text(item).lower()
            if module_id and module_id not in modules:
                modules.append(module_id)
        return modules


class Agent(RuntimeRecord):
    id: str = ""
    swarm_id: str = ""
    name: str = "Agent"
    role: str = "Execution Builder"
    status: AgentStatus = AgentStatus.IDLE
    provider: str = DEFAULT_PROVIDER
    model: str = ""
    heartbeat_ms: int = 8000
    next_beat_at: Optional[int] = None
    last_heartbeat: Optional[str] = None
    current_task_id: Optional[str] = None
    obstacles: int = 0
    recoveries: int = 0
    message_count: int = 0
    credential_id: Optional[str] = None
    last_task_at: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _id(cls, value: Any) -> str:
        return sanitize_text(value) or make_id("agent")

    @field_validator("swarm_id", "model", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return sanitize_text(value)

    @field_validator("name", mode="before")
    @classmethod
    def _name(cls, value: Any) -> str:
        return sanitize_text(value) or "Agent"

    @field_validator("role", mode="before")
    @classmethod
    def _role(cls, value: Any) -> str:
        return sanitize_text(value) or "Execution Builder"

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value: Any) -> AgentStatus:
        return _enum_value(value, AgentStatus, AgentStatus.IDLE)

    @field_validator("provider", mode="before")
    @classmethod
    def _provider(cls, value: Any) -> str:
        return normalize_provider_id(value)

    @field_validator("heartbeat_ms", mode="before")
    @classmethod
    def _heartbeat_ms(cls, value: Any) -> int:
        return bounded_int(value, 8000, 2000, 60000)

    @field_validator("next_beat_at", mode="before")
    @classmethod
    def _next_beat_at(cls, value: Any) -> Optional[int]:
        number = finite_number(value)
        return int(number) if number is not None else None

    @field_validator(
        "last_heartbeat", "current_task_id", "credential_id", "last_task_at", mode="before"
    )
    @classmethod
    def _nullable(cls, value: Any) -> Optional[str]:
        return nullable_string(value)

    @field_validator("obstacles", "recoveries", "message_count", mode="before")
    @classmethod
    def _counter(cls, value: Any) -> int:
        return counter(value)


class Task(RuntimeRecord):
    id: str = ""
    swarm_id: str = ""
    title: str = "Untitled task"
    details: str = ""
    status: TaskStatus = TaskStatus.QUEUED
    priority: int = 3
    execution_mode: ExecutionMode = ExecutionMode.SIMULATE
    command: str = ""
    exec_cwd: str = ""
    timeout_ms: int = 90_000
    attempts: int = 0
    max_attempts: int = 3
    assigned_agent_id: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    output_preview: str = ""
    last_error: str = ""
    created_at: str = ""
    queued_at: str = ""
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    run_complete_at_ms: Optional[int] = None
    run_success_chance: Optional[float] = None
    run_obstacle: str = ""

    @field_validator("id", mode="before")
    @classmethod
    def _id(cls, value: Any) -> str:
        return sanitize_text(value) or make_id("task")

    @field_validator("swarm_id", "details", "command", "exec_cwd", "last_error", "run_obstacle",
                     mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return sanitize_text(value)

    @field_validator("title", mode="before")
    @classmethod
    def _title(cls, value: Any) -> str:
        return sanitize_text(value) or "Untitled task"

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value: Any) -> TaskStatus:
        return _enum_value(value, TaskStatus, TaskStatus.QUEUED)

    @field_validator("priority", mode="before")
    @classmethod
    def _priority(cls, value: Any) -> int:
        return bounded_int(value, 3, 1, 5)

    @field_validator("execution_mode", mode="before")
    @classmethod
    def _mode(cls, value: Any) -> ExecutionMode:
        return _enum_value(value, ExecutionMode, ExecutionMode.SIMULATE)

    @field_validator("timeout_ms", mode="before")
    @classmethod
    def _timeout_ms(cls, value: Any) -> int:
        return bounded_int(value, 90_000, 5_000, 600_000)

    @field_validator("attempts", mode="before")
    @classmethod
    def _attempts(cls, value: Any) -> int:
        return counter(value)

    @field_validator("max_attempts", mode="before")
    @classmethod
    def _max_attempts(cls, value: Any) -> int:
        return bounded_int(value, 3, 1, 10)

    @field_validator(
        "assigned_agent_id", "provider", "model", "started_at", "ended_at", mode="before"
    )
    @classmethod
    def _nullable(cls, value: Any) -> Optional[str]:
        return nullable_string(value)

    @field_validator("output_preview", mode="before")
    @classmethod
    def _output_preview(cls, value: Any) -> str:
        return sanitize_text(value, limit=OUTPUT_PREVIEW_LIMIT)

    @field_validator("created_at", mode="before")
    @classmethod
    def _created_at(cls, value: Any) -> str:
        return iso_or_now(value)

    @field_validator("queued_at", mode="before")
    @classmethod
    def _queued_at(cls, value: Any) -> str:
        return sanitize_text(value)

    @field_validator("run_complete_at_ms", mode="before")
    @classmethod
    def _run_complete_at_ms(cls, value: Any) -> Optional[int]:
        number = finite_number(value)
        return int(number) if number is not None else None

    @field_validator("run_success_chance", mode="before")
    @classmethod
    def _run_success_chance(cls, value: Any) -> Optional[float]:
        number = finite_number(value)
        return float(clamp(number, 0.0, 1.0)) if number is not None else None

    @model_validator(mode="after")
    def _queued_defaults_to_created(self) -> "Task":
        if not self.queued_at:
            self.queued_at = self.created_at
        return self

    def clear_run(self) -> None:
        """Drop scheduled completion data so a later tick sees nothing due"""
        self.run_complete_at_ms = None
        self.run_success_chance = None
        self.run_obstacle = ""


class Credential(RuntimeRecord):
    id: str = ""
    label: str = "Credential"
    platform: str = "generic"
    username: str = ""
    secret_ref: str = ""
    created_at: str = ""

    @field_validator("id", mode="before")
    @classmethod
    def _id(cls, value: Any) -> str:
        return sanitize_text(value) or make_id("cred")

    @field_validator("label", mode="before")
    @classmethod
    def _label(cls, value: Any) -> str:
        return sanitize_text(value) or "Credential"

    @field_validator("platform", mode="before")
    @classmethod
    def _platform(cls, value: Any) -> str:
        return sanitize_text(value).lower() or "generic"

    @field_validator("username", "secret_ref", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return sanitize_text(value)

    @field_validator("created_at", mode="before")
    @classmethod
    def _created_at(cls, value: Any) -> str:
        return iso_or_now(value)


class ActivityEvent(RuntimeRecord):
    id: str = ""
    timestamp: str = ""
    level: ActivityLevel = ActivityLevel.INFO
    message: str = "Runtime event"
    context: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("id", mode="before")
    @classmethod
    def _id(cls, value: Any) -> str:
        return sanitize_text(value) or make_id("evt")

    @field_validator("timestamp", mode="before")
    @classmethod
    def _timestamp(cls, value: Any) -> str:
        return iso_or_now(value)

    @field_validator("level", mode="before")
    @classmethod
    def _level(cls, value: Any) -> ActivityLevel:
        return _enum_value(value, ActivityLevel, ActivityLevel.INFO)

    @field_validator("message", mode="before")
    @classmethod
    def _message(cls, value: Any) -> str:
        # Messages embed task titles and fallback routes, so allow more than one field's worth
        return sanitize_text(value, limit=TEXT_LIMIT * 4) or "Runtime event"

    @field_validator("context", mode="before")
    @classmethod
    def _context(cls, value: Any) -> Dict[str, Any]:
        return value if isinstance(value, dict) else {}


class RuntimeState(RuntimeRecord):
    """
    The whole control-plane document

    Owned by exactly one runtime; every mutation happens under the
    runtime lock and is followed by a persist.
    """
    project_name: str = DEFAULT_PROJECT_NAME
    orchestrator_name: str = DEFAULT_ORCHESTRATOR_NAME
    swarms: List[Swarm] = Field(default_factory=list)
    agents: List[Agent] = Field(default_factory=list)
    tasks: List[Task] = Field(default_factory=list)
    credentials: List[Credential] = Field(default_factory=list)
    activity: List[ActivityEvent] = Field(default_factory=list)
    updated_at: str = ""

    @field_validator("project_name", mode="before")
    @classmethod
    def _project_name(cls, value: Any) -> str:
        return sanitize_text(value) or DEFAULT_PROJECT_NAME

    @field_validator("orchestrator_name", mode="before")
    @classmethod
    def _orchestrator_name(cls, value: Any) -> str:
        return sanitize_text(value) or DEFAULT_ORCHESTRATOR_NAME

    @field_validator("swarms", "agents", "tasks", "credentials", "activity", mode="before")
    @classmethod
    def _lists(cls, value: Any) -> list:
        return _records(value)

    @field_validator("updated_at", mode="before")
    @classmethod
    def _updated_at(cls, value: Any) -> str:
        return iso_or_now(value)

    def to_document(self) -> Dict[str, Any]:
        """Serialize with camelCase keys and plain JSON values"""
        return self.model_dump(mode="json", by_alias=True)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def find_swarm(self, swarm_id: Optional[str]) -> Optional[Swarm]:
        return next((swarm for swarm in self.swarms if swarm.id == swarm_id), None)

    def find_agent(self, agent_id: Optional[str]) -> Optional[Agent]:
        return next((agent for agent in self.agents if agent.id == agent_id), None)

    def find_task(self, task_id: Optional[str]) -> Optional[Task]:
        return next((task for task in self.tasks if task.id == task_id), None)

    def find_credential(self, credential_id: Optional[str]) -> Optional[Credential]:
        return next(
            (credential for credential in self.credentials if credential.id == credential_id),
            None,
        )

    def agents_for_swarm(self, swarm_id: str) -> List[Agent]:
        return [agent for agent in self.agents if agent.swarm_id == swarm_id]

    def tasks_for_swarm(self, swarm_id: str) -> List[Task]:
        return [task for task in self.tasks if task.swarm_id == swarm_id]

    # ------------------------------------------------------------------
    # Activity ring buffer
    # ------------------------------------------------------------------

    def add_activity(
        self,
        level: ActivityLevel,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        at_ms: Optional[int] = None,
    ) -> ActivityEvent:
        stamp = at_ms if at_ms is not None else now_ms()
        event = ActivityEvent(
            id=make_id("evt", stamp),
            timestamp=iso_from_ms(stamp),
            level=level,
            message=message,
            context=context or {},
        )
        self.activity.insert(0, event)
        del self.activity[ACTIVITY_LIMIT:]
        return event
