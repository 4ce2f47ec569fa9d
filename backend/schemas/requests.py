"""
Swarm Control Plane Request Schemas

Pydantic v2 request bodies for the /api routes. Fields are deliberately
loose (Any): the runtime sanitizes and clamps every value itself, so a
wrong type degrades to the default instead of rejecting the request.
Only a body that is not a JSON object is rejected (400).
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class RequestBody(BaseModel):
    """camelCase on the wire; unknown keys ignored"""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class RenameOrchestratorRequest(RequestBody):
    """Request body for POST /api/orchestrator"""
    name: Optional[Any] = None


class CreateCredentialRequest(RequestBody):
    """Request body for POST /api/credentials"""
    label: Optional[Any] = None
    platform: Optional[Any] = None
    username: Optional[Any] = None
    secret_ref: Optional[Any] = None


class CreateSwarmRequest(RequestBody):
    """Request body for POST /api/swarms"""
    name: Optional[Any] = None
    objective: Optional[Any] = None
    provider: Optional[Any] = None
    model: Optional[Any] = None
    agent_count: Optional[Any] = None
    heartbeat_ms: Optional[Any] = None
    deploy_target: Optional[Any] = None
    deploy_command: Optional[Any] = None
    auto_adapt: Optional[Any] = None
    module_ids: Optional[Any] = None


class IdeaRequest(RequestBody):
    """Request body for POST /api/swarms/{swarm_id}/idea"""
    message: Optional[Any] = None


class CreateTaskRequest(RequestBody):
    """Request body for POST /api/swarms/{swarm_id}/tasks"""
    title: Optional[Any] = None
    details: Optional[Any] = None
    priority: Optional[Any] = None
    execution_mode: Optional[Any] = None
    command: Optional[Any] = None
    exec_cwd: Optional[Any] = None
    timeout_ms: Optional[Any] = None
    max_attempts: Optional[Any] = None
    provider: Optional[Any] = None
    model: Optional[Any] = None


class SeedTasksRequest(RequestBody):
    """Request body for POST /api/swarms/{swarm_id}/tasks/seed"""
    count: Optional[Any] = None


class LinkCredentialRequest(RequestBody):
    """Request body for POST /api/agents/{agent_id}/credential"""
    credential_id: Optional[Any] = None
