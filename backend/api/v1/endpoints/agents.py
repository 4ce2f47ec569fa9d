"""
Agents API

Manual revive and credential-profile linking for single agents.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, status

from backend.api.v1.errors import internal_error, to_http_exception
from backend.schemas.requests import LinkCredentialRequest
from backend.services.runtime_errors import SwarmRuntimeError
from backend.services.swarm_runtime import SwarmRuntime, get_swarm_runtime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/agents", tags=["Agents"])


@router.post(
    "/{agent_id}/revive",
    status_code=status.HTTP_200_OK,
    summary="Revive a blocked or idle agent",
)
async def revive_agent(
    agent_id: str,
    runtime: SwarmRuntime = Depends(get_swarm_runtime),
) -> Dict[str, Any]:
    try:
        return await runtime.revive_agent(agent_id)
    except SwarmRuntimeError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise internal_error(f"revive agent {agent_id}", e)


@router.post(
    "/{agent_id}/credential",
    status_code=status.HTTP_200_OK,
    summary="Link or unlink a credential profile",
)
async def link_credential(
    agent_id: str,
    payload: Optional[LinkCredentialRequest] = Body(None),
    runtime: SwarmRuntime = Depends(get_swarm_runtime),
) -> Dict[str, Any]:
    payload = payload or LinkCredentialRequest()
    try:
        return await runtime.link_credential(agent_id, payload.credential_id)
    except SwarmRuntimeError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise internal_error(f"link a credential to agent {agent_id}", e)
