"""
Credential Profiles API

Credential profiles hold a reference to a secret (for example an
environment variable name), never the secret itself.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, status

from backend.api.v1.errors import internal_error, to_http_exception
from backend.schemas.requests import CreateCredentialRequest
from backend.services.runtime_errors import SwarmRuntimeError
from backend.services.swarm_runtime import SwarmRuntime, get_swarm_runtime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/credentials", tags=["Credentials"])


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Add a credential profile",
)
async def create_credential(
    payload: Optional[CreateCredentialRequest] = Body(None),
    runtime: SwarmRuntime = Depends(get_swarm_runtime),
) -> Dict[str, Any]:
    payload = payload or CreateCredentialRequest()
    try:
        return await runtime.add_credential(payload.model_dump())
    except SwarmRuntimeError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise internal_error("add a credential profile", e)
