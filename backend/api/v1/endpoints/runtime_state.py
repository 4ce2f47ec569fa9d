"""
Runtime State API

Full dashboard view model and orchestrator rename.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, status

from backend.api.v1.errors import internal_error, to_http_exception
from backend.schemas.requests import RenameOrchestratorRequest
from backend.services.runtime_errors import SwarmRuntimeError
from backend.services.swarm_runtime import SwarmRuntime, get_swarm_runtime

logger = logging.getLogger(__name__)

router = APIRouter(tags=["State"])


@router.get(
    "/state",
    status_code=status.HTTP_200_OK,
    summary="Get the full runtime view model",
)
async def get_state(runtime: SwarmRuntime = Depends(get_swarm_runtime)) -> Dict[str, Any]:
    try:
        return await runtime.view()
    except Exception as e:
        raise internal_error("build the runtime view", e)


@router.post(
    "/orchestrator",
    status_code=status.HTTP_200_OK,
    summary="Rename the orchestrator",
)
async def rename_orchestrator(
    payload: Optional[RenameOrchestratorRequest] = Body(None),
    runtime: SwarmRuntime = Depends(get_swarm_runtime),
) -> Dict[str, Any]:
    payload = payload or RenameOrchestratorRequest()
    try:
        return await runtime.rename_orchestrator(payload.name)
    except SwarmRuntimeError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise internal_error("rename the orchestrator", e)
