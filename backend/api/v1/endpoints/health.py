"""
Health API Endpoint

Liveness probe for the swarm control plane: uptime, number of running
task runs and server time.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, status

from backend.api.v1.errors import internal_error
from backend.services.swarm_runtime import SwarmRuntime, get_swarm_runtime

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


@router.get(
    "/health",
    status_code=status.HTTP_200_OK,
    summary="Runtime health",
)
async def get_health(runtime: SwarmRuntime = Depends(get_swarm_runtime)) -> Dict[str, Any]:
    try:
        return await runtime.health()
    except Exception as e:
        raise internal_error("read runtime health", e)
