"""
Swarms API

Swarm creation and lifecycle (deploy, pause), idea broadcasts and task
intake (single task or objective-derived seed batch).
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, status

from backend.api.v1.errors import internal_error, to_http_exception
from backend.schemas.requests import (
    CreateSwarmRequest,
    CreateTaskRequest,
    IdeaRequest,
    SeedTasksRequest,
)
from backend.services.runtime_errors import SwarmRuntimeError
from backend.services.swarm_runtime import SwarmRuntime, get_swarm_runtime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/swarms", tags=["Swarms"])


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Create a swarm and its agents",
)
async def create_swarm(
    payload: Optional[CreateSwarmRequest] = Body(None),
    runtime: SwarmRuntime = Depends(get_swarm_runtime),
) -> Dict[str, Any]:
    payload = payload or CreateSwarmRequest()
    try:
        return await runtime.create_swarm(payload.model_dump())
    except SwarmRuntimeError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise internal_error("create a swarm", e)


@router.post(
    "/{swarm_id}/deploy",
    status_code=status.HTTP_200_OK,
    summary="Deploy a swarm",
)
async def deploy_swarm(
    swarm_id: str,
    runtime: SwarmRuntime = Depends(get_swarm_runtime),
) -> Dict[str, Any]:
    try:
        return await runtime.deploy_swarm(swarm_id)
    except SwarmRuntimeError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise internal_error(f"deploy swarm {swarm_id}", e)


@router.post(
    "/{swarm_id}/pause",
    status_code=status.HTTP_200_OK,
    summary="Pause a swarm",
)
async def pause_swarm(
    swarm_id: str,
    runtime: SwarmRuntime = Depends(get_swarm_runtime),
) -> Dict[str, Any]:
    try:
        return await runtime.pause_swarm(swarm_id)
    except SwarmRuntimeError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise internal_error(f"pause swarm {swarm_id}", e)


@router.post(
    "/{swarm_id}/idea",
    status_code=status.HTTP_200_OK,
    summary="Broadcast an idea to a swarm",
)
async def broadcast_idea(
    swarm_id: str,
    payload: Optional[IdeaRequest] = Body(None),
    runtime: SwarmRuntime = Depends(get_swarm_runtime),
) -> Dict[str, Any]:
    payload = payload or IdeaRequest()
    try:
        return await runtime.broadcast_idea(swarm_id, payload.message)
    except SwarmRuntimeError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise internal_error(f"broadcast an idea to swarm {swarm_id}", e)


@router.post(
    "/{swarm_id}/tasks",
    status_code=status.HTTP_201_CREATED,
    summary="Queue a task for a swarm",
)
async def create_task(
    swarm_id: str,
    payload: Optional[CreateTaskRequest] = Body(None),
    runtime: SwarmRuntime = Depends(get_swarm_runtime),
) -> Dict[str, Any]:
    payload = payload or CreateTaskRequest()
    try:
        return await runtime.add_task(swarm_id, payload.model_dump())
    except SwarmRuntimeError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise internal_error(f"queue a task for swarm {swarm_id}", e)


@router.post(
    "/{swarm_id}/tasks/seed",
    status_code=status.HTTP_201_CREATED,
    summary="Seed objective tasks for a swarm",
)
async def seed_tasks(
    swarm_id: str,
    payload: Optional[SeedTasksRequest] = Body(None),
    runtime: SwarmRuntime = Depends(get_swarm_runtime),
) -> Dict[str, Any]:
    payload = payload or SeedTasksRequest()
    try:
        return await runtime.seed_tasks(swarm_id, payload.count)
    except SwarmRuntimeError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise internal_error(f"seed tasks for swarm {swarm_id}", e)
