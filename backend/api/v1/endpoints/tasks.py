"""
Tasks API

Operator retry and cancel for individual tasks.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, status

from backend.api.v1.errors import internal_error, to_http_exception
from backend.services.runtime_errors import SwarmRuntimeError
from backend.services.swarm_runtime import SwarmRuntime, get_swarm_runtime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tasks", tags=["Tasks"])


@router.post(
    "/{task_id}/retry",
    status_code=status.HTTP_200_OK,
    summary="Requeue a failed or canceled task",
)
async def retry_task(
    task_id: str,
    runtime: SwarmRuntime = Depends(get_swarm_runtime),
) -> Dict[str, Any]:
    try:
        return await runtime.retry_task(task_id)
    except SwarmRuntimeError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise internal_error(f"retry task {task_id}", e)


@router.post(
    "/{task_id}/cancel",
    status_code=status.HTTP_200_OK,
    summary="Cancel a queued or running task",
)
async def cancel_task(
    task_id: str,
    runtime: SwarmRuntime = Depends(get_swarm_runtime),
) -> Dict[str, Any]:
    try:
        return await runtime.cancel_task(task_id)
    except SwarmRuntimeError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise internal_error(f"cancel task {task_id}", e)
