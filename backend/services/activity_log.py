"""
Activity Log

Appends operator-facing events to the state's activity ring buffer and
mirrors each one to the application log at the matching level.
"""

import logging
from typing import Any, Dict, Optional

from backend.models.swarm_runtime import ActivityLevel
from backend.schemas.runtime_state import ActivityEvent, RuntimeState

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    ActivityLevel.INFO: logging.INFO,
    ActivityLevel.WARN: logging.WARNING,
    ActivityLevel.ERROR: logging.ERROR,
}


def record_activity(
    state: RuntimeState,
    level: ActivityLevel,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    at_ms: Optional[int] = None,
) -> ActivityEvent:
    """
    Record an activity event

    Args:
        state: Runtime document to append to
        level: info/warn/error
        message: Human-readable message shown on the dashboard
        context: Related entity ids (swarmId, agentId, taskId, credentialId)
        at_ms: Event time in epoch milliseconds

    Returns:
        The appended event
    """
    event = state.add_activity(level, message, context, at_ms)
    logger.log(_LOG_LEVELS[level], message, extra={"activity": event.context})
    return event
