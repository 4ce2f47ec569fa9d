"""
View Projector

Read-only projection of the runtime document into the dashboard view
model: per-swarm task stats, newest-first tasks, the catalog, and
process-wide metrics. Nothing in here mutates state.
"""

from typing import Any, Dict

from backend.models.swarm_runtime import AgentStatus, SwarmStatus, TaskStatus
from backend.schemas.runtime_state import RuntimeState, parse_iso_ms
from backend.services.catalog_service import RuntimeCatalog

STALE_HEARTBEAT_FLOOR_MS = 18_000

ACTIVE_AGENT_STATUSES = frozenset({
    AgentStatus.RUNNING,
    AgentStatus.RECOVERING,
    AgentStatus.EXECUTING,
})


def count_task_stats_for_swarm(state: RuntimeState, swarm_id: str) -> Dict[str, int]:
    stats = {status.value: 0 for status in TaskStatus}
    for task in state.tasks:
        if task.swarm_id == swarm_id:
            stats[task.status.value] += 1
    return stats


def is_heartbeat_stale(last_heartbeat: str, heartbeat_ms: int, now: int) -> bool:
    """An agent that never beat is stale; otherwise lag over max(2x interval, 18s)"""
    beat_ms = parse_iso_ms(last_heartbeat) if last_heartbeat else None
    if beat_ms is None:
        return True
    return now - beat_ms > max(heartbeat_ms * 2, STALE_HEARTBEAT_FLOOR_MS)


def compute_metrics(state: RuntimeState, catalog: RuntimeCatalog, now: int) -> Dict[str, int]:
    task_counts = {status: 0 for status in TaskStatus}
    for task in state.tasks:
        task_counts[task.status] += 1

    return {
        "totalSwarms": len(state.swarms),
        "liveSwarms": sum(1 for swarm in state.swarms if swarm.status == SwarmStatus.LIVE),
        "totalAgents": len(state.agents),
        "activeAgents": sum(1 for agent in state.agents if agent.status in ACTIVE_AGENT_STATUSES),
        "blockedAgents": sum(1 for agent in state.agents if agent.status == AgentStatus.BLOCKED),
        "staleHeartbeats": sum(
            1
            for agent in state.agents
            if is_heartbeat_stale(agent.last_heartbeat, agent.heartbeat_ms, now)
        ),
        "credentialProfiles": len(state.credentials),
        "providerCount": len(catalog.providers),
        "automatonModuleCount": len(catalog.modules),
        "totalTasks": len(state.tasks),
        "queuedTasks": task_counts[TaskStatus.QUEUED],
        "runningTasks": task_counts[TaskStatus.RUNNING],
        "succeededTasks": task_counts[TaskStatus.SUCCEEDED],
        "failedTasks": task_counts[TaskStatus.FAILED],
    }


def to_view_model(state: RuntimeState, catalog: RuntimeCatalog, now: int) -> Dict[str, Any]:
    """
    Build the full dashboard view model

    Args:
        state: Runtime document (not modified)
        catalog: Provider/module catalog
        now: Current epoch milliseconds, used for heartbeat staleness

    Returns:
        JSON-ready dict with camelCase keys
    """
    document = state.to_document()

    swarms = []
    for swarm in document["swarms"]:
        swarms.append({**swarm, "taskStats": count_task_stats_for_swarm(state, swarm["id"])})

    # Stable sort keeps insertion order for equal timestamps
    tasks = sorted(
        document["tasks"],
        key=lambda task: parse_iso_ms(task.get("createdAt")) or 0,
        reverse=True,
    )

    view = {
        "projectName": document["projectName"],
        "orchestratorName": document["orchestratorName"],
        "swarms": swarms,
        "agents": document["agents"],
        "tasks": tasks,
        "credentials": document["credentials"],
        "activity": document["activity"],
        "metrics": compute_metrics(state, catalog, now),
        "updatedAt": document["updatedAt"],
    }
    view.update(catalog.to_view())
    return view
