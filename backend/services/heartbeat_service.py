"""
Heartbeat Service

Simulated agent liveness. Each due agent in a live swarm gets a fresh
heartbeat stamp and its next beat scheduled with jitter; idle running
agents may hit a random obstacle that either switches their provider
(autoAdapt) or blocks them until revived.
"""

import logging
import random
from typing import Callable, Optional

from backend.models.swarm_runtime import ActivityLevel, AgentStatus, SwarmStatus
from backend.schemas.runtime_state import Agent, RuntimeState, Swarm, iso_from_ms, now_ms
from backend.services.activity_log import record_activity
from backend.services.catalog_service import RuntimeCatalog
from backend.services.prometheus_metrics_service import PrometheusMetricsService
from backend.services.task_lifecycle_service import OBSTACLES

logger = logging.getLogger(__name__)

BEAT_JITTER_MS = 1_200


class HeartbeatTicker:
    """
    Heartbeat Ticker

    Like the lifecycle engine it mutates a RuntimeState handed in by the
    runtime and must be called under the runtime lock.
    """

    def __init__(
        self,
        catalog: RuntimeCatalog,
        rng: Optional[random.Random] = None,
        clock: Callable[[], int] = now_ms,
        obstacle_chance: float = 0.06,
        metrics: Optional[PrometheusMetricsService] = None,
    ):
        self.catalog = catalog
        self.rng = rng or random.Random()
        self.clock = clock
        self.obstacle_chance = obstacle_chance
        self.metrics = metrics

    def tick_heartbeats(self, state: RuntimeState) -> bool:
        """
        Beat every due agent of every live swarm

        Returns:
            True if any agent status or counter changed
        """
        changed = False
        for swarm in state.swarms:
            if swarm.status != SwarmStatus.LIVE:
                continue
            for agent in state.agents_for_swarm(swarm.id):
                if self._beat(state, swarm, agent):
                    changed = True
        return changed

    def _beat(self, state: RuntimeState, swarm: Swarm, agent: Agent) -> bool:
        if agent.status == AgentStatus.PAUSED:
            return False
        if agent.status == AgentStatus.BLOCKED and not swarm.auto_adapt:
            return False

        now = self.clock()
        if agent.next_beat_at is not None and now < agent.next_beat_at:
            return False

        agent.last_heartbeat = iso_from_ms(now)
        agent.next_beat_at = now + agent.heartbeat_ms + self.rng.randrange(BEAT_JITTER_MS)
        if self.metrics:
            self.metrics.record_heartbeat()

        changed = False
        if agent.status == AgentStatus.RECOVERING:
            agent.status = AgentStatus.RUNNING
            changed = True

        if (
            self.obstacle_chance > 0
            and agent.status == AgentStatus.RUNNING
            and not agent.current_task_id
            and self.rng.random() < self.obstacle_chance
        ):
            self._hit_obstacle(state, swarm, agent, now)
            changed = True
        return changed

    def _hit_obstacle(self, state: RuntimeState, swarm: Swarm, agent: Agent, now: int) -> None:
        obstacle = self.rng.choice(OBSTACLES)
        agent.obstacles += 1
        context = {"swarmId": swarm.id, "agentId": agent.id}

        if swarm.auto_adapt:
            provider, model = self.catalog.choose_fallback(agent.provider, self.rng)
            agent.provider = provider
            agent.model = model
            agent.recoveries += 1
            swarm.obstacles_resolved += 1
            agent.status = AgentStatus.RECOVERING
            if self.metrics:
                self.metrics.record_obstacle("heartbeat", "fallback")
                self.metrics.record_provider_fallback("heartbeat")
            record_activity(
                state,
                ActivityLevel.WARN,
                f"{agent.name} heartbeat obstacle: {obstacle}. Switched to {provider}/{model}.",
                context,
                now,
            )
            return

        agent.status = AgentStatus.BLOCKED
        if self.metrics:
            self.metrics.record_obstacle("heartbeat", "blocked")
        record_activity(
            state,
            ActivityLevel.ERROR,
            f"{agent.name} blocked by heartbeat obstacle: {obstacle}.",
            context,
            now,
        )
