"""
Test suite for the heartbeat ticker.

Tests follow BDD-style naming (Given/When/Then) as per project standards.
"""

import pytest

from backend.models.swarm_runtime import AgentStatus, SwarmStatus
from backend.schemas.runtime_state import iso_from_ms
from backend.services.heartbeat_service import HeartbeatTicker
from backend.services.task_lifecycle_service import OBSTACLES


@pytest.fixture
def make_ticker(catalog, clock, metrics, scripted_random):
    def _make(rolls=None, obstacle_chance=0.06):
        return HeartbeatTicker(
            catalog,
            rng=scripted_random(rolls),
            clock=clock,
            obstacle_chance=obstacle_chance,
            metrics=metrics,
        )
    return _make


class TestHeartbeatSchedule:
    """Test beat stamping and scheduling"""

    def test_due_agent_beats(self, make_ticker, state, build_swarm, clock):
        """
        GIVEN a running agent whose next beat is due
        WHEN ticking heartbeats
        THEN lastHeartbeat is stamped and the next beat is scheduled with jitter
        """
        ticker = make_ticker(obstacle_chance=0.0)
        _, agents = build_swarm(state)
        agent = agents[0]
        agent.next_beat_at = clock()

        ticker.tick_heartbeats(state)

        assert agent.last_heartbeat == iso_from_ms(clock())
        assert clock() + agent.heartbeat_ms <= agent.next_beat_at < clock() + agent.heartbeat_ms + 1_200

    def test_agent_not_due_is_untouched(self, make_ticker, state, build_swarm, clock):
        ticker = make_ticker(obstacle_chance=0.0)
        _, agents = build_swarm(state)
        agents[0].next_beat_at = clock() + 5_000

        assert ticker.tick_heartbeats(state) is False
        assert agents[0].last_heartbeat is None

    def test_recovering_agent_returns_to_running(self, make_ticker, state, build_swarm, clock):
        """
        GIVEN a recovering agent that is due
        WHEN it beats
        THEN it is running again
        """
        ticker = make_ticker(obstacle_chance=0.0)
        _, agents = build_swarm(state, agent_status=AgentStatus.RECOVERING)
        agents[0].next_beat_at = clock()

        assert ticker.tick_heartbeats(state) is True
        assert agents[0].status == AgentStatus.RUNNING

    def test_only_live_swarms_beat(self, make_ticker, state, build_swarm, clock):
        ticker = make_ticker(obstacle_chance=0.0)
        _, agents = build_swarm(state, status=SwarmStatus.DRAFT)
        agents[0].next_beat_at = clock()

        ticker.tick_heartbeats(state)

        assert agents[0].last_heartbeat is None

    def test_paused_agents_skipped(self, make_ticker, state, build_swarm, clock):
        ticker = make_ticker(obstacle_chance=0.0)
        _, agents = build_swarm(state, agent_status=AgentStatus.PAUSED)
        agents[0].next_beat_at = clock()

        ticker.tick_heartbeats(state)

        assert agents[0].last_heartbeat is None

    def test_blocked_agent_skipped_without_auto_adapt(self, make_ticker, state, build_swarm, clock):
        ticker = make_ticker(obstacle_chance=0.0)
        _, agents = build_swarm(state, auto_adapt=False, agent_status=AgentStatus.BLOCKED)
        agents[0].next_beat_at = clock()

        ticker.tick_heartbeats(state)

        assert agents[0].last_heartbeat is None
        assert agents[0].status == AgentStatus.BLOCKED


class TestHeartbeatObstacles:
    """Test random obstacle injection"""

    def test_obstacle_with_auto_adapt_switches_provider(self, make_ticker, state, build_swarm, clock):
        """
        GIVEN an idle running agent in an adapting swarm
        WHEN the obstacle roll hits
        THEN it switches provider and starts recovering
        """
        ticker = make_ticker(rolls=[0.0])
        swarm, agents = build_swarm(state, auto_adapt=True)
        agent = agents[0]
        agent.next_beat_at = clock()

        ticker.tick_heartbeats(state)

        assert agent.status == AgentStatus.RECOVERING
        assert agent.provider != "openrouter"
        assert agent.model == ticker.catalog.default_model_for(agent.provider)
        assert agent.obstacles == 1
        assert agent.recoveries == 1
        assert swarm.obstacles_resolved == 1
        assert state.activity[0].level.value == "warn"
        assert any(obstacle in state.activity[0].message for obstacle in OBSTACLES)

    def test_obstacle_without_auto_adapt_blocks(self, make_ticker, state, build_swarm, clock):
        """
        GIVEN an idle running agent in a non-adapting swarm
        WHEN the obstacle roll hits
        THEN the agent is blocked and stops beating
        """
        ticker = make_ticker(rolls=[0.0])
        swarm, agents = build_swarm(state, auto_adapt=False)
        agent = agents[0]
        agent.next_beat_at = clock()

        ticker.tick_heartbeats(state)

        assert agent.status == AgentStatus.BLOCKED
        assert agent.obstacles == 1
        assert agent.recoveries == 0
        assert swarm.obstacles_resolved == 0
        assert state.activity[0].level.value == "error"

        clock.advance(120_000)
        ticker.tick_heartbeats(state)
        assert agent.obstacles == 1

    def test_no_obstacle_when_roll_misses(self, make_ticker, state, build_swarm, clock):
        ticker = make_ticker(rolls=[0.5])
        _, agents = build_swarm(state)
        agents[0].next_beat_at = clock()

        ticker.tick_heartbeats(state)

        assert agents[0].status == AgentStatus.RUNNING
        assert agents[0].obstacles == 0

    def test_busy_agent_never_rolls(self, make_ticker, state, build_swarm, clock):
        """
        GIVEN a running agent that holds a task
        WHEN it beats
        THEN no obstacle roll is consumed
        """
        ticker = make_ticker(rolls=[0.0])
        _, agents = build_swarm(state)
        agents[0].current_task_id = "task_busy"
        agents[0].next_beat_at = clock()

        ticker.tick_heartbeats(state)

        assert agents[0].obstacles == 0
        assert ticker.rng.values == [0.0]

    def test_zero_chance_never_rolls(self, make_ticker, state, build_swarm, clock):
        ticker = make_ticker(rolls=[0.0], obstacle_chance=0.0)
        _, agents = build_swarm(state)
        agents[0].next_beat_at = clock()

        ticker.tick_heartbeats(state)

        assert agents[0].obstacles == 0
        assert ticker.rng.values == [0.0]
