"""
Pytest configuration and shared fixtures
"""

import random
import sys
from pathlib import Path

import pytest
from prometheus_client import CollectorRegistry

# Add the repository root to the Python path
repo_root = Path(__file__).parent.parent
sys.path.insert(0, str(repo_root))

from backend.config import RuntimeSettings  # noqa: E402
from backend.models.swarm_runtime import AgentStatus, SwarmStatus  # noqa: E402
from backend.schemas.runtime_state import Agent, RuntimeState, Swarm, iso_from_ms  # noqa: E402
from backend.services.catalog_service import load_catalog  # noqa: E402
from backend.services.prometheus_metrics_service import PrometheusMetricsService  # noqa: E402
from backend.services.state_store import JsonFileStateBackend, StateStore  # noqa: E402
from backend.services.swarm_runtime import SwarmRuntime  # noqa: E402

START_MS = 1_760_000_000_000


class ScriptedRandom(random.Random):
    """
    random.Random whose random() replays a fixed script

    Once the script runs out, random() keeps returning `default`.
    choice()/randrange() stay seeded and never consume the script.
    """

    def __init__(self, values=None, default=0.99, seed=7):
        super().__init__(seed)
        self.values = list(values or [])
        self.default = default

    def random(self):
        if self.values:
            return self.values.pop(0)
        return self.default

    def getrandbits(self, k):
        # Keeps choice()/randrange() on getrandbits instead of random()
        return super().getrandbits(k)


class FakeClock:
    """Callable epoch-millisecond clock that only moves when told to"""

    def __init__(self, start_ms=START_MS):
        self.now = start_ms

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rng():
    return ScriptedRandom()


@pytest.fixture(scope="session")
def catalog():
    return load_catalog()


@pytest.fixture
def metrics():
    """Metrics service on a private registry"""
    return PrometheusMetricsService(registry=CollectorRegistry())


@pytest.fixture
def state():
    return RuntimeState()


@pytest.fixture
def build_swarm(clock):
    """
    Factory adding a swarm with running agents to a RuntimeState

    Usage:
        swarm, agents = build_swarm(state, agents=2, auto_adapt=False)
    """

    def _build(
        state,
        agents=1,
        auto_adapt=True,
        status=SwarmStatus.LIVE,
        agent_status=AgentStatus.RUNNING,
        name="Atlas",
        **fields,
    ):
        swarm = Swarm(
            name=name,
            status=status,
            auto_adapt=auto_adapt,
            provider="openrouter",
            model="openai/gpt-5-mini",
            created_at=iso_from_ms(clock()),
            **fields,
        )
        created = []
        for index in range(agents):
            agent = Agent(
                swarm_id=swarm.id,
                name=f"{name} • {index + 1}",
                status=agent_status,
                provider=swarm.provider,
                model=swarm.model,
                heartbeat_ms=swarm.heartbeat_ms,
                next_beat_at=clock() + 60_000,
            )
            created.append(agent)
            swarm.agent_ids.append(agent.id)
        state.swarms.insert(0, swarm)
        state.agents.extend(created)
        return swarm, created

    return _build


@pytest.fixture
def settings(tmp_path):
    return RuntimeSettings(
        state_file=tmp_path / "runtime-state.json",
        workspace_root=tmp_path,
        heartbeat_obstacle_chance=0.0,
        catch_up_on_request=False,
    )


@pytest.fixture
def state_store(settings, catalog, clock):
    return StateStore(JsonFileStateBackend(settings.state_file), catalog, clock=clock)


@pytest.fixture
def runtime(settings, state_store, catalog, rng, clock, metrics):
    """SwarmRuntime without shell execution on a temp state file"""
    return SwarmRuntime(
        settings,
        state_store,
        catalog,
        rng=rng,
        clock=clock,
        metrics=metrics,
    )


@pytest.fixture
def scripted_random():
    """The ScriptedRandom class, for tests that need a specific roll script"""
    return ScriptedRandom
