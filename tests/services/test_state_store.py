"""
Test suite for the state store and document normalization.

Tests follow BDD-style naming (Given/When/Then) as per project standards.
"""

import json

import pytest
from sqlalchemy.exc import OperationalError

from backend.config import RuntimeSettings
from backend.db.base import build_engine, build_session_factory, init_db
from backend.models.swarm_runtime import AgentStatus, SwarmStatus, TaskStatus
from backend.schemas.runtime_state import RuntimeState, iso_from_ms
from backend.services.state_store import (
    RESTORED_BEAT_DELAY_MS,
    JsonFileStateBackend,
    SqlKeyValueStateBackend,
    StateStore,
    normalize_state,
)
from backend.services.swarm_runtime import build_swarm_runtime


@pytest.fixture
def messy_document(clock):
    """A snapshot with bad values, orphans and a run interrupted by a restart"""
    stamp = iso_from_ms(clock() - 60_000)
    return {
        "projectName": "  ",
        "orchestratorName": 42,
        "swarms": [
            {
                "id": "swarm_a",
                "name": "Atlas",
                "provider": "  Open Router  ",
                "model": "",
                "heartbeatMs": 10,
                "status": "exploding",
                "autoAdapt": "no",
                "automationModules": ["Agent", "agent", "warp-drive"],
                "agentIds": ["agent_a", "agent_gone", "agent_b"],
                "createdAt": stamp,
            },
            "not a swarm",
        ],
        "agents": [
            {
                "id": "agent_a",
                "swarmId": "swarm_a",
                "status": "executing",
                "currentTaskId": "task_run",
                "credentialId": "cred_gone",
                "obstacles": -4,
            },
            {"id": "agent_b", "swarmId": "swarm_a", "status": "sleeping", "nextBeatAt": "soon"},
            {"id": "agent_orphan", "swarmId": "swarm_gone"},
        ],
        "tasks": [
            {
                "id": "task_run",
                "swarmId": "swarm_a",
                "title": "Interrupted",
                "status": "running",
                "assignedAgentId": "agent_a",
                "attempts": 2,
                "priority": 11,
                "maxAttempts": 99,
                "timeoutMs": 1,
                "createdAt": stamp,
                "startedAt": stamp,
                "runCompleteAtMs": 123,
                "runSuccessChance": 0.7,
            },
            {"id": "task_orphan", "swarmId": "swarm_gone", "title": "Lost"},
            {"id": "task_q", "swarmId": "swarm_a", "title": "", "status": "weird"},
        ],
        "credentials": [],
        "activity": "nope",
    }


class TestNormalize:
    """Test normalize_state repairs"""

    def test_normalize_is_idempotent(self, messy_document, catalog, clock):
        """
        GIVEN a messy document
        WHEN normalizing twice
        THEN the second pass changes nothing
        """
        once = normalize_state(messy_document, catalog, clock())
        twice = normalize_state(once, catalog, clock())

        assert twice.to_document() == once.to_document()

    def test_normalize_idempotent_on_garbage(self, catalog, clock):
        for raw in (None, [], "text", 7, {"swarms": "x", "tasks": [1, 2]}):
            once = normalize_state(raw, catalog, clock())
            assert normalize_state(once, catalog, clock()).to_document() == once.to_document()

    def test_clamps_and_coerces_fields(self, messy_document, catalog, clock):
        state = normalize_state(messy_document, catalog, clock(), project_name="anyre.quest")

        swarm = state.swarms[0]
        assert state.project_name == "anyre.quest"
        assert state.orchestrator_name == "Prime Orchestrator"
        assert len(state.swarms) == 1
        assert swarm.provider == "open-router"
        assert swarm.model == catalog.default_model_for("open-router")
        assert swarm.heartbeat_ms == 2000
        assert swarm.status == SwarmStatus.DRAFT
        assert swarm.auto_adapt is True
        assert swarm.automation_modules == ["agent"]

        task = state.find_task("task_run")
        assert task.priority == 5
        assert task.max_attempts == 10
        assert task.timeout_ms == 5_000
        assert state.find_task("task_q").title == "Untitled task"
        assert state.find_task("task_q").status == TaskStatus.QUEUED

        agent_b = state.find_agent("agent_b")
        assert agent_b.status == AgentStatus.IDLE
        assert agent_b.next_beat_at == clock() + RESTORED_BEAT_DELAY_MS
        assert state.find_agent("agent_a").obstacles == 0

    def test_drops_orphans_and_dangling_refs(self, messy_document, catalog, clock):
        state = normalize_state(messy_document, catalog, clock())

        assert state.find_agent("agent_orphan") is None
        assert state.find_task("task_orphan") is None
        assert state.swarms[0].agent_ids == ["agent_a", "agent_b"]
        assert state.find_agent("agent_a").credential_id is None

    def test_running_task_requeued_after_restart(self, messy_document, catalog, clock):
        """
        GIVEN a task stored as running
        WHEN normalizing on load
        THEN it is queued again with its attempts kept and its agent freed
        """
        state = normalize_state(messy_document, catalog, clock())

        task = state.find_task("task_run")
        agent = state.find_agent("agent_a")
        assert task.status == TaskStatus.QUEUED
        assert task.attempts == 2
        assert task.assigned_agent_id is None
        assert task.started_at is None
        assert task.run_complete_at_ms is None
        assert task.queued_at == iso_from_ms(clock())
        assert agent.current_task_id is None
        assert agent.status == AgentStatus.RUNNING

    def test_online_activity_added_once(self, messy_document, catalog, clock):
        del messy_document["projectName"]

        state = normalize_state(messy_document, catalog, clock(), project_name="demo")

        assert state.project_name == "demo"
        assert len(state.activity) == 1
        assert state.activity[0].message == "demo runtime online. Queue engine + adapters active."

    def test_credentials_truncated(self, catalog, clock):
        raw = {
            "credentials": [
                {"id": f"cred_{i}", "label": "L", "username": "u", "secretRef": "REF"}
                for i in range(130)
            ]
        }

        state = normalize_state(raw, catalog, clock())

        assert len(state.credentials) == 100


class TestJsonFileStore:
    """Test load/persist against a JSON file"""

    def test_missing_file_gives_defaults(self, state_store):
        state = state_store.load()

        assert state.swarms == []
        assert state.orchestrator_name == "Prime Orchestrator"
        assert len(state.activity) == 1

    def test_corrupt_file_gives_defaults(self, state_store, settings):
        settings.state_file.write_text("{not json", encoding="utf-8")

        state = state_store.load()

        assert state.swarms == []

    def test_persist_then_load(self, state_store, settings, build_swarm, clock):
        state = state_store.load()
        swarm, _ = build_swarm(state, agents=2)

        assert state_store.persist(state) is True
        document = json.loads(settings.state_file.read_text(encoding="utf-8"))
        assert document["swarms"][0]["id"] == swarm.id
        assert document["updatedAt"] == iso_from_ms(clock())

        reloaded = state_store.load()
        assert [agent.id for agent in reloaded.agents] == [agent.id for agent in state.agents]

    def test_persist_failure_returns_false(self, catalog, clock, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("", encoding="utf-8")
        store = StateStore(JsonFileStateBackend(blocker / "state.json"), catalog, clock=clock)

        assert store.persist(RuntimeState()) is False


class TestSqlStore:
    """Test the key-value SQL backend"""

    def test_roundtrip_through_sqlite(self, catalog, clock, tmp_path, build_swarm):
        engine = build_engine(f"sqlite:///{tmp_path / 'state.db'}")
        init_db(engine)
        backend = SqlKeyValueStateBackend(build_session_factory(engine), key="state:test")
        store = StateStore(backend, catalog, clock=clock)

        state = store.load()
        swarm, _ = build_swarm(state)
        assert store.persist(state) is True
        assert store.persist(state) is True

        assert store.load().swarms[0].id == swarm.id

    def test_unreadable_database_gives_defaults(self, catalog, clock, tmp_path):
        engine = build_engine(f"sqlite:///{tmp_path / 'empty.db'}")
        backend = SqlKeyValueStateBackend(build_session_factory(engine))
        store = StateStore(backend, catalog, clock=clock)

        with pytest.raises(OperationalError):
            backend.read_raw()
        assert store.load().swarms == []

    def test_runtime_uses_configured_database_url(self, tmp_path):
        """
        GIVEN settings selecting the sql backend with a database URL
        WHEN building the runtime from settings
        THEN the document is persisted in that database
        """
        db_path = tmp_path / "configured.db"
        settings = RuntimeSettings(
            state_backend="sql",
            database_url=f"sqlite:///{db_path}",
            workspace_root=tmp_path,
        )

        runtime = build_swarm_runtime(settings)

        assert db_path.exists()
        assert isinstance(runtime.store.backend, SqlKeyValueStateBackend)
        assert runtime.store.load().orchestrator_name == "Prime Orchestrator"
