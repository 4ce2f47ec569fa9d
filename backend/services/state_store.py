"""
State Store

Loads, repairs and persists the single JSON document that represents
every swarm, agent, task, credential and activity event.

The document lives in one of two backends:
- JsonFileStateBackend: a JSON file on local disk
- SqlKeyValueStateBackend: one row of a key-value table via SQLAlchemy

Loading never fails. Missing or corrupt snapshots degrade to a fresh
default document, and every load goes through normalize_state() which
heals partial data and requeues runs interrupted by a restart.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from backend.db.base import session_scope
from backend.models.runtime_state_snapshot import RuntimeStateSnapshot
from backend.models.swarm_runtime import ActivityLevel, AgentStatus, SwarmStatus, TaskStatus
from backend.schemas.runtime_state import (
    CREDENTIAL_LIMIT,
    DEFAULT_PROJECT_NAME,
    RuntimeState,
    iso_from_ms,
    now_ms,
)
from backend.services.catalog_service import RuntimeCatalog

logger = logging.getLogger(__name__)

# Delay before the first beat of an agent whose schedule was lost
RESTORED_BEAT_DELAY_MS = 1400


def normalize_state(
    raw: Any,
    catalog: RuntimeCatalog,
    at_ms: Optional[int] = None,
    project_name: str = DEFAULT_PROJECT_NAME,
) -> RuntimeState:
    """
    Repair a raw document into a consistent RuntimeState

    Field-level clamps and enum coercion happen in the schema validators.
    This pass handles everything that spans records:
    - drops agents and tasks whose swarm no longer exists
    - fills empty models from the provider catalog
    - drops automation modules missing from the catalog
    - requeues tasks found running (their run cannot survive a restart)
    - clears assignments and agent task pointers that no longer hold
    - clears credential links to vanished credentials

    Idempotent: normalizing an already normalized document is a no-op.

    Args:
        raw: Decoded JSON (any shape) or an existing RuntimeState
        catalog: Provider/module catalog
        at_ms: Clock reading used for repaired timestamps
        project_name: Project name for documents that lack one

    Returns:
        Normalized RuntimeState
    """
    stamp = at_ms if at_ms is not None else now_ms()

    if isinstance(raw, RuntimeState):
        raw = raw.to_document()
    if not isinstance(raw, dict):
        raw = {}
    if "projectName" not in raw and "project_name" not in raw:
        raw = {**raw, "projectName": project_name}

    try:
        state = RuntimeState.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"State document failed validation, starting fresh: {e}")
        state = RuntimeState.model_validate({"projectName": project_name})

    valid_modules = catalog.module_ids()
    for swarm in state.swarms:
        if not swarm.model:
            swarm.model = catalog.default_model_for(swarm.provider)
        swarm.automation_modules = [
            module_id for module_id in swarm.automation_modules if module_id in valid_modules
        ]

    swarms_by_id = {swarm.id: swarm for swarm in state.swarms}

    state.agents = [agent for agent in state.agents if agent.swarm_id in swarms_by_id]
    credential_ids = {credential.id for credential in state.credentials[:CREDENTIAL_LIMIT]}
    for agent in state.agents:
        if not agent.model:
            agent.model = catalog.default_model_for(agent.provider)
        if agent.next_beat_at is None:
            agent.next_beat_at = stamp + RESTORED_BEAT_DELAY_MS
        if agent.credential_id and agent.credential_id not in credential_ids:
            agent.credential_id = None

    agents_by_id = {agent.id: agent for agent in state.agents}

    state.tasks = [task for task in state.tasks if task.swarm_id in swarms_by_id]
    for task in state.tasks:
        if task.status == TaskStatus.RUNNING:
            task.status = TaskStatus.QUEUED
            task.started_at = None
            task.queued_at = iso_from_ms(stamp)
            logger.info(
                f"Requeued task {task.id} interrupted by restart",
                extra={"task_id": task.id, "swarm_id": task.swarm_id},
            )
        # Nothing is running after a load, so no task keeps an agent or a schedule
        task.assigned_agent_id = None
        task.clear_run()

    for agent in state.agents:
        agent.current_task_id = None
        if agent.status == AgentStatus.EXECUTING:
            swarm = swarms_by_id[agent.swarm_id]
            agent.status = (
                AgentStatus.PAUSED if swarm.status == SwarmStatus.PAUSED else AgentStatus.RUNNING
            )

    for swarm in state.swarms:
        swarm.agent_ids = [
            agent_id
            for agent_id in swarm.agent_ids
            if agent_id in agents_by_id and agents_by_id[agent_id].swarm_id == swarm.id
        ]

    del state.credentials[CREDENTIAL_LIMIT:]

    if not state.activity:
        state.add_activity(
            ActivityLevel.INFO,
            f"{state.project_name} runtime online. Queue engine + adapters active.",
            at_ms=stamp,
        )

    return state


# ============================================================================
# Backends
# ============================================================================

class StateBackend(Protocol):
    """Raw snapshot storage"""

    def read_raw(self) -> Optional[str]:
        ...

    def write_raw(self, payload: str) -> None:
        ...


class JsonFileStateBackend:
    """Stores the snapshot as a JSON file, replaced atomically on write"""

    def __init__(self, path: Path):
        self.path = Path(path)

    def read_raw(self) -> Optional[str]:
        if not self.path.exists():
            return None
        return self.path.read_text(encoding="utf-8")

    def write_raw(self, payload: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, self.path)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def __repr__(self) -> str:
        return f"<JsonFileStateBackend {self.path}>"


class SqlKeyValueStateBackend:
    """Stores the snapshot as one row of the runtime_state_snapshots table"""

    def __init__(self, session_factory: sessionmaker, key: str = "state:v1"):
        self.session_factory = session_factory
        self.key = key

    def read_raw(self) -> Optional[str]:
        with session_scope(self.session_factory) as db:
            row = db.get(RuntimeStateSnapshot, self.key)
            return row.payload if row is not None else None

    def write_raw(self, payload: str) -> None:
        with session_scope(self.session_factory) as db:
            row = db.get(RuntimeStateSnapshot, self.key)
            if row is None:
                db.add(RuntimeStateSnapshot(key=self.key, payload=payload))
            else:
                row.payload = payload

    def __repr__(self) -> str:
        return f"<SqlKeyValueStateBackend {self.key}>"


# ============================================================================
# Store
# ============================================================================

class StateStore:
    """
    Single source of truth for the runtime document

    Usage:
        store = StateStore(JsonFileStateBackend(path), catalog)
        state = store.load()
        ...mutate state under the runtime lock...
        store.persist(state)
    """

    def __init__(
        self,
        backend: StateBackend,
        catalog: RuntimeCatalog,
        project_name: str = DEFAULT_PROJECT_NAME,
        clock: Callable[[], int] = now_ms,
    ):
        self.backend = backend
        self.catalog = catalog
        self.project_name = project_name
        self.clock = clock

    def default_state(self) -> RuntimeState:
        return normalize_state({}, self.catalog, self.clock(), self.project_name)

    def normalize(self, raw: Any) -> RuntimeState:
        return normalize_state(raw, self.catalog, self.clock(), self.project_name)

    def load(self) -> RuntimeState:
        """
        Read and normalize the stored document

        Returns:
            The normalized document, or a fresh default one when the
            snapshot is missing, unreadable or not valid JSON
        """
        try:
            raw = self.backend.read_raw()
        except (OSError, SQLAlchemyError) as e:
            logger.error(f"Failed to read state from {self.backend!r}: {e}", exc_info=True)
            return self.default_state()

        if not raw:
            logger.info(f"No stored state in {self.backend!r}, starting fresh")
            return self.default_state()

        try:
            decoded = json.loads(raw)
        except ValueError as e:
            logger.warning(f"Corrupt state in {self.backend!r}, starting fresh: {e}")
            return self.default_state()

        state = self.normalize(decoded)
        logger.info(
            f"State loaded: {len(state.swarms)} swarms, {len(state.agents)} agents, "
            f"{len(state.tasks)} tasks"
        )
        return state

    def persist(self, state: RuntimeState) -> bool:
        """
        Serialize and overwrite the stored snapshot (last writer wins)

        Returns:
            True if written, False if the backend failed
        """
        state.updated_at = iso_from_ms(self.clock())
        payload = json.dumps(state.to_document(), indent=2)
        try:
            self.backend.write_raw(payload)
        except (OSError, SQLAlchemyError) as e:
            logger.error(f"Failed to persist state to {self.backend!r}: {e}", exc_info=True)
            return False
        return True
