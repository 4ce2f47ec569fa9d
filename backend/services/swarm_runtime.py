"""
Swarm Runtime

Single owner of the runtime document. Every mutation (HTTP handlers,
the periodic tick, shell completion callbacks) runs under one
asyncio.Lock and is followed by a persist, so the document never sees
two overlapping writers.

The runtime also owns the in-memory registry of in-flight shell
subprocesses. Entries are removed when the command finishes or when the
task is canceled; nothing about a run survives a restart (the state
store requeues running tasks on load).
"""

import asyncio
import logging
import random
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from backend.config import RuntimeSettings
from backend.db.base import build_engine, build_session_factory, init_db
from backend.models.swarm_runtime import (
    ActivityLevel,
    AgentStatus,
    ExecutionMode,
    SwarmStatus,
    TaskStatus,
)
from backend.schemas.runtime_state import (
    CREDENTIAL_LIMIT,
    DEFAULT_OBJECTIVE,
    Agent,
    Credential,
    RuntimeState,
    Swarm,
    Task,
    bounded_int,
    iso_from_ms,
    make_id,
    normalize_provider_id,
    now_ms,
    sanitize_text,
)
from backend.services.activity_log import record_activity
from backend.services.catalog_service import RuntimeCatalog, load_catalog
from backend.services.heartbeat_service import HeartbeatTicker
from backend.services.prometheus_metrics_service import (
    PrometheusMetricsService,
    get_metrics_service,
)
from backend.services.runtime_errors import EntityNotFoundError, RuntimeValidationError
from backend.services.shell_execution_service import (
    ShellExecutionService,
    ShellResult,
    terminate_process_group,
)
from backend.services.state_store import (
    JsonFileStateBackend,
    SqlKeyValueStateBackend,
    StateStore,
)
from backend.services.task_lifecycle_service import TaskLifecycleEngine
from backend.services.view_projector import compute_metrics, to_view_model

logger = logging.getLogger(__name__)

ROLE_POOL = [
    "Research Scout",
    "Task Planner",
    "Execution Builder",
    "Verification Analyst",
    "Deploy Operator",
    "Comms Liaison",
]

SHELL_FAILURE_HINT = "shell command error"

# Singleton instance
_runtime_instance: Optional["SwarmRuntime"] = None
_singleton_lock = threading.Lock()


@dataclass
class ShellRun:
    """In-flight shell command for one task"""
    task_id: str
    runner: asyncio.Task
    process: Optional[asyncio.subprocess.Process] = None


class SwarmRuntime:
    """
    Swarm Runtime

    Usage:
        runtime = build_swarm_runtime(RuntimeSettings.from_env())
        view = await runtime.view()
        result = await runtime.create_swarm({"name": "Atlas", "agent_count": 3})
        await runtime.start()      # periodic tick loop, until stop()
    """

    def __init__(
        self,
        settings: RuntimeSettings,
        store: StateStore,
        catalog: RuntimeCatalog,
        rng: Optional[random.Random] = None,
        clock: Callable[[], int] = now_ms,
        metrics: Optional[PrometheusMetricsService] = None,
        shell_service: Optional[ShellExecutionService] = None,
    ):
        self.settings = settings
        self.store = store
        self.catalog = catalog
        self.rng = rng or random.Random()
        self.clock = clock
        self.metrics = metrics
        self.shell_service = shell_service

        self.lock = asyncio.Lock()
        self._shell_runs: Dict[str, ShellRun] = {}
        self._running = False
        self._ticker_task: Optional[asyncio.Task] = None

        self.engine = TaskLifecycleEngine(
            catalog,
            rng=self.rng,
            clock=clock,
            base_success_chance=settings.base_success_chance,
            metrics=metrics,
            shell_launcher=self._launch_shell if shell_service is not None else None,
            shell_killer=self._kill_shell,
        )
        self.ticker = HeartbeatTicker(
            catalog,
            rng=self.rng,
            clock=clock,
            obstacle_chance=settings.heartbeat_obstacle_chance,
            metrics=metrics,
        )

        self.started_at_ms = clock()
        self.state: RuntimeState = store.load()
        self.store.persist(self.state)

        logger.info(
            f"SwarmRuntime initialized for {self.state.project_name} "
            f"(tick={settings.tick_interval_ms}ms, shell={'on' if shell_service else 'off'})"
        )

    # ------------------------------------------------------------------
    # Internals (call with self.lock held)
    # ------------------------------------------------------------------

    def _commit(self) -> Dict[str, Any]:
        self.store.persist(self.state)
        return self._view_locked()

    def _view_locked(self) -> Dict[str, Any]:
        return to_view_model(self.state, self.catalog, self.clock())

    def _tick_locked(self) -> bool:
        beats_changed = self.ticker.tick_heartbeats(self.state)
        tasks_changed = self.engine.tick(self.state)
        changed = beats_changed or tasks_changed
        if changed:
            self.store.persist(self.state)
        return changed

    def _require_swarm(self, swarm_id: str) -> Swarm:
        swarm = self.state.find_swarm(swarm_id)
        if swarm is None:
            raise EntityNotFoundError("Swarm not found.")
        return swarm

    def _require_agent(self, agent_id: str) -> Agent:
        agent = self.state.find_agent(agent_id)
        if agent is None:
            raise EntityNotFoundError("Agent not found.")
        return agent

    @staticmethod
    def _document(record) -> Dict[str, Any]:
        return record.model_dump(mode="json", by_alias=True)

    # ------------------------------------------------------------------
    # Shell runs
    # ------------------------------------------------------------------

    def active_shell_runs(self) -> List[str]:
        """Task ids with a shell command still in flight"""
        return list(self._shell_runs)

    def _launch_shell(self, task: Task) -> None:
        runner = asyncio.get_running_loop().create_task(
            self._run_shell(task.id, task.attempts, task.command, task.exec_cwd, task.timeout_ms)
        )
        self._shell_runs[task.id] = ShellRun(task_id=task.id, runner=runner)

    def _kill_shell(self, task_id: str) -> None:
        run = self._shell_runs.pop(task_id, None)
        if run is None:
            return
        if run.process is not None:
            terminate_process_group(run.process)
        run.runner.cancel()
        logger.info(f"Shell run for task {task_id} terminated")

    async def _run_shell(
        self, task_id: str, attempt: int, command: str, cwd: str, timeout_ms: int
    ) -> None:
        run = self._shell_runs.get(task_id)

        def on_spawn(process: asyncio.subprocess.Process) -> None:
            if run is not None:
                run.process = process

        try:
            result = await self.shell_service.run(
                command, cwd=cwd, timeout_ms=timeout_ms, on_spawn=on_spawn
            )
        except asyncio.CancelledError:
            logger.info(f"Shell run for task {task_id} cancelled")
            raise
        finally:
            if run is not None and self._shell_runs.get(task_id) is run:
                del self._shell_runs[task_id]

        await self._complete_shell_run(task_id, attempt, result)

    async def _complete_shell_run(self, task_id: str, attempt: int, result: ShellResult) -> None:
        if self.metrics:
            outcome = "success" if result.ok else ("timeout" if result.timed_out else "failure")
            self.metrics.observe_shell_run(outcome, result.duration_ms / 1000)

        summary = result.summary()
        preview = result.preview() or summary

        async with self.lock:
            if result.ok:
                self.engine.finalize_task_success(
                    self.state, task_id, summary, preview, attempt=attempt
                )
            else:
                self.engine.finalize_task_failure(
                    self.state, task_id, summary, preview, SHELL_FAILURE_HINT, attempt=attempt
                )
            self.store.persist(self.state)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def view(self) -> Dict[str, Any]:
        """Full view model, after a catch-up tick when enabled"""
        async with self.lock:
            if self.settings.catch_up_on_request:
                self._tick_locked()
            return self._view_locked()

    async def health(self) -> Dict[str, Any]:
        async with self.lock:
            if self.settings.catch_up_on_request:
                self._tick_locked()
            now = self.clock()
            return {
                "status": "ok",
                "uptimeSeconds": round((now - self.started_at_ms) / 1000),
                "activeRuns": sum(
                    1 for task in self.state.tasks if task.status == TaskStatus.RUNNING
                ),
                "time": iso_from_ms(now),
            }

    async def metrics_snapshot(self) -> Dict[str, int]:
        async with self.lock:
            return compute_metrics(self.state, self.catalog, self.clock())

    # ------------------------------------------------------------------
    # Periodic tick
    # ------------------------------------------------------------------

    async def tick(self) -> bool:
        """Heartbeats, then due completions, then assignment"""
        async with self.lock:
            return self._tick_locked()

    async def start(self) -> None:
        """
        Run the periodic tick until stop() is called

        Errors in a single tick are logged and the loop keeps going.
        """
        self._running = True
        interval = self.settings.tick_interval_ms / 1000
        logger.info(f"Starting runtime ticker every {interval}s")

        while self._running:
            try:
                await self.tick()
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                logger.info("Runtime ticker cancelled")
                break
            except Exception as e:
                logger.error(f"Error in runtime ticker: {e}", exc_info=True)
                await asyncio.sleep(interval)

        logger.info("Runtime ticker stopped")

    def launch_ticker(self) -> asyncio.Task:
        self._ticker_task = asyncio.get_running_loop().create_task(self.start())
        return self._ticker_task

    def stop(self) -> None:
        """Stop the ticker and terminate any in-flight shell commands"""
        logger.info("Stopping runtime ticker")
        self._running = False
        if self._ticker_task and not self._ticker_task.done():
            self._ticker_task.cancel()
        for task_id in list(self._shell_runs):
            self._kill_shell(task_id)

    # ------------------------------------------------------------------
    # Orchestrator and credentials
    # ------------------------------------------------------------------

    async def rename_orchestrator(self, name: Any) -> Dict[str, Any]:
        next_name = sanitize_text(name)
        if not next_name:
            raise RuntimeValidationError("Orchestrator name is required.")

        async with self.lock:
            self.state.orchestrator_name = next_name
            record_activity(
                self.state, ActivityLevel.INFO, f"Orchestrator renamed to {next_name}.",
                at_ms=self.clock(),
            )
            return self._commit()

    async def add_credential(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        """
        Store a credential profile (a reference to a secret, never the secret)

        Raises:
            RuntimeValidationError: label, username or secretRef missing
        """
        label = sanitize_text(fields.get("label"))
        platform = sanitize_text(fields.get("platform"), "generic").lower() or "generic"
        username = sanitize_text(fields.get("username"))
        secret_ref = sanitize_text(fields.get("secret_ref"))
        if not label or not username or not secret_ref:
            raise RuntimeValidationError(
                "label, username, and secretRef are required. "
                "Store references only (for example: PLATFORM_TOKEN)."
            )

        async with self.lock:
            stamp = self.clock()
            credential = Credential(
                id=make_id("cred", stamp),
                label=label,
                platform=platform,
                username=username,
                secret_ref=secret_ref,
                created_at=iso_from_ms(stamp),
            )
            self.state.credentials.insert(0, credential)
            del self.state.credentials[CREDENTIAL_LIMIT:]
            record_activity(
                self.state,
                ActivityLevel.INFO,
                f"Credential profile {label} added for {platform}.",
                {"credentialId": credential.id},
                stamp,
            )
            return {"credential": self._document(credential), "state": self._commit()}

    # ------------------------------------------------------------------
    # Swarms
    # ------------------------------------------------------------------

    async def create_swarm(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a draft swarm and its idle agents

        Args:
            fields: snake_case request fields (name, objective, provider,
                model, agent_count, heartbeat_ms, deploy_target,
                deploy_command, auto_adapt, module_ids)
        """
        provider = normalize_provider_id(fields.get("provider") or "openrouter")
        model = sanitize_text(fields.get("model")) or self.catalog.default_model_for(provider)
        agent_count = bounded_int(fields.get("agent_count"), 4, 1, 24)
        valid_modules = self.catalog.module_ids()
        requested = fields.get("module_ids")
        modules = [
            str(module).strip().lower()[:240]
            for module in (requested if isinstance(requested, list) else [])
        ]

        async with self.lock:
            stamp = self.clock()
            swarm = Swarm(
                id=make_id("swarm", stamp),
                name=sanitize_text(fields.get("name"), "Untitled Swarm"),
                objective=sanitize_text(fields.get("objective"), DEFAULT_OBJECTIVE),
                provider=provider,
                model=model,
                deploy_target=sanitize_text(fields.get("deploy_target"), "local") or "local",
                deploy_command=sanitize_text(fields.get("deploy_command")),
                auto_adapt=fields.get("auto_adapt") is not False,
                heartbeat_ms=bounded_int(fields.get("heartbeat_ms"), 8000, 2000, 60000),
                status=SwarmStatus.DRAFT,
                created_at=iso_from_ms(stamp),
                automation_modules=[module for module in modules if module in valid_modules],
            )

            for index in range(agent_count):
                agent = Agent(
                    id=make_id("agent", stamp),
                    swarm_id=swarm.id,
                    name=f"{swarm.name} • {index + 1}",
                    role=ROLE_POOL[index % len(ROLE_POOL)],
                    status=AgentStatus.IDLE,
                    provider=swarm.provider,
                    model=swarm.model,
                    heartbeat_ms=swarm.heartbeat_ms,
                    next_beat_at=stamp + 2000 + self.rng.randrange(5000),
                )
                self.state.agents.append(agent)
                swarm.agent_ids.append(agent.id)

            self.state.swarms.insert(0, swarm)
            record_activity(
                self.state,
                ActivityLevel.INFO,
                f"Swarm {swarm.name} created with {agent_count} agents on {provider}/{model}.",
                {"swarmId": swarm.id},
                stamp,
            )
            return {"swarm": self._document(swarm), "state": self._commit()}

    async def deploy_swarm(self, swarm_id: str) -> Dict[str, Any]:
        async with self.lock:
            swarm = self._require_swarm(swarm_id)
            self.engine.start_swarm(self.state, swarm)
            return self._commit()

    async def pause_swarm(self, swarm_id: str) -> Dict[str, Any]:
        async with self.lock:
            swarm = self._require_swarm(swarm_id)
            self.engine.pause_swarm(self.state, swarm)
            return self._commit()

    async def broadcast_idea(self, swarm_id: str, message: Any) -> Dict[str, Any]:
        """
        Broadcast an idea to a swarm's agents

        Non-paused agents count the message; blocked agents start
        recovering when the swarm adapts.
        """
        async with self.lock:
            swarm = self._require_swarm(swarm_id)
            text = sanitize_text(message)
            if not text:
                raise RuntimeValidationError("Idea message is required.")

            swarm.idea_count += 1
            for agent in self.state.agents_for_swarm(swarm.id):
                if agent.status == AgentStatus.PAUSED:
                    continue
                agent.message_count += 1
                if agent.status == AgentStatus.BLOCKED and swarm.auto_adapt:
                    agent.status = AgentStatus.RECOVERING

            record_activity(
                self.state,
                ActivityLevel.INFO,
                f"Idea broadcast in {swarm.name}: {text}",
                {"swarmId": swarm.id},
                self.clock(),
            )
            return self._commit()

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def add_task(self, swarm_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """
        Queue an operator task

        Raises:
            EntityNotFoundError: Unknown swarm
            RuntimeValidationError: Missing title, or shell mode without a command
        """
        async with self.lock:
            swarm = self._require_swarm(swarm_id)
            title = sanitize_text(fields.get("title"))
            if not title:
                raise RuntimeValidationError("Task title is required.")

            mode = fields.get("execution_mode")
            if mode not in (ExecutionMode.SIMULATE.value, ExecutionMode.SHELL.value):
                mode = ExecutionMode.SIMULATE.value
            if mode == ExecutionMode.SHELL.value and not sanitize_text(fields.get("command")):
                raise RuntimeValidationError("Shell tasks require a command.")

            task = self.engine.create_task(
                self.state, swarm, {**fields, "title": title, "execution_mode": mode}
            )
            record_activity(
                self.state,
                ActivityLevel.INFO,
                f"Task queued for {swarm.name}: {task.title}",
                {"swarmId": swarm.id, "taskId": task.id},
                self.clock(),
            )
            return {"task": self._document(task), "state": self._commit()}

    async def seed_tasks(self, swarm_id: str, count: Any = None) -> Dict[str, Any]:
        async with self.lock:
            swarm = self._require_swarm(swarm_id)
            created = self.engine.seed_tasks(self.state, swarm, count)
            return {
                "created": [self._document(task) for task in created],
                "state": self._commit(),
            }

    async def retry_task(self, task_id: str) -> Dict[str, Any]:
        async with self.lock:
            self.engine.retry_task(self.state, task_id)
            return self._commit()

    async def cancel_task(self, task_id: str) -> Dict[str, Any]:
        async with self.lock:
            self.engine.cancel_task(self.state, task_id)
            return self._commit()

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    async def revive_agent(self, agent_id: str) -> Dict[str, Any]:
        async with self.lock:
            agent = self._require_agent(agent_id)
            swarm = self.state.find_swarm(agent.swarm_id)
            if swarm is None or swarm.status != SwarmStatus.LIVE:
                raise RuntimeValidationError("Agent can only be revived when its swarm is live.")

            stamp = self.clock()
            if not agent.current_task_id:
                agent.status = AgentStatus.RUNNING
            agent.next_beat_at = stamp + 400
            record_activity(
                self.state,
                ActivityLevel.INFO,
                f"{agent.name} manually revived.",
                {"agentId": agent.id, "swarmId": agent.swarm_id},
                stamp,
            )
            return self._commit()

    async def link_credential(self, agent_id: str, credential_id: Any) -> Dict[str, Any]:
        """Link an agent to a credential profile; an empty id unlinks"""
        async with self.lock:
            agent = self._require_agent(agent_id)
            linked = sanitize_text(credential_id)
            if linked and self.state.find_credential(linked) is None:
                raise RuntimeValidationError("Credential profile not found.")

            agent.credential_id = linked or None
            message = (
                f"{agent.name} linked to credential profile {linked}."
                if linked
                else f"{agent.name} credential profile removed."
            )
            record_activity(
                self.state,
                ActivityLevel.INFO,
                message,
                {"agentId": agent.id, "credentialId": agent.credential_id},
                self.clock(),
            )
            return self._commit()


def build_swarm_runtime(settings: Optional[RuntimeSettings] = None) -> SwarmRuntime:
    """
    Wire a runtime from settings: catalog, state backend, shell service

    Args:
        settings: Defaults to RuntimeSettings.from_env()
    """
    settings = settings or RuntimeSettings.from_env()
    catalog = load_catalog(settings.catalog_file, settings.automation_root)

    if settings.state_backend == "sql":
        engine = build_engine(settings.database_url)
        init_db(engine)
        backend = SqlKeyValueStateBackend(build_session_factory(engine), settings.state_key)
    else:
        backend = JsonFileStateBackend(settings.state_file)

    store = StateStore(backend, catalog, project_name=settings.project_name)
    return SwarmRuntime(
        settings,
        store,
        catalog,
        metrics=get_metrics_service(),
        shell_service=ShellExecutionService(settings.workspace_root),
    )


def get_swarm_runtime() -> SwarmRuntime:
    """
    Get the singleton SwarmRuntime instance (FastAPI dependency).

    Returns:
        The shared SwarmRuntime instance
    """
    global _runtime_instance
    if _runtime_instance is None:
        with _singleton_lock:
            if _runtime_instance is None:
                _runtime_instance = build_swarm_runtime()
    return _runtime_instance
