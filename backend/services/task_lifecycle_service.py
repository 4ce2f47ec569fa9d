"""
Task Lifecycle Service

State machine for swarm tasks: queueing, assignment to agents,
simulated or shell execution, success/failure finalization and
retry-with-fallback.

    queued    -> running     assigned to an available agent of a live swarm
    running   -> succeeded   success roll / shell exit 0
    running   -> queued      failure with autoAdapt and attempts left (provider fallback)
    running   -> failed      failure with autoAdapt off or attempts exhausted
    queued    -> canceled    operator cancel
    running   -> canceled    operator cancel (kills the shell process)
    failed    -> queued      operator retry
    canceled  -> queued      operator retry

`attempts` counts every run start and is never reset. Scheduled
completion data lives on the task itself and is cleared before
finalization, so a second tick never processes the same completion.
Every finalizer is a no-op for tasks that are no longer running, which
makes operator cancellation win any race with an in-flight completion.
"""

import logging
import random
import re
from typing import Any, Callable, Dict, List, Optional

from backend.models.swarm_runtime import (
    RETRYABLE_TASK_STATUSES,
    TERMINAL_TASK_STATUSES,
    ActivityLevel,
    AgentStatus,
    ExecutionMode,
    SwarmStatus,
    TaskStatus,
)
from backend.schemas.runtime_state import (
    OUTPUT_PREVIEW_LIMIT,
    Agent,
    RuntimeState,
    Swarm,
    Task,
    bounded_int,
    clamp,
    iso_from_ms,
    make_id,
    now_ms,
    parse_iso_ms,
    sanitize_text,
)
from backend.services.activity_log import record_activity
from backend.services.catalog_service import RuntimeCatalog
from backend.services.prometheus_metrics_service import PrometheusMetricsService
from backend.services.runtime_errors import (
    EntityNotFoundError,
    FailureDisposition,
    RuntimeValidationError,
)

logger = logging.getLogger(__name__)

OBSTACLES = [
    "provider timeout",
    "rate limit burst",
    "invalid auth handshake",
    "sandbox command failure",
    "model overloaded",
    "transient network split",
]

CANCELED_BY_OPERATOR = "Canceled by operator"
SHELL_UNAVAILABLE = "shell execution unavailable in this runtime"

# Simulated run timing
BASE_RUN_MS = 2_800
PRIORITY_WEIGHT_MS = 550
RUN_JITTER_MS = 2_400
SHELL_UNAVAILABLE_DELAY_MS = 350

# Simulated success probability
PRIORITY_PENALTY = 0.04
ADAPT_BOOST = 0.07
MIN_SUCCESS_CHANCE = 0.2
MAX_SUCCESS_CHANCE = 0.97
DEFAULT_SUCCESS_CHANCE = 0.8

ShellLauncher = Callable[[Task], None]
ShellKiller = Callable[[str], None]


def build_seed_task(swarm: Swarm, index: int) -> Dict[str, Any]:
    """Derive the index-th objective-track task for a swarm"""
    fragments = [part.strip() for part in re.split(r"[.,;]", swarm.objective) if part.strip()]
    title = fragments[index] if index < len(fragments) else f"Milestone {index + 1}"
    return {
        "title": f"Plan {index + 1}: {title}",
        "details": f"Autogenerated objective track for {swarm.name}",
        "priority": int(clamp(5 - index, 2, 5)),
        "execution_mode": ExecutionMode.SIMULATE.value,
        "max_attempts": 3,
        "timeout_ms": 90_000,
    }


class TaskLifecycleEngine:
    """
    Task Lifecycle Engine

    Operates on a RuntimeState passed in by the owning runtime; never
    holds state of its own. Callers must serialize access (the runtime
    lock) and persist afterwards.

    Randomness and time are injected so tests can script exact
    transitions:
    - rng.random() drives success rolls only
    - rng.choice()/rng.randrange() pick obstacles, fallbacks and jitter
    """

    def __init__(
        self,
        catalog: RuntimeCatalog,
        rng: Optional[random.Random] = None,
        clock: Callable[[], int] = now_ms,
        base_success_chance: float = 0.84,
        metrics: Optional[PrometheusMetricsService] = None,
        shell_launcher: Optional[ShellLauncher] = None,
        shell_killer: Optional[ShellKiller] = None,
    ):
        self.catalog = catalog
        self.rng = rng or random.Random()
        self.clock = clock
        self.base_success_chance = base_success_chance
        self.metrics = metrics
        self.shell_launcher = shell_launcher
        self.shell_killer = shell_killer

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_task(self, state: RuntimeState, swarm: Swarm, fields: Dict[str, Any]) -> Task:
        """
        Queue a new task for a swarm

        Args:
            state: Runtime document
            swarm: Owning swarm
            fields: snake_case task fields; missing or invalid values
                fall back to defaults and numeric fields are clamped

        Returns:
            The queued task (newest first in state.tasks)
        """
        stamp = self.clock()
        mode = fields.get("execution_mode")
        if mode not in (ExecutionMode.SIMULATE.value, ExecutionMode.SHELL.value):
            mode = ExecutionMode.SIMULATE.value

        task = Task(
            id=make_id("task", stamp),
            swarm_id=swarm.id,
            title=fields.get("title"),
            details=fields.get("details"),
            status=TaskStatus.QUEUED,
            priority=fields.get("priority"),
            execution_mode=mode,
            command=fields.get("command") if mode == ExecutionMode.SHELL.value else "",
            exec_cwd=fields.get("exec_cwd"),
            timeout_ms=fields.get("timeout_ms"),
            attempts=0,
            max_attempts=fields.get("max_attempts"),
            provider=sanitize_text(fields.get("provider") or swarm.provider) or None,
            model=sanitize_text(fields.get("model") or swarm.model) or None,
            created_at=iso_from_ms(stamp),
            queued_at=iso_from_ms(stamp),
        )
        state.tasks.insert(0, task)
        if self.metrics:
            self.metrics.record_task_transition(TaskStatus.QUEUED.value)
        return task

    def seed_tasks(self, state: RuntimeState, swarm: Swarm, count: Any = None) -> List[Task]:
        """Queue objective-derived tasks (count clamped to 1..12, default 4)"""
        total = bounded_int(count, 4, 1, 12)
        created = [self.create_task(state, swarm, build_seed_task(swarm, i)) for i in range(total)]
        record_activity(
            state,
            ActivityLevel.INFO,
            f"{len(created)} objective tasks seeded for {swarm.name}.",
            {"swarmId": swarm.id},
            self.clock(),
        )
        return created

    # ------------------------------------------------------------------
    # Swarm transitions
    # ------------------------------------------------------------------

    def start_swarm(self, state: RuntimeState, swarm: Swarm) -> Optional[Task]:
        """
        Deploy a swarm: mark it live and wake its agents

        A non-empty deployCommand is queued as a priority-5 shell task.

        Returns:
            The deployment task, if one was queued
        """
        stamp = self.clock()
        swarm.status = SwarmStatus.LIVE
        swarm.last_deployed_at = iso_from_ms(stamp)

        for agent in state.agents_for_swarm(swarm.id):
            if agent.current_task_id:
                agent.status = AgentStatus.EXECUTING
                continue
            if agent.status == AgentStatus.BLOCKED and not swarm.auto_adapt:
                continue
            agent.status = AgentStatus.RUNNING
            agent.next_beat_at = stamp + 400 + self.rng.randrange(1200)

        record_activity(
            state,
            ActivityLevel.INFO,
            f"Swarm {swarm.name} deployed to {swarm.deploy_target}.",
            {"swarmId": swarm.id},
            stamp,
        )

        if not swarm.deploy_command:
            return None

        deploy_task = self.create_task(state, swarm, {
            "title": f"Deploy {swarm.name}",
            "details": f"Deployment pipeline for {swarm.deploy_target}",
            "execution_mode": ExecutionMode.SHELL.value,
            "command": swarm.deploy_command,
            "priority": 5,
            "max_attempts": 2,
            "timeout_ms": 180_000,
            "exec_cwd": "",
        })
        record_activity(
            state,
            ActivityLevel.INFO,
            f"Deployment command queued as task {deploy_task.title}.",
            {"swarmId": swarm.id, "taskId": deploy_task.id},
            stamp,
        )
        return deploy_task

    def pause_swarm(self, state: RuntimeState, swarm: Swarm) -> None:
        """Pause a swarm; agents still holding a task keep running it"""
        swarm.status = SwarmStatus.PAUSED
        for agent in state.agents_for_swarm(swarm.id):
            if agent.current_task_id:
                continue
            agent.status = AgentStatus.PAUSED
        record_activity(
            state, ActivityLevel.WARN, f"Swarm {swarm.name} paused.", {"swarmId": swarm.id},
            self.clock(),
        )

    # ------------------------------------------------------------------
    # Simulation parameters
    # ------------------------------------------------------------------

    def simulate_run_duration_ms(self, task: Task) -> int:
        """Priority 5 runs fastest, priority 1 slowest, plus jitter"""
        return BASE_RUN_MS + (6 - task.priority) * PRIORITY_WEIGHT_MS + self.rng.randrange(RUN_JITTER_MS)

    def compute_success_chance(self, task: Task, swarm: Swarm) -> float:
        penalty = (task.priority - 3) * PRIORITY_PENALTY
        boost = ADAPT_BOOST if swarm.auto_adapt else 0.0
        return clamp(
            self.base_success_chance - penalty + boost, MIN_SUCCESS_CHANCE, MAX_SUCCESS_CHANCE
        )

    # ------------------------------------------------------------------
    # Assignment and execution
    # ------------------------------------------------------------------

    def available_agents(self, state: RuntimeState, swarm: Swarm) -> List[Agent]:
        if swarm.status != SwarmStatus.LIVE:
            return []
        return [
            agent
            for agent in state.agents_for_swarm(swarm.id)
            if not agent.current_task_id
            and agent.status not in (AgentStatus.PAUSED, AgentStatus.BLOCKED)
        ]

    def queued_tasks(self, state: RuntimeState, swarm: Swarm) -> List[Task]:
        """Queued tasks by priority descending, then creation time ascending"""
        # state.tasks is newest first; reverse so equal timestamps keep creation order
        queued = [task for task in reversed(state.tasks_for_swarm(swarm.id))
                  if task.status == TaskStatus.QUEUED]
        return sorted(
            queued,
            key=lambda task: (-task.priority, parse_iso_ms(task.created_at) or 0),
        )

    def assign_queued_tasks(self, state: RuntimeState) -> int:
        """
        Pair queued tasks with available agents, per live swarm

        No cross-swarm borrowing. A task without provider/model inherits
        the agent's (or else the swarm's) at dispatch time.

        Returns:
            Number of tasks started
        """
        started = 0
        for swarm in state.swarms:
            if swarm.status != SwarmStatus.LIVE:
                continue

            queue = self.queued_tasks(state, swarm)
            if not queue:
                continue
            agents = self.available_agents(state, swarm)

            for task, agent in zip(queue, agents):
                if agent.status == AgentStatus.RECOVERING:
                    agent.status = AgentStatus.RUNNING
                if not task.provider:
                    task.provider = agent.provider or swarm.provider
                if not task.model:
                    task.model = agent.model or swarm.model
                self.start_task_run(state, agent, task, swarm)
                started += 1
        return started

    def start_task_run(self, state: RuntimeState, agent: Agent, task: Task, swarm: Swarm) -> None:
        stamp = self.clock()
        task.status = TaskStatus.RUNNING
        task.started_at = iso_from_ms(stamp)
        task.ended_at = None
        task.assigned_agent_id = agent.id
        task.attempts += 1

        agent.current_task_id = task.id
        agent.status = AgentStatus.EXECUTING
        agent.last_heartbeat = iso_from_ms(stamp)

        task.run_obstacle = self.rng.choice(OBSTACLES)
        context = {"taskId": task.id, "swarmId": swarm.id, "agentId": agent.id}
        if self.metrics:
            self.metrics.record_task_transition(TaskStatus.RUNNING.value)

        if task.execution_mode == ExecutionMode.SHELL and task.command:
            if self.shell_launcher is None:
                # Fail fast through the normal failure path
                task.run_complete_at_ms = stamp + SHELL_UNAVAILABLE_DELAY_MS
                task.run_success_chance = 0.0
                task.run_obstacle = SHELL_UNAVAILABLE
                record_activity(
                    state,
                    ActivityLevel.WARN,
                    f"Task {task.title} queued in shell mode; shell execution is disabled here.",
                    context,
                    stamp,
                )
                return

            task.run_complete_at_ms = None
            task.run_success_chance = None
            self.shell_launcher(task)
        else:
            task.run_complete_at_ms = stamp + self.simulate_run_duration_ms(task)
            task.run_success_chance = self.compute_success_chance(task, swarm)

        record_activity(
            state,
            ActivityLevel.INFO,
            f"Task {task.title} assigned to {agent.name} ({task.execution_mode.value}).",
            context,
            stamp,
        )

    def process_running_tasks(self, state: RuntimeState) -> int:
        """
        Finalize simulated runs whose completion time has passed

        Returns:
            Number of runs finalized
        """
        now = self.clock()
        finalized = 0
        for task in list(state.tasks):
            if task.status != TaskStatus.RUNNING or task.run_complete_at_ms is None:
                continue
            if now < task.run_complete_at_ms:
                continue

            swarm = state.find_swarm(task.swarm_id)
            if swarm is None:
                continue

            chance = task.run_success_chance
            if chance is None:
                chance = DEFAULT_SUCCESS_CHANCE
            obstacle = task.run_obstacle or "execution obstacle"
            task.clear_run()

            if self.rng.random() < chance:
                summary = (
                    f"completed with {task.provider or swarm.provider}/{task.model or swarm.model}"
                )
                self.finalize_task_success(state, task.id, summary, summary)
            else:
                self.finalize_task_failure(state, task.id, obstacle, obstacle, obstacle)
            finalized += 1
        return finalized

    def tick(self, state: RuntimeState) -> bool:
        """Finalize due runs, then dispatch queued work. Returns True if anything changed."""
        finalized = self.process_running_tasks(state)
        started = self.assign_queued_tasks(state)
        return bool(finalized or started)

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    @staticmethod
    def _is_current_run(task: Optional[Task], attempt: Optional[int]) -> bool:
        if task is None or task.status != TaskStatus.RUNNING:
            return False
        return attempt is None or task.attempts == attempt

    def release_agent(self, state: RuntimeState, task: Task, swarm: Optional[Swarm]) -> Optional[Agent]:
        """Free the task's agent; it goes back to running unless paused or blocked"""
        agent = state.find_agent(task.assigned_agent_id) if task.assigned_agent_id else None
        if agent is None:
            return None

        if agent.current_task_id == task.id:
            agent.current_task_id = None
        if swarm is not None and swarm.status == SwarmStatus.PAUSED:
            agent.status = AgentStatus.PAUSED
        elif agent.status == AgentStatus.BLOCKED and swarm is not None and not swarm.auto_adapt:
            agent.status = AgentStatus.BLOCKED
        else:
            agent.status = AgentStatus.RUNNING
        agent.last_task_at = iso_from_ms(self.clock())
        return agent

    def finalize_task_success(
        self,
        state: RuntimeState,
        task_id: str,
        summary: str,
        output_preview: str = "",
        attempt: Optional[int] = None,
    ) -> bool:
        """
        Mark a running task succeeded

        Args:
            attempt: Attempt the result belongs to; a result from an
                earlier attempt is ignored

        Returns:
            False (no-op) if the task vanished, is no longer running, or
            has moved on to another attempt
        """
        task = state.find_task(task_id)
        if not self._is_current_run(task, attempt):
            return False

        swarm = state.find_swarm(task.swarm_id)
        agent_id = task.assigned_agent_id
        stamp = self.clock()

        task.status = TaskStatus.SUCCEEDED
        task.ended_at = iso_from_ms(stamp)
        task.last_error = ""
        task.output_preview = (output_preview or summary)[:OUTPUT_PREVIEW_LIMIT]
        task.clear_run()

        if swarm is not None:
            swarm.completed_tasks += 1

        self.release_agent(state, task, swarm)
        task.assigned_agent_id = None
        if self.metrics:
            self.metrics.record_task_transition(TaskStatus.SUCCEEDED.value)

        record_activity(
            state,
            ActivityLevel.INFO,
            f"Task {task.title} succeeded. {summary}",
            {"taskId": task.id, "swarmId": task.swarm_id, "agentId": agent_id},
            stamp,
        )
        return True

    def finalize_task_failure(
        self,
        state: RuntimeState,
        task_id: str,
        reason: str,
        output_preview: str = "",
        obstacle_hint: Optional[str] = None,
        attempt: Optional[int] = None,
    ) -> FailureDisposition:
        """
        Handle a failed run

        Always counts an obstacle on the assigned agent. With autoAdapt
        and attempts left the task is requeued on a different provider
        and the agent goes to recovering; otherwise the task fails for
        good and the agent is released.

        Returns:
            RETRY_WITH_FALLBACK, TERMINAL, or IGNORED when the task
            vanished, is no longer running, or `attempt` is stale
        """
        task = state.find_task(task_id)
        if not self._is_current_run(task, attempt):
            return FailureDisposition.IGNORED

        swarm = state.find_swarm(task.swarm_id)
        agent = state.find_agent(task.assigned_agent_id) if task.assigned_agent_id else None
        stamp = self.clock()

        task.last_error = sanitize_text(reason) or "Unknown failure"
        task.output_preview = (output_preview or reason)[:OUTPUT_PREVIEW_LIMIT]
        task.clear_run()

        if agent is not None:
            agent.obstacles += 1

        context = {
            "taskId": task.id,
            "swarmId": task.swarm_id,
            "agentId": agent.id if agent else None,
        }

        can_retry = swarm is not None and swarm.auto_adapt and task.attempts < task.max_attempts
        if can_retry:
            current_provider = (agent.provider if agent else None) or task.provider or swarm.provider
            provider, model = self.catalog.choose_fallback(current_provider, self.rng)

            if agent is not None:
                agent.provider = provider
                agent.model = model
                agent.recoveries += 1
                agent.status = AgentStatus.RECOVERING
                agent.current_task_id = None
                agent.last_task_at = iso_from_ms(stamp)

            task.status = TaskStatus.QUEUED
            task.assigned_agent_id = None
            task.provider = provider
            task.model = model
            task.queued_at = iso_from_ms(stamp)
            task.started_at = None
            task.ended_at = None
            swarm.obstacles_resolved += 1

            if self.metrics:
                self.metrics.record_obstacle("task", "fallback")
                self.metrics.record_provider_fallback("task")
                self.metrics.record_task_transition(TaskStatus.QUEUED.value)

            record_activity(
                state,
                ActivityLevel.WARN,
                f"Task {task.title} hit {obstacle_hint or 'an obstacle'}; retry queued "
                f"({task.attempts}/{task.max_attempts}) with {provider}/{model}.",
                context,
                stamp,
            )
            return FailureDisposition.RETRY_WITH_FALLBACK

        task.status = TaskStatus.FAILED
        task.ended_at = iso_from_ms(stamp)
        self.release_agent(state, task, swarm)
        task.assigned_agent_id = None

        if self.metrics:
            self.metrics.record_obstacle("task", "terminal")
            self.metrics.record_task_transition(TaskStatus.FAILED.value)

        record_activity(
            state, ActivityLevel.ERROR, f"Task {task.title} failed: {reason}", context, stamp,
        )
        return FailureDisposition.TERMINAL

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def cancel_task(self, state: RuntimeState, task_id: str) -> Task:
        """
        Cancel a queued or running task

        Kills the shell process of a running shell task and releases the
        agent immediately.

        Raises:
            EntityNotFoundError: Unknown task
            RuntimeValidationError: Task already finished
        """
        task = state.find_task(task_id)
        if task is None:
            raise EntityNotFoundError("Task not found.")
        if task.status in TERMINAL_TASK_STATUSES:
            raise RuntimeValidationError(f"Task is already {task.status.value}.")

        if task.status == TaskStatus.RUNNING and self.shell_killer is not None:
            self.shell_killer(task.id)

        swarm = state.find_swarm(task.swarm_id)
        self.release_agent(state, task, swarm)

        stamp = self.clock()
        task.status = TaskStatus.CANCELED
        task.ended_at = iso_from_ms(stamp)
        task.last_error = CANCELED_BY_OPERATOR
        task.assigned_agent_id = None
        task.clear_run()

        if self.metrics:
            self.metrics.record_task_transition(TaskStatus.CANCELED.value)

        record_activity(
            state,
            ActivityLevel.WARN,
            f"Task {task.title} canceled by operator.",
            {"taskId": task.id, "swarmId": task.swarm_id},
            stamp,
        )
        return task

    def retry_task(self, state: RuntimeState, task_id: str) -> Task:
        """
        Requeue a failed or canceled task; attempts are kept

        Raises:
            EntityNotFoundError: Unknown task or its swarm is gone
            RuntimeValidationError: Task is running, queued or succeeded
        """
        task = state.find_task(task_id)
        if task is None:
            raise EntityNotFoundError("Task not found.")
        if state.find_swarm(task.swarm_id) is None:
            raise EntityNotFoundError("Swarm not found.")
        if task.status == TaskStatus.RUNNING:
            raise RuntimeValidationError("Task is currently running.")
        if task.status not in RETRYABLE_TASK_STATUSES:
            raise RuntimeValidationError(
                f"Only failed or canceled tasks can be retried (task is {task.status.value})."
            )

        stamp = self.clock()
        task.status = TaskStatus.QUEUED
        task.assigned_agent_id = None
        task.started_at = None
        task.ended_at = None
        task.queued_at = iso_from_ms(stamp)
        task.last_error = ""
        task.clear_run()

        if self.metrics:
            self.metrics.record_task_transition(TaskStatus.QUEUED.value)

        record_activity(
            state,
            ActivityLevel.INFO,
            f"Task {task.title} re-queued manually.",
            {"taskId": task.id, "swarmId": task.swarm_id},
            stamp,
        )
        return task
