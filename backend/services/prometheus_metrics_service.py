"""
Prometheus Metrics Service

Central metrics registry for the swarm control plane. Counters are
pushed by the lifecycle engine and heartbeat ticker as transitions
happen; gauges are refreshed from the view metrics right before each
scrape. Output is Prometheus text format via generate_metrics().
"""

import logging
import platform
import threading
from typing import Any, Dict, Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

logger = logging.getLogger(__name__)

# Singleton instance
_metrics_service_instance: Optional["PrometheusMetricsService"] = None
_singleton_lock = threading.Lock()

# View metric key -> gauge suffix
GAUGE_FIELDS: Dict[str, str] = {
    "totalSwarms": "swarms",
    "liveSwarms": "live_swarms",
    "totalAgents": "agents",
    "activeAgents": "active_agents",
    "blockedAgents": "blocked_agents",
    "staleHeartbeats": "stale_heartbeats",
    "queuedTasks": "queued_tasks",
    "runningTasks": "running_tasks",
    "succeededTasks": "succeeded_tasks",
    "failedTasks": "failed_tasks",
}


class PrometheusMetricsService:
    """
    Prometheus Metrics Service

    Usage:
        service = get_metrics_service()
        service.record_task_transition("succeeded")
        service.update_runtime_gauges(view["metrics"])
        output = service.generate_metrics()
    """

    def __init__(
        self,
        namespace: str = "swarm",
        registry: Optional[CollectorRegistry] = None,
    ):
        self._namespace = namespace
        self._registry = registry or CollectorRegistry(auto_describe=True)
        self._lock = threading.Lock()

        self._define_metrics()

    def _define_metrics(self) -> None:
        """Define all Prometheus metrics on the registry."""
        ns = self._namespace
        reg = self._registry

        # ── Counters ──

        self._task_transitions_total = Counter(
            f"{ns}_task_transitions_total",
            "Task status transitions",
            ["status"],
            registry=reg,
        )

        self._obstacles_total = Counter(
            f"{ns}_obstacles_total",
            "Obstacles hit by agents",
            ["source", "disposition"],
            registry=reg,
        )

        self._provider_fallbacks_total = Counter(
            f"{ns}_provider_fallbacks_total",
            "Provider fallbacks applied after an obstacle",
            ["source"],
            registry=reg,
        )

        self._heartbeats_total = Counter(
            f"{ns}_heartbeats_total",
            "Agent heartbeat pulses",
            registry=reg,
        )

        # ── Histograms ──

        self._shell_run_duration_seconds = Histogram(
            f"{ns}_shell_run_duration_seconds",
            "Wall-clock duration of shell-mode task runs",
            ["result"],
            registry=reg,
        )

        # ── Gauges ──

        self._runtime_gauges: Dict[str, Gauge] = {
            key: Gauge(f"{ns}_{suffix}", f"Current {suffix.replace('_', ' ')}", registry=reg)
            for key, suffix in GAUGE_FIELDS.items()
        }

        # ── Info ──

        self._build_info = Info(
            f"{ns}_build",
            "Build information",
            registry=reg,
        )
        self._build_info.info({
            "version": "0.1.0",
            "python_version": platform.python_version(),
        })

    # ── Gauges (pulled from the view projector) ──

    def update_runtime_gauges(self, metrics: Dict[str, Any]) -> None:
        """
        Refresh gauges from a view-model metrics dict.

        Args:
            metrics: Output of compute_metrics()
        """
        with self._lock:
            for key, gauge in self._runtime_gauges.items():
                value = metrics.get(key)
                if isinstance(value, (int, float)):
                    gauge.set(value)

    # ── Counter Record Methods (Push Model) ──

    def record_task_transition(self, status: str) -> None:
        """Record a task entering a status. status: running/succeeded/failed/queued/canceled"""
        self._task_transitions_total.labels(status=status).inc()

    def record_obstacle(self, source: str, disposition: str) -> None:
        """Record an obstacle. source: heartbeat/task. disposition: fallback/blocked/terminal"""
        self._obstacles_total.labels(source=source, disposition=disposition).inc()

    def record_provider_fallback(self, source: str) -> None:
        """Record a provider switch. source: heartbeat/task"""
        self._provider_fallbacks_total.labels(source=source).inc()

    def record_heartbeat(self) -> None:
        self._heartbeats_total.inc()

    # ── Histogram Observation Methods ──

    def observe_shell_run(self, result: str, duration_seconds: float) -> None:
        """Observe a shell run. result: success/failure/timeout"""
        self._shell_run_duration_seconds.labels(result=result).observe(duration_seconds)

    # ── Output ──

    def generate_metrics(self) -> str:
        """
        Generate Prometheus text format metrics output.

        Returns:
            Prometheus exposition format string
        """
        return generate_latest(self._registry).decode("utf-8")


def get_metrics_service() -> PrometheusMetricsService:
    """
    Get the singleton PrometheusMetricsService instance.

    Returns:
        The shared PrometheusMetricsService instance
    """
    global _metrics_service_instance
    if _metrics_service_instance is None:
        with _singleton_lock:
            if _metrics_service_instance is None:
                _metrics_service_instance = PrometheusMetricsService()
    return _metrics_service_instance
