"""
Prometheus Metrics API Endpoint

Exposes /metrics in Prometheus text exposition format for scraping
by Prometheus, Grafana Agent, or any compatible collector.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import Response

from backend.services.prometheus_metrics_service import get_metrics_service
from backend.services.swarm_runtime import SwarmRuntime, get_swarm_runtime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/metrics", tags=["Metrics", "Monitoring"])

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


@router.get(
    "",
    summary="Prometheus metrics endpoint",
    description=(
        "Returns swarm control plane metrics in Prometheus exposition format. "
        "Gauges are refreshed from the runtime document on every scrape."
    ),
    responses={
        200: {
            "description": "Metrics in Prometheus text format",
            "content": {"text/plain": {}},
        },
    },
)
async def get_metrics(runtime: SwarmRuntime = Depends(get_swarm_runtime)) -> Response:
    """
    Get Prometheus metrics.

    Pulls the current runtime counts into the gauges, then returns all
    metrics in Prometheus text format.
    """
    service = runtime.metrics or get_metrics_service()
    service.update_runtime_gauges(await runtime.metrics_snapshot())
    content = service.generate_metrics()
    return Response(content=content, media_type=PROMETHEUS_CONTENT_TYPE)
