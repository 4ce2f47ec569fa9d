"""
FastAPI application entrypoint

Registers the /api routers and the error handlers, and runs the
runtime ticker for the lifetime of the app.
"""

import logging
import os
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.api.v1.endpoints import agents, credentials, health, metrics, runtime_state, swarms, tasks
from backend.api.v1.errors import register_exception_handlers
from backend.services.swarm_runtime import SwarmRuntime, get_swarm_runtime

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(runtime: Optional[SwarmRuntime] = None, start_ticker: bool = True) -> FastAPI:
    """
    Build the control plane app

    Args:
        runtime: Runtime to serve; defaults to the process singleton
        start_ticker: Run the periodic tick loop on startup
    """
    app = FastAPI(
        title="Swarm Control Plane",
        description="Simulated agent swarm control plane: swarms, agents, tasks and heartbeats",
        version="0.1.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    prefix = "/api"
    for module in (health, runtime_state, credentials, swarms, tasks, agents):
        app.include_router(module.router, prefix=prefix)
    app.include_router(metrics.router)

    if runtime is not None:
        app.dependency_overrides[get_swarm_runtime] = lambda: runtime

    @app.on_event("startup")
    async def startup():
        active = runtime or get_swarm_runtime()
        if start_ticker:
            active.launch_ticker()
        logger.info(f"{active.state.project_name} control plane started")

    @app.on_event("shutdown")
    async def shutdown():
        active = runtime or get_swarm_runtime()
        active.stop()

    return app


app = create_app()
