"""FastAPI entry-point exposing runtime controls."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Callable

import uvicorn
from fastapi import FastAPI, Request

from agent_runtime.api.errors import router as errors_router
from agent_runtime.api.recovery import router as recovery_router
from agent_runtime.api.routes import router as agents_router
from agent_runtime.config import Config, config, configure_logging
from agent_runtime.orchestration.orchestrator import Orchestrator
from agent_runtime.runtime import get_orchestrator


def create_app(orchestrator_factory: Callable[[], Orchestrator] = get_orchestrator) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifecycle manager for FastAPI application."""
        orchestrator = orchestrator_factory()
        app.state.orchestrator = orchestrator
        await orchestrator.start()
        yield
        await orchestrator.shutdown()

    app = FastAPI(title="Agent Runtime", lifespan=lifespan)
    app.include_router(agents_router)
    app.include_router(errors_router)
    app.include_router(recovery_router)

    @app.get("/health")
    async def health(request: Request) -> dict:
        return request.app.state.orchestrator.health()

    return app


configure_logging(config.log_level)
app = create_app()


def serve(settings: Config = config) -> None:
    """Serve the API with uvicorn on the configured address."""
    uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    serve()
