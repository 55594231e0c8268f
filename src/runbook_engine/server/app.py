"""FastAPI app factory.

Endpoints are thin wrappers over :class:`runbook_engine.service.RunSession`.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from runbook_engine import __version__
from runbook_engine.config import EngineSettings
from runbook_engine.server.config import ServerSettings
from runbook_engine.server.router import router as runs_router
from runbook_engine.service import RunRegistry

logger = logging.getLogger(__name__)


def create_app(
    settings: EngineSettings | None = None,
    *,
    server_settings: ServerSettings | None = None,
    registry: RunRegistry | None = None,
) -> FastAPI:
    settings = settings or EngineSettings()
    server_settings = server_settings or ServerSettings()

    app = FastAPI(
        title="Runbook Engine",
        version=__version__,
        description="REST API for starting, advancing and resuming runbook workflow runs.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    # Expose settings and live runs for request handlers.
    app.state.settings = settings
    app.state.registry = registry or RunRegistry(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=server_settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(runs_router, prefix="/api")
    logger.info("App created", extra={"runs_dir": str(settings.runs_dir)})
    return app
