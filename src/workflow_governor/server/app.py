"""FastAPI app factory.

Endpoints are thin wrappers over :class:`WorkflowGovernor`.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from workflow_governor import __version__
from workflow_governor.core.governor import WorkflowGovernor
from workflow_governor.server.config import ServerSettings
from workflow_governor.server.workflows_router import router as workflows_router

logger = logging.getLogger(__name__)


def create_app(
    governor: WorkflowGovernor | None = None, settings: ServerSettings | None = None
) -> FastAPI:
    settings = settings or ServerSettings()
    if governor is None:
        governor = WorkflowGovernor()
        governor.config.setup_logging()

    app = FastAPI(
        title="Workflow Governor",
        version=__version__,
        description="REST API over governed workflow sessions, snapshots and rules.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    # Expose settings and the governor for request handlers.
    app.state.settings = settings
    app.state.governor = governor

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(workflows_router, prefix="/api")
    logger.info("Workflow API ready")
    return app
