"""REST adapter (FastAPI) over the workflow governor."""

from workflow_governor.server.app import create_app

__all__ = ["create_app"]
