"""
FastAPI application factory.

    uvicorn fleetsync.api.main:create_app --factory --host 0.0.0.0 --port 8000
"""
from typing import Optional

from fastapi import FastAPI

from fleetsync.api.routes import sync as sync_routes
from fleetsync.container import Services, build_services


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build and return the FastAPI app.

    Args:
        services: Prebuilt service bundle (tests); built from settings if None.
    """
    app = FastAPI(
        title="fleetsync API",
        description="Rise-X sync and synced-data backend",
        version="0.1.0",
    )
    app.state.services = services or build_services()

    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])

    return app
