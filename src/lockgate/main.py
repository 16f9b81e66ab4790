"""LockGate main application."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from lockgate import __version__
from lockgate.api import router
from lockgate.api.deps import validate_auth_config
from lockgate.config import Settings, settings as default_settings
from lockgate.middleware.trace import trace_id_middleware
from lockgate.realtime.gateway import router as realtime_router
from lockgate.services import LockServices
from lockgate.tasks import LeaseSweeper, MetricsPusher

logger = logging.getLogger("lockgate")


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[LockServices] = None,
    run_background_tasks: bool = True,
) -> FastAPI:
    """Build the FastAPI application around an explicit service graph."""
    settings = settings or default_settings
    services = services or LockServices.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        logger.info("Starting LockGate server...")
        logger.info(f"Environment: {settings.env.value}")
        logger.info(
            f"Lease duration: {settings.lease_duration_seconds}s, "
            f"heartbeat interval: {settings.heartbeat_interval_seconds}s"
        )

        validate_auth_config(settings)

        await services.database.init()
        logger.info("Database initialized")

        background = []
        if run_background_tasks:
            background = [LeaseSweeper(services), MetricsPusher(services)]
            for task in background:
                await task.start()
            logger.info("Lease sweep and metrics push tasks started")

        yield

        logger.info("Shutting down LockGate server...")
        for task in background:
            await task.stop()
        await services.hub.close_all()
        await services.database.close()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="LockGate",
        description="Lease-based record locking with realtime lock notifications",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services

    # Trace ID middleware (correlation across logs)
    app.middleware("http")(trace_id_middleware)

    # Explicit allowlist, no wildcards with credentials
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=settings.cors_allowed_methods,
        allow_headers=settings.cors_allowed_headers,
    )

    app.include_router(router)
    app.include_router(realtime_router)
    return app


def main():
    """Entry point for the application."""
    configure_logging(default_settings)
    uvicorn.run(
        "lockgate.main:create_app",
        factory=True,
        host=default_settings.host,
        port=default_settings.port,
        reload=default_settings.debug,
        log_level=default_settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
