"""CI Tool Provisioner - FastAPI application."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ci_provisioner.config import Settings, settings as default_settings
from ci_provisioner.api.v1.router import v1_router
from ci_provisioner.api.v1.health import router as health_root_router
from ci_provisioner.errors import NotFoundError, ValidationError
from ci_provisioner.hosts import FileHostsProvider, KnownHostsProvider, StaticHostsProvider
from ci_provisioner.jobs.broker import LogStreamBroker
from ci_provisioner.jobs.dispatcher import JobDispatcher
from ci_provisioner.jobs.registry import JobRegistry
from ci_provisioner.jobs.retention import RetentionSweeper
from ci_provisioner.jobs.runners import JobRunner, build_runner
from ci_provisioner.logging_config import setup_logging

logger = logging.getLogger(__name__)


def build_hosts(settings: Settings) -> KnownHostsProvider:
    if settings.known_hosts_file:
        return FileHostsProvider(settings.known_hosts_file)
    return StaticHostsProvider(settings.known_hosts)


def create_app(
    settings: Optional[Settings] = None,
    runner: Optional[JobRunner] = None,
    hosts: Optional[KnownHostsProvider] = None,
) -> FastAPI:
    """Build the application. Components are created per app, never shared."""
    settings = settings or default_settings
    if runner is None:
        runner = build_runner(
            settings.runner_mode,
            command=settings.runner_command,
            step_delay=settings.simulated_step_delay,
        )
    hosts = hosts or build_hosts(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic."""
        logger.info("Starting CI Tool Provisioner on port %d", settings.service_port)
        logger.info("Runner: %s", type(runner).__name__)

        registry = JobRegistry(hosts)
        broker = LogStreamBroker(max_subscriber_buffer=settings.log_subscriber_queue_size)
        dispatcher = JobDispatcher(
            registry,
            broker,
            runner,
            max_concurrent=settings.max_concurrent_runners,
            shutdown_grace=settings.runner_shutdown_grace_seconds,
        )
        await dispatcher.start()

        sweeper = RetentionSweeper(registry, broker, settings.job_retention_hours)
        if settings.job_retention_hours > 0:
            await sweeper.start(settings.retention_sweep_interval_seconds)

        app.state.settings = settings
        app.state.hosts = hosts
        app.state.registry = registry
        app.state.broker = broker
        app.state.dispatcher = dispatcher

        yield

        logger.info("Shutting down CI Tool Provisioner")
        await sweeper.stop()
        await dispatcher.stop()

    app = FastAPI(
        title="CI Tool Provisioner",
        description="Provision Jenkins, Nexus, Harbor and SonarQube onto CI hosts",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    # Mount routers
    app.include_router(health_root_router, tags=["health"])  # GET /health at root
    app.include_router(v1_router)  # All /api/v1/* endpoints
    return app


def run() -> None:
    """Console entry point: configure logging and serve with uvicorn."""
    import uvicorn

    setup_logging(default_settings.log_level, default_settings.log_format)
    uvicorn.run(
        create_app(),
        host="0.0.0.0",
        port=default_settings.service_port,
        log_config=None,
    )


app = create_app()
