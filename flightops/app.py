from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from flightops.application import PlanService, build_repository, configure_plan_service
from flightops.core.log import configure_logging
from flightops.core.settings import Settings, load_settings
from flightops.core.validation import ConflictError, NotFoundError, ValidationError
from flightops.infrastructure import Dispatcher, WorkerDispatchClient
from flightops.routes import fas, machines, plans, results
from flightops.workers import AssignmentScheduler, SchedulerTiming

logger = structlog.get_logger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    service: PlanService | None = None,
    dispatcher: Dispatcher | None = None,
) -> FastAPI:
    configure_logging()
    settings = settings or load_settings()
    service = service or PlanService(build_repository(settings), max_bulk_ids=settings.max_bulk_ids)
    configure_plan_service(service)
    service.sync_workers(settings.workers)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        client = dispatcher or WorkerDispatchClient(timeout=settings.dispatch_timeout)
        scheduler = AssignmentScheduler(
            service.repository,
            client,
            timing=SchedulerTiming.from_settings(settings),
        )
        app.state.scheduler = scheduler
        service.add_queue_listener(scheduler.notify)
        if settings.scheduler_enabled:
            scheduler.start()
        else:
            logger.info("scheduler.disabled")
        try:
            yield
        finally:
            service.remove_queue_listener(scheduler.notify)
            await scheduler.stop()
            if isinstance(client, WorkerDispatchClient) and client is not dispatcher:
                await client.aclose()

    app = FastAPI(title="Flight Plan Operations API", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ValidationError)
    async def validation_error(_: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse({"detail": str(exc)}, status_code=400)

    @app.exception_handler(NotFoundError)
    async def not_found(_: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse({"detail": str(exc)}, status_code=404)

    @app.exception_handler(ConflictError)
    async def conflict(_: Request, exc: ConflictError) -> JSONResponse:
        return JSONResponse({"detail": str(exc)}, status_code=409)

    app.include_router(plans.router, prefix="/api")
    app.include_router(fas.router, prefix="/api")
    app.include_router(machines.router, prefix="/api")
    app.include_router(results.router, prefix="/api")

    @app.get("/", include_in_schema=False)
    async def root() -> JSONResponse:
        """Provide a lightweight landing page for container checks."""
        return JSONResponse(
            {
                "message": "Flight Plan Operations API",
                "docs": "/docs",
                "health": "/api/machines",
            }
        )

    return app


app = create_app()
