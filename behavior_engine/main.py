"""
Behavior Engine API

A FastAPI application that ingests visitor behavior events, keeps a live model of
each session with its segment and personalization flags, assigns sessions to
experiment variants, and reports experiment and behavior analytics.
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Optional
import logging
import time

from behavior_engine.config import settings
from behavior_engine.errors import EngineError
from behavior_engine.routers import analytics, assignments, events, experiments, sessions, variants
from behavior_engine.service import EngagementService

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def create_app(service: Optional[EngagementService] = None) -> FastAPI:
    """
    Build the application around a service container.

    When no service is given one is built from settings. The lifespan starts it
    on startup and drains it on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Behavior Engine API...")
        app.state.service = service or EngagementService(settings)
        app.state.service.start()
        logger.info("Database initialized")
        yield
        logger.info("Shutting down Behavior Engine API...")
        app.state.service.shutdown()

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description=settings.api_description,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_timing(request: Request, call_next):
        """Add request timing header for performance monitoring."""
        start_time = time.time()
        response = await call_next(request)
        response.headers["X-Process-Time"] = str(time.time() - start_time)
        return response

    @app.get("/health", tags=["health"])
    async def health_check(request: Request):
        """
        Health check endpoint for load balancers and monitoring.
        Includes in-memory session count and event batcher statistics.
        """
        return {
            "status": "healthy",
            "version": settings.api_version,
            "service": "behavior-engine",
            **request.app.state.service.health()
        }

    app.include_router(events.router)
    app.include_router(sessions.router)
    app.include_router(assignments.router)
    app.include_router(experiments.router)
    app.include_router(variants.router)
    app.include_router(analytics.router)

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError):
        """Typed engine errors map to their HTTP status."""
        if exc.status_code >= 500:
            logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """
        Global exception handler for unexpected errors.
        Logs the error and returns a sanitized response.
        """
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "An internal error occurred. Please try again later."}
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
