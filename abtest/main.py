"""Main FastAPI application."""
from fastapi import FastAPI
from contextlib import asynccontextmanager
from typing import Optional

from abtest.config import Settings, get_settings
from abtest.middleware.logging import LoggingMiddleware, get_logger
from abtest.middleware.errors import register_error_handlers
from abtest.api import experiments, health
from abtest.database import SessionLocal, init_database
from abtest.services.assignment_cache import get_assignment_cache
from abtest.services.experiments import ExperimentService
from abtest.services.significance import SignificanceCalculator
from abtest.services.sql_store import SqlExperimentStore

logger = get_logger()


def build_experiment_service(settings: Settings) -> ExperimentService:
    """Wire the SQL store, optional Redis cache and calculator from settings."""
    init_database()
    logger.info("database_tables_verified")

    cache = get_assignment_cache(settings.redis_url, ttl=settings.assignment_cache_ttl)
    if cache:
        logger.info("assignment_cache_enabled", ttl=settings.assignment_cache_ttl)

    return ExperimentService(
        store=SqlExperimentStore(SessionLocal),
        calculator=SignificanceCalculator(min_sample_size=settings.min_sample_size),
        cache=cache,
        default_confidence_level=settings.default_confidence_level,
        default_page_size=settings.default_page_size
    )


def create_app(service: Optional[ExperimentService] = None) -> FastAPI:
    """
    Create the application.

    Args:
        service: Pre-built service (tests pass one backed by the in-memory
            store). When omitted, one is built from settings on startup.
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build the experiment service once per process."""
        app.state.experiment_service = service or build_experiment_service(settings)
        logger.info("experiment_service_ready", store=type(app.state.experiment_service.store).__name__)

        yield  # App runs here

        logger.info("shutting_down", service=settings.app_name)

    app = FastAPI(
        title="abtest",
        description="Experimentation engine: deterministic assignment, conversion tracking and significance testing",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan
    )

    # Logging middleware
    app.add_middleware(LoggingMiddleware)
    register_error_handlers(app)

    # Include routers
    app.include_router(health.router, tags=["health"])
    app.include_router(experiments.router, tags=["experiments"])

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "service": settings.app_name,
            "version": "0.1.0",
            "docs": "/docs" if settings.debug else "disabled",
            "endpoints": {
                "health": "/health",
                "experiments": "/experiments"
            }
        }

    return app


app = create_app()


# uvicorn abtest.main:app --reload
