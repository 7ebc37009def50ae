"""FastAPI application setup"""
import logging
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from talentika_progression import exceptions as errors
from talentika_progression.api.middleware import setup_cors, setup_metrics, setup_rate_limiting
from talentika_progression.api.metrics_routes import router as metrics_router
from talentika_progression.api.routes import router
from talentika_progression.config import validate_config
from talentika_progression.db.connection import db
from talentika_progression.services.container import init_container
from talentika_progression.services.progression_service import ProgressionService

logger = logging.getLogger(__name__)

# Most specific class wins (lookup walks the MRO)
ERROR_STATUS_CODES = {
    errors.ValidationError: 400,
    errors.InsufficientBalanceError: 402,
    errors.RecordNotFoundError: 404,
    errors.ConflictError: 409,
    errors.DuplicateEventError: 409,
    errors.AlreadyStartedError: 409,
    errors.AlreadyCompletedError: 409,
    errors.NotStartedError: 409,
    errors.InvalidTransitionError: 409,
    errors.OutOfStockError: 410,
    errors.RequirementsNotMetError: 422,
    errors.ChallengeClosedError: 423,
    errors.ChallengeFullError: 423,
    errors.OperationTimeoutError: 504,
    errors.ConnectionError: 503,
    errors.OutOfOrderEventError: 500,
    errors.DatabaseError: 500,
    errors.ConfigurationError: 500,
}


def status_code_for(exc: errors.ProgressionError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for FastAPI application"""
    logger.info("Starting API server...")
    container = None

    if getattr(app.state, "progression_service", None) is None:
        validate_config()
        container = init_container(db)
        if container.storage_backend == "postgres":
            await db.init_pool()
            logger.info("Database pool initialized")
        app.state.progression_service = container.progression_service

    yield

    logger.info("Shutting down API server...")
    if container is not None:
        await container.close()
    if db.is_initialized:
        await db.close_pool()
        logger.info("Database pool closed")


def create_api_application(service: Optional[ProgressionService] = None) -> FastAPI:
    """
    Create and configure FastAPI application

    Args:
        service: Pre-built engine facade; when omitted the lifespan builds
            one from configuration
    """
    app = FastAPI(
        title="Talentika Progression API",
        description="XP, levels, streaks, quests, challenges and reward store",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.progression_service = service

    # Setup middleware
    setup_cors(app)
    setup_rate_limiting(app)
    setup_metrics(app)

    # Include routes
    app.include_router(router)
    app.include_router(metrics_router)

    @app.exception_handler(errors.ProgressionError)
    async def progression_exception_handler(request: Request, exc: errors.ProgressionError):
        return JSONResponse(status_code=status_code_for(exc), content=exc.to_dict())

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "detail": str(exc)}
        )

    logger.info("FastAPI application created")

    return app
