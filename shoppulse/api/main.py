"""FastAPI application main module.

Defines the application factory for the ShopPulse service: health and status
endpoints, the metrics endpoint, exception handlers that turn
``ShopPulseException`` subclasses into JSON error bodies, and a lifespan that
starts and stops the job queue workers and the scheduler.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from shoppulse import __version__
from shoppulse.api.logging_config import RequestLoggingMiddleware, setup_logging
from shoppulse.api.metrics import metrics_service
from shoppulse.api.routes import activity, insights, recommend
from shoppulse.config import Settings, get_settings
from shoppulse.engine import RecommendationEngine, build_engine
from shoppulse.exceptions import ShopPulseException

# Configure module logger
logger = logging.getLogger(__name__)


def _record_job(job, ok: bool, duration: float) -> None:
    metrics_service.record_job(job.name, ok, duration)


def create_app(
    engine: Optional[RecommendationEngine] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        engine: Pre-built engine (tests pass one over a seeded store).
        settings: Settings used to build the engine when none is given.

    Returns:
        Configured FastAPI application.
    """
    settings = settings or (engine.settings if engine else get_settings())
    if engine is None:
        engine = build_engine(
            settings,
            job_listener=_record_job,
            scheduler_listener=metrics_service.record_job,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level)
        await engine.start()
        logger.info(f"{settings.app_name} API started")
        yield
        await engine.stop()
        logger.info(f"{settings.app_name} API stopped")

    app = FastAPI(
        title="ShopPulse API",
        description="Behavioural product recommendation service",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.settings = settings

    app.add_middleware(RequestLoggingMiddleware)

    @app.exception_handler(ShopPulseException)
    async def shoppulse_exception_handler(
        request: Request, exc: ShopPulseException
    ) -> JSONResponse:
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            exc.message,
            extra={"path": str(request.url.path), "error_code": exc.error_code, "details": exc.details},
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.error_code, "message": exc.message, "details": exc.details},
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            f"Unhandled error: {exc}",
            extra={"path": str(request.url.path), "error_type": type(exc).__name__},
            exc_info=exc,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "internal_error",
                "message": "An unexpected error occurred",
                "details": {"error_type": type(exc).__name__},
            },
        )

    app.include_router(recommend.router)
    app.include_router(activity.router)
    app.include_router(insights.router)

    @app.get("/ping")
    def ping() -> Dict[str, str]:
        """Health check endpoint.

        Example:
            >>> response = client.get("/ping")
            >>> assert response.json() == {"status": "ok"}
        """
        return {"status": "ok"}

    @app.get("/status")
    def engine_status() -> Dict[str, Any]:
        """Queue depth, job totals, model training times and the cron schedule."""
        return engine.status()

    @app.get("/metrics")
    def metrics() -> Dict[str, Any]:
        return metrics_service.get_metrics()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "shoppulse.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
