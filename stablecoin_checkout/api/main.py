"""
Main FastAPI application.

Stablecoin checkout API with:
- Request ID tracking
- Structured logging
- Error handling
- Payout dispatcher running alongside the API
"""
import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..config import Settings, get_settings
from ..database.connection import init_db
from ..monitoring.logging import setup_logging
from ..services import ServiceRegistry, build_services
from .routes import (
    catalog_router,
    merchant_router,
    monitoring_router,
    order_router,
    webhook_router,
)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Creates tables, then runs the payout dispatcher loop until shutdown.
    """
    services: ServiceRegistry = app.state.services
    settings = services.settings
    logger.info("application_startup", app_name=settings.app_name, env=settings.app_env)

    try:
        await init_db(services.engine)
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    dispatcher_task = asyncio.create_task(services.dispatcher.start())

    yield

    logger.info("application_shutdown")
    services.dispatcher.stop()
    try:
        # wait_for cancels the loop on timeout; a cancelled payout fails its order
        await asyncio.wait_for(dispatcher_task, timeout=settings.shutdown_timeout_seconds)
    except asyncio.TimeoutError:
        logger.warning(
            "payout_dispatcher_shutdown_timeout",
            timeout_seconds=settings.shutdown_timeout_seconds,
        )
    try:
        await services.close()
        logger.info("services_closed")
    except Exception as e:
        logger.error("services_shutdown_error", error=str(e))


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[ServiceRegistry] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Application settings (environment by default)
        services: Prebuilt component graph (built from settings by default)
    """
    settings = settings or get_settings()
    setup_logging(settings)

    app = FastAPI(
        title="Stablecoin Checkout",
        description=(
            "Checkout that accepts stablecoin deposits matched by exact amount "
            "and converts them to fiat payouts."
        ),
        version="0.1.0",
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None,
    )
    app.state.services = services or build_services(settings)

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """Bind a request ID to the log context and echo it in the response."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response

        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.time() - start_time,
            )
            raise

        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        logger.warning("request_validation_error", errors=_validation_errors(exc))
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": _validation_errors(exc)},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "message": "An unexpected error occurred. Please try again later.",
            },
        )

    app.include_router(catalog_router)
    app.include_router(order_router)
    app.include_router(webhook_router)
    app.include_router(merchant_router)
    app.include_router(monitoring_router)

    return app


def _validation_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "stablecoin_checkout.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
