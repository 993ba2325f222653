"""
Main FastAPI application.

Order service API with:
- CORS configuration
- Domain error to status code mapping
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Optional, Type

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from orderflow import __version__
from orderflow.config import Settings, get_settings
from orderflow.core.errors import (
    ConflictError,
    GatewayError,
    InsufficientStockError,
    InvalidStateTransitionError,
    OrderFlowError,
    OrderNotFoundError,
    OrderValidationError,
    PaymentMismatchError,
    PaymentNotFoundError,
)
from orderflow.database.connection import init_db
from orderflow.integrations.webhook_handler import WebhookError
from orderflow.monitoring.logging import setup_logging
from orderflow.services import ServiceContainer, build_services
from orderflow.workers.order_cleanup import run_cleanup
from orderflow.workers.reservation_sweeper import run_sweeper

from .routes import (
    inventory_router,
    monitoring_router,
    order_router,
    payment_router,
    webhook_router,
)

logger = structlog.get_logger(__name__)

ERROR_STATUS_CODES: Dict[Type[OrderFlowError], int] = {
    OrderValidationError: status.HTTP_400_BAD_REQUEST,
    OrderNotFoundError: status.HTTP_404_NOT_FOUND,
    PaymentNotFoundError: status.HTTP_404_NOT_FOUND,
    PaymentMismatchError: status.HTTP_403_FORBIDDEN,
    InvalidStateTransitionError: status.HTTP_409_CONFLICT,
    ConflictError: status.HTTP_409_CONFLICT,
    InsufficientStockError: status.HTTP_409_CONFLICT,
    GatewayError: status.HTTP_502_BAD_GATEWAY,
}


def status_code_for(exc: OrderFlowError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_app(
    services: Optional[ServiceContainer] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        services: Pre-built services (tests); built from settings when None
        settings: Application settings; taken from ``services`` or the environment

    Returns:
        FastAPI: Configured application
    """
    settings = settings or (services.settings if services is not None else get_settings())
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            env=settings.app_env,
            test_mode=settings.is_test_mode,
        )
        container = services
        if container is None:
            container = build_services(settings)
            await init_db(container.engine)
            logger.info("database_initialized")
        app.state.services = container
        await container.start()

        stop = asyncio.Event()
        tasks: List[asyncio.Task] = []
        if settings.run_background_workers:
            tasks = [
                asyncio.create_task(run_sweeper(container, stop)),
                asyncio.create_task(run_cleanup(container, stop)),
            ]

        yield

        logger.info("application_shutdown")
        stop.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for task, result in zip(tasks, results):
            if isinstance(result, BaseException):
                logger.error(
                    "background_task_failed",
                    task=task.get_name(),
                    error=str(result),
                    error_type=type(result).__name__,
                )
        await container.stop()

    app = FastAPI(
        title="Order Flow",
        description=(
            "Order, payment and inventory reconciliation service: cart checkout with "
            "stock reservations, hosted payment checkout, webhook reconciliation, "
            "refunds and fulfilment tracking."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    if services is not None:
        app.state.services = services

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """
        Add request ID to all requests for tracing.

        Also adds timing information and structured logging context.
        """
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

    @app.exception_handler(OrderFlowError)
    async def order_flow_exception_handler(request: Request, exc: OrderFlowError) -> JSONResponse:
        status_code = status_code_for(exc)
        log = logger.error if status_code >= 500 else logger.info
        log("api_request_rejected", error=exc.code, message=str(exc), status_code=status_code)
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(WebhookError)
    async def webhook_exception_handler(request: Request, exc: WebhookError) -> JSONResponse:
        logger.warning("api_webhook_rejected", error=exc.code, message=str(exc))
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": exc.code, "message": str(exc)},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "internal_error",
                "message": "An unexpected error occurred. Please try again later.",
            },
        )

    app.include_router(order_router)
    app.include_router(payment_router)
    app.include_router(inventory_router)
    app.include_router(webhook_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> Dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "orderflow.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
