"""FastAPI application entry point and lifecycle management."""

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from author_billing.logging_config import configure_logging_from_env, get_logger
from author_billing.middleware import ContextMiddleware, RequestLoggingMiddleware
from author_billing.repositories.subscription_store import CounterConsistencyError

# Initialize logger
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager.

    Seeds author pricing, starts the background sweeper and shuts the
    collaborators down on exit.
    """
    # Startup
    logger.info("billing_starting", version="0.1.0")

    from author_billing.config import get_config
    from author_billing.repositories.subscription_store import get_subscription_store
    from author_billing.services.event_dispatcher import get_event_dispatcher, reset_event_dispatcher
    from author_billing.services.expiration_sweeper import get_expiration_sweeper, reset_expiration_sweeper
    from author_billing.services.revenue_accountant import get_revenue_accountant
    from author_billing.services.subscription_engine import get_subscription_engine, reset_subscription_engine
    from author_billing.services.time_controller import get_time_controller

    try:
        config = get_config()
        seeded = get_subscription_store().seed_authors(config.authors)
        logger.info("authors_seeded", count=seeded)

        # Handlers run in the threadpool; build shared services before the first request
        get_time_controller()
        get_subscription_engine()
        get_revenue_accountant()

        dispatcher = get_event_dispatcher()
        if dispatcher.is_enabled():
            logger.info("pubsub_enabled", message="Event dispatcher initialized and ready")
        else:
            logger.info(
                "pubsub_disabled", message="Event dispatcher is disabled or failed to initialize"
            )

        if config.sweeper_settings.enabled:
            get_expiration_sweeper().start()
        else:
            logger.info("sweeper_disabled")

        logger.info("billing_started", status="ready")
        yield
    finally:
        # Shutdown
        logger.info("billing_shutting_down")
        reset_expiration_sweeper()
        reset_subscription_engine()
        reset_event_dispatcher()
        logger.info("billing_stopped")


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    configure_logging_from_env()

    app = FastAPI(
        title="Author Subscription Billing",
        description="Subscription billing and lifecycle engine for per-author reader subscriptions",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Allow all origins for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    include_request_details = os.getenv("LOG_REQUEST_DETAILS", "true").lower() == "true"
    app.add_middleware(RequestLoggingMiddleware, include_request_details=include_request_details)
    app.add_middleware(ContextMiddleware)

    # Register routers
    from author_billing.api.control import router as control_router
    from author_billing.api.subscriptions import router as subscriptions_router

    app.include_router(subscriptions_router)
    app.include_router(control_router)

    @app.get("/")
    async def root() -> dict[str, str]:
        """Health check endpoint."""
        logger.debug("root_endpoint_called")
        return {
            "service": "author-billing",
            "status": "running",
            "version": "0.1.0",
        }

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Detailed health check including the virtual clock."""
        from author_billing.repositories.subscription_store import get_subscription_store
        from author_billing.services.event_dispatcher import get_event_dispatcher
        from author_billing.services.expiration_sweeper import get_expiration_sweeper
        from author_billing.services.time_controller import get_time_controller

        store = get_subscription_store()
        return {
            "status": "healthy",
            "pubsub": "connected" if get_event_dispatcher().is_enabled() else "disabled",
            "sweeper": "running" if get_expiration_sweeper().running else "stopped",
            "authors": f"loaded ({len(store.get_all_authors())} authors)",
            "subscriptions": str(store.count()),
            "time": get_time_controller().now().isoformat(),
        }

    @app.exception_handler(CounterConsistencyError)
    async def consistency_exception_handler(request, exc: CounterConsistencyError) -> JSONResponse:
        """A transition would have corrupted subscriber counts and was rolled back."""
        logger.critical(
            "counter_consistency_violation",
            error=str(exc),
            path=request.url.path,
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "consistency_error",
                "message": "The operation was rejected to keep subscriber counts consistent; nothing was changed",
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            },
        )

    logger.info("app_created", endpoints=len(app.routes))
    return app


# Create app instance
app = create_app()
