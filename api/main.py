import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from core.config.settings import Settings
from core.config.validator import COORDINATOR, validate_startup_configuration
from core.logging import get_api_logger_safe, configure_logging
from app.containers import CoordinatorContainer
from api.middleware.request_ids import RequestIdMiddleware
from api.middleware.error_handling import ErrorHandlingMiddleware, register_exception_handlers
from api.routers import accounts, agent, relay, subscriptions, system
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

logger = get_api_logger_safe("api.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    logger.info("Starting CopyTrader coordinator")
    container = app.state.container

    db_manager = container.db_manager()
    try:
        await db_manager.init()
        await db_manager.wait_for_ready(timeout=30)
        logger.info("Database initialized and verified ready")
    except Exception as e:
        logger.error("Failed to initialize database", error=str(e))
        raise

    yield

    logger.info("Shutting down CopyTrader coordinator")
    try:
        await db_manager.shutdown()
    except Exception as e:
        logger.error("Error during coordinator shutdown", error=str(e))


def _build_uvicorn_log_config() -> dict:
    """Return a minimal log config that cooperates with our structlog handlers.

    Only levels and propagation are set here. Uvicorn applies this dictConfig
    at startup, and explicit handler lists would clear the handlers our
    logging setup attached to the uvicorn/fastapi loggers.
    """
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "loggers": {
            "uvicorn": {"level": "INFO", "propagate": False},
            "uvicorn.error": {"level": "INFO", "propagate": False},
            "uvicorn.access": {"level": "INFO", "propagate": False},
            "fastapi": {"level": "INFO", "propagate": False},
        },
    }


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Creates and configures the coordinator FastAPI application"""
    container = CoordinatorContainer()
    if settings is not None:
        container.settings.override(settings)
    settings = container.settings()

    app = FastAPI(
        title="CopyTrader Coordinator API",
        version=settings.version,
        description="""
        Control plane for per-tenant trading terminals and the trade relay.

        - **Agent**: pending-launch and stop queues, status reports, heartbeat
          (shared secret in `x-agent-secret`)
        - **Relay**: `POST /api/master/push`, `GET /api/slave/fetch/{code}`
          used by the trading plugin
        - **Owners**: account linking, start/stop/unlink, subscription approval
          (bearer token)
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.container = container

    # Configure logging for API context (idempotent)
    configure_logging(settings)

    app.state.prom_registry = container.prometheus_registry()

    container.wire(modules=["api.dependencies"])

    register_exception_handlers(app)

    # Add middleware (last added is outermost)
    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(RequestIdMiddleware)

    cors_origins = settings.api.cors_origins
    if settings.environment == "production" and "*" in cors_origins:
        raise ValueError(
            "CORS wildcard (*) not allowed in production. "
            "Specify exact origins in API__CORS_ORIGINS environment variable."
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=settings.api.cors_credentials,
        allow_methods=settings.api.cors_methods,
        allow_headers=settings.api.cors_headers,
    )

    app.include_router(agent.router, prefix="/api/v1")
    app.include_router(accounts.router, prefix="/api/v1")
    app.include_router(subscriptions.router, prefix="/api/v1")
    app.include_router(system.router, prefix="/api/v1")
    # Plugin-facing paths are fixed by the compiled plugin
    app.include_router(relay.router, prefix="/api")

    @app.get("/health", tags=["Health"])
    def health_check():
        coordinator = container.coordinator_service()
        return {
            "status": "healthy",
            "service": "copytrader-coordinator",
            "version": settings.version,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "web_only": not coordinator.agent_configured,
            "agent_connected": coordinator.agent_connected(),
        }

    # Prometheus metrics endpoint
    @app.get("/metrics", tags=["Monitoring"])
    def metrics():
        try:
            data = generate_latest(app.state.prom_registry)
            return Response(content=data, media_type=CONTENT_TYPE_LATEST)
        except Exception as e:
            logger.error("Failed to generate Prometheus metrics", error=str(e))
            # Minimal failure response to prevent scraper from crashing
            return Response(content=b"", media_type=CONTENT_TYPE_LATEST)

    return app


def run():
    """Main function to run the coordinator API server"""
    settings = Settings()
    configure_logging(settings)
    if not validate_startup_configuration(settings, COORDINATOR):
        raise SystemExit(1)

    app = create_app(settings)
    uvicorn.run(
        app,
        host=settings.coordinator.host,
        port=settings.coordinator.port,
        log_level="info",
        access_log=True,
        log_config=_build_uvicorn_log_config(),
        reload=False
    )


if __name__ == "__main__":
    run()
