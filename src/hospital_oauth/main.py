"""
Main application module for the Hospital OAuth authorization server.

This module builds the FastAPI application: lifespan management of the
MongoDB and Redis connections used by the configured backends, request
logging, Prometheus metrics and the OAuth2 routers.
"""

from contextlib import asynccontextmanager
import time
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
import uvicorn

from hospital_oauth.config import settings
from hospital_oauth.database import db_manager
from hospital_oauth.managers.logging_manager import get_logger
from hospital_oauth.managers.redis_manager import redis_manager
from hospital_oauth.routes import metadata_router, oauth2_router
from hospital_oauth.routes.oauth2.database import MongoClientStore
from hospital_oauth.routes.oauth2.server import OAuth2Server, build_oauth2_server
from hospital_oauth.routes.oauth2.services.redis_store import RedisOAuth2Store
from hospital_oauth.utils.logging_utils import (
    RequestLoggingMiddleware,
    log_application_lifecycle,
    log_error_with_context,
)

logger = get_logger()


def _uses_mongodb(server: OAuth2Server) -> bool:
    return isinstance(server.client_store, MongoClientStore)


def _uses_redis(server: OAuth2Server) -> bool:
    return isinstance(server.store, RedisOAuth2Store)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Connects the backends the OAuth2 server was built with and closes them
    on shutdown. In-memory backends need no setup.
    """
    startup_start_time = time.time()
    server: OAuth2Server = app.state.oauth2_server
    log_application_lifecycle(
        "startup_initiated",
        {
            "app_name": settings.APP_NAME,
            "environment": "production" if settings.is_production else "development",
            "debug_mode": settings.DEBUG,
            "store_backend": type(server.store).__name__,
            "client_backend": type(server.client_store).__name__,
        },
    )

    try:
        if _uses_mongodb(server):
            await db_manager.connect()
            await server.client_store.create_indexes()
            log_application_lifecycle("database_connected", {"database_name": settings.MONGODB_DATABASE})
        if _uses_redis(server):
            if not await redis_manager.ping():
                raise ConnectionError("Redis did not answer PING")
            log_application_lifecycle("redis_connected")
    except Exception as e:
        log_error_with_context(e, {"phase": "backend_connection"}, operation="application_startup")
        raise

    logger.info(f"FastAPI application startup completed in {time.time() - startup_start_time:.3f}s")

    yield

    if _uses_redis(server):
        await redis_manager.close()
    if _uses_mongodb(server):
        await db_manager.disconnect()
    log_application_lifecycle("shutdown_completed")


def create_app(oauth2_server: Optional[OAuth2Server] = None, enable_metrics: Optional[bool] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        oauth2_server: Pre-built server (tests); built from settings otherwise
        enable_metrics: Expose Prometheus metrics; defaults to METRICS_ENABLED
    """
    app = FastAPI(
        title="Hospital OAuth Authorization Server",
        description="Multi-tenant OAuth 2.0 authorization server with hospital claims",
        version="0.1.0",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "OAuth2", "description": "Token, introspection, revocation and client administration"},
            {"name": "System", "description": "System health endpoints"},
        ],
    )
    app.state.oauth2_server = oauth2_server or build_oauth2_server(settings)
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(oauth2_router)
    app.include_router(metadata_router)

    @app.get("/health", tags=["System"], summary="Health check")
    async def health():
        server: OAuth2Server = app.state.oauth2_server
        checks = {}
        if _uses_mongodb(server):
            checks["mongodb"] = await db_manager.health_check()
        if _uses_redis(server):
            checks["redis"] = await redis_manager.ping()
        healthy = all(checks.values())
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={"status": "healthy" if healthy else "unhealthy", "checks": checks},
        )

    if settings.METRICS_ENABLED if enable_metrics is None else enable_metrics:
        instrumentator = Instrumentator(
            should_group_status_codes=True,
            should_ignore_untemplated=True,
            should_respect_env_var=False,
            should_instrument_requests_inprogress=True,
        )
        instrumentator.add().instrument(app).expose(app, include_in_schema=False, endpoint="/metrics")
        logger.info("Prometheus metrics exposed on /metrics")

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run("hospital_oauth.main:app", host=settings.HOST, port=settings.PORT, reload=settings.DEBUG, log_level="info")
