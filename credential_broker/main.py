"""Credential broker server.

Obtains and maintains Google Drive/Docs access for users of the application:
user-delegated OAuth with refresh, and the service account as fallback.
Entry point: ``uvicorn credential_broker.main:create_app --factory``
"""

from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger
from slowapi.errors import RateLimitExceeded
from starlette.middleware.sessions import SessionMiddleware

from credential_broker import api
from credential_broker.broker import CredentialBroker
from credential_broker.config import Settings, get_settings
from credential_broker.database import (
    STATES_COLLECTION,
    TOKENS_COLLECTION,
    FirestoreStore,
    create_firestore_client,
)
from credential_broker.logging import configure_logging
from credential_broker.rate_limit import limiter, rate_limit_exceeded_handler
from credential_broker.store import InMemoryStore, JsonFileStore, KeyValueStore


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global handler for unhandled exceptions."""
    logger.exception(
        "Unhandled exception",
        extra={"path": request.url.path, "error": type(exc).__name__},
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


def create_backends(settings: Settings) -> tuple[KeyValueStore, KeyValueStore, object | None]:
    """Create (token_backend, state_backend, closeable client) for the configured store."""
    if settings.token_store_backend == "firestore":
        client = create_firestore_client(settings.google_cloud_project, settings.firestore_database)
        return (
            FirestoreStore(client, TOKENS_COLLECTION),
            FirestoreStore(client, STATES_COLLECTION),
            client,
        )
    if settings.token_store_backend == "file":
        # State tokens are short-lived; only token records need to survive restarts
        return JsonFileStore(Path(settings.token_store_path)), InMemoryStore(), None
    return InMemoryStore(), InMemoryStore(), None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings: Settings = app.state.settings

    logger.info(
        f"Starting credential broker on port {settings.port}",
        extra={"token_store": settings.token_store_backend},
    )

    token_backend, state_backend, client = create_backends(settings)
    broker = CredentialBroker.from_settings(
        settings, token_backend=token_backend, state_backend=state_backend
    )
    app.state.broker = broker

    yield

    await broker.close()
    if client is not None:
        client.close()
    logger.info("Shutting down credential broker")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    configure_logging(
        is_production=settings.is_production,
        log_level=settings.log_level,
    )

    app = FastAPI(
        title="Credential Broker",
        description="Google Drive/Docs credential broker (OAuth2 and service account)",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
    )
    app.state.settings = settings

    app.add_exception_handler(Exception, unhandled_exception_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    app.state.limiter = limiter

    # Signed cookie sessions; the login system stores "user_id" here
    app.add_middleware(
        SessionMiddleware,  # type: ignore[arg-type]
        secret_key=settings.secret_key,
        session_cookie="broker_session",
        max_age=30 * 24 * 60 * 60,  # 30 days in seconds
        same_site="lax",
        https_only=settings.is_production,
    )

    app.include_router(api.router, prefix="/api")

    # Override the cached settings so routes see the same instance
    app.dependency_overrides[get_settings] = lambda: settings

    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "credential_broker.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=settings.port,
        reload=not settings.is_production,
    )
