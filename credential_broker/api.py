"""REST API endpoints for the Google Drive/Docs connection.

This module contains the HTTP surface only. Business logic is delegated to
CredentialBroker.

Endpoints:
- POST /api/google/connect     - Start OAuth (?product=drive|docs), returns the consent URL
- GET  /api/google/callback    - OAuth callback, exchanges the code
- POST /api/google/disconnect  - Revoke and forget the user's grant
- GET  /api/google/status      - Connection status for the current user
- GET  /api/health             - Health check
- GET  /api/health/ready       - Readiness check

The logged-in user is read from the signed session cookie
(``request.session["user_id"]``); the login system itself lives elsewhere.
"""

from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import RedirectResponse
from loguru import logger

from credential_broker.broker import CredentialBroker
from credential_broker.config import Settings, get_settings
from credential_broker.errors import (
    AuthorizationDenied,
    BrokerConfigurationError,
    CredentialBrokerError,
    ExchangeFailed,
    ExpiredOrUnknownState,
)
from credential_broker.oauth import PRODUCT_SCOPES
from credential_broker.rate_limit import OAUTH_RATE_LIMIT, limiter

router = APIRouter()


# =============================================================================
# Dependencies
# =============================================================================


def get_broker(request: Request) -> CredentialBroker:
    """FastAPI dependency to get the broker instance.

    The broker is stored in app.state during application lifespan.
    """
    return request.app.state.broker


def get_current_user_id(request: Request) -> str:
    """Return the logged-in user's id or fail with 401."""
    user_id = request.session.get("user_id") if "session" in request.scope else None
    if not user_id:
        raise HTTPException(status_code=401, detail="User not authenticated")
    return user_id


# =============================================================================
# Health Endpoints
# =============================================================================


@router.get("/health")
async def health_check() -> dict:
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "credential-broker"}


@router.get("/health/ready")
async def readiness_check(settings: Settings = Depends(get_settings)) -> dict:
    """Readiness check for Kubernetes/Cloud Run."""
    return {
        "status": "ready",
        "service": "credential-broker",
        "environment": settings.environment,
    }


# =============================================================================
# Google Drive connection
# =============================================================================


@router.post("/google/connect")
@limiter.limit(OAUTH_RATE_LIMIT)
async def connect(
    request: Request,
    product: str = Query("drive"),
    user_id: str = Depends(get_current_user_id),
    broker: CredentialBroker = Depends(get_broker),
) -> dict:
    """Start the OAuth flow; the client opens the returned URL.

    ``product=docs`` requests the Docs scope set; the default Drive flow
    uses the configured scopes.
    """
    if product not in PRODUCT_SCOPES:
        raise HTTPException(status_code=400, detail=f"Unknown product: {product}")
    scopes = PRODUCT_SCOPES[product] if product != "drive" else None

    try:
        auth_url = await broker.start_authorization(user_id, scopes)
    except BrokerConfigurationError as e:
        logger.error("OAuth connect attempted without client credentials")
        raise HTTPException(status_code=503, detail=str(e)) from e
    return {"auth_url": auth_url}


@router.get("/google/callback")
@limiter.limit(OAUTH_RATE_LIMIT)
async def callback(
    request: Request,
    code: str | None = Query(None),
    state: str | None = Query(None),
    error: str | None = Query(None),
    broker: CredentialBroker = Depends(get_broker),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    """Handle the redirect back from Google's consent screen.

    Always redirects to the application; failures are reported with a short
    error code and never with internal details.
    """
    try:
        await broker.handle_callback(code, state, error)
    except AuthorizationDenied:
        return _app_redirect(settings, error="access_denied")
    except ExpiredOrUnknownState as e:
        return _app_redirect(settings, error=e.code)
    except ExchangeFailed as e:
        reason = "no_code" if e.reason == "missing_code" else "exchange_failed"
        return _app_redirect(settings, error=reason)
    except CredentialBrokerError:
        logger.exception("Error processing OAuth callback")
        return _app_redirect(settings, error="server_error")

    return _app_redirect(settings, success="true")


@router.post("/google/disconnect")
async def disconnect(
    user_id: str = Depends(get_current_user_id),
    broker: CredentialBroker = Depends(get_broker),
) -> dict:
    """Revoke and remove the user's Google Drive grant."""
    await broker.disconnect(user_id)
    return {"success": True, "message": "Successfully disconnected from Google Drive"}


@router.get("/google/status")
async def status(
    user_id: str = Depends(get_current_user_id),
    broker: CredentialBroker = Depends(get_broker),
) -> dict:
    """Report whether the user is connected and which credentials exist."""
    return await broker.connection_status(user_id)


# =============================================================================
# Private Helpers
# =============================================================================


def _app_redirect(settings: Settings, **params: str) -> RedirectResponse:
    return RedirectResponse(url=f"{settings.post_auth_redirect}?{urlencode(params)}", status_code=302)
