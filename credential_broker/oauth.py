"""OAuth2 Authorization-Code flow against Google.

AuthorizationCodeExchanger builds consent URLs and talks to the token and
revocation endpoints. It holds no per-user state: TokenStore owns the
resulting records.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlencode

from loguru import logger
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from credential_broker.errors import BrokerConfigurationError, CredentialBrokerError, ExchangeFailed
from credential_broker.state_tokens import StateTokenStore
from credential_broker.transport import AUTH_URI, REVOKE_URI, TOKEN_URI, TokenEndpointClient

# Scope sets a user can grant through the connect endpoint
DRIVE_SCOPES = [
    "https://www.googleapis.com/auth/drive.file",
    "https://www.googleapis.com/auth/drive.metadata.readonly",
]
DOCS_SCOPES = [
    "https://www.googleapis.com/auth/documents",
    "https://www.googleapis.com/auth/drive.file",
]
PRODUCT_SCOPES = {"drive": DRIVE_SCOPES, "docs": DOCS_SCOPES}

# Retry settings for revocation (best-effort, never on the request path)
REVOKE_RETRY_ATTEMPTS = 3


@dataclass
class TokenGrant:
    """Result of a successful authorization-code or refresh grant."""

    access_token: str
    expires_in: int
    refresh_token: str | None = None
    scopes: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class OAuthClientConfig:
    """OAuth client registration used for the Authorization-Code flow."""

    client_id: str
    client_secret: str
    redirect_uri: str
    auth_uri: str = AUTH_URI
    token_uri: str = TOKEN_URI
    revoke_uri: str = REVOKE_URI

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)


def load_client_secrets(path: str) -> tuple[str, str] | None:
    """Read (client_id, client_secret) from a Google client-secrets JSON file.

    Accepts the ``web`` and ``installed`` layouts downloaded from the Cloud
    console. A file that does not exist is logged and treated as "not
    configured".

    Raises:
        BrokerConfigurationError: The file exists but is malformed
    """
    if not Path(path).exists():
        logger.warning("OAuth client secrets file not found", extra={"path": path})
        return None

    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise BrokerConfigurationError(f"OAuth client secrets file is not valid JSON: {e}") from e

    section = None
    if isinstance(data, dict):
        section = data.get("web") or data.get("installed")
    if not isinstance(section, dict):
        raise BrokerConfigurationError(
            "OAuth client secrets file must contain a 'web' or 'installed' section"
        )

    client_id = section.get("client_id")
    client_secret = section.get("client_secret")
    if not (isinstance(client_id, str) and client_id) or not (
        isinstance(client_secret, str) and client_secret
    ):
        raise BrokerConfigurationError(
            "OAuth client secrets file is missing client_id or client_secret"
        )

    logger.info("OAuth client secrets loaded", extra={"path": path})
    return client_id, client_secret


def _parse_grant(payload: dict, *, require_refresh_token: bool) -> TokenGrant:
    access_token = payload.get("access_token")
    expires_in = payload.get("expires_in")
    refresh_token = payload.get("refresh_token")

    if not isinstance(access_token, str) or not access_token:
        raise ExchangeFailed("malformed_response", description="missing access_token")
    try:
        expires_in = int(expires_in)
    except (TypeError, ValueError) as e:
        raise ExchangeFailed("malformed_response", description="missing expires_in") from e
    if require_refresh_token and not refresh_token:
        # Google omits the refresh token unless access_type=offline and
        # prompt=consent were both honored
        raise ExchangeFailed("missing_refresh_token")

    scope = payload.get("scope")
    scopes = scope.split() if isinstance(scope, str) else []
    return TokenGrant(
        access_token=access_token,
        expires_in=expires_in,
        refresh_token=refresh_token or None,
        scopes=scopes,
    )


class AuthorizationCodeExchanger:
    """Consent URL construction and the code/refresh/revoke grants."""

    def __init__(
        self,
        client_config: OAuthClientConfig,
        state_store: StateTokenStore,
        endpoint: TokenEndpointClient,
    ) -> None:
        self._config = client_config
        self._states = state_store
        self._endpoint = endpoint

    @property
    def is_configured(self) -> bool:
        return self._config.is_configured

    @property
    def redirect_uri(self) -> str:
        return self._config.redirect_uri

    def _require_configured(self) -> None:
        if not self._config.is_configured:
            raise BrokerConfigurationError(
                "Google OAuth not configured. Set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET."
            )

    async def build_consent_url(self, user_id: str, scopes: list[str]) -> str:
        """Issue a state token for ``user_id`` and return the consent URL.

        The query string is deterministic for a given state: parameters are
        always emitted in the same order.
        """
        self._require_configured()
        state = await self._states.issue(user_id)
        params = {
            "client_id": self._config.client_id,
            "redirect_uri": self._config.redirect_uri,
            "response_type": "code",
            "scope": " ".join(scopes),
            "access_type": "offline",
            "state": state,
            "prompt": "consent",
        }
        return f"{self._config.auth_uri}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str | None = None) -> TokenGrant:
        """Exchange an authorization code for access and refresh tokens.

        Raises:
            InvalidGrant: Code is invalid, reused or expired
            ExchangeFailed: Any other token endpoint failure
            TokenEndpointTimeout: The endpoint did not answer in time
        """
        self._require_configured()
        payload = await self._endpoint.post_form(
            self._config.token_uri,
            {
                "client_id": self._config.client_id,
                "client_secret": self._config.client_secret,
                "code": code,
                "redirect_uri": redirect_uri or self._config.redirect_uri,
                "grant_type": "authorization_code",
            },
        )
        return _parse_grant(payload, require_refresh_token=True)

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Obtain a new access token from a refresh token.

        ``InvalidGrant`` is terminal: the refresh token is revoked or expired
        and the caller must drop it instead of retrying.
        """
        self._require_configured()
        payload = await self._endpoint.post_form(
            self._config.token_uri,
            {
                "client_id": self._config.client_id,
                "client_secret": self._config.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        return _parse_grant(payload, require_refresh_token=False)

    async def revoke(self, token: str) -> None:
        """Revoke an access or refresh token.

        Transient failures are retried with exponential backoff; the last
        error is re-raised for the caller to log.
        """
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(
                lambda e: isinstance(e, CredentialBrokerError) and e.retryable
            ),
            stop=stop_after_attempt(REVOKE_RETRY_ATTEMPTS),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
            reraise=True,
        ):
            with attempt:
                await self._endpoint.post_form(self._config.revoke_uri, {"token": token})

        logger.info("Token revoked")
