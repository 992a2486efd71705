"""CredentialBroker: the public entry point for Google Drive/Docs credentials.

The broker drives the authorization handshake (consent URL, callback) and
answers "give me a token for this user" by asking an ordered list of
credential providers:

1. UserOAuthProvider: the user's own delegated grant, refreshed if stale
2. ServiceAccountProvider: the application's service account, if configured

It never starts a consent flow on its own; when no provider yields a token
the caller gets NoCredentialsAvailable and decides what to show the user.

Per-user state machine:
    Unconnected --complete_authorization--> Connected(valid)
    Connected(valid) --clock passes expires_at--> Connected(expired)
    Connected(expired) --refresh--> Connected(valid)
    Connected(expired) --invalid_grant--> Unconnected
    Connected(*) --disconnect--> Unconnected
"""

from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

import httpx
from loguru import logger

from credential_broker.clock import Clock, RandomSource, SystemClock
from credential_broker.config import SecretStore, Settings, SettingsSecretStore
from credential_broker.errors import (
    AuthorizationDenied,
    ExchangeFailed,
    InvalidState,
    NoCredentialsAvailable,
)
from credential_broker.oauth import AuthorizationCodeExchanger, OAuthClientConfig
from credential_broker.providers import (
    SERVICE_ACCOUNT,
    USER_OAUTH,
    AccessToken,
    CredentialProvider,
    ServiceAccountProvider,
    UserOAuthProvider,
)
from credential_broker.service_account import ServiceAccountSigner
from credential_broker.state_tokens import StateTokenStore
from credential_broker.store import KeyValueStore
from credential_broker.tokens import TokenStore
from credential_broker.transport import TokenEndpointClient


class CredentialBroker:
    """Orchestrates state tokens, the code exchange and provider fallback.

    Dependencies are injected via constructor for testability; use
    ``CredentialBroker.from_settings`` to wire the production graph.
    """

    def __init__(
        self,
        state_store: StateTokenStore,
        exchanger: AuthorizationCodeExchanger,
        token_store: TokenStore,
        service_account: ServiceAccountSigner | None = None,
        default_scopes: Sequence[str] = (),
        providers: Sequence[CredentialProvider] | None = None,
        endpoint: TokenEndpointClient | None = None,
    ) -> None:
        self._states = state_store
        self._exchanger = exchanger
        self._tokens = token_store
        self._service_account = service_account
        self._default_scopes = list(default_scopes)
        self._endpoint = endpoint
        if providers is None:
            providers = [UserOAuthProvider(token_store), ServiceAccountProvider(service_account)]
        self._providers = list(providers)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        token_backend: KeyValueStore | None = None,
        state_backend: KeyValueStore | None = None,
        secrets: SecretStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock | None = None,
        random: RandomSource | None = None,
    ) -> "CredentialBroker":
        """Build a broker from application settings.

        Raises:
            BrokerConfigurationError: The service account key or the OAuth
                client-secrets file is malformed
        """
        clock = clock or SystemClock()
        secrets = secrets or SettingsSecretStore(settings)
        endpoint = TokenEndpointClient(http_client, timeout=settings.http_timeout_seconds)

        client_id, client_secret = secrets.get_client_credentials()
        state_store = StateTokenStore(
            store=state_backend,
            clock=clock,
            random=random,
            ttl_seconds=settings.state_ttl_seconds,
        )
        exchanger = AuthorizationCodeExchanger(
            OAuthClientConfig(
                client_id=client_id,
                client_secret=client_secret,
                redirect_uri=settings.google_redirect_uri,
            ),
            state_store,
            endpoint,
        )
        token_store = TokenStore(
            exchanger,
            store=token_backend,
            clock=clock,
            safety_margin_seconds=settings.token_safety_margin_seconds,
        )

        signer = None
        credential = secrets.get_service_account()
        if credential is not None:
            signer = ServiceAccountSigner(
                credential,
                endpoint,
                clock=clock,
                subject=settings.google_service_account_subject or None,
                safety_margin_seconds=settings.token_safety_margin_seconds,
            )

        if not exchanger.is_configured and signer is None:
            logger.warning("No valid credentials found for Google Drive")

        return cls(
            state_store,
            exchanger,
            token_store,
            service_account=signer,
            default_scopes=settings.get_oauth_scopes(),
            endpoint=endpoint,
        )

    async def close(self) -> None:
        if self._endpoint is not None:
            await self._endpoint.aclose()

    @property
    def token_store(self) -> TokenStore:
        return self._tokens

    # =========================================================================
    # Authorization handshake
    # =========================================================================

    async def start_authorization(self, user_id: str, scopes: list[str] | None = None) -> str:
        """Return the Google consent URL for ``user_id``.

        Raises:
            BrokerConfigurationError: OAuth client credentials are not set
        """
        url = await self._exchanger.build_consent_url(user_id, scopes or self._default_scopes)
        logger.info("Authorization started", extra={"user_id": user_id})
        return url

    async def complete_authorization(self, code: str, state: str) -> str:
        """Redeem ``state``, exchange ``code`` and store the user's tokens.

        Returns:
            The user id the state token was issued for

        Raises:
            InvalidState / ExpiredState / ReplayedState: CSRF check failed
            ExchangeFailed: Code exchange failed (InvalidGrant if the code
                was invalid, reused or expired)
            TokenEndpointTimeout: The token endpoint did not answer in time
        """
        user_id = await self._states.consume(state)
        try:
            grant = await self._exchanger.exchange_code(code, self._exchanger.redirect_uri)
        except ExchangeFailed as e:
            logger.warning(
                "OAuth token exchange failed",
                extra={"user_id": user_id, "error": e.reason, "retryable": e.retryable},
            )
            raise

        await self._tokens.save_grant(user_id, grant)
        logger.info("Google Drive connected", extra={"user_id": user_id})
        return user_id

    async def handle_callback(
        self, code: str | None, state: str | None, error: str | None = None
    ) -> str:
        """Process the OAuth redirect ``GET /callback?code=&state=&error=``.

        A present ``error`` short-circuits before the state is consumed or
        any exchange is attempted.

        Raises:
            AuthorizationDenied: Google reported an error (e.g. access_denied)
            InvalidState: The state parameter is missing
            ExchangeFailed: The code is missing ("missing_code") or the
                exchange failed
        """
        if error:
            logger.warning("OAuth error on callback", extra={"error": error})
            raise AuthorizationDenied(error)
        if not state:
            raise InvalidState("Missing state parameter")
        if not code:
            # Burn the state so it cannot be retried with a code later
            user_id = await self._states.consume(state)
            logger.warning("No authorization code provided", extra={"user_id": user_id})
            raise ExchangeFailed("missing_code")
        return await self.complete_authorization(code, state)

    # =========================================================================
    # Token access
    # =========================================================================

    async def get_access_token(
        self, user_id: str, required_scopes: list[str] | None = None
    ) -> AccessToken:
        """Return the best available token for ``user_id``.

        Raises:
            NoCredentialsAvailable: No provider could supply a token
            ExchangeFailed / TokenEndpointTimeout: Transient failure; the
                caller may retry with backoff
            ServiceAccountAuthError: The service account is misconfigured
                or was rejected
        """
        scopes = list(required_scopes or self._default_scopes)
        for provider in self._providers:
            token = await provider.try_get_token(user_id, scopes)
            if token is not None:
                return token

        logger.info("No credentials available", extra={"user_id": user_id})
        raise NoCredentialsAvailable(user_id)

    async def disconnect(self, user_id: str) -> bool:
        """Revoke (best-effort) and remove the user's delegated grant.

        Returns:
            True if the user was connected
        """
        removed = await self._tokens.remove(user_id)
        logger.info("Google Drive disconnected", extra={"user_id": user_id, "was_connected": removed})
        return removed

    async def connection_status(self, user_id: str) -> dict[str, Any]:
        """Describe the user's connection without touching the network."""
        record = await self._tokens.get(user_id)
        credentials_status = {
            "oauth": self._exchanger.is_configured,
            "service_account": self._service_account is not None,
        }

        token_status: dict[str, Any] = {"exists": False, "expired": None, "expires_at": None}
        connected = False
        auth_method: str | None = None

        if record is not None:
            expired = self._tokens.is_expired(record)
            token_status = {
                "exists": True,
                "expired": expired,
                "expires_at": datetime.fromtimestamp(record.expires_at / 1000, tz=UTC).isoformat(),
            }
            # An expired token with a refresh token is still a live connection
            connected = not expired or bool(record.refresh_token)
            auth_method = USER_OAUTH if connected else None

        if not connected and self._service_account is not None:
            auth_method = SERVICE_ACCOUNT

        return {
            "connected": connected,
            "auth_method": auth_method,
            "service_account_available": self._service_account is not None,
            "token_status": token_status,
            "credentials_status": credentials_status,
        }
