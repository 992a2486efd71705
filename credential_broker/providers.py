"""Credential provider strategies.

The broker asks each provider in order and uses the first token it gets.
A provider returns None when it simply has nothing to offer; it raises only
for failures the caller must see (timeouts, transient endpoint errors,
a broken service account key).
"""

from dataclasses import dataclass
from typing import Protocol

from loguru import logger

from credential_broker.errors import NoValidToken
from credential_broker.service_account import ServiceAccountSigner
from credential_broker.tokens import TokenStore

USER_OAUTH = "user_oauth"
SERVICE_ACCOUNT = "service_account"


@dataclass(frozen=True)
class AccessToken:
    """A usable bearer token and where it came from.

    Attributes:
        token: The OAuth2 access token for API calls.
        expires_at: Unix timestamp (seconds) when the token expires.
        source: "user_oauth" or "service_account".
    """

    token: str
    expires_at: float
    source: str


class CredentialProvider(Protocol):
    name: str

    async def try_get_token(self, user_id: str, scopes: list[str]) -> AccessToken | None: ...


class UserOAuthProvider:
    """Tokens delegated by the user through the Authorization-Code flow."""

    name = USER_OAUTH

    def __init__(self, token_store: TokenStore) -> None:
        self._tokens = token_store

    async def try_get_token(self, user_id: str, scopes: list[str]) -> AccessToken | None:
        record = await self._tokens.get(user_id)
        if record is None:
            return None
        if not record.covers(scopes):
            logger.info(
                "Stored grant does not cover requested scopes",
                extra={"user_id": user_id, "scopes": scopes},
            )
            return None

        try:
            record = await self._tokens.get_valid_access_token(user_id)
        except NoValidToken as e:
            logger.info(
                "User credentials unavailable", extra={"user_id": user_id, "reason": e.reason}
            )
            return None

        return AccessToken(
            token=record.access_token,
            expires_at=record.expires_at / 1000,
            source=self.name,
        )


class ServiceAccountProvider:
    """Tokens for the application's own service account (one shared identity)."""

    name = SERVICE_ACCOUNT

    def __init__(self, signer: ServiceAccountSigner | None) -> None:
        self._signer = signer

    async def try_get_token(self, user_id: str, scopes: list[str]) -> AccessToken | None:
        if self._signer is None:
            return None
        cached = await self._signer.get_token(scopes)
        logger.debug(
            "Using service account credentials",
            extra={"user_id": user_id, "service_account": self._signer.client_email},
        )
        return AccessToken(token=cached.access_token, expires_at=cached.expires_at, source=self.name)
