"""Per-user OAuth token records and lazy refresh.

TokenStore owns every TokenRecord. Records are created after a successful
code exchange, replaced whole after a refresh, and removed on disconnect or
when Google answers a refresh with ``invalid_grant``.
"""

from dataclasses import asdict, dataclass, field
from typing import Any

from loguru import logger

from credential_broker.clock import Clock, SystemClock, now_ms
from credential_broker.errors import CredentialBrokerError, InvalidGrant, NoValidToken
from credential_broker.oauth import AuthorizationCodeExchanger, TokenGrant
from credential_broker.single_flight import SingleFlight
from credential_broker.store import InMemoryStore, KeyValueStore

# Tokens this close to expiry are treated as expired (seconds)
DEFAULT_SAFETY_MARGIN = 60


@dataclass
class TokenRecord:
    """A user's delegated Google credentials.

    Attributes:
        user_id: Owner of the grant.
        access_token: Bearer token for Google APIs.
        refresh_token: Long-lived token used to mint new access tokens.
        expires_at: Access token expiry in epoch milliseconds.
        scopes: Scopes Google reported as granted (empty if unknown).
    """

    user_id: str
    access_token: str
    refresh_token: str
    expires_at: int
    scopes: list[str] = field(default_factory=list)

    def is_valid(self, now: int, margin_ms: int = DEFAULT_SAFETY_MARGIN * 1000) -> bool:
        """Check if the access token is still usable with a safety margin."""
        return bool(self.access_token) and now < self.expires_at - margin_ms

    def covers(self, scopes: list[str] | None) -> bool:
        """Check if the granted scopes include ``scopes``.

        Records without scope information are assumed to cover the request.
        """
        if not scopes or not self.scopes:
            return True
        return set(scopes).issubset(self.scopes)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the durable layout (user_id is the key, not a field)."""
        data = asdict(self)
        del data["user_id"]
        return data

    @classmethod
    def from_dict(cls, user_id: str, data: dict[str, Any]) -> "TokenRecord":
        return cls(
            user_id=user_id,
            access_token=data.get("access_token", ""),
            refresh_token=data.get("refresh_token", ""),
            expires_at=int(data.get("expires_at", 0)),
            scopes=list(data.get("scopes") or []),
        )


class TokenStore:
    """Stores TokenRecords and refreshes them on demand.

    Refreshes for one user are single-flight: callers arriving while a
    refresh is in progress await that refresh instead of calling the token
    endpoint again.
    """

    def __init__(
        self,
        exchanger: AuthorizationCodeExchanger,
        store: KeyValueStore | None = None,
        clock: Clock | None = None,
        safety_margin_seconds: int = DEFAULT_SAFETY_MARGIN,
    ) -> None:
        self._exchanger = exchanger
        self._store = store if store is not None else InMemoryStore()
        self._clock = clock or SystemClock()
        self._margin_ms = safety_margin_seconds * 1000
        self._refreshes = SingleFlight()
        # Bumped whenever a record is replaced by a new grant or removed, so a
        # refresh that started earlier knows its result is stale
        self._generations: dict[str, int] = {}

    def _bump(self, user_id: str) -> None:
        self._generations[user_id] = self._generations.get(user_id, 0) + 1

    async def _is_current(self, user_id: str, generation: int, refresh_token: str) -> bool:
        """True if nothing replaced or removed the record since ``generation``."""
        if self._generations.get(user_id, 0) != generation:
            return False
        record = await self.get(user_id)
        return record is not None and record.refresh_token == refresh_token

    async def get(self, user_id: str) -> TokenRecord | None:
        data = await self._store.get(user_id)
        if data is None:
            return None
        return TokenRecord.from_dict(user_id, data)

    async def save(self, record: TokenRecord) -> None:
        await self._store.put(record.user_id, record.to_dict())

    async def save_grant(self, user_id: str, grant: TokenGrant) -> TokenRecord:
        """Create (or replace) the record for a fresh authorization-code grant."""
        record = TokenRecord(
            user_id=user_id,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or "",
            expires_at=now_ms(self._clock) + grant.expires_in * 1000,
            scopes=list(grant.scopes),
        )
        self._bump(user_id)
        await self.save(record)
        return record

    def is_expired(self, record: TokenRecord) -> bool:
        return not record.is_valid(now_ms(self._clock), self._margin_ms)

    async def get_valid_access_token(self, user_id: str) -> TokenRecord:
        """Return a record whose access token is usable, refreshing if needed.

        Raises:
            NoValidToken: No record, the refresh token was rejected (the
                record has been deleted), or the user disconnected while the
                refresh was in flight
            ExchangeFailed: Transient refresh failure (record untouched)
            TokenEndpointTimeout: Refresh timed out (record untouched)
        """
        record = await self.get(user_id)
        if record is None:
            raise NoValidToken(user_id)
        if not self.is_expired(record):
            return record
        return await self._refreshes.do(user_id, lambda: self._refresh(user_id))

    async def _refresh(self, user_id: str) -> TokenRecord:
        # Re-read: a refresh that finished just before this one started may
        # already have replaced the record
        record = await self.get(user_id)
        if record is None:
            raise NoValidToken(user_id)
        if not self.is_expired(record):
            return record
        if not record.refresh_token:
            await self._store.delete(user_id)
            raise NoValidToken(user_id, reason="no_refresh_token")

        generation = self._generations.get(user_id, 0)
        logger.info("Refreshing access token", extra={"user_id": user_id})
        try:
            grant = await self._exchanger.refresh(record.refresh_token)
        except InvalidGrant as e:
            logger.warning(
                "Refresh token rejected, removing stored credentials",
                extra={"user_id": user_id, "error": e.description or e.reason},
            )
            if await self._is_current(user_id, generation, record.refresh_token):
                await self._store.delete(user_id)
                raise NoValidToken(user_id, reason="invalid_grant") from e
            return await self._superseded(user_id)
        except CredentialBrokerError as e:
            logger.warning(
                "Access token refresh failed",
                extra={"user_id": user_id, "error": str(e), "retryable": e.retryable},
            )
            raise

        # Only write back if no disconnect or new grant landed while waiting
        if not await self._is_current(user_id, generation, record.refresh_token):
            return await self._superseded(user_id)

        refreshed = TokenRecord(
            user_id=user_id,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or record.refresh_token,
            expires_at=now_ms(self._clock) + grant.expires_in * 1000,
            scopes=grant.scopes or record.scopes,
        )
        await self.save(refreshed)
        logger.info("Access token refreshed", extra={"user_id": user_id})
        return refreshed

    async def _superseded(self, user_id: str) -> TokenRecord:
        """Result of a refresh whose record changed while it was in flight."""
        current = await self.get(user_id)
        logger.info(
            "Discarding stale refresh result",
            extra={"user_id": user_id, "disconnected": current is None},
        )
        if current is None:
            raise NoValidToken(user_id, reason="disconnected")
        return current

    async def remove(self, user_id: str) -> bool:
        """Delete the user's record, then revoke its token (best-effort).

        A refresh in flight for the user will not write its result back.

        Returns:
            True if a record existed
        """
        record = await self.get(user_id)
        if record is None:
            return False

        self._bump(user_id)
        await self._store.delete(user_id)

        token = record.access_token or record.refresh_token
        if token:
            try:
                await self._exchanger.revoke(token)
            except CredentialBrokerError as e:
                logger.warning(
                    "Error revoking token, disconnection already recorded",
                    extra={"user_id": user_id, "error": str(e)},
                )
        return True
