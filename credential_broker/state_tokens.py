"""One-time OAuth state tokens (CSRF protection for the consent redirect).

A state token is issued when a user starts the authorization flow and is
round-tripped through Google's redirect. It can be redeemed exactly once,
within its TTL, and resolves to the user who started the flow.
"""

from loguru import logger

from credential_broker.clock import Clock, RandomSource, SecretsRandom, SystemClock, now_ms
from credential_broker.errors import ExpiredState, InvalidState, ReplayedState
from credential_broker.store import InMemoryStore, KeyValueStore

# OAuth state TTL (10 minutes)
STATE_TTL_SECONDS = 600

# 32 bytes = 256 bits of entropy
STATE_TOKEN_BYTES = 32

# Minimum interval between lazy sweeps (seconds)
SWEEP_INTERVAL_SECONDS = 60

_CONSUMED_PREFIX = "consumed:"


class StateTokenStore:
    """Issues and redeems one-time state tokens.

    Redemption uses ``KeyValueStore.pop`` (atomic get-and-delete), so two
    concurrent redemptions of the same token cannot both succeed. After a
    successful redemption a "consumed" marker is kept until the token's
    original expiry so that a replay is reported as such.
    """

    def __init__(
        self,
        store: KeyValueStore | None = None,
        clock: Clock | None = None,
        random: RandomSource | None = None,
        ttl_seconds: int = STATE_TTL_SECONDS,
        sweep_interval_seconds: int = SWEEP_INTERVAL_SECONDS,
    ) -> None:
        if not 0 < ttl_seconds <= STATE_TTL_SECONDS:
            raise ValueError(f"ttl_seconds must be between 1 and {STATE_TTL_SECONDS}")
        self._store = store if store is not None else InMemoryStore()
        self._clock = clock or SystemClock()
        self._random = random or SecretsRandom()
        self._ttl_ms = ttl_seconds * 1000
        self._sweep_interval_ms = sweep_interval_seconds * 1000
        self._last_sweep_ms = now_ms(self._clock)

    async def issue(self, user_id: str) -> str:
        """Create and store a new state token for ``user_id``."""
        await self._maybe_sweep()

        token = self._random.token_urlsafe(STATE_TOKEN_BYTES)
        expires_at = now_ms(self._clock) + self._ttl_ms
        await self._store.put(token, {"user_id": user_id, "expires_at": expires_at})
        return token

    async def consume(self, token: str) -> str:
        """Redeem a state token and return the user id it was issued for.

        Raises:
            InvalidState: Token is unknown
            ExpiredState: Token is past its TTL
            ReplayedState: Token was already redeemed
        """
        if not token or token.startswith(_CONSUMED_PREFIX):
            raise InvalidState("Missing or malformed state token")

        entry = await self._store.pop(token)
        now = now_ms(self._clock)

        if entry is None:
            marker = await self._store.get(_CONSUMED_PREFIX + token)
            if marker is not None and marker.get("expires_at", 0) > now:
                logger.warning("Replayed OAuth state", extra={"state_prefix": token[:8]})
                raise ReplayedState("State token was already used")
            logger.warning("Unknown OAuth state", extra={"state_prefix": token[:8]})
            raise InvalidState("Unknown state token")

        user_id = entry.get("user_id")
        expires_at = entry.get("expires_at")
        if not user_id or not isinstance(expires_at, int | float):
            raise InvalidState("Corrupt state token entry")

        if now >= expires_at:
            logger.warning("Expired OAuth state", extra={"state_prefix": token[:8]})
            raise ExpiredState("State token has expired")

        await self._store.put(_CONSUMED_PREFIX + token, {"expires_at": expires_at})
        return user_id

    async def sweep(self) -> int:
        """Delete expired state tokens and consumed markers.

        Returns:
            Number of entries removed
        """
        now = now_ms(self._clock)
        self._last_sweep_ms = now
        removed = 0
        for key, value in await self._store.items():
            if value.get("expires_at", 0) <= now:
                await self._store.delete(key)
                removed += 1
        if removed:
            logger.debug("Swept expired OAuth states", extra={"count": removed})
        return removed

    async def _maybe_sweep(self) -> None:
        if now_ms(self._clock) - self._last_sweep_ms >= self._sweep_interval_ms:
            await self.sweep()
