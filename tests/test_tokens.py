"""Unit tests for TokenStore (records, lazy refresh, single-flight)."""

import asyncio

import httpx
import pytest
import pytest_asyncio

from credential_broker.errors import ExchangeFailed, NoValidToken, TokenEndpointTimeout
from credential_broker.oauth import AuthorizationCodeExchanger, OAuthClientConfig, TokenGrant
from credential_broker.state_tokens import StateTokenStore
from credential_broker.store import InMemoryStore
from credential_broker.tokens import TokenRecord, TokenStore
from tests.fakes import (
    CLIENT_ID,
    CLIENT_SECRET,
    REDIRECT_URI,
    SCOPES,
    FakeClock,
    FakeTokenEndpoint,
    json_response,
)

T0_MS = 1_735_689_600_000


class TestTokenRecord:
    """Tests for TokenRecord helpers."""

    def test_is_valid_respects_safety_margin(self) -> None:
        record = TokenRecord("u1", "A1", "R1", expires_at=T0_MS + 30_000)
        assert record.is_valid(T0_MS, margin_ms=60_000) is False
        assert record.is_valid(T0_MS, margin_ms=10_000) is True

    def test_covers_scopes(self) -> None:
        record = TokenRecord("u1", "A1", "R1", expires_at=T0_MS, scopes=SCOPES)
        assert record.covers([SCOPES[0]]) is True
        assert record.covers(["https://www.googleapis.com/auth/documents"]) is False

    def test_record_without_scopes_covers_everything(self) -> None:
        record = TokenRecord("u1", "A1", "R1", expires_at=T0_MS)
        assert record.covers(["https://www.googleapis.com/auth/documents"]) is True

    def test_durable_layout_round_trip(self) -> None:
        record = TokenRecord("u1", "A1", "R1", expires_at=T0_MS, scopes=SCOPES)
        data = record.to_dict()
        assert data == {
            "access_token": "A1",
            "refresh_token": "R1",
            "expires_at": T0_MS,
            "scopes": SCOPES,
        }
        assert TokenRecord.from_dict("u1", data) == record


class TestTokenStore:
    """Tests for TokenStore.get_valid_access_token and remove."""

    @pytest.fixture
    def backend(self) -> InMemoryStore:
        return InMemoryStore()

    @pytest.fixture
    def store(
        self, backend: InMemoryStore, clock: FakeClock, endpoint: FakeTokenEndpoint
    ) -> TokenStore:
        exchanger = AuthorizationCodeExchanger(
            OAuthClientConfig(CLIENT_ID, CLIENT_SECRET, REDIRECT_URI),
            StateTokenStore(clock=clock),
            endpoint.client(),
        )
        return TokenStore(exchanger, backend, clock=clock)

    @pytest_asyncio.fixture
    async def connected(self, store: TokenStore) -> TokenRecord:
        """u1 holds A1/R1 valid for one hour."""
        return await store.save_grant(
            "u1", TokenGrant(access_token="A1", refresh_token="R1", expires_in=3600)
        )

    @pytest.mark.asyncio
    async def test_valid_token_returned_without_network(
        self, store: TokenStore, connected: TokenRecord, endpoint: FakeTokenEndpoint
    ) -> None:
        record = await store.get_valid_access_token("u1")

        assert record.access_token == "A1"
        assert endpoint.requests == []

    @pytest.mark.asyncio
    async def test_missing_record_raises_no_valid_token(self, store: TokenStore) -> None:
        with pytest.raises(NoValidToken):
            await store.get_valid_access_token("nobody")

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed(
        self,
        store: TokenStore,
        connected: TokenRecord,
        clock: FakeClock,
        endpoint: FakeTokenEndpoint,
    ) -> None:
        """Refresh advances expires_at by exactly expires_in from now."""
        clock.advance(3600)
        now_ms = int(clock.now() * 1000)

        record = await store.get_valid_access_token("u1")

        assert record.access_token == "A2"
        assert record.refresh_token == "R1"
        assert record.expires_at == now_ms + 3600 * 1000
        assert len(endpoint.calls("refresh_token")) == 1
        assert (await store.get("u1")) == record

    @pytest.mark.asyncio
    async def test_token_inside_safety_margin_is_refreshed(
        self,
        store: TokenStore,
        connected: TokenRecord,
        clock: FakeClock,
        endpoint: FakeTokenEndpoint,
    ) -> None:
        clock.advance(3600 - 30)
        record = await store.get_valid_access_token("u1")
        assert record.access_token == "A2"

    @pytest.mark.asyncio
    async def test_rotated_refresh_token_is_kept(
        self,
        store: TokenStore,
        connected: TokenRecord,
        clock: FakeClock,
        endpoint: FakeTokenEndpoint,
    ) -> None:
        endpoint.set_response(
            "refresh_token",
            json_response(200, {"access_token": "A2", "refresh_token": "R2", "expires_in": 3600}),
        )
        clock.advance(3600)

        record = await store.get_valid_access_token("u1")

        assert record.refresh_token == "R2"

    @pytest.mark.asyncio
    async def test_invalid_grant_deletes_record(
        self,
        store: TokenStore,
        connected: TokenRecord,
        clock: FakeClock,
        endpoint: FakeTokenEndpoint,
    ) -> None:
        endpoint.set_response("refresh_token", json_response(400, {"error": "invalid_grant"}))
        clock.advance(3600)

        with pytest.raises(NoValidToken) as exc_info:
            await store.get_valid_access_token("u1")

        assert exc_info.value.reason == "invalid_grant"
        assert await store.get("u1") is None

    @pytest.mark.asyncio
    async def test_transient_failure_leaves_record_untouched(
        self,
        store: TokenStore,
        connected: TokenRecord,
        clock: FakeClock,
        endpoint: FakeTokenEndpoint,
    ) -> None:
        endpoint.set_response("refresh_token", httpx.Response(500))
        clock.advance(3600)

        with pytest.raises(ExchangeFailed) as exc_info:
            await store.get_valid_access_token("u1")

        assert exc_info.value.retryable is True
        assert await store.get("u1") == connected

    @pytest.mark.asyncio
    async def test_timeout_leaves_record_untouched(
        self,
        store: TokenStore,
        connected: TokenRecord,
        clock: FakeClock,
        endpoint: FakeTokenEndpoint,
    ) -> None:
        endpoint.set_response("refresh_token", httpx.ConnectTimeout("timed out"))
        clock.advance(3600)

        with pytest.raises(TokenEndpointTimeout):
            await store.get_valid_access_token("u1")

        assert await store.get("u1") == connected

    @pytest.mark.asyncio
    async def test_concurrent_refresh_is_single_flight(
        self,
        store: TokenStore,
        connected: TokenRecord,
        clock: FakeClock,
        endpoint: FakeTokenEndpoint,
    ) -> None:
        """50 concurrent callers on an expired token trigger one refresh call."""
        endpoint.delay = 0.01
        clock.advance(3600)

        records = await asyncio.gather(*(store.get_valid_access_token("u1") for _ in range(50)))

        assert {r.access_token for r in records} == {"A2"}
        assert len(endpoint.calls("refresh_token")) == 1

    @pytest.mark.asyncio
    async def test_failed_refresh_shared_by_waiters(
        self,
        store: TokenStore,
        connected: TokenRecord,
        clock: FakeClock,
        endpoint: FakeTokenEndpoint,
    ) -> None:
        """Waiters see the same failure; the next call tries again."""
        endpoint.delay = 0.01
        endpoint.set_response("refresh_token", httpx.Response(503))
        clock.advance(3600)

        results = await asyncio.gather(
            *(store.get_valid_access_token("u1") for _ in range(5)), return_exceptions=True
        )

        assert all(isinstance(r, ExchangeFailed) for r in results)
        assert len(endpoint.calls("refresh_token")) == 1

        endpoint.set_response(
            "refresh_token", json_response(200, {"access_token": "A3", "expires_in": 3600})
        )
        record = await store.get_valid_access_token("u1")
        assert record.access_token == "A3"

    @pytest.mark.asyncio
    async def test_remove_revokes_and_deletes(
        self, store: TokenStore, connected: TokenRecord, endpoint: FakeTokenEndpoint
    ) -> None:
        assert await store.remove("u1") is True

        assert endpoint.calls("revoke") == [{"token": "A1"}]
        assert await store.get("u1") is None

    @pytest.mark.asyncio
    async def test_remove_survives_revocation_failure(
        self, store: TokenStore, connected: TokenRecord, endpoint: FakeTokenEndpoint
    ) -> None:
        endpoint.set_response("revoke", json_response(400, {"error": "invalid_token"}))

        assert await store.remove("u1") is True
        assert await store.get("u1") is None

    @pytest.mark.asyncio
    async def test_remove_unknown_user(self, store: TokenStore, endpoint: FakeTokenEndpoint) -> None:
        assert await store.remove("nobody") is False
        assert endpoint.requests == []

    @pytest.mark.asyncio
    async def test_disconnect_during_refresh_wins(
        self,
        store: TokenStore,
        connected: TokenRecord,
        clock: FakeClock,
        endpoint: FakeTokenEndpoint,
    ) -> None:
        """A refresh that finishes after disconnect does not resurrect the record."""
        endpoint.delay = 0.05
        clock.advance(3600)
        refresh = asyncio.ensure_future(store.get_valid_access_token("u1"))
        await asyncio.sleep(0.01)

        assert await store.remove("u1") is True

        with pytest.raises(NoValidToken) as exc_info:
            await refresh
        assert exc_info.value.reason == "disconnected"
        assert await store.get("u1") is None

    @pytest.mark.asyncio
    async def test_new_grant_during_refresh_is_kept(
        self,
        store: TokenStore,
        connected: TokenRecord,
        clock: FakeClock,
        endpoint: FakeTokenEndpoint,
    ) -> None:
        """Re-authorizing while a refresh is in flight keeps the new grant."""
        endpoint.delay = 0.05
        clock.advance(3600)
        refresh = asyncio.ensure_future(store.get_valid_access_token("u1"))
        await asyncio.sleep(0.01)

        await store.save_grant(
            "u1", TokenGrant(access_token="ANEW", refresh_token="RNEW", expires_in=3600)
        )

        record = await refresh
        assert record.refresh_token == "RNEW"
        stored = await store.get("u1")
        assert stored.access_token == "ANEW"
        assert stored.refresh_token == "RNEW"

    @pytest.mark.asyncio
    async def test_stale_invalid_grant_keeps_new_grant(
        self,
        store: TokenStore,
        connected: TokenRecord,
        clock: FakeClock,
        endpoint: FakeTokenEndpoint,
    ) -> None:
        """invalid_grant for the old refresh token does not delete a newer grant."""
        endpoint.delay = 0.05
        endpoint.set_response("refresh_token", json_response(400, {"error": "invalid_grant"}))
        clock.advance(3600)
        refresh = asyncio.ensure_future(store.get_valid_access_token("u1"))
        await asyncio.sleep(0.01)

        await store.save_grant(
            "u1", TokenGrant(access_token="ANEW", refresh_token="RNEW", expires_in=3600)
        )

        assert (await refresh).refresh_token == "RNEW"
        assert (await store.get("u1")).refresh_token == "RNEW"
