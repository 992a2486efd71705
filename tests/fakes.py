"""Fake implementations for testing the credential broker.

These fakes allow us to control the behavior of external dependencies
(time, randomness, Google's token endpoint, Firestore) during unit tests.
"""

import asyncio
from typing import Any
from urllib.parse import parse_qsl

import httpx
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from credential_broker.broker import CredentialBroker
from credential_broker.oauth import AuthorizationCodeExchanger, OAuthClientConfig
from credential_broker.service_account import ServiceAccountCredential, ServiceAccountSigner
from credential_broker.state_tokens import StateTokenStore
from credential_broker.store import InMemoryStore
from credential_broker.tokens import TokenStore
from credential_broker.transport import REVOKE_URI, TOKEN_URI, TokenEndpointClient

CLIENT_ID = "test-client-id.apps.googleusercontent.com"
CLIENT_SECRET = "test-client-secret"
REDIRECT_URI = "http://localhost:8001/api/google/callback"
SCOPES = [
    "https://www.googleapis.com/auth/drive.file",
    "https://www.googleapis.com/auth/drive.metadata.readonly",
]
SA_EMAIL = "broker@test-project.iam.gserviceaccount.com"

# Fixed "now" used by tests (2025-01-01T00:00:00Z)
T0 = 1_735_689_600.0


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = T0) -> None:
        self._now = now

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds


class FakeRandom:
    """Deterministic token source: state-1, state-2, ..."""

    def __init__(self, prefix: str = "state") -> None:
        self._prefix = prefix
        self._counter = 0

    def token_urlsafe(self, nbytes: int) -> str:
        self._counter += 1
        return f"{self._prefix}-{self._counter}"


def json_response(status_code: int, body: dict[str, Any]) -> httpx.Response:
    return httpx.Response(status_code, json=body)


class FakeTokenEndpoint:
    """Scripted stand-in for Google's token and revocation endpoints.

    Responses are chosen per grant type ("revoke" for the revocation
    endpoint). A response may be an httpx.Response, an exception to raise
    (e.g. httpx.ReadTimeout), or a callable taking the parsed form and
    returning either. Every request is recorded.
    """

    def __init__(self) -> None:
        self.requests: list[dict[str, str]] = []
        self.urls: list[str] = []
        self.responses: dict[str, Any] = {
            "authorization_code": json_response(
                200,
                {
                    "access_token": "A1",
                    "refresh_token": "R1",
                    "expires_in": 3600,
                    "token_type": "Bearer",
                    "scope": " ".join(SCOPES),
                },
            ),
            "refresh_token": json_response(200, {"access_token": "A2", "expires_in": 3600}),
            "urn:ietf:params:oauth:grant-type:jwt-bearer": json_response(
                200, {"access_token": "SA1", "expires_in": 3600, "token_type": "Bearer"}
            ),
            "revoke": httpx.Response(200),
        }
        # Seconds each request takes; lets concurrent callers pile up
        self.delay: float = 0.0

    def calls(self, grant_type: str) -> list[dict[str, str]]:
        return [r for r in self.requests if r.get("grant_type", "revoke") == grant_type]

    def set_response(self, grant_type: str, response: Any) -> None:
        self.responses[grant_type] = response

    async def handler(self, request: httpx.Request) -> httpx.Response:
        form = dict(parse_qsl(request.content.decode("utf-8")))
        self.requests.append(form)
        self.urls.append(str(request.url))
        if self.delay:
            await asyncio.sleep(self.delay)

        key = "revoke" if str(request.url) == REVOKE_URI else form.get("grant_type", "")
        response = self.responses[key]
        if callable(response) and not isinstance(response, httpx.Response):
            response = response(form)
        if isinstance(response, Exception):
            raise response
        # Fresh copy per request: a Response object is bound to one request
        return httpx.Response(
            response.status_code, content=response.content, headers=response.headers
        )

    def client(self, timeout: float = 10.0) -> TokenEndpointClient:
        return TokenEndpointClient(
            httpx.AsyncClient(transport=httpx.MockTransport(self.handler)), timeout=timeout
        )


class FakeSnapshot:
    """Document snapshot as returned by the Firestore client."""

    def __init__(self, doc_id: str, data: dict[str, Any] | None) -> None:
        self.id = doc_id
        self._data = data

    @property
    def exists(self) -> bool:
        return self._data is not None

    def to_dict(self) -> dict[str, Any] | None:
        return dict(self._data) if self._data is not None else None


class FakeDocumentRef:
    def __init__(self, collection: "FakeCollection", doc_id: str) -> None:
        self._collection = collection
        self.id = doc_id

    async def get(self, transaction: "FakeTransaction | None" = None) -> FakeSnapshot:
        return FakeSnapshot(self.id, self._collection.documents.get(self.id))

    async def set(self, data: dict[str, Any]) -> None:
        self._collection.documents[self.id] = dict(data)

    async def delete(self) -> None:
        self._collection.documents.pop(self.id, None)


class FakeCollection:
    def __init__(self) -> None:
        self.documents: dict[str, dict[str, Any]] = {}

    def document(self, doc_id: str) -> FakeDocumentRef:
        assert "/" not in doc_id, "document IDs cannot contain '/'"
        return FakeDocumentRef(self, doc_id)

    async def get(self) -> list[FakeSnapshot]:
        return [FakeSnapshot(doc_id, data) for doc_id, data in self.documents.items()]


class FakeTransaction:
    """Buffers deletes until the transactional wrapper commits.

    Implements the parts of AsyncTransaction that async_transactional drives.
    """

    def __init__(self) -> None:
        self._read_only = False
        self._max_attempts = 1
        self._id: bytes | None = None
        self._pending: list[FakeDocumentRef] = []
        self.committed = False
        self.rolled_back = False

    def _clean_up(self) -> None:
        self._pending = []
        self._id = None

    async def _begin(self, retry_id: bytes | None = None) -> None:
        self._id = b"txn-1"

    async def _commit(self) -> list:
        for doc_ref in self._pending:
            await doc_ref.delete()
        self.committed = True
        self._clean_up()
        return []

    async def _rollback(self) -> None:
        self.rolled_back = True
        self._clean_up()

    def delete(self, doc_ref: FakeDocumentRef) -> None:
        self._pending.append(doc_ref)


class FakeFirestoreClient:
    """In-memory stand-in for firestore AsyncClient.

    Collections are created on first use; ``collections[name].documents``
    exposes the raw stored documents.
    """

    def __init__(self) -> None:
        self.collections: dict[str, FakeCollection] = {}
        self.transactions: list[FakeTransaction] = []

    def collection(self, name: str) -> FakeCollection:
        return self.collections.setdefault(name, FakeCollection())

    def transaction(self) -> FakeTransaction:
        transaction = FakeTransaction()
        self.transactions.append(transaction)
        return transaction


def generate_rsa_key() -> tuple[str, rsa.RSAPublicKey]:
    """Return (PKCS#8 PEM private key, public key) for a throwaway key pair."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    return pem, private_key.public_key()


def service_account_info(private_key_pem: str) -> dict[str, Any]:
    """A Google service account JSON key as downloaded from the console."""
    return {
        "type": "service_account",
        "project_id": "test-project",
        "private_key_id": "kid-123",
        "private_key": private_key_pem,
        "client_email": SA_EMAIL,
        "client_id": "1234567890",
        "auth_uri": "https://accounts.google.com/o/oauth2/auth",
        "token_uri": TOKEN_URI,
    }


def build_broker(
    endpoint: FakeTokenEndpoint,
    clock: FakeClock,
    *,
    private_key_pem: str | None = None,
    oauth_configured: bool = True,
    random: FakeRandom | None = None,
) -> CredentialBroker:
    """Wire a broker over in-memory stores and the fake endpoint."""
    client = endpoint.client()
    states = StateTokenStore(InMemoryStore(), clock=clock, random=random or FakeRandom())
    exchanger = AuthorizationCodeExchanger(
        OAuthClientConfig(
            client_id=CLIENT_ID if oauth_configured else "",
            client_secret=CLIENT_SECRET if oauth_configured else "",
            redirect_uri=REDIRECT_URI,
        ),
        states,
        client,
    )
    tokens = TokenStore(exchanger, InMemoryStore(), clock=clock)
    signer = None
    if private_key_pem is not None:
        signer = ServiceAccountSigner(
            ServiceAccountCredential.from_info(service_account_info(private_key_pem)),
            client,
            clock=clock,
        )
    return CredentialBroker(
        states, exchanger, tokens, service_account=signer, default_scopes=SCOPES, endpoint=client
    )


def state_from_url(url: str) -> str:
    query = url.split("?", 1)[1]
    return dict(parse_qsl(query))["state"]
