"""Firestore-backed KeyValueStore (async).

Used when the broker runs as more than one instance and state tokens and
token records must be shared. Two collections are used by default:

- oauth_states: Document ID = state token (or "consumed:<token>" marker)
  - user_id: User who started the authorization
  - expires_at: Expiry in epoch milliseconds
  - ttl: Firestore TTL field derived from expires_at

- google_tokens: Document ID = percent-encoded user id (see _key_to_doc_id)
  - access_token, refresh_token, expires_at, scopes
  - ttl: not set; token records live until disconnect or invalid_grant

TTL cleanup: Configure a Firestore TTL policy on the `ttl` field of the
`oauth_states` collection so expired state documents are deleted even when no
instance sweeps them.

Note: single-flight refresh is per process. Two instances can still refresh
the same user concurrently; Google keeps the refresh token valid in that case.
"""

import asyncio
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote, unquote

from google.cloud.firestore_v1 import AsyncClient
from google.cloud.firestore_v1.async_transaction import async_transactional

# Default timeout for database operations (seconds)
DEFAULT_TIMEOUT = 10.0

STATES_COLLECTION = "oauth_states"
TOKENS_COLLECTION = "google_tokens"

_TTL_FIELD = "ttl"


def create_firestore_client(project: str, database: str = "(default)") -> AsyncClient:
    """Create the async Firestore client shared by all collections."""
    return AsyncClient(project=project, database=database)


class FirestoreStore:
    """KeyValueStore over a single Firestore collection.

    All operations have a configurable timeout (default 10 seconds).
    """

    def __init__(
        self,
        client: AsyncClient,
        collection: str,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        """Initialize the store.

        Args:
            client: Shared Firestore AsyncClient
            collection: Collection holding this store's documents
            timeout: Timeout in seconds for database operations (default 10)
        """
        self._client = client
        self._collection = collection
        self._timeout = timeout

    @staticmethod
    def _key_to_doc_id(key: str) -> str:
        """Convert a key to a valid Firestore document ID.

        Percent-encoding removes "/" and is reversed exactly by
        _doc_id_to_key. "." and "_" are escaped as well so no key can produce
        the reserved IDs "." and ".." or the "__name__" pattern.
        """
        return quote(key, safe="").replace(".", "%2E").replace("_", "%5F")

    @staticmethod
    def _doc_id_to_key(doc_id: str) -> str:
        return unquote(doc_id)

    @staticmethod
    def _to_document(value: dict[str, Any]) -> dict[str, Any]:
        document = dict(value)
        expires_at = value.get("expires_at")
        if isinstance(expires_at, int | float) and "access_token" not in value:
            document[_TTL_FIELD] = datetime.fromtimestamp(expires_at / 1000, tz=UTC)
        return document

    @staticmethod
    def _from_document(data: dict[str, Any] | None) -> dict[str, Any] | None:
        if data is None:
            return None
        data.pop(_TTL_FIELD, None)
        return data

    def _doc_ref(self, key: str):
        return self._client.collection(self._collection).document(self._key_to_doc_id(key))

    async def get(self, key: str) -> dict[str, Any] | None:
        doc = await asyncio.wait_for(self._doc_ref(key).get(), timeout=self._timeout)
        if not doc.exists:
            return None
        return self._from_document(doc.to_dict())

    async def put(self, key: str, value: dict[str, Any]) -> None:
        await asyncio.wait_for(
            self._doc_ref(key).set(self._to_document(value)), timeout=self._timeout
        )

    async def delete(self, key: str) -> None:
        await asyncio.wait_for(self._doc_ref(key).delete(), timeout=self._timeout)

    async def pop(self, key: str) -> dict[str, Any] | None:
        """Retrieve AND delete a document.

        Uses a Firestore transaction for atomic get-and-delete so two instances
        redeeming the same state token cannot both succeed.
        """
        doc_ref = self._doc_ref(key)

        @async_transactional
        async def _atomic_pop(transaction) -> dict[str, Any] | None:
            doc = await doc_ref.get(transaction=transaction)
            if not doc.exists:
                return None
            transaction.delete(doc_ref)
            return doc.to_dict()

        transaction = self._client.transaction()
        data = await asyncio.wait_for(_atomic_pop(transaction), timeout=self._timeout)
        return self._from_document(data)

    async def items(self) -> list[tuple[str, dict[str, Any]]]:
        docs = await asyncio.wait_for(
            self._client.collection(self._collection).get(), timeout=self._timeout
        )
        result = []
        for doc in docs:
            data = self._from_document(doc.to_dict())
            if data is not None:
                result.append((self._doc_id_to_key(doc.id), data))
        return result
