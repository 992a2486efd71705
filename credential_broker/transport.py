"""Transport layer for Google's OAuth endpoints.

TokenEndpointClient is the only place the broker performs network I/O. It
posts form-encoded bodies and normalizes every transport and HTTP failure
into the broker's error taxonomy:

- timeout                       -> TokenEndpointTimeout (retryable)
- connection/protocol error     -> ExchangeFailed("network_error", retryable)
- 5xx / 429                     -> ExchangeFailed(<error or "server_error">, retryable)
- 4xx with error=invalid_grant  -> InvalidGrant (terminal)
- other 4xx                     -> ExchangeFailed(<error>) (terminal)
- 2xx without a JSON object     -> ExchangeFailed("malformed_response")
"""

from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from credential_broker.errors import ExchangeFailed, InvalidGrant, TokenEndpointTimeout

# API constants
AUTH_URI = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"
REVOKE_URI = "https://oauth2.googleapis.com/revoke"
DEFAULT_TIMEOUT = 10.0


class TokenEndpointClient:
    """Posts OAuth form requests with a bounded timeout.

    Args:
        http_client: Optional httpx.AsyncClient (injectable for testing).
            If not provided, one is created lazily and owned by this object.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._client = http_client
        self._owns_client = http_client is None
        self._timeout = timeout

    @property
    def timeout(self) -> float:
        return self._timeout

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout))
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def post_form(self, url: str, data: dict[str, str]) -> dict[str, Any]:
        """POST ``data`` as application/x-www-form-urlencoded.

        Returns:
            The decoded JSON object of a successful response ({} for an
            empty 2xx body, as the revocation endpoint sends).

        Raises:
            TokenEndpointTimeout: The request did not finish in time
            InvalidGrant: The provider answered ``invalid_grant``
            ExchangeFailed: Any other failure
        """
        client = self._get_client()
        try:
            response = await client.post(
                url,
                data=data,
                headers={"Accept": "application/json"},
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            logger.warning("Token endpoint timed out", extra={"url": url, "timeout": self._timeout})
            raise TokenEndpointTimeout(url, self._timeout, e) from e
        except httpx.HTTPError as e:
            logger.warning(
                "Token endpoint request failed", extra={"url": url, "error": type(e).__name__}
            )
            raise ExchangeFailed("network_error", retryable=True, cause=e) from e

        if response.is_success:
            return _decode_success(url, response)

        raise _error_from_response(url, response)


def _decode_success(url: str, response: httpx.Response) -> dict[str, Any]:
    if not response.content:
        return {}
    try:
        payload = response.json()
    except ValueError as e:
        raise ExchangeFailed(
            "malformed_response", status_code=response.status_code, cause=e
        ) from e
    if not isinstance(payload, dict):
        logger.warning("Token endpoint returned a non-object body", extra={"url": url})
        raise ExchangeFailed("malformed_response", status_code=response.status_code)
    return payload


def _error_from_response(url: str, response: httpx.Response) -> ExchangeFailed:
    """Build the typed error for a non-2xx response.

    Google reports OAuth errors as ``{"error": ..., "error_description": ...}``.
    """
    error: str | None = None
    description: str | None = None
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        raw_error = body.get("error")
        if isinstance(raw_error, str):
            error = raw_error
        elif isinstance(raw_error, dict):
            # Some Google APIs nest errors as {"error": {"status": ..., "message": ...}}
            error = raw_error.get("status")
            description = raw_error.get("message")
        description = body.get("error_description", description)

    status_code = response.status_code
    logger.warning(
        "Token endpoint returned an error",
        extra={"url": url, "status": status_code, "error": error},
    )

    if error == "invalid_grant":
        return InvalidGrant(status_code=status_code, description=description)

    retryable = status_code >= 500 or status_code == 429
    if not error:
        error = "server_error" if retryable else f"http_{status_code}"
    return ExchangeFailed(
        error, retryable=retryable, status_code=status_code, description=description
    )
