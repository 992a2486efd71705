"""Service account access via the OAuth2 JWT-Bearer grant (RFC 7523).

The assertion is built and signed here rather than through a Google client
library:

1. Claims {iss, scope, aud, iat, exp} (plus kid/sub when configured)
2. base64url(header) + "." + base64url(claims) is the signing input
3. RSASSA-PKCS1-v1_5 / SHA-256 signature with the service account key
4. header.claims.signature is POSTed to the token endpoint

Google never returns a refresh token for this grant, so a fresh assertion is
minted whenever the cached access token expires. Tokens are cached per scope
set and minting is single-flight per scope set.
"""

import base64
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from loguru import logger

from credential_broker.clock import Clock, SystemClock
from credential_broker.errors import (
    BrokerConfigurationError,
    ExchangeFailed,
    ServiceAccountAuthError,
)
from credential_broker.single_flight import SingleFlight
from credential_broker.transport import TOKEN_URI, TokenEndpointClient

JWT_BEARER_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:jwt-bearer"

# Google's maximum assertion lifetime (1 hour)
ASSERTION_LIFETIME = 3600

# Cached tokens this close to expiry are re-minted (seconds)
DEFAULT_SAFETY_MARGIN = 60


def b64url_encode(data: bytes) -> str:
    """Base64URL-encode without padding (RFC 7515 section 2)."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def normalize_private_key(pem: str) -> str:
    """Turn a PEM delivered with literal ``\\n`` escapes into a real PEM.

    Keys pasted into environment variables or JSON config often arrive as a
    single line with backslash-n sequences; loading those as-is fails or, with
    lenient parsers, signs with garbage.
    """
    key = pem.strip().strip('"')
    key = key.replace("\\r\\n", "\n").replace("\\n", "\n").replace("\r\n", "\n")
    if not key.endswith("\n"):
        key += "\n"
    return key


def _json_segment(obj: dict[str, Any]) -> str:
    return b64url_encode(json.dumps(obj, separators=(",", ":")).encode("utf-8"))


def normalize_scopes(scopes: list[str] | tuple[str, ...]) -> tuple[str, ...]:
    """Cache key for a scope set: order and duplicates do not matter."""
    return tuple(sorted({s for s in scopes if s}))


@dataclass(frozen=True)
class ServiceAccountCredential:
    """The parts of a Google service account key the signer needs."""

    client_email: str
    private_key_pem: str
    token_uri: str = TOKEN_URI
    private_key_id: str | None = None
    project_id: str | None = None

    @classmethod
    def from_info(cls, info: dict[str, Any]) -> "ServiceAccountCredential":
        """Build from a parsed service account JSON key.

        Raises:
            BrokerConfigurationError: Required fields are missing
        """
        missing = [k for k in ("client_email", "private_key") if not info.get(k)]
        if missing:
            raise BrokerConfigurationError(
                f"Service account key is missing fields: {', '.join(missing)}"
            )
        return cls(
            client_email=info["client_email"],
            private_key_pem=normalize_private_key(info["private_key"]),
            token_uri=info.get("token_uri") or TOKEN_URI,
            private_key_id=info.get("private_key_id"),
            project_id=info.get("project_id"),
        )

    @classmethod
    def from_json(cls, raw: str) -> "ServiceAccountCredential":
        try:
            info = json.loads(raw)
        except json.JSONDecodeError as e:
            raise BrokerConfigurationError(f"Service account key is not valid JSON: {e}") from e
        if not isinstance(info, dict):
            raise BrokerConfigurationError("Service account key must be a JSON object")
        return cls.from_info(info)

    @classmethod
    def from_file(cls, path: str | Path) -> "ServiceAccountCredential":
        return cls.from_json(Path(path).read_text(encoding="utf-8"))


@dataclass
class CachedServiceToken:
    access_token: str
    expires_at: float


class ServiceAccountSigner:
    """Mints and caches service account access tokens.

    Args:
        credential: Service account identity and key
        endpoint: Transport used for the JWT-Bearer grant
        clock: Time source for iat/exp and cache expiry
        subject: Optional user to impersonate (domain-wide delegation)
        safety_margin_seconds: Re-mint this long before expiry
    """

    def __init__(
        self,
        credential: ServiceAccountCredential,
        endpoint: TokenEndpointClient,
        clock: Clock | None = None,
        subject: str | None = None,
        safety_margin_seconds: int = DEFAULT_SAFETY_MARGIN,
    ) -> None:
        self._credential = credential
        self._endpoint = endpoint
        self._clock = clock or SystemClock()
        self._subject = subject
        self._margin = safety_margin_seconds
        self._cache: dict[tuple[str, ...], CachedServiceToken] = {}
        self._mints = SingleFlight()
        self._private_key: rsa.RSAPrivateKey | None = None

    @property
    def client_email(self) -> str:
        return self._credential.client_email

    def _load_private_key(self) -> rsa.RSAPrivateKey:
        if self._private_key is not None:
            return self._private_key
        pem = normalize_private_key(self._credential.private_key_pem)
        try:
            key = serialization.load_pem_private_key(pem.encode("utf-8"), password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise ServiceAccountAuthError(
                "malformed_key", "Service account private key could not be loaded", cause=e
            ) from e
        if not isinstance(key, rsa.RSAPrivateKey):
            raise ServiceAccountAuthError(
                "malformed_key", "Service account private key is not an RSA key"
            )
        self._private_key = key
        return key

    def build_claims(self, scopes: list[str] | tuple[str, ...], issued_at: int) -> dict[str, Any]:
        claims: dict[str, Any] = {
            "iss": self._credential.client_email,
            "scope": " ".join(scopes),
            "aud": self._credential.token_uri,
            "iat": issued_at,
            "exp": issued_at + ASSERTION_LIFETIME,
        }
        if self._subject:
            claims["sub"] = self._subject
        return claims

    def sign(self, claims: dict[str, Any]) -> str:
        """Return the compact RS256 JWT for ``claims``.

        Raises:
            ServiceAccountAuthError: The key cannot be loaded or signing fails
        """
        header: dict[str, Any] = {"alg": "RS256", "typ": "JWT"}
        if self._credential.private_key_id:
            header["kid"] = self._credential.private_key_id

        signing_input = f"{_json_segment(header)}.{_json_segment(claims)}"
        key = self._load_private_key()
        try:
            signature = key.sign(
                signing_input.encode("ascii"), padding.PKCS1v15(), hashes.SHA256()
            )
        except (ValueError, TypeError) as e:
            raise ServiceAccountAuthError("signing_failed", cause=e) from e
        return f"{signing_input}.{b64url_encode(signature)}"

    def create_assertion(self, scopes: list[str] | tuple[str, ...]) -> str:
        return self.sign(self.build_claims(scopes, int(self._clock.now())))

    def _cached(self, key: tuple[str, ...]) -> CachedServiceToken | None:
        cached = self._cache.get(key)
        if cached and self._clock.now() < cached.expires_at - self._margin:
            return cached
        return None

    async def get_token(self, scopes: list[str]) -> CachedServiceToken:
        """Return a cached or freshly minted token for ``scopes``.

        Raises:
            ServiceAccountAuthError: Key, signing or provider failure
            TokenEndpointTimeout: The token endpoint did not answer in time
        """
        key = normalize_scopes(scopes)
        if not key:
            raise ServiceAccountAuthError("invalid_scope", "At least one scope is required")
        cached = self._cached(key)
        if cached:
            return cached
        return await self._mints.do(key, lambda: self._mint(key))

    async def _mint(self, key: tuple[str, ...]) -> CachedServiceToken:
        cached = self._cached(key)
        if cached:
            return cached

        assertion = self.create_assertion(key)
        try:
            payload = await self._endpoint.post_form(
                self._credential.token_uri,
                {"grant_type": JWT_BEARER_GRANT_TYPE, "assertion": assertion},
            )
        except ExchangeFailed as e:
            logger.error(
                "Service account token request rejected",
                extra={
                    "service_account": self._credential.client_email,
                    "error": e.reason,
                    "status": e.status_code,
                },
            )
            raise ServiceAccountAuthError(
                e.reason, f"Service account token request failed: {e}", retryable=e.retryable, cause=e
            ) from e

        access_token = payload.get("access_token")
        try:
            expires_in = int(payload.get("expires_in", ASSERTION_LIFETIME))
        except (TypeError, ValueError):
            expires_in = 0
        if not isinstance(access_token, str) or not access_token or expires_in <= 0:
            raise ServiceAccountAuthError("malformed_response")

        token = CachedServiceToken(
            access_token=access_token, expires_at=self._clock.now() + expires_in
        )
        self._cache[key] = token
        logger.info(
            "Service account token minted",
            extra={"service_account": self._credential.client_email, "scopes": list(key)},
        )
        return token


def load_service_account(
    *, json_key: str = "", path: str = ""
) -> ServiceAccountCredential | None:
    """Load the service account key from inline JSON or a file.

    Inline JSON wins over the file. A configured file that does not exist is
    logged and treated as "no service account".

    Raises:
        BrokerConfigurationError: The key is present but malformed
    """
    if json_key:
        credential = ServiceAccountCredential.from_json(json_key)
    elif path:
        if not Path(path).exists():
            logger.warning("Service account key file not found", extra={"path": path})
            return None
        credential = ServiceAccountCredential.from_file(path)
    else:
        return None

    logger.info(
        "Service account loaded",
        extra={"service_account": credential.client_email, "project": credential.project_id},
    )
    return credential
