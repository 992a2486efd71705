"""Error taxonomy for the credential broker.

Every transport or provider failure is normalized into one of these types
before it leaves the broker. The original exception, when there is one, is
kept on ``cause`` for logging only.
"""


class CredentialBrokerError(Exception):
    """Base exception for credential broker errors."""

    retryable: bool = False

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class BrokerConfigurationError(CredentialBrokerError):
    """Raised when a flow is used without the credentials it needs."""


# =============================================================================
# OAuth state (CSRF) failures
# =============================================================================


class ExpiredOrUnknownState(CredentialBrokerError):
    """Raised when a state token cannot be redeemed.

    Callers must restart the authorization flow; these are never retried.
    """

    code = "invalid_state"


class InvalidState(ExpiredOrUnknownState):
    """State token was never issued (or was swept long ago)."""

    code = "invalid_state"


class ExpiredState(ExpiredOrUnknownState):
    """State token outlived its TTL before it was redeemed."""

    code = "expired_state"


class ReplayedState(ExpiredOrUnknownState):
    """State token was already consumed."""

    code = "replayed_state"


class AuthorizationDenied(CredentialBrokerError):
    """Raised when the provider redirects back with an ``error`` parameter."""

    def __init__(self, error: str) -> None:
        super().__init__(f"Authorization was not granted: {error}")
        self.error = error


# =============================================================================
# Token endpoint failures
# =============================================================================


class ExchangeFailed(CredentialBrokerError):
    """Raised when the token endpoint does not return a usable token.

    ``reason`` is the OAuth error code when the provider sent one
    (``invalid_client``, ``unauthorized_client``...) or a local code such as
    ``network_error``, ``server_error`` or ``malformed_response``.
    """

    def __init__(
        self,
        reason: str,
        *,
        retryable: bool = False,
        status_code: int | None = None,
        description: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        message = f"Token endpoint request failed: {reason}"
        if description:
            message = f"{message} ({description})"
        super().__init__(message, cause)
        self.reason = reason
        self.retryable = retryable
        self.status_code = status_code
        self.description = description


class InvalidGrant(ExchangeFailed):
    """The code or refresh token is invalid, expired, reused or revoked.

    Terminal: the grant will never succeed, so it must not be retried.
    """

    def __init__(
        self,
        *,
        status_code: int | None = None,
        description: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(
            "invalid_grant",
            retryable=False,
            status_code=status_code,
            description=description,
            cause=cause,
        )


class TokenEndpointTimeout(CredentialBrokerError):
    """The token endpoint did not answer within the configured timeout."""

    retryable = True

    def __init__(self, url: str, timeout: float, cause: Exception | None = None) -> None:
        super().__init__(f"Token endpoint {url} timed out after {timeout:g}s", cause)
        self.url = url
        self.timeout = timeout


# =============================================================================
# Credential availability
# =============================================================================


class NoValidToken(CredentialBrokerError):
    """The token store holds no usable token for the user."""

    def __init__(self, user_id: str, reason: str = "not_connected") -> None:
        super().__init__(f"No valid token for user ({reason})")
        self.user_id = user_id
        self.reason = reason


class ServiceAccountAuthError(CredentialBrokerError):
    """Raised when the service account cannot obtain a token.

    Covers malformed keys, signing failures and provider rejections such as
    ``unauthorized_client``. The cached token, if any, is left untouched.
    """

    def __init__(
        self,
        reason: str,
        message: str | None = None,
        *,
        retryable: bool = False,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message or f"Service account authentication failed: {reason}", cause)
        self.reason = reason
        self.retryable = retryable


class NoCredentialsAvailable(CredentialBrokerError):
    """Neither the user's OAuth grant nor the service account yielded a token."""

    def __init__(self, user_id: str) -> None:
        super().__init__("No credentials available; the user must connect Google Drive")
        self.user_id = user_id
