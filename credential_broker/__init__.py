"""Credential broker for Google Drive/Docs access.

Example:
    from credential_broker import CredentialBroker, NoCredentialsAvailable

    broker = CredentialBroker.from_settings(get_settings())
    url = await broker.start_authorization("user-1")
    ...
    token = await broker.get_access_token("user-1")
"""

from credential_broker.broker import CredentialBroker
from credential_broker.errors import (
    AuthorizationDenied,
    BrokerConfigurationError,
    CredentialBrokerError,
    ExchangeFailed,
    ExpiredOrUnknownState,
    ExpiredState,
    InvalidGrant,
    InvalidState,
    NoCredentialsAvailable,
    NoValidToken,
    ReplayedState,
    ServiceAccountAuthError,
    TokenEndpointTimeout,
)
from credential_broker.providers import AccessToken

__version__ = "1.0.0"
__all__ = [
    "AccessToken",
    "AuthorizationDenied",
    "BrokerConfigurationError",
    "CredentialBroker",
    "CredentialBrokerError",
    "ExchangeFailed",
    "ExpiredOrUnknownState",
    "ExpiredState",
    "InvalidGrant",
    "InvalidState",
    "NoCredentialsAvailable",
    "NoValidToken",
    "ReplayedState",
    "ServiceAccountAuthError",
    "TokenEndpointTimeout",
]
