from __future__ import annotations


class PushDispatchError(Exception):
    """Base error for pushdispatch."""


class CredentialExchangeError(PushDispatchError):
    """Service credential could not be obtained from the identity provider."""


class CredentialConfigError(CredentialExchangeError):
    """Service account configuration missing or unreadable."""


class ProfileFetchError(PushDispatchError):
    """Recipient profile lookup failed or returned no profile."""


class GatewayError(PushDispatchError):
    """Push gateway delivery failure."""

    code = "gateway_error"


class GatewayUnreachableError(GatewayError):
    """Push gateway could not be reached or timed out."""

    code = "gateway_unreachable"


class GatewayResponseError(GatewayError):
    """Push gateway answered with an error object or an error page."""

    code = "gateway_error"


class GatewayMalformedResponseError(GatewayError):
    """Push gateway answered with a body that is neither an error nor a success marker."""

    code = "gateway_malformed_response"


class DispatchStoreError(PushDispatchError):
    """Data store layer failure."""
