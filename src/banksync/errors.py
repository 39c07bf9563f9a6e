"""
Error taxonomy for banksync.

Low-level transport and parsing errors (httpx, json) are translated into
these types at the API client and token manager boundary. Nothing else
crosses into the sync orchestrator or the UI layer.
"""

from __future__ import annotations


class BankSyncError(Exception):
    """Base class for all banksync errors."""


class AuthRequiredError(BankSyncError):
    """No usable token and refresh failed. The user should reconnect."""

    def __init__(self, message: str = "Authentication required - please reconnect your bank") -> None:
        super().__init__(message)


class StateMismatchError(BankSyncError):
    """The callback ``state`` did not match the active authorization session."""

    def __init__(self, message: str = "State mismatch - possible CSRF attack, authorization aborted") -> None:
        super().__init__(message)


class AuthorizationDeniedError(BankSyncError):
    """The authorization server redirected back with an ``error`` parameter."""


class TokenExchangeRejectedError(BankSyncError):
    """The token endpoint refused an authorization code."""

    def __init__(self, reason: str, error_code: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.error_code = error_code

    @classmethod
    def from_error_code(cls, error_code: str | None, description: str | None = None) -> TokenExchangeRejectedError:
        if error_code == "invalid_grant":
            return cls("Authorization code expired or already used", error_code)
        if error_code == "invalid_request":
            return cls("Redirect URI mismatch", error_code)
        detail = description or error_code or "unknown error"
        return cls(f"Token exchange rejected: {detail}", error_code)


class TransportError(BankSyncError):
    """The server could not be reached or answered with a failure status."""


class ApiError(TransportError):
    """Non-2xx response from the data API."""

    def __init__(self, status_code: int, error_code: str | None = None, description: str | None = None) -> None:
        detail = description or error_code or "no details"
        super().__init__(f"API request failed [{status_code}]: {detail}")
        self.status_code = status_code
        self.error_code = error_code
        self.description = description


class MalformedResponseError(BankSyncError):
    """The server was reachable but the response broke the expected contract."""


__all__ = [
    "ApiError",
    "AuthRequiredError",
    "AuthorizationDeniedError",
    "BankSyncError",
    "MalformedResponseError",
    "StateMismatchError",
    "TokenExchangeRejectedError",
    "TransportError",
]
