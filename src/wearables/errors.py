"""Exception types raised by the Fitbit sync engine."""

from __future__ import annotations


class FitbitError(Exception):
    """Base class for every error raised by this package."""


class NotConnectedError(FitbitError):
    """The user has no active Fitbit account (absent or still pending)."""


class SyncInProgressError(FitbitError):
    """Another sync run already holds the lease for this user."""


class TokenExchangeError(FitbitError):
    """The authorization-code exchange was rejected by Fitbit."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class TokenRefreshError(TokenExchangeError):
    """The refresh-token grant was rejected by Fitbit."""


class FitbitAPIError(FitbitError):
    """A Web API call returned a non-2xx response.

    Attributes:
        status_code: HTTP status returned by Fitbit.
        retry_after: Seconds from the ``Retry-After`` header on a 429, if any.
    """

    def __init__(
        self, message: str, status_code: int, retry_after: int | None = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return self.status_code == 429 or self.status_code >= 500

    @property
    def unauthorized(self) -> bool:
        return self.status_code == 401
