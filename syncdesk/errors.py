"""
Error taxonomy shared by the token, mail and calendar layers.

Credential-level errors abort a whole sync and reach the caller.
Per-message errors (ParseFailure) are caught by the sync engine and counted.
Scheduling rejections (no time found, conflict) are returned as structured
results, never raised.
"""

from typing import Optional


class SyncDeskError(Exception):
    """Base class for all errors raised by this package."""

    code = "error"

    def __init__(self, message: str = "", *, user_id: Optional[str] = None, scope: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        self.user_id = user_id
        self.scope = scope


class AuthExpired(SyncDeskError):
    """Refresh impossible or rejected. The user must re-authorize."""

    code = "authExpired"


class AuthTransient(SyncDeskError):
    """Network/5xx failure while refreshing, after bounded retries."""

    code = "authTransient"


class NotConnected(SyncDeskError):
    """No credential on file for the requested scope."""

    code = "notConnected"


class ProviderRateLimited(SyncDeskError):
    """Provider kept answering 429 after backoff."""

    code = "rateLimited"

    def __init__(self, message: str = "", *, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ProviderUnavailable(SyncDeskError):
    """Timeout or 5xx from a provider API (mail, calendar, mailbox)."""

    code = "providerUnavailable"


class ParseFailure(SyncDeskError):
    """A single message could not be fetched or parsed."""

    code = "parseFailure"

    def __init__(self, message: str = "", *, message_id: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.message_id = message_id


class InvalidTimezone(SyncDeskError):
    """The caller named a timezone that is not a known IANA zone."""

    code = "invalidTimezone"
