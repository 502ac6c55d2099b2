# calsync/integrations/calendar/errors.py
from typing import Optional


class ProviderError(Exception):
    """A calendar provider call failed."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        provider: Optional[str] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.provider = provider
        super().__init__(message)


class TransientProviderError(ProviderError):
    """Rate limit, 5xx or timeout; safe to retry with backoff."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        provider: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status_code=status_code, provider=provider)
        self.retry_after = retry_after


class TokenExpiredError(ProviderError):
    """The access token was rejected on a data call (HTTP 401)."""


class ReauthorizationRequired(ProviderError):
    """Refresh failed with invalid_grant / revoked consent; a human must reconnect."""


def _retry_after(headers) -> Optional[float]:
    if not headers:
        return None
    value = headers.get("Retry-After") or headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def error_for_status(
    status_code: int, message: str, provider: str, headers=None
) -> ProviderError:
    """Map an HTTP status from a data call to the provider error taxonomy."""
    if status_code == 401:
        return TokenExpiredError(message, status_code=status_code, provider=provider)
    if status_code in (408, 429) or status_code >= 500:
        return TransientProviderError(
            message,
            status_code=status_code,
            provider=provider,
            retry_after=_retry_after(headers),
        )
    return ProviderError(message, status_code=status_code, provider=provider)
