"""Error taxonomy shared by the token manager and both provider services.

Every error carries the account and the operation it happened in so the
caller can decide between retrying and asking the user to reconnect.
"""
from __future__ import annotations

from typing import Optional


class EmailServiceError(Exception):
    retryable: bool = False
    reconnect_required: bool = False

    def __init__(
            self,
            message: str,
            *,
            account_id: Optional[str] = None,
            operation: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.account_id = account_id
        self.operation = operation

    @property
    def kind(self) -> str:
        return type(self).__name__

    def __str__(self) -> str:
        context = ", ".join(
            f"{k}={v}" for k, v in (("account", self.account_id), ("operation", self.operation)) if v
        )
        return f"{self.message} ({context})" if context else self.message


class AccountNotFound(EmailServiceError):
    """No credential record exists for the identifier."""


class AccountMisconfigured(EmailServiceError):
    """The record lacks an access token, or a refresh token when one is needed."""

    reconnect_required = True


class UnsupportedProvider(EmailServiceError):
    pass


class TokenExpiredOrRevoked(EmailServiceError):
    """The provider refused the refresh token (or the access token outright)."""

    reconnect_required = True

    def __init__(self, message: str = "Token has expired or been revoked. Please reconnect your account.",
                 *, provider: Optional[str] = None, status: Optional[int] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.provider = provider
        self.status = status


class TokenRefreshFailed(EmailServiceError):
    def __init__(self, message: str, *, provider: Optional[str] = None,
                 status: Optional[int] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.provider = provider
        self.status = status

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return _is_transient(self.status)


class ProviderRequestFailed(EmailServiceError):
    """Non-2xx (or no) response from a provider API call."""

    def __init__(self, message: str, *, provider: Optional[str] = None,
                 status: Optional[int] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.provider = provider
        self.status = status

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return _is_transient(self.status)


class MessageNotFound(ProviderRequestFailed):
    pass


class InvalidPageToken(EmailServiceError):
    """A page cursor that this provider did not issue (or that points elsewhere)."""


def _is_transient(status: Optional[int]) -> bool:
    # None means the request never got a response (timeout, connection reset)
    return status is None or status == 429 or status >= 500


def provider_error(
        provider: str,
        status: Optional[int],
        detail: str,
        *,
        account_id: Optional[str] = None,
        operation: Optional[str] = None,
) -> EmailServiceError:
    """Build the typed error for a failed provider call."""
    message = f"{provider} API error: {status if status is not None else 'no response'} {detail}".strip()
    if status == 401:
        return TokenExpiredOrRevoked(message, provider=provider, status=status,
                                     account_id=account_id, operation=operation)
    if status == 404:
        return MessageNotFound(message, provider=provider, status=status,
                               account_id=account_id, operation=operation)
    return ProviderRequestFailed(message, provider=provider, status=status,
                                 account_id=account_id, operation=operation)
