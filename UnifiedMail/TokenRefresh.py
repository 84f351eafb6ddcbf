"""OAuth access-token lifecycle for linked mailboxes.

:class:`TokenRefreshManager` hands out an access token that is valid for at
least the buffer window (five minutes by default), refreshing it through the
account's provider and writing the result back to the credential store when
needed.

Refreshes for the same account are serialized inside one process with an
``asyncio.Lock``; a caller that waited on the lock re-reads the record and
reuses the token the first caller stored. Separate processes can still race,
in which case the last write to the store wins.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional, Union

import aiohttp
from aiohttp import ClientTimeout

from .config import Config
from .errors import (
    AccountMisconfigured,
    AccountNotFound,
    TokenExpiredOrRevoked,
    TokenRefreshFailed,
    UnsupportedProvider,
)
from .models import GOOGLE, MICROSOFT, AccountRecord, normalize_provider
from .observability.tracing import get_tracer
from .store import CredentialStore

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
MICROSOFT_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"

# Error markers meaning the refresh token itself is dead and the user must
# sign in again.
_REVOKED_MARKERS = (
    "invalid_grant",
    "interaction_required",
    "aadsts70000",
    "aadsts50173",
    "aadsts700082",
    "token has been expired or revoked",
    "token has been revoked",
)

AccountRef = Union[str, AccountRecord]


class TokenRefreshManager:
    """Returns currently-valid access tokens for stored accounts."""

    def __init__(
            self,
            store: CredentialStore,
            *,
            session: Optional[aiohttp.ClientSession] = None,
            clock: Callable[[], float] = time.time,
            buffer_seconds: Optional[int] = None,
            timeout_seconds: Optional[int] = None,
            google_client_id: Optional[str] = None,
            google_client_secret: Optional[str] = None,
            microsoft_client_id: Optional[str] = None,
            microsoft_client_secret: Optional[str] = None,
            microsoft_scope: Optional[str] = None,
    ) -> None:
        self.store = store
        self._session = session
        self._clock = clock
        self.buffer_seconds = (
            buffer_seconds if buffer_seconds is not None else Config.TOKEN_REFRESH_BUFFER_SECONDS
        )
        self._timeout = ClientTimeout(total=timeout_seconds or Config.HTTP_TIMEOUT_SECONDS)
        self._google_client_id = google_client_id or Config.GOOGLE_CLIENT_ID
        self._google_client_secret = google_client_secret or Config.GOOGLE_CLIENT_SECRET
        self._microsoft_client_id = microsoft_client_id or Config.MICROSOFT_CLIENT_ID
        self._microsoft_client_secret = microsoft_client_secret or Config.MICROSOFT_CLIENT_SECRET
        self._microsoft_scope = microsoft_scope or Config.MICROSOFT_SCOPE
        self._locks: Dict[str, asyncio.Lock] = {}
        self._tracer = get_tracer()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def get_valid_access_token(self, account: AccountRef) -> str:
        record = await self._resolve(account)
        if not record.access_token:
            raise AccountMisconfigured(
                "No access token found for account", account_id=record.id, operation="get_valid_access_token"
            )
        if self._is_fresh(record):
            self._tracer.log("token.reused", account=record.id)
            return record.access_token

        lock = self._locks.setdefault(record.id, asyncio.Lock())
        async with lock:
            # Someone may have refreshed while we waited.
            latest = await self.store.get(record.id) or record
            if latest.access_token and self._is_fresh(latest):
                self._tracer.log("token.reused", account=record.id, after_wait=True)
                return latest.access_token
            return await self._refresh(latest)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _resolve(self, account: AccountRef) -> AccountRecord:
        if isinstance(account, AccountRecord):
            return account
        record = await self.store.get(account)
        if record is None:
            raise AccountNotFound("Account not found", account_id=account, operation="get_valid_access_token")
        return record

    def _is_fresh(self, record: AccountRecord) -> bool:
        now = int(self._clock())
        return (record.expires_at or 0) > now + self.buffer_seconds

    async def _refresh(self, record: AccountRecord) -> str:
        if not record.refresh_token:
            raise AccountMisconfigured(
                "No refresh token found for account, please reconnect it",
                account_id=record.id,
                operation="refresh_token",
            )

        provider = normalize_provider(record.provider)
        if provider == GOOGLE:
            url = GOOGLE_TOKEN_URL
            form = {
                "client_id": self._google_client_id or "",
                "client_secret": self._google_client_secret or "",
                "refresh_token": record.refresh_token,
                "grant_type": "refresh_token",
            }
        elif provider == MICROSOFT:
            url = MICROSOFT_TOKEN_URL
            form = {
                "client_id": self._microsoft_client_id or "",
                "client_secret": self._microsoft_client_secret or "",
                "refresh_token": record.refresh_token,
                "grant_type": "refresh_token",
                "scope": self._microsoft_scope,
            }
        else:
            raise UnsupportedProvider(
                f"Unknown provider: {record.provider}", account_id=record.id, operation="refresh_token"
            )

        payload = await self._post_form(url, form, record=record, provider=provider)

        access_token = payload.get("access_token")
        if not access_token:
            raise TokenRefreshFailed(
                "Token endpoint returned no access_token",
                provider=provider,
                account_id=record.id,
                operation="refresh_token",
            )
        expires_in = int(payload.get("expires_in") or 3600)
        expires_at = int(self._clock()) + expires_in
        await self.store.update_tokens(
            record.id,
            access_token=access_token,
            expires_at=expires_at,
            refresh_token=payload.get("refresh_token") or None,
        )
        self._tracer.log(
            "token.refreshed",
            account=record.id,
            provider=provider,
            expires_at=expires_at,
            rotated_refresh_token=bool(payload.get("refresh_token")),
        )
        logger.info("Refreshed %s access token for account %s", provider, record.id)
        return access_token

    async def _post_form(
            self, url: str, form: Dict[str, str], *, record: AccountRecord, provider: str
    ) -> Dict[str, Any]:
        try:
            if self._session is not None:
                return await self._send(self._session, url, form, record=record, provider=provider)
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                return await self._send(session, url, form, record=record, provider=provider)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self._tracer.log("token.refresh_failed", account=record.id, provider=provider, error=str(exc))
            raise TokenRefreshFailed(
                f"Failed to reach {provider} token endpoint: {exc}",
                provider=provider,
                account_id=record.id,
                operation="refresh_token",
            ) from exc

    async def _send(
            self,
            session: aiohttp.ClientSession,
            url: str,
            form: Dict[str, str],
            *,
            record: AccountRecord,
            provider: str,
    ) -> Dict[str, Any]:
        async with session.post(url, data=form, timeout=self._timeout) as resp:
            if 200 <= resp.status < 300:
                return await resp.json(content_type=None)
            detail = await resp.text()

        self._tracer.log(
            "token.refresh_failed", account=record.id, provider=provider, status=resp.status
        )
        lowered = detail.lower()
        if resp.status in (400, 401) and any(m in lowered for m in _REVOKED_MARKERS):
            raise TokenExpiredOrRevoked(
                provider=provider, status=resp.status, account_id=record.id, operation="refresh_token"
            )
        raise TokenRefreshFailed(
            f"Failed to refresh {provider} token: {resp.status} {detail[:300]}",
            provider=provider,
            status=resp.status,
            account_id=record.id,
            operation="refresh_token",
        )
