from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, TypeVar, Union

from .abc import AsyncEmailService
from .errors import AccountNotFound, EmailServiceError, UnsupportedProvider
from .models import (
    GOOGLE,
    MICROSOFT,
    AccountRecord,
    Attachment,
    AttachmentContent,
    EmailBody,
    EmailFolder,
    EmailMessage,
    EmailPage,
    SendResult,
    normalize_provider,
)
from .observability.tracing import get_tracer
from .parsers import AddressListLike
from .Providers.GmailClient import GmailClient
from .Providers.OutlookClient import OutlookClient
from .store import CredentialStore, JsonFileCredentialStore
from .TokenRefresh import TokenRefreshManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Mapping of stored provider discriminators to their service classes
PROVIDERS: Dict[str, Type[AsyncEmailService]] = {
    GOOGLE: GmailClient,
    MICROSOFT: OutlookClient,
}


def create_email_service(
        provider: str, access_token: str, *, account_id: Optional[str] = None, **options: Any
) -> AsyncEmailService:
    """Build the service variant for ``provider`` around a ready access token."""
    key = normalize_provider(provider)
    service_cls = PROVIDERS.get(key)
    if service_cls is None:
        raise UnsupportedProvider(
            f"Unknown provider: {provider}", account_id=account_id, operation="create_email_service"
        )
    get_tracer().log("service.created", provider=key, account=account_id)
    return service_cls(access_token, account_id=account_id, **options)


async def create_email_service_from_account(
        account: Union[str, AccountRecord],
        *,
        store: CredentialStore,
        token_manager: TokenRefreshManager,
        **options: Any,
) -> AsyncEmailService:
    """Resolve ``account``, make sure its token is valid and build its service.

    Token failures propagate unchanged; no provider call is made in that case.
    """
    if isinstance(account, AccountRecord):
        record = account
    else:
        record = await store.get(account)
        if record is None:
            raise AccountNotFound("Account not found", account_id=account, operation="create_email_service")
    access_token = await token_manager.get_valid_access_token(record)
    return create_email_service(record.provider, access_token, account_id=record.id, **options)


def describe_account(record: AccountRecord) -> Dict[str, Any]:
    """Public view of an account record (tokens stripped)."""
    return {"id": record.id, "provider": normalize_provider(record.provider), "email": record.email}


class AllEmails:
    """A multi-account mailbox manager.

    Accounts live in a :class:`CredentialStore` (``email_accounts.json`` by
    default).  Every method mirrors :class:`AsyncEmailService` with an extra
    leading ``account`` argument, which may be the account id or its email
    address (case-insensitive).  A fresh service is built per call, so a token
    refreshed by one call is picked up by the next.
    """

    def __init__(
            self,
            *,
            store: Optional[CredentialStore] = None,
            token_manager: Optional[TokenRefreshManager] = None,
    ) -> None:
        self.store = store or JsonFileCredentialStore()
        self.token_manager = token_manager or TokenRefreshManager(self.store)

    # ------------------------------------------------------------------
    # Account management
    # ------------------------------------------------------------------
    async def get_accounts(self) -> List[Dict[str, Any]]:
        """Return metadata for all managed accounts."""
        return [describe_account(r) for r in await self.store.list_accounts()]

    async def add_account(self, record: AccountRecord) -> Dict[str, Any]:
        """Store (or replace) a linked account record produced by a sign-in flow."""
        return describe_account(await self.store.upsert(record))

    async def _get(self, account: str) -> AccountRecord:
        record = await self.store.get(account)
        if record is not None:
            return record
        # Fallback: lookup by email address (case-insensitive)
        lowered = account.lower()
        records = await self.store.list_accounts()
        for candidate in records:
            if (candidate.email or "").lower() == lowered:
                return candidate
        available = [f"{r.id} ({r.email})" for r in records] or ["<none>"]
        raise AccountNotFound(
            f"Account '{account}' is not registered. Available: {', '.join(available)}",
            account_id=account,
        )

    async def service(self, account: str) -> AsyncEmailService:
        """Build a ready service for ``account``; the caller must ``aclose`` it."""
        record = await self._get(account)
        return await create_email_service_from_account(
            record, store=self.store, token_manager=self.token_manager
        )

    async def _with_service(self, account: str, fn: Callable[[AsyncEmailService], Awaitable[T]]) -> T:
        async with await self.service(account) as svc:
            return await fn(svc)

    # ------------------------------------------------------------------
    # Methods mirroring AsyncEmailService with an extra `account` param
    # ------------------------------------------------------------------
    async def list_emails(
            self,
            account: str,
            *,
            folder_id: Optional[str] = None,
            max_results: Optional[int] = None,
            page_token: Optional[str] = None,
            query: Optional[str] = None,
    ) -> EmailPage:
        return await self._with_service(account, lambda s: s.list_emails(
            folder_id=folder_id, max_results=max_results, page_token=page_token, query=query
        ))

    async def get_email(self, account: str, message_id: str) -> EmailMessage:
        return await self._with_service(account, lambda s: s.get_email(message_id))

    async def get_thread(self, account: str, thread_id: str) -> List[EmailMessage]:
        return await self._with_service(account, lambda s: s.get_thread(thread_id))

    async def count_unread(self, account: str) -> int:
        return await self._with_service(account, lambda s: s.count_unread())

    async def send_email(
            self,
            account: str,
            *,
            to: AddressListLike,
            subject: str,
            body: EmailBody,
            cc: Optional[AddressListLike] = None,
            bcc: Optional[AddressListLike] = None,
    ) -> SendResult:
        return await self._with_service(account, lambda s: s.send_email(
            to=to, subject=subject, body=body, cc=cc, bcc=bcc
        ))

    async def reply(
            self, account: str, message_id: str, *, body: EmailBody, reply_all: bool = False
    ) -> SendResult:
        return await self._with_service(account, lambda s: s.reply(message_id, body=body, reply_all=reply_all))

    async def forward(
            self, account: str, message_id: str, *, to: AddressListLike, body: Optional[EmailBody] = None
    ) -> SendResult:
        return await self._with_service(account, lambda s: s.forward(message_id, to=to, body=body))

    async def delete_email(self, account: str, message_id: str) -> None:
        await self._with_service(account, lambda s: s.delete_email(message_id))

    async def mark_as_read(self, account: str, message_id: str) -> None:
        await self._with_service(account, lambda s: s.mark_as_read(message_id))

    async def mark_as_unread(self, account: str, message_id: str) -> None:
        await self._with_service(account, lambda s: s.mark_as_unread(message_id))

    async def star(self, account: str, message_id: str) -> None:
        await self._with_service(account, lambda s: s.star(message_id))

    async def unstar(self, account: str, message_id: str) -> None:
        await self._with_service(account, lambda s: s.unstar(message_id))

    async def list_folders(self, account: str) -> List[EmailFolder]:
        return await self._with_service(account, lambda s: s.list_folders())

    async def move_to_folder(self, account: str, message_id: str, folder_id: str) -> None:
        await self._with_service(account, lambda s: s.move_to_folder(message_id, folder_id))

    async def list_attachments(self, account: str, message_id: str) -> List[Attachment]:
        return await self._with_service(account, lambda s: s.list_attachments(message_id))

    async def get_attachment(self, account: str, message_id: str, attachment_id: str) -> AttachmentContent:
        return await self._with_service(account, lambda s: s.get_attachment(message_id, attachment_id))

    async def get_summary(self, account: str) -> Dict[str, Any]:
        return await self._with_service(account, lambda s: s.get_summary())

    # ------------------------------------------------------------------
    # Dashboard bootstrap
    # ------------------------------------------------------------------
    async def load_initial_data(self, *, max_results: int = 200) -> Dict[str, Any]:
        """Folders and the first inbox page of every account, fetched concurrently.

        One failing account never fails the whole load: it degrades to empty
        data with the error recorded under ``error``.
        """
        records = await self.store.list_accounts()
        if not records:
            return {"accounts": [], "account_data": {}, "default_account_id": None}

        async def load(record: AccountRecord) -> Dict[str, Any]:
            try:
                async with await create_email_service_from_account(
                        record, store=self.store, token_manager=self.token_manager
                ) as svc:
                    folders, page = await asyncio.gather(
                        svc.list_folders(),
                        svc.list_emails(folder_id="INBOX", max_results=max_results),
                    )
            except Exception as e:  # noqa: BLE001
                if isinstance(e, EmailServiceError):
                    logger.warning("Initial load failed for account %s: %s", record.id, e)
                    error = {
                        "kind": e.kind,
                        "message": str(e),
                        "retryable": e.retryable,
                        "reconnect_required": e.reconnect_required,
                    }
                else:
                    logger.exception("Unexpected error loading account %s", record.id)
                    error = {
                        "kind": type(e).__name__,
                        "message": str(e),
                        "retryable": False,
                        "reconnect_required": False,
                    }
                return {
                    "folders": [],
                    "emails": EmailPage(),
                    "default_folder_id": "INBOX",
                    "error": error,
                }
            inbox = next((f for f in folders if f.type == "inbox"), None)
            return {
                "folders": folders,
                "emails": page,
                "default_folder_id": inbox.id if inbox else "INBOX",
                "error": None,
            }

        results = await asyncio.gather(*(load(r) for r in records))
        return {
            "accounts": [describe_account(r) for r in records],
            "account_data": {r.id: data for r, data in zip(records, results)},
            "default_account_id": records[0].id,
        }
