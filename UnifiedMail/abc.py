from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .models import (
    Attachment,
    AttachmentContent,
    EmailBody,
    EmailFolder,
    EmailMessage,
    EmailPage,
    SendResult,
)
from .parsers import AddressListLike


class AsyncEmailService(ABC):
    """
    Unified mailbox operations, implemented once per provider (Gmail, Outlook).

    Each instance is bound to one mailbox through the access token it was
    built with. Tokens are obtained by the caller (see TokenRefresh.py); the
    service itself never refreshes them and performs no authorization: the
    caller must already know the account belongs to the requesting user.

    Known asymmetries that are surfaced, not hidden:
      - delete_email trashes on Gmail but hard-deletes on Outlook.
      - send/reply/forward on Outlook return ``SENT_SENTINEL_ID``.
      - forwarded-body formatting differs per provider.
      - ``query`` is handed to the provider's own search syntax.
    """

    provider: str = ""

    def __init__(self, *, account_id: Optional[str] = None):
        self.account_id = account_id

    # -------------------- Reading --------------------
    @abstractmethod
    async def list_emails(
            self,
            *,
            folder_id: Optional[str] = None,
            max_results: Optional[int] = None,
            page_token: Optional[str] = None,
            query: Optional[str] = None,
    ) -> EmailPage:
        """Return one page of summaries; ``page_token`` is an opaque cursor."""

    @abstractmethod
    async def get_email(self, message_id: str) -> EmailMessage: ...

    @abstractmethod
    async def get_thread(self, thread_id: str) -> List[EmailMessage]:
        """All messages of a conversation, oldest first."""

    @abstractmethod
    async def count_unread(self) -> int:
        """Return the inbox unread count."""

    # -------------------- Sending --------------------
    @abstractmethod
    async def send_email(
            self,
            *,
            to: AddressListLike,
            subject: str,
            body: EmailBody,
            cc: Optional[AddressListLike] = None,
            bcc: Optional[AddressListLike] = None,
    ) -> SendResult: ...

    @abstractmethod
    async def reply(self, message_id: str, *, body: EmailBody, reply_all: bool = False) -> SendResult: ...

    @abstractmethod
    async def forward(
            self, message_id: str, *, to: AddressListLike, body: Optional[EmailBody] = None
    ) -> SendResult: ...

    # -------------------- Message state --------------------
    @abstractmethod
    async def delete_email(self, message_id: str) -> None: ...

    @abstractmethod
    async def mark_as_read(self, message_id: str) -> None: ...

    @abstractmethod
    async def mark_as_unread(self, message_id: str) -> None: ...

    @abstractmethod
    async def star(self, message_id: str) -> None: ...

    @abstractmethod
    async def unstar(self, message_id: str) -> None: ...

    # -------------------- Folders --------------------
    @abstractmethod
    async def list_folders(self) -> List[EmailFolder]: ...

    @abstractmethod
    async def move_to_folder(self, message_id: str, folder_id: str) -> None: ...

    # -------------------- Attachments --------------------
    @abstractmethod
    async def list_attachments(self, message_id: str) -> List[Attachment]: ...

    @abstractmethod
    async def get_attachment(self, message_id: str, attachment_id: str) -> AttachmentContent: ...

    # -------------------- Info --------------------
    async def get_summary(self) -> Dict[str, Any]:
        """Return quick account/provider summary (for dashboards)."""
        unread = await self.count_unread()
        return {"account": self.account_id, "provider": self.provider, "unread": unread}

    async def aclose(self) -> None:
        """Release resources owned by the service."""

    async def __aenter__(self) -> "AsyncEmailService":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


def reply_subject(subject: str) -> str:
    return subject if subject.startswith("Re:") else f"Re: {subject}"


def forward_subject(subject: str) -> str:
    return subject if subject.startswith("Fwd:") else f"Fwd: {subject}"
