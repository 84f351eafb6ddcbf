from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Literal, Optional


FolderType = Literal["inbox", "sent", "drafts", "trash", "spam", "custom"]

#: Placeholder used whenever a provider reports an empty subject.
NO_SUBJECT = "(No Subject)"

#: Graph's sendMail/reply/forward return no message id; this stands in for it.
SENT_SENTINEL_ID = "sent"

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Stored provider discriminators
GOOGLE = "google"
MICROSOFT = "microsoft-entra-id"

_PROVIDER_ALIASES = {
    "google": GOOGLE,
    "gmail": GOOGLE,
    "microsoft-entra-id": MICROSOFT,
    "azure-ad": MICROSOFT,
    "microsoft": MICROSOFT,
    "outlook": MICROSOFT,
}


def normalize_provider(provider: Optional[str]) -> str:
    """Map a stored provider string onto ``GOOGLE`` / ``MICROSOFT``.

    Unknown values are returned lower-cased so the caller can report them.
    """
    key = (provider or "").strip().lower()
    return _PROVIDER_ALIASES.get(key, key)


@dataclass(eq=False)
class EmailAddress:
    """A single email address with display name.

    Identity is the address alone, compared case-insensitively.
    """
    address: str
    name: Optional[str] = None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EmailAddress):
            return NotImplemented
        return self.address.lower() == other.address.lower()

    def __hash__(self) -> int:
        return hash(self.address.lower())

    def format(self) -> str:
        if not self.name:
            return self.address
        # RFC 5322 quoted-string: backslash-escape quotes and backslashes
        quoted = self.name.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{quoted}" <{self.address}>'


@dataclass
class EmailBody:
    text: Optional[str] = None
    html: Optional[str] = None

    @property
    def content(self) -> str:
        return self.html or self.text or ""


@dataclass
class EmailListItem:
    id: str
    subject: str
    from_: EmailAddress
    snippet: str = ""
    received_at: datetime = EPOCH
    is_read: bool = False
    is_starred: bool = False
    has_attachments: bool = False
    thread_id: Optional[str] = None
    unsubscribe_url: Optional[str] = None


@dataclass
class EmailMessage(EmailListItem):
    to: List[EmailAddress] = field(default_factory=list)
    cc: List[EmailAddress] = field(default_factory=list)
    bcc: List[EmailAddress] = field(default_factory=list)
    body: EmailBody = field(default_factory=EmailBody)
    labels: List[str] = field(default_factory=list)


@dataclass
class EmailPage:
    messages: List[EmailListItem] = field(default_factory=list)
    next_page_token: Optional[str] = None


@dataclass
class EmailFolder:
    id: str
    name: str
    type: FolderType = "custom"
    unread_count: Optional[int] = None
    total_count: Optional[int] = None


@dataclass
class Attachment:
    """Attachment metadata; ``id`` is only meaningful with its message id."""
    id: str
    name: str
    content_type: str = "application/octet-stream"
    size: int = 0


@dataclass
class AttachmentContent(Attachment):
    data: str = ""  # base64


@dataclass
class SendResult:
    id: str
    thread_id: Optional[str] = None


@dataclass
class AccountRecord:
    """Stored credential set for one linked mailbox (non-owned, see store.py)."""
    id: str
    provider: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None  # epoch seconds
    email: Optional[str] = None
