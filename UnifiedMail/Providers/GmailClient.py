"""Gmail provider implementation.

This module implements :class:`GmailClient`, the Gmail variant of
:class:`UnifiedMail.abc.AsyncEmailService`.  It wraps the synchronous Google
API discovery client and runs every request through ``asyncio.to_thread``.

The client only ever holds a bearer access token; obtaining and refreshing
that token is the job of :mod:`UnifiedMail.TokenRefresh`.

Gmail's model is label based: a message carries any number of label ids,
and the unified notions map onto them as follows

* read / unread   -> absence / presence of ``UNREAD``
* starred         -> ``STARRED``
* folder          -> one of the system labels below, or a user label
* delete          -> ``messages.trash`` (reversible)
"""

from __future__ import annotations

import asyncio
import base64
import html as html_lib
import logging
from datetime import datetime, timezone
from email.message import EmailMessage as _EmailMessage
from typing import Any, Callable, Dict, List, Optional, Sequence

import google_auth_httplib2
import httplib2
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..abc import AsyncEmailService, forward_subject, reply_subject
from ..config import Config
from ..errors import EmailServiceError, provider_error
from ..models import (
    EPOCH,
    GOOGLE,
    NO_SUBJECT,
    Attachment,
    AttachmentContent,
    EmailAddress,
    EmailBody,
    EmailFolder,
    EmailListItem,
    EmailMessage,
    EmailPage,
    SendResult,
)
from ..observability.tracing import get_tracer
from ..parsers import (
    AddressListLike,
    base64url_to_standard,
    check_has_attachments,
    coerce_addresses,
    extract_body,
    format_address_header,
    header_map,
    iter_parts,
    parse_email_address,
    parse_email_addresses,
)
from ..unsubscribe import extract_unsubscribe_url_from_header, extract_unsubscribe_url_from_html

logger = logging.getLogger(__name__)

#: System label id -> unified folder type.
SYSTEM_LABELS: Dict[str, str] = {
    "INBOX": "inbox",
    "SENT": "sent",
    "DRAFT": "drafts",
    "TRASH": "trash",
    "SPAM": "spam",
}

#: Labels describing message state rather than location; a move keeps them.
STATE_LABELS = frozenset({"UNREAD", "STARRED", "IMPORTANT"})

LIST_METADATA_HEADERS = ["From", "Subject", "Date", "List-Unsubscribe"]

FORWARD_SEPARATOR = "---------- Forwarded message ---------"


class GmailClient(AsyncEmailService):
    """Concrete :class:`AsyncEmailService` for Google's Gmail service."""

    provider = GOOGLE

    #: Hard upper bound for one page.  Gmail itself rejects more than 500;
    #: larger values are clipped (never raise).
    MAX_FETCH_RESULTS: int = 500

    #: Detail fetches per batch request, kept small to stay clear of 429s.
    BATCH_SIZE: int = 50

    def __init__(
            self,
            access_token: str,
            *,
            account_id: Optional[str] = None,
            service: Any = None,
            timeout_seconds: Optional[int] = None,
    ):
        super().__init__(account_id=account_id)
        self._timeout = timeout_seconds or Config.HTTP_TIMEOUT_SECONDS
        self._credentials: Optional[Credentials] = None
        if service is None:
            # Bearer-only credentials; refreshing is TokenRefreshManager's job.
            self._credentials = Credentials(token=access_token)
            service = build("gmail", "v1", http=self._new_http(), cache_discovery=False)
        self.service = service
        self._tracer = get_tracer()

    # ------------------------------------------------------------------
    # Helper utilities
    # ------------------------------------------------------------------
    def _new_http(self) -> google_auth_httplib2.AuthorizedHttp:
        # httplib2 objects are not thread safe; each worker thread gets its own.
        # No refresh status codes: a 401 surfaces as an HttpError.
        return google_auth_httplib2.AuthorizedHttp(
            self._credentials, http=httplib2.Http(timeout=self._timeout), refresh_status_codes=()
        )

    def _execute(self, request: Any) -> Any:
        if self._credentials is not None:
            return request.execute(http=self._new_http())
        return request.execute()

    def _error(self, operation: str, exc: Exception) -> EmailServiceError:
        if isinstance(exc, HttpError):
            status = int(exc.resp.status)
            detail = exc.reason if hasattr(exc, "reason") else str(exc)
        else:
            status, detail = None, str(exc)
        self._tracer.log(
            "provider.request_failed", provider=self.provider, account=self.account_id,
            operation=operation, status=status,
        )
        return provider_error(
            self.provider, status, str(detail), account_id=self.account_id, operation=operation
        )

    async def _call(self, operation: str, fn: Callable[[], Any]) -> Any:
        try:
            return await asyncio.to_thread(fn)
        except HttpError as exc:
            raise self._error(operation, exc) from exc
        except (httplib2.HttpLib2Error, OSError) as exc:
            # Timeouts and connection failures: no response at all
            raise self._error(operation, exc) from exc

    @staticmethod
    def _received_at(msg: Dict[str, Any]) -> datetime:
        try:
            return datetime.fromtimestamp(int(msg.get("internalDate") or 0) / 1000, tz=timezone.utc)
        except (TypeError, ValueError):
            return EPOCH

    def _parse_list_item(self, msg: Dict[str, Any]) -> EmailListItem:
        payload = msg.get("payload") or {}
        headers = header_map(payload)
        labels = msg.get("labelIds") or []
        return EmailListItem(
            id=msg.get("id") or "",
            thread_id=msg.get("threadId") or None,
            subject=headers.get("subject") or NO_SUBJECT,
            from_=parse_email_address(headers.get("from", "")),
            snippet=html_lib.unescape(msg.get("snippet") or ""),
            received_at=self._received_at(msg),
            is_read="UNREAD" not in labels,
            is_starred="STARRED" in labels,
            has_attachments=check_has_attachments(payload),
            unsubscribe_url=extract_unsubscribe_url_from_header(headers.get("list-unsubscribe")),
        )

    def _parse_message(self, msg: Dict[str, Any]) -> EmailMessage:
        payload = msg.get("payload") or {}
        headers = header_map(payload)
        item = self._parse_list_item(msg)
        body = extract_body(payload)
        if not item.unsubscribe_url:
            item.unsubscribe_url = extract_unsubscribe_url_from_html(body.html)
        return EmailMessage(
            **vars(item),
            to=parse_email_addresses(headers.get("to", "")),
            cc=parse_email_addresses(headers.get("cc", "")),
            bcc=parse_email_addresses(headers.get("bcc", "")),
            body=body,
            labels=list(msg.get("labelIds") or []),
        )

    def _build_message(
            self,
            *,
            to: Sequence[EmailAddress],
            subject: str,
            body: EmailBody,
            cc: Sequence[EmailAddress] = (),
            bcc: Sequence[EmailAddress] = (),
            in_reply_to: Optional[str] = None,
            references: Optional[str] = None,
    ) -> _EmailMessage:
        msg = _EmailMessage()
        msg["To"] = format_address_header(to)
        if cc:
            msg["Cc"] = format_address_header(cc)
        if bcc:
            msg["Bcc"] = format_address_header(bcc)
        msg["Subject"] = subject
        if in_reply_to:
            msg["In-Reply-To"] = in_reply_to
            msg["References"] = references or in_reply_to
        if body.text is not None or not body.html:
            msg.set_content(body.text or "")
            if body.html:
                msg.add_alternative(body.html, subtype="html")
        else:
            msg.set_content(body.html, subtype="html")
        return msg

    def _gmail_message(self, message: _EmailMessage, thread_id: Optional[str] = None) -> Dict[str, Any]:
        encoded_message = base64.urlsafe_b64encode(message.as_bytes()).decode()
        raw: Dict[str, Any] = {"raw": encoded_message}
        if thread_id:
            raw["threadId"] = thread_id
        return raw

    async def _fetch_message(self, message_id: str, operation: str, fmt: str = "full") -> Dict[str, Any]:
        def _inner() -> Dict[str, Any]:
            return self._execute(
                self.service.users().messages().get(userId="me", id=message_id, format=fmt)
            )

        return await self._call(operation, _inner)

    async def _modify(self, message_id: str, operation: str, *, add: Sequence[str] = (),
                      remove: Sequence[str] = ()) -> None:
        body: Dict[str, List[str]] = {}
        if add:
            body["addLabelIds"] = list(add)
        if remove:
            body["removeLabelIds"] = list(remove)

        def _inner() -> Dict[str, Any]:
            return self._execute(
                self.service.users().messages().modify(userId="me", id=message_id, body=body)
            )

        await self._call(operation, _inner)

    async def _send_raw(self, message: _EmailMessage, operation: str,
                        thread_id: Optional[str] = None) -> SendResult:
        def _inner() -> Dict[str, Any]:
            return self._execute(
                self.service.users().messages().send(
                    userId="me", body=self._gmail_message(message, thread_id)
                )
            )

        res = await self._call(operation, _inner)
        return SendResult(id=res.get("id", ""), thread_id=res.get("threadId") or thread_id)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------
    async def list_emails(
            self,
            *,
            folder_id: Optional[str] = None,
            max_results: Optional[int] = None,
            page_token: Optional[str] = None,
            query: Optional[str] = None,
    ) -> EmailPage:
        # Clip overly large requests silently to the supported maximum.
        clipped_max = min(max_results or Config.DEFAULT_PAGE_SIZE, self.MAX_FETCH_RESULTS)
        params: Dict[str, Any] = {"userId": "me", "maxResults": clipped_max}
        if page_token:
            params["pageToken"] = page_token
        if query:
            params["q"] = query
        if folder_id:
            params["labelIds"] = [folder_id]

        def _list() -> Dict[str, Any]:
            return self._execute(self.service.users().messages().list(**params))

        res = await self._call("list_emails", _list)
        ids = [m["id"] for m in res.get("messages") or []]
        details = await self._call("list_emails", lambda: self._batch_metadata(ids)) if ids else []
        return EmailPage(
            messages=[self._parse_list_item(d) for d in details],
            next_page_token=res.get("nextPageToken") or None,
        )

    def _batch_metadata(self, ids: List[str]) -> List[Dict[str, Any]]:
        """Fetch metadata for ``ids`` through batch requests, keeping list order."""
        found: Dict[str, Dict[str, Any]] = {}
        failure: List[Exception] = []

        def callback(request_id: str, response: Dict[str, Any], exception: Optional[Exception]) -> None:
            if exception is None:
                found[request_id] = response
            elif isinstance(exception, HttpError) and int(exception.resp.status) == 404:
                # Deleted between list and fetch
                logger.debug("Message %s vanished before its metadata was fetched", request_id)
            else:
                failure.append(exception)

        messages = self.service.users().messages()
        for start in range(0, len(ids), self.BATCH_SIZE):
            batch = self.service.new_batch_http_request(callback=callback)
            for message_id in ids[start:start + self.BATCH_SIZE]:
                batch.add(
                    messages.get(
                        userId="me",
                        id=message_id,
                        format="metadata",
                        metadataHeaders=LIST_METADATA_HEADERS,
                    ),
                    request_id=message_id,
                )
            self._execute(batch)
        if failure:
            raise failure[0]
        return [found[i] for i in ids if i in found]

    async def get_email(self, message_id: str) -> EmailMessage:
        msg = await self._fetch_message(message_id, "get_email")
        return self._parse_message(msg)

    async def get_thread(self, thread_id: str) -> List[EmailMessage]:
        def _inner() -> Dict[str, Any]:
            return self._execute(
                self.service.users().threads().get(userId="me", id=thread_id, format="full")
            )

        res = await self._call("get_thread", _inner)
        messages = [self._parse_message(m) for m in res.get("messages") or []]
        return sorted(messages, key=lambda m: m.received_at)

    async def count_unread(self) -> int:
        def _inner() -> Dict[str, Any]:
            return self._execute(self.service.users().labels().get(userId="me", id="INBOX"))

        res = await self._call("count_unread", _inner)
        return int(res.get("messagesUnread") or 0)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------
    async def send_email(
            self,
            *,
            to: AddressListLike,
            subject: str,
            body: EmailBody,
            cc: Optional[AddressListLike] = None,
            bcc: Optional[AddressListLike] = None,
    ) -> SendResult:
        message = self._build_message(
            to=coerce_addresses(to),
            subject=subject,
            body=body,
            cc=coerce_addresses(cc),
            bcc=coerce_addresses(bcc),
        )
        return await self._send_raw(message, "send_email")

    async def reply(self, message_id: str, *, body: EmailBody, reply_all: bool = False) -> SendResult:
        raw = await self._fetch_message(message_id, "reply")
        original = self._parse_message(raw)
        headers = header_map(raw.get("payload"))

        to = [original.from_]
        if reply_all:
            to += original.to + original.cc

        # Thread on the RFC 822 Message-ID when present; Gmail ids otherwise.
        parent = headers.get("message-id") or message_id
        references = " ".join(r for r in (headers.get("references"), parent) if r)

        message = self._build_message(
            to=to,
            subject=reply_subject(original.subject),
            body=body,
            in_reply_to=parent,
            references=references,
        )
        return await self._send_raw(message, "reply", thread_id=original.thread_id)

    async def forward(
            self, message_id: str, *, to: AddressListLike, body: Optional[EmailBody] = None
    ) -> SendResult:
        original = await self.get_email(message_id)

        forward_header = "\r\n".join([
            "",
            FORWARD_SEPARATOR,
            f"From: {original.from_.format()}",
            f"Date: {original.received_at.isoformat()}",
            f"Subject: {original.subject}",
            f"To: {', '.join(t.address for t in original.to)}",
            "",
        ])
        note = body.content if body else ""
        if original.body.html:
            forwarded = EmailBody(
                html=f"{note}<br><br>{forward_header.replace(chr(13) + chr(10), '<br>')}{original.body.html}"
            )
        else:
            forwarded = EmailBody(text=f"{note}\r\n{forward_header}{original.body.text or ''}")

        message = self._build_message(
            to=coerce_addresses(to),
            subject=forward_subject(original.subject),
            body=forwarded,
        )
        return await self._send_raw(message, "forward")

    # ------------------------------------------------------------------
    # Message state
    # ------------------------------------------------------------------
    async def delete_email(self, message_id: str) -> None:
        def _inner() -> Dict[str, Any]:
            return self._execute(self.service.users().messages().trash(userId="me", id=message_id))

        await self._call("delete_email", _inner)

    async def mark_as_read(self, message_id: str) -> None:
        await self._modify(message_id, "mark_as_read", remove=["UNREAD"])

    async def mark_as_unread(self, message_id: str) -> None:
        await self._modify(message_id, "mark_as_unread", add=["UNREAD"])

    async def star(self, message_id: str) -> None:
        await self._modify(message_id, "star", add=["STARRED"])

    async def unstar(self, message_id: str) -> None:
        await self._modify(message_id, "unstar", remove=["STARRED"])

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------
    async def list_folders(self) -> List[EmailFolder]:
        def _inner() -> Dict[str, Any]:
            return self._execute(self.service.users().labels().list(userId="me"))

        res = await self._call("list_folders", _inner)
        folders: List[EmailFolder] = []
        for label in res.get("labels") or []:
            if not (label.get("id") and label.get("name")):
                continue
            folder_type = SYSTEM_LABELS.get(label["id"], "custom")
            # Other system labels (UNREAD, CATEGORY_*, ...) are not folders
            if folder_type == "custom" and label.get("type") != "user":
                continue
            folders.append(
                EmailFolder(
                    id=label["id"],
                    name=label["name"],
                    type=folder_type,  # type: ignore[arg-type]
                    unread_count=label.get("messagesUnread"),
                    total_count=label.get("messagesTotal"),
                )
            )
        return folders

    async def move_to_folder(self, message_id: str, folder_id: str) -> None:
        msg = await self._fetch_message(message_id, "move_to_folder", fmt="minimal")
        current = msg.get("labelIds") or []
        to_remove = [
            label for label in current
            if label != folder_id
            and label not in STATE_LABELS
            and not label.startswith("CATEGORY_")
        ]
        await self._modify(message_id, "move_to_folder", add=[folder_id], remove=to_remove)

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------
    async def list_attachments(self, message_id: str) -> List[Attachment]:
        msg = await self._fetch_message(message_id, "list_attachments")
        return [
            Attachment(
                id=part["body"]["attachmentId"],
                name=part["filename"],
                content_type=part.get("mimeType") or "application/octet-stream",
                size=int(part["body"].get("size") or 0),
            )
            for part in iter_parts(msg.get("payload"))
            if part.get("filename") and (part.get("body") or {}).get("attachmentId")
        ]

    async def get_attachment(self, message_id: str, attachment_id: str) -> AttachmentContent:
        msg = await self._fetch_message(message_id, "get_attachment")
        # Gmail mints a new attachmentId per messages.get, so an id from an
        # earlier list_attachments often matches nothing here.
        meta = next(
            (p for p in iter_parts(msg.get("payload"))
             if (p.get("body") or {}).get("attachmentId") == attachment_id),
            {},
        )

        def _inner() -> Dict[str, Any]:
            return self._execute(
                self.service.users().messages().attachments().get(
                    userId="me", messageId=message_id, id=attachment_id
                )
            )

        res = await self._call("get_attachment", _inner)
        return AttachmentContent(
            id=attachment_id,
            name=meta.get("filename") or "attachment",
            content_type=meta.get("mimeType") or "application/octet-stream",
            size=int(res.get("size") or 0),
            data=base64url_to_standard(res.get("data")),
        )
