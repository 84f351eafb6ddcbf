"""Microsoft Graph (Outlook / Microsoft 365) provider implementation.

Graph is folder based where Gmail is label based:

* read / unread   -> ``isRead``
* starred         -> ``flag.flagStatus == "flagged"``
* folder          -> ``parentFolderId`` (exactly one per message)
* delete          -> hard ``DELETE`` (not a move to Deleted Items)

``sendMail``, ``reply``, ``replyAll`` and ``forward`` answer ``202 Accepted``
without a message id, so those operations return ``SENT_SENTINEL_ID``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Union

import aiohttp
from aiohttp import ClientTimeout
from yarl import URL

from ..abc import AsyncEmailService
from ..config import Config
from ..errors import EmailServiceError, InvalidPageToken, provider_error
from ..models import (
    EPOCH,
    MICROSOFT,
    NO_SUBJECT,
    SENT_SENTINEL_ID,
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
from ..parsers import AddressListLike, coerce_addresses
from ..unsubscribe import extract_unsubscribe_url_from_header, extract_unsubscribe_url_from_html

logger = logging.getLogger(__name__)

GRAPH_BASE = URL("https://graph.microsoft.com/v1.0")

LIST_FIELDS = "id,subject,from,receivedDateTime,bodyPreview,isRead,flag,hasAttachments,conversationId"
MESSAGE_FIELDS = (
    "id,subject,body,from,toRecipients,ccRecipients,bccRecipients,receivedDateTime,"
    "isRead,flag,hasAttachments,conversationId,bodyPreview,parentFolderId"
)

#: Lower-cased display name -> unified folder type.  Both the spaced display
#: names and the well-known folder names are accepted.
FOLDER_TYPES: Dict[str, str] = {
    "inbox": "inbox",
    "sent items": "sent",
    "sentitems": "sent",
    "drafts": "drafts",
    "deleted items": "trash",
    "deleteditems": "trash",
    "junk email": "spam",
    "junkemail": "spam",
}


def _address(data: Optional[Dict[str, Any]]) -> EmailAddress:
    ea = (data or {}).get("emailAddress") or {}
    return EmailAddress(address=ea.get("address") or "", name=ea.get("name") or None)


def _recipients(addresses: Sequence[EmailAddress]) -> List[Dict[str, Any]]:
    out = []
    for a in addresses:
        entry: Dict[str, Any] = {"address": a.address}
        if a.name:
            entry["name"] = a.name
        out.append({"emailAddress": entry})
    return out


def _graph_body(body: EmailBody) -> Dict[str, str]:
    return {"contentType": "HTML" if body.html else "Text", "content": body.content}


def _parse_datetime(value: Optional[str]) -> datetime:
    if not value:
        return EPOCH
    try:
        # Python < 3.11 does not accept the trailing Z
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return EPOCH


class OutlookClient(AsyncEmailService):
    """Concrete :class:`AsyncEmailService` for Microsoft Graph mailboxes."""

    provider = MICROSOFT

    #: Graph accepts up to 1000 messages per page; more is clipped.
    MAX_FETCH_RESULTS: int = 1000

    def __init__(
            self,
            access_token: str,
            *,
            account_id: Optional[str] = None,
            session: Optional[aiohttp.ClientSession] = None,
            timeout_seconds: Optional[int] = None,
    ):
        super().__init__(account_id=account_id)
        self._headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        self._timeout = ClientTimeout(total=timeout_seconds or Config.HTTP_TIMEOUT_SECONDS)
        self._session = session
        self._owns_session = session is None
        self._tracer = get_tracer()

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------
    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def aclose(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None if self._owns_session else self._session

    def _error(self, operation: str, status: Optional[int], detail: str) -> EmailServiceError:
        self._tracer.log(
            "provider.request_failed", provider=self.provider, account=self.account_id,
            operation=operation, status=status,
        )
        return provider_error(
            "Microsoft Graph", status, detail[:500], account_id=self.account_id, operation=operation
        )

    async def _request(
            self,
            method: str,
            url: Union[URL, str],
            *,
            operation: str,
            params: Optional[Dict[str, str]] = None,
            json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        session = self._get_session()
        try:
            async with session.request(
                    method, url, params=params, json=json, headers=self._headers, timeout=self._timeout
            ) as resp:
                if resp.status == 204:
                    return {}
                if not 200 <= resp.status < 300:
                    detail = await resp.text()
                    raise self._error(operation, resp.status, detail)
                try:
                    return await resp.json(content_type=None) or {}
                except ValueError as exc:
                    raise self._error(operation, resp.status, f"invalid JSON body: {exc}") from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise self._error(operation, None, str(exc) or type(exc).__name__) from exc

    async def _get_all(self, url: URL, *, operation: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        """GET a collection and follow every ``@odata.nextLink``."""
        res = await self._request("GET", url, operation=operation, params=params)
        items = list(res.get("value") or [])
        next_link = res.get("@odata.nextLink")
        while next_link:
            res = await self._request("GET", self._next_link_url(next_link, operation), operation=operation)
            items.extend(res.get("value") or [])
            next_link = res.get("@odata.nextLink")
        return items

    def _next_link_url(self, next_link: str, operation: str) -> URL:
        # The link is already encoded; re-encoding would break $skiptoken.
        try:
            url = URL(next_link, encoded=True)
        except (TypeError, ValueError):
            url = None
        if url is None or url.scheme != "https" or url.host != GRAPH_BASE.host:
            raise InvalidPageToken(
                "Refusing to follow a page token outside Microsoft Graph",
                account_id=self.account_id,
                operation=operation,
            )
        return url

    @staticmethod
    def _message_url(message_id: str, *action: str) -> URL:
        url = GRAPH_BASE / "me" / "messages" / message_id
        for segment in action:
            url = url / segment
        return url

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------
    def _parse_list_item(self, data: Dict[str, Any]) -> EmailListItem:
        return EmailListItem(
            id=data.get("id") or "",
            thread_id=data.get("conversationId") or None,
            subject=data.get("subject") or NO_SUBJECT,
            from_=_address(data.get("from")),
            snippet=data.get("bodyPreview") or "",
            received_at=_parse_datetime(data.get("receivedDateTime")),
            is_read=bool(data.get("isRead")),
            is_starred=(data.get("flag") or {}).get("flagStatus") == "flagged",
            has_attachments=bool(data.get("hasAttachments")),
        )

    def _parse_message(self, data: Dict[str, Any]) -> EmailMessage:
        item = self._parse_list_item(data)
        raw_body = data.get("body") or {}
        content_type = (raw_body.get("contentType") or "").lower()
        body = EmailBody(
            html=raw_body.get("content") if content_type == "html" else None,
            text=raw_body.get("content") if content_type == "text" else None,
        )
        headers = {
            (h.get("name") or "").lower(): h.get("value") or ""
            for h in data.get("internetMessageHeaders") or []
        }
        item.unsubscribe_url = (
            extract_unsubscribe_url_from_header(headers.get("list-unsubscribe"))
            or extract_unsubscribe_url_from_html(body.html)
        )
        return EmailMessage(
            **vars(item),
            to=[_address(r) for r in data.get("toRecipients") or []],
            cc=[_address(r) for r in data.get("ccRecipients") or []],
            bcc=[_address(r) for r in data.get("bccRecipients") or []],
            body=body,
            labels=[data["parentFolderId"]] if data.get("parentFolderId") else [],
        )

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
        if page_token:
            # The cursor is the full next-link URL, parameters included
            res = await self._request(
                "GET", self._next_link_url(page_token, "list_emails"), operation="list_emails"
            )
        else:
            top = min(max_results or Config.DEFAULT_PAGE_SIZE, self.MAX_FETCH_RESULTS)
            params = {"$select": LIST_FIELDS, "$top": str(top)}
            if query:
                # $search cannot be combined with $orderby; results come newest first anyway
                params["$search"] = f'"{query}"'
            else:
                params["$orderby"] = "receivedDateTime desc"
            if folder_id:
                url = GRAPH_BASE / "me" / "mailFolders" / folder_id / "messages"
            else:
                url = GRAPH_BASE / "me" / "messages"
            res = await self._request("GET", url, operation="list_emails", params=params)
        return EmailPage(
            messages=[self._parse_list_item(m) for m in res.get("value") or []],
            next_page_token=res.get("@odata.nextLink") or None,
        )

    async def get_email(self, message_id: str) -> EmailMessage:
        res = await self._request(
            "GET",
            self._message_url(message_id),
            operation="get_email",
            params={"$select": MESSAGE_FIELDS + ",internetMessageHeaders"},
        )
        return self._parse_message(res)

    async def get_thread(self, thread_id: str) -> List[EmailMessage]:
        # $filter together with $orderby on this pair is rejected as an
        # InefficientFilter, so ordering happens here.
        escaped = thread_id.replace("'", "''")
        items = await self._get_all(
            GRAPH_BASE / "me" / "messages",
            operation="get_thread",
            params={"$filter": f"conversationId eq '{escaped}'", "$select": MESSAGE_FIELDS},
        )
        messages = [self._parse_message(m) for m in items]
        return sorted(messages, key=lambda m: m.received_at)

    async def count_unread(self) -> int:
        res = await self._request(
            "GET",
            GRAPH_BASE / "me" / "mailFolders" / "inbox",
            operation="count_unread",
            params={"$select": "unreadItemCount"},
        )
        return int(res.get("unreadItemCount") or 0)

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
        message: Dict[str, Any] = {
            "subject": subject,
            "body": _graph_body(body),
            "toRecipients": _recipients(coerce_addresses(to)),
        }
        if cc:
            message["ccRecipients"] = _recipients(coerce_addresses(cc))
        if bcc:
            message["bccRecipients"] = _recipients(coerce_addresses(bcc))
        await self._request(
            "POST",
            GRAPH_BASE / "me" / "sendMail",
            operation="send_email",
            json={"message": message, "saveToSentItems": True},
        )
        return SendResult(id=SENT_SENTINEL_ID)

    async def reply(self, message_id: str, *, body: EmailBody, reply_all: bool = False) -> SendResult:
        await self._request(
            "POST",
            self._message_url(message_id, "replyAll" if reply_all else "reply"),
            operation="reply",
            json={"message": {"body": _graph_body(body)}},
        )
        return SendResult(id=SENT_SENTINEL_ID)

    async def forward(
            self, message_id: str, *, to: AddressListLike, body: Optional[EmailBody] = None
    ) -> SendResult:
        await self._request(
            "POST",
            self._message_url(message_id, "forward"),
            operation="forward",
            json={
                "toRecipients": _recipients(coerce_addresses(to)),
                "comment": body.content if body else "",
            },
        )
        return SendResult(id=SENT_SENTINEL_ID)

    # ------------------------------------------------------------------
    # Message state
    # ------------------------------------------------------------------
    async def delete_email(self, message_id: str) -> None:
        await self._request("DELETE", self._message_url(message_id), operation="delete_email")

    async def _patch(self, message_id: str, operation: str, changes: Dict[str, Any]) -> None:
        await self._request("PATCH", self._message_url(message_id), operation=operation, json=changes)

    async def mark_as_read(self, message_id: str) -> None:
        await self._patch(message_id, "mark_as_read", {"isRead": True})

    async def mark_as_unread(self, message_id: str) -> None:
        await self._patch(message_id, "mark_as_unread", {"isRead": False})

    async def star(self, message_id: str) -> None:
        await self._patch(message_id, "star", {"flag": {"flagStatus": "flagged"}})

    async def unstar(self, message_id: str) -> None:
        await self._patch(message_id, "unstar", {"flag": {"flagStatus": "notFlagged"}})

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------
    async def list_folders(self) -> List[EmailFolder]:
        items = await self._get_all(
            GRAPH_BASE / "me" / "mailFolders",
            operation="list_folders",
            params={"$select": "id,displayName,totalItemCount,unreadItemCount", "$top": "100"},
        )
        return [
            EmailFolder(
                id=f["id"],
                name=f.get("displayName") or "",
                type=FOLDER_TYPES.get((f.get("displayName") or "").lower(), "custom"),  # type: ignore[arg-type]
                unread_count=f.get("unreadItemCount"),
                total_count=f.get("totalItemCount"),
            )
            for f in items
            if f.get("id")
        ]

    async def move_to_folder(self, message_id: str, folder_id: str) -> None:
        await self._request(
            "POST",
            self._message_url(message_id, "move"),
            operation="move_to_folder",
            json={"destinationId": folder_id},
        )

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------
    async def list_attachments(self, message_id: str) -> List[Attachment]:
        items = await self._get_all(
            self._message_url(message_id, "attachments"),
            operation="list_attachments",
            params={"$select": "id,name,contentType,size"},
        )
        return [
            Attachment(
                id=a["id"],
                name=a.get("name") or "attachment",
                content_type=a.get("contentType") or "application/octet-stream",
                size=int(a.get("size") or 0),
            )
            for a in items
        ]

    async def get_attachment(self, message_id: str, attachment_id: str) -> AttachmentContent:
        res = await self._request(
            "GET", self._message_url(message_id, "attachments", attachment_id), operation="get_attachment"
        )
        return AttachmentContent(
            id=res.get("id") or attachment_id,
            name=res.get("name") or "attachment",
            content_type=res.get("contentType") or "application/octet-stream",
            size=int(res.get("size") or 0),
            data=res.get("contentBytes") or "",
        )
