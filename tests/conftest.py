"""Shared fakes: a scripted Gmail discovery resource, a scripted aiohttp
session and a recording mailbox service.  Nothing here touches the network.
"""

from __future__ import annotations

import asyncio
import base64
import copy
import importlib
import json
from typing import Any, Callable, Dict, List, Optional, Tuple

import httplib2
import pytest
from googleapiclient.errors import HttpError

from UnifiedMail.abc import AsyncEmailService
from UnifiedMail.models import (
    Attachment,
    AttachmentContent,
    EmailAddress,
    EmailFolder,
    EmailListItem,
    EmailMessage,
    EmailPage,
    SendResult,
)


# ----------------------------------------------------------------------
# Gmail
# ----------------------------------------------------------------------
def b64url(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode().rstrip("=")


def http_error(status: int, message: str = "boom") -> HttpError:
    body = json.dumps({"error": {"code": status, "message": message}}).encode()
    return HttpError(httplib2.Response({"status": status}), body)


def gmail_message(
        message_id: str,
        *,
        thread_id: str = "t1",
        subject: Optional[str] = "Hello",
        sender: str = "Alice <alice@example.com>",
        to: str = "me@example.com",
        cc: Optional[str] = None,
        internal_date: int = 1_700_000_000_000,
        labels: Optional[List[str]] = None,
        text: Optional[str] = None,
        html: Optional[str] = None,
        extra_headers: Optional[Dict[str, str]] = None,
        attachments: Optional[List[Dict[str, Any]]] = None,
        snippet: str = "",
) -> Dict[str, Any]:
    headers = [{"name": "From", "value": sender}, {"name": "To", "value": to}]
    if subject is not None:
        headers.append({"name": "Subject", "value": subject})
    if cc:
        headers.append({"name": "Cc", "value": cc})
    for name, value in (extra_headers or {}).items():
        headers.append({"name": name, "value": value})

    bodies = []
    if text is not None:
        bodies.append({"mimeType": "text/plain", "filename": "", "body": {"data": b64url(text)}})
    if html is not None:
        bodies.append({"mimeType": "text/html", "filename": "", "body": {"data": b64url(html)}})
    parts = [{"mimeType": "multipart/alternative", "filename": "", "body": {}, "parts": bodies}]
    parts += attachments or []

    return {
        "id": message_id,
        "threadId": thread_id,
        "labelIds": list(labels if labels is not None else ["INBOX", "UNREAD"]),
        "snippet": snippet,
        "internalDate": str(internal_date),
        "payload": {"mimeType": "multipart/mixed", "filename": "", "headers": headers, "parts": parts},
    }


class FakeGmailRequest:
    def __init__(self, service: "FakeGmailService", path: str, kwargs: Dict[str, Any]):
        self.service = service
        self.path = path
        self.kwargs = kwargs

    def execute(self, http: Any = None) -> Any:
        self.service.calls.append((self.path, self.kwargs))
        response = self.service.responses.get(self.path, {})
        if callable(response):
            response = response(**self.kwargs)
        if isinstance(response, Exception):
            raise response
        return copy.deepcopy(response)


class FakeGmailResource:
    def __init__(self, service: "FakeGmailService", path: str):
        self._service = service
        self._path = path

    def __getattr__(self, name: str) -> Callable[..., Any]:
        def method(**kwargs: Any) -> Any:
            path = f"{self._path}.{name}"
            if kwargs:
                return FakeGmailRequest(self._service, path, kwargs)
            return FakeGmailResource(self._service, path)

        return method


class FakeGmailBatch:
    def __init__(self, callback: Callable[[str, Any, Optional[Exception]], None]):
        self.callback = callback
        self.requests: List[Tuple[FakeGmailRequest, str]] = []

    def add(self, request: FakeGmailRequest, request_id: str) -> None:
        self.requests.append((request, request_id))

    def execute(self, http: Any = None) -> None:
        for request, request_id in self.requests:
            try:
                response = request.execute()
            except HttpError as exc:
                self.callback(request_id, None, exc)
            else:
                self.callback(request_id, response, None)


class FakeGmailService:
    """Stands in for ``build("gmail", "v1")``.

    ``responses`` maps a dotted resource path ("users.messages.get") to a
    value, an exception, or a callable receiving the request kwargs.
    """

    def __init__(self, responses: Optional[Dict[str, Any]] = None):
        self.responses: Dict[str, Any] = dict(responses or {})
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.batches: List[FakeGmailBatch] = []

    def users(self) -> FakeGmailResource:
        return FakeGmailResource(self, "users")

    def new_batch_http_request(self, callback: Callable[..., None]) -> FakeGmailBatch:
        batch = FakeGmailBatch(callback)
        self.batches.append(batch)
        return batch

    def calls_to(self, path: str) -> List[Dict[str, Any]]:
        return [kwargs for p, kwargs in self.calls if p == path]


def messages_by_id(*messages: Dict[str, Any]) -> Callable[..., Any]:
    """``users.messages.get`` responder looking messages up by id."""
    table = {m["id"]: m for m in messages}

    def respond(id: str, **_: Any) -> Any:
        return table.get(id) or http_error(404, "Requested entity was not found.")

    return respond


# ----------------------------------------------------------------------
# aiohttp
# ----------------------------------------------------------------------
class FakeResponse:
    def __init__(self, status: int = 200, payload: Any = None, text: Optional[str] = None):
        self.status = status
        self._payload = payload
        self._text = text

    async def __aenter__(self) -> "FakeResponse":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        return None

    async def json(self, content_type: Optional[str] = None) -> Any:
        await asyncio.sleep(0)
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload

    async def text(self) -> str:
        if self._text is not None:
            return self._text
        return json.dumps(self._payload) if self._payload is not None else ""


class FakeSession:
    """Scripted stand-in for ``aiohttp.ClientSession``.

    ``responses`` is either a list consumed in order or a callable
    ``(method, url, kwargs) -> FakeResponse``; an exception is raised.
    """

    def __init__(self, responses: Any = None):
        self.responses = responses if responses is not None else []
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []
        self.closed = False

    def request(self, method: str, url: Any, **kwargs: Any) -> FakeResponse:
        self.calls.append((method, str(url), kwargs))
        if callable(self.responses):
            response = self.responses(method, str(url), kwargs)
        else:
            assert self.responses, f"unexpected request {method} {url}"
            response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def post(self, url: Any, **kwargs: Any) -> FakeResponse:
        return self.request("POST", url, **kwargs)

    async def close(self) -> None:
        self.closed = True


# ----------------------------------------------------------------------
# Recording service for the factory / manager / tool layers
# ----------------------------------------------------------------------
class RecordingService(AsyncEmailService):
    provider = "recording"
    created: List["RecordingService"] = []

    def __init__(self, access_token: str, *, account_id: Optional[str] = None, **options: Any):
        super().__init__(account_id=account_id)
        self.access_token = access_token
        self.options = options
        self.calls: List[Tuple[str, tuple, dict]] = []
        self.closed = False
        RecordingService.created.append(self)

    def _record(self, name: str, *args: Any, **kwargs: Any) -> None:
        self.calls.append((name, args, kwargs))

    async def list_emails(self, **kwargs: Any) -> EmailPage:
        self._record("list_emails", **kwargs)
        item = EmailListItem(id="m1", subject="Hi", from_=EmailAddress("a@example.com"), thread_id="t1")
        return EmailPage(messages=[item], next_page_token="next")

    async def get_email(self, message_id: str) -> EmailMessage:
        self._record("get_email", message_id)
        return EmailMessage(id=message_id, subject="Hi", from_=EmailAddress("a@example.com", "A"))

    async def get_thread(self, thread_id: str) -> List[EmailMessage]:
        self._record("get_thread", thread_id)
        return [await self.get_email("m1")]

    async def count_unread(self) -> int:
        self._record("count_unread")
        return 3

    async def send_email(self, **kwargs: Any) -> SendResult:
        self._record("send_email", **kwargs)
        return SendResult(id="s1", thread_id="t9")

    async def reply(self, message_id: str, **kwargs: Any) -> SendResult:
        self._record("reply", message_id, **kwargs)
        return SendResult(id="r1")

    async def forward(self, message_id: str, **kwargs: Any) -> SendResult:
        self._record("forward", message_id, **kwargs)
        return SendResult(id="f1")

    async def delete_email(self, message_id: str) -> None:
        self._record("delete_email", message_id)

    async def mark_as_read(self, message_id: str) -> None:
        self._record("mark_as_read", message_id)

    async def mark_as_unread(self, message_id: str) -> None:
        self._record("mark_as_unread", message_id)

    async def star(self, message_id: str) -> None:
        self._record("star", message_id)

    async def unstar(self, message_id: str) -> None:
        self._record("unstar", message_id)

    async def list_folders(self) -> List[EmailFolder]:
        self._record("list_folders")
        return [EmailFolder(id="INBOX", name="Inbox", type="inbox"), EmailFolder(id="L1", name="Work")]

    async def move_to_folder(self, message_id: str, folder_id: str) -> None:
        self._record("move_to_folder", message_id, folder_id)

    async def list_attachments(self, message_id: str) -> List[Attachment]:
        self._record("list_attachments", message_id)
        return [Attachment(id="a1", name="a.pdf", content_type="application/pdf", size=3)]

    async def get_attachment(self, message_id: str, attachment_id: str) -> AttachmentContent:
        self._record("get_attachment", message_id, attachment_id)
        return AttachmentContent(id=attachment_id, name="a.pdf", size=3, data="YWJj")

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def recording_providers(monkeypatch):
    """Route every provider discriminator to :class:`RecordingService`."""
    all_emails_module = importlib.import_module("UnifiedMail.AllEmails")
    from UnifiedMail.models import GOOGLE, MICROSOFT

    RecordingService.created = []
    monkeypatch.setitem(all_emails_module.PROVIDERS, GOOGLE, RecordingService)
    monkeypatch.setitem(all_emails_module.PROVIDERS, MICROSOFT, RecordingService)
    return RecordingService.created


@pytest.fixture
def now() -> int:
    return 1_000_000
