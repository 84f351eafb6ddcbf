"""Email related tools exposed for the agent framework.

Unified return contract:
Each tool returns a dict with keys:
    - success: bool
    - data: payload (any) when success True
    - error: message (str) when success False
    - meta: extra info; on failure always ``kind``, ``retryable`` and
      ``reconnect_required`` so the agent can tell "try again" from
      "ask the user to reconnect the account"

Internal exceptions are caught at the tool boundary and transformed into
structured failures while preserving message clarity.
"""

import asyncio
import dataclasses
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from langchain_core.tools import tool

from .AllEmails import AllEmails
from .errors import EmailServiceError
from .models import EmailBody

# A single manager instance used by all tools (persistence handled by its store)
email_manager = AllEmails()

AccountArg = Optional[Union[str, Dict[str, Any]]]
Recipients = Union[str, List[str]]

# ---- helpers ----
_EXECUTOR = ThreadPoolExecutor(max_workers=1)


def _run(coro):
    """
    Run an async coroutine from a sync context.
    - If there's no running event loop, use asyncio.run(coro).
    - If already in an event loop, run it in a private loop inside a worker thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    def _runner():
        return asyncio.run(coro)

    fut = _EXECUTOR.submit(_runner)
    return fut.result()


def _dump(value: Any) -> Any:
    """Dataclasses -> dicts, datetimes -> ISO strings, recursively."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        value = dataclasses.asdict(value)
    if isinstance(value, dict):
        return {k: _dump(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_dump(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _ok(data: Any = None, **meta: Any) -> Dict[str, Any]:  # Helper for uniform success
    return {"success": True, "data": data, **({"meta": meta} if meta else {})}


def _err(error: str, **meta: Any) -> Dict[str, Any]:  # Helper for uniform failure
    return {"success": False, "error": error, **({"meta": meta} if meta else {})}


def _fail(action: str, e: Exception, account: Optional[str]) -> Dict[str, Any]:
    if isinstance(e, EmailServiceError):
        return _err(
            f"{action} failed: {e}",
            kind=e.kind,
            retryable=e.retryable,
            reconnect_required=e.reconnect_required,
            account=account,
        )
    return _err(
        f"{action} failed: {e}",
        kind=type(e).__name__,
        retryable=False,
        reconnect_required=False,
        account=account,
    )


def _body(body_text: Optional[str], html_body: Optional[str]) -> EmailBody:
    return EmailBody(text=body_text, html=html_body)


async def _resolve_account(account: AccountArg) -> str:
    """
    If the caller didn't pass an account, use the only registered one.
    If there are 0 or >1 accounts, raise ValueError with a helpful message.
    """
    # Accept a full account dict (as returned by list_email_accounts) for robustness.
    if isinstance(account, dict):
        ref = account.get("id") or account.get("email")
        if ref:
            return ref
    if account:
        return account  # type: ignore[return-value]
    accounts = await email_manager.get_accounts()
    if len(accounts) == 1:
        return accounts[0]["id"]
    available = [f"{a['id']} ({a['email']})" for a in accounts] or ["<none>"]
    raise ValueError(
        "account is required; none was provided and auto-selection is ambiguous. "
        f"Available: {', '.join(available)}"
    )


@tool("list_email_accounts")
def list_email_accounts() -> dict:
    """List all linked email accounts (id, provider, email)."""
    try:
        return _ok(_run(email_manager.get_accounts()))
    except Exception as e:  # noqa: BLE001
        return _fail("list accounts", e, None)


@tool("email_list")
def email_list(
    account: AccountArg = None,
    folder_id: Optional[str] = None,
    max_results: int = 20,
    page_token: Optional[str] = None,
    query: Optional[str] = None,
) -> dict:
    """List message summaries, newest first. Pass meta.next_page_token back as page_token for more."""
    acct = None
    try:
        acct = _run(_resolve_account(account))
        page = _run(email_manager.list_emails(
            acct, folder_id=folder_id, max_results=max_results, page_token=page_token, query=query
        ))
        return _ok(
            _dump(page.messages),
            count=len(page.messages),
            next_page_token=page.next_page_token,
            account=acct,
        )
    except Exception as e:  # noqa: BLE001
        return _fail("list", e, acct)


@tool("email_get")
def email_get(account: AccountArg = None, *, message_id: str) -> dict:
    """Fetch a full message (recipients, body, labels, unsubscribe link)."""
    acct = None
    try:
        acct = _run(_resolve_account(account))
        return _ok(_dump(_run(email_manager.get_email(acct, message_id))), account=acct)
    except Exception as e:  # noqa: BLE001
        return _fail("get", e, acct)


@tool("email_get_thread")
def email_get_thread(account: AccountArg = None, *, thread_id: str) -> dict:
    """Fetch every message of a conversation, oldest first."""
    acct = None
    try:
        acct = _run(_resolve_account(account))
        msgs = _run(email_manager.get_thread(acct, thread_id))
        return _ok(_dump(msgs), count=len(msgs), account=acct)
    except Exception as e:  # noqa: BLE001
        return _fail("get thread", e, acct)


@tool("email_send")
def email_send(
    account: AccountArg = None,
    *,
    to: Recipients,
    subject: str,
    body_text: Optional[str] = None,
    html_body: Optional[str] = None,
    cc: Optional[Recipients] = None,
    bcc: Optional[Recipients] = None,
) -> dict:
    """Send a new email. Outlook accounts report the placeholder id "sent"."""
    acct = None
    try:
        acct = _run(_resolve_account(account))
        res = _run(email_manager.send_email(
            acct, to=to, subject=subject, body=_body(body_text, html_body), cc=cc, bcc=bcc
        ))
        data = {"status": "sent", "message_id": res.id, "thread_id": res.thread_id}
        return _ok(data, account=acct)
    except Exception as e:  # noqa: BLE001
        return _fail("send", e, acct)


@tool("email_reply")
def email_reply(
    account: AccountArg = None,
    *,
    message_id: str,
    body_text: Optional[str] = None,
    html_body: Optional[str] = None,
    reply_all: bool = False,
) -> dict:
    """Reply to a message (reply_all=True also addresses the original To and Cc)."""
    acct = None
    try:
        acct = _run(_resolve_account(account))
        res = _run(email_manager.reply(
            acct, message_id, body=_body(body_text, html_body), reply_all=reply_all
        ))
        data = {"status": "sent", "message_id": res.id, "thread_id": res.thread_id}
        return _ok(data, account=acct, in_reply_to=message_id)
    except Exception as e:  # noqa: BLE001
        return _fail("reply", e, acct)


@tool("email_forward")
def email_forward(
    account: AccountArg = None,
    *,
    message_id: str,
    to: Recipients,
    body_text: Optional[str] = None,
    html_body: Optional[str] = None,
) -> dict:
    """Forward a message with an optional note."""
    acct = None
    try:
        acct = _run(_resolve_account(account))
        note = _body(body_text, html_body) if (body_text or html_body) else None
        res = _run(email_manager.forward(acct, message_id, to=to, body=note))
        data = {"status": "sent", "message_id": res.id, "thread_id": res.thread_id}
        return _ok(data, account=acct, forwarded=message_id)
    except Exception as e:  # noqa: BLE001
        return _fail("forward", e, acct)


@tool("email_delete")
def email_delete(account: AccountArg = None, *, message_id: str) -> dict:
    """Delete a message. Gmail moves it to Trash; Outlook deletes it permanently."""
    acct = None
    try:
        acct = _run(_resolve_account(account))
        _run(email_manager.delete_email(acct, message_id))
        return _ok({"deleted": message_id}, account=acct)
    except Exception as e:  # noqa: BLE001
        return _fail("delete", e, acct)


@tool("email_mark_read")
def email_mark_read(account: AccountArg = None, *, message_id: str) -> dict:
    """Mark a message as read."""
    acct = None
    try:
        acct = _run(_resolve_account(account))
        _run(email_manager.mark_as_read(acct, message_id))
        return _ok({"marked_read": message_id}, account=acct)
    except Exception as e:  # noqa: BLE001
        return _fail("mark read", e, acct)


@tool("email_mark_unread")
def email_mark_unread(account: AccountArg = None, *, message_id: str) -> dict:
    """Mark a message as unread."""
    acct = None
    try:
        acct = _run(_resolve_account(account))
        _run(email_manager.mark_as_unread(acct, message_id))
        return _ok({"marked_unread": message_id}, account=acct)
    except Exception as e:  # noqa: BLE001
        return _fail("mark unread", e, acct)


@tool("email_star")
def email_star(account: AccountArg = None, *, message_id: str) -> dict:
    """Star (Gmail) or flag (Outlook) a message."""
    acct = None
    try:
        acct = _run(_resolve_account(account))
        _run(email_manager.star(acct, message_id))
        return _ok({"starred": message_id}, account=acct)
    except Exception as e:  # noqa: BLE001
        return _fail("star", e, acct)


@tool("email_unstar")
def email_unstar(account: AccountArg = None, *, message_id: str) -> dict:
    """Remove the star / flag from a message."""
    acct = None
    try:
        acct = _run(_resolve_account(account))
        _run(email_manager.unstar(acct, message_id))
        return _ok({"unstarred": message_id}, account=acct)
    except Exception as e:  # noqa: BLE001
        return _fail("unstar", e, acct)


@tool("email_list_folders")
def email_list_folders(account: AccountArg = None) -> dict:
    """List folders (Gmail labels) with their unified type."""
    acct = None
    try:
        acct = _run(_resolve_account(account))
        folders = _run(email_manager.list_folders(acct))
        return _ok(_dump(folders), count=len(folders), account=acct)
    except Exception as e:  # noqa: BLE001
        return _fail("list folders", e, acct)


@tool("email_move")
def email_move(account: AccountArg = None, *, message_id: str, folder_id: str) -> dict:
    """Move a message to the folder with the given id (see email_list_folders)."""
    acct = None
    try:
        acct = _run(_resolve_account(account))
        _run(email_manager.move_to_folder(acct, message_id, folder_id))
        return _ok({"moved": message_id, "folder_id": folder_id}, account=acct)
    except Exception as e:  # noqa: BLE001
        return _fail("move", e, acct)


@tool("email_list_attachments")
def email_list_attachments(account: AccountArg = None, *, message_id: str) -> dict:
    """List attachment metadata of a message."""
    acct = None
    try:
        acct = _run(_resolve_account(account))
        atts = _run(email_manager.list_attachments(acct, message_id))
        return _ok(_dump(atts), count=len(atts), account=acct)
    except Exception as e:  # noqa: BLE001
        return _fail("list attachments", e, acct)


@tool("email_get_attachment")
def email_get_attachment(account: AccountArg = None, *, message_id: str, attachment_id: str) -> dict:
    """Download one attachment; data is standard base64."""
    acct = None
    try:
        acct = _run(_resolve_account(account))
        att = _run(email_manager.get_attachment(acct, message_id, attachment_id))
        return _ok(_dump(att), account=acct)
    except Exception as e:  # noqa: BLE001
        return _fail("get attachment", e, acct)


@tool("email_count_unread")
def email_count_unread(account: AccountArg = None) -> dict:
    """Return the number of unread messages in the inbox of an account."""
    acct = None
    try:
        acct = _run(_resolve_account(account))
        count = _run(email_manager.count_unread(acct))
        return _ok({"unread": count}, account=acct)
    except Exception as e:  # noqa: BLE001
        return _fail("count", e, acct)
