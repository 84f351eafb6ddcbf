from __future__ import annotations

import importlib

import pytest

import UnifiedMail
from UnifiedMail.AllEmails import AllEmails
from UnifiedMail.models import AccountRecord
from UnifiedMail.store import InMemoryCredentialStore
from UnifiedMail.TokenRefresh import TokenRefreshManager

from conftest import FakeSession

tools = importlib.import_module("UnifiedMail.tools")

NOW = 1_000_000


def account(id, **overrides):
    values = dict(id=id, provider="google", access_token="tok", refresh_token="ref",
                  expires_at=NOW + 3600, email=f"{id}@example.com")
    values.update(overrides)
    return AccountRecord(**values)


def use_accounts(monkeypatch, *records):
    store = InMemoryCredentialStore(list(records))
    manager = AllEmails(
        store=store, token_manager=TokenRefreshManager(store, session=FakeSession(), clock=lambda: NOW)
    )
    monkeypatch.setattr(tools, "email_manager", manager)
    return manager


def test_get_all_exposes_every_tool():
    names = [t.name for t in UnifiedMail.getAll()]
    assert names == [
        "list_email_accounts", "email_list", "email_get", "email_get_thread", "email_send",
        "email_reply", "email_forward", "email_delete", "email_mark_read", "email_mark_unread",
        "email_star", "email_unstar", "email_list_folders", "email_move",
        "email_list_attachments", "email_get_attachment", "email_count_unread",
    ]


def test_list_accounts(monkeypatch):
    use_accounts(monkeypatch, account("g1"))
    res = tools.list_email_accounts.invoke({})
    assert res == {"success": True, "data": [{"id": "g1", "provider": "google", "email": "g1@example.com"}]}


def test_email_list_success_carries_cursor(monkeypatch, recording_providers):
    use_accounts(monkeypatch, account("g1"))

    res = tools.email_list.invoke({"account": "g1", "max_results": 5, "folder_id": "INBOX"})

    assert res["success"] is True
    assert res["meta"] == {"count": 1, "next_page_token": "next", "account": "g1"}
    assert res["data"][0]["id"] == "m1"
    assert res["data"][0]["from_"]["address"] == "a@example.com"
    assert isinstance(res["data"][0]["received_at"], str)


def test_single_account_is_selected_automatically(monkeypatch, recording_providers):
    use_accounts(monkeypatch, account("only"))
    res = tools.email_count_unread.invoke({})
    assert res == {"success": True, "data": {"unread": 3}, "meta": {"account": "only"}}


def test_ambiguous_account_is_an_explicit_failure(monkeypatch, recording_providers):
    use_accounts(monkeypatch, account("a"), account("b"))
    res = tools.email_count_unread.invoke({})
    assert res["success"] is False
    assert "auto-selection is ambiguous" in res["error"]
    assert res["meta"]["kind"] == "ValueError"
    assert recording_providers == []


def test_reconnect_required_surfaces_in_meta(monkeypatch, recording_providers):
    use_accounts(monkeypatch, account("g1", access_token=None))

    res = tools.email_get.invoke({"account": "g1", "message_id": "m1"})

    assert res["success"] is False
    assert res["meta"]["kind"] == "AccountMisconfigured"
    assert res["meta"]["reconnect_required"] is True
    assert res["meta"]["retryable"] is False
    assert res["meta"]["account"] == "g1"


def test_send_reply_forward(monkeypatch, recording_providers):
    use_accounts(monkeypatch, account("g1"))

    sent = tools.email_send.invoke({
        "account": "g1", "to": ["x@example.com"], "subject": "hi", "html_body": "<p>hi</p>",
    })
    replied = tools.email_reply.invoke({"account": "g1", "message_id": "m1", "body_text": "ok", "reply_all": True})
    forwarded = tools.email_forward.invoke({"account": "g1", "message_id": "m1", "to": "y@example.com"})

    assert sent["data"] == {"status": "sent", "message_id": "s1", "thread_id": "t9"}
    assert replied["data"]["message_id"] == "r1"
    assert forwarded["meta"]["forwarded"] == "m1"

    send_call = recording_providers[0].calls[0]
    assert send_call[2]["body"].html == "<p>hi</p>"
    reply_call = recording_providers[1].calls[0]
    assert reply_call[2]["reply_all"] is True
    forward_call = recording_providers[2].calls[0]
    assert forward_call[2]["body"] is None


@pytest.mark.parametrize(
    "tool_name, method",
    [
        ("email_delete", "delete_email"),
        ("email_mark_read", "mark_as_read"),
        ("email_mark_unread", "mark_as_unread"),
        ("email_star", "star"),
        ("email_unstar", "unstar"),
    ],
)
def test_state_tools(monkeypatch, recording_providers, tool_name, method):
    use_accounts(monkeypatch, account("g1"))
    res = getattr(tools, tool_name).invoke({"account": "g1", "message_id": "m7"})
    assert res["success"] is True
    assert recording_providers[0].calls == [(method, ("m7",), {})]


def test_folders_move_and_attachments(monkeypatch, recording_providers):
    use_accounts(monkeypatch, account("g1"))

    folders = tools.email_list_folders.invoke({"account": "g1"})
    moved = tools.email_move.invoke({"account": "g1", "message_id": "m1", "folder_id": "L1"})
    listed = tools.email_list_attachments.invoke({"account": "g1", "message_id": "m1"})
    content = tools.email_get_attachment.invoke({"account": "g1", "message_id": "m1", "attachment_id": "a1"})
    thread = tools.email_get_thread.invoke({"account": "g1", "thread_id": "t1"})

    assert [f["type"] for f in folders["data"]] == ["inbox", "custom"]
    assert moved["data"] == {"moved": "m1", "folder_id": "L1"}
    assert listed["data"][0]["name"] == "a.pdf"
    assert content["data"]["data"] == "YWJj"
    assert thread["meta"]["count"] == 1
