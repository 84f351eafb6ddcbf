from typing import List, Any

from .config import Config
from .AllEmails import AllEmails, create_email_service, create_email_service_from_account
from .TokenRefresh import TokenRefreshManager
from .tools import (
    list_email_accounts,
    email_list,
    email_get,
    email_get_thread,
    email_send,
    email_reply,
    email_forward,
    email_delete,
    email_mark_read,
    email_mark_unread,
    email_star,
    email_unstar,
    email_list_folders,
    email_move,
    email_list_attachments,
    email_get_attachment,
    email_count_unread,
)

config = Config()

__all__ = [
    "AllEmails",
    "TokenRefreshManager",
    "create_email_service",
    "create_email_service_from_account",
    "list_email_accounts",
    "email_list",
    "email_get",
    "email_get_thread",
    "email_send",
    "email_reply",
    "email_forward",
    "email_delete",
    "email_mark_read",
    "email_mark_unread",
    "email_star",
    "email_unstar",
    "email_list_folders",
    "email_move",
    "email_list_attachments",
    "email_get_attachment",
    "email_count_unread",
    "config",
    "getAll"
]


def getAll() -> List[Any]:
    return [
        list_email_accounts,
        email_list,
        email_get,
        email_get_thread,
        email_send,
        email_reply,
        email_forward,
        email_delete,
        email_mark_read,
        email_mark_unread,
        email_star,
        email_unstar,
        email_list_folders,
        email_move,
        email_list_attachments,
        email_get_attachment,
        email_count_unread,
    ]
