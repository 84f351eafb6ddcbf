"""
This is the application entry point for the cli version of the unified mailbox
Commands:
  /accounts                         list linked accounts
  /folders <account>                list folders with their unified type
  /list <account> [folder] [query]  newest messages of a folder
  /read <account> <message_id>      print one message
  /thread <account> <thread_id>     print a conversation, oldest first
  /exit
"""
import asyncio
from typing import List

from UnifiedMail import AllEmails
from UnifiedMail.errors import EmailServiceError
from UnifiedMail.models import EmailMessage

USAGE = __doc__.split("Commands:", 1)[1]


def _print_message(m: EmailMessage) -> None:
    print(f"From:    {m.from_.format()}")
    print(f"To:      {', '.join(a.format() for a in m.to)}")
    if m.cc:
        print(f"Cc:      {', '.join(a.format() for a in m.cc)}")
    print(f"Date:    {m.received_at.isoformat()}")
    print(f"Subject: {m.subject}")
    if m.unsubscribe_url:
        print(f"Unsubscribe: {m.unsubscribe_url}")
    print()
    print(m.body.text if m.body.text is not None else (m.body.html or ""))


async def _handle(manager: AllEmails, cmd: str, args: List[str]) -> None:
    if cmd == "/accounts":
        for acc in await manager.get_accounts():
            print(f"{acc['id']:<24} {acc['provider']:<20} {acc['email'] or ''}")
    elif cmd == "/folders" and len(args) >= 1:
        for f in await manager.list_folders(args[0]):
            unread = "" if f.unread_count is None else f" ({f.unread_count} unread)"
            print(f"{f.type:<7} {f.name}{unread}  [{f.id}]")
    elif cmd == "/list" and len(args) >= 1:
        folder = args[1] if len(args) > 1 else None
        query = " ".join(args[2:]) or None
        page = await manager.list_emails(args[0], folder_id=folder, query=query)
        for m in page.messages:
            flag = " " if m.is_read else "*"
            print(f"{flag} {m.received_at:%Y-%m-%d %H:%M}  {m.from_.address:<30.30} {m.subject}  [{m.id}]")
        if page.next_page_token:
            print("(more messages available)")
    elif cmd == "/read" and len(args) == 2:
        _print_message(await manager.get_email(args[0], args[1]))
    elif cmd == "/thread" and len(args) == 2:
        for m in await manager.get_thread(args[0], args[1]):
            print("-" * 60)
            _print_message(m)
    else:
        print(USAGE)


def main():
    print("Start")
    manager = AllEmails()

    while True:
        try:
            q = input("\nmail> ").strip()
        except (EOFError, KeyboardInterrupt):
            print("\nbye.")
            break
        if q in ("/exit", "/quit"):
            print("bye.")
            break
        if not q:
            continue

        cmd, *args = q.split()
        try:
            asyncio.run(_handle(manager, cmd, args))
        except EmailServiceError as e:
            hint = " (reconnect the account)" if e.reconnect_required else ""
            print(f"error> {e}{hint}")


if __name__ == "__main__":
    main()
