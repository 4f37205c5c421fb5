import asyncio
from datetime import datetime
from pathlib import Path

import aiohttp

from messaging import (
    FAILED, PENDING, ConfirmedMessage, Message, OutgoingFile, User,
)
from messaging.attachments import Accepted
from messaging.errors import ApiError, EmptyMessage, SendFailed, SendUnconfirmed
from messaging.messenger import Messenger
from surfaces import launcher_badge, navbar_badges


HELP = """\
/users                 list people you can message
/open <n>              open the conversation with user n
/attach <path>         queue a PDF or image for the next message
/get <m> [a]           save attachment a (default 1) of message m
/retry                 resend the last failed message
/notifications         list notifications
/read <n> | /read-all  mark notifications read
/close                 leave the conversation
/quit                  exit
Anything else is sent to the open conversation."""


def parse_command(line: str) -> tuple[str | None, str]:
    """Split console input into (command, argument). Plain text becomes ("say", text)."""
    text = line.strip()
    if not text:
        return None, ""
    if text.lower() in ("exit", "quit"):
        return "quit", ""
    if not text.startswith("/"):
        return "say", text
    name, _, arg = text[1:].partition(" ")
    return name.lower(), arg.strip()


def format_time(dt: datetime, now: datetime | None = None) -> str:
    """'14:05' for today, '18 Feb 14:05' otherwise, in local time."""
    local = dt.astimezone()
    now = (now or datetime.now().astimezone()).astimezone()
    if local.date() == now.date():
        return local.strftime("%H:%M")
    return local.strftime("%-d %b %H:%M")


def format_message(message: Message, me: User) -> str:
    who = "You" if message.sender.id == me.id else message.sender.display_name
    line = f"[{format_time(message.created_at)}] {who}: {message.content}"
    if message.delivery_state == PENDING:
        line += "  (sending...)"
    elif message.delivery_state == FAILED:
        line += "  (failed)"
    for i, att in enumerate(message.attachments, 1):
        line += f"\n    {i}. {att.original_name} ({_size(att.size_bytes)})"
    return line


def _size(n: int) -> str:
    if n < 1024:
        return f"{n} B"
    if n < 1024 * 1024:
        return f"{n / 1024:.1f} KB"
    return f"{n / (1024 * 1024):.1f} MB"


class ConsolePage:
    """The messaging page, rendered to stdout."""

    def __init__(self, messenger: Messenger, download_dir: str | Path = "downloads"):
        self.messenger = messenger
        self.download_dir = Path(download_dir)
        self.users: list[User] = []
        self.queued: list[OutgoingFile] = []
        self.last_failure: SendFailed | None = None
        self._sends: set[asyncio.Task] = set()

    def _print_badge(self, badge):
        print(f"\n[{badge.name}] {badge.label or '0'}")

    def _render(self, key, messages):
        selected = self.messenger.selected
        if selected is None or key != self.messenger.key_for(selected):
            return
        print()
        for message in messages[-20:]:
            print(format_message(message, self.messenger.current_user))

    async def run(self):
        loop = asyncio.get_event_loop()
        unsubscribes = [
            self.messenger.broadcast.subscribe(launcher_badge(self._print_badge)),
            *[self.messenger.broadcast.subscribe(b) for b in navbar_badges(self._print_badge)],
            self.messenger.store.subscribe(self._render),
        ]
        try:
            await self._attempt("users", "")
            while True:
                try:
                    line = await loop.run_in_executor(None, lambda: input("courier> "))
                except (EOFError, KeyboardInterrupt):
                    break
                command, arg = parse_command(line)
                if command is None:
                    continue
                if command == "quit":
                    break
                await self._attempt(command, arg)
        finally:
            for unsubscribe in unsubscribes:
                unsubscribe()
            if self._sends:
                await asyncio.gather(*self._sends, return_exceptions=True)

    async def _attempt(self, command: str, arg: str):
        try:
            await self.dispatch(command, arg)
        except ApiError as e:
            print(f"Error: {e.message or e.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            print(f"Network error: {str(e) or type(e).__name__}. Try again.")

    async def dispatch(self, command: str, arg: str):
        if command == "help":
            print(HELP)
        elif command == "users":
            await self._list_users()
        elif command == "open":
            await self._open(arg)
        elif command == "close":
            self.messenger.close_conversation()
        elif command == "attach":
            self._attach(arg)
        elif command == "get":
            await self._get(arg)
        elif command == "retry":
            self._retry()
        elif command == "notifications":
            self._notifications()
        elif command == "read":
            await self._read(arg)
        elif command == "read-all":
            await self.messenger.broadcast.mark_all_notifications_read()
        elif command == "say":
            self._say(arg)
        else:
            print(f"Unknown command /{command}. Try /help.")

    async def _list_users(self):
        self.users = await self.messenger.users()
        snapshot = self.messenger.broadcast.snapshot
        for i, user in enumerate(self.users, 1):
            unread = snapshot.unread.for_user(user.id) if snapshot else 0
            suffix = f"  ({unread} unread)" if unread else ""
            print(f"{i}. {user.display_name}{suffix}")

    def _pick_user(self, arg: str) -> User | None:
        if arg.isdigit() and 1 <= int(arg) <= len(self.users):
            return self.users[int(arg) - 1]
        return next((u for u in self.users if u.id == arg), None)

    async def _open(self, arg: str):
        user = self._pick_user(arg)
        if user is None:
            print("No such user. Try /users.")
            return
        print(f"--- {user.display_name} ---")
        await self.messenger.open_conversation(user)

    def _attach(self, arg: str):
        path = Path(arg).expanduser()
        if not path.is_file():
            print(f"No such file: {arg}")
            return
        file = OutgoingFile.from_path(path)
        result = self.messenger.transfer.validate(file)
        if isinstance(result, Accepted):
            self.queued.append(file)
            print(f"Attached {file.name} ({len(self.queued)} queued)")
        else:
            print(result.reason)

    def _say(self, text: str):
        receiver = self.messenger.selected
        if receiver is None:
            print("Open a conversation first (/open <n>).")
            return
        files, self.queued = self.queued, []
        self._spawn(self.messenger.send(receiver, text, files))

    def _retry(self):
        if self.last_failure is None:
            print("Nothing to retry.")
            return
        failure, self.last_failure = self.last_failure, None
        self._spawn(self.messenger.retry(failure))

    def _spawn(self, send):
        # Sends run in the background so the prompt stays usable while they upload.
        async def _run():
            try:
                outcome = await send
                for rejected in outcome.rejected:
                    print(rejected.reason)
            except EmptyMessage as e:
                for rejected in e.rejected:
                    print(rejected.reason)
                print("Nothing to send.")
            except SendFailed as e:
                self.last_failure = e
                self.queued = list(e.draft.files)
                print(f"{e.user_message}. Use /retry to try again.")
            except SendUnconfirmed:
                print("The server saved the message but its reply was unreadable. Not resending.")
            except ApiError as e:
                print(f"Error: {e.message or e.status}")
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                print(f"Network error: {str(e) or type(e).__name__}.")

        task = asyncio.create_task(_run())
        self._sends.add(task)
        task.add_done_callback(self._sends.discard)

    async def _get(self, arg: str):
        parts = arg.split()
        messages = self.messenger.messages()
        try:
            message = messages[-20:][int(parts[0]) - 1]
            index = int(parts[1]) - 1 if len(parts) > 1 else 0
            attachment = message.attachments[index]
        except (IndexError, ValueError):
            print("Usage: /get <message> [attachment], counting from the top of the shown list.")
            return
        if not isinstance(message, ConfirmedMessage):
            print("That message is still being sent.")
            return
        path = await self.messenger.save_attachment(message, attachment, self.download_dir)
        print(f"Saved {path}")

    def _notifications(self):
        snapshot = self.messenger.broadcast.snapshot
        items = snapshot.notifications if snapshot else []
        if not items:
            print("No notifications.")
        for i, item in enumerate(items, 1):
            marker = " " if item.is_read else "*"
            print(f"{marker}{i}. [{format_time(item.created_at)}] {item.title}: {item.message}")

    async def _read(self, arg: str):
        snapshot = self.messenger.broadcast.snapshot
        items = snapshot.notifications if snapshot else []
        if not arg.isdigit() or not 1 <= int(arg) <= len(items):
            print("Usage: /read <n> (see /notifications)")
            return
        await self.messenger.broadcast.mark_notification_read(items[int(arg) - 1].id)


async def interactive(messenger: Messenger, download_dir: str | Path = "downloads"):
    await ConsolePage(messenger, download_dir).run()
