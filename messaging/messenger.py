import logging
from pathlib import Path

from api import Api
from messaging import Attachment, ConfirmedMessage, Message, User, conversation_key
from messaging.attachments import AttachmentTransfer
from messaging.broadcast import NotificationBroadcast
from messaging.errors import SendFailed, SendUnconfirmed
from messaging.notifications import NotificationFeed
from messaging.sender import SendOutcome, SendPipeline
from messaging.unread import POLL_ERRORS, POLL_INTERVAL, UnreadAggregator
from store import ConversationStore

log = logging.getLogger(__name__)


class Messenger:
    """Everything the messaging surfaces need for one authenticated session."""

    def __init__(
        self, api: Api, current_user: User,
        store: ConversationStore | None = None,
        transfer: AttachmentTransfer | None = None,
        broadcast: NotificationBroadcast | None = None,
        poll_interval: float = POLL_INTERVAL,
    ):
        self.api = api
        self.current_user = current_user
        self.store = store or ConversationStore()
        self.transfer = transfer or AttachmentTransfer(api)
        self.broadcast = broadcast or NotificationBroadcast(
            UnreadAggregator(api, stale_after=poll_interval),
            NotificationFeed(api),
            interval=poll_interval,
        )
        self.pipeline = SendPipeline(self.store, self.transfer, current_user, on_sent=self._after_send)
        self.selected: User | None = None

    async def _after_send(self):
        await self.broadcast.refresh_now()

    def start(self):
        self.broadcast.start_session()

    async def stop(self):
        await self.broadcast.end_session()
        self.selected = None

    def key_for(self, user: User) -> tuple[str, str]:
        return conversation_key(self.current_user.id, user.id)

    async def users(self) -> list[User]:
        return [User.from_api(u) for u in await self.api.list_users()]

    async def open_conversation(self, user: User) -> list[Message]:
        """Select a counterpart: fetch history, render it, and clear its unread count."""
        if self.selected is not None and self.selected.id != user.id:
            self.close_conversation()
        self.selected = user
        key = self.key_for(user)
        raw = await self.api.conversation(user.id)
        history = [ConfirmedMessage.from_api(m) for m in raw]
        messages = self.store.load(key, history)
        log.info("[%s] Loaded %d messages", user.id, len(history))
        # The history fetch already told the server the thread was viewed.
        await self.broadcast.mark_conversation_read(user.id, notify_server=False)
        return messages

    def close_conversation(self):
        if self.selected is not None:
            self.store.evict(self.key_for(self.selected))
            self.selected = None

    def messages(self, user: User | None = None) -> list[Message]:
        user = user or self.selected
        if user is None:
            return []
        return self.store.messages(self.key_for(user))

    async def send(self, receiver: User, content: str, files=()) -> SendOutcome:
        try:
            return await self.pipeline.send(receiver, content, files)
        except SendUnconfirmed:
            await self._reload(receiver)
            raise

    async def retry(self, failure: SendFailed) -> SendOutcome:
        try:
            return await self.pipeline.retry(failure)
        except SendUnconfirmed:
            await self._reload(failure.draft.receiver)
            raise

    async def _reload(self, user: User):
        """Re-fetch an open conversation so a send the server saved but never confirmed shows up."""
        key = self.key_for(user)
        if not self.store.is_loaded(key):
            return
        try:
            raw = await self.api.conversation(user.id)
        except POLL_ERRORS as e:
            log.warning("[%s] Reload failed: %s", user.id, e)
            return
        self.store.load(key, [ConfirmedMessage.from_api(m) for m in raw])

    async def save_attachment(self, message: ConfirmedMessage, attachment: Attachment, directory: str | Path) -> Path:
        return await self.transfer.save(message.server_id, attachment, directory)
