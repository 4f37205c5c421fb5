import bisect
import logging
from typing import Callable

from messaging import ConfirmedMessage, Message, PendingMessage

log = logging.getLogger(__name__)

Listener = Callable[[tuple[str, str], list[Message]], None]


def _created_at(message: Message):
    return message.created_at


def _index_of(conversation: list[Message], message: Message) -> int | None:
    """Position of the entry with the same identity (server id, or local id for pending)."""
    for i, existing in enumerate(conversation):
        if type(existing) is type(message) and existing.key == message.key:
            return i
    return None


class ConversationStore:
    """In-memory conversations keyed by conversation_key, ordered by created_at.

    Pending messages are also tracked outside any conversation list so that a
    history reload, or an evict followed by a reload, re-splices them. Messages
    reconciled by replace are kept the same way until a loaded history contains
    them, since that history may have been fetched before the send was saved.
    """

    def __init__(self):
        self._conversations: dict[tuple[str, str], list[Message]] = {}
        self._in_flight: dict[str, PendingMessage] = {}
        self._reconciled: dict[tuple[str, str], dict[str, ConfirmedMessage]] = {}
        self._listeners: list[Listener] = []

    def messages(self, key: tuple[str, str]) -> list[Message]:
        return list(self._conversations.get(key, []))

    def is_loaded(self, key: tuple[str, str]) -> bool:
        return key in self._conversations

    def pending(self, key: tuple[str, str]) -> list[PendingMessage]:
        return [m for m in self._in_flight.values() if m.conversation_key == key]

    def load(self, key: tuple[str, str], history: list[ConfirmedMessage]) -> list[Message]:
        """Replace the list for key with fetched history, keeping in-flight and just-sent messages."""
        merged: list[Message] = []
        seen: set[str] = set()
        for message in sorted(history, key=_created_at):
            if message.server_id in seen:
                continue
            seen.add(message.server_id)
            merged.append(message)
        reconciled = self._reconciled.get(key, {})
        for server_id in list(reconciled):
            if server_id in seen:
                del reconciled[server_id]
            else:
                bisect.insort(merged, reconciled[server_id], key=_created_at)
        if not reconciled:
            self._reconciled.pop(key, None)
        for pending in self.pending(key):
            bisect.insort(merged, pending, key=_created_at)
        self._conversations[key] = merged
        self._notify(key)
        return list(merged)

    def append(self, message: Message) -> bool:
        """Insert in created_at order. Returns False if the message is already present."""
        if isinstance(message, PendingMessage):
            self._in_flight[message.local_id] = message
        conversation = self._conversations.setdefault(message.conversation_key, [])
        if _index_of(conversation, message) is not None:
            return False
        bisect.insort(conversation, message, key=_created_at)
        self._notify(message.conversation_key)
        return True

    def replace(self, local_id: str, server_message: ConfirmedMessage) -> bool:
        """Swap the pending entry local_id for its confirmed version."""
        pending = self._in_flight.pop(local_id, None)
        key = pending.conversation_key if pending else server_message.conversation_key
        if pending is not None:
            self._reconciled.setdefault(key, {})[server_message.server_id] = server_message
        conversation = self._conversations.get(key)
        if conversation is None:
            # Evicted while the send was in flight; the next load fetches the server copy.
            return False

        idx = next(
            (i for i, m in enumerate(conversation)
             if isinstance(m, PendingMessage) and m.local_id == local_id),
            None,
        )
        if idx is None:
            return False
        del conversation[idx]
        if _index_of(conversation, server_message) is None:
            bisect.insort(conversation, server_message, key=_created_at)
        log.debug("[%s] reconciled %s -> %s", key, local_id, server_message.server_id)
        self._notify(key)
        return True

    def remove(self, local_id: str) -> bool:
        pending = self._in_flight.pop(local_id, None)
        if pending is None:
            return False
        conversation = self._conversations.get(pending.conversation_key, [])
        idx = _index_of(conversation, pending)
        if idx is not None:
            del conversation[idx]
            self._notify(pending.conversation_key)
        return True

    def evict(self, key: tuple[str, str]):
        """Forget the rendered list for key. In-flight sends stay tracked."""
        self._conversations.pop(key, None)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, key: tuple[str, str]):
        snapshot = self.messages(key)
        for listener in list(self._listeners):
            try:
                listener(key, snapshot)
            except Exception:
                log.exception("[%s] Error in conversation listener", key)
