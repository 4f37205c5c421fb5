import asyncio
import logging
import time
from typing import Awaitable, Callable

import aiohttp

from api import Api
from messaging import UnreadIndex
from messaging.errors import ApiError

log = logging.getLogger(__name__)

POLL_INTERVAL = 30  # seconds

STALE = "stale"
REFRESHING = "refreshing"
FRESH = "fresh"

POLL_ERRORS = (ApiError, aiohttp.ClientError, asyncio.TimeoutError, ValueError, TypeError)


def _count(value) -> int:
    return max(0, int(value or 0))


async def poll_quietly(what: str, coro: Awaitable):
    """Run one poll; a failure is logged and reported as None so the old value stays."""
    try:
        return await coro
    except POLL_ERRORS as e:
        log.warning("%s poll failed: %s. Keeping previous value.", what, e)
        return None


class UnreadAggregator:
    """Owns the unread index for messages: global total plus per-counterpart counts.

    Each refresh is numbered when issued. A result is applied only if no newer
    refresh has already been applied, so a slow background poll that lands
    after a mark-read refresh cannot resurrect a cleared count.
    """

    def __init__(self, api: Api, stale_after: float = POLL_INTERVAL):
        self.api = api
        self.stale_after = stale_after
        self.index = UnreadIndex()
        self._state = STALE
        self._fresh_at = 0.0
        self._issued = 0
        self._total_seq = 0
        self._per_user_seq = 0
        self._observers: list[Callable[[UnreadIndex], None]] = []

    @property
    def state(self) -> str:
        if self._state == FRESH and time.monotonic() - self._fresh_at >= self.stale_after:
            self._state = STALE
        return self._state

    def observe(self, observer: Callable[[UnreadIndex], None]):
        self._observers.append(observer)

    def invalidate(self):
        """Mark the index stale after a mutating action (send, mark read)."""
        if self._state == FRESH:
            self._state = STALE

    async def poll_total(self) -> int:
        return _count(await self.api.unread_count())

    async def poll_per_user(self) -> dict[str, int]:
        per_user = {}
        for item in await self.api.unread_by_user():
            user_id = item.get("_id") or item.get("id")
            count = _count(item.get("count"))
            if user_id and count:
                per_user[str(user_id)] = count
        return per_user

    async def refresh(self) -> UnreadIndex:
        self._issued += 1
        seq = self._issued
        self._state = REFRESHING

        total, per_user = await asyncio.gather(
            poll_quietly("Unread count", self.poll_total()),
            poll_quietly("Unread by user", self.poll_per_user()),
        )

        new_total = self.index.total
        new_per_user = self.index.per_user
        if total is not None and seq > self._total_seq:
            self._total_seq = seq
            new_total = total
        if per_user is not None and seq > self._per_user_seq:
            self._per_user_seq = seq
            new_per_user = per_user
        self.index = UnreadIndex(
            total=max(new_total, sum(new_per_user.values())),
            per_user=dict(new_per_user),
        )

        if seq == self._issued:
            if total is None or per_user is None:
                self._state = STALE
            else:
                self._state = FRESH
                self._fresh_at = time.monotonic()

        for observer in list(self._observers):
            try:
                observer(self.index)
            except Exception:
                log.exception("Error in unread observer")
        return self.index

    async def mark_read(self, user_id: str, notify_server: bool = True) -> UnreadIndex:
        """Record that the conversation with user_id was viewed, then re-poll at once.

        The backend clears unread state when the conversation history is fetched.
        Pass notify_server=False when the caller has just done that fetch itself.
        """
        self.invalidate()
        if notify_server:
            try:
                await self.api.conversation(user_id)
            except POLL_ERRORS as e:
                log.warning("[%s] Mark read failed: %s", user_id, e)
        return await self.refresh()
