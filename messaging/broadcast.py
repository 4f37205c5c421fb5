"""One poller for the whole session, fanned out to every UI surface.

Surfaces (launcher badge, navbar badges, messaging page) subscribe here instead
of running their own timers. The timer runs only while a session is active and
at least one surface is subscribed.
"""

import asyncio
import logging
from typing import Callable

from messaging import Snapshot, UnreadIndex
from messaging.notifications import NotificationFeed
from messaging.unread import POLL_INTERVAL, UnreadAggregator, poll_quietly

log = logging.getLogger(__name__)

Listener = Callable[[Snapshot], None]


class NotificationBroadcast:
    def __init__(
        self, aggregator: UnreadAggregator,
        feed: NotificationFeed | None = None, interval: float = POLL_INTERVAL,
    ):
        self.aggregator = aggregator
        self.feed = feed
        self.interval = interval
        self.snapshot: Snapshot | None = None
        self._listeners: list[Listener] = []
        self._session_active = False
        self._timer: asyncio.Task | None = None
        self._cycle: asyncio.Task | None = None
        self._cycles_running = 0
        aggregator.observe(self._on_unread)

    @property
    def polling(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def session_active(self) -> bool:
        return self._session_active

    def start_session(self):
        self._session_active = True
        self._ensure_timer()

    async def end_session(self):
        """Logout: stop polling and forget the last snapshot."""
        self._session_active = False
        await self._stop_timer()
        self.snapshot = None

    async def aclose(self):
        await self.end_session()
        self._listeners.clear()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a surface. Must be called from the running event loop."""
        self._listeners.append(listener)
        if self.snapshot is not None:
            self._deliver(listener, self.snapshot)
        self._ensure_timer()

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
            if not self._listeners and self._timer is not None:
                self._timer.cancel()
                self._timer = None
                log.info("Last surface unsubscribed, polling stopped")

        return unsubscribe

    def _ensure_timer(self):
        if self._session_active and self._listeners and not self.polling:
            self._timer = asyncio.get_running_loop().create_task(self._poll_forever())

    async def _stop_timer(self):
        timer, self._timer = self._timer, None
        if timer is None:
            return
        timer.cancel()
        try:
            await timer
        except asyncio.CancelledError:
            pass

    async def _poll_forever(self):
        log.info("Unread polling started (every %ss)", self.interval)
        full = True
        try:
            while True:
                try:
                    await self._tick(full)
                    full = False
                except Exception:
                    log.exception("Poll cycle failed")
                await asyncio.sleep(self.interval)
        finally:
            log.info("Unread polling stopped")

    async def refresh_now(self, full: bool = False) -> Snapshot:
        """Poll immediately, e.g. after a send or a mark-read."""
        self.aggregator.invalidate()
        self._cycle = asyncio.ensure_future(self._run_cycle(full))
        return await self._cycle

    async def _tick(self, full: bool) -> Snapshot:
        # A timer tick joins a cycle that is already in flight rather than issuing its own.
        if self._cycle is not None and not self._cycle.done():
            return await asyncio.shield(self._cycle)
        self._cycle = asyncio.ensure_future(self._run_cycle(full))
        return await self._cycle

    async def _run_cycle(self, full: bool) -> Snapshot:
        self._cycles_running += 1
        try:
            polls = [self.aggregator.refresh()]
            if self.feed is not None:
                polls.append(poll_quietly("Notification count", self.feed.unread_count()))
                if full:
                    polls.append(poll_quietly("Notifications", self.feed.fetch()))
            await asyncio.gather(*polls)
        finally:
            self._cycles_running -= 1
        return self._publish(self.aggregator.index)

    def _on_unread(self, index: UnreadIndex):
        # Refreshes started outside a cycle (e.g. aggregator.mark_read) still reach surfaces.
        if not self._cycles_running:
            self._publish(index)

    def _snapshot_of(self, index: UnreadIndex) -> Snapshot:
        return Snapshot(
            unread=index,
            notifications_unread=self.feed.unread if self.feed is not None else 0,
            notifications=list(self.feed.items) if self.feed is not None else [],
        )

    def _publish(self, index: UnreadIndex) -> Snapshot:
        snapshot = self._snapshot_of(index)
        self.snapshot = snapshot
        for listener in list(self._listeners):
            self._deliver(listener, snapshot)
        return snapshot

    def _deliver(self, listener: Listener, snapshot: Snapshot):
        try:
            listener(snapshot)
        except Exception:
            log.exception("Error in broadcast listener")

    async def mark_conversation_read(self, user_id: str, notify_server: bool = True) -> Snapshot:
        index = await self.aggregator.mark_read(user_id, notify_server=notify_server)
        return self._snapshot_of(index)

    async def mark_notification_read(self, notification_id: str) -> Snapshot:
        await self.feed.mark_read(notification_id)
        return await self.refresh_now(full=True)

    async def mark_all_notifications_read(self) -> Snapshot:
        await self.feed.mark_all_read()
        return await self.refresh_now(full=True)

    async def delete_notification(self, notification_id: str) -> Snapshot:
        await self.feed.delete(notification_id)
        return await self.refresh_now(full=True)
