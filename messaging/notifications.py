import logging

from api import Api
from messaging import Notification

log = logging.getLogger(__name__)


class NotificationFeed:
    """Generic notifications (report decisions, meetings, new messages), separate from messages."""

    def __init__(self, api: Api):
        self.api = api
        self.items: list[Notification] = []
        self.unread = 0

    async def fetch(self) -> list[Notification]:
        self.items = [Notification.from_api(n) for n in await self.api.notifications()]
        return self.items

    async def unread_count(self) -> int:
        self.unread = max(0, int(await self.api.notifications_unread_count() or 0))
        return self.unread

    async def mark_read(self, notification_id: str):
        await self.api.mark_notification_read(notification_id)
        for item in self.items:
            if item.id == notification_id:
                item.is_read = True

    async def mark_all_read(self):
        await self.api.mark_all_notifications_read()
        for item in self.items:
            item.is_read = True

    async def delete(self, notification_id: str):
        await self.api.delete_notification(notification_id)
        self.items = [n for n in self.items if n.id != notification_id]
        log.info("Deleted notification %s", notification_id)
