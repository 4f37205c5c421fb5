from dataclasses import dataclass
from typing import Callable

from messaging import Snapshot


@dataclass
class Badge:
    """A counter that follows the broadcast, like the launcher or navbar bubbles."""
    name: str
    select: Callable[[Snapshot], int]
    cap: int | None = None          # launcher shows "9+" past 9
    count: int = 0
    on_change: Callable[["Badge"], None] | None = None

    def __call__(self, snapshot: Snapshot):
        count = max(0, int(self.select(snapshot)))
        if count != self.count:
            self.count = count
            if self.on_change is not None:
                self.on_change(self)

    @property
    def label(self) -> str:
        if not self.count:
            return ""
        if self.cap is not None and self.count > self.cap:
            return f"{self.cap}+"
        return str(self.count)


def launcher_badge(on_change=None) -> Badge:
    return Badge("launcher", lambda s: s.unread.total, cap=9, on_change=on_change)


def navbar_badges(on_change=None) -> tuple[Badge, Badge]:
    """(messages, notifications) as shown in the navigation bar."""
    return (
        Badge("navbar:messages", lambda s: s.unread.total, on_change=on_change),
        Badge("navbar:notifications", lambda s: s.notifications_unread, on_change=on_change),
    )
