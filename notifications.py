"""Reward notification history.

Notifications are kept most-recent-first and capped; the ledger persists the
list under its own key and trims it harder when the store runs out of room.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, asdict, field
from datetime import datetime

NOTIFICATION_TYPES = {
    "xp": {"icon": "sparkles", "color": "#22c55e"},
    "credits": {"icon": "coins", "color": "#eab308"},
    "level_up": {"icon": "trophy", "color": "#ffd700"},
    "achievement": {"icon": "award", "color": "#888"},
    "streak": {"icon": "flame", "color": "#f97316"},
}

DEFAULT_HISTORY_LIMIT = 50
DEFAULT_TRIM_LIMIT = 20


@dataclass
class RewardNotification:
    id: str
    type: str
    title: str
    message: str
    timestamp: str
    icon: str = ""
    color: str = ""
    amount: int | None = None
    dismissed: bool = False


@dataclass
class NotificationLog:
    """Most-recent-first list of notifications with a length cap."""

    limit: int = DEFAULT_HISTORY_LIMIT
    items: list[RewardNotification] = field(default_factory=list)

    def add(
        self, notif_type: str, title: str, message: str, now: datetime,
        icon: str = "", color: str = "", amount: int | None = None,
    ) -> RewardNotification:
        defaults = NOTIFICATION_TYPES.get(notif_type, {})
        notif = RewardNotification(
            id=f"notif-{int(now.timestamp() * 1000)}-{secrets.token_hex(3)}",
            type=notif_type,
            title=title,
            message=message,
            timestamp=now.isoformat(),
            icon=icon or defaults.get("icon", ""),
            color=color or defaults.get("color", ""),
            amount=amount,
        )
        self.items.insert(0, notif)
        del self.items[self.limit:]
        return notif

    def dismiss(self, notif_id: str) -> bool:
        for n in self.items:
            if n.id == notif_id:
                n.dismissed = True
                return True
        return False

    def active(self) -> list[RewardNotification]:
        return [n for n in self.items if not n.dismissed]

    def clear(self) -> None:
        self.items.clear()

    def trim(self, keep: int = DEFAULT_TRIM_LIMIT) -> int:
        """Drop all but the newest `keep` entries. Returns how many were removed."""
        removed = max(0, len(self.items) - keep)
        del self.items[keep:]
        return removed

    def to_list(self) -> list[dict]:
        return [asdict(n) for n in self.items[:self.limit]]

    @staticmethod
    def from_list(data: list[dict], limit: int = DEFAULT_HISTORY_LIMIT) -> NotificationLog:
        """Build a log from persisted dicts. Raises TypeError/KeyError on bad shapes."""
        if not isinstance(data, list):
            raise TypeError("notification history must be a list")
        items = [RewardNotification(**n) for n in data]
        return NotificationLog(limit=limit, items=items[:limit])
