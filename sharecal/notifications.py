"""
Notification collaborator.

The engine hands reminders and sharing notices to a Notifier and never
waits on delivery outcomes: a failed push is logged, never raised.
"""

import asyncio
import functools
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

import requests

from .debug import debug_print
from .errors import StoreError
from .event_wrapper import Profile


def _debug_print(msg: str, error: bool = False) -> None:
    debug_print("NOTIFY", msg, error)


EXPO_PUSH_URL = "https://exp.host/--/api/v2/push/send"


class ShareNoticeKind(Enum):
    SHARED = "shared"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ShareNotice:
    kind: ShareNoticeKind
    recipient_id: str
    sender_id: str
    event_title: str
    event_id: Optional[str] = None


class Notifier(ABC):
    """Delivery of reminders and sharing notices."""

    @abstractmethod
    async def schedule_reminder(self, event_id: str, title: str, fire_at: datetime) -> None:
        """Arrange for a reminder at fire_at (aware UTC)."""

    @abstractmethod
    async def cancel_reminders(self, event_id: str) -> None:
        """Drop every reminder scheduled for an event."""

    @abstractmethod
    async def notify_share(self, notice: ShareNotice) -> bool:
        """Tell the other party about a sharing change. Returns delivery success."""


class LoggingNotifier(Notifier):
    """
    Keeps scheduled reminders in memory and logs notices.

    Used when no push delivery is configured; also the base for
    ExpoPushNotifier, which adds delivery of `shared` notices.
    """

    def __init__(self):
        self.reminders: dict[str, list[tuple[str, datetime]]] = {}
        self.notices: list[ShareNotice] = []

    async def schedule_reminder(self, event_id: str, title: str, fire_at: datetime) -> None:
        self.reminders.setdefault(event_id, []).append((title, fire_at))
        _debug_print(f"Reminder for {event_id} at {fire_at.isoformat()}")

    async def cancel_reminders(self, event_id: str) -> None:
        if self.reminders.pop(event_id, None):
            _debug_print(f"Cancelled reminders for {event_id}")

    async def notify_share(self, notice: ShareNotice) -> bool:
        self.notices.append(notice)
        _debug_print(f"Share {notice.kind.value}: {notice.event_title!r} "
                     f"{notice.sender_id} -> {notice.recipient_id}")
        return True


class ExpoPushNotifier(LoggingNotifier):
    """
    Sends a push message to the recipient of a new share.

    The recipient's Expo push token and the sender's display name come
    from the profiles table. Recipients without a token are skipped.
    """

    def __init__(self, store, push_url: str = EXPO_PUSH_URL, timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        super().__init__()
        self.store = store
        self.push_url = push_url
        self.timeout = timeout
        self.session = session or requests.Session()

    def _post(self, payload: dict) -> bool:
        try:
            response = self.session.post(self.push_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            return True
        except requests.RequestException as e:
            _debug_print(f"Push to {payload.get('to')} failed: {e}", error=True)
            return False

    async def notify_share(self, notice: ShareNotice) -> bool:
        await super().notify_share(notice)
        if notice.kind != ShareNoticeKind.SHARED or notice.recipient_id == notice.sender_id:
            return True

        try:
            rows = await self.store.get_profiles([notice.recipient_id, notice.sender_id])
        except StoreError as e:
            _debug_print(f"Cannot load profiles for push: {e}", error=True)
            return False
        profiles = {row["id"]: Profile.from_row(row) for row in rows}

        recipient = profiles.get(notice.recipient_id)
        if recipient is None or not recipient.push_token:
            _debug_print(f"No push token for {notice.recipient_id}")
            return False
        sender = profiles.get(notice.sender_id)
        sender_name = sender.display_name if sender else "Someone"
        title = notice.event_title or "Untitled"

        payload = {
            "to": recipient.push_token,
            "title": f"{sender_name} shared an event with you",
            "body": title,
            "data": {
                "type": "shared_item",
                "itemType": "event",
                "itemId": notice.event_id,
                "senderId": notice.sender_id,
                "senderName": sender_name,
                "itemTitle": title,
            },
            "sound": "default",
            "priority": "high",
        }
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(self._post, payload))
