"""Host adapters: system clipboard and notification center."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence

import pyperclip
import ulid
from loguru import logger

from .bus import Event, EventBus, get_event_bus
from .error_handling import HostPermissionDenied


class ClipboardReader(Protocol):
    async def read_text(self) -> str:
        ...


class NotificationCenter(Protocol):
    async def create(self, title: str, message: str, buttons: Sequence[str] = ()) -> str:
        ...

    async def clear(self, notification_id: str) -> None:
        ...


class PyperclipClipboard:
    """Reads the system clipboard through pyperclip off the event loop."""

    async def read_text(self) -> str:
        try:
            text = await asyncio.to_thread(pyperclip.paste)
        except pyperclip.PyperclipException as e:
            raise HostPermissionDenied(f"Clipboard not readable: {e}") from e
        return text or ""


@dataclass
class Notification:
    """A notification shown to the user, optionally with action buttons."""
    id: str
    title: str
    message: str
    buttons: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "message": self.message,
            "buttons": list(self.buttons),
            "created_at": self.created_at.isoformat(),
        }


class BusNotificationCenter:
    """
    Notification center for a headless daemon.

    Notifications are kept in memory and published on the bus as
    ``notification.created`` / ``notification.cleared``. Whatever front end
    is attached (the CLI, a tray app) renders them and delivers button
    clicks back through the HTTP API.
    """

    def __init__(self, bus: Optional[EventBus] = None):
        self._bus = bus or get_event_bus()
        self._active: Dict[str, Notification] = {}

    async def create(self, title: str, message: str, buttons: Sequence[str] = ()) -> str:
        notification = Notification(
            id=str(ulid.ULID()),
            title=title,
            message=message,
            buttons=list(buttons)
        )
        self._active[notification.id] = notification
        await self._bus.emit(Event(
            type="notification.created",
            data=notification.to_dict(),
            source="notifications",
            correlation_id=notification.id
        ))
        logger.debug(f"Notification {notification.id}: {title}")
        return notification.id

    async def clear(self, notification_id: str) -> None:
        if self._active.pop(notification_id, None) is None:
            return
        await self._bus.emit(Event(
            type="notification.cleared",
            data={"id": notification_id},
            source="notifications",
            correlation_id=notification_id
        ))

    def get(self, notification_id: str) -> Optional[Notification]:
        return self._active.get(notification_id)

    def list_active(self) -> List[Notification]:
        return sorted(self._active.values(), key=lambda n: n.created_at)
